"""
Maps a URL path to the page the dashboard should show, gated on the session.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .session import Session


class ViewState(str, Enum):
    LOADING = "loading"
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    NOT_FOUND = "not-found"


LOGIN_PAGE = "landing"

ROUTES = {
    "/": "dashboard",
    "/dashboard-guardies": "dashboard-guardies",
    "/guardies": "guards",
    "/calendari-guardies": "guard-calendar",
    "/assignacions": "assignments",
    "/guardies-assignades": "assigned-guards",
    "/comunicacions": "communications",
    "/anys-academics": "academic-years",
    "/horaris": "schedules",
    "/sortides": "outings",
    "/sortides-substitucions-new": "sortides-substitucions",
    "/gestio-guardies": "gestio-guardies",
    "/gmail-config": "gmail-config",
    "/tasques": "tasks",
    "/professors": "professors",
    "/grups": "groups",
    "/aules": "classrooms",
    "/alumnes": "students",
    "/materies": "subjects",
    "/analytics-real": "analytics",
    "/ai-chat": "chat",
    "/import-csv": "import-csv",
    "/guard-calendar": "guard-calendar",
    "/schedules": "schedules",
    "/students": "students",
    "/subjects": "subjects",
    "/groups": "groups",
    "/classrooms": "classrooms",
}


@dataclass(frozen=True)
class RouteView:
    state: ViewState
    page: Optional[str]
    show_chrome: bool = False
    show_tutorial: bool = False


def normalize_path(path: str) -> str:
    path = path.split("?", 1)[0].split("#", 1)[0]
    if not path.startswith("/"):
        path = "/" + path
    return path.rstrip("/") or "/"


class ViewRouter:
    def __init__(self, session: Session):
        self.session = session

    def resolve(self, path: str) -> RouteView:
        if self.session.is_loading:
            return RouteView(ViewState.LOADING, None)
        if not self.session.is_authenticated:
            return RouteView(ViewState.UNAUTHENTICATED, LOGIN_PAGE)
        show_tutorial = not self.session.has_seen_tutorial
        page = ROUTES.get(normalize_path(path))
        if page is None:
            return RouteView(ViewState.NOT_FOUND, "not-found", show_chrome=True, show_tutorial=show_tutorial)
        return RouteView(ViewState.AUTHENTICATED, page, show_chrome=True, show_tutorial=show_tutorial)
