"""
Client core of the guard management dashboard: session persistence, API
access, query caching and view routing.
"""
from dataclasses import dataclass
from typing import Any, Optional

from .api import ApiClient, ApiError, AuthGateway, SchemaError
from .queries import QueryClient
from .router import RouteView, ViewRouter, ViewState
from .session import Session
from .storage import LocalStorage


@dataclass
class Dashboard:
    session: Session
    api: ApiClient
    auth: AuthGateway
    queries: QueryClient
    router: ViewRouter


def create_dashboard(
    storage_path: Optional[str] = None,
    base_url: Optional[str] = None,
    transport: Any = None,
    timeout: Optional[float] = None,
) -> Dashboard:
    """Wire the client together and restore any persisted session."""
    session = Session(LocalStorage(storage_path))
    session.restore()
    api = ApiClient(session, base_url=base_url, transport=transport, timeout=timeout)
    auth = AuthGateway(session, api)
    queries = QueryClient(api)
    auth.add_logout_listener(queries.clear)
    return Dashboard(session, api, auth, queries, ViewRouter(session))


__all__ = [
    "ApiClient",
    "ApiError",
    "AuthGateway",
    "Dashboard",
    "LocalStorage",
    "QueryClient",
    "RouteView",
    "SchemaError",
    "Session",
    "ViewRouter",
    "ViewState",
    "create_dashboard",
]
