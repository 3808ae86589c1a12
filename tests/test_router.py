import pytest

from backend.models import AuthUser
from dashboard.router import ROUTES, ViewRouter, ViewState
from dashboard.session import Session
from dashboard.storage import LocalStorage

USER = AuthUser(id=1, email="admin@escola.cat", nom="Admin", cognoms="Escola", rol="admin")


@pytest.fixture
def session(tmp_path):
    return Session(LocalStorage(tmp_path / "storage.json"))


def test_loading_until_restored(session):
    view = ViewRouter(session).resolve("/guardies")
    assert view.state == ViewState.LOADING
    assert view.page is None


def test_unauthenticated_always_gets_login(session):
    session.restore()
    router = ViewRouter(session)
    for path in ("/", "/guardies", "/does-not-exist"):
        view = router.resolve(path)
        assert view.state == ViewState.UNAUTHENTICATED
        assert view.page == "landing"
        assert not view.show_chrome
        assert not view.show_tutorial


def test_authenticated_routes(session):
    session.restore()
    session.save("t1", USER)
    router = ViewRouter(session)
    view = router.resolve("/guardies")
    assert view.state == ViewState.AUTHENTICATED
    assert view.page == "guards"
    assert view.show_chrome
    assert router.resolve("/students").page == router.resolve("/alumnes").page
    assert router.resolve("/tasques/?tab=2").page == "tasks"
    assert len(ROUTES) == 28


def test_not_found_only_when_authenticated(session):
    session.restore()
    session.save("t1", USER)
    view = ViewRouter(session).resolve("/no-such-page")
    assert view.state == ViewState.NOT_FOUND
    assert view.show_chrome


def test_tutorial_shown_until_seen(session):
    session.restore()
    session.save("t1", USER)
    router = ViewRouter(session)
    assert router.resolve("/").show_tutorial
    session.mark_tutorial_seen()
    assert not router.resolve("/").show_tutorial


def test_logout_returns_to_login(session):
    session.restore()
    session.save("t1", USER)
    session.clear()
    assert ViewRouter(session).resolve("/tasques").state == ViewState.UNAUTHENTICATED
