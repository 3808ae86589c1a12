"""
HTTP access to the guard management API.

ApiClient attaches the session's bearer token and turns error statuses into
ApiError; AuthGateway performs login and logout against the Session.
"""
import logging
import os
from typing import Any, Callable, Dict, List, Optional

import requests
from pydantic import TypeAdapter, ValidationError

from backend.models import LoginResponse

from .session import Session

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "http://localhost:8000"


class ApiError(Exception):
    def __init__(self, status: int, body: str, message: Optional[str] = None):
        self.status = status
        self.body = body
        self.message = message or f"HTTP {status}"
        super().__init__(f"{status}: {self.message}")


class SchemaError(Exception):
    pass


def error_message(body: Any) -> Optional[str]:
    if isinstance(body, dict):
        for key in ("detail", "message"):
            if body.get(key):
                return str(body[key])
    return None


def validate(schema: Any, data: Any):
    try:
        return TypeAdapter(schema).validate_python(data)
    except ValidationError as exc:
        raise SchemaError(str(exc)) from exc


class ApiClient:
    def __init__(
        self,
        session: Session,
        base_url: Optional[str] = None,
        transport: Any = None,
        timeout: Optional[float] = None,
    ):
        self.session = session
        self.base_url = (base_url or os.environ.get("DASHBOARD_API_URL") or DEFAULT_API_URL).rstrip("/")
        self.transport = transport if transport is not None else requests.Session()
        self.timeout = timeout

    def headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.session.token:
            headers["Authorization"] = f"Bearer {self.session.token}"
        return headers

    def request(self, method: str, path: str, json: Any = None, params: Optional[Dict[str, Any]] = None):
        kwargs: Dict[str, Any] = {"headers": self.headers()}
        if json is not None:
            kwargs["json"] = json
        params = {k: v for k, v in (params or {}).items() if v is not None}
        if params:
            kwargs["params"] = params
        if self.timeout is not None:
            kwargs["timeout"] = self.timeout
        response = self.transport.request(method, f"{self.base_url}{path}", **kwargs)

        text = response.text or ""
        if response.status_code >= 400:
            try:
                message = error_message(response.json())
            except ValueError:
                message = None
            raise ApiError(response.status_code, text, message or text or None)
        if not text.strip():
            return None
        return response.json()

    def get(self, path: str, params: Optional[Dict[str, Any]] = None, schema: Any = None):
        data = self.request("GET", path, params=params)
        if schema is None:
            return data
        return validate(schema, data)


class AuthGateway:
    def __init__(self, session: Session, client: ApiClient):
        self.session = session
        self.client = client
        self.last_error: Optional[str] = None
        self._logout_listeners: List[Callable[[], None]] = []

    @property
    def is_authenticated(self) -> bool:
        return self.session.is_authenticated

    def add_logout_listener(self, listener: Callable[[], None]):
        self._logout_listeners.append(listener)

    def login(self, email: str, password: str) -> bool:
        self.last_error = None
        try:
            body = self.client.request("POST", "/api/auth/login", json={"email": email, "password": password})
            response = validate(LoginResponse, body)
        except ApiError as exc:
            self.last_error = exc.message
            return False
        except SchemaError as exc:
            logger.error("Unexpected login response: %s", exc)
            self.last_error = "Resposta del servidor no vàlida"
            return False
        except requests.RequestException as exc:
            logger.error("Login request failed: %s", exc)
            self.last_error = str(exc)
            return False
        self.session.save(response.token, response.user)
        logger.info("Logged in as %s", response.user.email)
        return True

    def logout(self):
        self.session.clear()
        for listener in self._logout_listeners:
            listener()
