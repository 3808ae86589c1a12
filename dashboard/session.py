"""
Client session: the bearer token and the logged-in user, persisted in
LocalStorage so a restart picks up where the last run left off.
"""
import json
import logging
from typing import Optional

from pydantic import ValidationError

from backend.models import AuthUser

from .storage import LocalStorage

logger = logging.getLogger(__name__)

TOKEN_KEY = "auth_token"
USER_KEY = "user_data"
TUTORIAL_KEY = "hasSeenTutorial"


class Session:
    def __init__(self, storage: LocalStorage):
        self.storage = storage
        self.token: Optional[str] = None
        self.user: Optional[AuthUser] = None
        self.is_loading = True

    @property
    def is_authenticated(self) -> bool:
        return self.token is not None and self.user is not None

    def restore(self):
        """Load the persisted token and user; malformed data is dropped."""
        try:
            token = self.storage.get_item(TOKEN_KEY)
            raw_user = self.storage.get_item(USER_KEY)
            if token and raw_user:
                user = AuthUser.model_validate(json.loads(raw_user))
                self.token, self.user = token, user
        except (ValueError, ValidationError) as exc:
            logger.error("Discarding malformed persisted session: %s", exc)
            self.token, self.user = None, None
            self.storage.remove_item(TOKEN_KEY)
            self.storage.remove_item(USER_KEY)
        finally:
            self.is_loading = False

    def save(self, token: str, user: AuthUser):
        self.storage.set_item(TOKEN_KEY, token)
        self.storage.set_item(USER_KEY, user.model_dump_json())
        self.token, self.user = token, user

    def clear(self):
        self.storage.remove_item(TOKEN_KEY)
        self.storage.remove_item(USER_KEY)
        self.token, self.user = None, None

    @property
    def has_seen_tutorial(self) -> bool:
        return self.storage.get_item(TUTORIAL_KEY) == "true"

    def mark_tutorial_seen(self):
        self.storage.set_item(TUTORIAL_KEY, "true")
