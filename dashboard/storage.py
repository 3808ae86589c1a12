"""
File-backed key/value string store for the dashboard client.

Mirrors the browser's localStorage: string keys, string values, all kept in
one JSON object on disk.
"""
import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_PATH = Path.home() / ".gestio-guardies" / "storage.json"


def default_storage_path() -> Path:
    configured = os.environ.get("DASHBOARD_STORAGE_PATH")
    return Path(configured).expanduser() if configured else DEFAULT_STORAGE_PATH


class LocalStorage:
    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path is not None else default_storage_path()

    def _load(self) -> Dict[str, str]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable storage file %s: %s", self.path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring storage file %s: not a JSON object", self.path)
            return {}
        return data

    def _dump(self, data: Dict[str, str]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")

    def get_item(self, key: str) -> Optional[str]:
        value = self._load().get(key)
        return value if isinstance(value, str) else None

    def set_item(self, key: str, value: str):
        data = self._load()
        data[key] = value
        self._dump(data)

    def remove_item(self, key: str):
        data = self._load()
        if key in data:
            del data[key]
            self._dump(data)
