"""
Read-through cache for API queries.

Entries are keyed by path plus normalised parameters and live until they are
invalidated. Concurrent fetches of the same key share one request.
"""
import json
import logging
import threading
from concurrent.futures import Future
from typing import Any, Dict, Iterable, Optional, Tuple

from .api import ApiClient

logger = logging.getLogger(__name__)

QueryKey = Tuple[str, str]


def query_key(path: str, params: Optional[Dict[str, Any]] = None) -> QueryKey:
    cleaned = {k: v for k, v in (params or {}).items() if v is not None}
    return path, json.dumps(cleaned, sort_keys=True, default=str)


def collection_path(path: str) -> str:
    """/api/guardies/7, /api/comunicacions/3/read and
    /api/assignacions-guardia/auto-assign all map to their collection."""
    segments = [s for s in path.split("?", 1)[0].split("/") if s]
    if segments and segments[0] == "api":
        return "/" + "/".join(segments[:2])
    return "/" + "/".join(segments[:1])


def _under(key_path: str, path: str) -> bool:
    return key_path == path or key_path.startswith(path.rstrip("/") + "/")


class QueryClient:
    def __init__(self, api: ApiClient):
        self.api = api
        self._lock = threading.Lock()
        self._cache: Dict[QueryKey, Any] = {}
        self._inflight: Dict[QueryKey, Future] = {}

    def fetch(self, path: str, params: Optional[Dict[str, Any]] = None, schema: Any = None):
        key = query_key(path, params)
        with self._lock:
            if key in self._cache:
                return self._cache[key]
            future = self._inflight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[key] = future
        if not owner:
            return future.result()

        try:
            value = self.api.get(path, params=params, schema=schema)
        except Exception as exc:
            with self._lock:
                if self._inflight.get(key) is future:
                    del self._inflight[key]
            future.set_exception(exc)
            raise
        with self._lock:
            # An invalidation while in flight removed our entry; do not cache.
            if self._inflight.get(key) is future:
                del self._inflight[key]
                self._cache[key] = value
        future.set_result(value)
        return value

    def invalidate(self, path: str, params: Optional[Dict[str, Any]] = None):
        with self._lock:
            if params is not None:
                key = query_key(path, params)
                self._cache.pop(key, None)
                self._inflight.pop(key, None)
                return
            for store in (self._cache, self._inflight):
                for key in [k for k in store if _under(k[0], path)]:
                    del store[key]

    def mutate(self, method: str, path: str, json: Any = None, invalidates: Iterable[str] = ()):
        result = self.api.request(method, path, json=json)
        self.invalidate(collection_path(path))
        for other in invalidates:
            self.invalidate(other)
        return result

    def clear(self):
        with self._lock:
            self._cache.clear()
            self._inflight.clear()

    def is_cached(self, path: str, params: Optional[Dict[str, Any]] = None) -> bool:
        with self._lock:
            return query_key(path, params) in self._cache
