from __future__ import annotations

import json
import logging
from pathlib import Path
from threading import RLock
from typing import Dict, Optional, Protocol

from ..config import PartnerSettings, get_settings

try:  # pragma: no cover - optional dependency
    import redis  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    redis = None  # type: ignore


logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemoryKeyValueStore:
    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})
        self._lock = RLock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class FileKeyValueStore:
    """JSON file-backed key-value store for local persistence.

    Structure: a single JSON object mapping key -> string blob. Thread-safe
    with a coarse RLock; suitable for a single-user client, not for shared
    servers.
    """

    def __init__(self, file_path: str) -> None:
        self._lock = RLock()
        self._path = Path(file_path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._data: Dict[str, str] = {}
        self._load()

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("kv_file_unreadable path=%s err=%s", self._path, exc)
            return
        if not isinstance(raw, dict):
            logger.warning("kv_file_unexpected_shape path=%s", self._path)
            return
        self._data = {str(k): v for k, v in raw.items() if isinstance(v, str)}

    def _save(self) -> None:
        try:
            self._path.write_text(json.dumps(self._data, indent=2), encoding="utf-8")
        except OSError as exc:
            # Keep serving from memory; the next write retries
            logger.error("kv_file_write_failed path=%s err=%s", self._path, exc)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value
            self._save()

    def delete(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is not None:
                self._save()


class RedisKeyValueStore:
    def __init__(self, url: str, namespace: str = "partner") -> None:
        if redis is None:
            raise RuntimeError("redis package is not installed")
        self._client = redis.Redis.from_url(url, socket_timeout=0.5, decode_responses=True)
        self._namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    def get(self, key: str) -> Optional[str]:
        value = self._client.get(self._key(key))
        if value is None:
            return None
        return value if isinstance(value, str) else value.decode("utf-8")

    def set(self, key: str, value: str) -> None:
        self._client.set(self._key(key), value)

    def delete(self, key: str) -> None:
        self._client.delete(self._key(key))

    def ping(self) -> bool:
        return bool(self._client.ping())


def build_kv_store(settings: Optional[PartnerSettings] = None) -> KeyValueStore:
    settings = settings or get_settings()
    impl = settings.storage_impl
    if impl == "file":
        return FileKeyValueStore(settings.storage_file)
    if impl == "redis":
        if not settings.redis_url:
            logger.warning("kv_redis_requested_without_url; using in-memory store")
            return InMemoryKeyValueStore()
        try:
            store = RedisKeyValueStore(settings.redis_url)
            store.ping()
            return store
        except Exception as exc:
            logger.warning("kv_redis_unavailable err=%s; using in-memory store", exc)
            return InMemoryKeyValueStore()
    return InMemoryKeyValueStore()
