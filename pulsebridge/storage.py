from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Protocol

from .readings import resolve_user_id

logger = logging.getLogger("pulsebridge.storage")

USER_ID_KEY = "user_id"
ACCESS_TOKEN_KEY = "access_token"
LAST_CONNECTED_KEY = "esp_connected"
AUTO_CONNECT_KEY = "esp_auto_connect"

_TRUE = "true"


class KeyValueStore(Protocol):
    """Externally owned string persistence (browser storage, a file, a vault...)."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class MissingCredentialsError(RuntimeError):
    """Raised when the bearer token or user identity is not available."""


class MemoryStore:
    def __init__(self, initial: Mapping[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = str(value)

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore:
    """Durable key-value file, rewritten atomically on every change."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._data = self._load()

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = str(value)
        self._save()

    def remove(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._save()

    def _load(self) -> dict[str, str]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            logger.warning("state file unreadable, starting empty: %s", exc)
            return {}

        try:
            parsed: Any = json.loads(raw)
        except ValueError:
            logger.warning("state file %s is not valid JSON, starting empty", self.path)
            return {}
        if not isinstance(parsed, Mapping):
            return {}
        return {str(k): str(v) for k, v in parsed.items() if v is not None}

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(self._data, sort_keys=True), encoding="utf-8")
        tmp.replace(self.path)


@dataclass(frozen=True)
class Credentials:
    token: str
    user_id: int


def read_token(store: KeyValueStore) -> str | None:
    token = store.get(ACCESS_TOKEN_KEY)
    if token is None or not token.strip():
        return None
    return token.strip()


def require_credentials(store: KeyValueStore) -> Credentials:
    token = read_token(store)
    raw_user = store.get(USER_ID_KEY)
    if token is None or raw_user is None or not raw_user.strip():
        raise MissingCredentialsError("bearer token and user identity are required")
    return Credentials(token=token, user_id=resolve_user_id(raw_user))


def has_credentials(store: KeyValueStore) -> bool:
    try:
        require_credentials(store)
    except MissingCredentialsError:
        return False
    return True


def get_flag(store: KeyValueStore, key: str) -> bool:
    return store.get(key) == _TRUE


def set_flag(store: KeyValueStore, key: str) -> None:
    store.set(key, _TRUE)


def clear_flag(store: KeyValueStore, key: str) -> None:
    store.remove(key)
