from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any, Callable

import pytest
import requests

from pulsebridge.config import SyncConfig
from pulsebridge.storage import ACCESS_TOKEN_KEY, USER_ID_KEY, MemoryStore

DEVICE = "http://device.local"
BACKEND = "http://backend.test"
PROXY = f"{BACKEND}/esp32"
SINK = f"{BACKEND}/sensor-readings"


def json_response(body: Any, *, status_code: int = 200, headers: dict[str, str] | None = None) -> SimpleNamespace:
    text = json.dumps(body)
    return SimpleNamespace(
        status_code=status_code,
        text=text,
        headers=headers or {},
        json=lambda: json.loads(text),
    )


def text_response(text: str, *, status_code: int = 200) -> SimpleNamespace:
    def _json() -> Any:
        return json.loads(text)

    return SimpleNamespace(status_code=status_code, text=text, headers={}, json=_json)


class FakeSession:
    """Scripted stand-in for requests.Session.

    Each route holds a queue of responses; the last one is sticky. Items may
    be responses, exceptions to raise, or callables producing either.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list[Any]] = {}
        self.calls: list[SimpleNamespace] = []
        self.closed = False

    def add(self, method: str, url: str, *items: Any) -> None:
        self.routes[(method, url)] = list(items)

    def urls(self, method: str | None = None) -> list[str]:
        return [c.url for c in self.calls if method is None or c.method == method]

    def request(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        json: Any = None,
        timeout: float | None = None,
    ) -> Any:
        self.calls.append(SimpleNamespace(method=method, url=url, headers=headers, json=json, timeout=timeout))
        queue = self.routes.get((method, url))
        if not queue:
            raise requests.ConnectionError(f"connection refused: {url}")
        item = queue[0] if len(queue) == 1 else queue.pop(0)
        if callable(item) and not isinstance(item, SimpleNamespace):
            item = item()
        if isinstance(item, Exception):
            raise item
        return item

    def get(self, url: str, **kwargs: Any) -> Any:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> Any:
        return self.request("POST", url, **kwargs)

    def close(self) -> None:
        self.closed = True


class FakeTimer:
    def __init__(self, period_s: float, callback: Callable[[], None]) -> None:
        self.period_s = period_s
        self.periods = [period_s]
        self.callback = callback
        self.cancelled = False

    def reschedule(self, period_s: float) -> None:
        assert not self.cancelled, "rescheduled a cancelled timer"
        self.period_s = period_s
        self.periods.append(period_s)

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        assert not self.cancelled, "cancelled timer fired"
        self.callback()


class FakeTimerFactory:
    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []

    def __call__(self, period_s: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(period_s, callback)
        self.timers.append(timer)
        return timer

    @property
    def active(self) -> FakeTimer | None:
        live = [t for t in self.timers if not t.cancelled]
        return live[-1] if live else None


@pytest.fixture
def config() -> SyncConfig:
    return SyncConfig(device_url=DEVICE, backend_url=BACKEND, request_timeout_s=2.0)


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def timers() -> FakeTimerFactory:
    return FakeTimerFactory()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore({USER_ID_KEY: "7", ACCESS_TOKEN_KEY: "tok-123"})
