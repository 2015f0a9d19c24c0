from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .readings import CanonicalReading

logger = logging.getLogger("pulsebridge.state")


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class StateTransitionError(RuntimeError):
    """Raised when an action is not valid from the current connection state."""


StateListener = Callable[[ConnectionState, ConnectionState, str | None], None]


class ConnectionStateMachine:
    """Owns the disconnected/connecting/connected lifecycle.

    ``connecting`` is only entered through an explicit connect action; the
    poll loop moves straight between ``connected`` and ``disconnected``.
    Listeners see ``(previous, current, reason)`` for every actual change.
    """

    def __init__(self, *, name: str = "device") -> None:
        self.name = name
        self._state = ConnectionState.DISCONNECTED
        self._last_error: str | None = None
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def last_error(self) -> str | None:
        return self._last_error

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def begin_connect(self) -> None:
        if self._state is not ConnectionState.DISCONNECTED:
            raise StateTransitionError(f"cannot connect while {self._state.value}")
        self._last_error = None
        self._move(ConnectionState.CONNECTING, "connect requested")

    def connect_succeeded(self) -> None:
        self._require(ConnectionState.CONNECTING, action="complete connect")
        self._last_error = None
        self._move(ConnectionState.CONNECTED, "connect acknowledged")

    def connect_failed(self, reason: str) -> None:
        self._require(ConnectionState.CONNECTING, action="fail connect")
        self._last_error = reason
        self._move(ConnectionState.DISCONNECTED, reason)

    def resume(self) -> None:
        """Trust a persisted connected flag without a handshake."""

        self._last_error = None
        self._move(ConnectionState.CONNECTED, "resumed from last session")

    def poll_succeeded(self) -> None:
        self._last_error = None
        self._move(ConnectionState.CONNECTED, "poll succeeded")

    def poll_failed(self, reason: str) -> None:
        self._last_error = reason
        self._move(ConnectionState.DISCONNECTED, reason)

    def disconnect(self) -> None:
        self._last_error = None
        self._move(ConnectionState.DISCONNECTED, "disconnect requested")

    def _require(self, expected: ConnectionState, *, action: str) -> None:
        if self._state is not expected:
            raise StateTransitionError(f"cannot {action} while {self._state.value}")

    def _move(self, new_state: ConnectionState, reason: str | None) -> None:
        previous = self._state
        if previous is new_state:
            return
        self._state = new_state
        logger.info(
            "%s %s -> %s (%s)",
            self.name,
            previous.value,
            new_state.value,
            reason,
            extra={"fields": {"from": previous.value, "to": new_state.value, "reason": reason}},
        )
        for listener in list(self._listeners):
            try:
                listener(previous, new_state, reason)
            except Exception:
                logger.exception("state listener failed")


@dataclass(frozen=True)
class SyncStatus:
    """Read-only view of a sync client for status indicators."""

    state: ConnectionState
    polling: bool
    poll_count: int
    transport_mode: str
    last_error: str | None = None
    last_reading: CanonicalReading | None = None
    auto_connect: bool | None = None
    consecutive_failures: int | None = None

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED
