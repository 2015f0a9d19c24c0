from __future__ import annotations

import logging

import requests

from .config import SyncConfig
from .forwarder import MonotonicFn, ReadingForwarder
from .readings import CanonicalReading, normalize, resolve_user_id
from .scheduler import PollScheduler, TimerFactory
from .state import ConnectionState, ConnectionStateMachine, StateListener, SyncStatus
from .storage import (
    LAST_CONNECTED_KEY,
    USER_ID_KEY,
    KeyValueStore,
    clear_flag,
    get_flag,
    read_token,
    require_credentials,
    set_flag,
)
from .transport import ProtocolMismatch, TransportError, TransportMode, TransportSelector, acknowledges

logger = logging.getLogger("pulsebridge.client")

CONNECT_HINT = "Make sure the device is on the same network."


def failure_reason(error: TransportError) -> str:
    return str(error) or "device unreachable"


class SyncClient:
    """Foreground sync client: explicit connect/disconnect, fixed-period polling.

    One instance per page/session. Transport mode, connection state and the
    poll counter live here and are only mutated through these methods.
    Polling has no failure cutoff; it runs until ``disconnect``.
    """

    def __init__(
        self,
        *,
        config: SyncConfig,
        store: KeyValueStore,
        session: requests.Session | None = None,
        timer_factory: TimerFactory | None = None,
        monotonic_fn: MonotonicFn | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self._session = session or requests.Session()
        self._transport = TransportSelector(
            self._session,
            config,
            token_fn=self._token,
            mode=TransportMode.DIRECT,
        )
        self._forwarder = ReadingForwarder(
            self._session,
            config,
            token_fn=self._token,
            monotonic_fn=monotonic_fn,
        )
        self.machine = ConnectionStateMachine(name="device")
        self.scheduler = PollScheduler(
            self.tick,
            period_s=config.poll_interval_s,
            timer_factory=timer_factory,
            name="foreground",
        )
        self._poll_count = 0
        self._error_line: str | None = None
        self._last_reading: CanonicalReading | None = None

    @property
    def state(self) -> ConnectionState:
        return self.machine.state

    @property
    def transport_mode(self) -> TransportMode:
        return self._transport.mode

    @property
    def error_line(self) -> str | None:
        return self._error_line

    def add_listener(self, listener: StateListener) -> None:
        self.machine.add_listener(listener)

    def status(self) -> SyncStatus:
        return SyncStatus(
            state=self.machine.state,
            polling=self.scheduler.running,
            poll_count=self._poll_count,
            transport_mode=self._transport.mode.value,
            last_error=self._error_line,
            last_reading=self._last_reading,
        )

    def on_load(self) -> bool:
        """Resume polling when the previous session ended connected.

        Raises MissingCredentialsError when the user is not signed in.
        """

        require_credentials(self.store)
        if not get_flag(self.store, LAST_CONNECTED_KEY):
            logger.info("device not auto-connected, waiting for an explicit connect")
            return False
        logger.info("resuming device polling from last session")
        self.machine.resume()
        return self.scheduler.start(immediate=True)

    def connect(self) -> bool:
        """Run the connect handshake and start polling on success.

        Credentials are checked before any network call. Polling left running
        after a failed poll is stopped first, and no tick runs until the
        handshake has settled.
        """

        require_credentials(self.store)
        if self.machine.connected:
            return True

        self.scheduler.stop()
        with self.scheduler.exclusive():
            acknowledged = self._handshake()
        if acknowledged:
            self.scheduler.start(immediate=True)
        return acknowledged

    def _handshake(self) -> bool:
        self.machine.begin_connect()
        self._error_line = None

        outcome = self._transport.fetch("connect")
        if self.machine.state is not ConnectionState.CONNECTING:
            logger.info("connect result discarded, state changed to %s", self.machine.state.value)
            return False

        error = outcome.error
        if error is None and not acknowledges(outcome.body):
            error = ProtocolMismatch("device did not confirm connection")

        if error is not None:
            reason = failure_reason(error)
            self.machine.connect_failed(reason)
            self._error_line = f"{reason}. {CONNECT_HINT}"
            logger.warning(
                "connect failed: %s",
                reason,
                extra={"fields": {"error_kind": error.kind, "transport_mode": outcome.mode.value}},
            )
            return False

        self.machine.connect_succeeded()
        set_flag(self.store, LAST_CONNECTED_KEY)
        return True

    def disconnect(self) -> None:
        self.scheduler.stop()
        clear_flag(self.store, LAST_CONNECTED_KEY)
        self._error_line = None
        self._last_reading = None
        self.machine.disconnect()

    def toggle(self) -> bool:
        """Single connect/disconnect control. Returns whether now connected."""

        if self.machine.connected:
            self.disconnect()
            return False
        return self.connect()

    def close(self) -> None:
        """Stop polling without forgetting the last-known-connected flag."""

        self.scheduler.stop()
        self._session.close()

    def tick(self) -> None:
        generation = self.scheduler.generation
        self._poll_count += 1
        poll_no = self._poll_count
        logger.debug("poll #%d via %s", poll_no, self._transport.mode.value)

        outcome = self._transport.fetch("readings")
        if generation != self.scheduler.generation:
            logger.debug("poll #%d result discarded, polling was stopped", poll_no)
            return

        if outcome.error is not None:
            reason = failure_reason(outcome.error)
            self.machine.poll_failed(reason)
            self._error_line = reason
            self._last_reading = None
            logger.error(
                "poll #%d failed: %s",
                poll_no,
                reason,
                extra={
                    "fields": {
                        "poll": poll_no,
                        "error_kind": outcome.error.kind,
                        "transport_mode": outcome.mode.value,
                    }
                },
            )
            return

        reading = normalize(outcome.body)
        self.machine.poll_succeeded()
        self._last_reading = reading
        logger.debug("poll #%d reading %s", poll_no, reading.as_dict())

        self._forwarder.forward(reading, user_id=self._user_id())
        self._error_line = None

    def _token(self) -> str | None:
        return read_token(self.store)

    def _user_id(self) -> int:
        return resolve_user_id(self.store.get(USER_ID_KEY))
