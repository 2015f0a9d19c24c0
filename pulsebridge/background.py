from __future__ import annotations

import logging

import requests

from .client import failure_reason
from .config import SyncConfig
from .forwarder import MonotonicFn, ReadingForwarder
from .readings import normalize, resolve_user_id, should_forward
from .scheduler import PollScheduler, TimerFactory
from .state import ConnectionStateMachine, StateListener, SyncStatus
from .storage import (
    AUTO_CONNECT_KEY,
    USER_ID_KEY,
    KeyValueStore,
    clear_flag,
    get_flag,
    has_credentials,
    read_token,
    set_flag,
)
from .transport import ProtocolMismatch, TransportMode, TransportSelector, acknowledges

logger = logging.getLogger("pulsebridge.background")

# Successful polls are summarized at info level once per this many polls.
POLL_LOG_EVERY = 10


class BackgroundSyncService:
    """Auto-connecting sync loop for pages other than the device page.

    Always goes through the backend proxy, has no error line, slows down
    while the page is hidden, and turns auto-connect off after
    ``max_consecutive_failures`` failed polls in a row.
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
            mode=TransportMode.PROXIED,
        )
        self._forwarder = ReadingForwarder(
            self._session,
            config,
            token_fn=self._token,
            monotonic_fn=monotonic_fn,
            log=logging.getLogger("pulsebridge.background.forwarder"),
        )
        self.machine = ConnectionStateMachine(name="background device")
        self.scheduler = PollScheduler(
            self.tick,
            period_s=config.poll_interval_s,
            timer_factory=timer_factory,
            name="background",
        )
        self._poll_count = 0
        self._consecutive_failures = 0
        self._hidden = False

    @property
    def auto_connect_enabled(self) -> bool:
        return get_flag(self.store, AUTO_CONNECT_KEY)

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def add_listener(self, listener: StateListener) -> None:
        self.machine.add_listener(listener)

    def status(self) -> SyncStatus:
        return SyncStatus(
            state=self.machine.state,
            polling=self.scheduler.running,
            poll_count=self._poll_count,
            transport_mode=self._transport.mode.value,
            auto_connect=self.auto_connect_enabled,
            consecutive_failures=self._consecutive_failures,
        )

    def on_load(self) -> bool:
        if not has_credentials(self.store):
            logger.info("no credentials, skipping auto-connect")
            return False
        if not self.auto_connect_enabled:
            logger.info("auto-connect not enabled, connect from the device page first")
            return False
        return self.attempt_connection()

    def start(self) -> bool:
        """Enable auto-connect and connect unless already polling."""

        set_flag(self.store, AUTO_CONNECT_KEY)
        if self.scheduler.running:
            return True
        return self.attempt_connection()

    def stop(self) -> None:
        clear_flag(self.store, AUTO_CONNECT_KEY)
        self._halt()

    def close(self) -> None:
        self.scheduler.stop()
        self._session.close()

    def attempt_connection(self) -> bool:
        if not has_credentials(self.store):
            logger.info("no credentials, skipping connection attempt")
            return False
        if not self.auto_connect_enabled:
            logger.info("auto-connect disabled")
            return False

        logger.info("attempting device connection via proxy")
        outcome = self._transport.fetch("connect")
        error = outcome.error
        if error is None and not acknowledges(outcome.body):
            error = ProtocolMismatch("device did not confirm connection")
        if error is not None:
            logger.warning(
                "initial connection failed: %s, will retry on next page visit or manual start",
                failure_reason(error),
                extra={"fields": {"error_kind": error.kind}},
            )
            return False

        self.machine.poll_succeeded()
        self._consecutive_failures = 0
        self.scheduler.set_period(self._current_period())
        self.scheduler.start(immediate=True)
        return True

    def on_visibility_change(self, *, hidden: bool) -> None:
        self._hidden = hidden
        if hidden:
            if self.scheduler.running:
                self.scheduler.set_period(self.config.hidden_poll_interval_s)
                logger.info("page hidden, polling every %.1fs", self.config.hidden_poll_interval_s)
            return

        if self.scheduler.running:
            self.scheduler.set_period(self.config.poll_interval_s)
            logger.info("page visible, polling every %.1fs", self.config.poll_interval_s)
        elif self.auto_connect_enabled and has_credentials(self.store):
            self.scheduler.set_period(self._current_period())
            self.scheduler.start()

    def tick(self) -> None:
        if not has_credentials(self.store):
            logger.info("credentials gone, stopping polling")
            self._halt()
            return
        if not self.auto_connect_enabled:
            logger.info("auto-connect disabled, stopping polling")
            self._halt()
            return

        generation = self.scheduler.generation
        self._poll_count += 1
        poll_no = self._poll_count

        outcome = self._transport.fetch("readings")
        if generation != self.scheduler.generation:
            logger.debug("poll #%d result discarded, polling was stopped", poll_no)
            return

        if outcome.error is not None:
            self._record_failure(failure_reason(outcome.error), error_kind=outcome.error.kind, poll_no=poll_no)
            return

        self._consecutive_failures = 0
        self.machine.poll_succeeded()

        reading = normalize(outcome.body)
        if should_forward(reading) and poll_no % POLL_LOG_EVERY == 0:
            logger.info(
                "poll #%d heart_rate=%s spo2=%s",
                poll_no,
                reading.heart_rate,
                reading.spo2,
                extra={"fields": {"poll": poll_no, "transport_mode": self._transport.mode.value}},
            )
        self._forwarder.forward(reading, user_id=resolve_user_id(self.store.get(USER_ID_KEY)))

    def _record_failure(self, reason: str, *, error_kind: str, poll_no: int) -> None:
        if self.machine.connected:
            logger.warning(
                "connection lost: %s",
                reason,
                extra={"fields": {"poll": poll_no, "error_kind": error_kind}},
            )
        self.machine.poll_failed(reason)

        self._consecutive_failures += 1
        if self._consecutive_failures >= self.config.max_consecutive_failures:
            logger.error(
                "max retries (%d) reached, disabling auto-connect",
                self.config.max_consecutive_failures,
            )
            self.scheduler.stop()
            clear_flag(self.store, AUTO_CONNECT_KEY)

    def _current_period(self) -> float:
        if self._hidden:
            return self.config.hidden_poll_interval_s
        return self.config.poll_interval_s

    def _halt(self) -> None:
        self.scheduler.stop()
        self.machine.disconnect()

    def _token(self) -> str | None:
        return read_token(self.store)
