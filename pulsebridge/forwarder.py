from __future__ import annotations

import logging
import time
from typing import Any, Callable, Mapping

import requests

from .config import SyncConfig
from .readings import CanonicalReading, build_payload, should_forward
from .transport import TokenFn, request_headers

logger = logging.getLogger("pulsebridge.forwarder")

MonotonicFn = Callable[[], float]


def _parse_retry_after_seconds(headers: Mapping[str, Any]) -> float | None:
    """Parse Retry-After (seconds only). Returns None if unparseable."""

    ra = headers.get("Retry-After")
    if not ra:
        return None
    try:
        return float(str(ra).strip())
    except ValueError:
        return None


class ReadingForwarder:
    """Best-effort sink for canonical readings.

    Nothing here raises to the caller: a backend outage must not stop the
    device poll loop.
    """

    def __init__(
        self,
        session: requests.Session,
        config: SyncConfig,
        *,
        token_fn: TokenFn,
        monotonic_fn: MonotonicFn | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self._session = session
        self._config = config
        self._token_fn = token_fn
        self._monotonic = monotonic_fn or time.monotonic
        self._log = log or logger
        self._suspended_until = 0.0

    @property
    def url(self) -> str:
        return f"{self._config.backend_url.rstrip('/')}/sensor-readings"

    def forward(self, reading: CanonicalReading, *, user_id: int) -> None:
        if not should_forward(reading):
            self._log.debug("skipping backend send, heart_rate and spo2 are 0 (sensor warming up?)")
            return

        token = self._token_fn()
        if not token:
            self._log.debug("no token, skipping backend send")
            return

        now = self._monotonic()
        if now < self._suspended_until:
            self._log.info(
                "backend rate limited, skipping send (%.1fs left)",
                self._suspended_until - now,
            )
            return

        payload = build_payload(reading, user_id=user_id)
        try:
            resp = self._session.post(
                self.url,
                headers=request_headers(self._config, token),
                json=payload.as_dict(),
                timeout=self._config.request_timeout_s,
            )
        except requests.RequestException as exc:
            self._log.error("backend storage failed: %r", exc)
            return

        if resp.status_code == 429:
            retry_after_s = _parse_retry_after_seconds(resp.headers)
            if retry_after_s is not None:
                self._suspended_until = now + retry_after_s
            self._log.warning(
                "backend storage rate limited (429) retry_after=%s",
                retry_after_s,
            )
            return

        if not 200 <= resp.status_code < 300:
            self._log.error("backend storage failed: %s %s", resp.status_code, resp.text[:200])
            return

        try:
            data = resp.json()
        except ValueError:
            self._log.error("backend storage returned invalid JSON: %r", resp.text[:200])
            return

        reading_id = data.get("reading_id") if isinstance(data, Mapping) else None
        self._log.info(
            "stored reading id=%s",
            reading_id,
            extra={"fields": {"reading_id": reading_id, **payload.as_dict()}},
        )
