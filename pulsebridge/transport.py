from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping

import requests

from .config import SyncConfig

logger = logging.getLogger("pulsebridge.transport")

ENDPOINT_KINDS = frozenset({"connect", "readings"})

TokenFn = Callable[[], str | None]


class TransportMode(str, Enum):
    DIRECT = "direct"
    PROXIED = "proxied"


class TransportError(RuntimeError):
    """Base class for device/backend round-trip failures."""

    kind = "transport_error"


class NetworkUnreachable(TransportError):
    """Connection error, timeout, or a non-2xx status."""

    kind = "network_unreachable"


class InvalidResponseBody(TransportError):
    """The body could not be parsed as JSON."""

    kind = "invalid_response_body"


class ProtocolMismatch(TransportError):
    """JSON parsed but the connect request was not acknowledged."""

    kind = "protocol_mismatch"


@dataclass(frozen=True)
class FetchOutcome:
    """Result of one fetch plus the transport mode the caller should commit."""

    mode: TransportMode
    body: Any = None
    error: TransportError | None = None
    fell_back: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


def request_headers(config: SyncConfig, token: str | None) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {token or ''}",
        config.tunnel_header: config.tunnel_header_value,
    }


def endpoint_url(config: SyncConfig, mode: TransportMode, kind: str) -> str:
    if kind not in ENDPOINT_KINDS:
        raise ValueError(f"unknown device endpoint {kind!r}")
    base = config.device_url if mode is TransportMode.DIRECT else config.proxy_base_url
    return f"{base.rstrip('/')}/{kind}"


def request_json(
    session: requests.Session,
    method: str,
    url: str,
    *,
    headers: Mapping[str, str],
    timeout_s: float,
    json_body: Mapping[str, Any] | None = None,
) -> Any:
    """Issue one request and return the decoded JSON body.

    The body is decoded before the status is checked, so an HTML error page
    from a proxy surfaces as InvalidResponseBody.
    """

    try:
        resp = session.request(method, url, headers=dict(headers), json=json_body, timeout=timeout_s)
    except requests.RequestException as exc:
        raise NetworkUnreachable(str(exc) or type(exc).__name__) from exc

    text = resp.text
    try:
        data = json.loads(text)
    except ValueError as exc:
        logger.error("invalid JSON response from %s: %r", url, text[:200])
        raise InvalidResponseBody("Invalid JSON") from exc

    if not 200 <= resp.status_code < 300:
        raise NetworkUnreachable(f"HTTP {resp.status_code} from {url}")
    return data


def fetch_raw(
    session: requests.Session,
    *,
    config: SyncConfig,
    token: str | None,
    mode: TransportMode,
    kind: str,
) -> FetchOutcome:
    """Fetch a device endpoint, falling back from direct to proxied once.

    Shared state is never touched here; the returned outcome carries the mode
    to commit.
    """

    url = endpoint_url(config, mode, kind)
    headers = request_headers(config, token)
    try:
        body = request_json(session, "GET", url, headers=headers, timeout_s=config.request_timeout_s)
        return FetchOutcome(mode=mode, body=body)
    except TransportError as exc:
        if mode is not TransportMode.DIRECT:
            return FetchOutcome(mode=mode, error=exc)
        logger.info(
            "direct %s failed (%s), switching to proxy",
            kind,
            exc,
            extra={"fields": {"kind": kind, "error_kind": exc.kind}},
        )

    proxied = TransportMode.PROXIED
    url = endpoint_url(config, proxied, kind)
    try:
        body = request_json(session, "GET", url, headers=headers, timeout_s=config.request_timeout_s)
    except TransportError as exc:
        return FetchOutcome(mode=proxied, error=exc, fell_back=True)
    return FetchOutcome(mode=proxied, body=body, fell_back=True)


def acknowledges(body: Any) -> bool:
    """Connect responses acknowledge with status=connected or any truthy JSON value."""

    if isinstance(body, Mapping):
        return True
    if isinstance(body, list):
        return True
    return bool(body)


class TransportSelector:
    """Session-scoped direct/proxied selection.

    Once the proxy has been needed the selector stays on it; local-network
    reachability is not checked again for the rest of the session.
    """

    def __init__(
        self,
        session: requests.Session,
        config: SyncConfig,
        *,
        token_fn: TokenFn,
        mode: TransportMode = TransportMode.DIRECT,
    ) -> None:
        self._session = session
        self._config = config
        self._token_fn = token_fn
        self._mode = mode

    @property
    def mode(self) -> TransportMode:
        return self._mode

    def fetch(self, kind: str) -> FetchOutcome:
        outcome = fetch_raw(
            self._session,
            config=self._config,
            token=self._token_fn(),
            mode=self._mode,
            kind=kind,
        )
        if outcome.mode is not self._mode:
            logger.info("transport mode %s -> %s", self._mode.value, outcome.mode.value)
        self._mode = outcome.mode
        return outcome
