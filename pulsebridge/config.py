from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml


class SyncConfigError(ValueError):
    """Invalid sync client configuration."""


_TRUE_VALUES = {"1", "true", "yes", "y", "on"}
_FALSE_VALUES = {"0", "false", "no", "n", "off"}
_LOG_FORMATS = {"text", "json"}


@dataclass(frozen=True)
class SyncConfig:
    device_url: str = "http://192.168.100.18"
    backend_url: str = "http://localhost:8000"
    proxy_prefix: str = "/esp32"
    request_timeout_s: float = 5.0

    poll_interval_s: float = 3.0
    hidden_poll_interval_s: float = 10.0
    max_consecutive_failures: int = 3

    # Development tunnels serve an interstitial page unless this header is sent.
    tunnel_header: str = "ngrok-skip-browser-warning"
    tunnel_header_value: str = "true"

    state_path: str = "./pulsebridge_state.json"

    log_level: str = "INFO"
    log_format: str = "text"

    @property
    def proxy_base_url(self) -> str:
        return f"{self.backend_url.rstrip('/')}/{self.proxy_prefix.strip('/')}"

    @property
    def log_level_value(self) -> int:
        return int(logging.getLevelName(self.log_level.upper()))


def load_sync_config_from_env() -> SyncConfig:
    """Build config from an optional YAML file, then environment overrides."""

    raw: dict[str, Any] = {}
    origin = "env defaults"

    config_path = os.getenv("PULSEBRIDGE_CONFIG_PATH")
    if config_path:
        path = Path(config_path).expanduser()
        if not path.exists():
            raise SyncConfigError(f"PULSEBRIDGE_CONFIG_PATH does not exist: {path}")
        try:
            loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise SyncConfigError(f"failed to parse sync config at {path}: {exc}") from exc
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise SyncConfigError(f"sync config at {path} must be a YAML object")
        raw.update(loaded)
        origin = str(path)

    env_overrides = {
        "device_url": "PULSEBRIDGE_DEVICE_URL",
        "backend_url": "PULSEBRIDGE_BACKEND_URL",
        "proxy_prefix": "PULSEBRIDGE_PROXY_PREFIX",
        "request_timeout_s": "PULSEBRIDGE_REQUEST_TIMEOUT_S",
        "poll_interval_s": "PULSEBRIDGE_POLL_INTERVAL_S",
        "hidden_poll_interval_s": "PULSEBRIDGE_HIDDEN_POLL_INTERVAL_S",
        "max_consecutive_failures": "PULSEBRIDGE_MAX_CONSECUTIVE_FAILURES",
        "tunnel_header": "PULSEBRIDGE_TUNNEL_HEADER",
        "tunnel_header_value": "PULSEBRIDGE_TUNNEL_HEADER_VALUE",
        "state_path": "PULSEBRIDGE_STATE_PATH",
        "log_level": "LOG_LEVEL",
        "log_format": "LOG_FORMAT",
    }
    for key, env_name in env_overrides.items():
        value = os.getenv(env_name)
        if value is not None and value.strip():
            raw[key] = value.strip()

    return parse_sync_config(raw, origin=origin)


def parse_sync_config(raw: Mapping[str, Any], *, origin: str) -> SyncConfig:
    defaults = SyncConfig()

    unknown = sorted(set(raw) - set(SyncConfig.__dataclass_fields__))
    if unknown:
        raise SyncConfigError(f"{origin}: unknown config keys: {', '.join(unknown)}")

    device_url = _url(raw.get("device_url", defaults.device_url), key="device_url", origin=origin)
    backend_url = _url(raw.get("backend_url", defaults.backend_url), key="backend_url", origin=origin)

    proxy_prefix = str(raw.get("proxy_prefix", defaults.proxy_prefix)).strip()
    if not proxy_prefix.strip("/"):
        raise SyncConfigError(f"{origin}: proxy_prefix must be non-empty")
    if not proxy_prefix.startswith("/"):
        proxy_prefix = "/" + proxy_prefix

    log_format = str(raw.get("log_format", defaults.log_format)).strip().lower()
    if log_format not in _LOG_FORMATS:
        raise SyncConfigError(f"{origin}: log_format must be one of: {sorted(_LOG_FORMATS)}")

    log_level = str(raw.get("log_level", defaults.log_level)).strip().upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise SyncConfigError(f"{origin}: unknown log_level {log_level!r}")

    tunnel_header = str(raw.get("tunnel_header", defaults.tunnel_header)).strip()
    if not tunnel_header:
        raise SyncConfigError(f"{origin}: tunnel_header must be non-empty")

    state_path = str(raw.get("state_path", defaults.state_path)).strip()
    if not state_path:
        raise SyncConfigError(f"{origin}: state_path must be non-empty")

    return SyncConfig(
        device_url=device_url,
        backend_url=backend_url,
        proxy_prefix=proxy_prefix,
        request_timeout_s=_positive_float(raw, "request_timeout_s", defaults.request_timeout_s, origin=origin),
        poll_interval_s=_positive_float(raw, "poll_interval_s", defaults.poll_interval_s, origin=origin),
        hidden_poll_interval_s=_positive_float(
            raw, "hidden_poll_interval_s", defaults.hidden_poll_interval_s, origin=origin
        ),
        max_consecutive_failures=_positive_int(
            raw, "max_consecutive_failures", defaults.max_consecutive_failures, origin=origin
        ),
        tunnel_header=tunnel_header,
        tunnel_header_value=str(raw.get("tunnel_header_value", defaults.tunnel_header_value)),
        state_path=state_path,
        log_level=log_level,
        log_format=log_format,
    )


def parse_bool(raw: str, *, name: str) -> bool:
    norm = raw.strip().lower()
    if norm in _TRUE_VALUES:
        return True
    if norm in _FALSE_VALUES:
        return False
    raise SyncConfigError(f"{name} must be one of: {sorted(_TRUE_VALUES | _FALSE_VALUES)}")


def _url(value: Any, *, key: str, origin: str) -> str:
    text = str(value or "").strip().rstrip("/")
    if not text.startswith(("http://", "https://")):
        raise SyncConfigError(f"{origin}: {key} must be an http(s) URL")
    return text


def _positive_float(raw: Mapping[str, Any], key: str, default: float, *, origin: str) -> float:
    value = raw.get(key, default)
    if isinstance(value, bool):
        raise SyncConfigError(f"{origin}: {key} must be a number")
    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise SyncConfigError(f"{origin}: {key} must be a number") from exc
    if parsed <= 0:
        raise SyncConfigError(f"{origin}: {key} must be > 0")
    return parsed


def _positive_int(raw: Mapping[str, Any], key: str, default: int, *, origin: str) -> int:
    value = raw.get(key, default)
    if isinstance(value, bool):
        raise SyncConfigError(f"{origin}: {key} must be an integer")
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise SyncConfigError(f"{origin}: {key} must be an integer") from exc
    if parsed <= 0:
        raise SyncConfigError(f"{origin}: {key} must be > 0")
    return parsed
