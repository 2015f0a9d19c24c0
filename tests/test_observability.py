from __future__ import annotations

import json
import logging

from pulsebridge.observability import JsonFormatter, JsonLogConfig, configure_logging


def _record(name: str = "pulsebridge.client", **extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name=name,
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="poll #%d failed: %s",
        args=(4, "Invalid JSON"),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_splits_sync_context_from_fields() -> None:
    record = _record(
        fields={"poll": 4, "transport_mode": "proxied", "error_kind": "invalid_response_body", "reading_id": 9}
    )

    payload = json.loads(JsonFormatter(JsonLogConfig()).format(record))

    assert payload["severity"] == "WARNING"
    assert payload["component"] == "client"
    assert payload["message"] == "poll #4 failed: Invalid JSON"
    assert payload["service"] == "pulsebridge"
    assert payload["sync"] == {"poll": 4, "transport_mode": "proxied", "error_kind": "invalid_response_body"}
    assert payload["fields"] == {"reading_id": 9}
    assert payload["timestamp"].endswith("+00:00")


def test_json_formatter_component_for_nested_and_foreign_loggers() -> None:
    formatter = JsonFormatter(JsonLogConfig())

    nested = json.loads(formatter.format(_record("pulsebridge.background.forwarder")))
    foreign = json.loads(formatter.format(_record("apscheduler.scheduler")))

    assert nested["component"] == "background.forwarder"
    assert foreign["component"] == "apscheduler.scheduler"


def test_json_formatter_omits_empty_or_non_dict_fields() -> None:
    formatter = JsonFormatter(JsonLogConfig(service_name="bg"))

    payload = json.loads(formatter.format(_record(fields="nope")))
    assert "fields" not in payload
    assert "sync" not in payload
    assert payload["service"] == "bg"

    only_sync = json.loads(formatter.format(_record(fields={"from": "connected", "to": "disconnected"})))
    assert only_sync["sync"] == {"from": "connected", "to": "disconnected"}
    assert "fields" not in only_sync


def test_configure_logging_replaces_root_handlers() -> None:
    root = logging.getLogger()
    saved_handlers = list(root.handlers)
    saved_level = root.level
    aps = logging.getLogger("apscheduler")
    saved_aps_level = aps.level
    try:
        configure_logging(level=logging.DEBUG, log_format="json")
        configure_logging(level=logging.INFO, log_format="JSON")

        assert root.level == logging.INFO
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
        assert aps.level == logging.WARNING

        configure_logging(level=logging.INFO, log_format="text")
        assert not isinstance(root.handlers[0].formatter, JsonFormatter)
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
        aps.setLevel(saved_aps_level)
