from __future__ import annotations

import json
from pathlib import Path

import pytest

from pulsebridge.storage import (
    ACCESS_TOKEN_KEY,
    AUTO_CONNECT_KEY,
    LAST_CONNECTED_KEY,
    USER_ID_KEY,
    JsonFileStore,
    MemoryStore,
    MissingCredentialsError,
    clear_flag,
    get_flag,
    has_credentials,
    require_credentials,
    set_flag,
)


def test_json_file_store_persists_across_instances(tmp_path: Path) -> None:
    path = tmp_path / "state" / "pulsebridge.json"
    store = JsonFileStore(path)
    store.set(ACCESS_TOKEN_KEY, "tok")
    set_flag(store, LAST_CONNECTED_KEY)

    reopened = JsonFileStore(path)
    assert reopened.get(ACCESS_TOKEN_KEY) == "tok"
    assert get_flag(reopened, LAST_CONNECTED_KEY) is True
    assert json.loads(path.read_text(encoding="utf-8")) == {"access_token": "tok", "esp_connected": "true"}

    clear_flag(reopened, LAST_CONNECTED_KEY)
    assert JsonFileStore(path).get(LAST_CONNECTED_KEY) is None


def test_json_file_store_starts_empty_on_corrupt_file(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    path.write_text("{not json", encoding="utf-8")
    store = JsonFileStore(path)
    assert store.get(USER_ID_KEY) is None

    store.set(USER_ID_KEY, "3")
    assert JsonFileStore(path).get(USER_ID_KEY) == "3"


def test_flags_only_accept_literal_true() -> None:
    store = MemoryStore({AUTO_CONNECT_KEY: "yes"})
    assert get_flag(store, AUTO_CONNECT_KEY) is False
    set_flag(store, AUTO_CONNECT_KEY)
    assert store.get(AUTO_CONNECT_KEY) == "true"
    assert get_flag(store, AUTO_CONNECT_KEY) is True
    clear_flag(store, AUTO_CONNECT_KEY)
    clear_flag(store, AUTO_CONNECT_KEY)
    assert store.get(AUTO_CONNECT_KEY) is None


def test_require_credentials_resolves_token_and_user() -> None:
    creds = require_credentials(MemoryStore({USER_ID_KEY: "12", ACCESS_TOKEN_KEY: " tok "}))
    assert creds.token == "tok"
    assert creds.user_id == 12


@pytest.mark.parametrize(
    "initial",
    [
        {},
        {USER_ID_KEY: "12"},
        {ACCESS_TOKEN_KEY: "tok"},
        {USER_ID_KEY: "12", ACCESS_TOKEN_KEY: "   "},
        {USER_ID_KEY: "", ACCESS_TOKEN_KEY: "tok"},
    ],
)
def test_require_credentials_rejects_missing_values(initial: dict[str, str]) -> None:
    store = MemoryStore(initial)
    with pytest.raises(MissingCredentialsError):
        require_credentials(store)
    assert has_credentials(store) is False
