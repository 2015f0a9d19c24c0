from __future__ import annotations

import argparse
import logging
import os
import time
from pathlib import Path
from typing import Callable

from dotenv import load_dotenv

from .background import BackgroundSyncService
from .client import SyncClient
from .config import SyncConfigError, load_sync_config_from_env, parse_bool
from .observability import configure_logging
from .storage import (
    ACCESS_TOKEN_KEY,
    AUTO_CONNECT_KEY,
    USER_ID_KEY,
    JsonFileStore,
    MissingCredentialsError,
    set_flag,
)

logger = logging.getLogger("pulsebridge.runner")


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    try:
        background_default = parse_bool(os.getenv("PULSEBRIDGE_BACKGROUND", "false"), name="PULSEBRIDGE_BACKGROUND")
    except SyncConfigError as exc:
        raise SystemExit(f"[pulsebridge] {exc}") from exc

    parser = argparse.ArgumentParser(description="Pulse-oximeter device to backend sync client")
    parser.add_argument(
        "--background",
        action="store_true",
        default=background_default,
        help="Run the auto-connecting background service instead of the foreground client",
    )
    parser.add_argument("--user-id", default=None, help="Store this user identity before starting")
    parser.add_argument("--token", default=None, help="Store this bearer token before starting")
    parser.add_argument(
        "--enable-auto-connect",
        action="store_true",
        help="Turn on the background auto-connect flag before starting",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    # Load repo-level .env (if present), then cwd overrides.
    load_dotenv()
    load_dotenv(Path.cwd() / ".env", override=True)

    args = _parse_args(argv)

    try:
        config = load_sync_config_from_env()
    except SyncConfigError as exc:
        raise SystemExit(f"[pulsebridge] invalid config: {exc}") from exc

    configure_logging(level=config.log_level_value, log_format=config.log_format)

    store = JsonFileStore(Path(config.state_path))
    if args.user_id:
        store.set(USER_ID_KEY, args.user_id)
    if args.token:
        store.set(ACCESS_TOKEN_KEY, args.token)
    if args.enable_auto_connect:
        set_flag(store, AUTO_CONNECT_KEY)

    logger.info(
        "device=%s backend=%s mode=%s state=%s",
        config.device_url,
        config.backend_url,
        "background" if args.background else "foreground",
        config.state_path,
    )

    if args.background:
        service = BackgroundSyncService(config=config, store=store)
        if not service.on_load():
            raise SystemExit("[pulsebridge] background service did not start")
        try:
            _wait(lambda: service.scheduler.running)
        finally:
            service.close()
        return

    client = SyncClient(config=config, store=store)
    try:
        resumed = client.on_load()
        if not resumed and not client.connect():
            raise SystemExit(f"[pulsebridge] connect failed: {client.error_line}")
    except MissingCredentialsError as exc:
        raise SystemExit(f"[pulsebridge] {exc}; pass --user-id and --token") from exc

    try:
        _wait(lambda: client.scheduler.running)
    finally:
        client.close()


def _wait(alive: Callable[[], bool]) -> None:
    try:
        while alive():
            time.sleep(1.0)
    except KeyboardInterrupt:
        logger.info("interrupted, stopping")


if __name__ == "__main__":
    main()
