from .background import BackgroundSyncService
from .client import SyncClient
from .config import SyncConfig, SyncConfigError, load_sync_config_from_env
from .readings import CanonicalReading, SyncPayload, normalize, should_forward
from .state import ConnectionState, StateTransitionError, SyncStatus
from .storage import JsonFileStore, KeyValueStore, MemoryStore, MissingCredentialsError
from .transport import (
    InvalidResponseBody,
    NetworkUnreachable,
    ProtocolMismatch,
    TransportError,
    TransportMode,
)

__all__ = [
    "BackgroundSyncService",
    "CanonicalReading",
    "ConnectionState",
    "InvalidResponseBody",
    "JsonFileStore",
    "KeyValueStore",
    "MemoryStore",
    "MissingCredentialsError",
    "NetworkUnreachable",
    "ProtocolMismatch",
    "StateTransitionError",
    "SyncClient",
    "SyncConfig",
    "SyncConfigError",
    "SyncPayload",
    "SyncStatus",
    "TransportError",
    "TransportMode",
    "load_sync_config_from_env",
    "normalize",
    "should_forward",
]
