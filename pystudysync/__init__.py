"""Study Sync - offline-first sync of study data with a remote API."""

from .api import StudySyncClient
from .auth import AuthProvider, TokenAuth
from .config import Config, SyncSettings
from .exceptions import (
    StudySyncAPIError,
    StudySyncAuthenticationError,
    StudySyncConfigError,
    StudySyncConflictError,
    StudySyncError,
    StudySyncInvalidResponseError,
    StudySyncNetworkError,
    StudySyncNotFoundError,
    StudySyncPermissionError,
    StudySyncProtocolError,
    StudySyncRateLimitError,
    StudySyncServerError,
    StudySyncValidationError,
    SyncErrorKind,
)
from .models import (
    ChangeOperation,
    ChangeQueueEntry,
    DataType,
    SyncOutcome,
    SyncResult,
    SyncState,
    SyncStatus,
)
from .storage import JsonFileStore, KeyValueStore, MemoryStore
from .sync import DataSyncManager, SyncEngine

__all__ = [
    "StudySyncClient",
    "AuthProvider",
    "TokenAuth",
    "Config",
    "SyncSettings",
    "SyncEngine",
    "DataSyncManager",
    "KeyValueStore",
    "MemoryStore",
    "JsonFileStore",
    "DataType",
    "ChangeOperation",
    "ChangeQueueEntry",
    "SyncOutcome",
    "SyncResult",
    "SyncState",
    "SyncStatus",
    "SyncErrorKind",
    "StudySyncError",
    "StudySyncAPIError",
    "StudySyncAuthenticationError",
    "StudySyncConfigError",
    "StudySyncConflictError",
    "StudySyncInvalidResponseError",
    "StudySyncNetworkError",
    "StudySyncNotFoundError",
    "StudySyncPermissionError",
    "StudySyncProtocolError",
    "StudySyncRateLimitError",
    "StudySyncServerError",
    "StudySyncValidationError",
]
