"""Data models for the sync engine and the remote API."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from .exceptions import StudySyncError, StudySyncValidationError, SyncErrorKind
from .utils import coerce_int, generate_change_id, now_ms


class DataType(str, Enum):
    """Independently versioned domains of user data (wire names)."""

    FOCUS_RECORDS = "focus_records"
    """Focus session records (append-heavy log)"""

    FOCUS_SETTINGS = "focus_settings"
    """Focus timer settings"""

    PLAYLISTS = "playlists"
    """Saved playlists with current/default selection"""

    USER_SETTINGS = "user_settings"
    """General user settings"""

    SHARE_CONFIG = "share_config"
    """Share card configuration"""

    @property
    def storage_key(self) -> str:
        """Local storage key holding this data type's payload."""
        return _STORAGE_KEYS[self]

    @classmethod
    def parse(cls, value: Union["DataType", str]) -> "DataType":
        """Parse a data type from its wire name.

        Args:
            value: DataType member or wire name (e.g. "focus_records")

        Returns:
            Matching DataType

        Raises:
            StudySyncValidationError: If the value is not a known data type
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            valid = [t.value for t in cls]
            raise StudySyncValidationError(
                f"Invalid data type: {value}", {"valid_types": valid}
            ) from None


_STORAGE_KEYS = {
    DataType.FOCUS_RECORDS: "swm_focus_records",
    DataType.FOCUS_SETTINGS: "swm_focus_settings",
    DataType.PLAYLISTS: "swm_playlists",
    DataType.USER_SETTINGS: "study_with_miku_settings",
    DataType.SHARE_CONFIG: "swm_share_card_config",
}


class ChangeOperation(str, Enum):
    """Kind of local mutation recorded in the change queue."""

    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


class SyncState(str, Enum):
    """States of the sync orchestrator."""

    IDLE = "idle"
    CHECKING_PROTOCOL = "checking_protocol"
    COMPARING_VERSIONS = "comparing_versions"
    SHORT_CIRCUIT = "short_circuit"
    DOWNLOADING = "downloading"
    MERGING = "merging"
    CHOOSING_STRATEGY = "choosing_strategy"
    UPLOADING = "uploading"
    CONFLICT_RETRY = "conflict_retry"
    DONE = "done"
    ERROR = "error"


class SyncOutcome(str, Enum):
    """Discriminator of :class:`SyncResult`."""

    SUCCESS = "success"
    """Data was transferred and the server confirmed the upload"""

    NOOP = "noop"
    """Versions matched and nothing was queued; no transfer happened"""

    SKIPPED = "skipped"
    """Cycle refused (not authenticated, disabled or already in flight)"""

    QUEUED = "queued"
    """Change could not be uploaded now and was put in the change queue"""

    PROTOCOL_MISMATCH = "protocol_mismatch"
    """Server protocol is no longer supported; sync is disabled"""

    ABANDONED = "abandoned"
    """User logged out while the cycle was in flight; result ignored"""

    ERROR = "error"
    """Cycle failed; the change queue was left intact"""


class UploadStrategy(str, Enum):
    """How merged data is sent to the server."""

    FULL = "full"
    DELTA = "delta"


@dataclass
class ChangeQueueEntry:
    """A pending local mutation waiting to be uploaded."""

    id: str
    """Unique entry id"""

    data_type: DataType
    """Data type the change belongs to"""

    data: Any
    """JSON snapshot of the changed data (or of a single record)"""

    base_version: int
    """Local version + 1 at the time the change was queued"""

    timestamp: int
    """Epoch milliseconds when the change was queued"""

    operation: ChangeOperation = ChangeOperation.UPDATE
    """add, update or delete"""

    record_id: Optional[Union[str, int]] = None
    """Record id for record-level changes, None for whole snapshots"""

    @classmethod
    def create(
        cls,
        data_type: DataType,
        data: Any,
        base_version: int,
        operation: ChangeOperation = ChangeOperation.UPDATE,
        record_id: Optional[Union[str, int]] = None,
    ) -> "ChangeQueueEntry":
        """Create a new entry with a fresh id and timestamp."""
        return cls(
            id=generate_change_id(data_type.value),
            data_type=data_type,
            data=data,
            base_version=base_version,
            timestamp=now_ms(),
            operation=operation,
            record_id=record_id,
        )

    @property
    def collapse_key(self) -> tuple[DataType, Optional[Union[str, int]]]:
        """Entries sharing this key collapse into one."""
        return (self.data_type, self.record_id)

    def to_delta(self) -> dict[str, Any]:
        """Convert to a change for the delta endpoint."""
        payload_key = "record" if self.record_id is not None else "data"
        return {
            "action": self.operation.value,
            payload_key: self.data,
            "timestamp": self.timestamp,
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert entry to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "data_type": self.data_type.value,
            "data": self.data,
            "base_version": self.base_version,
            "timestamp": self.timestamp,
            "operation": self.operation.value,
            "record_id": self.record_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChangeQueueEntry":
        """Create ChangeQueueEntry from dictionary.

        Raises:
            StudySyncValidationError: If the data type is unknown
            KeyError: If required fields are missing
        """
        return cls(
            id=str(data["id"]),
            data_type=DataType.parse(data["data_type"]),
            data=data.get("data"),
            base_version=coerce_int(data.get("base_version")),
            timestamp=coerce_int(data.get("timestamp")),
            operation=ChangeOperation(data.get("operation", "update")),
            record_id=data.get("record_id"),
        )


@dataclass
class SyncErrorInfo:
    """Error attached to a failed :class:`SyncResult` or :class:`SyncStatus`."""

    kind: SyncErrorKind
    message: str
    details: Any = None

    @classmethod
    def from_exception(cls, error: BaseException) -> "SyncErrorInfo":
        """Build error info from any exception."""
        if isinstance(error, StudySyncError):
            return cls(kind=error.kind, message=error.message, details=error.details)
        return cls(kind=SyncErrorKind.UNKNOWN_ERROR, message=str(error) or repr(error))


@dataclass
class SyncStatus:
    """Per data type sync status, mutated only by the engine."""

    synced: bool = False
    version: int = 0
    last_sync_time: Optional[int] = None
    error: Optional[SyncErrorInfo] = None
    has_local_changes: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert status to dictionary for JSON output."""
        return {
            "synced": self.synced,
            "version": self.version,
            "last_sync_time": self.last_sync_time,
            "error": self.error.message if self.error else None,
            "has_local_changes": self.has_local_changes,
        }


@dataclass
class ProtocolState:
    """Negotiated sync protocol state."""

    negotiated_version: Optional[int]
    """Last protocol version seen (server header or persisted state)"""

    min_supported: int
    """Lowest protocol version this client can talk to"""

    mismatch: bool = False
    """Once True, sync stays disabled for the rest of the session"""


@dataclass
class SyncResult:
    """Outcome of a sync cycle or of a single upload/download."""

    data_type: DataType
    outcome: SyncOutcome
    version: Optional[int] = None
    strategy: Optional[UploadStrategy] = None
    merged: bool = False
    retried: bool = False
    error: Optional[SyncErrorInfo] = None
    reason: Optional[str] = None
    data: Any = None

    @property
    def success(self) -> bool:
        """True for outcomes that leave local and remote consistent."""
        return self.outcome in (SyncOutcome.SUCCESS, SyncOutcome.NOOP)

    @classmethod
    def failed(cls, data_type: DataType, error: BaseException) -> "SyncResult":
        """Build an ERROR result from an exception."""
        return cls(
            data_type=data_type,
            outcome=SyncOutcome.ERROR,
            error=SyncErrorInfo.from_exception(error),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert result to dictionary for JSON output."""
        return {
            "data_type": self.data_type.value,
            "outcome": self.outcome.value,
            "success": self.success,
            "version": self.version,
            "strategy": self.strategy.value if self.strategy else None,
            "merged": self.merged,
            "retried": self.retried,
            "error": self.error.message if self.error else None,
            "error_kind": self.error.kind.value if self.error else None,
            "reason": self.reason,
        }


# =============================================================================
# API response models
# =============================================================================


@dataclass
class VersionInfo:
    """Response of ``GET /data/{type}/version``."""

    version: int
    protocol_version: Optional[int] = None
    """Value of the protocol header, None when the server omitted it"""


@dataclass
class RemoteSnapshot:
    """Response of ``GET /data/{type}``."""

    data: Any
    version: int


@dataclass
class PutResult:
    """Response of ``PUT /data/{type}``."""

    success: bool
    version: Optional[int] = None
    conflict: bool = False
    server_data: Any = None
    server_version: Optional[int] = None
    merged: bool = False
    error: Optional[str] = None

    @classmethod
    def from_api_response(cls, response: dict[str, Any]) -> "PutResult":
        """Parse the server response body."""
        if response.get("conflict"):
            return cls(
                success=False,
                conflict=True,
                server_data=response.get("serverData"),
                server_version=_optional_int(response.get("serverVersion")),
                error=response.get("error"),
            )
        return cls(
            success=bool(response.get("success")),
            version=_optional_int(response.get("version")),
            merged=bool(response.get("merged", False)),
            error=response.get("error"),
        )


@dataclass
class DeltaResult:
    """Response of ``POST /data/{type}/delta``."""

    success: bool
    version: Optional[int] = None
    server_version: Optional[int] = None
    error: Optional[str] = None


@dataclass
class BatchItemResult:
    """One data type's entry in the ``POST /data/sync`` response."""

    data_type: DataType
    success: bool
    version: Optional[int] = None
    conflict: bool = False
    error: Optional[str] = None


@dataclass
class ProtocolCheck:
    """Result of a protocol compatibility check."""

    compatible: bool
    server_version: Optional[int] = None
    version_info: Optional[VersionInfo] = field(default=None, repr=False)
    """Version response that carried the header, reusable by the caller"""


def _optional_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    return coerce_int(value)
