"""Sync orchestrator.

One :class:`SyncEngine` per session owns everything a sync cycle touches:
the version store, the change queue, the protocol guard, the local data
store, the per data type status and the debounce timer. A cycle runs

    IDLE -> CHECKING_PROTOCOL -> COMPARING_VERSIONS
         -> SHORT_CIRCUIT | DOWNLOADING -> MERGING -> CHOOSING_STRATEGY
         -> UPLOADING -> DONE | CONFLICT_RETRY -> MERGING ... -> IDLE

and any state may drop to ERROR. Only one cycle runs at a time; a request
while a cycle is in flight is refused, not queued.
"""

import logging
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from typing import Any, Optional, Union

from ..api import StudySyncClient
from ..auth import AuthProvider, TokenAuth
from ..config import SyncSettings
from ..exceptions import (
    StudySyncAPIError,
    StudySyncConflictError,
    StudySyncError,
    StudySyncProtocolError,
    StudySyncValidationError,
)
from ..models import (
    ChangeOperation,
    ChangeQueueEntry,
    DataType,
    SyncErrorInfo,
    SyncOutcome,
    SyncResult,
    SyncState,
    SyncStatus,
    UploadStrategy,
)
from ..storage import KeyValueStore, LocalDataStore, SafeStore
from ..utils import LAST_SYNC_TIME_KEY, coerce_int, now_ms
from .queue import ChangeQueue
from .resolver import has_data_changed, resolve_conflict, size_of
from .timer import DebounceTimer
from .versions import ProtocolGuard, VersionStore

logger = logging.getLogger(__name__)


class SyncAbandoned(Exception):
    """Internal signal: the user logged out while a request was in flight."""


class SyncEngine:
    """Offline-first sync engine for all data types of one user."""

    def __init__(
        self,
        client: StudySyncClient,
        store: KeyValueStore,
        auth: AuthProvider,
        settings: Optional[SyncSettings] = None,
    ):
        """Initialize the engine and restore persisted state.

        Args:
            client: API client used for every network call
            store: Durable key-value store for local state
            auth: Login state; checked before a cycle and after each request
            settings: Engine tunables (defaults if not provided)
        """
        self.client = client
        self.auth = auth
        self.settings = settings or SyncSettings()

        self.store = SafeStore(store)
        self.local = LocalDataStore(self.store)
        self.versions = VersionStore(self.store)
        self.protocol = ProtocolGuard(
            self.store, min_supported=self.settings.min_protocol_version
        )
        self.queue = ChangeQueue(self.store, self.versions)
        self.timer = DebounceTimer(self.settings.debounce_delay, self._on_debounce)

        self.statuses: dict[DataType, SyncStatus] = {}
        self.is_syncing = False
        self._state = SyncState.IDLE
        self._enqueued_during_cycle = False
        self.last_sync_time: Optional[int] = (
            coerce_int(self.store.get_json(LAST_SYNC_TIME_KEY)) or None
        )

        if isinstance(auth, TokenAuth):
            auth.add_logout_listener(self.handle_logout)

    # =========================
    # State and status
    # =========================

    @property
    def state(self) -> SyncState:
        """Current state of the cycle state machine."""
        return self._state

    def _set_state(
        self, state: SyncState, data_type: Optional[DataType] = None
    ) -> None:
        if state != self._state:
            suffix = f" ({data_type.value})" if data_type else ""
            logger.debug(f"Sync state {self._state.value} -> {state.value}{suffix}")
        self._state = state

    @property
    def sync_enabled(self) -> bool:
        return self.protocol.sync_enabled

    def set_sync_enabled(self, enabled: bool) -> bool:
        """Enable or disable sync; enabling is refused on protocol mismatch."""
        applied = self.protocol.set_sync_enabled(enabled)
        if applied and not enabled:
            self.timer.cancel()
        return applied

    def get_status(self, data_type: Union[DataType, str]) -> SyncStatus:
        """Return the status of one data type.

        Raises:
            StudySyncValidationError: If the data type is unknown
        """
        data_type = DataType.parse(data_type)
        status = self.statuses.get(data_type)
        if status is None:
            status = SyncStatus(
                version=self.versions.get_local_version(data_type),
                has_local_changes=self.queue.has_pending(data_type),
            )
            self.statuses[data_type] = status
        return status

    def refusal_reason(self) -> Optional[str]:
        """Return why a cycle would be refused now, or None if it may run."""
        if not self.auth.is_authenticated():
            return "not authenticated"
        if self.protocol.mismatch:
            return "sync protocol mismatch"
        if not self.protocol.sync_enabled:
            return "sync disabled"
        if self.is_syncing:
            return "sync already in progress"
        return None

    # =========================
    # Change queue
    # =========================

    def enqueue(
        self,
        data_type: Union[DataType, str],
        data: Any,
        operation: ChangeOperation = ChangeOperation.UPDATE,
        record_id: Optional[Union[str, int]] = None,
    ) -> ChangeQueueEntry:
        """Queue a local change and arm the debounced auto-sync.

        The change is always queued. Auto-sync is only armed while the user
        is logged in and sync is enabled.

        Raises:
            StudySyncValidationError: If the data type is unknown
        """
        entry = self.queue.enqueue(data_type, data, operation, record_id)

        status = self.get_status(entry.data_type)
        status.synced = False
        status.has_local_changes = True

        if self.is_syncing:
            self._enqueued_during_cycle = True
        if self._can_auto_sync():
            self.timer.arm()
        return entry

    def queue_record_change(
        self, action: Union[ChangeOperation, str], record: dict[str, Any]
    ) -> ChangeQueueEntry:
        """Queue a change of a single focus record.

        Args:
            action: add, update or delete
            record: The record; must carry an ``id``

        Raises:
            StudySyncValidationError: If the record has no id or the action
                is unknown
        """
        if not isinstance(record, dict) or record.get("id") is None:
            raise StudySyncValidationError("Record change requires a record id")
        try:
            operation = ChangeOperation(action)
        except ValueError:
            raise StudySyncValidationError(f"Invalid record action: {action}") from None
        return self.enqueue(
            DataType.FOCUS_RECORDS, record, operation, record_id=record["id"]
        )

    def _can_auto_sync(self) -> bool:
        return (
            self.protocol.sync_enabled
            and not self.protocol.mismatch
            and self.auth.is_authenticated()
        )

    async def _on_debounce(self) -> None:
        if not self.auth.is_authenticated():
            logger.debug("Debounced sync dropped, not authenticated")
            return
        await self.process_queue()

    def handle_logout(self) -> None:
        """Cancel pending auto-sync; in-flight results are ignored."""
        self.timer.cancel()
        logger.debug("Logout: pending auto-sync cancelled")

    # =========================
    # Cycles
    # =========================

    async def sync(self, data_type: Union[DataType, str]) -> SyncResult:
        """Run one sync cycle for a data type.

        Never raises for network or API failures; those are reported in the
        returned result and in the data type's status.

        Raises:
            StudySyncValidationError: If the data type is unknown
        """
        data_type = DataType.parse(data_type)
        reason = self.refusal_reason()
        if reason:
            logger.debug(f"Sync of {data_type.value} skipped: {reason}")
            return SyncResult(
                data_type=data_type, outcome=SyncOutcome.SKIPPED, reason=reason
            )

        with self.in_flight():
            return await self._run_cycle(data_type)

    async def sync_all(
        self, data_types: Optional[Iterable[Union[DataType, str]]] = None
    ) -> list[SyncResult]:
        """Run cycles for several data types inside one in-flight window.

        Stops early on protocol mismatch or logout.

        Args:
            data_types: Types to sync (all types if not provided)

        Returns:
            One result per data type that was attempted or skipped
        """
        types = [DataType.parse(t) for t in (data_types or list(DataType))]
        reason = self.refusal_reason()
        if reason:
            logger.debug(f"Sync skipped: {reason}")
            return [
                SyncResult(data_type=t, outcome=SyncOutcome.SKIPPED, reason=reason)
                for t in types
            ]

        results: list[SyncResult] = []
        with self.in_flight():
            for data_type in types:
                result = await self._run_cycle(data_type)
                results.append(result)
                if result.outcome in (
                    SyncOutcome.PROTOCOL_MISMATCH,
                    SyncOutcome.ABANDONED,
                ):
                    break
        return results

    async def process_queue(self) -> list[SyncResult]:
        """Sync every data type that has queued changes."""
        types = self.queue.pending_types()
        if not types:
            return []
        logger.debug(f"Processing queue for {', '.join(t.value for t in types)}")
        return await self.sync_all(types)

    @contextmanager
    def in_flight(self) -> Iterator[None]:
        """Hold the single-flight flag for the duration of the block."""
        self.is_syncing = True
        self._enqueued_during_cycle = False
        try:
            yield
        finally:
            self.is_syncing = False
            self._set_state(SyncState.IDLE)
            # Changes queued mid-cycle were not part of it
            if self._enqueued_during_cycle and self._can_auto_sync():
                self.timer.arm()
            self._enqueued_during_cycle = False

    async def _run_cycle(self, data_type: DataType) -> SyncResult:
        status = self.get_status(data_type)
        try:
            return await self._cycle(data_type, status)
        except SyncAbandoned:
            logger.info(f"Sync of {data_type.value} abandoned after logout")
            return SyncResult(
                data_type=data_type,
                outcome=SyncOutcome.ABANDONED,
                reason="logged out during sync",
            )
        except StudySyncValidationError:
            self._set_state(SyncState.ERROR, data_type)
            raise
        except Exception as e:
            self._set_state(SyncState.ERROR, data_type)
            if isinstance(e, StudySyncError):
                logger.error(f"Sync of {data_type.value} failed: {e.message}")
            else:
                logger.exception(f"Unexpected error syncing {data_type.value}")
            result = SyncResult.failed(data_type, e)
            status.synced = False
            status.error = result.error
            status.has_local_changes = self.queue.has_pending(data_type)
            return result

    def check_auth(self) -> None:
        """Raise SyncAbandoned if the user logged out while a request ran."""
        if not self.auth.is_authenticated():
            raise SyncAbandoned()

    async def _cycle(self, data_type: DataType, status: SyncStatus) -> SyncResult:
        local_version = self.versions.get_local_version(data_type)
        pending = self.queue.pending_for(data_type)
        entry_ids = [entry.id for entry in pending]

        self._set_state(SyncState.CHECKING_PROTOCOL, data_type)
        check = await self.protocol.check_protocol(self.client, data_type)
        self.check_auth()
        if not check.compatible:
            error = SyncErrorInfo.from_exception(
                StudySyncProtocolError(
                    f"Server sync protocol v{check.server_version} not supported",
                    server_version=check.server_version,
                )
            )
            self._set_state(SyncState.ERROR, data_type)
            status.error = error
            return SyncResult(
                data_type=data_type,
                outcome=SyncOutcome.PROTOCOL_MISMATCH,
                error=error,
            )

        self._set_state(SyncState.COMPARING_VERSIONS, data_type)
        info = check.version_info
        if info is None:
            info = await self.client.get_version(data_type)
            self.check_auth()

        if info.version == local_version and not pending:
            self._set_state(SyncState.SHORT_CIRCUIT, data_type)
            status.synced = True
            status.version = local_version
            status.error = None
            status.has_local_changes = False
            return SyncResult(
                data_type=data_type, outcome=SyncOutcome.NOOP, version=local_version
            )

        self._set_state(SyncState.DOWNLOADING, data_type)
        remote = await self.client.get_data(data_type)
        self.check_auth()

        self._set_state(SyncState.MERGING, data_type)
        local_data = self.local.get(data_type)
        # Queued edits put the local snapshot one version ahead of its base
        local_side_version = pending[-1].base_version if pending else local_version
        server_unchanged = (
            bool(pending)
            and local_data is not None
            and remote.version == pending[0].base_version - 1
        )
        if server_unchanged:
            # Local snapshot already contains the server copy plus the edits
            logger.debug(
                f"{data_type.value}: server still at v{remote.version}, "
                f"uploading local snapshot"
            )
            merged_data = local_data
            changed = False
        else:
            merged_data = self._merge(
                data_type, local_data, remote.data, local_side_version, remote.version
            )
            changed = has_data_changed(local_data, remote.data)
        self.local.save(data_type, merged_data)

        self._set_state(SyncState.CHOOSING_STRATEGY, data_type)
        item_count = size_of(merged_data)
        if item_count <= self.settings.sync_threshold or not pending:
            strategy = UploadStrategy.FULL
        else:
            strategy = UploadStrategy.DELTA
        logger.debug(
            f"{data_type.value}: {item_count} item(s), {len(pending)} queued, "
            f"{strategy.value} upload"
        )

        self._set_state(SyncState.UPLOADING, data_type)
        new_version: Optional[int] = None
        if strategy == UploadStrategy.DELTA:
            new_version = await self._upload_delta(data_type, pending, remote.version)
            if new_version is None:
                strategy = UploadStrategy.FULL

        retried = False
        if strategy == UploadStrategy.FULL:
            new_version, merged_data, retried = await self.upload_snapshot(
                data_type, merged_data, remote.version, local_side_version
            )

        self._set_state(SyncState.DONE, data_type)
        self.commit(data_type, new_version, entry_ids)
        return SyncResult(
            data_type=data_type,
            outcome=SyncOutcome.SUCCESS,
            version=new_version,
            strategy=strategy,
            merged=changed,
            retried=retried,
            data=merged_data,
        )

    def _merge(
        self,
        data_type: DataType,
        local_data: Any,
        remote_data: Any,
        local_version: int,
        remote_version: int,
    ) -> Any:
        if remote_data is None:
            return local_data
        if local_data is None:
            return remote_data
        return resolve_conflict(
            data_type, local_data, remote_data, local_version, remote_version
        )

    async def _upload_delta(
        self,
        data_type: DataType,
        pending: list[ChangeQueueEntry],
        base_version: int,
    ) -> Optional[int]:
        """Upload queued changes; returns the new version or None on failure."""
        changes = [entry.to_delta() for entry in pending]
        try:
            result = await self.client.apply_delta(data_type, changes, base_version)
        except StudySyncValidationError:
            raise
        except StudySyncError as e:
            self.check_auth()
            logger.warning(
                f"Delta upload of {data_type.value} failed ({e.message}), "
                f"falling back to full upload"
            )
            return None
        self.check_auth()

        if not result.success or result.version is None:
            logger.warning(
                f"Delta upload of {data_type.value} rejected "
                f"({result.error or 'no version'}), falling back to full upload"
            )
            return None
        return result.version

    async def upload_snapshot(
        self,
        data_type: DataType,
        data: Any,
        base_version: int,
        local_version: int,
    ) -> tuple[int, Any, bool]:
        """Upload the full snapshot, re-merging and retrying once on conflict.

        Returns:
            Tuple of (new version, uploaded data, whether a retry happened)

        Raises:
            StudySyncConflictError: If the retry conflicts as well
            StudySyncAPIError: If the server rejects the upload
        """
        retried = False
        while True:
            result = await self.client.put_data(data_type, data, base_version)
            self.check_auth()

            if result.success:
                version = result.version if result.version is not None else base_version
                return version, data, retried

            if not result.conflict:
                raise StudySyncAPIError(result.error or "Upload rejected by server")

            if retried:
                raise StudySyncConflictError(
                    f"Upload of {data_type.value} conflicted again after retry",
                    server_data=result.server_data,
                    server_version=result.server_version,
                )

            self._set_state(SyncState.CONFLICT_RETRY, data_type)
            server_data = result.server_data
            server_version = result.server_version
            if server_data is None or server_version is None:
                snapshot = await self.client.get_data(data_type)
                self.check_auth()
                server_data = snapshot.data
                server_version = snapshot.version
            logger.info(
                f"Conflict uploading {data_type.value}: server at v{server_version}, "
                f"re-merging"
            )
            self.versions.set_local_version(data_type, server_version)

            self._set_state(SyncState.MERGING, data_type)
            data = self._merge(
                data_type, data, server_data, local_version, server_version
            )
            self.local.save(data_type, data)
            base_version = server_version
            retried = True
            self._set_state(SyncState.UPLOADING, data_type)

    def commit(
        self,
        data_type: DataType,
        version: int,
        entry_ids: Optional[Iterable[str]] = None,
    ) -> None:
        """Adopt a server-confirmed version and drop the uploaded entries.

        Args:
            data_type: Data type that was uploaded
            version: Version returned by the server
            entry_ids: Queue entries covered by the upload (all entries of
                the type if not provided)
        """
        status = self.get_status(data_type)
        self.versions.set_local_version(data_type, version)
        self.queue.dequeue_synced([data_type], entry_ids)

        synced_at = now_ms()
        self.last_sync_time = synced_at
        self.store.set_json(LAST_SYNC_TIME_KEY, synced_at)
        self.protocol.persist()

        status.synced = True
        status.version = version
        status.last_sync_time = synced_at
        status.error = None
        status.has_local_changes = self.queue.has_pending(data_type)
        logger.info(f"Synced {data_type.value} at v{version}")
