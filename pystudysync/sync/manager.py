"""General-purpose data sync manager.

Snapshot-level operations on top of a :class:`SyncEngine`: immediate
upload with offline fallback, download with merge, batch upload of the
queue and thin wrappers around the remaining endpoints. Shares the
engine's queue, version store, status and single-flight flag.
"""

import logging
from typing import Any, Union

from ..api import StudySyncClient
from ..exceptions import StudySyncError, StudySyncValidationError, SyncErrorKind
from ..models import (
    ChangeOperation,
    ChangeQueueEntry,
    DataType,
    RemoteSnapshot,
    SyncErrorInfo,
    SyncOutcome,
    SyncResult,
    UploadStrategy,
)
from ..utils import LAST_SYNC_TIME_KEY, now_ms
from .engine import SyncAbandoned, SyncEngine
from .resolver import resolve_conflict

logger = logging.getLogger(__name__)


class DataSyncManager:
    """Upload, download and batch operations for whole snapshots."""

    def __init__(self, engine: SyncEngine):
        self.engine = engine

    @property
    def client(self) -> StudySyncClient:
        return self.engine.client

    def record_change(
        self,
        data_type: Union[DataType, str],
        data: Any,
        operation: ChangeOperation = ChangeOperation.UPDATE,
    ) -> ChangeQueueEntry:
        """Save a local change and queue it for the debounced auto-sync.

        Raises:
            StudySyncValidationError: If the data type is unknown
        """
        data_type = DataType.parse(data_type)
        self.engine.local.save(data_type, data)
        return self.engine.enqueue(data_type, data, operation)

    async def upload_data(
        self, data_type: Union[DataType, str], data: Any
    ) -> SyncResult:
        """Upload a snapshot now, or queue it if that is not possible.

        On conflict the snapshot is merged with the server copy, saved
        locally and uploaded once more on top of the server version.

        Args:
            data_type: Data type to upload
            data: Full snapshot

        Returns:
            SUCCESS, QUEUED (not logged in, disabled or busy), ABANDONED or
            ERROR; on ERROR the snapshot has been queued

        Raises:
            StudySyncValidationError: If the data type is unknown
        """
        data_type = DataType.parse(data_type)
        reason = self.engine.refusal_reason()
        if reason:
            entry = self.engine.enqueue(data_type, data)
            logger.debug(f"Upload of {data_type.value} queued: {reason}")
            return SyncResult(
                data_type=data_type,
                outcome=SyncOutcome.QUEUED,
                version=entry.base_version,
                reason=reason,
            )

        status = self.engine.get_status(data_type)
        local_version = self.engine.versions.get_local_version(data_type)
        # Entries queued while the upload runs stay for the next cycle
        entry_ids = [e.id for e in self.engine.queue.pending_for(data_type)]
        try:
            with self.engine.in_flight():
                version, uploaded, retried = await self.engine.upload_snapshot(
                    data_type, data, local_version, local_version
                )
                self.engine.commit(data_type, version, entry_ids)
        except SyncAbandoned:
            self.engine.enqueue(data_type, data)
            return SyncResult(
                data_type=data_type,
                outcome=SyncOutcome.ABANDONED,
                reason="logged out during upload",
            )
        except StudySyncValidationError:
            raise
        except StudySyncError as e:
            logger.error(f"Upload of {data_type.value} failed: {e.message}")
            self.engine.enqueue(data_type, data)
            result = SyncResult.failed(data_type, e)
            status.error = result.error
            status.has_local_changes = True
            return result

        return SyncResult(
            data_type=data_type,
            outcome=SyncOutcome.SUCCESS,
            version=version,
            strategy=UploadStrategy.FULL,
            merged=retried,
            retried=retried,
            data=uploaded,
        )

    async def download_data(self, data_type: Union[DataType, str]) -> SyncResult:
        """Download the server snapshot and merge it into local data.

        An empty server copy leaves the local data as the truth.

        Returns:
            SUCCESS with ``data`` set to the resulting local snapshot,
            SKIPPED, ABANDONED or ERROR

        Raises:
            StudySyncValidationError: If the data type is unknown
        """
        data_type = DataType.parse(data_type)
        reason = self.engine.refusal_reason()
        if reason:
            return SyncResult(
                data_type=data_type, outcome=SyncOutcome.SKIPPED, reason=reason
            )

        status = self.engine.get_status(data_type)
        try:
            with self.engine.in_flight():
                remote = await self.client.get_data(data_type)
                self.engine.check_auth()
                data, merged = self._apply_remote(data_type, remote)
        except SyncAbandoned:
            return SyncResult(
                data_type=data_type,
                outcome=SyncOutcome.ABANDONED,
                reason="logged out during download",
            )
        except StudySyncValidationError:
            raise
        except StudySyncError as e:
            logger.error(f"Download of {data_type.value} failed: {e.message}")
            result = SyncResult.failed(data_type, e)
            status.error = result.error
            return result

        return SyncResult(
            data_type=data_type,
            outcome=SyncOutcome.SUCCESS,
            version=status.version,
            merged=merged,
            data=data,
        )

    def _apply_remote(
        self, data_type: DataType, remote: RemoteSnapshot
    ) -> tuple[Any, bool]:
        """Merge a downloaded snapshot into local state.

        Returns:
            Tuple of (resulting local data, whether a merge happened)
        """
        engine = self.engine
        status = engine.get_status(data_type)
        synced_at = now_ms()

        if remote.data is None:
            status.synced = True
            status.error = None
            status.last_sync_time = synced_at
            return engine.local.get(data_type), False

        local_data = engine.local.get(data_type)
        local_version = engine.versions.get_local_version(data_type)
        merged = bool(local_data) and remote.version != local_version
        if merged:
            data = resolve_conflict(
                data_type, local_data, remote.data, local_version, remote.version
            )
        else:
            data = remote.data

        engine.local.save(data_type, data)
        engine.versions.set_local_version(data_type, remote.version)
        engine.last_sync_time = synced_at
        engine.store.set_json(LAST_SYNC_TIME_KEY, synced_at)

        status.synced = True
        status.version = remote.version
        status.last_sync_time = synced_at
        status.error = None
        status.has_local_changes = engine.queue.has_pending(data_type)
        return data, merged

    async def batch_sync(self) -> list[SyncResult]:
        """Upload the queued state of every pending data type in one request.

        Types the server accepts are committed and dequeued; rejected types
        stay queued with the error recorded in their status.
        """
        engine = self.engine
        pending = engine.queue.pending_types()
        if not pending:
            return []

        reason = engine.refusal_reason()
        if reason:
            return [
                SyncResult(data_type=t, outcome=SyncOutcome.SKIPPED, reason=reason)
                for t in pending
            ]

        changes = []
        entry_ids: dict[DataType, list[str]] = {}
        versions: dict[DataType, int] = {}
        for data_type in pending:
            entries = engine.queue.pending_for(data_type)
            version = engine.versions.get_local_version(data_type)
            entry_ids[data_type] = [e.id for e in entries]
            versions[data_type] = version
            changes.append(
                {
                    "type": data_type.value,
                    "data": self._batch_payload(data_type, entries),
                    "version": version,
                }
            )

        try:
            with engine.in_flight():
                response = await self.client.batch_sync(changes, versions)
                engine.check_auth()
        except SyncAbandoned:
            return [
                SyncResult(
                    data_type=t,
                    outcome=SyncOutcome.ABANDONED,
                    reason="logged out during batch sync",
                )
                for t in pending
            ]
        except StudySyncValidationError:
            raise
        except StudySyncError as e:
            logger.error(f"Batch sync failed: {e.message}")
            results = []
            for data_type in pending:
                result = SyncResult.failed(data_type, e)
                engine.get_status(data_type).error = result.error
                results.append(result)
            return results

        results = []
        for data_type in pending:
            item = response.get(data_type)
            if item is not None and item.success and item.version is not None:
                engine.commit(data_type, item.version, entry_ids[data_type])
                results.append(
                    SyncResult(
                        data_type=data_type,
                        outcome=SyncOutcome.SUCCESS,
                        version=item.version,
                        strategy=UploadStrategy.FULL,
                    )
                )
                continue

            if item is None:
                error = SyncErrorInfo(
                    kind=SyncErrorKind.UNKNOWN_ERROR,
                    message="No result for data type in batch response",
                )
            else:
                error = SyncErrorInfo(
                    kind=(
                        SyncErrorKind.CONFLICT_ERROR
                        if item.conflict
                        else SyncErrorKind.UNKNOWN_ERROR
                    ),
                    message=item.error or "Batch upload rejected",
                )
            logger.warning(f"Batch sync of {data_type.value} failed: {error.message}")
            status = engine.get_status(data_type)
            status.error = error
            status.has_local_changes = True
            results.append(
                SyncResult(data_type=data_type, outcome=SyncOutcome.ERROR, error=error)
            )
        return results

    def _batch_payload(
        self, data_type: DataType, entries: list[ChangeQueueEntry]
    ) -> Any:
        """Snapshot to send for a data type in a batch request.

        Record-level entries only describe single records, so the local
        snapshot is sent for them.
        """
        latest = entries[-1]
        if latest.record_id is None:
            return latest.data
        return self.engine.local.get(data_type)

    async def trigger_sync(self) -> list[SyncResult]:
        """Run a full sync cycle for every data type."""
        return await self.engine.sync_all()

    async def get_all_remote(self) -> dict[DataType, RemoteSnapshot]:
        """Fetch every data type the server holds."""
        return await self.client.get_all_data()

    async def delete_remote(self, data_type: Union[DataType, str]) -> None:
        """Delete the server copy of a data type and reset its local version."""
        data_type = DataType.parse(data_type)
        await self.client.delete_data(data_type)
        self.engine.versions.set_local_version(data_type, 0)
        self.engine.get_status(data_type).version = 0
        logger.info(f"Deleted server copy of {data_type.value}")
