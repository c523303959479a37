"""Durable queue of pending local mutations.

Entries collapse by key: a snapshot entry (no record id) replaces any
earlier entry for the same data type, a record entry replaces any earlier
entry for the same record. A queued delete is never replaced by a
non-delete. The queue is written to the local store after every change.
"""

import logging
from collections.abc import Iterable
from typing import Any, Optional, Union

from ..exceptions import StudySyncValidationError
from ..models import ChangeOperation, ChangeQueueEntry, DataType
from ..storage import SafeStore
from ..utils import SYNC_QUEUE_KEY
from .versions import VersionStore

logger = logging.getLogger(__name__)


class ChangeQueue:
    """Per data type collapsing change queue."""

    def __init__(self, store: SafeStore, versions: VersionStore):
        """Initialize the queue and restore persisted entries.

        Args:
            store: Local store the queue is persisted to
            versions: Version store used to compute base versions
        """
        self.store = store
        self.versions = versions
        self._entries: list[ChangeQueueEntry] = []
        self.load()

    def load(self) -> None:
        """Restore entries from the local store, skipping corrupt ones."""
        raw = self.store.get_json(SYNC_QUEUE_KEY, [])
        if not isinstance(raw, list):
            logger.warning("Ignoring malformed persisted change queue")
            raw = []

        entries = []
        for item in raw:
            try:
                entries.append(ChangeQueueEntry.from_dict(item))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logger.warning(f"Dropping corrupt queue entry: {e}")
            except StudySyncValidationError as e:
                logger.warning(f"Dropping queue entry: {e.message}")
        self._entries = entries
        logger.debug(f"Loaded {len(entries)} queued change(s)")

    def persist(self) -> None:
        self.store.set_json(SYNC_QUEUE_KEY, [e.to_dict() for e in self._entries])

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> list[ChangeQueueEntry]:
        """Snapshot of all queued entries, oldest first."""
        return list(self._entries)

    def pending_for(self, data_type: DataType) -> list[ChangeQueueEntry]:
        """Queued entries of one data type."""
        return [e for e in self._entries if e.data_type == data_type]

    def has_pending(self, data_type: Optional[DataType] = None) -> bool:
        if data_type is None:
            return bool(self._entries)
        return any(e.data_type == data_type for e in self._entries)

    def pending_types(self) -> list[DataType]:
        """Data types with queued entries, in first-queued order."""
        seen: dict[DataType, None] = {}
        for entry in self._entries:
            seen.setdefault(entry.data_type, None)
        return list(seen)

    def enqueue(
        self,
        data_type: Union[DataType, str],
        data: Any,
        operation: ChangeOperation = ChangeOperation.UPDATE,
        record_id: Optional[Union[str, int]] = None,
    ) -> ChangeQueueEntry:
        """Queue a local mutation.

        Args:
            data_type: Data type of the change
            data: JSON snapshot (or single record for record-level changes)
            operation: add, update or delete
            record_id: Record id for record-level changes

        Returns:
            The live entry for this key after collapsing. When an existing
            delete blocks the new change, that delete entry is returned.

        Raises:
            StudySyncValidationError: If the data type is unknown
        """
        data_type = DataType.parse(data_type)
        operation = ChangeOperation(operation)
        entry = ChangeQueueEntry.create(
            data_type=data_type,
            data=data,
            base_version=self.versions.get_local_version(data_type) + 1,
            operation=operation,
            record_id=record_id,
        )

        for index, existing in enumerate(self._entries):
            if existing.collapse_key != entry.collapse_key:
                continue
            if (
                existing.operation == ChangeOperation.DELETE
                and operation != ChangeOperation.DELETE
            ):
                logger.debug(
                    f"Keeping queued delete for {data_type.value}, "
                    f"ignoring {operation.value}"
                )
                return existing
            # Drop the old entry; the replacement goes to the back
            del self._entries[index]
            break

        self._entries.append(entry)
        self.persist()
        logger.debug(
            f"Queued {operation.value} for {data_type.value} "
            f"({len(self._entries)} pending)"
        )
        return entry

    def dequeue_synced(
        self,
        data_types: Iterable[DataType],
        entry_ids: Optional[Iterable[str]] = None,
    ) -> int:
        """Remove entries after a confirmed upload.

        Args:
            data_types: Data types whose upload succeeded
            entry_ids: If given, only these entries are removed; entries
                queued after the upload started stay queued

        Returns:
            Number of removed entries
        """
        types = set(data_types)
        ids = set(entry_ids) if entry_ids is not None else None

        kept = []
        for entry in self._entries:
            if entry.data_type in types and (ids is None or entry.id in ids):
                continue
            kept.append(entry)

        removed = len(self._entries) - len(kept)
        if removed:
            self._entries = kept
            self.persist()
            logger.debug(f"Dequeued {removed} synced change(s)")
        return removed

    def clear(self) -> None:
        """Drop every queued entry."""
        self._entries = []
        self.persist()
