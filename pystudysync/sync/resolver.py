"""Conflict resolution strategies.

All functions here are pure: they never touch the network, the change
queue or the local store, and they return the same result for the same
inputs. Re-merging a result against the same remote snapshot returns the
result unchanged.
"""

import copy
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from ..models import DataType
from ..utils import canonical_json

logger = logging.getLogger(__name__)

POINTER_FIELDS = ("currentId", "defaultId")


@dataclass
class LwwResult:
    """Result of a last-write-wins comparison."""

    data: Any
    """Chosen data"""

    source: str
    """Where the data came from ("local" or "server")"""

    has_conflict: bool
    """True whenever the versions differed"""


def _parse_time(value: Any) -> float:
    """Convert epoch milliseconds or an ISO 8601 string to epoch ms, 0 if neither."""
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and value:
        try:
            return float(value)
        except ValueError:
            pass
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return 0.0
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp() * 1000
    return 0.0


def _record_time(record: dict[str, Any], *fields: str) -> float:
    """Return the first non-zero time field of a record, 0 if none."""
    for name in fields:
        value = _parse_time(record.get(name))
        if value:
            return value
    return 0.0


def _merge_by_id(
    local_items: Any, remote_items: Any
) -> dict[Any, dict[str, Any]]:
    """Union two id-keyed lists.

    On id collision the item with the later ``updatedAt`` wins when both
    carry one; otherwise the local item wins. Items without an id are
    dropped.
    """
    if not isinstance(local_items, list):
        local_items = []
    if not isinstance(remote_items, list):
        remote_items = []

    merged: dict[Any, dict[str, Any]] = {}
    for item in remote_items:
        if isinstance(item, dict) and item.get("id") is not None:
            merged[item["id"]] = item

    for item in local_items:
        if not isinstance(item, dict) or item.get("id") is None:
            continue
        existing = merged.get(item["id"])
        if existing is None:
            merged[item["id"]] = item
            continue
        local_ts = item.get("updatedAt")
        remote_ts = existing.get("updatedAt")
        if local_ts is not None and remote_ts is not None:
            if local_ts >= remote_ts:
                merged[item["id"]] = item
        else:
            merged[item["id"]] = item

    return merged


def merge_records(local_records: Any, remote_records: Any) -> list[dict[str, Any]]:
    """Merge two record logs keyed by record id.

    Args:
        local_records: Records held locally
        remote_records: Records downloaded from the server

    Returns:
        Union of both sides sorted by ``startTime`` (or ``createdAt``),
        newest first
    """
    merged = _merge_by_id(local_records, remote_records)
    return sorted(
        merged.values(),
        key=lambda r: (-_record_time(r, "startTime", "createdAt"), str(r["id"])),
    )


def merge_collections(local_items: Any, remote_items: Any) -> list[dict[str, Any]]:
    """Merge two named collections keyed by id, oldest first."""
    merged = _merge_by_id(local_items, remote_items)
    return sorted(
        merged.values(),
        key=lambda c: (_record_time(c, "createdAt"), str(c["id"])),
    )


def merge_collection_set(local_data: Any, remote_data: Any) -> Any:
    """Merge collection containers with current/default pointers.

    Containers look like ``{"playlists": [...], "currentId": ..,
    "defaultId": ..}``. Pointers take the remote value, falling back to the
    local one when the remote did not provide it.
    """
    if not isinstance(local_data, dict) or not isinstance(remote_data, dict):
        return remote_data if remote_data is not None else local_data

    result: dict[str, Any] = {
        "playlists": merge_collections(
            local_data.get("playlists"), remote_data.get("playlists")
        )
    }
    for name in POINTER_FIELDS:
        remote_value = remote_data.get(name)
        result[name] = (
            remote_value if remote_value not in (None, "") else local_data.get(name)
        )
    return result


def last_write_wins(
    local_data: Any,
    remote_data: Any,
    local_version: int,
    remote_version: int,
) -> LwwResult:
    """Pick one side by version number.

    Equal versions mean the data agrees and the remote copy is used.
    Otherwise the side with the higher version wins and the result is
    flagged as a conflict.
    """
    if local_version == remote_version:
        return LwwResult(data=remote_data, source="server", has_conflict=False)
    if local_version > remote_version:
        return LwwResult(data=local_data, source="local", has_conflict=True)
    return LwwResult(data=remote_data, source="server", has_conflict=True)


def deep_merge(local_data: Any, remote_data: Any) -> Any:
    """Recursively merge two objects.

    Remote values win at every leaf, nested objects are merged key by key,
    and keys only present locally survive.
    """
    if not isinstance(local_data, dict):
        return copy.deepcopy(remote_data)
    if not isinstance(remote_data, dict):
        return copy.deepcopy(local_data)

    merged = copy.deepcopy(local_data)
    for key, remote_value in remote_data.items():
        if isinstance(remote_value, dict):
            merged[key] = deep_merge(local_data.get(key), remote_value)
        else:
            merged[key] = copy.deepcopy(remote_value)
    return merged


def merge_settings(
    local_data: Any,
    remote_data: Any,
    local_version: int,
    remote_version: int,
) -> Any:
    """Settings strategy: no conflict takes the remote, conflict deep-merges."""
    lww = last_write_wins(local_data, remote_data, local_version, remote_version)
    if not lww.has_conflict:
        return lww.data
    return deep_merge(local_data, remote_data)


def merge_scalar(
    local_data: Any,
    remote_data: Any,
    local_version: int,
    remote_version: int,
) -> Any:
    """Scalar strategy: plain last-write-wins."""
    return last_write_wins(local_data, remote_data, local_version, remote_version).data


_VERSIONED_STRATEGIES: dict[DataType, Callable[[Any, Any, int, int], Any]] = {
    DataType.FOCUS_SETTINGS: merge_settings,
    DataType.USER_SETTINGS: merge_settings,
    DataType.SHARE_CONFIG: merge_scalar,
}


def resolve_conflict(
    data_type: DataType,
    local_data: Any,
    remote_data: Any,
    local_version: int = 0,
    remote_version: int = 0,
) -> Any:
    """Merge a local and a remote snapshot using the data type's strategy.

    Args:
        data_type: Data type of both snapshots
        local_data: Local snapshot
        remote_data: Remote snapshot
        local_version: Version the local snapshot is based on
        remote_version: Version of the remote snapshot

    Returns:
        Merged snapshot
    """
    if data_type == DataType.FOCUS_RECORDS:
        result = merge_records(local_data, remote_data)
    elif data_type == DataType.PLAYLISTS:
        result = merge_collection_set(local_data, remote_data)
    else:
        strategy = _VERSIONED_STRATEGIES.get(data_type, merge_scalar)
        result = strategy(local_data, remote_data, local_version, remote_version)

    logger.debug(
        f"Resolved {data_type.value} (local v{local_version}, "
        f"remote v{remote_version})"
    )
    return result


def has_data_changed(old_data: Any, new_data: Any) -> bool:
    """Check whether two snapshots differ.

    Returns True when either side cannot be encoded as JSON.
    """
    try:
        return canonical_json(old_data) != canonical_json(new_data)
    except (TypeError, ValueError) as e:
        logger.debug(f"Could not compare data: {e}")
        return True


def size_of(data: Any) -> int:
    """Number of items in a snapshot, used for the full/delta decision.

    Lists count their items, collection containers count their
    ``playlists``, anything else counts as one.
    """
    if isinstance(data, list):
        return len(data)
    if isinstance(data, dict) and isinstance(data.get("playlists"), list):
        return len(data["playlists"])
    return 0 if data is None else 1
