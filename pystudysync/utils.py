"""Utility functions and constants for pystudysync."""

import json
import random
import string
import time
from datetime import datetime
from typing import Any, Optional

# =============================================================================
# Constants for sync operations
# =============================================================================

# Default API endpoint
DEFAULT_API_URL: str = "http://localhost:8787/api"

# Retry configuration for transient errors
DEFAULT_MAX_RETRIES: int = 3
DEFAULT_RETRY_DELAY: float = 1.0  # seconds

# Request timeout for every API call
DEFAULT_REQUEST_TIMEOUT: float = 30.0  # seconds

# Collections at or below this size are always uploaded in full
DEFAULT_SYNC_THRESHOLD: int = 100

# Coalescing window for queued changes before auto-sync fires
DEFAULT_DEBOUNCE_DELAY: float = 3.0  # seconds

# =============================================================================
# Sync protocol
# =============================================================================

SYNC_PROTOCOL_VERSION: int = 1
MIN_SUPPORTED_PROTOCOL: int = 1
PROTOCOL_HEADER: str = "X-Sync-Protocol-Version"

# =============================================================================
# Local storage keys
# =============================================================================

SYNC_VERSION_PREFIX: str = "swm_sync_version"
SYNC_QUEUE_KEY: str = "swm_sync_queue"
LAST_SYNC_TIME_KEY: str = "swm_last_sync_time"
SYNC_PROTOCOL_KEY: str = "swm_sync_protocol"


def now_ms() -> int:
    """Return the current time as epoch milliseconds."""
    return int(time.time() * 1000)


def generate_change_id(prefix: str) -> str:
    """Generate a unique id for a queued change.

    Args:
        prefix: Usually the data type the change belongs to

    Returns:
        Id of the form ``<prefix>_<epoch ms>_<9 random chars>``

    Examples:
        >>> generate_change_id("focus_records").startswith("focus_records_")
        True
    """
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{prefix}_{now_ms()}_{suffix}"


def coerce_int(value: Any, default: int = 0) -> int:
    """Coerce a persisted value to an integer.

    Accepts ints, numeric strings and floats. Anything else (None,
    garbage strings, booleans) yields ``default``.

    Examples:
        >>> coerce_int("5")
        5
        >>> coerce_int("abc")
        0
        >>> coerce_int(None, default=-1)
        -1
    """
    if isinstance(value, bool) or value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def canonical_json(data: Any) -> str:
    """Serialize data to a stable JSON string (sorted keys, no whitespace)."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def format_timestamp(timestamp_ms: Optional[int]) -> str:
    """Format an epoch-millisecond timestamp for display.

    Args:
        timestamp_ms: Epoch milliseconds, or None/0 for "never"

    Returns:
        Local time string (e.g., "2025-01-15 10:30:00") or "never"
    """
    if not timestamp_ms:
        return "never"
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%Y-%m-%d %H:%M:%S")
