"""Version tracking and protocol compatibility.

The server owns the authoritative version of every data type; the
:class:`VersionStore` keeps a local cache of it. The :class:`ProtocolGuard`
compares the server's sync protocol against the client's supported floor
and disables sync for the session on mismatch.
"""

import logging
from typing import Optional

from ..api import StudySyncClient
from ..exceptions import StudySyncError, StudySyncValidationError
from ..models import DataType, ProtocolCheck, ProtocolState
from ..storage import SafeStore
from ..utils import (
    MIN_SUPPORTED_PROTOCOL,
    SYNC_PROTOCOL_KEY,
    SYNC_PROTOCOL_VERSION,
    SYNC_VERSION_PREFIX,
    coerce_int,
)

logger = logging.getLogger(__name__)


class VersionStore:
    """Local cache of the server version per data type."""

    def __init__(self, store: SafeStore):
        self.store = store

    @staticmethod
    def _key(data_type: DataType) -> str:
        return f"{SYNC_VERSION_PREFIX}_{data_type.value}"

    def get_local_version(self, data_type: DataType) -> int:
        """Return the cached version; missing or corrupt values read as 0."""
        return max(coerce_int(self.store.get_json(self._key(data_type))), 0)

    def set_local_version(self, data_type: DataType, version: int) -> None:
        """Cache a version received from the server."""
        self.store.set_json(self._key(data_type), coerce_int(version))


class ProtocolGuard:
    """Tracks protocol compatibility and whether sync may run."""

    def __init__(
        self,
        store: SafeStore,
        min_supported: int = MIN_SUPPORTED_PROTOCOL,
    ):
        self.store = store
        saved = self.store.get_json(SYNC_PROTOCOL_KEY)
        saved_version = coerce_int(saved) if saved is not None else None
        self.state = ProtocolState(
            negotiated_version=saved_version, min_supported=min_supported
        )
        self.sync_enabled = True

        if saved_version is not None and saved_version < min_supported:
            logger.warning(
                f"Persisted sync protocol v{saved_version} is below the supported "
                f"minimum v{min_supported}; sync disabled"
            )
            self.state.mismatch = True
            self.sync_enabled = False

    @property
    def mismatch(self) -> bool:
        return self.state.mismatch

    async def check_protocol(
        self, client: StudySyncClient, data_type: DataType
    ) -> ProtocolCheck:
        """Check the server protocol via the version endpoint.

        A missing header means compatible. Transport or API failures are
        treated as compatible as well: incompatibility is never inferred
        from a transient error.

        Args:
            client: API client
            data_type: Data type whose version endpoint is queried

        Returns:
            ProtocolCheck; ``version_info`` holds the version response when
            the request succeeded so the caller can reuse it
        """
        try:
            info = await client.get_version(data_type)
        except StudySyncValidationError:
            raise
        except StudySyncError as e:
            logger.warning(f"Protocol check failed, assuming compatible: {e}")
            return ProtocolCheck(compatible=True)

        if info.protocol_version is None:
            return ProtocolCheck(compatible=True, version_info=info)

        self.state.negotiated_version = info.protocol_version
        if info.protocol_version < self.state.min_supported:
            logger.error(
                f"Server sync protocol v{info.protocol_version} is below the "
                f"supported minimum v{self.state.min_supported}; sync disabled"
            )
            self.state.mismatch = True
            self.sync_enabled = False
            return ProtocolCheck(
                compatible=False,
                server_version=info.protocol_version,
                version_info=info,
            )

        return ProtocolCheck(
            compatible=True, server_version=info.protocol_version, version_info=info
        )

    def set_sync_enabled(self, enabled: bool) -> bool:
        """Enable or disable sync.

        Enabling is refused while a protocol mismatch holds.

        Returns:
            True if the requested state was applied
        """
        if enabled and self.state.mismatch:
            logger.warning("Sync protocol mismatch, refusing to enable sync")
            return False
        self.sync_enabled = enabled
        return True

    def persist(self, protocol_version: Optional[int] = None) -> None:
        """Record the protocol version local state was written with."""
        self.store.set_json(
            SYNC_PROTOCOL_KEY,
            protocol_version if protocol_version is not None else SYNC_PROTOCOL_VERSION,
        )
