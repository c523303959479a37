"""Configuration management for pystudysync."""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from .exceptions import StudySyncConfigError
from .utils import (
    DEFAULT_API_URL,
    DEFAULT_DEBOUNCE_DELAY,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_SYNC_THRESHOLD,
    MIN_SUPPORTED_PROTOCOL,
)

logger = logging.getLogger(__name__)


@dataclass
class SyncSettings:
    """Tunables of the sync engine."""

    sync_threshold: int = DEFAULT_SYNC_THRESHOLD
    """Collections at or below this size are uploaded in full"""

    debounce_delay: float = DEFAULT_DEBOUNCE_DELAY
    """Seconds to wait after the last queued change before auto-sync"""

    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    """Timeout in seconds for every API request"""

    min_protocol_version: int = MIN_SUPPORTED_PROTOCOL
    """Lowest server protocol version this client supports"""

    def __post_init__(self) -> None:
        if self.sync_threshold < 0:
            raise StudySyncConfigError("sync_threshold must not be negative")
        if self.debounce_delay < 0:
            raise StudySyncConfigError("debounce_delay must not be negative")
        if self.request_timeout <= 0:
            raise StudySyncConfigError("request_timeout must be positive")


class Config:
    """Configuration manager for pystudysync.

    Values are resolved in this order: environment variables, then the
    JSON config file at ``~/.config/pystudysync/config.json``, then
    built-in defaults.
    """

    def __init__(self, config_dir: Optional[Path] = None):
        """Initialize configuration.

        Args:
            config_dir: Directory holding config.json. Defaults to
                ~/.config/pystudysync/
        """
        if config_dir is None:
            config_dir = Path.home() / ".config" / "pystudysync"
        self.config_dir = config_dir
        self.config_file = config_dir / "config.json"

    def _load_file(self) -> dict[str, Any]:
        """Read the config file, returning an empty dict if unusable."""
        if not self.config_file.exists():
            return {}
        try:
            with open(self.config_file, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to read config file {self.config_file}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed config file {self.config_file}")
            return {}
        return data

    def _save_value(self, key: str, value: Any) -> None:
        data = self._load_file()
        data[key] = value
        self.config_dir.mkdir(parents=True, exist_ok=True)
        with open(self.config_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        # The file holds a bearer token
        self.config_file.chmod(0o600)
        logger.debug(f"Saved '{key}' to {self.config_file}")

    @property
    def api_url(self) -> str:
        """Base URL of the data API."""
        return (
            os.environ.get("STUDYSYNC_API_URL")
            or self._load_file().get("api_url")
            or DEFAULT_API_URL
        )

    @property
    def access_token(self) -> Optional[str]:
        """Bearer token used for API requests."""
        return os.environ.get("STUDYSYNC_TOKEN") or self._load_file().get(
            "access_token"
        )

    @property
    def state_dir(self) -> Path:
        """Directory for the local JSON store."""
        env_dir = os.environ.get("STUDYSYNC_STATE_DIR")
        if env_dir:
            return Path(env_dir)
        file_dir = self._load_file().get("state_dir")
        if file_dir:
            return Path(file_dir)
        return self.config_dir / "state"

    def get_sync_settings(self) -> SyncSettings:
        """Build engine settings from the config file.

        Raises:
            StudySyncConfigError: If a value in the file is invalid
        """
        data = self._load_file().get("sync", {})
        if not isinstance(data, dict):
            raise StudySyncConfigError("'sync' section must be an object")
        try:
            return SyncSettings(
                sync_threshold=int(data.get("sync_threshold", DEFAULT_SYNC_THRESHOLD)),
                debounce_delay=float(
                    data.get("debounce_delay", DEFAULT_DEBOUNCE_DELAY)
                ),
                request_timeout=float(
                    data.get("request_timeout", DEFAULT_REQUEST_TIMEOUT)
                ),
                min_protocol_version=int(
                    data.get("min_protocol_version", MIN_SUPPORTED_PROTOCOL)
                ),
            )
        except (TypeError, ValueError) as e:
            raise StudySyncConfigError(f"Invalid sync settings: {e}") from e

    def save_access_token(self, token: str) -> None:
        """Store the access token in the config file."""
        self._save_value("access_token", token)

    def save_api_url(self, api_url: str) -> None:
        """Store the API URL in the config file."""
        self._save_value("api_url", api_url.rstrip("/"))

    def is_configured(self) -> bool:
        """Check whether an access token is available."""
        return bool(self.access_token)

    def get_config_path(self) -> Path:
        """Return the path of the config file."""
        return self.config_file


config = Config()
