"""Authentication state consumed by the client and the sync engine.

Token issuance and refresh live outside this package; the engine only
needs to ask whether the user is logged in and which bearer token to send.
"""

import logging
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class AuthProvider(Protocol):
    """Supplies bearer credentials and login state."""

    def get_access_token(self) -> Optional[str]: ...

    def is_authenticated(self) -> bool: ...


class TokenAuth:
    """Holds a single bearer token and notifies listeners on logout."""

    def __init__(self, access_token: Optional[str] = None):
        self._access_token = access_token
        self._logout_listeners: list[Callable[[], None]] = []

    def get_access_token(self) -> Optional[str]:
        return self._access_token

    def is_authenticated(self) -> bool:
        return bool(self._access_token)

    def login(self, access_token: str) -> None:
        """Replace the current token."""
        self._access_token = access_token
        logger.debug("Access token updated")

    def logout(self) -> None:
        """Drop the token and run logout listeners."""
        self._access_token = None
        for listener in list(self._logout_listeners):
            listener()
        logger.debug("Logged out")

    def add_logout_listener(self, listener: Callable[[], None]) -> None:
        """Register a callback run after :meth:`logout`."""
        self._logout_listeners.append(listener)
