"""
Exception taxonomy for the connection and webhook lifecycle.

Routes translate these into HTTP responses; background jobs log and count
them per item.
"""

from __future__ import annotations

from typing import Optional


class ConnectorError(Exception):
    """Base class for all connector errors."""


class AuthorizationError(ConnectorError):
    """Bad, expired or replayed state, or the provider denied consent."""


class TokenExchangeError(ConnectorError):
    """The authorization code could not be exchanged for tokens."""


class TokenRefreshError(ConnectorError):
    """
    Refreshing an access token failed.

    ``terminal=True`` means the refresh token itself is invalid and the user
    must re-authorize; ``terminal=False`` is transient and may be retried.
    """

    def __init__(
        self,
        message: str,
        *,
        terminal: bool,
        connection_id: Optional[str] = None,
        status: Optional[str] = None,
    ):
        super().__init__(message)
        self.terminal = terminal
        self.connection_id = connection_id
        # connection status recorded for the failure, when it changed
        self.status = status


class ConnectionNotFoundError(ConnectorError):
    pass


class ConnectionInactiveError(ConnectorError):
    """The connection exists but its status does not allow token use."""

    def __init__(self, message: str, *, status: str):
        super().__init__(message)
        self.status = status


class PlatformNotConfiguredError(ConnectorError):
    pass


class TokenDecryptionError(ConnectorError):
    pass


class WebhookSetupError(ConnectorError):
    pass


class SignatureValidationError(ConnectorError):
    pass


class SyncTriggerError(ConnectorError):
    pass


class SubscriptionNotFoundError(ConnectorError):
    pass
