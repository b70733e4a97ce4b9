"""
Credential freshness for external connections.

A run may only start with a usable bearer token. CredentialManager checks
the connection's expiry and, when it has passed, refreshes the token
through the refresher registered for the provider and stores the result.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional, Protocol

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from relsync.sync.record import parse_datetime, utcnow

if TYPE_CHECKING:
    from relsync.config.settings import Settings
    from relsync.storage.db import SyncDatabase

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
GOOGLE_PROVIDERS = ("google", "google_contacts", "google_calendar")


class CredentialError(Exception):
    """Raised when a connection's credentials are expired and cannot be refreshed."""

    pass


@dataclass
class RefreshedToken:
    """New token material returned by a refresher."""

    access_token: str
    expires_at: Optional[datetime] = None
    refresh_token: Optional[str] = None  # None keeps the stored one


class TokenRefresher(Protocol):
    def refresh(self, connection: dict[str, Any]) -> RefreshedToken: ...


class GoogleTokenRefresher:
    """
    Refreshes Google OAuth2 access tokens with the stored refresh token.

    Args:
        client_id: OAuth client id the refresh token was issued to
        client_secret: Matching client secret
        token_uri: Token endpoint
    """

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        token_uri: str = GOOGLE_TOKEN_URI,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_uri = token_uri

    def refresh(self, connection: dict[str, Any]) -> RefreshedToken:
        """
        Raises:
            CredentialError: If no OAuth client is configured or Google
                             rejects the refresh
        """
        if not self.client_id or not self.client_secret:
            raise CredentialError(
                "Cannot refresh Google token: google_client_id and "
                "google_client_secret are not configured"
            )

        creds = Credentials(
            token=connection.get("access_token"),
            refresh_token=connection.get("refresh_token"),
            token_uri=self.token_uri,
            client_id=self.client_id,
            client_secret=self.client_secret,
        )
        try:
            creds.refresh(Request())
        except (RefreshError, TransportError) as e:
            raise CredentialError(f"Failed to refresh Google token: {e}") from e

        # google-auth reports expiry as naive UTC
        return RefreshedToken(
            access_token=creds.token,
            expires_at=parse_datetime(creds.expiry) if creds.expiry else None,
            refresh_token=creds.refresh_token,
        )


class CredentialManager:
    """
    Ensures connections carry a valid token before a run.

    Usage:
        manager = CredentialManager.from_settings(db, settings)
        connection = manager.ensure_fresh(connection)
    """

    def __init__(
        self,
        db: "SyncDatabase",
        refreshers: Optional[dict[str, TokenRefresher]] = None,
    ):
        self.db = db
        self.refreshers = refreshers or {}

    @classmethod
    def from_settings(
        cls, db: "SyncDatabase", settings: Optional["Settings"] = None
    ) -> "CredentialManager":
        google = GoogleTokenRefresher(
            settings.google_client_id if settings else None,
            settings.google_client_secret if settings else None,
        )
        return cls(db, {provider: google for provider in GOOGLE_PROVIDERS})

    @staticmethod
    def is_fresh(connection: dict[str, Any]) -> bool:
        """True if the token has no expiry or expires in the future."""
        expires_at = parse_datetime(connection.get("token_expires_at"))
        return expires_at is None or expires_at > utcnow()

    def ensure_fresh(self, connection: dict[str, Any]) -> dict[str, Any]:
        """
        Return the connection with a usable access token.

        Raises:
            CredentialError: If the token is expired and there is no way to
                             refresh it, or the refresh fails
        """
        if self.is_fresh(connection):
            return connection

        connection_id = connection["id"]
        provider = connection.get("provider")
        refresher = self.refreshers.get(provider or "")
        if refresher is None or not connection.get("refresh_token"):
            raise CredentialError(
                f"Token for connection {connection_id} ({provider}) expired "
                "and cannot be refreshed"
            )

        logger.info(f"Refreshing token for connection {connection_id} ({provider})")
        token = refresher.refresh(connection)
        self.db.update_connection_tokens(
            connection_id,
            access_token=token.access_token,
            token_expires_at=token.expires_at,
            refresh_token=token.refresh_token,
        )
        refreshed = self.db.get_connection(connection_id)
        return refreshed if refreshed is not None else connection


__all__ = [
    "CredentialError",
    "CredentialManager",
    "GoogleTokenRefresher",
    "RefreshedToken",
    "TokenRefresher",
]
