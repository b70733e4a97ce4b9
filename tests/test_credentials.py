"""
Tests for credential freshness and token refresh.
"""

from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest
from google.auth.exceptions import RefreshError

from relsync.config.settings import Settings
from relsync.credentials import (
    GOOGLE_PROVIDERS,
    CredentialError,
    CredentialManager,
    GoogleTokenRefresher,
    RefreshedToken,
)
from relsync.storage.db import SyncDatabase
from relsync.sync.record import format_datetime, utcnow


@pytest.fixture
def db():
    database = SyncDatabase(":memory:")
    database.initialize()
    yield database
    database.close()


def expired_connection(db, provider="google", refresh_token="r1"):
    connection_id = db.create_connection(
        "user-1",
        provider,
        access_token="old",
        refresh_token=refresh_token,
        token_expires_at=utcnow() - timedelta(minutes=5),
    )
    return db.get_connection(connection_id)


class TestIsFresh:
    """Tests for expiry checks."""

    def test_no_expiry_is_fresh(self):
        assert CredentialManager.is_fresh({"token_expires_at": None})

    def test_future_expiry_is_fresh(self):
        expires = format_datetime(utcnow() + timedelta(hours=1))
        assert CredentialManager.is_fresh({"token_expires_at": expires})

    def test_past_expiry_is_stale(self):
        expires = format_datetime(utcnow() - timedelta(seconds=1))
        assert not CredentialManager.is_fresh({"token_expires_at": expires})


class TestCredentialManager:
    """Tests for ensure_fresh."""

    def test_fresh_connection_returned_unchanged(self, db):
        refresher = MagicMock()
        manager = CredentialManager(db, {"google": refresher})
        connection = {"id": 1, "provider": "google", "token_expires_at": None}
        assert manager.ensure_fresh(connection) is connection
        refresher.refresh.assert_not_called()

    def test_refresh_persists_tokens(self, db):
        connection = expired_connection(db)
        new_expiry = utcnow() + timedelta(hours=1)
        refresher = MagicMock()
        refresher.refresh.return_value = RefreshedToken(
            access_token="new", expires_at=new_expiry
        )
        manager = CredentialManager(db, {"google": refresher})

        refreshed = manager.ensure_fresh(connection)

        assert refreshed["access_token"] == "new"
        assert refreshed["refresh_token"] == "r1"
        assert refreshed["token_expires_at"] == format_datetime(new_expiry)
        assert db.get_connection(connection["id"])["access_token"] == "new"

    def test_no_refresher_for_provider(self, db):
        connection = expired_connection(db, provider="file")
        manager = CredentialManager(db, {})
        with pytest.raises(CredentialError, match="cannot be refreshed"):
            manager.ensure_fresh(connection)

    def test_no_refresh_token(self, db):
        connection = expired_connection(db, refresh_token=None)
        manager = CredentialManager(db, {"google": MagicMock()})
        with pytest.raises(CredentialError):
            manager.ensure_fresh(connection)

    def test_refresher_failure_propagates(self, db):
        connection = expired_connection(db)
        refresher = MagicMock()
        refresher.refresh.side_effect = CredentialError("revoked")
        manager = CredentialManager(db, {"google": refresher})
        with pytest.raises(CredentialError, match="revoked"):
            manager.ensure_fresh(connection)
        assert db.get_connection(connection["id"])["access_token"] == "old"

    def test_from_settings_registers_google_providers(self, db):
        settings = Settings(google_client_id="id", google_client_secret="secret")
        manager = CredentialManager.from_settings(db, settings)
        assert set(manager.refreshers) == set(GOOGLE_PROVIDERS)
        refresher = manager.refreshers["google"]
        assert isinstance(refresher, GoogleTokenRefresher)
        assert refresher.client_id == "id"


class TestGoogleTokenRefresher:
    """Tests for the google-auth backed refresher."""

    def test_requires_client_config(self):
        refresher = GoogleTokenRefresher(None, None)
        with pytest.raises(CredentialError, match="google_client_id"):
            refresher.refresh({"refresh_token": "r"})

    @patch("relsync.credentials.Credentials")
    def test_refresh_success(self, mock_credentials_class):
        creds = mock_credentials_class.return_value
        creds.token = "fresh"
        creds.expiry = datetime(2030, 1, 1, 12, 0)
        creds.refresh_token = "r2"

        token = GoogleTokenRefresher("id", "secret").refresh(
            {"access_token": "old", "refresh_token": "r1"}
        )

        assert token.access_token == "fresh"
        assert token.refresh_token == "r2"
        assert format_datetime(token.expires_at) == "2030-01-01T12:00:00+00:00"
        kwargs = mock_credentials_class.call_args.kwargs
        assert kwargs["refresh_token"] == "r1"
        assert kwargs["client_id"] == "id"
        creds.refresh.assert_called_once()

    @patch("relsync.credentials.Credentials")
    def test_refresh_rejected(self, mock_credentials_class):
        mock_credentials_class.return_value.refresh.side_effect = RefreshError(
            "invalid_grant"
        )
        with pytest.raises(CredentialError, match="invalid_grant"):
            GoogleTokenRefresher("id", "secret").refresh({"refresh_token": "r"})
