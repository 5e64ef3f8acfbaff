"""Shared fixtures for warden tests."""

import time

import pytest

from warden.web.database import Database
from warden.web.oauth import OAuthCredentials, TokenCheck

HOUR_MS = 3_600_000


def _now_ms() -> int:
    return int(time.time() * 1000)


@pytest.fixture
def db(tmp_path):
    """File-backed credential store, one per test."""
    database = Database(str(tmp_path / "warden.db"))
    yield database
    database.close()


@pytest.fixture
def oauth_creds():
    """Factory for camelCase OAuth credential dicts expiring *expires_in_ms* from now."""

    def _make(expires_in_ms: int, access: str = "access-1", refresh: str = "refresh-1"):
        return {
            "type": "ANTHROPIC_OAUTH",
            "accessToken": access,
            "refreshToken": refresh,
            "expiresAt": _now_ms() + expires_in_ms,
            "scopes": ["user:inference"],
        }

    return _make


class FakeClient:
    """Stands in for OAuthClient; behaviour keyed by the account's access token.

    Behaviours:
      "valid"   -> still valid, nothing to do
      "refresh" -> new token set expiring 8h from now
      "stale"   -> rotated refresh token whose expiry moved backwards
      "reject"  -> provider said no (HTTP 401)
      anything else -> raised as RuntimeError(<behaviour>)
    """

    def __init__(self, credentials: OAuthCredentials, behaviours: dict, calls: list):
        self.credentials = credentials
        self.behaviours = behaviours
        self.calls = calls

    async def ensure_valid_token(self, force_refresh: bool = False) -> TokenCheck:
        self.calls.append((self.credentials.access_token, force_refresh))
        behaviour = self.behaviours.get(self.credentials.access_token, "valid")
        if behaviour == "valid" and not force_refresh:
            return TokenCheck(success=True, refreshed=False, credentials=self.credentials)
        if behaviour in ("valid", "refresh"):
            new = self.credentials.model_copy(
                update={
                    "access_token": self.credentials.access_token + "-new",
                    "expires_at": _now_ms() + 8 * HOUR_MS,
                }
            )
            return TokenCheck(success=True, refreshed=True, credentials=new)
        if behaviour == "stale":
            new = self.credentials.model_copy(
                update={
                    "refresh_token": "rotated",
                    "expires_at": self.credentials.expires_at - 1,
                }
            )
            return TokenCheck(success=True, refreshed=True, credentials=new)
        if behaviour == "reject":
            return TokenCheck(
                success=False, refreshed=False, error="Token revoked (HTTP 401)"
            )
        raise RuntimeError(behaviour)


@pytest.fixture
def fake_clients():
    """Returns (behaviours, calls, factory) for RefreshCoordinator(client_factory=...)."""
    behaviours: dict = {}
    calls: list = []

    def factory(credentials):
        return FakeClient(credentials, behaviours, calls)

    return behaviours, calls, factory
