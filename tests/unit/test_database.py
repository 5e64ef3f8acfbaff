"""Unit tests for the SQLite credential store."""

import sqlite3
import time
from unittest.mock import patch

import pytest

from warden.web.database import Database, PersistenceError
from warden.web.oauth import OAuthCredentials


def _new_creds(access="new-access", expires_in_ms=8 * 3_600_000):
    return OAuthCredentials(
        access_token=access,
        refresh_token="new-refresh",
        expires_at=int(time.time() * 1000) + expires_in_ms,
        scopes=["user:inference"],
    )


def test_create_and_get_account(db, oauth_creds):
    creds = oauth_creds(60_000)
    acct = db.create_account("primary", "ANTHROPIC_OAUTH", creds)

    fetched = db.get_account(acct["id"])
    assert fetched["name"] == "primary"
    assert fetched["kind"] == "ANTHROPIC_OAUTH"
    assert fetched["status"] == "ACTIVE"
    assert fetched["credentials"] == creds
    assert fetched["health_status"] is None
    assert fetched["is_deleted"] is False


def test_create_rejects_unknown_kind(db):
    with pytest.raises(ValueError):
        db.create_account("x", "NOT_A_KIND", {})


def test_list_eligible_filters_kind_and_status(db, oauth_creds):
    a = db.create_account("a", "ANTHROPIC_OAUTH", oauth_creds(60_000))
    db.create_account("b", "ANTHROPIC_OAUTH", oauth_creds(60_000), status="FAILED")
    db.create_account("c", "ANTHROPIC_OAUTH", oauth_creds(60_000), status="PENDING")
    db.create_account("d", "ANTHROPIC_API", {"type": "ANTHROPIC_API", "apiKey": "k"})
    deleted = db.create_account("e", "ANTHROPIC_OAUTH", oauth_creds(60_000))
    db.delete_account(deleted["id"])

    eligible = db.list_eligible_accounts()

    assert [e["id"] for e in eligible] == [a["id"]]
    assert eligible[0]["credentials"]["type"] == "ANTHROPIC_OAUTH"


def test_persist_refresh_writes_full_token_set(db, oauth_creds):
    acct = db.create_account("a", "ANTHROPIC_OAUTH", oauth_creds(60_000), status="FAILED")
    new = _new_creds()

    db.persist_refresh(acct["id"], new)

    stored = db.get_account(acct["id"])
    assert stored["status"] == "ACTIVE"
    assert stored["credentials"]["accessToken"] == "new-access"
    assert stored["credentials"]["refreshToken"] == "new-refresh"
    assert stored["credentials"]["expiresAt"] == new.expires_at
    assert stored["health_status"]["state"] == "ok"
    assert stored["last_refresh_check"] is not None
    assert stored["last_used_at"] is not None


def test_persist_refresh_missing_account_raises(db):
    with pytest.raises(PersistenceError):
        db.persist_refresh(999, _new_creds())


def test_persist_refresh_sqlite_error_raises(db, oauth_creds):
    """sqlite errors surface as PersistenceError and the row is unchanged."""
    acct = db.create_account("a", "ANTHROPIC_OAUTH", oauth_creds(60_000))

    with patch.object(db, "_get_connection", side_effect=sqlite3.OperationalError("locked")):
        with pytest.raises(PersistenceError, match="locked"):
            db.persist_refresh(acct["id"], _new_creds())

    assert db.get_account(acct["id"])["credentials"] == acct["credentials"]


def test_mark_failed_records_health(db, oauth_creds):
    acct = db.create_account("a", "ANTHROPIC_OAUTH", oauth_creds(60_000))

    db.mark_failed(acct["id"], "Refresh token expired or revoked (invalid_grant)")

    stored = db.get_account(acct["id"])
    assert stored["status"] == "FAILED"
    assert stored["health_status"]["state"] == "error"
    assert stored["health_status"]["message"] == (
        "Refresh token expired or revoked (invalid_grant)"
    )
    assert stored["last_refresh_check"] is not None
    assert stored["credentials"] == acct["credentials"]


def test_reactivate_only_moves_failed(db, oauth_creds):
    failed = db.create_account("a", "ANTHROPIC_OAUTH", oauth_creds(60_000), status="FAILED")
    inactive = db.create_account(
        "b", "ANTHROPIC_OAUTH", oauth_creds(60_000), status="INACTIVE"
    )

    assert db.reactivate_account(failed["id"]) is True
    assert db.reactivate_account(inactive["id"]) is False
    assert db.get_account(failed["id"])["status"] == "ACTIVE"
    assert db.get_account(inactive["id"])["status"] == "INACTIVE"


def test_restore_credentials_keeps_status(db, oauth_creds):
    acct = db.create_account("a", "ANTHROPIC_OAUTH", oauth_creds(60_000), status="FAILED")
    restored = _new_creds().model_dump(by_alias=True)

    assert db.restore_credentials(acct["id"], restored) is True

    stored = db.get_account(acct["id"])
    assert stored["credentials"]["accessToken"] == "new-access"
    assert stored["status"] == "FAILED"


def test_reopen_keeps_data(tmp_path, oauth_creds):
    path = str(tmp_path / "nested" / "warden.db")
    first = Database(path)
    acct = first.create_account("a", "ANTHROPIC_OAUTH", oauth_creds(60_000))
    first.close()

    second = Database(path)
    try:
        assert second.get_account(acct["id"])["name"] == "a"
    finally:
        second.close()
