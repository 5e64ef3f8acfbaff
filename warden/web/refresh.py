"""Audit-pass coordination: check every active OAuth account, refresh
tokens nearing expiry, and record the outcome per account.

Flow of one audit pass:
- Single-flight guard: a second caller while a pass runs gets ``[]``
- List ACTIVE OAuth accounts from the store
- Fan out one refresh_one() per account (bounded by a semaphore) and
  wait for every task to settle
- Convert each outcome (or stray exception) into a RefreshResult
- Log a summary and notify WebSocket listeners

refresh_one() is shared with the manual single-account refresh so the
batch and operator paths can never drift apart.

Per-account outcomes:
- NO_ACTION_NEEDED: token still valid, zero store writes
- REFRESHED: full new token set persisted, expiry strictly later
- FAILED: account marked FAILED with an error health record (except
  persistence failures, which go to the token recovery file instead)
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

from warden.web.oauth import (
    OAUTH_TYPE,
    CredentialValidationError,
    OAuthClient,
    OAuthCredentials,
    TokenCheck,
    format_duration_ms,
    parse_oauth_credentials,
)
from warden.web.token_recovery import write_token_recovery

logger = logging.getLogger("warden.refresh")

# error_code values, one per failure class
ERROR_VALIDATION = "validation"
ERROR_PROVIDER = "provider"
ERROR_PERSISTENCE = "persistence"
ERROR_NOT_FOUND = "not_found"
ERROR_INTERNAL = "internal"

EXPIRING_SOON_MS = 60 * 60 * 1000


class RefreshResult(BaseModel):
    """Externally visible result of one account's refresh attempt.

    >>> RefreshResult(account_id=7, success=True, refreshed=False).model_dump(by_alias=True, exclude_none=True)
    {'accountId': 7, 'success': True, 'refreshed': False}
    """

    model_config = ConfigDict(populate_by_name=True)

    account_id: int = Field(alias="accountId")
    success: bool
    refreshed: bool
    error: Optional[str] = None
    error_code: Optional[str] = Field(default=None, alias="errorCode")
    old_expires_at: Optional[int] = Field(default=None, alias="oldExpiresAt")
    new_expires_at: Optional[int] = Field(default=None, alias="newExpiresAt")


class OutcomeKind(str, Enum):
    NO_ACTION_NEEDED = "no_action_needed"
    REFRESHED = "refreshed"
    FAILED = "failed"


@dataclass
class RefreshOutcome:
    """What happened to one account during one attempt. Never persisted."""

    kind: OutcomeKind
    old_expires_at: Optional[int] = None
    new_expires_at: Optional[int] = None
    reason: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def no_action(cls, old_expires_at: int) -> "RefreshOutcome":
        return cls(OutcomeKind.NO_ACTION_NEEDED, old_expires_at=old_expires_at)

    @classmethod
    def refreshed(cls, old_expires_at: int, new_expires_at: int) -> "RefreshOutcome":
        return cls(
            OutcomeKind.REFRESHED,
            old_expires_at=old_expires_at,
            new_expires_at=new_expires_at,
        )

    @classmethod
    def failed(
        cls,
        reason: str,
        error_code: str,
        old_expires_at: Optional[int] = None,
    ) -> "RefreshOutcome":
        return cls(
            OutcomeKind.FAILED,
            old_expires_at=old_expires_at,
            reason=reason,
            error_code=error_code,
        )

    def to_result(self, account_id: int) -> RefreshResult:
        """
        >>> RefreshOutcome.refreshed(1, 2).to_result(5).refreshed
        True
        >>> RefreshOutcome.failed("boom", ERROR_PROVIDER).to_result(5).success
        False
        """
        return RefreshResult(
            account_id=account_id,
            success=self.kind != OutcomeKind.FAILED,
            refreshed=self.kind == OutcomeKind.REFRESHED,
            error=self.reason,
            error_code=self.error_code,
            old_expires_at=self.old_expires_at,
            new_expires_at=self.new_expires_at,
        )


def summarize(results: list[RefreshResult]) -> dict:
    """Aggregate counts for logging and API responses.

    >>> summarize([RefreshResult(account_id=1, success=True, refreshed=True),
    ...            RefreshResult(account_id=2, success=False, refreshed=False)])
    {'total': 2, 'success': 1, 'refreshed': 1, 'failed': 1}
    """
    return {
        "total": len(results),
        "success": sum(1 for r in results if r.success),
        "refreshed": sum(1 for r in results if r.refreshed),
        "failed": sum(1 for r in results if not r.success),
    }


class RefreshCoordinator:
    """Runs audit passes and single-account refreshes against a store.

    The store must provide list_eligible_accounts(), get_account(),
    persist_refresh() and mark_failed() (see warden.web.database).
    """

    def __init__(
        self,
        db,
        *,
        max_concurrency: int = 8,
        refresh_buffer: int = 3600,
        token_url: Optional[str] = None,
        client_id: Optional[str] = None,
        recovery_path: Optional[str] = None,
        client_factory: Optional[Callable[[OAuthCredentials], OAuthClient]] = None,
        events=None,
    ):
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be positive")
        self.db = db
        self.max_concurrency = max_concurrency
        self.refresh_buffer = refresh_buffer
        self.token_url = token_url
        self.client_id = client_id
        self.recovery_path = Path(recovery_path) if recovery_path else None
        self.client_factory = client_factory or self._default_client
        self.events = events
        # Non-blocking acquire makes the check-and-set atomic across threads
        self._pass_lock = threading.Lock()

    def _default_client(self, credentials: OAuthCredentials) -> OAuthClient:
        return OAuthClient(
            credentials,
            token_url=self.token_url,
            client_id=self.client_id,
            refresh_buffer=self.refresh_buffer,
        )

    @property
    def is_refreshing(self) -> bool:
        return self._pass_lock.locked()

    # ------------------------------------------------------------------
    # Audit pass
    # ------------------------------------------------------------------

    async def run_audit_pass(self) -> list[RefreshResult]:
        """Check and refresh every eligible account once.

        Returns one result per eligible account, or ``[]`` if another
        pass is already running.  Only a failure to list accounts
        propagates; per-account failures are folded into the results.
        """
        if not self._pass_lock.acquire(blocking=False):
            logger.info("Audit pass already in progress, skipping this one")
            return []
        try:
            return await self._audit_all()
        finally:
            self._pass_lock.release()

    async def check_and_refresh_all_tokens(self) -> list[RefreshResult]:
        """On-demand full audit pass, same logic the scheduler runs."""
        return await self.run_audit_pass()

    async def _audit_all(self) -> list[RefreshResult]:
        try:
            accounts = self.db.list_eligible_accounts()
        except Exception as e:
            logger.error("Audit pass aborted, could not list accounts: %s", e)
            raise

        logger.info("Audit pass started: %d active OAuth account(s)", len(accounts))
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _bounded(account: dict) -> RefreshOutcome:
            async with semaphore:
                return await self.refresh_one(account["id"], account["credentials"])

        settled = await asyncio.gather(
            *(_bounded(account) for account in accounts), return_exceptions=True
        )

        results: list[RefreshResult] = []
        for account, outcome in zip(accounts, settled):
            if isinstance(outcome, BaseException):
                logger.error(
                    "Account %s: unexpected error during refresh: %r",
                    account["id"],
                    outcome,
                )
                outcome = RefreshOutcome.failed(
                    str(outcome) or outcome.__class__.__name__, ERROR_INTERNAL
                )
            results.append(outcome.to_result(account["id"]))

        counts = summarize(results)
        logger.info(
            "Audit pass finished: %d succeeded, %d refreshed, %d failed",
            counts["success"],
            counts["refreshed"],
            counts["failed"],
        )
        await self._notify(counts)
        return results

    async def _notify(self, counts: dict) -> None:
        if self.events is None or (counts["refreshed"] == 0 and counts["failed"] == 0):
            return
        try:
            await self.events.broadcast(
                "accounts_refreshed", payload=counts, source="audit_pass"
            )
        except Exception as e:
            logger.debug("Refresh event broadcast failed (non-fatal): %s", e)

    # ------------------------------------------------------------------
    # Per-account refresh
    # ------------------------------------------------------------------

    async def refresh_one(
        self, account_id: int, credentials, *, force: bool = False
    ) -> RefreshOutcome:
        """Check one account's token and refresh it if needed."""
        try:
            creds = parse_oauth_credentials(credentials)
        except CredentialValidationError as e:
            logger.warning("Account %s: credentials rejected: %s", account_id, e)
            return RefreshOutcome.failed(f"type mismatch: {e}", ERROR_VALIDATION)

        old_expires_at = creds.expires_at
        client = self.client_factory(creds)
        logger.debug(
            "Checking account %s (expires in %s)",
            account_id,
            format_duration_ms(old_expires_at - int(time.time() * 1000)),
        )

        try:
            check = await client.ensure_valid_token(force_refresh=force)
        except Exception as e:
            check = TokenCheck(
                success=False, refreshed=False, error=str(e) or e.__class__.__name__
            )

        if not check.success:
            reason = check.error or "Unknown error"
            logger.warning("Account %s: token refresh failed: %s", account_id, reason)
            self._mark_failed(account_id, reason)
            return RefreshOutcome.failed(reason, ERROR_PROVIDER, old_expires_at)

        if not (check.refreshed and check.credentials is not None):
            return RefreshOutcome.no_action(old_expires_at)

        new_creds = check.credentials
        if new_creds.expires_at <= old_expires_at:
            reason = "Provider returned a token that does not extend expiry"
            logger.warning("Account %s: %s", account_id, reason)
            self._mark_failed(account_id, reason)
            # The provider may still have rotated the refresh token
            write_token_recovery(account_id, new_creds, self.recovery_path)
            return RefreshOutcome.failed(reason, ERROR_PROVIDER, old_expires_at)

        try:
            self.db.persist_refresh(account_id, new_creds)
        except Exception as e:
            # The provider may already have rotated the refresh token on record
            logger.error(
                "Account %s: token refreshed but store update FAILED: %s",
                account_id,
                e,
            )
            write_token_recovery(account_id, new_creds, self.recovery_path)
            return RefreshOutcome.failed(
                f"Token refreshed but could not be saved: {e}",
                ERROR_PERSISTENCE,
                old_expires_at,
            )

        logger.info("Account %s: token refreshed", account_id)
        return RefreshOutcome.refreshed(old_expires_at, new_creds.expires_at)

    def _mark_failed(self, account_id: int, reason: str) -> None:
        try:
            self.db.mark_failed(account_id, reason)
        except Exception as e:
            logger.error("Could not mark account %s as failed: %s", account_id, e)

    # ------------------------------------------------------------------
    # Manual refresh
    # ------------------------------------------------------------------

    async def refresh_token_for_account(
        self, account_id: int, *, force: bool = False
    ) -> RefreshResult:
        """Operator-triggered refresh of one account, outside the cadence.

        Does not touch the single-flight guard.
        """
        try:
            account = self.db.get_account(account_id)
        except Exception as e:
            logger.error("Manual refresh: could not load account %s: %s", account_id, e)
            return RefreshOutcome.failed(
                "Could not load account", ERROR_INTERNAL
            ).to_result(account_id)

        if not account:
            return RefreshOutcome.failed(
                "Account not found", ERROR_NOT_FOUND
            ).to_result(account_id)

        if account.get("kind") != OAUTH_TYPE:
            return RefreshOutcome.failed(
                f"type mismatch: account kind is {account.get('kind')}",
                ERROR_VALIDATION,
            ).to_result(account_id)

        try:
            outcome = await self.refresh_one(
                account_id, account.get("credentials"), force=force
            )
        except Exception as e:
            logger.error("Manual refresh of account %s failed: %r", account_id, e)
            outcome = RefreshOutcome.failed(
                str(e) or e.__class__.__name__, ERROR_INTERNAL
            )
        return outcome.to_result(account_id)


def oauth_account_status(db, now_ms: Optional[int] = None) -> dict:
    """Expiry overview of every OAuth account, for the admin view and CLI.

    >>> from warden.web.database import Database
    >>> oauth_account_status(Database(":memory:"))["summary"]
    {'total': 0, 'expired': 0, 'expiringSoon': 0, 'valid': 0}
    """
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    accounts = []
    for row in db.list_accounts(kind=OAUTH_TYPE):
        creds = row.get("credentials")
        expires_at = creds.get("expiresAt") if isinstance(creds, dict) else None
        if not isinstance(expires_at, (int, float)):
            expires_at = 0
        time_left = int(expires_at - now_ms)
        accounts.append(
            {
                "id": row["id"],
                "name": row["name"],
                "status": row["status"],
                "expiresAt": int(expires_at),
                "timeLeftMs": time_left,
                "timeLeftFormatted": format_duration_ms(time_left),
                "isExpired": time_left <= 0,
                "isExpiringSoon": 0 < time_left <= EXPIRING_SOON_MS,
                "lastRefreshCheck": row.get("last_refresh_check"),
                "updatedAt": row.get("updated_at"),
            }
        )
    return {
        "accounts": accounts,
        "summary": {
            "total": len(accounts),
            "expired": sum(1 for a in accounts if a["isExpired"]),
            "expiringSoon": sum(1 for a in accounts if a["isExpiringSoon"]),
            "valid": sum(
                1 for a in accounts if not a["isExpired"] and not a["isExpiringSoon"]
            ),
        },
    }
