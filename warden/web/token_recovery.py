"""Crash-safe persistence for refreshed tokens.

If the store write fails after the provider already rotated the refresh
token, the old token on record is dead and the new one exists only in
memory.  We write the new token set to a recovery file so it survives a
crash or restart.  On next startup, apply_token_recovery() reads it and
patches the store.

The file holds a list of entries keyed by account id, so several
accounts failing in the same audit pass do not overwrite each other.
"""

import json
import logging
import os
import sys
import tempfile
import threading
import time
from pathlib import Path
from typing import Optional

from warden.web.oauth import CredentialValidationError, OAuthCredentials, parse_oauth_credentials

logger = logging.getLogger("warden.token_recovery")

# Entries older than this are ignored on startup
RECOVERY_MAX_AGE = 3600

_DEFAULT_RECOVERY_PATH = Path.home() / ".warden" / ".token_recovery.json"

# Serializes read-modify-write of the recovery file within this process
_recovery_lock = threading.Lock()


def _safe_replace(src: str, dst: str, *, retries: int = 3, delay: float = 0.1):
    """os.replace() with retry for Windows PermissionError."""
    for attempt in range(retries):
        try:
            os.replace(src, dst)
            return
        except PermissionError:
            if sys.platform != "win32" or attempt == retries - 1:
                raise
            time.sleep(delay * (2 ** attempt))


def _safe_remove(path: Path):
    """Remove a file, ignoring errors."""
    try:
        path.unlink()
    except OSError:
        pass


def _read_entries(path: Path) -> list[dict]:
    if not path.exists() or path.is_symlink():
        return []
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Cannot read token recovery file: %s", exc)
        return []
    entries = data.get("entries") if isinstance(data, dict) else None
    return [e for e in entries or [] if isinstance(e, dict)]


def _write_entries(path: Path, entries: list[dict]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=".token_recovery_tmp_",
        suffix=".json",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump({"entries": entries}, f, indent=2)
        try:
            os.chmod(tmp, 0o600)
        except OSError:
            pass
        _safe_replace(tmp, str(path))
    except Exception:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


def write_token_recovery(
    account_id: int,
    credentials: OAuthCredentials,
    path: Optional[Path] = None,
) -> bool:
    """Record tokens for *account_id* after a store write failed.

    Uses atomic write with 0o600 permissions, refuses to write through
    symlinks.  An existing entry for the same account is replaced.

    Returns True on success, False on failure.
    """
    recovery_path = Path(path) if path is not None else _DEFAULT_RECOVERY_PATH
    if recovery_path.is_symlink():
        logger.warning("Refusing to write token recovery: path is a symlink")
        return False

    entry = {
        "account_id": account_id,
        "credentials": credentials.model_dump(by_alias=True),
        "written_at": int(time.time()),
    }

    try:
        with _recovery_lock:
            entries = [
                e for e in _read_entries(recovery_path) if e.get("account_id") != account_id
            ]
            entries.append(entry)
            _write_entries(recovery_path, entries)
        logger.warning(
            "Wrote token recovery entry for account %d (store update failed)",
            account_id,
        )
        return True
    except Exception as exc:
        logger.error("Failed to write token recovery file: %s", exc)
        return False


def apply_token_recovery(db, path: Optional[Path] = None) -> int:
    """Apply recovery entries to the store, then delete the file.

    Called at startup.  Stale (older than an hour), incomplete, or
    orphaned entries are dropped.  Entries that fail to apply are kept
    for the next start.

    Returns the number of accounts restored.
    """
    recovery_path = Path(path) if path is not None else _DEFAULT_RECOVERY_PATH
    with _recovery_lock:
        if not recovery_path.exists() or recovery_path.is_symlink():
            return 0

        applied = 0
        keep: list[dict] = []
        now = time.time()
        for entry in _read_entries(recovery_path):
            account_id = entry.get("account_id")
            try:
                credentials = parse_oauth_credentials(entry.get("credentials"))
            except CredentialValidationError:
                logger.warning("Token recovery entry is incomplete, dropping")
                continue

            age = now - entry.get("written_at", 0)
            if age > RECOVERY_MAX_AGE:
                logger.warning(
                    "Token recovery entry for account %s is stale (%ds old), dropping",
                    account_id,
                    int(age),
                )
                continue

            if not account_id or not db.get_account(account_id):
                logger.warning(
                    "Token recovery: account %s not found, dropping entry", account_id
                )
                continue

            try:
                db.restore_credentials(
                    account_id, credentials.model_dump(by_alias=True)
                )
            except Exception as exc:
                logger.error(
                    "Failed to apply token recovery for account %d: %s",
                    account_id,
                    exc,
                )
                keep.append(entry)
                continue
            applied += 1
            logger.info("Applied token recovery for account %d", account_id)

        if keep:
            try:
                _write_entries(recovery_path, keep)
            except Exception as exc:
                logger.error("Failed to rewrite token recovery file: %s", exc)
        else:
            _safe_remove(recovery_path)
        return applied
