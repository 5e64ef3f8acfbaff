"""Refresh routes -- operator-triggered token refresh and scheduler control.

Manual refreshes go through the same RefreshCoordinator.refresh_one()
the scheduler uses; only the full audit pass is single-flight.
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from warden import __version__
from warden.api.websocket import TOPIC_SCHEDULER
from warden.web.refresh import RefreshResult, oauth_account_status, summarize

router = APIRouter()


class RefreshRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: str
    account_id: Optional[int] = Field(default=None, alias="accountId")
    force: bool = False


# --- Helpers ---


def _iso_ms(value: Optional[int]) -> Optional[str]:
    """Epoch milliseconds to ISO-8601 UTC.

    >>> _iso_ms(None) is None
    True
    >>> _iso_ms(0)
    '1970-01-01T00:00:00+00:00'
    """
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).isoformat()


def _result_payload(result: RefreshResult) -> dict:
    data = result.model_dump(by_alias=True)
    data["oldExpiresAt"] = _iso_ms(result.old_expires_at)
    data["newExpiresAt"] = _iso_ms(result.new_expires_at)
    return data


def _error(status_code: int, message: str, code: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"message": message, "code": code, **extra}},
    )


def _db_unavailable():
    return _error(
        status.HTTP_503_SERVICE_UNAVAILABLE, "Credential store unavailable", "DB_UNAVAILABLE"
    )


def _get_coordinator(request: Request):
    return getattr(request.app.state, "coordinator", None)


# --- Routes ---


@router.get("/health")
async def health(request: Request):
    scheduler = getattr(request.app.state, "scheduler", None)
    coordinator = _get_coordinator(request)
    return {
        "status": "ok",
        "version": __version__,
        "scheduler": {
            "running": bool(scheduler and scheduler.is_running),
            "interval": scheduler.interval if scheduler else None,
        },
        "refreshing": bool(coordinator and coordinator.is_refreshing),
    }


@router.post("/oauth/refresh")
async def refresh_tokens(body: RefreshRequest, request: Request):
    """Run a full audit pass or refresh one account on demand."""
    coordinator = _get_coordinator(request)
    if coordinator is None:
        return _db_unavailable()

    if body.action == "refresh-all":
        already_running = coordinator.is_refreshing
        try:
            results = await coordinator.check_and_refresh_all_tokens()
        except Exception:
            return _error(
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                "Audit pass failed, see server logs",
                "OAUTH_REFRESH_FAILED",
            )
        skipped = already_running and not results
        return {
            "success": True,
            "skipped": skipped,
            "message": (
                "Audit pass already in progress, skipped"
                if skipped
                else "Audit pass complete"
            ),
            "summary": summarize(results),
            "results": [_result_payload(r) for r in results],
        }

    if body.action != "refresh-single" or body.account_id is None:
        return _error(
            status.HTTP_400_BAD_REQUEST,
            'Provide action "refresh-all", or "refresh-single" with accountId',
            "VALIDATION_ERROR",
        )

    result = await coordinator.refresh_token_for_account(
        body.account_id, force=body.force
    )
    return {
        "success": True,
        "message": f"Account {body.account_id} refresh complete",
        "result": _result_payload(result),
    }


@router.get("/oauth/refresh")
async def token_status(request: Request):
    """Expiry overview for every OAuth account."""
    db = getattr(request.app.state, "db", None)
    if db is None:
        return _db_unavailable()
    return {"success": True, **oauth_account_status(db)}


@router.post("/accounts/{account_id}/refresh")
async def refresh_account(account_id: int, request: Request, force: bool = False):
    """Single-account manual refresh. 404 when the account does not exist."""
    coordinator = _get_coordinator(request)
    if coordinator is None:
        return _db_unavailable()

    result = await coordinator.refresh_token_for_account(account_id, force=force)
    if result.error_code == "not_found":
        return _error(
            status.HTTP_404_NOT_FOUND,
            "Account not found",
            "NOT_FOUND",
            detail=f"No account with id={account_id}",
        )
    return _result_payload(result)


@router.post("/scheduler/start")
async def start_scheduler(request: Request):
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        return _db_unavailable()
    scheduler.start()
    await _announce(request, running=True)
    return {"running": scheduler.is_running}


@router.post("/scheduler/stop")
async def stop_scheduler(request: Request):
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        return _db_unavailable()
    scheduler.stop()
    await _announce(request, running=False)
    return {"running": scheduler.is_running}


async def _announce(request: Request, running: bool) -> None:
    registry = getattr(request.app.state, "ws_registry", None)
    if registry is not None and registry.client_count > 0:
        await registry.broadcast(
            TOPIC_SCHEDULER, payload={"running": running}, source="api"
        )
