"""Unit tests for the refresh admin routes.

Builds a minimal FastAPI app around the router with app.state set by
hand, so the lifespan (and its scheduler) never runs.
"""

from unittest import mock

from fastapi import FastAPI
from fastapi.testclient import TestClient

from warden.api.routes.refresh import router
from warden.web.refresh import RefreshCoordinator


def _make_client(db, factory=None, scheduler=None, ws_registry=None):
    app = FastAPI()
    app.state.db = db
    app.state.coordinator = (
        RefreshCoordinator(db, client_factory=factory) if db is not None else None
    )
    app.state.scheduler = scheduler
    app.state.ws_registry = ws_registry
    app.include_router(router, prefix="/api")
    return TestClient(app), app


# ------------------------------------------------------------------
# POST /api/oauth/refresh
# ------------------------------------------------------------------


def test_refresh_all_returns_results(db, oauth_creds, fake_clients):
    behaviours, _, factory = fake_clients
    a1 = db.create_account("one", "ANTHROPIC_OAUTH", oauth_creds(60_000, access="a1"))
    db.create_account("two", "ANTHROPIC_OAUTH", oauth_creds(8 * 3_600_000, access="a2"))
    behaviours["a1"] = "refresh"
    client, _ = _make_client(db, factory)

    resp = client.post("/api/oauth/refresh", json={"action": "refresh-all"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["skipped"] is False
    assert body["summary"] == {"total": 2, "success": 2, "refreshed": 1, "failed": 0}
    refreshed = [r for r in body["results"] if r["accountId"] == a1["id"]][0]
    assert refreshed["refreshed"] is True
    assert refreshed["newExpiresAt"].endswith("+00:00")


def test_refresh_all_reports_skip_while_pass_runs(db, fake_clients):
    _, _, factory = fake_clients
    client, app = _make_client(db, factory)

    app.state.coordinator._pass_lock.acquire()
    try:
        resp = client.post("/api/oauth/refresh", json={"action": "refresh-all"})
    finally:
        app.state.coordinator._pass_lock.release()

    body = resp.json()
    assert body["skipped"] is True
    assert body["results"] == []


def test_refresh_all_listing_failure_is_500(db, fake_clients):
    _, _, factory = fake_clients
    client, _ = _make_client(db, factory)

    with mock.patch.object(
        db, "list_eligible_accounts", side_effect=RuntimeError("no such table")
    ):
        resp = client.post("/api/oauth/refresh", json={"action": "refresh-all"})

    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "OAUTH_REFRESH_FAILED"


def test_refresh_single(db, oauth_creds, fake_clients):
    _, calls, factory = fake_clients
    acct = db.create_account("one", "ANTHROPIC_OAUTH", oauth_creds(8 * 3_600_000, access="a1"))
    client, _ = _make_client(db, factory)

    resp = client.post(
        "/api/oauth/refresh",
        json={"action": "refresh-single", "accountId": acct["id"], "force": True},
    )

    assert resp.status_code == 200
    assert resp.json()["result"]["refreshed"] is True
    assert calls == [("a1", True)]


def test_refresh_single_requires_account_id(db, fake_clients):
    _, _, factory = fake_clients
    client, _ = _make_client(db, factory)

    resp = client.post("/api/oauth/refresh", json={"action": "refresh-single"})

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "VALIDATION_ERROR"


def test_unknown_action_is_400(db, fake_clients):
    _, _, factory = fake_clients
    client, _ = _make_client(db, factory)

    resp = client.post("/api/oauth/refresh", json={"action": "nuke-everything"})

    assert resp.status_code == 400


def test_no_store_is_503():
    client, _ = _make_client(None)

    resp = client.post("/api/oauth/refresh", json={"action": "refresh-all"})

    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "DB_UNAVAILABLE"


# ------------------------------------------------------------------
# GET /api/oauth/refresh
# ------------------------------------------------------------------


def test_status_lists_oauth_accounts(db, oauth_creds):
    db.create_account("soon", "ANTHROPIC_OAUTH", oauth_creds(10 * 60_000))
    db.create_account("key", "ANTHROPIC_API", {"type": "ANTHROPIC_API", "apiKey": "k"})
    client, _ = _make_client(db)

    resp = client.get("/api/oauth/refresh")

    assert resp.status_code == 200
    body = resp.json()
    assert body["summary"]["total"] == 1
    assert body["summary"]["expiringSoon"] == 1
    assert body["accounts"][0]["name"] == "soon"
    assert body["accounts"][0]["isExpiringSoon"] is True


# ------------------------------------------------------------------
# POST /api/accounts/{id}/refresh
# ------------------------------------------------------------------


def test_account_refresh_not_found(db, fake_clients):
    _, _, factory = fake_clients
    client, _ = _make_client(db, factory)

    resp = client.post("/api/accounts/404/refresh")

    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "NOT_FOUND"


def test_account_refresh_wrong_kind(db, fake_clients):
    _, calls, factory = fake_clients
    acct = db.create_account(
        "key", "ANTHROPIC_API", {"type": "ANTHROPIC_API", "apiKey": "k"}
    )
    client, _ = _make_client(db, factory)

    resp = client.post(f"/api/accounts/{acct['id']}/refresh")

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is False
    assert body["errorCode"] == "validation"
    assert calls == []


def test_account_refresh_force_query(db, oauth_creds, fake_clients):
    _, calls, factory = fake_clients
    acct = db.create_account("one", "ANTHROPIC_OAUTH", oauth_creds(8 * 3_600_000, access="a1"))
    client, _ = _make_client(db, factory)

    resp = client.post(f"/api/accounts/{acct['id']}/refresh?force=true")

    assert resp.json()["refreshed"] is True
    assert calls == [("a1", True)]


# ------------------------------------------------------------------
# Health and scheduler control
# ------------------------------------------------------------------


def test_health_reports_scheduler_state(db):
    scheduler = mock.MagicMock()
    scheduler.is_running = True
    scheduler.interval = 1800
    client, _ = _make_client(db, scheduler=scheduler)

    body = client.get("/api/health").json()

    assert body["status"] == "ok"
    assert body["scheduler"] == {"running": True, "interval": 1800}
    assert body["refreshing"] is False


def test_scheduler_start_and_stop(db):
    scheduler = mock.MagicMock()
    scheduler.is_running = False
    registry = mock.MagicMock()
    registry.client_count = 1
    registry.broadcast = mock.AsyncMock()
    client, _ = _make_client(db, scheduler=scheduler, ws_registry=registry)

    client.post("/api/scheduler/start")
    client.post("/api/scheduler/stop")

    scheduler.start.assert_called_once()
    scheduler.stop.assert_called_once()
    topics = [c.args[0] for c in registry.broadcast.call_args_list]
    assert topics == ["scheduler", "scheduler"]
    assert registry.broadcast.call_args_list[0].kwargs["payload"] == {"running": True}


# ------------------------------------------------------------------
# Full app wiring
# ------------------------------------------------------------------


def test_main_app_mounts_routes(db):
    """The real app serves /api/health with state set and no lifespan."""
    from warden.api.main import app

    app.state.db = db
    app.state.coordinator = RefreshCoordinator(db)
    app.state.scheduler = None
    client = TestClient(app)

    resp = client.get("/api/health")

    assert resp.status_code == 200
    assert resp.json()["scheduler"]["running"] is False


def test_main_app_error_handlers():
    """ValueError maps to 400; everything else falls through to 500."""
    from warden.api.main import app

    assert set(app.exception_handlers) >= {ValueError, Exception}
    assert FileNotFoundError not in app.exception_handlers
