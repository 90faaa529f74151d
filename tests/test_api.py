import pytest
from fakes import FakeClassifier, FakeGateway, GatewayFactory, make_message
from fastapi.testclient import TestClient

from inbox_triage.api import create_app, get_classifier, get_gateway_factory, get_triage_trigger
from inbox_triage.cron import TriggerResult
from inbox_triage.database import RunHistoryRow
from inbox_triage.models import LogEntry, RunMode, TriageOutcome, utcnow
from inbox_triage.storage import list_rules, load_settings, record_log

AUTH = {"Authorization": "Bearer test-secret"}


class StubTrigger:
    def __init__(self, ok=True):
        self.ok = ok
        self.calls = []

    def __call__(self, account_id, lookback_days):
        self.calls.append((account_id, lookback_days))
        if self.ok:
            return TriggerResult(ok=True, http_status=200)
        return TriggerResult(ok=False, http_status=502, error_text="bad gateway")


@pytest.fixture
def gateways():
    return {}


@pytest.fixture
def app(config, session_factory, gateways):
    app = create_app(config, session_factory)
    app.dependency_overrides[get_gateway_factory] = lambda: GatewayFactory(gateways)
    app.dependency_overrides[get_classifier] = lambda: FakeClassifier()
    return app


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "path",
    ["/api/cron/agent-runner", "/api/jobs/run-triage", "/api/jobs/send-summaries", "/api/logs", "/api/rules"],
)
def test_protected_routes_reject_missing_or_wrong_token(client, path):
    resp = client.get(path)
    assert resp.status_code == 401
    assert resp.json() == {"error": "Unauthorized"}

    resp = client.get(path, headers={"Authorization": "Bearer nope"})
    assert resp.status_code == 401


def test_unconfigured_secret_refuses_everything(config, session_factory):
    app = create_app(config.model_copy(update={"cron_secret": None}), session_factory)
    with TestClient(app) as c:
        resp = c.get("/api/jobs/run-triage", headers=AUTH)
    assert resp.status_code == 500
    assert resp.json() == {"error": "CRON_SECRET not configured"}


# ---------------------------------------------------------------------------
# Cron runner
# ---------------------------------------------------------------------------


def test_cron_requires_app_url(config, session_factory):
    app = create_app(config.model_copy(update={"app_url": None}), session_factory)
    with TestClient(app) as c:
        resp = c.get("/api/cron/agent-runner", headers=AUTH)
    assert resp.status_code == 500
    assert resp.json() == {"error": "APP_URL not configured"}


def test_cron_runs_due_accounts_then_waits(app, client, session, account):
    trigger = StubTrigger()
    app.dependency_overrides[get_triage_trigger] = lambda: trigger
    client.post(
        "/api/settings/agent",
        json={"gmailAccountId": account.id, "timezone": "UTC", "windowStart": "00:00", "windowEnd": "23:59"},
    )

    first = client.get("/api/cron/agent-runner", headers=AUTH)
    assert first.status_code == 200
    body = first.json()
    assert body["ran"] == 1
    assert body["reasons"]["triage_ok"] == 1
    assert body["preview"][0]["gmail_account_id"] == account.id
    assert trigger.calls == [(account.id, 14)]

    second = client.get("/api/cron/agent-runner", headers=AUTH).json()
    assert second["ran"] == 0
    assert second["reasons"]["not_due"] == 1

    session.expire_all()
    assert session.query(RunHistoryRow).count() == 1


def test_cron_counts_failed_triggers(app, client, account):
    app.dependency_overrides[get_triage_trigger] = lambda: StubTrigger(ok=False)
    client.post(
        "/api/settings/agent",
        json={"gmailAccountId": account.id, "timezone": "UTC", "windowStart": "00:00", "windowEnd": "23:59"},
    )

    body = client.get("/api/cron/agent-runner", headers=AUTH).json()

    assert body["ran"] == 0
    assert body["reasons"]["triage_failed"] == 1


def test_cron_route_still_checks_token_with_overridden_trigger(app, client):
    app.dependency_overrides[get_triage_trigger] = lambda: StubTrigger()
    assert client.get("/api/cron/agent-runner").status_code == 401


# ---------------------------------------------------------------------------
# Triage and digest jobs
# ---------------------------------------------------------------------------


def test_run_triage_job(client, gateways, account):
    gateways[account.email] = FakeGateway([make_message("m1")])

    resp = client.get(
        "/api/jobs/run-triage",
        params={"lookbackDays": 3, "gmailAccountId": account.id},
        headers=AUTH,
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["lookback_days"] == 3
    assert body["drafts_created"] == 1
    assert gateways[account.email].list_calls == [(3, 100)]


def test_run_triage_unknown_account(client, account):
    resp = client.get("/api/jobs/run-triage", params={"gmailAccountId": "missing"}, headers=AUTH)
    assert resp.status_code == 404
    assert "missing" in resp.json()["error"]


def test_run_triage_rejects_bad_lookback(client):
    resp = client.get("/api/jobs/run-triage", params={"lookbackDays": 0}, headers=AUTH)
    assert resp.status_code == 400


def test_run_triage_reports_total_failure(client, account):
    resp = client.get("/api/jobs/run-triage", headers=AUTH)
    assert resp.status_code == 500
    body = resp.json()
    assert body["error"]
    assert body["account_errors"] == 1


def test_send_summaries_job(client, gateways, session, account):
    record_log(
        session,
        LogEntry(
            account_id=account.id,
            message_id="m1",
            subject="Contract",
            outcome=TriageOutcome.DRAFTED,
            draft_created=True,
            created_at=utcnow(),
        ),
    )
    gateways[account.email] = FakeGateway()

    resp = client.get("/api/jobs/send-summaries", headers=AUTH)

    assert resp.status_code == 200
    assert resp.json()["summaries_sent"] == 1
    assert len(gateways[account.email].sent) == 1


def test_logs_endpoint(client, session, account):
    record_log(
        session,
        LogEntry(account_id=account.id, message_id="m1", outcome=TriageOutcome.NO_REPLY, created_at=utcnow()),
    )

    resp = client.get("/api/logs", params={"gmailAccountId": account.id}, headers=AUTH)

    assert resp.status_code == 200
    logs = resp.json()["logs"]
    assert [entry["message_id"] for entry in logs] == ["m1"]
    assert logs[0]["outcome"] == "no_reply"


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def test_create_rule(client, session, account):
    resp = client.post(
        "/api/rules",
        json={"gmailAccountId": account.id, "rule_type": "from", "pattern": "  news@shop.com "},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["rule"]["pattern"] == "news@shop.com"
    assert body["rule"]["action"] == "skip"

    session.expire_all()
    assert [r.pattern for r in list_rules(session, account.id)] == ["news@shop.com"]

    listed = client.get("/api/rules", params={"gmailAccountId": account.id}, headers=AUTH).json()
    assert listed["rules"][0]["id"] == body["rule"]["id"]


@pytest.mark.parametrize(
    "payload",
    [
        {"rule_type": "from", "pattern": "   "},
        {"rule_type": "regex", "pattern": "x"},
        {"rule_type": "from"},
        {"rule_type": "from", "pattern": "x", "action": "delete"},
    ],
)
def test_create_rule_validation(client, account, payload):
    payload = dict(payload, gmailAccountId=account.id)
    resp = client.post("/api/rules", json=payload)
    assert resp.status_code == 400
    assert "error" in resp.json()


def test_create_rule_unknown_account(client):
    resp = client.post(
        "/api/rules",
        json={"gmailAccountId": "missing", "rule_type": "subject_contains", "pattern": "sale"},
    )
    assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def test_save_settings_clamps_interval_and_mode(client, session, config, account):
    resp = client.post(
        "/api/settings/agent",
        json={
            "gmailAccountId": account.id,
            "enabled": True,
            "runMode": "bogus",
            "periodMinutes": 2,
            "timezone": "Europe/Berlin",
            "windowStart": "08:30",
            "windowEnd": "18:00",
        },
    )

    assert resp.status_code == 200
    assert resp.json() == {"ok": True}

    session.expire_all()
    settings = load_settings(session, config, account.id)
    assert settings.interval_minutes == 5
    assert settings.run_mode == RunMode.PERIODIC
    assert settings.timezone == "Europe/Berlin"
    assert settings.window_start == "08:30"
    assert settings.window_end == "18:00"


def test_save_settings_instant_mode(client, session, config, account):
    client.post(
        "/api/settings/agent",
        json={"gmailAccountId": account.id, "runMode": "instant", "intervalMinutes": 30},
    )
    session.expire_all()
    settings = load_settings(session, config, account.id)
    assert settings.run_mode == RunMode.INSTANT
    assert settings.interval_minutes == 30


def test_save_settings_without_interval_uses_configured_default(session_factory, session, config, account):
    custom = config.model_copy(update={"default_interval_minutes": 45})
    with TestClient(create_app(custom, session_factory)) as c:
        resp = c.post("/api/settings/agent", json={"gmailAccountId": account.id, "enabled": True})

    assert resp.status_code == 200
    session.expire_all()
    assert load_settings(session, config, account.id).interval_minutes == 45


@pytest.mark.parametrize(
    "extra",
    [
        {"timezone": "Mars/Olympus_Mons"},
        {"windowStart": "25:00"},
        {"windowEnd": "noon"},
    ],
)
def test_save_settings_validation(client, account, extra):
    resp = client.post("/api/settings/agent", json=dict(extra, gmailAccountId=account.id))
    assert resp.status_code == 400


def test_save_settings_requires_account(client):
    assert client.post("/api/settings/agent", json={"enabled": True}).status_code == 400
    assert client.post("/api/settings/agent", json={"gmailAccountId": "missing"}).status_code == 404
