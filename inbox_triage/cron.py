"""
Periodic runner: evaluates the scheduling gate for every account and triggers
triage for the ones that are due.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import httpx
from sqlalchemy.orm import Session

from .config import Config
from .models import AccountPreview, CronStats, RunStatus, utcnow
from .scheduling import evaluate_gate, next_run_preview
from .storage import (
    default_settings,
    finish_run,
    list_accounts,
    load_settings_map,
    start_run,
    touch_last_run,
)

logger = logging.getLogger(__name__)

CRON_LOOKBACK_DAYS = 14


@dataclass
class TriggerResult:
    ok: bool
    http_status: Optional[int] = None
    error_text: Optional[str] = None


class HttpTriageTrigger:
    """Calls this deployment's run-triage endpoint for one account."""

    def __init__(self, config: Config, client: Optional[httpx.Client] = None):
        if not config.app_url:
            raise ValueError("APP_URL is required for the HTTP triage trigger")
        if not config.cron_secret:
            raise ValueError("CRON_SECRET is required for the HTTP triage trigger")
        self.url = config.app_url.rstrip("/") + "/api/jobs/run-triage"
        self.secret = config.cron_secret
        self.timeout = config.trigger_timeout_seconds
        self.client = client

    def __call__(self, account_id: str, lookback_days: int) -> TriggerResult:
        params = {"lookbackDays": lookback_days, "gmailAccountId": account_id}
        headers = {"Authorization": f"Bearer {self.secret}"}
        try:
            if self.client is not None:
                resp = self.client.get(self.url, params=params, headers=headers, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    resp = client.get(self.url, params=params, headers=headers)
        except httpx.HTTPError as e:
            return TriggerResult(ok=False, error_text=str(e))

        if resp.is_success:
            return TriggerResult(ok=True, http_status=resp.status_code)
        return TriggerResult(ok=False, http_status=resp.status_code, error_text=resp.text or "unknown error")


class LocalTriageTrigger:
    """Runs triage in-process; `run` receives (account_id, lookback_days) and returns TriageStats."""

    def __init__(self, run: Callable):
        self.run = run

    def __call__(self, account_id: str, lookback_days: int) -> TriggerResult:
        try:
            stats = self.run(account_id, lookback_days)
        except Exception as e:
            logger.exception("Local triage failed for %s: %s", account_id, e)
            return TriggerResult(ok=False, error_text=str(e))
        if not stats.ok:
            return TriggerResult(ok=False, error_text=stats.error or "triage failed")
        return TriggerResult(ok=True)


def run_agent_cron(
    config: Config,
    session: Session,
    trigger: Callable[[str, int], TriggerResult],
    now: Optional[datetime] = None,
    triggered_by: str = "cron",
    clock: Callable[[], float] = time.monotonic,
) -> CronStats:
    """
    Gate every account and trigger triage for the due ones.

    A successful trigger updates last_run_at; every trigger attempt leaves a
    run-history row. Recorded times are `now` plus the time elapsed on
    `clock` since the tick started.
    """
    now = now or utcnow()
    tick_started = clock()
    accounts = list_accounts(session)
    stats = CronStats(accounts=len(accounts))
    if not accounts:
        return stats

    settings_map = load_settings_map(session, config)

    for account in accounts:
        settings = settings_map.get(account.id) or default_settings(config, account.id)

        stats.preview.append(
            AccountPreview(
                gmail_account_id=account.id,
                email=account.email,
                next_run=next_run_preview(settings, now),
            )
        )

        decision = evaluate_gate(settings, now)
        if not decision.run:
            stats.skipped += 1
            stats.reasons[decision.reason.value] += 1
            logger.debug("Skipping %s: %s", account.email, decision.reason.value)
            continue

        started = clock()
        started_at = now + timedelta(seconds=started - tick_started)
        run_id = start_run(session, account.id, triggered_by, CRON_LOOKBACK_DAYS, started_at=started_at)

        result = trigger(account.id, CRON_LOOKBACK_DAYS)

        duration_ms = int((clock() - started) * 1000)
        finished_at = started_at + timedelta(milliseconds=duration_ms)

        if result.ok:
            stats.ran += 1
            stats.reasons["triage_ok"] += 1
            touch_last_run(session, account.id, finished_at)
            finish_run(
                session,
                run_id,
                RunStatus.SUCCESS,
                finished_at,
                duration_ms,
                http_status=result.http_status,
            )
        else:
            logger.error(
                "Cron triage failed for %s: status=%s error=%s",
                account.email,
                result.http_status,
                result.error_text,
            )
            stats.skipped += 1
            stats.reasons["triage_failed"] += 1
            finish_run(
                session,
                run_id,
                RunStatus.FAILED,
                finished_at,
                duration_ms,
                http_status=result.http_status,
                error_text=result.error_text,
            )

    logger.info(
        "Cron complete: accounts=%d ran=%d skipped=%d reasons=%s",
        stats.accounts,
        stats.ran,
        stats.skipped,
        stats.reasons,
    )
    return stats
