"""
Storage helpers for accounts, settings, rules, the processed-message log and
run history.

Every function takes an open SQLAlchemy session and returns pydantic records
from .models, never ORM rows.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .config import Config
from .database import (
    AgentSettingsRow,
    EmailLogRow,
    GmailAccountRow,
    RunHistoryRow,
    TriageRuleRow,
)
from .models import (
    Account,
    AgentSettings,
    LogEntry,
    Rule,
    RuleAction,
    RuleType,
    RunMode,
    RunStatus,
)

logger = logging.getLogger(__name__)


class AccountNotFoundError(LookupError):
    """Raised when an account id does not exist in the store."""


def _to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _db_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


def list_accounts(session: Session) -> List[Account]:
    rows = session.query(GmailAccountRow).order_by(GmailAccountRow.updated_at.desc()).all()
    return [Account.model_validate(r) for r in rows]


def get_account(session: Session, account_id: str) -> Account:
    row = session.get(GmailAccountRow, account_id)
    if row is None:
        raise AccountNotFoundError(f"Account not found: {account_id}")
    return Account.model_validate(row)


def upsert_account(
    session: Session,
    email: str,
    access_token: Optional[str],
    refresh_token: Optional[str],
    token_expiry: Optional[datetime],
) -> Account:
    """
    Create or update an account keyed by email address.

    A missing refresh token keeps the stored one; Google only returns it on
    the first consent.
    """
    row = session.query(GmailAccountRow).filter(GmailAccountRow.email == email).one_or_none()
    if row is None:
        row = GmailAccountRow(email=email)
        session.add(row)
    row.access_token = access_token
    if refresh_token:
        row.refresh_token = refresh_token
    row.token_expiry = _to_db_time(token_expiry)
    row.updated_at = _db_now()
    session.commit()
    logger.info("Stored account %s (id=%s)", email, row.id)
    return Account.model_validate(row)


def save_account_tokens(
    session: Session,
    account_id: str,
    access_token: Optional[str],
    token_expiry: Optional[datetime],
) -> None:
    row = session.get(GmailAccountRow, account_id)
    if row is None:
        raise AccountNotFoundError(f"Account not found: {account_id}")
    row.access_token = access_token
    row.token_expiry = _to_db_time(token_expiry)
    row.updated_at = _db_now()
    session.commit()


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def default_settings(config: Config, account_id: str) -> AgentSettings:
    return AgentSettings(
        account_id=account_id,
        interval_minutes=config.default_interval_minutes,
        timezone=config.default_timezone,
        window_start=config.default_window_start,
        window_end=config.default_window_end,
    )


def _settings_from_row(config: Config, row: AgentSettingsRow) -> AgentSettings:
    base = default_settings(config, row.account_id)
    return AgentSettings(
        account_id=row.account_id,
        enabled=row.enabled if row.enabled is not None else base.enabled,
        run_mode=row.run_mode or base.run_mode,
        interval_minutes=row.interval_minutes or base.interval_minutes,
        timezone=row.timezone or base.timezone,
        window_start=row.window_start or base.window_start,
        window_end=row.window_end or base.window_end,
        last_run_at=row.last_run_at,
    )


def load_settings(session: Session, config: Config, account_id: str) -> AgentSettings:
    row = session.get(AgentSettingsRow, account_id)
    if row is None:
        return default_settings(config, account_id)
    return _settings_from_row(config, row)


def load_settings_map(session: Session, config: Config) -> Dict[str, AgentSettings]:
    rows = session.query(AgentSettingsRow).all()
    return {r.account_id: _settings_from_row(config, r) for r in rows}


def save_settings(
    session: Session,
    account_id: str,
    enabled: Optional[bool] = None,
    run_mode: Optional[RunMode] = None,
    interval_minutes: Optional[int] = None,
    timezone_name: Optional[str] = None,
    window_start: Optional[str] = None,
    window_end: Optional[str] = None,
) -> None:
    """Upsert the settings row; only non-None fields are written."""
    row = session.get(AgentSettingsRow, account_id)
    if row is None:
        row = AgentSettingsRow(account_id=account_id)
        session.add(row)

    if enabled is not None:
        row.enabled = enabled
    if run_mode is not None:
        row.run_mode = RunMode(run_mode).value
    if interval_minutes is not None:
        row.interval_minutes = interval_minutes
    if timezone_name is not None:
        row.timezone = timezone_name
    if window_start is not None:
        row.window_start = window_start
    if window_end is not None:
        row.window_end = window_end

    session.commit()


def touch_last_run(session: Session, account_id: str, when: datetime) -> None:
    row = session.get(AgentSettingsRow, account_id)
    if row is None:
        row = AgentSettingsRow(account_id=account_id)
        session.add(row)
    row.last_run_at = _to_db_time(when)
    session.commit()


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def load_rules(session: Session, account_id: str) -> List[Rule]:
    """Active rules for an account in creation order (first match wins)."""
    try:
        rows = (
            session.query(TriageRuleRow)
            .filter(TriageRuleRow.account_id == account_id)
            .filter(TriageRuleRow.is_active.is_(True))
            .order_by(TriageRuleRow.created_at.asc(), TriageRuleRow.id.asc())
            .all()
        )
    except SQLAlchemyError as e:
        logger.error("Failed loading rules for account %s: %s", account_id, e)
        session.rollback()
        return []
    return [Rule.model_validate(r) for r in rows]


def list_rules(session: Session, account_id: Optional[str] = None) -> List[Rule]:
    query = session.query(TriageRuleRow)
    if account_id:
        query = query.filter(TriageRuleRow.account_id == account_id)
    rows = query.order_by(TriageRuleRow.created_at.asc(), TriageRuleRow.id.asc()).all()
    return [Rule.model_validate(r) for r in rows]


def create_rule(
    session: Session,
    account_id: str,
    rule_type: RuleType,
    pattern: str,
    action: RuleAction = RuleAction.SKIP,
) -> Rule:
    if session.get(GmailAccountRow, account_id) is None:
        raise AccountNotFoundError(f"Account not found: {account_id}")

    row = TriageRuleRow(
        account_id=account_id,
        rule_type=RuleType(rule_type).value,
        pattern=pattern.strip(),
        action=RuleAction(action).value,
        is_active=True,
        created_at=_db_now(),
    )
    session.add(row)
    session.commit()
    logger.info(
        "Created rule %s for account %s: %s %r -> %s",
        row.id,
        account_id,
        row.rule_type,
        row.pattern,
        row.action,
    )
    return Rule.model_validate(row)


# ---------------------------------------------------------------------------
# Processed-message log
# ---------------------------------------------------------------------------


def already_processed(session: Session, account_id: str, message_id: str) -> bool:
    """
    True if a log row exists for (account, message).

    A failed lookup counts as processed so no draft is created twice.
    """
    try:
        found = (
            session.query(EmailLogRow.id)
            .filter(EmailLogRow.account_id == account_id)
            .filter(EmailLogRow.message_id == message_id)
            .first()
        )
    except SQLAlchemyError as e:
        logger.error("Failed checking duplicates for %s/%s: %s", account_id, message_id, e)
        session.rollback()
        return True
    return found is not None


def record_log(session: Session, entry: LogEntry) -> bool:
    """
    Upsert one processed-message row keyed by (account_id, message_id).

    A row that is already visible is overwritten, so a retried message
    refreshes its entry. If another run inserts the key between the lookup
    and the commit, the unique constraint rejects this insert, the other
    run's row is kept and False is returned.
    """
    row = (
        session.query(EmailLogRow)
        .filter(EmailLogRow.account_id == entry.account_id)
        .filter(EmailLogRow.message_id == entry.message_id)
        .one_or_none()
    )
    if row is None:
        row = EmailLogRow(account_id=entry.account_id, message_id=entry.message_id)
        session.add(row)

    row.thread_id = entry.thread_id
    row.subject = entry.subject
    row.from_address = entry.from_address
    row.summary = entry.summary
    row.needs_response = entry.needs_response
    row.priority = entry.priority.value
    row.draft_created = entry.draft_created
    row.outcome = entry.outcome.value
    row.rule_id = entry.rule_id
    row.created_at = _to_db_time(entry.created_at) or _db_now()

    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        logger.warning(
            "Log row for %s/%s was inserted concurrently by another run; keeping that row.",
            entry.account_id,
            entry.message_id,
        )
        return False
    return True


def load_recent_logs(
    session: Session,
    account_id: str,
    since: datetime,
) -> List[LogEntry]:
    rows = (
        session.query(EmailLogRow)
        .filter(EmailLogRow.account_id == account_id)
        .filter(EmailLogRow.created_at >= _to_db_time(since))
        .order_by(EmailLogRow.created_at.asc(), EmailLogRow.id.asc())
        .all()
    )
    return [LogEntry.model_validate(r) for r in rows]


def list_logs(
    session: Session,
    account_id: Optional[str] = None,
    limit: int = 50,
) -> List[LogEntry]:
    query = session.query(EmailLogRow)
    if account_id:
        query = query.filter(EmailLogRow.account_id == account_id)
    rows = query.order_by(EmailLogRow.created_at.desc(), EmailLogRow.id.desc()).limit(limit).all()
    return [LogEntry.model_validate(r) for r in rows]


# ---------------------------------------------------------------------------
# Run history
# ---------------------------------------------------------------------------


def start_run(
    session: Session,
    account_id: str,
    triggered_by: str,
    lookback_days: int,
    started_at: datetime,
) -> Optional[str]:
    try:
        row = RunHistoryRow(
            account_id=account_id,
            triggered_by=triggered_by,
            status=RunStatus.RUNNING.value,
            lookback_days=lookback_days,
            started_at=_to_db_time(started_at),
        )
        session.add(row)
        session.commit()
        return row.id
    except SQLAlchemyError as e:
        # History is an audit trail only; a failed insert must not stop the run.
        logger.error("Failed to insert run history for %s: %s", account_id, e)
        session.rollback()
        return None


def finish_run(
    session: Session,
    run_id: Optional[str],
    status: RunStatus,
    finished_at: datetime,
    duration_ms: int,
    http_status: Optional[int] = None,
    error_text: Optional[str] = None,
) -> None:
    if run_id is None:
        return
    row = session.get(RunHistoryRow, run_id)
    if row is None:
        logger.warning("Run history row %s disappeared before finish.", run_id)
        return
    row.status = status.value
    row.finished_at = _to_db_time(finished_at)
    row.duration_ms = duration_ms
    row.http_status = http_status
    row.error_text = error_text
    try:
        session.commit()
    except SQLAlchemyError as e:
        logger.error("Failed to update run history %s: %s", run_id, e)
        session.rollback()
