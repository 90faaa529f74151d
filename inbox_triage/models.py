"""
Pydantic models for accounts, settings, rules, processed-message logs,
classifier results and job statistics.

Rows coming out of the relational store are converted into these records
before any orchestration logic touches them.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes and normalize aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RunMode(str, Enum):
    PERIODIC = "periodic"
    INSTANT = "instant"


class RuleType(str, Enum):
    FROM = "from"
    SUBJECT_CONTAINS = "subject_contains"


class RuleAction(str, Enum):
    SKIP = "skip"
    NO_DRAFT = "no_draft"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class TriageOutcome(str, Enum):
    DRAFTED = "drafted"
    NEEDS_REPLY = "needs_reply"
    NO_REPLY = "no_reply"
    DRAFT_SUPPRESSED = "draft_suppressed"
    SKIPPED_RULE = "skipped_rule"
    SKIPPED_SUMMARY = "skipped_summary"
    AI_ERROR = "ai_error"
    FAILED = "failed"


class SkipReason(str, Enum):
    DISABLED = "disabled"
    INSTANT_MODE = "instant_mode"
    NOT_IN_WINDOW = "not_in_window"
    NOT_DUE = "not_due"


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Stored entities
# ---------------------------------------------------------------------------


class Account(BaseModel):
    """
    A connected Gmail mailbox and its stored OAuth tokens.
    """

    id: str
    email: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expiry: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("token_expiry", "updated_at")
    @classmethod
    def normalize_times(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    model_config = ConfigDict(from_attributes=True)


class AgentSettings(BaseModel):
    """
    Per-account schedule settings.

    Accounts without a stored row are evaluated with these defaults.
    """

    account_id: str
    enabled: bool = True
    run_mode: RunMode = RunMode.PERIODIC
    interval_minutes: int = 60
    timezone: str = "America/New_York"
    window_start: Optional[str] = "07:00"
    window_end: Optional[str] = "21:00"
    last_run_at: Optional[datetime] = None

    @field_validator("last_run_at", mode="before")
    @classmethod
    def parse_last_run_at(cls, v: Any) -> Optional[datetime]:
        # Unparseable timestamps are treated as "never ran".
        if v is None or isinstance(v, datetime):
            return ensure_utc(v)
        if isinstance(v, str):
            try:
                return ensure_utc(datetime.fromisoformat(v.replace("Z", "+00:00")))
            except ValueError:
                return None
        return None

    @field_validator("run_mode", mode="before")
    @classmethod
    def default_run_mode(cls, v: Any) -> Any:
        if v is None:
            return RunMode.PERIODIC
        return v

    model_config = ConfigDict(from_attributes=True)


class Rule(BaseModel):
    """
    A user-defined sender/subject pattern mapped to an action.
    """

    id: str
    account_id: str
    rule_type: RuleType
    pattern: str
    action: RuleAction = RuleAction.SKIP
    is_active: bool = True
    created_at: Optional[datetime] = None

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    model_config = ConfigDict(from_attributes=True)


class LogEntry(BaseModel):
    """
    One processed-message ledger row, unique per (account_id, message_id).
    """

    account_id: str
    message_id: str
    thread_id: Optional[str] = None
    subject: str = ""
    from_address: str = ""
    summary: str = ""
    needs_response: bool = False
    priority: Priority = Priority.NORMAL
    draft_created: bool = False
    outcome: TriageOutcome
    rule_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# Mail and classification
# ---------------------------------------------------------------------------


class InboundMessage(BaseModel):
    """
    A fully fetched Gmail message, reduced to what triage needs.
    """

    id: str
    thread_id: str
    subject: str = "(no subject)"
    from_header: str = ""
    to_header: str = ""
    reply_to: str = ""
    message_id_header: Optional[str] = None
    body_text: str = ""


class TriageResult(BaseModel):
    """
    Structured judgment returned by the classifier.
    """

    needs_response: bool = False
    priority: Priority = Priority.NORMAL
    summary: str = ""
    proposed_labels: List[str] = Field(default_factory=list)
    draft_reply: str = ""

    @field_validator("needs_response", mode="before")
    @classmethod
    def coerce_bool(cls, v: Any) -> bool:
        if isinstance(v, str):
            return v.strip().lower() in ("true", "yes", "1")
        return bool(v)

    @field_validator("priority", mode="before")
    @classmethod
    def coerce_priority(cls, v: Any) -> Priority:
        if isinstance(v, str) and v.strip().lower() in ("low", "high"):
            return Priority(v.strip().lower())
        return Priority.NORMAL

    @field_validator("summary", "draft_reply", mode="before")
    @classmethod
    def coerce_text(cls, v: Any) -> str:
        if v is None:
            return ""
        return v if isinstance(v, str) else str(v)

    @field_validator("proposed_labels", mode="before")
    @classmethod
    def coerce_labels(cls, v: Any) -> List[str]:
        if not isinstance(v, list):
            return []
        return [str(item).strip() for item in v if str(item).strip()]

    @classmethod
    def safe_default(cls) -> "TriageResult":
        return cls()


# ---------------------------------------------------------------------------
# Scheduling and job results
# ---------------------------------------------------------------------------


class GateDecision(BaseModel):
    run: bool
    reason: Optional[SkipReason] = None


class TriageStats(BaseModel):
    ok: bool = True
    lookback_days: int
    accounts: int = 0
    processed: int = 0
    drafts_created: int = 0
    skipped_by_rule: int = 0
    skipped_duplicate: int = 0
    ai_errors: int = 0
    account_errors: int = 0
    summaries_sent: int = 0
    error: Optional[str] = None


class AccountPreview(BaseModel):
    gmail_account_id: str
    email: str
    next_run: str


class CronStats(BaseModel):
    ok: bool = True
    accounts: int = 0
    ran: int = 0
    skipped: int = 0
    reasons: Dict[str, int] = Field(
        default_factory=lambda: {
            "disabled": 0,
            "instant_mode": 0,
            "not_in_window": 0,
            "not_due": 0,
            "triage_failed": 0,
            "triage_ok": 0,
        }
    )
    preview: List[AccountPreview] = Field(default_factory=list)


class DigestStats(BaseModel):
    ok: bool = True
    accounts: int = 0
    summaries_sent: int = 0
    failed: int = 0


__all__ = [
    "ensure_utc",
    "utcnow",
    "RunMode",
    "RuleType",
    "RuleAction",
    "Priority",
    "TriageOutcome",
    "SkipReason",
    "RunStatus",
    "Account",
    "AgentSettings",
    "Rule",
    "LogEntry",
    "InboundMessage",
    "TriageResult",
    "GateDecision",
    "TriageStats",
    "AccountPreview",
    "CronStats",
    "DigestStats",
]
