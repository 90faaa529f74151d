"""
Digest formatting and sending.

The digest subject always carries a summary marker so the triage job never
classifies its own reports.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from .config import Config
from .models import Account, DigestStats, LogEntry, TriageOutcome, utcnow
from .rules import is_summary_subject
from .storage import list_accounts, load_recent_logs

logger = logging.getLogger(__name__)

DIGEST_SUBJECT_PREFIX = "AI Email Summary"

SEPARATOR = "-" * 60

# Display order and headings for each outcome group.
OUTCOME_HEADINGS = [
    (TriageOutcome.DRAFTED, "Drafts created for you to review"),
    (TriageOutcome.NEEDS_REPLY, "Needs a reply (no draft created)"),
    (TriageOutcome.DRAFT_SUPPRESSED, "Needs a reply (drafts turned off by rule)"),
    (TriageOutcome.NO_REPLY, "No reply needed"),
    (TriageOutcome.SKIPPED_RULE, "Skipped by your rules"),
    (TriageOutcome.AI_ERROR, "Could not be analyzed"),
    (TriageOutcome.FAILED, "Processing failed"),
    (TriageOutcome.SKIPPED_SUMMARY, "Summary emails"),
]


def effective_summary_markers(config: Config) -> List[str]:
    """Configured markers plus the digest's own subject prefix."""
    markers = [m for m in config.summary_subject_markers if m]
    if not any(m.lower() == DIGEST_SUBJECT_PREFIX.lower() for m in markers):
        markers.append(DIGEST_SUBJECT_PREFIX)
    return markers


def select_digest_entries(entries: Iterable[LogEntry], markers: Iterable[str]) -> List[LogEntry]:
    """Drop rows for the digest's own emails."""
    markers = list(markers)
    return [e for e in entries if not is_summary_subject(e.subject, markers)]


def group_by_outcome(entries: Iterable[LogEntry]) -> Dict[TriageOutcome, List[LogEntry]]:
    groups: Dict[TriageOutcome, List[LogEntry]] = {}
    for e in entries:
        groups.setdefault(e.outcome, []).append(e)
    return groups


def digest_subject(timeframe: str) -> str:
    return f"{DIGEST_SUBJECT_PREFIX} ({timeframe})"


def generate_digest_text(account_email: str, entries: List[LogEntry], timeframe: str) -> str:
    """Plain-text report of triage outcomes, grouped by outcome."""
    lines: List[str] = []

    lines.append(f"Dear {account_email},")
    lines.append("")
    lines.append("Thank you for taking a moment to review your AI email assistant's activity.")
    lines.append(f"This summary covers {timeframe}.")
    lines.append("")

    drafted = sum(1 for e in entries if e.draft_created)
    lines.append(f"Emails reviewed: {len(entries)}")
    lines.append(f"Drafts created: {drafted}")
    lines.append("")
    lines.append(SEPARATOR)

    groups = group_by_outcome(entries)
    for outcome, heading in OUTCOME_HEADINGS:
        group = groups.get(outcome)
        if not group:
            continue
        lines.append("")
        lines.append(f"{heading} ({len(group)})")
        lines.append("")
        for idx, e in enumerate(group, start=1):
            lines.append(f"{idx}. {e.subject or '(no subject)'}")
            lines.append(f"   From: {e.from_address or '(unknown sender)'}")
            lines.append(f"   Priority: {e.priority.value}")
            lines.append(f"   Summary: {e.summary or '(no summary provided)'}")
        lines.append("")
        lines.append(SEPARATOR)

    lines.append("")
    lines.append("Next steps for you (when you have a moment):")
    lines.append("")
    lines.append("* Review any drafts that were created in your Gmail Drafts folder.")
    lines.append("* Edit, approve, and send those messages as needed.")
    lines.append(
        "* If a message was marked as not needing a response but you would like to"
        " follow up anyway, you can still compose a reply as usual."
    )
    lines.append("")
    lines.append("All the best,")
    lines.append("Your AI Gmail Assistant")
    lines.append("")

    return "\n".join(lines)


def digest_recipient(config: Config, account: Account) -> str:
    return config.digest_recipient or account.email


def send_run_summary(config: Config, gateway, account: Account, entries: List[LogEntry]) -> bool:
    """Email a summary of one triage run for one account."""
    entries = select_digest_entries(entries, effective_summary_markers(config))
    if not entries:
        return False
    timeframe = "the triage run that just finished"
    body = generate_digest_text(account.email, entries, timeframe)
    gateway.send_email(digest_recipient(config, account), digest_subject("latest run"), body)
    logger.info("Sent run summary for %s (%d emails)", account.email, len(entries))
    return True


def send_digests(
    config: Config,
    session: Session,
    gateway_factory: Callable,
    now: Optional[datetime] = None,
) -> DigestStats:
    """
    Send one digest per account covering the trailing DIGEST_LOOKBACK_HOURS.

    Accounts without any log rows in the window are skipped. A failure for one
    account is logged and does not stop the others.
    """
    now = now or utcnow()
    hours = config.digest_lookback_hours
    since = now - timedelta(hours=hours)

    accounts = list_accounts(session)
    stats = DigestStats(accounts=len(accounts))

    for account in accounts:
        entries = select_digest_entries(
            load_recent_logs(session, account.id, since),
            effective_summary_markers(config),
        )
        if not entries:
            logger.info("No activity for %s in the last %d hours.", account.email, hours)
            continue

        body = generate_digest_text(
            account.email,
            entries,
            f"approximately the last {hours} hours",
        )
        try:
            gateway = gateway_factory(account)
            gateway.send_email(
                digest_recipient(config, account),
                digest_subject(f"last {hours} hours"),
                body,
            )
        except Exception as e:
            logger.exception("Error sending digest for account %s: %s", account.id, e)
            stats.failed += 1
            continue

        stats.summaries_sent += 1
        logger.info("Sent digest for %s (%d emails)", account.email, len(entries))

    return stats
