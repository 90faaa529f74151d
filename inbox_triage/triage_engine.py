"""
Triage engine: orchestrates Gmail + classifier + storage into a triage run.

For every account (or one scoped account), strictly in sequence:
- load active rules, the signature and recent inbox message ids
- per message: dedup check, summary-email exclusion, rule matching,
  classification, draft creation, labelling
- one processed-message log row per handled message
- an optional run summary email, governed by DIGEST_TRIGGER
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from .config import Config, DigestPolicy
from .digest import effective_summary_markers, send_run_summary
from .gmail_client import GmailGatewayError
from .llm_client import LLMError
from .models import (
    Account,
    LogEntry,
    Priority,
    Rule,
    RuleAction,
    TriageOutcome,
    TriageStats,
    utcnow,
)
from .rules import describe_rule_match, extract_email_address, is_summary_subject, match_rule
from .storage import already_processed, get_account, list_accounts, load_rules, record_log

logger = logging.getLogger(__name__)

LABEL_TRIAGED = "ai/triaged"
LABEL_SKIPPED = "ai/skipped"
LABEL_NEEDS_REPLY = "ai/needs_reply"
LABEL_NO_REPLY = "ai/no_reply"
LABEL_NO_DRAFT = "ai/no_draft"
# Applied when a draft is waiting on the user.
LABEL_DRAFT_CREATED = "ai/draft_created"

BASE_LABELS = [
    LABEL_TRIAGED,
    LABEL_SKIPPED,
    LABEL_NEEDS_REPLY,
    LABEL_NO_REPLY,
    LABEL_NO_DRAFT,
    LABEL_DRAFT_CREATED,
]

MAX_PROPOSED_LABELS = 4

AI_ERROR_SUMMARY = "AI analysis failed; no draft was created."
FAILED_SUMMARY = "Processing failed; see application logs."


# ---------------------------------------------------------------------------
# Per-message processing
# ---------------------------------------------------------------------------


def _apply_labels(gateway, message_id: str, names: List[str]) -> None:
    try:
        gateway.modify_labels(message_id, names)
    except GmailGatewayError as e:
        logger.error("Failed modifying labels on %s: %s", message_id, e)


def _proposed_label_names(labels: List[str]) -> List[str]:
    names = []
    for label in labels[:MAX_PROPOSED_LABELS]:
        name = f"ai/{label.strip().lower()}"
        if name not in names and name not in BASE_LABELS:
            names.append(name)
    return names


def process_message(
    config: Config,
    gateway,
    classifier,
    account: Account,
    message_id: str,
    rules: List[Rule],
    signature_html: str,
    now: Optional[datetime] = None,
) -> LogEntry:
    """
    Triage one not-yet-logged message and return the log row to write.

    Classifier, draft and label failures are handled here; anything else
    propagates to the caller.
    """
    message = gateway.get_message(message_id)
    from_email = extract_email_address(message.from_header)

    base = {
        "account_id": account.id,
        "message_id": message.id,
        "thread_id": message.thread_id,
        "subject": message.subject,
        "from_address": message.from_header,
        "created_at": now or utcnow(),
    }

    # Keep our own summary emails out of triage.
    if is_summary_subject(message.subject, effective_summary_markers(config)):
        return LogEntry(
            **base,
            summary="Skipped: summary email (excluded from triage).",
            priority=Priority.LOW,
            outcome=TriageOutcome.SKIPPED_SUMMARY,
        )

    rule = match_rule(from_email, message.subject, rules)
    if rule is not None and rule.action == RuleAction.SKIP:
        _apply_labels(gateway, message.id, [LABEL_TRIAGED, LABEL_SKIPPED])
        return LogEntry(
            **base,
            summary=describe_rule_match(rule, from_email),
            priority=Priority.LOW,
            outcome=TriageOutcome.SKIPPED_RULE,
            rule_id=rule.id,
        )

    try:
        result = classifier.classify(message, account.email)
    except LLMError as e:
        logger.error("Classifier failed for message %s: %s", message.id, e)
        _apply_labels(gateway, message.id, [LABEL_NO_REPLY])
        return LogEntry(
            **base,
            summary=AI_ERROR_SUMMARY,
            outcome=TriageOutcome.AI_ERROR,
            rule_id=rule.id if rule else None,
        )

    labels = [LABEL_TRIAGED, LABEL_NEEDS_REPLY if result.needs_response else LABEL_NO_REPLY]
    labels.extend(_proposed_label_names(result.proposed_labels))

    draft_created = False
    if rule is not None and rule.action == RuleAction.NO_DRAFT:
        logger.info("Draft suppressed for %s by rule %s", message.id, rule.id)
        outcome = (
            TriageOutcome.DRAFT_SUPPRESSED if result.needs_response else TriageOutcome.NO_REPLY
        )
    elif result.needs_response and result.draft_reply.strip():
        try:
            gateway.create_draft_reply(message, result.draft_reply, signature_html)
            draft_created = True
        except GmailGatewayError as e:
            logger.error("Failed creating draft for %s: %s", message.id, e)
        outcome = TriageOutcome.DRAFTED if draft_created else TriageOutcome.NEEDS_REPLY
    else:
        outcome = TriageOutcome.NEEDS_REPLY if result.needs_response else TriageOutcome.NO_REPLY

    labels.append(LABEL_DRAFT_CREATED if draft_created else LABEL_NO_DRAFT)
    _apply_labels(gateway, message.id, labels)

    return LogEntry(
        **base,
        summary=result.summary,
        needs_response=result.needs_response,
        priority=result.priority,
        draft_created=draft_created,
        outcome=outcome,
        rule_id=rule.id if rule else None,
    )


# ---------------------------------------------------------------------------
# Per-account processing
# ---------------------------------------------------------------------------


def should_send_run_summary(policy: DigestPolicy, entries: List[LogEntry]) -> bool:
    if policy == DigestPolicy.ANY_PROCESSED:
        return any(e.outcome != TriageOutcome.SKIPPED_SUMMARY for e in entries)
    if policy == DigestPolicy.DRAFTS_CREATED:
        return any(e.draft_created for e in entries)
    return False


def _count(stats: TriageStats, entry: LogEntry) -> None:
    if entry.outcome != TriageOutcome.SKIPPED_SUMMARY:
        stats.processed += 1
    if entry.draft_created:
        stats.drafts_created += 1
    if entry.outcome == TriageOutcome.SKIPPED_RULE:
        stats.skipped_by_rule += 1
    if entry.outcome == TriageOutcome.AI_ERROR:
        stats.ai_errors += 1


def triage_account(
    config: Config,
    session: Session,
    gateway,
    classifier,
    account: Account,
    lookback_days: int,
    stats: TriageStats,
    now: Optional[datetime] = None,
) -> List[LogEntry]:
    """Triage one account's recent inbox; returns the log rows written."""
    rules = load_rules(session, account.id)
    signature_html = gateway.get_signature()

    message_ids = gateway.list_recent_inbox_messages(
        lookback_days,
        max_results=config.max_emails_per_run,
    )
    logger.info(
        "Account %s: %d recent messages, %d active rules.",
        account.email,
        len(message_ids),
        len(rules),
    )
    if not message_ids:
        return []

    gateway.ensure_labels(BASE_LABELS)

    written: List[LogEntry] = []
    for message_id in message_ids:
        # The log row is the only gate against reprocessing.
        if already_processed(session, account.id, message_id):
            stats.skipped_duplicate += 1
            continue

        try:
            entry = process_message(
                config,
                gateway,
                classifier,
                account,
                message_id,
                rules,
                signature_html,
                now=now,
            )
        except Exception as e:
            logger.exception("Failed processing message %s for %s: %s", message_id, account.email, e)
            entry = LogEntry(
                account_id=account.id,
                message_id=message_id,
                summary=FAILED_SUMMARY,
                outcome=TriageOutcome.FAILED,
                created_at=now or utcnow(),
            )

        if not record_log(session, entry):
            stats.skipped_duplicate += 1
            continue

        written.append(entry)
        _count(stats, entry)

    if should_send_run_summary(config.digest_policy, written):
        try:
            if send_run_summary(config, gateway, account, written):
                stats.summaries_sent += 1
        except Exception as e:
            logger.exception("Failed sending run summary for %s: %s", account.email, e)

    return written


def run_triage(
    config: Config,
    session: Session,
    gateway_factory: Callable,
    classifier,
    lookback_days: Optional[int] = None,
    account_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TriageStats:
    """
    Full triage pipeline over every connected account, or only `account_id`.

    An error while setting up or processing one account aborts that account
    and is counted in `account_errors`; other accounts still run. The run is
    reported as not ok only when every account failed.

    Raises:
        AccountNotFoundError: if `account_id` is given and unknown.
    """
    lookback_days = lookback_days or config.default_lookback_days
    stats = TriageStats(lookback_days=lookback_days)

    if account_id:
        accounts = [get_account(session, account_id)]
    else:
        accounts = list_accounts(session)
    stats.accounts = len(accounts)

    logger.info("Starting triage: %d account(s), lookback %d days.", len(accounts), lookback_days)

    for account in accounts:
        try:
            gateway = gateway_factory(account)
            triage_account(
                config,
                session,
                gateway,
                classifier,
                account,
                lookback_days,
                stats,
                now=now,
            )
        except Exception as e:
            logger.exception("Triage aborted for account %s: %s", account.email, e)
            session.rollback()
            stats.account_errors += 1

    if accounts and stats.account_errors == len(accounts):
        stats.ok = False
        stats.error = "Triage failed for every account"

    logger.info(
        "Triage complete: processed=%d drafts=%d skipped_rule=%d duplicates=%d ai_errors=%d account_errors=%d",
        stats.processed,
        stats.drafts_created,
        stats.skipped_by_rule,
        stats.skipped_duplicate,
        stats.ai_errors,
        stats.account_errors,
    )
    return stats
