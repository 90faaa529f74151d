import re
from typing import Iterable, List, Optional

from .models import Rule, RuleAction, RuleType

_ANGLE_ADDR = re.compile(r"<([^>]+)>")


def extract_email_address(from_header: str) -> str:
    """'Alice <Alice@Example.org>' -> 'alice@example.org'."""
    if not from_header:
        return ""
    m = _ANGLE_ADDR.search(from_header)
    if m:
        return m.group(1).strip().lower()
    return from_header.strip().lower()


def is_summary_subject(subject: str, markers: Iterable[str]) -> bool:
    """True for the digest's own emails, which must never be triaged."""
    s = (subject or "").lower()
    return any(m.lower() in s for m in markers if m)


def rule_matches(rule: Rule, from_email: str, subject: str) -> bool:
    pattern = rule.pattern.strip().lower()
    if not pattern:
        return False
    if rule.rule_type == RuleType.FROM:
        return pattern == from_email.strip().lower()
    if rule.rule_type == RuleType.SUBJECT_CONTAINS:
        return pattern in (subject or "").lower()
    return False


def match_rule(from_email: str, subject: str, rules: List[Rule]) -> Optional[Rule]:
    """First active rule that matches, in the order given."""
    for rule in rules:
        if not rule.is_active:
            continue
        if rule_matches(rule, from_email, subject):
            return rule
    return None


def describe_rule_match(rule: Rule, from_email: str) -> str:
    if rule.rule_type == RuleType.FROM:
        what = f'sender "{from_email}"'
    else:
        what = f'subject matched "{rule.pattern}"'
    verb = "Skipped" if rule.action == RuleAction.SKIP else "No draft"
    return f"{verb} (rule): {what}"
