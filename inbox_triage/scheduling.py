"""
Per-account due-check for the periodic triage job.

Everything here is pure: decisions depend only on the settings record and the
instant passed in.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import AgentSettings, GateDecision, RunMode, SkipReason

logger = logging.getLogger(__name__)


def parse_hhmm_to_minutes(value: Optional[str]) -> Optional[int]:
    """Parse "HH:MM" or "HH:MM:SS" into minutes after midnight."""
    if not value:
        return None
    parts = value.strip().split(":")
    if len(parts) < 2:
        return None
    try:
        hh = int(parts[0])
        mm = int(parts[1])
    except ValueError:
        return None
    if not (0 <= hh <= 23 and 0 <= mm <= 59):
        return None
    return hh * 60 + mm


def local_now_minutes(timezone_name: str, now: datetime) -> Optional[int]:
    """Wall-clock minutes after midnight at `now` in the named zone, or None."""
    if not timezone_name:
        return None
    try:
        tz = ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r; window check disabled.", timezone_name)
        return None
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(tz)
    return local.hour * 60 + local.minute


def minutes_since(last_run_at: Union[datetime, str, None], now: datetime) -> float:
    if last_run_at is None:
        return math.inf
    if isinstance(last_run_at, str):
        try:
            last_run_at = datetime.fromisoformat(last_run_at.replace("Z", "+00:00"))
        except ValueError:
            return math.inf
    if last_run_at.tzinfo is None:
        last_run_at = last_run_at.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return (now - last_run_at).total_seconds() / 60.0


def is_within_window(now_min: int, start_min: int, end_min: int) -> bool:
    # Same-day windows only; start <= end is assumed.
    return start_min <= now_min <= end_min


def window_ok(settings: AgentSettings, now: datetime) -> bool:
    """Window check that passes whenever any input fails to parse."""
    now_min = local_now_minutes(settings.timezone, now)
    start_min = parse_hhmm_to_minutes(settings.window_start)
    end_min = parse_hhmm_to_minutes(settings.window_end)
    if now_min is None or start_min is None or end_min is None:
        return True
    return is_within_window(now_min, start_min, end_min)


def evaluate_gate(settings: AgentSettings, now: datetime) -> GateDecision:
    """Decide whether an account's periodic triage should run at `now`."""
    if not settings.enabled:
        return GateDecision(run=False, reason=SkipReason.DISABLED)

    # Instant mode needs Gmail push notifications; the cron never runs it.
    if settings.run_mode == RunMode.INSTANT:
        return GateDecision(run=False, reason=SkipReason.INSTANT_MODE)

    if not window_ok(settings, now):
        return GateDecision(run=False, reason=SkipReason.NOT_IN_WINDOW)

    if minutes_since(settings.last_run_at, now) < settings.interval_minutes:
        return GateDecision(run=False, reason=SkipReason.NOT_DUE)

    return GateDecision(run=True)


def _format_minutes(mins: int) -> str:
    return f"{mins // 60:02d}:{mins % 60:02d}"


def next_run_preview(settings: AgentSettings, now: datetime) -> str:
    """Human-readable hint of when the account will next be triaged."""
    now_min = local_now_minutes(settings.timezone, now)
    start_min = parse_hhmm_to_minutes(settings.window_start)
    end_min = parse_hhmm_to_minutes(settings.window_end)
    elapsed = minutes_since(settings.last_run_at, now)
    interval = settings.interval_minutes

    if now_min is None or start_min is None or end_min is None:
        if elapsed >= interval:
            return "Now"
        return f"In ~{math.ceil(interval - elapsed)} min"

    tz = settings.timezone
    if now_min < start_min:
        return f"Today {_format_minutes(start_min)} ({tz})"
    if now_min > end_min:
        return f"Tomorrow {_format_minutes(start_min)} ({tz})"
    if elapsed >= interval:
        return f"Now ({tz})"
    return f"In ~{math.ceil(interval - elapsed)} min ({tz})"
