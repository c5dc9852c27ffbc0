#!/usr/bin/env python3
"""
Incident Engine - Quiet-Hours Evaluator
Decides whether a notification to a user at a given instant is sent,
deferred to the end of the user's quiet hours, or suppressed.

Pure and deterministic: no clock reads, no I/O, no logging.
"""

from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import AlertSeverity, NotificationPreference


class DecisionAction(Enum):
    SEND = "send"
    DELAY = "delay"
    SUPPRESS = "suppress"


@dataclass(frozen=True)
class Decision:
    """Outcome of a quiet-hours evaluation."""
    action: DecisionAction
    send_at: Optional[datetime] = None         # None only for SUPPRESS
    reason: str = ""

    @property
    def delivers(self) -> bool:
        return self.action is not DecisionAction.SUPPRESS


def in_quiet_window(moment: time, start: time, end: time) -> bool:
    """True if ``moment`` falls in [start, end), wrapping past midnight."""
    if start == end:
        return False
    if start < end:
        return start <= moment < end
    return moment >= start or moment < end


def _zone(name: str):
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def _next_occurrence(local_now: datetime, wall_time: time) -> datetime:
    candidate = local_now.replace(hour=wall_time.hour, minute=wall_time.minute,
                                  second=0, microsecond=0)
    if candidate <= local_now:
        candidate += timedelta(days=1)
    return candidate


def decide(preference: NotificationPreference, severity: AlertSeverity,
           now: datetime, escalated: bool = False) -> Decision:
    """
    Gate one notification through the user's quiet hours.

    Critical severity overrides quiet hours. Inside the window, informational
    notifications are suppressed and everything else is delayed until the
    window ends. Outside it (or with no window configured) the notification
    is sent after the user's notification delay.

    Args:
        preference: Recipient's notification preference
        severity: Current incident severity
        now: Evaluation instant (aware)
        escalated: True for levels above 0; skips the delay when the user
            opted into immediate escalation

    Returns:
        Decision with the action and, unless suppressed, the send time
    """
    delay = preference.notification_delay
    if escalated and preference.bypass_delay_on_escalation:
        delay = timedelta(0)

    if severity is AlertSeverity.CRITICAL:
        return Decision(DecisionAction.SEND, now + delay, "critical overrides quiet hours")

    if not preference.has_quiet_hours:
        return Decision(DecisionAction.SEND, now + delay, "no quiet hours")

    local_now = now.astimezone(_zone(preference.timezone))
    if not in_quiet_window(local_now.time(), preference.quiet_hours_start,
                           preference.quiet_hours_end):
        return Decision(DecisionAction.SEND, now + delay, "outside quiet hours")

    if severity is AlertSeverity.INFO:
        return Decision(DecisionAction.SUPPRESS, None, "informational during quiet hours")

    until = _next_occurrence(local_now, preference.quiet_hours_end)
    return Decision(DecisionAction.DELAY, until.astimezone(timezone.utc),
                    "quiet hours")
