#!/usr/bin/env python3
"""
Incident Engine - Data Model
Alerts, incidents, escalation policies, notification preferences and
notification attempts shared by every engine component.

Policies and preferences are frozen: the engine only ever reads them, and an
incident keeps its own by-value copy of the policy captured at trigger time.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Set, Tuple

from .errors import ValidationError


SYSTEM_ACTOR = "system"


# =============================================================================
# ENUMERATIONS
# =============================================================================

class AlertSeverity(Enum):
    """Severity levels, lowest to highest."""
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    @classmethod
    def highest(cls, *severities: "AlertSeverity") -> "AlertSeverity":
        return max(severities, key=lambda s: s.rank)


_SEVERITY_ORDER = [
    AlertSeverity.INFO,
    AlertSeverity.LOW,
    AlertSeverity.MEDIUM,
    AlertSeverity.HIGH,
    AlertSeverity.CRITICAL,
]


class AlertStatus(Enum):
    """Status of a raw alert."""
    FIRING = "firing"
    RESOLVED = "resolved"
    SUPPRESSED = "suppressed"       # Dropped by a routing rule


class IncidentStatus(Enum):
    """Incident lifecycle states."""
    TRIGGERED = "triggered"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class AttemptStatus(Enum):
    """Notification attempt states. Everything but PENDING is terminal."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SUPPRESSED = "suppressed"
    CANCELLED = "cancelled"         # Incident acknowledged/resolved before delivery

    @property
    def is_terminal(self) -> bool:
        return self is not AttemptStatus.PENDING


class ChannelKind(Enum):
    """Delivery media a channel adapter can serve."""
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    SLACK = "slack"
    TEAMS = "teams"
    WEBHOOK = "webhook"


class TargetType(Enum):
    """What an escalation level points at."""
    USER = "user"
    TEAM = "team"
    SCHEDULE = "schedule"


# =============================================================================
# HELPERS
# =============================================================================

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any, field_name: str) -> Optional[datetime]:
    """Parse an ISO-8601 string (or pass a datetime through) as aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid timestamp for {field_name}: {value!r}",
                                  field=field_name)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_time_of_day(value: Any) -> Optional[time]:
    """
    Parse 'HH:MM' into a time, or None when not configured.

    Unquoted YAML times load as base-60 integers (22:00 -> 1320), so an int
    is read as minutes past midnight.
    """
    if value is None or value == "":
        return None
    if isinstance(value, time):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        if not 0 <= value < 24 * 60:
            raise ValidationError(f"Invalid time of day: {value!r}", field="quiet_hours")
        return time(*divmod(value, 60))
    try:
        hours, minutes = str(value).split(":", 1)
        return time(int(hours), int(minutes))
    except ValueError:
        raise ValidationError(f"Invalid time of day: {value!r}", field="quiet_hours")


def make_dedup_key(integration_id: str, alert_name: str,
                   labels: Optional[Mapping[str, str]] = None) -> str:
    """
    Derive a dedup key from the integration and the alert identity.

    The alert name and sorted labels are hashed so that label ordering in the
    source payload never splits one condition into two incidents.

    Args:
        integration_id: Integration the alert arrived through
        alert_name: Alert name or title reported by the monitoring tool
        labels: Optional alert labels

    Returns:
        Dedup key of the form ``<integration>/<fingerprint>``
    """
    parts = [alert_name or "unknown"]
    parts.extend(f"{k}={v}" for k, v in sorted((labels or {}).items()))
    fingerprint = hashlib.sha256("|".join(parts).encode()).hexdigest()[:16]
    return f"{integration_id}/{fingerprint}"


def _enum_value(enum_cls, value: Any, field_name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid {field_name} {value!r}; expected one of: {allowed}",
                              field=field_name)


# =============================================================================
# ALERTS AND INCIDENTS
# =============================================================================

@dataclass
class Alert:
    """
    A single raw event pushed by a monitoring integration.

    Only ``status`` and ``ends_at`` may change after the alert is recorded,
    and only through a resolving follow-up alert.
    """
    dedup_key: str                             # Correlation key
    severity: AlertSeverity
    status: AlertStatus = AlertStatus.FIRING
    service_id: str = ""
    source: str = ""
    title: str = ""
    description: str = ""
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    labels: Dict[str, str] = field(default_factory=dict)
    alert_id: str = ""                         # Firing-instance identity; defaults to dedup_key
    tenant_id: str = "default"
    integration_id: Optional[str] = None

    def __post_init__(self):
        if not self.alert_id:
            self.alert_id = self.dedup_key

    def validate(self) -> None:
        """Raise ValidationError unless the alert can be correlated."""
        if not isinstance(self.dedup_key, str) or not self.dedup_key.strip():
            raise ValidationError("Alert dedup_key must be a non-empty string", field="dedup_key")
        if not isinstance(self.severity, AlertSeverity):
            raise ValidationError("Alert severity is required", field="severity")
        if not isinstance(self.status, AlertStatus):
            raise ValidationError("Alert status is required", field="status")

    @property
    def is_resolving(self) -> bool:
        return self.status is AlertStatus.RESOLVED

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Alert":
        """
        Build an alert from a monitoring payload.

        Accepts camelCase or snake_case keys. When no dedup key is supplied but
        an integration id and alert name are, the key is derived from them.

        Raises:
            ValidationError: If the payload lacks a dedup key or severity
        """
        def get(*names, default=None):
            for name in names:
                if payload.get(name) not in (None, ""):
                    return payload[name]
            return default

        labels = {str(k): str(v) for k, v in (get("labels", default={}) or {}).items()}
        integration_id = get("integrationId", "integration_id")
        title = get("title", "alertName", "alert_name", default="")
        dedup_key = get("dedupKey", "dedup_key")
        if not dedup_key and integration_id and title:
            dedup_key = make_dedup_key(str(integration_id), str(title), labels)
        if not dedup_key:
            raise ValidationError("Alert payload has no dedupKey", field="dedup_key")

        severity = get("severity")
        if severity is None:
            raise ValidationError("Alert payload has no severity", field="severity")

        alert = cls(
            dedup_key=str(dedup_key),
            severity=_enum_value(AlertSeverity, severity, "severity"),
            status=_enum_value(AlertStatus, get("status", default="firing"), "status"),
            service_id=str(get("serviceId", "service_id", default="")),
            source=str(get("source", default="")),
            title=str(title),
            description=str(get("description", default="")),
            starts_at=parse_timestamp(get("startsAt", "starts_at"), "starts_at"),
            ends_at=parse_timestamp(get("endsAt", "ends_at"), "ends_at"),
            labels=labels,
            alert_id=str(get("alertId", "alert_id", default="")),
            tenant_id=str(get("tenantId", "tenant_id", default="default")),
            integration_id=str(integration_id) if integration_id else None,
        )
        alert.validate()
        return alert


@dataclass(frozen=True)
class EscalationTarget:
    """Target selector of one escalation level."""
    target_type: TargetType
    target_id: str


@dataclass(frozen=True)
class EscalationLevel:
    """One step of an escalation policy."""
    targets: Tuple[EscalationTarget, ...]
    delay_seconds: float = 0.0                 # Wait before advancing if unacknowledged

    @property
    def delay(self) -> timedelta:
        return timedelta(seconds=self.delay_seconds)


@dataclass(frozen=True)
class EscalationPolicy:
    """Ordered, immutable escalation levels for a service."""
    policy_id: str
    levels: Tuple[EscalationLevel, ...]
    initial_delay_seconds: float = 0.0

    def level(self, index: int) -> Optional[EscalationLevel]:
        if 0 <= index < len(self.levels):
            return self.levels[index]
        return None

    def has_level(self, index: int) -> bool:
        return self.level(index) is not None

    @classmethod
    def from_dict(cls, policy_id: str, config: Mapping[str, Any]) -> "EscalationPolicy":
        levels = []
        for level_config in config.get("levels", []):
            targets = tuple(
                EscalationTarget(
                    target_type=_enum_value(TargetType, t.get("type", "user"), "target type"),
                    target_id=str(t["id"]),
                )
                for t in level_config.get("targets", [])
            )
            levels.append(EscalationLevel(
                targets=targets,
                delay_seconds=float(level_config.get("delay_seconds", 0)),
            ))
        return cls(
            policy_id=policy_id,
            levels=tuple(levels),
            initial_delay_seconds=float(config.get("initial_delay_seconds", 0)),
        )


@dataclass
class Incident:
    """
    The user-facing aggregate of alerts sharing a dedup key.

    ``status`` and ``escalation_level`` are written only by the incident state
    machine. ``escalation_policy`` is the by-value snapshot taken at trigger.
    """
    id: str
    incident_number: int
    title: str
    severity: AlertSeverity
    service_id: str
    dedup_key: str
    triggered_at: datetime
    status: IncidentStatus = IncidentStatus.TRIGGERED
    tenant_id: str = "default"
    escalation_level: int = 0
    open_alert_ids: Set[str] = field(default_factory=set)
    alert_ids: Set[str] = field(default_factory=set)
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    needs_attention: bool = False              # Escalation ran out without reaching anyone
    reopened_from: Optional[str] = None
    escalation_policy: Optional[EscalationPolicy] = None
    updated_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status is not IncidentStatus.RESOLVED

    @property
    def is_escalating(self) -> bool:
        """Only triggered incidents escalate or notify."""
        return self.status is IncidentStatus.TRIGGERED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "incident_number": self.incident_number,
            "title": self.title,
            "severity": self.severity.value,
            "status": self.status.value,
            "service_id": self.service_id,
            "dedup_key": self.dedup_key,
            "escalation_level": self.escalation_level,
            "open_alert_ids": sorted(self.open_alert_ids),
            "acknowledged_by": self.acknowledged_by,
            "resolved_by": self.resolved_by,
            "triggered_at": self.triggered_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "needs_attention": self.needs_attention,
            "reopened_from": self.reopened_from,
        }


@dataclass
class TimelineEntry:
    """Audit record of one incident lifecycle event."""
    incident_id: str
    event_type: str
    description: str
    occurred_at: datetime
    user: Optional[str] = None


@dataclass
class IngestResult:
    """Outcome of ingesting one alert."""
    incident_id: Optional[str]
    created: bool
    suppressed: bool = False
    auto_resolved: bool = False


# =============================================================================
# NOTIFICATION PREFERENCES AND ATTEMPTS
# =============================================================================

DEFAULT_CHANNELS = frozenset({ChannelKind.EMAIL, ChannelKind.PUSH})


@dataclass(frozen=True)
class NotificationPreference:
    """Per-user delivery preferences. Read-only to the engine."""
    user_id: str
    channels: FrozenSet[ChannelKind] = DEFAULT_CHANNELS
    quiet_hours_start: Optional[time] = None
    quiet_hours_end: Optional[time] = None
    notification_delay_seconds: float = 0.0
    contacts: Mapping[ChannelKind, str] = field(default_factory=dict)
    timezone: str = "UTC"
    bypass_delay_on_escalation: bool = True

    @property
    def notification_delay(self) -> timedelta:
        return timedelta(seconds=self.notification_delay_seconds)

    @property
    def has_quiet_hours(self) -> bool:
        return (self.quiet_hours_start is not None and self.quiet_hours_end is not None
                and self.quiet_hours_start != self.quiet_hours_end)

    def address_for(self, channel: ChannelKind) -> str:
        return self.contacts.get(channel, self.user_id)

    @classmethod
    def default_for(cls, user_id: str) -> "NotificationPreference":
        return cls(user_id=user_id)

    @classmethod
    def from_dict(cls, user_id: str, config: Mapping[str, Any]) -> "NotificationPreference":
        quiet_hours = config.get("quiet_hours") or {}
        channels = config.get("channels")
        contacts = {
            _enum_value(ChannelKind, kind, "channel"): str(address)
            for kind, address in (config.get("contacts") or {}).items()
        }
        return cls(
            user_id=user_id,
            channels=(frozenset(_enum_value(ChannelKind, c, "channel") for c in channels)
                      if channels is not None else DEFAULT_CHANNELS),
            quiet_hours_start=parse_time_of_day(quiet_hours.get("start")),
            quiet_hours_end=parse_time_of_day(quiet_hours.get("end")),
            notification_delay_seconds=float(config.get("notification_delay_seconds", 0)),
            contacts=contacts,
            timezone=str(config.get("timezone", "UTC")),
            bypass_delay_on_escalation=bool(config.get("bypass_delay_on_escalation", True)),
        )


@dataclass
class NotificationMessage:
    """Rendered content handed to a channel adapter."""
    subject: str
    body: str
    incident_id: str = ""
    severity: Optional[AlertSeverity] = None


@dataclass
class NotificationAttempt:
    """
    Delivery record for one (incident, level, target, channel) tuple.
    Created and mutated only by the notification dispatcher.
    """
    attempt_id: str
    incident_id: str
    level: int
    target: str
    channel: ChannelKind
    send_at: datetime
    created_at: datetime
    status: AttemptStatus = AttemptStatus.PENDING
    attempt_count: int = 0
    last_attempt_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    address: str = ""
    last_error: Optional[str] = None

    @property
    def key(self) -> Tuple[str, int, str, ChannelKind]:
        return (self.incident_id, self.level, self.target, self.channel)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "incident_id": self.incident_id,
            "level": self.level,
            "target": self.target,
            "channel": self.channel.value,
            "status": self.status.value,
            "attempt_count": self.attempt_count,
            "send_at": self.send_at.isoformat(),
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "last_error": self.last_error,
        }


__all__: List[str] = [
    'SYSTEM_ACTOR',
    'AlertSeverity',
    'AlertStatus',
    'IncidentStatus',
    'AttemptStatus',
    'ChannelKind',
    'TargetType',
    'Alert',
    'Incident',
    'IngestResult',
    'TimelineEntry',
    'EscalationTarget',
    'EscalationLevel',
    'EscalationPolicy',
    'NotificationPreference',
    'NotificationMessage',
    'NotificationAttempt',
    'make_dedup_key',
    'parse_timestamp',
    'parse_time_of_day',
    'utcnow',
]
