#!/usr/bin/env python3
"""
Incident Engine - Error Taxonomy
Exceptions raised by the correlation and escalation engine.
"""

from typing import Optional


class EngineError(Exception):
    """Base class for all engine errors."""


class ValidationError(EngineError):
    """Malformed alert or payload. Rejected synchronously, never retried."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class ChannelDeliveryError(EngineError):
    """Transient channel adapter failure; fed into the retry path."""

    def __init__(self, message: str, channel: Optional[str] = None,
                 timed_out: bool = False):
        super().__init__(message)
        self.channel = channel
        self.timed_out = timed_out


class StaleEscalationError(EngineError):
    """A fired escalation timer found the incident already past its level."""

    def __init__(self, incident_id: str, level: int, reason: str):
        super().__init__(f"Stale escalation for {incident_id} level {level}: {reason}")
        self.incident_id = incident_id
        self.level = level
        self.reason = reason


class PolicyResolutionError(EngineError):
    """On-call lookup produced no target for an escalation level."""

    def __init__(self, incident_id: str, level: int, reason: str = "no targets"):
        super().__init__(f"No targets for {incident_id} level {level}: {reason}")
        self.incident_id = incident_id
        self.level = level


class StorageError(EngineError):
    """The durable store failed to record a write."""


class IncidentNotFoundError(EngineError):
    """No incident exists with the requested id."""

    def __init__(self, incident_id: str):
        super().__init__(f"Incident {incident_id} not found")
        self.incident_id = incident_id
