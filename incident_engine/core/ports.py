#!/usr/bin/env python3
"""
Incident Engine - Collaborator Contracts
Abstract interfaces for the external collaborators the engine depends on:
the durable store, on-call lookup, preference reader and policy source.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from .models import (
    Alert,
    EscalationLevel,
    EscalationPolicy,
    Incident,
    NotificationAttempt,
    NotificationPreference,
    TimelineEntry,
)


class IncidentStore(ABC):
    """
    Durable store of incidents, alerts, attempts and timeline entries.

    Writes must raise StorageError when they cannot be durably recorded; the
    engine treats a transition as applied only after save_incident returns.
    """

    @abstractmethod
    async def load_open_incident(self, service_id: str, dedup_key: str) -> Optional[Incident]:
        """Return the open incident for (service, dedup key), if any."""

    @abstractmethod
    async def load_last_resolved_incident(self, service_id: str,
                                          dedup_key: str) -> Optional[Incident]:
        """Return the most recently resolved incident for (service, dedup key)."""

    @abstractmethod
    async def get_incident(self, incident_id: str) -> Optional[Incident]:
        pass

    @abstractmethod
    async def save_incident(self, incident: Incident) -> None:
        pass

    @abstractmethod
    async def next_incident_number(self, tenant_id: str) -> int:
        """Allocate the next monotonic incident number for a tenant."""

    @abstractmethod
    async def save_alert(self, alert: Alert) -> None:
        pass

    @abstractmethod
    async def append_notification_attempt(self, attempt: NotificationAttempt) -> None:
        pass

    @abstractmethod
    async def append_timeline_entry(self, entry: TimelineEntry) -> None:
        pass


class OnCallResolver(ABC):
    """Answers "who should be notified for this level, for service S, at time T"."""

    @abstractmethod
    async def resolve_targets(self, level: EscalationLevel, service_id: str,
                              now: datetime) -> List[str]:
        """Return the user ids targeted by ``level``; may be empty."""


class PreferenceReader(ABC):

    @abstractmethod
    async def get_preference(self, user_id: str) -> Optional[NotificationPreference]:
        pass


class PolicyProvider(ABC):

    @abstractmethod
    async def get_policy(self, service_id: str) -> Optional[EscalationPolicy]:
        """Return the escalation policy configured for a service."""
