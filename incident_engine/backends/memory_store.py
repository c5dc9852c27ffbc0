#!/usr/bin/env python3
"""
Incident Engine - In-Memory Incident Store
Process-local IncidentStore used by the CLI simulator and the test suite.
Records are copied on the way in and out, so callers never share mutable
state with the store.
"""

import copy
from typing import Dict, List, Optional, Tuple

from ..core.errors import StorageError
from ..core.models import (
    Alert,
    Incident,
    IncidentStatus,
    NotificationAttempt,
    TimelineEntry,
)
from ..core.ports import IncidentStore


class InMemoryIncidentStore(IncidentStore):
    """
    Dictionary-backed store.

    ``fail_writes`` makes every write raise StorageError, which lets tests
    exercise the engine's storage-failure handling.
    """

    def __init__(self):
        self.incidents: Dict[str, Incident] = {}
        self.alerts: List[Alert] = []
        self.attempts: Dict[str, NotificationAttempt] = {}
        self.timeline: List[TimelineEntry] = []
        self._counters: Dict[str, int] = {}
        self.fail_writes = False

    def _check_writable(self) -> None:
        if self.fail_writes:
            raise StorageError("Store is not accepting writes")

    # -------------------------------------------------------------------------
    # INCIDENTS
    # -------------------------------------------------------------------------

    async def load_open_incident(self, service_id: str, dedup_key: str) -> Optional[Incident]:
        for incident in self.incidents.values():
            if (incident.service_id == service_id and incident.dedup_key == dedup_key
                    and incident.is_open):
                return copy.deepcopy(incident)
        return None

    async def load_last_resolved_incident(self, service_id: str,
                                          dedup_key: str) -> Optional[Incident]:
        resolved = [
            i for i in self.incidents.values()
            if i.service_id == service_id and i.dedup_key == dedup_key
            and i.status is IncidentStatus.RESOLVED and i.resolved_at is not None
        ]
        if not resolved:
            return None
        return copy.deepcopy(max(resolved, key=lambda i: i.resolved_at))

    async def get_incident(self, incident_id: str) -> Optional[Incident]:
        incident = self.incidents.get(incident_id)
        return copy.deepcopy(incident) if incident else None

    async def save_incident(self, incident: Incident) -> None:
        self._check_writable()
        self.incidents[incident.id] = copy.deepcopy(incident)

    async def next_incident_number(self, tenant_id: str) -> int:
        self._check_writable()
        self._counters[tenant_id] = self._counters.get(tenant_id, 0) + 1
        return self._counters[tenant_id]

    # -------------------------------------------------------------------------
    # RECORDS
    # -------------------------------------------------------------------------

    async def save_alert(self, alert: Alert) -> None:
        self._check_writable()
        self.alerts.append(copy.deepcopy(alert))

    async def append_notification_attempt(self, attempt: NotificationAttempt) -> None:
        """Record an attempt; recording the same attempt id again replaces it."""
        self._check_writable()
        self.attempts[attempt.attempt_id] = copy.deepcopy(attempt)

    async def append_timeline_entry(self, entry: TimelineEntry) -> None:
        self._check_writable()
        self.timeline.append(copy.deepcopy(entry))

    # -------------------------------------------------------------------------
    # INSPECTION
    # -------------------------------------------------------------------------

    def open_incidents(self) -> List[Incident]:
        return [copy.deepcopy(i) for i in self.incidents.values() if i.is_open]

    def attempts_for(self, incident_id: str) -> List[NotificationAttempt]:
        return [copy.deepcopy(a) for a in self.attempts.values() if a.incident_id == incident_id]

    def timeline_for(self, incident_id: str) -> List[TimelineEntry]:
        return [e for e in self.timeline if e.incident_id == incident_id]

    def counts(self) -> Dict[str, int]:
        return {
            'incidents': len(self.incidents),
            'open_incidents': sum(1 for i in self.incidents.values() if i.is_open),
            'alerts': len(self.alerts),
            'notification_attempts': len(self.attempts),
        }
