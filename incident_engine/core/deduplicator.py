#!/usr/bin/env python3
"""
Incident Engine - Alert Deduplicator
Correlates incoming alerts into incidents by (service, dedup key).

At most one open incident exists per (service_id, dedup_key). Ingestion for
one key is serialized under a correlation lock, so concurrent alerts for the
same key never create two incidents.
"""

import uuid
from datetime import timedelta
from typing import Optional

import structlog

from .errors import StorageError
from .locks import KeyedLocks
from .models import Alert, Incident, IngestResult
from .ports import IncidentStore, PolicyProvider
from .state_machine import IncidentStateMachine

logger = structlog.get_logger()


class Deduplicator:
    """
    Maps each alert to a new or existing incident.

    A firing alert with no open incident always creates a new one; inside
    the reopen window it is linked to the incident it follows. A resolving
    alert with no open incident is recorded and creates nothing, whether or
    not it falls inside the reopen window.
    """

    def __init__(self, store: IncidentStore, state_machine: IncidentStateMachine,
                 policy_provider: Optional[PolicyProvider] = None,
                 locks: Optional[KeyedLocks] = None,
                 reopen_window_seconds: float = 0.0):
        """
        Initialize the deduplicator.

        Args:
            store: Durable incident store
            state_machine: Incident state machine applying every change
            policy_provider: Source of the escalation policy snapshot for new incidents
            locks: Lock map shared with the state machine
            reopen_window_seconds: Window in which a recurrence is linked to
                the incident it follows (0 disables linking)
        """
        self.store = store
        self.state_machine = state_machine
        self.policy_provider = policy_provider
        self.locks = locks or state_machine.locks
        self.reopen_window = timedelta(seconds=reopen_window_seconds)
        self.clock = state_machine.clock
        self.logger = structlog.get_logger().bind(component="deduplicator")

    async def ingest(self, alert: Alert) -> IngestResult:
        """
        Correlate one alert.

        Args:
            alert: Alert to correlate

        Returns:
            IngestResult naming the incident the alert landed in

        Raises:
            ValidationError: Alert lacks a dedup key or severity
            StorageError: The alert or the resulting transition was not recorded
        """
        alert.validate()

        async with self.locks.lock_for(("correlation", alert.service_id, alert.dedup_key)):
            await self._save_alert(alert)

            incident = await self.store.load_open_incident(alert.service_id, alert.dedup_key)
            if incident is not None:
                outcome = await self.state_machine.attach_alert(incident.id, alert)
                if outcome is not None:
                    self.logger.debug("Alert attached to open incident",
                                      incident_id=incident.id, alert_id=alert.alert_id,
                                      dedup_key=alert.dedup_key)
                    return IngestResult(incident_id=incident.id, created=False,
                                        auto_resolved=outcome.auto_resolved)

            if alert.is_resolving:
                self.logger.info("Resolving alert matched no open incident",
                                 dedup_key=alert.dedup_key, service_id=alert.service_id)
                return IngestResult(incident_id=None, created=False)

            incident = await self._new_incident(alert)
            await self.state_machine.trigger(incident)
            return IngestResult(incident_id=incident.id, created=True)

    async def _save_alert(self, alert: Alert) -> None:
        try:
            await self.store.save_alert(alert)
        except StorageError:
            self.logger.error("Failed to record alert",
                              alert_id=alert.alert_id, dedup_key=alert.dedup_key)
            raise

    async def _new_incident(self, alert: Alert) -> Incident:
        now = self.clock.now()
        policy = None
        if self.policy_provider is not None:
            policy = await self.policy_provider.get_policy(alert.service_id)
        if policy is None:
            self.logger.warning("No escalation policy for service",
                                service_id=alert.service_id)

        return Incident(
            id=str(uuid.uuid4()),
            incident_number=await self.store.next_incident_number(alert.tenant_id),
            title=alert.title or alert.dedup_key,
            severity=alert.severity,
            service_id=alert.service_id,
            dedup_key=alert.dedup_key,
            triggered_at=now,
            tenant_id=alert.tenant_id,
            open_alert_ids={alert.alert_id},
            alert_ids={alert.alert_id},
            reopened_from=await self._reopened_from(alert),
            escalation_policy=policy,
            updated_at=now,
        )

    async def _reopened_from(self, alert: Alert) -> Optional[str]:
        if self.reopen_window <= timedelta(0):
            return None
        previous = await self.store.load_last_resolved_incident(alert.service_id, alert.dedup_key)
        if previous is None or previous.resolved_at is None:
            return None
        if self.clock.now() - previous.resolved_at <= self.reopen_window:
            return previous.id
        return None
