#!/usr/bin/env python3
"""
Incident Engine - Incident State Machine
Owns the lifecycle of every incident: triggered -> acknowledged -> resolved,
or triggered -> resolved directly. Nothing leaves resolved; a recurrence
becomes a new incident.

All state-affecting operations on one incident run inside that incident's
lock. Every transition into acknowledged or resolved cancels the incident's
escalation timer and pending notification attempts before it returns.
A transition counts as applied only once the store has saved it; a failed
save leaves timers, attempts and subscribers untouched.
"""

import copy
from dataclasses import dataclass
from typing import Optional

import structlog

from .errors import IncidentNotFoundError, StaleEscalationError, StorageError
from .events import EventBus, IncidentEvent, IncidentEventType
from .locks import KeyedLocks
from .models import (
    SYSTEM_ACTOR,
    Alert,
    AlertSeverity,
    Incident,
    IncidentStatus,
    TimelineEntry,
)
from .ports import IncidentStore
from .timers import SystemClock

logger = structlog.get_logger()


@dataclass
class AttachOutcome:
    """Result of merging an alert into an open incident."""
    incident: Incident
    auto_resolved: bool = False
    severity_raised: bool = False


class IncidentStateMachine:
    """
    Validates and applies incident transitions.

    The escalation scheduler and the dispatcher are attached after
    construction; the state machine calls into them only to start escalation
    and to cancel pending work on terminal transitions.
    """

    def __init__(self, store: IncidentStore, clock=None,
                 events: Optional[EventBus] = None,
                 locks: Optional[KeyedLocks] = None):
        self.store = store
        self.clock = clock or SystemClock()
        self.events = events or EventBus()
        self.locks = locks or KeyedLocks()
        self.escalation_scheduler = None
        self.dispatcher = None
        self.logger = structlog.get_logger().bind(component="state_machine")

    def set_escalation_scheduler(self, scheduler) -> None:
        self.escalation_scheduler = scheduler

    def set_dispatcher(self, dispatcher) -> None:
        self.dispatcher = dispatcher

    def exclusive(self, incident_id: str):
        """Per-incident mutual exclusion scope: ``async with sm.exclusive(id):``."""
        return self.locks.lock_for(("incident", incident_id))

    async def get(self, incident_id: str) -> Incident:
        incident = await self.store.get_incident(incident_id)
        if incident is None:
            raise IncidentNotFoundError(incident_id)
        return incident

    # -------------------------------------------------------------------------
    # TRANSITIONS
    # -------------------------------------------------------------------------

    async def trigger(self, incident: Incident) -> Incident:
        """
        Record a freshly created incident and start escalation at level 0.

        Args:
            incident: New incident carrying its policy snapshot

        Returns:
            The saved incident
        """
        async with self.exclusive(incident.id):
            incident.status = IncidentStatus.TRIGGERED
            incident.escalation_level = 0
            incident.updated_at = self.clock.now()
            await self._save(incident)

            reopened = incident.reopened_from is not None
            await self._timeline(incident, "reopened" if reopened else "triggered",
                                 f"Incident #{incident.incident_number} "
                                 f"{'reopened' if reopened else 'triggered'}")
            self.logger.info("Incident triggered",
                             incident_id=incident.id,
                             incident_number=incident.incident_number,
                             severity=incident.severity.value,
                             reopened_from=incident.reopened_from)
            self._publish(IncidentEventType.REOPENED if reopened else IncidentEventType.TRIGGERED,
                          incident)

            if self.escalation_scheduler is not None:
                self.escalation_scheduler.on_trigger(incident)
            return incident

    async def acknowledge(self, incident_id: str, by_user: str) -> Incident:
        """
        Acknowledge an incident and stop its escalation.

        Idempotent: acknowledging an acknowledged or resolved incident returns
        it unchanged.

        Raises:
            IncidentNotFoundError: Unknown incident id
            StorageError: The transition could not be recorded
        """
        async with self.exclusive(incident_id):
            incident = await self.get(incident_id)
            if incident.status is not IncidentStatus.TRIGGERED:
                self.logger.info("Acknowledge is a no-op",
                                 incident_id=incident_id, status=incident.status.value)
                return incident

            now = self.clock.now()
            updated = copy.deepcopy(incident)
            updated.status = IncidentStatus.ACKNOWLEDGED
            updated.acknowledged_by = by_user
            updated.acknowledged_at = now
            updated.updated_at = now
            await self._save(updated)

            await self._halt_escalation(updated)
            await self._timeline(updated, "acknowledged", "Incident acknowledged", user=by_user)
            self.logger.info("Incident acknowledged",
                             incident_id=incident_id,
                             acknowledged_by=by_user,
                             escalation_level=updated.escalation_level)
            self._publish(IncidentEventType.ACKNOWLEDGED, updated, actor=by_user)
            return updated

    async def resolve(self, incident_id: str, by_user: str = SYSTEM_ACTOR) -> Incident:
        """
        Resolve an incident and stop its escalation. Idempotent.

        Raises:
            IncidentNotFoundError: Unknown incident id
            StorageError: The transition could not be recorded
        """
        async with self.exclusive(incident_id):
            incident = await self.get(incident_id)
            if incident.status is IncidentStatus.RESOLVED:
                self.logger.info("Resolve is a no-op", incident_id=incident_id)
                return incident

            updated = self._resolved_copy(incident, by_user)
            await self._save(updated)

            await self._halt_escalation(updated)
            await self._timeline(updated, "resolved", "Incident resolved", user=by_user)
            self.logger.info("Incident resolved", incident_id=incident_id, resolved_by=by_user)
            self._publish(IncidentEventType.RESOLVED, updated, actor=by_user)
            return updated

    async def attach_alert(self, incident_id: str, alert: Alert) -> Optional[AttachOutcome]:
        """
        Merge an alert into an open incident.

        A firing alert joins ``open_alert_ids`` and may raise the severity. A
        resolving alert closes the open alert with the same alert id, or every
        open alert when none matches. Emptying ``open_alert_ids`` resolves the
        incident within the same critical section.

        Returns:
            The outcome, or None if the incident is no longer open
        """
        async with self.exclusive(incident_id):
            incident = await self.get(incident_id)
            if not incident.is_open:
                return None

            updated = copy.deepcopy(incident)
            updated.updated_at = self.clock.now()
            outcome = AttachOutcome(incident=updated)

            if alert.is_resolving:
                if alert.alert_id in updated.open_alert_ids:
                    updated.open_alert_ids.discard(alert.alert_id)
                else:
                    updated.open_alert_ids.clear()
            else:
                updated.open_alert_ids.add(alert.alert_id)
                updated.alert_ids.add(alert.alert_id)
                highest = AlertSeverity.highest(updated.severity, alert.severity)
                if highest is not updated.severity:
                    updated.severity = highest
                    outcome.severity_raised = True

            if not updated.open_alert_ids:
                updated = self._resolved_copy(updated, SYSTEM_ACTOR)
                outcome.incident = updated
                outcome.auto_resolved = True
                await self._save(updated)
                await self._halt_escalation(updated)
                await self._timeline(updated, "auto_resolved",
                                     "Incident auto-resolved (all alerts resolved)")
                self.logger.info("Incident auto-resolved", incident_id=incident_id)
                self._publish(IncidentEventType.AUTO_RESOLVED, updated, actor=SYSTEM_ACTOR)
                return outcome

            await self._save(updated)
            await self._timeline(updated, "alert_attached",
                                 f"Alert {alert.alert_id} {alert.status.value}")
            self._publish(IncidentEventType.ALERT_ATTACHED, updated)

            if outcome.severity_raised:
                await self._timeline(updated, "severity_raised",
                                     f"Severity raised to {updated.severity.value}")
                self.logger.info("Incident severity raised",
                                 incident_id=incident_id, severity=updated.severity.value)
                self._publish(IncidentEventType.SEVERITY_RAISED, updated)
                if self.escalation_scheduler is not None and updated.is_escalating:
                    self.escalation_scheduler.on_severity_raised(updated)
            return outcome

    # -------------------------------------------------------------------------
    # ESCALATION HOOKS (caller holds exclusive(incident.id))
    # -------------------------------------------------------------------------

    async def advance_escalation(self, incident: Incident, new_level: int) -> Incident:
        """
        Move a triggered incident to ``new_level``. Levels only move forward.

        Raises:
            StaleEscalationError: Incident closed or already at/past new_level
        """
        if not incident.is_escalating:
            raise StaleEscalationError(incident.id, new_level, f"incident {incident.status.value}")
        if new_level <= incident.escalation_level:
            raise StaleEscalationError(incident.id, new_level,
                                       f"already at level {incident.escalation_level}")

        updated = copy.deepcopy(incident)
        updated.escalation_level = new_level
        updated.updated_at = self.clock.now()
        await self._save(updated)
        await self._timeline(updated, "escalated", f"Escalated to level {new_level}")
        self._publish(IncidentEventType.ESCALATED, updated)
        return updated

    async def flag_needs_attention(self, incident: Incident, reason: str) -> Incident:
        """Mark an incident whose automatic escalation reached nobody."""
        if incident.needs_attention:
            return incident
        updated = copy.deepcopy(incident)
        updated.needs_attention = True
        updated.updated_at = self.clock.now()
        await self._save(updated)
        await self._timeline(updated, "needs_attention", reason)
        self.logger.warning("Incident needs manual attention",
                            incident_id=incident.id, reason=reason)
        self._publish(IncidentEventType.NEEDS_ATTENTION, updated)
        return updated

    def publish_exhausted(self, incident: Incident) -> None:
        self._publish(IncidentEventType.ESCALATION_EXHAUSTED, incident)

    # -------------------------------------------------------------------------
    # INTERNALS
    # -------------------------------------------------------------------------

    def _resolved_copy(self, incident: Incident, by_user: str) -> Incident:
        now = self.clock.now()
        updated = copy.deepcopy(incident)
        updated.status = IncidentStatus.RESOLVED
        updated.resolved_by = by_user
        updated.resolved_at = now
        updated.updated_at = now
        return updated

    async def _save(self, incident: Incident) -> None:
        try:
            await self.store.save_incident(incident)
        except StorageError:
            self.logger.error("Failed to persist incident transition",
                              incident_id=incident.id, status=incident.status.value)
            raise

    async def _halt_escalation(self, incident: Incident) -> None:
        if self.escalation_scheduler is not None:
            self.escalation_scheduler.cancel(incident.id)
        if self.dispatcher is not None:
            await self.dispatcher.cancel_incident(incident.id)
            if not incident.is_open:
                self.dispatcher.release_incident(incident.id)

    async def _timeline(self, incident: Incident, event_type: str, description: str,
                        user: Optional[str] = None) -> None:
        entry = TimelineEntry(incident_id=incident.id, event_type=event_type,
                              description=description, occurred_at=self.clock.now(), user=user)
        try:
            await self.store.append_timeline_entry(entry)
        except StorageError as e:
            self.logger.error("Failed to append timeline entry",
                              incident_id=incident.id, event_type=event_type, error=str(e))

    def _publish(self, event_type: IncidentEventType, incident: Incident,
                 actor: Optional[str] = None) -> None:
        self.events.publish(IncidentEvent.of(event_type, incident, actor=actor,
                                             occurred_at=self.clock.now()))
