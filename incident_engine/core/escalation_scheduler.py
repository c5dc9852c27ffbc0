#!/usr/bin/env python3
"""
Incident Engine - Escalation Scheduler
Drives an incident through its escalation policy's levels over time.

Each open incident has at most one live escalation timer. When it fires for
level N, the scheduler re-checks the incident under its lock, resolves the
level's targets through the on-call lookup, gates every (target, channel)
through the quiet-hours evaluator, hands the result to the dispatcher and
arms the timer for level N+1. Acknowledgment or resolution cancels the timer.
"""

import asyncio
from datetime import datetime, timedelta
from typing import List, Optional

import structlog

from .dispatcher import NotificationDispatcher
from .errors import PolicyResolutionError, StaleEscalationError
from .models import (
    EscalationPolicy,
    Incident,
    NotificationPreference,
)
from .ports import OnCallResolver, PreferenceReader
from .quiet_hours import DecisionAction, decide
from .state_machine import IncidentStateMachine
from .timers import TimerQueue

logger = structlog.get_logger()


class EscalationScheduler:
    """
    Level-by-level escalation driver.

    Timer handlers run on the timer queue's worker pool; each one takes the
    incident lock for the whole level fire, so a concurrent acknowledgment
    either lands before the fire (and the fire turns stale) or after it (and
    cancels everything the fire scheduled).
    """

    def __init__(self, timers: TimerQueue, state_machine: IncidentStateMachine,
                 on_call: OnCallResolver, preferences: PreferenceReader,
                 dispatcher: NotificationDispatcher, formatter=None,
                 lookup_timeout_seconds: float = 10.0):
        """
        Initialize the escalation scheduler.

        Args:
            timers: Shared timer queue
            state_machine: Incident state machine (lock owner and only writer)
            on_call: On-call lookup resolving level targets to user ids
            preferences: Notification preference reader
            dispatcher: Notification dispatcher
            formatter: Optional MessageFormatter rendering notification content
            lookup_timeout_seconds: Bound on one on-call or preference lookup
        """
        self.timers = timers
        self.state_machine = state_machine
        self.on_call = on_call
        self.preferences = preferences
        self.dispatcher = dispatcher
        self.formatter = formatter
        self.lookup_timeout_seconds = lookup_timeout_seconds
        self.clock = state_machine.clock

        self.stale_discarded = 0
        self.logger = structlog.get_logger().bind(component="escalation_scheduler")

    @staticmethod
    def _token(incident_id: str):
        return ("escalation", incident_id)

    @staticmethod
    def _renotify_token(incident_id: str):
        return ("renotify", incident_id)

    # =========================================================================
    # STATE MACHINE HOOKS
    # =========================================================================

    def on_trigger(self, incident: Incident) -> None:
        """Arm the level-0 timer for a newly triggered incident."""
        policy = incident.escalation_policy
        delay = policy.initial_delay_seconds if policy else 0.0
        self._arm(incident.id, 0, self.clock.now() + timedelta(seconds=delay))

    def on_severity_raised(self, incident: Incident) -> None:
        """Re-notify the incident's current level on the next timer pass."""
        incident_id = incident.id

        async def handler():
            await self._renotify(incident_id)

        self.timers.schedule_at(self.clock.now(), self._renotify_token(incident_id), handler)

    def cancel(self, incident_id: str) -> bool:
        """
        Cancel the incident's escalation timer. Idempotent.

        Returns:
            True if a pending timer was cancelled
        """
        self.timers.cancel(self._renotify_token(incident_id))
        cancelled = self.timers.cancel(self._token(incident_id))
        if cancelled:
            self.logger.info("Escalation timer cancelled", incident_id=incident_id)
        return cancelled

    def is_armed(self, incident_id: str) -> bool:
        return self.timers.is_scheduled(self._token(incident_id))

    def next_fire_time(self, incident_id: str) -> Optional[datetime]:
        return self.timers.fire_time(self._token(incident_id))

    # =========================================================================
    # LEVEL FIRING
    # =========================================================================

    def _arm(self, incident_id: str, level: int, when: datetime) -> None:
        async def handler():
            await self.fire_level(incident_id, level)

        self.timers.schedule_at(when, self._token(incident_id), handler)
        self.logger.debug("Escalation timer armed",
                          incident_id=incident_id, level=level, fire_at=when.isoformat())

    async def fire_level(self, incident_id: str, level: int) -> None:
        """
        Timer handler for escalation level ``level``.

        Stale fires (incident closed, or already moved past the level) are
        logged and discarded. A level whose targets cannot be resolved is
        skipped immediately; running out of levels that way flags the
        incident for manual attention.
        """
        try:
            async with self.state_machine.exclusive(incident_id):
                incident = await self.state_machine.get(incident_id)
                incident = await self._enter_level(incident, level)
                policy = incident.escalation_policy

                try:
                    notified = await self._notify_level(incident, policy, level)
                except PolicyResolutionError as e:
                    self.logger.warning("Escalation level has no reachable targets",
                                        incident_id=incident_id, level=level, error=str(e))
                    await self._skip_level(incident, policy, level)
                    return

                if policy.has_level(level + 1):
                    self._arm(incident_id, level + 1,
                              self.clock.now() + policy.level(level).delay)
                else:
                    self.logger.info("Escalation policy exhausted",
                                     incident_id=incident_id, level=level)
                    self.state_machine.publish_exhausted(incident)

                self.logger.info("Escalation level fired",
                                 incident_id=incident_id, level=level, notified=notified)

        except StaleEscalationError as e:
            self.stale_discarded += 1
            self.logger.warning("Discarding stale escalation",
                                incident_id=incident_id, level=level, reason=e.reason)

    async def _enter_level(self, incident: Incident, level: int) -> Incident:
        if not incident.is_escalating:
            raise StaleEscalationError(incident.id, level, f"incident {incident.status.value}")
        if level > 0:
            if incident.escalation_level != level - 1:
                raise StaleEscalationError(incident.id, level,
                                           f"incident at level {incident.escalation_level}")
            incident = await self.state_machine.advance_escalation(incident, level)
        elif incident.escalation_level != 0:
            raise StaleEscalationError(incident.id, level,
                                       f"incident at level {incident.escalation_level}")
        return incident

    async def _skip_level(self, incident: Incident, policy: Optional[EscalationPolicy],
                          level: int) -> None:
        if policy is not None and policy.has_level(level + 1):
            self._arm(incident.id, level + 1, self.clock.now())
            return
        await self.state_machine.flag_needs_attention(
            incident, f"No reachable targets at level {level} and no levels remain")

    async def _renotify(self, incident_id: str) -> None:
        async with self.state_machine.exclusive(incident_id):
            incident = await self.state_machine.get(incident_id)
            if not incident.is_escalating:
                self.logger.debug("Skipping re-notification", incident_id=incident_id,
                                  status=incident.status.value)
                return
            level = incident.escalation_level
            # Level not fired yet; the pending level timer will notify at the new severity
            if not self._level_fired(incident):
                return
            try:
                await self._notify_level(incident, incident.escalation_policy, level)
            except PolicyResolutionError as e:
                self.logger.warning("Re-notification found no targets",
                                    incident_id=incident_id, level=level, error=str(e))

    def _level_fired(self, incident: Incident) -> bool:
        return any(a.level == incident.escalation_level
                   for a in self.dispatcher.attempts_for(incident.id))

    # =========================================================================
    # TARGETS AND NOTIFICATIONS
    # =========================================================================

    async def _notify_level(self, incident: Incident, policy: Optional[EscalationPolicy],
                            level: int) -> int:
        """
        Notify every target of ``level`` on every channel they enabled.

        Returns:
            Number of (target, channel) tuples handed to the dispatcher

        Raises:
            PolicyResolutionError: No policy level, lookup failure or no targets
        """
        escalation_level = policy.level(level) if policy else None
        if escalation_level is None:
            raise PolicyResolutionError(incident.id, level, "no escalation policy level")

        now = self.clock.now()
        user_ids = await self._resolve_targets(incident, escalation_level, level, now)
        message = self._render(incident, level)

        notified = 0
        for user_id in user_ids:
            preference = await self._preference_for(user_id)
            decision = decide(preference, incident.severity, now, escalated=level > 0)

            for channel in sorted(preference.channels, key=lambda c: c.value):
                if channel not in self.dispatcher.adapters:
                    self.logger.debug("No adapter for preferred channel",
                                      target=user_id, channel=channel.value)
                    continue
                address = preference.address_for(channel)
                if decision.action is DecisionAction.SUPPRESS:
                    await self.dispatcher.record_suppressed(
                        incident.id, level, user_id, channel,
                        reason=decision.reason, address=address)
                else:
                    await self.dispatcher.dispatch(
                        incident.id, level, user_id, channel, decision.send_at,
                        message=message, address=address)
                notified += 1
        return notified

    async def _resolve_targets(self, incident: Incident, escalation_level, level: int,
                               now: datetime) -> List[str]:
        try:
            user_ids = await asyncio.wait_for(
                self.on_call.resolve_targets(escalation_level, incident.service_id, now),
                timeout=self.lookup_timeout_seconds)
        except asyncio.TimeoutError:
            raise PolicyResolutionError(incident.id, level, "on-call lookup timed out")
        except Exception as e:
            raise PolicyResolutionError(incident.id, level, f"on-call lookup failed: {e}") from e

        # Keep lookup order, drop duplicates
        user_ids = list(dict.fromkeys(user_ids or []))
        if not user_ids:
            raise PolicyResolutionError(incident.id, level)
        return user_ids

    async def _preference_for(self, user_id: str) -> NotificationPreference:
        try:
            preference = await asyncio.wait_for(self.preferences.get_preference(user_id),
                                                timeout=self.lookup_timeout_seconds)
        except Exception as e:
            self.logger.warning("Preference lookup failed, using defaults",
                                target=user_id, error=str(e))
            preference = None
        return preference or NotificationPreference.default_for(user_id)

    def _render(self, incident: Incident, level: int):
        if self.formatter is None:
            return None
        return self.formatter.render(incident, level)
