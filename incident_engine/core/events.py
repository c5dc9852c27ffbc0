#!/usr/bin/env python3
"""
Incident Engine - Event Bus
Typed incident-state and notification-attempt change events, delivered to
the boundary layer by message passing. Subscribers read from their own
bounded queue; the engine never calls back into presentation code.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import structlog

from .models import Incident, NotificationAttempt, utcnow

logger = structlog.get_logger()


class IncidentEventType(Enum):
    """Incident lifecycle events published by the state machine."""
    TRIGGERED = "incident.triggered"
    REOPENED = "incident.reopened"
    ALERT_ATTACHED = "incident.alert_attached"
    SEVERITY_RAISED = "incident.severity_raised"
    ESCALATED = "incident.escalated"
    ACKNOWLEDGED = "incident.acknowledged"
    RESOLVED = "incident.resolved"
    AUTO_RESOLVED = "incident.auto_resolved"
    NEEDS_ATTENTION = "incident.needs_attention"
    ESCALATION_EXHAUSTED = "incident.escalation_exhausted"


class NotificationEventType(Enum):
    """Notification attempt changes published by the dispatcher."""
    CREATED = "notification.created"
    SENT = "notification.sent"
    RETRY_SCHEDULED = "notification.retry_scheduled"
    FAILED = "notification.failed"
    SUPPRESSED = "notification.suppressed"
    CANCELLED = "notification.cancelled"


@dataclass(frozen=True)
class IncidentEvent:
    """Snapshot of an incident after a state change."""
    type: IncidentEventType
    incident: Dict[str, Any]
    actor: Optional[str] = None
    occurred_at: datetime = field(default_factory=utcnow)

    @property
    def incident_id(self) -> str:
        return self.incident["id"]

    @classmethod
    def of(cls, event_type: IncidentEventType, incident: Incident,
           actor: Optional[str] = None, occurred_at: Optional[datetime] = None) -> "IncidentEvent":
        return cls(type=event_type, incident=incident.to_dict(), actor=actor,
                   occurred_at=occurred_at or utcnow())


@dataclass(frozen=True)
class NotificationEvent:
    """Snapshot of a notification attempt after a state change."""
    type: NotificationEventType
    attempt: Dict[str, Any]
    occurred_at: datetime = field(default_factory=utcnow)

    @property
    def incident_id(self) -> str:
        return self.attempt["incident_id"]

    @classmethod
    def of(cls, event_type: NotificationEventType, attempt: NotificationAttempt,
           occurred_at: Optional[datetime] = None) -> "NotificationEvent":
        return cls(type=event_type, attempt=attempt.to_dict(),
                   occurred_at=occurred_at or utcnow())


EngineEvent = Union[IncidentEvent, NotificationEvent]


class Subscription:
    """A subscriber's view of the event stream."""

    def __init__(self, bus: "EventBus", maxsize: int):
        self._bus = bus
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    async def get(self) -> EngineEvent:
        return await self.queue.get()

    def get_nowait(self) -> EngineEvent:
        return self.queue.get_nowait()

    def drain(self) -> List[EngineEvent]:
        """Return every event currently queued without waiting."""
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events

    def close(self) -> None:
        self.closed = True
        self._bus.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> EngineEvent:
        if self.closed and self.queue.empty():
            raise StopAsyncIteration
        return await self.queue.get()


class EventBus:
    """Fan-out of engine events to every subscription queue."""

    def __init__(self, queue_size: int = 1000):
        self.queue_size = queue_size
        self._subscriptions: List[Subscription] = []
        self.published_count = 0

    def subscribe(self, maxsize: Optional[int] = None) -> Subscription:
        subscription = Subscription(self, maxsize or self.queue_size)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, event: EngineEvent) -> None:
        """
        Deliver an event to every subscriber without blocking.

        A full subscriber queue loses its oldest event; publishing never
        waits on a slow consumer.
        """
        self.published_count += 1
        for subscription in list(self._subscriptions):
            if subscription.queue.full():
                subscription.queue.get_nowait()
                subscription.dropped += 1
                logger.warning("Subscriber queue full, dropped oldest event",
                               event_type=event.type.value,
                               dropped=subscription.dropped)
            subscription.queue.put_nowait(event)
