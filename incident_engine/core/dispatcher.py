#!/usr/bin/env python3
"""
Incident Engine - Notification Dispatcher
Creates, delivers and retries notification attempts through channel adapters.

The dispatcher is the only component that creates or mutates
NotificationAttempt records. Each (incident, level, target, channel) tuple has
at most one non-terminal attempt; duplicate dispatch requests are coalesced
into it. Delivery failures, adapter timeouts included, are retried with
exponential backoff and end in ``failed`` once the retry budget is spent.
"""

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Tuple

import structlog

from .errors import ChannelDeliveryError, StorageError
from .events import EventBus, NotificationEvent, NotificationEventType
from .models import (
    AttemptStatus,
    ChannelKind,
    NotificationAttempt,
    NotificationMessage,
)
from .timers import SystemClock, TimerQueue

logger = structlog.get_logger()

AttemptKey = Tuple[str, int, str, ChannelKind]


class NotificationDispatcher:
    """
    Delivery engine for notification attempts.

    Features:
    - Coalescing of duplicate dispatch requests per attempt tuple
    - Delivery scheduled on the shared timer queue at the attempt's send time
    - Per-call adapter timeouts routed into the retry path
    - Exponential backoff retries up to a per-channel attempt budget
    - Cancellation of pending attempts when an incident stops escalating
    """

    def __init__(self, timers: TimerQueue, store, adapters: Dict[ChannelKind, Any],
                 clock=None, events: Optional[EventBus] = None,
                 retry_base_seconds: float = 30.0, retry_factor: float = 2.0,
                 max_attempts: int = 5, adapter_timeout_seconds: float = 10.0):
        """
        Initialize the dispatcher.

        Args:
            timers: Shared timer queue
            store: IncidentStore receiving attempt records
            adapters: Channel adapters keyed by channel kind
            clock: Clock providing now()
            events: Event bus for attempt change events
            retry_base_seconds: Backoff before the first retry
            retry_factor: Backoff multiplier per further retry
            max_attempts: Default delivery attempts before an attempt is marked failed
            adapter_timeout_seconds: Default bound on one adapter call
        """
        self.timers = timers
        self.store = store
        self.adapters = adapters
        self.clock = clock or SystemClock()
        self.events = events or EventBus()

        self.retry_base_seconds = retry_base_seconds
        self.retry_factor = retry_factor
        self.max_attempts = max_attempts
        self.adapter_timeout_seconds = adapter_timeout_seconds

        # Attempt state
        self._attempts: Dict[str, NotificationAttempt] = {}
        self._current: Dict[AttemptKey, NotificationAttempt] = {}
        self._by_incident: Dict[str, List[NotificationAttempt]] = {}
        self._messages: Dict[str, NotificationMessage] = {}

        # Attempts whose adapter call is running, and those cancelled meanwhile
        self._inflight: Set[str] = set()
        self._cancel_requested: Set[str] = set()
        # Released incidents still waiting on an in-flight adapter call
        self._releasing: Set[str] = set()

        self.stats = {'sent': 0, 'failed': 0, 'retries': 0, 'suppressed': 0,
                      'cancelled': 0, 'coalesced': 0}
        self.logger = structlog.get_logger().bind(component="dispatcher")

    # =========================================================================
    # DISPATCH
    # =========================================================================

    async def dispatch(self, incident_id: str, level: int, target: str, channel: ChannelKind,
                       send_at: datetime, message: Optional[NotificationMessage] = None,
                       address: str = "") -> NotificationAttempt:
        """
        Request delivery of one notification.

        A pending attempt for the same tuple absorbs the request; it is only
        moved earlier if ``send_at`` is sooner and it has not been tried yet.
        A tuple that already reached ``sent`` or ``failed`` is not notified
        again.

        Args:
            incident_id: Incident being notified about
            level: Escalation level issuing the notification
            target: Recipient user id
            channel: Delivery channel
            send_at: Earliest delivery time
            message: Rendered content; a minimal message is used when omitted
            address: Channel address of the recipient

        Returns:
            The attempt now responsible for the tuple
        """
        key = (incident_id, level, target, channel)
        existing = self._current.get(key)
        if existing is not None and existing.status is not AttemptStatus.SUPPRESSED:
            self.stats['coalesced'] += 1
            if existing.status is AttemptStatus.PENDING:
                if message is not None:
                    self._messages[existing.attempt_id] = message
                if (send_at < existing.send_at and existing.attempt_count == 0
                        and existing.attempt_id not in self._inflight):
                    existing.send_at = send_at
                    self._schedule(existing, send_at)
                    self.logger.info("Pending notification moved earlier",
                                     incident_id=incident_id, level=level,
                                     target=target, channel=channel.value,
                                     send_at=send_at.isoformat())
            return existing

        now = self.clock.now()
        attempt = NotificationAttempt(
            attempt_id=str(uuid.uuid4()),
            incident_id=incident_id,
            level=level,
            target=target,
            channel=channel,
            send_at=send_at,
            created_at=now,
            address=address or target,
        )
        self._track(attempt)
        self._messages[attempt.attempt_id] = message or NotificationMessage(
            subject=f"Incident {incident_id}", body="", incident_id=incident_id)

        self._schedule(attempt, send_at)
        await self._record(attempt)
        self._publish(NotificationEventType.CREATED, attempt)

        self.logger.info("Notification scheduled",
                         incident_id=incident_id, level=level, target=target,
                         channel=channel.value, send_at=send_at.isoformat())
        return attempt

    async def record_suppressed(self, incident_id: str, level: int, target: str,
                                channel: ChannelKind, reason: str = "",
                                address: str = "") -> NotificationAttempt:
        """
        Record a notification the quiet-hours gate decided not to send.

        A tuple that already has an attempt keeps it unchanged.
        """
        key = (incident_id, level, target, channel)
        existing = self._current.get(key)
        if existing is not None:
            return existing

        now = self.clock.now()
        attempt = NotificationAttempt(
            attempt_id=str(uuid.uuid4()),
            incident_id=incident_id,
            level=level,
            target=target,
            channel=channel,
            send_at=now,
            created_at=now,
            status=AttemptStatus.SUPPRESSED,
            address=address or target,
            last_error=reason or None,
        )
        self._track(attempt)
        self.stats['suppressed'] += 1
        await self._record(attempt)
        self._publish(NotificationEventType.SUPPRESSED, attempt)

        self.logger.info("Notification suppressed",
                         incident_id=incident_id, level=level, target=target,
                         channel=channel.value, reason=reason)
        return attempt

    async def cancel_incident(self, incident_id: str) -> int:
        """
        Cancel every pending attempt of an incident.

        Pending attempts and their timers are cancelled before the first
        suspension point, so nothing cancelled here can start delivering
        afterwards. An attempt whose adapter call is already running is left
        to finish; its result is recorded but never retried.

        Returns:
            Number of attempts cancelled
        """
        cancelled = []
        for attempt in self._by_incident.get(incident_id, []):
            if attempt.status is not AttemptStatus.PENDING:
                continue
            if attempt.attempt_id in self._inflight:
                self._cancel_requested.add(attempt.attempt_id)
                continue
            self.timers.cancel(self._token(attempt))
            attempt.status = AttemptStatus.CANCELLED
            attempt.next_retry_at = None
            self._messages.pop(attempt.attempt_id, None)
            cancelled.append(attempt)

        for attempt in cancelled:
            self.stats['cancelled'] += 1
            await self._record(attempt)
            self._publish(NotificationEventType.CANCELLED, attempt)

        if cancelled:
            self.logger.info("Pending notifications cancelled",
                             incident_id=incident_id, count=len(cancelled))
        return len(cancelled)

    def release_incident(self, incident_id: str) -> int:
        """
        Drop a closed incident's attempts from memory. Call after
        ``cancel_incident``; the store keeps the attempt records.

        Attempts whose adapter call is still running are dropped once the
        call finishes.

        Returns:
            Number of attempts dropped now
        """
        released = 0
        for attempt in list(self._by_incident.get(incident_id, [])):
            if attempt.attempt_id in self._inflight:
                self._releasing.add(incident_id)
                continue
            self._forget(attempt)
            released += 1

        if released:
            self.logger.debug("Incident notifications released",
                              incident_id=incident_id, count=released)
        return released

    # =========================================================================
    # QUERIES
    # =========================================================================

    def attempts_for(self, incident_id: str) -> List[NotificationAttempt]:
        return list(self._by_incident.get(incident_id, []))

    def attempt_for(self, incident_id: str, level: int, target: str,
                    channel: ChannelKind) -> Optional[NotificationAttempt]:
        return self._current.get((incident_id, level, target, channel))

    def pending_count(self) -> int:
        return sum(1 for a in self._attempts.values() if a.status is AttemptStatus.PENDING)

    def get_stats(self) -> Dict[str, int]:
        stats = dict(self.stats)
        stats['pending'] = self.pending_count()
        stats['in_flight'] = len(self._inflight)
        return stats

    # =========================================================================
    # DELIVERY
    # =========================================================================

    @staticmethod
    def _token(attempt: NotificationAttempt):
        return ("delivery", attempt.attempt_id)

    def _track(self, attempt: NotificationAttempt) -> None:
        self._attempts[attempt.attempt_id] = attempt
        self._current[attempt.key] = attempt
        self._by_incident.setdefault(attempt.incident_id, []).append(attempt)

    def _forget(self, attempt: NotificationAttempt) -> None:
        self._attempts.pop(attempt.attempt_id, None)
        self._messages.pop(attempt.attempt_id, None)
        if self._current.get(attempt.key) is attempt:
            del self._current[attempt.key]
        attempts = self._by_incident.get(attempt.incident_id)
        if attempts is not None:
            attempts[:] = [a for a in attempts if a is not attempt]
            if not attempts:
                del self._by_incident[attempt.incident_id]
                self._releasing.discard(attempt.incident_id)

    def _schedule(self, attempt: NotificationAttempt, when: datetime) -> None:
        attempt_id = attempt.attempt_id

        async def handler():
            await self._deliver(attempt_id)

        self.timers.schedule_at(when, self._token(attempt), handler)

    def max_attempts_for(self, channel: ChannelKind) -> int:
        """Retry budget of a channel, falling back to the dispatcher default."""
        adapter = self.adapters.get(channel)
        return getattr(adapter, 'max_attempts', None) or self.max_attempts

    def backoff_seconds(self, attempt_count: int) -> float:
        """Delay before retrying after the ``attempt_count``-th failure."""
        return self.retry_base_seconds * (self.retry_factor ** (attempt_count - 1))

    async def _deliver(self, attempt_id: str) -> None:
        attempt = self._attempts.get(attempt_id)
        if attempt is None or attempt.status is not AttemptStatus.PENDING:
            return

        attempt.attempt_count += 1
        attempt.last_attempt_at = self.clock.now()
        attempt.next_retry_at = None
        self._inflight.add(attempt_id)

        error: Optional[ChannelDeliveryError] = None
        try:
            await self._send(attempt, self._messages[attempt_id])
        except ChannelDeliveryError as e:
            error = e
        finally:
            self._inflight.discard(attempt_id)

        if attempt_id in self._cancel_requested:
            self._cancel_requested.discard(attempt_id)
            await self._finish_cancelled_in_flight(attempt, error)
            return

        if error is None:
            attempt.status = AttemptStatus.SENT
            attempt.last_error = None
            self._messages.pop(attempt_id, None)
            self.stats['sent'] += 1
            self.logger.info("Notification sent",
                             incident_id=attempt.incident_id, level=attempt.level,
                             target=attempt.target, channel=attempt.channel.value,
                             attempt=attempt.attempt_count)
            await self._record(attempt)
            self._publish(NotificationEventType.SENT, attempt)
            return

        attempt.last_error = str(error)
        if attempt.attempt_count < self.max_attempts_for(attempt.channel):
            delay = self.backoff_seconds(attempt.attempt_count)
            retry_at = self.clock.now() + timedelta(seconds=delay)
            attempt.next_retry_at = retry_at
            self._schedule(attempt, retry_at)
            self.stats['retries'] += 1
            self.logger.warning("Notification delivery failed, retry scheduled",
                                incident_id=attempt.incident_id, level=attempt.level,
                                target=attempt.target, channel=attempt.channel.value,
                                attempt=attempt.attempt_count, retry_in_seconds=delay,
                                timed_out=error.timed_out, error=str(error))
            await self._record(attempt)
            self._publish(NotificationEventType.RETRY_SCHEDULED, attempt)
            return

        attempt.status = AttemptStatus.FAILED
        self._messages.pop(attempt_id, None)
        self.stats['failed'] += 1
        self.logger.error("Notification delivery failed, retries exhausted",
                          incident_id=attempt.incident_id, level=attempt.level,
                          target=attempt.target, channel=attempt.channel.value,
                          attempt=attempt.attempt_count, error=str(error))
        await self._record(attempt)
        self._publish(NotificationEventType.FAILED, attempt)

    async def _finish_cancelled_in_flight(self, attempt: NotificationAttempt,
                                          error: Optional[ChannelDeliveryError]) -> None:
        if error is None:
            attempt.status = AttemptStatus.SENT
            self.stats['sent'] += 1
            event_type = NotificationEventType.SENT
        else:
            attempt.status = AttemptStatus.CANCELLED
            attempt.last_error = str(error)
            self.stats['cancelled'] += 1
            event_type = NotificationEventType.CANCELLED
        self.logger.info("In-flight notification finished after cancellation",
                         incident_id=attempt.incident_id, target=attempt.target,
                         channel=attempt.channel.value, status=attempt.status.value)
        await self._record(attempt)
        self._publish(event_type, attempt)
        self._messages.pop(attempt.attempt_id, None)
        if attempt.incident_id in self._releasing:
            self._forget(attempt)

    async def _send(self, attempt: NotificationAttempt, message: NotificationMessage) -> None:
        """
        Invoke the channel adapter once, bounded by its timeout.

        Raises:
            ChannelDeliveryError: On adapter failure, exception or timeout
        """
        channel = attempt.channel.value
        adapter = self.adapters.get(attempt.channel)
        if adapter is None:
            raise ChannelDeliveryError(f"No adapter configured for {channel}", channel=channel)

        timeout = getattr(adapter, 'timeout_seconds', None) or self.adapter_timeout_seconds
        try:
            delivered = await asyncio.wait_for(adapter.send(attempt.address, message),
                                               timeout=timeout)
        except asyncio.TimeoutError:
            raise ChannelDeliveryError(f"{channel} adapter timed out after {timeout}s",
                                       channel=channel, timed_out=True)
        except ChannelDeliveryError:
            raise
        except Exception as e:
            raise ChannelDeliveryError(f"{channel} adapter error: {e}", channel=channel) from e

        if not delivered:
            raise ChannelDeliveryError(f"{channel} adapter reported failure", channel=channel)

    # =========================================================================
    # RECORDING
    # =========================================================================

    async def _record(self, attempt: NotificationAttempt) -> None:
        try:
            await self.store.append_notification_attempt(attempt)
        except StorageError as e:
            self.logger.error("Failed to record notification attempt",
                              attempt_id=attempt.attempt_id,
                              incident_id=attempt.incident_id, error=str(e))

    def _publish(self, event_type: NotificationEventType, attempt: NotificationAttempt) -> None:
        self.events.publish(NotificationEvent.of(event_type, attempt, occurred_at=self.clock.now()))
