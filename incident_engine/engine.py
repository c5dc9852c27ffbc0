#!/usr/bin/env python3
"""
Incident Engine - Engine Facade
Wires the correlation and escalation components together and exposes the
boundary operations: alert ingestion, acknowledgment, resolution and the
event subscription surface.

Alert -> routing rules -> deduplicator -> incident state machine ->
escalation scheduler -> quiet-hours gate -> notification dispatcher ->
channel adapter.
"""

import asyncio
from typing import Any, Dict, List, Mapping, Optional, Union

import structlog

from .backends import InMemoryIncidentStore, StaticDirectory
from .channels import MessageFormatter, build_adapters
from .core.deduplicator import Deduplicator
from .core.dispatcher import NotificationDispatcher
from .core.errors import EngineError
from .core.escalation_scheduler import EscalationScheduler
from .core.events import EventBus, Subscription
from .core.locks import KeyedLocks
from .core.models import SYSTEM_ACTOR, Alert, Incident, IngestResult
from .core.ports import IncidentStore, OnCallResolver, PolicyProvider, PreferenceReader
from .core.routing import AlertRouter
from .core.state_machine import IncidentStateMachine
from .core.timers import SystemClock, TimerQueue

logger = structlog.get_logger()


class IncidentEngine:
    """
    Incident correlation and escalation engine.

    Features:
    - Alert routing rules and dedup-key correlation into incidents
    - Per-incident serialized state transitions
    - Policy-driven, level-by-level escalation on a shared timer queue
    - Quiet-hours aware notification with retries and coalescing
    - Typed change events for the boundary layer
    """

    def __init__(self, store: IncidentStore, on_call: OnCallResolver,
                 preferences: PreferenceReader, policies: PolicyProvider,
                 adapters: Dict, clock=None, router: Optional[AlertRouter] = None,
                 formatter: Optional[MessageFormatter] = None,
                 settings: Optional[Dict[str, Any]] = None):
        """
        Initialize the engine.

        Args:
            store: Durable incident store
            on_call: On-call lookup
            preferences: Notification preference reader
            policies: Escalation policy source
            adapters: Channel adapters keyed by ChannelKind
            clock: Clock providing now(); defaults to the system clock
            router: Alert routing rules; none by default
            formatter: Notification formatter; default templates when omitted
            settings: ``engine``, ``correlation`` and ``dispatcher`` config sections
        """
        settings = settings or {}
        engine_cfg = settings.get('engine', {})
        correlation_cfg = settings.get('correlation', {})
        dispatcher_cfg = settings.get('dispatcher', {})

        self.clock = clock or SystemClock()
        self.store = store
        self.router = router or AlertRouter()
        self.events = EventBus(queue_size=engine_cfg.get('event_queue_size', 1000))
        self.locks = KeyedLocks()
        self.timers = TimerQueue(clock=self.clock,
                                 max_workers=engine_cfg.get('timer_workers', 10),
                                 poll_interval=engine_cfg.get('timer_poll_interval', 1.0))

        self.state_machine = IncidentStateMachine(store, self.clock, self.events, self.locks)
        self.dispatcher = NotificationDispatcher(
            self.timers, store, adapters, self.clock, self.events,
            retry_base_seconds=dispatcher_cfg.get('retry_base_seconds', 30),
            retry_factor=dispatcher_cfg.get('retry_factor', 2),
            max_attempts=dispatcher_cfg.get('max_attempts', 5),
            adapter_timeout_seconds=dispatcher_cfg.get('adapter_timeout_seconds', 10),
        )
        self.escalation_scheduler = EscalationScheduler(
            self.timers, self.state_machine, on_call, preferences, self.dispatcher,
            formatter=formatter or MessageFormatter(),
            lookup_timeout_seconds=engine_cfg.get('lookup_timeout_seconds', 10.0),
        )
        self.state_machine.set_escalation_scheduler(self.escalation_scheduler)
        self.state_machine.set_dispatcher(self.dispatcher)

        self.deduplicator = Deduplicator(
            store, self.state_machine, policy_provider=policies, locks=self.locks,
            reopen_window_seconds=correlation_cfg.get('reopen_window_seconds', 0),
        )

        self._timer_task: Optional[asyncio.Task] = None
        self.stats = {'alerts_received': 0, 'alerts_suppressed': 0, 'alerts_rejected': 0,
                      'incidents_created': 0}
        self.logger = structlog.get_logger().bind(component="engine")

    @classmethod
    def from_config(cls, config: Dict[str, Any], clock=None,
                    store: Optional[IncidentStore] = None,
                    adapters: Optional[Dict] = None) -> "IncidentEngine":
        """
        Build an engine from a loaded configuration.

        Args:
            config: Configuration as produced by ConfigManager
            clock: Optional clock override
            store: Optional store; in-memory when omitted
            adapters: Optional adapters; built from ``channels`` when omitted
        """
        directory = StaticDirectory.from_config(config)
        return cls(
            store=store or InMemoryIncidentStore(),
            on_call=directory,
            preferences=directory,
            policies=directory,
            adapters=adapters if adapters is not None else build_adapters(config.get('channels', {})),
            clock=clock,
            router=AlertRouter.from_config(config.get('routing_rules', [])),
            formatter=MessageFormatter.from_config(config.get('templates')),
            settings=config,
        )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        """Start the timer dispatch loop."""
        if self._timer_task is None:
            self._timer_task = asyncio.create_task(self.timers.run())
            self.logger.info("Incident engine started",
                             channels=sorted(k.value for k in self.dispatcher.adapters))

    async def stop(self) -> None:
        """Stop the timer dispatch loop, letting in-flight handlers finish."""
        if self._timer_task is None:
            return
        await self.timers.stop()
        await self._timer_task
        self._timer_task = None
        self.logger.info("Incident engine stopped", stats=self.get_status())

    # =========================================================================
    # BOUNDARY OPERATIONS
    # =========================================================================

    async def ingest_alert(self, alert: Union[Alert, Mapping[str, Any]]) -> IngestResult:
        """
        Ingest one alert.

        Args:
            alert: Alert or raw monitoring payload

        Returns:
            IngestResult naming the incident the alert landed in

        Raises:
            ValidationError: Malformed alert
            StorageError: The resulting change could not be recorded
        """
        self.stats['alerts_received'] += 1
        try:
            if not isinstance(alert, Alert):
                alert = Alert.from_dict(alert)
            alert.validate()
        except EngineError:
            self.stats['alerts_rejected'] += 1
            raise

        alert, suppressed = self.router.route(alert)
        if suppressed:
            self.stats['alerts_suppressed'] += 1
            await self.store.save_alert(alert)
            return IngestResult(incident_id=None, created=False, suppressed=True)

        result = await self.deduplicator.ingest(alert)
        if result.created:
            self.stats['incidents_created'] += 1
        return result

    async def acknowledge_incident(self, incident_id: str, by_user: str) -> Incident:
        return await self.state_machine.acknowledge(incident_id, by_user)

    async def resolve_incident(self, incident_id: str, by_user: str = SYSTEM_ACTOR) -> Incident:
        return await self.state_machine.resolve(incident_id, by_user)

    async def bulk_acknowledge(self, incident_ids: List[str], by_user: str) -> Dict[str, int]:
        """Acknowledge several incidents; one failure does not stop the rest."""
        return await self._bulk(incident_ids, by_user, self.state_machine.acknowledge)

    async def bulk_resolve(self, incident_ids: List[str],
                           by_user: str = SYSTEM_ACTOR) -> Dict[str, int]:
        """Resolve several incidents; one failure does not stop the rest."""
        return await self._bulk(incident_ids, by_user, self.state_machine.resolve)

    async def _bulk(self, incident_ids: List[str], by_user: str, operation) -> Dict[str, int]:
        result = {'success': 0, 'failed': 0}
        for incident_id in incident_ids:
            try:
                await operation(incident_id, by_user)
                result['success'] += 1
            except EngineError as e:
                result['failed'] += 1
                self.logger.warning("Bulk operation failed for incident",
                                    incident_id=incident_id, error=str(e))
        return result

    async def get_incident(self, incident_id: str) -> Incident:
        return await self.state_machine.get(incident_id)

    def subscribe(self, maxsize: Optional[int] = None) -> Subscription:
        """Subscribe to incident and notification change events."""
        return self.events.subscribe(maxsize)

    def get_status(self) -> Dict[str, Any]:
        return {
            'running': self._timer_task is not None,
            'pending_timers': self.timers.pending_count(),
            'timers_fired': self.timers.fired_count,
            'timer_failures': self.timers.failed_count,
            'stale_escalations': self.escalation_scheduler.stale_discarded,
            'events_published': self.events.published_count,
            'dispatcher': self.dispatcher.get_stats(),
            **self.stats,
        }
