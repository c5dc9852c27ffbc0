#!/usr/bin/env python3
"""
Incident Engine - Core Module
"""

from .errors import (
    EngineError,
    ValidationError,
    ChannelDeliveryError,
    StaleEscalationError,
    PolicyResolutionError,
    StorageError,
    IncidentNotFoundError
)

from .models import (
    Alert,
    AlertSeverity,
    AlertStatus,
    AttemptStatus,
    ChannelKind,
    EscalationLevel,
    EscalationPolicy,
    EscalationTarget,
    Incident,
    IncidentStatus,
    IngestResult,
    NotificationAttempt,
    NotificationMessage,
    NotificationPreference,
    TargetType
)

from .events import EventBus, IncidentEvent, IncidentEventType, NotificationEvent, NotificationEventType
from .timers import ManualClock, SystemClock, TimerQueue
from .quiet_hours import Decision, DecisionAction, decide
from .state_machine import IncidentStateMachine
from .deduplicator import Deduplicator
from .dispatcher import NotificationDispatcher
from .escalation_scheduler import EscalationScheduler
from .routing import AlertRouter, RoutingRule

__all__ = [
    # Errors
    'EngineError',
    'ValidationError',
    'ChannelDeliveryError',
    'StaleEscalationError',
    'PolicyResolutionError',
    'StorageError',
    'IncidentNotFoundError',

    # Data model
    'Alert',
    'AlertSeverity',
    'AlertStatus',
    'AttemptStatus',
    'ChannelKind',
    'EscalationLevel',
    'EscalationPolicy',
    'EscalationTarget',
    'Incident',
    'IncidentStatus',
    'IngestResult',
    'NotificationAttempt',
    'NotificationMessage',
    'NotificationPreference',
    'TargetType',

    # Runtime
    'EventBus',
    'IncidentEvent',
    'IncidentEventType',
    'NotificationEvent',
    'NotificationEventType',
    'ManualClock',
    'SystemClock',
    'TimerQueue',

    # Components
    'Decision',
    'DecisionAction',
    'decide',
    'IncidentStateMachine',
    'Deduplicator',
    'NotificationDispatcher',
    'EscalationScheduler',
    'AlertRouter',
    'RoutingRule'
]
