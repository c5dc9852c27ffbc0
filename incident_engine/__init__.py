#!/usr/bin/env python3
"""
Incident Engine
Incident Correlation and Escalation Engine

Turns a stream of monitoring alerts into incidents and drives escalation
policies, quiet hours and notification delivery until someone responds.
"""

__version__ = "1.0.0"
__author__ = "Incident Engine Team"
__email__ = "incident-engine@company.com"

from .core.models import (
    Alert,
    AlertSeverity,
    AlertStatus,
    Incident,
    IncidentStatus,
    NotificationPreference,
    EscalationPolicy
)

from .core.timers import ManualClock, SystemClock
from .engine import IncidentEngine

__all__ = [
    # Engine
    'IncidentEngine',

    # Data model
    'Alert',
    'AlertSeverity',
    'AlertStatus',
    'Incident',
    'IncidentStatus',
    'NotificationPreference',
    'EscalationPolicy',

    # Clocks
    'ManualClock',
    'SystemClock',

    # Version info
    '__version__',
    '__author__',
    '__email__'
]
