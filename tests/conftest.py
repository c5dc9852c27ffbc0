"""
Shared fixtures: an engine over a manual clock, an in-memory store, a static
directory and scripted channel adapters.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import pytest

from incident_engine.backends import InMemoryIncidentStore
from incident_engine.channels.base import ChannelAdapter
from incident_engine.core.models import ChannelKind, NotificationMessage
from incident_engine.core.timers import ManualClock, TimerQueue
from incident_engine.engine import IncidentEngine

# Monday, midday UTC
START = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

HANG = "hang"


class FakeAdapter(ChannelAdapter):
    """
    Scripted channel adapter.

    Each send consumes the next scripted outcome: True, False, an exception
    instance to raise, or HANG to block until the dispatcher times out.
    Once the script runs out every send succeeds.
    """

    def __init__(self, kind: ChannelKind, outcomes=None, timeout_seconds=None,
                 max_attempts=None):
        super().__init__({'timeout_seconds': timeout_seconds, 'max_attempts': max_attempts})
        self.kind = kind
        self.outcomes = list(outcomes or [])
        self.calls: List = []
        self.delivered: List = []

    async def send(self, address: str, message: NotificationMessage) -> bool:
        self.calls.append((address, message))
        outcome = self.outcomes.pop(0) if self.outcomes else True
        if outcome == HANG:
            await asyncio.sleep(3600)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome:
            self.delivered.append((address, message))
        return outcome


async def advance(clock: ManualClock, timers: TimerQueue, seconds: float) -> None:
    """
    Move the manual clock forward by ``seconds``, stopping at every timer
    fire time on the way so handlers observe the time they were due.
    """
    target = clock.now() + timedelta(seconds=seconds)
    await timers.run_until_idle()
    while True:
        next_fire = timers.next_fire_time()
        if next_fire is None or next_fire > target:
            break
        if next_fire > clock.now():
            clock.set(next_fire)
        await timers.run_until_idle()
    clock.set(target)
    await timers.run_until_idle()


def make_config() -> Dict[str, Any]:
    return {
        'dispatcher': {
            'retry_base_seconds': 30,
            'retry_factor': 2,
            'max_attempts': 5,
            'adapter_timeout_seconds': 5,
        },
        'correlation': {'reopen_window_seconds': 0},
        'users': {
            'alice': {'channels': ['email'], 'contacts': {'email': 'alice@example.com'}},
            'user42': {'channels': ['email'], 'contacts': {'email': 'user42@example.com'}},
            'bob': {'channels': ['email']},
            'night_owl': {
                'channels': ['email'],
                'quiet_hours': {'start': '22:00', 'end': '07:00'},
            },
        },
        'teams': {
            'platform': {'members': ['user42', 'bob']},
            'empty': {'members': []},
        },
        'schedules': {
            'primary': {'on_call': ['alice']},
        },
        'policies': {
            'svc1': {
                'levels': [
                    {'delay_seconds': 300, 'targets': [{'type': 'schedule', 'id': 'primary'}]},
                    {'delay_seconds': 600, 'targets': [{'type': 'team', 'id': 'platform'}]},
                ],
            },
            'nights': {
                'levels': [
                    {'delay_seconds': 300, 'targets': [{'type': 'user', 'id': 'night_owl'}]},
                ],
            },
            'unstaffed': {
                'levels': [
                    {'delay_seconds': 300, 'targets': [{'type': 'team', 'id': 'empty'}]},
                    {'delay_seconds': 300, 'targets': [{'type': 'user', 'id': 'bob'}]},
                ],
            },
            'nobody': {
                'levels': [
                    {'delay_seconds': 300, 'targets': [{'type': 'team', 'id': 'empty'}]},
                ],
            },
        },
    }


def firing(dedup_key: str = "svc1/cpu", service_id: str = "svc1",
           severity: str = "high", **extra) -> Dict[str, Any]:
    payload = {
        'dedupKey': dedup_key,
        'serviceId': service_id,
        'severity': severity,
        'status': 'firing',
        'title': 'High CPU',
    }
    payload.update(extra)
    return payload


def resolving(dedup_key: str = "svc1/cpu", service_id: str = "svc1", **extra) -> Dict[str, Any]:
    return firing(dedup_key, service_id, status='resolved', **extra)


@pytest.fixture
def clock():
    return ManualClock(START)


@pytest.fixture
def store():
    return InMemoryIncidentStore()


@pytest.fixture
def email_adapter():
    return FakeAdapter(ChannelKind.EMAIL)


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def engine(config, clock, store, email_adapter):
    return IncidentEngine.from_config(config, clock=clock, store=store,
                                      adapters={ChannelKind.EMAIL: email_adapter})


@pytest.fixture
def events(engine):
    return engine.subscribe()
