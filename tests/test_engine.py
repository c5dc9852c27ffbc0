"""
Tests for the engine facade and the application wrapper.
"""

import asyncio

import pytest

from incident_engine.core.events import IncidentEvent, IncidentEventType, NotificationEvent
from incident_engine.core.models import ChannelKind, IncidentStatus
from incident_engine.engine import IncidentEngine
from incident_engine.main import IncidentEngineApp, load_simulation

from conftest import advance, firing


class TestEngineFacade:

    @pytest.mark.asyncio
    async def test_status_counts_ingestion(self, engine):
        await engine.ingest_alert(firing("k1"))
        await engine.ingest_alert(firing("k1", alertId="dup"))
        await engine.ingest_alert(firing("k2"))

        status = engine.get_status()
        assert status['alerts_received'] == 3
        assert status['incidents_created'] == 2
        assert status['pending_timers'] == 2
        assert status['running'] is False
        assert status['dispatcher']['pending'] == 0

    @pytest.mark.asyncio
    async def test_subscribers_receive_incident_and_notification_events(self, engine, clock,
                                                                        events):
        created = await engine.ingest_alert(firing())
        await advance(clock, engine.timers, 1)

        received = events.drain()
        assert isinstance(received[0], IncidentEvent)
        assert received[0].type is IncidentEventType.TRIGGERED
        assert received[0].incident_id == created.incident_id
        notifications = [e for e in received if isinstance(e, NotificationEvent)]
        assert [e.attempt['target'] for e in notifications] == ["alice", "alice"]
        assert notifications[-1].attempt['status'] == "sent"

    @pytest.mark.asyncio
    async def test_slow_subscriber_loses_oldest_events(self, engine):
        subscription = engine.subscribe(maxsize=2)

        for i in range(4):
            await engine.ingest_alert(firing(f"k{i}"))

        assert subscription.dropped == 2
        assert [e.incident['dedup_key'] for e in subscription.drain()] == ["k2", "k3"]

    @pytest.mark.asyncio
    async def test_closed_subscription_stops_receiving(self, engine):
        subscription = engine.subscribe()
        subscription.close()

        await engine.ingest_alert(firing())

        assert subscription.drain() == []

    @pytest.mark.asyncio
    async def test_service_without_policy_needs_attention(self, engine, clock):
        created = await engine.ingest_alert(firing("orphan/x", service_id="orphan"))
        await advance(clock, engine.timers, 1)

        incident = await engine.get_incident(created.incident_id)
        assert incident.escalation_policy is None
        assert incident.needs_attention

    @pytest.mark.asyncio
    async def test_start_and_stop_run_timer_loop(self, engine):
        await engine.start()
        assert engine.get_status()['running'] is True

        await engine.stop()
        assert engine.get_status()['running'] is False
        await engine.stop()


class TestRoutingIntegration:

    @pytest.mark.asyncio
    async def test_suppressed_alert_is_recorded_without_incident(self, config, clock, store,
                                                                 email_adapter):
        config['routing_rules'] = [
            {'name': 'canary', 'conditions': {'source': 'canary'},
             'actions': {'suppress': True}},
        ]
        engine = IncidentEngine.from_config(config, clock=clock, store=store,
                                            adapters={ChannelKind.EMAIL: email_adapter})

        result = await engine.ingest_alert(firing(source="canary"))

        assert result.suppressed
        assert result.incident_id is None
        assert store.incidents == {}
        assert len(store.alerts) == 1
        assert engine.get_status()['alerts_suppressed'] == 1

    @pytest.mark.asyncio
    async def test_rerouted_alert_follows_target_service_policy(self, config, clock, store,
                                                                email_adapter):
        config['routing_rules'] = [
            {'name': 'db', 'conditions': {'labels': {'team': 'db'}},
             'actions': {'route_to_service': 'unstaffed'}},
        ]
        engine = IncidentEngine.from_config(config, clock=clock, store=store,
                                            adapters={ChannelKind.EMAIL: email_adapter})

        created = await engine.ingest_alert(firing(labels={'team': 'db'}))
        await advance(clock, engine.timers, 1)

        incident = await engine.get_incident(created.incident_id)
        assert incident.service_id == "unstaffed"
        assert [address for address, _ in email_adapter.delivered] == ["bob"]


class TestApplication:

    @pytest.mark.asyncio
    async def test_initialize_builds_engine_from_file(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text(
            "channels:\n"
            "  webhook:\n"
            "    url: https://hooks.test/incidents\n"
            "policies:\n"
            "  default:\n"
            "    levels:\n"
            "      - targets:\n"
            "          - type: user\n"
            "            id: alice\n"
        )
        app = IncidentEngineApp(str(path))

        assert await app.initialize()
        assert ChannelKind.WEBHOOK in app.engine.dispatcher.adapters

    @pytest.mark.asyncio
    async def test_initialize_fails_on_invalid_config(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("dispatcher:\n  max_attempts: -1\n")
        app = IncidentEngineApp(str(path))

        assert not await app.initialize()
        assert app.engine is None

    @pytest.mark.asyncio
    async def test_simulation_feeds_alerts(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("policies: {}\n")
        app = IncidentEngineApp(str(path))
        assert await app.initialize()

        run = asyncio.create_task(app.start([
            {'after_seconds': 0, 'dedupKey': 'svc/a', 'serviceId': 'svc', 'severity': 'low'},
            {'after_seconds': 0, 'dedupKey': 'svc/a', 'serviceId': 'svc', 'severity': 'low',
             'status': 'resolved'},
        ]))
        for _ in range(100):
            if app.engine.get_status()['alerts_received'] == 2:
                break
            await asyncio.sleep(0.01)
        app.request_shutdown()
        await run
        await app.stop()

        [incident] = app.engine.store.incidents.values()
        assert incident.status is IncidentStatus.RESOLVED
        assert app.get_status()['running'] is False

    def test_load_simulation_accepts_mapping_or_list(self, tmp_path):
        mapping = tmp_path / "mapping.yaml"
        mapping.write_text("alerts:\n  - dedupKey: a\n    severity: low\n")
        listing = tmp_path / "list.yaml"
        listing.write_text("- dedupKey: b\n  severity: high\n")

        assert load_simulation(str(mapping)) == [{'dedupKey': 'a', 'severity': 'low'}]
        assert load_simulation(str(listing)) == [{'dedupKey': 'b', 'severity': 'high'}]
