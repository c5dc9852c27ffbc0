"""
Tests for channel adapters and message formatting.
"""

from datetime import datetime, timezone

import aiohttp
import pytest

from incident_engine.channels import (
    EmailAdapter,
    MessageFormatter,
    SlackAdapter,
    TeamsAdapter,
    WebhookAdapter,
    build_adapters,
)
from incident_engine.channels.http import HttpChannelAdapter
from incident_engine.core.models import (
    AlertSeverity,
    ChannelKind,
    EscalationLevel,
    EscalationPolicy,
    Incident,
    NotificationMessage,
)


def make_incident(**overrides):
    fields = dict(
        id="inc-1",
        incident_number=7,
        title="High CPU",
        severity=AlertSeverity.CRITICAL,
        service_id="svc1",
        dedup_key="svc1/cpu",
        triggered_at=datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc),
        escalation_policy=EscalationPolicy(policy_id="svc1", levels=(
            EscalationLevel(targets=(), delay_seconds=300),
            EscalationLevel(targets=(), delay_seconds=600),
        )),
    )
    fields.update(overrides)
    return Incident(**fields)


MESSAGE = NotificationMessage(subject="[CRITICAL] Incident #7: High CPU", body="details",
                              incident_id="inc-1", severity=AlertSeverity.CRITICAL)


class FakeResponse:

    def __init__(self, status):
        self.status = status

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """Records posted payloads and answers with a fixed status."""

    def __init__(self, status=200, error=None):
        self.status = status
        self.error = error
        self.posts = []

    def post(self, url, json=None, headers=None, timeout=None):
        if self.error is not None:
            raise self.error
        self.posts.append({'url': url, 'json': json, 'headers': headers})
        return FakeResponse(self.status)


class TestMessageFormatter:

    def test_default_templates(self):
        message = MessageFormatter().render(make_incident(), 1)

        assert message.subject == "[CRITICAL] Incident #7: High CPU"
        assert "Escalation level: 2 of 2" in message.body
        assert "Triggered: 2026-03-02 12:00:00 UTC" in message.body
        assert message.incident_id == "inc-1"
        assert message.severity is AlertSeverity.CRITICAL

    def test_custom_templates_and_fields(self):
        formatter = MessageFormatter.from_config({
            'subject': "{{ team }}: {{ incident.title }}",
            'body': "Level {{ level }} for {{ incident.service_id }}",
            'custom_fields': {'team': 'SRE'},
        })

        message = formatter.render(make_incident(), 0)

        assert message.subject == "SRE: High CPU"
        assert message.body == "Level 0 for svc1"

    def test_broken_template_falls_back_to_plain_subject(self):
        formatter = MessageFormatter(subject_template="{{ incident.missing() }}")

        message = formatter.render(make_incident(), 0)

        assert message.subject == "[CRITICAL] Incident #7: High CPU"

    def test_body_is_truncated_to_max_length(self):
        formatter = MessageFormatter(body_template="x" * 500, max_length=100)

        message = formatter.render(make_incident(), 0)

        assert len(message.body) == 100
        assert message.body.endswith("...")


class TestBuildAdapters:

    def test_enabled_channels_only(self):
        adapters = build_adapters({
            'email': {'smtp_host': 'smtp', 'from_address': 'a@b'},
            'slack': {'webhook_url': 'https://hooks.slack.test/x', 'enabled': False},
            'sms': {'url': 'https://sms.test/send'},
        })

        assert set(adapters) == {ChannelKind.EMAIL, ChannelKind.SMS}
        assert isinstance(adapters[ChannelKind.EMAIL], EmailAdapter)
        assert isinstance(adapters[ChannelKind.SMS], WebhookAdapter)
        assert adapters[ChannelKind.SMS].kind is ChannelKind.SMS

    def test_channel_retry_budget_is_read_from_config(self):
        adapters = build_adapters({
            'email': {'smtp_host': 'smtp', 'from_address': 'a@b', 'max_attempts': 5},
            'sms': {'url': 'https://sms.test/send', 'max_attempts': '4'},
            'push': {'url': 'https://push.test/send'},
        })

        assert adapters[ChannelKind.EMAIL].max_attempts == 5
        assert adapters[ChannelKind.SMS].max_attempts == 4
        assert adapters[ChannelKind.PUSH].max_attempts is None


class TestEmailAdapter:

    @pytest.mark.asyncio
    async def test_sends_through_smtp(self, mocker):
        smtp = mocker.patch('incident_engine.channels.email.smtplib.SMTP')
        adapter = EmailAdapter({'smtp_host': 'smtp.test', 'smtp_port': 2525,
                                'from_address': 'incidents@test',
                                'smtp_username': 'bot', 'smtp_password': 'pw'})

        assert await adapter.send("alice@example.com", MESSAGE)

        smtp.assert_called_once_with('smtp.test', 2525, timeout=30)
        server = smtp.return_value.__enter__.return_value
        server.starttls.assert_called_once()
        server.login.assert_called_once_with('bot', 'pw')
        sent = server.send_message.call_args[0][0]
        assert sent['To'] == "alice@example.com"
        assert sent['Subject'] == MESSAGE.subject
        smtp.return_value.__exit__.assert_called_once()
        assert adapter.success_count == 1

    @pytest.mark.asyncio
    async def test_incomplete_configuration_fails(self, mocker):
        smtp = mocker.patch('incident_engine.channels.email.smtplib.SMTP')
        adapter = EmailAdapter({'smtp_host': 'smtp.test'})

        assert not await adapter.send("alice@example.com", MESSAGE)
        smtp.assert_not_called()
        assert adapter.failure_count == 1

    @pytest.mark.asyncio
    async def test_smtp_errors_propagate_and_count_as_failures(self, mocker):
        smtp = mocker.patch('incident_engine.channels.email.smtplib.SMTP')
        server = smtp.return_value.__enter__.return_value
        server.send_message.side_effect = OSError("connection reset")
        adapter = EmailAdapter({'smtp_host': 'smtp.test', 'from_address': 'incidents@test',
                                'use_tls': False})

        with pytest.raises(OSError, match="connection reset"):
            await adapter.send("alice@example.com", MESSAGE)
        smtp.return_value.__exit__.assert_called_once()
        server.starttls.assert_not_called()
        assert adapter.failure_count == 1
        assert adapter.success_count == 0


class TestHttpAdapters:

    def test_adapter_without_payload_builder_cannot_be_created(self):
        class Incomplete(HttpChannelAdapter):
            kind = ChannelKind.WEBHOOK

        with pytest.raises(TypeError):
            Incomplete({'url': 'https://hooks.test'})

    @pytest.mark.asyncio
    async def test_slack_payload(self):
        session = FakeSession()
        adapter = SlackAdapter({'webhook_url': 'https://hooks.slack.test/x'}, session=session)

        assert await adapter.send("#oncall", MESSAGE)

        [post] = session.posts
        assert post['url'] == 'https://hooks.slack.test/x'
        assert post['json']['channel'] == "#oncall"
        assert post['json']['attachments'][0]['color'] == "danger"
        assert post['headers']['Content-Type'] == 'application/json'

    @pytest.mark.asyncio
    async def test_url_address_overrides_configured_url(self):
        session = FakeSession()
        adapter = TeamsAdapter({'webhook_url': 'https://teams.test/default'}, session=session)

        assert await adapter.send("https://teams.test/personal", MESSAGE)

        [post] = session.posts
        assert post['url'] == "https://teams.test/personal"
        assert post['json']['@type'] == "MessageCard"
        assert post['json']['themeColor'] == "attention"

    @pytest.mark.asyncio
    async def test_webhook_accepts_any_2xx_it_knows(self):
        session = FakeSession(status=202)
        adapter = WebhookAdapter({'url': 'https://sms.test/send'}, session=session,
                                 kind=ChannelKind.SMS)

        assert await adapter.send("+15550100", MESSAGE)
        assert session.posts[0]['json']['to'] == "+15550100"
        assert session.posts[0]['json']['channel'] == "sms"

    @pytest.mark.asyncio
    async def test_rejected_status_is_failure(self):
        session = FakeSession(status=500)
        adapter = WebhookAdapter({'url': 'https://hooks.test'}, session=session)

        assert not await adapter.send("ops", MESSAGE)
        assert adapter.failure_count == 1

    @pytest.mark.asyncio
    async def test_client_error_is_failure(self):
        session = FakeSession(error=aiohttp.ClientConnectionError("refused"))
        adapter = SlackAdapter({'webhook_url': 'https://hooks.slack.test/x'}, session=session)

        assert not await adapter.send("#oncall", MESSAGE)

    @pytest.mark.asyncio
    async def test_missing_url_is_failure(self):
        session = FakeSession()
        adapter = SlackAdapter({}, session=session)

        assert not await adapter.send("#oncall", MESSAGE)
        assert session.posts == []
