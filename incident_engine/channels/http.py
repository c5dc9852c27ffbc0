#!/usr/bin/env python3
"""
Incident Engine - HTTP Channels
Slack and Microsoft Teams incoming webhooks, plus a generic JSON webhook
used for SMS and push gateways.
"""

from abc import abstractmethod
from typing import Any, Dict, Optional

import aiohttp
import structlog

from ..core.models import ChannelKind, NotificationMessage
from .base import SEVERITY_COLORS, ChannelAdapter

logger = structlog.get_logger()


class HttpChannelAdapter(ChannelAdapter):
    """
    Base for adapters that POST a JSON payload.

    A shared ``aiohttp.ClientSession`` may be injected; otherwise a session
    is opened per request.
    """

    url_key = 'webhook_url'
    success_statuses = (200,)

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 session: Optional[aiohttp.ClientSession] = None):
        super().__init__(config)
        self.session = session
        self.headers = dict(self.config.get('headers', {}))
        self.headers.setdefault('Content-Type', 'application/json')

    def url_for(self, address: str) -> Optional[str]:
        """Address overrides the configured URL when it is itself a URL."""
        if address.startswith(('http://', 'https://')):
            return address
        return self.config.get(self.url_key)

    @abstractmethod
    def build_payload(self, address: str, message: NotificationMessage) -> Dict[str, Any]:
        """Channel-specific JSON body for one notification."""

    async def send(self, address: str, message: NotificationMessage) -> bool:
        url = self.url_for(address)
        if not url:
            logger.error("Webhook URL not configured", channel=self.kind.value)
            return self._track(False)

        payload = self.build_payload(address, message)
        try:
            if self.session is not None:
                status = await self._post(self.session, url, payload)
            else:
                async with aiohttp.ClientSession() as session:
                    status = await self._post(session, url, payload)
        except aiohttp.ClientError as e:
            logger.error("Error delivering notification", channel=self.kind.value, error=str(e))
            return self._track(False)

        if status not in self.success_statuses:
            logger.warning("Channel rejected notification",
                           channel=self.kind.value, status=status)
            return self._track(False)
        return self._track(True)

    async def _post(self, session: aiohttp.ClientSession, url: str,
                    payload: Dict[str, Any]) -> int:
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds) if self.timeout_seconds else None
        async with session.post(url, json=payload, headers=self.headers,
                                timeout=timeout) as response:
            return response.status


class SlackAdapter(HttpChannelAdapter):
    """Slack incoming webhook."""

    kind = ChannelKind.SLACK

    def build_payload(self, address: str, message: NotificationMessage) -> Dict[str, Any]:
        severity = message.severity.value.upper() if message.severity else "INCIDENT"
        payload = {
            "text": message.subject,
            "blocks": [
                {
                    "type": "header",
                    "text": {"type": "plain_text", "text": f"{severity} Incident"}
                },
                {
                    "type": "section",
                    "text": {"type": "mrkdwn", "text": f"*{message.subject}*\n{message.body}"}
                },
            ],
            "attachments": [{"color": SEVERITY_COLORS.get(message.severity, "warning")}],
        }
        # Non-URL addresses name a channel or user
        if address and not address.startswith(('http://', 'https://')):
            payload["channel"] = address
        return payload


class TeamsAdapter(HttpChannelAdapter):
    """Microsoft Teams incoming webhook (MessageCard)."""

    kind = ChannelKind.TEAMS

    def build_payload(self, address: str, message: NotificationMessage) -> Dict[str, Any]:
        color_map = {"danger": "attention", "warning": "warning", "good": "good"}
        return {
            "@type": "MessageCard",
            "@context": "http://schema.org/extensions",
            "themeColor": color_map[SEVERITY_COLORS.get(message.severity, "warning")],
            "summary": message.subject,
            "sections": [{
                "activityTitle": message.subject,
                "text": message.body,
                "facts": [
                    {"name": "Incident", "value": message.incident_id},
                    {"name": "Recipient", "value": address},
                ]
            }]
        }


class WebhookAdapter(HttpChannelAdapter):
    """
    Generic JSON webhook. Also serves SMS and push gateways, which receive
    the recipient address in the ``to`` field.
    """

    url_key = 'url'
    success_statuses = (200, 201, 202, 204)

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 session: Optional[aiohttp.ClientSession] = None,
                 kind: ChannelKind = ChannelKind.WEBHOOK):
        super().__init__(config, session)
        self.kind = kind

    def build_payload(self, address: str, message: NotificationMessage) -> Dict[str, Any]:
        return {
            "to": address,
            "channel": self.kind.value,
            "subject": message.subject,
            "body": message.body,
            "incident_id": message.incident_id,
            "severity": message.severity.value if message.severity else None,
        }
