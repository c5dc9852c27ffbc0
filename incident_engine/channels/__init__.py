#!/usr/bin/env python3
"""
Incident Engine - Notification Channels
"""

from typing import Any, Dict, Optional

import aiohttp
import structlog

from ..core.models import ChannelKind
from .base import ChannelAdapter
from .email import EmailAdapter
from .formatting import MessageFormatter
from .http import SlackAdapter, TeamsAdapter, WebhookAdapter

logger = structlog.get_logger()


def build_adapters(channels_config: Dict[str, Dict[str, Any]],
                   session: Optional[aiohttp.ClientSession] = None) -> Dict[ChannelKind, ChannelAdapter]:
    """
    Build channel adapters from the ``channels`` configuration section.

    Args:
        channels_config: Per-channel settings keyed by channel kind name
        session: Optional shared HTTP session for the webhook adapters

    Returns:
        Enabled adapters keyed by channel kind
    """
    adapters: Dict[ChannelKind, ChannelAdapter] = {}

    for name, config in (channels_config or {}).items():
        config = config or {}
        if not config.get('enabled', True):
            continue
        kind = ChannelKind(name)

        if kind is ChannelKind.EMAIL:
            adapters[kind] = EmailAdapter(config)
        elif kind is ChannelKind.SLACK:
            adapters[kind] = SlackAdapter(config, session=session)
        elif kind is ChannelKind.TEAMS:
            adapters[kind] = TeamsAdapter(config, session=session)
        else:
            # sms, push and webhook all go through an HTTP gateway
            adapters[kind] = WebhookAdapter(config, session=session, kind=kind)

    logger.info("Loaded notification channels", channels=sorted(k.value for k in adapters))
    return adapters


__all__ = [
    'ChannelAdapter',
    'EmailAdapter',
    'SlackAdapter',
    'TeamsAdapter',
    'WebhookAdapter',
    'MessageFormatter',
    'build_adapters',
]
