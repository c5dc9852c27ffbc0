#!/usr/bin/env python3
"""
Incident Engine - Channel Adapter Contract
Uniform delivery contract implemented by every notification channel.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import structlog

from ..core.models import AlertSeverity, ChannelKind, NotificationMessage

logger = structlog.get_logger()


# Severity colours shared by the chat adapters
SEVERITY_COLORS = {
    AlertSeverity.CRITICAL: "danger",
    AlertSeverity.HIGH: "warning",
    AlertSeverity.MEDIUM: "warning",
    AlertSeverity.LOW: "good",
    AlertSeverity.INFO: "good",
}


class ChannelAdapter(ABC):
    """
    Delivery mechanism for one channel kind.

    ``send`` returns True on success. It may return False or raise on
    failure; the dispatcher treats both as a transient delivery error,
    bounds every call with ``timeout_seconds`` and gives up after
    ``max_attempts`` tries when the channel configures one.
    """

    kind: ChannelKind

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or {}
        self.enabled = self.config.get('enabled', True)
        self.timeout_seconds: Optional[float] = self.config.get('timeout_seconds')
        # Per-channel retry budget; the dispatcher default applies when unset
        max_attempts = self.config.get('max_attempts')
        self.max_attempts: Optional[int] = int(max_attempts) if max_attempts is not None else None
        self.success_count = 0
        self.failure_count = 0

    @abstractmethod
    async def send(self, address: str, message: NotificationMessage) -> bool:
        """
        Deliver a message to one recipient address.

        Args:
            address: Channel-specific recipient address
            message: Rendered notification

        Returns:
            True if delivery succeeded, False otherwise
        """

    def _track(self, success: bool) -> bool:
        if success:
            self.success_count += 1
        else:
            self.failure_count += 1
        return success
