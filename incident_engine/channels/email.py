#!/usr/bin/env python3
"""
Incident Engine - Email Channel
SMTP delivery. smtplib is blocking, so each send runs in a worker thread.
"""

import asyncio
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import structlog

from ..core.models import ChannelKind, NotificationMessage
from .base import ChannelAdapter

logger = structlog.get_logger()


class EmailAdapter(ChannelAdapter):
    """Sends notifications through an SMTP relay."""

    kind = ChannelKind.EMAIL

    def __init__(self, config=None):
        super().__init__(config)
        self.smtp_host = self.config.get('smtp_host')
        self.smtp_port = int(self.config.get('smtp_port', 587))
        self.smtp_username = self.config.get('smtp_username')
        self.smtp_password = self.config.get('smtp_password')
        self.from_address = self.config.get('from_address')
        self.use_tls = self.config.get('use_tls', True)
        self.html_format = self.config.get('html_format', False)

    async def send(self, address: str, message: NotificationMessage) -> bool:
        if not self.smtp_host or not self.from_address:
            logger.error("Email configuration incomplete", smtp_host=self.smtp_host)
            return self._track(False)

        msg = self._build_message(address, message)
        try:
            await asyncio.to_thread(self._deliver, msg)
        except Exception as e:
            logger.error("Error sending email", to=address, error=str(e))
            self._track(False)
            raise
        logger.debug("Email delivered", to=address, incident_id=message.incident_id)
        return self._track(True)

    def _build_message(self, address: str, message: NotificationMessage) -> MIMEMultipart:
        msg = MIMEMultipart()
        msg['From'] = self.from_address
        msg['To'] = address
        msg['Subject'] = message.subject

        if self.html_format:
            msg.attach(MIMEText(message.body.replace('\n', '<br>'), 'html'))
        else:
            msg.attach(MIMEText(message.body, 'plain'))
        return msg

    def _deliver(self, msg: MIMEMultipart) -> None:
        with smtplib.SMTP(self.smtp_host, self.smtp_port,
                          timeout=self.timeout_seconds or 30) as server:
            if self.use_tls:
                server.starttls()
            if self.smtp_username and self.smtp_password:
                server.login(self.smtp_username, self.smtp_password)
            server.send_message(msg)
