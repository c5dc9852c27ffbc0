#!/usr/bin/env python3
"""
Incident Engine - Message Formatting
Renders notification subject and body from Jinja2 templates.
"""

from typing import Any, Dict, Optional

import structlog
from jinja2 import Template, TemplateError

from ..core.models import Incident, NotificationMessage

logger = structlog.get_logger()


DEFAULT_SUBJECT_TEMPLATE = "[{{ severity_upper }}] Incident #{{ incident.incident_number }}: {{ incident.title }}"

DEFAULT_BODY_TEMPLATE = """Incident Details:
Title: {{ incident.title }}
Severity: {{ severity_upper }}
Service: {{ incident.service_id }}
Status: {{ incident.status.value }}
Escalation level: {{ level + 1 }}{% if level_count %} of {{ level_count }}{% endif %}
Triggered: {{ formatted_time }}
Incident ID: {{ incident.id }}
{% if incident.reopened_from %}Reopened from: {{ incident.reopened_from }}
{% endif %}"""


class MessageFormatter:
    """
    Incident notification renderer.

    Custom templates receive ``incident``, ``level``, ``level_count``,
    ``severity``, ``severity_upper``, ``formatted_time`` and any configured
    custom fields.
    """

    def __init__(self, subject_template: Optional[str] = None,
                 body_template: Optional[str] = None,
                 max_length: Optional[int] = None,
                 custom_fields: Optional[Dict[str, Any]] = None):
        self.subject_template = Template(subject_template or DEFAULT_SUBJECT_TEMPLATE)
        self.body_template = Template(body_template or DEFAULT_BODY_TEMPLATE)
        self.max_length = max_length
        self.custom_fields = custom_fields or {}

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]]) -> "MessageFormatter":
        config = config or {}
        return cls(subject_template=config.get('subject'),
                   body_template=config.get('body'),
                   max_length=config.get('max_length'),
                   custom_fields=config.get('custom_fields'))

    def render(self, incident: Incident, level: int) -> NotificationMessage:
        """
        Render the notification for one escalation level of an incident.

        Falls back to a plain subject line if a custom template fails.
        """
        policy = incident.escalation_policy
        context = {
            'incident': incident,
            'level': level,
            'level_count': len(policy.levels) if policy else 0,
            'severity': incident.severity.value,
            'severity_upper': incident.severity.value.upper(),
            'formatted_time': incident.triggered_at.strftime('%Y-%m-%d %H:%M:%S UTC'),
        }
        context.update(self.custom_fields)

        try:
            subject = self.subject_template.render(**context).strip()
            body = self.body_template.render(**context).strip()
        except TemplateError as e:
            logger.error("Error rendering notification template",
                         incident_id=incident.id, error=str(e))
            subject = (f"[{incident.severity.value.upper()}] "
                       f"Incident #{incident.incident_number}: {incident.title}")
            body = subject

        if self.max_length and len(body) > self.max_length:
            body = body[:self.max_length - 3] + "..."

        return NotificationMessage(subject=subject, body=body,
                                   incident_id=incident.id, severity=incident.severity)
