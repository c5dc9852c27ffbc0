#!/usr/bin/env python3
"""
Incident Engine - Alert Routing Rules
Ordered rules evaluated against every alert before correlation. The first
matching rule may re-route the alert to another service, override its
severity, tag it, or suppress it outright.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import structlog

from .models import Alert, AlertSeverity, AlertStatus, _enum_value

logger = structlog.get_logger()


@dataclass
class RoutingRule:
    """
    One routing rule. All configured conditions must hold for a match.
    """
    name: str
    priority: int = 0                          # Higher priority is evaluated first
    enabled: bool = True

    # Conditions
    labels: Dict[str, str] = field(default_factory=dict)
    source: Optional[str] = None
    severities: List[AlertSeverity] = field(default_factory=list)
    title_contains: Optional[str] = None       # Case-insensitive substring
    description_matches: Optional[str] = None  # Regular expression

    # Actions
    route_to_service: Optional[str] = None
    set_severity: Optional[AlertSeverity] = None
    add_tags: List[str] = field(default_factory=list)
    suppress: bool = False

    def matches(self, alert: Alert) -> bool:
        if self.source and alert.source != self.source:
            return False

        if self.severities and alert.severity not in self.severities:
            return False

        for key, value in self.labels.items():
            if alert.labels.get(key) != value:
                return False

        if self.title_contains and self.title_contains.lower() not in alert.title.lower():
            return False

        if self.description_matches:
            try:
                if not re.search(self.description_matches, alert.description):
                    return False
            except re.error:
                logger.warning("Invalid routing rule pattern",
                               rule=self.name, pattern=self.description_matches)
                return False

        return True

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "RoutingRule":
        conditions = config.get('conditions', {}) or {}
        actions = config.get('actions', {}) or {}

        severities = conditions.get('severity') or []
        if not isinstance(severities, list):
            severities = [severities]
        set_severity = actions.get('set_severity')

        return cls(
            name=str(config.get('name', 'unnamed')),
            priority=int(config.get('priority', 0)),
            enabled=bool(config.get('enabled', True)),
            labels={str(k): str(v) for k, v in (conditions.get('labels') or {}).items()},
            source=conditions.get('source'),
            severities=[_enum_value(AlertSeverity, s, 'severity') for s in severities],
            title_contains=conditions.get('title_contains'),
            description_matches=conditions.get('description_matches'),
            route_to_service=actions.get('route_to_service'),
            set_severity=(_enum_value(AlertSeverity, set_severity, 'set_severity')
                          if set_severity else None),
            add_tags=list(actions.get('add_tags') or []),
            suppress=bool(actions.get('suppress', False)),
        )


class AlertRouter:
    """Applies the first matching routing rule to an alert."""

    def __init__(self, rules: Optional[List[RoutingRule]] = None):
        self.rules = sorted(rules or [], key=lambda r: r.priority, reverse=True)
        self.match_counts: Dict[str, int] = {}

    @classmethod
    def from_config(cls, rules_config: List[Dict[str, Any]]) -> "AlertRouter":
        return cls([RoutingRule.from_dict(rule) for rule in rules_config or []])

    def route(self, alert: Alert) -> Tuple[Alert, bool]:
        """
        Apply routing rules to an alert in place.

        Args:
            alert: Incoming alert

        Returns:
            Tuple of (alert, suppressed)
        """
        for rule in self.rules:
            if not rule.enabled or not rule.matches(alert):
                continue

            self.match_counts[rule.name] = self.match_counts.get(rule.name, 0) + 1

            if rule.route_to_service:
                alert.service_id = rule.route_to_service
            if rule.set_severity is not None:
                alert.severity = rule.set_severity
            for tag in rule.add_tags:
                alert.labels[f"tag:{tag}"] = "true"

            if rule.suppress:
                alert.status = AlertStatus.SUPPRESSED
                logger.info("Alert suppressed by routing rule",
                            rule=rule.name, dedup_key=alert.dedup_key)
                return alert, True

            logger.debug("Routing rule applied", rule=rule.name, dedup_key=alert.dedup_key)
            return alert, False

        return alert, False
