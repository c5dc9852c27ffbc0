#!/usr/bin/env python3
"""
Incident Engine - Static Directory
Config-backed on-call lookup, preference reader and policy source.

Users resolve to themselves, teams to their members and schedules to the
on-call list configured for them. Rotations are not computed here.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

from ..core.models import (
    EscalationLevel,
    EscalationPolicy,
    NotificationPreference,
    TargetType,
)
from ..core.ports import OnCallResolver, PolicyProvider, PreferenceReader

logger = structlog.get_logger()


class StaticDirectory(OnCallResolver, PreferenceReader, PolicyProvider):
    """Directory of users, teams, schedules and policies loaded from config."""

    def __init__(self, users: Optional[Dict[str, NotificationPreference]] = None,
                 teams: Optional[Dict[str, List[str]]] = None,
                 schedules: Optional[Dict[str, List[str]]] = None,
                 policies: Optional[Dict[str, EscalationPolicy]] = None,
                 default_policy: Optional[str] = None):
        self.users = users or {}
        self.teams = teams or {}
        self.schedules = schedules or {}
        self.policies = policies or {}
        self.default_policy = default_policy

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "StaticDirectory":
        """
        Build the directory from the ``users``, ``teams``, ``schedules`` and
        ``policies`` configuration sections.
        """
        users = {
            user_id: NotificationPreference.from_dict(user_id, user_config or {})
            for user_id, user_config in (config.get('users') or {}).items()
        }
        teams = {
            team_id: list((team_config or {}).get('members', []))
            for team_id, team_config in (config.get('teams') or {}).items()
        }
        schedules = {
            schedule_id: list((schedule_config or {}).get('on_call', []))
            for schedule_id, schedule_config in (config.get('schedules') or {}).items()
        }
        policies = {
            service_id: EscalationPolicy.from_dict(
                policy_config.get('policy_id', service_id), policy_config)
            for service_id, policy_config in (config.get('policies') or {}).items()
            if service_id != 'default'
        }
        default_config = (config.get('policies') or {}).get('default')
        if default_config:
            policies['default'] = EscalationPolicy.from_dict(
                default_config.get('policy_id', 'default'), default_config)

        directory = cls(users, teams, schedules, policies,
                        default_policy='default' if default_config else None)
        logger.info("Static directory loaded",
                    users=len(users), teams=len(teams),
                    schedules=len(schedules), policies=len(policies))
        return directory

    async def resolve_targets(self, level: EscalationLevel, service_id: str,
                              now: datetime) -> List[str]:
        user_ids: List[str] = []
        for target in level.targets:
            if target.target_type is TargetType.USER:
                members = [target.target_id]
            elif target.target_type is TargetType.TEAM:
                members = self.teams.get(target.target_id, [])
            else:
                members = self.schedules.get(target.target_id, [])

            if not members:
                logger.debug("Escalation target resolved to nobody",
                             target_type=target.target_type.value,
                             target_id=target.target_id, service_id=service_id)
            user_ids.extend(members)
        return user_ids

    async def get_preference(self, user_id: str) -> Optional[NotificationPreference]:
        return self.users.get(user_id)

    async def get_policy(self, service_id: str) -> Optional[EscalationPolicy]:
        policy = self.policies.get(service_id)
        if policy is None and self.default_policy:
            policy = self.policies.get(self.default_policy)
        return policy
