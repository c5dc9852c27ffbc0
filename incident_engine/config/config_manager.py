#!/usr/bin/env python3
"""
Incident Engine - Configuration Management
Configuration loading, validation, and management for the escalation engine.
"""

import copy
import json
import os
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
import yaml

from ..core.models import AlertSeverity, ChannelKind, TargetType

logger = structlog.get_logger()


@dataclass
class ConfigValidationError:
    """Represents a configuration validation error."""
    path: str                    # Configuration path where error occurred
    message: str                 # Error message
    severity: str = "error"      # error, warning
    suggestion: Optional[str] = None  # Suggested fix


DEFAULTS: Dict[str, Any] = {
    'engine': {
        'log_level': 'INFO',
        'timer_workers': 10,
        'timer_poll_interval': 1.0,
        'lookup_timeout_seconds': 10.0,
        'event_queue_size': 1000,
    },
    'correlation': {
        'reopen_window_seconds': 0,
    },
    'dispatcher': {
        'retry_base_seconds': 30,
        'retry_factor': 2,
        'max_attempts': 5,
        'adapter_timeout_seconds': 10,
    },
    'templates': {},
    'channels': {},
    'policies': {},
    'users': {},
    'teams': {},
    'schedules': {},
    'routing_rules': [],
}

LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


class ConfigManager:
    """
    Configuration management for the incident escalation engine.

    Features:
    - YAML configuration loading with environment variable substitution
    - Environment-specific configuration merging
    - Default value injection
    - Configuration validation with detailed error reporting
    """

    def __init__(self, config_path: Union[str, Path]):
        """
        Initialize configuration manager.

        Args:
            config_path: Path to primary configuration file
        """
        self.config_path = Path(config_path)
        self.config: Dict[str, Any] = {}
        self.validation_errors: List[ConfigValidationError] = []
        self.last_modified: Optional[datetime] = None
        self.environment = os.getenv('INCIDENT_ENGINE_ENV', 'development')

        logger.info("ConfigManager initialized",
                    config_path=str(self.config_path),
                    environment=self.environment)

    async def load_config(self) -> bool:
        """
        Load configuration from file with validation.

        Returns:
            True if loading successful, False otherwise
        """
        try:
            logger.info("Loading configuration", config_path=str(self.config_path))

            if not self.config_path.exists():
                logger.error("Configuration file not found", path=str(self.config_path))
                return False

            with open(self.config_path, 'r') as f:
                raw_config = yaml.safe_load(f)

            if not raw_config or not isinstance(raw_config, dict):
                logger.error("Configuration file is empty or invalid")
                return False

            self.config = self._substitute_environment_variables(raw_config)
            await self._load_environment_overrides()
            self._apply_defaults()

            if not await self._validate_config():
                logger.error("Configuration validation failed",
                             errors=[f"{e.path}: {e.message}" for e in self.validation_errors
                                     if e.severity == 'error'])
                return False

            for warning in self.validation_errors:
                logger.warning("Configuration warning", path=warning.path,
                               message=warning.message, suggestion=warning.suggestion)

            self.last_modified = datetime.fromtimestamp(self.config_path.stat().st_mtime)
            logger.info("Configuration loaded successfully",
                        sections=list(self.config.keys()))
            return True

        except yaml.YAMLError as e:
            logger.error("YAML parsing error", error=str(e))
            return False
        except OSError as e:
            logger.error("Error loading configuration", error=str(e))
            return False

    def get_config(self) -> Dict[str, Any]:
        """
        Get the current configuration.

        Returns:
            Complete configuration dictionary
        """
        return self.config.copy()

    def get_section(self, section: str, default: Any = None) -> Any:
        """
        Get a specific configuration section.

        Args:
            section: Section name (supports dot notation like 'dispatcher.max_attempts')
            default: Default value if section not found

        Returns:
            Configuration section value or default
        """
        return self._get_nested_value(self.config, section, default)

    def export_config(self, output_path: Path, format: str = 'yaml',
                      include_sensitive: bool = False) -> bool:
        """
        Export current configuration to file.

        Args:
            output_path: Output file path
            format: Output format ('yaml' or 'json')
            include_sensitive: Whether to include sensitive values

        Returns:
            True if export successful, False otherwise
        """
        try:
            config_to_export = self.config.copy()
            if not include_sensitive:
                config_to_export = self._mask_sensitive_values(config_to_export)

            with open(output_path, 'w') as f:
                if format.lower() == 'json':
                    json.dump(config_to_export, f, indent=2, default=str)
                else:
                    yaml.dump(config_to_export, f, default_flow_style=False, indent=2)

            logger.info("Configuration exported", output_path=str(output_path), format=format)
            return True

        except OSError as e:
            logger.error("Error exporting configuration",
                         output_path=str(output_path), error=str(e))
            return False

    # =========================================================================
    # PRIVATE METHODS
    # =========================================================================

    def _substitute_environment_variables(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Substitute environment variables in configuration values.

        Supports ${VAR_NAME} and ${VAR_NAME:default_value} syntax.
        """
        def replace_env_var(match):
            var_expr = match.group(1)
            if ':' in var_expr:
                var_name, default_value = var_expr.split(':', 1)
                return os.getenv(var_name.strip(), default_value.strip())
            env_value = os.getenv(var_expr.strip())
            if env_value is None:
                logger.warning("Environment variable not found", variable=var_expr.strip())
                return match.group(0)
            return env_value

        def substitute_value(value):
            if isinstance(value, str):
                return re.sub(r'\$\{([^}]+)\}', replace_env_var, value)
            elif isinstance(value, dict):
                return {k: substitute_value(v) for k, v in value.items()}
            elif isinstance(value, list):
                return [substitute_value(item) for item in value]
            return value

        return substitute_value(config)

    async def _load_environment_overrides(self) -> None:
        """Load the ``<environment>.yaml`` override file next to the main config."""
        env_config_file = self.config_path.parent / f"{self.environment}.yaml"
        if not env_config_file.exists() or env_config_file == self.config_path:
            return

        try:
            logger.info("Loading environment-specific configuration",
                        env_file=str(env_config_file))
            with open(env_config_file, 'r') as f:
                env_config = yaml.safe_load(f)
            if env_config:
                self.config = self._deep_merge(
                    self.config, self._substitute_environment_variables(env_config))
        except (OSError, yaml.YAMLError) as e:
            logger.warning("Error loading environment configuration",
                           env_file=str(env_config_file), error=str(e))

    def _apply_defaults(self) -> None:
        """Merge defaults under the loaded configuration (config takes precedence)."""
        self.config = self._deep_merge(copy.deepcopy(DEFAULTS), self.config)

    async def _validate_config(self) -> bool:
        """
        Validate the loaded configuration.

        Returns:
            True if configuration has no errors (warnings allowed)
        """
        self.validation_errors.clear()

        self._validate_engine_config()
        self._validate_dispatcher_config()
        self._validate_channels_config()
        self._validate_users_config()
        self._validate_policies_config()
        self._validate_routing_rules()

        return len([e for e in self.validation_errors if e.severity == 'error']) == 0

    def _error(self, path: str, message: str, severity: str = 'error',
               suggestion: Optional[str] = None) -> None:
        self.validation_errors.append(ConfigValidationError(
            path=path, message=message, severity=severity, suggestion=suggestion))

    def _validate_engine_config(self) -> None:
        engine = self.config.get('engine', {})

        if engine.get('log_level') not in LOG_LEVELS:
            self._error('engine.log_level', f"log_level must be one of: {', '.join(LOG_LEVELS)}")

        for key in ('timer_workers', 'event_queue_size'):
            value = engine.get(key)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                self._error(f'engine.{key}', f'{key} must be an integer >= 1')

        for key in ('timer_poll_interval', 'lookup_timeout_seconds'):
            value = engine.get(key)
            if not isinstance(value, (int, float)) or value <= 0:
                self._error(f'engine.{key}', f'{key} must be a positive number')

        window = self.config.get('correlation', {}).get('reopen_window_seconds')
        if not isinstance(window, (int, float)) or window < 0:
            self._error('correlation.reopen_window_seconds',
                        'reopen_window_seconds must be a number >= 0')

    def _validate_dispatcher_config(self) -> None:
        dispatcher = self.config.get('dispatcher', {})

        base = dispatcher.get('retry_base_seconds')
        if not isinstance(base, (int, float)) or base <= 0:
            self._error('dispatcher.retry_base_seconds', 'retry_base_seconds must be positive')

        factor = dispatcher.get('retry_factor')
        if not isinstance(factor, (int, float)) or factor < 1:
            self._error('dispatcher.retry_factor', 'retry_factor must be a number >= 1')

        max_attempts = dispatcher.get('max_attempts')
        if not isinstance(max_attempts, int) or max_attempts < 1:
            self._error('dispatcher.max_attempts', 'max_attempts must be an integer >= 1')

        timeout = dispatcher.get('adapter_timeout_seconds')
        if not isinstance(timeout, (int, float)) or timeout <= 0:
            self._error('dispatcher.adapter_timeout_seconds',
                        'adapter_timeout_seconds must be positive')

    def _validate_channels_config(self) -> None:
        channels = self.config.get('channels', {})
        valid_kinds = [kind.value for kind in ChannelKind]

        if not channels:
            self._error('channels', 'No notification channels configured', severity='warning',
                        suggestion='Configure at least one channel adapter')
            return

        for name, channel_config in channels.items():
            if name not in valid_kinds:
                self._error(f'channels.{name}',
                            f'Unknown channel. Must be one of: {", ".join(valid_kinds)}')
                continue
            if not isinstance(channel_config, dict):
                self._error(f'channels.{name}', 'Channel configuration must be a dictionary')
                continue

            if 'max_attempts' in channel_config:
                # May arrive as a string through ${VAR} substitution
                value = str(channel_config['max_attempts'])
                if not value.isdigit() or int(value) < 1:
                    self._error(f'channels.{name}.max_attempts',
                                'max_attempts must be an integer >= 1')

            if name == 'email':
                for field in ('smtp_host', 'from_address'):
                    if not channel_config.get(field):
                        self._error(f'channels.email.{field}', f'Email {field} is required')
            elif name in ('slack', 'teams'):
                if not channel_config.get('webhook_url'):
                    self._error(f'channels.{name}.webhook_url',
                                f'{name.capitalize()} webhook URL is not set; '
                                'recipients must supply URL addresses',
                                severity='warning')
            elif not channel_config.get('url'):
                self._error(f'channels.{name}.url', f'{name} gateway URL is required')

    def _validate_users_config(self) -> None:
        valid_kinds = [kind.value for kind in ChannelKind]
        time_pattern = re.compile(r'^([01]?\d|2[0-3]):[0-5]\d$')

        for user_id, user_config in self.config.get('users', {}).items():
            user_config = user_config or {}
            for channel in user_config.get('channels', []) or []:
                if channel not in valid_kinds:
                    self._error(f'users.{user_id}.channels', f'Unknown channel {channel!r}')

            quiet_hours = user_config.get('quiet_hours') or {}
            for bound in ('start', 'end'):
                value = quiet_hours.get(bound)
                if isinstance(value, int) and 0 <= value < 24 * 60:
                    continue
                if value is not None and not time_pattern.match(str(value)):
                    self._error(f'users.{user_id}.quiet_hours.{bound}',
                                'Quiet hours must use HH:MM format')
            if (quiet_hours.get('start') is None) != (quiet_hours.get('end') is None):
                self._error(f'users.{user_id}.quiet_hours',
                            'Quiet hours need both start and end', severity='warning')

            timezone_name = user_config.get('timezone')
            if timezone_name:
                try:
                    ZoneInfo(timezone_name)
                except (ZoneInfoNotFoundError, ValueError):
                    self._error(f'users.{user_id}.timezone',
                                f'Unknown timezone {timezone_name!r}; UTC will be used',
                                severity='warning')

            delay = user_config.get('notification_delay_seconds', 0)
            if not isinstance(delay, (int, float)) or delay < 0:
                self._error(f'users.{user_id}.notification_delay_seconds',
                            'notification_delay_seconds must be a number >= 0')

    def _validate_policies_config(self) -> None:
        policies = self.config.get('policies', {})
        valid_types = [t.value for t in TargetType]
        teams = self.config.get('teams', {})
        schedules = self.config.get('schedules', {})

        if not policies:
            self._error('policies', 'No escalation policies configured', severity='warning',
                        suggestion='Incidents without a policy are flagged for manual attention')
            return

        for service_id, policy in policies.items():
            if not isinstance(policy, dict):
                self._error(f'policies.{service_id}', 'Policy must be a dictionary')
                continue

            levels = policy.get('levels') or []
            if not levels:
                self._error(f'policies.{service_id}.levels', 'Policy has no levels',
                            severity='warning')

            for index, level in enumerate(levels):
                path = f'policies.{service_id}.levels[{index}]'
                delay = level.get('delay_seconds', 0)
                if not isinstance(delay, (int, float)) or delay < 0:
                    self._error(f'{path}.delay_seconds', 'delay_seconds must be a number >= 0')

                targets = level.get('targets') or []
                if not targets:
                    self._error(f'{path}.targets', 'Level has no targets', severity='warning')
                for target in targets:
                    target_type = target.get('type', 'user')
                    if target_type not in valid_types:
                        self._error(f'{path}.targets',
                                    f'Invalid target type. Must be one of: {", ".join(valid_types)}')
                    elif not target.get('id'):
                        self._error(f'{path}.targets', 'Target id is required')
                    elif target_type == 'team' and target['id'] not in teams:
                        self._error(f'{path}.targets', f"Unknown team {target['id']!r}",
                                    severity='warning')
                    elif target_type == 'schedule' and target['id'] not in schedules:
                        self._error(f'{path}.targets', f"Unknown schedule {target['id']!r}",
                                    severity='warning')

    def _validate_routing_rules(self) -> None:
        rules = self.config.get('routing_rules', [])
        if not isinstance(rules, list):
            self._error('routing_rules', 'routing_rules must be a list')
            return

        severities = [s.value for s in AlertSeverity]
        for index, rule in enumerate(rules):
            path = f'routing_rules[{index}]'
            conditions = rule.get('conditions', {}) or {}
            actions = rule.get('actions', {}) or {}

            pattern = conditions.get('description_matches')
            if pattern:
                try:
                    re.compile(pattern)
                except re.error:
                    self._error(f'{path}.conditions.description_matches',
                                'Invalid regular expression; the rule will never match',
                                severity='warning')

            condition_severities = conditions.get('severity') or []
            if not isinstance(condition_severities, list):
                condition_severities = [condition_severities]
            for severity in condition_severities + ([actions['set_severity']]
                                                    if actions.get('set_severity') else []):
                if str(severity).lower() not in severities:
                    self._error(path, f'Invalid severity {severity!r}')

    def _get_nested_value(self, data: Dict[str, Any], path: str, default: Any = None) -> Any:
        """
        Get value from nested dictionary using dot notation.

        Args:
            data: Dictionary to search
            path: Dot-separated path (e.g., 'engine.log_level')
            default: Default value if path not found

        Returns:
            Value at path or default
        """
        current = data
        for key in path.split('.'):
            if isinstance(current, dict) and key in current:
                current = current[key]
            else:
                return default
        return current

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """
        Deep merge two dictionaries.

        Args:
            base: Base dictionary
            override: Override dictionary

        Returns:
            Merged dictionary
        """
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value
        return result

    def _mask_sensitive_values(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Mask sensitive configuration values."""
        sensitive_keys = {
            'password', 'passwd', 'token', 'secret', 'webhook_url', 'api_key', 'auth'
        }

        def mask_dict(data):
            if isinstance(data, dict):
                result = {}
                for k, v in data.items():
                    if any(sensitive in str(k).lower() for sensitive in sensitive_keys):
                        result[k] = "***MASKED***" if v else v
                    else:
                        result[k] = mask_dict(v)
                return result
            elif isinstance(data, list):
                return [mask_dict(item) for item in data]
            return data

        return mask_dict(config)
