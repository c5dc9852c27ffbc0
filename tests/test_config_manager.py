"""
Tests for configuration loading and validation.
"""

import json
import textwrap

import pytest
import yaml

from incident_engine.config import ConfigManager

VALID_CONFIG = """
engine:
  log_level: INFO
dispatcher:
  max_attempts: 3
channels:
  email:
    smtp_host: ${SMTP_HOST}
    from_address: ${FROM_ADDRESS:incidents@example.com}
    smtp_password: hunter2
users:
  alice:
    channels: [email]
    quiet_hours:
      start: 22:00
      end: "07:00"
teams:
  platform:
    members: [alice]
policies:
  default:
    levels:
      - delay_seconds: 300
        targets:
          - type: team
            id: platform
"""


def write_config(tmp_path, text, name="engine.yaml"):
    path = tmp_path / name
    path.write_text(textwrap.dedent(text))
    return path


@pytest.fixture(autouse=True)
def environment(monkeypatch):
    monkeypatch.setenv('INCIDENT_ENGINE_ENV', 'test')
    monkeypatch.setenv('SMTP_HOST', 'smtp.example.com')
    monkeypatch.delenv('FROM_ADDRESS', raising=False)


class TestLoading:

    @pytest.mark.asyncio
    async def test_valid_config_loads_with_defaults(self, tmp_path):
        manager = ConfigManager(write_config(tmp_path, VALID_CONFIG))

        assert await manager.load_config()
        assert manager.get_section('dispatcher.max_attempts') == 3
        assert manager.get_section('dispatcher.retry_base_seconds') == 30
        assert manager.get_section('engine.timer_workers') == 10
        assert manager.get_section('routing_rules') == []
        assert manager.get_section('engine.missing', 'fallback') == 'fallback'

    @pytest.mark.asyncio
    async def test_environment_variables_are_substituted(self, tmp_path):
        manager = ConfigManager(write_config(tmp_path, VALID_CONFIG))
        await manager.load_config()

        email = manager.get_section('channels.email')
        assert email['smtp_host'] == 'smtp.example.com'
        assert email['from_address'] == 'incidents@example.com'

    @pytest.mark.asyncio
    async def test_missing_file_fails(self, tmp_path):
        manager = ConfigManager(tmp_path / "absent.yaml")

        assert not await manager.load_config()

    @pytest.mark.asyncio
    async def test_malformed_yaml_fails(self, tmp_path):
        manager = ConfigManager(write_config(tmp_path, "engine: [unclosed"))

        assert not await manager.load_config()

    @pytest.mark.asyncio
    async def test_environment_override_file_is_merged(self, tmp_path):
        path = write_config(tmp_path, VALID_CONFIG)
        write_config(tmp_path, "dispatcher:\n  max_attempts: 7\n", name="test.yaml")
        manager = ConfigManager(path)

        assert await manager.load_config()
        assert manager.get_section('dispatcher.max_attempts') == 7
        assert manager.get_section('channels.email.smtp_host') == 'smtp.example.com'

    @pytest.mark.asyncio
    async def test_defaults_are_not_shared_between_managers(self, tmp_path):
        first = ConfigManager(write_config(tmp_path, VALID_CONFIG))
        await first.load_config()
        first.config['engine']['timer_workers'] = 99

        second = ConfigManager(write_config(tmp_path, VALID_CONFIG))
        await second.load_config()
        assert second.get_section('engine.timer_workers') == 10


class TestValidation:

    @pytest.mark.asyncio
    async def test_invalid_dispatcher_settings_are_rejected(self, tmp_path):
        text = VALID_CONFIG.replace("max_attempts: 3", "max_attempts: 0")
        manager = ConfigManager(write_config(tmp_path, text))

        assert not await manager.load_config()
        assert 'dispatcher.max_attempts' in [e.path for e in manager.validation_errors]

    @pytest.mark.asyncio
    async def test_unknown_channel_is_rejected(self, tmp_path):
        text = VALID_CONFIG.replace("channels:\n  email:", "channels:\n  pigeon: {}\n  email:")
        manager = ConfigManager(write_config(tmp_path, text))

        assert not await manager.load_config()
        assert any(e.path == 'channels.pigeon' for e in manager.validation_errors)

    @pytest.mark.asyncio
    async def test_invalid_channel_retry_budget_is_rejected(self, tmp_path):
        text = VALID_CONFIG.replace("smtp_password: hunter2",
                                    "smtp_password: hunter2\n    max_attempts: 0")
        manager = ConfigManager(write_config(tmp_path, text))

        assert not await manager.load_config()
        assert 'channels.email.max_attempts' in [e.path for e in manager.validation_errors]

    @pytest.mark.asyncio
    async def test_channel_retry_budget_is_accepted(self, tmp_path):
        text = VALID_CONFIG.replace("smtp_password: hunter2",
                                    "smtp_password: hunter2\n    max_attempts: 4")
        manager = ConfigManager(write_config(tmp_path, text))

        assert await manager.load_config()
        assert manager.get_section('channels.email.max_attempts') == 4

    @pytest.mark.asyncio
    async def test_bad_quiet_hours_are_rejected(self, tmp_path):
        text = VALID_CONFIG.replace('end: "07:00"', 'end: "7 am"')
        manager = ConfigManager(write_config(tmp_path, text))

        assert not await manager.load_config()
        assert 'users.alice.quiet_hours.end' in [e.path for e in manager.validation_errors]

    @pytest.mark.asyncio
    async def test_invalid_target_type_is_rejected(self, tmp_path):
        text = VALID_CONFIG.replace("type: team", "type: robot")
        manager = ConfigManager(write_config(tmp_path, text))

        assert not await manager.load_config()

    @pytest.mark.asyncio
    async def test_unknown_team_is_only_a_warning(self, tmp_path):
        text = VALID_CONFIG.replace("id: platform", "id: ghosts")
        manager = ConfigManager(write_config(tmp_path, text))

        assert await manager.load_config()
        warnings = [e for e in manager.validation_errors if e.severity == 'warning']
        assert any("ghosts" in e.message for e in warnings)

    @pytest.mark.asyncio
    async def test_invalid_routing_severity_is_rejected(self, tmp_path):
        text = VALID_CONFIG + textwrap.dedent("""
            routing_rules:
              - name: bad
                actions:
                  set_severity: apocalyptic
            """)
        manager = ConfigManager(write_config(tmp_path, text))

        assert not await manager.load_config()


class TestExport:

    @pytest.mark.asyncio
    async def test_export_masks_sensitive_values(self, tmp_path):
        manager = ConfigManager(write_config(tmp_path, VALID_CONFIG))
        await manager.load_config()
        output = tmp_path / "exported.yaml"

        assert manager.export_config(output)

        exported = yaml.safe_load(output.read_text())
        assert exported['channels']['email']['smtp_password'] == "***MASKED***"
        assert exported['channels']['email']['smtp_host'] == 'smtp.example.com'

    @pytest.mark.asyncio
    async def test_export_can_include_sensitive_values_as_json(self, tmp_path):
        manager = ConfigManager(write_config(tmp_path, VALID_CONFIG))
        await manager.load_config()
        output = tmp_path / "exported.json"

        assert manager.export_config(output, format='json', include_sensitive=True)
        assert json.loads(output.read_text())['channels']['email']['smtp_password'] == "hunter2"
