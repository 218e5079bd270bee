"""
Tests for settings loading and the persisted config store.
"""

import json
from pathlib import Path

import pytest

from ldap_connector.config import (
    APP_ID,
    STATE,
    STATE_PENDING_CONFIG,
    ConnectorSettings,
    JsonConfigStore,
    load_settings,
)


@pytest.fixture
def env(monkeypatch, tmp_path):
    """Minimal connector environment."""
    monkeypatch.setenv('WEBHOOK_URL', 'https://backend.example.com/webhook')
    monkeypatch.setenv('STATE_DIR', str(tmp_path))
    for name in ('EXPORT_DIR', 'CONFIG_PATH', 'RUNTIME_MODE', 'EXPORT_COMMAND',
                 'TELEMETRY_SIGNED', 'UPLOAD_METHOD', 'LOG_LEVEL'):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestLoadSettings:
    """Test environment loading."""

    def test_defaults(self, env, tmp_path):
        settings = load_settings()

        assert settings.webhook_url == 'https://backend.example.com/webhook'
        assert settings.runtime_mode == 'production'
        assert settings.is_production is True
        assert settings.heartbeat_interval == 300
        assert settings.sync_interval == 900
        assert settings.webhook_retries == 2
        assert settings.log_flush_size == 20
        assert settings.log_flush_seconds == 20
        assert settings.telemetry_signed is False
        assert settings.export_command is None

    def test_derived_paths(self, env, tmp_path):
        """Test export dir and config path default under the state dir."""
        settings = load_settings()

        assert settings.export_dir == tmp_path / 'exports'
        assert settings.config_path == tmp_path / 'config.json'
        assert settings.signing_key_path == tmp_path / 'signing.key'

    def test_explicit_paths(self, env, tmp_path):
        env.setenv('EXPORT_DIR', str(tmp_path / 'out'))
        env.setenv('CONFIG_PATH', str(tmp_path / 'etc' / 'connector.json'))

        settings = load_settings()

        assert settings.export_dir == tmp_path / 'out'
        assert settings.config_path == tmp_path / 'etc' / 'connector.json'

    def test_missing_webhook_url(self, env):
        env.delenv('WEBHOOK_URL')

        with pytest.raises(KeyError):
            load_settings()

    def test_invalid_runtime_mode(self, env):
        env.setenv('RUNTIME_MODE', 'staging')

        with pytest.raises(ValueError):
            load_settings()

    def test_export_command_and_flags(self, env):
        env.setenv('EXPORT_COMMAND', '/usr/bin/ldap-export --domain corp.local')
        env.setenv('TELEMETRY_SIGNED', 'true')
        env.setenv('UPLOAD_METHOD', 'post')
        env.setenv('RUNTIME_MODE', 'development')

        settings = load_settings()

        assert settings.export_command == ['/usr/bin/ldap-export', '--domain', 'corp.local']
        assert settings.telemetry_signed is True
        assert settings.upload_method == 'POST'
        assert settings.is_production is False

    def test_export_command_keeps_quoted_arguments(self, env):
        env.setenv('EXPORT_COMMAND', '"/opt/ldap tools/export" --base "OU=Corp Users,DC=corp"')

        settings = load_settings()

        assert settings.export_command == ['/opt/ldap tools/export', '--base', 'OU=Corp Users,DC=corp']

    def test_invalid_upload_method(self):
        with pytest.raises(ValueError):
            ConnectorSettings(webhook_url='https://x', upload_method='GET')

    def test_unknown_field_rejected(self):
        with pytest.raises(ValueError):
            ConnectorSettings(webhook_url='https://x', site_id='abc')


class TestJsonConfigStore:
    """Test the persisted key-value store."""

    def test_defaults(self, tmp_path):
        store = JsonConfigStore(tmp_path / 'config.json')

        assert store.get(STATE) == STATE_PENDING_CONFIG
        assert store.get(APP_ID) is None
        assert store.get('lastGroupsFullSync', 'never') == 'never'

    def test_set_is_in_memory_until_save(self, tmp_path):
        path = tmp_path / 'config.json'
        store = JsonConfigStore(path)

        store.set('lastUsersFullSync', '20240101000000.0Z')
        assert not path.exists()

        store.save()
        reloaded = JsonConfigStore(path)
        assert reloaded.get('lastUsersFullSync') == '20240101000000.0Z'

    def test_save_creates_parent_dirs(self, tmp_path):
        path = tmp_path / 'nested' / 'dir' / 'config.json'
        store = JsonConfigStore(path)

        store.save()

        assert json.loads(path.read_text())[STATE] == STATE_PENDING_CONFIG
        assert not path.with_suffix('.json.tmp').exists()

    def test_corrupt_file_falls_back_to_defaults(self, tmp_path):
        path = tmp_path / 'config.json'
        path.write_text('{not json')

        store = JsonConfigStore(path)

        assert store.get(STATE) == STATE_PENDING_CONFIG

    def test_non_object_root_falls_back_to_defaults(self, tmp_path):
        path = tmp_path / 'config.json'
        path.write_text('[1, 2, 3]')

        assert JsonConfigStore(path).as_dict()[STATE] == STATE_PENDING_CONFIG

    def test_save_failure_raises(self, tmp_path):
        blocker = tmp_path / 'blocker'
        blocker.write_text('file, not a directory')
        store = JsonConfigStore(Path(blocker) / 'config.json')

        with pytest.raises(OSError):
            store.save()
