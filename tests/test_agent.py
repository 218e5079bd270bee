"""
Tests for the connector agent wiring.

Runs the agent end to end against the mock backend with an in-process
exporter.
"""

import asyncio
import logging
from unittest.mock import AsyncMock, patch

import pytest

from ldap_connector.agent import ConnectorAgent, configure_logging
from ldap_connector.config import JsonConfigStore
from ldap_connector.exporter import Exporter, UnconfiguredExporter
from ldap_connector.sync import SyncAction
from ldap_connector.transport import TYPE_FILE_UPLOADED


class FileExporter(Exporter):
    """Writes a fixed CSV into the export directory."""

    def __init__(self, export_dir):
        self.export_dir = export_dir
        self.calls = []

    async def export(self, entity_type, since, credentials):
        self.calls.append((entity_type, since))
        self.export_dir.mkdir(parents=True, exist_ok=True)
        file_name = f"{entity_type.value}_test.csv"
        (self.export_dir / file_name).write_text("cn\nalice\n")
        return file_name


@pytest.fixture
def agent_settings(settings, backend, config_store):
    settings.webhook_url = f"{backend.url}/webhook"
    config_store.save()
    return settings


@pytest.fixture
def root_at_info():
    """Run with the root logger at INFO, as a production console would be."""
    root = logging.getLogger()
    previous = root.level
    root.setLevel(logging.INFO)
    yield
    root.setLevel(previous)


def test_agent_without_export_command(agent_settings, credentials):
    agent = ConnectorAgent(agent_settings, credentials=credentials)

    assert isinstance(agent.exporter, UnconfiguredExporter)


@pytest.mark.asyncio
async def test_run_sync_end_to_end(agent_settings, credentials, backend, root_at_info):
    """Test a one-shot sync delivers the export, saves config and ships telemetry."""
    exporter = FileExporter(agent_settings.export_dir)
    backend.accept_submission('fullGroups')
    agent = ConnectorAgent(agent_settings, credentials=credentials, exporter=exporter)

    outcome = await agent.run_sync(SyncAction.PARTIAL_GROUPS)

    assert outcome.performed == SyncAction.FULL_GROUPS
    assert exporter.calls[0][1] is None
    assert backend.uploads['artifact'] == b"cn\nalice\n"
    assert len(backend.received(TYPE_FILE_UPLOADED)) == 1
    assert not (agent_settings.export_dir / "groups_test.csv").exists()

    persisted = JsonConfigStore(agent_settings.config_path)
    assert persisted.get("lastGroupsFullSync") == outcome.watermark

    batches = backend.received('logs')
    assert batches
    assert all('signature' not in batch for batch in batches)
    phases = {event['context'].get('phase') for batch in batches for event in batch['payload']}
    assert {'UPLOAD', 'CONFIRM'} <= phases

    handlers = logging.getLogger("ldap_connector").handlers
    assert agent.telemetry_handler not in handlers


@pytest.mark.asyncio
async def test_start_sends_heartbeat_and_stops(agent_settings, credentials, backend):
    """Test the production agent sends a heartbeat on startup and shuts down cleanly."""
    agent_settings.runtime_mode = "production"
    agent = ConnectorAgent(agent_settings, credentials=credentials, exporter=AsyncMock())
    agent._setup_signal_handlers = lambda: None

    run = asyncio.create_task(agent.start())

    for _ in range(100):
        if backend.received('heartbeat'):
            break
        await asyncio.sleep(0.02)

    session = agent.transport._session
    agent.stop()
    await asyncio.wait_for(run, timeout=5)

    assert len(backend.received('heartbeat')) == 1
    assert agent.running is False
    assert agent.transport._session is session
    assert session.closed
    assert backend.received('logs')
    assert agent.pipeline.queue == []


def test_attach_telemetry_receives_debug_records(agent_settings, credentials, root_at_info):
    """Test per-phase DEBUG records reach telemetry while the console stays at INFO."""
    agent = ConnectorAgent(agent_settings, credentials=credentials, exporter=AsyncMock())
    package_logger = logging.getLogger("ldap_connector")
    previous = package_logger.level

    agent.attach_telemetry()
    try:
        logging.getLogger("ldap_connector.transport").debug(
            "Uploaded groups_1.csv", extra={"context": {"phase": "UPLOAD"}}
        )
    finally:
        agent.detach_telemetry()

    queued = agent.pipeline.queue
    assert len(queued) == 1
    assert queued[0].levelName == "debug"
    assert queued[0].context["phase"] == "UPLOAD"
    assert package_logger.level == previous
    assert agent.telemetry_handler not in package_logger.handlers


def test_configure_logging_sets_console_level():
    """Test the console handler carries the level and loggers stay open."""
    with patch("ldap_connector.agent.logging.basicConfig") as basic_config:
        console = configure_logging("WARNING")

    assert console.level == logging.WARNING
    assert basic_config.call_args.kwargs["level"] == logging.DEBUG
    assert basic_config.call_args.kwargs["handlers"] == [console]
