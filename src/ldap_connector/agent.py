"""
Main connector process.

Wires the connector components together and runs the recurring jobs:
1. Heartbeat signal to the backend
2. Partial groups sync
3. Partial users sync

Every component logs through stdlib logging; records under the
ldap_connector logger are also shipped to the backend as telemetry.

The connector is designed to run as a service with graceful shutdown.
"""

import argparse
import asyncio
import getpass
import json
import logging
import os
import signal
import sys
from typing import Optional

from . import __version__
from .config import APP_ID, ConnectorSettings, JsonConfigStore, load_settings
from .credentials import CredentialProvider, LocalCredentialStore
from .crypto import PayloadSigner
from .errors import ConnectorError
from .exporter import CommandExporter, Exporter, UnconfiguredExporter
from .provisioning import configure_connector, save_ldap_credentials
from .scheduler import JobScheduler, build_connector_jobs
from .sync import SyncAction, SyncContext, SyncOrchestrator, SyncOutcome
from .telemetry import LogPipeline, TelemetryHandler
from .transport import SyncTransport
from .updates import UpdateInfo, check_for_update

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = "ldap_connector"


class ConnectorAgent:
    """
    Directory connector orchestrator.

    Owns the config store, transport, telemetry pipeline, sync
    orchestrator and scheduler for one connector process.
    """

    def __init__(
        self,
        settings: ConnectorSettings,
        credentials: Optional[CredentialProvider] = None,
        exporter: Optional[Exporter] = None
    ):
        """
        Initialize connector agent.

        Args:
            settings: Connector settings
            credentials: Credential provider (default: LocalCredentialStore)
            exporter: Exporter (default: CommandExporter from settings)
        """
        self.settings = settings
        self.running = False
        self.shutdown_event = asyncio.Event()

        self.config_store = JsonConfigStore(settings.config_path)
        self.credentials = credentials or LocalCredentialStore(settings.state_dir)
        self.signer = PayloadSigner(self.credentials)
        self.transport = SyncTransport(settings, self.signer, self.config_store)

        self.pipeline = LogPipeline(
            self.transport,
            self.config_store,
            flush_size=settings.log_flush_size,
            flush_seconds=settings.log_flush_seconds,
            signed=settings.telemetry_signed,
            retries=settings.telemetry_retries
        )
        self.telemetry_handler = TelemetryHandler(self.pipeline)
        self._previous_level = logging.NOTSET

        if exporter is not None:
            self.exporter = exporter
        elif settings.export_command:
            self.exporter = CommandExporter(
                settings.export_command,
                settings.export_dir,
                connector_id=lambda: self.config_store.get(APP_ID),
                timeout=settings.export_timeout
            )
        else:
            logger.warning("No export command configured, syncs will fail until EXPORT_COMMAND is set")
            self.exporter = UnconfiguredExporter()

        self.orchestrator = SyncOrchestrator(SyncContext(
            exporter=self.exporter,
            transport=self.transport,
            config_store=self.config_store,
            credentials=self.credentials
        ))
        self.scheduler = JobScheduler()

        logger.info(f"ConnectorAgent initialized (mode={settings.runtime_mode})")

    def attach_telemetry(self):
        """
        Ship every ldap_connector record to the backend.

        The package logger is opened up to DEBUG so per-phase events reach
        the telemetry handler; console verbosity is set on the console
        handler instead (see main).
        """
        package_logger = logging.getLogger(PACKAGE_LOGGER)
        if self.telemetry_handler not in package_logger.handlers:
            self._previous_level = package_logger.level
            package_logger.setLevel(logging.DEBUG)
            package_logger.addHandler(self.telemetry_handler)

    def detach_telemetry(self):
        package_logger = logging.getLogger(PACKAGE_LOGGER)
        if self.telemetry_handler in package_logger.handlers:
            package_logger.removeHandler(self.telemetry_handler)
            package_logger.setLevel(self._previous_level)

    async def start(self):
        """
        Start the connector.

        Runs the scheduled jobs until shutdown.
        """
        if self.running:
            logger.warning("Agent already running")
            return

        self.running = True
        self.pipeline.bind_loop(asyncio.get_running_loop())
        self.attach_telemetry()

        logger.info(f"Starting LDAP connector v{__version__}...")

        self._setup_signal_handlers()

        try:
            async with self.transport:
                try:
                    for job in build_connector_jobs(
                        self.settings,
                        self.transport,
                        self.orchestrator,
                        self.config_store,
                        self.pipeline
                    ):
                        self.scheduler.add_job(job)

                    self.scheduler.start()
                    await self.shutdown_event.wait()

                finally:
                    # Flushes telemetry, so must run while the session is open
                    await self._shutdown()

        except Exception as e:
            logger.error(f"Agent error: {e}", exc_info=True)
            raise

        logger.info("Connector shutdown complete")

    def stop(self):
        """Signal the main loop to stop."""
        logger.info("Stopping connector...")
        self.running = False
        self.shutdown_event.set()

    async def run_sync(self, action: SyncAction) -> SyncOutcome:
        """Run a single sync action, persist config and drain telemetry."""
        self.attach_telemetry()
        try:
            async with self.transport:
                try:
                    outcome = await self.orchestrator.sync(action)
                    self.config_store.save()
                    return outcome
                finally:
                    await self.pipeline.flush()
        finally:
            self.detach_telemetry()

    async def check_update(self) -> Optional[UpdateInfo]:
        async with self.transport:
            return await check_for_update(self.transport, self.settings.connector_version)

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.stop)
            except (NotImplementedError, RuntimeError):
                # Windows event loops have no add_signal_handler
                signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(self.stop))

        logger.info("Signal handlers registered (SIGTERM, SIGINT)")

    async def _shutdown(self):
        """Graceful shutdown."""
        logger.info("Shutting down connector...")

        self.running = False

        await self.scheduler.stop()

        try:
            self.config_store.save()
        except OSError as e:
            logger.error(f"Failed to save config on shutdown: {e}")

        await self.pipeline.flush()
        self.detach_telemetry()

        for job in self.scheduler.jobs:
            logger.info(f"Job '{job.name}' statistics: {job.stats}")
        logger.info(f"Telemetry statistics: {self.pipeline.stats}")


def configure_logging(level: str) -> logging.Handler:
    """
    Configure console logging.

    The level applies to the console handler only. Loggers stay open so
    the telemetry handler still receives DEBUG records.

    Returns:
        The console handler
    """
    console = logging.StreamHandler()
    console.setLevel(getattr(logging, level))

    logging.basicConfig(
        level=logging.DEBUG,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%dT%H:%M:%S%z',
        handlers=[console]
    )

    return console


def _configure(settings: ConnectorSettings) -> int:
    store = JsonConfigStore(settings.config_path)
    credentials = LocalCredentialStore(settings.state_dir)
    try:
        result = configure_connector(store, credentials)
    except ConnectorError as e:
        print(f"ERROR: {e.message}", file=sys.stderr)
        return 1
    print(json.dumps(result, indent=2))
    return 0


def _save_credentials(settings: ConnectorSettings, username: str) -> int:
    store = JsonConfigStore(settings.config_path)
    credentials = LocalCredentialStore(settings.state_dir)
    password = os.environ.get('LDAP_PASSWORD') or getpass.getpass("LDAP password: ")
    try:
        save_ldap_credentials(store, credentials, username, password)
    except ConnectorError as e:
        print(f"ERROR: {e.message}", file=sys.stderr)
        return 1
    print("Credentials saved.")
    return 0


def main():
    """Main entry point for the connector."""
    parser = argparse.ArgumentParser(description="LDAP Directory Connector")
    parser.add_argument(
        "--sync",
        choices=[action.value for action in SyncAction],
        help="Run a single sync action and exit"
    )
    parser.add_argument(
        "--configure",
        action="store_true",
        help="Create the connector ID and signing keypair"
    )
    parser.add_argument(
        "--save-credentials",
        metavar="USERNAME",
        help="Store LDAP credentials (password from LDAP_PASSWORD or prompt)"
    )
    parser.add_argument(
        "--check-update",
        action="store_true",
        help="Ask the backend whether an update is available"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (overrides LOG_LEVEL)"
    )

    args = parser.parse_args()

    try:
        settings = load_settings()
    except KeyError as e:
        print(f"ERROR: Missing required setting: {e}", file=sys.stderr)
        sys.exit(1)
    except ValueError as e:
        print(f"ERROR: Invalid config: {e}", file=sys.stderr)
        sys.exit(1)

    configure_logging(args.log_level or settings.log_level)

    if args.configure:
        sys.exit(_configure(settings))

    if args.save_credentials:
        sys.exit(_save_credentials(settings, args.save_credentials))

    agent = ConnectorAgent(settings)

    if args.sync:
        try:
            outcome = asyncio.run(agent.run_sync(SyncAction(args.sync)))
        except ConnectorError as e:
            print(f"ERROR: {args.sync} failed: {e.message}", file=sys.stderr)
            sys.exit(1)
        print(f"{outcome.action.value} completed (performed={outcome.performed.value}, "
              f"delivered={outcome.delivered}, watermark={outcome.watermark})")
        sys.exit(0)

    if args.check_update:
        try:
            update = asyncio.run(agent.check_update())
        except ConnectorError as e:
            print(f"ERROR: Update check failed: {e.message}", file=sys.stderr)
            sys.exit(1)
        if update:
            print(f"Update available: {update.version} ({update.update_url})")
        else:
            print("Connector is up to date.")
        sys.exit(0)

    try:
        asyncio.run(agent.start())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
