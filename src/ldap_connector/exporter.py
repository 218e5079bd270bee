"""
Directory exporter interface.

The exporter queries the directory store and writes one file into the
export directory. The query itself is performed by an external program;
the connector only sees "a file with this name" or "nothing to export".
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Union

from .credentials import LdapCredentials
from .errors import ExportFailure

logger = logging.getLogger(__name__)


class EntityType(str, Enum):
    """Directory entity types that can be synced."""
    GROUPS = "groups"
    USERS = "users"


class ExportStatus(str, Enum):
    NO_ACTION_NEEDED = "NoActionNeeded"


NO_ACTION_NEEDED = ExportStatus.NO_ACTION_NEEDED

ExportOutcome = Union[str, ExportStatus]


class Exporter(ABC):
    """Produces export files for a directory entity type."""

    @abstractmethod
    async def export(
        self,
        entity_type: EntityType,
        since: Optional[str],
        credentials: LdapCredentials
    ) -> ExportOutcome:
        """
        Export entities changed since a watermark.

        Args:
            entity_type: groups or users
            since: AD timestamp lower bound, or None for a full export
            credentials: LDAP bind credentials

        Returns:
            File name inside the export directory, or NO_ACTION_NEEDED

        Raises:
            ExportFailure: If the export could not be produced
        """
        ...


def export_file_name(entity_type: EntityType, connector_id: str, unix_time: int) -> str:
    """Deterministic artifact name: entity, connector ID and unix time."""
    return f"{entity_type.value}_{connector_id}_{unix_time}.csv"


class CommandExporter(Exporter):
    """
    Runs an external export program.

    The program is invoked as:
        <command> --entity groups --output /path/file.csv [--since TS]
                  [--username USER] --password-stdin

    It reads the password from stdin, writes the export file and exits 0.
    Printing NoActionNeeded on stdout signals that nothing changed.
    """

    def __init__(
        self,
        command: List[str],
        export_dir: Path,
        connector_id: Callable[[], Optional[str]],
        timeout: float = 600.0,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize exporter.

        Args:
            command: Export program argv prefix
            export_dir: Directory the program writes into
            connector_id: Returns the current connector ID
            timeout: Seconds before the program is killed
            clock: Returns current unix time (injectable for tests)
        """
        self.command = list(command)
        self.export_dir = Path(export_dir)
        self.connector_id = connector_id
        self.timeout = timeout
        self.clock = clock

    async def export(
        self,
        entity_type: EntityType,
        since: Optional[str],
        credentials: LdapCredentials
    ) -> ExportOutcome:
        self.export_dir.mkdir(parents=True, exist_ok=True)

        file_name = export_file_name(
            entity_type, self.connector_id() or "unconfigured", int(self.clock())
        )
        output_path = self.export_dir / file_name

        cmd = self.command + ['--entity', entity_type.value, '--output', str(output_path)]
        if since:
            cmd += ['--since', since]
        if credentials.username:
            cmd += ['--username', credentials.username]
        cmd.append('--password-stdin')

        logger.debug(f"Running exporter for {entity_type.value} (since={since})")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise ExportFailure(f"Export command could not be run: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(credentials.password.encode('utf-8')),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise ExportFailure(
                f"Export command timed out after {self.timeout}s"
            )

        output = stdout.decode('utf-8', errors='replace').strip() if stdout else ''
        errors = stderr.decode('utf-8', errors='replace').strip() if stderr else ''

        if process.returncode != 0:
            raise ExportFailure(
                f"Export command exited with code {process.returncode}: {errors[:500]}"
            )

        if output == NO_ACTION_NEEDED.value:
            logger.debug(f"Exporter reported no {entity_type.value} changes")
            return NO_ACTION_NEEDED

        if not output_path.is_file():
            raise ExportFailure(
                f"Export command succeeded but produced no file at {output_path}"
            )

        logger.debug(f"Exporter wrote {output_path}")
        return file_name


class UnconfiguredExporter(Exporter):
    """Placeholder used when no export command is configured."""

    async def export(
        self,
        entity_type: EntityType,
        since: Optional[str],
        credentials: LdapCredentials
    ) -> ExportOutcome:
        raise ExportFailure("No export command is configured (set EXPORT_COMMAND)")
