"""
Configuration management for the directory connector.

Two layers:
- ConnectorSettings: process settings loaded from environment variables
  and validated by pydantic.
- JsonConfigStore: the persisted flat key-value store holding connector
  identity, state and last-sync watermarks.
"""

import json
import logging
import os
import shlex
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

logger = logging.getLogger(__name__)


# Persisted config keys
APP_ID = "appID"
PUBLIC_KEY = "publicKey"
STATE = "state"
USERNAME = "username"
ORG_ID = "orgID"

STATE_PENDING_CONFIG = "pendingConfig"
STATE_PENDING_CREDENTIALS = "pendingCredentials"
STATE_READY = "ready"

RUNTIME_PRODUCTION = "production"


class ConnectorSettings(BaseModel):
    """Connector process settings loaded from environment."""

    # ========================================================================
    # Backend
    # ========================================================================

    webhook_url: str = Field(
        ...,
        description="Backend webhook endpoint, used for every signed call"
    )

    # ========================================================================
    # Storage Paths
    # ========================================================================

    state_dir: Path = Field(
        default=Path("/var/lib/ldap-connector"),
        description="State directory for config store and keys"
    )
    export_dir: Optional[Path] = Field(
        default=None,
        description="Directory the exporter writes into (defaults to state_dir/exports)"
    )
    config_path: Optional[Path] = Field(
        default=None,
        description="Persisted config store (defaults to state_dir/config.json)"
    )

    @model_validator(mode='after')
    def set_derived_paths(self):
        """Derive export_dir and config_path from state_dir if not provided."""
        if self.export_dir is None:
            self.export_dir = self.state_dir / 'exports'
        if self.config_path is None:
            self.config_path = self.state_dir / 'config.json'
        return self

    # ========================================================================
    # Runtime
    # ========================================================================

    runtime_mode: str = Field(
        default=RUNTIME_PRODUCTION,
        description="production or development; heartbeat only runs in production"
    )

    connector_version: str = Field(
        default="0.1.0",
        description="Version reported by the update check"
    )

    # ========================================================================
    # Timing
    # ========================================================================

    heartbeat_interval: int = Field(
        default=300,
        ge=1,
        description="Send heartbeat every N seconds"
    )

    sync_interval: int = Field(
        default=900,
        ge=1,
        description="Run partial groups/users sync every N seconds"
    )

    request_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Hard per-request timeout in seconds"
    )

    webhook_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Extra attempts on transport-level failure"
    )

    retry_backoff: float = Field(
        default=1.0,
        ge=0,
        description="Base seconds for exponential retry backoff"
    )

    upload_method: str = Field(
        default="PUT",
        description="HTTP method used against the upload target"
    )

    # ========================================================================
    # Telemetry
    # ========================================================================

    log_flush_size: int = Field(
        default=20,
        ge=1,
        description="Flush telemetry once the queue holds N events"
    )

    log_flush_seconds: int = Field(
        default=20,
        ge=0,
        description="Flush telemetry when N seconds passed since the previous event"
    )

    telemetry_signed: bool = Field(
        default=False,
        description="Sign telemetry batches"
    )

    telemetry_retries: int = Field(
        default=3,
        ge=0,
        description="Extra attempts for telemetry flushes"
    )

    # ========================================================================
    # Exporter
    # ========================================================================

    export_command: Optional[List[str]] = Field(
        default=None,
        description="External export command (argv)"
    )

    export_timeout: float = Field(
        default=600.0,
        gt=0,
        description="Seconds before the export command is killed"
    )

    # ========================================================================
    # Logging
    # ========================================================================

    log_level: str = Field(
        default="INFO",
        description="Connector log level"
    )

    # ========================================================================
    # Validators
    # ========================================================================

    @field_validator('runtime_mode')
    @classmethod
    def validate_runtime_mode(cls, v):
        if v not in ['production', 'development']:
            raise ValueError('runtime_mode must be production or development')
        return v

    @field_validator('upload_method')
    @classmethod
    def validate_upload_method(cls, v):
        v = v.upper()
        if v not in ['PUT', 'POST']:
            raise ValueError('upload_method must be PUT or POST')
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        v = v.upper()
        if v not in ['DEBUG', 'INFO', 'WARNING', 'ERROR']:
            raise ValueError('log_level must be DEBUG, INFO, WARNING, or ERROR')
        return v

    @property
    def is_production(self) -> bool:
        return self.runtime_mode == RUNTIME_PRODUCTION

    @property
    def signing_key_path(self) -> Path:
        """Private key PEM location used by the local credential store."""
        return self.state_dir / 'signing.key'

    model_config = ConfigDict(
        validate_assignment=True,
        extra='forbid'
    )


def load_settings() -> ConnectorSettings:
    """
    Load settings from environment variables.

    Returns:
        ConnectorSettings: Validated settings

    Raises:
        KeyError: If WEBHOOK_URL is not set
        ValueError: If a setting is invalid
    """
    export_command = os.environ.get('EXPORT_COMMAND')

    settings_dict = {
        'webhook_url': os.environ['WEBHOOK_URL'],

        'state_dir': Path(os.environ.get('STATE_DIR', '/var/lib/ldap-connector')),
        'export_dir': os.environ.get('EXPORT_DIR') or None,
        'config_path': os.environ.get('CONFIG_PATH') or None,

        'runtime_mode': os.environ.get('RUNTIME_MODE', 'production'),

        'heartbeat_interval': int(os.environ.get('HEARTBEAT_INTERVAL', '300')),
        'sync_interval': int(os.environ.get('SYNC_INTERVAL', '900')),
        'request_timeout': float(os.environ.get('REQUEST_TIMEOUT', '30')),
        'webhook_retries': int(os.environ.get('WEBHOOK_RETRIES', '2')),
        'retry_backoff': float(os.environ.get('RETRY_BACKOFF', '1.0')),
        'upload_method': os.environ.get('UPLOAD_METHOD', 'PUT'),

        'log_flush_size': int(os.environ.get('LOG_FLUSH_SIZE', '20')),
        'log_flush_seconds': int(os.environ.get('LOG_FLUSH_SECONDS', '20')),
        'telemetry_signed': os.environ.get('TELEMETRY_SIGNED', 'false').lower() == 'true',
        'telemetry_retries': int(os.environ.get('TELEMETRY_RETRIES', '3')),

        'export_command': shlex.split(export_command) if export_command else None,
        'export_timeout': float(os.environ.get('EXPORT_TIMEOUT', '600')),

        'log_level': os.environ.get('LOG_LEVEL', 'INFO'),
    }

    return ConnectorSettings(**settings_dict)


class JsonConfigStore:
    """
    Persisted flat key-value store.

    Holds the connector ID, public key, state and the four last-sync
    watermarks. Mutations stay in memory until save() is called.

    Usage:
        store = JsonConfigStore(Path("/var/lib/ldap-connector/config.json"))
        store.set("lastGroupsFullSync", "20240101000000.0Z")
        store.save()
    """

    DEFAULTS: Dict[str, Any] = {
        STATE: STATE_PENDING_CONFIG,
        APP_ID: None,
        PUBLIC_KEY: None,
    }

    def __init__(self, path: Path):
        self.path = Path(path)
        self._data: Dict[str, Any] = dict(self.DEFAULTS)
        self._data.update(self._load())

    def _load(self) -> Dict[str, Any]:
        """Load store from disk, or start empty."""
        if not self.path.exists():
            return {}
        try:
            with open(self.path) as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("config root is not an object")
            return data
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load config store {self.path}: {e}")
            return {}

    def get(self, key: str, default: Any = None) -> Any:
        value = self._data.get(key)
        return default if value is None else value

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def as_dict(self) -> Dict[str, Any]:
        return dict(self._data)

    def save(self) -> None:
        """
        Write the store to disk atomically.

        Raises:
            OSError: If the file cannot be written
        """
        tmp_path = self.path.with_suffix(self.path.suffix + '.tmp')
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, 'w') as f:
                json.dump(self._data, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"Failed to save config store {self.path}: {e}")
            raise
        logger.debug(f"Saved config store {self.path}")
