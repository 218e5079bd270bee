"""LDAP Directory Connector - signed directory sync agent"""

__version__ = "0.1.0"

from .errors import (
    ConnectorError,
    CredentialUnavailable,
    SigningFailure,
    KeyUnavailable,
    ArtifactNotFound,
    ChecksumFailure,
    TransportFailure,
    BackendRejected,
    UploadFailure,
    ConfirmationFailure,
    CleanupFailure,
    ExportFailure,
    ConfigurationError,
)
from .config import ConnectorSettings, JsonConfigStore, load_settings
from .credentials import CredentialProvider, LdapCredentials, LocalCredentialStore
from .crypto import PayloadSigner, Ed25519Verifier, generate_keypair, file_checksum
from .models import DeliveryPhase, DeliveryResult, ExportArtifact, LogEvent, WebhookResponse
from .exporter import EntityType, Exporter, CommandExporter, NO_ACTION_NEEDED
from .transport import SyncTransport
from .sync import SyncAction, SyncContext, SyncOrchestrator, SyncOutcome, format_ad_timestamp
from .telemetry import LogPipeline, TelemetryHandler
from .scheduler import IntervalJob, JobScheduler, build_connector_jobs

__all__ = [
    # Version
    "__version__",

    # Errors
    "ConnectorError",
    "CredentialUnavailable",
    "SigningFailure",
    "KeyUnavailable",
    "ArtifactNotFound",
    "ChecksumFailure",
    "TransportFailure",
    "BackendRejected",
    "UploadFailure",
    "ConfirmationFailure",
    "CleanupFailure",
    "ExportFailure",
    "ConfigurationError",

    # Configuration
    "ConnectorSettings",
    "JsonConfigStore",
    "load_settings",

    # Credentials and signing
    "CredentialProvider",
    "LdapCredentials",
    "LocalCredentialStore",
    "PayloadSigner",
    "Ed25519Verifier",
    "generate_keypair",
    "file_checksum",

    # Models
    "DeliveryPhase",
    "DeliveryResult",
    "ExportArtifact",
    "LogEvent",
    "WebhookResponse",

    # Export and sync
    "EntityType",
    "Exporter",
    "CommandExporter",
    "NO_ACTION_NEEDED",
    "SyncTransport",
    "SyncAction",
    "SyncContext",
    "SyncOrchestrator",
    "SyncOutcome",
    "format_ad_timestamp",

    # Telemetry and scheduling
    "LogPipeline",
    "TelemetryHandler",
    "IntervalJob",
    "JobScheduler",
    "build_connector_jobs",
]
