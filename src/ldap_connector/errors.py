"""
Error taxonomy for the directory connector.

Every failure that crosses a component seam is a ConnectorError subclass.
Errors raised from inside the file-delivery handshake carry the phase
they were raised in so the caller can tell how far the attempt got.
"""

from typing import Any, Dict, Optional


class ConnectorError(Exception):
    """Base exception for connector errors."""

    def __init__(self, message: str, phase: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.phase = phase


class CredentialUnavailable(ConnectorError):
    """LDAP credentials could not be retrieved from the credential provider."""
    pass


class SigningFailure(ConnectorError):
    """Payload could not be signed."""
    pass


class KeyUnavailable(SigningFailure):
    """Signing key missing, unreadable or not an Ed25519 key."""
    pass


class ArtifactNotFound(ConnectorError):
    """Exported file is missing or unreadable (an exporter bug, never retried)."""
    pass


class ChecksumFailure(ConnectorError):
    """Exported file could not be hashed."""
    pass


class TransportFailure(ConnectorError):
    """Network-level failure talking to the backend."""
    pass


class BackendRejected(ConnectorError):
    """Backend answered but did not report success."""

    def __init__(
        self,
        message: str,
        phase: Optional[str] = None,
        status_code: Optional[int] = None,
        response: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, phase)
        self.status_code = status_code
        self.response = response


class UploadFailure(ConnectorError):
    """Direct upload of the artifact to the upload target failed."""
    pass


class ConfirmationFailure(ConnectorError):
    """
    Artifact was uploaded but the backend did not acknowledge it.

    The local artifact is kept so the confirmation can be replayed
    without uploading again.
    """
    pass


class CleanupFailure(ConnectorError):
    """Local artifact could not be deleted after a confirmed sync."""
    pass


class ExportFailure(ConnectorError):
    """External exporter failed to produce a file."""
    pass


class ConfigurationError(ConnectorError):
    """Connector is not in the state required for the requested operation."""
    pass
