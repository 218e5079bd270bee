"""
Cryptographic operations for the directory connector.

Handles Ed25519 signing and verification for:
- Webhook payloads (local signing, verified by the backend)
- Export artifact checksums (SHA-256, base64)

Canonical form of a payload is its JSON serialization with keys sorted
and compact separators. Any verifier using the same canonicalization
reproduces the signed bytes exactly.
"""

import base64
import hashlib
import json
import time
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Tuple, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey
)

from .credentials import CredentialProvider
from .errors import KeyUnavailable, SigningFailure

SIGNATURE_FIELD = "signature"
CHECKSUM_CHUNK_SIZE = 64 * 1024


def canonicalize(payload: Mapping[str, Any]) -> bytes:
    """
    Serialize payload deterministically for signing.

    Args:
        payload: Payload without the signature field

    Returns:
        UTF-8 JSON bytes with sorted keys and no insignificant whitespace
    """
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False
    ).encode('utf-8')


def load_private_key(pem: Union[str, bytes]) -> Ed25519PrivateKey:
    """
    Load an Ed25519 private key from PEM.

    Raises:
        KeyUnavailable: If the key cannot be parsed or is not Ed25519
    """
    if isinstance(pem, str):
        pem = pem.encode('utf-8')

    try:
        key = serialization.load_pem_private_key(pem, password=None)
    except (ValueError, TypeError) as e:
        raise KeyUnavailable(f"Failed to load signing key: {e}")

    if not isinstance(key, Ed25519PrivateKey):
        raise KeyUnavailable("Signing key is not an Ed25519 private key")

    return key


class PayloadSigner:
    """
    Signs webhook payloads with the connector's Ed25519 key.

    The key is fetched from the credential provider on every call so a
    key rotated by reconfiguration is picked up without a restart.
    """

    def __init__(
        self,
        credentials: CredentialProvider,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize signer.

        Args:
            credentials: Provider of the private key PEM
            clock: Returns current unix time (injectable for tests)
        """
        self.credentials = credentials
        self.clock = clock

    def _get_private_key(self) -> Ed25519PrivateKey:
        try:
            pem = self.credentials.get_signing_key()
        except Exception as e:
            raise KeyUnavailable(f"Signing key could not be retrieved: {e}")

        if not pem:
            raise KeyUnavailable("Signing key is not available")

        return load_private_key(pem)

    def sign(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Sign a payload.

        Injects the current unix timestamp, signs the canonical form of
        every field and appends the base64 signature.

        Args:
            payload: Mapping of field names to JSON values

        Returns:
            New dict with sorted keys, timestamp and signature

        Raises:
            KeyUnavailable: If no usable signing key exists
            SigningFailure: If the payload cannot be serialized or signed
        """
        unsigned = {k: v for k, v in payload.items() if k != SIGNATURE_FIELD}
        unsigned["timestamp"] = int(self.clock())

        private_key = self._get_private_key()

        try:
            data = canonicalize(unsigned)
        except (TypeError, ValueError) as e:
            raise SigningFailure(f"Payload could not be serialized for signing: {e}")

        signature = private_key.sign(data)

        signed = {key: unsigned[key] for key in sorted(unsigned)}
        signed[SIGNATURE_FIELD] = base64.b64encode(signature).decode('ascii')
        return signed


class Ed25519Verifier:
    """
    Ed25519 signature verification.

    Mirrors what the backend does with a signed payload.
    """

    def __init__(self, public_key: Union[bytes, str, Ed25519PublicKey]):
        """
        Initialize verifier with public key.

        Args:
            public_key: Ed25519 public key (32 bytes, PEM string, or key object)

        Raises:
            ValueError: If public key invalid
        """
        self._public_key = self._load_public_key(public_key)

    def _load_public_key(self, public_key: Union[bytes, str, Ed25519PublicKey]) -> Ed25519PublicKey:
        """Load Ed25519 public key from various formats."""
        if isinstance(public_key, Ed25519PublicKey):
            return public_key

        if isinstance(public_key, str):
            public_key = public_key.encode('utf-8')

        try:
            if b'-----BEGIN PUBLIC KEY-----' in public_key:
                key = serialization.load_pem_public_key(public_key)
            elif len(public_key) == 32:
                key = Ed25519PublicKey.from_public_bytes(public_key)
            else:
                raise ValueError("Invalid public key format")

            if not isinstance(key, Ed25519PublicKey):
                raise ValueError("Not an Ed25519 public key")

            return key

        except Exception as e:
            raise ValueError(f"Failed to load public key: {e}")

    def verify_payload(self, signed: Mapping[str, Any]) -> bool:
        """
        Verify a signed payload.

        Args:
            signed: Payload including the base64 signature field

        Returns:
            True if signature valid, False otherwise
        """
        encoded = signed.get(SIGNATURE_FIELD)
        if not encoded:
            return False

        try:
            signature = base64.b64decode(encoded, validate=True)
        except ValueError:
            return False

        unsigned = {k: v for k, v in signed.items() if k != SIGNATURE_FIELD}

        try:
            self._public_key.verify(signature, canonicalize(unsigned))
            return True
        except InvalidSignature:
            return False


def generate_keypair() -> Tuple[str, str]:
    """
    Generate a new Ed25519 keypair.

    Returns:
        Tuple of (private_key_pem, public_key_pem); private key is PKCS8,
        public key is SubjectPublicKeyInfo
    """
    private_key = Ed25519PrivateKey.generate()

    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )

    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    )

    return private_pem.decode('utf-8'), public_pem.decode('utf-8')


def file_checksum(path: Path, chunk_size: int = CHECKSUM_CHUNK_SIZE) -> Tuple[str, int]:
    """
    Stream a file through SHA-256.

    Args:
        path: File to hash
        chunk_size: Read size in bytes

    Returns:
        Tuple of (base64 digest, size in bytes)

    Raises:
        OSError: If the file cannot be read
    """
    digest = hashlib.sha256()
    size = 0

    with open(path, 'rb') as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            digest.update(chunk)
            size += len(chunk)

    return base64.b64encode(digest.digest()).decode('ascii'), size
