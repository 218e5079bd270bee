"""
Credential provider for the directory connector.

The core only ever asks for three things: the LDAP username, the
decrypted LDAP password and the connector's signing key PEM. How those
are stored is up to the provider.

LocalCredentialStore keeps them on disk under the state directory:
- signing.key: Ed25519 private key PEM, mode 0600
- credentials.enc: Fernet-encrypted JSON holding the LDAP password,
  keyed by HKDF over the machine identity
"""

import base64
import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LdapCredentials:
    """Decrypted LDAP bind credentials handed to the exporter."""
    username: Optional[str]
    password: str

    def __repr__(self) -> str:
        return f"LdapCredentials(username={self.username!r}, password='***')"


class CredentialProvider(ABC):
    """Source of LDAP credentials and the connector signing key."""

    @abstractmethod
    def get_username(self) -> Optional[str]:
        ...

    @abstractmethod
    def get_decrypted_password(self) -> Optional[str]:
        ...

    @abstractmethod
    def get_signing_key(self) -> Optional[str]:
        """Return the Ed25519 private key as PEM, or None if unavailable."""
        ...


def _get_machine_id() -> str:
    """Get a stable machine identifier for key derivation."""
    try:
        machine_id_path = Path("/etc/machine-id")
        if machine_id_path.exists():
            return machine_id_path.read_text().strip()
    except OSError:
        pass

    try:
        for iface in sorted(Path("/sys/class/net").iterdir()):
            if iface.name in ("lo", "docker0"):
                continue
            addr_file = iface / "address"
            if addr_file.exists():
                mac = addr_file.read_text().strip()
                if mac and mac != "00:00:00:00:00:00":
                    return mac
    except OSError:
        pass

    return "fallback-machine-id"


def _derive_key(key_material: str) -> bytes:
    """Derive a Fernet key from machine identity using HKDF-SHA256."""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"ldap-connector-credential-store-v1",
        info=b"ldap-credential-encryption",
    )
    return base64.urlsafe_b64encode(hkdf.derive(key_material.encode()))


class LocalCredentialStore(CredentialProvider):
    """
    Credentials stored locally under the state directory.

    Usage:
        store = LocalCredentialStore(Path("/var/lib/ldap-connector"))
        store.store_signing_key(private_pem)
        store.store_ldap_credentials("svc-sync", "secret")
        pem = store.get_signing_key()
    """

    def __init__(self, state_dir: Path, key_material: Optional[str] = None):
        self._state_dir = Path(state_dir)
        self._key_path = self._state_dir / "signing.key"
        self._store_path = self._state_dir / "credentials.enc"
        self._fernet = Fernet(_derive_key(key_material or _get_machine_id()))

    @property
    def signing_key_path(self) -> Path:
        return self._key_path

    def _write_private(self, path: Path, data: bytes) -> None:
        """Atomically write data readable by the owner only."""
        self._state_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix('.tmp')
        tmp_path.write_bytes(data)
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, path)

    def _load_store(self) -> Dict[str, Any]:
        if not self._store_path.exists():
            return {}
        try:
            decrypted = self._fernet.decrypt(self._store_path.read_bytes())
            return json.loads(decrypted.decode('utf-8'))
        except (OSError, InvalidToken, ValueError) as e:
            logger.error(f"Failed to load credential store: {e}")
            return {}

    def store_signing_key(self, private_key_pem: str) -> None:
        self._write_private(self._key_path, private_key_pem.encode('utf-8'))
        logger.info(f"Stored signing key at {self._key_path}")

    def store_ldap_credentials(self, username: str, password: str) -> None:
        store = self._load_store()
        store["username"] = username
        store["password"] = password
        encrypted = self._fernet.encrypt(json.dumps(store).encode('utf-8'))
        self._write_private(self._store_path, encrypted)
        logger.info("Stored LDAP credentials locally")

    def get_username(self) -> Optional[str]:
        return self._load_store().get("username")

    def get_decrypted_password(self) -> Optional[str]:
        return self._load_store().get("password")

    def get_signing_key(self) -> Optional[str]:
        try:
            return self._key_path.read_text()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.error(f"Failed to read signing key {self._key_path}: {e}")
            return None
