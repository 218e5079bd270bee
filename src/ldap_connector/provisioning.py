"""
Initial connector provisioning.

Connector state machine:
    pendingConfig -> pendingCredentials -> ready

configure_connector() creates the connector identity (ID plus Ed25519
keypair) once. save_ldap_credentials() stores the directory bind
credentials and marks the connector ready to sync.
"""

import logging
import secrets
from typing import Any, Dict, Optional

from .config import (
    APP_ID,
    ORG_ID,
    PUBLIC_KEY,
    STATE,
    STATE_PENDING_CONFIG,
    STATE_PENDING_CREDENTIALS,
    STATE_READY,
    JsonConfigStore,
    USERNAME,
)
from .credentials import LocalCredentialStore
from .crypto import generate_keypair
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


def generate_connector_id() -> str:
    """
    Generate a connector ID of the form 12345-12345-12345.

    Each group is a random number between 10000 and 99999.
    """
    return "-".join(str(10000 + secrets.randbelow(90000)) for _ in range(3))


def configure_connector(
    store: JsonConfigStore,
    credentials: LocalCredentialStore
) -> Dict[str, Any]:
    """
    Create the connector identity.

    Args:
        store: Persisted config store
        credentials: Store that receives the private key

    Returns:
        Dict with id, publicKey and state

    Raises:
        ConfigurationError: If the connector is already configured
        OSError: If the key or config cannot be written
    """
    if store.get(STATE) != STATE_PENDING_CONFIG:
        raise ConfigurationError(
            "The connector appears to be configured already."
        )

    connector_id = generate_connector_id()
    logger.debug("Generated a new ID for the connector.")

    private_pem, public_pem = generate_keypair()
    logger.debug("A new key pair has been generated.")

    credentials.store_signing_key(private_pem)

    store.set(APP_ID, connector_id)
    store.set(PUBLIC_KEY, public_pem)
    store.set(STATE, STATE_PENDING_CREDENTIALS)
    store.save()

    logger.info(f"Connector configured with ID {connector_id}")

    return {
        "id": connector_id,
        "publicKey": public_pem,
        "state": STATE_PENDING_CREDENTIALS,
    }


def save_ldap_credentials(
    store: JsonConfigStore,
    credentials: LocalCredentialStore,
    username: str,
    password: str,
    org_id: Optional[str] = None
) -> None:
    """
    Store LDAP credentials and mark the connector ready.

    Raises:
        ConfigurationError: If the connector identity has not been created
    """
    if store.get(STATE) == STATE_PENDING_CONFIG:
        raise ConfigurationError(
            "The connector must be configured before credentials can be saved."
        )

    credentials.store_ldap_credentials(username, password)

    store.set(USERNAME, username)
    if org_id:
        store.set(ORG_ID, org_id)
    store.set(STATE, STATE_READY)
    store.save()

    logger.info("LDAP credentials saved, connector is ready")
