"""
Tests for connector provisioning.
"""

import re

import pytest

from ldap_connector.config import (
    APP_ID,
    PUBLIC_KEY,
    STATE,
    STATE_PENDING_CREDENTIALS,
    STATE_READY,
    USERNAME,
    JsonConfigStore,
)
from ldap_connector.credentials import LocalCredentialStore
from ldap_connector.crypto import Ed25519Verifier, PayloadSigner
from ldap_connector.errors import ConfigurationError
from ldap_connector.provisioning import (
    configure_connector,
    generate_connector_id,
    save_ldap_credentials,
)


@pytest.fixture
def store(tmp_path):
    return JsonConfigStore(tmp_path / "config.json")


@pytest.fixture
def local_credentials(tmp_path):
    return LocalCredentialStore(tmp_path, key_material="test-machine")


def test_generate_connector_id_format():
    for _ in range(50):
        connector_id = generate_connector_id()
        assert re.fullmatch(r"\d{5}-\d{5}-\d{5}", connector_id)
        assert all(10000 <= int(part) <= 99999 for part in connector_id.split("-"))


def test_configure_connector(store, local_credentials, tmp_path):
    """Test configuration creates an identity and persists it."""
    result = configure_connector(store, local_credentials)

    assert result["state"] == STATE_PENDING_CREDENTIALS
    assert result["id"] == store.get(APP_ID)
    assert result["publicKey"] == store.get(PUBLIC_KEY)

    reloaded = JsonConfigStore(tmp_path / "config.json")
    assert reloaded.get(STATE) == STATE_PENDING_CREDENTIALS
    assert reloaded.get(APP_ID) == result["id"]


def test_configured_key_signs_verifiably(store, local_credentials):
    """Test payloads signed with the stored key verify with the published key."""
    result = configure_connector(store, local_credentials)

    signed = PayloadSigner(local_credentials).sign({"id": result["id"], "type": "heartbeat"})

    assert Ed25519Verifier(result["publicKey"]).verify_payload(signed) is True


def test_configure_twice_fails(store, local_credentials):
    configure_connector(store, local_credentials)

    with pytest.raises(ConfigurationError):
        configure_connector(store, local_credentials)


def test_save_credentials_before_configure_fails(store, local_credentials):
    with pytest.raises(ConfigurationError):
        save_ldap_credentials(store, local_credentials, "svc-sync", "s3cret")


def test_save_credentials_marks_ready(store, local_credentials):
    configure_connector(store, local_credentials)

    save_ldap_credentials(store, local_credentials, "svc-sync", "s3cret", org_id="org-1")

    assert store.get(STATE) == STATE_READY
    assert store.get(USERNAME) == "svc-sync"
    assert store.get("orgID") == "org-1"
    assert local_credentials.get_decrypted_password() == "s3cret"
