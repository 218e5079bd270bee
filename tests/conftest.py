"""
Shared fixtures for connector tests.

MockBackend stands in for the organization backend: a webhook endpoint
that records every body it receives, plus an upload target.
"""

import os
import sys
from typing import Optional

import pytest
from aiohttp import web
from aiohttp.test_utils import unused_port

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from ldap_connector.config import APP_ID, ConnectorSettings, JsonConfigStore
from ldap_connector.credentials import CredentialProvider
from ldap_connector.crypto import PayloadSigner, generate_keypair
from ldap_connector.transport import SyncTransport

CONNECTOR_ID = "12345-67890-13579"


class FakeCredentials(CredentialProvider):
    """In-memory credential provider."""

    def __init__(
        self,
        signing_key: Optional[str] = None,
        username: Optional[str] = "svc-sync",
        password: Optional[str] = "s3cret"
    ):
        self.signing_key = signing_key
        self.username = username
        self.password = password

    def get_username(self):
        return self.username

    def get_decrypted_password(self):
        return self.password

    def get_signing_key(self):
        return self.signing_key


class MockBackend:
    """Mock organization backend for testing."""

    def __init__(self):
        self.app = web.Application()
        self.runner = None
        self.site = None
        self.port = None

        # Test data
        self.webhooks = []
        self.uploads = {}
        self.upload_headers = {}
        self.upload_methods = []
        self.responses = {}
        self.upload_status = 200

        # Setup routes
        self.app.router.add_post('/webhook', self.webhook)
        self.app.router.add_route('*', '/upload/{name}', self.upload)

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    @property
    def upload_url(self) -> str:
        return f"{self.url}/upload/artifact"

    def respond(self, webhook_type: str, body, status: int = 200):
        """Set the response for a webhook type (body None sends plain text)."""
        self.responses[webhook_type] = (status, body)

    def accept_submission(self, webhook_type: str):
        """Answer a sync submission with an upload target."""
        self.respond(webhook_type, {
            'status': 'success',
            'payload': {'uploadUrl': self.upload_url},
        })

    def received(self, webhook_type: str):
        return [body for body in self.webhooks if body.get('type') == webhook_type]

    async def webhook(self, request):
        """Webhook endpoint."""
        body = await request.json()
        self.webhooks.append(body)

        status, data = self.responses.get(body.get('type'), (200, {'status': 'success'}))
        if data is None:
            return web.Response(status=status, text="upstream error")
        return web.json_response(data, status=status)

    async def upload(self, request):
        """Upload target endpoint."""
        name = request.match_info['name']
        self.uploads[name] = await request.read()
        self.upload_headers[name] = dict(request.headers)
        self.upload_methods.append(request.method)

        if self.upload_status >= 300:
            return web.Response(status=self.upload_status, text="denied")
        return web.Response(status=200)

    async def start(self):
        """Start mock server."""
        self.port = unused_port()
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, '127.0.0.1', self.port)
        await self.site.start()

    async def stop(self):
        """Stop mock server."""
        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()


@pytest.fixture
async def backend():
    """Running mock backend."""
    server = MockBackend()
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
def keypair():
    """Fresh Ed25519 keypair as (private_pem, public_pem)."""
    return generate_keypair()


@pytest.fixture
def credentials(keypair):
    return FakeCredentials(signing_key=keypair[0])


@pytest.fixture
def settings(tmp_path):
    """Development settings pointing at an unreachable webhook."""
    return ConnectorSettings(
        webhook_url=f"http://127.0.0.1:{unused_port()}/webhook",
        state_dir=tmp_path / "state",
        runtime_mode="development",
        request_timeout=5.0,
        retry_backoff=0.0
    )


@pytest.fixture
def config_store(settings):
    store = JsonConfigStore(settings.config_path)
    store.set(APP_ID, CONNECTOR_ID)
    return store


@pytest.fixture
async def transport(settings, credentials, config_store, backend):
    """Transport wired to the mock backend."""
    settings.webhook_url = f"{backend.url}/webhook"
    client = SyncTransport(settings, PayloadSigner(credentials), config_store)
    yield client
    await client.close()


def write_export(settings, file_name: str, content: bytes = b"cn,member\nadmins,alice\n"):
    """Create an export artifact in the export directory."""
    settings.export_dir.mkdir(parents=True, exist_ok=True)
    path = settings.export_dir / file_name
    path.write_bytes(content)
    return path
