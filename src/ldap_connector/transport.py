"""
Signed HTTP transport to the organization backend.

Provides:
- Signed webhook calls (heartbeat, update check, telemetry)
- Delivery of one exported file through the multi-phase handshake:
  checksum, signed submission, direct upload, confirmation, cleanup

Only transport-level failures (connection errors, timeouts) are retried,
and only at the single-call boundary. A handshake that fails part way is
never replayed automatically.
"""

import asyncio
import logging
import mimetypes
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import aiohttp
from pydantic import ValidationError

from .config import APP_ID, ConnectorSettings, JsonConfigStore
from .crypto import PayloadSigner, file_checksum
from .errors import (
    ArtifactNotFound,
    BackendRejected,
    ChecksumFailure,
    CleanupFailure,
    ConfirmationFailure,
    ConnectorError,
    TransportFailure,
    UploadFailure,
)
from .models import DeliveryPhase, DeliveryResult, ExportArtifact, WebhookResponse

logger = logging.getLogger(__name__)

TYPE_FILE_UPLOADED = "fileUploaded"

# Errors that indicate the request never completed
TRANSIENT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError)


class SyncTransport:
    """
    HTTP client for the backend webhook and upload targets.

    Features:
    - Single pooled aiohttp session with a hard per-request timeout
    - Ed25519 signed JSON bodies
    - Bounded retries with exponential backoff on transport failures
    - Export delivery state machine with per-phase logging
    """

    def __init__(
        self,
        settings: ConnectorSettings,
        signer: PayloadSigner,
        config_store: JsonConfigStore,
        pool_size: int = 10
    ):
        """
        Initialize transport.

        Args:
            settings: Connector settings (webhook URL, timeouts, retries)
            signer: Payload signer
            config_store: Persisted config (connector ID lookup)
            pool_size: Connection pool size (default: 10)
        """
        self.settings = settings
        self.signer = signer
        self.config_store = config_store
        self.timeout = aiohttp.ClientTimeout(total=settings.request_timeout)
        self.pool_size = pool_size

        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def connector_id(self) -> Optional[str]:
        return self.config_store.get(APP_ID)

    async def _get_session(self) -> aiohttp.ClientSession:
        """
        Get or create aiohttp session.

        Returns:
            Active client session
        """
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=self.pool_size,
                limit_per_host=self.pool_size
            )

            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=self.timeout,
                headers={
                    'User-Agent': f'ldap-connector/{self.settings.connector_version}',
                }
            )

            logger.debug("Created new aiohttp session")

        return self._session

    async def close(self):
        """Close the client session."""
        if self._session and not self._session.closed:
            await self._session.close()
            logger.debug("Closed aiohttp session")

    async def _post_json(
        self,
        body: Mapping[str, Any],
        retries: int
    ) -> Tuple[int, Any]:
        """
        POST a JSON body to the webhook URL with retry logic.

        Args:
            body: JSON body (already signed if required)
            retries: Extra attempts after a transport-level failure

        Returns:
            Tuple of (status_code, decoded JSON body)

        Raises:
            TransportFailure: If every attempt failed at transport level
        """
        url = self.settings.webhook_url
        session = await self._get_session()
        attempts = retries + 1

        last_error = None

        for attempt in range(attempts):
            try:
                logger.debug(f"Attempting POST {url} (attempt {attempt + 1}/{attempts})")

                async with session.post(url, json=body) as response:
                    try:
                        response_data = await response.json(content_type=None)
                    except ValueError:
                        response_data = {"message": await response.text()}

                    logger.debug(f"POST {url} returned {response.status}")

                    return response.status, response_data

            except TRANSIENT_ERRORS as e:
                last_error = e
                logger.warning(
                    f"Request failed (attempt {attempt + 1}/{attempts}): {e!r}"
                )

                # Exponential backoff
                if attempt < attempts - 1:
                    backoff = self.settings.retry_backoff * (2 ** attempt)
                    logger.debug(f"Backing off {backoff} seconds")
                    await asyncio.sleep(backoff)

        raise TransportFailure(
            f"Failed to reach backend after {attempts} attempt(s): {last_error!r}"
        )

    async def post_webhook(
        self,
        payload: Mapping[str, Any],
        sign: bool = True,
        retries: Optional[int] = None
    ) -> WebhookResponse:
        """
        Send a webhook and require a success response.

        Args:
            payload: Fields to send; must include type
            sign: Sign the payload before sending
            retries: Transport retries (default: settings.webhook_retries)

        Returns:
            Parsed successful response

        Raises:
            SigningFailure: If signing fails (no request is made)
            TransportFailure: If the backend could not be reached
            BackendRejected: On non-2xx status or non-success body
        """
        if retries is None:
            retries = self.settings.webhook_retries

        body = self.signer.sign(payload) if sign else dict(payload)

        status, data = await self._post_json(body, retries)
        data_dict = data if isinstance(data, dict) else {}

        if not 200 <= status < 300:
            message = data_dict.get('message') or 'Unknown error'
            raise BackendRejected(
                f"Backend returned HTTP {status}: {message}",
                status_code=status,
                response=data_dict
            )

        try:
            response = WebhookResponse.model_validate(data)
        except ValidationError:
            raise BackendRejected(
                f"Backend response has no success discriminator: {data!r}",
                status_code=status,
                response=data_dict
            )

        if not response.ok:
            raise BackendRejected(
                response.message or "Backend reported failure",
                status_code=status,
                response=data_dict
            )

        return response

    async def send_webhook(
        self,
        payload: Mapping[str, Any],
        sign: bool = True,
        retries: Optional[int] = None
    ) -> WebhookResponse:
        """
        Send a webhook, reporting failure in the response instead of raising.

        Returns:
            Backend response, or a failure response whose message is the
            signer, transport or backend error
        """
        try:
            return await self.post_webhook(payload, sign=sign, retries=retries)
        except ConnectorError as e:
            logger.error(
                f"Webhook {payload.get('type')} failed: {e.message}",
                extra={"context": {"type": payload.get('type'), "error": e.message}}
            )
            return WebhookResponse.failure(e.message)

    def _log_phase(self, phase: DeliveryPhase, message: str, context: Dict[str, Any]):
        logger.debug(message, extra={"context": {**context, "phase": phase.value}})

    def _phase_failed(
        self,
        phase: DeliveryPhase,
        error: ConnectorError,
        context: Dict[str, Any]
    ) -> ConnectorError:
        """Tag error with its phase and log it."""
        error.phase = phase.value
        logger.error(
            f"Export delivery failed in {phase.value}: {error.message}",
            extra={"context": {**context, "phase": phase.value, "error": error.message}}
        )
        return error

    async def _upload(self, artifact: ExportArtifact, upload_url: str):
        """
        Transfer the artifact bytes to the upload target.

        Not retried: raw uploads are not guaranteed idempotent.

        Raises:
            UploadFailure: On network error or non-2xx response
        """
        session = await self._get_session()
        headers = {'Content-Type': artifact.content_type}

        try:
            with open(artifact.path, 'rb') as f:
                async with session.request(
                    self.settings.upload_method,
                    upload_url,
                    data=f,
                    headers=headers
                ) as response:
                    if not 200 <= response.status < 300:
                        text = await response.text()
                        raise UploadFailure(
                            f"Upload target returned HTTP {response.status}: {text[:200]}"
                        )
        except TRANSIENT_ERRORS as e:
            raise UploadFailure(f"Upload failed: {e!r}")

    async def deliver_export(self, action_type: str, file_name: str) -> DeliveryResult:
        """
        Deliver one exported file to the backend.

        Phases:
        CHECK_EXISTS -> CHECKSUM -> SIGN_SUBMIT -> AWAIT_UPLOAD_TARGET ->
        UPLOAD -> CONFIRM -> CLEANUP -> DONE

        The local file is only deleted once CONFIRM succeeds; a failed
        deletion is logged and does not fail the delivery.

        Args:
            action_type: Sync action discriminator sent as type
            file_name: Artifact file name inside the export directory

        Returns:
            DeliveryResult for the confirmed delivery

        Raises:
            ArtifactNotFound, ChecksumFailure, SigningFailure,
            TransportFailure, BackendRejected, UploadFailure,
            ConfirmationFailure: tagged with the failing phase
        """
        path = Path(self.settings.export_dir) / file_name
        context = {"type": action_type, "fileName": file_name}

        phase = DeliveryPhase.CHECK_EXISTS
        if not path.is_file() or not os.access(path, os.R_OK):
            raise self._phase_failed(
                phase, ArtifactNotFound(f"Artifact not found: {path}"), context
            )
        self._log_phase(phase, f"Export artifact found: {path}", context)

        phase = DeliveryPhase.CHECKSUM
        try:
            checksum, size = file_checksum(path)
        except OSError as e:
            raise self._phase_failed(
                phase, ChecksumFailure(f"Checksum error for {path}: {e}"), context
            ) from e

        content_type = mimetypes.guess_type(file_name)[0] or 'application/octet-stream'
        artifact = ExportArtifact(
            file_name=file_name,
            path=path,
            checksum=checksum,
            size=size,
            content_type=content_type
        )
        self._log_phase(phase, f"Computed checksum for {file_name} ({size} bytes)", context)

        phase = DeliveryPhase.SIGN_SUBMIT
        try:
            response = await self.post_webhook({
                "id": self.connector_id,
                "type": action_type,
                "fileName": file_name,
                "checksum": checksum,
            })
        except ConnectorError as e:
            raise self._phase_failed(phase, e, context)
        self._log_phase(phase, f"Sync submission for {file_name} accepted", context)

        phase = DeliveryPhase.AWAIT_UPLOAD_TARGET
        upload_url = (response.payload or {}).get("uploadUrl")
        if not upload_url:
            raise self._phase_failed(
                phase,
                BackendRejected("Backend did not supply an upload target"),
                context
            )
        self._log_phase(phase, f"Received upload target for {file_name}", context)

        phase = DeliveryPhase.UPLOAD
        try:
            await self._upload(artifact, upload_url)
        except UploadFailure as e:
            raise self._phase_failed(phase, e, context)
        self._log_phase(phase, f"Uploaded {file_name}", context)

        phase = DeliveryPhase.CONFIRM
        try:
            await self.post_webhook({
                "id": self.connector_id,
                "type": TYPE_FILE_UPLOADED,
                "fileName": file_name,
            })
        except ConnectorError as e:
            raise self._phase_failed(
                phase,
                ConfirmationFailure(
                    f"Upload of {file_name} was not confirmed, manual reconciliation "
                    f"required: {e.message}"
                ),
                context
            ) from e
        self._log_phase(phase, f"Backend confirmed {file_name}", context)

        phase = DeliveryPhase.CLEANUP
        result = DeliveryResult(
            action_type=action_type,
            artifact=artifact,
            upload_url=upload_url
        )
        try:
            path.unlink()
            self._log_phase(phase, f"Deleted local artifact {path}", context)
        except OSError as e:
            failure = CleanupFailure(f"Could not delete {path}: {e}", phase=phase.value)
            result.cleaned_up = False
            result.cleanup_error = failure.message
            logger.error(
                f"Cleanup failure: {failure.message}",
                extra={"context": {**context, "phase": phase.value, "error": failure.message}}
            )

        self._log_phase(DeliveryPhase.DONE, f"Export delivery of {file_name} complete", context)
        return result

    async def __aenter__(self):
        """Async context manager entry."""
        await self._get_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
