"""Connector update check against the backend."""

import logging
from dataclasses import dataclass
from typing import Optional

from .config import APP_ID
from .errors import ConnectorError
from .transport import SyncTransport

logger = logging.getLogger(__name__)

TYPE_CHECK_UPDATE = "checkUpdate"


@dataclass
class UpdateInfo:
    version: str
    update_url: str


async def check_for_update(
    transport: SyncTransport,
    current_version: str
) -> Optional[UpdateInfo]:
    """
    Ask the backend whether a newer connector release exists.

    Args:
        transport: Signed webhook transport
        current_version: Installed connector version

    Returns:
        UpdateInfo if an update is available, None otherwise

    Raises:
        ConnectorError: If the check could not be completed
    """
    logger.debug("Attempting to check if there are any updates available.")

    try:
        response = await transport.post_webhook({
            "id": transport.config_store.get(APP_ID),
            "type": TYPE_CHECK_UPDATE,
            "version": current_version,
        })
    except ConnectorError as e:
        logger.error(
            f"Attempt to check for updates failed: {e.message}",
            extra={"context": {"error": e.message}}
        )
        raise

    payload = response.payload or {}
    update_url = payload.get("updateUrl")

    if update_url:
        version = payload.get("version") or current_version
        logger.info(f"Connector update available: {version}")
        return UpdateInfo(version=version, update_url=update_url)

    return None
