"""
Sync orchestration for directory groups and users.

Decides between partial and full exports, runs the exporter, hands the
result to the transport and records last-sync watermarks.

Watermark rules:
- A partial sync with no previous partial or full watermark runs as a
  full sync. The caller still sees the partial action it asked for.
- A watermark only moves forward after the backend confirmed the
  delivery, or after the exporter reported there was nothing to export.
- The recorded value is the time the attempt started, so changes made
  while the export was running are picked up by the next partial sync.
"""

import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Union

from .config import JsonConfigStore
from .credentials import CredentialProvider, LdapCredentials
from .errors import CredentialUnavailable
from .exporter import NO_ACTION_NEEDED, EntityType, Exporter
from .models import DeliveryResult
from .transport import SyncTransport

logger = logging.getLogger(__name__)


class Granularity(str, Enum):
    PARTIAL = "partial"
    FULL = "full"


class SyncAction(str, Enum):
    """Sync actions accepted by the orchestrator."""
    PARTIAL_GROUPS = "partialGroups"
    FULL_GROUPS = "fullGroups"
    PARTIAL_USERS = "partialUsers"
    FULL_USERS = "fullUsers"

    @property
    def entity(self) -> EntityType:
        return _ACTION_SHAPE[self][0]

    @property
    def granularity(self) -> Granularity:
        return _ACTION_SHAPE[self][1]


_ACTION_SHAPE = {
    SyncAction.PARTIAL_GROUPS: (EntityType.GROUPS, Granularity.PARTIAL),
    SyncAction.FULL_GROUPS: (EntityType.GROUPS, Granularity.FULL),
    SyncAction.PARTIAL_USERS: (EntityType.USERS, Granularity.PARTIAL),
    SyncAction.FULL_USERS: (EntityType.USERS, Granularity.FULL),
}

FULL_ACTION = {
    EntityType.GROUPS: SyncAction.FULL_GROUPS,
    EntityType.USERS: SyncAction.FULL_USERS,
}

# Persisted watermark keys per (entity, granularity)
WATERMARK_KEYS = {
    (EntityType.GROUPS, Granularity.PARTIAL): "lastGroupsPartialSync",
    (EntityType.GROUPS, Granularity.FULL): "lastGroupsFullSync",
    (EntityType.USERS, Granularity.PARTIAL): "lastUsersPartialSync",
    (EntityType.USERS, Granularity.FULL): "lastUsersFullSync",
}


def format_ad_timestamp(dt: datetime) -> str:
    """
    Render a datetime in AD generalized time: YYYYMMDDHHMMSS.0Z (UTC).

    Naive datetimes are taken to be UTC.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)

    return (
        f"{dt.year:04d}{dt.month:02d}{dt.day:02d}"
        f"{dt.hour:02d}{dt.minute:02d}{dt.second:02d}.0Z"
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SyncContext:
    """Collaborators shared by every sync action."""
    exporter: Exporter
    transport: SyncTransport
    config_store: JsonConfigStore
    credentials: CredentialProvider
    clock: Callable[[], datetime] = _utcnow


@dataclass
class SyncOutcome:
    """Result of a successful sync action."""
    action: SyncAction
    performed: SyncAction
    watermark: str
    delivered: bool
    delivery: Optional[DeliveryResult] = None


def resolve_credentials(provider: CredentialProvider) -> LdapCredentials:
    """
    Fetch decrypted LDAP credentials.

    Raises:
        CredentialUnavailable: If the provider errors or has no password
    """
    try:
        password = provider.get_decrypted_password()
        username = provider.get_username()
    except Exception as e:
        raise CredentialUnavailable(f"LDAP credentials could not be retrieved: {e}")

    if not password:
        raise CredentialUnavailable("LDAP credentials are not available")

    return LdapCredentials(username=username, password=password)


def last_watermark(store: JsonConfigStore, entity: EntityType) -> Optional[str]:
    """Most recent partial or full watermark for an entity type."""
    marks = [
        store.get(WATERMARK_KEYS[(entity, granularity)])
        for granularity in Granularity
    ]
    marks = [m for m in marks if m]
    return max(marks) if marks else None


async def execute_action(
    ctx: SyncContext,
    action: SyncAction,
    since: Optional[str]
) -> SyncOutcome:
    """
    Export, deliver and record the watermark for one action.

    Args:
        ctx: Sync collaborators
        action: Action actually performed (sent to the backend as type)
        since: Export lower bound, None for a full export

    Raises:
        ConnectorError: Any exporter, credential or transport failure
    """
    watermark = format_ad_timestamp(ctx.clock())
    key = WATERMARK_KEYS[(action.entity, action.granularity)]

    credentials = resolve_credentials(ctx.credentials)
    result = await ctx.exporter.export(action.entity, since, credentials)

    if result is NO_ACTION_NEEDED:
        ctx.config_store.set(key, watermark)
        logger.debug(
            f"No {action.entity.value} changes to sync, watermark advanced to {watermark}",
            extra={"context": {"action": action.value, key: watermark}}
        )
        return SyncOutcome(
            action=action,
            performed=action,
            watermark=watermark,
            delivered=False
        )

    delivery = await ctx.transport.deliver_export(action.value, result)

    ctx.config_store.set(key, watermark)
    logger.debug(
        f"{action.value} delivered {result}, watermark set to {watermark}",
        extra={"context": {"action": action.value, key: watermark}}
    )

    return SyncOutcome(
        action=action,
        performed=action,
        watermark=watermark,
        delivered=True,
        delivery=delivery
    )


async def _full_sync(ctx: SyncContext, action: SyncAction) -> SyncOutcome:
    return await execute_action(ctx, action, since=None)


async def _partial_sync(ctx: SyncContext, action: SyncAction) -> SyncOutcome:
    since = last_watermark(ctx.config_store, action.entity)

    if since is None:
        # No watermark to diff against
        full_action = FULL_ACTION[action.entity]
        logger.debug(
            f"No previous {action.entity.value} sync recorded, running {full_action.value} instead"
        )
        outcome = await _full_sync(ctx, full_action)
        return dataclasses.replace(outcome, action=action)

    return await execute_action(ctx, action, since=since)


async def partial_groups(ctx: SyncContext) -> SyncOutcome:
    return await _partial_sync(ctx, SyncAction.PARTIAL_GROUPS)


async def full_groups(ctx: SyncContext) -> SyncOutcome:
    return await _full_sync(ctx, SyncAction.FULL_GROUPS)


async def partial_users(ctx: SyncContext) -> SyncOutcome:
    return await _partial_sync(ctx, SyncAction.PARTIAL_USERS)


async def full_users(ctx: SyncContext) -> SyncOutcome:
    return await _full_sync(ctx, SyncAction.FULL_USERS)


SYNC_ACTIONS: Dict[SyncAction, Callable[[SyncContext], Awaitable[SyncOutcome]]] = {
    SyncAction.PARTIAL_GROUPS: partial_groups,
    SyncAction.FULL_GROUPS: full_groups,
    SyncAction.PARTIAL_USERS: partial_users,
    SyncAction.FULL_USERS: full_users,
}


class SyncOrchestrator:
    """
    Runs sync actions against a fixed set of collaborators.

    Performs no retries of its own; every failure propagates unchanged.

    Usage:
        orchestrator = SyncOrchestrator(SyncContext(...))
        outcome = await orchestrator.sync("partialGroups")
    """

    def __init__(self, context: SyncContext):
        self.context = context

    async def sync(self, action: Union[SyncAction, str]) -> SyncOutcome:
        """
        Run one sync action.

        Args:
            action: SyncAction or its string value

        Returns:
            SyncOutcome describing what was done

        Raises:
            ValueError: If the action is unknown
            ConnectorError: If any step fails
        """
        action = SyncAction(action)

        logger.debug(f"Starting {action.value} sync")
        outcome = await SYNC_ACTIONS[action](self.context)
        logger.debug(
            f"{action.value} sync completed (performed={outcome.performed.value}, "
            f"delivered={outcome.delivered})"
        )

        return outcome
