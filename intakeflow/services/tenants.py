"""
Tenant resolver - maps (platform, platform account id) to the owning business.
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from intakeflow.models.platform_account import PlatformAccount
from intakeflow.utils.encryption import decrypt_value, encrypt_value
from intakeflow.utils.errors import TenantNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenantContext:
    owner_id: uuid.UUID
    platform: str
    platform_account_id: str
    access_token: Optional[str]
    timezone: str = "UTC"
    display_name: Optional[str] = None
    notification_url: Optional[str] = None


async def resolve_tenant(db: AsyncSession, platform: str, platform_account_id: str) -> TenantContext:
    """
    Look up the active account linked to a platform account id.
    Raises TenantNotFoundError when there is none (the event is dropped, never retried).
    """
    result = await db.execute(
        select(PlatformAccount).where(
            PlatformAccount.platform == platform,
            PlatformAccount.platform_account_id == platform_account_id,
            PlatformAccount.is_active.is_(True),
        )
    )
    account = result.scalar_one_or_none()
    if account is None:
        logger.warning("No linked account for %s account %s", platform, platform_account_id)
        raise TenantNotFoundError(f"No active {platform} account linked for id {platform_account_id}")

    return TenantContext(
        owner_id=account.owner_id,
        platform=account.platform,
        platform_account_id=account.platform_account_id,
        access_token=decrypt_value(account.access_token_encrypted) if account.access_token_encrypted else None,
        timezone=account.timezone or "UTC",
        display_name=account.display_name,
        notification_url=account.notification_webhook_url,
    )


async def link_platform_account(
    db: AsyncSession,
    owner_id: uuid.UUID,
    platform: str,
    platform_account_id: str,
    access_token: Optional[str] = None,
    display_name: Optional[str] = None,
    timezone: str = "UTC",
    notification_url: Optional[str] = None,
) -> PlatformAccount:
    """Create or update the linkage for a platform account id."""
    result = await db.execute(
        select(PlatformAccount).where(
            PlatformAccount.platform == platform,
            PlatformAccount.platform_account_id == platform_account_id,
        )
    )
    account = result.scalar_one_or_none()
    if account is None:
        account = PlatformAccount(platform=platform, platform_account_id=platform_account_id, owner_id=owner_id)
        db.add(account)

    account.owner_id = owner_id
    account.display_name = display_name
    account.timezone = timezone
    account.is_active = True
    if access_token:
        account.access_token_encrypted = encrypt_value(access_token)
    if notification_url:
        account.notification_webhook_url = notification_url
    await db.flush()
    logger.info("Linked %s account %s to owner %s", platform, platform_account_id, str(owner_id)[:8])
    return account
