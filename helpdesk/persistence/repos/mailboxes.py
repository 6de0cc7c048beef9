from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.domain.models import (
    Mailbox,
    MetadataApi,
    Organization,
    PlatformCustomer,
    StyleLinter,
    Subscription,
    Tool,
)


async def get_mailbox(session: AsyncSession, mailbox_id: int) -> Mailbox | None:
    return await session.get(Mailbox, mailbox_id)


async def get_mailbox_by_slug(session: AsyncSession, slug: str) -> Mailbox | None:
    result = await session.execute(select(Mailbox).where(Mailbox.slug == slug))
    return result.scalar_one_or_none()


async def get_organization(session: AsyncSession, organization_id: str) -> Organization | None:
    return await session.get(Organization, organization_id)


async def get_latest_subscription(session: AsyncSession, organization_id: str) -> Subscription | None:
    result = await session.execute(
        select(Subscription)
        .where(Subscription.organization_id == organization_id)
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_metadata_api(session: AsyncSession, mailbox_id: int) -> MetadataApi | None:
    result = await session.execute(
        select(MetadataApi)
        .where(
            MetadataApi.mailbox_id == mailbox_id,
            MetadataApi.is_enabled.is_(True),
            MetadataApi.deleted_at.is_(None),
        )
        .order_by(MetadataApi.id.asc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_style_linters(session: AsyncSession, organization_id: str) -> list[StyleLinter]:
    result = await session.execute(
        select(StyleLinter).where(StyleLinter.organization_id == organization_id).order_by(StyleLinter.id.asc())
    )
    return list(result.scalars().all())


async def get_platform_customer(session: AsyncSession, mailbox_id: int, email: str) -> PlatformCustomer | None:
    result = await session.execute(
        select(PlatformCustomer).where(PlatformCustomer.mailbox_id == mailbox_id, PlatformCustomer.email == email)
    )
    return result.scalar_one_or_none()


async def upsert_platform_customer(
    session: AsyncSession,
    *,
    mailbox_id: int,
    email: str,
    metadata: dict[str, Any] | None,
) -> PlatformCustomer:
    # Name and VIP flag come from the tenant's metadata payload when present.
    customer = await get_platform_customer(session, mailbox_id, email)
    if customer is None:
        customer = PlatformCustomer(mailbox_id=mailbox_id, email=email)
        session.add(customer)
    if metadata:
        customer.metadata_json = metadata
        name = metadata.get("name")
        if isinstance(name, str) and name:
            customer.name = name
        if "isVip" in metadata:
            customer.is_vip = bool(metadata["isVip"])
    await session.flush()
    return customer


async def list_tools_for_chat(session: AsyncSession, mailbox_id: int) -> list[Tool]:
    result = await session.execute(
        select(Tool)
        .where(Tool.mailbox_id == mailbox_id, Tool.enabled.is_(True), Tool.available_in_chat.is_(True))
        .order_by(Tool.id.asc())
    )
    return list(result.scalars().all())
