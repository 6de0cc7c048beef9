from __future__ import annotations

from datetime import datetime, timezone
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.core.config import get_settings
from helpdesk.domain.models import Organization
from helpdesk.persistence.repos.mailboxes import get_latest_subscription


logger = logging.getLogger(__name__)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; stored values are always UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _additional_paid_ids() -> set[str]:
    raw = get_settings().additional_paid_organization_ids
    return {item.strip() for item in raw.split(",") if item.strip()}


async def can_send_automated_replies(
    session: AsyncSession,
    organization: Organization,
    *,
    now: datetime | None = None,
) -> bool:
    """True while the organization is on an unexhausted free trial or an active paid plan."""
    if organization.id in _additional_paid_ids():
        return True

    subscription = await get_latest_subscription(session, organization.id)
    if subscription is None:
        logger.info("automated_replies_blocked organization_id=%s reason=no_subscription", organization.id)
        return False

    now = now or datetime.now(timezone.utc)
    trial_ends_at = _as_utc(organization.free_trial_ends_at)
    in_free_trial = (
        trial_ends_at is not None
        and trial_ends_at > now
        and organization.automated_replies_count < get_settings().free_trial_automated_replies_limit
    )
    period_end = _as_utc(subscription.current_period_end)
    is_billable = period_end is not None and period_end > now and subscription.status == "active"
    if not (in_free_trial or is_billable):
        logger.info(
            "automated_replies_blocked organization_id=%s reason=ineligible status=%s",
            organization.id,
            subscription.status,
        )
    return in_free_trial or is_billable


async def record_automated_reply(session: AsyncSession, organization: Organization) -> int:
    """Count one automated reply against the organization's free-trial allowance."""
    limit = get_settings().free_trial_automated_replies_limit
    count = min(limit, (organization.automated_replies_count or 0) + 1)
    organization.automated_replies_count = count
    await session.flush()
    if count >= limit:
        logger.info("automated_replies_limit_reached organization_id=%s count=%s", organization.id, count)
    return count
