"""
quiver/features/usage/service.py

Usage quota counter for metered features.

Handles:
- Calendar period keys (UTC year-month)
- Tier-based limits (-1 = unlimited)
- Advisory quota checks
- Atomic increments, applied only after the metered work succeeds
"""

from datetime import datetime, timezone
from typing import Optional
import logging
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from quiver.core.config import settings
from quiver.core.database import get_db_session, usage_quota
from quiver.models.entitlement import Tier
from quiver.models.usage_quota import QuotaDecision, UNLIMITED, LIMIT_REACHED


logger = logging.getLogger(__name__)


def current_period_key(now: Optional[datetime] = None) -> str:
    """Quota bucket for ``now``: YYYY-MM in UTC."""
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    else:
        now = now.astimezone(timezone.utc)
    return f"{now.year:04d}-{now.month:02d}"


def limit_for_tier(tier: Tier) -> int:
    """Free tier gets FREE_SCAN_LIMIT per period; paid tiers are unlimited."""
    if tier.is_paid:
        return UNLIMITED
    return settings.FREE_SCAN_LIMIT


def get_usage_count(user_id: str, period_key: str) -> int:
    with get_db_session() as session:
        row = session.execute(
            select(usage_quota.c.count)
            .where(usage_quota.c.user_id == user_id)
            .where(usage_quota.c.period_key == period_key)
        ).fetchone()
    return int(row[0]) if row else 0


def check_quota(user_id: str, period_key: str, limit: int) -> QuotaDecision:
    """
    Advisory check; does not consume.

    Concurrent callers near the boundary may all be allowed, so the count can
    overshoot ``limit`` by up to (in-flight requests - 1).
    """
    count = get_usage_count(user_id, period_key)

    if limit < 0:
        return QuotaDecision(allowed=True, count=count, limit=UNLIMITED, remaining=UNLIMITED)

    remaining = max(0, limit - count)
    if count < limit:
        return QuotaDecision(allowed=True, count=count, limit=limit, remaining=remaining)

    logger.warning(
        "[usage] quota limit reached",
        extra={"user_id": user_id, "period_key": period_key, "count": count, "limit": limit},
    )
    return QuotaDecision(
        allowed=False,
        reason=LIMIT_REACHED,
        count=count,
        limit=limit,
        remaining=remaining,
    )


def _increment_existing(user_id: str, period_key: str, now: datetime) -> bool:
    with get_db_session() as session:
        result = session.execute(
            update(usage_quota)
            .where(usage_quota.c.user_id == user_id)
            .where(usage_quota.c.period_key == period_key)
            .values(count=usage_quota.c.count + 1, last_used_at=now)
        )
        return bool(result.rowcount)


def increment_usage(user_id: str, period_key: str, now: Optional[datetime] = None) -> None:
    """
    Advance the counter by one with a server-side add.

    Not idempotent: call exactly once per successful metered operation.
    """
    if now is None:
        now = datetime.now(timezone.utc)

    if _increment_existing(user_id, period_key, now):
        return

    try:
        with get_db_session() as session:
            session.execute(
                insert(usage_quota).values(
                    user_id=user_id,
                    period_key=period_key,
                    count=1,
                    last_used_at=now,
                )
            )
    except IntegrityError:
        # Another request created the period row first
        _increment_existing(user_id, period_key, now)
