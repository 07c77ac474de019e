"""
quiver/features/entitlements/service.py

Entitlement store.

Handles:
- Reads that default to the free record when nothing is stored
- Merge writes (absent keys untouched, explicit None clears)
- The expiry invariants: grace follows expires_at, FREE carries neither
- Lazy grace-window downgrade for readers
- The field sets written by subscription and purchase events
"""

from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional
import logging
from sqlalchemy import select, insert

from quiver.core.database import get_db_session, upsert_row, entitlements, purchases
from quiver.core.errors import ValidationError
from quiver.features.billing.tiers import GRACE_PERIOD, is_course_product
from quiver.models.entitlement import EntitlementRecord, Tier


logger = logging.getLogger(__name__)

MERGEABLE_FIELDS = frozenset({
    "tier",
    "stripe_customer_id",
    "stripe_subscription_id",
    "expires_at",
    "is_legacy_entitled",
    "has_one_time_purchase",
    "legacy_email",
    "legacy_checked_at",
})


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything stored is UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    return _as_utc(now)


def grace_end_for(expires_at: Optional[datetime]) -> Optional[datetime]:
    """grace_ends_at is derived, never set independently."""
    if expires_at is None:
        return None
    return _as_utc(expires_at) + GRACE_PERIOD


def read_entitlement(user_id: str) -> EntitlementRecord:
    """Current record, or the default free record. Never writes."""
    with get_db_session() as session:
        row = session.execute(
            select(entitlements).where(entitlements.c.user_id == user_id)
        ).mappings().first()

    if row is None:
        return EntitlementRecord.default(user_id)

    return EntitlementRecord(
        user_id=user_id,
        tier=Tier.parse(row["tier"]),
        stripe_customer_id=row["stripe_customer_id"],
        stripe_subscription_id=row["stripe_subscription_id"],
        expires_at=_as_utc(row["expires_at"]),
        grace_ends_at=_as_utc(row["grace_ends_at"]),
        is_legacy_entitled=bool(row["is_legacy_entitled"]),
        has_one_time_purchase=bool(row["has_one_time_purchase"]),
        legacy_email=row["legacy_email"],
        legacy_checked_at=_as_utc(row["legacy_checked_at"]),
        updated_at=_as_utc(row["updated_at"]),
    )


def merge_entitlement(user_id: str, fields: Mapping[str, Any]) -> None:
    """
    Upsert with merge semantics.

    Keys absent from ``fields`` are left untouched; keys mapped to None are
    cleared; everything else is overwritten. There is no replace operation.

    grace_ends_at is not settable: it is recomputed whenever expires_at is
    written. A FREE tier clears both. An expiry for a record whose stored
    tier is FREE is rejected.
    """
    unknown = set(fields) - MERGEABLE_FIELDS
    if unknown:
        raise ValidationError(f"Unknown entitlement fields: {', '.join(sorted(unknown))}")

    values: Dict[str, Any] = {}
    for key, value in fields.items():
        if key == "tier":
            if value is None:
                raise ValidationError("tier cannot be cleared; downgrade to free instead")
            try:
                value = Tier(value).value
            except ValueError:
                raise ValidationError(f"Unknown tier: {value}")
        elif key in ("is_legacy_entitled", "has_one_time_purchase"):
            value = bool(value)
        elif isinstance(value, datetime):
            value = _as_utc(value)
        values[key] = value

    if values.get("tier") == Tier.FREE.value:
        values["expires_at"] = None
    elif values.get("expires_at") is not None and "tier" not in values:
        if not read_entitlement(user_id).tier.is_paid:
            raise ValidationError("expires_at requires a paid tier")
    if "expires_at" in values:
        values["grace_ends_at"] = grace_end_for(values["expires_at"])
    values["updated_at"] = datetime.now(timezone.utc)

    upsert_row(entitlements, "user_id", user_id, values)


def effective_tier(record: EntitlementRecord, now: Optional[datetime] = None) -> Tier:
    """
    Tier the reader should honour at ``now``.

    A paid tier whose grace window has closed reads as FREE. This is the only
    time-based downgrade; nothing sweeps stored records.
    """
    if not record.tier.is_paid:
        return Tier.FREE
    if record.grace_ends_at is None:
        return record.tier
    if _normalize_now(now) > record.grace_ends_at:
        return Tier.FREE
    return record.tier


def is_in_grace(record: EntitlementRecord, now: Optional[datetime] = None) -> bool:
    """Past expires_at but not yet past grace_ends_at."""
    if not record.tier.is_paid or record.expires_at is None or record.grace_ends_at is None:
        return False
    current = _normalize_now(now)
    return record.expires_at < current <= record.grace_ends_at


def activate_subscription(
    user_id: str,
    tier: Tier,
    stripe_customer_id: Optional[str],
    stripe_subscription_id: str,
    current_period_end: Optional[datetime],
) -> Dict[str, Any]:
    """
    Write the subscription-owned field set from the event's own data.

    State-setting: the same inputs always produce the same stored fields.
    A price that resolves to FREE carries no expiry.
    """
    expires_at = _as_utc(current_period_end) if tier.is_paid else None
    fields: Dict[str, Any] = {
        "tier": tier,
        "stripe_subscription_id": stripe_subscription_id,
        "expires_at": expires_at,
    }
    if stripe_customer_id:
        fields["stripe_customer_id"] = stripe_customer_id
    merge_entitlement(user_id, fields)
    return fields


def downgrade_to_free(user_id: str) -> Dict[str, Any]:
    """Clear the subscription-owned fields. The customer link is kept."""
    fields: Dict[str, Any] = {
        "tier": Tier.FREE,
        "stripe_subscription_id": None,
        "expires_at": None,
    }
    merge_entitlement(user_id, fields)
    return fields


def record_purchase(
    user_id: str,
    product_id: Optional[str],
    stripe_payment_id: Optional[str],
    amount: int,
) -> bool:
    """
    Append to the purchase ledger; flag the course purchase on the record.

    Returns True when the entitlement flag was set.
    """
    with get_db_session() as session:
        session.execute(
            insert(purchases).values(
                user_id=user_id,
                product_id=product_id,
                stripe_payment_id=stripe_payment_id,
                amount_paid=int(amount or 0),
                source="stripe",
            )
        )

    if not is_course_product(product_id):
        logger.info(
            "[entitlements] purchase recorded without entitlement change",
            extra={"user_id": user_id, "product_id": product_id},
        )
        return False

    merge_entitlement(user_id, {"has_one_time_purchase": True})
    return True


def serialize_entitlement(record: EntitlementRecord, now: Optional[datetime] = None) -> Dict[str, Any]:
    """API shape for the entitlement read interface."""
    return {
        "tier": record.tier.value,
        "effective_tier": effective_tier(record, now).value,
        "in_grace": is_in_grace(record, now),
        "stripe_customer_id": record.stripe_customer_id,
        "stripe_subscription_id": record.stripe_subscription_id,
        "expires_at": record.expires_at.isoformat() if record.expires_at else None,
        "grace_ends_at": record.grace_ends_at.isoformat() if record.grace_ends_at else None,
        "is_legacy_entitled": record.is_legacy_entitled,
        "has_one_time_purchase": record.has_one_time_purchase,
    }
