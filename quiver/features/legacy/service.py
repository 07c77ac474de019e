"""
quiver/features/legacy/service.py

Legacy access grants.

Users who bought the 3D Aiming course before Stripe checkout existed (or got
promotional access) are listed by email. Anyone may look an email up; only a
signed-in caller whose verified email is that address gets is_legacy_entitled
flagged on their entitlement record.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Sequence
import logging
from sqlalchemy import select, delete

from quiver.core.database import get_db_session, upsert_row, legacy_users
from quiver.core.errors import ValidationError
from quiver.features.billing.tiers import COURSE_PRODUCT_ALIAS
from quiver.features.entitlements.service import merge_entitlement


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LegacyAccess:
    has_legacy_access: bool
    granted_products: List[str] = field(default_factory=list)


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def check_legacy_access(
    email: Optional[str],
    user_id: Optional[str] = None,
    verified_email: Optional[str] = None,
) -> LegacyAccess:
    """
    Look up a legacy grant by email.

    The caller's entitlement record is updated only when ``user_id`` is given,
    the grant lists products and ``verified_email`` (from the caller's
    credentials, never the request body) is the looked-up address.

    Raises:
        ValidationError: Email missing
    """
    normalized = normalize_email(email)
    if not normalized:
        raise ValidationError("Email required")

    with get_db_session() as session:
        row = session.execute(
            select(legacy_users.c.products).where(legacy_users.c.email == normalized)
        ).fetchone()

    if row is None:
        return LegacyAccess(has_legacy_access=False)

    products = [str(p) for p in (row[0] or [])]

    if user_id and products and normalize_email(verified_email) != normalized:
        logger.info(
            "[legacy] grant found but caller email does not match; entitlement unchanged",
            extra={"user_id": user_id},
        )
    elif user_id and products:
        merge_entitlement(
            user_id,
            {
                "is_legacy_entitled": COURSE_PRODUCT_ALIAS in products,
                "legacy_email": normalized,
                "legacy_checked_at": datetime.now(timezone.utc),
            },
        )
        logger.info(
            f"[legacy] legacy access granted to user {user_id}: {', '.join(products)}",
            extra={"user_id": user_id},
        )

    return LegacyAccess(has_legacy_access=True, granted_products=products)


def add_legacy_user(
    email: Optional[str],
    products: Sequence[str],
    notes: Optional[str] = None,
    added_by: Optional[str] = None,
) -> None:
    """Create or replace a legacy grant."""
    normalized = normalize_email(email)
    if not normalized or not products:
        raise ValidationError("Email and products required")

    upsert_row(
        legacy_users,
        "email",
        normalized,
        {
            "products": [str(p) for p in products],
            "notes": notes or None,
            "added_by": added_by,
            "granted_at": datetime.now(timezone.utc),
        },
    )
    logger.info(f"[legacy] legacy user added: {normalized} with products {', '.join(products)}")


def remove_legacy_user(email: Optional[str]) -> bool:
    """Delete a legacy grant. Returns False when none existed."""
    normalized = normalize_email(email)
    if not normalized:
        raise ValidationError("Email required")

    with get_db_session() as session:
        result = session.execute(delete(legacy_users).where(legacy_users.c.email == normalized))
        removed = bool(result.rowcount)

    logger.info(f"[legacy] legacy user removed: {normalized}", extra={"removed": removed})
    return removed
