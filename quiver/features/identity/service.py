"""
quiver/features/identity/service.py

Links internal users to Stripe customers.

The users row holds the customer ID; the Stripe customer carries the user ID
in its metadata. Lookups in either direction never raise for "not linked".
"""

import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Optional
from sqlalchemy import select

from quiver.core.database import get_db_session, upsert_row, users
from quiver.core.errors import ValidationError
from quiver.features.billing.provider import BillingProvider


logger = logging.getLogger(__name__)

USER_BILLING_FIELDS = frozenset({"subscription_tier", "stripe_customer_id", "stripe_subscription_id", "email"})


def get_billing_customer(user_id: str) -> Optional[str]:
    """Stored Stripe customer for the user, without any upstream call."""
    with get_db_session() as session:
        row = session.execute(
            select(users.c.stripe_customer_id).where(users.c.user_id == user_id)
        ).fetchone()
    return row[0] if row and row[0] else None


def get_or_create_billing_customer(
    provider: BillingProvider,
    user_id: str,
    email: Optional[str] = None,
) -> str:
    """
    Return the user's Stripe customer, creating and storing one on first use.

    Two concurrent first calls for the same user can both miss the stored ID
    and create two upstream customers; the later write wins locally.

    Raises:
        BillingProviderError: If customer creation fails
    """
    existing = get_billing_customer(user_id)
    if existing:
        return existing

    customer_id = provider.create_customer(user_id, email)
    values = {"stripe_customer_id": customer_id, "updated_at": datetime.now(timezone.utc)}
    if email:
        values["email"] = email
    upsert_row(users, "user_id", user_id, values)

    logger.info(
        "[identity] billing customer created",
        extra={"user_id": user_id, "stripe_customer_id": customer_id},
    )
    return customer_id


def find_user_by_billing_customer(customer_id: Optional[str]) -> Optional[str]:
    """Reverse lookup. None means "ignore this event" to the caller."""
    if not customer_id:
        return None

    with get_db_session() as session:
        row = session.execute(
            select(users.c.user_id)
            .where(users.c.stripe_customer_id == customer_id)
            .limit(1)
        ).fetchone()

    if not row:
        logger.warning(
            "[identity] no user for billing customer",
            extra={"stripe_customer_id": customer_id},
        )
        return None
    return row[0]


def sync_user_billing(user_id: str, fields: Mapping[str, Any]) -> None:
    """Merge the quick-access billing mirror on the users row."""
    unknown = set(fields) - USER_BILLING_FIELDS
    if unknown:
        raise ValidationError(f"Unknown user billing fields: {', '.join(sorted(unknown))}")
    values = dict(fields)
    if "subscription_tier" in values and values["subscription_tier"] is not None:
        values["subscription_tier"] = getattr(values["subscription_tier"], "value", values["subscription_tier"])
    values["updated_at"] = datetime.now(timezone.utc)
    upsert_row(users, "user_id", user_id, values)
