"""
Webhook event processor (entitlement state machine).

Events are applied directly with an in-memory provider; signature
verification is covered in test_stripe_provider.py.
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from quiver.core.database import entitlements, get_db_session, purchases, users
from quiver.features.billing.events import (
    CheckoutCompleted,
    InvoicePaymentFailed,
    SubscriptionDeleted,
    SubscriptionUpdated,
    UnhandledEvent,
)
from quiver.features.billing.processor import apply_event
from quiver.features.billing.provider import BillingProviderError
from quiver.features.billing.tiers import PRODUCT_3D_AIMING
from quiver.features.entitlements.service import read_entitlement
from quiver.features.identity.service import sync_user_billing
from quiver.models.entitlement import Tier
from quiver.tests.mocks import FakeBillingProvider, snapshot


PROFESSIONAL_PRICE = "price_1SqzuiRpdm3uvDfuzehsoDZt"
COMPETITOR_PRICE = "price_1SqztNRpdm3uvDfu5wcHwFum"
PERIOD_END = datetime(2026, 11, 1, tzinfo=timezone.utc)


def _checkout(user_id="user_alice", mode="subscription", **kwargs):
    fields = dict(
        event_id="evt_checkout",
        session_id="cs_1",
        mode=mode,
        user_id=user_id,
        customer_id="cus_1",
        subscription_id="sub_1" if mode == "subscription" else None,
        payment_intent_id="pi_1" if mode == "payment" else None,
        amount_total=1200,
    )
    fields.update(kwargs)
    return CheckoutCompleted(**fields)


def _state(user_id="user_alice"):
    return read_entitlement(user_id).model_dump(exclude={"updated_at"})


def _count(table):
    with get_db_session() as session:
        return session.execute(select(func.count()).select_from(table)).scalar()


@pytest.fixture
def provider():
    return FakeBillingProvider(
        subscriptions={"sub_1": snapshot("sub_1", "cus_1", PROFESSIONAL_PRICE, PERIOD_END)},
        products={"cs_1": PRODUCT_3D_AIMING, "cs_2": "prod_stickers"},
    )


@pytest.fixture
def linked_user():
    sync_user_billing("user_alice", {"stripe_customer_id": "cus_1"})
    return "user_alice"


def test_subscription_checkout_activates_tier(provider):
    assert apply_event(_checkout(), provider) == "user_alice"

    record = read_entitlement("user_alice")
    assert record.tier == Tier.PROFESSIONAL
    assert record.stripe_customer_id == "cus_1"
    assert record.stripe_subscription_id == "sub_1"
    assert record.expires_at == PERIOD_END
    assert record.grace_ends_at == PERIOD_END + timedelta(hours=72)

    with get_db_session() as session:
        row = session.execute(select(users).where(users.c.user_id == "user_alice")).mappings().one()
    assert row["subscription_tier"] == "professional"
    assert row["stripe_customer_id"] == "cus_1"


def test_redelivered_checkout_converges(provider):
    apply_event(_checkout(), provider)
    first = _state()

    apply_event(_checkout(), provider)

    assert _state() == first


def test_checkout_without_user_metadata_is_noop(provider):
    assert apply_event(_checkout(user_id=None), provider) is None
    assert _count(entitlements) == 0


def test_checkout_with_unmapped_price_resolves_free(provider):
    provider.subscriptions["sub_1"] = snapshot("sub_1", "cus_1", "price_unknown", PERIOD_END)

    apply_event(_checkout(), provider)

    record = read_entitlement("user_alice")
    assert record.tier == Tier.FREE
    assert record.expires_at is None
    assert record.grace_ends_at is None


def test_subscription_lookup_failure_propagates(provider):
    provider.subscriptions.clear()

    with pytest.raises(BillingProviderError):
        apply_event(_checkout(), provider)
    assert _count(entitlements) == 0


def test_course_payment_sets_one_time_purchase(provider):
    apply_event(_checkout(mode="payment"), provider)

    record = read_entitlement("user_alice")
    assert record.has_one_time_purchase is True
    assert record.tier == Tier.FREE
    assert _count(purchases) == 1


def test_other_payment_records_purchase_only(provider):
    apply_event(_checkout(mode="payment", session_id="cs_2"), provider)

    assert read_entitlement("user_alice").has_one_time_purchase is False
    assert _count(purchases) == 1


def test_active_update_refreshes_tier_and_expiry(provider, linked_user):
    apply_event(_checkout(), provider)
    new_end = PERIOD_END + timedelta(days=30)

    event = SubscriptionUpdated(
        event_id="evt_update",
        subscription_id="sub_1",
        customer_id="cus_1",
        status="active",
        price_id=COMPETITOR_PRICE,
        current_period_end=new_end,
    )
    assert apply_event(event, provider) == "user_alice"

    record = read_entitlement("user_alice")
    assert record.tier == Tier.COMPETITOR
    assert record.expires_at == new_end
    assert record.grace_ends_at == new_end + timedelta(hours=72)


def test_same_update_twice_equals_once(provider, linked_user):
    event = SubscriptionUpdated(
        event_id="evt_update",
        subscription_id="sub_1",
        customer_id="cus_1",
        status="active",
        price_id=PROFESSIONAL_PRICE,
        current_period_end=PERIOD_END,
    )
    apply_event(event, provider)
    once = _state()

    apply_event(event, provider)

    assert _state() == once


def test_trialing_counts_as_active(provider, linked_user):
    event = SubscriptionUpdated(
        event_id="evt_trial",
        subscription_id="sub_1",
        customer_id="cus_1",
        status="trialing",
        price_id=PROFESSIONAL_PRICE,
        current_period_end=PERIOD_END,
    )
    apply_event(event, provider)

    assert read_entitlement("user_alice").tier == Tier.PROFESSIONAL


@pytest.mark.parametrize("status", ["past_due", "unpaid", "incomplete", "canceled"])
def test_non_active_update_changes_nothing(provider, linked_user, status):
    apply_event(_checkout(), provider)
    before = _state()

    event = SubscriptionUpdated(
        event_id="evt_update",
        subscription_id="sub_1",
        customer_id="cus_1",
        status=status,
        price_id=COMPETITOR_PRICE,
        current_period_end=PERIOD_END + timedelta(days=30),
    )
    assert apply_event(event, provider) is None
    assert _state() == before


def test_update_for_unknown_customer_is_noop(provider):
    event = SubscriptionUpdated(
        event_id="evt_update",
        subscription_id="sub_9",
        customer_id="cus_unknown",
        status="active",
        price_id=PROFESSIONAL_PRICE,
        current_period_end=PERIOD_END,
    )
    assert apply_event(event, provider) is None
    assert _count(entitlements) == 0


def test_deleted_subscription_downgrades_to_free(provider, linked_user):
    apply_event(_checkout(), provider)

    event = SubscriptionDeleted(event_id="evt_deleted", subscription_id="sub_1", customer_id="cus_1")
    assert apply_event(event, provider) == "user_alice"

    record = read_entitlement("user_alice")
    assert record.tier == Tier.FREE
    assert record.stripe_subscription_id is None
    assert record.expires_at is None
    assert record.grace_ends_at is None
    assert record.stripe_customer_id == "cus_1"

    # Redelivery converges
    apply_event(event, provider)
    assert read_entitlement("user_alice").tier == Tier.FREE


def test_payment_failure_only_logs(provider, linked_user):
    apply_event(_checkout(), provider)
    before = _state()

    event = InvoicePaymentFailed(event_id="evt_failed", invoice_id="in_1", customer_id="cus_1")
    assert apply_event(event, provider) is None
    assert _state() == before


def test_unhandled_event_is_noop(provider):
    event = UnhandledEvent(event_id="evt_other", event_type="customer.created")

    assert apply_event(event, provider) is None
    assert _count(entitlements) == 0


def test_unknown_variant_is_rejected(provider):
    with pytest.raises(TypeError):
        apply_event(object(), provider)
