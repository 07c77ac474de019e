"""
Entitlement store: default reads, merge writes, grace window.
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from quiver.core.database import entitlements, get_db_session, purchases
from quiver.core.errors import ValidationError
from quiver.features.billing.tiers import PRODUCT_3D_AIMING
from quiver.features.entitlements.service import (
    activate_subscription,
    downgrade_to_free,
    effective_tier,
    is_in_grace,
    merge_entitlement,
    read_entitlement,
    record_purchase,
    serialize_entitlement,
)
from quiver.models.entitlement import EntitlementRecord, Tier


PERIOD_END = datetime(2026, 11, 1, 12, 0, tzinfo=timezone.utc)


def _row_count(table):
    with get_db_session() as session:
        return session.execute(select(func.count()).select_from(table)).scalar()


def test_read_missing_record_returns_default_without_writing():
    record = read_entitlement("user_new")

    assert record.tier == Tier.FREE
    assert record.expires_at is None
    assert record.grace_ends_at is None
    assert record.is_legacy_entitled is False
    assert record.has_one_time_purchase is False
    assert _row_count(entitlements) == 0


def test_merge_leaves_absent_fields_untouched():
    merge_entitlement("user_alice", {"tier": Tier.PROFESSIONAL, "stripe_customer_id": "cus_1"})
    merge_entitlement("user_alice", {"is_legacy_entitled": True})

    record = read_entitlement("user_alice")
    assert record.tier == Tier.PROFESSIONAL
    assert record.stripe_customer_id == "cus_1"
    assert record.is_legacy_entitled is True


def test_merge_with_none_clears_field():
    merge_entitlement("user_alice", {"stripe_subscription_id": "sub_1"})
    merge_entitlement("user_alice", {"stripe_subscription_id": None})

    assert read_entitlement("user_alice").stripe_subscription_id is None


def test_merge_rejects_unknown_fields():
    with pytest.raises(ValidationError):
        merge_entitlement("user_alice", {"plan": "gold"})


def test_merge_rejects_clearing_or_unknown_tier():
    with pytest.raises(ValidationError):
        merge_entitlement("user_alice", {"tier": None})
    with pytest.raises(ValidationError):
        merge_entitlement("user_alice", {"tier": "platinum"})
    assert _row_count(entitlements) == 0


def test_merge_rejects_grace_end_as_input():
    with pytest.raises(ValidationError):
        merge_entitlement("user_alice", {"grace_ends_at": PERIOD_END})
    assert _row_count(entitlements) == 0


def test_merge_derives_grace_from_expiry():
    merge_entitlement("user_alice", {"tier": Tier.PROFESSIONAL, "expires_at": PERIOD_END})

    record = read_entitlement("user_alice")
    assert record.grace_ends_at == PERIOD_END + timedelta(hours=72)

    later = PERIOD_END + timedelta(days=30)
    merge_entitlement("user_alice", {"expires_at": later})
    assert read_entitlement("user_alice").grace_ends_at == later + timedelta(hours=72)

    merge_entitlement("user_alice", {"expires_at": None})
    record = read_entitlement("user_alice")
    assert record.expires_at is None
    assert record.grace_ends_at is None


def test_merge_free_tier_clears_expiry_and_grace():
    merge_entitlement("user_alice", {"tier": Tier.COMPETITOR, "expires_at": PERIOD_END})
    merge_entitlement("user_alice", {"tier": Tier.FREE, "expires_at": PERIOD_END})

    record = read_entitlement("user_alice")
    assert record.tier == Tier.FREE
    assert record.expires_at is None
    assert record.grace_ends_at is None


def test_merge_rejects_expiry_on_free_record():
    merge_entitlement("user_alice", {"is_legacy_entitled": True})

    with pytest.raises(ValidationError):
        merge_entitlement("user_alice", {"expires_at": PERIOD_END})
    assert read_entitlement("user_alice").expires_at is None


def test_activate_sets_grace_72_hours_after_period_end():
    activate_subscription("user_alice", Tier.COMPETITOR, "cus_1", "sub_1", PERIOD_END)

    record = read_entitlement("user_alice")
    assert record.tier == Tier.COMPETITOR
    assert record.expires_at == PERIOD_END
    assert record.grace_ends_at == PERIOD_END + timedelta(hours=72)
    assert record.stripe_subscription_id == "sub_1"
    assert record.stripe_customer_id == "cus_1"


def test_activate_with_free_tier_carries_no_expiry():
    activate_subscription("user_alice", Tier.FREE, "cus_1", "sub_1", PERIOD_END)

    record = read_entitlement("user_alice")
    assert record.tier == Tier.FREE
    assert record.expires_at is None
    assert record.grace_ends_at is None


def test_activate_without_customer_keeps_stored_customer():
    merge_entitlement("user_alice", {"stripe_customer_id": "cus_1"})
    activate_subscription("user_alice", Tier.PROFESSIONAL, None, "sub_1", PERIOD_END)

    assert read_entitlement("user_alice").stripe_customer_id == "cus_1"


def test_downgrade_clears_subscription_fields_but_keeps_customer():
    activate_subscription("user_alice", Tier.PROFESSIONAL, "cus_1", "sub_1", PERIOD_END)
    downgrade_to_free("user_alice")

    record = read_entitlement("user_alice")
    assert record.tier == Tier.FREE
    assert record.stripe_subscription_id is None
    assert record.expires_at is None
    assert record.grace_ends_at is None
    assert record.stripe_customer_id == "cus_1"


def test_effective_tier_honours_grace_window():
    record = EntitlementRecord(
        user_id="user_alice",
        tier=Tier.PROFESSIONAL,
        expires_at=PERIOD_END,
        grace_ends_at=PERIOD_END + timedelta(hours=72),
    )

    assert effective_tier(record, PERIOD_END - timedelta(days=1)) == Tier.PROFESSIONAL
    assert effective_tier(record, PERIOD_END + timedelta(hours=71)) == Tier.PROFESSIONAL
    assert effective_tier(record, PERIOD_END + timedelta(hours=73)) == Tier.FREE


def test_effective_tier_without_grace_keeps_stored_tier():
    record = EntitlementRecord(user_id="user_alice", tier=Tier.COMPETITOR)
    assert effective_tier(record, datetime(2030, 1, 1, tzinfo=timezone.utc)) == Tier.COMPETITOR


def test_is_in_grace_only_between_expiry_and_grace_end():
    record = EntitlementRecord(
        user_id="user_alice",
        tier=Tier.COMPETITOR,
        expires_at=PERIOD_END,
        grace_ends_at=PERIOD_END + timedelta(hours=72),
    )

    assert not is_in_grace(record, PERIOD_END - timedelta(minutes=1))
    assert is_in_grace(record, PERIOD_END + timedelta(hours=1))
    assert not is_in_grace(record, PERIOD_END + timedelta(hours=80))


def test_naive_now_is_treated_as_utc():
    record = EntitlementRecord(
        user_id="user_alice",
        tier=Tier.COMPETITOR,
        expires_at=PERIOD_END,
        grace_ends_at=PERIOD_END + timedelta(hours=72),
    )
    assert effective_tier(record, datetime(2026, 11, 10)) == Tier.FREE


def test_record_purchase_flags_course_product():
    assert record_purchase("user_alice", PRODUCT_3D_AIMING, "pi_1", 1200) is True

    record = read_entitlement("user_alice")
    assert record.has_one_time_purchase is True
    assert record.tier == Tier.FREE

    with get_db_session() as session:
        row = session.execute(select(purchases)).mappings().one()
    assert row["product_id"] == PRODUCT_3D_AIMING
    assert row["amount_paid"] == 1200
    assert row["stripe_payment_id"] == "pi_1"


def test_record_purchase_of_other_product_leaves_flag_unset():
    assert record_purchase("user_alice", "prod_stickers", "pi_2", 300) is False

    assert _row_count(purchases) == 1
    assert read_entitlement("user_alice").has_one_time_purchase is False


def test_serialize_reports_effective_tier_and_iso_dates():
    activate_subscription("user_alice", Tier.PROFESSIONAL, "cus_1", "sub_1", PERIOD_END)

    body = serialize_entitlement(read_entitlement("user_alice"), now=PERIOD_END + timedelta(hours=100))
    assert body["tier"] == "professional"
    assert body["effective_tier"] == "free"
    assert body["in_grace"] is False
    assert body["expires_at"] == PERIOD_END.isoformat()
    assert body["grace_ends_at"] == (PERIOD_END + timedelta(hours=72)).isoformat()
