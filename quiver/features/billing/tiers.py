"""
Price-to-tier resolution and billing constants.

The map is static: prices are created once in the Stripe dashboard and
referenced here by ID. Unknown prices fall back to FREE rather than erroring,
so a misconfigured price under-tiers a paying user instead of failing the
webhook delivery.
"""
from datetime import timedelta
from types import MappingProxyType
from typing import Any, Mapping

from quiver.models.entitlement import Tier


PRICE_TO_TIER: Mapping[str, Tier] = MappingProxyType({
    "price_1SqztNRpdm3uvDfu5wcHwFum": Tier.COMPETITOR,      # £2/mo
    "price_1SqzuiRpdm3uvDfuzehsoDZt": Tier.PROFESSIONAL,    # £7.20/mo
    "price_1Sr3ETRpdm3uvDfuEEfNt7P1": Tier.HUSTON_SCHOOL,   # £40/mo
})

# One-time purchase: 3D Aiming course (£12)
PRODUCT_3D_AIMING = "prod_SM4VhVapcll6nZ"
COURSE_PRODUCT_ALIAS = "3d_aiming_course"

# Access is kept this long past current_period_end
GRACE_PERIOD = timedelta(hours=72)


def resolve_tier(price_id: Any) -> Tier:
    """Map a Stripe price ID to a tier. Never raises; unmapped -> FREE."""
    if not isinstance(price_id, str) or not price_id:
        return Tier.FREE
    return PRICE_TO_TIER.get(price_id.strip(), Tier.FREE)


def is_course_product(product_id: Any) -> bool:
    return product_id in (PRODUCT_3D_AIMING, COURSE_PRODUCT_ALIAS)
