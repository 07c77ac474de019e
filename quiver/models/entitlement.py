"""
quiver/models/entitlement.py

Entitlement record and subscription tiers.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class Tier(str, Enum):
    """Named access level. FREE is the least-privileged tier."""
    FREE = "free"
    COMPETITOR = "competitor"
    PROFESSIONAL = "professional"
    HUSTON_SCHOOL = "hustonSchool"

    @property
    def is_paid(self) -> bool:
        return self is not Tier.FREE

    @classmethod
    def parse(cls, value: Optional[str]) -> "Tier":
        """Stored strings that are unknown or empty read back as FREE."""
        try:
            return cls(value)
        except ValueError:
            return cls.FREE


class EntitlementRecord(BaseModel):
    """
    Authoritative per-user access record.

    Invariants:
    - grace_ends_at == expires_at + GRACE_PERIOD whenever expires_at is set
    - tier FREE carries no expires_at / grace_ends_at
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    tier: Tier = Tier.FREE
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    grace_ends_at: Optional[datetime] = None
    is_legacy_entitled: bool = False
    has_one_time_purchase: bool = False
    legacy_email: Optional[str] = None
    legacy_checked_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def default(cls, user_id: str) -> "EntitlementRecord":
        return cls(user_id=user_id)
