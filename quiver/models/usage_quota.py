"""
quiver/models/usage_quota.py

Quota decisions for metered features.
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict

UNLIMITED = -1

LIMIT_REACHED = "limit_reached"


class QuotaDecision(BaseModel):
    """
    Advisory result of a quota check.

    limit / remaining use UNLIMITED (-1) for paid tiers. The caller advances
    the counter separately, only after the metered work succeeds.
    """
    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: Optional[str] = None
    count: int
    limit: int
    remaining: int
