"""
quiver/features/autoplot/service.py

Auto-Plot metering.

The arrow detector itself (vision prompt, image encoding) is an injected
collaborator. This module gates it: check quota -> run -> count on success.

Appearance learning works the same way: an injected learner describes the
arrows the user picked out, and the result is kept on the users row so later
detections can mark which arrows are theirs. Learning is not metered.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol
import logging

from pydantic import BaseModel
from sqlalchemy import select

from quiver.core.database import get_db_session, upsert_row, users
from quiver.core.errors import QuotaExceededError, ValidationError
from quiver.features.entitlements.service import effective_tier, read_entitlement
from quiver.features.usage.service import (
    check_quota,
    current_period_key,
    increment_usage,
    limit_for_tier,
)
from quiver.models.usage_quota import UNLIMITED


logger = logging.getLogger(__name__)

LIMIT_REACHED_MESSAGE = "Monthly scan limit reached. Upgrade to Auto-Plot Pro for unlimited scans."


class ArrowAppearance(BaseModel):
    fletch_color: Optional[str] = None
    nock_color: Optional[str] = None
    wrap_color: Optional[str] = None
    shaft_color: Optional[str] = None


class DetectArrowsRequest(BaseModel):
    shot_image: str = ""  # base64
    reference_image: Optional[str] = None  # base64
    target_type: str = ""
    is_triple_spot: bool = False
    arrow_appearance: Optional[ArrowAppearance] = None


class DetectedArrow(BaseModel):
    x: float
    y: float
    face: Optional[int] = None
    confidence: float = 1.0
    is_line_cutter: bool = False
    is_my_arrow: bool = False


@dataclass
class DetectionResult:
    success: bool
    arrows: List[DetectedArrow] = field(default_factory=list)
    error: Optional[str] = None


class ArrowDetector(Protocol):
    """Vision collaborator. Failures are reported in the result, not raised."""

    def detect(self, request: DetectArrowsRequest) -> DetectionResult:
        ...


class ArrowPosition(BaseModel):
    # Normalized target coordinates, (0, 0) is the centre
    x: float
    y: float


class LearnAppearanceRequest(BaseModel):
    image: str = ""  # base64
    arrow_positions: List[ArrowPosition] = []


@dataclass
class LearnedAppearance:
    success: bool
    appearance: Optional[ArrowAppearance] = None
    description: Optional[str] = None
    error: Optional[str] = None


class AppearanceLearner(Protocol):
    """Vision collaborator for the user's own arrows. Failures are reported in the result."""

    def learn(self, request: LearnAppearanceRequest) -> LearnedAppearance:
        ...


@dataclass(frozen=True)
class StoredAppearance:
    appearance: ArrowAppearance
    description: Optional[str]
    updated_at: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "appearance": self.appearance.model_dump(),
            "description": self.description,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class AutoPlotStatus:
    scan_count: int
    is_pro: bool
    limit: int
    remaining: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scan_count": self.scan_count,
            "is_pro": self.is_pro,
            "limit": self.limit,
            "remaining": self.remaining,
        }


def get_autoplot_status(user_id: str, now: Optional[datetime] = None) -> AutoPlotStatus:
    tier = effective_tier(read_entitlement(user_id), now)
    decision = check_quota(user_id, current_period_key(now), limit_for_tier(tier))
    return AutoPlotStatus(
        scan_count=decision.count,
        is_pro=tier.is_paid,
        limit=decision.limit,
        remaining=decision.remaining if decision.limit != UNLIMITED else UNLIMITED,
    )


def run_detection(
    user_id: str,
    request: DetectArrowsRequest,
    detector: ArrowDetector,
    now: Optional[datetime] = None,
) -> DetectionResult:
    """
    Run one metered scan.

    Without an appearance in the request, the user's learned one (if any) is
    passed to the detector so it can flag their arrows.

    Raises:
        ValidationError: Missing image or target type
        QuotaExceededError: Free-tier limit reached for this period
    """
    if not request.shot_image or not request.target_type:
        raise ValidationError("Missing required fields")

    period_key = current_period_key(now)
    tier = effective_tier(read_entitlement(user_id), now)
    decision = check_quota(user_id, period_key, limit_for_tier(tier))
    if not decision.allowed:
        raise QuotaExceededError(LIMIT_REACHED_MESSAGE)

    if request.arrow_appearance is None:
        stored = get_arrow_appearance(user_id)
        if stored is not None:
            request = request.model_copy(update={"arrow_appearance": stored.appearance})

    result = detector.detect(request)

    if result.success:
        increment_usage(user_id, period_key)
    else:
        logger.info(
            "[autoplot] detection failed, scan not counted",
            extra={"user_id": user_id, "error_message": result.error},
        )
    return result


def get_arrow_appearance(user_id: str) -> Optional[StoredAppearance]:
    """The user's learned appearance, or None if they never taught one."""
    with get_db_session() as session:
        row = session.execute(
            select(
                users.c.arrow_appearance,
                users.c.arrow_appearance_description,
                users.c.arrow_appearance_updated_at,
            ).where(users.c.user_id == user_id)
        ).fetchone()

    if row is None or row[0] is None:
        return None

    updated_at = row[2]
    if updated_at is not None and updated_at.tzinfo is None:
        updated_at = updated_at.replace(tzinfo=timezone.utc)
    return StoredAppearance(
        appearance=ArrowAppearance.model_validate(row[0]),
        description=row[1],
        updated_at=updated_at,
    )


def _clean_appearance(appearance: ArrowAppearance) -> ArrowAppearance:
    # Vision output uses "" for "not visible"; store it as unknown
    values = {
        key: (value.strip() or None) if isinstance(value, str) else value
        for key, value in appearance.model_dump().items()
    }
    return ArrowAppearance(**values)


def learn_arrow_appearance(
    user_id: str,
    request: LearnAppearanceRequest,
    learner: AppearanceLearner,
) -> LearnedAppearance:
    """
    Learn what the user's arrows look like and keep it on their profile.

    Only a successful result is stored; it replaces any earlier appearance.

    Raises:
        ValidationError: Missing image or arrow positions, or a position off the target
    """
    if not request.image or not request.arrow_positions:
        raise ValidationError("Missing image or arrow positions")
    for position in request.arrow_positions:
        if not (-1.0 <= position.x <= 1.0 and -1.0 <= position.y <= 1.0):
            raise ValidationError("Arrow positions must be normalized to [-1, 1]")

    result = learner.learn(request)

    if not result.success or result.appearance is None:
        logger.info(
            "[autoplot] appearance learning failed, profile unchanged",
            extra={"user_id": user_id, "error_message": result.error},
        )
        return LearnedAppearance(success=False, error=result.error or "Failed to learn appearance")

    appearance = _clean_appearance(result.appearance)
    upsert_row(
        users,
        "user_id",
        user_id,
        {
            "arrow_appearance": appearance.model_dump(),
            "arrow_appearance_description": result.description or None,
            "arrow_appearance_updated_at": datetime.now(timezone.utc),
        },
    )
    logger.info(
        "[autoplot] arrow appearance learned",
        extra={"user_id": user_id, "arrow_count": len(request.arrow_positions)},
    )
    return LearnedAppearance(success=True, appearance=appearance, description=result.description)
