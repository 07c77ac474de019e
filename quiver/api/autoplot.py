"""
Auto-Plot API routes.

- GET  /api/autoplot/status: scans used this month, limit, remaining (-1 = unlimited)
- POST /api/autoplot/detect: quota-gated arrow detection
- GET  /api/autoplot/appearance: the caller's learned arrow appearance
- POST /api/autoplot/appearance: learn the caller's arrow appearance from selected arrows
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from quiver.core.auth import AuthContext, get_current_auth
from quiver.core.errors import ConfigurationError, NotFoundError
from quiver.features.autoplot.service import (
    AppearanceLearner,
    ArrowAppearance,
    ArrowDetector,
    DetectArrowsRequest,
    DetectedArrow,
    LearnAppearanceRequest,
    get_arrow_appearance,
    get_autoplot_status,
    learn_arrow_appearance,
    run_detection,
)


router = APIRouter(prefix="/api/autoplot", tags=["autoplot"])


class AutoPlotStatusResponse(BaseModel):
    scan_count: int
    is_pro: bool
    limit: int
    remaining: int


class DetectArrowsResponse(BaseModel):
    success: bool
    arrows: List[DetectedArrow] = []
    error: Optional[str] = None


class LearnAppearanceResponse(BaseModel):
    success: bool
    appearance: Optional[ArrowAppearance] = None
    description: Optional[str] = None
    error: Optional[str] = None


class StoredAppearanceResponse(BaseModel):
    appearance: ArrowAppearance
    description: Optional[str] = None
    updated_at: Optional[str] = None  # ISO8601


def get_arrow_detector(request: Request) -> ArrowDetector:
    detector = getattr(request.app.state, "arrow_detector", None)
    if detector is None:
        raise ConfigurationError("Arrow detection is not configured")
    return detector


def get_appearance_learner(request: Request) -> AppearanceLearner:
    learner = getattr(request.app.state, "appearance_learner", None)
    if learner is None:
        raise ConfigurationError("Appearance learning is not configured")
    return learner


@router.get("/status", response_model=AutoPlotStatusResponse)
def autoplot_status(auth: AuthContext = Depends(get_current_auth)):
    return get_autoplot_status(auth.user_id).to_dict()


@router.post("/detect", response_model=DetectArrowsResponse)
def detect_arrows(
    request: DetectArrowsRequest,
    auth: AuthContext = Depends(get_current_auth),
    detector: ArrowDetector = Depends(get_arrow_detector),
):
    """
    Errors:
        401: Not authenticated
        400: Missing image or target type
        403: Monthly scan limit reached (free tier)
        500: Detector not configured
    """
    result = run_detection(auth.user_id, request, detector)
    return {"success": result.success, "arrows": result.arrows, "error": result.error}


@router.get("/appearance", response_model=StoredAppearanceResponse)
def read_appearance(auth: AuthContext = Depends(get_current_auth)):
    stored = get_arrow_appearance(auth.user_id)
    if stored is None:
        raise NotFoundError("No arrow appearance learned yet")
    return stored.to_dict()


@router.post("/appearance", response_model=LearnAppearanceResponse)
def learn_appearance(
    request: LearnAppearanceRequest,
    auth: AuthContext = Depends(get_current_auth),
    learner: AppearanceLearner = Depends(get_appearance_learner),
):
    """
    Errors:
        401: Not authenticated
        400: Missing image or arrow positions
        500: Learner not configured
    """
    result = learn_arrow_appearance(auth.user_id, request, learner)
    return {
        "success": result.success,
        "appearance": result.appearance,
        "description": result.description,
        "error": result.error,
    }
