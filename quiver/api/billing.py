"""
Billing API routes.

Surface:
- POST /api/billing/checkout: Create checkout session
- POST /api/billing/portal: Create portal session
- POST /api/billing/webhook: Handle Stripe webhooks
- GET  /api/billing/entitlement: Caller's entitlement record
"""
from typing import Optional
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from quiver.core.auth import AuthContext, get_current_auth
from quiver.features.billing.service import (
    start_checkout,
    start_portal,
    process_webhook,
)
from quiver.features.entitlements.service import read_entitlement, serialize_entitlement


router = APIRouter(prefix="/api/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Request to create checkout session."""
    price_id: Optional[str] = None
    mode: Optional[str] = None  # subscription | payment
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class UrlResponse(BaseModel):
    """Response with a hosted session URL."""
    url: str


class PortalRequest(BaseModel):
    """Request to create portal session."""
    return_url: Optional[str] = None


class EntitlementResponse(BaseModel):
    tier: str
    effective_tier: str
    in_grace: bool
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    expires_at: Optional[str] = None  # ISO8601
    grace_ends_at: Optional[str] = None  # ISO8601
    is_legacy_entitled: bool
    has_one_time_purchase: bool


@router.post("/checkout", response_model=UrlResponse)
def create_checkout(request: CheckoutRequest, auth: AuthContext = Depends(get_current_auth)):
    """
    Create Stripe checkout session.

    Errors:
        401: Not authenticated
        400: Missing fields / unsupported mode
        503: Billing disabled
        502: Stripe API error
    """
    url = start_checkout(
        auth,
        price_id=request.price_id,
        mode=request.mode,
        success_url=request.success_url,
        cancel_url=request.cancel_url,
    )
    return {"url": url}


@router.post("/portal", response_model=UrlResponse)
def create_portal(request: PortalRequest, auth: AuthContext = Depends(get_current_auth)):
    """
    Create Stripe billing portal session.

    Errors:
        401: Not authenticated
        404: Customer not found (user never checked out)
        502: Stripe API error
    """
    url = start_portal(auth, return_url=request.return_url)
    return {"url": url}


@router.post("/webhook")
async def handle_webhook(request: Request):
    """
    Handle Stripe webhook events.

    Signature is verified against the raw body before anything is read or
    written.

    Returns:
        {"received": true}

    Errors:
        400: Missing/invalid signature or payload
        500: Webhook secret not configured, or processing failed (Stripe redelivers)
    """
    body = await request.body()
    headers = dict(request.headers)
    await run_in_threadpool(process_webhook, headers, body)
    return {"received": True}


@router.get("/entitlement", response_model=EntitlementResponse)
def get_entitlement(auth: AuthContext = Depends(get_current_auth)):
    """Caller's own record; the default free shape when nothing is stored."""
    return serialize_entitlement(read_entitlement(auth.user_id))
