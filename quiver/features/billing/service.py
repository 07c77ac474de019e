"""
Billing service orchestrator.

Coordinates:
- Customer management (via the identity linker)
- Checkout and portal sessions
- Webhook verification and the entitlement state machine

All Stripe-specific code is in stripe_provider.py. Provider errors are
converted here into the application error taxonomy.
"""
import os
import logging
from typing import Optional, Dict

from quiver.core.auth import AuthContext
from quiver.core.errors import (
    AuthenticationRequiredError,
    BillingDisabledError,
    ConfigurationError,
    NotFoundError,
    SignatureVerificationError,
    UpstreamError,
    ValidationError,
    WebhookProcessingError,
)
from quiver.core.logging import log_event
from quiver.features.billing.events import BillingEvent
from quiver.features.billing.processor import apply_event
from quiver.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    BillingWebhookError,
)
from quiver.features.billing.stripe_provider import StripeProvider
from quiver.features.identity.service import get_billing_customer, get_or_create_billing_customer


logger = logging.getLogger(__name__)

CHECKOUT_MODES = ("subscription", "payment")


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(os.getenv("STRIPE_SECRET_KEY"))


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError:
        return None


def _require_provider() -> BillingProvider:
    provider = get_provider()
    if provider is None:
        raise BillingDisabledError("Billing is not configured")
    return provider


def _require_auth(auth: Optional[AuthContext]) -> AuthContext:
    if auth is None or not auth.user_id:
        raise AuthenticationRequiredError("Authentication required")
    return auth


def start_checkout(
    auth: Optional[AuthContext],
    price_id: Optional[str],
    mode: Optional[str],
    success_url: Optional[str],
    cancel_url: Optional[str],
) -> str:
    """
    Start a hosted checkout for a subscription or one-time payment.

    Returns:
        Checkout URL

    Raises:
        AuthenticationRequiredError: No verified caller
        ValidationError: Missing fields or unknown mode
        BillingDisabledError: Stripe not configured
        UpstreamError: Stripe call failed
    """
    auth = _require_auth(auth)

    if not price_id or not mode or not success_url or not cancel_url:
        raise ValidationError("Missing required fields")
    if mode not in CHECKOUT_MODES:
        raise ValidationError(f"Unsupported checkout mode: {mode}")

    provider = _require_provider()

    try:
        customer_id = get_or_create_billing_customer(provider, auth.user_id, auth.email)
        url = provider.create_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            mode=mode,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={"user_id": auth.user_id},
        )
    except BillingProviderError as e:
        logger.error(
            "[billing] checkout session error",
            extra={"user_id": auth.user_id, "error_message": str(e)},
        )
        raise UpstreamError(str(e))

    return url


def start_portal(auth: Optional[AuthContext], return_url: Optional[str]) -> str:
    """
    Start billing portal session for customer self-service.

    Raises:
        AuthenticationRequiredError: No verified caller
        ValidationError: Missing return URL
        NotFoundError: User never checked out
        UpstreamError: Stripe call failed
    """
    auth = _require_auth(auth)

    if not return_url:
        raise ValidationError("Return URL required")

    provider = _require_provider()

    customer_id = get_billing_customer(auth.user_id)
    if not customer_id:
        raise NotFoundError("No subscription found")

    try:
        return provider.create_portal_session(customer_id=customer_id, return_url=return_url)
    except BillingProviderError as e:
        logger.error(
            "[billing] portal session error",
            extra={"user_id": auth.user_id, "error_message": str(e)},
        )
        raise UpstreamError(str(e))


def verify_webhook(
    headers: Dict[str, str],
    body: bytes,
    provider: Optional[BillingProvider] = None,
) -> BillingEvent:
    """
    Verify the delivery signature. Runs before any storage access.

    Raises:
        ConfigurationError: Stripe or the webhook secret is not configured
        SignatureVerificationError: Missing or invalid signature, malformed body
    """
    if not os.getenv("STRIPE_WEBHOOK_SECRET"):
        logger.error("[billing] STRIPE_WEBHOOK_SECRET not configured")
        raise ConfigurationError("Webhook secret not configured")

    provider = provider or get_provider()
    if provider is None:
        logger.error("[billing] STRIPE_SECRET_KEY not configured")
        raise ConfigurationError("Billing is not configured")

    try:
        return provider.verify_webhook(headers, body)
    except BillingWebhookError as e:
        logger.warning("[billing] webhook signature verification failed", extra={"error_message": str(e)})
        raise SignatureVerificationError(f"Webhook Error: {e}")


def process_webhook(
    headers: Dict[str, str],
    body: bytes,
    provider: Optional[BillingProvider] = None,
) -> BillingEvent:
    """
    Verify, parse and apply one webhook delivery.

    Writes completed before a failure stay applied; the failure is surfaced
    as WebhookProcessingError so the provider redelivers. No internal retry.
    """
    provider = provider or get_provider()
    event = verify_webhook(headers, body, provider)

    log_event(
        "info",
        f"[billing] processing Stripe event: {event.event_type}",
        event_id=event.event_id,
        event_type=event.event_type,
    )

    try:
        apply_event(event, provider)
    except Exception as e:
        logger.error(
            "[billing] webhook processing error",
            exc_info=True,
            extra={"event_id": event.event_id, "event_type": event.event_type},
        )
        raise WebhookProcessingError("Webhook processing failed") from e

    return event
