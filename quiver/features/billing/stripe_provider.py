"""
Stripe billing provider implementation.

Implements BillingProvider protocol using Stripe API.
Handles webhook signature verification and event parsing.
"""
import os
import json
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import stripe

from quiver.features.billing.events import (
    CHECKOUT_COMPLETED,
    SUBSCRIPTION_UPDATED,
    SUBSCRIPTION_DELETED,
    INVOICE_PAYMENT_FAILED,
    BillingEvent,
    CheckoutCompleted,
    SubscriptionUpdated,
    SubscriptionDeleted,
    InvoicePaymentFailed,
    UnhandledEvent,
)
from quiver.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    SubscriptionSnapshot,
)


USER_ID_METADATA_KEY = "user_id"
SIGNATURE_HEADER = "stripe-signature"


def _field(obj: Any, *path: Any) -> Any:
    """Walk a Stripe object or plain dict; missing keys yield None."""
    for key in path:
        if obj is None:
            return None
        try:
            obj = obj[key]
        except (KeyError, IndexError, TypeError, AttributeError):
            return None
    return obj


def _object_id(value: Any) -> Optional[str]:
    """Stripe references are either an ID string or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return _field(value, "id")


def _timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _amount(value: Any) -> int:
    """Smallest-unit amount; a malformed value rejects the delivery."""
    if value in (None, ""):
        return 0
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        raise BillingWebhookError(f"Invalid payload: amount_total {value!r}")


def _period_end(subscription: Any) -> Optional[datetime]:
    # Newer API versions carry the period on the subscription item
    return _timestamp(
        _field(subscription, "current_period_end")
        or _field(subscription, "items", "data", 0, "current_period_end")
    )


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY env var)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET env var)
        """
        self.secret_key = secret_key or os.getenv("STRIPE_SECRET_KEY")
        self.webhook_secret = webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET")

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key
        # Upstream failures surface to the caller; the provider's redelivery is the retry policy
        stripe.max_network_retries = 0

    def create_customer(self, user_id: str, email: Optional[str] = None) -> str:
        """Create Stripe customer tagged with the internal user ID."""
        customer_data: Dict[str, Any] = {
            "metadata": {USER_ID_METADATA_KEY: user_id}
        }
        if email:
            customer_data["email"] = email
        try:
            customer = stripe.Customer.create(**customer_data)
            return customer.id
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer creation failed: {e}")

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        mode: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> str:
        """Create Stripe checkout session."""
        params: Dict[str, Any] = {
            "customer": customer_id,
            "mode": mode,
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata or {},
        }
        if mode == "subscription":
            params["allow_promotion_codes"] = True
        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")
        if not session.url:
            raise BillingProviderError("Stripe checkout session has no URL")
        return session.url

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create Stripe billing portal session."""
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe portal session creation failed: {e}")

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription lookup failed: {e}")
        return SubscriptionSnapshot(
            subscription_id=_field(subscription, "id") or subscription_id,
            customer_id=_object_id(_field(subscription, "customer")),
            status=_field(subscription, "status"),
            price_id=_field(subscription, "items", "data", 0, "price", "id"),
            current_period_end=_period_end(subscription),
        )

    def get_purchased_product(self, checkout_session_id: str) -> Optional[str]:
        try:
            line_items = stripe.checkout.Session.list_line_items(checkout_session_id, limit=1)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe line item lookup failed: {e}")
        return _object_id(_field(line_items, "data", 0, "price", "product"))

    def verify_webhook(self, headers: Dict[str, str], body: bytes) -> BillingEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        normalized = {k.lower(): v for k, v in headers.items()}
        sig_header = normalized.get(SIGNATURE_HEADER)
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            payload = body.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload, sig_header, self.webhook_secret, stripe.Webhook.DEFAULT_TOLERANCE
            )
            event = json.loads(payload)
        except UnicodeDecodeError as e:
            raise BillingWebhookError(f"Invalid payload encoding: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")

        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise BillingWebhookError("Invalid payload: missing event id or type")

        return parse_event(event)


def parse_event(event: Dict[str, Any]) -> BillingEvent:
    """Parse a Stripe event dict into its tagged variant."""
    event_type = event["type"]
    event_id = event["id"]
    data = _field(event, "data", "object") or {}

    if event_type == CHECKOUT_COMPLETED:
        return CheckoutCompleted(
            event_id=event_id,
            session_id=_field(data, "id") or "",
            mode=_field(data, "mode"),
            user_id=_field(data, "metadata", USER_ID_METADATA_KEY) or None,
            customer_id=_object_id(_field(data, "customer")),
            subscription_id=_object_id(_field(data, "subscription")),
            payment_intent_id=_object_id(_field(data, "payment_intent")),
            amount_total=_amount(_field(data, "amount_total")),
        )

    if event_type == SUBSCRIPTION_UPDATED:
        return SubscriptionUpdated(
            event_id=event_id,
            subscription_id=_field(data, "id") or "",
            customer_id=_object_id(_field(data, "customer")),
            status=_field(data, "status"),
            price_id=_field(data, "items", "data", 0, "price", "id"),
            current_period_end=_period_end(data),
        )

    if event_type == SUBSCRIPTION_DELETED:
        return SubscriptionDeleted(
            event_id=event_id,
            subscription_id=_field(data, "id") or "",
            customer_id=_object_id(_field(data, "customer")),
        )

    if event_type == INVOICE_PAYMENT_FAILED:
        return InvoicePaymentFailed(
            event_id=event_id,
            invoice_id=_field(data, "id"),
            customer_id=_object_id(_field(data, "customer")),
        )

    return UnhandledEvent(event_id=event_id, event_type=event_type)
