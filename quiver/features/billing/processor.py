"""
Webhook event processor: the entitlement state machine.

Every transition overwrites the fields it owns with values computed from the
event (or the subscription it references), never from the stored record, so
redelivered events converge on the same state. Downgrade by time is not done
here; readers compare ``now`` against grace_ends_at (see
entitlements.service.effective_tier).

Events arriving out of order are not detected: an older subscription update
applied after a newer one restores the older expires_at.
"""
import logging
from typing import Optional

from quiver.features.billing.events import (
    BillingEvent,
    CheckoutCompleted,
    SubscriptionUpdated,
    SubscriptionDeleted,
    InvoicePaymentFailed,
    UnhandledEvent,
)
from quiver.features.billing.provider import BillingProvider
from quiver.features.billing.tiers import resolve_tier
from quiver.features.entitlements.service import (
    activate_subscription,
    downgrade_to_free,
    record_purchase,
)
from quiver.features.identity.service import find_user_by_billing_customer, sync_user_billing
from quiver.models.entitlement import Tier


logger = logging.getLogger(__name__)


def apply_event(event: BillingEvent, provider: BillingProvider) -> Optional[str]:
    """
    Apply one verified event.

    Returns the affected user ID, or None when the event was a no-op
    (unresolvable identity, informational or unhandled type).

    Raises:
        BillingProviderError: If a follow-up Stripe lookup fails
    """
    if isinstance(event, CheckoutCompleted):
        return _on_checkout_completed(event, provider)
    if isinstance(event, SubscriptionUpdated):
        return _on_subscription_updated(event)
    if isinstance(event, SubscriptionDeleted):
        return _on_subscription_deleted(event)
    if isinstance(event, InvoicePaymentFailed):
        return _on_invoice_payment_failed(event)
    if isinstance(event, UnhandledEvent):
        logger.info(
            "[billing] unhandled event type",
            extra={"event_id": event.event_id, "event_type": event.event_type},
        )
        return None
    raise TypeError(f"Unknown billing event variant: {type(event).__name__}")


def _activate(
    user_id: str,
    tier: Tier,
    customer_id: Optional[str],
    subscription_id: str,
    current_period_end,
) -> None:
    activate_subscription(user_id, tier, customer_id, subscription_id, current_period_end)
    mirror = {"subscription_tier": tier, "stripe_subscription_id": subscription_id}
    if customer_id:
        mirror["stripe_customer_id"] = customer_id
    sync_user_billing(user_id, mirror)


def _on_checkout_completed(event: CheckoutCompleted, provider: BillingProvider) -> Optional[str]:
    user_id = event.user_id
    if not user_id:
        logger.error(
            "[billing] checkout session has no user_id metadata",
            extra={"event_id": event.event_id, "session_id": event.session_id},
        )
        return None

    if event.mode == "subscription" and event.subscription_id:
        subscription = provider.retrieve_subscription(event.subscription_id)
        tier = resolve_tier(subscription.price_id)
        _activate(
            user_id,
            tier,
            event.customer_id or subscription.customer_id,
            subscription.subscription_id,
            subscription.current_period_end,
        )
        logger.info(
            f"[billing] subscription created for user {user_id}: {tier.value}",
            extra={"event_id": event.event_id, "user_id": user_id},
        )
        return user_id

    if event.mode == "payment":
        product_id = provider.get_purchased_product(event.session_id)
        record_purchase(user_id, product_id, event.payment_intent_id, event.amount_total)
        logger.info(
            f"[billing] purchase recorded for user {user_id}: {product_id}",
            extra={"event_id": event.event_id, "user_id": user_id},
        )
        return user_id

    logger.info(
        "[billing] checkout completed with nothing to apply",
        extra={"event_id": event.event_id, "mode": event.mode},
    )
    return None


def _on_subscription_updated(event: SubscriptionUpdated) -> Optional[str]:
    user_id = find_user_by_billing_customer(event.customer_id)
    if not user_id:
        return None

    if event.is_active:
        tier = resolve_tier(event.price_id)
        _activate(user_id, tier, event.customer_id, event.subscription_id, event.current_period_end)
        logger.info(
            f"[billing] subscription updated for user {user_id}: {tier.value}",
            extra={"event_id": event.event_id, "user_id": user_id},
        )
        return user_id

    if event.is_delinquent:
        # Access continues until grace_ends_at; nothing to write
        logger.warning(
            f"[billing] subscription {event.subscription_id} is {event.status}",
            extra={"event_id": event.event_id, "user_id": user_id},
        )
        return None

    logger.info(
        f"[billing] subscription {event.subscription_id} status {event.status} ignored",
        extra={"event_id": event.event_id, "user_id": user_id},
    )
    return None


def _on_subscription_deleted(event: SubscriptionDeleted) -> Optional[str]:
    user_id = find_user_by_billing_customer(event.customer_id)
    if not user_id:
        return None

    downgrade_to_free(user_id)
    sync_user_billing(user_id, {"subscription_tier": Tier.FREE, "stripe_subscription_id": None})
    logger.info(
        f"[billing] subscription cancelled for user {user_id}",
        extra={"event_id": event.event_id, "user_id": user_id},
    )
    return user_id


def _on_invoice_payment_failed(event: InvoicePaymentFailed) -> Optional[str]:
    user_id = find_user_by_billing_customer(event.customer_id)
    if not user_id:
        return None

    logger.warning(
        f"[billing] payment failed for user {user_id}, invoice {event.invoice_id}",
        extra={"event_id": event.event_id, "user_id": user_id},
    )
    return None
