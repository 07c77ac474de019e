"""
Billing provider protocol.

Defines the interface for billing providers (Stripe, etc.).
This allows swapping providers without changing business logic.
"""
from typing import Protocol, Dict, Optional
from dataclasses import dataclass
from datetime import datetime

from quiver.features.billing.events import BillingEvent


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Current state of a subscription as reported by the provider."""
    subscription_id: str
    customer_id: Optional[str]
    status: Optional[str]
    price_id: Optional[str]
    current_period_end: Optional[datetime]


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Customer creation
    - Checkout session creation
    - Portal session creation
    - Webhook signature verification and parsing
    - Subscription / line item lookups needed by checkout events
    """

    def create_customer(self, user_id: str, email: Optional[str] = None) -> str:
        """
        Create a billing customer tagged with the internal user ID.

        Returns:
            Provider customer ID (e.g., Stripe customer ID)

        Raises:
            BillingProviderError: If customer creation fails
        """
        ...

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        mode: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> str:
        """
        Create a hosted checkout session.

        Args:
            customer_id: Provider customer ID
            price_id: Provider price ID
            mode: "subscription" or "payment"
            success_url: URL to redirect on success
            cancel_url: URL to redirect on cancellation
            metadata: Optional metadata to attach

        Returns:
            Checkout session URL

        Raises:
            BillingProviderError: If session creation fails
        """
        ...

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """
        Create a billing portal session for customer self-service.

        Returns:
            Portal session URL

        Raises:
            BillingProviderError: If portal session creation fails
        """
        ...

    def verify_webhook(self, headers: Dict[str, str], body: bytes) -> BillingEvent:
        """
        Verify webhook signature and parse event.

        Raises:
            BillingWebhookError: If signature invalid or payload malformed
        """
        ...

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        """Fetch the subscription behind a completed checkout."""
        ...

    def get_purchased_product(self, checkout_session_id: str) -> Optional[str]:
        """Return the product ID of the first line item of a payment checkout."""
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook verification errors."""
    pass
