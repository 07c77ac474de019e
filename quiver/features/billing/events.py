"""
Verified billing events as tagged variants.

Each Stripe event type the processor acts on gets its own frozen dataclass
holding only the fields that transition needs. Anything else parses to
UnhandledEvent so the processor's dispatch stays exhaustive.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union


CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

ACTIVE_STATUSES = frozenset({"active", "trialing"})
DELINQUENT_STATUSES = frozenset({"past_due", "unpaid"})


@dataclass(frozen=True)
class CheckoutCompleted:
    event_id: str
    session_id: str
    mode: Optional[str]  # subscription | payment
    user_id: Optional[str]  # from session metadata
    customer_id: Optional[str]
    subscription_id: Optional[str]
    payment_intent_id: Optional[str]
    amount_total: int = 0
    event_type: str = field(default=CHECKOUT_COMPLETED, init=False)


@dataclass(frozen=True)
class SubscriptionUpdated:
    event_id: str
    subscription_id: str
    customer_id: Optional[str]
    status: Optional[str]
    price_id: Optional[str]
    current_period_end: Optional[datetime]
    event_type: str = field(default=SUBSCRIPTION_UPDATED, init=False)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_delinquent(self) -> bool:
        return self.status in DELINQUENT_STATUSES


@dataclass(frozen=True)
class SubscriptionDeleted:
    event_id: str
    subscription_id: str
    customer_id: Optional[str]
    event_type: str = field(default=SUBSCRIPTION_DELETED, init=False)


@dataclass(frozen=True)
class InvoicePaymentFailed:
    event_id: str
    invoice_id: Optional[str]
    customer_id: Optional[str]
    event_type: str = field(default=INVOICE_PAYMENT_FAILED, init=False)


@dataclass(frozen=True)
class UnhandledEvent:
    event_id: str
    event_type: str


BillingEvent = Union[
    CheckoutCompleted,
    SubscriptionUpdated,
    SubscriptionDeleted,
    InvoicePaymentFailed,
    UnhandledEvent,
]
