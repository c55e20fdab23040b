"""
Raw provider records, validated at the adapter boundary.

Provider payloads are loosely typed JSON or report rows. Each adapter parses
them into these models immediately after receipt; everything after that
point works with typed attributes only.
"""
from datetime import datetime
from typing import Optional, List, Union, Any, Dict

from pydantic import BaseModel, ConfigDict, Field


class RawRecord(BaseModel):
    """Base for provider records: unknown fields are ignored."""
    model_config = ConfigDict(extra="ignore")


# ═══════════════════════════════════════════════════════════════════════════════
# STRIPE
# ═══════════════════════════════════════════════════════════════════════════════

class StripeRecurring(RawRecord):
    interval: str = "month"
    interval_count: int = 1


class StripePrice(RawRecord):
    id: Optional[str] = None
    unit_amount: Optional[int] = None
    currency: Optional[str] = None
    product: Optional[Union[str, Dict[str, Any]]] = None
    recurring: Optional[StripeRecurring] = None

    @property
    def product_id(self) -> Optional[str]:
        if isinstance(self.product, dict):
            return self.product.get("id")
        return self.product


class StripeSubscriptionItem(RawRecord):
    id: Optional[str] = None
    price: Optional[StripePrice] = None
    quantity: int = 1
    current_period_end: Optional[int] = None


class StripeItemList(RawRecord):
    data: List[StripeSubscriptionItem] = Field(default_factory=list)


class StripeSubscription(RawRecord):
    id: str
    status: str
    created: int
    start_date: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[int] = None
    ended_at: Optional[int] = None
    trial_end: Optional[int] = None
    currency: Optional[str] = None
    items: StripeItemList = Field(default_factory=StripeItemList)

    @property
    def first_item(self) -> Optional[StripeSubscriptionItem]:
        return self.items.data[0] if self.items.data else None

    @property
    def period_end(self) -> Optional[int]:
        """Period end from the subscription, or from its first item on newer API versions."""
        if self.current_period_end is not None:
            return self.current_period_end
        item = self.first_item
        return item.current_period_end if item else None


class StripeBalanceTransaction(RawRecord):
    id: Optional[str] = None
    net: Optional[int] = None
    fee: Optional[int] = None
    amount: Optional[int] = None


class StripeCharge(RawRecord):
    id: str
    invoice: Optional[Union[str, Dict[str, Any]]] = None
    balance_transaction: Optional[Union[str, StripeBalanceTransaction]] = None

    @property
    def invoice_id(self) -> Optional[str]:
        if isinstance(self.invoice, dict):
            return self.invoice.get("id")
        return self.invoice


class StripePaymentIntent(RawRecord):
    id: str
    latest_charge: Optional[Union[str, StripeCharge]] = None


class StripeStatusTransitions(RawRecord):
    paid_at: Optional[int] = None


class StripeSubscriptionDetails(RawRecord):
    subscription: Optional[str] = None


class StripeInvoiceParent(RawRecord):
    subscription_details: Optional[StripeSubscriptionDetails] = None


class StripeInvoiceLinePrice(RawRecord):
    product: Optional[str] = None


class StripeInvoiceLine(RawRecord):
    price: Optional[StripeInvoiceLinePrice] = None


class StripeInvoiceLines(RawRecord):
    data: List[StripeInvoiceLine] = Field(default_factory=list)


class StripeInvoice(RawRecord):
    id: str
    status: Optional[str] = None
    created: int
    currency: Optional[str] = None
    amount_paid: int = 0
    total_excluding_tax: Optional[int] = None
    billing_reason: Optional[str] = None
    subscription: Optional[Union[str, Dict[str, Any]]] = None
    parent: Optional[StripeInvoiceParent] = None
    status_transitions: Optional[StripeStatusTransitions] = None
    charge: Optional[Union[str, StripeCharge]] = None
    payment_intent: Optional[Union[str, StripePaymentIntent]] = None
    lines: Optional[StripeInvoiceLines] = None

    @property
    def subscription_id(self) -> Optional[str]:
        if self.parent and self.parent.subscription_details and self.parent.subscription_details.subscription:
            return self.parent.subscription_details.subscription
        if isinstance(self.subscription, dict):
            return self.subscription.get("id")
        return self.subscription

    @property
    def paid_at(self) -> int:
        if self.status_transitions and self.status_transitions.paid_at:
            return self.status_transitions.paid_at
        return self.created

    @property
    def product_id(self) -> Optional[str]:
        if self.lines:
            for line in self.lines.data:
                if line.price and line.price.product:
                    return line.price.product
        return None


class StripeRefund(RawRecord):
    id: str
    amount: int = 0
    currency: Optional[str] = None
    created: int
    status: Optional[str] = None
    charge: Optional[Union[str, StripeCharge]] = None
    payment_intent: Optional[Union[str, StripePaymentIntent]] = None

    @property
    def charge_id(self) -> Optional[str]:
        if isinstance(self.charge, StripeCharge):
            return self.charge.id
        return self.charge


# ═══════════════════════════════════════════════════════════════════════════════
# APP STORE
# ═══════════════════════════════════════════════════════════════════════════════

class AppStoreSubscriberRow(RawRecord):
    """One row of the SUBSCRIBER DETAILED sales report."""
    event_date: datetime
    purchase_date: datetime
    subscriber_id: str
    subscription_apple_id: str
    subscription_name: str = ""
    product_id: str = ""
    duration: Optional[str] = None
    offer_type: str = ""
    customer_price: float = 0.0
    customer_currency: Optional[str] = None
    developer_proceeds: Optional[float] = None
    proceeds_currency: Optional[str] = None
    units: int = 1
    refund: bool = False

    @property
    def subscription_key(self) -> str:
        return f"{self.subscriber_id}:{self.subscription_apple_id}"

    @property
    def is_free_trial(self) -> bool:
        return "trial" in self.offer_type.lower() and self.customer_price == 0


# ═══════════════════════════════════════════════════════════════════════════════
# GOOGLE PLAY
# ═══════════════════════════════════════════════════════════════════════════════

class GooglePlaySaleRow(RawRecord):
    """One row of a monthly salesreport CSV."""
    order_number: str
    order_date: datetime
    financial_status: str
    product_id: str
    sku_id: Optional[str] = None
    base_plan_id: Optional[str] = None
    product_type: Optional[str] = None
    charged_amount: float = 0.0
    item_price: Optional[float] = None
    currency: Optional[str] = None

    @property
    def base_order_id(self) -> str:
        """Order number without the ``..N`` renewal suffix."""
        return self.order_number.split("..", 1)[0]

    @property
    def is_renewal(self) -> bool:
        return ".." in self.order_number

    @property
    def renewal_number(self) -> int:
        """N of a ``..N`` suffix, 0 for the initial order."""
        suffix = self.order_number.split("..", 1)[1] if self.is_renewal else ""
        return int(suffix) + 1 if suffix.isdigit() else 0

    @property
    def is_refund(self) -> bool:
        return "refund" in self.financial_status.lower()


class GooglePlayEarningRow(RawRecord):
    """One row of a monthly earnings CSV (charge, fee or tax line)."""
    order_number: str
    transaction_type: str
    product_id: Optional[str] = None
    amount_merchant: float = 0.0
    merchant_currency: Optional[str] = None
