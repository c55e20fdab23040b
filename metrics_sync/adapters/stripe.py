"""
Payments-API adapter (Stripe REST).

Flow per window:
1. Subscriptions (listed once per run, bounded by window end, cached)
2. Paid subscription invoices created in the window -> revenue events
3. Proceeds enrichment for invoices lacking an expanded balance transaction,
   in bounded concurrent batches
4. Refunds created in the window -> refund events
"""
import asyncio
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from pydantic import ValidationError

from metrics_sync.adapters.base import FetchContext, FetchResult, FetchWindow, PlatformAdapter
from metrics_sync.adapters.http import PlatformHttpClient
from metrics_sync.adapters.records import (
    StripeBalanceTransaction, StripeCharge, StripeInvoice, StripePaymentIntent,
    StripeRefund, StripeSubscription,
)
from metrics_sync.config import config
from metrics_sync.exceptions import ApiError, CredentialError
from metrics_sync.models import (
    BillingInterval, Platform, RevenueEvent, RevenueEventType, Subscription,
    SubscriptionStatus, from_unix,
)
from metrics_sync.observability import get_logger

logger = get_logger(__name__)

PAGE_LIMIT = 100
MAX_PAGES = 1000

SUBSCRIPTIONS_CACHE_KEY = "stripe:subscriptions"
SUBSCRIPTIONS_BOUND_KEY = "stripe:subscriptions_listed_until"

INVOICE_EXPAND = [
    ("expand[]", "data.charge.balance_transaction"),
    ("expand[]", "data.payment_intent.latest_charge.balance_transaction"),
]


def _cents(value: Optional[int]) -> Optional[float]:
    if value is None:
        return None
    return value / 100.0


def _balance_net(balance_transaction) -> Optional[float]:
    if isinstance(balance_transaction, StripeBalanceTransaction) and balance_transaction.net is not None:
        return _cents(balance_transaction.net)
    return None


def _expanded_proceeds(invoice: StripeInvoice) -> Optional[float]:
    """Proceeds from an expanded charge or payment intent, if present."""
    if isinstance(invoice.charge, StripeCharge):
        net = _balance_net(invoice.charge.balance_transaction)
        if net is not None:
            return net
    if isinstance(invoice.payment_intent, StripePaymentIntent):
        charge = invoice.payment_intent.latest_charge
        if isinstance(charge, StripeCharge):
            return _balance_net(charge.balance_transaction)
    return None


def classify_invoice(invoice: StripeInvoice) -> RevenueEventType:
    if invoice.amount_paid < 0:
        return RevenueEventType.REFUND
    if invoice.billing_reason == "subscription_create":
        return RevenueEventType.FIRST_PAYMENT
    return RevenueEventType.RENEWAL


def map_subscription(raw: StripeSubscription) -> Subscription:
    """Stripe subscription -> canonical Subscription."""
    status = SubscriptionStatus.from_stripe(raw.status)
    if status is SubscriptionStatus.CANCELED:
        end_ts = raw.ended_at or raw.canceled_at or raw.period_end
    else:
        end_ts = raw.period_end

    amount = None
    interval = None
    interval_count = 1
    currency = raw.currency
    product_id = ""
    item = raw.first_item
    if item and item.price:
        price = item.price
        if price.unit_amount is not None:
            amount = _cents(price.unit_amount) * (item.quantity or 1)
        if price.recurring:
            try:
                interval = BillingInterval(price.recurring.interval)
            except ValueError:
                interval = None
            interval_count = price.recurring.interval_count or 1
        currency = price.currency or currency
        product_id = price.product_id or price.id or ""

    return Subscription(
        platform=Platform.STRIPE,
        external_id=raw.id,
        status=status,
        product_id=product_id,
        start_date=from_unix(raw.start_date or raw.created),
        end_date=from_unix(end_ts),
        is_trial=status is SubscriptionStatus.TRIALING,
        will_cancel=raw.cancel_at_period_end,
        is_in_grace=status is SubscriptionStatus.PAST_DUE,
        amount=amount,
        interval=interval,
        interval_count=interval_count,
        currency=currency.upper() if currency else None,
        canceled_at=from_unix(raw.canceled_at),
        trial_end=from_unix(raw.trial_end),
        raw_status=raw.status,
    )


def map_invoice(invoice: StripeInvoice, subscription_id: str, proceeds: Optional[float]) -> RevenueEvent:
    event_type = classify_invoice(invoice)
    excluding_tax = _cents(invoice.total_excluding_tax)
    return RevenueEvent(
        platform=Platform.STRIPE,
        external_id=invoice.id,
        subscription_external_id=subscription_id,
        event_type=event_type,
        amount=abs(_cents(invoice.amount_paid)),
        amount_excluding_tax=abs(excluding_tax) if excluding_tax is not None else None,
        amount_proceeds=abs(proceeds) if proceeds is not None else None,
        timestamp=from_unix(invoice.paid_at),
        currency=invoice.currency.upper() if invoice.currency else None,
        product_id=invoice.product_id,
    )


class StripeAdapter(PlatformAdapter):
    """
    Stripe adapter.

    Credentials: {"api_key": "sk_..."}
    """

    platform = Platform.STRIPE

    def __init__(self, client: Optional[PlatformHttpClient] = None):
        self.client = client or PlatformHttpClient("stripe", config.http.stripe_base_url)
        self.batch_size = config.sync.proceeds_batch_size

    async def close(self) -> None:
        await self.client.close()

    @staticmethod
    def _headers(credentials: Dict[str, Any]) -> Dict[str, str]:
        api_key = credentials.get("api_key")
        if not api_key:
            raise CredentialError("Stripe API key is missing", platform=Platform.STRIPE.value)
        return {"Authorization": f"Bearer {api_key}"}

    async def _paginate(
        self,
        endpoint: str,
        params: List[Tuple[str, Any]],
        headers: Dict[str, str],
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yield raw objects from a cursor-paginated list endpoint."""
        starting_after = None
        for _ in range(MAX_PAGES):
            page_params = list(params) + [("limit", PAGE_LIMIT)]
            if starting_after:
                page_params.append(("starting_after", starting_after))

            page = await self.client.get_json(endpoint, params=page_params, headers=headers)
            data = page.get("data", [])
            for obj in data:
                yield obj

            if not page.get("has_more") or not data:
                return
            starting_after = data[-1].get("id")
        logger.warning(f"Stripe {endpoint}: stopped after {MAX_PAGES} pages")

    # ─── Subscriptions ───────────────────────────────────────────────────────

    async def _list_subscriptions(
        self,
        headers: Dict[str, str],
        window: FetchWindow,
        context: FetchContext,
    ) -> List[StripeSubscription]:
        """
        All subscriptions created up to window end.

        Listed once per run; a later chunk only lists what was created after
        the previously listed bound.
        """
        cached: List[StripeSubscription] = context.cache.setdefault(SUBSCRIPTIONS_CACHE_KEY, [])
        listed_until: Optional[int] = context.cache.get(SUBSCRIPTIONS_BOUND_KEY)
        window_end = int(window.end.timestamp())

        if listed_until is None or window_end > listed_until:
            params: List[Tuple[str, Any]] = [
                ("status", "all"),
                ("expand[]", "data.items.data.price"),
                ("created[lte]", window_end),
            ]
            if listed_until is not None:
                params.append(("created[gt]", listed_until))

            async for obj in self._paginate("subscriptions", params, headers):
                try:
                    cached.append(StripeSubscription.model_validate(obj))
                except ValidationError as e:
                    context.incr("parse_errors")
                    logger.warning(f"Skipping malformed Stripe subscription: {e.error_count()} errors")
            context.cache[SUBSCRIPTIONS_BOUND_KEY] = window_end
            context.counters["subscriptions_listed"] = len(cached)

        return [s for s in cached if s.created <= window_end]

    # ─── Proceeds Enrichment ─────────────────────────────────────────────────

    async def _charge_proceeds(self, charge_id: str, headers: Dict[str, str]) -> Optional[float]:
        charge = StripeCharge.model_validate(await self.client.get_json(
            f"charges/{charge_id}", params=[("expand[]", "balance_transaction")], headers=headers
        ))
        return await self._balance_proceeds(charge.balance_transaction, headers)

    async def _balance_proceeds(self, balance_transaction, headers: Dict[str, str]) -> Optional[float]:
        if isinstance(balance_transaction, str):
            balance_transaction = StripeBalanceTransaction.model_validate(
                await self.client.get_json(f"balance_transactions/{balance_transaction}", headers=headers)
            )
        return _balance_net(balance_transaction)

    async def _payment_intent_proceeds(self, payment_intent_id: str, headers: Dict[str, str]) -> Optional[float]:
        intent = StripePaymentIntent.model_validate(await self.client.get_json(
            f"payment_intents/{payment_intent_id}",
            params=[("expand[]", "latest_charge.balance_transaction")],
            headers=headers,
        ))
        charge = intent.latest_charge
        if isinstance(charge, StripeCharge):
            return await self._balance_proceeds(charge.balance_transaction, headers)
        if isinstance(charge, str):
            return await self._charge_proceeds(charge, headers)
        return None

    async def _lookup_proceeds(self, invoice: StripeInvoice, headers: Dict[str, str]) -> Optional[float]:
        """
        Follow invoice -> payment -> payment intent -> charge -> balance transaction.

        Invoices on newer API versions carry neither charge nor payment
        intent, so the invoice payments list is consulted first in that case.
        """
        if isinstance(invoice.charge, str):
            return await self._charge_proceeds(invoice.charge, headers)

        payment_intent_id = invoice.payment_intent if isinstance(invoice.payment_intent, str) else None
        if payment_intent_id is None:
            page = await self.client.get_json(
                "invoice_payments",
                params=[("invoice", invoice.id), ("limit", 1)],
                headers=headers,
            )
            for payment in page.get("data", []):
                details = payment.get("payment") or {}
                intent = details.get("payment_intent")
                if isinstance(intent, dict):
                    intent = intent.get("id")
                if intent:
                    payment_intent_id = intent
                    break
                if details.get("charge"):
                    return await self._charge_proceeds(details["charge"], headers)

        if payment_intent_id:
            return await self._payment_intent_proceeds(payment_intent_id, headers)
        return None

    async def _enrich_one(
        self,
        invoice: StripeInvoice,
        event: RevenueEvent,
        headers: Dict[str, str],
        context: FetchContext,
    ) -> None:
        context.incr("proceeds_lookups")
        try:
            proceeds = await self._lookup_proceeds(invoice, headers)
        except ApiError as e:
            logger.warning(f"Proceeds lookup failed for invoice {invoice.id}: {e}")
            proceeds = None
        except ValidationError:
            proceeds = None
        if proceeds is None:
            context.incr("proceeds_missing")
        else:
            event.amount_proceeds = abs(proceeds)

    async def _enrich_proceeds(
        self,
        pending: List[Tuple[StripeInvoice, RevenueEvent]],
        headers: Dict[str, str],
        context: FetchContext,
    ) -> bool:
        """
        Fill in proceeds in batches of ``batch_size`` concurrent lookups.

        Returns:
            False if cancelled between batches
        """
        for i in range(0, len(pending), self.batch_size):
            if i and await context.cancelled():
                remaining = len(pending) - i
                context.incr("proceeds_missing", remaining)
                logger.info(f"Proceeds enrichment stopped by cancellation, {remaining} invoices left")
                return False
            batch = pending[i:i + self.batch_size]
            await asyncio.gather(*[
                self._enrich_one(invoice, event, headers, context) for invoice, event in batch
            ])
        return True

    # ─── Main Flow ───────────────────────────────────────────────────────────

    async def _fetch(
        self,
        credentials: Dict[str, Any],
        window: FetchWindow,
        context: FetchContext,
        result: FetchResult,
    ) -> None:
        headers = self._headers(credentials)

        for raw in await self._list_subscriptions(headers, window, context):
            result.subscriptions.append(map_subscription(raw))

        bounds = [
            ("created[gte]", int(window.start.timestamp())),
            ("created[lte]", int(window.end.timestamp())),
        ]

        # Invoice id -> subscription id, used to attribute refunds
        invoice_subscriptions: Dict[str, str] = {}
        pending: List[Tuple[StripeInvoice, RevenueEvent]] = []

        async for obj in self._paginate("invoices", bounds + INVOICE_EXPAND, headers):
            context.incr("invoice_count")
            try:
                invoice = StripeInvoice.model_validate(obj)
            except ValidationError:
                context.incr("skipped_invoices")
                context.incr("parse_errors")
                continue

            context.count("invoice_status_counts", invoice.status or "unknown")
            subscription_id = invoice.subscription_id
            if subscription_id:
                context.incr("invoices_with_subscription")
                invoice_subscriptions[invoice.id] = subscription_id
            if invoice.status != "paid" or not subscription_id:
                context.incr("skipped_invoices")
                continue
            context.incr("invoices_paid")

            proceeds = _expanded_proceeds(invoice)
            event = map_invoice(invoice, subscription_id, proceeds)
            context.count("event_type_counts", event.event_type.value)
            result.revenue_events.append(event)
            if proceeds is None:
                pending.append((invoice, event))

        if pending and not await self._enrich_proceeds(pending, headers, context):
            result.cancelled = True
            return

        await self._collect_refunds(headers, bounds, invoice_subscriptions, context, result)

    async def _collect_refunds(
        self,
        headers: Dict[str, str],
        bounds: List[Tuple[str, Any]],
        invoice_subscriptions: Dict[str, str],
        context: FetchContext,
        result: FetchResult,
    ) -> None:
        """Refunds whose charge belongs to a subscription invoice."""
        params = bounds + [("expand[]", "data.charge")]
        async for obj in self._paginate("refunds", params, headers):
            try:
                refund = StripeRefund.model_validate(obj)
            except ValidationError:
                context.incr("parse_errors")
                continue
            if refund.status in ("failed", "canceled"):
                continue

            invoice_id = refund.charge.invoice_id if isinstance(refund.charge, StripeCharge) else None
            if not invoice_id:
                continue

            subscription_id = invoice_subscriptions.get(invoice_id)
            if subscription_id is None:
                try:
                    invoice = StripeInvoice.model_validate(
                        await self.client.get_json(f"invoices/{invoice_id}", headers=headers)
                    )
                except ValidationError:
                    context.incr("parse_errors")
                    continue
                subscription_id = invoice.subscription_id
                if subscription_id:
                    invoice_subscriptions[invoice_id] = subscription_id
            if not subscription_id:
                continue

            context.incr("refund_count")
            context.count("event_type_counts", RevenueEventType.REFUND.value)
            amount = _cents(refund.amount)
            result.revenue_events.append(RevenueEvent(
                platform=Platform.STRIPE,
                external_id=refund.id,
                subscription_external_id=subscription_id,
                event_type=RevenueEventType.REFUND,
                amount=amount,
                # The fee is not returned on refund, so the full amount leaves net revenue
                amount_proceeds=amount,
                timestamp=from_unix(refund.created),
                currency=refund.currency.upper() if refund.currency else None,
            ))
