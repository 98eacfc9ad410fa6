"""Stripe service - BillingGateway implementation on the Stripe API"""

import logging
from functools import wraps
from typing import Any, Optional

import stripe

from ...config import STRIPE_API_VERSION, STRIPE_SECRET_KEY
from ..scheduling.errors import ProviderError, ProviderUnavailableError
from ..scheduling.phases import LineItem, Phase
from .gateway import (
    CustomerView,
    InvoiceLineView,
    InvoicePreviewView,
    InvoiceView,
    PriceView,
    SchedulePhaseView,
    ScheduleView,
    SubscriptionItemView,
    SubscriptionView,
    parse_ref,
)

logger = logging.getLogger(__name__)


def _get(obj: Any, name: str, default: Any = None) -> Any:
    """Field of a StripeObject or plain dict; item access avoids clashes like ``items``."""
    if obj is None:
        return default
    try:
        value = obj[name]
    except (KeyError, TypeError, IndexError):
        return default
    return default if value is None else value


def _path(obj: Any, *names: str) -> Any:
    for name in names:
        obj = _get(obj, name)
    return obj


def _data(obj: Any) -> list:
    return list(_get(obj, "data", []) or [])


def _metadata(obj: Any) -> dict[str, str]:
    raw = _get(obj, "metadata") or {}
    return {str(k): str(v) for k, v in dict(raw).items()}


def _price_id(raw: Any) -> Optional[str]:
    ref = parse_ref(raw)
    return ref.id if ref else None


def _subscription_ref(obj: Any) -> Any:
    # newer API versions move the invoice's subscription under parent.*_details
    return (
        _get(obj, "subscription")
        or _path(obj, "parent", "subscription_details", "subscription")
        or _path(obj, "parent", "subscription_item_details", "subscription")
    )


def _line_view(line: Any) -> InvoiceLineView:
    period = _get(line, "period")
    return InvoiceLineView(
        price=_price_id(_get(line, "price") or _path(line, "pricing", "price_details", "price")),
        quantity=_get(line, "quantity"),
        amount=_get(line, "amount"),
        period_start=_get(period, "start"),
        period_end=_get(period, "end"),
        subscription=parse_ref(_subscription_ref(line)),
    )


def _invoice_view(obj: Any) -> InvoiceView:
    return InvoiceView(
        id=_get(obj, "id", ""),
        customer=parse_ref(_get(obj, "customer")),
        subscription=parse_ref(_subscription_ref(obj)),
        amount_due=_get(obj, "amount_due", 0),
        amount_paid=_get(obj, "amount_paid", 0),
        attempt_count=_get(obj, "attempt_count", 0),
        billing_reason=_get(obj, "billing_reason"),
        client_secret=_path(obj, "confirmation_secret", "client_secret")
        or _path(obj, "payment_intent", "client_secret"),
        lines=[_line_view(line) for line in _data(_get(obj, "lines"))],
    )


def _subscription_view(obj: Any) -> SubscriptionView:
    latest_invoice = _get(obj, "latest_invoice")
    return SubscriptionView(
        id=_get(obj, "id", ""),
        status=_get(obj, "status", "incomplete"),
        customer=parse_ref(_get(obj, "customer")),
        schedule=parse_ref(_get(obj, "schedule")),
        metadata=_metadata(obj),
        items=[
            SubscriptionItemView(
                id=_get(item, "id", ""),
                price=_price_id(_get(item, "price")) or "",
                quantity=_get(item, "quantity", 0),
            )
            for item in _data(_get(obj, "items"))
        ],
        latest_invoice=_invoice_view(latest_invoice) if _get(latest_invoice, "id") else None,
    )


def _schedule_view(obj: Any) -> ScheduleView:
    current = _get(obj, "current_phase")
    return ScheduleView(
        id=_get(obj, "id", ""),
        subscription=parse_ref(_get(obj, "subscription")),
        end_behavior=_get(obj, "end_behavior"),
        current_phase_start=_get(current, "start_date"),
        current_phase_end=_get(current, "end_date"),
        phases=[
            SchedulePhaseView(
                start_date=_get(phase, "start_date"),
                end_date=_get(phase, "end_date"),
                items=[
                    LineItem(price=_price_id(_get(item, "price")) or "", quantity=_get(item, "quantity", 0))
                    for item in _get(phase, "items", [])
                ],
            )
            for phase in _get(obj, "phases", [])
        ],
    )


def _wrap_errors(func):
    """Translate Stripe SDK errors into provider errors"""

    @wraps(func)
    async def wrapper(self, *args, **kwargs):
        if not self.client:
            raise ProviderUnavailableError("Stripe client not initialized")
        try:
            return await func(self, *args, **kwargs)
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            logger.warning(f"⚠️ Stripe unavailable in {func.__name__}: {e}")
            raise ProviderUnavailableError(str(e)) from e
        except stripe.StripeError as e:
            logger.error(f"❌ Stripe error in {func.__name__}: {e}")
            raise ProviderError(str(e)) from e

    return wrapper


class StripeBillingService:
    """Service for Stripe API operations"""

    def __init__(self, api_key: Optional[str] = None, api_version: Optional[str] = None):
        self.api_key = api_key if api_key is not None else STRIPE_SECRET_KEY
        self.api_version = api_version if api_version is not None else STRIPE_API_VERSION
        self.client: Optional[stripe.StripeClient] = None

        if not self.api_key:
            logger.warning("STRIPE_SECRET_KEY not set; billing endpoints will fail until configured")
        else:
            try:
                self.client = stripe.StripeClient(
                    self.api_key,
                    stripe_version=self.api_version,
                    http_client=stripe.HTTPXClient(),
                )
                logger.info(f"Stripe client initialized (api_version={self.api_version or 'account default'})")
            except Exception as e:
                logger.error(f"Failed to initialize Stripe client: {e}")
                self.client = None

    def is_available(self) -> bool:
        """Check if the Stripe client is available"""
        return self.client is not None

    @_wrap_errors
    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionView:
        sub = await self.client.subscriptions.retrieve_async(
            subscription_id, params={"expand": ["schedule", "items.data.price"]}
        )
        return _subscription_view(sub)

    @_wrap_errors
    async def latest_subscription_for_customer(self, customer_id: str) -> Optional[SubscriptionView]:
        result = await self.client.subscriptions.list_async(
            params={"customer": customer_id, "status": "all", "limit": 1}
        )
        subs = _data(result)
        if not subs:
            return None
        return await self.retrieve_subscription(_get(subs[0], "id"))

    @_wrap_errors
    async def create_subscription(
        self,
        customer_id: str,
        items: list[LineItem],
        metadata: dict[str, str],
        billing_cycle_anchor: Optional[int],
        idempotency_key: str,
    ) -> SubscriptionView:
        params: dict = {
            "customer": customer_id,
            "collection_method": "charge_automatically",
            "payment_behavior": "default_incomplete",
            "items": [{"price": i.price, "quantity": i.quantity} for i in items],
            "payment_settings": {
                "save_default_payment_method": "on_subscription",
                "payment_method_types": ["card"],
            },
            "proration_behavior": "create_prorations",
            "metadata": metadata,
            "expand": ["latest_invoice.confirmation_secret"],
        }
        if billing_cycle_anchor is not None:
            params["billing_cycle_anchor"] = billing_cycle_anchor
        sub = await self.client.subscriptions.create_async(
            params=params, options={"idempotency_key": idempotency_key}
        )
        return _subscription_view(sub)

    @_wrap_errors
    async def update_subscription_metadata(self, subscription_id: str, metadata: dict[str, str]) -> None:
        await self.client.subscriptions.update_async(subscription_id, params={"metadata": metadata})

    @_wrap_errors
    async def update_subscription_items(
        self, subscription_id: str, items: list[dict], proration_behavior: str
    ) -> None:
        await self.client.subscriptions.update_async(
            subscription_id, params={"items": items, "proration_behavior": proration_behavior}
        )

    @_wrap_errors
    async def create_schedule_from_subscription(self, subscription_id: str) -> ScheduleView:
        schedule = await self.client.subscription_schedules.create_async(
            params={"from_subscription": subscription_id}
        )
        return _schedule_view(schedule)

    @_wrap_errors
    async def retrieve_schedule(self, schedule_id: str) -> ScheduleView:
        schedule = await self.client.subscription_schedules.retrieve_async(schedule_id)
        return _schedule_view(schedule)

    @_wrap_errors
    async def update_schedule(
        self, schedule_id: str, phases: list[Phase], end_behavior: str = "release"
    ) -> ScheduleView:
        schedule = await self.client.subscription_schedules.update_async(
            schedule_id,
            params={
                "phases": [phase.to_provider_params() for phase in phases],
                "end_behavior": end_behavior,
            },
        )
        return _schedule_view(schedule)

    @_wrap_errors
    async def retrieve_invoice(self, invoice_id: str) -> InvoiceView:
        invoice = await self.client.invoices.retrieve_async(
            invoice_id, params={"expand": ["lines.data"]}
        )
        return _invoice_view(invoice)

    @_wrap_errors
    async def preview_invoice(self, customer_id: str, subscription_id: str) -> InvoicePreviewView:
        preview = await self.client.invoices.create_preview_async(
            params={"customer": customer_id, "subscription": subscription_id}
        )
        return InvoicePreviewView(
            amount_due=_get(preview, "amount_due", 0),
            currency=_get(preview, "currency", "usd"),
            next_payment_attempt=_get(preview, "next_payment_attempt"),
            lines=[_line_view(line) for line in _data(_get(preview, "lines"))],
        )

    @_wrap_errors
    async def find_or_create_customer(self, email: str) -> CustomerView:
        existing = _data(await self.client.customers.list_async(params={"email": email, "limit": 1}))
        customer = existing[0] if existing else await self.client.customers.create_async(params={"email": email})
        return CustomerView(id=_get(customer, "id", ""), email=_get(customer, "email"), metadata=_metadata(customer))

    @_wrap_errors
    async def update_customer(self, customer_id: str, address: dict, metadata: dict[str, str]) -> None:
        await self.client.customers.update_async(customer_id, params={"address": address, "metadata": metadata})

    @_wrap_errors
    async def retrieve_price(self, price_id: str) -> PriceView:
        price = await self.client.prices.retrieve_async(price_id)
        return PriceView(
            id=_get(price, "id", price_id),
            currency=_get(price, "currency", "usd"),
            unit_amount=_get(price, "unit_amount", 0),
        )


# Global service instance
stripe_billing_service = StripeBillingService()
