"""
In-memory billing gateway for tests.

Keeps subscriptions, schedules, invoices, customers and prices in dicts and
records every call so tests can assert on what would have reached the
provider.
"""

from __future__ import annotations

from typing import Optional

from pickup_billing.domain.billing.gateway import (
    CustomerView,
    InvoicePreviewView,
    InvoiceView,
    PriceView,
    Reference,
    SchedulePhaseView,
    ScheduleView,
    SubscriptionItemView,
    SubscriptionView,
)
from pickup_billing.domain.scheduling.errors import ProviderError
from pickup_billing.domain.scheduling.phases import LineItem, Phase, phase_intervals


class FakeBillingGateway:
    """Deterministic BillingGateway double."""

    def __init__(self) -> None:
        self.available = True
        self.subscriptions: dict[str, SubscriptionView] = {}
        self.schedules: dict[str, ScheduleView] = {}
        self.invoices: dict[str, InvoiceView] = {}
        self.customers: dict[str, CustomerView] = {}
        self.prices: dict[str, PriceView] = {}
        self.previews: dict[str, InvoicePreviewView] = {}
        # subscription id -> (start, end) of the phase a new schedule starts with
        self.current_phases: dict[str, tuple[int, Optional[int]]] = {}
        self.published: dict[str, list[Phase]] = {}
        self.calls: list[tuple[str, tuple]] = []
        self.amount_due = 1500
        self.schedule_phases_on_create = True
        # metadata writes touching any of these keys are rejected
        self.reject_metadata_keys: set[str] = set()
        self.fail_with: Optional[ProviderError] = None
        # one-shot failures by method name
        self.fail_once: dict[str, ProviderError] = {}
        self._counter = 0

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, args))
        if self.fail_with is not None:
            raise self.fail_with
        if name in self.fail_once:
            raise self.fail_once.pop(name)

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def add_subscription(
        self,
        subscription_id: str,
        metadata: Optional[dict[str, str]] = None,
        items: Optional[list[SubscriptionItemView]] = None,
        phase: tuple[int, Optional[int]] = (0, None),
        customer: Optional[str] = "cus_1",
        status: str = "active",
    ) -> SubscriptionView:
        sub = SubscriptionView(
            id=subscription_id,
            status=status,
            customer=Reference(id=customer) if customer else None,
            metadata=metadata or {},
            items=items or [],
        )
        self.subscriptions[subscription_id] = sub
        self.current_phases[subscription_id] = phase
        return sub

    def is_available(self) -> bool:
        return self.available

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionView:
        self._record("retrieve_subscription", subscription_id)
        if subscription_id not in self.subscriptions:
            raise ProviderError(f"No such subscription: {subscription_id}")
        return self.subscriptions[subscription_id]

    async def latest_subscription_for_customer(self, customer_id: str) -> Optional[SubscriptionView]:
        self._record("latest_subscription_for_customer", customer_id)
        matches = [s for s in self.subscriptions.values() if s.customer and s.customer.id == customer_id]
        return matches[-1] if matches else None

    async def create_subscription(self, customer_id, items, metadata, billing_cycle_anchor, idempotency_key):
        self._record("create_subscription", customer_id, items, metadata, billing_cycle_anchor, idempotency_key)
        sub_id = self._next_id("sub")
        invoice = InvoiceView(
            id=self._next_id("in"),
            customer=Reference(id=customer_id),
            subscription=Reference(id=sub_id),
            amount_due=self.amount_due,
            client_secret="pi_secret_123" if self.amount_due else None,
        )
        sub = SubscriptionView(
            id=sub_id,
            status="incomplete",
            customer=Reference(id=customer_id),
            metadata=dict(metadata),
            items=[
                SubscriptionItemView(id=self._next_id("si"), price=i.price, quantity=i.quantity) for i in items
            ],
            latest_invoice=invoice,
        )
        self.subscriptions[sub_id] = sub
        self.invoices[invoice.id] = invoice
        return sub

    async def update_subscription_metadata(self, subscription_id: str, metadata: dict[str, str]) -> None:
        self._record("update_subscription_metadata", subscription_id, metadata)
        if self.reject_metadata_keys & set(metadata):
            raise ProviderError("metadata update rejected")
        sub = self.subscriptions[subscription_id]
        self.subscriptions[subscription_id] = sub.model_copy(update={"metadata": {**sub.metadata, **metadata}})

    async def update_subscription_items(self, subscription_id: str, items: list[dict], proration_behavior: str):
        self._record("update_subscription_items", subscription_id, items, proration_behavior)
        sub = self.subscriptions[subscription_id]
        current = {item.id: item for item in sub.items}
        for change in items:
            if "id" in change:
                current[change["id"]] = current[change["id"]].model_copy(update={"quantity": change["quantity"]})
            else:
                item_id = self._next_id("si")
                current[item_id] = SubscriptionItemView(
                    id=item_id, price=change["price"], quantity=change["quantity"]
                )
        self.subscriptions[subscription_id] = sub.model_copy(update={"items": list(current.values())})

    async def create_schedule_from_subscription(self, subscription_id: str) -> ScheduleView:
        self._record("create_schedule_from_subscription", subscription_id)
        sub = self.subscriptions[subscription_id]
        start, end = self.current_phases.get(subscription_id, (0, None))
        schedule = ScheduleView(
            id=self._next_id("sub_sched"),
            subscription=Reference(id=subscription_id),
            end_behavior="release",
            current_phase_start=start,
            current_phase_end=end,
            phases=[
                SchedulePhaseView(
                    start_date=start,
                    end_date=end,
                    items=[LineItem(price=i.price, quantity=i.quantity) for i in sub.items],
                )
            ],
        )
        self.schedules[schedule.id] = schedule
        self.subscriptions[subscription_id] = sub.model_copy(update={"schedule": Reference(id=schedule.id)})
        if not self.schedule_phases_on_create:
            return schedule.model_copy(update={"phases": []})
        return schedule

    async def retrieve_schedule(self, schedule_id: str) -> ScheduleView:
        self._record("retrieve_schedule", schedule_id)
        if schedule_id not in self.schedules:
            raise ProviderError(f"No such subscription schedule: {schedule_id}")
        return self.schedules[schedule_id]

    async def update_schedule(self, schedule_id: str, phases: list[Phase], end_behavior: str = "release"):
        self._record("update_schedule", schedule_id, phases, end_behavior)
        schedule = self.schedules[schedule_id]
        start = schedule.current_phase_start or 0
        views = [
            SchedulePhaseView(start_date=s, end_date=e, items=list(p.items))
            for p, (s, e) in zip(phases, phase_intervals(phases, start))
        ]
        updated = schedule.model_copy(update={"phases": views, "end_behavior": end_behavior})
        self.schedules[schedule_id] = updated
        self.published[schedule_id] = list(phases)
        return updated

    async def retrieve_invoice(self, invoice_id: str) -> InvoiceView:
        self._record("retrieve_invoice", invoice_id)
        if invoice_id not in self.invoices:
            raise ProviderError(f"No such invoice: {invoice_id}")
        return self.invoices[invoice_id]

    async def preview_invoice(self, customer_id: str, subscription_id: str) -> InvoicePreviewView:
        self._record("preview_invoice", customer_id, subscription_id)
        return self.previews.get(subscription_id, InvoicePreviewView())

    async def find_or_create_customer(self, email: str) -> CustomerView:
        self._record("find_or_create_customer", email)
        for customer in self.customers.values():
            if customer.email == email:
                return customer
        customer = CustomerView(id=self._next_id("cus"), email=email)
        self.customers[customer.id] = customer
        return customer

    async def update_customer(self, customer_id: str, address: dict, metadata: dict[str, str]) -> None:
        self._record("update_customer", customer_id, address, metadata)
        customer = self.customers[customer_id]
        self.customers[customer_id] = customer.model_copy(update={"metadata": {**customer.metadata, **metadata}})

    async def retrieve_price(self, price_id: str) -> PriceView:
        self._record("retrieve_price", price_id)
        return self.prices.get(price_id, PriceView(id=price_id, currency="usd", unit_amount=0))
