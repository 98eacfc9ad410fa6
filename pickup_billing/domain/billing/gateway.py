"""
Billing provider port

The scheduling code talks to the billing provider only through
``BillingGateway`` and the read-only views below. Provider fields that can
come back either as a bare id or as an expanded object are normalized into
the ``Reference | Expanded`` tagged union; ``ref_id`` is the one accessor the
rest of the code uses to get at the id.
"""

from typing import Annotated, Any, Literal, Optional, Protocol, Union

from pydantic import BaseModel, Field

from ..scheduling.phases import LineItem, Phase


class Reference(BaseModel):
    kind: Literal["reference"] = "reference"
    id: str


class Expanded(BaseModel):
    kind: Literal["expanded"] = "expanded"
    id: str
    data: dict[str, Any] = Field(default_factory=dict)


ObjectRef = Annotated[Union[Reference, Expanded], Field(discriminator="kind")]


def ref_id(ref: Optional[Union[Reference, Expanded]]) -> Optional[str]:
    return ref.id if ref is not None else None


def parse_ref(raw: Any) -> Optional[Union[Reference, Expanded]]:
    """Normalize a raw provider field (id string, expanded object or nothing)."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, str):
        return Reference(id=raw)
    try:
        raw_id = raw["id"]
    except (KeyError, TypeError):
        raw_id = getattr(raw, "id", None)
    if not isinstance(raw_id, str) or not raw_id:
        return None
    return Expanded(id=raw_id, data=dict(raw) if isinstance(raw, dict) else {})


class SubscriptionItemView(BaseModel):
    id: str
    price: str
    quantity: int = 0


class InvoiceLineView(BaseModel):
    price: Optional[str] = None
    quantity: Optional[int] = None
    amount: Optional[int] = None
    period_start: Optional[int] = None
    period_end: Optional[int] = None
    subscription: Optional[ObjectRef] = None


class InvoiceView(BaseModel):
    id: str
    customer: Optional[ObjectRef] = None
    subscription: Optional[ObjectRef] = None
    amount_due: int = 0
    amount_paid: int = 0
    attempt_count: int = 0
    billing_reason: Optional[str] = None
    client_secret: Optional[str] = None
    lines: list[InvoiceLineView] = Field(default_factory=list)


class InvoicePreviewView(BaseModel):
    amount_due: int = 0
    currency: str = "usd"
    next_payment_attempt: Optional[int] = None
    lines: list[InvoiceLineView] = Field(default_factory=list)


class SubscriptionView(BaseModel):
    id: str
    status: str = "incomplete"
    customer: Optional[ObjectRef] = None
    schedule: Optional[ObjectRef] = None
    metadata: dict[str, str] = Field(default_factory=dict)
    items: list[SubscriptionItemView] = Field(default_factory=list)
    latest_invoice: Optional[InvoiceView] = None

    def item_for(self, price: str) -> Optional[SubscriptionItemView]:
        return next((item for item in self.items if item.price == price), None)


class SchedulePhaseView(BaseModel):
    start_date: Optional[int] = None
    end_date: Optional[int] = None
    items: list[LineItem] = Field(default_factory=list)

    def quantity_for(self, price: str) -> int:
        return next((item.quantity for item in self.items if item.price == price), 0)


class ScheduleView(BaseModel):
    id: str
    subscription: Optional[ObjectRef] = None
    end_behavior: Optional[str] = None
    current_phase_start: Optional[int] = None
    current_phase_end: Optional[int] = None
    phases: list[SchedulePhaseView] = Field(default_factory=list)


class CustomerView(BaseModel):
    id: str
    email: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)


class PriceView(BaseModel):
    id: str
    currency: str = "usd"
    unit_amount: int = 0


class BillingGateway(Protocol):
    """Async operations the scheduler needs from the billing provider"""

    def is_available(self) -> bool: ...

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionView: ...

    async def latest_subscription_for_customer(self, customer_id: str) -> Optional[SubscriptionView]: ...

    async def create_subscription(
        self,
        customer_id: str,
        items: list[LineItem],
        metadata: dict[str, str],
        billing_cycle_anchor: Optional[int],
        idempotency_key: str,
    ) -> SubscriptionView: ...

    async def update_subscription_metadata(self, subscription_id: str, metadata: dict[str, str]) -> None: ...

    async def update_subscription_items(
        self, subscription_id: str, items: list[dict], proration_behavior: str
    ) -> None: ...

    async def create_schedule_from_subscription(self, subscription_id: str) -> ScheduleView: ...

    async def retrieve_schedule(self, schedule_id: str) -> ScheduleView: ...

    async def update_schedule(
        self, schedule_id: str, phases: list[Phase], end_behavior: str = "release"
    ) -> ScheduleView: ...

    async def retrieve_invoice(self, invoice_id: str) -> InvoiceView: ...

    async def preview_invoice(self, customer_id: str, subscription_id: str) -> InvoicePreviewView: ...

    async def find_or_create_customer(self, email: str) -> CustomerView: ...

    async def update_customer(self, customer_id: str, address: dict, metadata: dict[str, str]) -> None: ...

    async def retrieve_price(self, price_id: str) -> PriceView: ...
