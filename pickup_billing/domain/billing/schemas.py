"""Billing domain schemas - Pydantic models for validation"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ...services.service_area_resolver import Address, clean_zip

ProrationBehavior = Literal["always_invoice", "create_prorations", "none"]


class ServiceAddressIn(BaseModel):
    """One service address card from the signup form"""

    model_config = ConfigDict(populate_by_name=True)

    line1: str = ""
    line2: str = ""
    city: str = ""
    state: str = ""
    zip: Optional[str] = None
    postal_code: Optional[str] = Field(default=None, alias="postalCode")

    @property
    def clean_zip(self) -> str:
        return clean_zip(self.postal_code or self.zip)

    def to_address(self) -> Address:
        return Address(line1=self.line1, city=self.city, state=self.state, zip=self.clean_zip)

    def to_provider_address(self) -> dict:
        return {
            "line1": self.line1,
            "line2": self.line2,
            "city": self.city,
            "state": self.state,
            "postal_code": self.clean_zip,
            "country": "US",
        }


class SeasonalSelection(BaseModel):
    seasonal_2nd: bool = False


class CreateSubscriptionRequest(BaseModel):
    """Schema for the signup subscription request"""

    email: str
    plan: Optional[str] = None
    services: list[ServiceAddressIn]
    billing: Optional[ServiceAddressIn] = None
    selections: list[SeasonalSelection]

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = (v or "").strip()
        if not v or "@" not in v:
            raise ValueError("email is required")
        return v

    @field_validator("services")
    @classmethod
    def validate_services(cls, v: list[ServiceAddressIn]) -> list[ServiceAddressIn]:
        if len(v) < 1:
            raise ValueError("At least one service address is required")
        return v

    @model_validator(mode="after")
    def selections_match_services(self) -> "CreateSubscriptionRequest":
        if len(self.selections) != len(self.services):
            raise ValueError("Selections must match service addresses")
        return self


class CreateSubscriptionResponse(BaseModel):
    subscription_id: str
    customer_id: str
    client_secret: Optional[str] = None
    no_initial_charge: bool = False
    latest_invoice_id: Optional[str] = None
    phase_count: int
    phases_hash: str


class PricesResponse(BaseModel):
    account: str
    currency: str
    amounts: dict[str, int]


class ToggleSeasonalRequest(BaseModel):
    """Schema for adjusting the seasonal add-on quantity"""

    subscription_id: str
    delta: int
    proration: Optional[ProrationBehavior] = None

    @field_validator("subscription_id")
    @classmethod
    def validate_subscription_id(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("subscription_id is required")
        return v.strip()


class ToggleSeasonalResponse(BaseModel):
    subscription_id: str
    seasonal_quantity: int
    updated: bool


class PhaseItemOut(BaseModel):
    price: str
    quantity: int


class PhaseSummary(BaseModel):
    start: Optional[str] = None
    end: Optional[str] = None
    items: list[PhaseItemOut]


class ScheduleSummary(BaseModel):
    id: str
    current_phase: Optional[PhaseSummary] = None
    phases: list[PhaseSummary]
    last_phase_open_ended: bool


class InvoiceLineOut(BaseModel):
    price: Optional[str] = None
    quantity: Optional[int] = None
    amount: Optional[int] = None
    period_start: Optional[str] = None
    period_end: Optional[str] = None


class NextInvoice(BaseModel):
    amount_due: int
    currency: str
    next_payment_attempt: Optional[str] = None
    lines: list[InvoiceLineOut]


class PriceLabel(BaseModel):
    name: str
    type: Literal["base", "seasonal"]


class SubscriptionOverviewResponse(BaseModel):
    subscription_id: str
    customer_id: Optional[str] = None
    next_invoice: Optional[NextInvoice] = None
    schedule: Optional[ScheduleSummary] = None
    price_metadata: dict[str, PriceLabel]
