"""Subscription service - Business logic for seasonal pickup subscriptions"""

import hashlib
import json
import logging
import time
from typing import Callable, Optional

from fastapi import HTTPException

from ...config import METADATA_CHUNK_SIZE
from ...services.service_area_resolver import ServiceAreaResolver
from ..scheduling.codec import CompactRule, chunk_for_metadata, encode_compact_rules
from ..scheduling.errors import NoBillableItemsError, ProviderError, ProviderUnavailableError, UnresolvedAddressError
from ..scheduling.months import to_iso
from ..scheduling.phases import SchedulingSettings, SignupPlan, emit_phases, phase_intervals
from ..scheduling.seasons import valid_windows, windows_from_selections
from ..scheduling.timeline import build_timeline
from .gateway import BillingGateway, ScheduleView, SubscriptionView, ref_id
from .prices import AccountType, PriceBook
from .schemas import (
    CreateSubscriptionRequest,
    CreateSubscriptionResponse,
    InvoiceLineOut,
    NextInvoice,
    PhaseItemOut,
    PhaseSummary,
    PriceLabel,
    PricesResponse,
    ScheduleSummary,
    SubscriptionOverviewResponse,
    ToggleSeasonalRequest,
    ToggleSeasonalResponse,
)

logger = logging.getLogger(__name__)

PRICE_LABELS = {"base": "Base Trash Service", "seasonal": "Seasonal 2nd Pickup"}


def mask_email(email: Optional[str]) -> str:
    if not email:
        return "(unknown)"
    user, _, domain = email.partition("@")
    head = user[:1]
    return f"{head}{'*' * max(len(user) - 1, 1)}@{domain}"


def _sha256(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _provider_http_error(e: ProviderError) -> HTTPException:
    if isinstance(e, ProviderUnavailableError):
        return HTTPException(status_code=503, detail="Billing service temporarily unavailable")
    return HTTPException(status_code=502, detail=f"Billing provider error: {e}")


def signup_idempotency_key(customer_id: str, plan: SignupPlan, account: str) -> str:
    """Deterministic key so a retried signup reuses the subscription created the first time"""
    first = plan.phases[0]
    if first.months is not None:
        first_sig = f"dur:{first.months}"
    elif first.end_date is not None:
        first_sig = f"end:{first.end_date}"
    else:
        first_sig = "open"
    last_items = ",".join(str(item.quantity) for item in plan.phases[-1].items)
    base_raw = f"sched:{customer_id}:{plan.base_quantity}:{len(plan.phases)}:{first_sig}:{last_items}:{account}"
    return _sha256(base_raw + "|sub.create:v1")


class SubscriptionService:
    """Service for seasonal subscription management"""

    def __init__(
        self,
        gateway: BillingGateway,
        resolver: ServiceAreaResolver,
        price_book: PriceBook,
        settings: Optional[SchedulingSettings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.gateway = gateway
        self.resolver = resolver
        self.price_book = price_book
        self.settings = settings or SchedulingSettings()
        self.clock = clock

    def _ensure_available(self) -> None:
        if not self.gateway.is_available():
            raise HTTPException(status_code=503, detail="Billing service temporarily unavailable")

    # ========================================================================
    # SIGNUP
    # ========================================================================

    async def create_subscription(
        self, account: AccountType, request: CreateSubscriptionRequest
    ) -> CreateSubscriptionResponse:
        """
        Resolve addresses, plan the phases and create the subscription for the first phase.

        The remaining phases are not attached here; the schedule reconciler
        rebuilds them from the compact rules once the first invoice is paid.
        """
        self._ensure_available()

        addresses = [svc.to_address() for svc in request.services]
        try:
            resolved = self.resolver.resolve_all(addresses)
        except UnresolvedAddressError as e:
            raise HTTPException(
                status_code=400,
                detail={"error": "Some addresses are outside our service areas", "failures": e.failures},
            ) from e

        now = int(self.clock())
        prices = self.price_book.for_account(account)
        windows = windows_from_selections(resolved, [s.seasonal_2nd for s in request.selections], now)
        billed = valid_windows(windows)

        try:
            plan = emit_phases(
                build_timeline(billed),
                len(resolved),
                now,
                prices,
                self.settings.proration_behavior,
                windows=billed,
                horizon_days=self.settings.horizon_days,
            )
        except NoBillableItemsError as e:
            raise HTTPException(status_code=400, detail="No billable items") from e

        compact = [
            CompactRule.from_resolved(
                address,
                rule,
                season_start=window.start if window else None,
                season_end=window.end if window else None,
            )
            for address, rule, window in zip(addresses, resolved, windows)
        ]
        addr_mini = json.dumps([{"c": a.city, "z": a.zip} for a in addresses], separators=(",", ":"))
        metadata = {
            **encode_compact_rules(compact, chunk_size=METADATA_CHUNK_SIZE),
            **chunk_for_metadata("addr_mini", addr_mini, METADATA_CHUNK_SIZE),
            "signup_account_type": account,
            "schedule_phase_count": str(len(plan.phases) - 1),
            "phases_idem": plan.phases_hash,
        }

        full_addresses = json.dumps(
            [
                {
                    "index": idx,
                    **svc.to_provider_address(),
                    "seasonal_selected": selection.seasonal_2nd,
                }
                for idx, (svc, selection) in enumerate(zip(request.services, request.selections))
            ],
            separators=(",", ":"),
        )

        try:
            customer = await self.gateway.find_or_create_customer(request.email)
            primary = request.billing or request.services[0]
            await self.gateway.update_customer(
                customer.id,
                address=primary.to_provider_address(),
                metadata={
                    **chunk_for_metadata("service_addresses", full_addresses, METADATA_CHUNK_SIZE),
                    "service_address_count": str(len(request.services)),
                },
            )

            sub = await self.gateway.create_subscription(
                customer.id,
                items=list(plan.phases[0].items),
                metadata=metadata,
                billing_cycle_anchor=plan.anchor if plan.anchor > now else None,
                idempotency_key=signup_idempotency_key(customer.id, plan, account),
            )
        except ProviderError as e:
            logger.error(f"❌ Error creating subscription for {mask_email(request.email)}: {e}")
            raise _provider_http_error(e) from e

        logger.info(
            f"✅ Created subscription {sub.id} for {mask_email(request.email)} "
            f"with {len(plan.phases)} planned phases"
        )
        for idx, (start, end) in enumerate(phase_intervals(plan.phases, now)):
            logger.debug(f"[SIGNUP] Phase {idx}: {to_iso(start)} -> {to_iso(end) or 'open'}")

        invoice = sub.latest_invoice
        response = CreateSubscriptionResponse(
            subscription_id=sub.id,
            customer_id=customer.id,
            latest_invoice_id=invoice.id if invoice else None,
            phase_count=len(plan.phases),
            phases_hash=plan.phases_hash,
        )
        if invoice is None or invoice.amount_due == 0:
            response.no_initial_charge = True
            return response

        if not invoice.client_secret:
            raise HTTPException(status_code=400, detail="Failed to create payment intent")
        response.client_secret = invoice.client_secret
        return response

    async def get_prices(self, account: AccountType) -> PricesResponse:
        """Unit amounts for the account's base and seasonal prices"""
        self._ensure_available()
        prices = self.price_book.for_account(account)
        try:
            base = await self.gateway.retrieve_price(prices.base)
            seasonal = await self.gateway.retrieve_price(prices.seasonal)
        except ProviderError as e:
            logger.error(f"❌ Unable to load prices for {account}: {e}")
            raise HTTPException(status_code=500, detail="Unable to load prices") from e

        return PricesResponse(
            account=account,
            currency=(base.currency or "usd").upper(),
            amounts={"trash": base.unit_amount, "seasonal_2nd": seasonal.unit_amount},
        )

    # ========================================================================
    # SEASONAL ADD-ON
    # ========================================================================

    async def toggle_seasonal(self, request: ToggleSeasonalRequest) -> ToggleSeasonalResponse:
        """Shift the seasonal quantity by ``delta``, never below zero"""
        self._ensure_available()
        proration = request.proration or self.settings.proration_behavior

        try:
            sub = await self.gateway.retrieve_subscription(request.subscription_id)
            prices = self.price_book.for_account(sub.metadata.get("signup_account_type"))
            item = sub.item_for(prices.seasonal)
            current_qty = item.quantity if item else 0
            new_qty = max(0, current_qty + request.delta)

            updated = False
            if item:
                await self.gateway.update_subscription_items(
                    sub.id, [{"id": item.id, "quantity": new_qty}], proration
                )
                updated = True
            elif new_qty > 0:
                await self.gateway.update_subscription_items(
                    sub.id, [{"price": prices.seasonal, "quantity": new_qty}], proration
                )
                updated = True
        except ProviderError as e:
            logger.error(f"❌ toggle-seasonal failed for {request.subscription_id}: {e}")
            raise _provider_http_error(e) from e

        logger.info(f"Seasonal quantity for {request.subscription_id}: {current_qty} -> {new_qty}")
        return ToggleSeasonalResponse(
            subscription_id=request.subscription_id, seasonal_quantity=new_qty, updated=updated
        )

    # ========================================================================
    # OVERVIEW
    # ========================================================================

    async def _find_schedule(self, sub: SubscriptionView) -> Optional[ScheduleView]:
        if sub.schedule is not None:
            return await self.gateway.retrieve_schedule(ref_id(sub.schedule))
        schedule_id = sub.metadata.get("schedule_id")
        if not schedule_id:
            return None
        try:
            return await self.gateway.retrieve_schedule(schedule_id)
        except ProviderError as e:
            logger.warning(f"⚠️ schedule_id in metadata not retrievable: {schedule_id} ({e})")
            return None

    @staticmethod
    def _schedule_summary(schedule: ScheduleView) -> ScheduleSummary:
        phases = [
            PhaseSummary(
                start=to_iso(p.start_date),
                end=to_iso(p.end_date),
                items=[PhaseItemOut(price=i.price, quantity=i.quantity) for i in p.items],
            )
            for p in schedule.phases
        ]
        current = None
        if schedule.current_phase_start is not None:
            current = PhaseSummary(
                start=to_iso(schedule.current_phase_start),
                end=to_iso(schedule.current_phase_end),
                items=[],
            )
        last = schedule.phases[-1] if schedule.phases else None
        return ScheduleSummary(
            id=schedule.id,
            current_phase=current,
            phases=phases,
            last_phase_open_ended=schedule.end_behavior == "release" or (last is not None and last.end_date is None),
        )

    async def get_overview(
        self, subscription_id: Optional[str] = None, customer_id: Optional[str] = None
    ) -> SubscriptionOverviewResponse:
        """Schedule calendar and next-invoice preview for one subscription"""
        if not subscription_id and not customer_id:
            raise HTTPException(status_code=400, detail="Provide subscription_id or customer_id")
        self._ensure_available()

        try:
            if subscription_id:
                sub = await self.gateway.retrieve_subscription(subscription_id)
            else:
                sub = await self.gateway.latest_subscription_for_customer(customer_id)
            if sub is None:
                raise HTTPException(status_code=404, detail="Subscription not found")

            schedule = await self._find_schedule(sub)
            resolved_customer = ref_id(sub.customer)
            next_invoice = None
            if resolved_customer:
                preview = await self.gateway.preview_invoice(resolved_customer, sub.id)
                next_invoice = NextInvoice(
                    amount_due=preview.amount_due,
                    currency=(preview.currency or "usd").upper(),
                    next_payment_attempt=to_iso(preview.next_payment_attempt),
                    lines=[
                        InvoiceLineOut(
                            price=line.price,
                            quantity=line.quantity,
                            amount=line.amount,
                            period_start=to_iso(line.period_start),
                            period_end=to_iso(line.period_end),
                        )
                        for line in preview.lines
                    ],
                )
        except ProviderError as e:
            logger.error(f"❌ subscription-overview error: {e}")
            raise _provider_http_error(e) from e

        price_metadata = {}
        for item in sub.items:
            label = self.price_book.label(item.price)
            if label and item.price not in price_metadata:
                price_metadata[item.price] = PriceLabel(name=PRICE_LABELS[label], type=label)

        return SubscriptionOverviewResponse(
            subscription_id=sub.id,
            customer_id=resolved_customer,
            next_invoice=next_invoice,
            schedule=self._schedule_summary(schedule) if schedule else None,
            price_metadata=price_metadata,
        )
