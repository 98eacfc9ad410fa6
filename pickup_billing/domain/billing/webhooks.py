"""
Stripe webhook handling

Verifies the signature, drops duplicate deliveries and dispatches the
subscription lifecycle events that drive schedule reconciliation.
"""

import asyncio
import json
import logging
from functools import lru_cache
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from ...config import SCHEDULING, STRIPE_WEBHOOK_SECRET
from ...webhook_security import verify_stripe_webhook
from ..scheduling.months import to_iso
from ..scheduling.reconciler import ScheduleReconciler
from .dedupe import EventDeduplicator, build_event_deduplicator
from .gateway import BillingGateway, parse_ref, ref_id
from .prices import default_price_book
from .stripe_service import stripe_billing_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Webhooks"])

# Statuses in which a subscription should carry its phase schedule
RECONCILE_STATUSES = {"active", "trialing", "past_due", "unpaid"}


def _invoice_subscription_ref(obj: dict) -> Any:
    parent = obj.get("parent") or {}
    return obj.get("subscription") or (parent.get("subscription_details") or {}).get("subscription")


async def subscription_id_from_invoice(invoice: dict, gateway: BillingGateway) -> Optional[str]:
    """
    Resolve the subscription id behind an invoice payload.

    Fallback order:
     1) the subscription field as a bare id
     2) the subscription field as an expanded object
     3) re-fetch the invoice and read its subscription
     4) the first invoice line that references a subscription
    """
    direct = parse_ref(_invoice_subscription_ref(invoice))
    if direct is not None:
        return ref_id(direct)

    invoice_id = invoice.get("id")
    if not invoice_id:
        return None

    full = await gateway.retrieve_invoice(invoice_id)
    if full.subscription is not None:
        return ref_id(full.subscription)
    for line in full.lines:
        if line.subscription is not None:
            return ref_id(line.subscription)
    return None


class StripeWebhookHandler:
    """Dispatches verified events to their handlers"""

    def __init__(self, gateway: BillingGateway, reconciler: ScheduleReconciler):
        self.gateway = gateway
        self.reconciler = reconciler
        self.handlers = {
            "invoice.paid": self.on_invoice_paid,
            "invoice.payment_failed": self.on_invoice_failed,
            "customer.subscription.updated": self.on_subscription_updated,
            "subscription_schedule.created": self.on_schedule_upserted,
            "subscription_schedule.updated": self.on_schedule_upserted,
        }

    async def handle(self, event: dict) -> bool:
        """Run the handler for ``event``; False when the type is not handled."""
        handler = self.handlers.get(event.get("type"))
        if handler is None:
            return False
        await handler((event.get("data") or {}).get("object") or {})
        return True

    async def on_invoice_paid(self, invoice: dict) -> None:
        subscription_id = await subscription_id_from_invoice(invoice, self.gateway)
        logger.info(
            f"📥 invoice.paid invoice={invoice.get('id')} subscription={subscription_id} "
            f"amount_paid={invoice.get('amount_paid')} billing_reason={invoice.get('billing_reason')}"
        )
        if not subscription_id:
            logger.warning("⚠️ invoice.paid without resolvable subscription id, skipping schedule attach")
            return
        await self.reconciler.ensure_schedule_attached(subscription_id)

    async def on_invoice_failed(self, invoice: dict) -> None:
        logger.warning(
            f"⚠️ invoice.payment_failed subscription={ref_id(parse_ref(_invoice_subscription_ref(invoice)))} "
            f"customer={ref_id(parse_ref(invoice.get('customer')))} attempt_count={invoice.get('attempt_count')}"
        )

    async def on_subscription_updated(self, sub: dict) -> None:
        subscription_id = sub.get("id")
        status = sub.get("status")
        logger.info(f"📥 customer.subscription.updated subscription={subscription_id} status={status}")
        if subscription_id and status in RECONCILE_STATUSES:
            await self.reconciler.ensure_schedule_attached(subscription_id)

    async def on_schedule_upserted(self, schedule: dict) -> None:
        phases = [
            f"{to_iso(p.get('start_date')) or '?'}..{to_iso(p.get('end_date')) or 'open'}"
            for p in schedule.get("phases") or []
        ]
        logger.info(
            f"📥 subscription_schedule upserted schedule={schedule.get('id')} "
            f"subscription={ref_id(parse_ref(schedule.get('subscription')))} phases={phases}"
        )


@lru_cache(maxsize=1)
def get_event_deduplicator() -> EventDeduplicator:
    return build_event_deduplicator()


def get_webhook_handler() -> StripeWebhookHandler:
    """Dependency injection for StripeWebhookHandler"""
    reconciler = ScheduleReconciler(stripe_billing_service, default_price_book(), SCHEDULING)
    return StripeWebhookHandler(stripe_billing_service, reconciler)


def get_webhook_secret() -> Optional[str]:
    return STRIPE_WEBHOOK_SECRET


@router.post("/webhooks/stripe")
async def handle_stripe_webhook(
    request: Request,
    handler: StripeWebhookHandler = Depends(get_webhook_handler),
    deduplicator: EventDeduplicator = Depends(get_event_deduplicator),
    secret: Optional[str] = Depends(get_webhook_secret),
):
    """
    Verify and process Stripe subscription lifecycle events.

    Errors while handling answer 500 so Stripe redelivers the event; an event
    is only marked as seen after its handler succeeded.
    """
    if not secret:
        logger.error("❌ STRIPE_WEBHOOK_SECRET not configured")
        raise HTTPException(status_code=500, detail="Webhook not configured")

    _, raw_body = await verify_stripe_webhook(request, secret, raise_on_failure=True)

    try:
        event = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        logger.error(f"Failed to parse webhook JSON: {e}")
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from e

    event_id = event.get("id") or ""
    event_type = event.get("type")
    if event_id and await asyncio.to_thread(deduplicator.was_seen_before, event_id):
        logger.info(f"🔄 Webhook {event_id} already processed, skipping")
        return {"received": True, "deduped": True}

    logger.info(f"🔔 Webhook received id={event_id} type={event_type}")
    try:
        handled = await handler.handle(event)
    except Exception as e:
        logger.error(f"❌ Webhook handler error for {event_type}: {e}")
        raise HTTPException(status_code=500, detail="Handler error") from e

    if event_id:
        await asyncio.to_thread(deduplicator.mark_seen, event_id)
    return {"received": True, "handled": handled}
