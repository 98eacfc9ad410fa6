"""
Schedule reconciler

Attaches a phase schedule to a subscription after its first invoice is paid.
The signup request only creates the subscription; the future phases are
rebuilt here from the compact rules persisted in the subscription metadata,
with the same timeline code the signup path uses.

Per subscription: unattached -> attaching -> attached. The subscription is
marked ``attaching`` before the schedule is created, so a schedule left
half-done by a failed run is picked up again on the next delivery instead of
being mistaken for one that is already complete. A subscription marked
attached, or carrying a schedule this routine did not start, is left untouched.
"""

import logging
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from ..billing.gateway import BillingGateway, ScheduleView, SubscriptionView, ref_id
from ..billing.prices import PriceBook
from .codec import decode_compact_rules
from .errors import ProviderError
from .phases import LineItem, SchedulingSettings, plan_reconciled_phases

logger = logging.getLogger(__name__)

SCHEDULE_ATTACHED_KEY = "schedule_attached"
SCHEDULE_STATUS_KEY = "schedule_status"
STATUS_ATTACHING = "attaching"
STATUS_ATTACHED = "attached"


class ReconcileOutcome(str, Enum):
    ATTACHED = "attached"
    ALREADY_ATTACHED = "already_attached"
    SCHEDULE_EXISTS = "schedule_exists"
    NO_RULES = "no_rules"


class ReconcileResult(BaseModel):
    outcome: ReconcileOutcome
    subscription_id: str
    schedule_id: Optional[str] = None
    phase_count: int = 0
    truncated: bool = False
    resumed: bool = False


def is_attaching(sub: SubscriptionView) -> bool:
    """True when an earlier run created the schedule but did not finish publishing it."""
    return (
        sub.metadata.get(SCHEDULE_STATUS_KEY) == STATUS_ATTACHING
        and sub.metadata.get(SCHEDULE_ATTACHED_KEY) != "1"
    )


class ScheduleReconciler:
    """Builds and publishes the full phase schedule for one subscription"""

    def __init__(
        self,
        gateway: BillingGateway,
        price_book: PriceBook,
        settings: Optional[SchedulingSettings] = None,
    ):
        self.gateway = gateway
        self.price_book = price_book
        self.settings = settings or SchedulingSettings()

    async def ensure_schedule_attached(self, subscription_id: str) -> ReconcileResult:
        sub = await self.gateway.retrieve_subscription(subscription_id)

        if sub.metadata.get(SCHEDULE_ATTACHED_KEY) == "1":
            logger.info(f"Schedule already attached to {subscription_id}, skipping")
            return ReconcileResult(
                outcome=ReconcileOutcome.ALREADY_ATTACHED,
                subscription_id=subscription_id,
                schedule_id=sub.metadata.get("schedule_id"),
            )
        resuming = sub.schedule is not None and is_attaching(sub)
        if sub.schedule is not None and not resuming:
            logger.info(f"Subscription {subscription_id} already has schedule {ref_id(sub.schedule)}, skipping")
            return ReconcileResult(
                outcome=ReconcileOutcome.SCHEDULE_EXISTS,
                subscription_id=subscription_id,
                schedule_id=ref_id(sub.schedule),
            )

        rules = decode_compact_rules(sub.metadata)
        if not rules:
            logger.warning(f"⚠️ No addr_rules on subscription {subscription_id}; cannot build schedule phases")
            return ReconcileResult(outcome=ReconcileOutcome.NO_RULES, subscription_id=subscription_id)

        prices = self.price_book.for_account(sub.metadata.get("signup_account_type"))

        if resuming:
            logger.warning(
                f"⚠️ Resuming half-attached schedule {ref_id(sub.schedule)} on {subscription_id}"
            )
            schedule = await self.gateway.retrieve_schedule(ref_id(sub.schedule))
        else:
            await self.gateway.update_subscription_metadata(
                subscription_id, {SCHEDULE_STATUS_KEY: STATUS_ATTACHING}
            )
            schedule = await self.gateway.create_schedule_from_subscription(subscription_id)
            if not schedule.phases:
                schedule = await self.gateway.retrieve_schedule(schedule.id)
        current = self._current_phase(schedule)
        if current.start_date is None:
            raise ProviderError(f"Schedule {schedule.id} has no current phase with a start date")

        plan = plan_reconciled_phases(
            rules,
            current_start=current.start_date,
            current_end=current.end_date,
            current_items=[LineItem(price=i.price, quantity=i.quantity) for i in current.items],
            prices=prices,
            settings=self.settings,
        )

        await self.gateway.update_schedule(schedule.id, plan.phases, end_behavior="release")
        logger.info(
            f"✅ Schedule {schedule.id} attached to {subscription_id} with {len(plan.phases)} phases "
            f"(base qty {plan.base_quantity})"
        )

        try:
            await self.gateway.update_subscription_metadata(
                subscription_id,
                {
                    SCHEDULE_ATTACHED_KEY: "1",
                    SCHEDULE_STATUS_KEY: STATUS_ATTACHED,
                    "schedule_id": schedule.id,
                },
            )
        except ProviderError as e:
            # still marked attaching, so the next delivery republishes and retries the mark
            logger.warning(f"⚠️ Could not mark {subscription_id} as attached: {e}")

        return ReconcileResult(
            outcome=ReconcileOutcome.ATTACHED,
            subscription_id=subscription_id,
            schedule_id=schedule.id,
            phase_count=len(plan.phases),
            truncated=plan.truncated,
            resumed=resuming,
        )

    @staticmethod
    def _current_phase(schedule: ScheduleView):
        """The phase covering now: the one starting at current_phase_start, else the first."""
        if schedule.current_phase_start is not None:
            for phase in schedule.phases:
                if phase.start_date == schedule.current_phase_start:
                    return phase
        if not schedule.phases:
            raise ProviderError(f"Schedule {schedule.id} has no phases")
        return schedule.phases[0]
