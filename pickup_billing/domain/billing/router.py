"""Billing router - FastAPI endpoints for seasonal subscriptions"""

import logging
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ...config import SCHEDULING, SERVICE_AREAS_FILE
from ...services.service_area_resolver import ServiceAreaResolver, load_area_rules
from .prices import AccountType, default_price_book
from .schemas import (
    CreateSubscriptionRequest,
    CreateSubscriptionResponse,
    PricesResponse,
    SubscriptionOverviewResponse,
    ToggleSeasonalRequest,
    ToggleSeasonalResponse,
)
from .stripe_service import stripe_billing_service
from .subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])


@lru_cache(maxsize=1)
def get_service_area_resolver() -> ServiceAreaResolver:
    """One read-only rule table per process"""
    return ServiceAreaResolver(load_area_rules(SERVICE_AREAS_FILE))


def get_subscription_service(
    resolver: ServiceAreaResolver = Depends(get_service_area_resolver),
) -> SubscriptionService:
    """Dependency injection for SubscriptionService"""
    return SubscriptionService(stripe_billing_service, resolver, default_price_book(), SCHEDULING)


# ============================================================================
# SIGNUP
# ============================================================================


@router.post("/subscriptions/{account}", response_model=CreateSubscriptionResponse)
async def create_subscription(
    account: AccountType,
    body: CreateSubscriptionRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Create a seasonal pickup subscription for an individual or business account"""
    return await service.create_subscription(account, body)


@router.get("/subscriptions/{account}/prices", response_model=PricesResponse)
async def get_prices(
    account: AccountType,
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Get base and seasonal unit prices for an account type"""
    return await service.get_prices(account)


# ============================================================================
# SUBSCRIPTION MANAGEMENT
# ============================================================================


@router.post("/toggle-seasonal", response_model=ToggleSeasonalResponse)
async def toggle_seasonal(
    body: ToggleSeasonalRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Add or remove seasonal 2nd pickups"""
    return await service.toggle_seasonal(body)


@router.get("/subscription-overview", response_model=SubscriptionOverviewResponse)
async def get_subscription_overview(
    subscription_id: Optional[str] = Query(default=None),
    customer_id: Optional[str] = Query(default=None),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Schedule phases and next invoice preview"""
    return await service.get_overview(subscription_id, customer_id)
