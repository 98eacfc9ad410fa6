"""Price ids per account type"""

from typing import Literal, Optional

from pydantic import BaseModel

from ...config import (
    STRIPE_PRICE_BUSINESS_BASE,
    STRIPE_PRICE_BUSINESS_SEASONAL,
    STRIPE_PRICE_INDIVIDUAL_BASE,
    STRIPE_PRICE_INDIVIDUAL_SEASONAL,
)
from ..scheduling.phases import PriceRefs

AccountType = Literal["individual", "business"]


class PriceBook(BaseModel):
    individual: PriceRefs
    business: PriceRefs

    def for_account(self, account: Optional[str]) -> PriceRefs:
        """Anything other than "business" bills at individual prices"""
        return self.business if account == "business" else self.individual

    def label(self, price_id: str) -> Optional[str]:
        """Classify a price id as base or seasonal; None for a price this book does not know."""
        for refs in (self.individual, self.business):
            if price_id == refs.base:
                return "base"
            if price_id == refs.seasonal:
                return "seasonal"
        return None


def default_price_book() -> PriceBook:
    return PriceBook(
        individual=PriceRefs(base=STRIPE_PRICE_INDIVIDUAL_BASE, seasonal=STRIPE_PRICE_INDIVIDUAL_SEASONAL),
        business=PriceRefs(base=STRIPE_PRICE_BUSINESS_BASE, seasonal=STRIPE_PRICE_BUSINESS_SEASONAL),
    )
