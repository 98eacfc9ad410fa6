"""Pytest configuration: import path and shared fixtures.

Adds the project root to sys.path so ``pickup_billing`` resolves without an
install, and provides price references, a price book and the in-memory
billing gateway.
"""

from __future__ import annotations

import calendar
import os
import sys

import pytest

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)
if CURRENT_DIR not in sys.path:
    sys.path.insert(0, CURRENT_DIR)

from fakes import FakeBillingGateway  # noqa: E402

from pickup_billing.domain.billing.prices import PriceBook  # noqa: E402
from pickup_billing.domain.scheduling.phases import PriceRefs  # noqa: E402


def utc(year: int, month: int, day: int, hour: int = 0) -> int:
    """Epoch seconds for a UTC date."""
    return calendar.timegm((year, month, day, hour, 0, 0))


@pytest.fixture
def prices() -> PriceRefs:
    return PriceRefs(base="price_base", seasonal="price_seasonal")


@pytest.fixture
def price_book(prices: PriceRefs) -> PriceBook:
    return PriceBook(
        individual=prices,
        business=PriceRefs(base="price_biz_base", seasonal="price_biz_seasonal"),
    )


@pytest.fixture
def gateway() -> FakeBillingGateway:
    return FakeBillingGateway()
