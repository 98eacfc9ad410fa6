"""
Service Area Resolver

Maps a service address to its pickup rule: base weekday, optional seasonal
weekday and optional seasonal window. Rules match by exact (case-insensitive)
city name first, then by the longest matching ZIP prefix.

The rule table is read-only once loaded; build one ServiceAreaResolver per
process and share it.
"""

import json
import logging
from calendar import timegm
from pathlib import Path
from typing import Iterable, Literal, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..domain.scheduling.errors import UnresolvedAddressError

logger = logging.getLogger(__name__)

# Sun=0, matching the weekday numbers stored in subscription metadata
WEEKDAYS = {"Sun": 0, "Mon": 1, "Tue": 2, "Wed": 3, "Thu": 4, "Fri": 5, "Sat": 6}


class Address(BaseModel):
    """Service address as submitted by the signup form"""

    model_config = ConfigDict(frozen=True)

    line1: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""


class SeasonWindowRule(BaseModel):
    """Seasonal window in UTC epoch seconds, half-open [start_utc, end_utc)"""

    model_config = ConfigDict(frozen=True)

    start_utc: int
    end_utc: int
    annual: bool = False  # roll forward to next year's occurrence once ended


class AreaRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    city: Optional[str] = None
    zip_prefix: Optional[str] = None
    base_day: int = Field(ge=0, le=6)
    secondary_day: Optional[int] = Field(default=None, ge=0, le=6)
    season: Optional[SeasonWindowRule] = None
    note: Optional[str] = None

    @model_validator(mode="after")
    def require_matcher(self) -> "AreaRule":
        if not self.city and not self.zip_prefix:
            raise ValueError("area rule needs a city or a zip_prefix")
        return self


class ResolvedRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    base_day: int
    secondary_day: Optional[int] = None
    season: Optional[SeasonWindowRule] = None
    matched_by: Literal["city", "zip_prefix"]
    rule_note: Optional[str] = None


def _utc(year: int, month: int, day: int) -> int:
    return timegm((year, month, day, 0, 0, 0))


DEFAULT_AREA_RULES: tuple[AreaRule, ...] = (
    AreaRule(
        city="Topsail Beach",
        base_day=WEEKDAYS["Mon"],
        secondary_day=WEEKDAYS["Thu"],
        season=SeasonWindowRule(start_utc=_utc(2025, 5, 26), end_utc=_utc(2025, 9, 1), annual=True),
    ),
    AreaRule(
        city="Surf City",
        base_day=WEEKDAYS["Tue"],
        secondary_day=WEEKDAYS["Fri"],
        season=SeasonWindowRule(start_utc=_utc(2025, 5, 1), end_utc=_utc(2025, 9, 30), annual=True),
    ),
    AreaRule(
        city="North Topsail Beach",
        base_day=WEEKDAYS["Wed"],
        secondary_day=WEEKDAYS["Sat"],
        season=SeasonWindowRule(start_utc=_utc(2025, 5, 2), end_utc=_utc(2025, 10, 26), annual=True),
    ),
    # city wins over the prefix; the prefix is only here for addresses with odd city spellings
    AreaRule(city="Wilmington", zip_prefix="28401", base_day=WEEKDAYS["Tue"]),
    AreaRule(zip_prefix="284", base_day=WEEKDAYS["Tue"], note="generic coastal area, no seasonal"),
)


def _norm(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def clean_zip(value: Optional[str]) -> str:
    return (value or "").strip()[:5]


class ServiceAreaResolver:
    """Resolves addresses against an injected, read-only rule table."""

    def __init__(self, rules: Iterable[AreaRule] = DEFAULT_AREA_RULES):
        self.rules: tuple[AreaRule, ...] = tuple(rules)

    def resolve(self, address: Address) -> Optional[ResolvedRule]:
        """
        Resolve the rule for one address.

        Returns:
            The matched rule, or None when the address is outside every service area
        """
        city = _norm(address.city)
        for rule in self.rules:
            if rule.city and _norm(rule.city) == city:
                return self._result(rule, "city")

        zipcode = clean_zip(address.zip)
        candidates = [r for r in self.rules if r.zip_prefix and zipcode.startswith(r.zip_prefix)]
        if candidates:
            best = max(candidates, key=lambda r: len(r.zip_prefix))
            return self._result(best, "zip_prefix")

        logger.debug(f"No service area rule for city={address.city!r} zip={zipcode!r}")
        return None

    def resolve_all(self, addresses: Sequence[Address]) -> list[ResolvedRule]:
        """Resolve a batch; any miss rejects the whole batch with the failing indices."""
        resolved: list[ResolvedRule] = []
        failures: list[int] = []
        for idx, address in enumerate(addresses):
            rule = self.resolve(address)
            if rule is None:
                failures.append(idx)
            else:
                resolved.append(rule)
        if failures:
            logger.warning(f"⚠️ Addresses outside service areas at indices {failures}")
            raise UnresolvedAddressError(failures)
        return resolved

    @staticmethod
    def _result(rule: AreaRule, matched_by: Literal["city", "zip_prefix"]) -> ResolvedRule:
        return ResolvedRule(
            base_day=rule.base_day,
            secondary_day=rule.secondary_day,
            season=rule.season,
            matched_by=matched_by,
            rule_note=rule.note,
        )


def load_area_rules(path: Optional[str] = None) -> tuple[AreaRule, ...]:
    """Load the rule table from a JSON file, or fall back to the built-in table."""
    if not path:
        return DEFAULT_AREA_RULES
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    rules = tuple(AreaRule.model_validate(item) for item in raw)
    logger.info(f"✅ Loaded {len(rules)} service area rules from {path}")
    return rules
