"""
Compact per-address rule codec

Provider metadata values are capped at roughly 500 characters, so the facts
needed to rebuild a schedule later are stored as a compact JSON array:

    [{"c": city, "z": zip, "b": baseDay, "s": secondaryDay|-1, "ss": seasonStart|-1, "se": seasonEnd|-1}]

Season fields are only filled for addresses whose seasonal add-on was
selected. Arrays longer than the cap are split at element boundaries into
``addr_rules_1``, ``addr_rules_2``, ... so that every chunk is valid JSON on
its own. Cities are shortened so that a single rule always fits a chunk.
"""

import json
import logging
import re
from typing import Any, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict

from ...services.service_area_resolver import Address, ResolvedRule, clean_zip
from .errors import MalformedCompactRuleChunkError

logger = logging.getLogger(__name__)

ADDR_RULES_KEY = "addr_rules"
METADATA_CHUNK_SIZE = 480
ABSENT = -1
# cities are cut to this length when a compact rule is built
MAX_CITY_CHARS = 64


class CompactRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    c: str
    z: str
    b: int
    s: int = ABSENT
    ss: int = ABSENT
    se: int = ABSENT

    @property
    def opted_in(self) -> bool:
        """True when this address bills a valid seasonal window."""
        return self.s != ABSENT and self.se > self.ss > 0

    @classmethod
    def from_resolved(
        cls,
        address: Address,
        rule: ResolvedRule,
        season_start: Optional[int] = None,
        season_end: Optional[int] = None,
    ) -> "CompactRule":
        return cls(
            c=address.city.strip()[:MAX_CITY_CHARS],
            z=clean_zip(address.zip),
            b=rule.base_day,
            s=ABSENT if rule.secondary_day is None else rule.secondary_day,
            ss=ABSENT if season_start is None else season_start,
            se=ABSENT if season_end is None else season_end,
        )


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


def _coerce_int(value: Any) -> int:
    # Metadata round-trips can hand numbers back as strings
    if isinstance(value, bool):
        raise ValueError(f"not a number: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        return int(float(value.strip()))
    raise ValueError(f"not a number: {value!r}")


def _chunk_keys(metadata: Mapping[str, str], prefix: str) -> list[str]:
    """Keys ``prefix`` and ``prefix_<n>``, unsuffixed first, then by numeric suffix."""
    pattern = re.compile(rf"^{re.escape(prefix)}(?:_(\d+))?$")
    found: list[tuple[int, str]] = []
    for key in metadata:
        match = pattern.match(key)
        if match:
            found.append((int(match.group(1)) if match.group(1) else -1, key))
    return [key for _, key in sorted(found)]


def chunk_for_metadata(prefix: str, text: str, per_field_max: int = METADATA_CHUNK_SIZE) -> dict[str, str]:
    """Split a free-form string across ``prefix``, or ``prefix_1..n`` when too long."""
    if len(text) <= per_field_max:
        return {prefix: text}
    return {
        f"{prefix}_{n}": text[start : start + per_field_max]
        for n, start in enumerate(range(0, len(text), per_field_max), start=1)
    }


def join_metadata_chunks(metadata: Optional[Mapping[str, str]], prefix: str) -> Optional[str]:
    """Inverse of chunk_for_metadata; None when no chunk is present."""
    if not metadata:
        return None
    keys = _chunk_keys(metadata, prefix)
    if not keys:
        return None
    return "".join(str(metadata[k]) for k in keys)


def _fit_rule(item: dict, chunk_size: int) -> dict:
    """Shorten the city of one rule until the rule fits a chunk on its own."""
    original_city = item["c"]
    while len(_dumps([item])) > chunk_size and item["c"]:
        overflow = len(_dumps([item])) - chunk_size
        item = {**item, "c": item["c"][: max(0, len(item["c"]) - overflow)]}
    if len(_dumps([item])) > chunk_size:
        raise ValueError(f"chunk size {chunk_size} cannot hold a single compact rule")
    if item["c"] != original_city:
        logger.warning(f"⚠️ Shortened city {original_city[:32]!r} to fit a {chunk_size} char field")
    return item


def encode_compact_rules(
    rules: Sequence[CompactRule],
    key: str = ADDR_RULES_KEY,
    chunk_size: int = METADATA_CHUNK_SIZE,
) -> dict[str, str]:
    """
    Serialize rules into one or more metadata fields, each a complete JSON array.

    Every value is at most ``chunk_size`` characters. A single chunk is stored
    under ``key``; more than one under ``key_1``, ``key_2``, ...
    """
    items = [_fit_rule(rule.model_dump(), chunk_size) for rule in rules]
    whole = _dumps(items)
    if len(whole) <= chunk_size:
        return {key: whole}

    chunks: list[str] = []
    current: list[dict] = []
    for item in items:
        candidate = current + [item]
        if current and len(_dumps(candidate)) > chunk_size:
            chunks.append(_dumps(current))
            current = [item]
        else:
            current = candidate
    if current:
        chunks.append(_dumps(current))

    logger.debug(f"Encoded {len(items)} compact rules into {len(chunks)} metadata chunks")
    return {f"{key}_{n}": chunk for n, chunk in enumerate(chunks, start=1)}


def _parse_chunk(key: str, raw: Any) -> list[CompactRule]:
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedCompactRuleChunkError(key, f"invalid JSON ({e})") from e
    if not isinstance(parsed, list):
        raise MalformedCompactRuleChunkError(key, "not a JSON array")

    rules = []
    for entry in parsed:
        if not isinstance(entry, dict):
            raise MalformedCompactRuleChunkError(key, f"unexpected entry {entry!r}")
        try:
            rules.append(
                CompactRule(
                    c=str(entry.get("c") or ""),
                    z=str(entry.get("z") or ""),
                    b=_coerce_int(entry.get("b")),
                    s=_coerce_int(entry.get("s", ABSENT)),
                    ss=_coerce_int(entry.get("ss", ABSENT)),
                    se=_coerce_int(entry.get("se", ABSENT)),
                )
            )
        except (TypeError, ValueError) as e:
            raise MalformedCompactRuleChunkError(key, str(e)) from e
    return rules


def decode_compact_rules(
    metadata: Optional[Mapping[str, str]], key: str = ADDR_RULES_KEY
) -> list[CompactRule]:
    """
    Read rules back from metadata, in original order.

    Malformed chunks are logged and skipped; the rules from the other chunks
    are still returned.
    """
    if not metadata:
        return []
    rules: list[CompactRule] = []
    for chunk_key in _chunk_keys(metadata, key):
        try:
            rules.extend(_parse_chunk(chunk_key, metadata[chunk_key]))
        except MalformedCompactRuleChunkError as e:
            logger.warning(f"⚠️ Skipping compact rule chunk: {e}")
    return rules
