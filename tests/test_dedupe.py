"""Tests for webhook event de-duplication stores."""

from __future__ import annotations

from unittest.mock import Mock

import redis

from pickup_billing.domain.billing.dedupe import InMemoryEventDeduplicator, RedisEventDeduplicator


def test_in_memory_marks_and_reports() -> None:
    store = InMemoryEventDeduplicator()
    assert not store.was_seen_before("evt_1")
    store.mark_seen("evt_1")
    assert store.was_seen_before("evt_1")
    assert not store.was_seen_before("evt_2")


def test_redis_store_uses_prefixed_keys_with_ttl() -> None:
    client = Mock()
    client.exists.return_value = 1
    store = RedisEventDeduplicator(client, ttl=60)

    assert store.was_seen_before("evt_1")
    client.exists.assert_called_once_with("stripe_evt:evt_1")

    store.mark_seen("evt_2")
    client.set.assert_called_once_with("stripe_evt:evt_2", "1", ex=60)


def test_redis_errors_fail_open() -> None:
    """A broken Redis never blocks delivery: lookups answer "not seen", marks are dropped."""
    client = Mock()
    client.exists.side_effect = redis.ConnectionError("down")
    client.set.side_effect = redis.ConnectionError("down")
    store = RedisEventDeduplicator(client, ttl=60)

    assert store.was_seen_before("evt_1") is False
    store.mark_seen("evt_1")
