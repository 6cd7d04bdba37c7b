#!/usr/bin/env python3
"""Shared fixtures for TrapGuard tests."""

import pytest
from unittest.mock import Mock


START_TIME = 1_700_000_000.0


class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    """Create a fake clock starting at a fixed epoch."""
    return FakeClock()


@pytest.fixture
def dict_redis():
    """Create mock Redis client backed by a dict."""
    redis = Mock()
    redis.ping.return_value = True
    redis._data = {}
    redis._ttls = {}

    def set_impl(key, value):
        redis._data[key] = value
        redis._ttls.pop(key, None)
        return True

    def setex_impl(key, ttl, value):
        redis._data[key] = value
        redis._ttls[key] = ttl
        return True

    def get_impl(key):
        return redis._data.get(key)

    def delete_impl(key):
        if key in redis._data:
            del redis._data[key]
            redis._ttls.pop(key, None)
            return 1
        return 0

    def scan_iter_impl(match=None, count=None):
        prefix = (match or '').replace('*', '')
        return iter([k for k in list(redis._data) if k.startswith(prefix)])

    redis.set.side_effect = set_impl
    redis.setex.side_effect = setex_impl
    redis.get.side_effect = get_impl
    redis.delete.side_effect = delete_impl
    redis.scan_iter.side_effect = scan_iter_impl
    return redis
