#!/usr/bin/env python3
"""
Integration tests for the complete decoy endpoint pipeline.

These tests drive requests through the guard and verify the classifier,
rule engine, event history, block registry and statistics together:
- Instant blocks for critical probes
- Rate-based blocks and window boundaries
- Block expiry, manual unblock and re-blocking
- Redis-backed block storage and degraded operation
"""

from unittest.mock import Mock

import pytest
import redis

from src.trapguard import TrapGuard, TimeRange, create_trap_guard


ATTACKER = "203.0.113.7"
SQLI = ("/search", "?id=1 UNION SELECT name FROM users")


@pytest.fixture
def guard(clock):
    return create_trap_guard(clock=clock)


class TestCriticalProbe:
    """Test a single critical request end to end."""

    def test_env_probe_blocks_for_a_day(self, guard, clock):
        decision = guard.handle_request(ATTACKER, "/.env")
        assert decision.blocked
        assert decision.detection.details == "Config file access: /.env"

        allowed, reason = guard.check_access(ATTACKER)
        assert not allowed
        assert reason == "Auto-blocked by rule: Block CRITICAL attacks instantly"

        clock.advance(86400)
        assert guard.is_blocked(ATTACKER)
        clock.advance(1)
        assert not guard.is_blocked(ATTACKER)
        assert guard.check_access(ATTACKER) == (True, "Allowed")

    def test_webshell_probe_blocked_by_first_rule(self, guard):
        decision = guard.handle_request(ATTACKER, "/c99shell.php")
        assert decision.triggered_rules == ('critical-instant',)
        assert not guard.registry.get(ATTACKER).is_permanent


class TestRateBasedBlocking:
    """Test the HIGH severity threshold rule."""

    def test_third_sqli_in_five_minutes_blocks(self, guard, clock):
        decisions = []
        for _ in range(3):
            decisions.append(guard.handle_request(ATTACKER, *SQLI))
            clock.advance(60)
        assert [d.blocked for d in decisions] == [False, False, True]

        record = guard.registry.get(ATTACKER)
        assert record.actor == "AutoBlock"
        assert record.attack_type == "SQL_INJECTION"
        assert record.expires_at - record.blocked_at == 3600

    def test_slow_attacker_is_not_blocked(self, guard, clock):
        for _ in range(5):
            decision = guard.handle_request(ATTACKER, *SQLI)
            assert not decision.blocked
            clock.advance(150)

    def test_one_hour_block_boundaries(self, guard, clock):
        for _ in range(3):
            guard.handle_request(ATTACKER, *SQLI)
        clock.advance(3600 - 0.001)
        assert guard.handle_request(ATTACKER, "/").blocked
        clock.advance(0.002)
        assert not guard.handle_request(ATTACKER, "/").blocked

    def test_cooldown_prevents_immediate_reblock_by_same_rule(self, guard, clock):
        for _ in range(3):
            guard.handle_request(ATTACKER, *SQLI)
        guard.unblock(ATTACKER)

        decision = guard.handle_request(ATTACKER, *SQLI)
        assert not decision.blocked

        clock.advance(300)
        for _ in range(3):
            decision = guard.handle_request(ATTACKER, *SQLI)
        assert decision.blocked
        assert decision.triggered_rules == ('high-3-in-5min',)

    def test_other_addresses_unaffected(self, guard):
        for _ in range(3):
            guard.handle_request(ATTACKER, *SQLI)
        assert guard.check_access("198.51.100.1") == (True, "Allowed")


class TestStatisticsConsistency:
    """Test dashboard numbers after mixed traffic."""

    def test_totals_match_traffic(self, guard, clock):
        start = clock()
        guard.handle_request("198.51.100.1", "/")
        guard.handle_request("198.51.100.2", "/wp-login.php")
        guard.handle_request(ATTACKER, "/.env")
        # Blocked before classification: not recorded
        guard.handle_request(ATTACKER, "/.env")

        stats = guard.get_stats(TimeRange(start, clock()))
        assert stats.total_attacks == 3
        assert stats.blocked_attacks == 1
        assert stats.unique_addresses == 3
        assert sum(stats.attacks_by_type.values()) == stats.total_attacks
        assert sum(stats.attacks_by_severity.values()) == stats.total_attacks
        assert sum(stats.attacks_by_hour) == stats.total_attacks
        assert sum(bucket['count'] for bucket in stats.timeline) == stats.total_attacks
        assert stats.recent_attacks[0].address == ATTACKER

    def test_export_includes_blocked_flag(self, guard):
        guard.handle_request(ATTACKER, "/.env")
        csv_text = guard.statistics.export_csv()
        assert csv_text.splitlines()[1].endswith(",Yes,critical-instant")


class TestRedisBackedGuard:
    """Test the guard with Redis block storage."""

    def test_blocks_persist_across_guards(self, dict_redis, clock):
        config = {'block_storage': {'backend': 'redis'}}
        first = TrapGuard(config, redis_client=dict_redis, clock=clock)
        first.handle_request(ATTACKER, "/.env")

        second = TrapGuard(config, redis_client=dict_redis, clock=clock)
        allowed, _ = second.check_access(ATTACKER)
        assert not allowed
        assert [r.address for r in second.list_blocks()] == [ATTACKER]

    def test_unblock_removes_key(self, dict_redis, clock):
        guard = TrapGuard({'block_storage': {'backend': 'redis'}}, redis_client=dict_redis, clock=clock)
        guard.handle_request(ATTACKER, "/.env")
        assert guard.unblock(ATTACKER)
        assert dict_redis._data == {}

    def test_outage_and_recovery(self, dict_redis, clock):
        guard = TrapGuard({'block_storage': {'backend': 'redis'}}, redis_client=dict_redis, clock=clock)
        healthy_setex = dict_redis.setex.side_effect
        healthy_get = dict_redis.get.side_effect

        dict_redis.setex.side_effect = redis.ConnectionError("down")
        dict_redis.get.side_effect = redis.ConnectionError("down")
        decision = guard.handle_request(ATTACKER, "/.env")
        assert decision.blocked
        assert guard.get_status()['degraded']
        assert guard.is_blocked(ATTACKER)

        dict_redis.setex.side_effect = healthy_setex
        dict_redis.get.side_effect = healthy_get
        assert guard.registry.try_recover()
        assert f"trapguard:blocked:{ATTACKER}" in dict_redis._data
        assert not guard.get_status()['degraded']


class TestRuleAdministration:
    """Test runtime rule changes against live traffic."""

    def test_disable_all_then_reset(self, guard):
        guard.apply_rule_command({'action': 'setAll', 'rules': []})
        assert not guard.handle_request(ATTACKER, "/.env").blocked
        guard.apply_rule_command({'action': 'reset'})
        assert guard.handle_request(ATTACKER, "/.env").blocked

    def test_alert_rule_reported_without_block(self, guard):
        guard.add_rule({
            'id': 'alert-wordpress',
            'conditions': [{'type': 'attack_type', 'operator': 'eq', 'value': 'BRUTE_FORCE'}],
            'action': {'type': 'alert'},
        })
        decision = guard.handle_request(ATTACKER, "/wp-login.php")
        assert not decision.blocked
        assert decision.triggered_rules == ('alert-wordpress',)
        record = guard.statistics.get_recent_attacks(1)[0]
        assert record.triggered_rule == 'alert-wordpress'
