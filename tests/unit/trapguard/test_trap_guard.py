#!/usr/bin/env python3
"""
Unit tests for the integrated guard.

Tests cover:
- Request handling and decisions
- Country gate integration
- Fail-open behavior
- Block and rule management pass-throughs
- Backend selection and degraded start-up
"""

from unittest.mock import Mock, patch

import pytest
import redis

from src.trapguard.attack_types import AttackType, Severity
from src.trapguard.country_gate import GeoLocation
from src.trapguard.exceptions import (
    ConfigurationError,
    RuleNotFoundError,
    RuleValidationError,
)
from src.trapguard.trap_guard import TrapGuard, create_trap_guard, load_trap_guard


ADDRESS = "203.0.113.7"


@pytest.fixture
def guard(clock):
    return TrapGuard(clock=clock)


class TestHandleRequest:
    """Test the decision path."""

    def test_unknown_request_allowed(self, guard):
        decision = guard.handle_request(ADDRESS, "/")
        assert decision.allowed
        assert not decision.blocked
        assert decision.detection.attack_type == AttackType.UNKNOWN
        assert decision.reason == "Unknown attack pattern: /"
        assert decision.record_id is not None

    def test_critical_request_blocked(self, guard):
        decision = guard.handle_request(ADDRESS, "/.env")
        assert decision.blocked
        assert not decision.allowed
        assert decision.triggered_rules == ('critical-instant',)
        assert decision.reason == 'Block CRITICAL attacks instantly'
        assert guard.is_blocked(ADDRESS)

    def test_blocked_address_short_circuits(self, guard):
        guard.handle_request(ADDRESS, "/.env")
        decision = guard.handle_request(ADDRESS, "/")
        assert decision.blocked
        assert decision.detection is None
        assert decision.reason == 'Auto-blocked by rule: Block CRITICAL attacks instantly'
        assert len(guard.statistics) == 1

    def test_scanner_user_agent(self, guard):
        decision = guard.handle_request(ADDRESS, "/", headers={"User-Agent": "sqlmap/1.7"})
        assert decision.detection.severity == Severity.LOW
        assert decision.triggered_rules == ('scanner-detection',)
        assert guard.registry.get(ADDRESS).is_permanent

    def test_statistics_recorded(self, guard):
        guard.handle_request(ADDRESS, "/search", "?id=1 UNION SELECT name FROM users", country_code="de")
        record = guard.statistics.get_recent_attacks(1)[0]
        assert record.attack_type == 'SQL_INJECTION'
        assert record.country_code == 'DE'
        assert not record.blocked
        assert record.triggered_rule is None

    def test_statistics_record_rule(self, guard):
        guard.handle_request(ADDRESS, "/.env")
        record = guard.statistics.get_recent_attacks(1)[0]
        assert record.blocked
        assert record.triggered_rule == 'critical-instant'

    def test_missing_address(self, guard):
        decision = guard.handle_request("", "/.env")
        assert decision.allowed
        assert decision.reason == "Invalid request"

    def test_internal_error_fails_open(self, guard):
        guard.classifier = Mock()
        guard.classifier.classify.side_effect = RuntimeError("regex engine exploded")
        decision = guard.handle_request(ADDRESS, "/.env")
        assert decision.allowed
        assert not decision.blocked
        assert decision.reason == "Decision failed"

    def test_decision_to_dict(self, guard):
        data = guard.handle_request(ADDRESS, "/.env").to_dict()
        assert data['blocked'] is True
        assert data['detection']['attack_type'] == 'ENV_DISCLOSURE'
        assert data['triggered_rules'] == ['critical-instant']


class TestCountryGateIntegration:
    """Test country decisions inside the guard."""

    def test_blocked_country(self, clock):
        guard = TrapGuard(
            {'country_block': {'enabled': True, 'countries': ['CN']}}, clock=clock,
        )
        decision = guard.handle_request(ADDRESS, "/", country_code="CN")
        assert decision.blocked
        assert decision.reason == "Country CN (CN) is blocked"
        record = guard.registry.get(ADDRESS)
        assert record.actor == "CountryBlock"
        assert record.expires_at == record.blocked_at + 3600

    def test_resolver_country_flows_into_stats(self, clock):
        resolver = Mock(return_value=GeoLocation('FR', 'France', 'Paris'))
        guard = TrapGuard(
            {'country_block': {'enabled': True, 'countries': ['CN']}},
            clock=clock, resolver=resolver,
        )
        decision = guard.handle_request(ADDRESS, "/")
        assert decision.allowed
        assert decision.country_code == 'FR'
        record = guard.statistics.get_recent_attacks(1)[0]
        assert record.country == 'France'
        assert record.city == 'Paris'


class TestAccessCheck:
    """Test pre-request access checks."""

    def test_allowed(self, guard):
        assert guard.check_access(ADDRESS) == (True, "Allowed")

    def test_blocked(self, guard):
        guard.block(ADDRESS, reason="Manual block")
        assert guard.check_access(ADDRESS) == (False, "Manual block")

    def test_no_address(self, guard):
        assert guard.check_access("") == (True, "No address")

    def test_registry_error_fails_open(self, guard):
        guard.registry = Mock()
        guard.registry.get.side_effect = RuntimeError("boom")
        assert guard.check_access(ADDRESS) == (True, "Access check failed")


class TestManagement:
    """Test block and rule management."""

    def test_manual_block_defaults(self, guard):
        guard.block(ADDRESS)
        record = guard.list_blocks()[0]
        assert record.actor == "Admin"
        assert record.reason == "Manual block"
        assert record.expires_at == record.blocked_at + 3600

    def test_manual_block_invalid_duration(self, guard):
        with pytest.raises(ValueError):
            guard.block(ADDRESS, duration='3h')

    def test_unblock(self, guard):
        guard.block(ADDRESS, 'permanent')
        assert guard.unblock(ADDRESS)
        assert not guard.is_blocked(ADDRESS)

    def test_rule_commands(self, guard):
        rules = guard.apply_rule_command({'action': 'enable', 'ruleId': 'critical-instant', 'enabled': False})
        assert rules[0]['enabled'] is False

        rules = guard.apply_rule_command({'action': 'add', 'rule': {'id': 'extra'}})
        assert rules[-1]['id'] == 'extra'

        rules = guard.apply_rule_command({'action': 'remove', 'rule_id': 'extra'})
        assert 'extra' not in [r['id'] for r in rules]

        rules = guard.apply_rule_command({'action': 'setAll', 'rules': [{'id': 'only'}]})
        assert [r['id'] for r in rules] == ['only']

        rules = guard.apply_rule_command({'action': 'reset'})
        assert len(rules) == 6
        assert rules[0]['enabled'] is True

    @pytest.mark.parametrize("command", [
        {'action': 'explode'},
        {'action': 'add'},
        {'action': 'remove'},
        {'action': 'setAll', 'rules': 'all'},
    ])
    def test_invalid_rule_commands(self, guard, command):
        with pytest.raises(RuleValidationError):
            guard.apply_rule_command(command)

    def test_unknown_rule_id(self, guard):
        with pytest.raises(RuleNotFoundError):
            guard.apply_rule_command({'action': 'remove', 'rule_id': 'missing'})

    def test_disabled_rule_not_applied(self, guard):
        guard.enable_rule('critical-instant', False)
        decision = guard.handle_request(ADDRESS, "/.env")
        assert not decision.blocked

    def test_configured_rules_replace_defaults(self, clock):
        guard = TrapGuard({'rules': [{
            'id': 'any',
            'conditions': [{'type': 'attack_count', 'operator': 'gte', 'value': 2}],
        }]}, clock=clock)
        assert not guard.handle_request(ADDRESS, "/.env").blocked
        assert guard.handle_request(ADDRESS, "/").blocked


class TestReporting:
    """Test stats and status."""

    def test_stats(self, guard):
        guard.handle_request(ADDRESS, "/")
        guard.handle_request("198.51.100.1", "/.env")
        stats = guard.get_stats()
        assert stats.total_attacks == 2
        assert stats.blocked_attacks == 1
        assert guard.get_attack_stats(ADDRESS)['total_attacks'] == 1

    def test_status(self, guard):
        guard.handle_request(ADDRESS, "/.env")
        status = guard.get_status()
        assert status['blocks']['total_blocked'] == 1
        assert status['degraded'] is False
        assert status['history_events'] == 1
        assert status['rules'] == 6
        assert status['janitor_running'] is False

    def test_tick_sweeps_history(self, guard, clock):
        guard.handle_request(ADDRESS, "/")
        clock.advance(3600)
        assert guard.tick() == 1
        assert guard.get_status()['history_addresses'] == 0

    @patch('src.trapguard.trap_guard.start_metrics_server', return_value=False)
    def test_start_and_stop(self, mock_metrics, guard):
        guard.start()
        try:
            assert guard.history.janitor_running
        finally:
            guard.stop()
        assert not guard.history.janitor_running
        mock_metrics.assert_called_once_with(guard.config)

    def test_repr(self, guard):
        assert "backend=memory" in repr(guard)


class TestBackendSelection:
    """Test block storage configuration."""

    def test_invalid_config(self):
        with pytest.raises(ConfigurationError):
            TrapGuard({'block_storage': {'backend': 'sqlite'}})

    def test_redis_backend(self, dict_redis, clock):
        guard = create_trap_guard(
            {'block_storage': {'backend': 'redis'}}, redis_client=dict_redis, clock=clock,
        )
        guard.handle_request(ADDRESS, "/.env")
        assert f"trapguard:blocked:{ADDRESS}" in dict_redis._data
        assert guard.get_status()['blocks']['backend'] == 'redis'

    def test_unreachable_redis_starts_degraded(self, clock):
        client = Mock()
        client.ping.side_effect = redis.ConnectionError("refused")
        client.get.side_effect = redis.ConnectionError("refused")
        client.setex.side_effect = redis.ConnectionError("refused")
        guard = TrapGuard({'block_storage': {'backend': 'redis'}}, redis_client=client, clock=clock)
        assert guard.registry.degraded

        decision = guard.handle_request(ADDRESS, "/.env")
        assert decision.blocked
        assert guard.is_blocked(ADDRESS)

    @patch('src.trapguard.trap_guard.redis.Redis')
    def test_redis_client_built_from_config(self, mock_redis_class, dict_redis, clock):
        mock_redis_class.return_value = dict_redis
        TrapGuard({
            'block_storage': {'backend': 'redis'},
            'redis': {'host': 'cache.internal', 'port': 6380, 'password': 's3cret'},
        }, clock=clock)
        kwargs = mock_redis_class.call_args.kwargs
        assert kwargs['host'] == 'cache.internal'
        assert kwargs['port'] == 6380
        assert kwargs['password'] == 's3cret'

    def test_load_trap_guard_from_env(self, tmp_path, monkeypatch):
        path = tmp_path / "guard.yml"
        path.write_text("trapguard:\n  default_block_duration: 7d\n")
        monkeypatch.setenv('TRAPGUARD_CONFIG', str(path))
        guard = load_trap_guard()
        guard.block(ADDRESS)
        record = guard.registry.get(ADDRESS)
        assert record.expires_at - record.blocked_at == 604800
