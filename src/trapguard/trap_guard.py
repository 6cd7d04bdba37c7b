#!/usr/bin/env python3
"""
Integrated decoy endpoint guard.

This module wires the detection and blocking components into one service
object:
- Country gate (optional, GeoLite2 or injected resolver)
- Attack classifier
- Rule engine over the per-address event history
- Block registry (memory or Redis backend)
- Statistics aggregator

Security Considerations:
- Fail open on the decision path: errors are logged and the request is
  reported as not blocked; this is a lure-and-observe system
- Management operations raise typed errors for unknown rules and actions
- Addresses come from the request layer and may be spoofed
"""

import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Tuple

import redis

from .attack_types import AttackEvent, DetectionResult
from .block_registry import (
    BlockDuration,
    BlockRecord,
    BlockRegistry,
    MemoryBlockBackend,
    RedisBlockBackend,
)
from .classifier import AttackClassifier
from .config import ConfigManager
from .country_gate import CountryGate, Resolver, load_geoip_resolver
from .event_history import EventHistoryStore
from .exceptions import BlockBackendError, RuleValidationError
from .metrics import ATTACKS_TOTAL, DECISION_SECONDS, start_metrics_server
from .rule_engine import ProcessResult, RuleEngine
from .rules import AutoBlockRule, default_rules, rules_from_config
from .statistics import DashboardStats, StatisticsAggregator, TimeRange


COUNTRY_BLOCK_ACTOR = "CountryBlock"
MANUAL_BLOCK_ACTOR = "Admin"


@dataclass(frozen=True)
class RequestDecision:
    """Outcome of handling one request to a decoy endpoint."""

    allowed: bool
    blocked: bool
    reason: str
    detection: Optional[DetectionResult] = None
    triggered_rules: Tuple[str, ...] = ()
    record_id: Optional[str] = None
    country_code: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'allowed': self.allowed,
            'blocked': self.blocked,
            'reason': self.reason,
            'detection': self.detection.to_dict() if self.detection else None,
            'triggered_rules': list(self.triggered_rules),
            'record_id': self.record_id,
            'country_code': self.country_code,
        }


def _header(headers: Optional[Mapping[str, str]], name: str) -> str:
    if not headers:
        return ""
    for key, value in headers.items():
        if str(key).lower() == name:
            return "" if value is None else str(value)
    return ""


class TrapGuard:
    """
    Decoy endpoint detection and auto-blocking service.

    Usage:
        guard = create_trap_guard(config)
        allowed, reason = guard.check_access(address)
        decision = guard.handle_request(address, '/.env', headers=headers)
        if decision.blocked:
            # address is blocked for subsequent requests
    """

    def __init__(
        self,
        config: Optional[Dict] = None,
        redis_client=None,
        clock: Callable[[], float] = time.time,
        classifier: Optional[AttackClassifier] = None,
        resolver: Optional[Resolver] = None,
    ):
        """
        Initialize the guard.

        Args:
            config: Configuration dictionary (validated; defaults fill gaps)
            redis_client: Redis client for the redis block backend
                (created from the redis section when omitted)
            clock: Time source returning epoch seconds
            classifier: Classifier with a custom category order
            resolver: Country resolver (defaults to GeoLite2 when configured)

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        self.logger = logging.getLogger(__name__)
        self.config_manager = ConfigManager(config=config or {})
        self.config = self.config_manager.config
        self.settings = self.config_manager.settings
        self.clock = clock

        self.classifier = classifier or AttackClassifier()
        self.history = EventHistoryStore(
            retention_seconds=self.settings.history_retention_seconds,
            cleanup_interval_seconds=self.settings.history_cleanup_interval_seconds,
            clock=clock,
        )
        self.registry = self._init_registry(redis_client)

        rules_config = self.config.get('rules')
        rules = default_rules() if rules_config is None else rules_from_config(rules_config)
        self.engine = RuleEngine(self.history, self.registry, rules, clock=clock)

        self.statistics = StatisticsAggregator(
            max_records=self.settings.max_stats_records,
            recent_limit=self.settings.stats_recent_limit,
            top_limit=self.settings.stats_top_limit,
            clock=clock,
        )

        country_config = self.config_manager.country_block
        if resolver is None:
            resolver = load_geoip_resolver(country_config.geoip_database)
        self.country_gate = CountryGate(country_config, resolver)
        self._metrics_started = False

        self.logger.info(f"TrapGuard initialized: {self!r}")

    def _init_registry(self, redis_client) -> BlockRegistry:
        """Build the block registry, degrading to memory if Redis is unreachable."""
        if self.config['block_storage']['backend'] != 'redis':
            return BlockRegistry(MemoryBlockBackend(), clock=self.clock)

        if redis_client is None:
            redis_client = self._init_redis()
        try:
            backend = RedisBlockBackend(redis_client, clock=self.clock)
        except BlockBackendError as e:
            backend = RedisBlockBackend(redis_client, clock=self.clock, check_connection=False)
            registry = BlockRegistry(backend, clock=self.clock)
            registry.mark_degraded(e)
            return registry
        self.logger.info("Redis block backend connected")
        return BlockRegistry(backend, clock=self.clock)

    def _init_redis(self) -> redis.Redis:
        redis_config = self.config['redis']
        password = redis_config.get('password')
        if not password:
            self.logger.warning("SECURITY WARNING: Redis connection without authentication")
        return redis.Redis(
            host=redis_config['host'],
            port=redis_config['port'],
            db=redis_config.get('db', 0),
            password=password or None,
            socket_timeout=redis_config.get('timeout', 5),
            socket_connect_timeout=redis_config.get('timeout', 5),
            retry_on_timeout=True,
            health_check_interval=30,
            decode_responses=False,
        )

    # ------------------------------------------------------------------
    # Decision path
    # ------------------------------------------------------------------

    def check_access(self, address: str) -> Tuple[bool, str]:
        """
        Check whether an address may reach the application.

        Returns:
            Tuple of (allowed, reason)
        """
        if not address:
            return True, "No address"
        try:
            record = self.registry.get(address)
        except Exception as e:
            self.logger.error(f"Error in check_access: {e}", exc_info=True)
            return True, "Access check failed"
        if record is not None:
            self.logger.debug(f"Pre-blocked: address={address[:45]} - {record.reason}")
            return False, record.reason
        return True, "Allowed"

    def handle_request(
        self,
        address: str,
        path: str,
        query_string: str = "",
        body: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
        country_code: Optional[str] = None,
    ) -> RequestDecision:
        """
        Classify a decoy request, record it, and apply auto-block rules.

        Args:
            address: Source address (opaque, possibly spoofed)
            path: Request path
            query_string: Raw query string
            body: Request body, if any
            headers: Request headers
            country_code: Country already known to the request layer

        Returns:
            RequestDecision; never raises
        """
        if not address:
            self.logger.error("handle_request called without an address")
            return RequestDecision(allowed=True, blocked=False, reason="Invalid request")

        with DECISION_SECONDS.time():
            try:
                return self._handle(address, path, query_string, body, headers, country_code)
            except Exception as e:
                self.logger.error(
                    f"Error handling request from address={address[:45]}: {e}",
                    exc_info=True,
                )
                return RequestDecision(allowed=True, blocked=False, reason="Decision failed")

    def _handle(self, address, path, query_string, body, headers, country_code) -> RequestDecision:
        existing = self.registry.get(address)
        if existing is not None:
            return RequestDecision(allowed=False, blocked=True, reason=existing.reason)

        gate = self.country_gate.check(address, path, country_code)
        if gate.country_code:
            country_code = gate.country_code
        if not gate.allowed:
            self.registry.block(
                address,
                self.settings.default_block_duration,
                reason=gate.reason,
                actor=COUNTRY_BLOCK_ACTOR,
            )
            return RequestDecision(
                allowed=False, blocked=True, reason=gate.reason, country_code=country_code,
            )

        detection = self.classifier.classify(path, query_string, body, headers)
        event = AttackEvent.from_detection(
            address,
            detection,
            timestamp=self.clock(),
            path=path,
            user_agent=_header(headers, 'user-agent'),
            country_code=country_code,
        )
        ATTACKS_TOTAL.labels(
            attack_type=detection.attack_type.value, severity=detection.severity.name,
        ).inc()

        result = self.engine.process_attack(event)
        record = self.statistics.record_attack(
            event,
            blocked=result.blocked,
            triggered_rule=result.triggered_rules[-1] if result.triggered_rules else None,
            country=gate.country,
            city=gate.city,
        )

        self._log_decision(event, detection, result)

        return RequestDecision(
            allowed=not result.blocked,
            blocked=result.blocked,
            reason=result.reason or detection.details,
            detection=detection,
            triggered_rules=result.triggered_rules,
            record_id=record.id,
            country_code=event.country_code,
        )

    def _log_decision(self, event: AttackEvent, detection: DetectionResult, result: ProcessResult) -> None:
        log = getattr(self.logger, detection.severity.get_log_level())
        log(
            f"ATTACK: address={event.address[:45]} "
            f"type={detection.attack_type.value} "
            f"severity={detection.severity.name} "
            f"path={event.path[:100]} "
            f"blocked={result.blocked} "
            f"rules={','.join(result.triggered_rules) or 'none'}"
        )

    # ------------------------------------------------------------------
    # Block management
    # ------------------------------------------------------------------

    def block(
        self,
        address: str,
        duration=None,
        reason: str = "Manual block",
        actor: str = MANUAL_BLOCK_ACTOR,
    ) -> bool:
        """
        Manually block an address.

        Raises:
            ValueError: If the address is empty or the duration unknown
        """
        if duration is None:
            duration = self.settings.default_block_duration
        return self.registry.block(address, BlockDuration.parse(duration), reason, actor)

    def unblock(self, address: str) -> bool:
        return self.registry.unblock(address)

    def is_blocked(self, address: str) -> bool:
        return self.registry.is_blocked(address)

    def list_blocks(self) -> List[BlockRecord]:
        return self.registry.list()

    # ------------------------------------------------------------------
    # Rule management
    # ------------------------------------------------------------------

    def get_rules(self) -> List[AutoBlockRule]:
        return self.engine.get_rules()

    def add_rule(self, rule) -> AutoBlockRule:
        return self.engine.add_rule(rule)

    def remove_rule(self, rule_id: str) -> AutoBlockRule:
        return self.engine.remove_rule(rule_id)

    def enable_rule(self, rule_id: str, enabled: bool = True) -> AutoBlockRule:
        return self.engine.enable_rule(rule_id, enabled)

    def replace_rules(self, rules) -> None:
        self.engine.replace_rules(rules)

    def reset_rules(self) -> None:
        self.engine.reset_rules()

    def apply_rule_command(self, command: Dict) -> List[Dict]:
        """
        Apply an administrative rule command.

        Commands are dicts with an 'action' of add, remove, enable, setAll
        or reset, plus 'rule', 'rule_id', 'enabled' or 'rules' as needed.

        Returns:
            The active rules as dicts after the change

        Raises:
            RuleValidationError: On an unknown action or missing argument
            RuleNotFoundError: If the command names an unknown rule id
        """
        action = command.get('action')
        rule_id = command.get('rule_id', command.get('ruleId'))

        if action == 'add':
            if not command.get('rule'):
                raise RuleValidationError("add requires a rule")
            self.engine.add_rule(command['rule'])
        elif action == 'remove':
            if not rule_id:
                raise RuleValidationError("remove requires a rule_id")
            self.engine.remove_rule(rule_id)
        elif action == 'enable':
            if not rule_id:
                raise RuleValidationError("enable requires a rule_id")
            self.engine.enable_rule(rule_id, command.get('enabled') is not False)
        elif action == 'setAll':
            rules = command.get('rules')
            if not isinstance(rules, list):
                raise RuleValidationError("setAll requires a list of rules")
            self.engine.replace_rules(rules)
        elif action == 'reset':
            self.engine.reset_rules()
        else:
            raise RuleValidationError(f"Unknown action: {action!r}")

        return [rule.to_dict() for rule in self.engine.get_rules()]

    # ------------------------------------------------------------------
    # Reporting and lifecycle
    # ------------------------------------------------------------------

    def get_stats(self, time_range: Optional[TimeRange] = None) -> DashboardStats:
        return self.statistics.get_stats(time_range)

    def get_attack_stats(self, address: Optional[str] = None) -> Dict:
        return self.engine.get_attack_stats(address)

    def get_status(self) -> Dict:
        """Operational summary for health endpoints."""
        return {
            'blocks': self.registry.get_summary(),
            'degraded': self.registry.degraded,
            'degraded_reason': self.registry.degraded_reason,
            'history_addresses': len(self.history),
            'history_events': self.history.total_events(),
            'statistics_records': len(self.statistics),
            'rules': len(self.engine.get_rules()),
            'janitor_running': self.history.janitor_running,
        }

    def start(self) -> None:
        """Start background maintenance and, if enabled, the metrics exporter."""
        self.history.start_janitor()
        if not self._metrics_started:
            self._metrics_started = start_metrics_server(self.config)

    def stop(self) -> None:
        self.history.stop_janitor()

    def tick(self) -> int:
        """Run one maintenance sweep synchronously."""
        return self.history.sweep()

    def __repr__(self) -> str:
        return (
            f"TrapGuard("
            f"backend={self.registry.backend.name}, "
            f"engine={self.engine!r}, "
            f"categories={len(self.classifier.categories)}, "
            f"country_gate={'on' if self.country_gate.config.enabled else 'off'})"
        )


def create_trap_guard(config: Optional[Dict] = None, redis_client=None, **kwargs) -> TrapGuard:
    """
    Convenience function to create a TrapGuard instance.

    Args:
        config: Configuration dictionary
        redis_client: Optional Redis client for the redis block backend
        **kwargs: Passed through to TrapGuard (clock, classifier, resolver)

    Returns:
        Configured TrapGuard instance
    """
    return TrapGuard(config, redis_client=redis_client, **kwargs)


def load_trap_guard(config_path: Optional[str] = None, **kwargs) -> TrapGuard:
    """Create a TrapGuard from a YAML file (TRAPGUARD_CONFIG or the default path)."""
    path = config_path or os.getenv('TRAPGUARD_CONFIG', 'config/trapguard.yml')
    manager = ConfigManager(path)
    return TrapGuard(manager.config, **kwargs)
