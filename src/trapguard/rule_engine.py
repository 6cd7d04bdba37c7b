#!/usr/bin/env python3
"""
Auto-block rule engine.

Evaluates the ordered rule list against each attack event and the
address's recent history. The first matching block rule writes a block
record, starts its cooldown for the address, and ends the pass.

Security Considerations:
- Fail open: an unexpected error while processing an event is logged and
  reported as "not blocked"; the decision path never raises
- Per-address serialization: the blocked check, history append, rule
  evaluation and block write for one address run under that address's lock
- The active rule list is swapped atomically; a pass reads one snapshot
- Management operations on unknown or duplicate rule ids raise
"""

import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple, Union

from .attack_types import AttackEvent
from .block_registry import BlockRegistry
from .event_history import EventHistoryStore
from .exceptions import RuleNotFoundError, RuleValidationError
from .metrics import RULE_TRIGGERS_TOTAL
from .rules import (
    ActionType,
    AutoBlockRule,
    default_rules,
    ensure_unique_ids,
)


AUTO_BLOCK_ACTOR = "AutoBlock"
ALREADY_BLOCKED_REASON = "Already blocked"


@dataclass(frozen=True)
class ProcessResult:
    """Outcome of processing one attack event."""

    blocked: bool
    triggered_rules: Tuple[str, ...] = ()
    reason: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'triggered_rules', tuple(self.triggered_rules))

    def to_dict(self) -> dict:
        data = {
            'blocked': self.blocked,
            'triggered_rules': list(self.triggered_rules),
        }
        if self.reason is not None:
            data['reason'] = self.reason
        return data


BlockListener = Callable[[AttackEvent, AutoBlockRule, ProcessResult], None]


class RuleEngine:
    """
    Ordered, first-match-wins auto-block evaluation.

    Usage:
        engine = RuleEngine(EventHistoryStore(), BlockRegistry())
        result = engine.process_attack(event)
        if result.blocked:
            # address is in the block registry

    Thread-safe: Yes
    """

    def __init__(
        self,
        history: EventHistoryStore,
        registry: BlockRegistry,
        rules: Optional[List[AutoBlockRule]] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize rule engine.

        Args:
            history: Event history store (owned exclusively by this engine)
            registry: Block registry written on block actions
            rules: Initial rule list (defaults to the baseline policy set)
            clock: Time source returning epoch seconds

        Raises:
            RuleValidationError: If rules contain duplicate ids
        """
        self.history = history
        self.registry = registry
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        initial = default_rules() if rules is None else list(rules)
        ensure_unique_ids(initial)
        self._rules: Tuple[AutoBlockRule, ...] = tuple(initial)
        self._rules_lock = threading.Lock()

        self._cooldowns: Dict[Tuple[str, str], float] = {}
        self._cooldown_lock = threading.Lock()

        self._listeners: List[BlockListener] = []

        self.history.add_sweep_hook(self.prune_cooldowns)

    # ------------------------------------------------------------------
    # Decision path
    # ------------------------------------------------------------------

    def process_attack(self, event: AttackEvent) -> ProcessResult:
        """
        Record an event and apply the first matching rule.

        An address that is already blocked short-circuits: the event is not
        appended and no rule is evaluated. Rules in cooldown for the address
        are skipped silently. Matching alert/challenge rules are reported in
        triggered_rules and evaluation continues.

        Args:
            event: Classified attack event

        Returns:
            ProcessResult; never raises
        """
        try:
            with self.history.hold(event.address):
                result, rule = self._evaluate(event)
        except Exception as e:
            self.logger.error(
                f"Rule evaluation failed for address={event.address[:45]}: {e}",
                exc_info=True,
            )
            return ProcessResult(blocked=False)

        if rule is not None:
            self._notify(event, rule, result)
        return result

    def _evaluate(self, event: AttackEvent) -> Tuple[ProcessResult, Optional[AutoBlockRule]]:
        address = event.address

        if self.registry.is_blocked(address):
            self.logger.debug(f"Skipping event for blocked address={address[:45]}")
            return ProcessResult(blocked=True, reason=ALREADY_BLOCKED_REASON), None

        self.history.append(event)

        now = self.clock()
        rules = self._rules
        triggered: List[str] = []

        def history_count(window_seconds: float) -> int:
            return self.history.recent_count(address, window_seconds, now)

        for rule in rules:
            if not rule.enabled:
                continue
            if self._in_cooldown(rule, address, now):
                continue
            if not rule.matches(event, history_count):
                continue

            triggered.append(rule.id)
            RULE_TRIGGERS_TOTAL.labels(rule_id=rule.id).inc()

            if rule.action.type != ActionType.BLOCK:
                self.logger.info(
                    f"Rule {rule.id} ({rule.action.type.value}) matched "
                    f"address={address[:45]}"
                )
                continue

            self.registry.block(
                address,
                rule.action.duration,
                reason=f"Auto-blocked by rule: {rule.name}",
                actor=AUTO_BLOCK_ACTOR,
                attack_type=event.attack_type.value,
                severity=event.severity.name,
            )
            self._set_cooldown(rule.id, address, now)
            return ProcessResult(blocked=True, triggered_rules=triggered, reason=rule.name), rule

        self.logger.debug(
            f"No block rule matched address={address[:45]} "
            f"type={event.attack_type.value} severity={event.severity.name}"
        )
        return ProcessResult(blocked=False, triggered_rules=triggered), None

    def matching_rules(self, event: AttackEvent, now: Optional[float] = None) -> List[str]:
        """
        Every enabled rule whose conditions hold for an event.

        Read-only audit helper: ignores cooldowns, does not append the
        event, and writes nothing. attack_count conditions see the history
        as it currently is.
        """
        if now is None:
            now = self.clock()

        def history_count(window_seconds: float) -> int:
            return self.history.recent_count(event.address, window_seconds, now)

        return [
            rule.id for rule in self._rules
            if rule.enabled and rule.matches(event, history_count)
        ]

    def on_block(self, listener: BlockListener) -> None:
        """Register a callable invoked after each rule-triggered block."""
        self._listeners.append(listener)

    def _notify(self, event: AttackEvent, rule: AutoBlockRule, result: ProcessResult) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, rule, result)
            except Exception as e:
                self.logger.error(f"Block listener failed for rule {rule.id}: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Cooldowns
    # ------------------------------------------------------------------

    def _in_cooldown(self, rule: AutoBlockRule, address: str, now: float) -> bool:
        if rule.cooldown <= 0:
            return False
        with self._cooldown_lock:
            last = self._cooldowns.get((rule.id, address))
        return last is not None and now - last < rule.cooldown

    def _set_cooldown(self, rule_id: str, address: str, now: float) -> None:
        with self._cooldown_lock:
            self._cooldowns[(rule_id, address)] = now

    def cooldown_remaining(self, rule_id: str, address: str) -> float:
        """Seconds until rule_id may trigger again for address (0 if free)."""
        rule = self.get_rule(rule_id)
        if rule is None or rule.cooldown <= 0:
            return 0.0
        with self._cooldown_lock:
            last = self._cooldowns.get((rule_id, address))
        if last is None:
            return 0.0
        return max(0.0, rule.cooldown - (self.clock() - last))

    def prune_cooldowns(self, now: Optional[float] = None) -> int:
        """
        Drop cooldown entries that have elapsed or whose rule is gone.

        Returns:
            Number of entries removed
        """
        if now is None:
            now = self.clock()
        cooldowns = {rule.id: rule.cooldown for rule in self._rules}
        with self._cooldown_lock:
            stale = [
                key for key, last in self._cooldowns.items()
                if key[0] not in cooldowns or now - last >= cooldowns[key[0]]
            ]
            for key in stale:
                del self._cooldowns[key]
        return len(stale)

    def _clear_cooldowns(self, rule_id: Optional[str] = None) -> None:
        with self._cooldown_lock:
            if rule_id is None:
                self._cooldowns.clear()
                return
            for key in [k for k in self._cooldowns if k[0] == rule_id]:
                del self._cooldowns[key]

    # ------------------------------------------------------------------
    # Rule management
    # ------------------------------------------------------------------

    def get_rules(self) -> List[AutoBlockRule]:
        return list(self._rules)

    def get_rule(self, rule_id: str) -> Optional[AutoBlockRule]:
        for rule in self._rules:
            if rule.id == rule_id:
                return rule
        return None

    def replace_rules(self, rules: List[Union[AutoBlockRule, dict]]) -> None:
        """
        Atomically replace the active rule list.

        Raises:
            RuleValidationError: On invalid entries or duplicate ids
        """
        new_rules = [
            r if isinstance(r, AutoBlockRule) else AutoBlockRule.from_config_dict(r)
            for r in rules
        ]
        ensure_unique_ids(new_rules)
        with self._rules_lock:
            self._rules = tuple(new_rules)
        self._clear_cooldowns()
        self.logger.info(f"Replaced auto-block rules ({len(new_rules)} active)")

    def add_rule(self, rule: Union[AutoBlockRule, dict]) -> AutoBlockRule:
        """
        Append a rule at the lowest priority.

        Raises:
            RuleValidationError: If the rule is invalid or its id exists
        """
        if not isinstance(rule, AutoBlockRule):
            rule = AutoBlockRule.from_config_dict(rule)
        with self._rules_lock:
            if any(r.id == rule.id for r in self._rules):
                raise RuleValidationError(f"Duplicate rule id: {rule.id}")
            self._rules = self._rules + (rule,)
        self.logger.info(f"Added auto-block rule {rule.id}")
        return rule

    def remove_rule(self, rule_id: str) -> AutoBlockRule:
        """
        Remove a rule by id.

        Raises:
            RuleNotFoundError: If no rule has this id
        """
        with self._rules_lock:
            removed = None
            kept = []
            for rule in self._rules:
                if rule.id == rule_id and removed is None:
                    removed = rule
                else:
                    kept.append(rule)
            if removed is None:
                raise RuleNotFoundError(rule_id)
            self._rules = tuple(kept)
        self._clear_cooldowns(rule_id)
        self.logger.info(f"Removed auto-block rule {rule_id}")
        return removed

    def enable_rule(self, rule_id: str, enabled: bool) -> AutoBlockRule:
        """
        Enable or disable a rule in place (priority unchanged).

        Raises:
            RuleNotFoundError: If no rule has this id
        """
        with self._rules_lock:
            rules = list(self._rules)
            for index, rule in enumerate(rules):
                if rule.id == rule_id:
                    updated = rule.with_enabled(enabled)
                    rules[index] = updated
                    self._rules = tuple(rules)
                    break
            else:
                raise RuleNotFoundError(rule_id)
        self.logger.info(f"Rule {rule_id} {'enabled' if enabled else 'disabled'}")
        return updated

    def set_all_enabled(self, enabled: bool) -> None:
        """Enable or disable every rule."""
        with self._rules_lock:
            self._rules = tuple(rule.with_enabled(enabled) for rule in self._rules)
        self.logger.info(f"All rules {'enabled' if enabled else 'disabled'}")

    def reset_rules(self) -> None:
        """Restore the baseline policy set."""
        self.replace_rules(default_rules())

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_attack_stats(self, address: Optional[str] = None, recent_limit: int = 50) -> Dict:
        """
        Summarize retained history for one address or all addresses.

        Returns:
            Dictionary with total_attacks, by_type, by_severity and the most
            recent events (oldest first)
        """
        events = self.history.all(address) if address else self.history.all_events()
        events.sort(key=lambda e: e.timestamp)

        by_type = Counter(e.attack_type.value for e in events)
        by_severity = Counter(e.severity.name for e in events)

        return {
            'total_attacks': len(events),
            'by_type': dict(by_type),
            'by_severity': dict(by_severity),
            'recent_attacks': [e.to_dict() for e in events[-recent_limit:]] if recent_limit else [],
        }

    def __repr__(self) -> str:
        enabled = sum(1 for r in self._rules if r.enabled)
        return f"RuleEngine(rules={len(self._rules)}, enabled={enabled})"
