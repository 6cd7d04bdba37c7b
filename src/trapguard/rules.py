#!/usr/bin/env python3
"""
Auto-block rule definitions.

A rule is an ordered conjunction of conditions plus an action. Rules are
immutable values so an evaluation pass can hold a snapshot of the active
list while administrators replace it.

Security Considerations:
- Malformed condition values (bad regex, wrong type for operator) evaluate
  to False; a bad rule can never crash the decision path
- Rule dicts are validated on load; unknown condition types, operators,
  actions or durations are rejected with RuleValidationError
- Regular expressions come from operators, not from request data
"""

import functools
import logging
import numbers
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .attack_types import AttackEvent, AttackType, Severity
from .block_registry import BlockDuration
from .exceptions import RuleValidationError


logger = logging.getLogger(__name__)

DEFAULT_TIME_WINDOW = 300  # seconds, for attack_count without time_window


class ConditionType(Enum):
    """Event field (or history aggregate) a condition inspects."""

    SEVERITY = "severity"
    ATTACK_TYPE = "attack_type"
    COUNTRY = "country"
    USER_AGENT = "user_agent"
    PATH_PATTERN = "path_pattern"
    ATTACK_COUNT = "attack_count"

    @classmethod
    def from_string(cls, value: str) -> Optional['ConditionType']:
        try:
            return cls(value.lower())
        except (ValueError, AttributeError):
            return None


class Operator(Enum):
    """Comparison operator applied between the observed and configured value."""

    EQ = "eq"
    NE = "ne"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    CONTAINS = "contains"
    MATCHES = "matches"

    @classmethod
    def from_string(cls, value: str) -> Optional['Operator']:
        try:
            return cls(value.lower())
        except (ValueError, AttributeError):
            return None

    def is_ordering(self) -> bool:
        return self in (Operator.GT, Operator.LT, Operator.GTE, Operator.LTE)


class ActionType(Enum):
    """
    What a matching rule does.

    Only BLOCK changes state. ALERT and CHALLENGE are reported to the
    caller, which decides how to act on them.
    """

    BLOCK = "block"
    ALERT = "alert"
    CHALLENGE = "challenge"

    @classmethod
    def from_string(cls, value: str) -> Optional['ActionType']:
        try:
            return cls(value.lower())
        except (ValueError, AttributeError):
            return None


@functools.lru_cache(maxsize=256)
def _compile_pattern(pattern: str) -> 're.Pattern':
    return re.compile(pattern, re.IGNORECASE)


def compare_values(actual: Any, operator: Operator, expected: Any) -> bool:
    """
    Compare an observed value against a configured one.

    Type mismatches and invalid regular expressions yield False.
    """
    try:
        if operator == Operator.EQ:
            return actual == expected
        if operator == Operator.NE:
            return actual != expected
        if operator == Operator.GT:
            return actual > expected
        if operator == Operator.LT:
            return actual < expected
        if operator == Operator.GTE:
            return actual >= expected
        if operator == Operator.LTE:
            return actual <= expected
        if operator == Operator.CONTAINS:
            if isinstance(expected, (list, tuple, set, frozenset)):
                return actual in expected
            return str(expected) in str(actual)
        if operator == Operator.MATCHES:
            return _compile_pattern(str(expected)).search(str(actual)) is not None
    except re.error as e:
        logger.debug(f"Invalid rule pattern {expected!r}: {e}")
    except TypeError:
        pass
    return False


def _is_number(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def _coerce_severity(value: Any) -> Optional[Severity]:
    if isinstance(value, Severity):
        return value
    if isinstance(value, str):
        return Severity.from_string(value)
    if _is_number(value):
        try:
            return Severity(int(value))
        except ValueError:
            return None
    return None


def _coerce_attack_type(value: Any) -> Any:
    if isinstance(value, AttackType):
        return value.value
    return value


@dataclass(frozen=True)
class BlockCondition:
    """
    One predicate of a rule.

    attack_count counts the address's history inside time_window seconds
    (DEFAULT_TIME_WINDOW when unset); every other type inspects the
    current event.
    """

    type: ConditionType
    operator: Operator
    value: Any
    time_window: Optional[float] = None

    def __post_init__(self):
        if not isinstance(self.type, ConditionType):
            raise ValueError("type must be ConditionType enum")
        if not isinstance(self.operator, Operator):
            raise ValueError("operator must be Operator enum")
        if self.time_window is not None and self.time_window <= 0:
            raise ValueError("time_window must be positive")
        if isinstance(self.value, list):
            # Lists stay hashable inside a frozen rule
            object.__setattr__(self, 'value', tuple(self.value))

    @property
    def window_seconds(self) -> float:
        return self.time_window if self.time_window is not None else DEFAULT_TIME_WINDOW

    def evaluate(self, event: AttackEvent, history_count) -> bool:
        """
        Test this condition.

        Args:
            event: The event being processed
            history_count: Callable taking a window in seconds and returning
                the number of events for event.address inside it

        Returns:
            True if the condition holds; False on mismatch or bad data
        """
        if self.type == ConditionType.SEVERITY:
            return self._evaluate_severity(event.severity)

        if self.type == ConditionType.ATTACK_TYPE:
            expected = self.value
            if isinstance(expected, tuple):
                expected = tuple(_coerce_attack_type(v) for v in expected)
            else:
                expected = _coerce_attack_type(expected)
            return compare_values(event.attack_type.value, self.operator, expected)

        if self.type == ConditionType.COUNTRY:
            expected = self.value
            if isinstance(expected, str) and self.operator != Operator.MATCHES:
                expected = expected.upper()
            elif isinstance(expected, tuple):
                expected = tuple(v.upper() if isinstance(v, str) else v for v in expected)
            return compare_values(event.country_code or "", self.operator, expected)

        if self.type == ConditionType.USER_AGENT:
            return compare_values(event.user_agent, self.operator, self.value)

        if self.type == ConditionType.PATH_PATTERN:
            return compare_values(event.path, self.operator, self.value)

        if self.type == ConditionType.ATTACK_COUNT:
            if not _is_number(self.value):
                return False
            return compare_values(history_count(self.window_seconds), self.operator, self.value)

        return False

    def _evaluate_severity(self, actual: Severity) -> bool:
        if self.operator == Operator.MATCHES:
            return compare_values(actual.name, self.operator, self.value)

        if isinstance(self.value, tuple):
            expected = tuple(s for s in map(_coerce_severity, self.value) if s is not None)
            return compare_values(actual, self.operator, expected)

        expected = _coerce_severity(self.value)
        if expected is None:
            return False
        if self.operator == Operator.CONTAINS:
            return compare_values(actual.name, self.operator, expected.name)
        return compare_values(actual, self.operator, expected)

    @classmethod
    def from_config_dict(cls, config: dict) -> 'BlockCondition':
        """
        Create from configuration dictionary with validation.

        Raises:
            RuleValidationError: If the type or operator is unknown
        """
        try:
            condition_type = ConditionType.from_string(config.get('type'))
            if condition_type is None:
                raise ValueError(f"unknown condition type {config.get('type')!r}")
            operator = Operator.from_string(config.get('operator'))
            if operator is None:
                raise ValueError(f"unknown operator {config.get('operator')!r}")
            if 'value' not in config:
                raise ValueError("condition value is required")

            time_window = config.get('time_window', config.get('timeWindow'))
            return cls(
                type=condition_type,
                operator=operator,
                value=config['value'],
                time_window=None if time_window is None else float(time_window),
            )
        except (TypeError, ValueError, AttributeError) as e:
            raise RuleValidationError(f"Invalid condition: {e}")

    def to_dict(self) -> dict:
        data = {
            'type': self.type.value,
            'operator': self.operator.value,
            'value': list(self.value) if isinstance(self.value, tuple) else self.value,
        }
        if self.time_window is not None:
            data['time_window'] = self.time_window
        return data


@dataclass(frozen=True)
class RuleAction:
    """Action taken when every condition of a rule holds."""

    type: ActionType = ActionType.BLOCK
    duration: BlockDuration = BlockDuration.ONE_HOUR
    notify: Tuple[str, ...] = ()

    def __post_init__(self):
        if not isinstance(self.type, ActionType):
            raise ValueError("type must be ActionType enum")
        if not isinstance(self.duration, BlockDuration):
            raise ValueError("duration must be BlockDuration enum")
        object.__setattr__(self, 'notify', tuple(self.notify))

    @classmethod
    def from_config_dict(cls, config: dict) -> 'RuleAction':
        try:
            action_type = ActionType.from_string(config.get('type', 'block'))
            if action_type is None:
                raise ValueError(f"unknown action type {config.get('type')!r}")
            notify = config.get('notify', ())
            if isinstance(notify, str):
                notify = (notify,)
            return cls(
                type=action_type,
                duration=BlockDuration.parse(config.get('duration', '1h')),
                notify=tuple(str(channel) for channel in notify),
            )
        except (TypeError, ValueError, AttributeError) as e:
            raise RuleValidationError(f"Invalid rule action: {e}")

    def to_dict(self) -> dict:
        return {
            'type': self.type.value,
            'duration': self.duration.value,
            'notify': list(self.notify),
        }


@dataclass(frozen=True)
class AutoBlockRule:
    """
    Named, enable-able auto-block policy.

    All conditions must hold (logical AND). cooldown is the number of
    seconds the rule stays quiet for an address after triggering there.
    """

    id: str
    name: str
    conditions: Tuple[BlockCondition, ...]
    action: RuleAction = field(default_factory=RuleAction)
    enabled: bool = True
    cooldown: float = 0

    def __post_init__(self):
        if not self.id or not isinstance(self.id, str):
            raise ValueError("Rule id must be non-empty string")
        if self.cooldown < 0:
            raise ValueError("Cooldown cannot be negative")
        object.__setattr__(self, 'conditions', tuple(self.conditions))

    def matches(self, event: AttackEvent, history_count) -> bool:
        """Evaluate conditions in order, stopping at the first False."""
        return all(c.evaluate(event, history_count) for c in self.conditions)

    def with_enabled(self, enabled: bool) -> 'AutoBlockRule':
        return replace(self, enabled=bool(enabled))

    @classmethod
    def from_config_dict(cls, config: dict) -> 'AutoBlockRule':
        """
        Create from configuration dictionary with validation.

        Raises:
            RuleValidationError: If any field is missing or invalid
        """
        if not isinstance(config, dict):
            raise RuleValidationError("Rule must be a mapping")
        try:
            rule_id = config['id']
            conditions = config.get('conditions', [])
            if not isinstance(conditions, list):
                raise TypeError("conditions must be a list")
            return cls(
                id=str(rule_id),
                name=str(config.get('name', rule_id)),
                conditions=tuple(BlockCondition.from_config_dict(c) for c in conditions),
                action=RuleAction.from_config_dict(config.get('action', {})),
                enabled=bool(config.get('enabled', True)),
                cooldown=float(config.get('cooldown', 0)),
            )
        except KeyError:
            raise RuleValidationError("Rule id is required")
        except (TypeError, ValueError, AttributeError) as e:
            raise RuleValidationError(f"Invalid rule {config.get('id')!r}: {e}")

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'enabled': self.enabled,
            'conditions': [c.to_dict() for c in self.conditions],
            'action': self.action.to_dict(),
            'cooldown': self.cooldown,
        }


def _block(duration: BlockDuration) -> RuleAction:
    return RuleAction(type=ActionType.BLOCK, duration=duration, notify=('telegram',))


# Order is evaluation priority: first matching block rule wins
DEFAULT_RULES: Tuple[AutoBlockRule, ...] = (
    AutoBlockRule(
        id='critical-instant',
        name='Block CRITICAL attacks instantly',
        conditions=(
            BlockCondition(ConditionType.SEVERITY, Operator.EQ, 'CRITICAL'),
        ),
        action=_block(BlockDuration.ONE_DAY),
        cooldown=0,
    ),
    AutoBlockRule(
        id='high-3-in-5min',
        name='Block after 3 HIGH attacks in 5 minutes',
        conditions=(
            BlockCondition(ConditionType.SEVERITY, Operator.EQ, 'HIGH'),
            BlockCondition(ConditionType.ATTACK_COUNT, Operator.GTE, 3, time_window=300),
        ),
        action=_block(BlockDuration.ONE_HOUR),
        cooldown=300,
    ),
    AutoBlockRule(
        id='brute-force-10-in-1min',
        name='Block brute force (10 attempts in 1 minute)',
        conditions=(
            BlockCondition(ConditionType.ATTACK_TYPE, Operator.EQ, 'BRUTE_FORCE'),
            BlockCondition(ConditionType.ATTACK_COUNT, Operator.GTE, 10, time_window=60),
        ),
        action=_block(BlockDuration.ONE_HOUR),
        cooldown=60,
    ),
    AutoBlockRule(
        id='scanner-detection',
        name='Block automated scanners',
        conditions=(
            BlockCondition(
                ConditionType.USER_AGENT, Operator.MATCHES,
                'sqlmap|nikto|nmap|masscan|acunetix|nessus|burp|zap',
            ),
        ),
        action=_block(BlockDuration.PERMANENT),
        cooldown=0,
    ),
    AutoBlockRule(
        id='webshell-instant',
        name='Block webshell attempts instantly',
        conditions=(
            BlockCondition(ConditionType.ATTACK_TYPE, Operator.EQ, 'WEBSHELL_UPLOAD'),
        ),
        action=_block(BlockDuration.PERMANENT),
        cooldown=0,
    ),
    AutoBlockRule(
        id='any-20-in-10min',
        name='Block after 20 attacks of any type in 10 minutes',
        conditions=(
            BlockCondition(ConditionType.ATTACK_COUNT, Operator.GTE, 20, time_window=600),
        ),
        action=_block(BlockDuration.ONE_HOUR),
        cooldown=600,
    ),
)


def default_rules() -> List[AutoBlockRule]:
    """Fresh list of the baseline policy set, in priority order."""
    return list(DEFAULT_RULES)


def rules_from_config(entries: List[Dict]) -> List[AutoBlockRule]:
    """
    Build a rule list from config dicts, rejecting duplicate ids.

    Raises:
        RuleValidationError: On an invalid entry or duplicate id
    """
    if not isinstance(entries, list):
        raise RuleValidationError("rules must be a list")
    rules = [AutoBlockRule.from_config_dict(entry) for entry in entries]
    ensure_unique_ids(rules)
    return rules


def ensure_unique_ids(rules: List[AutoBlockRule]) -> None:
    seen = set()
    for rule in rules:
        if rule.id in seen:
            raise RuleValidationError(f"Duplicate rule id: {rule.id}")
        seen.add(rule.id)
