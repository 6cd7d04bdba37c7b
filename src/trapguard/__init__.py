"""Decoy endpoint attack detection and auto-blocking."""

from .attack_types import AttackType, Severity, DetectionResult, AttackEvent
from .classifier import AttackClassifier, PatternCategory, MatchScope, classify, extract_headers
from .event_history import EventHistoryStore
from .rules import (
    ConditionType,
    Operator,
    ActionType,
    BlockCondition,
    RuleAction,
    AutoBlockRule,
    DEFAULT_RULES,
    default_rules
)
from .rule_engine import RuleEngine, ProcessResult
from .block_registry import (
    BlockDuration,
    BlockRecord,
    BlockRegistry,
    MemoryBlockBackend,
    RedisBlockBackend
)
from .statistics import StatisticsAggregator, AttackRecord, TimeRange, DashboardStats
from .country_gate import CountryGate, CountryBlockConfig, CountryCheckResult, BlockMode
from .config import ConfigManager, TrapGuardSettings
from .exceptions import (
    TrapGuardError,
    ConfigurationError,
    RuleNotFoundError,
    RuleValidationError,
    BlockBackendError
)
from .trap_guard import TrapGuard, RequestDecision, create_trap_guard

__all__ = [
    'AttackType',
    'Severity',
    'DetectionResult',
    'AttackEvent',
    'AttackClassifier',
    'PatternCategory',
    'MatchScope',
    'classify',
    'extract_headers',
    'EventHistoryStore',
    'ConditionType',
    'Operator',
    'ActionType',
    'BlockCondition',
    'RuleAction',
    'AutoBlockRule',
    'DEFAULT_RULES',
    'default_rules',
    'RuleEngine',
    'ProcessResult',
    'BlockDuration',
    'BlockRecord',
    'BlockRegistry',
    'MemoryBlockBackend',
    'RedisBlockBackend',
    'StatisticsAggregator',
    'AttackRecord',
    'TimeRange',
    'DashboardStats',
    'CountryGate',
    'CountryBlockConfig',
    'CountryCheckResult',
    'BlockMode',
    'ConfigManager',
    'TrapGuardSettings',
    'TrapGuardError',
    'ConfigurationError',
    'RuleNotFoundError',
    'RuleValidationError',
    'BlockBackendError',
    'TrapGuard',
    'RequestDecision',
    'create_trap_guard',
]
