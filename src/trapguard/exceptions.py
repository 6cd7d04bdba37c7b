#!/usr/bin/env python3
"""
Exception hierarchy for TrapGuard.

Decision-path components never raise these for bad request data; they are
reserved for configuration and management operations where the caller
must learn that the request was not applied.
"""


class TrapGuardError(Exception):
    """Base exception for TrapGuard errors."""
    pass


class ConfigurationError(TrapGuardError):
    """Configuration file or section is invalid."""
    pass


class RuleValidationError(TrapGuardError):
    """Rule definition is malformed or conflicts with the active set."""
    pass


class RuleNotFoundError(TrapGuardError):
    """Management operation referenced an unknown rule id."""

    def __init__(self, rule_id: str):
        super().__init__(f"Unknown rule id: {rule_id}")
        self.rule_id = rule_id


class BlockBackendError(TrapGuardError):
    """Block storage backend failed (connection, timeout, bad payload)."""
    pass
