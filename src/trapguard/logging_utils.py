#!/usr/bin/env python3
"""
Logging setup with sensitive data redaction.

Attack traffic carries credentials by design (fake login posts, stolen
tokens in headers), so every handler installed here redacts secrets
before a record is formatted.
"""

import logging
import os
import re
from typing import Dict, Optional


DEFAULT_LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class SensitiveDataFilter(logging.Filter):
    """Filter to prevent logging of sensitive data."""

    def __init__(self):
        super().__init__()
        self.sensitive_patterns = [
            (re.compile(r'password["\']?\s*[:=]\s*["\']?([^"\'\s,}&]+)', re.IGNORECASE), 'password=***REDACTED***'),
            (re.compile(r'passwd["\']?\s*[:=]\s*["\']?([^"\'\s,}&]+)', re.IGNORECASE), 'passwd=***REDACTED***'),
            (re.compile(r'api[_-]?key["\']?\s*[:=]\s*["\']?([^"\'\s,}&]+)', re.IGNORECASE), 'api_key=***REDACTED***'),
            (re.compile(r'token["\']?\s*[:=]\s*["\']?([^"\'\s,}&]+)', re.IGNORECASE), 'token=***REDACTED***'),
            (re.compile(r'secret["\']?\s*[:=]\s*["\']?([^"\'\s,}&]+)', re.IGNORECASE), 'secret=***REDACTED***'),
            (re.compile(r'authorization:\s*Bearer\s+(\S+)', re.IGNORECASE), 'Authorization: Bearer ***REDACTED***'),
            (re.compile(r'([a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,})'), '***EMAIL_REDACTED***'),
        ]

    def redact(self, text: str) -> str:
        for pattern, replacement in self.sensitive_patterns:
            text = pattern.sub(replacement, text)
        return text

    def _redact_arg(self, arg):
        # Non-string args keep their type
        return self.redact(arg) if isinstance(arg, str) else arg

    def filter(self, record):
        """Filter sensitive data from log records."""
        if hasattr(record, 'msg'):
            record.msg = self.redact(str(record.msg))

        if hasattr(record, 'args') and record.args:
            if isinstance(record.args, dict):
                record.args = {k: self._redact_arg(v) for k, v in record.args.items()}
            else:
                record.args = tuple(self._redact_arg(arg) for arg in record.args)

        return True


class SecureFormatter(logging.Formatter):
    """Formatter adding an event_type default and hiding tracebacks in production."""

    def format(self, record):
        if not hasattr(record, 'event_type'):
            record.event_type = 'general'

        if record.exc_info and os.getenv('ENVIRONMENT') == 'production':
            # Only the exception type and message, never the traceback
            exc_type, exc_value, _ = record.exc_info
            record.exc_text = f"{exc_type.__name__}: {exc_value}"
            record.exc_info = None

        return super().format(record)


def configure_logging(config: Optional[Dict] = None, logger_name: str = 'src.trapguard') -> logging.Logger:
    """
    Install a filtered, securely formatted stream handler.

    Args:
        config: Full configuration dict; reads the 'logging' section
        logger_name: Logger to configure (package root by default)

    Returns:
        The configured logger

    Raises:
        ValueError: If the configured level is unknown
    """
    logging_config = (config or {}).get('logging', {})
    log_level = str(logging_config.get('level', 'INFO')).upper()
    log_format = logging_config.get('format', DEFAULT_LOG_FORMAT)

    level = logging.getLevelName(log_level)
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level}")

    logger = logging.getLogger(logger_name)
    logger.setLevel(level)

    # Reconfiguring replaces our handler rather than stacking another
    for existing in list(logger.handlers):
        if getattr(existing, '_trapguard_handler', False):
            logger.removeHandler(existing)

    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.addFilter(SensitiveDataFilter())
    handler.setFormatter(SecureFormatter(log_format))
    handler._trapguard_handler = True

    logger.addHandler(handler)
    return logger
