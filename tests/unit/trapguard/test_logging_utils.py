#!/usr/bin/env python3
"""
Unit tests for logging setup and redaction.
"""

import logging
import sys

import pytest

from src.trapguard.logging_utils import (
    SecureFormatter,
    SensitiveDataFilter,
    configure_logging,
)


def make_record(msg, args=None, exc_info=None):
    return logging.LogRecord("src.trapguard.test", logging.WARNING, __file__, 1, msg, args, exc_info)


class TestSensitiveDataFilter:
    """Test credential redaction."""

    @pytest.fixture
    def log_filter(self):
        return SensitiveDataFilter()

    @pytest.mark.parametrize("text,secret", [
        ("login password=hunter2", "hunter2"),
        ('{"api_key": "abc123"}', "abc123"),
        ("token=eyJhbGciOi", "eyJhbGciOi"),
        ("Authorization: Bearer s3cr3t-value", "s3cr3t-value"),
        ("contact admin@example.com", "admin@example.com"),
    ])
    def test_redacts(self, log_filter, text, secret):
        assert secret not in log_filter.redact(text)

    def test_leaves_plain_text(self, log_filter):
        text = "ATTACK: address=203.0.113.7 type=XSS severity=HIGH"
        assert log_filter.redact(text) == text

    def test_filter_redacts_message_and_args(self, log_filter):
        record = make_record("body %s count %d", ("password=hunter2", 3))
        assert log_filter.filter(record)
        assert "hunter2" not in record.msg % record.args
        assert record.args[1] == 3


class TestSecureFormatter:
    """Test production traceback suppression."""

    def _exc_info(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            return sys.exc_info()

    def test_event_type_default(self):
        record = make_record("hello")
        SecureFormatter('%(event_type)s %(message)s').format(record)
        assert record.event_type == 'general'

    def test_hides_traceback_in_production(self, monkeypatch):
        monkeypatch.setenv('ENVIRONMENT', 'production')
        output = SecureFormatter('%(message)s').format(make_record("failed", exc_info=self._exc_info()))
        assert "RuntimeError: boom" in output
        assert "Traceback" not in output

    def test_keeps_traceback_in_development(self, monkeypatch):
        monkeypatch.setenv('ENVIRONMENT', 'development')
        output = SecureFormatter('%(message)s').format(make_record("failed", exc_info=self._exc_info()))
        assert "Traceback" in output


class TestConfigureLogging:
    """Test handler installation."""

    @pytest.fixture
    def logger_name(self):
        name = "trapguard-test-logger"
        yield name
        logger = logging.getLogger(name)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
        logger.setLevel(logging.NOTSET)

    def test_sets_level_and_filter(self, logger_name):
        logger = configure_logging({'logging': {'level': 'debug'}}, logger_name)
        assert logger.level == logging.DEBUG
        handler = logger.handlers[-1]
        assert any(isinstance(f, SensitiveDataFilter) for f in handler.filters)
        assert isinstance(handler.formatter, SecureFormatter)

    def test_reconfigure_replaces_handler(self, logger_name):
        configure_logging({}, logger_name)
        logger = configure_logging({'logging': {'level': 'WARNING'}}, logger_name)
        assert len(logger.handlers) == 1
        assert logger.level == logging.WARNING

    def test_unknown_level(self, logger_name):
        with pytest.raises(ValueError):
            configure_logging({'logging': {'level': 'LOUD'}}, logger_name)
