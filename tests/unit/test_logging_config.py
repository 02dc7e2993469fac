"""Unit tests for safesandbox/logging_config.py."""

import logging

import pytest

from safesandbox.logging_config import NOISY_LOGGERS, configure_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    app_level = logging.getLogger("safesandbox").level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    logging.getLogger("safesandbox").setLevel(app_level)


def test_explicit_level_applies_to_app_loggers():
    configure_logging("DEBUG")
    assert logging.getLogger("safesandbox").level == logging.DEBUG
    assert logging.getLogger("safesandbox.mediator.engine").getEffectiveLevel() == logging.DEBUG


def test_noisy_loggers_held_at_warning():
    configure_logging("DEBUG")
    for name in NOISY_LOGGERS:
        assert logging.getLogger(name).level == logging.WARNING


def test_single_stderr_handler():
    configure_logging("INFO")
    configure_logging("INFO")
    root = logging.getLogger()
    assert len(root.handlers) == 1
    assert root.handlers[0].level == logging.INFO


def test_defaults_to_settings_level(mock_settings):
    mock_settings.log_level = "ERROR"
    configure_logging()
    assert logging.getLogger("safesandbox").level == logging.ERROR
