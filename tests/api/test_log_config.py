import logging

import pytest

from rebound_relay.api import log_config


@pytest.fixture
def scratch_logger():
    name = "rebound_relay_test_logger"
    yield name
    logging.getLogger(name).handlers.clear()


def test_package_logger_is_configured_at_import():
    package = logging.getLogger(log_config.PACKAGE_LOGGER)

    assert package.propagate is False
    assert len(package.handlers) == 1
    assert log_config.logger.name == "rebound_relay.app"


def test_level_from_environment(monkeypatch, scratch_logger):
    monkeypatch.setenv("LOGGING_LEVEL", "debug")

    logger = log_config.setup_logger(scratch_logger)

    assert logger.level == logging.DEBUG
    assert logger.handlers[0].level == logging.DEBUG


def test_unknown_level_falls_back_to_info(monkeypatch, scratch_logger):
    monkeypatch.setenv("LOGGING_LEVEL", "LOUD")

    assert log_config.setup_logger(scratch_logger).level == logging.INFO


def test_repeated_setup_keeps_one_handler(scratch_logger):
    log_config.setup_logger(scratch_logger)
    logger = log_config.setup_logger(scratch_logger)

    assert len(logger.handlers) == 1
    assert "%(name)s" in logger.handlers[0].formatter._fmt
