import logging
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler

import pytest

from oauth_runner.config import config
from oauth_runner.logging_config import setup_logging


@pytest.fixture
def logging_config(tmp_path):
    old_level = config.LOGGING.LEVEL
    old_file = config.LOGGING.FILE
    old_module_levels = config.LOGGING.MODULE_LEVELS
    services_logger = logging.getLogger("oauth_runner.services")
    old_services_level = services_logger.level

    config.defrost()
    config.LOGGING.LEVEL = "INFO"
    config.LOGGING.FILE = str(tmp_path / "logs" / "oauth_runner.log")
    config.freeze()
    try:
        yield tmp_path
    finally:
        config.defrost()
        config.LOGGING.LEVEL = old_level
        config.LOGGING.FILE = old_file
        config.LOGGING.MODULE_LEVELS = old_module_levels
        config.freeze()
        services_logger.setLevel(old_services_level)


@contextmanager
def _root_handlers(handlers):
    root_logger = logging.getLogger()
    saved_handlers, saved_level = root_logger.handlers[:], root_logger.level
    root_logger.handlers = list(handlers)
    try:
        yield root_logger
    finally:
        for handler in root_logger.handlers:
            handler.close()
        root_logger.handlers = saved_handlers
        root_logger.setLevel(saved_level)


def _set_module_levels(levels):
    config.defrost()
    config.LOGGING.MODULE_LEVELS = levels
    config.freeze()


def test_services_level_applies_even_when_handlers_exist(logging_config):
    _set_module_levels([("oauth_runner.services", "DEBUG")])

    with _root_handlers([logging.NullHandler()]):
        setup_logging()

    assert logging.getLogger("oauth_runner.services").level == logging.DEBUG
    assert logging.getLogger("oauth_runner.services.session_registry").isEnabledFor(logging.DEBUG)
    # existing handlers mean no file is created
    assert not (logging_config / "logs").exists()


def test_empty_or_unknown_module_level_is_left_alone(logging_config):
    services_logger = logging.getLogger("oauth_runner.services")
    services_logger.setLevel(logging.NOTSET)
    _set_module_levels([("oauth_runner.services", ""), ("oauth_runner.routers", "LOUD")])

    with _root_handlers([logging.NullHandler()]):
        setup_logging()

    assert services_logger.level == logging.NOTSET
    assert logging.getLogger("oauth_runner.routers").level == logging.NOTSET


def test_setup_installs_stream_and_rotating_file_handlers(logging_config):
    _set_module_levels([("oauth_runner.services", "DEBUG")])

    with _root_handlers([]) as root_logger:
        setup_logging()

        kinds = [type(handler) for handler in root_logger.handlers]
        assert RotatingFileHandler in kinds
        assert logging.StreamHandler in kinds
        assert root_logger.level == logging.INFO
        # handlers do not filter, so the services DEBUG level reaches the file
        assert all(handler.level == logging.NOTSET for handler in root_logger.handlers)
        logging.getLogger("oauth_runner.services.process_supervisor").debug("helper line")
        for handler in root_logger.handlers:
            handler.flush()
        log_text = (logging_config / "logs" / "oauth_runner.log").read_text(encoding="utf-8")
        assert "helper line" in log_text
