# tests/test_logging_setup.py
import logging
import logging.handlers

import pytest
import structlog
from config import settings
from rich.logging import RichHandler

import utils.logging as logging_utils


@pytest.fixture
def restore_root_logger():
    root_logger = logging.getLogger()
    saved_handlers = root_logger.handlers[:]
    saved_level = root_logger.level
    yield root_logger
    for handler in root_logger.handlers:
        if handler not in saved_handlers:
            handler.close()
    root_logger.handlers = saved_handlers
    root_logger.setLevel(saved_level)
    structlog.reset_defaults()


def test_setup_logging_adds_file_and_plain_console(tmp_path, monkeypatch, restore_root_logger):
    log_path = tmp_path / "pipeline.log"
    monkeypatch.setattr(settings, "LOG_FILE", str(log_path))
    monkeypatch.setattr(settings, "ENABLE_RICH_LOGGING", False)

    logging_utils.setup_logging()

    kinds = [type(handler) for handler in restore_root_logger.handlers]
    assert logging.handlers.RotatingFileHandler in kinds
    assert logging.StreamHandler in kinds
    assert log_path.exists()
    assert logging.getLogger("httpx").level == logging.WARNING


def test_setup_logging_uses_rich_console(monkeypatch, restore_root_logger):
    monkeypatch.setattr(settings, "LOG_FILE", None)
    monkeypatch.setattr(settings, "ENABLE_RICH_LOGGING", True)

    logging_utils.setup_logging()

    assert [type(handler) for handler in restore_root_logger.handlers] == [RichHandler]


def test_setup_logging_file_error(tmp_path, monkeypatch, restore_root_logger):
    errors = []

    class _Recorder:
        def error(self, *args, **kwargs):
            errors.append(args)

    def raise_handler(*_a, **_k):
        raise OSError("fail")

    monkeypatch.setattr(logging.handlers, "RotatingFileHandler", raise_handler)
    monkeypatch.setattr(logging_utils, "logger", _Recorder())
    monkeypatch.setattr(settings, "LOG_FILE", "temp.log")
    monkeypatch.setattr(settings, "DATA_DIR", str(tmp_path))
    monkeypatch.setattr(settings, "ENABLE_RICH_LOGGING", False)

    logging_utils.setup_logging()

    assert errors and errors[0][0].startswith("Error setting up file logger")
