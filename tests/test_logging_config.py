"""Tests for logging setup."""

import logging
import sys

import pytest

from a11yscan.config import settings
from a11yscan.logging_config import setup_logging


@pytest.fixture(autouse=True)
def restore_logging(monkeypatch):
    monkeypatch.setattr(settings, "LOG_FILE", None)
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    library_levels = {name: logging.getLogger(name).level for name in ("httpx", "playwright")}
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)
    for name, library_level in library_levels.items():
        logging.getLogger(name).setLevel(library_level)


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_defaults_from_settings(self, monkeypatch):
        monkeypatch.setattr(settings, "LOG_LEVEL", "warning")

        root = setup_logging()

        assert root.level == logging.WARNING
        assert len(root.handlers) == 1
        assert root.handlers[0].stream is sys.stderr

    def test_explicit_level_wins(self, monkeypatch):
        monkeypatch.setattr(settings, "LOG_LEVEL", "ERROR")

        root = setup_logging(level="DEBUG")

        assert root.level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.DEBUG

    def test_unknown_level_falls_back_to_info(self):
        root = setup_logging(level="chatty")

        assert root.level == logging.INFO
        assert logging.getLogger("playwright").level == logging.WARNING

    def test_log_file(self, tmp_path):
        log_file = tmp_path / "logs" / "scan.log"

        setup_logging(level="INFO", log_file=str(log_file), format_string="%(levelname)s %(message)s")
        logging.getLogger("a11yscan.test").info("crawl started")
        for handler in logging.getLogger().handlers:
            handler.flush()

        assert log_file.read_text(encoding="utf-8").strip() == "INFO crawl started"
