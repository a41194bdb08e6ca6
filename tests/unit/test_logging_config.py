"""Unit tests for logging setup."""
import logging

import pytest

from src.core.config import LoggingConfig
from src.utils.logging_config import setup_logging


@pytest.fixture
def log_config(tmp_path):
    config = LoggingConfig(log_level="INFO", log_file=str(tmp_path / "logs" / "agent.log"))
    yield config
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, logging.FileHandler) and handler.baseFilename.startswith(str(tmp_path)):
            root.removeHandler(handler)
            handler.close()


def file_handlers(tmp_path):
    return [
        h for h in logging.getLogger().handlers
        if isinstance(h, logging.FileHandler) and h.baseFilename.startswith(str(tmp_path))
    ]


class TestSetupLogging:
    """Test structured logging configuration."""

    def test_creates_log_directory(self, log_config, tmp_path):
        setup_logging(log_config)

        assert (tmp_path / "logs").is_dir()
        assert len(file_handlers(tmp_path)) == 1

    def test_repeated_setup_adds_one_file_handler(self, log_config, tmp_path):
        setup_logging(log_config)
        setup_logging(log_config)

        assert len(file_handlers(tmp_path)) == 1
