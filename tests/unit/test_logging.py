"""Unit tests for logging infrastructure."""
import pytest
import logging
from pathlib import Path
from vidsqueeze.infrastructure.logging import setup_logging, LOG_FILENAME


@pytest.fixture(autouse=True)
def restore_logging():
    yield
    logging.basicConfig(handlers=[logging.NullHandler()], force=True)


def test_setup_logging_creates_log_file(tmp_path):
    """Test that setup_logging creates log file."""
    logger = setup_logging(tmp_path, debug=False)

    assert isinstance(logger, logging.Logger)
    assert (tmp_path / LOG_FILENAME).exists()


def test_setup_logging_debug_mode(tmp_path):
    logger = setup_logging(tmp_path, debug=True)
    assert logger.getEffectiveLevel() == logging.DEBUG


def test_setup_logging_normal_mode(tmp_path):
    logger = setup_logging(tmp_path, debug=False)
    assert logger.getEffectiveLevel() == logging.INFO


def test_setup_logging_custom_path(tmp_path):
    """log_path wins over log_dir and its parent is created."""
    custom = tmp_path / "logs" / "run.log"
    setup_logging(tmp_path / "unused", log_path=custom)
    logging.getLogger("vidsqueeze.pipeline.scheduler").info("QUEUE_START: test")
    for handler in logging.getLogger().handlers:
        handler.flush()

    content = custom.read_text()
    assert "Logging initialized" in content
    assert "INFO - QUEUE_START: test" in content
    assert not (tmp_path / "unused" / LOG_FILENAME).exists()
