"""Tests for utility functions."""

import logging

from genesetdb.utils import LOG_FILE, ensure_dir, setup_logging


def _own_handlers(logger):
    return [h for h in logger.handlers if getattr(h, "_genesetdb", False)]


def test_setup_logging(tmp_path):
    """Test setting up logging configuration."""
    log_dir = tmp_path / "logs"
    logger = setup_logging(log_dir)
    assert log_dir.exists()
    assert (log_dir / LOG_FILE).exists()
    assert logger.name == "genesetdb"
    assert logger.level == logging.INFO

    setup_logging(log_dir, level=logging.DEBUG)
    assert logger.level == logging.DEBUG


def test_setup_logging_writes_package_records(tmp_path):
    """Test that records from package modules reach the log file."""
    logger = setup_logging(tmp_path, console=False)
    logging.getLogger("genesetdb.conform").info("conformed to the universe")
    for handler in logger.handlers:
        handler.flush()
    assert "conformed to the universe" in (tmp_path / LOG_FILE).read_text()


def test_setup_logging_replaces_handlers(tmp_path):
    """Test that repeated setup does not stack handlers."""
    logger = setup_logging(tmp_path)
    assert len(_own_handlers(logger)) == 2
    setup_logging(tmp_path)
    assert len(_own_handlers(logger)) == 2
    setup_logging(console=False)
    assert _own_handlers(logger) == []


def test_setup_logging_leaves_root_logger_alone(tmp_path):
    """Test that the root logger keeps its handlers."""
    before = list(logging.getLogger().handlers)
    setup_logging(tmp_path / "nested" / "logs")
    assert (tmp_path / "nested" / "logs" / LOG_FILE).exists()
    assert logging.getLogger().handlers == before


def test_ensure_dir(tmp_path):
    """Test directory creation."""
    path = ensure_dir(tmp_path / "a" / "b")
    assert path.is_dir()
    # existing directories are fine
    assert ensure_dir(str(path)) == path
