"""Tests for utility functions."""

import json
import logging
import os
from pathlib import Path
import tempfile

import numpy as np
import pytest

from tahlil.utils import setup_logging, ensure_dir, clean_for_json


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture(autouse=True)
def restore_root_logger():
    """Remove handlers added by setup_logging after each test."""
    root_logger = logging.getLogger()
    handlers = root_logger.handlers[:]
    level = root_logger.level
    yield
    for handler in root_logger.handlers[:]:
        if handler not in handlers:
            root_logger.removeHandler(handler)
            handler.close()
    root_logger.setLevel(level)


def test_setup_logging(temp_dir):
    """Test setting up logging configuration."""
    log_dir = temp_dir / "logs"

    logger = setup_logging(log_dir)
    assert log_dir.exists()
    assert (log_dir / "workflow.log").exists()
    assert logger.name == "tahlil"
    assert logging.getLogger().level == logging.INFO

    setup_logging(log_dir, level=logging.DEBUG)
    assert logging.getLogger().level == logging.DEBUG


def test_setup_logging_writes_messages(temp_dir):
    """Messages logged after setup end up in the log file."""
    log_dir = temp_dir / "nested" / "logs"
    setup_logging(log_dir)
    logging.getLogger("tahlil.test").info("hello from the test")

    for handler in logging.getLogger().handlers:
        handler.flush()
    assert "hello from the test" in (log_dir / "workflow.log").read_text()


def test_setup_logging_without_dir(temp_dir):
    """Console-only logging creates no files."""
    setup_logging()
    assert list(temp_dir.iterdir()) == []


def test_ensure_dir(temp_dir):
    """Test directory creation."""
    test_dir = temp_dir / "test_dir"
    assert ensure_dir(test_dir) == test_dir
    assert test_dir.is_dir()

    # Existing directory is fine
    ensure_dir(test_dir)


def test_ensure_dir_nested(temp_dir):
    """Test nested directory creation."""
    test_dir = temp_dir / "nested" / "test_dir"
    ensure_dir(test_dir)
    assert test_dir.is_dir()


def test_ensure_dir_file_exists(temp_dir):
    """Test behavior when a file exists at the target path."""
    test_path = temp_dir / "test_file"
    test_path.touch()

    with pytest.raises(FileExistsError):
        ensure_dir(test_path)


def test_clean_for_json():
    """Numpy values become plain Python values."""
    item = {
        'count': np.int64(3),
        'ratio': np.float32(0.5),
        'missing': float('nan'),
        'flag': np.bool_(True),
        'values': np.array([1.0, 2.0]),
        'nested': [{'x': np.int32(1)}],
        1: 'numeric key',
    }
    cleaned = clean_for_json(item)

    assert cleaned == {
        'count': 3,
        'ratio': 0.5,
        'missing': None,
        'flag': True,
        'values': [1.0, 2.0],
        'nested': [{'x': 1}],
        '1': 'numeric key',
    }
    # Serialises without a custom encoder
    json.dumps(cleaned)
