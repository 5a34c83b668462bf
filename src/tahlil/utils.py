"""Utility functions shared by the expression-analysis workflows."""

import logging
from pathlib import Path
from typing import Any

import numpy as np


def setup_logging(log_dir=None, level=logging.INFO):
    """Set up logging configuration.

    Args:
        log_dir: Directory to store log files
        level: Logging level

    Returns:
        The package logger
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    if log_dir:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / 'workflow.log'

        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
        root_logger.addHandler(file_handler)
        # Write something straight away so the file exists
        root_logger.info("Logging initialized")

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s'
    ))
    root_logger.addHandler(console_handler)

    return logging.getLogger('tahlil')


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary.

    Args:
        path: Directory path

    Returns:
        Path object for the directory
    """
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def clean_for_json(item: Any) -> Any:
    """Convert numpy scalars and arrays into JSON serialisable Python values."""
    if isinstance(item, dict):
        return {str(k): clean_for_json(v) for k, v in item.items()}
    elif isinstance(item, (list, tuple)):
        return [clean_for_json(i) for i in item]
    elif isinstance(item, np.ndarray):
        return clean_for_json(item.tolist())
    elif isinstance(item, np.bool_):
        return bool(item)
    elif isinstance(item, np.integer):
        return int(item)
    elif isinstance(item, np.floating):
        value = float(item)
        return None if np.isnan(value) else value
    elif isinstance(item, float) and np.isnan(item):
        return None
    else:
        return item
