"""Fixtures for the package health checks."""

from pathlib import Path

import pytest


@pytest.fixture
def package_dir() -> Path:
    """Return the mq_consumer package directory path."""
    return Path(__file__).parent.parent / "src" / "mq_consumer"
