"""
Pytest configuration for the branchchat test suite.
"""

import logging

import pytest


def pytest_configure(config):
    """Configure pytest additional settings."""
    logging.getLogger("httpx").setLevel(logging.WARNING)


@pytest.fixture
def anyio_backend() -> str:
    """Run ``@pytest.mark.anyio`` tests on asyncio only."""
    return "asyncio"
