"""Pytest configuration and fixtures."""

import pytest

from feedrelay.config import RelaySettings


@pytest.fixture
def event_loop_policy():
    """Use the default event loop policy for all async tests."""
    import asyncio

    return asyncio.DefaultEventLoopPolicy()


@pytest.fixture
def settings(tmp_path):
    """Simulator-mode settings that log under a temporary directory."""
    return RelaySettings(log_dir=tmp_path / "logs", sim_interval=0.02, shutdown_timeout=2.0)
