"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for one_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from one_mock import MockOpenNebula  # noqa: E402

from oneop.client import RpcClient  # noqa: E402
from oneop.config import Config, PollBudget  # noqa: E402

ENDPOINT = "http://one.example.test:2633/RPC2"


@pytest.fixture
def server() -> MockOpenNebula:
    """Fresh in-memory OpenNebula endpoint."""
    return MockOpenNebula(username="oneadmin", password="secret")


@pytest.fixture
def client(server: MockOpenNebula) -> RpcClient:
    """RPC client wired to the in-memory endpoint."""
    return RpcClient(
        ENDPOINT, "oneadmin", "secret", server=server.connect(ENDPOINT, "oneadmin:secret")
    )


@pytest.fixture
def fast_budget() -> PollBudget:
    """Convergence budget that never sleeps for long."""
    return PollBudget(
        timeout_seconds=1.0,
        poll_interval_seconds=0.0,
        min_interval_seconds=0.0,
        max_attempts=5,
    )


@pytest.fixture
def config() -> Config:
    """Valid configuration pointing at the test endpoint."""
    return Config(
        endpoint=ENDPOINT,
        username="oneadmin",
        password="secret",
        convergence_timeout_seconds=1.0,
        poll_interval_seconds=0.0,
        min_poll_interval_seconds=0.0,
    )
