"""
Pytest configuration and shared fixtures
"""

import pytest

from cheeky_runner.config import RunnerConfig
from tests.fakes import FakeExecutor


@pytest.fixture
def runner_config() -> RunnerConfig:
    """Runner configuration that ignores any local .env file"""
    return RunnerConfig(
        _env_file=None,
        stop_timeout=1,
        sandbox_create_timeout=5.0,
        teardown_timeout=5.0,
        max_output_size=4096
    )


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def workspace(tmp_path):
    """Empty host directory used as a job workspace"""
    path = tmp_path / "workspace"
    path.mkdir()
    return path
