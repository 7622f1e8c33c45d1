"""
Shared pytest fixtures for unit tests.
"""

import os
import sys
from pathlib import Path

# Unit tests never talk to a real Redis or a developer's .env values.
os.environ.pop("MCPGATE_REDIS_URL", None)
os.environ.setdefault("MCPGATE_ENVIRONMENT", "development")
os.environ.setdefault("MCPGATE_LOG_LEVEL", "DEBUG")

PROJECT_SRC = Path(__file__).resolve().parents[2]
if str(PROJECT_SRC) not in sys.path:
    sys.path.insert(0, str(PROJECT_SRC))

import pytest

from mcpgate.core import logging as mcpgate_logging
from mcpgate.core.cache_backend import InMemoryCacheBackend, reset_cache_backend
from mcpgate.core.config import Settings, reset_settings_instance
from mcpgate.schemas.plugin import ArtifactKind, ArtifactRef, PluginDescriptor

FIXTURES_DIR = Path(__file__).resolve().parent / "fixtures"
FAKE_PLUGIN = FIXTURES_DIR / "fake_plugin.py"

# Syntactically valid, never issued by the platform
TEST_CREDENTIAL = "apify_api_" + "Zq7Xw2Lm9Np4Rt6Vb8Cd1Fg3Hj5Kk0"


@pytest.fixture(autouse=True)
def reset_global_state():
    reset_settings_instance()
    reset_cache_backend()
    with mcpgate_logging._secrets_lock:
        mcpgate_logging._registered_secrets.clear()
    yield
    reset_settings_instance()
    reset_cache_backend()
    with mcpgate_logging._secrets_lock:
        mcpgate_logging._registered_secrets.clear()


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Fast timeouts and a private work root."""
    return Settings(
        work_root=str(tmp_path / "work"),
        handshake_timeout_seconds=5.0,
        install_timeout_seconds=10.0,
        reachability_timeout_seconds=2.0,
        process_kill_grace_seconds=0.5,
        deploy_poll_interval_seconds=5.0,
        deploy_poll_budget_seconds=180.0,
        registry_api_url="http://registry.test/v1",
        hosting_api_base_url="https://hosting.test/v2",
        redis_url=None,
    )


@pytest.fixture
def memory_backend() -> InMemoryCacheBackend:
    return InMemoryCacheBackend(cleanup_interval_seconds=0)


@pytest.fixture
def npm_descriptor() -> PluginDescriptor:
    return PluginDescriptor(
        slug="weather-tools",
        display_name="Weather Tools",
        artifact=ArtifactRef(kind=ArtifactKind.NPM, reference="@acme/weather-mcp"),
        repository_url="https://github.com/acme/weather-mcp",
        description="Forecasts over MCP",
        category="data",
    )


@pytest.fixture
def credential() -> str:
    return TEST_CREDENTIAL


@pytest.fixture
def fake_plugin_path() -> Path:
    return FAKE_PLUGIN


@pytest.fixture
def plugin_pid_dir(tmp_path) -> Path:
    """Fixture plugins launched through fake npm write ``<name>.pid`` here on startup."""
    path = tmp_path / "pids"
    path.mkdir()
    return path


@pytest.fixture
def fake_npm(tmp_path, plugin_pid_dir) -> str:
    """Executable that behaves like ``npm install`` for fixture packages."""
    if sys.platform == "win32":
        pytest.skip("shell launchers are POSIX only")
    wrapper = tmp_path / "bin" / "npm"
    wrapper.parent.mkdir(parents=True, exist_ok=True)
    wrapper.write_text(
        f'#!/bin/sh\nexec "{sys.executable}" "{FIXTURES_DIR / "fake_npm.py"}" --pid-dir "{plugin_pid_dir}" "$@"\n'
    )
    wrapper.chmod(0o755)
    return str(wrapper)


@pytest.fixture
def install_settings(test_settings, fake_npm) -> Settings:
    return test_settings.model_copy(update={"npm_executable": fake_npm, "install_timeout_seconds": 10.0})
