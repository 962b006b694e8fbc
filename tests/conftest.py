"""
Test session bootstrap for the workspace reconciler.

- Adds wr_server/src and wr_client/src to sys.path so both packages import
  without an editable install.
- Registers the "docker" marker and skips those tests when the configured
  engine endpoint (WORKSPACE_ENGINE_URL) is not reachable.
- Provides fixtures for a fake engine, a throwaway template directory and a
  fully wired Reconciler.
"""

from __future__ import annotations

import contextlib
import dataclasses
import os
import sys
import tempfile
from pathlib import Path
from typing import Tuple

import pytest


def _add_sys_path(p: Path) -> None:
    """
    Prepend a filesystem path to sys.path if it's not already present.
    """
    try:
        rp = str(p.resolve())
    except OSError:
        rp = str(p)
    if rp not in sys.path:
        sys.path.insert(0, rp)


# Compute important paths relative to this file
_THIS_FILE = Path(__file__).resolve()
_TESTS_DIR = _THIS_FILE.parent                  # .../tests
_PROJECT_DIR = _TESTS_DIR.parent                # project root

_add_sys_path(_PROJECT_DIR / "wr_server" / "src")
_add_sys_path(_PROJECT_DIR / "wr_client" / "src")
# Shared test helpers (fakes.py)
_add_sys_path(_TESTS_DIR)

os.environ.setdefault("WR_ALLOW_INSECURE_HTTP", "true")
os.environ.setdefault("WORKSPACE_AGENT_TOKEN_SECRET", "unit-test-agent-secret")
os.environ.setdefault("WR_LOG_DIR", str(Path(tempfile.gettempdir()) / "wr_test_logs"))

_DEFAULT_ENGINE_URL = "unix:///var/run/docker.sock"

from fakes import BASIC_TEMPLATE, FakeClock, FakeEngine, write_template  # noqa: E402

from wr_server.app.config import ServerConfig  # noqa: E402
from wr_server.app.reconciler.apps import ExposedApplicationRegistry  # noqa: E402
from wr_server.app.reconciler.core import Reconciler  # noqa: E402
from wr_server.app.reconciler.handshake import AgentHandshake  # noqa: E402
from wr_server.app.reconciler.store import MemoryWorkspaceStore  # noqa: E402
from wr_server.app.templates.registry import TemplateRegistry  # noqa: E402


# --------------------------
# Docker availability
# --------------------------

def _docker_available() -> Tuple[bool, str]:
    """
    Check if the configured Docker endpoint is reachable.
    Returns (available, reason_if_unavailable).
    """
    try:
        import docker
    except ImportError as e:
        return False, f"Docker SDK not importable: {e} (install the 'docker' Python package)"

    base_url = os.getenv("WORKSPACE_ENGINE_URL") or _DEFAULT_ENGINE_URL
    try:
        with contextlib.closing(docker.DockerClient(base_url=base_url, timeout=5)) as client:
            client.ping()
        return True, ""
    except Exception as e:
        return False, f"Docker daemon not reachable at {base_url}: {e} (set WORKSPACE_ENGINE_URL to a reachable engine)"


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "docker: mark test as requiring Docker (skipped if Docker is unavailable)",
    )
    available, reason = _docker_available()
    setattr(config, "_wr_docker_available", available)
    setattr(config, "_wr_docker_unavailable_reason", reason)


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if getattr(config, "_wr_docker_available", False):
        return
    reason = getattr(config, "_wr_docker_unavailable_reason", "") or "Docker daemon not reachable"
    skip_marker = pytest.mark.skip(reason=reason)
    for item in items:
        if "docker" in item.keywords:
            item.add_marker(skip_marker)


# --------------------------
# Templates on disk
# --------------------------

@pytest.fixture
def templates_root(tmp_path: Path) -> Path:
    root = tmp_path / "templates"
    root.mkdir()
    write_template(root, BASIC_TEMPLATE)
    return root


@pytest.fixture
def registry(templates_root: Path) -> TemplateRegistry:
    return TemplateRegistry([("test", templates_root)], fail_fast=True)


# --------------------------
# Reconciler wiring
# --------------------------

@pytest.fixture
def settings() -> ServerConfig:
    base = ServerConfig.from_env(dotenv=False)
    return dataclasses.replace(
        base,
        api_key=None,
        api_keys=[],
        engine_base_url=_DEFAULT_ENGINE_URL,
        engine_platform=None,
        engine_socket_path="/var/run/docker.sock",
        state_dir=None,
        agent_token_secret="unit-test-agent-secret",
        access_url="http://127.0.0.1:8081",
        handshake_timeout_seconds=0.0,
        handshake_poll_seconds=0.05,
        volume_workers=4,
        purge_on_delete=False,
    )


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def reconciler(engine: FakeEngine, registry: TemplateRegistry, settings: ServerConfig, clock: FakeClock) -> Reconciler:
    def probe(instance: str, url: str) -> bool:
        engine.probes.append((instance, url))
        return engine.probe_ok

    return Reconciler(
        engine=engine,
        store=MemoryWorkspaceStore(),
        templates=registry,
        handshake=AgentHandshake(settings.agent_token_secret, 3600, clock=clock, sleep=clock.sleep),
        apps=ExposedApplicationRegistry(clock=clock),
        settings=settings,
        probe=probe,
    )
