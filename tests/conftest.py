"""
Shared test fixtures and configuration.
"""

from pathlib import Path

import pytest

from hostplan.adapters.mock import MockHost
from hostplan.core.engine.context import HostContext
from hostplan.core.models.plan import Plan


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def plans_dir(project_root: Path) -> Path:
    """Return the bundled plans directory."""
    return project_root / "plans"


@pytest.fixture
def tmp_state_dir(tmp_path: Path) -> Path:
    """Return a temporary directory for run state."""
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def mock_host() -> MockHost:
    return MockHost()


@pytest.fixture
def host_ctx(mock_host: MockHost) -> HostContext:
    return HostContext(registry=mock_host.registry(), variables={"DOMAIN": "example.com"})


@pytest.fixture
def web_plan() -> Plan:
    """Install docker → write config → ensure service."""
    return Plan.parse({
        "name": "web",
        "variables": {"GREETING": "hello"},
        "steps": [
            {
                "id": "install-docker",
                "kind": "PackageInstall",
                "params": {"packages": ["docker.io"]},
                "rollback": "auto",
            },
            {
                "id": "write-config",
                "kind": "FileWrite",
                "depends_on": ["install-docker"],
                "params": {"path": "/etc/app.conf", "content_template": "greeting={GREETING}\n"},
                "rollback": "auto",
            },
            {
                "id": "ensure-service",
                "kind": "ServiceEnsure",
                "depends_on": ["write-config"],
                "params": {"name": "app"},
            },
        ],
    })
