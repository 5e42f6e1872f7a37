"""
Shared test fixtures and configuration for avdops tests.

This module provides common fixtures used across all test types:
- In-memory compute / control-plane / store fakes
- A sample session host environment (VM avd-sh-0 in pool-A)
- Temporary config files for CLI tests
- Retry and logging isolation
"""

import logging

import pytest

from avdops.console import ConsoleHandler
from avdops.models import HostPool, HostPoolType, SessionHost, SessionHostStatus
from avdops.retry_config import reset_retry_config
from tests.mocks.avd_mock import (
    FakeComputeProvider,
    FakeDesktopProvider,
    FakeGalleryProvider,
    InMemoryMaintenanceStore,
)

VM_NAME = "avd-sh-0"
VM_RESOURCE_GROUP = "rg-avd-vms"
VM_FQDN = "avd-sh-0.contoso.local"
POOL_NAME = "pool-A"
POOL_RESOURCE_GROUP = "rg-A"


# ============================================================================
# ISOLATION FIXTURES
# ============================================================================


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    """Disable SDK retries so failing calls never sleep."""
    monkeypatch.setenv("AVDOPS_RETRY_MAX_ATTEMPTS", "1")
    monkeypatch.setenv("AVDOPS_RETRY_JITTER_ENABLED", "false")
    reset_retry_config()
    yield
    reset_retry_config()


@pytest.fixture(autouse=True)
def restore_root_logging():
    """Remove console handlers the CLI installs on the root logger."""
    root = logging.getLogger()
    level = root.level
    yield
    for handler in list(root.handlers):
        if isinstance(handler, ConsoleHandler):
            root.removeHandler(handler)
    root.setLevel(level)


@pytest.fixture
def no_sleep():
    """Sleep replacement that records requested delays."""
    delays: list[float] = []

    def _sleep(seconds: float) -> None:
        delays.append(seconds)

    _sleep.delays = delays
    return _sleep


# ============================================================================
# AVD ENVIRONMENT FIXTURES
# ============================================================================


@pytest.fixture
def pool():
    return HostPool(name=POOL_NAME, resource_group=POOL_RESOURCE_GROUP, host_pool_type=HostPoolType.POOLED)


@pytest.fixture
def session_host():
    """Available, accepting session host for avd-sh-0 in pool-A."""
    return SessionHost(
        name=VM_FQDN,
        pool_name=POOL_NAME,
        pool_resource_group=POOL_RESOURCE_GROUP,
        status=SessionHostStatus.AVAILABLE,
        allow_new_session=True,
    )


@pytest.fixture
def compute():
    return FakeComputeProvider(computer_names={VM_NAME: VM_FQDN})


@pytest.fixture
def desktop(pool, session_host):
    """Control plane with pool-B (empty) and pool-A containing avd-sh-0."""
    other = HostPool(name="pool-B", resource_group="rg-B", host_pool_type=HostPoolType.PERSONAL)
    fake = FakeDesktopProvider(pools=[other, pool])
    fake.add_host(session_host)
    return fake


@pytest.fixture
def empty_desktop(pool):
    """Control plane where avd-sh-0 is not a member of any pool."""
    return FakeDesktopProvider(pools=[pool])


@pytest.fixture
def store():
    return InMemoryMaintenanceStore()


@pytest.fixture
def gallery_provider():
    return FakeGalleryProvider()


# ============================================================================
# CONFIG FIXTURES
# ============================================================================


@pytest.fixture
def state_dir(tmp_path):
    path = tmp_path / "state"
    path.mkdir()
    return path


@pytest.fixture
def config_file(tmp_path, state_dir):
    """Config file with zero polling delays and a temp state dir."""
    path = tmp_path / "config.toml"
    path.write_text(
        f'subscription_id = "00000000-0000-0000-0000-000000000000"\n'
        f'state_dir = "{state_dir.as_posix()}"\n'
        "registration_settle_seconds = 0\n"
        "registration_poll_interval = 0\n"
        "registration_max_attempts = 3\n"
        'image_location = "westeurope"\n'
    )
    path.chmod(0o600)
    return path
