"""Tests for the maintenance transition."""

import logging

import pytest

from avdops.errors import MaintenanceStoreError, ProviderError
from avdops.maintenance import (
    STEP_DISCOVER,
    STEP_DRAIN,
    STEP_LOCAL_ACCESS,
    STEP_REMOVE,
    MaintenanceRequest,
    MaintenanceTransition,
)
from avdops.models import LocalAdminCredential, MaintenanceRecord, RunCommandOutput, SessionHostStatus
from avdops.remote_scripts import MAINTENANCE_SCRIPT
from tests.conftest import POOL_NAME, POOL_RESOURCE_GROUP, VM_FQDN, VM_NAME, VM_RESOURCE_GROUP


@pytest.fixture
def credential():
    return LocalAdminCredential.create("avdadmin")


@pytest.fixture
def request_for(credential):
    def _make(**overrides):
        values = {
            "vm_name": VM_NAME,
            "resource_group": VM_RESOURCE_GROUP,
            "credential": credential,
        }
        values.update(overrides)
        return MaintenanceRequest(**values)

    return _make


@pytest.fixture
def transition(compute, desktop, store):
    return MaintenanceTransition(compute, desktop, store)


class TestMaintenanceHappyPath:
    """VM is an Available, accepting member of pool-A."""

    def test_drains_removes_records_and_configures_access(
        self, transition, request_for, compute, desktop, store, credential
    ):
        outcome = transition.run(request_for())

        assert outcome.succeeded
        assert desktop.called("set_allow_new_session") == [
            ("set_allow_new_session", POOL_RESOURCE_GROUP, POOL_NAME, VM_FQDN, False)
        ]
        assert desktop.called("delete_session_host") == [
            ("delete_session_host", POOL_RESOURCE_GROUP, POOL_NAME, VM_FQDN)
        ]
        assert desktop.hosts[POOL_NAME] == {}
        assert compute.scripts_run() == [MAINTENANCE_SCRIPT]
        assert compute.parameters_for(MAINTENANCE_SCRIPT) == {
            "LocalAdminUser": "avdadmin",
            "LocalAdminPassword": credential.password,
        }

    def test_record_matches_discovered_pool(self, transition, request_for, store):
        outcome = transition.run(request_for())

        expected = MaintenanceRecord(
            vm_name=VM_NAME, pool_name=POOL_NAME, pool_resource_group=POOL_RESOURCE_GROUP
        )
        assert store.load(VM_NAME) == expected
        assert outcome.record == expected

    def test_steps_run_in_order(self, transition, request_for):
        outcome = transition.run(request_for())

        assert [r.step for r in outcome.report.results] == [
            STEP_DISCOVER,
            STEP_DRAIN,
            STEP_REMOVE,
            STEP_LOCAL_ACCESS,
        ]
        assert not outcome.report.warnings

    def test_password_is_never_logged(self, transition, request_for, credential, caplog):
        caplog.set_level(logging.DEBUG)
        transition.run(request_for())

        assert credential.password not in caplog.text


class TestMaintenanceIdempotence:
    def test_second_run_skips_drain_and_removal(self, transition, request_for, compute, desktop):
        transition.run(request_for())
        second = transition.run(request_for())

        assert second.succeeded
        assert not second.report.step(STEP_DISCOVER).ok
        assert second.report.step(STEP_DRAIN).skipped
        assert second.report.step(STEP_REMOVE).skipped
        assert len(desktop.called("delete_session_host")) == 1
        assert compute.scripts_run() == [MAINTENANCE_SCRIPT, MAINTENANCE_SCRIPT]

    def test_removing_twice_succeeds_both_times(
        self, transition, request_for, session_host
    ):
        request = request_for()
        outcome = transition.run(request_for(skip_pool_removal=True))

        first = transition.remove(request, session_host, outcome)
        second = transition.remove(request, session_host, outcome)

        assert first.ok and not first.skipped
        assert second.ok and not second.skipped
        assert "already absent" in second.message


class TestSkipPoolRemoval:
    def test_only_local_access_runs(self, transition, request_for, compute, desktop, store):
        outcome = transition.run(request_for(skip_pool_removal=True))

        assert outcome.succeeded
        assert desktop.calls == []
        assert store.records == {}
        for step in (STEP_DISCOVER, STEP_DRAIN, STEP_REMOVE):
            assert outcome.report.step(step).skipped
            assert not outcome.report.attempted(step)
        assert compute.scripts_run() == [MAINTENANCE_SCRIPT]


class TestDraining:
    @pytest.mark.parametrize(
        "status",
        [
            SessionHostStatus.UNAVAILABLE,
            SessionHostStatus.UPGRADING,
            SessionHostStatus.NO_HEARTBEAT,
            SessionHostStatus.SHUTDOWN,
            SessionHostStatus.UNKNOWN,
        ],
    )
    def test_unhealthy_host_is_not_drained(
        self, transition, request_for, desktop, session_host, status
    ):
        session_host.status = status

        outcome = transition.run(request_for())

        drain = outcome.report.step(STEP_DRAIN)
        assert drain.skipped
        assert drain.ok
        assert desktop.called("set_allow_new_session") == []
        assert desktop.called("delete_session_host")
        assert outcome.succeeded

    def test_needs_assistance_host_is_drained(self, transition, request_for, desktop, session_host):
        session_host.status = SessionHostStatus.NEEDS_ASSISTANCE

        transition.run(request_for())

        assert len(desktop.called("set_allow_new_session")) == 1

    def test_host_already_draining_is_skipped(self, transition, request_for, desktop, session_host):
        session_host.allow_new_session = False

        outcome = transition.run(request_for())

        assert outcome.report.step(STEP_DRAIN).skipped
        assert desktop.called("set_allow_new_session") == []

    def test_drain_failure_is_warning(self, transition, request_for, desktop, caplog):
        desktop.fail("set_allow_new_session")

        outcome = transition.run(request_for())

        drain = outcome.report.step(STEP_DRAIN)
        assert not drain.ok and not drain.fatal
        assert outcome.succeeded
        assert desktop.called("delete_session_host")
        assert any(
            r.levelno == logging.WARNING and "Could not drain" in r.getMessage()
            for r in caplog.records
        )


class TestRemoval:
    def test_removal_failure_is_warning_and_no_record(
        self, transition, request_for, desktop, store, compute
    ):
        desktop.fail("delete_session_host")

        outcome = transition.run(request_for())

        remove = outcome.report.step(STEP_REMOVE)
        assert not remove.ok and not remove.fatal
        assert store.records == {}
        assert outcome.record is None
        assert compute.scripts_run() == [MAINTENANCE_SCRIPT]
        assert outcome.succeeded

    def test_store_failure_is_warning(self, compute, desktop, request_for):
        class BrokenStore:
            def save(self, vm_name, record):
                raise MaintenanceStoreError("disk full")

            def load(self, vm_name):
                return None

            def delete(self, vm_name):
                return False

        outcome = MaintenanceTransition(compute, desktop, BrokenStore()).run(request_for())

        remove = outcome.report.step(STEP_REMOVE)
        assert remove.ok
        assert any("disk full" in w for w in remove.warnings)
        assert outcome.succeeded


class TestDiscoveryInMaintenance:
    def test_not_found_is_warning_not_failure(self, compute, empty_desktop, store, request_for):
        outcome = MaintenanceTransition(compute, empty_desktop, store).run(request_for())

        assert outcome.succeeded
        assert not outcome.report.step(STEP_DISCOVER).ok
        assert empty_desktop.called("delete_session_host") == []
        assert store.records == {}

    def test_pool_hint_skips_enumeration(self, transition, request_for, desktop):
        outcome = transition.run(request_for(pool_hint=(POOL_NAME, POOL_RESOURCE_GROUP)))

        assert outcome.succeeded
        assert desktop.called("list_host_pools") == []
        assert outcome.record.pool_name == POOL_NAME


class TestLocalAccess:
    def test_script_failure_is_fatal(self, transition, request_for, compute):
        compute.outputs[MAINTENANCE_SCRIPT] = ProviderError("Run command failed on avd-sh-0")

        outcome = transition.run(request_for())

        assert outcome.report.failed
        assert outcome.report.fatal_step.step == STEP_LOCAL_ACCESS

    def test_missing_marker_is_fatal_and_redacts_password(
        self, transition, request_for, compute, credential
    ):
        compute.outputs[MAINTENANCE_SCRIPT] = RunCommandOutput(
            stdout="Configuring local admin account...\n",
            stderr=f"New-LocalUser : password {credential.password} does not meet requirements",
        )

        outcome = transition.run(request_for())

        fatal = outcome.report.fatal_step
        assert fatal.step == STEP_LOCAL_ACCESS
        assert credential.password not in fatal.message
        assert "does not meet requirements" in fatal.message

    def test_sub_step_warnings_are_surfaced(self, transition, request_for, compute):
        compute.outputs[MAINTENANCE_SCRIPT] = RunCommandOutput(
            stdout=(
                "WARNING: Disable FSLogix: registry key not found\n"
                "Maintenance mode configured successfully\n"
            )
        )

        outcome = transition.run(request_for())

        assert outcome.succeeded
        assert outcome.report.step(STEP_LOCAL_ACCESS).warnings == [
            "Disable FSLogix: registry key not found"
        ]
        assert "Disable FSLogix: registry key not found" in outcome.report.warnings
