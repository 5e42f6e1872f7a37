"""Tests for the Azure-backed compute and control-plane providers.

SDK clients are replaced with Mock objects; SDK return values are
SimpleNamespace stand-ins for the generated model classes.
"""

from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from azure.core.exceptions import HttpResponseError, ResourceNotFoundError

from avdops.errors import ProviderError
from avdops.models import HostPoolType, SessionHostStatus, UpdateState
from avdops.providers import (
    RUN_POWERSHELL_COMMAND_ID,
    AzureComputeProvider,
    AzureDesktopVirtualizationProvider,
    ComputeProvider,
    DesktopVirtualizationProvider,
    call_sdk,
    resource_group_from_id,
    session_host_short_name,
)
from tests.mocks.avd_mock import FAKE_REGISTRATION_TOKEN, FakeComputeProvider, FakeDesktopProvider

EXPIRY = datetime(2026, 3, 2, 8, 30, tzinfo=UTC)
POOL_ID = (
    "/subscriptions/0000/resourceGroups/rg-A/providers/"
    "Microsoft.DesktopVirtualization/hostPools/pool-A"
)


@pytest.fixture
def compute_client():
    return Mock()


@pytest.fixture
def dv_client():
    return Mock()


@pytest.fixture
def compute_provider(compute_client):
    return AzureComputeProvider(credential=None, subscription_id="0000", client=compute_client)


@pytest.fixture
def desktop_provider(dv_client):
    return AzureDesktopVirtualizationProvider(
        credential=None, subscription_id="0000", client=dv_client
    )


class TestHelpers:
    def test_resource_group_from_id(self):
        assert resource_group_from_id(POOL_ID) == "rg-A"

    @pytest.mark.parametrize("resource_id", [None, "", "/subscriptions/0000/providers/x"])
    def test_resource_group_from_bad_id(self, resource_id):
        assert resource_group_from_id(resource_id) is None

    def test_session_host_short_name(self):
        assert session_host_short_name("pool-A/avd-sh-0.contoso.local") == "avd-sh-0.contoso.local"
        assert session_host_short_name("avd-sh-0") == "avd-sh-0"
        assert session_host_short_name(None) == ""

    def test_call_sdk_maps_azure_errors(self):
        failing = Mock(side_effect=HttpResponseError(message="InternalServerError"))

        with pytest.raises(ProviderError, match="Reading thing"):
            call_sdk("Reading thing", failing)

    def test_call_sdk_passes_not_found_through(self):
        failing = Mock(side_effect=ResourceNotFoundError("gone"))

        with pytest.raises(ResourceNotFoundError):
            call_sdk("Reading thing", failing)

    def test_call_sdk_sanitizes_messages(self):
        failing = Mock(side_effect=HttpResponseError(message="bad client_secret=hunter2"))

        with pytest.raises(ProviderError) as exc_info:
            call_sdk("Auth", failing)

        assert "hunter2" not in str(exc_info.value)

    def test_fakes_satisfy_protocols(self):
        assert isinstance(FakeComputeProvider(), ComputeProvider)
        assert isinstance(FakeDesktopProvider(), DesktopVirtualizationProvider)


class TestAzureComputeProvider:
    def test_get_computer_name(self, compute_provider, compute_client):
        compute_client.virtual_machines.get.return_value = SimpleNamespace(
            os_profile=SimpleNamespace(computer_name="avd-sh-0.contoso.local")
        )

        assert compute_provider.get_computer_name("rg", "avd-sh-0") == "avd-sh-0.contoso.local"
        compute_client.virtual_machines.get.assert_called_once_with("rg", "avd-sh-0")

    def test_get_computer_name_without_profile(self, compute_provider, compute_client):
        compute_client.virtual_machines.get.return_value = SimpleNamespace(os_profile=None)

        assert compute_provider.get_computer_name("rg", "avd-sh-0") is None

    def test_get_computer_name_vm_missing(self, compute_provider, compute_client):
        compute_client.virtual_machines.get.side_effect = ResourceNotFoundError("VM not found")

        assert compute_provider.get_computer_name("rg", "avd-sh-0") is None

    def test_run_powershell(self, compute_provider, compute_client):
        poller = Mock()
        poller.result.return_value = SimpleNamespace(
            value=[
                SimpleNamespace(code="ComponentStatus/StdOut/succeeded", message="done\n"),
                SimpleNamespace(code="ComponentStatus/StdErr/succeeded", message="oops"),
            ]
        )
        compute_client.virtual_machines.begin_run_command.return_value = poller

        output = compute_provider.run_powershell(
            "rg", "avd-sh-0", "Write-Output 'a'\nWrite-Output 'b'", {"SessionType": "MultiSession"}
        )

        assert output.stdout == "done\n"
        assert output.stderr == "oops"
        kwargs = compute_client.virtual_machines.begin_run_command.call_args.kwargs
        run_input = kwargs["parameters"]
        assert kwargs["vm_name"] == "avd-sh-0"
        assert run_input.command_id == RUN_POWERSHELL_COMMAND_ID
        assert run_input.script == ["Write-Output 'a'", "Write-Output 'b'"]
        assert [(p.name, p.value) for p in run_input.parameters] == [
            ("SessionType", "MultiSession")
        ]

    def test_run_powershell_failure(self, compute_provider, compute_client):
        compute_client.virtual_machines.begin_run_command.side_effect = HttpResponseError(
            message="Conflict: another run command is in progress"
        )

        with pytest.raises(ProviderError, match="Run command failed on avd-sh-0"):
            compute_provider.run_powershell("rg", "avd-sh-0", "Get-Date")

    def test_run_powershell_vm_missing(self, compute_provider, compute_client):
        compute_client.virtual_machines.begin_run_command.side_effect = ResourceNotFoundError("x")

        with pytest.raises(ProviderError, match="VM not found"):
            compute_provider.run_powershell("rg", "avd-sh-0", "Get-Date")


class TestAzureDesktopVirtualizationProvider:
    def test_list_host_pools(self, desktop_provider, dv_client):
        dv_client.host_pools.list.return_value = [
            SimpleNamespace(name="pool-A", id=POOL_ID, host_pool_type="Pooled"),
            SimpleNamespace(name="broken", id="/not/an/arm/id", host_pool_type="Pooled"),
        ]

        pools = desktop_provider.list_host_pools()

        assert len(pools) == 1
        assert pools[0].name == "pool-A"
        assert pools[0].resource_group == "rg-A"
        assert pools[0].host_pool_type == HostPoolType.POOLED

    def test_get_host_pool_missing(self, desktop_provider, dv_client):
        dv_client.host_pools.get.side_effect = ResourceNotFoundError("nope")

        with pytest.raises(ProviderError, match="Host pool not found"):
            desktop_provider.get_host_pool("rg-A", "pool-A")

    def test_get_session_host(self, desktop_provider, dv_client):
        dv_client.session_hosts.get.return_value = SimpleNamespace(
            name="pool-A/avd-sh-0.contoso.local",
            status="Available",
            allow_new_session=True,
            update_state="Succeeded",
        )

        host = desktop_provider.get_session_host("rg-A", "pool-A", "avd-sh-0.contoso.local")

        assert host.name == "avd-sh-0.contoso.local"
        assert host.status == SessionHostStatus.AVAILABLE
        assert host.allow_new_session is True
        assert host.update_state == UpdateState.SUCCEEDED
        assert host.pool_resource_group == "rg-A"

    def test_get_session_host_missing(self, desktop_provider, dv_client):
        dv_client.session_hosts.get.side_effect = ResourceNotFoundError("nope")

        assert desktop_provider.get_session_host("rg-A", "pool-A", "x") is None

    def test_list_session_hosts(self, desktop_provider, dv_client):
        dv_client.session_hosts.list.return_value = [
            SimpleNamespace(name="pool-A/h1", status="Unavailable", allow_new_session=False),
        ]

        hosts = desktop_provider.list_session_hosts("rg-A", "pool-A")

        assert [h.name for h in hosts] == ["h1"]
        assert hosts[0].status == SessionHostStatus.UNAVAILABLE

    def test_set_allow_new_session(self, desktop_provider, dv_client):
        desktop_provider.set_allow_new_session("rg-A", "pool-A", "h1", False)

        kwargs = dv_client.session_hosts.update.call_args.kwargs
        assert kwargs["session_host_name"] == "h1"
        assert kwargs["session_host"].allow_new_session is False

    def test_delete_session_host(self, desktop_provider, dv_client):
        assert desktop_provider.delete_session_host("rg-A", "pool-A", "h1") is True
        assert dv_client.session_hosts.delete.call_args.kwargs["force"] is True

    def test_delete_absent_session_host(self, desktop_provider, dv_client):
        dv_client.session_hosts.delete.side_effect = ResourceNotFoundError("nope")

        assert desktop_provider.delete_session_host("rg-A", "pool-A", "h1") is False

    def test_delete_failure_raises(self, desktop_provider, dv_client):
        dv_client.session_hosts.delete.side_effect = HttpResponseError(message="Forbidden")

        with pytest.raises(ProviderError):
            desktop_provider.delete_session_host("rg-A", "pool-A", "h1")

    def test_issue_registration_token(self, desktop_provider, dv_client):
        dv_client.host_pools.update.return_value = SimpleNamespace(
            registration_info=SimpleNamespace(token=FAKE_REGISTRATION_TOKEN, expiration_time=EXPIRY)
        )

        token = desktop_provider.issue_registration_token("rg-A", "pool-A", EXPIRY)

        assert token.token == FAKE_REGISTRATION_TOKEN
        assert token.expiration_time == EXPIRY
        patch = dv_client.host_pools.update.call_args.kwargs["host_pool"]
        assert patch.registration_info.registration_token_operation == "Update"
        assert patch.registration_info.expiration_time == EXPIRY
        dv_client.host_pools.retrieve_registration_token.assert_not_called()

    def test_issue_registration_token_falls_back_to_retrieve(self, desktop_provider, dv_client):
        dv_client.host_pools.update.return_value = SimpleNamespace(
            registration_info=SimpleNamespace(token=None, expiration_time=None)
        )
        dv_client.host_pools.retrieve_registration_token.return_value = SimpleNamespace(
            token=FAKE_REGISTRATION_TOKEN, expiration_time=EXPIRY
        )

        token = desktop_provider.issue_registration_token("rg-A", "pool-A", EXPIRY)

        assert token.token == FAKE_REGISTRATION_TOKEN

    def test_issue_registration_token_empty(self, desktop_provider, dv_client):
        dv_client.host_pools.update.return_value = SimpleNamespace(registration_info=None)
        dv_client.host_pools.retrieve_registration_token.return_value = SimpleNamespace(
            token="", expiration_time=None
        )

        assert desktop_provider.issue_registration_token("rg-A", "pool-A", EXPIRY) is None

    def test_token_repr_is_redacted(self, desktop_provider, dv_client):
        dv_client.host_pools.update.return_value = SimpleNamespace(
            registration_info=SimpleNamespace(token=FAKE_REGISTRATION_TOKEN, expiration_time=EXPIRY)
        )

        token = desktop_provider.issue_registration_token("rg-A", "pool-A", EXPIRY)

        assert FAKE_REGISTRATION_TOKEN not in repr(token)
        assert FAKE_REGISTRATION_TOKEN not in str(token)
