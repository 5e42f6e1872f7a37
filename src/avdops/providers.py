"""Collaborator providers for compute and AVD control-plane operations.

Orchestration code depends only on the ComputeProvider and
DesktopVirtualizationProvider protocols; the Azure* classes implement them
with the Azure management SDKs. Tests substitute in-memory fakes.

Error policy:
- "Not found" is a value (None / False), never an exception
- Transient HTTP failures are retried with exponential backoff
- Anything else is raised as ProviderError with a sanitized message

Security:
- Script parameters (passwords, registration tokens) are never logged
- SDK error text passes through LogSanitizer
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol, TypeVar, runtime_checkable

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.compute.models import RunCommandInput, RunCommandInputParameter
from azure.mgmt.desktopvirtualization import DesktopVirtualizationMgmtClient
from azure.mgmt.desktopvirtualization.models import (
    HostPoolPatch,
    RegistrationInfoPatch,
    SessionHostPatch,
)

from avdops.errors import ProviderError
from avdops.log_sanitizer import LogSanitizer
from avdops.models import (
    HostPool,
    HostPoolType,
    RegistrationToken,
    RunCommandOutput,
    SessionHost,
    SessionHostStatus,
    UpdateState,
)
from avdops.retry_config import get_retry_config
from avdops.retry_handler import retry_with_exponential_backoff

logger = logging.getLogger(__name__)

T = TypeVar("T")

RUN_POWERSHELL_COMMAND_ID = "RunPowerShellScript"


@runtime_checkable
class ComputeProvider(Protocol):
    """VM metadata lookup and remote script execution."""

    def get_computer_name(self, resource_group: str, vm_name: str) -> str | None:
        """Return the VM's OS computer name, or None if the VM/profile is missing."""
        ...

    def run_powershell(
        self,
        resource_group: str,
        vm_name: str,
        script: str,
        parameters: dict[str, str] | None = None,
    ) -> RunCommandOutput:
        """Run a PowerShell script on the VM and block until it finishes."""
        ...


@runtime_checkable
class DesktopVirtualizationProvider(Protocol):
    """Host pool, session host and registration token operations."""

    def list_host_pools(self) -> list[HostPool]: ...

    def get_host_pool(self, resource_group: str, pool_name: str) -> HostPool: ...

    def get_session_host(
        self, resource_group: str, pool_name: str, session_host_name: str
    ) -> SessionHost | None: ...

    def list_session_hosts(self, resource_group: str, pool_name: str) -> list[SessionHost]: ...

    def set_allow_new_session(
        self, resource_group: str, pool_name: str, session_host_name: str, allow: bool
    ) -> None: ...

    def delete_session_host(
        self, resource_group: str, pool_name: str, session_host_name: str
    ) -> bool:
        """Delete the record; returns False when it was already absent."""
        ...

    def issue_registration_token(
        self, resource_group: str, pool_name: str, expiration_time: datetime
    ) -> RegistrationToken | None:
        """Rotate the pool's registration token; None if the service returned none."""
        ...


def resource_group_from_id(resource_id: str | None) -> str | None:
    """Extract the resource group name from an ARM resource id."""
    if not resource_id:
        return None
    parts = resource_id.strip("/").split("/")
    for i, part in enumerate(parts[:-1]):
        if part.lower() == "resourcegroups":
            return parts[i + 1]
    return None


def session_host_short_name(name: str | None) -> str:
    """Strip the "<pool>/" prefix the control plane puts on session host names."""
    if not name:
        return ""
    return name.split("/", 1)[1] if "/" in name else name


def call_sdk(description: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Invoke an SDK call with transient-failure retry and error mapping.

    ResourceNotFoundError is re-raised untouched so callers can map it to a
    "not found" value.
    """
    config = get_retry_config()

    @retry_with_exponential_backoff(
        max_attempts=config.azure_max_attempts,
        initial_delay=config.azure_initial_delay,
        max_delay=config.azure_max_delay,
        jitter=config.jitter_enabled,
    )
    def _invoke() -> T:
        return func(*args, **kwargs)

    try:
        return _invoke()
    except ResourceNotFoundError:
        raise
    except AzureError as e:
        raise ProviderError(LogSanitizer.create_safe_error_message(e, description)) from e


class AzureComputeProvider:
    """ComputeProvider backed by azure-mgmt-compute."""

    def __init__(self, credential: Any, subscription_id: str, client: Any = None):
        self.subscription_id = subscription_id
        self.client = client or ComputeManagementClient(credential, subscription_id)

    def get_computer_name(self, resource_group: str, vm_name: str) -> str | None:
        try:
            vm = call_sdk(
                f"Failed to read VM {vm_name}",
                self.client.virtual_machines.get,
                resource_group,
                vm_name,
            )
        except ResourceNotFoundError:
            logger.debug(f"VM not found: {resource_group}/{vm_name}")
            return None

        os_profile = getattr(vm, "os_profile", None)
        computer_name = getattr(os_profile, "computer_name", None) if os_profile else None
        return computer_name or None

    def run_powershell(
        self,
        resource_group: str,
        vm_name: str,
        script: str,
        parameters: dict[str, str] | None = None,
    ) -> RunCommandOutput:
        run_input = RunCommandInput(
            command_id=RUN_POWERSHELL_COMMAND_ID,
            script=script.splitlines(),
            parameters=[
                RunCommandInputParameter(name=name, value=value)
                for name, value in (parameters or {}).items()
            ],
        )

        def _run() -> Any:
            poller = self.client.virtual_machines.begin_run_command(
                resource_group_name=resource_group,
                vm_name=vm_name,
                parameters=run_input,
            )
            return poller.result()

        try:
            result = call_sdk(f"Run command failed on {vm_name}", _run)
        except ResourceNotFoundError as e:
            raise ProviderError(f"VM not found: {resource_group}/{vm_name}") from e

        output = RunCommandOutput()
        for status in getattr(result, "value", None) or []:
            code = (getattr(status, "code", "") or "").lower()
            message = getattr(status, "message", "") or ""
            if "stderr" in code:
                output.stderr += message
            else:
                output.stdout += message
        return output


class AzureDesktopVirtualizationProvider:
    """DesktopVirtualizationProvider backed by azure-mgmt-desktopvirtualization."""

    def __init__(self, credential: Any, subscription_id: str, client: Any = None):
        self.subscription_id = subscription_id
        self.client = client or DesktopVirtualizationMgmtClient(credential, subscription_id)

    def list_host_pools(self) -> list[HostPool]:
        pools = call_sdk("Failed to list host pools", lambda: list(self.client.host_pools.list()))
        result = []
        for pool in pools:
            resource_group = resource_group_from_id(getattr(pool, "id", None))
            if not pool.name or not resource_group:
                logger.warning(f"Skipping host pool with unparseable id: {pool.id}")
                continue
            result.append(self._to_host_pool(pool, resource_group))
        return result

    def get_host_pool(self, resource_group: str, pool_name: str) -> HostPool:
        try:
            pool = call_sdk(
                f"Failed to read host pool {pool_name}",
                self.client.host_pools.get,
                resource_group_name=resource_group,
                host_pool_name=pool_name,
            )
        except ResourceNotFoundError as e:
            raise ProviderError(f"Host pool not found: {resource_group}/{pool_name}") from e
        return self._to_host_pool(pool, resource_group)

    def get_session_host(
        self, resource_group: str, pool_name: str, session_host_name: str
    ) -> SessionHost | None:
        try:
            host = call_sdk(
                f"Failed to read session host {session_host_name}",
                self.client.session_hosts.get,
                resource_group_name=resource_group,
                host_pool_name=pool_name,
                session_host_name=session_host_name,
            )
        except ResourceNotFoundError:
            return None
        return self._to_session_host(host, pool_name, resource_group)

    def list_session_hosts(self, resource_group: str, pool_name: str) -> list[SessionHost]:
        try:
            hosts = call_sdk(
                f"Failed to list session hosts in {pool_name}",
                lambda: list(
                    self.client.session_hosts.list(
                        resource_group_name=resource_group, host_pool_name=pool_name
                    )
                ),
            )
        except ResourceNotFoundError:
            return []
        return [self._to_session_host(h, pool_name, resource_group) for h in hosts]

    def set_allow_new_session(
        self, resource_group: str, pool_name: str, session_host_name: str, allow: bool
    ) -> None:
        try:
            call_sdk(
                f"Failed to update session host {session_host_name}",
                self.client.session_hosts.update,
                resource_group_name=resource_group,
                host_pool_name=pool_name,
                session_host_name=session_host_name,
                session_host=SessionHostPatch(allow_new_session=allow),
            )
        except ResourceNotFoundError as e:
            raise ProviderError(
                f"Session host not found: {pool_name}/{session_host_name}"
            ) from e

    def delete_session_host(
        self, resource_group: str, pool_name: str, session_host_name: str
    ) -> bool:
        try:
            call_sdk(
                f"Failed to delete session host {session_host_name}",
                self.client.session_hosts.delete,
                resource_group_name=resource_group,
                host_pool_name=pool_name,
                session_host_name=session_host_name,
                force=True,
            )
        except ResourceNotFoundError:
            logger.debug(f"Session host already absent: {pool_name}/{session_host_name}")
            return False
        return True

    def issue_registration_token(
        self, resource_group: str, pool_name: str, expiration_time: datetime
    ) -> RegistrationToken | None:
        patch = HostPoolPatch(
            registration_info=RegistrationInfoPatch(
                expiration_time=expiration_time,
                registration_token_operation="Update",
            )
        )
        try:
            pool = call_sdk(
                f"Failed to update registration info on {pool_name}",
                self.client.host_pools.update,
                resource_group_name=resource_group,
                host_pool_name=pool_name,
                host_pool=patch,
            )
        except ResourceNotFoundError as e:
            raise ProviderError(f"Host pool not found: {resource_group}/{pool_name}") from e

        info = getattr(pool, "registration_info", None)
        token = getattr(info, "token", None) if info else None
        expires = getattr(info, "expiration_time", None) if info else None

        if not token:
            # Newer API versions omit the token from the update response
            info = call_sdk(
                f"Failed to retrieve registration token for {pool_name}",
                self.client.host_pools.retrieve_registration_token,
                resource_group_name=resource_group,
                host_pool_name=pool_name,
            )
            token = getattr(info, "token", None)
            expires = getattr(info, "expiration_time", None) or expires

        if not token:
            return None
        return RegistrationToken(token=token, expiration_time=expires or expiration_time)

    @staticmethod
    def _to_host_pool(pool: Any, resource_group: str) -> HostPool:
        return HostPool(
            name=pool.name,
            resource_group=resource_group,
            host_pool_type=HostPoolType.from_value(getattr(pool, "host_pool_type", None)),
        )

    @staticmethod
    def _to_session_host(host: Any, pool_name: str, resource_group: str) -> SessionHost:
        return SessionHost(
            name=session_host_short_name(host.name),
            pool_name=pool_name,
            pool_resource_group=resource_group,
            status=SessionHostStatus.from_value(getattr(host, "status", None)),
            allow_new_session=bool(getattr(host, "allow_new_session", False)),
            update_state=UpdateState.from_value(getattr(host, "update_state", None)),
        )


__all__ = [
    "AzureComputeProvider",
    "AzureDesktopVirtualizationProvider",
    "ComputeProvider",
    "DesktopVirtualizationProvider",
    "call_sdk",
    "resource_group_from_id",
    "session_host_short_name",
]
