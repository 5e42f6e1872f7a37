"""Maintenance transition: take a session host out of service and open local access.

Flow (strictly sequential):
    Discovering -> Draining (optional) -> Removing (optional) -> ConfiguringLocalAccess

Only ConfiguringLocalAccess is fatal: without it the operator has no way
into the VM. Discovery, drain and removal failures are logged as warnings and
the flow continues. Running maintenance twice is safe: the second run finds
no membership and simply resets the local admin password again.
"""

import logging
from dataclasses import dataclass, field

from avdops.discovery import DiscoveryResult, SessionHostDiscovery
from avdops.errors import MaintenanceStoreError, ProviderError
from avdops.log_sanitizer import LogSanitizer
from avdops.maintenance_store import MaintenanceStore
from avdops.models import LocalAdminCredential, MaintenanceRecord, SessionHost
from avdops.providers import ComputeProvider, DesktopVirtualizationProvider
from avdops.remote_scripts import MAINTENANCE_COMPLETE_MARKER, MAINTENANCE_SCRIPT, load_script
from avdops.steps import StepResult, TransitionReport

logger = logging.getLogger(__name__)

STEP_DISCOVER = "Discovering"
STEP_DRAIN = "Draining"
STEP_REMOVE = "Removing"
STEP_LOCAL_ACCESS = "ConfiguringLocalAccess"


@dataclass
class MaintenanceRequest:
    """Inputs for one maintenance invocation."""

    vm_name: str
    resource_group: str
    credential: LocalAdminCredential
    pool_hint: tuple[str, str] | None = None
    skip_pool_removal: bool = False


@dataclass
class MaintenanceOutcome:
    """What a maintenance run did; `record` is set when pool membership was saved."""

    report: TransitionReport
    credential: LocalAdminCredential
    discovery: DiscoveryResult | None = None
    record: MaintenanceRecord | None = None
    removed_host: SessionHost | None = None
    script_output: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.report.failed


class MaintenanceTransition:
    """Drain, evict and open local Bastion access on a session host."""

    def __init__(
        self,
        compute: ComputeProvider,
        desktop: DesktopVirtualizationProvider,
        store: MaintenanceStore,
        discovery: SessionHostDiscovery | None = None,
    ):
        self.compute = compute
        self.desktop = desktop
        self.store = store
        self.discovery = discovery or SessionHostDiscovery(compute, desktop)

    def run(self, request: MaintenanceRequest) -> MaintenanceOutcome:
        """Execute the maintenance transition.

        Returns:
            MaintenanceOutcome; outcome.report.failed is True when local
            access could not be configured
        """
        report = TransitionReport(mode="maintenance", vm_name=request.vm_name)
        outcome = MaintenanceOutcome(report=report, credential=request.credential)

        if request.skip_pool_removal:
            logger.warning("Skipping host pool removal (--skip-pool-removal)")
            for step in (STEP_DISCOVER, STEP_DRAIN, STEP_REMOVE):
                report.record(StepResult.skip(step, f"{step} skipped (--skip-pool-removal)"))
        else:
            logger.info("Step 1: Checking session host status...")
            host = self.discover(request, outcome)
            report.record(self.drain(host))
            report.record(self.remove(request, host, outcome))

        logger.info("")
        logger.info("Step 2: Configuring local administrator account...")
        report.record(self.configure_local_access(request, outcome))
        return outcome

    def discover(
        self, request: MaintenanceRequest, outcome: MaintenanceOutcome
    ) -> SessionHost | None:
        result = self.discovery.find(request.vm_name, request.resource_group, request.pool_hint)
        outcome.discovery = result
        if result.found:
            host = result.session_host
            outcome.report.record(
                StepResult.success(
                    STEP_DISCOVER, f"Session host {host.name} is a member of {host.pool_name}"
                )
            )
            return host

        outcome.report.record(
            StepResult.warning(
                STEP_DISCOVER,
                "No host pool membership found - drain and removal will be skipped",
            )
        )
        return None

    def drain(self, host: SessionHost | None) -> StepResult:
        """Stop new sessions landing on the host, if it is healthy enough to answer."""
        if host is None:
            return StepResult.skip(STEP_DRAIN, "Drain skipped: no session host membership")

        if not host.can_drain:
            return StepResult.skip(
                STEP_DRAIN, f"  Host is {host.status.value} - skipping drain (may not respond)"
            )

        if not host.allow_new_session:
            return StepResult.skip(
                STEP_DRAIN, "  Session host already not accepting new sessions"
            )

        logger.info("  Draining session host (preventing new connections)...")
        try:
            self.desktop.set_allow_new_session(
                host.pool_resource_group, host.pool_name, host.name, False
            )
        except ProviderError as e:
            return StepResult.warning(STEP_DRAIN, f"  Could not drain session host: {e}")

        host.allow_new_session = False
        return StepResult.success(STEP_DRAIN, "  Session host drained")

    def remove(
        self,
        request: MaintenanceRequest,
        host: SessionHost | None,
        outcome: MaintenanceOutcome,
    ) -> StepResult:
        """Delete the session host record and remember the pool for restore."""
        if host is None:
            return StepResult.skip(STEP_REMOVE, "Removal skipped: no session host membership")

        logger.info("  Removing session host from pool...")
        try:
            deleted = self.desktop.delete_session_host(
                host.pool_resource_group, host.pool_name, host.name
            )
        except ProviderError as e:
            return StepResult.warning(
                STEP_REMOVE, f"  Could not remove session host (may already be removed): {e}"
            )

        outcome.removed_host = host
        record = MaintenanceRecord(
            vm_name=request.vm_name,
            pool_name=host.pool_name,
            pool_resource_group=host.pool_resource_group,
        )
        warnings = []
        try:
            self.store.save(request.vm_name, record)
            outcome.record = record
        except MaintenanceStoreError as e:
            warnings.append(f"Could not save maintenance record: {e}")

        if deleted:
            message = f"  Session host removed from pool: {host.pool_name}"
        else:
            message = f"  Session host already absent from pool: {host.pool_name}"
        return StepResult.success(STEP_REMOVE, message, warnings=warnings)

    def configure_local_access(
        self, request: MaintenanceRequest, outcome: MaintenanceOutcome
    ) -> StepResult:
        """Run the maintenance script; the only fatal step of the transition."""
        credential = request.credential
        logger.info("  Executing maintenance configuration...")
        try:
            output = self.compute.run_powershell(
                request.resource_group,
                request.vm_name,
                load_script(MAINTENANCE_SCRIPT),
                {
                    "LocalAdminUser": credential.username,
                    "LocalAdminPassword": credential.password,
                },
            )
        except ProviderError as e:
            return StepResult.failure(
                STEP_LOCAL_ACCESS, f"Maintenance configuration failed on {request.vm_name}: {e}"
            )

        secrets = [credential.password]
        outcome.script_output = [LogSanitizer.redact_values(line, secrets) for line in output.lines()]
        for line in outcome.script_output:
            logger.debug(f"    {line}")

        if not output.contains(MAINTENANCE_COMPLETE_MARKER):
            detail = LogSanitizer.redact_values(output.stderr.strip(), secrets)
            detail = LogSanitizer.sanitize(detail) or "script did not report completion"
            return StepResult.failure(
                STEP_LOCAL_ACCESS,
                f"Maintenance configuration failed on {request.vm_name}: {detail}",
            )

        warnings = [LogSanitizer.redact_values(w, secrets) for w in output.warnings()]
        return StepResult.success(
            STEP_LOCAL_ACCESS, "Maintenance mode configuration complete", warnings=warnings
        )


__all__ = [
    "MaintenanceOutcome",
    "MaintenanceRequest",
    "MaintenanceTransition",
    "STEP_DISCOVER",
    "STEP_DRAIN",
    "STEP_LOCAL_ACCESS",
    "STEP_REMOVE",
]
