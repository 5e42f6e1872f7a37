"""Restore transition: return a session host to production service.

Flow (strictly sequential, stops at the first fatal step):
    TokenIssuance -> SessionTypeDetection -> PrerequisiteConfiguration
    -> AgentInstall -> RegistrationPolling -> Enabling -> cleanup

Fatal steps: TokenIssuance, AgentInstall (installer missing or script
failed to run) and RegistrationPolling. Everything else is surfaced as a
warning. Nothing is rolled back after a fatal step; restore is safe to re-run.

Security:
- The registration token is passed to the VM as a script parameter only
- Script output is redacted before it is logged
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from avdops.discovery import match_session_host
from avdops.errors import MaintenanceStoreError, ProviderError
from avdops.log_sanitizer import LogSanitizer
from avdops.maintenance_store import MaintenanceStore
from avdops.models import RegistrationToken, RunCommandOutput, SessionHost, SessionType
from avdops.providers import ComputeProvider, DesktopVirtualizationProvider
from avdops.remote_scripts import (
    AGENT_INSTALL_COMPLETE_MARKER,
    AGENT_INSTALL_SCRIPT,
    PREREQUISITES_COMPLETE_MARKER,
    PREREQUISITES_SCRIPT,
    load_script,
)
from avdops.retry_handler import poll_until
from avdops.steps import StepResult, TransitionReport

logger = logging.getLogger(__name__)

STEP_TOKEN = "TokenIssuance"
STEP_SESSION_TYPE = "SessionTypeDetection"
STEP_PREREQUISITES = "PrerequisiteConfiguration"
STEP_AGENT_INSTALL = "AgentInstall"
STEP_POLLING = "RegistrationPolling"
STEP_ENABLE = "Enabling"
STEP_CLEANUP = "Cleanup"

REGISTRATION_TOKEN_VALIDITY = timedelta(hours=24)

# Used when the pool type cannot be read; pooled pools are the common case
FALLBACK_SESSION_TYPE = SessionType.MULTI_SESSION


def format_expiration(moment: datetime) -> str:
    """Render a token expiration the way the control plane displays it."""
    return moment.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.000Z")


@dataclass
class RestoreRequest:
    """Inputs for one restore invocation. The pool values are already resolved."""

    vm_name: str
    resource_group: str
    pool_name: str
    pool_resource_group: str


@dataclass
class RestoreOutcome:
    report: TransitionReport
    token_expiration: datetime | None = None
    session_type: SessionType | None = None
    session_host: SessionHost | None = None
    expected_identifier: str | None = None
    script_output: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.report.failed


class RestoreTransition:
    """Re-provision prerequisites, reinstall the agent and re-admit the host."""

    def __init__(
        self,
        compute: ComputeProvider,
        desktop: DesktopVirtualizationProvider,
        store: MaintenanceStore,
        settle_seconds: float = 15,
        poll_interval: float = 10,
        max_attempts: int = 12,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] | None = None,
    ):
        self.compute = compute
        self.desktop = desktop
        self.store = store
        self.settle_seconds = settle_seconds
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.sleep = sleep
        self.now = now or (lambda: datetime.now(UTC))

    def run(self, request: RestoreRequest) -> RestoreOutcome:
        """Execute the restore transition.

        Returns:
            RestoreOutcome; outcome.report.fatal_step names the step that
            aborted the run, if any
        """
        report = TransitionReport(mode="restore", vm_name=request.vm_name)
        outcome = RestoreOutcome(report=report)
        logger.info(f"Target host pool: {request.pool_name} ({request.pool_resource_group})")

        logger.info("Step 1: Generating registration token...")
        result, token = self.issue_token(request)
        report.record(result)
        if token is None:
            return outcome
        outcome.token_expiration = token.expiration_time

        logger.info("")
        logger.info("Step 2: Detecting host pool session type...")
        outcome.session_type = self.detect_session_type(request, outcome)

        logger.info("")
        logger.info("Step 3: Configuring AVD prerequisites...")
        report.record(self.configure_prerequisites(request, outcome.session_type, outcome))

        logger.info("")
        logger.info("Step 4: Installing AVD Agent and Boot Loader...")
        if report.record(self.install_agent(request, token, outcome)).fatal:
            return outcome

        logger.info("")
        logger.info("Step 5: Waiting for session host registration...")
        if report.record(self.wait_for_registration(request, outcome)).fatal:
            return outcome

        logger.info("")
        logger.info("Step 6: Enabling new sessions...")
        report.record(self.enable(outcome.session_host))
        report.record(self.clear_record(request))
        return outcome

    def issue_token(self, request: RestoreRequest) -> tuple[StepResult, RegistrationToken | None]:
        expiration = self.now() + REGISTRATION_TOKEN_VALIDITY
        try:
            token = self.desktop.issue_registration_token(
                request.pool_resource_group, request.pool_name, expiration
            )
        except ProviderError as e:
            return StepResult.failure(STEP_TOKEN, f"Failed to generate registration token: {e}"), None

        if token is None or not token.token:
            return (
                StepResult.failure(
                    STEP_TOKEN,
                    f"Failed to generate registration token: host pool {request.pool_name} "
                    "returned an empty token",
                ),
                None,
            )

        if token.remaining(self.now()) <= timedelta(0):
            return (
                StepResult.failure(
                    STEP_TOKEN,
                    f"Failed to generate registration token: host pool {request.pool_name} "
                    f"returned a token that expired {format_expiration(token.expiration_time)}",
                ),
                None,
            )

        message = f"  Registration token generated (expires {format_expiration(token.expiration_time)})"
        return StepResult.success(STEP_TOKEN, message), token

    def detect_session_type(self, request: RestoreRequest, outcome: RestoreOutcome) -> SessionType:
        try:
            pool = self.desktop.get_host_pool(request.pool_resource_group, request.pool_name)
        except ProviderError as e:
            outcome.report.record(
                StepResult.warning(
                    STEP_SESSION_TYPE,
                    f"  Could not read host pool type ({e}); assuming {FALLBACK_SESSION_TYPE.value}",
                )
            )
            return FALLBACK_SESSION_TYPE

        session_type = pool.session_type
        outcome.report.record(
            StepResult.success(
                STEP_SESSION_TYPE,
                f"  Host pool type: {pool.host_pool_type.value} (session type: {session_type.value})",
            )
        )
        return session_type

    def configure_prerequisites(
        self, request: RestoreRequest, session_type: SessionType, outcome: RestoreOutcome
    ) -> StepResult:
        """Never fatal: a partial prerequisite failure must not block the agent install."""
        logger.info("  This includes: registry settings, FSLogix, Defender exclusions, services...")
        try:
            output = self.compute.run_powershell(
                request.resource_group,
                request.vm_name,
                load_script(PREREQUISITES_SCRIPT),
                {"SessionType": session_type.value},
            )
        except ProviderError as e:
            return StepResult.warning(STEP_PREREQUISITES, f"  Prerequisite configuration failed: {e}")

        self._log_output(output, [], outcome)
        warnings = output.warnings() + output.errors()
        if not output.contains(PREREQUISITES_COMPLETE_MARKER):
            warnings.append("prerequisite script did not report completion")
        return StepResult.success(
            STEP_PREREQUISITES, "  AVD prerequisites configured", warnings=warnings
        )

    def install_agent(
        self, request: RestoreRequest, token: RegistrationToken, outcome: RestoreOutcome
    ) -> StepResult:
        secrets = [token.token]
        try:
            output = self.compute.run_powershell(
                request.resource_group,
                request.vm_name,
                load_script(AGENT_INSTALL_SCRIPT),
                {"RegistrationToken": token.token},
            )
        except ProviderError as e:
            detail = LogSanitizer.redact_values(str(e), secrets)
            return StepResult.failure(STEP_AGENT_INSTALL, f"Agent installation failed: {detail}")

        self._log_output(output, secrets, outcome)
        errors = [LogSanitizer.redact_values(e, secrets) for e in output.errors()]
        if errors:
            return StepResult.failure(
                STEP_AGENT_INSTALL, f"Agent installation failed: {'; '.join(errors)}"
            )

        warnings = [LogSanitizer.redact_values(w, secrets) for w in output.warnings()]
        if not output.contains(AGENT_INSTALL_COMPLETE_MARKER):
            warnings.append("agent install script did not report completion")
        return StepResult.success(
            STEP_AGENT_INSTALL, "  AVD Agent and Boot Loader installed", warnings=warnings
        )

    def wait_for_registration(self, request: RestoreRequest, outcome: RestoreOutcome) -> StepResult:
        """Poll the pool until a session host matching the VM appears."""
        identifier = self._expected_identifier(request)
        outcome.expected_identifier = identifier
        logger.info(f"  Waiting {self.settle_seconds}s for agent to register...")

        def probe() -> SessionHost | None:
            try:
                hosts = self.desktop.list_session_hosts(
                    request.pool_resource_group, request.pool_name
                )
            except ProviderError as e:
                logger.warning(f"  Could not list session hosts: {e}")
                return None
            return match_session_host(hosts, identifier)

        host = poll_until(
            probe,
            max_attempts=self.max_attempts,
            interval=self.poll_interval,
            initial_delay=self.settle_seconds,
            description="registration",
            sleep=self.sleep,
        )
        if host is None:
            return StepResult.failure(
                STEP_POLLING,
                f"Session host not found in pool {request.pool_name} after registration: "
                f"expected a session host matching '{identifier}' "
                f"({self.max_attempts} attempts). Check the agent logs on {request.vm_name}",
            )

        host.vm_name = request.vm_name
        outcome.session_host = host
        return StepResult.success(STEP_POLLING, f"  Session host registered: {host.name}")

    def enable(self, host: SessionHost | None) -> StepResult:
        if host is None:
            return StepResult.skip(STEP_ENABLE, "  No session host to enable")
        try:
            self.desktop.set_allow_new_session(
                host.pool_resource_group, host.pool_name, host.name, True
            )
        except ProviderError as e:
            return StepResult.warning(
                STEP_ENABLE, f"  Could not enable new sessions (enable manually): {e}"
            )
        host.allow_new_session = True
        return StepResult.success(STEP_ENABLE, "  New sessions enabled")

    def clear_record(self, request: RestoreRequest) -> StepResult:
        try:
            removed = self.store.delete(request.vm_name)
        except MaintenanceStoreError as e:
            return StepResult.warning(STEP_CLEANUP, f"  Could not clear maintenance record: {e}")
        if removed:
            return StepResult.success(STEP_CLEANUP, "  Maintenance record cleared")
        return StepResult.skip(STEP_CLEANUP, "  No maintenance record to clear")

    def _expected_identifier(self, request: RestoreRequest) -> str:
        try:
            fqdn = self.compute.get_computer_name(request.resource_group, request.vm_name)
        except ProviderError as e:
            logger.warning(f"  Could not read VM computer name: {e}")
            fqdn = None
        if fqdn:
            return fqdn
        logger.warning(f"  Falling back to VM name '{request.vm_name}' for registration matching")
        return request.vm_name

    @staticmethod
    def _log_output(output: RunCommandOutput, secrets: list[str], outcome: RestoreOutcome) -> None:
        for line in output.lines():
            line = LogSanitizer.redact_values(line, secrets)
            outcome.script_output.append(line)
            logger.debug(f"    {line}")


__all__ = [
    "REGISTRATION_TOKEN_VALIDITY",
    "RestoreOutcome",
    "RestoreRequest",
    "RestoreTransition",
    "STEP_AGENT_INSTALL",
    "STEP_CLEANUP",
    "STEP_ENABLE",
    "STEP_POLLING",
    "STEP_PREREQUISITES",
    "STEP_SESSION_TYPE",
    "STEP_TOKEN",
    "format_expiration",
]
