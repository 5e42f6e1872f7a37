"""Azure CLI subprocess execution with retry logic.

avdops talks to Azure through the SDK; the CLI is only consulted for the
signed-in account's default subscription when none is configured.

Usage:
    from avdops.azure_cli_executor import run_az_command

    result = run_az_command(["az", "account", "show", "--output", "json"])
"""

import logging
import os
import shutil
import subprocess

from avdops.errors import ConfigError
from avdops.retry_config import get_retry_config
from avdops.retry_handler import retry_with_exponential_backoff

logger = logging.getLogger(__name__)


def run_az_command(
    cmd: list[str],
    *,
    timeout: int = 30,
    max_attempts: int | None = None,
    check: bool = True,
) -> subprocess.CompletedProcess[str]:
    """Execute an Azure CLI command with retry logic.

    Args:
        cmd: Command list starting with "az", e.g. ["az", "account", "show"]
        timeout: Subprocess timeout in seconds (default: 30)
        max_attempts: Number of retry attempts (default: from RetryConfig)
        check: If True, raise CalledProcessError on non-zero exit (default: True)

    Returns:
        subprocess.CompletedProcess with stdout/stderr

    Raises:
        subprocess.CalledProcessError: After retries exhausted (when check=True)
        subprocess.TimeoutExpired: After retries exhausted
    """
    config = get_retry_config()
    attempts = max_attempts or config.azure_cli_max_attempts

    @retry_with_exponential_backoff(
        max_attempts=attempts,
        initial_delay=config.azure_cli_initial_delay,
        max_delay=config.azure_cli_max_delay,
        jitter=config.jitter_enabled,
        retryable_exceptions=(subprocess.CalledProcessError, subprocess.TimeoutExpired),
    )
    def _run() -> subprocess.CompletedProcess[str]:
        return subprocess.run(cmd, capture_output=True, text=True, check=check, timeout=timeout)

    return _run()


def resolve_subscription_id(explicit: str | None = None) -> str:
    """Resolve the subscription to operate on.

    Order: explicit value (CLI flag or config) > AZURE_SUBSCRIPTION_ID >
    the Azure CLI's current account.

    Raises:
        ConfigError: If no subscription can be determined
    """
    if explicit:
        return explicit

    from_env = os.getenv("AZURE_SUBSCRIPTION_ID")
    if from_env:
        return from_env

    if shutil.which("az") is None:
        raise ConfigError(
            "No subscription configured. Pass --subscription, set AZURE_SUBSCRIPTION_ID, "
            "or install the Azure CLI and run 'az login'."
        )

    try:
        result = run_az_command(["az", "account", "show", "--query", "id", "--output", "tsv"])
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
        raise ConfigError(
            "Could not determine the current subscription from the Azure CLI. "
            "Run 'az login' or pass --subscription."
        ) from e

    subscription_id = result.stdout.strip()
    if not subscription_id:
        raise ConfigError("Azure CLI returned an empty subscription id. Run 'az login'.")

    logger.debug(f"Using subscription from Azure CLI: {subscription_id}")
    return subscription_id


__all__ = ["resolve_subscription_id", "run_az_command"]
