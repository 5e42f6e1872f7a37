"""PowerShell payloads executed on session hosts through run-command.

The scripts live next to this module in powershell/ and report back through
their standard output: "WARNING: ..." lines for tolerated sub-step failures,
"ERROR: ..." lines for blocking conditions, and a fixed completion marker on
the last line when they ran to the end.
"""

from functools import lru_cache
from pathlib import Path

SCRIPTS_DIR = Path(__file__).parent / "powershell"

MAINTENANCE_SCRIPT = "enter-maintenance.ps1"
PREREQUISITES_SCRIPT = "configure-avd-prerequisites.ps1"
AGENT_INSTALL_SCRIPT = "install-avd-agent.ps1"

MAINTENANCE_COMPLETE_MARKER = "Maintenance mode configured successfully"
PREREQUISITES_COMPLETE_MARKER = "AVD prerequisite configuration complete"
AGENT_INSTALL_COMPLETE_MARKER = "AVD Agent installation complete"


@lru_cache(maxsize=None)
def load_script(name: str) -> str:
    """Read a bundled PowerShell script by file name.

    Raises:
        FileNotFoundError: If the script is not part of the package
    """
    path = SCRIPTS_DIR / name
    if path.parent != SCRIPTS_DIR or not path.is_file():
        raise FileNotFoundError(f"PowerShell script not found: {name}")
    return path.read_text(encoding="utf-8")


__all__ = [
    "AGENT_INSTALL_COMPLETE_MARKER",
    "AGENT_INSTALL_SCRIPT",
    "MAINTENANCE_COMPLETE_MARKER",
    "MAINTENANCE_SCRIPT",
    "PREREQUISITES_COMPLETE_MARKER",
    "PREREQUISITES_SCRIPT",
    "load_script",
]
