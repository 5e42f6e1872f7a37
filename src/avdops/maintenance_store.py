"""Maintenance record store.

Maintenance remembers which host pool a VM was evicted from so that restore
can re-register it without the operator looking the pool up again. The
record is two plain-text values (pool name, pool resource group) kept in a
well-known transient directory, one pair of files per VM:

    <state_dir>/<vm>_hostpool.txt
    <state_dir>/<vm>_hostpool_rg.txt

Losing the files only means restore needs --host-pool/--host-pool-rg.
"""

import logging
import os
import re
from pathlib import Path
from typing import Protocol, runtime_checkable

from avdops.errors import MaintenanceStoreError
from avdops.models import MaintenanceRecord

logger = logging.getLogger(__name__)

# Azure VM names: letters, digits, hyphen, underscore, period
VM_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,63}$")


@runtime_checkable
class MaintenanceStore(Protocol):
    """Key-value store of maintenance records keyed by VM name."""

    def save(self, vm_name: str, record: MaintenanceRecord) -> None: ...

    def load(self, vm_name: str) -> MaintenanceRecord | None: ...

    def delete(self, vm_name: str) -> bool: ...


class FileMaintenanceStore:
    """MaintenanceStore persisted as plain-text files in a state directory."""

    POOL_SUFFIX = "_hostpool.txt"
    POOL_RG_SUFFIX = "_hostpool_rg.txt"

    def __init__(self, state_dir: Path | str):
        self.state_dir = Path(state_dir)

    def _paths(self, vm_name: str) -> tuple[Path, Path]:
        if not vm_name or not VM_NAME_PATTERN.match(vm_name) or ".." in vm_name:
            raise MaintenanceStoreError(f"Invalid VM name for maintenance record: {vm_name!r}")
        return (
            self.state_dir / f"{vm_name}{self.POOL_SUFFIX}",
            self.state_dir / f"{vm_name}{self.POOL_RG_SUFFIX}",
        )

    def save(self, vm_name: str, record: MaintenanceRecord) -> None:
        """Write both values atomically (temp file + rename per value)."""
        pool_path, pool_rg_path = self._paths(vm_name)
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            values = ((pool_path, record.pool_name), (pool_rg_path, record.pool_resource_group))
            for path, value in values:
                temp_path = path.with_suffix(".tmp")
                temp_path.write_text(f"{value}\n")
                os.chmod(temp_path, 0o600)
                temp_path.replace(path)
        except OSError as e:
            raise MaintenanceStoreError(
                f"Failed to save maintenance record for {vm_name}: {e}"
            ) from e

        logger.debug(f"Saved maintenance record for {vm_name} in {self.state_dir}")

    def load(self, vm_name: str) -> MaintenanceRecord | None:
        """Return the record, or None if either value is missing or empty."""
        pool_path, pool_rg_path = self._paths(vm_name)
        if not pool_path.exists() or not pool_rg_path.exists():
            return None

        try:
            pool_name = pool_path.read_text().strip()
            pool_rg = pool_rg_path.read_text().strip()
        except OSError as e:
            logger.warning(f"Could not read maintenance record for {vm_name}: {e}")
            return None

        if not pool_name or not pool_rg:
            logger.warning(f"Ignoring incomplete maintenance record for {vm_name}")
            return None

        return MaintenanceRecord(vm_name=vm_name, pool_name=pool_name, pool_resource_group=pool_rg)

    def delete(self, vm_name: str) -> bool:
        """Remove the record; returns True if anything was removed."""
        removed = False
        for path in self._paths(vm_name):
            try:
                path.unlink()
                removed = True
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Could not remove {path}: {e}")
        return removed


__all__ = ["FileMaintenanceStore", "MaintenanceStore"]
