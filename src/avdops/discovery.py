"""Session host discovery.

Finds which host pool (if any) currently lists a VM as a session host.
Discovery is best-effort and read-only: every failure degrades to
"not found" (with a warning) instead of failing the caller.

The control plane's session host naming is not fully predictable from
outside, so each pool is probed with up to three candidate names, in order:

    <fqdn>
    <fqdn>.<pool>
    <vm name>.<pool>
"""

import logging
from dataclasses import dataclass, field

from avdops.console import log_success
from avdops.errors import ProviderError
from avdops.models import HostPool, SessionHost
from avdops.providers import ComputeProvider, DesktopVirtualizationProvider

logger = logging.getLogger(__name__)


@dataclass
class DiscoveryResult:
    """Outcome of a membership lookup. `session_host` is None when not found."""

    vm_name: str
    fqdn: str | None = None
    session_host: SessionHost | None = None
    pools_checked: int = 0
    pools_unchecked: list[str] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.session_host is not None


def candidate_session_host_names(fqdn: str, vm_name: str, pool_name: str) -> list[str]:
    """Session host names to probe in a pool, most likely first, without duplicates."""
    candidates = [fqdn, f"{fqdn}.{pool_name}", f"{vm_name}.{pool_name}"]
    seen: set[str] = set()
    ordered = []
    for name in candidates:
        if name and name.lower() not in seen:
            seen.add(name.lower())
            ordered.append(name)
    return ordered


def match_session_host(hosts: list[SessionHost], identifier: str) -> SessionHost | None:
    """First session host named identifier, or identifier plus a domain suffix.

    Comparison is case-insensitive. "avd-sh-1" matches "avd-sh-1" and
    "avd-sh-1.contoso.local" but never "avd-sh-10.contoso.local".
    """
    needle = identifier.lower()
    for host in hosts:
        name = host.name.lower()
        if name == needle or name.startswith(f"{needle}."):
            return host
    return None


class SessionHostDiscovery:
    """Locate a VM's host pool membership."""

    def __init__(self, compute: ComputeProvider, desktop: DesktopVirtualizationProvider):
        self.compute = compute
        self.desktop = desktop

    def resolve_fqdn(self, vm_name: str, resource_group: str) -> str | None:
        """VM computer name, or None if it cannot be read."""
        try:
            return self.compute.get_computer_name(resource_group, vm_name)
        except ProviderError as e:
            logger.warning(f"  Could not read VM {vm_name}: {e}")
            return None

    def find(
        self,
        vm_name: str,
        resource_group: str,
        pool_hint: tuple[str, str] | None = None,
    ) -> DiscoveryResult:
        """Find the host pool that lists vm_name as a session host.

        Args:
            vm_name: VM name
            resource_group: VM resource group
            pool_hint: Optional (pool name, pool resource group) to probe instead
                of searching every pool in the subscription

        Returns:
            DiscoveryResult; never raises for "not found" or API failures
        """
        result = DiscoveryResult(vm_name=vm_name)

        logger.info("  Getting VM FQDN...")
        fqdn = self.resolve_fqdn(vm_name, resource_group)
        if not fqdn:
            logger.warning("  Could not determine VM FQDN - skipping host pool lookup")
            return result
        result.fqdn = fqdn
        logger.info(f"  VM FQDN: {fqdn}")

        pools = self._pools_to_search(pool_hint)
        if not pools:
            return result

        for index, pool in enumerate(pools, start=1):
            logger.info(f"  Checking pool {index}/{len(pools)}: {pool.name}")
            host, checked = self._probe_pool(pool, fqdn, vm_name)
            if checked:
                result.pools_checked += 1
            else:
                result.pools_unchecked.append(pool.name)

            if host:
                host.vm_name = vm_name
                host.fqdn = fqdn
                result.session_host = host
                log_success(logger, f"Found session host in pool: {pool.name}")
                logger.info(f"  Session Host Name: {host.name}")
                logger.info(f"  Status: {host.status.value}")
                logger.info(f"  Allow New Sessions: {str(host.allow_new_session).lower()}")
                logger.info(f"  Update State: {host.update_state.value}")
                return result

        logger.warning(
            "VM not found in any host pool - may already be removed or never registered"
        )
        return result

    def _pools_to_search(self, pool_hint: tuple[str, str] | None) -> list[HostPool]:
        if pool_hint and pool_hint[0] and pool_hint[1]:
            pool_name, pool_rg = pool_hint
            logger.info(f"  Using provided host pool: {pool_name} ({pool_rg})")
            return [HostPool(name=pool_name, resource_group=pool_rg)]

        logger.info("  Searching for host pool membership (may take a moment)...")
        try:
            pools = self.desktop.list_host_pools()
        except ProviderError as e:
            logger.warning(f"  Could not list host pools ({e}). Skipping lookup.")
            return []

        if not pools:
            logger.warning("  No host pools found. Skipping lookup.")
            return []

        logger.info(f"  Found {len(pools)} host pools to check")
        return pools

    def _probe_pool(
        self, pool: HostPool, fqdn: str, vm_name: str
    ) -> tuple[SessionHost | None, bool]:
        """Probe candidate names in one pool.

        Returns:
            (matching session host or None, whether at least one probe got an answer)
        """
        answered = False
        for name in candidate_session_host_names(fqdn, vm_name, pool.name):
            logger.debug(f"    Trying: {name}")
            try:
                host = self.desktop.get_session_host(pool.resource_group, pool.name, name)
            except ProviderError as e:
                logger.warning(f"    Lookup of {name} in {pool.name} failed: {e}")
                continue
            answered = True
            if host:
                return host, True
        return None, answered


__all__ = [
    "DiscoveryResult",
    "SessionHostDiscovery",
    "candidate_session_host_names",
    "match_session_host",
]
