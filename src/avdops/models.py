"""Data models for AVD session hosts, host pools and maintenance state.

These are plain dataclasses produced by the providers and consumed by the
discovery, maintenance and restore modules. Secret-bearing models override
__repr__ so they are safe to log.
"""

import re
import secrets
import string
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum


class SessionHostStatus(str, Enum):
    """Health status reported by the AVD control plane for a session host."""

    AVAILABLE = "Available"
    NEEDS_ASSISTANCE = "NeedsAssistance"
    UNAVAILABLE = "Unavailable"
    UPGRADING = "Upgrading"
    NO_HEARTBEAT = "NoHeartbeat"
    SHUTDOWN = "Shutdown"
    UNKNOWN = "Unknown"

    @classmethod
    def from_value(cls, value: str | None) -> "SessionHostStatus":
        """Map a control-plane status string to the enum (case-insensitive)."""
        if not value:
            return cls.UNKNOWN
        for member in cls:
            if member.value.lower() == str(value).lower():
                return member
        return cls.UNKNOWN


class UpdateState(str, Enum):
    """Agent update state of a session host."""

    INITIAL = "Initial"
    PENDING = "Pending"
    STARTED = "Started"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"

    @classmethod
    def from_value(cls, value: str | None) -> "UpdateState":
        if not value:
            return cls.UNKNOWN
        for member in cls:
            if member.value.lower() == str(value).lower():
                return member
        return cls.UNKNOWN


class HostPoolType(str, Enum):
    """Host pool type as exposed by the control plane."""

    POOLED = "Pooled"
    PERSONAL = "Personal"
    BYO_DESKTOP = "BYODesktop"

    @classmethod
    def from_value(cls, value: str | None) -> "HostPoolType":
        for member in cls:
            if value and member.value.lower() == str(value).lower():
                return member
        return cls.PERSONAL


class SessionType(str, Enum):
    """RDP session model configured on the VM."""

    MULTI_SESSION = "MultiSession"
    SINGLE_SESSION = "SingleSession"

    @classmethod
    def for_pool_type(cls, pool_type: HostPoolType) -> "SessionType":
        """Pooled host pools run multi-session; everything else is single-session."""
        if pool_type == HostPoolType.POOLED:
            return cls.MULTI_SESSION
        return cls.SINGLE_SESSION


# Statuses in which a host is expected to answer a drain request
DRAINABLE_STATUSES = frozenset({SessionHostStatus.AVAILABLE, SessionHostStatus.NEEDS_ASSISTANCE})


@dataclass
class HostPool:
    """A resource-group scoped AVD host pool."""

    name: str
    resource_group: str
    host_pool_type: HostPoolType = HostPoolType.POOLED

    @property
    def session_type(self) -> SessionType:
        return SessionType.for_pool_type(self.host_pool_type)


@dataclass
class SessionHost:
    """One VM's membership record in a host pool.

    `name` is the session host resource name inside the pool (the part after
    "<pool>/" in the ARM name); it is what update/delete calls address.
    """

    name: str
    pool_name: str
    pool_resource_group: str
    status: SessionHostStatus = SessionHostStatus.UNKNOWN
    allow_new_session: bool = False
    update_state: UpdateState = UpdateState.UNKNOWN
    vm_name: str | None = None
    fqdn: str | None = None

    @property
    def can_drain(self) -> bool:
        """True when the host is healthy enough to accept a drain request."""
        return self.status in DRAINABLE_STATUSES


@dataclass
class RegistrationToken:
    """Host pool registration token (CRITICAL: never log the token value)."""

    token: str
    expiration_time: datetime

    def __repr__(self) -> str:
        return f"RegistrationToken(token=***REDACTED***, expiration_time={self.expiration_time!r})"

    def __str__(self) -> str:
        return f"registration token expiring {self.expiration_time.isoformat()}"

    def remaining(self, now: datetime | None = None) -> timedelta:
        """Time left before the token expires."""
        now = now or datetime.now(UTC)
        return self.expiration_time - now


@dataclass
class MaintenanceRecord:
    """Pool membership saved by maintenance so restore can find the pool again."""

    vm_name: str
    pool_name: str
    pool_resource_group: str


@dataclass
class LocalAdminCredential:
    """Local administrator account opened for Bastion access during maintenance."""

    username: str
    password: str = field(repr=False)
    generated: bool = False

    PASSWORD_LENGTH = 20
    SPECIAL_CHARACTERS = "!@#%^*-_=+"

    @classmethod
    def create(cls, username: str, password: str | None = None) -> "LocalAdminCredential":
        """Use the supplied password or generate one."""
        if password:
            return cls(username=username, password=password)
        return cls(username=username, password=cls.generate_password(), generated=True)

    @classmethod
    def generate_password(cls, length: int | None = None) -> str:
        """Generate a random password satisfying Windows complexity rules.

        Contains at least one lowercase, uppercase, digit and special
        character; avoids quote characters that break script parameters.
        """
        length = length or cls.PASSWORD_LENGTH
        if length < 8:
            raise ValueError("Password length must be at least 8")

        pools = [
            string.ascii_lowercase,
            string.ascii_uppercase,
            string.digits,
            cls.SPECIAL_CHARACTERS,
        ]
        alphabet = "".join(pools)
        chars = [secrets.choice(pool) for pool in pools]
        chars += [secrets.choice(alphabet) for _ in range(length - len(chars))]
        secrets.SystemRandom().shuffle(chars)
        return "".join(chars)


@dataclass
class RunCommandOutput:
    """Output of a PowerShell script executed through the VM run-command API."""

    stdout: str = ""
    stderr: str = ""

    WARNING_PREFIX = re.compile(r"^\s*WARNING:\s*(.*)$", re.IGNORECASE)
    ERROR_PREFIX = re.compile(r"^\s*ERROR:\s*(.*)$", re.IGNORECASE)

    def lines(self) -> list[str]:
        return [line.rstrip() for line in self.stdout.splitlines() if line.strip()]

    def warnings(self) -> list[str]:
        """Lines the script flagged with a WARNING: prefix."""
        return self._matching(self.WARNING_PREFIX)

    def errors(self) -> list[str]:
        """Lines the script flagged with an ERROR: prefix."""
        return self._matching(self.ERROR_PREFIX)

    def contains(self, marker: str) -> bool:
        return marker in self.stdout

    def _matching(self, pattern: re.Pattern) -> list[str]:
        result = []
        for line in self.lines():
            match = pattern.match(line)
            if match:
                result.append(match.group(1).strip())
        return result


__all__ = [
    "DRAINABLE_STATUSES",
    "HostPool",
    "HostPoolType",
    "LocalAdminCredential",
    "MaintenanceRecord",
    "RegistrationToken",
    "RunCommandOutput",
    "SessionHost",
    "SessionHostStatus",
    "SessionType",
    "UpdateState",
]
