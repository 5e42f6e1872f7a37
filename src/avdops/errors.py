"""Exception hierarchy for avdops.

Every error that should end an invocation derives from AvdopsError and
carries the process exit code the CLI uses.
"""


class AvdopsError(Exception):
    """Base exception for avdops errors."""

    exit_code = 1


class ConfigError(AvdopsError):
    """Raised when configuration operations fail."""

    pass


class ProviderError(AvdopsError):
    """Raised when a collaborator (compute, control plane, gallery) call fails.

    Messages are sanitized before the exception is constructed.
    """

    pass


class MaintenanceStoreError(AvdopsError):
    """Raised when the maintenance record store cannot be read or written."""

    pass


class ImagePrepError(AvdopsError):
    """Raised when image-build preparation cannot continue."""

    pass


__all__ = [
    "AvdopsError",
    "ConfigError",
    "ImagePrepError",
    "MaintenanceStoreError",
    "ProviderError",
]
