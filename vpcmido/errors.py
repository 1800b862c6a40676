# File: vpcmido/errors.py

from enum import IntEnum


class ExitCode(IntEnum):
    OK = 0
    FAILURE = 1
    PARTIAL = 2
    CONFIG_ERROR = 3


class VpcMidoError(Exception):
    """Base error for the reconciliation driver."""


class ConfigError(VpcMidoError):
    """Raised for configuration or argument issues."""


class MalformedInput(VpcMidoError):
    """Raised when an item of the desired-state model cannot be interpreted."""


class MalformedCIDR(MalformedInput):
    """Raised for an invalid CIDR string."""


class UnsupportedRule(MalformedInput):
    """Raised for a rule the backend filter language cannot express."""


class CapacityExceeded(VpcMidoError):
    """Raised when a bounded pool or list is exhausted."""


class DependencyMissing(VpcMidoError):
    """Raised when a child is built before its parent reached Present."""


class BackendError(VpcMidoError):
    """Base error for SDN backend calls."""


class BackendTransient(BackendError):
    """Network or API failure; the call may be retried."""


class BackendNotFound(BackendError):
    """The addressed backend object does not exist."""


class BackendConflict(BackendError):
    """The backend object being created already exists."""


class HostNetworkError(VpcMidoError):
    """A host namespace or interface command failed."""


def as_exit_code(exc: BaseException) -> int:
    if isinstance(exc, ConfigError):
        return int(ExitCode.CONFIG_ERROR)
    if isinstance(exc, (CapacityExceeded, MalformedInput, BackendError)):
        return int(ExitCode.PARTIAL)
    return int(ExitCode.FAILURE)
