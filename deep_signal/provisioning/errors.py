"""
errors.py — error taxonomy for provisioning runs.

Everything the orchestrator lets escape is a ProvisioningError. Transport
exceptions (requests, paramiko, socket) are converted at the module that talks
to the transport, and classify() buckets any error into the FailureKind the UI
uses to pick a recovery action.
"""

from enum import Enum


class FailureKind(str, Enum):
    CAPACITY = "capacity"
    AUTH_REQUIRED = "auth_required"
    GENERIC = "generic"


class Recovery(str, Enum):
    RETRY = "retry"
    USE_FREE_TIER = "use_free_tier"
    CONTACT_SUPPORT = "contact_support"


# Phrases Hetzner (and most providers) use when an account hits a quota or a
# location runs out of machines.
CAPACITY_PATTERNS = (
    "resource_limit_exceeded",
    "resource_unavailable",
    "limit exceeded",
    "limit reached",
    "server limit",
    "quota",
    "capacity",
    "insufficient resources",
    "no more servers",
)


class ProvisioningError(RuntimeError):
    kind = FailureKind.GENERIC


class PreconditionError(ProvisioningError):
    """An operator-side precondition is missing. Never retried."""


class NoSshKeyConfigured(PreconditionError):
    def __init__(self, message: str = "No SSH key registered with the cloud provider. Add one first."):
        super().__init__(message)


class InvalidRequest(ProvisioningError):
    pass


class CredentialRequired(ProvisioningError):
    kind = FailureKind.AUTH_REQUIRED


class ProviderError(ProvisioningError):
    def __init__(self, message: str, status_code: int | None = None, provider: str = "hetzner"):
        super().__init__(message)
        self.status_code = status_code
        self.provider = provider


class ProviderUnreachable(ProviderError):
    pass


class RemoteAccessError(ProvisioningError):
    pass


class ConfigApplyError(ProvisioningError):
    pass


class ReadinessTimeout(ProvisioningError):
    pass


class RateLimited(ProvisioningError):
    pass


class Cancelled(ProvisioningError):
    pass


class DeployFailed(ProvisioningError):
    """Fatal outcome of an orchestration run, already classified."""

    def __init__(self, message: str, kind: FailureKind, cause: BaseException | None = None, instance=None):
        super().__init__(message)
        self.kind = kind
        self.recovery = recovery_for(kind, cause)
        self.cause = cause
        self.instance = instance

    def to_dict(self) -> dict:
        data = {
            "error": str(self),
            "kind": self.kind.value,
            "recovery": self.recovery.value,
        }
        if self.instance is not None:
            data["instance"] = self.instance.to_record()
        return data


def classify(exc: BaseException) -> FailureKind:
    if isinstance(exc, DeployFailed):
        return exc.kind
    if isinstance(exc, CredentialRequired):
        return FailureKind.AUTH_REQUIRED
    if isinstance(exc, ProviderError):
        message = str(exc).lower()
        if any(p in message for p in CAPACITY_PATTERNS):
            return FailureKind.CAPACITY
    return FailureKind.GENERIC


def recovery_for(kind: FailureKind, cause: BaseException | None = None) -> Recovery:
    if kind is FailureKind.AUTH_REQUIRED:
        return Recovery.USE_FREE_TIER
    if isinstance(cause, PreconditionError):
        return Recovery.CONTACT_SUPPORT
    return Recovery.RETRY
