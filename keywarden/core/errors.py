from __future__ import annotations


class KeywardenError(Exception):
    """Base error for keywarden."""


class ProviderConfigError(KeywardenError):
    """Missing or invalid provider configuration."""


class StoreError(KeywardenError):
    """Persistence layer failure."""


class RotationError(KeywardenError):
    """Rotation strategy failure."""


class TransientExternalFailure(RotationError):
    """Network, throttling or timeout failure talking to a backend; retryable."""


class PermanentPolicyFailure(RotationError):
    """Failure that retrying cannot fix; short-circuits the retry loop."""


class UnsupportedCredentialType(PermanentPolicyFailure):
    """No rotation strategy is registered for the credential type."""


class CredentialValidationError(PermanentPolicyFailure):
    """Credential record or secret payload is missing required fields."""


class BackupCreationError(KeywardenError):
    """Pre-rotation snapshot could not be written; the rotation must not start."""


class RollbackError(KeywardenError):
    """Restoring the pre-rotation value failed."""


class BackupNotFound(RollbackError):
    """Backup is missing, expired, or belongs to another credential."""


class TenantIsolationViolation(KeywardenError):
    """Resource lookup missed or crossed tenants; access denied."""


class RotationInProgress(KeywardenError):
    """Another rotation of the same credential is in flight."""


class PlanLimitExceeded(KeywardenError):
    """Tenant plan quota reached."""

    def __init__(self, limit_type: str, current: int, limit: int | None) -> None:
        super().__init__(f"Plan limit reached for {limit_type}: {current}/{limit}")
        self.limit_type = limit_type
        self.current = current
        self.limit = limit
