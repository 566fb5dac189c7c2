"""Typed failures returned by the provisioning, ledger and payment services."""

from __future__ import annotations

from typing import Any, Dict


class ProvisioningError(Exception):
    """Business or infrastructure failure with a stable classification."""

    code = "provisioning_error"
    status_code = 400

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.context:
            detail.update(self.context)
        return detail


class ValidationError(ProvisioningError):
    code = "validation_error"
    status_code = 422


class TargetUnavailableError(ProvisioningError):
    code = "target_unavailable"
    status_code = 404


class CapacityExceededError(ProvisioningError):
    code = "capacity_exceeded"
    status_code = 409


class InsufficientBalanceError(ProvisioningError):
    code = "insufficient_balance"
    status_code = 402


class AlreadyExistsError(ProvisioningError):
    code = "already_exists"
    status_code = 409


class TrialAlreadyUsedError(ProvisioningError):
    code = "trial_already_used"
    status_code = 409


class AccountNotFoundError(ProvisioningError):
    code = "account_not_found"
    status_code = 404


class AccountNotActiveError(ProvisioningError):
    code = "account_not_active"
    status_code = 409


class NotAccountOwnerError(ProvisioningError):
    code = "not_account_owner"
    status_code = 403


class TrialNotRenewableError(ProvisioningError):
    code = "trial_not_renewable"
    status_code = 409


class InvoiceNotFoundError(ProvisioningError):
    code = "invoice_not_found"
    status_code = 404


class ExternalUnavailableError(ProvisioningError):
    """Credential store or payment gateway timed out or failed; safe to retry."""

    code = "external_unavailable"
    status_code = 503


class DataConsistencyViolationError(ProvisioningError):
    """A uniqueness constraint fired at commit despite the pre-checks."""

    code = "data_consistency_violation"
    status_code = 409
