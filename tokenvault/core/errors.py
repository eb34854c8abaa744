from __future__ import annotations

from typing import Any


class TokenVaultError(Exception):
    """Base error for TokenVault."""

    code = "TOKENVAULT_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        # Context must only hold identifiers and prefixes, never plaintext.
        self.context = dict(context or {})

    def to_detail(self) -> dict[str, Any]:
        detail: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.context:
            detail["context"] = self.context
        return detail


class VaultError(TokenVaultError):
    """Vault lookup, policy or capacity failure."""

    code = "VAULT_ERROR"
    status_code = 400


class VaultNotFoundError(VaultError):
    """Vault is missing or not active."""

    code = "VAULT_NOT_FOUND"
    status_code = 404


class VaultAccessDeniedError(VaultError):
    """Vault access restrictions rejected the caller."""

    code = "VAULT_ACCESS_DENIED"
    status_code = 403


class CapacityExceededError(VaultError):
    """Vault token capacity reached."""

    code = "VAULT_CAPACITY_EXCEEDED"
    status_code = 409


class OperationNotAllowedError(VaultError):
    """Vault policy does not allow the operation."""

    code = "OPERATION_NOT_ALLOWED"
    status_code = 403


class VaultConflictError(VaultError):
    """Vault name already in use."""

    code = "VAULT_NAME_CONFLICT"
    status_code = 409


class InvalidVaultTransitionError(VaultError):
    """Vault status change is not permitted."""

    code = "INVALID_VAULT_TRANSITION"
    status_code = 409


class TokenizationError(TokenVaultError):
    """Generic tokenization failure with an error code and context."""

    code = "TOKENIZATION_ERROR"
    status_code = 400


class TokenNotFoundError(TokenizationError):
    """Token value or id does not exist."""

    code = "TOKEN_NOT_FOUND"
    status_code = 404


class TokenNotUsableError(TokenizationError):
    """Token is not active or has expired."""

    code = "TOKEN_NOT_USABLE"
    status_code = 409


class TokenNotRevocableError(TokenizationError):
    """Token cannot be revoked from its current status."""

    code = "TOKEN_NOT_REVOCABLE"
    status_code = 409


class TokenIntegrityError(TokenizationError):
    """Token checksum mismatch; the token was marked compromised."""

    code = "TOKEN_INTEGRITY_FAILED"
    status_code = 409

    def __init__(self, message: str, *, events: tuple[Any, ...] = (), **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        # Compromise events committed before the error was raised.
        self.events = tuple(events)


class InvalidTokenValueError(TokenizationError):
    """Generated or supplied token value violates token value rules."""

    code = "INVALID_TOKEN_VALUE"
    status_code = 422


class EncryptionError(TokenVaultError):
    """Encrypt/decrypt failure or unsupported algorithm."""

    code = "ENCRYPTION_ERROR"
    status_code = 500


class KeyManagementError(EncryptionError):
    """Vault key missing, compromised or unavailable from the KMS."""

    code = "KEY_MANAGEMENT_ERROR"
    status_code = 503


class AuditQueueError(TokenVaultError):
    """Audit record could not be enqueued."""

    code = "AUDIT_ENQUEUE_FAILED"
    status_code = 503


class AuditPersistError(TokenVaultError):
    """Audit record could not be persisted after retries."""

    code = "AUDIT_PERSIST_FAILED"
    status_code = 503


class AlertNotFoundError(TokenVaultError):
    """Security alert does not exist."""

    code = "ALERT_NOT_FOUND"
    status_code = 404


class InvalidAlertTransitionError(TokenVaultError):
    """Security alert status change is not permitted."""

    code = "INVALID_ALERT_TRANSITION"
    status_code = 409


class ComplianceReportError(TokenVaultError):
    """Compliance report could not be generated or found."""

    code = "COMPLIANCE_REPORT_ERROR"
    status_code = 400


class ReportNotFoundError(ComplianceReportError):
    """Compliance report does not exist."""

    code = "REPORT_NOT_FOUND"
    status_code = 404


class InvalidReportStateError(ComplianceReportError):
    """Compliance report is not in a state that allows the request."""

    code = "INVALID_REPORT_STATE"
    status_code = 409


class RetentionPolicyError(TokenVaultError):
    """Retention policy definition is invalid."""

    code = "INVALID_RETENTION_POLICY"
    status_code = 400
