from __future__ import annotations

from typing import Any


class StorageGateError(Exception):
    """Base error for storagegate.

    Every subclass carries a stable machine-readable ``code`` and the HTTP
    status the API maps it to.
    """

    code = "STORAGEGATE_ERROR"
    http_status = 500
    retryable = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_detail(self) -> dict[str, Any]:
        # Shape matches the HTTPException detail dicts used across the API.
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        payload.update(self.details)
        if self.retryable:
            payload["retryable"] = True
        return payload


class AccountSuspended(StorageGateError):
    """Tenant status is not active."""

    code = "ACCOUNT_SUSPENDED"
    http_status = 403


class QuotaExceeded(StorageGateError):
    """Upload would push storage usage past the tenant quota."""

    code = "QUOTA_EXCEEDED"
    http_status = 402


class DownloadLimitExceeded(StorageGateError):
    """Monthly egress is at or above the free limit while blocking is on."""

    code = "DOWNLOAD_LIMIT_EXCEEDED"
    http_status = 403


class StorageNotConfigured(StorageGateError):
    """Tenant has no verified object storage configuration."""

    code = "STORAGE_NOT_CONFIGURED"
    http_status = 400


class TenantNotFound(StorageGateError):
    code = "TENANT_NOT_FOUND"
    http_status = 404


class FileNotFound(StorageGateError):
    code = "FILE_NOT_FOUND"
    http_status = 404


class AlertNotFound(StorageGateError):
    code = "ALERT_NOT_FOUND"
    http_status = 404


class StorageBackendError(StorageGateError):
    """Wraps any object storage failure, including timeouts."""

    code = "STORAGE_BACKEND_ERROR"
    http_status = 503
    retryable = True


class AccountingInconsistency(StorageGateError):
    """Recalculation produced a negative or NaN aggregate."""

    code = "ACCOUNTING_INCONSISTENCY"
    http_status = 500


class FileTreeCycleError(StorageGateError):
    """Reparenting would make a folder its own ancestor."""

    code = "FILE_TREE_CYCLE"
    http_status = 409


class InvalidSettingError(StorageGateError):
    code = "INVALID_SETTING"
    http_status = 400


class InvalidEntryName(StorageGateError):
    """File or folder name is empty, a dot segment, or contains a slash."""

    code = "INVALID_NAME"
    http_status = 400


class PathConflict(StorageGateError):
    """Another live entry already holds the logical path or storage key."""

    code = "PATH_CONFLICT"
    http_status = 409
