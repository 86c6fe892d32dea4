from __future__ import annotations

from typing import Any

from storagegate.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _documented(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _documented(
        "Bad request",
        code="STORAGE_NOT_CONFIGURED",
        message="Storage is not configured for this account",
    ),
    401: _documented(
        "Unauthorized",
        code="AUTH_UNAUTHORIZED",
        message="Missing or invalid bearer token",
    ),
    402: _documented(
        "Storage quota exceeded",
        code="QUOTA_EXCEEDED",
        message="Upload would exceed the storage quota",
        details={"used": "99.50", "limit": "100.00", "requested": "1.00"},
    ),
    403: _documented(
        "Forbidden",
        code="ACCOUNT_SUSPENDED",
        message="Account is suspended",
        details={"status": "suspended"},
    ),
    404: _documented(
        "Not found",
        code="FILE_NOT_FOUND",
        message="File not found",
    ),
    409: _documented(
        "Conflict",
        code="FILE_TREE_CYCLE",
        message="A folder cannot be moved into itself or its descendants",
    ),
    422: _documented(
        "Validation error",
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": [{"loc": ["body", "size_bytes"], "msg": "Input should be greater than or equal to 0"}]},
    ),
    503: _documented(
        "Object storage unavailable",
        code="STORAGE_BACKEND_ERROR",
        message="Object storage presign_get failed",
        details={"operation": "presign_get", "retryable": True},
    ),
}
