from __future__ import annotations

from typing import Any, Dict


ERROR_MESSAGES: Dict[str, str] = {
    "unexpected_error": "The operation could not be completed.",
    "invalid_request": "The request parameters are invalid.",
    "principal_not_found": "No activity snapshot is available for this principal yet.",
    "source_unavailable": "Activity sources are temporarily unavailable.",
    "inconsistent_reference": "A source record references an invalid principal or organization.",
    "build_timeout": "Building the activity snapshot took too long.",
    "stale_snapshot": "A newer activity snapshot is already committed.",
    "snapshot_store_corrupted": "The activity snapshot store is corrupted.",
    "refresh_failed": "The activity snapshot could not be refreshed.",
    "engine_unavailable": "Principal activity analytics are disabled on this instance.",
}


def error_message(key: str, fallback: str | None = None) -> str:
    return ERROR_MESSAGES.get(key) or fallback or ERROR_MESSAGES["unexpected_error"]


class AppError(Exception):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True

    def __init__(
        self,
        code: str | None = None,
        message_key: str | None = None,
        http_status: int | None = None,
        critical: bool | None = None,
        details: str | None = None,
        payload: Dict[str, Any] | None = None,
    ) -> None:
        self.code = (code or self.default_code).strip()
        self.message_key = (message_key or self.default_message_key).strip()
        self.http_status = int(http_status or self.default_http_status)
        self.critical = bool(self.default_critical if critical is None else critical)
        self.details = (details or "").strip() or None
        self.payload = dict(payload or {})
        super().__init__(self.details or self.code)

    def user_message(self) -> str:
        return error_message(self.message_key)

    def to_response_payload(self, request_id: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.code,
            "message": self.user_message(),
            "request_id": request_id,
        }
        if self.payload:
            payload.update(self.payload)
        return payload


class ValidationError(AppError):
    default_code = "validation_error"
    default_message_key = "invalid_request"
    default_http_status = 400
    default_critical = False


class NotFoundError(AppError):
    """Queried principal has no committed snapshot (first aggregation pending)."""

    default_code = "principal_not_found"
    default_message_key = "principal_not_found"
    default_http_status = 404
    default_critical = False


class SourceUnavailableError(AppError):
    default_code = "source_unavailable"
    default_message_key = "source_unavailable"
    default_http_status = 503
    default_critical = False


class InconsistentReferenceError(AppError):
    default_code = "inconsistent_reference"
    default_message_key = "inconsistent_reference"
    default_http_status = 409
    default_critical = False


class BuildTimeoutError(AppError):
    default_code = "build_timeout"
    default_message_key = "build_timeout"
    default_http_status = 504
    default_critical = False


class StaleSnapshotError(AppError):
    default_code = "stale_snapshot"
    default_message_key = "stale_snapshot"
    default_http_status = 409
    default_critical = False


class SnapshotStoreCorruptedError(AppError):
    """Current pointer references a version missing from the arena. Not recoverable."""

    default_code = "snapshot_store_corrupted"
    default_message_key = "snapshot_store_corrupted"
    default_http_status = 500
    default_critical = True


class SystemError(AppError):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True


class EngineUnavailableError(AppError):
    default_code = "engine_unavailable"
    default_message_key = "engine_unavailable"
    default_http_status = 503
    default_critical = False
