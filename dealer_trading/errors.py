from __future__ import annotations

from typing import Any, Dict

from dealer_trading.ui_strings import error_message


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
        fallback = error_message("unexpected_error", "The operation could not be completed.")
        return error_message(self.message_key, fallback)

    def to_response_payload(self, request_id: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.code,
            "message": self.user_message(),
            "request_id": request_id,
        }
        if self.payload:
            payload.update(self.payload)
        return payload


class UserActionError(AppError):
    default_code = "action_invalid"
    default_message_key = "action_invalid"
    default_http_status = 400
    default_critical = False


class ValidationError(UserActionError):
    default_code = "validation_error"
    default_message_key = "validation_error"
    default_http_status = 400
    default_critical = False


class NotFoundError(UserActionError):
    default_code = "not_found"
    default_message_key = "not_found"
    default_http_status = 404
    default_critical = False


class ForbiddenError(UserActionError):
    default_code = "permission_denied"
    default_message_key = "permission_denied"
    default_http_status = 403
    default_critical = False


class InvalidStateTransitionError(UserActionError):
    """Raised when a transfer operation is not valid from the transfer's current status."""

    default_code = "invalid_state_transition"
    default_message_key = "invalid_state_transition"
    default_http_status = 409
    default_critical = False

    def __init__(
        self,
        code: str | None = None,
        message_key: str | None = None,
        *,
        current_status: str | None = None,
        target_status: str | None = None,
        details: str | None = None,
        payload: Dict[str, Any] | None = None,
    ) -> None:
        merged = dict(payload or {})
        if current_status is not None:
            merged.setdefault("current_status", current_status)
        if target_status is not None:
            merged.setdefault("target_status", target_status)
        self.current_status = current_status
        self.target_status = target_status
        if not details and (current_status or target_status):
            details = f"{current_status} -> {target_status}"
        super().__init__(
            code=code,
            message_key=message_key or code,
            details=details,
            payload=merged,
        )


class DataSourceUnavailableError(AppError):
    default_code = "feed_unavailable"
    default_message_key = "feed_unavailable"
    default_http_status = 503
    default_critical = False


class SystemError(AppError):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True
