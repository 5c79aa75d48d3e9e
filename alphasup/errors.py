"""Error taxonomy shared by the payment lifecycle services and the HTTP layer.

Every error carries the HTTP status and a stable machine-readable code; the
exception handlers in ``alphasup.main`` turn them into the JSON envelope
``{"success": false, "error": {...}}``.
"""
from typing import Any, Optional


class AppError(Exception):
    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str = "Resource", details: Optional[Any] = None):
        super().__init__(f"{resource} not found", details)


class AuthenticationError(AppError):
    status_code = 401
    code = "AUTH_ERROR"


class AuthorizationError(AppError):
    status_code = 403
    code = "AUTHORIZATION_ERROR"


class GatewayError(AppError):
    """Any failure reported by the payment gateway. The gateway message is passed through."""

    status_code = 500
    code = "GATEWAY_ERROR"


class IntentCreationError(GatewayError):
    code = "PAYMENT_INTENT_CREATION_FAILED"

    def __init__(self, gateway_message: str):
        super().__init__(f"Payment intent creation failed: {gateway_message}")


class RefundCreationError(GatewayError):
    code = "REFUND_CREATION_FAILED"

    def __init__(self, gateway_message: str):
        super().__init__(f"Refund creation failed: {gateway_message}")


class SignatureError(AppError):
    # 4xx: the gateway must not retry a delivery that can never verify
    status_code = 400
    code = "INVALID_SIGNATURE"


class ProcessingError(AppError):
    # 5xx: the gateway retries delivery
    status_code = 500
    code = "WEBHOOK_PROCESSING_FAILED"

    def __init__(self, message: str, event_id: Optional[str] = None):
        super().__init__(message, details={"eventId": event_id} if event_id else None)
        self.event_id = event_id
