"""
Custom Exception Hierarchy

Structured exceptions shared by the automation and flow engines and the
HTTP surface.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"

    # Action errors (2xxx)
    ACTION_FAILED = "ERR_2001"
    ACTION_MISSING_CONTEXT = "ERR_2002"
    ACTION_INVALID = "ERR_2003"

    # Flow definition / execution errors (3xxx)
    FLOW_DEFINITION_INVALID = "ERR_3001"
    FLOW_STEP_LIMIT = "ERR_3002"
    EXECUTION_NOT_FOUND = "ERR_3003"
    EXECUTION_CONFLICT = "ERR_3004"
    LEDGER_WRITE_FAILED = "ERR_3005"
    INVALID_STATUS_CHANGE = "ERR_3006"

    # External service errors (5xxx)
    WEBHOOK_ERROR = "ERR_5001"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

class ActionError(AppException):
    """A single action failed. Confined to that action; never aborts a firing."""

    def __init__(
        self,
        action_type: str,
        message: str,
        error_code: ErrorCode = ErrorCode.ACTION_FAILED,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=422,
            details=details
        )
        self.action_type = action_type
        self.details["action"] = action_type


class MissingContextError(ActionError):
    """Raised when an action needs a conversation/contact/deal/user the event does not carry"""

    def __init__(self, action_type: str, missing: str):
        super().__init__(
            action_type=action_type,
            message=f"No {missing} context for {action_type} action",
            error_code=ErrorCode.ACTION_MISSING_CONTEXT,
            details={"missing": missing}
        )


class InvalidActionError(ActionError):
    """Raised when an action payload has an unknown type or malformed parameters"""

    def __init__(self, action_type: str, reason: str):
        super().__init__(
            action_type=action_type,
            message=f"Invalid action '{action_type}': {reason}",
            error_code=ErrorCode.ACTION_INVALID,
            details={"reason": reason}
        )


# ---------------------------------------------------------------------------
# Flows and the execution ledger
# ---------------------------------------------------------------------------

class FlowDefinitionError(AppException):
    """Raised when a chatbot graph cannot be walked (no start node, dangling edge...)"""

    def __init__(self, chatbot_id: str, reason: str):
        super().__init__(
            message=f"Invalid flow for chatbot {chatbot_id}: {reason}",
            error_code=ErrorCode.FLOW_DEFINITION_INVALID,
            status_code=422,
            details={"chatbot_id": chatbot_id, "reason": reason}
        )


class FlowStepLimitError(AppException):
    """Raised when a walk exceeds the step budget without suspending"""

    def __init__(self, execution_id: str, max_steps: int):
        super().__init__(
            message=f"Execution {execution_id} exceeded {max_steps} steps without suspending",
            error_code=ErrorCode.FLOW_STEP_LIMIT,
            details={"execution_id": execution_id, "max_steps": max_steps}
        )


class ExecutionNotFoundError(NotFoundException):
    """Raised when an execution ledger row does not exist"""

    def __init__(self, execution_id: str):
        super().__init__(
            resource="ChatbotExecution",
            identifier=execution_id,
            error_code=ErrorCode.EXECUTION_NOT_FOUND
        )


class ConcurrentExecutionError(AppException):
    """Another writer changed the ledger row (or holds its lock) first"""

    def __init__(self, execution_id: str, expected_version: int | None = None):
        super().__init__(
            message=f"Execution {execution_id} was modified concurrently",
            error_code=ErrorCode.EXECUTION_CONFLICT,
            status_code=409,
            details={"execution_id": execution_id, "expected_version": expected_version}
        )


class LedgerPersistenceError(AppException):
    """Ledger write failed: fatal for the event being processed"""

    def __init__(self, execution_id: str | None, reason: str):
        super().__init__(
            message=f"Failed to persist execution {execution_id}: {reason}",
            error_code=ErrorCode.LEDGER_WRITE_FAILED,
            details={"execution_id": execution_id, "reason": reason}
        )


class InvalidStatusChangeError(AppException):
    """Raised when an operator asks for a status the ledger does not allow"""

    def __init__(self, execution_id: str, requested: str):
        super().__init__(
            message=f"Execution {execution_id} cannot be forced to '{requested}'",
            error_code=ErrorCode.INVALID_STATUS_CHANGE,
            status_code=400,
            details={"execution_id": execution_id, "requested_status": requested}
        )


# ---------------------------------------------------------------------------
# External services
# ---------------------------------------------------------------------------

class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class WebhookCallError(ExternalServiceException):
    """Raised when an outbound webhook call fails"""

    def __init__(self, url: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="webhook",
            message=f"Webhook call to {url} failed: {message}",
            error_code=ErrorCode.WEBHOOK_ERROR,
            details=details
        )
        self.details["url"] = url

    @classmethod
    def from_response(
        cls,
        url: str,
        response: Any,
        *,
        max_response_chars: int = 500
    ) -> "WebhookCallError":
        """Build a WebhookCallError from a non-2xx HTTP response"""
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            url=url,
            message=f"returned status {status_code}",
            details={
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )
