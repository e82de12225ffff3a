"""
Typed failures raised by the chat repositories.

Validation and not-found errors are raised before any store write.
Store failures are a separate, retryable kind so callers can offer a retry.
"""

from typing import Optional


class ChatError(Exception):
    """
    Base application exception.
    """

    retryable = False

    def __init__(
        self,
        error_code: str,
        message: str,
        status_code: int = 400,
        details: Optional[str] = None
    ):
        """
        Args:
            error_code: Unique business error identifier
            message: User-facing error message
            status_code: HTTP status code used by the API layer
            details: Optional debug details
        """
        self.error_code = error_code
        self.message = message
        self.status_code = status_code
        self.details = details

        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert exception to the API error body."""
        response = {
            "status": "error",
            "error_code": self.error_code,
            "message": self.message,
        }

        if self.details:
            response["details"] = self.details

        if self.retryable:
            response["retryable"] = True

        return response


class ValidationError(ChatError):
    """Raised when a precondition of an operation is violated."""

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(
            error_code="VALIDATION_ERROR",
            message=message,
            status_code=422,
            details=details
        )


class NotAParticipantError(ValidationError):
    """Raised when a user acts on a conversation they are not a party to."""

    def __init__(self, user_id: str, conversation_id: str):
        super().__init__(
            message="User is not a participant of this conversation",
            details=f"user={user_id} conversation={conversation_id}"
        )
        self.error_code = "NOT_A_PARTICIPANT"
        self.status_code = 403


class NotFoundError(ChatError):
    """Raised when a resource does not exist."""

    def __init__(self, resource: str = "Resource", resource_id: Optional[str] = None):
        super().__init__(
            error_code="NOT_FOUND",
            message=f"{resource} not found",
            status_code=404,
            details=f"id={resource_id}" if resource_id else None
        )


class UnauthorizedError(ChatError):
    """Raised when the identity assertion is missing or invalid."""

    def __init__(self, message: str = "invalid identity"):
        super().__init__(
            error_code="UNAUTHORIZED",
            message=message,
            status_code=401
        )


class ForbiddenError(ChatError):
    """Raised when an authenticated user lacks the required role or ownership."""

    def __init__(self, message: str = "Forbidden"):
        super().__init__(
            error_code="FORBIDDEN",
            message=message,
            status_code=403
        )


class StoreUnavailableError(ChatError):
    """Raised for transient store failures once retries are exhausted."""

    retryable = True

    def __init__(self, operation: str, details: Optional[str] = None):
        super().__init__(
            error_code="STORE_UNAVAILABLE",
            message=f"Store unavailable during {operation}",
            status_code=503,
            details=details
        )
