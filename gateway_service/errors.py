"""
Gateway exceptions.

All errors raised by the core inherit from ``GatewayError`` so the
dispatch layer can turn them into responses with one handler.

Usage:
    from errors import CollectionNotFoundError

    raise CollectionNotFoundError("orders")
"""

from typing import Any, Dict, Optional


class GatewayError(Exception):
    """
    Base exception for the gateway.

    Attributes:
        message: Human-readable error message
        details: Additional error details (optional)
        status_code: HTTP status code to return
    """

    status_code = 500

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class DatabaseConnectionError(GatewayError):
    """All connection attempts failed, or the in-flight attempt did."""

    status_code = 503

    def __init__(
        self,
        message: str = "Connection failed",
        attempts: int = 0,
        last_error: Optional[BaseException] = None,
    ):
        self.attempts = attempts
        self.last_error = last_error
        details: Dict[str, Any] = {}
        if attempts:
            details["attempts"] = attempts
        if last_error is not None:
            details["last_error"] = str(last_error)
        super().__init__(message, details)


class NotConnectedError(GatewayError):
    status_code = 503

    def __init__(self, message: str = "Not connected to MongoDB. Call connect() first."):
        super().__init__(message)


class CollectionNotFoundError(GatewayError):
    status_code = 404

    def __init__(self, collection_name: str):
        self.collection_name = collection_name
        super().__init__(
            f"Collection '{collection_name}' not found in database",
            {"collection": collection_name},
        )


class InvalidQueryError(GatewayError):
    """Unparseable input, or a filter or pipeline that would write."""

    status_code = 400


class SampleFetchError(GatewayError):
    """The store rejected a sample/find call, usually a malformed filter."""

    status_code = 400

    def __init__(self, cause: BaseException):
        self.cause = cause
        super().__init__(f"Invalid query filter: {cause}")


class ToolBlockedError(GatewayError):
    status_code = 403

    def __init__(self, tool_name: str, reason: str):
        self.tool_name = tool_name
        super().__init__(reason, {"tool": tool_name})


class CollectionExistsError(GatewayError):
    status_code = 409

    def __init__(self, collection_name: str, hint: str = ""):
        self.collection_name = collection_name
        message = f"Collection '{collection_name}' already exists"
        if hint:
            message = f"{message}. {hint}"
        super().__init__(message, {"collection": collection_name})


class WriteOperationError(GatewayError):
    """A write tool was given unusable input or the server rejected it."""

    status_code = 400

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        super().__init__(message, {"tool": tool_name})
