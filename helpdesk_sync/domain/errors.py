"""Domain Errors - Centralized Exception Hierarchy"""
from typing import Any, Dict, Optional


class DomainError(Exception):
    """Base domain error - all errors extend this"""

    error_code: str = "DOMAIN_ERROR"
    http_status: int = 400

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to API response dict"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details
            }
        }


# Change Stream Errors
class StreamError(DomainError):
    """Failure reported by a scoped change stream"""
    error_code = "STREAM_ERROR"
    http_status = 503

    def __init__(
        self,
        message: str,
        scope_key: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(message, details=details, error_code=error_code)
        self.scope_key = scope_key
        if scope_key:
            self.details.setdefault("scope_key", scope_key)


class TransientStreamError(StreamError):
    """Timeout or temporary disconnect - retried while the scope is current"""
    error_code = "STREAM_TRANSIENT"


class HardStreamError(StreamError):
    """Auth rejection or malformed filter - live updates degrade"""
    error_code = "STREAM_REJECTED"


# Request/Response Errors
class FetchError(DomainError):
    """A call to the helpdesk REST backend failed"""
    error_code = "FETCH_ERROR"
    http_status = 502

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details=details)
        self.operation = operation
        self.status_code = status_code
        if operation:
            self.details.setdefault("operation", operation)
        if status_code is not None:
            self.details.setdefault("status_code", status_code)


class StaleResponseError(DomainError):
    """A fetch resolved after its selection stopped being current"""
    error_code = "STALE_RESPONSE"
    http_status = 409


# Not Found Errors
class NotFoundError(DomainError):
    """Resource not found"""
    error_code = "NOT_FOUND"
    http_status = 404


class TicketNotFoundError(NotFoundError):
    """Ticket is not in any loaded list"""
    error_code = "TICKET_NOT_FOUND"


class BlobNotFoundError(NotFoundError):
    """Local blob handle unknown or already released"""
    error_code = "BLOB_NOT_FOUND"


class WorkspaceNotFoundError(NotFoundError):
    """Agent workspace unknown"""
    error_code = "WORKSPACE_NOT_FOUND"


# Validation Errors
class ValidationError(DomainError):
    """Input validation failed"""
    error_code = "VALIDATION_ERROR"
    http_status = 400


class EmptyReplyError(ValidationError):
    """Reply body is empty"""
    error_code = "EMPTY_REPLY"


class AttachmentTooLargeError(ValidationError):
    """Attachment exceeds max size"""
    error_code = "ATTACHMENT_TOO_LARGE"
    http_status = 413


# State Errors
class InvalidStateError(DomainError):
    """Action not valid for current state"""
    error_code = "INVALID_STATE"
    http_status = 409


class DeskNotSelectedError(InvalidStateError):
    """Action requires a selected desk"""
    error_code = "DESK_NOT_SELECTED"


class NoTicketOpenError(InvalidStateError):
    """Action requires an open conversation"""
    error_code = "NO_TICKET_OPEN"
