"""Structured error codes, responses and exceptions for the agent proxy."""

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit


@dataclass
class ProxyError:
    """Structured error response."""
    code: str
    message: str
    suggestion: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        result = {
            "error": self.message,
            "code": self.code,
        }
        if self.suggestion:
            result["suggestion"] = self.suggestion
        return result


# Error codes
class ErrorCodes:
    """Agent proxy error codes."""
    INVALID_REQUEST = "INVALID_REQUEST"
    AGENT_NOT_FOUND = "AGENT_NOT_FOUND"
    LINK_NOT_FOUND = "LINK_NOT_FOUND"
    TOOL_NOT_FOUND = "TOOL_NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    REDIS_UNAVAILABLE = "REDIS_UNAVAILABLE"


def missing_fields(fields: list[str]) -> ProxyError:
    """Create error for required request fields that are absent or empty."""
    return ProxyError(
        code=ErrorCodes.INVALID_REQUEST,
        message=f"Missing required fields: {', '.join(fields)}",
    )


def invalid_request(field_name: str, reason: str) -> ProxyError:
    """Create error for invalid request data."""
    return ProxyError(
        code=ErrorCodes.INVALID_REQUEST,
        message=f"Invalid request: {field_name} - {reason}",
        suggestion="Check the endpoint documentation for required parameters.",
    )


def agent_not_found(agent_id: str) -> ProxyError:
    """Create error for an agent id with no registry record."""
    return ProxyError(
        code=ErrorCodes.AGENT_NOT_FOUND,
        message="Agent not found",
        suggestion=f"No agent is registered with id '{agent_id}'.",
    )


def link_not_found(user_id: str, agent_id: str) -> ProxyError:
    """Create error for a caller that is not connected to the agent."""
    return ProxyError(
        code=ErrorCodes.LINK_NOT_FOUND,
        message="Agent not found or not connected",
        suggestion=f"Connect user '{user_id}' to agent '{agent_id}' before executing tools.",
    )


def tool_not_found(tool_name: str, available: list[str]) -> ProxyError:
    """Create error for a tool the agent does not declare."""
    if available:
        tool_list = ", ".join(available[:5])
        if len(available) > 5:
            tool_list += f" (and {len(available) - 5} more)"
        suggestion = f"Available tools: {tool_list}"
    else:
        suggestion = "This agent declares no tools."

    return ProxyError(
        code=ErrorCodes.TOOL_NOT_FOUND,
        message=f"Tool '{tool_name}' not found in agent capabilities",
        suggestion=suggestion,
    )


def unauthorized(message: str = "Authentication required") -> ProxyError:
    """Create error for missing or invalid authentication."""
    return ProxyError(
        code=ErrorCodes.UNAUTHORIZED,
        message=message,
        suggestion="Provide a valid Authorization: Bearer <token> header.",
    )


def internal_error() -> ProxyError:
    """Create the generic error returned for unexpected failures."""
    return ProxyError(
        code=ErrorCodes.INTERNAL_ERROR,
        message="Internal server error",
    )


def redis_unavailable(redis_url: str, original_error: str = "") -> ProxyError:
    """Error for an unreachable Redis, naming host:port but never credentials."""
    parts = urlsplit(redis_url)
    if parts.scheme in ("redis", "rediss") and parts.hostname:
        where = f"{parts.hostname}:{parts.port or 6379}"
    else:
        where = redis_url

    message = f"Cannot connect to Redis at {where}."
    if original_error:
        message += f" Error: {original_error}"

    return ProxyError(
        code=ErrorCodes.REDIS_UNAVAILABLE,
        message=message,
        suggestion="Start Redis or point REDIS_URL at a reachable instance.",
    )


class RequestError(Exception):
    """Base for errors that map to a client-facing HTTP status."""

    status_code = 500

    def __init__(self, error: ProxyError):
        self.error = error
        super().__init__(error.message)


class ValidationError(RequestError):
    """Caller input is malformed or incomplete."""

    status_code = 400

    def __init__(self, error: ProxyError, fields: Optional[list[str]] = None):
        super().__init__(error)
        self.fields = fields or []


class NotFoundError(RequestError):
    """Agent, link or tool does not exist for this caller."""

    status_code = 404


class StoreError(Exception):
    """Raised when the record store cannot complete a read or write."""


class StoreConnectionError(StoreError):
    """Redis could not be reached at startup."""

    def __init__(self, redis_url: str, original_error: Exception):
        self.error = redis_unavailable(redis_url, str(original_error))
        self.redis_url = redis_url
        self.original_error = original_error
        super().__init__(" ".join([self.error.message, self.error.suggestion]))
