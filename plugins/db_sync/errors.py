"""
Sync Engine Error Taxonomy

Every failure raised by the engine derives from SyncError so callers can tell
engine failures apart from programming errors. The HTTP layer maps each class
to a status code via ``status_code``.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for all synchronization failures."""

    status_code = 500
    error_code = "SYNC_ERROR"

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict:
        payload = {
            "success": False,
            "message": self.message,
            "error": self.error_code,
        }
        if self.detail:
            payload["details"] = self.detail
        return payload


class ConfigurationError(SyncError):
    """Missing or invalid request fields. Never retried."""

    status_code = 400
    error_code = "CONFIGURATION_ERROR"


class AuthenticationError(SyncError):
    """Missing or invalid shared secret / session."""

    status_code = 401
    error_code = "AUTHENTICATION_ERROR"


class ConnectivityError(SyncError):
    """Source, target or agent could not be reached."""

    status_code = 503
    error_code = "NETWORK_ERROR"


class InvalidAgentResponse(ConnectivityError):
    """
    Agent answered with something that is not structured JSON.

    Usually an HTML error page, which means the agent URL points at the wrong
    service or route rather than at a crashed agent.
    """

    status_code = 502
    error_code = "INVALID_RESPONSE"

    def __init__(
        self,
        message: str,
        detail: Optional[str] = None,
        status: Optional[int] = None,
        content_type: Optional[str] = None,
        is_html: bool = False,
    ):
        super().__init__(message, detail)
        self.status = status
        self.content_type = content_type
        self.is_html = is_html

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload.update({
            "statusCode": self.status,
            "contentType": self.content_type,
            "isHtml": self.is_html,
        })
        return payload


class AgentTimeoutError(SyncError, TimeoutError):
    """Agent call timed out on every attempt."""

    status_code = 504
    error_code = "TIMEOUT"


class DataError(SyncError):
    """Malformed row data, failed conversion, or column missing in target."""

    error_code = "DATA_ERROR"


class DatabaseError(SyncError):
    """Driver-level failure, including constraint violations."""

    error_code = "DATABASE_ERROR"
