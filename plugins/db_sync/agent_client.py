"""
Agent Transport

HTTP client used to reach remote database agents. Every call has its own
timeout and retry limit: transient failures (HTTP 500/502/503/504,
connection errors, timeouts) are retried with capped exponential backoff,
everything else is surfaced immediately.
"""

from typing import Any, Callable, Dict, Optional, Tuple
import json
import logging
import time

import httpx
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from db_sync.config import SyncSettings, get_settings
from db_sync.errors import (
    AgentTimeoutError,
    AuthenticationError,
    ConfigurationError,
    ConnectivityError,
    DatabaseError,
    DataError,
    InvalidAgentResponse,
    SyncError,
)

logger = logging.getLogger(__name__)

AUTH_HEADER = "X-Agent-Auth-Key"
AUTH_COOKIE = "authToken"

RETRYABLE_STATUS = {500, 502, 503, 504}

# Agent error codes -> local exception classes
ERROR_CODES = {
    ConfigurationError.error_code: ConfigurationError,
    AuthenticationError.error_code: AuthenticationError,
    ConnectivityError.error_code: ConnectivityError,
    AgentTimeoutError.error_code: AgentTimeoutError,
    DataError.error_code: DataError,
    DatabaseError.error_code: DatabaseError,
}


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, InvalidAgentResponse):
        return False
    return isinstance(exc, (ConnectivityError, AgentTimeoutError))


def error_from_payload(status: int, payload: Dict[str, Any]) -> SyncError:
    """Rebuild the agent's error as a local exception."""
    message = payload.get("message") or f"Agent request failed with HTTP {status}"
    error_class = ERROR_CODES.get(payload.get("error"))
    if error_class is None:
        error_class = ConfigurationError if status == 400 else DatabaseError
    return error_class(message, payload.get("details"))


class AgentTransport:
    """
    Relay JSON requests to database agents.

    Authenticates with the shared secret header when a key is configured and
    falls back to forwarding the caller's session cookie.
    """

    def __init__(
        self,
        settings: Optional[SyncSettings] = None,
        auth_key: Optional[str] = None,
        session_cookie: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings or get_settings()
        self.auth_key = auth_key or self.settings.agent_auth_key
        self.session_cookie = session_cookie if self.settings.allow_cookie_auth else None
        self.client = client or httpx.Client(timeout=self.settings.agent_timeout)
        self._sleep = sleep

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "AgentTransport":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _auth_headers(self, headers: Dict[str, str]) -> Dict[str, str]:
        if any(k.lower() == AUTH_HEADER.lower() for k in headers):
            return {}
        if self.auth_key:
            return {AUTH_HEADER: self.auth_key}
        if self.session_cookie:
            return {"Cookie": f"{AUTH_COOKIE}={self.session_cookie}"}
        raise AuthenticationError("No agent auth key or session cookie available")

    def relay(
        self,
        target_url: str,
        method: str = "POST",
        body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Tuple[int, Dict[str, Any]]:
        """
        Forward one request, retrying transient failures.

        Args:
            target_url: Full agent URL
            method: HTTP method
            body: JSON body
            headers: Extra headers forwarded as-is

        Returns:
            Tuple of (status code, decoded JSON body with a ``_proxy`` block)

        Raises:
            AuthenticationError: No credentials, or the agent answered 401/403
            InvalidAgentResponse: The agent answered with HTML or non-JSON
            AgentTimeoutError: Every attempt timed out
            ConnectivityError: Every attempt failed to connect or got a 5xx
        """
        if not target_url:
            raise ConfigurationError("Target URL is required")

        request_headers = {"Content-Type": "application/json"}
        request_headers.update(headers or {})
        request_headers.update(self._auth_headers(request_headers))

        start_time = time.time()
        attempts = 0

        def attempt() -> Tuple[int, Dict[str, Any]]:
            nonlocal attempts
            attempts += 1
            return self._send(target_url, method.upper(), body, request_headers)

        retrying = Retrying(
            stop=stop_after_attempt(self.settings.agent_max_attempts),
            wait=wait_exponential(
                multiplier=self.settings.agent_backoff_base,
                max=self.settings.agent_backoff_max,
            ),
            retry=retry_if_exception(_is_transient),
            sleep=self._sleep,
            before_sleep=lambda state: logger.warning(
                f"Agent request to {target_url} failed (attempt {state.attempt_number}): "
                f"{state.outcome.exception()}; retrying"
            ),
            reraise=True,
        )
        status, data = retrying(attempt)

        duration = int((time.time() - start_time) * 1000)
        data["_proxy"] = {
            "duration": duration,
            "targetUrl": target_url,
            "status": status,
            "attempts": attempts,
        }
        logger.info(f"Agent {method.upper()} {target_url} -> {status} in {duration}ms ({attempts} attempt(s))")
        return status, data

    def _send(
        self,
        target_url: str,
        method: str,
        body: Optional[Dict[str, Any]],
        headers: Dict[str, str],
    ) -> Tuple[int, Dict[str, Any]]:
        try:
            response = self.client.request(
                method,
                target_url,
                content=json.dumps(body) if body is not None else None,
                headers=headers,
                timeout=self.settings.agent_timeout,
            )
        except httpx.TimeoutException as e:
            raise AgentTimeoutError(
                f"Request timeout: Agent at {target_url} did not respond within "
                f"{self.settings.agent_timeout:g} seconds"
            ) from e
        except httpx.TransportError as e:
            raise ConnectivityError(
                f"Cannot connect to agent at {target_url}. Make sure the agent is running and accessible.",
                str(e),
            ) from e

        if response.status_code in (401, 403):
            raise AuthenticationError(f"Agent at {target_url} rejected the credentials")

        content_type = response.headers.get("content-type", "")
        text = response.text
        stripped = text.lstrip().lower()
        is_html = "text/html" in content_type or stripped.startswith(("<!doctype", "<html"))

        data = None
        if not is_html:
            try:
                data = json.loads(text)
            except ValueError:
                data = None

        if response.status_code in RETRYABLE_STATUS:
            detail = data.get("message") if isinstance(data, dict) else text[:200]
            raise ConnectivityError(f"Agent at {target_url} returned HTTP {response.status_code}", detail)

        if not isinstance(data, dict):
            logger.error(
                f"Agent returned invalid response from {target_url}: status {response.status_code}, "
                f"content-type {content_type!r}, preview {text[:200]!r}"
            )
            if is_html:
                message = (
                    "Agent returned HTML instead of JSON. This usually means the endpoint "
                    "doesn't exist or there's a routing issue."
                )
            else:
                message = f"Agent returned invalid response (not JSON). Status: {response.status_code}"
            raise InvalidAgentResponse(
                message,
                text[:500],
                status=response.status_code,
                content_type=content_type or None,
                is_html=is_html,
            )

        return response.status_code, data

    def post(self, target_url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """
        POST to an agent and return its body, raising the agent's error locally
        when the call did not succeed.
        """
        status, data = self.relay(target_url, "POST", body)
        if status >= 400 or data.get("success") is False:
            raise error_from_payload(status, data)
        return data
