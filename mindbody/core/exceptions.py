"""
Exception hierarchy for the Mindbody integration.

Provider responses are mapped onto these types by the HTTP client; the token
manager and subscription manager let them propagate to the calling command,
which decides whether to report-and-continue or abort.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

import httpx


class MindbodyError(Exception):
    """Base exception for all Mindbody-related errors."""

    def __init__(
        self,
        message: str = "",
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details or {}


class MindbodyApiError(MindbodyError):
    """The provider answered with a non-2xx response."""

    @property
    def api_error(self) -> Optional[Dict[str, Any]]:
        body = self.details.get("response_body")
        if isinstance(body, dict) and isinstance(body.get("Error"), dict):
            return body["Error"]
        return None

    @classmethod
    def from_response(cls, response: httpx.Response, message: Optional[str] = None) -> "MindbodyApiError":
        try:
            body = response.json()
        except ValueError:
            body = {"raw": response.text}
        api_error = body.get("Error") if isinstance(body, dict) else None
        if message is None:
            if isinstance(api_error, dict):
                message = api_error.get("Message")
            if not message and isinstance(body, dict):
                message = body.get("Message") or body.get("message") or body.get("error")
            if not message or not isinstance(message, str):
                message = f"HTTP {response.status_code}"
        return cls(
            message,
            status_code=response.status_code,
            details={"response_body": body},
        )

    def is_api_error(self, code: str) -> bool:
        return (self.api_error or {}).get("Code") == code

    def is_client_error(self) -> bool:
        return self.status_code is not None and 400 <= self.status_code < 500

    def is_server_error(self) -> bool:
        return self.status_code is not None and self.status_code >= 500

    def is_rate_limit_error(self) -> bool:
        return self.status_code == 429 or self.is_api_error("TooManyRequests")


class NotFoundError(MindbodyApiError):
    """Requested resource does not exist."""


class RateLimitError(MindbodyApiError):
    """API rate limit exceeded."""

    def __init__(self, message: str = "Rate limit exceeded", retry_after: Optional[int] = None, **kwargs: Any):
        kwargs.setdefault("status_code", 429)
        super().__init__(message, **kwargs)
        self.retry_after = retry_after

    @classmethod
    def from_response(cls, response: httpx.Response, message: Optional[str] = None) -> "RateLimitError":
        base = MindbodyApiError.from_response(response, message)
        retry_after: Optional[int] = None
        header = response.headers.get("Retry-After")
        if header:
            try:
                retry_after = int(float(header))
            except ValueError:
                retry_after = None
        return cls(base.message, retry_after=retry_after, status_code=response.status_code, details=base.details)


class AuthErrorKind(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    MISSING_ACCESS_TOKEN = "missing_access_token"
    MISSING_API_KEY = "missing_api_key"
    MISSING_SITE_ID = "missing_site_id"
    INSUFFICIENT_PERMISSIONS = "insufficient_permissions"


class AuthenticationError(MindbodyApiError):
    """Authentication with the Mindbody API failed."""

    def __init__(
        self,
        message: str = "Authentication failed",
        kind: AuthErrorKind = AuthErrorKind.INVALID_CREDENTIALS,
        **kwargs: Any,
    ):
        kwargs.setdefault("status_code", 401)
        super().__init__(message, **kwargs)
        self.kind = kind

    @classmethod
    def invalid_credentials(cls, username: str = "") -> "AuthenticationError":
        message = (
            f"Authentication failed for user: {username}"
            if username
            else "Authentication failed: Invalid credentials"
        )
        return cls(message, AuthErrorKind.INVALID_CREDENTIALS)

    @classmethod
    def missing_access_token(cls) -> "AuthenticationError":
        return cls("No access token received from API", AuthErrorKind.MISSING_ACCESS_TOKEN, status_code=500)

    @classmethod
    def missing_api_key(cls) -> "AuthenticationError":
        return cls("API key is required for authentication", AuthErrorKind.MISSING_API_KEY)

    @classmethod
    def missing_site_id(cls) -> "AuthenticationError":
        return cls("Site ID is required for API requests", AuthErrorKind.MISSING_SITE_ID, status_code=400)

    @classmethod
    def insufficient_permissions(
        cls,
        operation: str = "",
        details: Optional[Dict[str, Any]] = None,
    ) -> "AuthenticationError":
        message = (
            f"Insufficient permissions to perform operation: {operation}"
            if operation
            else "Insufficient permissions for this operation"
        )
        return cls(message, AuthErrorKind.INSUFFICIENT_PERMISSIONS, status_code=403, details=details)


class WebhookError(MindbodyError):
    """General webhook subscription or configuration error."""

    @classmethod
    def invalid_configuration(cls, reason: str = "") -> "WebhookError":
        message = f"Invalid webhook configuration: {reason}" if reason else "Webhook configuration is invalid"
        return cls(message, status_code=500)


class WebhookValidationError(MindbodyError):
    """A stored webhook event no longer passes validation."""

    @classmethod
    def unsupported_event(cls, event_type: str) -> "WebhookValidationError":
        return cls(f"Unsupported webhook event type: {event_type}", status_code=400)
