"""
Rejection taxonomy for the contact intake pipeline.

Rejections are HTTPExceptions so FastAPI treats them as HTTP outcomes; the
app registers one handler that renders them as
``{"success": false, "message": ..., "errors": ..., "retryAfter": ...}``.
Only structural reasons (field errors, file checks) are ever put in ``errors``.
"""
from typing import Any, Dict, List, Optional

from fastapi import HTTPException


class SubmissionRejected(HTTPException):
    """Base class for every client-visible rejection."""

    default_status_code = 400

    def __init__(
        self,
        message: str,
        errors: Optional[List[Any]] = None,
        status_code: Optional[int] = None,
        retry_after: Optional[int] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(
            status_code=status_code or self.default_status_code,
            detail=message,
            headers=headers,
        )
        self.message = message
        self.errors = errors
        self.retry_after = retry_after

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "message": self.message}
        if self.errors:
            body["errors"] = self.errors
        if self.retry_after is not None:
            body["retryAfter"] = self.retry_after
        return body


class ValidationFailed(SubmissionRejected):
    """Missing or malformed required field."""


class AbuseDetected(SubmissionRejected):
    """Honeypot, spam, rate or verification abuse. Message stays generic."""


class SecurityRejected(SubmissionRejected):
    """An uploaded file failed a security check; errors are itemized per file."""


class TransientDeliveryFailure(Exception):
    """A transport could not deliver a message. Never surfaced to the client."""

    def __init__(self, transport: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.transport = transport
        self.status_code = status_code

    @property
    def is_auth_failure(self) -> bool:
        return self.status_code in (401, 403)

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"{self.transport} ({self.status_code}): {self.args[0]}"
        return f"{self.transport}: {self.args[0]}"
