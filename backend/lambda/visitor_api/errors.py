"""errors.py — Caller-facing error taxonomy for the visitor API.

Every class carries the HTTP status and envelope code the route layer
renders it with. ``DependencyFailure`` is only surfaced for failures that
happen before a write (chat completion, pre-write reads); failures after a
successful transition are logged and swallowed by the engine.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

__all__ = [
    "DependencyFailure",
    "Forbidden",
    "GateError",
    "InvalidTransition",
    "NotFound",
    "Unauthorized",
    "ValidationError",
]


class GateError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class Unauthorized(GateError):
    status_code = 401
    code = "UNAUTHORIZED"


class Forbidden(GateError):
    status_code = 403
    code = "FORBIDDEN"


class NotFound(GateError):
    status_code = 404
    code = "NOT_FOUND"


class InvalidTransition(GateError):
    status_code = 400
    code = "INVALID_TRANSITION"

    def __init__(self, message: str, *, current_status: Optional[str] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.current_status = current_status


class ValidationError(GateError):
    status_code = 400
    code = "INVALID_INPUT"


class DependencyFailure(GateError):
    status_code = 502
    code = "UPSTREAM_ERROR"
