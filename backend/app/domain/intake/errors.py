"""Errors surfaced synchronously to the intake caller."""

from __future__ import annotations

from typing import Any, Dict, Optional

__all__ = [
    "IntakeError",
    "PayloadTooLarge",
    "Unauthorized",
    "UnsupportedMediaType",
]


class IntakeError(Exception):
    """Base class; routers translate these into HTTP errors."""

    status_code = 400
    error_code = "intake_rejected"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class Unauthorized(IntakeError):
    status_code = 401
    error_code = "unauthorized"


class PayloadTooLarge(IntakeError):
    status_code = 413
    error_code = "payload_too_large"


class UnsupportedMediaType(IntakeError):
    status_code = 415
    error_code = "unsupported_media_type"
