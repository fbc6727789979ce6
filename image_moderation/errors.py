from __future__ import annotations

from typing import Optional


class ModerationError(Exception):
    """Base class for expected moderation failures."""


class InputError(ModerationError):
    """
    The image was refused locally, before any external call.

    `reason` is one of: "unsupported_format", "too_large", "too_small".
    """

    def __init__(self, reason: str, detail: str = ""):
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason
        self.detail = detail


class TransientServiceError(ModerationError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PermanentServiceError(ModerationError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AnalysisUnavailable(ModerationError):
    """Vision analysis could not be obtained (retries exhausted, permanent error or no slot in time)."""

    def __init__(self, message: str, cause: Optional[BaseException] = None, attempts: int = 0):
        super().__init__(message)
        self.cause = cause
        self.attempts = attempts


class ImageDecodeError(ModerationError):
    pass
