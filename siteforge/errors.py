from __future__ import annotations

from typing import Any, Dict, Optional


class SiteForgeError(Exception):
    """Base failure carrying a short user-facing message and an HTTP status."""

    status_code: int = 500

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def payload(self) -> Dict[str, Any]:
        return {"error": self.message}


class InputError(SiteForgeError):
    status_code = 400


class AuthenticationError(SiteForgeError):
    status_code = 401


class NotFoundError(SiteForgeError):
    status_code = 404


class EditInProgressError(SiteForgeError):
    status_code = 409


class QuotaExceededError(SiteForgeError):
    status_code = 429

    def __init__(self, message: str, *, kind: str, used: int, limit: int, tier: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.used = used
        self.limit = limit
        self.tier = tier

    def payload(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "kind": self.kind,
            "used": self.used,
            "limit": self.limit,
            "remaining": max(0, self.limit - self.used),
            "tier": self.tier,
        }


class EditLimitError(SiteForgeError):
    status_code = 429

    def __init__(self, message: str, *, used: int, limit: int) -> None:
        super().__init__(message)
        self.used = used
        self.limit = limit

    def payload(self) -> Dict[str, Any]:
        return {"error": self.message, "editsUsed": self.used, "editsLimit": self.limit}


class ModelError(SiteForgeError):
    """An upstream language-model call failed (HTTP error, empty content, transport)."""

    status_code = 500

    def __init__(self, message: str, *, upstream_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.upstream_status = upstream_status


class SchemaError(SiteForgeError):
    """Model output could not be coerced into the website schema at all."""


class SemanticValidationError(SiteForgeError):
    """Normalized output violates a content invariant (e.g. no sections)."""


class GenerationExhausted(SiteForgeError):
    def __init__(self, message: str, *, last_error: str, attempts: int) -> None:
        super().__init__(message)
        self.last_error = last_error
        self.attempts = attempts


class ImageGenerationError(SiteForgeError):
    pass


class StaleResultError(SiteForgeError):
    """A result arrived for a generation that has since been replaced."""

    status_code = 409
