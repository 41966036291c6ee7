"""Error taxonomy shared by the lifecycle, conversation and API layers.

Every error carries the HTTP status and machine code the REST layer
reports, so services raise domain errors and never build responses.
"""

from __future__ import annotations

from typing import Any


class RememoryError(Exception):
    """Base class for all expected, caller-visible failures."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or (self.__class__.__doc__ or self.code).strip()

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class PersonaNotFound(RememoryError):
    """Persona not found."""

    status_code = 404
    code = "persona_not_found"


class PersonaAlreadyExists(RememoryError):
    """Persona already exists."""

    status_code = 400
    code = "persona_exists"


class IdentityLocked(RememoryError):
    """Cannot change name or relationship."""

    status_code = 400
    code = "identity_locked"

    def __init__(self, fields: list[str]) -> None:
        super().__init__(f"Cannot change immutable fields: {', '.join(fields)}")
        self.fields = fields

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["fields"] = self.fields
        return data


class PersonaExpired(RememoryError):
    """This persona has reached the end of its session."""

    status_code = 410
    code = "persona_expired"


class ConfirmationMismatch(RememoryError):
    """Confirmation sentence mismatch."""

    status_code = 400
    code = "confirmation_mismatch"


class UpstreamUnavailable(RememoryError):
    """Upstream service unavailable, try again."""

    status_code = 502
    code = "upstream_unavailable"


class EmptyCompletion(UpstreamUnavailable):
    """The language model returned an empty reply."""

    code = "empty_completion"


class ValidationFailed(RememoryError):
    """Request validation failed."""

    status_code = 400
    code = "validation_failed"

    def __init__(self, message: str | None = None, details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.details = details or []

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.details:
            data["details"] = self.details
        return data


class RateLimited(RememoryError):
    """Too many requests. Please slow down."""

    status_code = 429
    code = "rate_limited"


class Unauthorized(RememoryError):
    """Missing or invalid authentication token."""

    status_code = 401
    code = "unauthorized"
