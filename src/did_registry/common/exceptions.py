"""Exception hierarchy for the DID registry."""

from __future__ import annotations

from typing import Any


class RegistryError(Exception):
    """Base exception for all registry errors."""

    http_status: int = 500
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        self.cause = cause

    def __str__(self) -> str:
        if self.details:
            return f"[{self.code}] {self.message} - Details: {self.details}"
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for serialization."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
                "type": self.__class__.__name__,
                "retryable": self.retryable,
            }
        }


# Caller errors
class InvalidInputError(RegistryError):
    """Malformed or missing request fields."""

    http_status = 400


class InvalidClaimsError(InvalidInputError):
    """Credential claims are empty or malformed."""

    pass


class UnknownAttributeError(InvalidInputError):
    """Requested attribute is not part of the subject's credential."""

    def __init__(self, attribute: str, valid_attributes: list[str]) -> None:
        super().__init__(
            f"Invalid attribute: {attribute}",
            details={"attribute": attribute, "validAttributes": list(valid_attributes)},
        )
        self.attribute = attribute
        self.valid_attributes = list(valid_attributes)


class NotFoundError(RegistryError):
    """DID, credential, grant or document is absent."""

    http_status = 404

    def __init__(self, message: str, *, key: str | None = None, **kwargs: Any) -> None:
        details = kwargs.pop("details", None) or {}
        if key is not None:
            details.setdefault("key", key)
        super().__init__(message, details=details, **kwargs)
        self.key = key


class GrantNotFoundError(NotFoundError):
    """No authorization grant exists for the (subject, organization) pair."""

    pass


# Policy denials
class AccessDeniedError(RegistryError):
    """Base class for policy denials."""

    http_status = 403


class NotAuthorizedError(AccessDeniedError):
    """The organization was never granted access (or the grant was revoked)."""

    pass


class AuthorizationExpiredError(AccessDeniedError):
    """The grant exists but its expiry has passed."""

    pass


class AuthenticationRequiredError(RegistryError):
    """The caller did not identify itself."""

    http_status = 401


# Cryptographic failures
class ProofInvalidError(RegistryError):
    """Proof verification failed."""

    http_status = 400


# Infrastructure
class ConflictError(RegistryError):
    """Concurrent write collision on a store key; re-read and retry."""

    http_status = 409
    retryable = True


class StoreUnavailableError(RegistryError):
    """The document store failed or timed out."""

    http_status = 500
    retryable = True


class ConfigurationError(RegistryError):
    """Invalid configuration or failed startup."""

    pass
