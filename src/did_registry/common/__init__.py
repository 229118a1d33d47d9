"""Common utilities, types, and base classes."""

from did_registry.common.types import (
    DID,
    JSON,
    Clock,
    OrganizationID,
    ProofPurpose,
    RequestID,
    Revision,
    utc_now,
)
from did_registry.common.exceptions import (
    AccessDeniedError,
    AuthorizationExpiredError,
    ConfigurationError,
    ConflictError,
    GrantNotFoundError,
    InvalidClaimsError,
    InvalidInputError,
    NotAuthorizedError,
    NotFoundError,
    ProofInvalidError,
    RegistryError,
    StoreUnavailableError,
    UnknownAttributeError,
)
from did_registry.common.decorators import retry_with_backoff, trace_span

__all__ = [
    "DID",
    "JSON",
    "Clock",
    "OrganizationID",
    "ProofPurpose",
    "RequestID",
    "Revision",
    "utc_now",
    "AccessDeniedError",
    "AuthorizationExpiredError",
    "ConfigurationError",
    "ConflictError",
    "GrantNotFoundError",
    "InvalidClaimsError",
    "InvalidInputError",
    "NotAuthorizedError",
    "NotFoundError",
    "ProofInvalidError",
    "RegistryError",
    "StoreUnavailableError",
    "UnknownAttributeError",
    "retry_with_backoff",
    "trace_span",
]
