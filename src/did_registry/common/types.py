"""Core type definitions for the DID registry."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any, NewType

from pydantic import PlainSerializer

# Primitive Types
DID = NewType("DID", str)
OrganizationID = NewType("OrganizationID", str)
RequestID = NewType("RequestID", str)
Revision = NewType("Revision", str)
JSON = dict[str, Any] | list[Any] | str | int | float | bool | None

Clock = Callable[[], datetime]

CREDENTIALS_CONTEXT = "https://www.w3.org/2018/credentials/v1"
CREDENTIALS_EXAMPLES_CONTEXT = "https://www.w3.org/2018/credentials/examples/v1"
DID_CONTEXT = "https://www.w3.org/ns/did/v1"
ED25519_2020_CONTEXT = "https://w3id.org/security/suites/ed25519-2020/v1"


def utc_now() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(UTC)


def truncate_to_millis(value: datetime) -> datetime:
    """Drop sub-millisecond precision so a value survives a Timestamp round trip."""
    return value.replace(microsecond=value.microsecond - value.microsecond % 1000)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a Z suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


Timestamp = Annotated[datetime, PlainSerializer(format_timestamp, return_type=str)]


class ProofPurpose(StrEnum):
    """Proof purposes, matching DID Document verification relationships."""

    ASSERTION_METHOD = "assertionMethod"
    AUTHENTICATION = "authentication"


class GrantState(StrEnum):
    """Observable states of an authorization grant."""

    ABSENT = "absent"
    ACTIVE = "active"
    EXPIRED = "expired"


class AccessRequestStatus(StrEnum):
    """Lifecycle of an organization's access request."""

    PENDING = "pending"
    APPROVED = "approved"
