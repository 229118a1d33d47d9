"""Append-only audit trail of attribute disclosures."""

from __future__ import annotations

import hashlib
import json
import secrets
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

import structlog

from did_registry.common.decorators import retry_with_backoff
from did_registry.common.exceptions import ConflictError
from did_registry.common.types import (
    DID,
    Clock,
    OrganizationID,
    RequestID,
    format_timestamp,
    truncate_to_millis,
    utc_now,
)
from did_registry.store.backend import DocumentStore

logger = structlog.get_logger()

RECORD_PREFIX = "access:"
APPEND_ATTEMPTS = 5


def new_request_id() -> RequestID:
    return RequestID(f"req-{secrets.token_hex(8)}")


@dataclass(frozen=True)
class AccessAuditRecord:
    """One successful disclosure of a subject's attributes to an organization."""

    sequence: int
    request_id: RequestID
    subject: DID
    organization: OrganizationID
    timestamp: datetime
    attributes: list[str] = field(default_factory=list)

    # Integrity
    previous_hash: str | None = None
    record_hash: str | None = None

    @property
    def key(self) -> str:
        # Zero-padded so store key order is append order.
        return f"{RECORD_PREFIX}{self.sequence:012d}"

    def compute_hash(self) -> str:
        """Compute hash of the record for integrity verification."""
        data = {
            "sequence": self.sequence,
            "requestId": self.request_id,
            "subject": self.subject,
            "organization": self.organization,
            "timestamp": format_timestamp(self.timestamp),
            "attributes": self.attributes,
            "previousHash": self.previous_hash,
        }
        return hashlib.sha256(json.dumps(data, sort_keys=True).encode()).hexdigest()

    def to_document(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "requestId": self.request_id,
            "subject": self.subject,
            "organization": self.organization,
            "timestamp": format_timestamp(self.timestamp),
            "attributes": self.attributes,
            "previousHash": self.previous_hash,
            "recordHash": self.record_hash,
        }

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> AccessAuditRecord:
        return cls(
            sequence=data["sequence"],
            request_id=RequestID(data["requestId"]),
            subject=DID(data["subject"]),
            organization=OrganizationID(data["organization"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            attributes=list(data.get("attributes", [])),
            previous_hash=data.get("previousHash"),
            record_hash=data.get("recordHash"),
        )


class AccessAuditLog:
    """
    Tamper-evident log of every attribute read, chained by hash.

    Records are only ever created. An append that loses the race for the
    next sequence number re-reads the head of the log and tries again.
    Nothing is cached between calls.

    Example:
        ```python
        audit = AccessAuditLog(store)

        record = await audit.append("did:example:abc123", "OrgX", ["name"])
        records = await audit.query(organization_id="OrgX")
        assert await audit.verify_chain() == (True, None)
        ```
    """

    def __init__(self, store: DocumentStore, clock: Clock = utc_now) -> None:
        self.store = store
        self.clock = clock
        self._logger = logger.bind(component="access_audit")

    async def append(
        self,
        subject_did: str,
        organization_id: str,
        attributes: list[str],
        request_id: str | None = None,
    ) -> AccessAuditRecord:
        """
        Append a record for a completed disclosure.

        Args:
            subject_did: Subject whose attributes were read
            organization_id: Reading organization
            attributes: Claim names disclosed
            request_id: Caller-supplied request id; generated when absent

        Returns:
            Stored record

        Raises:
            ConflictError: if every attempt lost the race for the next sequence number
            StoreUnavailableError: if the store failed
        """
        record = await self._append_next(
            DID(subject_did),
            OrganizationID(organization_id),
            sorted(attributes),
            RequestID(request_id) if request_id else new_request_id(),
        )

        self._logger.debug(
            "access_recorded",
            request_id=record.request_id,
            sequence=record.sequence,
            subject=subject_did,
            organization=organization_id,
        )
        return record

    @retry_with_backoff(
        max_attempts=APPEND_ATTEMPTS,
        base_delay=0.01,
        max_delay=0.2,
        exceptions=(ConflictError,),
    )
    async def _append_next(
        self,
        subject: DID,
        organization: OrganizationID,
        attributes: list[str],
        request_id: RequestID,
    ) -> AccessAuditRecord:
        last = await self._last()
        record = AccessAuditRecord(
            sequence=(last.sequence + 1) if last else 1,
            request_id=request_id,
            subject=subject,
            organization=organization,
            timestamp=truncate_to_millis(self.clock()),
            attributes=attributes,
            previous_hash=last.record_hash if last else None,
        )
        record = replace(record, record_hash=record.compute_hash())

        # Creating the key fails if another append already took this sequence.
        await self.store.put(record.key, record.to_document())
        return record

    async def _last(self) -> AccessAuditRecord | None:
        doc = await self.store.last(RECORD_PREFIX)
        return AccessAuditRecord.from_document(doc.body) if doc else None

    async def records(self) -> list[AccessAuditRecord]:
        """All records in append order."""
        return [AccessAuditRecord.from_document(doc.body) for doc in await self.store.list_all(RECORD_PREFIX)]

    async def query(
        self,
        subject_did: str | None = None,
        organization_id: str | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AccessAuditRecord]:
        """
        Query records, newest first.

        Args:
            subject_did: Filter by subject
            organization_id: Filter by organization
            start_time: Filter by start time
            end_time: Filter by end time
            limit: Maximum results
            offset: Skip first N results
        """
        matches = []
        for record in await self.records():
            if subject_did and record.subject != subject_did:
                continue
            if organization_id and record.organization != organization_id:
                continue
            if start_time and record.timestamp < start_time:
                continue
            if end_time and record.timestamp > end_time:
                continue
            matches.append(record)

        matches.reverse()
        return matches[offset:offset + limit]

    async def verify_chain(self) -> tuple[bool, RequestID | None]:
        """
        Verify integrity of the audit chain.

        Returns:
            (is_valid, request id of the first broken record or None)
        """
        previous_hash: str | None = None
        for record in await self.records():
            if record.previous_hash != previous_hash:
                return False, record.request_id
            if record.record_hash != record.compute_hash():
                return False, record.request_id
            previous_hash = record.record_hash
        return True, None
