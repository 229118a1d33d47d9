"""Document store interface consumed by the registry core."""

from __future__ import annotations

import asyncio
import copy
import hashlib
import json
from abc import ABC, abstractmethod
from collections.abc import Awaitable
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, ConfigDict, Field

from did_registry.common.exceptions import (
    ConflictError,
    NotFoundError,
    StoreUnavailableError,
)
from did_registry.common.types import Revision

logger = structlog.get_logger()

T = TypeVar("T")


class Document(BaseModel):
    """A stored document with its revision token."""

    model_config = ConfigDict(frozen=True)

    key: str
    revision: Revision
    body: dict[str, Any] = Field(default_factory=dict)


class DocumentStore(ABC):
    """
    Abstract base class for document stores.

    Revisions follow optimistic concurrency: a write to an existing key must
    carry the key's current revision, otherwise it fails with ConflictError.

    Implementations include:
    - InMemoryDocumentStore: process-local storage for tests and development
    - CouchDocumentStore: CouchDB over HTTP
    - BoundedStore: timeout wrapper around any other store
    """

    name: str = "store"

    @abstractmethod
    async def get(self, key: str) -> Document:
        """
        Retrieve a document.

        Raises:
            NotFoundError: if the key is absent
        """

    @abstractmethod
    async def put(
        self,
        key: str,
        body: dict[str, Any],
        revision: Revision | None = None,
    ) -> Revision:
        """
        Create or replace a document.

        Args:
            key: Document key
            body: JSON-compatible body
            revision: Current revision when replacing, None when creating

        Returns:
            The new revision

        Raises:
            ConflictError: if the revision does not match
        """

    @abstractmethod
    async def remove(self, key: str, revision: Revision) -> None:
        """
        Delete a document.

        Raises:
            NotFoundError: if the key is absent
            ConflictError: if the revision does not match
        """

    @abstractmethod
    async def list_all(self, prefix: str = "") -> list[Document]:
        """List documents whose key starts with prefix, ordered by key."""

    async def last(self, prefix: str = "") -> Document | None:
        """Document with the greatest key starting with prefix, or None."""
        docs = await self.list_all(prefix)
        return docs[-1] if docs else None

    @abstractmethod
    async def ping(self) -> None:
        """Check connectivity; raise StoreUnavailableError on failure."""


class InMemoryDocumentStore(DocumentStore):
    """In-memory implementation for testing and development."""

    def __init__(self, name: str = "memory") -> None:
        self.name = name
        self._data: dict[str, Document] = {}

    @staticmethod
    def _next_revision(previous: Revision | None, body: dict[str, Any]) -> Revision:
        generation = int(previous.split("-", 1)[0]) + 1 if previous else 1
        digest = hashlib.sha256(
            json.dumps(body, sort_keys=True, default=str).encode()
        ).hexdigest()[:16]
        return Revision(f"{generation}-{digest}")

    async def get(self, key: str) -> Document:
        doc = self._data.get(key)
        if doc is None:
            raise NotFoundError(f"Document {key} not found in {self.name}", key=key)
        return doc.model_copy(update={"body": copy.deepcopy(doc.body)})

    async def put(
        self,
        key: str,
        body: dict[str, Any],
        revision: Revision | None = None,
    ) -> Revision:
        current = self._data.get(key)
        current_revision = current.revision if current else None

        if current_revision != revision:
            raise ConflictError(
                f"Document update conflict on {key}",
                details={"key": key, "expected": current_revision, "given": revision},
            )

        new_revision = self._next_revision(current_revision, body)
        self._data[key] = Document(key=key, revision=new_revision, body=copy.deepcopy(body))
        return new_revision

    async def remove(self, key: str, revision: Revision) -> None:
        current = self._data.get(key)
        if current is None:
            raise NotFoundError(f"Document {key} not found in {self.name}", key=key)
        if current.revision != revision:
            raise ConflictError(
                f"Document delete conflict on {key}",
                details={"key": key, "expected": current.revision, "given": revision},
            )
        del self._data[key]

    async def list_all(self, prefix: str = "") -> list[Document]:
        return [
            doc.model_copy(update={"body": copy.deepcopy(doc.body)})
            for key, doc in sorted(self._data.items())
            if key.startswith(prefix)
        ]

    async def last(self, prefix: str = "") -> Document | None:
        keys = [key for key in self._data if key.startswith(prefix)]
        return await self.get(max(keys)) if keys else None

    async def ping(self) -> None:
        return None


class BoundedStore(DocumentStore):
    """
    Wraps a store so that every call returns or fails within a timeout.

    A timeout surfaces as StoreUnavailableError; every other error from the
    inner store propagates unchanged.
    """

    def __init__(self, inner: DocumentStore, timeout_seconds: float = 5.0) -> None:
        self.inner = inner
        self.name = inner.name
        self.timeout_seconds = timeout_seconds
        self._logger = logger.bind(store=inner.name)

    async def _bounded(self, operation: str, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.timeout_seconds)
        except TimeoutError as e:
            self._logger.error(
                "store_timeout",
                operation=operation,
                timeout_seconds=self.timeout_seconds,
            )
            raise StoreUnavailableError(
                f"Store {self.name} did not answer {operation} within {self.timeout_seconds}s",
                cause=e,
            ) from e

    async def get(self, key: str) -> Document:
        return await self._bounded("get", self.inner.get(key))

    async def put(
        self,
        key: str,
        body: dict[str, Any],
        revision: Revision | None = None,
    ) -> Revision:
        return await self._bounded("put", self.inner.put(key, body, revision))

    async def remove(self, key: str, revision: Revision) -> None:
        await self._bounded("remove", self.inner.remove(key, revision))

    async def list_all(self, prefix: str = "") -> list[Document]:
        return await self._bounded("list_all", self.inner.list_all(prefix))

    async def last(self, prefix: str = "") -> Document | None:
        return await self._bounded("last", self.inner.last(prefix))

    async def ping(self) -> None:
        await self._bounded("ping", self.inner.ping())
