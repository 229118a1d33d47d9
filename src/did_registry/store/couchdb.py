"""CouchDB-backed document store."""

from __future__ import annotations

import json
from typing import Any
from urllib.parse import quote

import httpx
import structlog

from did_registry.common.decorators import retry_with_backoff
from did_registry.common.exceptions import (
    ConflictError,
    NotFoundError,
    StoreUnavailableError,
)
from did_registry.common.types import Revision
from did_registry.store.backend import Document, DocumentStore

logger = structlog.get_logger()


class CouchDocumentStore(DocumentStore):
    """
    Document store backed by one CouchDB database.

    CouchDB's own ``_rev`` tokens are used as revisions, so the conflict
    semantics are the server's. Transport failures and 5xx answers are
    retried with backoff and then surface as StoreUnavailableError;
    404 and 409 are never retried.

    Example:
        ```python
        store = CouchDocumentStore(
            base_url="http://localhost:5984",
            database="did_db",
            auth=("admin", "adminpw"),
        )
        await store.ping()
        rev = await store.put("did:example:abc", {"didDocument": {...}})
        ```
    """

    def __init__(
        self,
        base_url: str,
        database: str,
        auth: tuple[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 5.0,
        retry_attempts: int = 3,
    ) -> None:
        self.name = database
        self.database = database
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            auth=auth,
            timeout=timeout_seconds,
        )
        self._send = retry_with_backoff(
            max_attempts=retry_attempts,
            exceptions=(StoreUnavailableError,),
        )(self._send_once)
        self._logger = logger.bind(store=database)

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this store created it."""
        if self._owns_client:
            await self._client.aclose()

    def _doc_path(self, key: str) -> str:
        return f"/{self.database}/{quote(key, safe='')}"

    async def _send_once(
        self,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            self._logger.warning("couchdb_transport_error", method=method, error=str(e))
            raise StoreUnavailableError(
                f"CouchDB {self.database} unreachable: {e}",
                cause=e,
            ) from e

        if response.status_code >= 500:
            raise StoreUnavailableError(
                f"CouchDB {self.database} answered {response.status_code}",
                details={"status": response.status_code},
            )
        return response

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.is_success:
            return
        raise StoreUnavailableError(
            f"CouchDB {self.database} rejected {response.request.method} "
            f"with {response.status_code}",
            details={"status": response.status_code, "body": response.text[:200]},
        )

    @staticmethod
    def _strip(raw: dict[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in raw.items() if not k.startswith("_")}

    async def get(self, key: str) -> Document:
        response = await self._send("GET", self._doc_path(key))
        if response.status_code == 404:
            raise NotFoundError(f"Document {key} not found in {self.database}", key=key)
        self._raise_for_status(response)

        raw = response.json()
        return Document(key=raw["_id"], revision=Revision(raw["_rev"]), body=self._strip(raw))

    async def put(
        self,
        key: str,
        body: dict[str, Any],
        revision: Revision | None = None,
    ) -> Revision:
        payload = dict(body)
        if revision is not None:
            payload["_rev"] = revision

        response = await self._send("PUT", self._doc_path(key), json=payload)
        if response.status_code == 409:
            raise ConflictError(
                f"Document update conflict on {key}",
                details={"key": key, "given": revision},
            )
        self._raise_for_status(response)
        return Revision(response.json()["rev"])

    async def remove(self, key: str, revision: Revision) -> None:
        response = await self._send("DELETE", self._doc_path(key), params={"rev": revision})
        if response.status_code == 404:
            raise NotFoundError(f"Document {key} not found in {self.database}", key=key)
        if response.status_code == 409:
            raise ConflictError(
                f"Document delete conflict on {key}",
                details={"key": key, "given": revision},
            )
        self._raise_for_status(response)

    async def list_all(self, prefix: str = "") -> list[Document]:
        params: dict[str, str] = {"include_docs": "true"}
        if prefix:
            params["startkey"] = json.dumps(prefix)
            params["endkey"] = json.dumps(prefix + "\ufff0")

        response = await self._send("GET", f"/{self.database}/_all_docs", params=params)
        self._raise_for_status(response)

        documents = []
        for row in response.json().get("rows", []):
            raw = row.get("doc")
            if not raw or row["id"].startswith("_design/"):
                continue
            documents.append(
                Document(key=raw["_id"], revision=Revision(raw["_rev"]), body=self._strip(raw))
            )
        return documents

    async def last(self, prefix: str = "") -> Document | None:
        if not prefix:
            return await super().last(prefix)

        # Descending ranges run from the high key to the low one.
        params = {
            "include_docs": "true",
            "descending": "true",
            "limit": "1",
            "startkey": json.dumps(prefix + "\ufff0"),
            "endkey": json.dumps(prefix),
        }
        response = await self._send("GET", f"/{self.database}/_all_docs", params=params)
        self._raise_for_status(response)

        rows = response.json().get("rows", [])
        if not rows or not rows[0].get("doc"):
            return None
        raw = rows[0]["doc"]
        return Document(key=raw["_id"], revision=Revision(raw["_rev"]), body=self._strip(raw))

    async def ping(self) -> None:
        response = await self._send("GET", f"/{self.database}")
        if response.status_code == 404:
            raise StoreUnavailableError(f"CouchDB database {self.database} does not exist")
        self._raise_for_status(response)
