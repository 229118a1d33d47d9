"""Document store contract and adapters."""

from did_registry.store.backend import (
    BoundedStore,
    Document,
    DocumentStore,
    InMemoryDocumentStore,
)
from did_registry.store.couchdb import CouchDocumentStore

__all__ = [
    "BoundedStore",
    "Document",
    "DocumentStore",
    "InMemoryDocumentStore",
    "CouchDocumentStore",
]
