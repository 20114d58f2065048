"""
Document store adapters and the last-known-good snapshot cache.
"""

from typing import Optional

from hostmetrics.config import Settings, get_settings

from .base import DocumentStore, QueryError, Subscription
from .memory_store import InMemoryDocumentStore
from .retry import RetryPolicy
from .snapshot_cache import SnapshotCache, SnapshotCacheError


def get_document_store(settings: Optional[Settings] = None) -> DocumentStore:
    """
    Build the document store selected by settings.store_backend.

    Args:
        settings: Application settings (defaults to get_settings())

    Returns:
        Configured DocumentStore
    """
    settings = settings or get_settings()
    if settings.store_backend == "firestore":
        from .firestore_store import FirestoreDocumentStore

        return FirestoreDocumentStore.from_settings(settings)

    return InMemoryDocumentStore(
        retry_policy=RetryPolicy.from_settings(settings),
        enforce_indexes=settings.enforce_indexes,
    )


__all__ = [
    "DocumentStore",
    "InMemoryDocumentStore",
    "QueryError",
    "RetryPolicy",
    "SnapshotCache",
    "SnapshotCacheError",
    "Subscription",
    "get_document_store",
]
