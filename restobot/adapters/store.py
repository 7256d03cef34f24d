from __future__ import annotations

import copy
import threading
import uuid
from collections import defaultdict
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol

TENANT_FIELD = "restaurantId"

Document = Dict[str, Any]


class TenantStore(Protocol):
    """Document store contract used by the pipeline.

    ``find`` is the only way to list documents and always takes a tenant id,
    so every partition read is filtered by exactly one restaurant.
    """

    def get(self, collection: str, doc_id: str) -> Optional[Document]:  # pragma: no cover - interface
        ...

    def find(self, collection: str, restaurant_id: str) -> List[Document]:  # pragma: no cover - interface
        ...

    def insert(self, collection: str, document: Document) -> str:  # pragma: no cover - interface
        ...

    def batch_update(self, collection: str, patches: Mapping[str, Document]) -> int:  # pragma: no cover
        ...

    def batch_delete(self, collection: str, doc_ids: Iterable[str]) -> int:  # pragma: no cover - interface
        ...

    def merge(self, collection: str, doc_id: str, patch: Document) -> None:  # pragma: no cover - interface
        ...


def require_tenant(restaurant_id: str) -> str:
    if not restaurant_id or not str(restaurant_id).strip():
        raise ValueError("A restaurant id is required for tenant-scoped reads")
    return str(restaurant_id)


class InMemoryTenantStore:
    """Process-local store used for development and tests.

    Batches validate every target before mutating anything, which gives the
    same all-or-nothing behaviour as a store transaction.
    """

    def __init__(self, id_factory: Callable[[], str] | None = None) -> None:
        self._collections: Dict[str, Dict[str, Document]] = defaultdict(dict)
        self._lock = threading.RLock()
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        with self._lock:
            document = self._collections[collection].get(doc_id)
            return copy.deepcopy(document) if document is not None else None

    def find(self, collection: str, restaurant_id: str) -> List[Document]:
        tenant = require_tenant(restaurant_id)
        with self._lock:
            return [
                copy.deepcopy(document)
                for document in self._collections[collection].values()
                if document.get(TENANT_FIELD) == tenant
            ]

    def insert(self, collection: str, document: Document) -> str:
        with self._lock:
            doc_id = str(document.get("id") or self._id_factory())
            if doc_id in self._collections[collection]:
                raise KeyError(f"Document {doc_id} already exists in {collection}")
            stored = copy.deepcopy(dict(document))
            stored["id"] = doc_id
            self._collections[collection][doc_id] = stored
            return doc_id

    def batch_update(self, collection: str, patches: Mapping[str, Document]) -> int:
        with self._lock:
            documents = self._collections[collection]
            missing = [doc_id for doc_id in patches if doc_id not in documents]
            if missing:
                raise KeyError(f"Documents not found in {collection}: {', '.join(missing)}")
            for doc_id, patch in patches.items():
                documents[doc_id].update(copy.deepcopy(dict(patch)))
                documents[doc_id]["id"] = doc_id
            return len(patches)

    def batch_delete(self, collection: str, doc_ids: Iterable[str]) -> int:
        ids = list(doc_ids)
        with self._lock:
            documents = self._collections[collection]
            missing = [doc_id for doc_id in ids if doc_id not in documents]
            if missing:
                raise KeyError(f"Documents not found in {collection}: {', '.join(missing)}")
            for doc_id in ids:
                del documents[doc_id]
            return len(ids)

    def merge(self, collection: str, doc_id: str, patch: Document) -> None:
        with self._lock:
            existing = self._collections[collection].setdefault(doc_id, {"id": doc_id})
            existing.update(copy.deepcopy(dict(patch)))
            existing["id"] = doc_id
