from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pymongo import DeleteOne, MongoClient, UpdateOne

from restobot.adapters.store import TENANT_FIELD, Document, require_tenant
from restobot.errors import ExecutionFailure


@dataclass
class MongoClientFactory:
    uri: str
    db_name: str
    _client: Optional[MongoClient] = field(default=None, init=False, repr=False)

    def get_client(self) -> MongoClient:
        if self._client is None:
            self._client = MongoClient(self.uri)
        return self._client

    def get_database(self):
        return self.get_client()[self.db_name]


def _to_document(raw: Optional[Dict[str, Any]]) -> Optional[Document]:
    if raw is None:
        return None
    document = dict(raw)
    document["id"] = str(document.pop("_id"))
    return document


class MongoTenantStore:
    """MongoDB implementation of the tenant store.

    Batches run as ordered ``bulk_write`` calls; with ``use_transactions``
    they are wrapped in a session transaction (requires a replica set).
    """

    def __init__(self, database, client: Optional[MongoClient] = None, use_transactions: bool = False) -> None:
        self._database = database
        self._client = client
        self._use_transactions = use_transactions and client is not None

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        return _to_document(self._database[collection].find_one({"_id": doc_id}))

    def find(self, collection: str, restaurant_id: str) -> List[Document]:
        tenant = require_tenant(restaurant_id)
        cursor = self._database[collection].find({TENANT_FIELD: tenant})
        return [_to_document(raw) for raw in cursor]

    def insert(self, collection: str, document: Document) -> str:
        payload = dict(document)
        doc_id = str(payload.pop("id", None) or uuid.uuid4().hex)
        payload["_id"] = doc_id
        self._database[collection].insert_one(payload)
        return doc_id

    def batch_update(self, collection: str, patches: Mapping[str, Document]) -> int:
        operations = [UpdateOne({"_id": doc_id}, {"$set": dict(patch)}) for doc_id, patch in patches.items()]
        return self._bulk(collection, operations)

    def batch_delete(self, collection: str, doc_ids: Iterable[str]) -> int:
        operations = [DeleteOne({"_id": doc_id}) for doc_id in doc_ids]
        return self._bulk(collection, operations)

    def merge(self, collection: str, doc_id: str, patch: Document) -> None:
        self._database[collection].update_one({"_id": doc_id}, {"$set": dict(patch)}, upsert=True)

    def _bulk(self, collection: str, operations: List[Any]) -> int:
        if not operations:
            return 0
        target = self._database[collection]

        def _write(session=None) -> int:
            result = target.bulk_write(operations, ordered=True, session=session)
            touched = result.matched_count + result.deleted_count
            if touched != len(operations):
                raise ExecutionFailure(f"Batch on {collection} touched {touched} of {len(operations)} documents")
            return touched

        if not self._use_transactions:
            return _write()
        with self._client.start_session() as session:
            return session.with_transaction(lambda active: _write(active))
