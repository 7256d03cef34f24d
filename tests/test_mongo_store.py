from types import SimpleNamespace

import pytest
from pymongo import DeleteOne, UpdateOne

from restobot.adapters.mongo_client import MongoTenantStore
from restobot.errors import ExecutionFailure


class FakeCollection:
    def __init__(self) -> None:
        self.documents = {}
        self.queries = []
        self.bulk_calls = []

    def find_one(self, query):
        return dict(self.documents[query["_id"]]) if query["_id"] in self.documents else None

    def find(self, query):
        self.queries.append(query)
        return [
            dict(document)
            for document in self.documents.values()
            if all(document.get(key) == value for key, value in query.items())
        ]

    def insert_one(self, payload):
        self.documents[payload["_id"]] = dict(payload)
        return SimpleNamespace(inserted_id=payload["_id"])

    def update_one(self, query, update, upsert=False):
        document = self.documents.setdefault(query["_id"], {"_id": query["_id"]})
        document.update(update["$set"])

    def bulk_write(self, operations, ordered=True, session=None):
        self.bulk_calls.append((operations, ordered))
        matched = deleted = 0
        for operation in operations:
            doc_id = operation._filter["_id"]
            if doc_id not in self.documents:
                continue
            if isinstance(operation, UpdateOne):
                self.documents[doc_id].update(operation._doc["$set"])
                matched += 1
            elif isinstance(operation, DeleteOne):
                del self.documents[doc_id]
                deleted += 1
        return SimpleNamespace(matched_count=matched, deleted_count=deleted)


class FakeDatabase(dict):
    def __missing__(self, name):
        collection = FakeCollection()
        self[name] = collection
        return collection


@pytest.fixture()
def database():
    return FakeDatabase()


def test_documents_expose_string_ids(database):
    store = MongoTenantStore(database)

    doc_id = store.insert("tables", {"name": "1", "restaurantId": "r1"})

    assert store.get("tables", doc_id) == {"id": doc_id, "name": "1", "restaurantId": "r1"}
    assert "_id" in database["tables"].documents[doc_id]


def test_find_always_filters_by_tenant(database):
    store = MongoTenantStore(database)
    store.insert("tables", {"id": "t1", "name": "1", "restaurantId": "r1"})
    store.insert("tables", {"id": "t9", "name": "1", "restaurantId": "r2"})

    assert [table["id"] for table in store.find("tables", "r1")] == ["t1"]
    assert database["tables"].queries == [{"restaurantId": "r1"}]
    with pytest.raises(ValueError):
        store.find("tables", "")


def test_batches_are_single_ordered_bulk_writes(database):
    store = MongoTenantStore(database)
    store.insert("orders", {"id": "o1", "status": "PREPARING", "restaurantId": "r1"})
    store.insert("orders", {"id": "o2", "status": "PREPARING", "restaurantId": "r1"})

    updated = store.batch_update("orders", {"o1": {"status": "READY"}, "o2": {"status": "READY"}})

    assert updated == 2
    [(operations, ordered)] = database["orders"].bulk_calls
    assert len(operations) == 2 and ordered is True
    assert store.get("orders", "o2")["status"] == "READY"


def test_partial_batch_is_reported(database):
    store = MongoTenantStore(database)
    store.insert("tables", {"id": "t1", "restaurantId": "r1"})

    with pytest.raises(ExecutionFailure):
        store.batch_delete("tables", ["t1", "missing"])


def test_merge_upserts(database):
    store = MongoTenantStore(database)

    store.merge("conversations", "u_r1", {"userId": "u", "restaurantId": "r1"})
    store.merge("conversations", "u_r1", {"context": {"lastTableNumber": "3"}})

    assert store.get("conversations", "u_r1") == {
        "id": "u_r1",
        "userId": "u",
        "restaurantId": "r1",
        "context": {"lastTableNumber": "3"},
    }
