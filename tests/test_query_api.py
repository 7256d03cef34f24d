from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from restobot.app.dependencies import get_completion_service, get_store, get_usage_meter
from restobot.app.main import app
from restobot.services.usage import InMemoryTTLStore, UsageMeter
from tests.fakes import ScriptedCompletion


@pytest.fixture()
def completion():
    return ScriptedCompletion(default="UNKNOWN")


@pytest.fixture()
def meter():
    return UsageMeter(InMemoryTTLStore(), daily_limit=3, ip_limit=100)


@pytest.fixture()
def client(store, completion, meter):
    overrides = {
        get_store: lambda: store,
        get_completion_service: lambda: completion,
        get_usage_meter: lambda: meter,
    }
    app.dependency_overrides.update(overrides)
    try:
        yield TestClient(app)
    finally:
        for key in overrides:
            app.dependency_overrides.pop(key, None)


def _query(utterance: str, user_id: str = "owner-1", restaurant_id: str = "r1"):
    return {"utterance": utterance, "restaurantId": restaurant_id, "userId": user_id}


def test_health(client: TestClient):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["templateVersion"]


def test_add_table_through_query(client: TestClient, completion, store):
    completion.responses.extend(["CREATE_TABLE", "Table 5 is ready with capacity 6."])

    response = client.post("/api/v1/query", json=_query("add table 5 with capacity 6", user_id="staff-1"))
    data = response.json()

    assert response.status_code == 200
    assert data["success"] is True
    assert data["data"]["intent"] == "CREATE_TABLE"
    assert data["data"]["operations"][0]["data"] == {"name": "5", "capacity": 6}
    assert "Table 5" in data["response"]
    assert any(table["name"] == "5" for table in store.find("tables", "r1"))


def test_forbidden_delete_is_a_soft_failure(client: TestClient, completion, store):
    completion.responses.append("DELETE_TABLE")

    response = client.post("/api/v1/query", json=_query("delete table 2", user_id="waiter-1"))
    data = response.json()

    assert response.status_code == 200
    assert data["success"] is False
    assert data["data"]["error"] == "FORBIDDEN"
    assert store.get("tables", "t2") is not None


def test_unrelated_restaurant_gets_no_operations_echoed(client: TestClient, completion):
    response = client.post("/api/v1/query", json=_query("show all tables", user_id="owner-2"))
    data = response.json()

    assert data["success"] is False
    assert "operations" not in data["data"]
    assert completion.calls == []


def test_metering_denial_short_circuits(client: TestClient, completion):
    for _ in range(3):
        client.post("/api/v1/query", json=_query("hello"))
    calls_before = len(completion.calls)

    response = client.post("/api/v1/query", json=_query("hello"))
    data = response.json()

    assert data["success"] is False
    assert data["data"] == {"error": "RATE_LIMITED"}
    assert len(completion.calls) == calls_before


def test_structured_operations_share_the_access_checks(client: TestClient, store):
    payload = {
        "restaurantId": "r1",
        "userId": "waiter-1",
        "operations": [{"kind": "delete", "collection": "tables", "filters": {"name": "2"}}],
    }

    response = client.post("/api/v1/operations", json=payload)

    assert response.status_code == 403
    assert store.get("tables", "t2") is not None


def test_structured_read(client: TestClient):
    payload = {
        "restaurantId": "r1",
        "userId": "waiter-1",
        "operations": [
            {"kind": "read", "collection": "orders", "aggregation": "groupBy", "fields": ["status"]},
            {"kind": "read", "collection": "tables", "aggregation": "count"},
        ],
    }

    response = client.post("/api/v1/operations", json=payload)
    data = response.json()

    assert response.status_code == 200
    assert data["success"] is True
    assert data["results"]["orders"]["grouped"] == {"COMPLETED": 2, "PREPARING": 1}
    assert data["results"]["tables"] == {"count": 2}


def test_structured_request_rejects_unknown_collections(client: TestClient):
    payload = {
        "restaurantId": "r1",
        "userId": "owner-1",
        "operations": [{"kind": "read", "collection": "restaurants"}],
    }

    assert client.post("/api/v1/operations", json=payload).status_code == 422


def test_permissions_for_member(client: TestClient):
    response = client.get("/api/v1/permissions", params={"userId": "waiter-1", "restaurantId": "r1"})
    data = response.json()

    assert response.status_code == 200
    assert data["role"] == "WAITER"
    assert data["canRead"] is True
    assert data["canWrite"] is False
    assert data["canDelete"] is False


def test_permissions_without_grant(client: TestClient):
    response = client.get("/api/v1/permissions", params={"userId": "owner-2", "restaurantId": "r1"})

    assert response.status_code == 403


def test_conversation_is_recorded_per_user(client: TestClient, completion):
    completion.responses.append("CREATE_TABLE")
    client.post("/api/v1/query", json=_query("add table 7", user_id="staff-1"))

    response = client.get("/api/v1/conversations/r1", params={"userId": "staff-1"})
    data = response.json()

    assert response.status_code == 200
    assert data["lastTableNumber"] == "7"
    assert data["messages"][0]["content"] == "add table 7"
    other = client.get("/api/v1/conversations/r1", params={"userId": "waiter-1"}).json()
    assert other["messages"] == []
