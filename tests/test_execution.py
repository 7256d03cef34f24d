from __future__ import annotations

import pytest

from restobot.errors import AuthorizationFailure
from restobot.schemas.operation import Aggregation, OperationDescriptor, OperationKind, unresolved
from restobot.services.execution import ExecutionEngine


def _read(collection, aggregation=None, filters=None, fields=None, name=""):
    return OperationDescriptor(
        kind=OperationKind.READ,
        collection=collection,
        aggregation=aggregation,
        filters=filters or {},
        fields=fields or [],
        name=name,
    )


def _mutation(kind, collection, filters=None, data=None):
    return OperationDescriptor(kind=kind, collection=collection, filters=filters or {}, data=data or {})


@pytest.fixture()
def engine(store, clock):
    return ExecutionEngine(store, clock=clock)


def test_created_table_defaults_to_available(engine, store):
    grant = engine.resolve_grant("staff-1", "r1")

    result = engine.execute([_mutation(OperationKind.CREATE, "tables", data={"name": "5", "capacity": 6})], grant)

    entry = result["tables"]
    assert entry["success"] is True
    created = store.get("tables", entry["id"])
    assert created["status"] == "AVAILABLE"
    assert created["capacity"] == 6
    assert created["restaurantId"] == "r1"
    assert created["createdBy"] == "staff-1"


def test_waiter_cannot_delete_and_nothing_is_touched(recording_store, clock):
    engine = ExecutionEngine(recording_store, clock=clock)
    grant = engine.resolve_grant("waiter-1", "r1")

    with pytest.raises(AuthorizationFailure) as excinfo:
        engine.execute([_mutation(OperationKind.DELETE, "tables", filters={"name": "2"})], grant)

    assert excinfo.value.code == "FORBIDDEN"
    assert recording_store.data_calls() == []
    assert recording_store.get("tables", "t2") is not None


def test_recorded_permissions_narrow_the_role(engine):
    grant = engine.resolve_grant("narrow-manager", "r1")

    with pytest.raises(AuthorizationFailure):
        engine.execute([_mutation(OperationKind.CREATE, "tables", data={"name": "8"})], grant)


def test_one_forbidden_operation_blocks_the_whole_batch(recording_store, clock):
    engine = ExecutionEngine(recording_store, clock=clock)
    grant = engine.resolve_grant("staff-1", "r1")
    batch = [_read("tables"), _mutation(OperationKind.DELETE, "tables", filters={"name": "1"})]

    with pytest.raises(AuthorizationFailure):
        engine.execute(batch, grant)

    assert recording_store.data_calls() == []


def test_grant_lookup_failure_never_reaches_tenant_data(recording_store, clock):
    engine = ExecutionEngine(recording_store, clock=clock)

    with pytest.raises(AuthorizationFailure) as excinfo:
        engine.resolve_grant("owner-2", "r1")

    assert excinfo.value.code == "FORBIDDEN"
    assert recording_store.data_calls() == []


def test_blank_identity_is_unauthenticated(engine):
    with pytest.raises(AuthorizationFailure) as excinfo:
        engine.resolve_grant("", "r1")

    assert excinfo.value.code == "UNAUTHENTICATED"


def test_revenue_sum_is_tenant_scoped(engine):
    grant = engine.resolve_grant("owner-1", "r1")
    revenue = _read("orders", Aggregation.SUM, {"createdAt": "today"}, ["totalAmount"])

    result = engine.execute([revenue], grant)

    assert result["orders"] == {"sum": 750, "count": 2}


def test_count_is_repeatable_and_read_only(recording_store, clock):
    engine = ExecutionEngine(recording_store, clock=clock)
    grant = engine.resolve_grant("waiter-1", "r1")
    count = _read("orders", Aggregation.COUNT)

    first = engine.execute([count], grant)
    second = engine.execute([count], grant)

    assert first == second == {"orders": {"count": 3}}
    assert all(call[0] in ("get", "find") for call in recording_store.calls)


def test_group_by_counts_each_list_element(engine):
    grant = engine.resolve_grant("owner-1", "r1")

    result = engine.execute([_read("orders", Aggregation.GROUP_BY, fields=["items.name"])], grant)

    grouped = result["orders"]["grouped"]
    assert grouped == {"Delhi Burger": 2, "Masala Dosa": 1, "Paneer Tikka": 1}
    assert list(grouped)[0] == "Delhi Burger"


def test_average_of_nothing_is_zero(engine):
    grant = engine.resolve_grant("owner-1", "r1")
    average = _read("orders", Aggregation.AVERAGE, {"status": "REFUNDED"}, ["totalAmount"])

    assert engine.execute([average], grant)["orders"] == {"average": 0, "count": 0}


def test_failed_operation_does_not_stop_siblings(engine):
    grant = engine.resolve_grant("staff-1", "r1")
    batch = [
        _read("tables", fields=["name"]),
        _mutation(OperationKind.UPDATE, "orders", filters={"orderNumber": "ORD-404"}, data={"status": "READY"}),
        _read("orders", Aggregation.COUNT),
    ]

    result = engine.execute(batch, grant)

    assert sorted(item["name"] for item in result["tables"]["items"]) == ["1", "2"]
    assert result["orders"]["error"] == "NOT_FOUND"
    assert result["orders#2"] == {"count": 3}


def test_bulk_deletes_are_rejected(engine, store):
    grant = engine.resolve_grant("manager-1", "r1")
    batch = [
        _mutation(OperationKind.DELETE, "tables", filters={"id": ["t1", "t2"]}),
        _mutation(OperationKind.DELETE, "tables", filters={"capacity": {"gte": 1}}),
    ]

    result = engine.execute(batch, grant)

    assert result["tables"]["error"] == "BAD_USER_INPUT"
    assert result["tables#2"]["error"] == "BAD_USER_INPUT"
    assert store.get("tables", "t1") is not None
    assert store.get("tables", "t2") is not None


def test_manager_deletes_only_own_tenant_table(engine, store):
    grant = engine.resolve_grant("manager-1", "r1")

    result = engine.execute([_mutation(OperationKind.DELETE, "tables", filters={"name": "2"})], grant)

    assert result["tables"]["id"] == "t2"
    assert store.get("tables", "t2") is None
    assert store.get("tables", "t9") is not None


def test_order_is_priced_from_the_menu(engine, store):
    grant = engine.resolve_grant("owner-1", "r1")
    order = _mutation(
        OperationKind.CREATE,
        "orders",
        data={"tableNumber": "1", "items": [{"menuItemId": "m-delhi", "quantity": 2}]},
    )

    entry = engine.execute([order], grant)["orders"]

    stored = store.get("orders", entry["id"])
    assert stored["status"] == "PREPARING"
    assert stored["totalAmount"] == 360
    assert stored["taxAmount"] == pytest.approx(64.8)
    assert stored["finalAmount"] == pytest.approx(424.8)
    assert stored["orderNumber"].startswith("ORD-")
    assert stored["items"][0]["name"] == "Delhi Burger"


def test_unresolved_item_reports_not_found(engine):
    grant = engine.resolve_grant("owner-1", "r1")
    order = _mutation(
        OperationKind.CREATE,
        "orders",
        data={"items": [{"menuItemId": unresolved("pizza"), "menuItemRef": "pizza", "quantity": 1}]},
    )

    entry = engine.execute([order], grant)["orders"]

    assert entry == {"error": "NOT_FOUND", "message": "Item not found: pizza"}


def test_cancelling_an_order_stamps_cancellation(engine, store):
    grant = engine.resolve_grant("staff-1", "r1")
    cancel = _mutation(OperationKind.UPDATE, "orders", filters={"orderNumber": "ORD-1002"}, data={"status": "CANCELLED"})

    entry = engine.execute([cancel], grant)["orders"]

    stored = store.get("orders", "o2")
    assert entry["count"] == 1
    assert stored["status"] == "CANCELLED"
    assert stored["cancelledAt"] is not None
    assert stored["cancellationReason"]
    assert stored["totalAmount"] == 250
    assert stored["updatedBy"] == "staff-1"


def test_duplicate_table_name_conflicts(engine):
    grant = engine.resolve_grant("owner-1", "r1")

    entry = engine.execute([_mutation(OperationKind.CREATE, "tables", data={"name": "1"})], grant)["tables"]

    assert entry["error"] == "CONFLICT"


def test_free_text_is_sanitised(engine, store):
    grant = engine.resolve_grant("owner-1", "r1")

    entry = engine.execute(
        [_mutation(OperationKind.CREATE, "customers", data={"name": "<b>Asha</b>", "phone": "9876543210"})],
        grant,
    )["customers"]

    assert store.get("customers", entry["id"])["name"] == "bAsha/b"
