from __future__ import annotations

from restobot.schemas.operation import OperationDescriptor, OperationKind, find_unresolved, unresolved
from restobot.services.resolver import ValueResolver, resolve

CATALOG = [
    {"id": "m-delhi", "name": "Delhi Burger"},
    {"id": "m-veg", "name": "Veg Burger"},
    {"id": "m-dosa", "name": "Masala Dosa"},
]


def _order(reference: str) -> OperationDescriptor:
    return OperationDescriptor(
        kind=OperationKind.CREATE,
        collection="orders",
        data={"items": [{"menuItemId": unresolved(reference), "menuItemRef": reference, "quantity": 1}]},
    )


def test_partial_reference_resolves_to_catalog_entry():
    assert resolve("del burger", CATALOG) == "m-delhi"
    assert resolve("MASALA DOSA", CATALOG) == "m-dosa"
    assert resolve("extra large masala dosa", CATALOG) == "m-dosa"


def test_first_match_in_catalog_order_wins():
    assert resolve("burger", CATALOG) == "m-delhi"
    assert resolve("burger", list(reversed(CATALOG))) == "m-veg"


def test_unknown_or_blank_reference_does_not_resolve():
    assert resolve("pizza", CATALOG) is None
    assert resolve("   ", CATALOG) is None


def test_resolver_substitutes_tenant_item_ids(store):
    resolver = ValueResolver(store)

    [operation] = resolver.resolve_operations([_order("del burger")], "r1")

    assert operation.data["items"][0]["menuItemId"] == "m-delhi"
    assert find_unresolved(operation.data) == []


def test_unmatched_reference_stays_marked(store):
    resolver = ValueResolver(store)

    [operation] = resolver.resolve_operations([_order("pizza")], "r1")

    assert find_unresolved(operation.data) == ["pizza"]


def test_catalog_is_only_read_when_needed(recording_store):
    resolver = ValueResolver(recording_store)
    plain = OperationDescriptor(kind=OperationKind.READ, collection="tables")

    resolver.resolve_operations([plain], "r1")
    assert recording_store.calls == []

    resolver.resolve_operations([plain, _order("dosa")], "r1")
    assert recording_store.calls == [("find", "menu_items", "r1")]


def test_substring_match_beats_an_earlier_word_match():
    catalog = [
        {"id": "m-garlic", "name": "Chicken Garlic Naan"},
        {"id": "m-naan", "name": "Chicken Naan"},
    ]

    assert resolve("Chicken Naan", catalog) == "m-naan"
    assert resolve("chicken naan", catalog) == "m-naan"
    assert resolve("garlic naan", catalog) == "m-garlic"


def test_every_catalog_name_resolves_to_its_own_id():
    catalog = CATALOG + [
        {"id": "m-garlic", "name": "Chicken Garlic Naan"},
        {"id": "m-naan", "name": "Chicken Naan"},
        {"id": "m-paneer", "name": "Paneer Tikka"},
    ]

    for entry in catalog:
        assert resolve(entry["name"], catalog) == entry["id"]
        assert resolve(entry["name"].upper(), catalog) == entry["id"]
