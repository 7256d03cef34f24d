from __future__ import annotations

from restobot.schemas.operation import Aggregation, OperationDescriptor, OperationKind
from restobot.services.synthesis import OfflineResponseGenerator, ResponseSynthesizer, error_reply
from tests.fakes import FailingCompletion, ScriptedCompletion

REVENUE = OperationDescriptor(
    name="revenue",
    kind=OperationKind.READ,
    collection="orders",
    aggregation=Aggregation.SUM,
    filters={"createdAt": "today"},
    fields=["totalAmount"],
)
CREATE_TABLE = OperationDescriptor(kind=OperationKind.CREATE, collection="tables", data={"name": "5"})


def test_offline_revenue_reply_contains_the_sum():
    offline = OfflineResponseGenerator("₹")

    reply = offline.render([REVENUE], {"orders": {"sum": 750.0, "count": 2}})

    assert reply == "Today's revenue is ₹750.00 from 2 order(s)."


def test_offline_reply_for_created_table():
    offline = OfflineResponseGenerator()
    result = {"tables": {"success": True, "id": "t5", "details": {"name": "5", "capacity": 6}}}

    assert offline.render([CREATE_TABLE], result).startswith("Table 5 has been added with capacity 6")


def test_unmatched_operation_gets_generic_reply():
    offline = OfflineResponseGenerator()
    staff = OperationDescriptor(kind=OperationKind.READ, collection="staff", name="onShift")

    reply = offline.render([staff], {"staff": {"items": [{"id": "s1"}, {"id": "s2"}]}})

    assert reply == "Request executed successfully, 2 result(s)."


def test_error_entries_use_fixed_phrasing():
    offline = OfflineResponseGenerator()
    result = {"tables": {"error": "FORBIDDEN", "message": "Insufficient permissions for deleteTable in r2"}}

    reply = offline.render([CREATE_TABLE], result)

    assert "permission" in reply
    assert "r2" not in reply


def test_partial_failure_is_mentioned():
    offline = OfflineResponseGenerator()
    count = OperationDescriptor(name="orderCount", kind=OperationKind.READ, collection="orders", aggregation=Aggregation.COUNT)
    result = {"orders": {"count": 4}, "tables": {"error": "NOT_FOUND", "message": "No matching table found"}}

    reply = offline.render([count, CREATE_TABLE], result)

    assert reply.startswith("You have 4 order(s)")
    assert "1 operation(s) could not be completed" in reply


def test_item_not_found_names_the_reference():
    assert '"pizza"' in error_reply("NOT_FOUND", "Item not found: pizza")
    assert error_reply("SOMETHING_ODD", "stack trace here") == error_reply(None)


def test_llm_rewrites_the_draft():
    completion = ScriptedCompletion("You made ₹750.00 today across 2 orders!")
    synthesizer = ResponseSynthesizer(completion=completion)

    reply = synthesizer.synthesize([REVENUE], {"orders": {"sum": 750.0, "count": 2}}, "show today's revenue")

    assert reply == "You made ₹750.00 today across 2 orders!"
    assert completion.calls[0]["max_tokens"] == 150
    assert "Today's revenue is ₹750.00" in completion.calls[0]["prompt"]


def test_llm_failure_falls_back_to_offline_reply():
    synthesizer = ResponseSynthesizer(completion=FailingCompletion())

    reply = synthesizer.synthesize([REVENUE], {"orders": {"sum": 750.0, "count": 2}}, "show today's revenue")

    assert reply == "Today's revenue is ₹750.00 from 2 order(s)."


def test_empty_llm_output_falls_back_to_offline_reply():
    synthesizer = ResponseSynthesizer(completion=ScriptedCompletion("   "))

    reply = synthesizer.synthesize([REVENUE], {"orders": {"sum": 10, "count": 1}}, "revenue")

    assert reply == "Today's revenue is ₹10.00 from 1 order(s)."


def test_errors_never_reach_the_llm():
    completion = ScriptedCompletion("Something creative")
    synthesizer = ResponseSynthesizer(completion=completion)

    reply = synthesizer.synthesize([CREATE_TABLE], {"tables": {"error": "FORBIDDEN", "message": "x"}}, "add table")

    assert completion.calls == []
    assert reply == error_reply("FORBIDDEN")


def test_order_listing_tolerates_non_numeric_totals():
    offline = OfflineResponseGenerator("₹")
    listing = OperationDescriptor(name="orders", kind=OperationKind.READ, collection="orders")
    orders = [
        {"id": "o1", "totalAmount": "250"},
        {"id": "o2", "totalAmount": "n/a"},
        {"id": "o3", "totalAmount": None},
    ]

    reply = offline.render([listing], {"orders": {"items": orders}})

    assert reply == "Found 3 order(s). Total value: ₹250.00."


def test_synthesizer_survives_malformed_stored_amounts():
    synthesizer = ResponseSynthesizer()
    listing = OperationDescriptor(name="orders", kind=OperationKind.READ, collection="orders")

    reply = synthesizer.synthesize([listing], {"orders": {"items": [{"id": "o1", "totalAmount": "abc"}]}}, "show orders")

    assert "₹0.00" in reply
