from __future__ import annotations

import time

from restobot.adapters.llm_client import TimeBoundCompletion
from restobot.orchestrator.graph import QueryOrchestrator
from restobot.orchestrator.intents import Intent
from restobot.orchestrator.state import PipelineState
from restobot.services.conversation import ConversationStore
from restobot.services.execution import ExecutionEngine
from restobot.services.generator import OperationGenerator, QueryGenerator, TemplateExtractor
from restobot.services.intent import IntentClassifier
from restobot.services.resolver import ValueResolver
from restobot.services.snapshot import SchemaSnapshotBuilder
from restobot.services.synthesis import ResponseSynthesizer, error_reply
from tests.fakes import BlockingCompletion, FailingCompletion, ScriptedCompletion


def _build_orchestrator(store, clock, classifier_completion, generation_completion=None):
    generation_completion = generation_completion or FailingCompletion()
    orchestrator = QueryOrchestrator(
        engine=ExecutionEngine(store, clock=clock),
        classifier=IntentClassifier(classifier_completion),
        generator=OperationGenerator(
            TemplateExtractor(),
            QueryGenerator(generation_completion, SchemaSnapshotBuilder(store)),
        ),
        resolver=ValueResolver(store),
        synthesizer=ResponseSynthesizer(),
        conversations=ConversationStore(store, clock=clock),
    )
    return orchestrator


def _ask(orchestrator, utterance, user_id="owner-1", restaurant_id="r1"):
    return orchestrator.run(PipelineState(utterance=utterance, restaurant_id=restaurant_id, user_id=user_id))


def test_revenue_question_is_answered_from_the_template(store, clock):
    orchestrator = _build_orchestrator(store, clock, ScriptedCompletion("REVENUE_QUERY"))

    final_state = _ask(orchestrator, "show today's revenue")

    assert final_state.intent is Intent.REVENUE_QUERY
    assert final_state.tier == "template"
    assert final_state.success is True
    assert "₹750.00" in final_state.response


def test_create_table_updates_store_and_context(store, clock):
    orchestrator = _build_orchestrator(store, clock, ScriptedCompletion("CREATE_TABLE"))

    final_state = _ask(orchestrator, "add table 5 with capacity 6", user_id="staff-1")

    assert final_state.success is True
    [created] = [table for table in store.find("tables", "r1") if table["name"] == "5"]
    assert created["status"] == "AVAILABLE"
    assert final_state.context.last_table_number == "5"


def test_waiter_delete_is_forbidden(store, clock):
    orchestrator = _build_orchestrator(store, clock, ScriptedCompletion("DELETE_TABLE"))

    final_state = _ask(orchestrator, "delete table 2", user_id="waiter-1")

    assert final_state.success is False
    assert final_state.error_code == "FORBIDDEN"
    assert final_state.response == error_reply("FORBIDDEN")
    assert store.get("tables", "t2") is not None


def test_partial_item_name_places_order(store, clock):
    orchestrator = _build_orchestrator(store, clock, ScriptedCompletion("PLACE_ORDER"))

    final_state = _ask(orchestrator, "place order for del burger 2 for table 1")

    assert final_state.success is True
    assert final_state.operations[0].data["items"][0]["menuItemId"] == "m-delhi"
    created = [order for order in store.find("orders", "r1") if order.get("tableNumber") == "1"]
    assert created and created[0]["totalAmount"] == 360


def test_unknown_item_is_reported_and_nothing_is_written(store, clock):
    orchestrator = _build_orchestrator(store, clock, ScriptedCompletion("PLACE_ORDER"))
    before = len(store.find("orders", "r1"))

    final_state = _ask(orchestrator, "place order for pizza for table 1")

    assert final_state.success is False
    assert final_state.error_code == "NOT_FOUND"
    assert "pizza" in final_state.response
    assert len(store.find("orders", "r1")) == before


def test_timeouts_degrade_to_a_generic_reply(store, clock):
    blocking = BlockingCompletion()
    bounded = TimeBoundCompletion(blocking, timeout_seconds=0.05)
    orchestrator = _build_orchestrator(store, clock, bounded, generation_completion=bounded)
    try:
        started = time.monotonic()
        final_state = _ask(orchestrator, "what's going on tonight?")
        elapsed = time.monotonic() - started
    finally:
        blocking.release()

    assert final_state.intent is Intent.UNKNOWN
    assert final_state.success is False
    assert final_state.response == error_reply("GENERATION_FAILED")
    assert elapsed < 2.0


def test_foreign_tenant_is_rejected_before_any_data_access(recording_store, clock):
    classifier_completion = ScriptedCompletion("SHOW_TABLES")
    orchestrator = _build_orchestrator(recording_store, clock, classifier_completion)

    final_state = _ask(orchestrator, "show all tables", user_id="owner-2")

    assert final_state.error_code == "FORBIDDEN"
    assert final_state.success is False
    assert classifier_completion.calls == []
    assert recording_store.data_calls() == []


def test_follow_up_order_reuses_booked_table_and_guest(store, clock):
    orchestrator = _build_orchestrator(
        store, clock, ScriptedCompletion("BOOK_TABLE", "PLACE_ORDER")
    )

    booked = _ask(orchestrator, "book table 1 for Asha", user_id="staff-1")
    ordered = _ask(orchestrator, "order 2 masala dosa", user_id="staff-1")

    assert booked.success is True
    assert ordered.success is True
    order = ordered.operations[0]
    assert order.data["tableNumber"] == "1"
    assert order.data["customer"] == {"name": "Asha"}
    assert order.data["items"][0]["menuItemId"] == "m-dosa"
