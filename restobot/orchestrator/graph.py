from __future__ import annotations

import logging
from dataclasses import fields, is_dataclass
from typing import Any, Dict

from langgraph.graph import END, StateGraph

from restobot.errors import AuthorizationFailure, GenerationFailure, PipelineError, ResolutionFailure
from restobot.orchestrator.intents import Intent
from restobot.orchestrator.state import PipelineState
from restobot.schemas.operation import find_unresolved
from restobot.services.conversation import ConversationStore, context_updates_from
from restobot.services.execution import ExecutionEngine
from restobot.services.generator import OperationGenerator
from restobot.services.intent import IntentClassifier
from restobot.services.resolver import ValueResolver
from restobot.services.synthesis import ResponseSynthesizer, split_result

logger = logging.getLogger(__name__)


class QueryOrchestrator:
    """LangGraph state machine for one natural-language query.

    authorize -> load_context -> classify -> generate -> resolve -> execute
    -> synthesize -> remember. A failed stage jumps straight to synthesize.
    """

    def __init__(
        self,
        engine: ExecutionEngine,
        classifier: IntentClassifier,
        generator: OperationGenerator,
        resolver: ValueResolver,
        synthesizer: ResponseSynthesizer,
        conversations: ConversationStore,
    ) -> None:
        self._engine = engine
        self._classifier = classifier
        self._generator = generator
        self._resolver = resolver
        self._synthesizer = synthesizer
        self._conversations = conversations
        self._graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph[PipelineState]:
        graph: StateGraph[PipelineState] = StateGraph(PipelineState)

        graph.add_node("authorize", self._authorize_node)
        graph.add_node("load_context", self._load_context_node)
        graph.add_node("classify", self._classify_node)
        graph.add_node("generate", self._generate_node)
        graph.add_node("resolve", self._resolve_node)
        graph.add_node("execute", self._execute_node)
        graph.add_node("synthesize", self._synthesize_node)
        graph.add_node("remember", self._remember_node)

        graph.set_entry_point("authorize")

        graph.add_conditional_edges(
            "authorize", self._failure_router, {False: "load_context", True: "synthesize"}
        )
        graph.add_edge("load_context", "classify")
        graph.add_edge("classify", "generate")
        graph.add_conditional_edges("generate", self._failure_router, {False: "resolve", True: "synthesize"})
        graph.add_conditional_edges("resolve", self._failure_router, {False: "execute", True: "synthesize"})
        graph.add_edge("execute", "synthesize")
        graph.add_edge("synthesize", "remember")
        graph.add_edge("remember", END)

        return graph

    def _failure_router(self, state: PipelineState) -> bool:
        return state.failed

    @staticmethod
    def _failure(exc: PipelineError) -> Dict[str, Any]:
        return {"error_code": exc.code, "error_message": exc.message}

    def _authorize_node(self, state: PipelineState) -> Dict[str, Any]:
        try:
            grant = self._engine.resolve_grant(state.user_id, state.restaurant_id)
        except AuthorizationFailure as exc:
            return self._failure(exc)
        return {"grant": grant}

    def _load_context_node(self, state: PipelineState) -> Dict[str, Any]:
        if state.context is not None:
            return {}
        try:
            context = self._conversations.load(state.user_id, state.restaurant_id)
        except Exception:
            logger.exception("Could not load conversation context for restaurant %s", state.restaurant_id)
            context = None
        return {"context": context}

    def _classify_node(self, state: PipelineState) -> Dict[str, Any]:
        return {"intent": self._classifier.classify(state.utterance, state.context)}

    def _generate_node(self, state: PipelineState) -> Dict[str, Any]:
        try:
            generated = self._generator.generate(state.intent, state.utterance, state.restaurant_id, state.context)
        except GenerationFailure as exc:
            logger.info("Generation failed for intent %s: %s", state.intent.value, exc.message)
            return self._failure(exc)
        if not generated.operations:
            return self._failure(GenerationFailure("No operations were generated"))
        return {"operations": generated.operations, "tier": generated.tier}

    def _resolve_node(self, state: PipelineState) -> Dict[str, Any]:
        operations = self._resolver.resolve_operations(state.operations, state.restaurant_id)
        for operation in operations:
            missing = find_unresolved(operation.data) + find_unresolved(operation.filters)
            if missing:
                return {
                    "operations": operations,
                    **self._failure(ResolutionFailure(f"Item not found: {missing[0]}")),
                }
        return {"operations": operations}

    def _execute_node(self, state: PipelineState) -> Dict[str, Any]:
        try:
            result = self._engine.execute(state.operations, state.grant)
        except AuthorizationFailure as exc:
            return self._failure(exc)
        return {"result": result}

    def _synthesize_node(self, state: PipelineState) -> Dict[str, Any]:
        if state.failed:
            return {
                "response": self._synthesizer.synthesize_error(state.error_code, state.error_message),
                "success": False,
            }
        succeeded, _ = split_result(state.operations, state.result)
        return {
            "response": self._synthesizer.synthesize(state.operations, state.result, state.utterance),
            "success": bool(succeeded),
        }

    def _remember_node(self, state: PipelineState) -> Dict[str, Any]:
        if state.grant is None:
            return {}
        try:
            context = self._conversations.record_turn(
                state.user_id,
                state.restaurant_id,
                state.utterance,
                state.response,
                context_updates_from(state.operations, state.result) if state.result else {},
            )
        except Exception:
            logger.exception("Could not record conversation turn for restaurant %s", state.restaurant_id)
            return {}
        return {"context": context}

    def run(self, state: PipelineState) -> PipelineState:
        payload = state.as_payload() if is_dataclass(state) else state
        result = self._graph.invoke(payload)
        if isinstance(result, PipelineState):
            return result
        if isinstance(result, dict):
            intent_value = result.get("intent", Intent.UNKNOWN)
            if not isinstance(intent_value, Intent):
                intent_value = Intent(intent_value)
            known = {item.name for item in fields(PipelineState)}
            values = {key: value for key, value in result.items() if key in known}
            values["intent"] = intent_value
            values["operations"] = list(values.get("operations") or [])
            values["result"] = dict(values.get("result") or {})
            return PipelineState(**values)
        raise TypeError(f"Unsupported state result from graph: {type(result)!r}")
