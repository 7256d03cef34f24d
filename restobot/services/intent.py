from __future__ import annotations

import logging
from typing import Optional

from restobot.adapters.llm_client import CompletionService
from restobot.orchestrator.intents import INTENT_CATALOG, Intent
from restobot.schemas.context import ConversationContext

logger = logging.getLogger(__name__)


class IntentClassifier:
    """Coarse LLM routing of an utterance onto the closed intent set.

    Never raises: service failures and out-of-set labels both become UNKNOWN.
    """

    def __init__(self, completion: CompletionService, max_tokens: int = 20, temperature: float = 0.1) -> None:
        self._completion = completion
        self._max_tokens = max_tokens
        self._temperature = temperature

    def classify(self, utterance: str, context: Optional[ConversationContext] = None) -> Intent:
        if not utterance or not utterance.strip():
            return Intent.UNKNOWN
        prompt = self.build_prompt(utterance, context)
        try:
            text = self._completion.complete(prompt, self._max_tokens, self._temperature)
        except Exception as exc:
            logger.warning("Intent classification failed (%s: %s); routing as UNKNOWN", type(exc).__name__, exc)
            return Intent.UNKNOWN
        intent = Intent.from_label(text)
        if intent is Intent.UNKNOWN:
            logger.info("Classifier returned out-of-set label %r", (text or "")[:40])
        return intent

    def build_prompt(self, utterance: str, context: Optional[ConversationContext] = None) -> str:
        labels = "\n".join(
            f"- {intent.value}: {', '.join(INTENT_CATALOG[intent].keywords)} "
            f"(e.g. {'; '.join(INTENT_CATALOG[intent].examples[:2])})"
            for intent in Intent
            if intent is not Intent.UNKNOWN
        )
        context_line = ""
        if context is not None:
            context_line = (
                f"\nContext: last table {context.last_table_number or 'none'}, "
                f"last customer {context.last_customer_name or 'none'}\n"
            )
        return (
            "You are an intent classifier for a restaurant management system.\n\n"
            f'User Query: "{utterance.strip()}"\n'
            f"{context_line}\n"
            f"Classify this query into ONE of these intents:\n{labels}\n\n"
            "Respond with ONLY the intent name (e.g., PLACE_ORDER). If unclear, respond with UNKNOWN."
        )
