from __future__ import annotations

import logging
from functools import lru_cache

from fastapi import Depends

from restobot.adapters.llm_client import (
    CompletionService,
    GeminiCompletionService,
    TimeBoundCompletion,
    UnavailableCompletionService,
)
from restobot.adapters.mongo_client import MongoClientFactory, MongoTenantStore
from restobot.adapters.store import InMemoryTenantStore, TenantStore
from restobot.app.config import Settings, get_settings
from restobot.orchestrator.graph import QueryOrchestrator
from restobot.services.access import AccessControl
from restobot.services.conversation import ConversationStore
from restobot.services.execution import ExecutionEngine
from restobot.services.generator import OperationGenerator, QueryGenerator, TemplateExtractor
from restobot.services.intent import IntentClassifier
from restobot.services.resolver import ValueResolver
from restobot.services.snapshot import SchemaSnapshotBuilder
from restobot.services.synthesis import OfflineResponseGenerator, ResponseSynthesizer
from restobot.services.usage import InMemoryTTLStore, UsageMeter

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_mongo_factory() -> MongoClientFactory:
    settings = get_settings()
    return MongoClientFactory(settings.mongo_uri, settings.mongo_database)


@lru_cache(maxsize=1)
def get_store() -> TenantStore:
    settings = get_settings()
    if settings.store_backend == "mongo":
        factory = get_mongo_factory()
        return MongoTenantStore(
            factory.get_database(),
            client=factory.get_client(),
            use_transactions=settings.mongo_use_transactions,
        )
    logger.warning("Using the in-memory tenant store; data is lost on restart")
    return InMemoryTenantStore()


@lru_cache(maxsize=1)
def get_completion_service() -> CompletionService:
    settings = get_settings()
    if not settings.gemini_api_key:
        logger.warning("GEMINI_API_KEY is not set; LLM stages will use their deterministic fallbacks")
        return UnavailableCompletionService()
    return TimeBoundCompletion(
        GeminiCompletionService(
            settings.gemini_model,
            settings.gemini_api_key,
            request_timeout_seconds=settings.llm_timeout_seconds,
        ),
        timeout_seconds=settings.llm_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_usage_meter() -> UsageMeter:
    settings = get_settings()
    return UsageMeter(
        InMemoryTTLStore(),
        daily_limit=settings.usage_daily_limit,
        ip_limit=settings.usage_ip_limit,
        enabled=settings.usage_metering_enabled,
    )


def get_access_control(store: TenantStore = Depends(get_store)) -> AccessControl:
    return AccessControl(store)


def get_engine(
    settings: Settings = Depends(get_settings),
    store: TenantStore = Depends(get_store),
    access: AccessControl = Depends(get_access_control),
) -> ExecutionEngine:
    return ExecutionEngine(store, access=access, timezone_name=settings.timezone, tax_rate=settings.tax_rate)


def get_conversation_store(
    settings: Settings = Depends(get_settings),
    store: TenantStore = Depends(get_store),
) -> ConversationStore:
    return ConversationStore(store, history_limit=settings.conversation_history_limit)


def get_orchestrator(
    settings: Settings = Depends(get_settings),
    store: TenantStore = Depends(get_store),
    completion: CompletionService = Depends(get_completion_service),
    engine: ExecutionEngine = Depends(get_engine),
    conversations: ConversationStore = Depends(get_conversation_store),
) -> QueryOrchestrator:
    classifier = IntentClassifier(
        completion,
        max_tokens=settings.classification_max_tokens,
        temperature=settings.classification_temperature,
    )
    generator = OperationGenerator(
        TemplateExtractor(),
        QueryGenerator(
            completion,
            SchemaSnapshotBuilder(store),
            max_tokens=settings.generation_max_tokens,
            temperature=settings.generation_temperature,
        ),
    )
    synthesizer = ResponseSynthesizer(
        completion=completion if settings.llm_synthesis_enabled else None,
        offline=OfflineResponseGenerator(settings.currency_symbol),
        max_tokens=settings.synthesis_max_tokens,
        temperature=settings.synthesis_temperature,
    )
    return QueryOrchestrator(
        engine=engine,
        classifier=classifier,
        generator=generator,
        resolver=ValueResolver(store),
        synthesizer=synthesizer,
        conversations=conversations,
    )
