from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from restobot.app.config import Settings
from restobot.app.dependencies import (
    get_access_control,
    get_conversation_store,
    get_engine,
    get_orchestrator,
    get_settings,
    get_usage_meter,
)
from restobot.errors import AuthorizationFailure
from restobot.orchestrator.graph import QueryOrchestrator
from restobot.orchestrator.intents import INTENT_CATALOG_VERSION
from restobot.orchestrator.state import PipelineState
from restobot.schemas.context import ConversationContext
from restobot.schemas.query import (
    OperationsRequest,
    OperationsResponse,
    PermissionsResponse,
    QueryRequest,
    QueryResponse,
)
from restobot.services.access import DELETE_ROLES, AccessControl, AccessGrant
from restobot.services.conversation import ConversationStore
from restobot.services.execution import ExecutionEngine
from restobot.services.generator import TEMPLATE_VERSION
from restobot.services.synthesis import error_reply
from restobot.services.usage import UsageMeter

logger = logging.getLogger(__name__)

router = APIRouter()


def _http_error(exc: AuthorizationFailure) -> HTTPException:
    if exc.code == "UNAUTHENTICATED":
        return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=exc.code)
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=exc.code)


def _grant_or_raise(access: AccessControl, user_id: str, restaurant_id: str) -> AccessGrant:
    try:
        return access.resolve_grant(user_id, restaurant_id)
    except AuthorizationFailure as exc:
        raise _http_error(exc) from exc


def _pipeline_data(state: PipelineState) -> Dict[str, Any]:
    data: Dict[str, Any] = {"intent": state.intent.value}
    if state.tier:
        data["tier"] = state.tier
    if state.operations and state.grant is not None:
        data["operations"] = [operation.to_payload() for operation in state.operations]
    if state.result:
        data["results"] = state.result
    if state.error_code:
        data["error"] = state.error_code
    return data


@router.get("/health", status_code=status.HTTP_200_OK)
def health(settings: Settings = Depends(get_settings)) -> dict:
    return {
        "app": settings.app_name,
        "status": "ok",
        "intentCatalogVersion": INTENT_CATALOG_VERSION,
        "templateVersion": TEMPLATE_VERSION,
    }


@router.post("/api/v1/query", response_model=QueryResponse)
def query(
    payload: QueryRequest,
    request: Request,
    meter: UsageMeter = Depends(get_usage_meter),
    orchestrator: QueryOrchestrator = Depends(get_orchestrator),
) -> QueryResponse:
    client_ip = request.client.host if request.client else None
    decision = meter.check_and_record(payload.user_id, client_ip)
    if not decision.allowed:
        return QueryResponse(success=False, response=error_reply("RATE_LIMITED"), data={"error": "RATE_LIMITED"})

    state = PipelineState(
        utterance=payload.utterance,
        restaurant_id=payload.restaurant_id,
        user_id=payload.user_id,
    )
    final_state = orchestrator.run(state)
    logger.info(
        "Query for restaurant %s finished: intent=%s tier=%s error=%s",
        payload.restaurant_id,
        final_state.intent.value,
        final_state.tier,
        final_state.error_code,
    )
    return QueryResponse(success=final_state.success, response=final_state.response, data=_pipeline_data(final_state))


@router.post("/api/v1/operations", response_model=OperationsResponse)
def operations(
    payload: OperationsRequest,
    access: AccessControl = Depends(get_access_control),
    engine: ExecutionEngine = Depends(get_engine),
) -> OperationsResponse:
    grant = _grant_or_raise(access, payload.user_id, payload.restaurant_id)
    try:
        results = engine.execute(payload.operations, grant)
    except AuthorizationFailure as exc:
        raise _http_error(exc) from exc
    succeeded = any("error" not in entry for entry in results.values())
    return OperationsResponse(success=succeeded, results=results)


@router.get("/api/v1/permissions", response_model=PermissionsResponse)
def permissions(
    user_id: str = Query(..., alias="userId"),
    restaurant_id: str = Query(..., alias="restaurantId"),
    access: AccessControl = Depends(get_access_control),
) -> PermissionsResponse:
    grant = _grant_or_raise(access, user_id, restaurant_id)
    return PermissionsResponse(
        user_id=grant.user_id,
        restaurant_id=grant.restaurant_id,
        role=grant.role,
        permissions=sorted(grant.permissions),
        can_read=grant.allows("read"),
        can_write=grant.allows("write"),
        can_delete=grant.allows("delete") and grant.role in DELETE_ROLES,
        can_admin=grant.allows("admin"),
    )


@router.get("/api/v1/conversations/{restaurant_id}", response_model=ConversationContext)
def conversation(
    restaurant_id: str,
    user_id: str = Query(..., alias="userId"),
    access: AccessControl = Depends(get_access_control),
    conversations: ConversationStore = Depends(get_conversation_store),
) -> ConversationContext:
    grant = _grant_or_raise(access, user_id, restaurant_id)
    if not grant.allows("read"):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="FORBIDDEN")
    return conversations.load(user_id, restaurant_id)
