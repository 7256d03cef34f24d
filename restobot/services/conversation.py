from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from restobot.adapters.store import TENANT_FIELD, TenantStore
from restobot.errors import ConflictFailure
from restobot.schemas.context import ConversationContext, ConversationMessage
from restobot.schemas.operation import OperationDescriptor
from restobot.services.execution import result_keys

logger = logging.getLogger(__name__)

CONVERSATIONS_COLLECTION = "conversations"
SLOT_KEYS = ("lastTableNumber", "lastCustomerName", "lastCustomerPhone")


def conversation_id(user_id: str, restaurant_id: str) -> str:
    pair = json.dumps([user_id, restaurant_id], separators=(",", ":"))
    return hashlib.sha256(pair.encode("utf-8")).hexdigest()


def context_updates_from(
    operations: Sequence[OperationDescriptor],
    result: Optional[Mapping[str, Mapping[str, Any]]] = None,
) -> Dict[str, Any]:
    """Slots worth remembering from the operations of a turn.

    Operations whose result entry carries an error contribute nothing. Later
    operations win over earlier ones.
    """
    updates: Dict[str, Any] = {}
    for key, operation in zip(result_keys(operations), operations):
        if result is not None and (result.get(key) or {}).get("error"):
            continue
        data = operation.data
        if operation.collection == "tables":
            table = data.get("name") or operation.filters.get("name")
            if table and not isinstance(table, dict):
                updates["lastTableNumber"] = str(table)
            if data.get("customerName"):
                updates["lastCustomerName"] = str(data["customerName"])
            if data.get("customerPhone"):
                updates["lastCustomerPhone"] = str(data["customerPhone"])
        elif operation.collection == "orders":
            if data.get("tableNumber"):
                updates["lastTableNumber"] = str(data["tableNumber"])
            customer = data.get("customer")
            if isinstance(customer, Mapping):
                if customer.get("name") and customer.get("name") != "Customer":
                    updates["lastCustomerName"] = str(customer["name"])
                if customer.get("phone"):
                    updates["lastCustomerPhone"] = str(customer["phone"])
        elif operation.collection == "customers":
            if data.get("name"):
                updates["lastCustomerName"] = str(data["name"])
            if data.get("phone"):
                updates["lastCustomerPhone"] = str(data["phone"])
    return updates


class ConversationStore:
    """Read-modify-write persistence of per (user, restaurant) context.

    Concurrent turns are not coordinated: whichever write lands last wins.
    Fields are only ever replaced, never removed.
    """

    def __init__(
        self,
        store: TenantStore,
        history_limit: int = 20,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._history_limit = history_limit
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def load(self, user_id: str, restaurant_id: str) -> ConversationContext:
        document = self._store.get(CONVERSATIONS_COLLECTION, conversation_id(user_id, restaurant_id))
        if not document:
            return ConversationContext()
        if not _owned_by(document, user_id, restaurant_id):
            logger.warning("Ignoring conversation document with mismatched owner for restaurant %s", restaurant_id)
            return ConversationContext()
        return _context_of(document)

    def record_turn(
        self,
        user_id: str,
        restaurant_id: str,
        utterance: str,
        reply: str,
        updates: Optional[Mapping[str, Any]] = None,
    ) -> ConversationContext:
        doc_id = conversation_id(user_id, restaurant_id)
        document = self._store.get(CONVERSATIONS_COLLECTION, doc_id)
        if document and not _owned_by(document, user_id, restaurant_id):
            raise ConflictFailure(f"Conversation {doc_id} belongs to another user or restaurant")
        current = _context_of(document) if document else ConversationContext()
        merged = current.model_dump(by_alias=True, exclude={"messages"})
        for key, value in (updates or {}).items():
            if value is None:
                continue
            if key == "preferences" and isinstance(value, Mapping):
                merged["preferences"] = {**merged.get("preferences", {}), **value}
            elif key in SLOT_KEYS:
                merged[key] = value

        now = self._clock()
        messages = list(current.messages) + [
            ConversationMessage(role="user", content=utterance, timestamp=now),
            ConversationMessage(role="assistant", content=reply, timestamp=now),
        ]
        messages = messages[-self._history_limit:] if self._history_limit > 0 else []

        patch: Dict[str, Any] = {
            "userId": user_id,
            TENANT_FIELD: restaurant_id,
            "context": merged,
            "messages": [message.model_dump() for message in messages],
            "lastActivity": now,
        }
        self._store.merge(CONVERSATIONS_COLLECTION, doc_id, patch)
        return ConversationContext.model_validate({**merged, "messages": patch["messages"]})


def _owned_by(document: Mapping[str, Any], user_id: str, restaurant_id: str) -> bool:
    return document.get(TENANT_FIELD) == restaurant_id and document.get("userId") == user_id


def _context_of(document: Mapping[str, Any]) -> ConversationContext:
    payload = dict(document.get("context") or {})
    payload["messages"] = list(document.get("messages") or [])
    return ConversationContext.model_validate(payload)
