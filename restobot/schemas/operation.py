from __future__ import annotations

import json
import re
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from restobot.adapters.store import TENANT_FIELD
from restobot.errors import GenerationFailure


class OperationKind(str, Enum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class Aggregation(str, Enum):
    COUNT = "count"
    SUM = "sum"
    AVERAGE = "average"
    GROUP_BY = "groupBy"
    LIST = "list"


COLLECTION_LABELS: Dict[str, str] = {
    "tables": "Table",
    "orders": "Order",
    "customers": "Customer",
    "menu_items": "MenuItem",
    "inventory": "InventoryItem",
    "staff": "Staff",
    "feedback": "Feedback",
    "invoices": "Invoice",
}

UNRESOLVED_KEY = "$unresolved"


def unresolved(reference: str) -> Dict[str, str]:
    return {UNRESOLVED_KEY: reference}


def is_unresolved(value: Any) -> bool:
    return isinstance(value, dict) and UNRESOLVED_KEY in value


def find_unresolved(value: Any) -> List[str]:
    """Collect every unresolved reference nested anywhere in ``value``."""
    if is_unresolved(value):
        return [str(value[UNRESOLVED_KEY])]
    found: List[str] = []
    if isinstance(value, dict):
        for item in value.values():
            found.extend(find_unresolved(item))
    elif isinstance(value, (list, tuple)):
        for item in value:
            found.extend(find_unresolved(item))
    return found


class OperationDescriptor(BaseModel):
    """One unit of work, tenant-agnostic until :meth:`bind` is called."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: str = ""
    kind: OperationKind
    collection: str
    aggregation: Optional[Aggregation] = None
    filters: Dict[str, Any] = Field(default_factory=dict)
    fields: List[str] = Field(default_factory=list)
    data: Dict[str, Any] = Field(default_factory=dict)
    restaurant_id: Optional[str] = Field(default=None, alias="restaurantId")

    @field_validator("collection")
    @classmethod
    def _known_collection(cls, value: str) -> str:
        normalised = value.strip()
        if normalised not in COLLECTION_LABELS:
            raise ValueError(f"Unknown collection: {value}")
        return normalised

    @model_validator(mode="after")
    def _default_name(self) -> "OperationDescriptor":
        if self.kind is not OperationKind.READ and self.aggregation is not None:
            raise ValueError("Aggregations only apply to read operations")
        if not self.name:
            if self.kind is OperationKind.READ:
                self.name = self.collection
            else:
                self.name = f"{self.kind.value}{COLLECTION_LABELS[self.collection]}"
        return self

    @property
    def is_bound(self) -> bool:
        return bool(self.restaurant_id)

    def bind(self, restaurant_id: str) -> "OperationDescriptor":
        """Attach the tenant; tenant ids smuggled into data or filters are dropped."""
        bound = self.model_copy(deep=True)
        bound.data.pop(TENANT_FIELD, None)
        bound.filters.pop(TENANT_FIELD, None)
        bound.restaurant_id = restaurant_id
        return bound

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


_KEYWORDS = ("query", "mutation")
_STATEMENT = re.compile(
    r"^(query|mutation)\s+(?:(create|update|delete)\s+)?([A-Za-z_]+)\s*(\{.*\})?\s*$",
    re.DOTALL,
)
_FENCE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")
_PAYLOAD_KEYS = {"name", "aggregation", "filters", "fields", "data"}


def to_structured_query(operation: OperationDescriptor) -> str:
    payload = {
        key: value
        for key, value in operation.to_payload().items()
        if key in _PAYLOAD_KEYS and value not in ({}, [], "")
    }
    body = json.dumps(payload, sort_keys=True)
    if operation.kind is OperationKind.READ:
        return f"query {operation.collection} {body}"
    return f"mutation {operation.kind.value} {operation.collection} {body}"


def parse_structured_query(text: str) -> List[OperationDescriptor]:
    """Parse generated statements into descriptors.

    Output that does not start with ``query`` or ``mutation`` is rejected
    outright rather than guessed at.
    """
    cleaned = _FENCE.sub("", (text or "").strip()).strip()
    if not cleaned.lower().startswith(_KEYWORDS):
        raise GenerationFailure("Generated text does not start with a recognised operation keyword")

    statements = [chunk.strip() for chunk in re.split(r"(?m)^(?=(?:query|mutation)\b)", cleaned) if chunk.strip()]
    operations: List[OperationDescriptor] = []
    for statement in statements:
        match = _STATEMENT.match(statement)
        if not match:
            raise GenerationFailure(f"Malformed statement: {statement[:80]}")
        keyword, kind, collection, body = match.groups()
        if keyword == "query" and kind:
            raise GenerationFailure("Queries cannot carry a mutation kind")
        if keyword == "mutation" and not kind:
            raise GenerationFailure("Mutations must name create, update or delete")
        try:
            payload = json.loads(body) if body else {}
        except json.JSONDecodeError as exc:
            raise GenerationFailure("Statement payload is not valid JSON") from exc
        if not isinstance(payload, dict) or set(payload) - _PAYLOAD_KEYS:
            raise GenerationFailure("Statement payload has unsupported keys")
        try:
            operations.append(
                OperationDescriptor(
                    kind=OperationKind.READ if keyword == "query" else OperationKind(kind),
                    collection=collection,
                    **payload,
                )
            )
        except (ValidationError, ValueError) as exc:
            raise GenerationFailure("Statement does not describe a valid operation") from exc
    return operations
