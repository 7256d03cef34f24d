from __future__ import annotations

import logging
import re
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence
from zoneinfo import ZoneInfo

from restobot.adapters.store import TENANT_FIELD, Document, TenantStore
from restobot.errors import (
    AuthorizationFailure,
    ConflictFailure,
    PipelineError,
    ResolutionFailure,
    ValidationFailure,
)
from restobot.schemas.operation import (
    COLLECTION_LABELS,
    Aggregation,
    OperationDescriptor,
    OperationKind,
    find_unresolved,
    is_unresolved,
)
from restobot.services.access import AccessControl, AccessGrant
from restobot.services.filters import apply_filters, coerce_datetime, operator_spec, project, resolve_path, to_number

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("restobot.audit")

ExecutionResult = Dict[str, Dict[str, Any]]

MENU_COLLECTION = "menu_items"

REQUIRED_FIELDS: Mapping[str, Sequence[str]] = {
    "tables": ("name",),
    "orders": ("items",),
    "customers": (),
    "menu_items": ("name", "price"),
    "inventory": ("name", "unit"),
    "staff": ("name", "role"),
    "feedback": ("rating",),
    "invoices": ("orderId",),
}

DEFAULTS: Mapping[str, Mapping[str, Any]] = {
    "tables": {"capacity": 4, "floor": "Ground Floor", "section": "Main", "status": "AVAILABLE"},
    "orders": {"status": "PREPARING", "paymentMethod": "CASH", "paymentStatus": "PENDING"},
    "customers": {"totalSpent": 0, "orderCount": 0},
    "menu_items": {"category": "General", "isAvailable": True},
    "inventory": {"category": "OTHER", "currentStock": 0, "minStock": 0},
    "staff": {"isActive": True},
}

PROTECTED_FIELDS = frozenset({"id", TENANT_FIELD, "createdAt", "createdBy"})

SUMMARY_FIELDS = ("name", "orderNumber", "status", "capacity", "floor", "totalAmount", "finalAmount", "price")

_MARKUP = re.compile(r"[<>]")


def sanitize(value: Any) -> Any:
    """Strip HTML-significant angle brackets from every string in ``value``."""
    if isinstance(value, str):
        return _MARKUP.sub("", value)
    if isinstance(value, list):
        return [sanitize(item) for item in value]
    if isinstance(value, dict):
        return {key: sanitize(item) for key, item in value.items()}
    return value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionEngine:
    """Runs Operation Descriptors against one tenant's partition of the store.

    Every operation in a batch is authorized before the store is touched. Once
    authorized, operations run independently: a failure is recorded against
    its own result entry and siblings still execute.
    """

    def __init__(
        self,
        store: TenantStore,
        access: Optional[AccessControl] = None,
        clock: Optional[Callable[[], datetime]] = None,
        timezone_name: str = "UTC",
        tax_rate: float = 0.18,
    ) -> None:
        self._store = store
        self._access = access or AccessControl(store)
        self._clock = clock or _utcnow
        self._zone = ZoneInfo(timezone_name)
        self._tax_rate = tax_rate

    def resolve_grant(self, user_id: str, restaurant_id: str) -> AccessGrant:
        return self._access.resolve_grant(user_id, restaurant_id)

    def execute(self, operations: Sequence[OperationDescriptor], grant: AccessGrant) -> ExecutionResult:
        if grant is None:
            raise AuthorizationFailure("Operations cannot run without an access grant")
        bound = [operation.bind(grant.restaurant_id) for operation in operations]
        for operation in bound:
            self._access.authorize(grant, operation)

        moment = self._clock()
        results: ExecutionResult = {}
        for key, operation in zip(result_keys(bound), bound):
            try:
                results[key] = self._run(operation, grant, moment)
            except PipelineError as exc:
                results[key] = {"error": exc.code, "message": exc.message}
            except Exception:
                logger.exception(
                    "Store failure running %s for restaurant %s", operation.name, grant.restaurant_id
                )
                results[key] = {"error": "EXECUTION_FAILED", "message": "The operation could not be completed"}
        return results

    def _run(self, operation: OperationDescriptor, grant: AccessGrant, moment: datetime) -> Dict[str, Any]:
        if not operation.is_bound or operation.restaurant_id != grant.restaurant_id:
            raise AuthorizationFailure("Operation is not bound to the caller's restaurant")
        references = find_unresolved(operation.data) + find_unresolved(operation.filters)
        if references:
            raise ResolutionFailure(f"Item not found: {references[0]}")
        if operation.kind is OperationKind.READ:
            return self._read(operation, moment)
        if operation.kind is OperationKind.CREATE:
            return self._create(operation, grant, moment)
        if operation.kind is OperationKind.UPDATE:
            return self._update(operation, grant, moment)
        return self._delete(operation, grant, moment)

    def _partition(self, operation: OperationDescriptor, moment: datetime) -> List[Document]:
        documents = self._store.find(operation.collection, operation.restaurant_id)
        return apply_filters(documents, operation.filters, moment.astimezone(self._zone))

    # Reads

    def _read(self, operation: OperationDescriptor, moment: datetime) -> Dict[str, Any]:
        documents = self._partition(operation, moment)
        aggregation = operation.aggregation or Aggregation.LIST

        if aggregation is Aggregation.COUNT:
            return {"count": len(documents)}
        if aggregation in (Aggregation.SUM, Aggregation.AVERAGE):
            field = self._aggregate_field(operation)
            total = sum(_numeric_values(documents, field))
            if aggregation is Aggregation.SUM:
                return {"sum": round(total, 2), "count": len(documents)}
            average = total / len(documents) if documents else 0
            return {"average": round(average, 2), "count": len(documents)}
        if aggregation is Aggregation.GROUP_BY:
            field = self._aggregate_field(operation)
            counter: Counter[str] = Counter()
            for document in documents:
                for value in resolve_path(document, field):
                    if value is None or value == "":
                        continue
                    counter[str(value)] += 1
            ordered = sorted(counter.items(), key=lambda item: (-item[1], item[0]))
            return {"grouped": dict(ordered)}

        ordered_documents = sorted(documents, key=_created_sort_key, reverse=True)
        if operation.fields:
            items = [project(document, operation.fields) for document in ordered_documents]
        else:
            items = [dict(document) for document in ordered_documents]
        return {"items": items}

    @staticmethod
    def _aggregate_field(operation: OperationDescriptor) -> str:
        if not operation.fields:
            raise ValidationFailure(f"{operation.aggregation.value} needs a field to aggregate")
        return operation.fields[0]

    # Mutations

    def _create(self, operation: OperationDescriptor, grant: AccessGrant, moment: datetime) -> Dict[str, Any]:
        collection = operation.collection
        data = {key: value for key, value in sanitize(operation.data).items() if key not in PROTECTED_FIELDS}

        missing = [field for field in REQUIRED_FIELDS.get(collection, ()) if data.get(field) in (None, "", [])]
        if missing:
            raise ValidationFailure(f"Missing required field(s) for {collection}: {', '.join(missing)}")
        if collection == "customers" and not (data.get("name") or data.get("phone")):
            raise ValidationFailure("Customer name or phone is required")

        if collection == "tables":
            data["name"] = str(data["name"]).strip()
            existing = self._store.find(collection, grant.restaurant_id)
            if any(str(table.get("name", "")).strip().casefold() == data["name"].casefold() for table in existing):
                raise ConflictFailure(f'Table "{data["name"]}" already exists')
            if "capacity" in data:
                data["capacity"] = _positive_int(data["capacity"], "capacity")
        elif collection == "orders":
            data.update(self._price_order(data, grant, moment))

        document: Document = {
            **DEFAULTS.get(collection, {}),
            **data,
            TENANT_FIELD: grant.restaurant_id,
            "createdAt": moment,
            "createdBy": grant.user_id,
            "updatedAt": moment,
        }
        doc_id = self._store.insert(collection, document)
        label = COLLECTION_LABELS[collection]
        return {
            "success": True,
            "id": doc_id,
            "message": f"{label} created",
            "details": _summary(document),
        }

    def _price_order(self, data: Dict[str, Any], grant: AccessGrant, moment: datetime) -> Dict[str, Any]:
        items = data.get("items")
        if not isinstance(items, list) or not items:
            raise ValidationFailure("Order must have at least one item")
        catalog = {item["id"]: item for item in self._store.find(MENU_COLLECTION, grant.restaurant_id)}

        priced: List[Dict[str, Any]] = []
        subtotal = 0.0
        for item in items:
            menu_item_id = item.get("menuItemId") if isinstance(item, dict) else None
            if is_unresolved(menu_item_id) or not menu_item_id:
                reference = item.get("menuItemRef") if isinstance(item, dict) else None
                raise ResolutionFailure(f"Item not found: {reference or 'unknown item'}")
            menu_item = catalog.get(menu_item_id)
            if menu_item is None:
                raise ResolutionFailure(f"Item not found: {item.get('menuItemRef') or menu_item_id}")
            quantity = _positive_int(item.get("quantity", 1), "quantity")
            price = to_number(menu_item.get("price")) or 0.0
            line_total = round(price * quantity, 2)
            subtotal += line_total
            priced.append(
                {
                    "id": menu_item_id,
                    "name": menu_item.get("name"),
                    "price": price,
                    "quantity": quantity,
                    "category": menu_item.get("category"),
                    "total": line_total,
                }
            )

        subtotal = round(subtotal, 2)
        tax = round(subtotal * self._tax_rate, 2)
        return {
            "items": priced,
            "orderNumber": f"ORD-{int(moment.timestamp() * 1000)}",
            "totalAmount": subtotal,
            "taxAmount": tax,
            "discountAmount": 0,
            "finalAmount": round(subtotal + tax, 2),
            "waiterId": grant.user_id,
        }

    def _update(self, operation: OperationDescriptor, grant: AccessGrant, moment: datetime) -> Dict[str, Any]:
        if not operation.filters:
            raise ValidationFailure("Updates must target specific records")
        patch = {key: value for key, value in sanitize(operation.data).items() if key not in PROTECTED_FIELDS}
        if not patch:
            raise ValidationFailure("Nothing to update")

        targets = self._partition(operation, moment)
        label = COLLECTION_LABELS[operation.collection]
        if not targets:
            raise ResolutionFailure(f"No matching {label.lower()} found")

        status = str(patch.get("status", "")).upper()
        if operation.collection == "orders" and status == "CANCELLED":
            patch.setdefault("cancellationReason", "Cancelled by user")
            patch.setdefault("cancelledAt", moment)
        elif operation.collection == "orders" and status == "COMPLETED":
            patch.setdefault("completedAt", moment)
        patch["updatedAt"] = moment
        patch["updatedBy"] = grant.user_id

        ids = [document["id"] for document in targets]
        count = self._store.batch_update(operation.collection, {doc_id: patch for doc_id in ids})
        return {
            "success": True,
            "count": count,
            "ids": ids,
            "message": f"{count} {label.lower()} record(s) updated",
            "details": _summary({**targets[0], **patch}),
        }

    def _delete(self, operation: OperationDescriptor, grant: AccessGrant, moment: datetime) -> Dict[str, Any]:
        if not operation.filters:
            raise ValidationFailure("Deletes must target a single record")
        id_target = operation.filters.get("id")
        operators = operator_spec(id_target)
        if isinstance(id_target, (list, tuple)) or (operators is not None and "in" in operators):
            raise ValidationFailure("Bulk delete operations are not allowed")

        targets = self._partition(operation, moment)
        label = COLLECTION_LABELS[operation.collection]
        if not targets:
            raise ResolutionFailure(f"No matching {label.lower()} found")
        if len(targets) > 1:
            raise ValidationFailure(f"Bulk delete operations are not allowed ({len(targets)} records matched)")

        target = targets[0]
        audit_logger.info(
            "DELETE: user=%s role=%s restaurant=%s collection=%s id=%s",
            grant.user_id,
            grant.role,
            grant.restaurant_id,
            operation.collection,
            target["id"],
        )
        self._store.batch_delete(operation.collection, [target["id"]])
        return {
            "success": True,
            "id": target["id"],
            "message": f"{label} deleted",
            "details": _summary(target),
        }


def result_keys(operations: Sequence[OperationDescriptor]) -> List[str]:
    """Result keys in operation order; repeated collections get ``#2``, ``#3``."""
    seen: Counter = Counter()
    keys: List[str] = []
    for operation in operations:
        seen[operation.collection] += 1
        occurrence = seen[operation.collection]
        keys.append(operation.collection if occurrence == 1 else f"{operation.collection}#{occurrence}")
    return keys


def _numeric_values(documents: Sequence[Mapping[str, Any]], field: str) -> List[float]:
    numbers: List[float] = []
    for document in documents:
        for value in resolve_path(document, field):
            number = to_number(value)
            if number is not None:
                numbers.append(number)
    return numbers


def _positive_int(value: Any, field: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationFailure(f"{field} must be a whole number") from exc
    if number < 1:
        raise ValidationFailure(f"{field} must be at least 1")
    return number


def _created_sort_key(document: Mapping[str, Any]) -> datetime:
    return coerce_datetime(document.get("createdAt")) or datetime.min.replace(tzinfo=timezone.utc)


def _summary(document: Mapping[str, Any]) -> Dict[str, Any]:
    return {field: document[field] for field in SUMMARY_FIELDS if field in document}
