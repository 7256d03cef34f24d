from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from restobot.adapters.store import TenantStore
from restobot.schemas.operation import Aggregation
from restobot.services.filters import DATE_WINDOWS, OPERATORS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OperationSpec:
    name: str
    statement: str
    fields: Tuple[str, ...]


OPERATION_CATALOG: Tuple[OperationSpec, ...] = (
    OperationSpec("tables", "query tables", ("id", "name", "floor", "capacity", "section", "status")),
    OperationSpec("orders", "query orders", ("id", "orderNumber", "tableNumber", "customer.name", "items.name", "totalAmount", "status", "createdAt")),
    OperationSpec("customers", "query customers", ("id", "name", "phone", "email", "city", "totalSpent", "createdAt")),
    OperationSpec("menu_items", "query menu_items", ("id", "name", "price", "category", "isAvailable")),
    OperationSpec("inventory", "query inventory", ("id", "name", "category", "unit", "currentStock", "minStock")),
    OperationSpec("staff", "query staff", ("id", "name", "role", "phone")),
    OperationSpec("feedback", "query feedback", ("id", "rating", "comment", "category", "createdAt")),
    OperationSpec("invoices", "query invoices", ("id", "orderId", "invoiceNumber", "total", "createdAt")),
    OperationSpec("createTable", "mutation create tables", ("name", "floor", "capacity", "section")),
    OperationSpec("updateTable", "mutation update tables", ("name", "floor", "capacity", "section", "status", "customerName", "customerPhone")),
    OperationSpec("deleteTable", "mutation delete tables", ("id", "name")),
    OperationSpec("createOrder", "mutation create orders", ("tableNumber", "customer", "items", "notes", "paymentMethod")),
    OperationSpec("updateOrder", "mutation update orders", ("status", "tableNumber", "notes", "paymentMethod", "paymentStatus")),
    OperationSpec("createCustomer", "mutation create customers", ("name", "phone", "email", "city", "address")),
    OperationSpec("updateCustomer", "mutation update customers", ("name", "phone", "email", "city", "address")),
    OperationSpec("createMenuItem", "mutation create menu_items", ("name", "price", "category", "description", "isVeg", "isAvailable")),
    OperationSpec("updateMenuItem", "mutation update menu_items", ("name", "price", "category", "isAvailable")),
    OperationSpec("deleteMenuItem", "mutation delete menu_items", ("id",)),
    OperationSpec("createInventoryItem", "mutation create inventory", ("name", "category", "unit", "currentStock", "minStock")),
    OperationSpec("updateInventoryItem", "mutation update inventory", ("currentStock", "minStock", "maxStock")),
)

ENUM_VALUES: Mapping[str, Tuple[str, ...]] = {
    "OrderStatus": ("PENDING", "PREPARING", "READY", "COMPLETED", "CANCELLED"),
    "TableStatus": ("AVAILABLE", "OCCUPIED", "RESERVED", "CLEANING", "MAINTENANCE", "SERVING"),
    "PaymentMethod": ("CASH", "CARD", "UPI", "ONLINE"),
    "PaymentStatus": ("PENDING", "COMPLETED", "FAILED", "REFUNDED"),
    "UserRole": ("OWNER", "MANAGER", "ADMIN", "STAFF", "WAITER"),
    "InventoryCategory": ("VEGETABLES", "MEAT", "DAIRY", "SPICES", "BEVERAGES", "PACKAGED", "OTHER"),
}

SAMPLE_FIELDS: Mapping[str, Tuple[str, ...]] = {
    "tables": ("id", "name", "floor", "capacity", "status"),
    "orders": ("id", "orderNumber", "tableNumber", "totalAmount", "status"),
    "customers": ("id", "name", "phone"),
    "inventory": ("id", "name", "currentStock", "minStock", "unit"),
}


@dataclass
class SchemaSnapshot:
    restaurant_id: str
    operations: Tuple[OperationSpec, ...] = OPERATION_CATALOG
    enums: Mapping[str, Tuple[str, ...]] = field(default_factory=lambda: dict(ENUM_VALUES))
    samples: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    menu_items: List[Dict[str, Any]] = field(default_factory=list)

    def render(self) -> str:
        lines = ["RESTAURANT DATA OPERATIONS", "", "Statements:"]
        for spec in self.operations:
            lines.append(f"- {spec.name}: {spec.statement} (fields: {', '.join(spec.fields)})")
        lines.append("")
        lines.append("Enums:")
        for enum_name, values in self.enums.items():
            lines.append(f"- {enum_name}: {', '.join(values)}")
        lines.append("")
        lines.append(f"Aggregations: {', '.join(item.value for item in Aggregation)}")
        lines.append(f"Date windows (use as a filter value on createdAt): {', '.join(DATE_WINDOWS)}")
        lines.append(f"Filter operators: {', '.join(sorted(OPERATORS))}")

        if self.menu_items:
            lines.append("")
            lines.append("Menu items:")
            for item in self.menu_items:
                lines.append(f"- {item.get('name')} (ID: {item.get('id')}, price: {item.get('price')})")
        for collection, records in self.samples.items():
            if not records:
                continue
            lines.append("")
            lines.append(f"Sample {collection}:")
            for record in records:
                lines.append(f"- {json.dumps(record, default=str, sort_keys=True)}")
        return "\n".join(lines)


class SchemaSnapshotBuilder:
    """Describes the operations, enums and a live tenant sample for prompts."""

    def __init__(self, store: TenantStore, sample_size: int = 5, menu_sample_size: int = 10) -> None:
        self._store = store
        self._sample_size = sample_size
        self._menu_sample_size = menu_sample_size

    def build(self, restaurant_id: str) -> SchemaSnapshot:
        snapshot = SchemaSnapshot(restaurant_id=restaurant_id)
        try:
            snapshot.menu_items = [
                {"id": item.get("id"), "name": item.get("name"), "price": item.get("price")}
                for item in self._store.find("menu_items", restaurant_id)[: self._menu_sample_size]
            ]
            for collection, fields in SAMPLE_FIELDS.items():
                records = self._store.find(collection, restaurant_id)[: self._sample_size]
                snapshot.samples[collection] = [_pick(record, fields) for record in records]
        except Exception:
            logger.exception("Failed to sample tenant data for restaurant %s; using basic schema", restaurant_id)
            snapshot.menu_items = []
            snapshot.samples = {}
        return snapshot


def _pick(record: Mapping[str, Any], fields: Sequence[str]) -> Dict[str, Any]:
    return {name: record[name] for name in fields if name in record}
