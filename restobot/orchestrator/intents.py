from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Tuple


class Intent(str, Enum):
    PLACE_ORDER = "PLACE_ORDER"
    UPDATE_ORDER = "UPDATE_ORDER"
    CANCEL_ORDER = "CANCEL_ORDER"
    COMPLETE_ORDER = "COMPLETE_ORDER"
    CREATE_TABLE = "CREATE_TABLE"
    DELETE_TABLE = "DELETE_TABLE"
    BOOK_TABLE = "BOOK_TABLE"
    TABLE_STATUS = "TABLE_STATUS"
    REVENUE_QUERY = "REVENUE_QUERY"
    ORDER_COUNT = "ORDER_COUNT"
    CUSTOMER_COUNT = "CUSTOMER_COUNT"
    POPULAR_ITEMS = "POPULAR_ITEMS"
    ADD_MENU_ITEM = "ADD_MENU_ITEM"
    DELETE_MENU_ITEM = "DELETE_MENU_ITEM"
    INVENTORY_STATUS = "INVENTORY_STATUS"
    SHOW_TABLES = "SHOW_TABLES"
    SHOW_ORDERS = "SHOW_ORDERS"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_label(cls, label: str | None) -> "Intent":
        """Map raw model output onto the closed set; anything else is UNKNOWN."""
        if not label:
            return cls.UNKNOWN
        cleaned = label.strip().strip("`'\".:;!").strip().upper()
        if not _LABEL_PATTERN.fullmatch(cleaned):
            return cls.UNKNOWN
        try:
            return cls(cleaned)
        except ValueError:
            return cls.UNKNOWN


_LABEL_PATTERN = re.compile(r"[A-Z]+(?:_[A-Z]+)*")


@dataclass(frozen=True)
class IntentPattern:
    keywords: Tuple[str, ...]
    examples: Tuple[str, ...]


INTENT_CATALOG_VERSION = "2"

INTENT_CATALOG: Mapping[Intent, IntentPattern] = {
    Intent.PLACE_ORDER: IntentPattern(
        keywords=("order", "place order", "create order", "add order", "book order"),
        examples=("place order for pizza", "order 2 burgers", "create order for table 5"),
    ),
    Intent.UPDATE_ORDER: IntentPattern(
        keywords=("update order", "modify order", "change order", "edit order"),
        examples=("update order ORD-123", "modify my order", "change order items"),
    ),
    Intent.CANCEL_ORDER: IntentPattern(
        keywords=("cancel order", "delete order", "remove order"),
        examples=("cancel order ORD-123", "delete my order", "remove order"),
    ),
    Intent.COMPLETE_ORDER: IntentPattern(
        keywords=("complete order", "finish order", "ready order"),
        examples=("complete order ORD-123", "mark order as ready", "finish order"),
    ),
    Intent.CREATE_TABLE: IntentPattern(
        keywords=("add table", "create table", "new table"),
        examples=("add table 5", "create table with capacity 6", "new table on first floor"),
    ),
    Intent.DELETE_TABLE: IntentPattern(
        keywords=("delete table", "remove table"),
        examples=("delete table 5", "remove table 2"),
    ),
    Intent.BOOK_TABLE: IntentPattern(
        keywords=("book table", "reserve table", "table reservation"),
        examples=("book table 3", "reserve table for John", "table reservation"),
    ),
    Intent.TABLE_STATUS: IntentPattern(
        keywords=("table status", "table info", "show table", "table details"),
        examples=("table status 2", "show table 5", "table info"),
    ),
    Intent.REVENUE_QUERY: IntentPattern(
        keywords=("revenue", "sales", "income", "money", "earnings"),
        examples=("today revenue", "monthly sales", "average order value"),
    ),
    Intent.ORDER_COUNT: IntentPattern(
        keywords=("orders", "order count", "how many orders"),
        examples=("orders today", "order count", "how many orders by status"),
    ),
    Intent.CUSTOMER_COUNT: IntentPattern(
        keywords=("customers", "customer count", "how many customers"),
        examples=("customers today", "customer count", "how many customers"),
    ),
    Intent.POPULAR_ITEMS: IntentPattern(
        keywords=("popular", "best selling", "top items", "most ordered"),
        examples=("most popular dishes", "best selling items this week", "top items today"),
    ),
    Intent.ADD_MENU_ITEM: IntentPattern(
        keywords=("add menu", "create menu", "new menu item"),
        examples=("add pizza to menu", "create new burger", "add menu item"),
    ),
    Intent.DELETE_MENU_ITEM: IntentPattern(
        keywords=("delete menu", "remove menu", "delete item"),
        examples=("delete pizza from menu", "remove burger", "delete menu item"),
    ),
    Intent.INVENTORY_STATUS: IntentPattern(
        keywords=("inventory", "stock", "low stock"),
        examples=("inventory status", "stock levels", "low stock items"),
    ),
    Intent.SHOW_TABLES: IntentPattern(
        keywords=("show tables", "all tables", "list tables"),
        examples=("show all tables", "list tables", "available tables"),
    ),
    Intent.SHOW_ORDERS: IntentPattern(
        keywords=("show orders", "all orders", "list orders"),
        examples=("show all orders", "list orders", "today's orders"),
    ),
}


def validate_catalog(catalog: Mapping[Intent, IntentPattern] = INTENT_CATALOG) -> None:
    missing = [intent.value for intent in Intent if intent is not Intent.UNKNOWN and intent not in catalog]
    if missing:
        raise RuntimeError(f"Intent catalog is missing entries for: {', '.join(missing)}")
    if Intent.UNKNOWN in catalog:
        raise RuntimeError("UNKNOWN must not carry catalog keywords")


validate_catalog()
