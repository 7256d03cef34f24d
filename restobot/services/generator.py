from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from restobot.adapters.llm_client import CompletionService
from restobot.errors import GenerationFailure
from restobot.orchestrator.intents import Intent
from restobot.schemas.context import ConversationContext
from restobot.schemas.operation import (
    Aggregation,
    OperationDescriptor,
    OperationKind,
    parse_structured_query,
    to_structured_query,
    unresolved,
)
from restobot.services.snapshot import SchemaSnapshotBuilder

logger = logging.getLogger(__name__)

TEMPLATE_VERSION = "2"

TABLE_FIELDS = ["id", "name", "floor", "capacity", "status"]
ORDER_FIELDS = ["id", "orderNumber", "totalAmount", "status", "createdAt", "customer.name", "tableNumber"]
INVENTORY_FIELDS = ["id", "name", "category", "currentStock", "minStock", "unit"]

TABLE_STATUSES = ("available", "occupied", "reserved", "cleaning", "maintenance", "serving")
ORDER_STATUSES = ("pending", "preparing", "ready", "completed", "cancelled")
INVENTORY_CATEGORIES = ("vegetables", "meat", "dairy", "spices", "beverages", "packaged")

ANONYMOUS_CUSTOMER = "Customer"

Extractor = Callable[[str, ConversationContext], Optional[List[OperationDescriptor]]]


@dataclass(frozen=True)
class Slots:
    table_number: Optional[str]
    phone: Optional[str]
    customer_name: Optional[str]
    order_number: Optional[str]


class TemplateExtractor:
    """Deterministic fast path: fixed patterns per intent, no external calls.

    Every extractor is a pure function of (utterance, context); it returns
    None when the required slots cannot be filled so the caller can fall back.
    """

    TABLE_PATTERN = re.compile(r"table\s+(\d+)", re.IGNORECASE)
    PHONE_PATTERN = re.compile(r"(?<!\d)(\d{10})(?!\d)")
    ITEM_PATTERN = re.compile(r"(?:order|for)\s+([^0-9]+?)(?:\s+\d+|\s+item|$)", re.IGNORECASE)
    QUANTITY_FIRST_PATTERN = re.compile(
        r"(?:order|for)\s+(\d+)\s+(?:x\s+)?([^0-9]+?)(?=\s+(?:for|to|with|at|on)\b|\s+\d|$)",
        re.IGNORECASE,
    )
    TRAILING_QUANTITY_PATTERN = re.compile(r"^\s+(?:x\s*)?(\d+)", re.IGNORECASE)
    ORDER_NUMBER_PATTERN = re.compile(r"\b(ORD-[A-Za-z0-9-]+)\b", re.IGNORECASE)
    CUSTOMER_PATTERN = re.compile(
        r"(?:\bfor\s+)?\bcustomer(?:\s+name)?(?:\s+is)?\s+([A-Za-z][A-Za-z'\-]*(?:\s+[A-Za-z][A-Za-z'\-]*)?)",
        re.IGNORECASE,
    )
    BOOKING_NAME_PATTERN = re.compile(r"\bfor\s+(?!table\b)([A-Za-z][A-Za-z'\-]*(?:\s+[A-Z][A-Za-z'\-]*)?)")
    CAPACITY_PATTERNS = (
        re.compile(r"capacity\s*(?:of\s*)?(\d+)", re.IGNORECASE),
        re.compile(r"(\d+)\s*(?:-\s*)?(?:seater|seats|people|persons|guests)\b", re.IGNORECASE),
    )
    FLOOR_PATTERN = re.compile(r"\bon\s+(?:the\s+)?([a-z0-9]+)\s+floor\b", re.IGNORECASE)
    REASON_PATTERN = re.compile(r"\b(?:because|reason:?)\s+(.+)$", re.IGNORECASE)
    MENU_REFERENCE_PATTERN = re.compile(
        r"\b(?:delete|remove)\s+(?:the\s+)?(?:menu\s+item\s+)?(.+?)(?:\s+from\s+(?:the\s+)?menu)?\s*$",
        re.IGNORECASE,
    )
    SLOT_PHRASES = (
        re.compile(r"(?:\b(?:for|at|on)\s+)?\btable\s+\d+", re.IGNORECASE),
        re.compile(r"(?:\b(?:phone|mobile|number)\s*(?:is\s*)?)?(?<!\d)\d{10}(?!\d)", re.IGNORECASE),
        re.compile(
            r"(?:\bfor\s+)?\bcustomer(?:\s+name)?(?:\s+is)?\s+[A-Za-z][A-Za-z'\-]*(?:\s+[A-Za-z][A-Za-z'\-]*)?",
            re.IGNORECASE,
        ),
    )
    NAME_STOPWORDS = frozenset({"with", "and", "phone", "at", "on", "for", "table", "please", "mobile", "number"})
    ITEM_FILLERS = frozenset({"for", "a", "an", "the", "some", "of", "me", "us"})
    ITEM_TRAILERS = frozenset({"item", "items", "please", "now", "and", "with"})

    def __init__(self) -> None:
        self._templates: Dict[Intent, Extractor] = {
            Intent.PLACE_ORDER: self._place_order,
            Intent.CANCEL_ORDER: self._cancel_order,
            Intent.COMPLETE_ORDER: self._complete_order,
            Intent.CREATE_TABLE: self._create_table,
            Intent.DELETE_TABLE: self._delete_table,
            Intent.BOOK_TABLE: self._book_table,
            Intent.TABLE_STATUS: self._table_status,
            Intent.SHOW_TABLES: self._show_tables,
            Intent.SHOW_ORDERS: self._show_orders,
            Intent.REVENUE_QUERY: self._revenue,
            Intent.ORDER_COUNT: self._order_count,
            Intent.CUSTOMER_COUNT: self._customer_count,
            Intent.POPULAR_ITEMS: self._popular_items,
            Intent.DELETE_MENU_ITEM: self._delete_menu_item,
            Intent.INVENTORY_STATUS: self._inventory_status,
        }
        validate_registry(self._templates)

    def supports(self, intent: Intent) -> bool:
        return intent in self._templates

    def extract(
        self, intent: Intent, utterance: str, context: Optional[ConversationContext] = None
    ) -> Optional[List[OperationDescriptor]]:
        extractor = self._templates.get(intent)
        if extractor is None:
            return None
        return extractor(utterance.strip(), context or ConversationContext())

    # Slots

    def slots(self, utterance: str, context: ConversationContext, backfill: bool = True) -> Slots:
        table = self._first_group(self.TABLE_PATTERN, utterance)
        phone = self._first_group(self.PHONE_PATTERN, utterance)
        name = self._clean_name(self._first_group(self.CUSTOMER_PATTERN, utterance))
        order_number = self._first_group(self.ORDER_NUMBER_PATTERN, utterance)
        if backfill:
            table = table or context.last_table_number
            phone = phone or context.last_customer_phone
            name = name or context.last_customer_name
        return Slots(
            table_number=table,
            phone=phone,
            customer_name=name,
            order_number=order_number.upper() if order_number else None,
        )

    def item_and_quantity(self, utterance: str) -> Tuple[Optional[str], int]:
        residue = utterance
        for pattern in self.SLOT_PHRASES:
            residue = pattern.sub("", residue)
        residue = re.sub(r"\s+", " ", residue).strip().rstrip(".!?")

        quantity_first = self.QUANTITY_FIRST_PATTERN.search(residue)
        if quantity_first:
            item = self._clean_item(quantity_first.group(2))
            if item:
                return item, max(int(quantity_first.group(1)), 1)

        match = self.ITEM_PATTERN.search(residue)
        if not match:
            return None, 1
        item = self._clean_item(match.group(1))
        trailing = self.TRAILING_QUANTITY_PATTERN.match(residue[match.end(1):])
        quantity = max(int(trailing.group(1)), 1) if trailing else 1
        return item, quantity

    def date_window(self, utterance: str) -> Optional[str]:
        lowered = utterance.lower()
        if "yesterday" in lowered:
            return "yesterday"
        if "last 7 days" in lowered or "past week" in lowered:
            return "last_7_days"
        if "last 30 days" in lowered or "past month" in lowered:
            return "last_30_days"
        if "week" in lowered:
            return "this_week"
        if "month" in lowered:
            return "this_month"
        if "year" in lowered:
            return "this_year"
        if "today" in lowered or "tonight" in lowered:
            return "today"
        return None

    def _status_word(self, utterance: str, choices: Tuple[str, ...]) -> Optional[str]:
        words = set(re.findall(r"[a-z]+", utterance.lower()))
        for choice in choices:
            if choice in words:
                return choice.upper()
        return None

    @staticmethod
    def _first_group(pattern: re.Pattern, text: str) -> Optional[str]:
        match = pattern.search(text)
        return match.group(1).strip() if match else None

    def _clean_name(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        words = value.split()
        while words and words[-1].lower() in self.NAME_STOPWORDS:
            words.pop()
        if not words or words[0].lower() in self.NAME_STOPWORDS:
            return None
        return " ".join(word[:1].upper() + word[1:] for word in words)

    def _clean_item(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        words = value.strip(" ,.-").split()
        while words and words[0].lower() in self.ITEM_FILLERS:
            words.pop(0)
        while words and words[-1].lower() in self.ITEM_TRAILERS:
            words.pop()
        item = " ".join(words)
        return item or None

    # Orders

    def _place_order(self, utterance: str, context: ConversationContext) -> Optional[List[OperationDescriptor]]:
        item, quantity = self.item_and_quantity(utterance)
        if not item:
            return None
        slots = self.slots(utterance, context)
        customer: Dict[str, str] = {}
        if slots.customer_name:
            customer["name"] = slots.customer_name
        if slots.phone:
            customer["phone"] = slots.phone
        if not customer:
            customer["name"] = ANONYMOUS_CUSTOMER

        data: Dict[str, object] = {}
        if slots.table_number:
            data["tableNumber"] = slots.table_number
        data["customer"] = customer
        data["items"] = [{"menuItemId": unresolved(item), "menuItemRef": item, "quantity": quantity}]
        data["paymentMethod"] = "CASH"
        return [
            OperationDescriptor(
                name="createOrder",
                kind=OperationKind.CREATE,
                collection="orders",
                data=data,
                fields=["id", "orderNumber", "totalAmount", "status"],
            )
        ]

    def _order_status_change(
        self, utterance: str, context: ConversationContext, name: str, status: str
    ) -> Optional[List[OperationDescriptor]]:
        slots = self.slots(utterance, context, backfill=False)
        if not slots.order_number:
            return None
        data: Dict[str, object] = {"status": status}
        reason = self._first_group(self.REASON_PATTERN, utterance)
        if status == "CANCELLED" and reason:
            data["cancellationReason"] = reason.rstrip(".!")
        return [
            OperationDescriptor(
                name=name,
                kind=OperationKind.UPDATE,
                collection="orders",
                filters={"orderNumber": slots.order_number},
                data=data,
            )
        ]

    def _cancel_order(self, utterance: str, context: ConversationContext) -> Optional[List[OperationDescriptor]]:
        return self._order_status_change(utterance, context, "cancelOrder", "CANCELLED")

    def _complete_order(self, utterance: str, context: ConversationContext) -> Optional[List[OperationDescriptor]]:
        return self._order_status_change(utterance, context, "completeOrder", "COMPLETED")

    def _show_orders(self, utterance: str, context: ConversationContext) -> Optional[List[OperationDescriptor]]:
        filters: Dict[str, object] = {}
        window = self.date_window(utterance)
        if window:
            filters["createdAt"] = window
        status = self._status_word(utterance, ORDER_STATUSES)
        if status:
            filters["status"] = status
        return [
            OperationDescriptor(
                name="orders",
                kind=OperationKind.READ,
                collection="orders",
                aggregation=Aggregation.LIST,
                filters=filters,
                fields=list(ORDER_FIELDS),
            )
        ]

    # Tables

    def _create_table(self, utterance: str, context: ConversationContext) -> Optional[List[OperationDescriptor]]:
        table = self._first_group(self.TABLE_PATTERN, utterance)
        if not table:
            return None
        data: Dict[str, object] = {"name": table}
        for pattern in self.CAPACITY_PATTERNS:
            capacity = self._first_group(pattern, utterance)
            if capacity:
                data["capacity"] = int(capacity)
                break
        floor = self._first_group(self.FLOOR_PATTERN, utterance)
        if floor:
            data["floor"] = f"{floor.title()} Floor"
        return [
            OperationDescriptor(name="createTable", kind=OperationKind.CREATE, collection="tables", data=data)
        ]

    def _delete_table(self, utterance: str, context: ConversationContext) -> Optional[List[OperationDescriptor]]:
        # Destructive: only an explicit table number counts, never the remembered one.
        table = self._first_group(self.TABLE_PATTERN, utterance)
        if not table:
            return None
        return [
            OperationDescriptor(
                name="deleteTable", kind=OperationKind.DELETE, collection="tables", filters={"name": table}
            )
        ]

    def _book_table(self, utterance: str, context: ConversationContext) -> Optional[List[OperationDescriptor]]:
        slots = self.slots(utterance, context)
        if not slots.table_number:
            return None
        residue = self.TABLE_PATTERN.sub("", utterance)
        name = slots.customer_name
        explicit = self._clean_name(self._first_group(self.BOOKING_NAME_PATTERN, residue))
        if explicit and not self._first_group(self.CUSTOMER_PATTERN, utterance):
            name = explicit
        data: Dict[str, object] = {"status": "RESERVED", "customerName": name or ANONYMOUS_CUSTOMER}
        if slots.phone:
            data["customerPhone"] = slots.phone
        party = self._first_group(self.CAPACITY_PATTERNS[1], utterance)
        if party:
            data["partySize"] = int(party)
        return [
            OperationDescriptor(
                name="bookTable",
                kind=OperationKind.UPDATE,
                collection="tables",
                filters={"name": slots.table_number},
                data=data,
            )
        ]

    def _table_status(self, utterance: str, context: ConversationContext) -> Optional[List[OperationDescriptor]]:
        slots = self.slots(utterance, context)
        filters: Dict[str, object] = {}
        if slots.table_number:
            filters["name"] = slots.table_number
        return [
            OperationDescriptor(
                name="tables",
                kind=OperationKind.READ,
                collection="tables",
                aggregation=Aggregation.LIST,
                filters=filters,
                fields=list(TABLE_FIELDS),
            )
        ]

    def _show_tables(self, utterance: str, context: ConversationContext) -> Optional[List[OperationDescriptor]]:
        filters: Dict[str, object] = {}
        status = self._status_word(utterance, TABLE_STATUSES)
        if status:
            filters["status"] = status
        return [
            OperationDescriptor(
                name="tables",
                kind=OperationKind.READ,
                collection="tables",
                aggregation=Aggregation.LIST,
                filters=filters,
                fields=list(TABLE_FIELDS),
            )
        ]

    # Analytics

    def _revenue(self, utterance: str, context: ConversationContext) -> Optional[List[OperationDescriptor]]:
        lowered = utterance.lower()
        averaged = "average" in lowered or "avg" in lowered
        return [
            OperationDescriptor(
                name="averageOrderValue" if averaged else "revenue",
                kind=OperationKind.READ,
                collection="orders",
                aggregation=Aggregation.AVERAGE if averaged else Aggregation.SUM,
                filters={"createdAt": self.date_window(utterance) or "today"},
                fields=["totalAmount"],
            )
        ]

    def _order_count(self, utterance: str, context: ConversationContext) -> Optional[List[OperationDescriptor]]:
        filters = {"createdAt": self.date_window(utterance) or "today"}
        if "by status" in utterance.lower() or "per status" in utterance.lower():
            return [
                OperationDescriptor(
                    name="ordersByStatus",
                    kind=OperationKind.READ,
                    collection="orders",
                    aggregation=Aggregation.GROUP_BY,
                    filters=filters,
                    fields=["status"],
                )
            ]
        status = self._status_word(utterance, ORDER_STATUSES)
        if status:
            filters["status"] = status
        return [
            OperationDescriptor(
                name="orderCount",
                kind=OperationKind.READ,
                collection="orders",
                aggregation=Aggregation.COUNT,
                filters=filters,
                fields=["id"],
            )
        ]

    def _customer_count(self, utterance: str, context: ConversationContext) -> Optional[List[OperationDescriptor]]:
        window = self.date_window(utterance)
        return [
            OperationDescriptor(
                name="customerCount",
                kind=OperationKind.READ,
                collection="customers",
                aggregation=Aggregation.COUNT,
                filters={"createdAt": window} if window else {},
                fields=["id"],
            )
        ]

    def _popular_items(self, utterance: str, context: ConversationContext) -> Optional[List[OperationDescriptor]]:
        window = self.date_window(utterance)
        return [
            OperationDescriptor(
                name="popularItems",
                kind=OperationKind.READ,
                collection="orders",
                aggregation=Aggregation.GROUP_BY,
                filters={"createdAt": window} if window else {},
                fields=["items.name"],
            )
        ]

    # Menu and inventory

    def _delete_menu_item(self, utterance: str, context: ConversationContext) -> Optional[List[OperationDescriptor]]:
        reference = self._first_group(self.MENU_REFERENCE_PATTERN, utterance.rstrip(".!?"))
        reference = self._clean_item(reference)
        if not reference or reference.lower() in {"menu item", "item", "menu"}:
            return None
        return [
            OperationDescriptor(
                name="deleteMenuItem",
                kind=OperationKind.DELETE,
                collection="menu_items",
                filters={"id": unresolved(reference)},
            )
        ]

    def _inventory_status(self, utterance: str, context: ConversationContext) -> Optional[List[OperationDescriptor]]:
        filters: Dict[str, object] = {}
        category = self._status_word(utterance, INVENTORY_CATEGORIES)
        if category:
            filters["category"] = category
        return [
            OperationDescriptor(
                name="inventory",
                kind=OperationKind.READ,
                collection="inventory",
                aggregation=Aggregation.LIST,
                filters=filters,
                fields=list(INVENTORY_FIELDS),
            )
        ]


FALLBACK_ONLY_INTENTS = frozenset({Intent.UPDATE_ORDER, Intent.ADD_MENU_ITEM, Intent.UNKNOWN})


def validate_registry(templates: Mapping[Intent, Extractor]) -> None:
    """Every intent is either templated or explicitly fallback-only, never both."""
    overlap = FALLBACK_ONLY_INTENTS.intersection(templates)
    if overlap:
        raise RuntimeError(f"Intents both templated and fallback-only: {sorted(i.value for i in overlap)}")
    uncovered = set(Intent) - FALLBACK_ONLY_INTENTS - set(templates)
    if uncovered:
        raise RuntimeError(f"Intents without a generation route: {sorted(i.value for i in uncovered)}")


PROMPT_EXAMPLES: Tuple[Tuple[str, OperationDescriptor], ...] = (
    (
        "show today's revenue",
        OperationDescriptor(
            kind=OperationKind.READ,
            collection="orders",
            aggregation=Aggregation.SUM,
            filters={"createdAt": "today"},
            fields=["totalAmount"],
            name="revenue",
        ),
    ),
    (
        "add table 5",
        OperationDescriptor(kind=OperationKind.CREATE, collection="tables", data={"name": "5", "capacity": 4}),
    ),
    (
        "mark order ORD-123 as ready",
        OperationDescriptor(
            kind=OperationKind.UPDATE,
            collection="orders",
            name="updateOrder",
            filters={"orderNumber": "ORD-123"},
            data={"status": "READY"},
        ),
    ),
    (
        "add Paneer Tikka to the menu for 250 under starters",
        OperationDescriptor(
            kind=OperationKind.CREATE,
            collection="menu_items",
            data={"name": "Paneer Tikka", "price": 250, "category": "Starters"},
        ),
    ),
)


class QueryGenerator:
    """Fallback path: asks the completion service for structured statements."""

    def __init__(
        self,
        completion: CompletionService,
        snapshot_builder: SchemaSnapshotBuilder,
        max_tokens: int = 500,
        temperature: float = 0.1,
    ) -> None:
        self._completion = completion
        self._snapshot_builder = snapshot_builder
        self._max_tokens = max_tokens
        self._temperature = temperature

    def generate(
        self, utterance: str, restaurant_id: str, context: Optional[ConversationContext] = None
    ) -> List[OperationDescriptor]:
        snapshot = self._snapshot_builder.build(restaurant_id)
        prompt = self.build_prompt(utterance, snapshot.render(), context)
        try:
            text = self._completion.complete(prompt, self._max_tokens, self._temperature)
        except Exception as exc:
            logger.warning("Query generation failed (%s: %s)", type(exc).__name__, exc)
            raise GenerationFailure("Query generation is unavailable") from exc
        operations = parse_structured_query(text)
        logger.info("Fallback generated %d operation(s) for restaurant %s", len(operations), restaurant_id)
        return operations

    def build_prompt(self, utterance: str, schema: str, context: Optional[ConversationContext] = None) -> str:
        examples = "\n".join(
            f'- For "{request}": {to_structured_query(operation)}' for request, operation in PROMPT_EXAMPLES
        )
        conversation = ""
        if context is not None:
            recent = "\n".join(f"{message.role}: {message.content}" for message in context.messages[-6:])
            conversation = (
                "\nCONVERSATION CONTEXT:\n"
                f"{recent or 'No previous messages.'}\n"
                f"- Last table number: {context.last_table_number or 'None'}\n"
                f"- Last customer name: {context.last_customer_name or 'None'}\n"
                f"- Last customer phone: {context.last_customer_phone or 'None'}\n"
                "Use this context when the request omits table or customer details.\n"
            )
        return (
            "You translate restaurant staff requests into data statements.\n\n"
            f"{schema}\n"
            f"{conversation}\n"
            f'User Query: "{utterance.strip()}"\n\n'
            "Output ONLY statements, one per line, in the form\n"
            "  query <collection> {json}\n"
            "  mutation <create|update|delete> <collection> {json}\n"
            "where json may hold name, aggregation, filters, fields and data. Never include a restaurant id.\n"
            "For menu items named by the user, use the IDs listed above.\n\n"
            f"Examples:\n{examples}\n"
        )


@dataclass
class GenerationResult:
    operations: List[OperationDescriptor]
    tier: str


class OperationGenerator:
    """Chooses the template tier when it can fill the request, else the LLM tier."""

    def __init__(self, templates: TemplateExtractor, fallback: QueryGenerator) -> None:
        self._templates = templates
        self._fallback = fallback

    def generate(
        self,
        intent: Intent,
        utterance: str,
        restaurant_id: str,
        context: Optional[ConversationContext] = None,
    ) -> GenerationResult:
        if self._templates.supports(intent):
            operations = self._templates.extract(intent, utterance, context)
            if operations:
                return GenerationResult(operations=operations, tier="template")
            logger.info("Template for %s could not fill required slots; using fallback", intent.value)
        return GenerationResult(operations=self._fallback.generate(utterance, restaurant_id, context), tier="fallback")
