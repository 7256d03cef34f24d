from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from restobot.adapters.llm_client import CompletionService
from restobot.errors import SynthesisFailure
from restobot.schemas.operation import OperationDescriptor
from restobot.services.execution import result_keys
from restobot.services.filters import to_number

logger = logging.getLogger(__name__)

ERROR_REPLIES: Mapping[str, str] = {
    "GENERATION_FAILED": (
        "I couldn't understand that request. Try rephrasing it, for example "
        "\"show today's revenue\" or \"add table 5\"."
    ),
    "NOT_FOUND": (
        "I couldn't find the item you're looking for. It may have already been removed "
        "or doesn't exist in your restaurant's data."
    ),
    "FORBIDDEN": (
        "I'm sorry, but you don't have permission to perform that action. "
        "You can only manage data for restaurants you have access to."
    ),
    "UNAUTHENTICATED": "I need you to log in again to perform this action. Your session may have expired.",
    "RATE_LIMITED": "You've reached today's limit for assistant requests. Please try again tomorrow.",
}
GENERIC_ERROR_REPLY = "I ran into a problem while processing your request. Please try again in a moment."

# Messages for these codes are composed by the engine from the caller's own input.
DESCRIBED_ERRORS = frozenset({"BAD_USER_INPUT", "CONFLICT"})
ITEM_NOT_FOUND_PREFIX = "Item not found: "

Entry = Mapping[str, Any]
Renderer = Callable[["OfflineResponseGenerator", OperationDescriptor, Entry], Optional[str]]


def error_reply(code: Optional[str], message: Optional[str] = None) -> str:
    """Fixed, user-safe phrasing for a pipeline or execution error code."""
    if code == "NOT_FOUND" and message and message.startswith(ITEM_NOT_FOUND_PREFIX):
        reference = message[len(ITEM_NOT_FOUND_PREFIX):].strip()
        if reference:
            return f'I couldn\'t find "{reference}" on your menu. Please check the item name and try again.'
    if code in DESCRIBED_ERRORS and message:
        return f"I couldn't complete that: {message.rstrip('.')}."
    return ERROR_REPLIES.get(code or "", GENERIC_ERROR_REPLY)


def split_result(
    operations: Sequence[OperationDescriptor], result: Mapping[str, Entry]
) -> Tuple[List[Tuple[OperationDescriptor, Entry]], List[Entry]]:
    succeeded: List[Tuple[OperationDescriptor, Entry]] = []
    failed: List[Entry] = []
    for key, operation in zip(result_keys(operations), operations):
        entry = result.get(key)
        if entry is None:
            continue
        if entry.get("error"):
            failed.append(entry)
        else:
            succeeded.append((operation, entry))
    return succeeded, failed


class OfflineResponseGenerator:
    """Deterministic reply rendering; needs nothing but the execution result."""

    def __init__(self, currency_symbol: str = "₹", list_limit: int = 5) -> None:
        self._currency_symbol = currency_symbol
        self._list_limit = list_limit

    def money(self, value: Any) -> str:
        amount = to_number(value) or 0.0
        return f"{self._currency_symbol}{amount:,.2f}"

    def render(self, operations: Sequence[OperationDescriptor], result: Mapping[str, Entry]) -> str:
        succeeded, failed = split_result(operations, result)
        if not succeeded:
            if failed:
                return error_reply(failed[0].get("error"), failed[0].get("message"))
            return "Request executed successfully, 0 result(s)."

        operation, entry = succeeded[0]
        reply = self.render_entry(operation, entry)
        extra = len(succeeded) - 1
        if extra:
            reply = f"{reply} {extra} more operation(s) completed."
        if failed:
            reply = f"{reply} However, {len(failed)} operation(s) could not be completed."
        return reply

    def render_entry(self, operation: OperationDescriptor, entry: Entry) -> str:
        renderer = SUCCESS_RENDERERS.get(operation.name)
        if renderer is not None:
            rendered = renderer(self, operation, entry)
            if rendered:
                return rendered
        rendered = self._render_aggregate(operation, entry)
        if rendered:
            return rendered
        return f"Request executed successfully, {_result_count(entry)} result(s)."

    def _render_aggregate(self, operation: OperationDescriptor, entry: Entry) -> Optional[str]:
        field = operation.fields[0] if operation.fields else "value"
        if "sum" in entry:
            value = self.money(entry["sum"]) if "amount" in field.lower() else entry["sum"]
            return f"Total {field}: {value} across {entry.get('count', 0)} record(s)."
        if "average" in entry:
            value = self.money(entry["average"]) if "amount" in field.lower() else entry["average"]
            return f"Average {field}: {value} across {entry.get('count', 0)} record(s)."
        if "grouped" in entry:
            return self._grouped(f"{operation.collection} by {field}", entry["grouped"])
        if "count" in entry and len(entry) == 1:
            return f"Found {entry['count']} {operation.collection.replace('_', ' ')} record(s)."
        return None

    def _grouped(self, title: str, grouped: Mapping[str, int]) -> str:
        if not grouped:
            return f"No data found for {title}."
        pairs = list(grouped.items())[: self._list_limit]
        return f"{title[:1].upper()}{title[1:]}: " + ", ".join(f"{key} ({count})" for key, count in pairs) + "."

    def _listing(self, items: Sequence[Mapping[str, Any]], noun: str, describe: Callable[[Mapping[str, Any]], str]) -> str:
        if not items:
            return f"No {noun} found matching your criteria."
        shown = ", ".join(describe(item) for item in items[: self._list_limit])
        more = len(items) - self._list_limit
        suffix = f" and {more} more" if more > 0 else ""
        return f"Found {len(items)} {noun}: {shown}{suffix}."


def _result_count(entry: Entry) -> int:
    if isinstance(entry.get("items"), list):
        return len(entry["items"])
    if isinstance(entry.get("count"), int):
        return entry["count"]
    return 1


def _details(entry: Entry) -> Mapping[str, Any]:
    return entry.get("details") or {}


def _create_table(gen: OfflineResponseGenerator, op: OperationDescriptor, entry: Entry) -> Optional[str]:
    details = _details(entry)
    capacity = f" with capacity {details['capacity']}" if details.get("capacity") else ""
    return f"Table {details.get('name', '')} has been added{capacity}. It is now available for seating."


def _delete_table(gen: OfflineResponseGenerator, op: OperationDescriptor, entry: Entry) -> Optional[str]:
    return f"Table {_details(entry).get('name', '')} has been removed from your restaurant."


def _book_table(gen: OfflineResponseGenerator, op: OperationDescriptor, entry: Entry) -> Optional[str]:
    name = op.data.get("customerName")
    guest = f" for {name}" if name else ""
    return f"Table {_details(entry).get('name', '')} is now reserved{guest}."


def _create_order(gen: OfflineResponseGenerator, op: OperationDescriptor, entry: Entry) -> Optional[str]:
    details = _details(entry)
    return f"Order {details.get('orderNumber', '')} has been placed. Total: {gen.money(details.get('finalAmount'))}."


def _order_status(verb: str) -> Renderer:
    def render(gen: OfflineResponseGenerator, op: OperationDescriptor, entry: Entry) -> Optional[str]:
        return f"Order {_details(entry).get('orderNumber', '')} has been {verb}."

    return render


def _updated(noun: str) -> Renderer:
    def render(gen: OfflineResponseGenerator, op: OperationDescriptor, entry: Entry) -> Optional[str]:
        return f"Updated {entry.get('count', 0)} {noun}."

    return render


def _create_menu_item(gen: OfflineResponseGenerator, op: OperationDescriptor, entry: Entry) -> Optional[str]:
    details = _details(entry)
    return f"{details.get('name', 'The item')} has been added to your menu at {gen.money(details.get('price'))}."


def _delete_menu_item(gen: OfflineResponseGenerator, op: OperationDescriptor, entry: Entry) -> Optional[str]:
    return f"{_details(entry).get('name', 'The item')} has been removed from your menu."


def _create_customer(gen: OfflineResponseGenerator, op: OperationDescriptor, entry: Entry) -> Optional[str]:
    return f"Customer {_details(entry).get('name') or op.data.get('phone', '')} has been added."


def _revenue(gen: OfflineResponseGenerator, op: OperationDescriptor, entry: Entry) -> Optional[str]:
    if "sum" not in entry:
        return None
    window = _window_label(op)
    return f"{window}revenue is {gen.money(entry['sum'])} from {entry.get('count', 0)} order(s)."


def _average_order(gen: OfflineResponseGenerator, op: OperationDescriptor, entry: Entry) -> Optional[str]:
    if "average" not in entry:
        return None
    window = _window_label(op)
    return f"{window}average order value is {gen.money(entry['average'])} across {entry.get('count', 0)} order(s)."


def _order_count(gen: OfflineResponseGenerator, op: OperationDescriptor, entry: Entry) -> Optional[str]:
    if "count" not in entry:
        return None
    return f"You have {entry['count']} order(s){_window_suffix(op)}."


def _orders_by_status(gen: OfflineResponseGenerator, op: OperationDescriptor, entry: Entry) -> Optional[str]:
    if "grouped" not in entry:
        return None
    return gen._grouped("orders by status", entry["grouped"])


def _customer_count(gen: OfflineResponseGenerator, op: OperationDescriptor, entry: Entry) -> Optional[str]:
    if "count" not in entry:
        return None
    return f"You have {entry['count']} customer(s){_window_suffix(op)}."


def _popular_items(gen: OfflineResponseGenerator, op: OperationDescriptor, entry: Entry) -> Optional[str]:
    if "grouped" not in entry:
        return None
    if not entry["grouped"]:
        return "No items have been ordered yet."
    return gen._grouped("most popular items", entry["grouped"])


def _tables(gen: OfflineResponseGenerator, op: OperationDescriptor, entry: Entry) -> Optional[str]:
    if "items" not in entry:
        return None
    return gen._listing(entry["items"], "table(s)", lambda t: f"{t.get('name')} ({t.get('status', 'UNKNOWN')})")


def _orders(gen: OfflineResponseGenerator, op: OperationDescriptor, entry: Entry) -> Optional[str]:
    if "items" not in entry:
        return None
    orders = entry["items"]
    if not orders:
        return "No orders found matching your criteria."
    total = sum(to_number(order.get("totalAmount")) or 0.0 for order in orders)
    return f"Found {len(orders)} order(s). Total value: {gen.money(total)}."


def _customers(gen: OfflineResponseGenerator, op: OperationDescriptor, entry: Entry) -> Optional[str]:
    if "items" not in entry:
        return None
    return gen._listing(entry["items"], "customer(s)", lambda c: str(c.get("name") or c.get("phone") or "unnamed"))


def _menu_items(gen: OfflineResponseGenerator, op: OperationDescriptor, entry: Entry) -> Optional[str]:
    if "items" not in entry:
        return None
    return gen._listing(entry["items"], "menu item(s)", lambda m: f"{m.get('name')} ({gen.money(m.get('price'))})")


def _inventory(gen: OfflineResponseGenerator, op: OperationDescriptor, entry: Entry) -> Optional[str]:
    if "items" not in entry:
        return None
    items = entry["items"]
    if not items:
        return "No inventory items found matching your criteria."
    low = [
        str(item.get("name"))
        for item in items
        if isinstance(item.get("currentStock"), (int, float))
        and isinstance(item.get("minStock"), (int, float))
        and item["currentStock"] <= item["minStock"]
    ]
    reply = f"Found {len(items)} inventory item(s)."
    if low:
        reply = f"{reply} Low stock: {', '.join(low[:5])}."
    return reply


WINDOW_LABELS: Mapping[str, str] = {
    "today": "Today's",
    "yesterday": "Yesterday's",
    "this_week": "This week's",
    "last_7_days": "Last 7 days'",
    "this_month": "This month's",
    "last_30_days": "Last 30 days'",
    "this_year": "This year's",
}


def _window_label(op: OperationDescriptor) -> str:
    window = op.filters.get("createdAt")
    label = WINDOW_LABELS.get(window) if isinstance(window, str) else None
    return f"{label} " if label else "Total "


def _window_suffix(op: OperationDescriptor) -> str:
    window = op.filters.get("createdAt")
    if isinstance(window, str) and window in WINDOW_LABELS:
        return " " + window.replace("_", " ")
    return ""


SUCCESS_RENDERERS: Dict[str, Renderer] = {
    "createTable": _create_table,
    "deleteTable": _delete_table,
    "bookTable": _book_table,
    "updateTable": _updated("table(s)"),
    "createOrder": _create_order,
    "cancelOrder": _order_status("cancelled"),
    "completeOrder": _order_status("completed"),
    "updateOrder": _updated("order(s)"),
    "createMenuItem": _create_menu_item,
    "updateMenuItem": _updated("menu item(s)"),
    "deleteMenuItem": _delete_menu_item,
    "createCustomer": _create_customer,
    "updateCustomer": _updated("customer record(s)"),
    "updateInventoryItem": _updated("inventory item(s)"),
    "revenue": _revenue,
    "averageOrderValue": _average_order,
    "orderCount": _order_count,
    "ordersByStatus": _orders_by_status,
    "customerCount": _customer_count,
    "popularItems": _popular_items,
    "tables": _tables,
    "orders": _orders,
    "customers": _customers,
    "menu_items": _menu_items,
    "inventory": _inventory,
}


class ResponseSynthesizer:
    """Turns an execution result into a reply, optionally polished by the LLM.

    Error replies always come from the fixed table. Success replies start from
    the offline draft; the completion service may only rephrase it.
    """

    def __init__(
        self,
        completion: Optional[CompletionService] = None,
        offline: Optional[OfflineResponseGenerator] = None,
        max_tokens: int = 150,
        temperature: float = 0.3,
    ) -> None:
        self._completion = completion
        self._offline = offline or OfflineResponseGenerator()
        self._max_tokens = max_tokens
        self._temperature = temperature

    def synthesize(
        self,
        operations: Sequence[OperationDescriptor],
        result: Mapping[str, Entry],
        utterance: str,
    ) -> str:
        succeeded, failed = split_result(operations, result)
        draft = self._offline.render(operations, result)
        if not succeeded or self._completion is None:
            return draft
        try:
            return self._polish(utterance, draft, succeeded, len(failed))
        except SynthesisFailure as exc:
            logger.info("Using offline reply: %s", exc.message)
        except Exception as exc:
            logger.warning("Response synthesis failed (%s: %s); using offline reply", type(exc).__name__, exc)
        return draft

    def synthesize_error(self, code: Optional[str], message: Optional[str] = None) -> str:
        return error_reply(code, message)

    def _polish(
        self,
        utterance: str,
        draft: str,
        succeeded: Sequence[Tuple[OperationDescriptor, Entry]],
        failed_count: int,
    ) -> str:
        facts = [
            {"operation": operation.name, "result": _facts(entry)}
            for operation, entry in succeeded
        ]
        prompt = (
            "You are a helpful restaurant management assistant.\n"
            f'User asked: "{utterance.strip()}"\n'
            f"Draft reply: {draft}\n"
            f"Facts: {json.dumps(facts, default=str, sort_keys=True)}\n"
            f"Operations that failed: {failed_count}\n\n"
            "Rewrite the draft as one or two friendly, concise sentences. Keep every number "
            "from the draft exactly as written and do not add information that is not in the facts."
        )
        text = (self._completion.complete(prompt, self._max_tokens, self._temperature) or "").strip()
        if not text:
            raise SynthesisFailure("Completion returned no text")
        return text


def _facts(entry: Entry, limit: int = 10) -> Dict[str, Any]:
    facts = {key: value for key, value in entry.items() if key not in {"ids", "id"}}
    if isinstance(facts.get("items"), list):
        facts["items"] = facts["items"][:limit]
    return facts
