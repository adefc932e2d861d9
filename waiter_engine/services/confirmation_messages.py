"""确认文案

修改类动作在执行前展示给顾客的确认语，每种动作类型一种。
"""

from typing import Optional

from waiter_engine.core.types import ActionType
from waiter_engine.models.action import (
    ActionPayload, PlaceOrderPayload, AddToOrderPayload, RemoveFromOrderPayload,
    ModifyOrderItemPayload, CancelOrderPayload,
)
from waiter_engine.models.order import Order, format_money, to_money


def _bullets(items) -> str:
    return "\n".join(
        f"• {item.quantity}x {item.name} - {format_money(to_money(item.price) * item.quantity)}"
        + (f" ({item.notes})" if item.notes else "")
        for item in items
    )


def _order_ref(order: Optional[Order]) -> str:
    return f"order #{order.short_id}" if order else "your order"


def place_order_message(payload: PlaceOrderPayload, order: Optional[Order] = None) -> str:
    message = f"I'll place this order for you:\n{_bullets(payload.items)}\n\nTotal: {format_money(payload.estimated_total)}"
    if payload.customer_notes:
        message += f"\nNotes: {payload.customer_notes}"
    return message + "\n\nShall I place this order?"


def add_to_order_message(payload: AddToOrderPayload, order: Optional[Order] = None) -> str:
    added = sum((to_money(item.price) * item.quantity for item in payload.items), to_money(0))
    if order is None:
        return (
            f"You don't have an open order yet, so I'll start a new one with:\n{_bullets(payload.items)}\n\n"
            f"Total: {format_money(added)}\n\nShall I place it?"
        )
    return (
        f"I'll add these to {_order_ref(order)}:\n{_bullets(payload.items)}\n\n"
        f"That's {format_money(added)} more, bringing the total to {format_money(order.total + added)}.\n\n"
        f"Shall I add them?"
    )


def remove_from_order_message(payload: RemoveFromOrderPayload, order: Optional[Order] = None) -> str:
    amount = f"{payload.quantity}x " if payload.quantity else ""
    return f"I'll remove {amount}{payload.item_name} from {_order_ref(order)}. Is that right?"


def modify_order_item_message(payload: ModifyOrderItemPayload, order: Optional[Order] = None) -> str:
    changes = []
    if payload.new_quantity is not None:
        changes.append(f"change the quantity to {payload.new_quantity}")
    if payload.special_request:
        changes.append(f"note \"{payload.special_request}\"")
    what = " and ".join(changes) or "update it"
    return f"For the {payload.item_name} on {_order_ref(order)}, I'll {what}. Shall I go ahead?"


def cancel_order_message(payload: CancelOrderPayload, order: Optional[Order] = None) -> str:
    summary = ""
    if order is not None and order.items:
        items = ", ".join(f"{item.quantity}x {item.name}" for item in order.items)
        summary = f" ({items}, {format_money(order.total)})"
    return f"Are you sure you want to cancel {_order_ref(order)}{summary}? This can't be undone."


_BUILDERS = {
    ActionType.PLACE_ORDER: place_order_message,
    ActionType.ADD_TO_ORDER: add_to_order_message,
    ActionType.REMOVE_FROM_ORDER: remove_from_order_message,
    ActionType.MODIFY_ORDER_ITEM: modify_order_item_message,
    ActionType.CANCEL_ORDER: cancel_order_message,
}


def build_confirmation_message(action_type: ActionType, payload: ActionPayload, order: Optional[Order] = None) -> str:
    builder = _BUILDERS.get(action_type)
    if builder is None:
        return ""
    return builder(payload, order)
