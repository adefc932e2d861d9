"""拒绝确认时的回复

拒绝不是错误，而是正常的协议分支：按动作类型给出替代方案和下一步建议，不做任何修改。
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from waiter_engine.core.types import ActionType
from waiter_engine.models.action import PendingAction
from waiter_engine.models.menu import MenuItem
from waiter_engine.services.recommendation import Suggestion


@dataclass
class Rejection:
    message: str
    alternatives: List[str] = field(default_factory=list)
    suggested_actions: List[str] = field(default_factory=list)


def _similar_items(action: PendingAction, menu_items: Sequence[MenuItem], limit: int = 3) -> List[MenuItem]:
    """同类别中未被选中的菜品"""
    chosen = {line.menu_item_id for line in getattr(action.payload, "items", [])}
    by_id = {item.id: item for item in menu_items}
    categories = [by_id[i].category for i in chosen if i in by_id]
    return [
        item for item in menu_items
        if item.available and item.category in categories and item.id not in chosen
    ][:limit]


def build_rejection(
    action: PendingAction,
    menu_items: Sequence[MenuItem] = (),
    recommendation: Optional[Suggestion] = None
) -> Rejection:
    if action.type in (ActionType.PLACE_ORDER, ActionType.ADD_TO_ORDER):
        similar = _similar_items(action, menu_items)
        alternatives = [f"{item.name} (${item.price})" for item in similar]
        if recommendation is not None:
            alternatives.extend(
                f"{item.name} (${item.price})" for item in recommendation.items
                if f"{item.name} (${item.price})" not in alternatives
            )
        message = "No problem, I haven't added anything."
        if alternatives:
            message += f" Maybe one of these instead: {', '.join(alternatives[:3])}?"
        else:
            message += " What would you like instead?"
        return Rejection(
            message=message,
            alternatives=alternatives[:3],
            suggested_actions=["modify_selection", "browse_menu", "ask_for_recommendation"],
        )

    if action.type == ActionType.REMOVE_FROM_ORDER:
        return Rejection(
            message=f"Okay, the {action.payload.item_name} stays on your order.",
            suggested_actions=["change_quantity", "check_orders"],
        )

    if action.type == ActionType.MODIFY_ORDER_ITEM:
        return Rejection(
            message=f"Got it, I'll leave the {action.payload.item_name} as it was.",
            suggested_actions=["edit_order_request", "check_orders"],
        )

    if action.type == ActionType.CANCEL_ORDER:
        return Rejection(
            message="Great, your order stays as it is. Let me know if you'd like to change anything on it.",
            suggested_actions=["modify_order", "add_to_order", "check_orders"],
        )

    return Rejection(message="No problem. What would you like to do instead?", suggested_actions=["browse_menu"])
