"""上下文构建

把餐厅、桌台、会话、订单和对话记忆组装成一个上下文对象，并渲染系统 Prompt。
纯函数，无副作用。
"""

from dataclasses import dataclass, field
from typing import List, Dict, Optional, Sequence

from waiter_engine.models.menu import Restaurant, MenuItem
from waiter_engine.models.order import Order
from waiter_engine.models.session import CustomerSession
from waiter_engine.models.memory import ConversationMemory
from waiter_engine.services.conversation_memory import render_digest
from waiter_engine.nlp.prompts import SYSTEM_PROMPT_TEMPLATE, MENU_LINE, NO_SESSION, NO_ORDERS


@dataclass
class WaiterContext:
    """一次检测所需的全部上下文（只读快照）"""
    restaurant: Restaurant
    table_number: int
    menu_items: List[MenuItem]
    history: List[Dict[str, str]] = field(default_factory=list)
    session: Optional[CustomerSession] = None
    orders: List[Order] = field(default_factory=list)
    memory: Optional[ConversationMemory] = None

    @property
    def restaurant_id(self) -> str:
        return self.restaurant.id

    def find_menu_item(self, item_id: str) -> Optional[MenuItem]:
        for item in self.menu_items:
            if item.id == item_id:
                return item
        return None


def build_context(
    restaurant: Restaurant,
    table_number: int,
    history: Sequence[Dict[str, str]] = (),
    session: Optional[CustomerSession] = None,
    orders: Sequence[Order] = (),
    memory: Optional[ConversationMemory] = None,
    history_window: int = 5
) -> WaiterContext:
    """组装上下文，菜单只保留当前可点的菜品"""
    recent = [
        {"role": m["role"], "content": m["content"]}
        for m in history
        if m.get("role") in ("user", "assistant") and m.get("content")
    ]
    return WaiterContext(
        restaurant=restaurant,
        table_number=table_number,
        menu_items=restaurant.available_items(),
        history=recent[-history_window:] if history_window > 0 else [],
        session=session,
        orders=list(orders),
        memory=memory,
    )


def _render_menu(items: Sequence[MenuItem]) -> str:
    lines = []
    for item in items:
        tags = f" [{', '.join(item.dietary_tags)}]" if item.dietary_tags else ""
        lines.append(MENU_LINE.format(
            id=item.id, name=item.name, category=item.category, price=item.price,
            tags=tags, popular=" *popular*" if item.popular else ""
        ))
    return "\n".join(lines) if lines else "The menu is currently empty."


def _render_orders(orders: Sequence[Order]) -> str:
    if not orders:
        return NO_ORDERS
    return "\n".join(f"- {order.summary_line()}" for order in orders)


def _render_session(session: Optional[CustomerSession]) -> str:
    if session is None:
        return NO_SESSION
    return (
        f"Session {session.id} ({session.status.value}), "
        f"{session.total_orders} order(s), spent ${session.total_spent}"
    )


def render_system_prompt(context: WaiterContext) -> str:
    memory = render_digest(context.memory, context.menu_items)
    return SYSTEM_PROMPT_TEMPLATE.format(
        waiter_name=context.restaurant.waiter_name,
        restaurant_name=context.restaurant.name,
        personality=context.restaurant.waiter_personality,
        table_number=context.table_number,
        menu=_render_menu(context.menu_items),
        session=_render_session(context.session),
        orders=_render_orders(context.orders),
        memory=f"\n{memory}" if memory else "",
    )


def build_messages(context: WaiterContext, message: str) -> List[Dict[str, str]]:
    """系统 Prompt + 最近历史 + 当前消息"""
    return [
        {"role": "system", "content": render_system_prompt(context)},
        *context.history,
        {"role": "user", "content": message},
    ]
