"""对话动作引擎

一轮对话：上下文构建 -> 动作检测 -> 查询类立即回答 / 修改类提交确认 -> 更新对话记忆。
确认、员工推进订单状态、结束会话也都从这里进入。
"""

import logging
from collections import defaultdict
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from waiter_engine.config import EngineSettings
from waiter_engine.core.interfaces import MenuCatalog
from waiter_engine.core.types import (
    ActionType, OrderStatus, OrderOperation, SessionStatus, EXPLAIN_ORDER_LOCKED, FailureKind,
)
from waiter_engine.models.action import PendingAction, ChatTurn, ConfirmationResult
from waiter_engine.models.menu import MenuItem
from waiter_engine.models.order import Order, format_money
from waiter_engine.infrastructure.database import OrderRepository
from waiter_engine.infrastructure.exceptions import GuardFailure
from waiter_engine.infrastructure.monitoring import get_structured_logger
from waiter_engine.nlp.context_builder import WaiterContext, build_context
from waiter_engine.nlp.menu_resolver import MenuItemResolver
from waiter_engine.nlp.fallback import FallbackActionMatcher
from waiter_engine.services import order_state_machine
from waiter_engine.services.action_detector import ActionDetector, DEFAULT_REPLY
from waiter_engine.services.confirmation import ConfirmationProtocol
from waiter_engine.services.conversation_memory import ConversationMemoryService
from waiter_engine.services.order_executor import OrderMutationExecutor, select_target_order
from waiter_engine.services.recommendation import (
    RecommendationEngine, RecommendationContext, Suggestion, lines_from_order_items,
)
from waiter_engine.services.session_lifecycle import SessionLifecycleManager

logger = logging.getLogger(__name__)
events = get_structured_logger(__name__)

NO_ORDERS_REPLY = "You haven't ordered anything yet at this table. Would you like to see the menu?"
NO_OPEN_ORDER_REPLY = "I couldn't find an open order for this table. Would you like to place one?"


class ActionEngine:
    """对话动作引擎

    所有依赖由外部注入；进程级装配见 infrastructure.container。
    """

    def __init__(
        self,
        catalog: MenuCatalog,
        lifecycle: SessionLifecycleManager,
        orders: OrderRepository,
        memory: ConversationMemoryService,
        detector: ActionDetector,
        protocol: ConfirmationProtocol,
        executor: OrderMutationExecutor,
        recommender: RecommendationEngine,
        settings: Optional[EngineSettings] = None
    ):
        self.catalog = catalog
        self.lifecycle = lifecycle
        self.orders = orders
        self.memory = memory
        self.detector = detector
        self.protocol = protocol
        self.executor = executor
        self.recommender = recommender
        self.settings = settings or EngineSettings()

    # ==================== 对话 ====================

    def handle_message(
        self,
        restaurant_id: str,
        table_number: int,
        message: str,
        history: Optional[Sequence[Dict[str, str]]] = None
    ) -> ChatTurn:
        """处理一条顾客消息

        Raises:
            NotFoundError: 餐厅不存在
        """
        restaurant = self.catalog.get_restaurant(restaurant_id)
        session = self.lifecycle.get_or_create_active(restaurant_id, table_number)
        self.lifecycle.touch(session.id)

        context = build_context(
            restaurant,
            table_number,
            history=history or [],
            session=session,
            orders=self.orders.list_by_session(session.id),
            memory=self.memory.get(session.id),
            history_window=self.settings.history_window,
        )
        detection = self.detector.detect(message, context)

        pending: Optional[PendingAction] = None
        data: Dict[str, Any] = dict(detection.data)
        if detection.response_type:
            data["response_type"] = detection.response_type

        if detection.action is None:
            reply = detection.reply or DEFAULT_REPLY
        elif detection.action.requires_confirmation:
            pending = self.protocol.propose(detection.action)
            reply = pending.confirmation_message
            data["response_type"] = "CONFIRMATION_REQUIRED"
        else:
            reply, extra = self.answer(detection.action, context)
            data.update(extra)

        self.memory.record_exchange(
            session.id,
            message,
            reply,
            action_taken=detection.action.type.value if detection.action else None,
            menu_items=context.menu_items,
        )
        return ChatTurn(
            message=reply,
            session_id=session.id,
            pending_action=pending,
            confidence=detection.confidence,
            used_fallback=detection.used_fallback,
            data=data,
        )

    def confirm_action(
        self,
        action_id: str,
        confirmed: bool,
        fallback: Optional[Dict[str, Any]] = None
    ) -> ConfirmationResult:
        return self.protocol.confirm(action_id, confirmed, fallback)

    # ==================== 查询类动作：按实时状态立即回答 ====================

    def answer(self, action: PendingAction, context: WaiterContext) -> Tuple[str, Dict[str, Any]]:
        handler = {
            ActionType.CHECK_ORDERS: self._answer_check_orders,
            ActionType.EDIT_ORDER_REQUEST: self._answer_edit_request,
            ActionType.PROVIDE_INFO: self._answer_information,
            ActionType.CLARIFY: self._answer_clarify,
        }.get(action.type)
        if handler is None:
            return DEFAULT_REPLY, {}
        return handler(action, context)

    def _answer_check_orders(self, action: PendingAction, context: WaiterContext) -> Tuple[str, Dict[str, Any]]:
        orders = sorted(context.orders, key=lambda o: o.created_at)
        if action.payload.order_id:
            target = select_target_order(orders, action.payload.order_id)
            if target is None:
                return f"I couldn't find order #{action.payload.order_id.lstrip('#').upper()} at this table.", {}
            orders = [target]
        if not orders:
            return NO_ORDERS_REPLY, {"orders": []}

        lines = [order.summary_line() for order in orders]
        active_total = sum((o.total for o in orders if o.status != OrderStatus.CANCELLED), Decimal("0.00"))
        reply = "Here's what you have so far:\n" + "\n".join(lines)
        if len(orders) > 1:
            reply += f"\n\nTotal so far: {format_money(active_total)}"
        return reply, {"orders": [order.to_dict() for order in orders]}

    def _answer_edit_request(self, action: PendingAction, context: WaiterContext) -> Tuple[str, Dict[str, Any]]:
        target = select_target_order(context.orders, action.payload.order_id)
        if target is None:
            return NO_OPEN_ORDER_REPLY, {}
        try:
            order_state_machine.check(target, OrderOperation.MODIFY_QUANTITY)
        except GuardFailure as e:
            events.log_failure(FailureKind.GUARD, e.message, order_id=e.order_id, stage="edit_request")
            return e.message, {
                "response_type": EXPLAIN_ORDER_LOCKED,
                "alternatives": e.alternatives,
                "order_id": e.order_id,
                "status": e.status,
            }
        return (
            f"{target.summary_line()}\n\nYou can add or remove items, change a quantity, or cancel it. "
            f"What would you like to change?",
            {"order": target.to_dict()},
        )

    def _answer_information(self, action: PendingAction, context: WaiterContext) -> Tuple[str, Dict[str, Any]]:
        payload = action.payload
        if payload.information_type == "recommendation":
            suggestions = self.recommend(context)
            if not suggestions:
                return "Everything on our menu is great! Our popular dishes are a good place to start.", {}
            lines = [
                f"• {s.message}: " + ", ".join(f"{i.name} ({format_money(i.price)})" for i in s.items[:2])
                for s in suggestions
            ]
            return "Here are a few ideas:\n" + "\n".join(lines), {
                "recommendations": [s.to_dict() for s in suggestions]
            }

        item = self._find_item(payload.menu_item_id, payload.query, context.menu_items)
        if payload.reply:
            return payload.reply, {"menu_item": item.to_dict()} if item else {}
        if item is not None:
            return describe_item(item), {"menu_item": item.to_dict()}
        return menu_overview(context.menu_items), {}

    @staticmethod
    def _answer_clarify(action: PendingAction, context: WaiterContext) -> Tuple[str, Dict[str, Any]]:
        reply = action.payload.question
        if action.payload.options:
            reply += "\nOptions: " + ", ".join(action.payload.options)
        return reply, {"response_type": "CLARIFICATION", "options": list(action.payload.options)}

    @staticmethod
    def _find_item(menu_item_id: Optional[str], query: str, menu_items: Sequence[MenuItem]) -> Optional[MenuItem]:
        if menu_item_id:
            resolved = MenuItemResolver(menu_items).resolve(menu_item_id=menu_item_id)
            if resolved:
                return resolved.item
        if query:
            found = FallbackActionMatcher(menu_items).extract_items(query)
            if found:
                return found[0][0]
        return None

    def recommend(self, context: WaiterContext) -> List[Suggestion]:
        target = select_target_order(context.orders)
        current = lines_from_order_items(target.items, context.menu_items) if target else []
        return self.recommender.generate(RecommendationContext(
            menu_items=context.menu_items,
            current_order=current,
            memory=context.memory,
        ))

    # ==================== 员工与会话操作 ====================

    def advance_status(self, order_id: str, status: OrderStatus, by_staff: bool = True) -> Order:
        return self.executor.advance_status(order_id, status, by_staff=by_staff)

    def table_session(self, restaurant_id: str, table_number: int) -> Optional[Dict[str, Any]]:
        session = self.lifecycle.find_active(restaurant_id, table_number)
        if session is None:
            return None
        summary = self.lifecycle.session_summary(session.id)
        memory = self.memory.get(session.id)
        summary["memory"] = memory.to_dict() if memory else None
        return summary

    def end_session(
        self,
        session_id: str,
        status: Optional[SessionStatus] = None,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        """结束会话；未指定状态时按订单情况推断"""
        final_status = status or self.lifecycle.determine_end_reason(session_id)
        self.lifecycle.end(session_id, final_status, notes)
        return self.lifecycle.session_summary(session_id)

    def abandon_stale(self) -> List[str]:
        return self.lifecycle.abandon_stale()


def describe_item(item: MenuItem) -> str:
    text = f"{item.name} is {format_money(item.price)}."
    if item.description:
        text += f" {item.description}"
    if item.dietary_tags:
        text += f" It's {', '.join(item.dietary_tags)}."
    return text + " Would you like to order it?"


def menu_overview(menu_items: Sequence[MenuItem]) -> str:
    by_category: Dict[str, List[MenuItem]] = defaultdict(list)
    for item in menu_items:
        by_category[item.category].append(item)
    if not by_category:
        return "Our menu is being updated right now. Please ask a member of staff."
    lines = [
        f"{category.title()}: " + ", ".join(f"{i.name} ({format_money(i.price)})" for i in items)
        for category, items in by_category.items()
    ]
    return "Here's our menu:\n" + "\n".join(lines)
