"""订单修改执行器

每种修改类动作对应一个纯函数 plan(payload, live_order) -> OrderPlan：
先过状态守卫，再算出新明细和新状态。执行器负责以 (状态, 版本号) 比较并设置的方式提交，
总价永远由明细重新计算。
"""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from waiter_engine.core.types import ActionType, OrderStatus, OrderOperation
from waiter_engine.models.action import (
    PendingAction, MutationResult, LineItem,
    PlaceOrderPayload, AddToOrderPayload, RemoveFromOrderPayload,
    ModifyOrderItemPayload, CancelOrderPayload,
)
from waiter_engine.models.order import Order, OrderItem, compute_total, format_money, to_money
from waiter_engine.models.session import CustomerSession
from waiter_engine.infrastructure.database import OrderRepository, AppliedMarker
from waiter_engine.infrastructure.exceptions import (
    ValidationFailure,
    ExecutionFailure,
    DatabaseError,
    StaleOrderStateError,
    OrderNotFoundError,
)
from waiter_engine.services import order_state_machine
from waiter_engine.services.session_lifecycle import SessionLifecycleManager

logger = logging.getLogger(__name__)


def select_target_order(orders: Sequence[Order], reference: Optional[str] = None) -> Optional[Order]:
    """确定动作作用的订单

    有引用时按完整 ID 或 ID 后缀匹配（不区分大小写）；
    否则取最近一个未取消的订单。
    """
    newest_first = sorted(orders, key=lambda o: o.created_at, reverse=True)
    if reference:
        ref = reference.strip().lstrip("#").lower()
        if ref:
            for order in newest_first:
                if order.id.lower() == ref or order.id.lower().endswith(ref):
                    return order
        return None
    for order in newest_first:
        if order.status != OrderStatus.CANCELLED:
            return order
    return None


def order_items_from_lines(lines: Sequence[LineItem]) -> List[OrderItem]:
    return [
        OrderItem(
            menu_item_id=line.menu_item_id,
            name=line.name,
            quantity=line.quantity,
            price_at_time=line.price,
            notes=line.notes,
        )
        for line in lines
    ]


def _describe(items: Sequence[OrderItem]) -> str:
    return ", ".join(f"{item.quantity}x {item.name}" for item in items)


# ==================== 纯函数规划 ====================

@dataclass
class OrderPlan:
    """一次修改的规划结果"""
    operation: OrderOperation
    items: List[OrderItem]
    status: OrderStatus
    message: str

    @property
    def total(self) -> Decimal:
        return compute_total(self.items)


def _find_target_item(order: Order, name: str, menu_item_id: Optional[str]) -> OrderItem:
    item = order.find_item(menu_item_id=menu_item_id, name=name)
    if item is None:
        raise ValidationFailure(
            f"I couldn't find {name} on order #{order.short_id}. "
            f"It currently has: {_describe(order.items) or 'no items'}.",
            details={"order_id": order.id, "item": name}
        )
    return item


def plan_add_items(payload: AddToOrderPayload, order: Order) -> OrderPlan:
    order_state_machine.check(order, OrderOperation.ADD_ITEMS)
    items = [OrderItem(**_copy_fields(item)) for item in order.items]
    for line in payload.items:
        existing = next(
            (i for i in items if i.menu_item_id == line.menu_item_id and (i.notes or None) == (line.notes or None)),
            None
        )
        # 已有的行保留原来的 price_at_time
        if existing is not None:
            existing.quantity += line.quantity
        else:
            items.append(OrderItem(
                menu_item_id=line.menu_item_id,
                name=line.name,
                quantity=line.quantity,
                price_at_time=line.price,
                notes=line.notes,
            ))
    added = _describe(order_items_from_lines(payload.items))
    return OrderPlan(
        OrderOperation.ADD_ITEMS, items, order.status,
        f"Added {added} to order #{order.short_id}. New total: {format_money(compute_total(items))}."
    )


def plan_remove_items(payload: RemoveFromOrderPayload, order: Order) -> OrderPlan:
    order_state_machine.check(order, OrderOperation.REMOVE_ITEMS)
    target = _find_target_item(order, payload.item_name, payload.menu_item_id)

    items = []
    removed = target.quantity if payload.quantity is None else min(payload.quantity, target.quantity)
    for item in order.items:
        copy = OrderItem(**_copy_fields(item))
        if item is target:
            if removed >= item.quantity:
                continue
            copy.quantity -= removed
        items.append(copy)

    if not items:
        raise ValidationFailure(
            f"{target.name} is the only item on order #{order.short_id}. "
            f"Would you like to cancel the order instead?",
            details={"order_id": order.id, "suggested_action": ActionType.CANCEL_ORDER.value}
        )
    return OrderPlan(
        OrderOperation.REMOVE_ITEMS, items, order.status,
        f"Removed {removed}x {target.name} from order #{order.short_id}. "
        f"New total: {format_money(compute_total(items))}."
    )


def plan_modify_quantity(payload: ModifyOrderItemPayload, order: Order) -> OrderPlan:
    order_state_machine.check(order, OrderOperation.MODIFY_QUANTITY)
    if payload.new_quantity is None and not payload.special_request:
        raise ValidationFailure(
            f"How would you like to change the {payload.item_name}?",
            details={"order_id": order.id, "item": payload.item_name}
        )
    target = _find_target_item(order, payload.item_name, payload.menu_item_id)

    items = []
    for item in order.items:
        copy = OrderItem(**_copy_fields(item))
        if item is target:
            if payload.new_quantity is not None:
                copy.quantity = payload.new_quantity
            if payload.special_request:
                copy.notes = payload.special_request
        items.append(copy)

    changes = []
    if payload.new_quantity is not None:
        changes.append(f"quantity {payload.new_quantity}")
    if payload.special_request:
        changes.append(f"note \"{payload.special_request}\"")
    return OrderPlan(
        OrderOperation.MODIFY_QUANTITY, items, order.status,
        f"Updated {target.name} on order #{order.short_id} ({', '.join(changes)}). "
        f"New total: {format_money(compute_total(items))}."
    )


def plan_cancel(payload: CancelOrderPayload, order: Order) -> OrderPlan:
    order_state_machine.check(order, OrderOperation.CANCEL)
    items = [OrderItem(**_copy_fields(item)) for item in order.items]
    return OrderPlan(
        OrderOperation.CANCEL, items, OrderStatus.CANCELLED,
        f"Order #{order.short_id} has been cancelled. You haven't been charged for it."
    )


def _copy_fields(item: OrderItem) -> Dict:
    return dict(
        menu_item_id=item.menu_item_id,
        name=item.name,
        quantity=item.quantity,
        price_at_time=item.price_at_time,
        notes=item.notes,
    )


PlanFunction = Callable[..., OrderPlan]

# 修改类动作的唯一分发表
PLANS: Dict[ActionType, Tuple[OrderOperation, PlanFunction]] = {
    ActionType.ADD_TO_ORDER: (OrderOperation.ADD_ITEMS, plan_add_items),
    ActionType.REMOVE_FROM_ORDER: (OrderOperation.REMOVE_ITEMS, plan_remove_items),
    ActionType.MODIFY_ORDER_ITEM: (OrderOperation.MODIFY_QUANTITY, plan_modify_quantity),
    ActionType.CANCEL_ORDER: (OrderOperation.CANCEL, plan_cancel),
}


# ==================== 执行器 ====================

class OrderMutationExecutor:
    """以实时状态重新校验并提交修改"""

    def __init__(
        self,
        orders: OrderRepository,
        lifecycle: SessionLifecycleManager,
        total_tolerance: float = 0.01
    ):
        self.orders = orders
        self.lifecycle = lifecycle
        self.total_tolerance = Decimal(str(total_tolerance))

    def execute(self, action: PendingAction, marker_key: Optional[str] = None) -> MutationResult:
        """执行一个已确认的修改类动作

        Raises:
            ValidationFailure: 载荷与实时状态不符（找不到订单/菜品、总价不符）
            GuardFailure: 订单当前状态不允许该操作
            ExecutionFailure: 写库失败
            ActionAlreadyAppliedError: marker_key 已被执行过
        """
        if not action.type.is_mutating:
            raise ValidationFailure(f"{action.type.value} does not change an order")

        try:
            if action.type == ActionType.PLACE_ORDER:
                session = self.lifecycle.get_or_create_active(action.restaurant_id, action.table_number)
                return self.place_order(action.payload, session, marker_key)

            session = self.lifecycle.find_active(action.restaurant_id, action.table_number)
            live_orders = self.orders.list_by_session(session.id) if session else []
            order = select_target_order(live_orders, getattr(action.payload, "order_id", None))

            if order is None:
                if action.type == ActionType.ADD_TO_ORDER and not action.payload.order_id:
                    session = session or self.lifecycle.get_or_create_active(
                        action.restaurant_id, action.table_number
                    )
                    return self._create_order(session, action.payload.items, None, marker_key, action.type)
                raise ValidationFailure(
                    "I couldn't find an order to update at this table.",
                    details={"order_reference": getattr(action.payload, "order_id", None)}
                )

            return self._apply_plan(action, order, marker_key)
        except DatabaseError as e:
            raise ExecutionFailure(f"Could not save the change to your order: {e.message}", cause=e)

    def place_order(
        self,
        payload: PlaceOrderPayload,
        session: CustomerSession,
        marker_key: Optional[str] = None
    ) -> MutationResult:
        """下新订单；重新计算的总价必须与检测时给出的总价在容差内一致"""
        if not payload.items:
            raise ValidationFailure("An order needs at least one item.")

        computed = compute_total(order_items_from_lines(payload.items))
        expected = to_money(payload.estimated_total)
        if abs(computed - expected) > self.total_tolerance:
            logger.warning(f"下单总价不符: computed={computed} expected={expected}")
            raise ValidationFailure(
                f"The order total doesn't add up ({format_money(computed)} vs {format_money(expected)}). "
                f"Please tell me your order again.",
                details={"computed_total": str(computed), "estimated_total": str(expected)}
            )
        return self._create_order(session, payload.items, payload.customer_notes, marker_key, ActionType.PLACE_ORDER)

    def _create_order(
        self,
        session: CustomerSession,
        lines: Sequence[LineItem],
        notes: Optional[str],
        marker_key: Optional[str],
        action_type: ActionType
    ) -> MutationResult:
        order = Order(
            id=f"ord_{uuid.uuid4().hex[:16]}",
            session_id=session.id,
            restaurant_id=session.restaurant_id,
            table_number=session.table_number,
            items=order_items_from_lines(lines),
            notes=notes,
        )
        order.recompute_total()
        message = (
            f"Your order #{order.short_id} has been placed! Total: {format_money(order.total)}. "
            f"I'll let the kitchen know."
        )
        marker = self._marker(marker_key, action_type, message, order, order_created=True)
        created = self.orders.create(order, marker)
        logger.info(f"订单已创建: {created.id} session={session.id} total={created.total}")
        return MutationResult(success=True, message=message, order=created, order_created=True)

    def _apply_plan(self, action: PendingAction, order: Order, marker_key: Optional[str]) -> MutationResult:
        operation, plan_fn = PLANS[action.type]
        plan = plan_fn(action.payload, order)

        planned = Order(
            id=order.id, session_id=order.session_id, restaurant_id=order.restaurant_id,
            table_number=order.table_number, items=plan.items, status=plan.status,
            notes=order.notes, created_at=order.created_at, version=order.version + 1,
        )
        planned.recompute_total()
        marker = self._marker(marker_key, action.type, plan.message, planned)

        try:
            committed = self.orders.commit_mutation(order, plan.items, plan.status, marker)
        except StaleOrderStateError:
            # 规划之后订单被并发修改：状态变了（例如后厨已开始制作）按最新状态重新过守卫，
            # 只是明细变了则不覆盖，交给顾客重试
            fresh = self.orders.get(order.id)
            if fresh is None:
                raise OrderNotFoundError(order.id)
            order_state_machine.check(fresh, operation)
            raise ExecutionFailure(f"Order #{order.short_id} changed while we were updating it. Please try again.")

        logger.info(f"订单已修改: {committed.id} op={operation.value} total={committed.total}")
        return MutationResult(success=True, message=plan.message, order=committed)

    @staticmethod
    def _marker(
        marker_key: Optional[str],
        action_type: ActionType,
        message: str,
        order: Order,
        order_created: bool = False
    ) -> Optional[AppliedMarker]:
        if marker_key is None:
            return None
        return AppliedMarker(
            action_key=marker_key,
            action_type=action_type.value,
            result={
                "success": True,
                "message": message,
                "order": order.to_dict(),
                "order_created": order_created,
            }
        )

    # ==================== 后厨/员工流转 ====================

    def advance_status(self, order_id: str, target: OrderStatus, by_staff: bool = True) -> Order:
        """推进订单状态（不经过对话确认流程）

        Raises:
            OrderNotFoundError: 订单不存在
            InvalidTransitionError: 流转不合法
        """
        order = self.orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        order_state_machine.check_transition(order, target, by_staff=by_staff)
        try:
            updated = self.orders.update_status(order, target)
        except StaleOrderStateError:
            fresh = self.orders.get(order_id)
            order_state_machine.check_transition(fresh, target, by_staff=by_staff)
            updated = self.orders.update_status(fresh, target)
        except DatabaseError as e:
            raise ExecutionFailure(f"Could not update order status: {e.message}", cause=e)
        logger.info(f"订单状态流转: {order_id} {order.status.value} -> {target.value}")
        return updated
