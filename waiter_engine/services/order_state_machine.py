"""订单状态机

权威的订单生命周期和状态守卫。所有修改在执行前都以当前状态重新过一遍守卫。

    PENDING -> PREPARING -> READY -> SERVED
    PENDING -> CANCELLED
    PREPARING -> CANCELLED（仅员工）
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from waiter_engine.core.types import (
    OrderStatus, OrderOperation,
    ALTERNATIVE_CONTACT_STAFF, ALTERNATIVE_PLACE_NEW_ORDER,
)
from waiter_engine.models.order import Order
from waiter_engine.infrastructure.exceptions import GuardFailure, InvalidTransitionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderCapabilities:
    """某个状态下允许的操作"""
    can_add_items: bool
    can_remove_items: bool
    can_modify_quantity: bool
    can_cancel: bool
    reason: Optional[str] = None

    def allows(self, operation: OrderOperation) -> bool:
        return {
            OrderOperation.ADD_ITEMS: self.can_add_items,
            OrderOperation.REMOVE_ITEMS: self.can_remove_items,
            OrderOperation.MODIFY_QUANTITY: self.can_modify_quantity,
            OrderOperation.CANCEL: self.can_cancel,
        }[operation]


_LOCKED = dict(can_add_items=False, can_remove_items=False, can_modify_quantity=False, can_cancel=False)

CAPABILITIES: Dict[OrderStatus, OrderCapabilities] = {
    OrderStatus.PENDING: OrderCapabilities(
        can_add_items=True, can_remove_items=True, can_modify_quantity=True, can_cancel=True
    ),
    OrderStatus.PREPARING: OrderCapabilities(
        reason="it's already being prepared in the kitchen; cancelling now requires a staff member", **_LOCKED
    ),
    OrderStatus.READY: OrderCapabilities(reason="it's ready to be served", **_LOCKED),
    OrderStatus.SERVED: OrderCapabilities(reason="it has already been served", **_LOCKED),
    OrderStatus.CANCELLED: OrderCapabilities(reason="it has been cancelled", **_LOCKED),
}

TRANSITIONS: Dict[OrderStatus, List[OrderStatus]] = {
    OrderStatus.PENDING: [OrderStatus.PREPARING, OrderStatus.CANCELLED],
    OrderStatus.PREPARING: [OrderStatus.READY, OrderStatus.CANCELLED],
    OrderStatus.READY: [OrderStatus.SERVED],
    OrderStatus.SERVED: [],
    OrderStatus.CANCELLED: [],
}

# 只有员工能执行的流转
STAFF_ONLY_TRANSITIONS = {(OrderStatus.PREPARING, OrderStatus.CANCELLED)}

_OPERATION_VERBS = {
    OrderOperation.ADD_ITEMS: "add items to",
    OrderOperation.REMOVE_ITEMS: "remove items from",
    OrderOperation.MODIFY_QUANTITY: "change",
    OrderOperation.CANCEL: "cancel",
}


def capabilities_for(status: OrderStatus) -> OrderCapabilities:
    return CAPABILITIES[status]


def alternatives_for(status: OrderStatus, operation: OrderOperation) -> List[str]:
    """被锁定时建议的替代动作"""
    if status in (OrderStatus.PREPARING, OrderStatus.READY):
        if operation == OrderOperation.ADD_ITEMS:
            return [ALTERNATIVE_PLACE_NEW_ORDER, ALTERNATIVE_CONTACT_STAFF]
        return [ALTERNATIVE_CONTACT_STAFF]
    return [ALTERNATIVE_PLACE_NEW_ORDER]


def guard_message(order: Order, operation: OrderOperation) -> str:
    """面向顾客的守卫失败说明，必须包含当前状态名"""
    caps = capabilities_for(order.status)
    verb = _OPERATION_VERBS[operation]
    message = (
        f"Cannot {verb} order #{order.short_id} - it is {order.status.value}"
        f" ({caps.reason}). Orders can only be changed before kitchen preparation begins."
    )
    if operation == OrderOperation.ADD_ITEMS and order.status != OrderStatus.CANCELLED:
        message += " I can start a new order for you instead."
    elif order.status == OrderStatus.PREPARING:
        message += " Please ask a member of staff if you need help with it."
    return message


def check(order: Order, operation: OrderOperation) -> None:
    """断言守卫

    Raises:
        GuardFailure: 当前状态不允许该操作，订单保持不变
    """
    if capabilities_for(order.status).allows(operation):
        return
    logger.info(f"守卫拒绝: order={order.id} status={order.status.value} op={operation.value}")
    raise GuardFailure(
        message=guard_message(order, operation),
        order_id=order.id,
        status=order.status.value,
        operation=operation.value,
        alternatives=alternatives_for(order.status, operation),
    )


def can_transition(current: OrderStatus, target: OrderStatus, by_staff: bool = False) -> bool:
    if target not in TRANSITIONS[current]:
        return False
    if (current, target) in STAFF_ONLY_TRANSITIONS and not by_staff:
        return False
    return True


def check_transition(order: Order, target: OrderStatus, by_staff: bool = False) -> None:
    """校验状态流转

    Raises:
        InvalidTransitionError: 流转不合法
    """
    if not can_transition(order.status, target, by_staff):
        raise InvalidTransitionError(order.id, order.status.value, target.value)
