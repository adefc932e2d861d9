"""
核心类型定义

提供系统中使用的枚举和类型常量。
"""

from enum import Enum


class ActionType(str, Enum):
    """动作类型枚举（封闭集合）"""
    PLACE_ORDER = "PLACE_ORDER"
    ADD_TO_ORDER = "ADD_TO_ORDER"
    REMOVE_FROM_ORDER = "REMOVE_FROM_ORDER"
    MODIFY_ORDER_ITEM = "MODIFY_ORDER_ITEM"
    CANCEL_ORDER = "CANCEL_ORDER"
    CHECK_ORDERS = "CHECK_ORDERS"
    EDIT_ORDER_REQUEST = "EDIT_ORDER_REQUEST"
    PROVIDE_INFO = "PROVIDE_INFO"
    CLARIFY = "CLARIFY"
    NO_ACTION = "NO_ACTION"

    @property
    def is_mutating(self) -> bool:
        """是否会修改订单状态"""
        return self in MUTATING_ACTIONS

    @property
    def requires_confirmation(self) -> bool:
        """修改类动作必须显式确认，查询类动作立即执行"""
        return self.is_mutating


MUTATING_ACTIONS = frozenset({
    ActionType.PLACE_ORDER,
    ActionType.ADD_TO_ORDER,
    ActionType.REMOVE_FROM_ORDER,
    ActionType.MODIFY_ORDER_ITEM,
    ActionType.CANCEL_ORDER,
})


class OrderStatus(str, Enum):
    """订单状态枚举"""
    PENDING = "PENDING"
    PREPARING = "PREPARING"
    READY = "READY"
    SERVED = "SERVED"
    CANCELLED = "CANCELLED"


class SessionStatus(str, Enum):
    """桌台会话状态枚举"""
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    ABANDONED = "ABANDONED"
    CANCELLED = "CANCELLED"


class OrderOperation(str, Enum):
    """受状态守卫约束的订单操作"""
    ADD_ITEMS = "add_items"
    REMOVE_ITEMS = "remove_items"
    MODIFY_QUANTITY = "modify_quantity"
    CANCEL = "cancel"


class FailureKind(str, Enum):
    """失败分类，日志和指标按此区分"""
    DETECTION = "DetectionFailure"
    VALIDATION = "ValidationFailure"
    GUARD = "GuardFailure"
    EXECUTION = "ExecutionFailure"


class Sentiment(str, Enum):
    """顾客情绪"""
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class PriceRange(str, Enum):
    """价格偏好区间"""
    BUDGET = "budget"
    MODERATE = "moderate"
    PREMIUM = "premium"


class OrderSize(str, Enum):
    """订单规模"""
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


class CommunicationStyle(str, Enum):
    """沟通风格"""
    BRIEF = "brief"
    DETAILED = "detailed"
    FRIENDLY = "friendly"


# 订单被锁定时返回给上层的响应类型
EXPLAIN_ORDER_LOCKED = "EXPLAIN_ORDER_LOCKED"

# 锁定订单时建议的替代动作
ALTERNATIVE_CONTACT_STAFF = "contact_staff"
ALTERNATIVE_PLACE_NEW_ORDER = "place_new_order"
