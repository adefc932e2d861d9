"""
核心模块

提供抽象接口和类型定义，解决循环依赖问题。
"""

from .interfaces import (
    CompletionResult,
    CompletionClient,
    MenuCatalog,
    MemoryStore,
)
from .types import (
    ActionType,
    OrderStatus,
    SessionStatus,
    OrderOperation,
    FailureKind,
    EXPLAIN_ORDER_LOCKED,
)

__all__ = [
    # 接口
    "CompletionResult",
    "CompletionClient",
    "MenuCatalog",
    "MemoryStore",
    # 类型
    "ActionType",
    "OrderStatus",
    "SessionStatus",
    "OrderOperation",
    "FailureKind",
    "EXPLAIN_ORDER_LOCKED",
]
