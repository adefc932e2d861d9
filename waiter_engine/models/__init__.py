"""数据模型模块"""

from .menu import MenuItem, Restaurant
from .order import OrderItem, Order, compute_total
from .session import CustomerSession
from .memory import ConversationMemory, CustomerPreferences
from .action import PendingAction, DetectionResult, ConfirmationResult, ChatTurn

__all__ = [
    "MenuItem",
    "Restaurant",
    "OrderItem",
    "Order",
    "compute_total",
    "CustomerSession",
    "ConversationMemory",
    "CustomerPreferences",
    "PendingAction",
    "DetectionResult",
    "ConfirmationResult",
    "ChatTurn",
]
