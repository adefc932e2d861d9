"""API 模块"""

from .schemas import ChatRequest, ConfirmActionRequest, EndSessionRequest, OrderStatusRequest, HistoryMessage

__all__ = [
    "ChatRequest",
    "ConfirmActionRequest",
    "EndSessionRequest",
    "OrderStatusRequest",
    "HistoryMessage",
]
