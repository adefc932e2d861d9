"""桌台会话生命周期管理"""

import logging
import uuid
from datetime import datetime
from typing import Optional, List, Dict, Any

from waiter_engine.core.interfaces import MemoryStore
from waiter_engine.core.types import SessionStatus, OrderStatus
from waiter_engine.models.session import CustomerSession, format_duration
from waiter_engine.models.order import format_money
from waiter_engine.infrastructure.database import SessionRepository, OrderRepository
from waiter_engine.infrastructure.exceptions import (
    UniqueConstraintError,
    SessionConflictError,
    SessionNotFoundError,
    InvalidSessionStateError,
)

logger = logging.getLogger(__name__)

END_MESSAGES = {
    SessionStatus.COMPLETED: "Thank you for dining with us! We hope to see you again soon.",
    SessionStatus.ABANDONED: "This table's session was closed after a period of inactivity.",
    SessionStatus.CANCELLED: "The session has been cancelled. Please let us know if there is anything we can do.",
}


class SessionLifecycleManager:
    """会话生命周期管理器

    - 一桌最多一个 ACTIVE 会话，由数据层唯一索引保证
    - 统计永远从非取消订单汇总
    - 会话结束时驱逐对话记忆
    """

    def __init__(
        self,
        sessions: SessionRepository,
        orders: OrderRepository,
        memory_store: Optional[MemoryStore] = None,
        timeout_minutes: int = 120
    ):
        self.sessions = sessions
        self.orders = orders
        self.memory_store = memory_store
        self.timeout_minutes = timeout_minutes

    def get_or_create_active(self, restaurant_id: str, table_number: int) -> CustomerSession:
        """返回该桌台的 ACTIVE 会话，没有则创建

        并发创建时，后到的调用会撞上唯一索引，转而读取先到者创建的会话。
        """
        existing = self.sessions.find_active(restaurant_id, table_number)
        if existing:
            return existing

        session = CustomerSession(
            id=f"sess_{uuid.uuid4().hex[:16]}",
            restaurant_id=restaurant_id,
            table_number=table_number,
        )
        try:
            self.sessions.create(session)
            logger.info(f"新会话: {session.id} restaurant={restaurant_id} table={table_number}")
            return session
        except UniqueConstraintError:
            winner = self.sessions.find_active(restaurant_id, table_number)
            if winner is None:
                raise SessionConflictError(restaurant_id, table_number)
            logger.debug(f"并发创建会话，复用已有会话: {winner.id}")
            return winner

    def find_active(self, restaurant_id: str, table_number: int) -> Optional[CustomerSession]:
        return self.sessions.find_active(restaurant_id, table_number)

    def get(self, session_id: str) -> CustomerSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def touch(self, session_id: str):
        self.sessions.touch(session_id)

    def refresh_statistics(self, session_id: str) -> CustomerSession:
        """重新汇总统计（订单总价或状态变化后调用）"""
        session = self.sessions.refresh_statistics(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def end(
        self,
        session_id: str,
        status: SessionStatus = SessionStatus.COMPLETED,
        notes: Optional[str] = None
    ) -> CustomerSession:
        """结束会话，只允许从 ACTIVE 结束

        Raises:
            SessionNotFoundError: 会话不存在
            InvalidSessionStateError: 会话不是 ACTIVE
        """
        if status == SessionStatus.ACTIVE:
            raise ValueError("end() needs a terminal status")

        session = self.get(session_id)
        if not session.is_active or not self.sessions.end(session_id, status, notes):
            current = self.get(session_id)
            raise InvalidSessionStateError(session_id, current.status.value)

        if self.memory_store is not None:
            self.memory_store.evict(session_id)

        ended = self.get(session_id)
        logger.info(
            f"会话结束: {session_id} status={status.value} "
            f"orders={ended.total_orders} spent={ended.total_spent} "
            f"duration={format_duration(ended.duration_minutes())}"
        )
        return ended

    def determine_end_reason(self, session_id: str) -> SessionStatus:
        """根据订单情况推断结束原因"""
        orders = self.orders.list_by_session(session_id)
        if not orders:
            return SessionStatus.ABANDONED
        if all(o.status == OrderStatus.CANCELLED for o in orders):
            return SessionStatus.CANCELLED
        return SessionStatus.COMPLETED

    def abandon_stale(self, now: Optional[float] = None) -> List[str]:
        """把超时无活动的 ACTIVE 会话标记为 ABANDONED

        Returns:
            被放弃的会话 ID
        """
        cutoff = (now or datetime.now().timestamp()) - self.timeout_minutes * 60
        abandoned = []
        for session in self.sessions.list_stale(cutoff):
            if self.sessions.end(session.id, SessionStatus.ABANDONED, "Session timed out"):
                if self.memory_store is not None:
                    self.memory_store.evict(session.id)
                abandoned.append(session.id)
        if abandoned:
            logger.info(f"清理了 {len(abandoned)} 个超时会话")
        return abandoned

    def session_summary(self, session_id: str) -> Dict[str, Any]:
        """会话摘要（含订单与结束语）"""
        session = self.get(session_id)
        orders = self.orders.list_by_session(session_id)
        summary = session.to_dict()
        summary["orders"] = [order.to_dict() for order in orders]
        summary["total_spent_display"] = format_money(session.total_spent)
        if not session.is_active:
            summary["end_message"] = END_MESSAGES.get(session.status, "")
        return summary
