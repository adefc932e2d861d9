"""
桌台会话生命周期测试
"""

import threading
import uuid
from datetime import datetime
from decimal import Decimal
from unittest.mock import patch

import pytest

from waiter_engine.core.types import SessionStatus, OrderStatus
from waiter_engine.models.order import Order, OrderItem
from waiter_engine.models.session import CustomerSession
from waiter_engine.infrastructure.exceptions import (
    SessionConflictError, SessionNotFoundError, InvalidSessionStateError, UniqueConstraintError,
)
from waiter_engine.services.session_lifecycle import END_MESSAGES

from conftest import RESTAURANT_ID, TABLE


def add_order(orders, session, total_items=((Decimal("9.50"), 2),), status=OrderStatus.PENDING):
    order = Order(
        id=f"ord_{uuid.uuid4().hex[:16]}",
        session_id=session.id,
        restaurant_id=session.restaurant_id,
        table_number=session.table_number,
        items=[OrderItem(f"item-{i}", f"Item {i}", qty, price) for i, (price, qty) in enumerate(total_items)],
        status=status,
    )
    return orders.create(order)


class TestActiveSession:
    """ACTIVE 会话唯一性测试"""

    def test_get_or_create_is_idempotent(self, lifecycle):
        first = lifecycle.get_or_create_active(RESTAURANT_ID, TABLE)
        second = lifecycle.get_or_create_active(RESTAURANT_ID, TABLE)

        assert first.id == second.id
        assert first.status == SessionStatus.ACTIVE

    def test_tables_are_independent(self, lifecycle):
        a = lifecycle.get_or_create_active(RESTAURANT_ID, 1)
        b = lifecycle.get_or_create_active(RESTAURANT_ID, 2)

        assert a.id != b.id

    def test_second_active_session_hits_unique_index(self, lifecycle, sessions):
        """同一桌台的第二个 ACTIVE 会话由数据层拒绝"""
        lifecycle.get_or_create_active(RESTAURANT_ID, TABLE)

        with pytest.raises(UniqueConstraintError):
            sessions.create(CustomerSession(id="sess_duplicate00000", restaurant_id=RESTAURANT_ID, table_number=TABLE))

        assert sessions.find_active(RESTAURANT_ID, TABLE).id != "sess_duplicate00000"

    def test_conflict_without_winner(self, lifecycle, sessions):
        """撞上唯一索引却读不到先到者时报冲突"""
        with patch.object(sessions, "find_active", return_value=None), \
                patch.object(sessions, "create", side_effect=UniqueConstraintError("customer_sessions")):
            with pytest.raises(SessionConflictError):
                lifecycle.get_or_create_active(RESTAURANT_ID, TABLE)

    def test_concurrent_creation_yields_one_session(self, lifecycle, sessions):
        """并发创建时只会留下一个 ACTIVE 会话"""
        results = []
        errors = []
        barrier = threading.Barrier(8)

        def worker():
            try:
                barrier.wait()
                results.append(lifecycle.get_or_create_active(RESTAURANT_ID, TABLE).id)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(set(results)) == 1
        assert sessions.count_active(RESTAURANT_ID, TABLE) == 1

    def test_new_session_after_end(self, lifecycle):
        first = lifecycle.get_or_create_active(RESTAURANT_ID, TABLE)
        lifecycle.end(first.id, SessionStatus.COMPLETED)

        second = lifecycle.get_or_create_active(RESTAURANT_ID, TABLE)

        assert second.id != first.id


class TestStatistics:
    """会话统计测试"""

    def test_statistics_exclude_cancelled(self, lifecycle, orders):
        session = lifecycle.get_or_create_active(RESTAURANT_ID, TABLE)
        add_order(orders, session, ((Decimal("9.50"), 2),))
        add_order(orders, session, ((Decimal("4.00"), 1),), status=OrderStatus.CANCELLED)

        refreshed = lifecycle.refresh_statistics(session.id)

        assert refreshed.total_orders == 1
        assert refreshed.total_spent == Decimal("19.00")

    def test_statistics_frozen_after_end(self, lifecycle, orders, sessions):
        session = lifecycle.get_or_create_active(RESTAURANT_ID, TABLE)
        add_order(orders, session)
        lifecycle.end(session.id, SessionStatus.COMPLETED)

        sessions.refresh_statistics(session.id)

        assert lifecycle.get(session.id).total_spent == Decimal("19.00")


class TestEndSession:
    """结束会话测试"""

    def test_end_evicts_memory(self, lifecycle, memory_store):
        session = lifecycle.get_or_create_active(RESTAURANT_ID, TABLE)
        memory_store.get_or_create(session.id)

        ended = lifecycle.end(session.id, SessionStatus.COMPLETED, notes="Paid")

        assert ended.status == SessionStatus.COMPLETED
        assert ended.end_time is not None
        assert ended.notes == "Paid"
        assert memory_store.get(session.id) is None

    def test_end_twice_rejected(self, lifecycle):
        session = lifecycle.get_or_create_active(RESTAURANT_ID, TABLE)
        lifecycle.end(session.id, SessionStatus.COMPLETED)

        with pytest.raises(InvalidSessionStateError):
            lifecycle.end(session.id, SessionStatus.CANCELLED)

    def test_end_unknown_session(self, lifecycle):
        with pytest.raises(SessionNotFoundError):
            lifecycle.end("sess_missing", SessionStatus.COMPLETED)

    def test_end_requires_terminal_status(self, lifecycle):
        session = lifecycle.get_or_create_active(RESTAURANT_ID, TABLE)

        with pytest.raises(ValueError):
            lifecycle.end(session.id, SessionStatus.ACTIVE)

    @pytest.mark.parametrize("statuses,expected", [
        ((), SessionStatus.ABANDONED),
        ((OrderStatus.CANCELLED,), SessionStatus.CANCELLED),
        ((OrderStatus.CANCELLED, OrderStatus.SERVED), SessionStatus.COMPLETED),
        ((OrderStatus.PENDING,), SessionStatus.COMPLETED),
    ])
    def test_determine_end_reason(self, lifecycle, orders, statuses, expected):
        session = lifecycle.get_or_create_active(RESTAURANT_ID, TABLE)
        for status in statuses:
            add_order(orders, session, status=status)

        assert lifecycle.determine_end_reason(session.id) == expected

    def test_summary_includes_end_message(self, lifecycle, orders):
        session = lifecycle.get_or_create_active(RESTAURANT_ID, TABLE)
        add_order(orders, session)
        lifecycle.end(session.id, SessionStatus.COMPLETED)

        summary = lifecycle.session_summary(session.id)

        assert summary["end_message"] == END_MESSAGES[SessionStatus.COMPLETED]
        assert summary["total_spent_display"] == "$19.00"
        assert len(summary["orders"]) == 1


class TestAbandonStale:
    """超时会话清理测试"""

    def test_abandon_stale(self, lifecycle, memory_store):
        session = lifecycle.get_or_create_active(RESTAURANT_ID, TABLE)
        memory_store.get_or_create(session.id)
        later = datetime.now().timestamp() + 121 * 60

        abandoned = lifecycle.abandon_stale(now=later)

        assert abandoned == [session.id]
        assert lifecycle.get(session.id).status == SessionStatus.ABANDONED
        assert memory_store.get(session.id) is None

    def test_recent_session_kept(self, lifecycle):
        session = lifecycle.get_or_create_active(RESTAURANT_ID, TABLE)

        assert lifecycle.abandon_stale() == []
        assert lifecycle.get(session.id).is_active
