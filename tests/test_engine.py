"""
对话动作引擎端到端测试

补全服务未配置，检测全部走规则兜底，结果是确定性的。
"""

from decimal import Decimal

import pytest

from waiter_engine.core.types import ActionType, OrderStatus, SessionStatus, EXPLAIN_ORDER_LOCKED
from waiter_engine.models.action import RESPONSE_APPLIED, RESPONSE_ALREADY_APPLIED, RESPONSE_DECLINED
from waiter_engine.infrastructure.exceptions import NotFoundError, InvalidTransitionError
from waiter_engine.services.engine import NO_ORDERS_REPLY
from waiter_engine.services.session_lifecycle import END_MESSAGES

from conftest import RESTAURANT_ID, TABLE


def say(engine, message, table=TABLE):
    return engine.handle_message(RESTAURANT_ID, table, message)


def order_and_confirm(engine, message):
    turn = say(engine, message)
    assert turn.pending_action is not None
    return engine.confirm_action(turn.pending_action.id, True)


class TestPlaceOrder:
    """下单流程"""

    def test_order_needs_confirmation(self, engine, orders):
        turn = say(engine, "I'd like 2 caesar salads")

        action = turn.pending_action
        assert action.type == ActionType.PLACE_ORDER
        assert action.payload.estimated_total == Decimal("19.00")
        assert turn.used_fallback is True
        assert turn.data["response_type"] == "CONFIRMATION_REQUIRED"
        assert [b["kind"] for b in turn.action_buttons] == ["confirm", "decline"]
        assert "$19.00" in turn.message
        # 确认前不落库
        assert orders.list_by_session(turn.session_id) == []

    def test_confirm_then_confirm_again(self, engine, orders):
        turn = say(engine, "I'd like 2 caesar salads")

        first = engine.confirm_action(turn.pending_action.id, True)
        second = engine.confirm_action(turn.pending_action.id, True)

        assert first.response_type == RESPONSE_APPLIED
        assert first.order_created["total"] == "19.00"
        assert second.response_type == RESPONSE_ALREADY_APPLIED
        assert len(orders.list_by_session(turn.session_id)) == 1

    def test_decline_leaves_no_order(self, engine, orders):
        turn = say(engine, "I'd like 2 caesar salads")

        result = engine.confirm_action(turn.pending_action.id, False)

        assert result.response_type == RESPONSE_DECLINED
        assert orders.list_by_session(turn.session_id) == []

    def test_add_to_pending_order(self, engine, orders):
        placed = order_and_confirm(engine, "I'd like 2 caesar salads")

        turn = say(engine, "and a lemonade")
        result = engine.confirm_action(turn.pending_action.id, True)

        assert turn.pending_action.type == ActionType.ADD_TO_ORDER
        assert result.order_update["id"] == placed.order_created["id"]
        assert result.order_update["total"] == "23.00"

    def test_session_statistics_follow_orders(self, engine, lifecycle):
        turn = say(engine, "I'd like 2 caesar salads")
        engine.confirm_action(turn.pending_action.id, True)

        session = lifecycle.get(turn.session_id)

        assert session.total_orders == 1
        assert session.total_spent == Decimal("19.00")


class TestCancelAndLockedOrders:
    """取消与锁定订单"""

    def test_cancel_flow(self, engine, orders):
        placed = order_and_confirm(engine, "2 caesar salads please")

        turn = say(engine, "please cancel my order")
        result = engine.confirm_action(turn.pending_action.id, True)

        assert turn.pending_action.type == ActionType.CANCEL_ORDER
        assert "can't be undone" in turn.message
        assert result.success is True
        assert orders.get(placed.order_created["id"]).status == OrderStatus.CANCELLED

    def test_remove_from_preparing_order_is_explained(self, engine, orders):
        placed = order_and_confirm(engine, "2 caesar salads and french fries")
        engine.advance_status(placed.order_created["id"], OrderStatus.PREPARING)

        turn = say(engine, "remove the fries")

        assert turn.pending_action is None
        assert turn.data["response_type"] == EXPLAIN_ORDER_LOCKED
        assert "it is PREPARING" in turn.message
        assert len(orders.get(placed.order_created["id"]).items) == 2

    def test_remove_from_pending_order(self, engine, orders):
        placed = order_and_confirm(engine, "2 caesar salads and french fries")

        turn = say(engine, "remove the fries")
        result = engine.confirm_action(turn.pending_action.id, True)

        assert result.response_type == RESPONSE_APPLIED
        order = orders.get(placed.order_created["id"])
        assert [item.name for item in order.items] == ["Caesar Salad"]
        assert order.total == Decimal("19.00")

    def test_status_cannot_skip_states(self, engine):
        placed = order_and_confirm(engine, "2 caesar salads")

        with pytest.raises(InvalidTransitionError):
            engine.advance_status(placed.order_created["id"], OrderStatus.SERVED)


class TestQueries:
    """查询类动作立即回答"""

    def test_check_orders_without_orders(self, engine):
        turn = say(engine, "what's the status of my order?")

        assert turn.pending_action is None
        assert turn.message == NO_ORDERS_REPLY

    def test_check_orders(self, engine):
        order_and_confirm(engine, "2 caesar salads")

        turn = say(engine, "what's the status of my order?")

        assert "2x Caesar Salad" in turn.message
        assert "PENDING" in turn.message
        assert len(turn.data["orders"]) == 1

    def test_recommendation(self, engine):
        order_and_confirm(engine, "a margherita pizza")

        turn = say(engine, "what do you recommend?")

        assert turn.pending_action is None
        types = [r["type"] for r in turn.data["recommendations"]]
        assert types[0] == "drink"

    def test_small_talk(self, engine):
        turn = say(engine, "hello there")

        assert turn.pending_action is None
        assert turn.message

    def test_unknown_restaurant(self, engine):
        with pytest.raises(NotFoundError):
            engine.handle_message("nowhere", 1, "hello")


class TestSessions:
    """桌台会话"""

    def test_session_created_on_first_message(self, engine):
        assert engine.table_session(RESTAURANT_ID, TABLE) is None

        turn = say(engine, "hello there")
        summary = engine.table_session(RESTAURANT_ID, TABLE)

        assert summary["id"] == turn.session_id
        assert summary["status"] == SessionStatus.ACTIVE.value
        assert summary["memory"]["message_count"] == 1

    def test_messages_reuse_session(self, engine):
        first = say(engine, "hello there")
        second = say(engine, "what do you recommend?")

        assert first.session_id == second.session_id

    def test_end_session_infers_status(self, engine):
        placed = order_and_confirm(engine, "2 caesar salads")

        summary = engine.end_session(placed.order_created["session_id"])

        assert summary["status"] == SessionStatus.COMPLETED.value
        assert summary["end_message"] == END_MESSAGES[SessionStatus.COMPLETED]
        assert engine.table_session(RESTAURANT_ID, TABLE) is None

    def test_end_empty_session_is_abandoned(self, engine):
        turn = say(engine, "hello there")

        summary = engine.end_session(turn.session_id)

        assert summary["status"] == SessionStatus.ABANDONED.value

    def test_new_session_after_end(self, engine):
        first = say(engine, "hello there")
        engine.end_session(first.session_id, SessionStatus.COMPLETED)

        second = say(engine, "hello again")

        assert second.session_id != first.session_id
