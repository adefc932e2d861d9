"""
订单修改执行器测试
"""

import threading
from decimal import Decimal
from unittest.mock import patch

import pytest

from waiter_engine.core.types import ActionType, OrderStatus, SessionStatus
from waiter_engine.models.action import (
    PendingAction, LineItem, PlaceOrderPayload, AddToOrderPayload, RemoveFromOrderPayload,
    ModifyOrderItemPayload, CancelOrderPayload,
)
from waiter_engine.models.order import compute_total
from waiter_engine.infrastructure.exceptions import (
    ValidationFailure, GuardFailure, ExecutionFailure, ActionAlreadyAppliedError,
    InvalidTransitionError, DatabaseQueryError, StaleOrderStateError,
)
from waiter_engine.services.order_executor import select_target_order, order_items_from_lines

from conftest import RESTAURANT_ID, TABLE

CAESAR = LineItem(menu_item_id="salad-caesar", name="Caesar Salad", quantity=2, price=Decimal("9.50"))
FRIES = LineItem(menu_item_id="side-fries", name="French Fries", quantity=1, price=Decimal("4.50"))
LEMONADE = LineItem(menu_item_id="drink-lemonade", name="Fresh Lemonade", quantity=1, price=Decimal("4.00"))


def action(action_type: ActionType, payload) -> PendingAction:
    return PendingAction(
        type=action_type,
        payload=payload,
        confirmation_message="",
        restaurant_id=RESTAURANT_ID,
        table_number=TABLE,
    )


def place(executor, *lines, marker_key=None):
    payload = PlaceOrderPayload(items=list(lines), estimated_total=compute_total(order_items_from_lines(lines)))
    return executor.execute(action(ActionType.PLACE_ORDER, payload), marker_key=marker_key)


def kitchen_takes_order(orders):
    """在执行器规划之后、提交之前，后厨把订单推进到 PREPARING"""
    original = orders.commit_mutation

    def _commit(snapshot, items, status, marker=None):
        original(orders.get(snapshot.id), snapshot.items, OrderStatus.PREPARING)
        return original(snapshot, items, status, marker)

    return patch.object(orders, "commit_mutation", side_effect=_commit)


class TestPlaceOrder:
    """下单测试"""

    def test_place_order_creates_session_and_order(self, executor, lifecycle):
        result = place(executor, CAESAR, FRIES)

        assert result.success is True
        assert result.order_created is True
        assert result.order.status == OrderStatus.PENDING
        assert result.order.total == Decimal("23.50")
        assert f"#{result.order.short_id}" in result.message
        assert "$23.50" in result.message

        session = lifecycle.find_active(RESTAURANT_ID, TABLE)
        assert session.id == result.order.session_id
        assert session.total_orders == 1
        assert session.total_spent == Decimal("23.50")

    def test_total_mismatch_rejected(self, executor, orders, lifecycle):
        """重新计算的总价与检测时的总价不符"""
        payload = PlaceOrderPayload(items=[CAESAR], estimated_total=Decimal("5.00"))

        with pytest.raises(ValidationFailure) as exc_info:
            executor.execute(action(ActionType.PLACE_ORDER, payload))

        assert "doesn't add up" in exc_info.value.message
        session = lifecycle.find_active(RESTAURANT_ID, TABLE)
        assert orders.list_by_session(session.id) == []

    def test_total_within_tolerance(self, executor):
        payload = PlaceOrderPayload(items=[CAESAR], estimated_total=Decimal("19.01"))

        result = executor.execute(action(ActionType.PLACE_ORDER, payload))

        assert result.order.total == Decimal("19.00")

    def test_non_mutating_action_rejected(self, executor):
        from waiter_engine.models.action import CheckOrdersPayload

        with pytest.raises(ValidationFailure):
            executor.execute(action(ActionType.CHECK_ORDERS, CheckOrdersPayload()))


class TestMutations:
    """修改已有订单测试"""

    @pytest.fixture
    def placed(self, executor):
        return place(executor, CAESAR, FRIES).order

    def test_add_merges_existing_line(self, executor, placed):
        result = executor.execute(action(
            ActionType.ADD_TO_ORDER,
            AddToOrderPayload(items=[LineItem(menu_item_id="salad-caesar", name="Caesar Salad",
                                              quantity=1, price=Decimal("9.50"))])
        ))

        caesar = result.order.find_item(menu_item_id="salad-caesar")
        assert caesar.quantity == 3
        assert result.order.total == Decimal("33.00")
        assert result.order_created is False

    def test_add_keeps_price_at_time(self, executor, placed):
        """已有行保留下单时的价格"""
        result = executor.execute(action(
            ActionType.ADD_TO_ORDER,
            AddToOrderPayload(items=[LineItem(menu_item_id="side-fries", name="French Fries",
                                              quantity=1, price=Decimal("5.00"))])
        ))

        fries = result.order.find_item(menu_item_id="side-fries")
        assert fries.quantity == 2
        assert fries.price_at_time == Decimal("4.50")

    def test_add_new_line(self, executor, placed):
        result = executor.execute(action(ActionType.ADD_TO_ORDER, AddToOrderPayload(items=[LEMONADE])))

        assert len(result.order.items) == 3
        assert result.order.total == Decimal("27.50")
        assert "Added 1x Fresh Lemonade" in result.message

    def test_add_without_open_order_starts_new_one(self, executor):
        result = executor.execute(action(ActionType.ADD_TO_ORDER, AddToOrderPayload(items=[LEMONADE])))

        assert result.order_created is True
        assert result.order.total == Decimal("4.00")

    def test_remove_partial_quantity(self, executor, placed):
        result = executor.execute(action(
            ActionType.REMOVE_FROM_ORDER,
            RemoveFromOrderPayload(item_name="Caesar Salad", menu_item_id="salad-caesar", quantity=1)
        ))

        assert result.order.find_item(menu_item_id="salad-caesar").quantity == 1
        assert result.order.total == Decimal("14.00")

    def test_remove_whole_line_by_name(self, executor, placed):
        result = executor.execute(action(
            ActionType.REMOVE_FROM_ORDER, RemoveFromOrderPayload(item_name="fries")
        ))

        assert result.order.find_item(menu_item_id="side-fries") is None
        assert result.order.total == Decimal("19.00")

    def test_remove_unknown_item(self, executor, placed):
        with pytest.raises(ValidationFailure) as exc_info:
            executor.execute(action(
                ActionType.REMOVE_FROM_ORDER, RemoveFromOrderPayload(item_name="Grilled Ribeye")
            ))

        assert "couldn't find" in exc_info.value.message

    def test_remove_last_item_suggests_cancel(self, executor):
        place(executor, LEMONADE)

        with pytest.raises(ValidationFailure) as exc_info:
            executor.execute(action(
                ActionType.REMOVE_FROM_ORDER, RemoveFromOrderPayload(item_name="Fresh Lemonade")
            ))

        assert exc_info.value.details["suggested_action"] == ActionType.CANCEL_ORDER.value

    def test_modify_quantity(self, executor, placed):
        result = executor.execute(action(
            ActionType.MODIFY_ORDER_ITEM,
            ModifyOrderItemPayload(item_name="Caesar Salad", menu_item_id="salad-caesar", new_quantity=4)
        ))

        assert result.order.find_item(menu_item_id="salad-caesar").quantity == 4
        assert result.order.total == Decimal("42.50")

    def test_modify_special_request(self, executor, placed):
        result = executor.execute(action(
            ActionType.MODIFY_ORDER_ITEM,
            ModifyOrderItemPayload(item_name="French Fries", special_request="extra crispy")
        ))

        assert result.order.find_item(menu_item_id="side-fries").notes == "extra crispy"
        assert result.order.total == Decimal("23.50")

    def test_total_always_recomputed(self, executor, orders, placed):
        """任何修改后 total == Σ(price_at_time × quantity)"""
        executor.execute(action(ActionType.ADD_TO_ORDER, AddToOrderPayload(items=[LEMONADE])))
        executor.execute(action(
            ActionType.REMOVE_FROM_ORDER,
            RemoveFromOrderPayload(item_name="Caesar Salad", quantity=1)
        ))

        stored = orders.get(placed.id)
        assert stored.total == compute_total(stored.items)


class TestGuards:
    """执行时以实时状态重新校验"""

    @pytest.fixture
    def placed(self, executor):
        return place(executor, CAESAR, FRIES).order

    def test_remove_while_preparing_is_refused(self, executor, orders, placed):
        executor.advance_status(placed.id, OrderStatus.PREPARING)

        with pytest.raises(GuardFailure) as exc_info:
            executor.execute(action(
                ActionType.REMOVE_FROM_ORDER, RemoveFromOrderPayload(item_name="French Fries")
            ))

        assert "PREPARING" in exc_info.value.message
        stored = orders.get(placed.id)
        assert stored.total == Decimal("23.50")
        assert len(stored.items) == 2

    def test_cancel_while_ready_is_refused(self, executor, placed):
        executor.advance_status(placed.id, OrderStatus.PREPARING)
        executor.advance_status(placed.id, OrderStatus.READY)

        with pytest.raises(GuardFailure) as exc_info:
            executor.execute(action(ActionType.CANCEL_ORDER, CancelOrderPayload()))

        assert "READY" in exc_info.value.message

    @pytest.mark.parametrize("status", [
        OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.SERVED, OrderStatus.CANCELLED,
    ])
    @pytest.mark.parametrize("action_type,make_payload", [
        (ActionType.ADD_TO_ORDER, lambda oid: AddToOrderPayload(items=[LEMONADE], order_id=oid)),
        (ActionType.REMOVE_FROM_ORDER, lambda oid: RemoveFromOrderPayload(item_name="French Fries", order_id=oid)),
        (ActionType.MODIFY_ORDER_ITEM,
         lambda oid: ModifyOrderItemPayload(item_name="Caesar Salad", new_quantity=5, order_id=oid)),
        (ActionType.CANCEL_ORDER, lambda oid: CancelOrderPayload(order_id=oid)),
    ])
    def test_locked_order_is_left_unchanged(self, executor, orders, placed, status, action_type, make_payload):
        """每个锁定状态下的每种修改都被拒绝，明细、总价和状态保持不变"""
        path = {
            OrderStatus.PREPARING: [OrderStatus.PREPARING],
            OrderStatus.READY: [OrderStatus.PREPARING, OrderStatus.READY],
            OrderStatus.SERVED: [OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.SERVED],
            OrderStatus.CANCELLED: [OrderStatus.CANCELLED],
        }[status]
        for step in path:
            executor.advance_status(placed.id, step)
        before = orders.get(placed.id)

        with pytest.raises(GuardFailure) as exc_info:
            executor.execute(action(action_type, make_payload(placed.id)))

        assert status.value in exc_info.value.message
        after = orders.get(placed.id)
        assert after.status == status
        assert after.total == before.total == Decimal("23.50")
        assert [(i.name, i.quantity) for i in after.items] == [(i.name, i.quantity) for i in before.items]
        assert after.version == before.version

    def test_stale_state_rechecks_guard(self, executor, orders, placed):
        """规划后订单被后厨接走，提交失败并按新状态报守卫错误"""
        with kitchen_takes_order(orders):
            with pytest.raises(GuardFailure):
                executor.execute(action(ActionType.ADD_TO_ORDER, AddToOrderPayload(items=[LEMONADE])))

        stored = orders.get(placed.id)
        assert stored.status == OrderStatus.PREPARING
        assert len(stored.items) == 2

    def test_database_error_becomes_execution_failure(self, executor, orders, placed):
        with patch.object(orders, "commit_mutation", side_effect=DatabaseQueryError("disk full")):
            with pytest.raises(ExecutionFailure):
                executor.execute(action(ActionType.CANCEL_ORDER, CancelOrderPayload()))


class TestConcurrentMutations:
    """同一订单上的并发修改不会互相覆盖"""

    def test_stale_snapshot_is_rejected(self, executor, orders):
        order = place(executor, CAESAR).order
        snapshot = orders.get(order.id)
        orders.commit_mutation(snapshot, order_items_from_lines([CAESAR, FRIES]), OrderStatus.PENDING)

        with pytest.raises(StaleOrderStateError):
            orders.commit_mutation(snapshot, order_items_from_lines([CAESAR, LEMONADE]), OrderStatus.PENDING)

        stored = orders.get(order.id)
        assert [i.name for i in stored.items] == ["Caesar Salad", "French Fries"]
        assert stored.version == snapshot.version + 1

    def test_two_adds_from_the_same_snapshot(self, executor, orders):
        """两个确认同时读到同一份明细：只有一个提交成功，另一个报可重试的执行失败"""
        order = place(executor, CAESAR).order
        barrier = threading.Barrier(2, timeout=5)
        original = orders.list_by_session

        def _list_then_wait(session_id):
            live = original(session_id)
            barrier.wait()
            return live

        results, failures = [], []

        def _add(line):
            try:
                results.append(executor.execute(action(ActionType.ADD_TO_ORDER, AddToOrderPayload(items=[line]))))
            except ExecutionFailure as e:
                failures.append(e)

        with patch.object(orders, "list_by_session", side_effect=_list_then_wait):
            threads = [threading.Thread(target=_add, args=(line,)) for line in (FRIES, LEMONADE)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=10)

        assert len(results) == 1
        assert len(failures) == 1
        assert results[0].success is True

        stored = orders.get(order.id)
        names = [i.name for i in stored.items]
        assert names[0] == "Caesar Salad"
        assert len(names) == 2
        assert stored.total == compute_total(stored.items)
        assert stored.total == results[0].order.total

    def test_retry_after_conflict_applies_on_fresh_state(self, executor, orders):
        order = place(executor, CAESAR).order
        with patch.object(orders, "commit_mutation", side_effect=StaleOrderStateError(order.id, "PENDING")):
            with pytest.raises(ExecutionFailure):
                executor.execute(action(ActionType.ADD_TO_ORDER, AddToOrderPayload(items=[LEMONADE])))

        result = executor.execute(action(ActionType.ADD_TO_ORDER, AddToOrderPayload(items=[LEMONADE])))

        assert result.success is True
        assert result.order.total == Decimal("23.00")


class TestIdempotency:
    """已执行标记测试"""

    def test_marker_blocks_second_execution(self, executor, orders, lifecycle, applied):
        place(executor, CAESAR, marker_key="key-1")

        with pytest.raises(ActionAlreadyAppliedError):
            place(executor, CAESAR, marker_key="key-1")

        session = lifecycle.find_active(RESTAURANT_ID, TABLE)
        assert len(orders.list_by_session(session.id)) == 1
        assert applied.get("key-1")["order_created"] is True

    def test_marker_rolled_back_with_failed_mutation(self, executor, orders, applied):
        """比较并设置失败时，同事务写入的标记一起回滚"""
        place(executor, CAESAR, LEMONADE)

        with kitchen_takes_order(orders):
            with pytest.raises(GuardFailure):
                executor.execute(action(
                    ActionType.REMOVE_FROM_ORDER, RemoveFromOrderPayload(item_name="Fresh Lemonade")
                ), marker_key="key-2")

        assert applied.get("key-2") is None
        assert applied.count() == 0


class TestCancelScenario:
    """下单后取消，会话统计同步更新"""

    def test_place_then_cancel(self, executor, lifecycle):
        placed = place(executor, CAESAR).order

        result = executor.execute(action(ActionType.CANCEL_ORDER, CancelOrderPayload()))

        assert result.order.id == placed.id
        assert result.order.status == OrderStatus.CANCELLED
        assert "has been cancelled" in result.message
        session = lifecycle.get(placed.session_id)
        assert session.total_orders == 0
        assert session.total_spent == Decimal("0.00")
        assert lifecycle.determine_end_reason(session.id) == SessionStatus.CANCELLED

    def test_cancel_targets_order_reference(self, executor):
        first = place(executor, CAESAR).order
        place(executor, LEMONADE)

        result = executor.execute(action(
            ActionType.CANCEL_ORDER, CancelOrderPayload(order_id=first.short_id)
        ))

        assert result.order.id == first.id

    def test_unknown_reference(self, executor):
        place(executor, CAESAR)

        with pytest.raises(ValidationFailure):
            executor.execute(action(ActionType.CANCEL_ORDER, CancelOrderPayload(order_id="ZZZZZZ")))


class TestAdvanceStatus:
    """后厨/员工流转测试"""

    def test_kitchen_flow(self, executor):
        order = place(executor, CAESAR).order

        for status in (OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.SERVED):
            order = executor.advance_status(order.id, status)

        assert order.status == OrderStatus.SERVED

    def test_customer_cannot_cancel_preparing(self, executor):
        order = place(executor, CAESAR).order
        executor.advance_status(order.id, OrderStatus.PREPARING)

        with pytest.raises(InvalidTransitionError):
            executor.advance_status(order.id, OrderStatus.CANCELLED, by_staff=False)

        cancelled = executor.advance_status(order.id, OrderStatus.CANCELLED, by_staff=True)
        assert cancelled.status == OrderStatus.CANCELLED


class TestSelectTargetOrder:
    """目标订单选择测试"""

    def test_skips_cancelled(self, executor):
        first = place(executor, CAESAR).order
        second = place(executor, LEMONADE).order
        executor.advance_status(second.id, OrderStatus.CANCELLED)
        live = executor.orders.list_by_session(first.session_id)

        assert select_target_order(live).id == first.id

    def test_reference_is_case_insensitive_suffix(self, executor):
        order = place(executor, CAESAR).order
        live = executor.orders.list_by_session(order.session_id)

        assert select_target_order(live, f"#{order.short_id.lower()}").id == order.id

    def test_empty(self):
        assert select_target_order([]) is None
