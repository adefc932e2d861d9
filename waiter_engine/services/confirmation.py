"""两阶段确认协议

propose: 为检测出的动作签发自描述令牌，同时放进缓存；确认时缓存命中则不必解析令牌
confirm/decline: 调用方提交 (action_id, confirmed, 可选的回传动作数据)
execute: 仅在确认时，按实时状态重新校验后交给执行器

同一个 action_id 最多执行一次：已执行标记与修改在同一事务提交。
"""

import logging
from typing import Any, Dict, Optional

from waiter_engine.config import EngineSettings
from waiter_engine.core.interfaces import MenuCatalog
from waiter_engine.core.types import ActionType, FailureKind, EXPLAIN_ORDER_LOCKED
from waiter_engine.models.action import (
    PendingAction, ReconstructedFromId, SuppliedFallback, ResolvedAction,
    ConfirmationResult, MutationResult, LineItem, parse_payload,
    RESPONSE_APPLIED, RESPONSE_ALREADY_APPLIED, RESPONSE_DECLINED, RESPONSE_EXPIRED,
    RESPONSE_VALIDATION_FAILED, RESPONSE_EXECUTION_FAILED,
)
from waiter_engine.models.order import Order, compute_total
from waiter_engine.infrastructure.cache import PendingActionCache, action_key
from waiter_engine.infrastructure.database import AppliedActionRepository, AppliedMarker
from waiter_engine.infrastructure.exceptions import (
    ActionTokenError,
    InvalidActionTokenError,
    ExpiredActionTokenError,
    ActionAlreadyAppliedError,
    GuardFailure,
    ValidationFailure,
    ExecutionFailure,
    NotFoundError,
)
from waiter_engine.infrastructure.monitoring import get_structured_logger
from waiter_engine.services.action_token import ActionTokenCodec
from waiter_engine.services.conversation_memory import ConversationMemoryService
from waiter_engine.services.order_executor import OrderMutationExecutor, order_items_from_lines
from waiter_engine.services.recommendation import (
    RecommendationEngine, RecommendationContext, Suggestion, lines_from_order_items, lines_from_line_items,
)
from waiter_engine.services.rejection import build_rejection

logger = logging.getLogger(__name__)
events = get_structured_logger(__name__)

EXPIRED_MESSAGE = (
    "Your order confirmation expired. Please place your order again by telling me what you'd like to order."
)
ALREADY_APPLIED_PREFIX = "This has already been taken care of."


class ConfirmationProtocol:
    """待确认动作协议"""

    def __init__(
        self,
        codec: ActionTokenCodec,
        cache: PendingActionCache,
        applied: AppliedActionRepository,
        executor: OrderMutationExecutor,
        menu_catalog: MenuCatalog,
        recommender: RecommendationEngine,
        memory: Optional[ConversationMemoryService] = None,
        settings: Optional[EngineSettings] = None
    ):
        self.codec = codec
        self.cache = cache
        self.applied = applied
        self.executor = executor
        self.menu_catalog = menu_catalog
        self.recommender = recommender
        self.memory = memory
        self.settings = settings or EngineSettings()

    # ==================== propose ====================

    def propose(self, action: PendingAction) -> PendingAction:
        """签发令牌；令牌即 action.id，是调用方唯一的关联凭证"""
        self.codec.issue(action)
        if action.requires_confirmation:
            self.cache.put(action)
        events.info("action_proposed", action_type=action.type.value, table=action.table_number)
        return action

    # ==================== 还原 ====================

    def resolve(self, action_id: str, fallback: Optional[Dict[str, Any]] = None) -> ResolvedAction:
        """还原动作：先查服务端缓存，未命中再解析令牌，令牌无法解析时才考虑回传数据

        Raises:
            ExpiredActionTokenError: 令牌过期（回传数据也不接受）
            InvalidActionTokenError: 令牌无法解析且没有可接受的回传数据
            ValidationFailure: 回传数据中的菜品已不在菜单上
        """
        cached = self.cache.get(action_id)
        if cached is not None:
            self.codec.check_age(cached.created_at)
            return ReconstructedFromId(cached, source="cache")

        try:
            action = self.codec.decode(action_id)
        except InvalidActionTokenError as e:
            if not fallback or not self.settings.accept_supplied_fallback:
                raise
            if e.tampered:
                logger.warning("令牌签名不符（密钥轮换或被篡改），改用回传数据并按实时菜单重新定价")
            return SuppliedFallback(self._action_from_fallback(action_id, fallback))

        if fallback and fallback.get("type") not in (None, action.type.value):
            logger.warning(f"回传数据类型 {fallback.get('type')} 与令牌 {action.type.value} 不一致，以令牌为准")
        return ReconstructedFromId(action)

    def _action_from_fallback(self, action_id: str, data: Dict[str, Any]) -> PendingAction:
        try:
            action_type = ActionType(data["type"])
            payload = parse_payload(action_type, data.get("payload") or {})
            restaurant_id = str(data["restaurant_id"])
            table_number = int(data["table_number"])
        except (KeyError, ValueError, TypeError) as e:
            raise InvalidActionTokenError(f"Supplied action data is invalid: {type(e).__name__}")

        if action_type in (ActionType.PLACE_ORDER, ActionType.ADD_TO_ORDER):
            items = self._reprice(restaurant_id, payload.items)
            update: Dict[str, Any] = {"items": items}
            if action_type == ActionType.PLACE_ORDER:
                update["estimated_total"] = compute_total(order_items_from_lines(items))
            payload = payload.model_copy(update=update)

        return PendingAction(
            id=action_id,
            type=action_type,
            payload=payload,
            confirmation_message=str(data.get("confirmation_message", "")),
            restaurant_id=restaurant_id,
            table_number=table_number,
            requires_confirmation=action_type.requires_confirmation,
        )

    def _reprice(self, restaurant_id: str, items) -> list:
        """客户端回传的价格不可信，按实时菜单重新取价"""
        try:
            available = {item.id: item for item in self.menu_catalog.get_available_items(restaurant_id)}
        except NotFoundError:
            raise ValidationFailure(f"Unknown restaurant {restaurant_id}")
        repriced = []
        for line in items:
            menu_item = available.get(line.menu_item_id)
            if menu_item is None:
                raise ValidationFailure(
                    f"{line.name} is no longer available. Please choose something else from the menu.",
                    details={"menu_item_id": line.menu_item_id}
                )
            repriced.append(LineItem(
                menu_item_id=menu_item.id,
                name=menu_item.name,
                quantity=line.quantity,
                price=menu_item.price,
                notes=line.notes,
            ))
        return repriced

    # ==================== confirm / decline ====================

    def confirm(
        self,
        action_id: str,
        confirmed: bool,
        fallback: Optional[Dict[str, Any]] = None
    ) -> ConfirmationResult:
        key = action_key(action_id)
        stored = self.applied.get(key)
        if stored is not None:
            return self._already_applied(stored)

        try:
            resolved = self.resolve(action_id, fallback)
        except ActionTokenError as e:
            reason = "expired" if isinstance(e, ExpiredActionTokenError) else "invalid"
            events.warning("action_token_rejected", reason=reason, error=e.message)
            self.cache.discard(action_id)
            return ConfirmationResult(success=False, message=EXPIRED_MESSAGE, response_type=RESPONSE_EXPIRED)
        except ValidationFailure as e:
            events.log_failure(FailureKind.VALIDATION, e.message, stage="fallback_reprice")
            return ConfirmationResult(success=False, message=e.message, response_type=RESPONSE_VALIDATION_FAILED)

        action = resolved.action
        if not confirmed:
            return self.decline(action, key)
        return self.execute(action, key, source=resolved.source)

    def decline(self, action: PendingAction, key: Optional[str] = None) -> ConfirmationResult:
        """拒绝：生成带替代方案的回复，不做任何修改"""
        menu_items = self._menu_items(action.restaurant_id)
        recommendation = None
        if action.type in (ActionType.PLACE_ORDER, ActionType.ADD_TO_ORDER):
            recommendation = self.recommender.top(RecommendationContext(
                menu_items=menu_items,
                current_order=lines_from_line_items(action.payload.items, menu_items),
            ))
        rejection = build_rejection(action, menu_items, recommendation)

        key = key or action_key(action.id)
        try:
            # 拒绝后同一令牌不能再被确认执行
            self.applied.record(AppliedMarker(
                action_key=key,
                action_type=action.type.value,
                result={"success": True, "declined": True, "message": rejection.message},
            ))
        except ActionAlreadyAppliedError:
            return self._already_applied(self.applied.get(key) or {})
        self.cache.discard(action.id)

        events.info("action_declined", action_type=action.type.value)
        return ConfirmationResult(
            success=True,
            message=rejection.message,
            response_type=RESPONSE_DECLINED,
            action_type=action.type,
            alternatives=rejection.alternatives,
            suggested_actions=rejection.suggested_actions,
        )

    def execute(self, action: PendingAction, key: str, source: str = "id") -> ConfirmationResult:
        """执行已确认的动作（执行器内部按实时状态重新校验）"""
        if not action.type.is_mutating:
            return ConfirmationResult(
                success=False,
                message="There is nothing to confirm for this request.",
                response_type=RESPONSE_VALIDATION_FAILED,
                action_type=action.type,
            )

        try:
            result = self.executor.execute(action, marker_key=key)
        except ActionAlreadyAppliedError:
            return self._already_applied(self.applied.get(key) or {})
        except GuardFailure as e:
            events.log_failure(FailureKind.GUARD, e.message, order_id=e.order_id, stage="execution")
            self.cache.discard(action.id)
            return ConfirmationResult(
                success=False,
                message=e.message,
                response_type=EXPLAIN_ORDER_LOCKED,
                action_type=action.type,
                alternatives=e.alternatives,
            )
        except ValidationFailure as e:
            events.log_failure(FailureKind.VALIDATION, e.message, stage="execution", **e.details)
            self.cache.discard(action.id)
            return ConfirmationResult(
                success=False,
                message=e.message,
                response_type=RESPONSE_VALIDATION_FAILED,
                action_type=action.type,
            )
        except ExecutionFailure as e:
            # 待确认动作放回缓存，重试时直接命中，回传数据来源的动作也不必再次回传
            events.log_failure(FailureKind.EXECUTION, e.message, action_type=action.type.value)
            self.cache.put(action)
            return ConfirmationResult(
                success=False,
                message="Sorry, I couldn't save that change just now. Please try confirming again.",
                response_type=RESPONSE_EXECUTION_FAILED,
                action_type=action.type,
                retryable=True,
            )

        self.cache.discard(action.id)
        events.info(
            "action_applied",
            action_type=action.type.value,
            order_id=result.order.id if result.order else None,
            source=source,
        )
        return self._applied(action, result)

    def _applied(self, action: PendingAction, result: MutationResult) -> ConfirmationResult:
        order: Optional[Order] = result.order
        message = result.message
        recommendation: Optional[Suggestion] = None

        if order is not None and action.type in (ActionType.PLACE_ORDER, ActionType.ADD_TO_ORDER):
            menu_items = self._menu_items(action.restaurant_id)
            memory = None
            if self.memory is not None:
                by_id = {item.id: item for item in menu_items}
                placed = [(by_id[line.menu_item_id], line.quantity)
                          for line in action.payload.items if line.menu_item_id in by_id]
                memory = self.memory.record_order(order.session_id, placed)
            recommendation = self.recommender.top(RecommendationContext(
                menu_items=menu_items,
                current_order=lines_from_order_items(order.items, menu_items),
                memory=memory,
            ))
            if recommendation is not None and recommendation.confidence > self.settings.upsell_confidence:
                names = ", ".join(item.name for item in recommendation.items[:2])
                message = f"{message}\n\n{recommendation.message} ({names})"
            else:
                recommendation = None

        order_dict = order.to_dict() if order is not None else None
        return ConfirmationResult(
            success=True,
            message=message,
            response_type=RESPONSE_APPLIED,
            action_type=action.type,
            order_created=order_dict if result.order_created else None,
            order_update=None if result.order_created else order_dict,
            recommendation=recommendation.to_dict() if recommendation else None,
        )

    @staticmethod
    def _already_applied(stored: Dict[str, Any]) -> ConfirmationResult:
        if stored.get("declined"):
            return ConfirmationResult(
                success=True,
                message="You already declined this request, so nothing was changed.",
                response_type=RESPONSE_DECLINED,
            )
        order = stored.get("order")
        message = f"{ALREADY_APPLIED_PREFIX} {stored.get('message', '')}".strip()
        return ConfirmationResult(
            success=True,
            message=message,
            response_type=RESPONSE_ALREADY_APPLIED,
            order_created=order if stored.get("order_created") else None,
            order_update=None if stored.get("order_created") else order,
        )

    def _menu_items(self, restaurant_id: str):
        try:
            return self.menu_catalog.get_available_items(restaurant_id)
        except NotFoundError:
            return []
