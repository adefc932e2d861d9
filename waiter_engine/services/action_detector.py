"""动作检测器

调用补全服务解析函数调用，计算置信度；低置信度或任何检测失败都降级到规则兜底。
检测失败永远不会作为错误抛给调用方。
"""

import json
import logging
import time
from decimal import Decimal
from typing import List, Optional, Tuple

from pydantic import ValidationError

from waiter_engine.config import EngineSettings
from waiter_engine.core.interfaces import CompletionClient
from waiter_engine.core.types import ActionType, OrderOperation, OrderStatus, EXPLAIN_ORDER_LOCKED, FailureKind
from waiter_engine.models.action import (
    ActionPayload, DetectionResult, LineItem, PendingAction,
    PlaceOrderPayload, AddToOrderPayload, RemoveFromOrderPayload, ModifyOrderItemPayload,
    CancelOrderPayload, CheckOrdersPayload, EditOrderRequestPayload, ProvideInfoPayload,
    ClarifyPayload,
)
from waiter_engine.models.order import compute_total
from waiter_engine.infrastructure.exceptions import DetectionFailure, ValidationFailure, GuardFailure
from waiter_engine.infrastructure.monitoring import get_metrics_collector, get_structured_logger
from waiter_engine.nlp.context_builder import WaiterContext, build_messages
from waiter_engine.nlp.fallback import FallbackActionMatcher, FallbackMatch
from waiter_engine.nlp.menu_resolver import MenuItemResolver
from waiter_engine.nlp.tool_schema import (
    TOOL_ACTIONS, TOOL_ARGUMENTS, ToolOrderItem, get_tools,
    PlaceOrderArgs, AddToOrderArgs, RemoveFromOrderArgs, ModifyOrderItemArgs, CancelOrderArgs,
    CheckOrdersArgs, EditOrderRequestArgs, ProvideInformationArgs, ClarifyArgs, NoActionArgs,
)
from waiter_engine.services import order_state_machine
from waiter_engine.services.confirmation_messages import build_confirmation_message
from waiter_engine.services.order_executor import select_target_order, order_items_from_lines

logger = logging.getLogger(__name__)
events = get_structured_logger(__name__)

# 置信度计算
BASE_CONFIDENCE = 0.8
FULL_RESOLUTION_BONUS = 0.1
MATCH_RATIO_WEIGHT = 0.1
CLARIFY_PENALTY = 0.2
MIN_CONFIDENCE = 0.1
MAX_CONFIDENCE = 1.0
CONVERSATION_CONFIDENCE = 0.9

DEFAULT_REPLY = "I'm here to help! You can ask about the menu, place an order, or check on your order."

_OPERATIONS = {
    ActionType.ADD_TO_ORDER: OrderOperation.ADD_ITEMS,
    ActionType.REMOVE_FROM_ORDER: OrderOperation.REMOVE_ITEMS,
    ActionType.MODIFY_ORDER_ITEM: OrderOperation.MODIFY_QUANTITY,
    ActionType.CANCEL_ORDER: OrderOperation.CANCEL,
}


def compute_confidence(action_type: ActionType, total_items: int = 0, matched_items: int = 0) -> float:
    """基础分 + 全部解析奖励 + 匹配比例 - 澄清惩罚，限制在 [0.1, 1.0]"""
    confidence = BASE_CONFIDENCE
    if total_items > 0:
        if matched_items == total_items:
            confidence += FULL_RESOLUTION_BONUS
        confidence += (matched_items / total_items) * MATCH_RATIO_WEIGHT
    if action_type == ActionType.CLARIFY:
        confidence -= CLARIFY_PENALTY
    return max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, confidence))


class _Interpretation:
    """模型工具调用解析后的中间结果"""

    def __init__(
        self,
        action_type: Optional[ActionType],
        payload: Optional[ActionPayload] = None,
        total_items: int = 0,
        matched_items: int = 0,
        reply: Optional[str] = None,
        reasoning: str = ""
    ):
        self.action_type = action_type
        self.payload = payload
        self.total_items = total_items
        self.matched_items = matched_items
        self.reply = reply
        self.reasoning = reasoning


class ActionDetector:
    """动作检测器"""

    def __init__(self, completion: CompletionClient, settings: Optional[EngineSettings] = None):
        self.completion = completion
        self.settings = settings or EngineSettings()
        self.metrics = get_metrics_collector()

    def detect(self, message: str, context: WaiterContext) -> DetectionResult:
        start = time.time()
        result = self._detect(message, context)
        duration_ms = (time.time() - start) * 1000

        self.metrics.record("engine.detection.confidence", result.confidence, {"used_fallback": str(result.used_fallback)})
        if result.used_fallback:
            self.metrics.record("engine.detection.fallback", 1)
        events.log_detection(
            result.action.type.value if result.action else None,
            result.confidence,
            result.used_fallback,
            duration_ms
        )
        return result

    def _detect(self, message: str, context: WaiterContext) -> DetectionResult:
        if not self.completion.is_available():
            return self._fallback(message, context, "completion service not configured")

        try:
            completion = self.completion.complete(build_messages(context, message), get_tools())
        except Exception as e:
            failure = DetectionFailure(f"completion call failed: {type(e).__name__}", cause=e)
            events.log_failure(FailureKind.DETECTION, failure.message, error=str(e))
            return self._fallback(message, context, failure.message)

        if not completion.has_tool_call:
            return DetectionResult(
                action=None,
                confidence=CONVERSATION_CONFIDENCE,
                reasoning="model replied without a tool call",
                reply=completion.text or DEFAULT_REPLY,
            )

        try:
            interpretation = self._interpret(completion.tool_name, completion.arguments, context)
        except DetectionFailure as e:
            events.log_failure(FailureKind.DETECTION, e.message, tool=completion.tool_name)
            return self._fallback(message, context, e.message)

        if interpretation.action_type is None:
            return DetectionResult(
                action=None,
                confidence=CONVERSATION_CONFIDENCE,
                reasoning=interpretation.reasoning,
                reply=interpretation.reply or completion.text or DEFAULT_REPLY,
            )

        confidence = compute_confidence(
            interpretation.action_type, interpretation.total_items, interpretation.matched_items
        )
        if confidence < self.settings.confidence_threshold:
            events.log_failure(
                FailureKind.DETECTION, "confidence below threshold",
                confidence=confidence, tool=completion.tool_name
            )
            return self._fallback(message, context, f"low confidence {confidence:.2f}")

        return self._finalize(
            interpretation.action_type, interpretation.payload, context, confidence,
            reasoning=interpretation.reasoning, used_fallback=False
        )

    # ==================== 工具调用解析 ====================

    def _interpret(self, tool_name: str, arguments: Optional[str], context: WaiterContext) -> _Interpretation:
        """解析并校验工具参数

        Raises:
            DetectionFailure: 未知工具、参数不是 JSON 或缺少必填字段
        """
        if tool_name not in TOOL_ACTIONS:
            raise DetectionFailure(f"unknown tool {tool_name}")
        try:
            raw = json.loads(arguments or "{}")
            args = TOOL_ARGUMENTS[tool_name].model_validate(raw)
        except (ValueError, ValidationError) as e:
            raise DetectionFailure(f"invalid arguments for {tool_name}", cause=e)

        action_type = TOOL_ACTIONS[tool_name]
        resolver = MenuItemResolver(context.menu_items)

        if isinstance(args, (PlaceOrderArgs, AddToOrderArgs)):
            lines, unresolved = self._resolve_items(args.items, resolver)
            if unresolved:
                return self._clarify_unresolved(unresolved, len(args.items), len(lines), resolver)
            if isinstance(args, PlaceOrderArgs):
                total = compute_total(order_items_from_lines(lines))
                if abs(Decimal(str(args.estimated_total)) - total) > Decimal(str(self.settings.total_tolerance)):
                    logger.info(f"模型估算总价 {args.estimated_total} 与菜单价格 {total} 不符，使用菜单价格")
                payload = PlaceOrderPayload(items=lines, estimated_total=total, customer_notes=args.customer_notes)
            else:
                payload = AddToOrderPayload(items=lines, order_id=args.order_id)
            return _Interpretation(action_type, payload, len(args.items), len(lines), reasoning=f"tool {tool_name}")

        if isinstance(args, RemoveFromOrderArgs):
            resolved = resolver.resolve(name=args.target_item)
            payload = RemoveFromOrderPayload(
                item_name=resolved.item.name if resolved else args.target_item,
                menu_item_id=resolved.item.id if resolved else None,
                quantity=args.quantity,
                order_id=args.order_id,
                customer_reason=args.customer_reason,
            )
            return _Interpretation(action_type, payload, reasoning=f"tool {tool_name}")

        if isinstance(args, ModifyOrderItemArgs):
            if args.new_quantity is None and not args.special_request:
                raise DetectionFailure("modify_order_item without a change")
            resolved = resolver.resolve(name=args.target_item)
            payload = ModifyOrderItemPayload(
                item_name=resolved.item.name if resolved else args.target_item,
                menu_item_id=resolved.item.id if resolved else None,
                new_quantity=args.new_quantity,
                special_request=args.special_request,
                order_id=args.order_id,
            )
            return _Interpretation(action_type, payload, reasoning=f"tool {tool_name}")

        if isinstance(args, CancelOrderArgs):
            payload = CancelOrderPayload(
                reason=args.reason, cancellation_type=args.cancellation_type, order_id=args.order_id
            )
            return _Interpretation(action_type, payload, reasoning=f"tool {tool_name}")

        if isinstance(args, CheckOrdersArgs):
            return _Interpretation(action_type, CheckOrdersPayload(order_id=args.order_id), reasoning=f"tool {tool_name}")

        if isinstance(args, EditOrderRequestArgs):
            payload = EditOrderRequestPayload(request=args.request, order_id=args.order_id)
            return _Interpretation(action_type, payload, reasoning=f"tool {tool_name}")

        if isinstance(args, ProvideInformationArgs):
            payload = ProvideInfoPayload(
                information_type=args.information_type,
                query=args.specific_query,
                menu_item_id=args.menu_item_id,
                reply=args.answer,
            )
            return _Interpretation(action_type, payload, reasoning=f"tool {tool_name}")

        if isinstance(args, ClarifyArgs):
            question = args.question or f"Could you tell me a bit more about \"{args.ambiguous_request}\"?"
            payload = ClarifyPayload(question=question, options=args.possible_options)
            return _Interpretation(action_type, payload, reasoning=f"tool {tool_name}")

        if isinstance(args, NoActionArgs):
            return _Interpretation(None, reply=args.reply, reasoning=f"conversation: {args.conversation_type}")

        raise DetectionFailure(f"unhandled tool {tool_name}")

    @staticmethod
    def _resolve_items(items: List[ToolOrderItem], resolver: MenuItemResolver) -> Tuple[List[LineItem], List[str]]:
        """按权威菜单重新解析；价格一律取菜单价，从不采用模型给的价格"""
        lines, unresolved = [], []
        for item in items:
            resolved = resolver.resolve(menu_item_id=item.menu_item_id, name=item.name)
            if resolved is None:
                unresolved.append(item.name)
                continue
            lines.append(LineItem(
                menu_item_id=resolved.item.id,
                name=resolved.item.name,
                quantity=item.quantity,
                price=resolved.item.price,
                notes=item.special_requests,
            ))
        return lines, unresolved

    @staticmethod
    def _clarify_unresolved(
        unresolved: List[str],
        total: int,
        matched: int,
        resolver: MenuItemResolver
    ) -> _Interpretation:
        failure = ValidationFailure(
            f"Could not match {', '.join(unresolved)} to the menu",
            details={"unresolved": unresolved}
        )
        events.log_failure(FailureKind.VALIDATION, failure.message, unresolved=unresolved)
        options = [item.name for item in resolver.candidates(unresolved[0])]
        question = (
            f"I couldn't find \"{unresolved[0]}\" on our menu. "
            + (f"Did you mean {', '.join(options)}?" if options else "Could you tell me which dish you meant?")
        )
        return _Interpretation(
            ActionType.CLARIFY,
            ClarifyPayload(question=question, options=options),
            total_items=total,
            matched_items=matched,
            reasoning="unresolvable menu item",
        )

    # ==================== 规则兜底 ====================

    def _fallback(self, message: str, context: WaiterContext, reason: str) -> DetectionResult:
        has_pending = any(order.status == OrderStatus.PENDING for order in context.orders)
        matcher = FallbackActionMatcher(context.menu_items, hit_confidence=self.settings.fallback_confidence)
        match = matcher.match(message, has_pending_order=has_pending)
        logger.info(f"规则兜底: {match.action_type.value} ({match.reasoning}); 原因: {reason}")

        payload = self._payload_from_match(match, message)
        if payload is None:
            return DetectionResult(
                action=None,
                confidence=match.confidence,
                reasoning=f"fallback: {match.reasoning}",
                used_fallback=True,
                reply=DEFAULT_REPLY,
            )
        return self._finalize(
            match.action_type, payload, context, match.confidence,
            reasoning=f"fallback: {match.reasoning}", used_fallback=True
        )

    @staticmethod
    def _payload_from_match(match: FallbackMatch, message: str) -> Optional[ActionPayload]:
        lines = [
            LineItem(menu_item_id=item.id, name=item.name, quantity=quantity, price=item.price)
            for item, quantity in match.items
        ]
        if match.action_type == ActionType.PLACE_ORDER:
            return PlaceOrderPayload(items=lines, estimated_total=compute_total(order_items_from_lines(lines)))
        if match.action_type == ActionType.ADD_TO_ORDER:
            return AddToOrderPayload(items=lines)
        if match.action_type == ActionType.REMOVE_FROM_ORDER:
            return RemoveFromOrderPayload(
                item_name=match.target_item.name,
                menu_item_id=match.target_item.id,
                quantity=match.target_quantity,
            )
        if match.action_type == ActionType.CANCEL_ORDER:
            return CancelOrderPayload(reason="Customer request")
        if match.action_type == ActionType.CHECK_ORDERS:
            return CheckOrdersPayload()
        if match.action_type == ActionType.EDIT_ORDER_REQUEST:
            return EditOrderRequestPayload(request=message)
        if match.action_type == ActionType.PROVIDE_INFO:
            return ProvideInfoPayload(information_type=match.information_type or "general", query=message)
        if match.action_type == ActionType.CLARIFY:
            return ClarifyPayload(question="Which item would you like me to remove?")
        return None

    # ==================== 组装结果 ====================

    def _finalize(
        self,
        action_type: ActionType,
        payload: ActionPayload,
        context: WaiterContext,
        confidence: float,
        reasoning: str,
        used_fallback: bool
    ) -> DetectionResult:
        """生成待确认动作；修改已锁定订单的动作在此就转为 EXPLAIN_ORDER_LOCKED（执行前还会再查一次）"""
        target = None
        if action_type in _OPERATIONS:
            target = select_target_order(context.orders, getattr(payload, "order_id", None))
            if target is not None:
                try:
                    order_state_machine.check(target, _OPERATIONS[action_type])
                except GuardFailure as e:
                    events.log_failure(FailureKind.GUARD, e.message, order_id=e.order_id, stage="detection")
                    return DetectionResult(
                        action=None,
                        confidence=confidence,
                        reasoning=reasoning,
                        used_fallback=used_fallback,
                        reply=e.message,
                        response_type=EXPLAIN_ORDER_LOCKED,
                        data={"alternatives": e.alternatives, "order_id": e.order_id, "status": e.status},
                    )
            elif action_type != ActionType.ADD_TO_ORDER:
                return DetectionResult(
                    action=None,
                    confidence=confidence,
                    reasoning=f"{reasoning}; no order to target",
                    used_fallback=used_fallback,
                    reply="I couldn't find an open order for this table. Would you like to place one?",
                )

        action = PendingAction(
            type=action_type,
            payload=payload,
            confirmation_message=build_confirmation_message(action_type, payload, target),
            restaurant_id=context.restaurant_id,
            table_number=context.table_number,
            requires_confirmation=action_type.requires_confirmation,
        )
        return DetectionResult(
            action=action,
            confidence=confidence,
            reasoning=reasoning,
            used_fallback=used_fallback,
        )
