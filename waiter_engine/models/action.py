"""动作相关数据模型

每种 ActionType 都有自己的载荷模型，令牌里编码的就是载荷的 JSON。
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Dict, Any, Union, Type

from pydantic import BaseModel, Field, ConfigDict

from waiter_engine.core.types import ActionType


# ==================== 载荷模型 ====================

class ActionPayload(BaseModel):
    """载荷基类"""
    model_config = ConfigDict(extra="ignore", frozen=True)


class LineItem(BaseModel):
    """已按权威菜单解析过的订单行"""
    model_config = ConfigDict(frozen=True)

    menu_item_id: str
    name: str
    quantity: int = Field(ge=1)
    price: Decimal = Field(ge=0)
    notes: Optional[str] = None


class PlaceOrderPayload(ActionPayload):
    items: List[LineItem] = Field(min_length=1)
    estimated_total: Decimal
    customer_notes: Optional[str] = None


class AddToOrderPayload(ActionPayload):
    items: List[LineItem] = Field(min_length=1)
    order_id: Optional[str] = None


class RemoveFromOrderPayload(ActionPayload):
    item_name: str
    menu_item_id: Optional[str] = None
    quantity: Optional[int] = Field(default=None, ge=1)
    order_id: Optional[str] = None
    customer_reason: Optional[str] = None


class ModifyOrderItemPayload(ActionPayload):
    item_name: str
    menu_item_id: Optional[str] = None
    new_quantity: Optional[int] = Field(default=None, ge=1)
    special_request: Optional[str] = None
    order_id: Optional[str] = None


class CancelOrderPayload(ActionPayload):
    reason: str = "Customer request"
    cancellation_type: str = "full_order"
    order_id: Optional[str] = None


class CheckOrdersPayload(ActionPayload):
    order_id: Optional[str] = None


class EditOrderRequestPayload(ActionPayload):
    request: str = ""
    order_id: Optional[str] = None


class ProvideInfoPayload(ActionPayload):
    information_type: str = "general"
    query: str = ""
    menu_item_id: Optional[str] = None
    reply: Optional[str] = None


class ClarifyPayload(ActionPayload):
    question: str
    options: List[str] = Field(default_factory=list)


class NoActionPayload(ActionPayload):
    reply: Optional[str] = None
    conversation_type: str = "general"


PAYLOAD_MODELS: Dict[ActionType, Type[ActionPayload]] = {
    ActionType.PLACE_ORDER: PlaceOrderPayload,
    ActionType.ADD_TO_ORDER: AddToOrderPayload,
    ActionType.REMOVE_FROM_ORDER: RemoveFromOrderPayload,
    ActionType.MODIFY_ORDER_ITEM: ModifyOrderItemPayload,
    ActionType.CANCEL_ORDER: CancelOrderPayload,
    ActionType.CHECK_ORDERS: CheckOrdersPayload,
    ActionType.EDIT_ORDER_REQUEST: EditOrderRequestPayload,
    ActionType.PROVIDE_INFO: ProvideInfoPayload,
    ActionType.CLARIFY: ClarifyPayload,
    ActionType.NO_ACTION: NoActionPayload,
}


def parse_payload(action_type: ActionType, data: Dict[str, Any]) -> ActionPayload:
    """按动作类型校验载荷"""
    return PAYLOAD_MODELS[action_type].model_validate(data)


# ==================== 待确认动作 ====================

@dataclass
class PendingAction:
    """已检测、待确认的动作

    id 是自描述的签名令牌，单凭它就能还原 type 和 payload。
    """
    type: ActionType
    payload: ActionPayload
    confirmation_message: str
    restaurant_id: str
    table_number: int
    id: str = ""
    requires_confirmation: bool = True
    created_at: float = field(default_factory=lambda: datetime.now().timestamp())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "payload": self.payload.model_dump(mode="json"),
            "confirmation_message": self.confirmation_message,
            "requires_confirmation": self.requires_confirmation,
            "restaurant_id": self.restaurant_id,
            "table_number": self.table_number,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class ReconstructedFromId:
    """从令牌本身还原出的动作（优先）"""
    action: PendingAction
    source: str = "id"


@dataclass(frozen=True)
class SuppliedFallback:
    """令牌无法还原时，客户端回传的动作数据"""
    action: PendingAction
    source: str = "fallback"


ResolvedAction = Union[ReconstructedFromId, SuppliedFallback]


# ==================== 检测与执行结果 ====================

@dataclass
class DetectionResult:
    """动作检测结果"""
    action: Optional[PendingAction]
    confidence: float
    reasoning: str = ""
    used_fallback: bool = False
    reply: Optional[str] = None
    # 检测阶段就能确定的特殊响应，例如 EXPLAIN_ORDER_LOCKED
    response_type: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.to_dict() if self.action else None,
            "confidence": round(self.confidence, 4),
            "reasoning": self.reasoning,
            "used_fallback": self.used_fallback,
            "reply": self.reply,
            "response_type": self.response_type,
            "data": self.data,
        }


@dataclass
class MutationResult:
    """一次执行的结果"""
    success: bool
    message: str
    order: Optional[Any] = None
    order_created: bool = False
    data: Dict[str, Any] = field(default_factory=dict)


# 确认结果的响应类型
RESPONSE_APPLIED = "APPLIED"
RESPONSE_ALREADY_APPLIED = "ALREADY_APPLIED"
RESPONSE_DECLINED = "DECLINED"
RESPONSE_EXPIRED = "EXPIRED"
RESPONSE_VALIDATION_FAILED = "VALIDATION_FAILED"
RESPONSE_EXECUTION_FAILED = "EXECUTION_FAILED"


@dataclass
class ConfirmationResult:
    """confirm/decline 的返回"""
    success: bool
    message: str
    response_type: str
    action_type: Optional[ActionType] = None
    order_update: Optional[Dict[str, Any]] = None
    order_created: Optional[Dict[str, Any]] = None
    alternatives: List[str] = field(default_factory=list)
    suggested_actions: List[str] = field(default_factory=list)
    recommendation: Optional[Dict[str, Any]] = None
    retryable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "response_type": self.response_type,
            "action_type": self.action_type.value if self.action_type else None,
            "order_update": self.order_update,
            "order_created": self.order_created,
            "alternatives": self.alternatives,
            "suggested_actions": self.suggested_actions,
            "recommendation": self.recommendation,
            "retryable": self.retryable,
        }


@dataclass
class ChatTurn:
    """一轮对话的返回"""
    message: str
    session_id: str
    pending_action: Optional[PendingAction] = None
    confidence: float = 0.0
    used_fallback: bool = False
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def action_buttons(self) -> List[Dict[str, str]]:
        """只给出动作类型，按钮文案由前端决定"""
        if not self.pending_action or not self.pending_action.requires_confirmation:
            return []
        return [
            {"kind": "confirm", "action_type": self.pending_action.type.value, "action_id": self.pending_action.id},
            {"kind": "decline", "action_type": self.pending_action.type.value, "action_id": self.pending_action.id},
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "session_id": self.session_id,
            "pending_action": self.pending_action.to_dict() if self.pending_action else None,
            "action_buttons": self.action_buttons,
            "confidence": round(self.confidence, 4),
            "used_fallback": self.used_fallback,
            "data": self.data,
        }
