"""API 请求模型"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from waiter_engine.core.types import OrderStatus, SessionStatus

# 验证常量
MAX_MESSAGE_LENGTH = 1000
MAX_HISTORY_MESSAGES = 50


class HistoryMessage(BaseModel):
    """对话历史中的一条消息"""
    role: Literal["user", "assistant"]
    content: str = Field(..., max_length=MAX_MESSAGE_LENGTH * 4)


class ChatRequest(BaseModel):
    """顾客消息"""
    restaurant_id: str = Field(..., min_length=1, description="餐厅ID")
    table_number: int = Field(..., ge=1, description="桌号")
    message: str = Field(
        ...,
        min_length=1,
        max_length=MAX_MESSAGE_LENGTH,
        description="顾客消息"
    )
    history: List[HistoryMessage] = Field(
        default_factory=list,
        max_length=MAX_HISTORY_MESSAGES,
        description="最近的对话历史，由前端维护"
    )

    @field_validator('message')
    @classmethod
    def validate_message(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("消息不能为空")
        return v

    @field_validator('restaurant_id')
    @classmethod
    def validate_restaurant_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("餐厅ID不能为空")
        return v


class ConfirmActionRequest(BaseModel):
    """确认或拒绝待确认动作"""
    action_id: str = Field(..., min_length=1, description="待确认动作令牌")
    confirmed: bool = Field(..., description="true 确认执行，false 拒绝")
    action_data: Optional[Dict[str, Any]] = Field(
        default=None,
        description="令牌无法解析时的回传动作数据 {type, payload, restaurant_id, table_number}"
    )

    @field_validator('action_id')
    @classmethod
    def validate_action_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("动作ID不能为空")
        return v


class EndSessionRequest(BaseModel):
    """结束会话"""
    status: Optional[SessionStatus] = Field(
        default=None,
        description="结束状态，为空时按订单情况推断"
    )
    notes: Optional[str] = Field(default=None, max_length=500)

    @field_validator('status')
    @classmethod
    def validate_status(cls, v: Optional[SessionStatus]) -> Optional[SessionStatus]:
        if v == SessionStatus.ACTIVE:
            raise ValueError("结束状态不能是 ACTIVE")
        return v


class OrderStatusRequest(BaseModel):
    """后厨/员工推进订单状态"""
    status: OrderStatus = Field(..., description="目标状态")
    by_staff: bool = Field(default=True, description="是否由员工发起")
