"""Function calling 工具定义

每个 ActionType 对应一个工具；参数模型用于校验模型返回的 arguments。
"""

from typing import Dict, List, Optional, Type, Any

from pydantic import BaseModel, Field, ConfigDict

from waiter_engine.core.types import ActionType


# ==================== 参数模型 ====================

class ToolArguments(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ToolOrderItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    menu_item_id: str
    name: str
    quantity: int = Field(ge=1)
    price: float = Field(ge=0)
    special_requests: Optional[str] = None


class PlaceOrderArgs(ToolArguments):
    items: List[ToolOrderItem] = Field(min_length=1)
    estimated_total: float = Field(ge=0)
    customer_notes: Optional[str] = None


class AddToOrderArgs(ToolArguments):
    items: List[ToolOrderItem] = Field(min_length=1)
    order_id: Optional[str] = None


class RemoveFromOrderArgs(ToolArguments):
    target_item: str = Field(min_length=1)
    quantity: Optional[int] = Field(default=None, ge=1)
    order_id: Optional[str] = None
    customer_reason: Optional[str] = None


class ModifyOrderItemArgs(ToolArguments):
    target_item: str = Field(min_length=1)
    new_quantity: Optional[int] = Field(default=None, ge=1)
    special_request: Optional[str] = None
    order_id: Optional[str] = None


class CancelOrderArgs(ToolArguments):
    cancellation_type: str = "full_order"
    reason: str = Field(min_length=1)
    order_id: Optional[str] = None


class CheckOrdersArgs(ToolArguments):
    order_id: Optional[str] = None


class EditOrderRequestArgs(ToolArguments):
    request: str = Field(min_length=1)
    order_id: Optional[str] = None


class ProvideInformationArgs(ToolArguments):
    information_type: str
    specific_query: str
    menu_item_id: Optional[str] = None
    answer: Optional[str] = None


class ClarifyArgs(ToolArguments):
    ambiguous_request: str
    possible_options: List[str] = Field(default_factory=list)
    question: Optional[str] = None


class NoActionArgs(ToolArguments):
    conversation_type: str
    reply: Optional[str] = None


# ==================== 工具 Schema ====================

_ITEM_SCHEMA = {
    "type": "object",
    "properties": {
        "menu_item_id": {"type": "string", "description": "菜单中的菜品 ID"},
        "name": {"type": "string", "description": "菜品名称"},
        "quantity": {"type": "integer", "minimum": 1},
        "price": {"type": "number", "description": "菜单单价"},
        "special_requests": {"type": "string"},
    },
    "required": ["menu_item_id", "name", "quantity", "price"],
}


def _tool(name: str, description: str, properties: Dict[str, Any], required: List[str]) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {"type": "object", "properties": properties, "required": required},
        },
    }


TOOLS: List[Dict[str, Any]] = [
    _tool(
        "place_order",
        "Place a new order when the customer clearly wants to order specific menu items",
        {
            "items": {"type": "array", "items": _ITEM_SCHEMA},
            "estimated_total": {"type": "number", "description": "Sum of price x quantity"},
            "customer_notes": {"type": "string"},
        },
        ["items", "estimated_total"],
    ),
    _tool(
        "add_to_order",
        "Add items to the customer's existing pending order",
        {
            "items": {"type": "array", "items": _ITEM_SCHEMA},
            "order_id": {"type": "string", "description": "Order reference if the customer named one"},
        },
        ["items"],
    ),
    _tool(
        "remove_from_order",
        "Remove an item from an existing order",
        {
            "target_item": {"type": "string", "description": "Name of the item to remove"},
            "quantity": {"type": "integer", "minimum": 1, "description": "How many to remove; omit for all"},
            "order_id": {"type": "string"},
            "customer_reason": {"type": "string"},
        },
        ["target_item"],
    ),
    _tool(
        "modify_order_item",
        "Change the quantity of an item or add a special request to it",
        {
            "target_item": {"type": "string"},
            "new_quantity": {"type": "integer", "minimum": 1},
            "special_request": {"type": "string"},
            "order_id": {"type": "string"},
        },
        ["target_item"],
    ),
    _tool(
        "cancel_order",
        "Cancel the customer's order",
        {
            "cancellation_type": {"type": "string", "enum": ["full_order", "specific_items"]},
            "reason": {"type": "string"},
            "order_id": {"type": "string"},
        },
        ["cancellation_type", "reason"],
    ),
    _tool(
        "check_orders",
        "Show the customer the status and contents of their orders",
        {"order_id": {"type": "string"}},
        [],
    ),
    _tool(
        "edit_order_request",
        "The customer wants to change their order but has not said exactly how",
        {"order_id": {"type": "string"}, "request": {"type": "string"}},
        ["request"],
    ),
    _tool(
        "provide_information",
        "Answer a question about the menu, ingredients or the restaurant",
        {
            "information_type": {
                "type": "string",
                "enum": ["menu_item_details", "ingredients", "nutritional_info", "restaurant_info",
                         "policy", "recommendation"],
            },
            "specific_query": {"type": "string"},
            "menu_item_id": {"type": "string"},
            "answer": {"type": "string", "description": "The reply to show the customer"},
        },
        ["information_type", "specific_query"],
    ),
    _tool(
        "clarify_customer_request",
        "Ask a clarifying question when the request is ambiguous",
        {
            "ambiguous_request": {"type": "string"},
            "possible_options": {"type": "array", "items": {"type": "string"}},
            "question": {"type": "string"},
        },
        ["ambiguous_request"],
    ),
    _tool(
        "no_action_needed",
        "Greetings, thanks and small talk that need no order action",
        {
            "conversation_type": {"type": "string", "enum": ["greeting", "thanks", "small_talk", "general_question"]},
            "reply": {"type": "string"},
        },
        ["conversation_type"],
    ),
]

TOOL_ACTIONS: Dict[str, ActionType] = {
    "place_order": ActionType.PLACE_ORDER,
    "add_to_order": ActionType.ADD_TO_ORDER,
    "remove_from_order": ActionType.REMOVE_FROM_ORDER,
    "modify_order_item": ActionType.MODIFY_ORDER_ITEM,
    "cancel_order": ActionType.CANCEL_ORDER,
    "check_orders": ActionType.CHECK_ORDERS,
    "edit_order_request": ActionType.EDIT_ORDER_REQUEST,
    "provide_information": ActionType.PROVIDE_INFO,
    "clarify_customer_request": ActionType.CLARIFY,
    "no_action_needed": ActionType.NO_ACTION,
}

TOOL_ARGUMENTS: Dict[str, Type[ToolArguments]] = {
    "place_order": PlaceOrderArgs,
    "add_to_order": AddToOrderArgs,
    "remove_from_order": RemoveFromOrderArgs,
    "modify_order_item": ModifyOrderItemArgs,
    "cancel_order": CancelOrderArgs,
    "check_orders": CheckOrdersArgs,
    "edit_order_request": EditOrderRequestArgs,
    "provide_information": ProvideInformationArgs,
    "clarify_customer_request": ClarifyArgs,
    "no_action_needed": NoActionArgs,
}


def get_tools() -> List[Dict[str, Any]]:
    return TOOLS
