"""订单数据模型

金额一律使用 Decimal，总价永远由明细重新计算。
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Dict, Any, Iterable

from waiter_engine.core.types import OrderStatus

CENT = Decimal("0.01")


def to_money(value: Any) -> Decimal:
    """转换为保留两位小数的金额"""
    if isinstance(value, Decimal):
        amount = value
    else:
        amount = Decimal(str(value))
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def format_money(value: Decimal) -> str:
    return f"${to_money(value)}"


@dataclass
class OrderItem:
    """订单项

    price_at_time 是加入订单时的单价，之后菜单改价也不会影响已下的单。
    """
    menu_item_id: str
    name: str
    quantity: int
    price_at_time: Decimal
    notes: Optional[str] = None
    id: Optional[int] = None

    def __post_init__(self):
        if self.quantity < 1:
            raise ValueError(f"quantity must be >= 1, got {self.quantity}")
        self.price_at_time = to_money(self.price_at_time)
        if self.price_at_time < 0:
            raise ValueError(f"price_at_time must be >= 0, got {self.price_at_time}")

    @property
    def line_total(self) -> Decimal:
        return to_money(self.price_at_time * self.quantity)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "menu_item_id": self.menu_item_id,
            "name": self.name,
            "quantity": self.quantity,
            "price_at_time": str(self.price_at_time),
            "line_total": str(self.line_total),
            "notes": self.notes,
        }


def compute_total(items: Iterable[OrderItem]) -> Decimal:
    """Σ(price_at_time × quantity)"""
    return to_money(sum((item.price_at_time * item.quantity for item in items), Decimal("0")))


@dataclass
class Order:
    """订单"""
    id: str
    session_id: str
    restaurant_id: str
    table_number: int
    items: List[OrderItem] = field(default_factory=list)
    status: OrderStatus = OrderStatus.PENDING
    total: Decimal = Decimal("0.00")
    notes: Optional[str] = None
    created_at: float = field(default_factory=lambda: datetime.now().timestamp())
    updated_at: float = field(default_factory=lambda: datetime.now().timestamp())
    version: int = 0

    @property
    def short_id(self) -> str:
        """对顾客展示的订单号"""
        return self.id[-6:].upper()

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    def recompute_total(self) -> Decimal:
        self.total = compute_total(self.items)
        return self.total

    def find_item(self, menu_item_id: Optional[str] = None, name: Optional[str] = None) -> Optional[OrderItem]:
        """按菜品 ID 或名称查找订单项"""
        for item in self.items:
            if menu_item_id and item.menu_item_id == menu_item_id:
                return item
        if name:
            wanted = name.strip().lower()
            for item in self.items:
                if item.name.lower() == wanted:
                    return item
            for item in self.items:
                if wanted in item.name.lower() or item.name.lower() in wanted:
                    return item
        return None

    def summary_line(self) -> str:
        parts = ", ".join(f"{item.quantity}x {item.name}" for item in self.items)
        return f"Order #{self.short_id} ({self.status.value}): {parts or 'no items'} - {format_money(self.total)}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "short_id": self.short_id,
            "session_id": self.session_id,
            "restaurant_id": self.restaurant_id,
            "table_number": self.table_number,
            "status": self.status.value,
            "items": [item.to_dict() for item in self.items],
            "total": str(self.total),
            "notes": self.notes,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "version": self.version,
        }
