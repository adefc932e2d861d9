"""桌台会话数据模型"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any

from waiter_engine.core.types import SessionStatus


def format_duration(minutes: int) -> str:
    """格式化时长，例如 95 -> '1h 35m'"""
    hours, mins = divmod(max(minutes, 0), 60)
    if hours:
        return f"{hours}h {mins}m"
    return f"{mins}m"


@dataclass
class CustomerSession:
    """一桌一次就餐

    统计字段由非取消订单汇总得出，不做增量累加。
    """
    id: str
    restaurant_id: str
    table_number: int
    status: SessionStatus = SessionStatus.ACTIVE
    start_time: float = field(default_factory=lambda: datetime.now().timestamp())
    end_time: Optional[float] = None
    last_activity: float = field(default_factory=lambda: datetime.now().timestamp())
    total_orders: int = 0
    total_spent: Decimal = Decimal("0.00")
    notes: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def duration_minutes(self, now: Optional[float] = None) -> int:
        end = self.end_time or now or datetime.now().timestamp()
        return int((end - self.start_time) // 60)

    def to_dict(self) -> Dict[str, Any]:
        minutes = self.duration_minutes()
        return {
            "id": self.id,
            "restaurant_id": self.restaurant_id,
            "table_number": self.table_number,
            "status": self.status.value,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "last_activity": self.last_activity,
            "total_orders": self.total_orders,
            "total_spent": str(self.total_spent),
            "duration_minutes": minutes,
            "duration": format_duration(minutes),
            "notes": self.notes,
        }
