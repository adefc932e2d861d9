"""菜单与餐厅数据模型"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Dict, Any, Optional

from waiter_engine.models.order import to_money


@dataclass
class MenuItem:
    """菜品"""
    id: str
    name: str
    price: Decimal
    category: str
    description: str = ""
    dietary_tags: List[str] = field(default_factory=list)
    available: bool = True
    popular: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "price": str(self.price),
            "category": self.category,
            "description": self.description,
            "dietary_tags": list(self.dietary_tags),
            "available": self.available,
            "popular": self.popular,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MenuItem":
        return cls(
            id=str(data["id"]),
            name=data["name"],
            price=to_money(data["price"]),
            category=data.get("category", "main"),
            description=data.get("description", ""),
            dietary_tags=[t.lower() for t in data.get("dietary_tags", [])],
            available=data.get("available", True),
            popular=data.get("popular", False),
        )


@dataclass
class Restaurant:
    """餐厅及其服务员人设"""
    id: str
    name: str
    waiter_name: str = "Alex"
    waiter_personality: str = "friendly and attentive"
    welcome_message: str = ""
    menu_items: List[MenuItem] = field(default_factory=list)

    def available_items(self) -> List[MenuItem]:
        """只返回当前可点的菜品"""
        return [item for item in self.menu_items if item.available]

    def find_item(self, item_id: str) -> Optional[MenuItem]:
        for item in self.menu_items:
            if item.id == item_id:
                return item
        return None
