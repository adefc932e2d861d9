"""
菜单目录

菜单的增删改不在引擎范围内，这里只按接口读取。默认实现从 YAML 文件加载。
"""

import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from waiter_engine.core.interfaces import MenuCatalog
from waiter_engine.models.menu import MenuItem, Restaurant
from waiter_engine.infrastructure.exceptions import NotFoundError

logger = logging.getLogger(__name__)


class YamlMenuCatalog(MenuCatalog):
    """基于 YAML 文件的菜单目录

    文件格式:
        restaurants:
          - id: bistro
            name: Bistro
            waiter_name: Alex
            menu:
              - {id: m1, name: Margherita Pizza, price: 12.00, category: pizza}
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._restaurants: Dict[str, Restaurant] = {}
        self._lock = threading.Lock()
        self.reload()

    def reload(self) -> int:
        """重新加载菜单文件

        Returns:
            加载的餐厅数量
        """
        with open(self.path, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f) or {}

        restaurants = {}
        for entry in config.get("restaurants", []):
            restaurant = Restaurant(
                id=str(entry["id"]),
                name=entry.get("name", entry["id"]),
                waiter_name=entry.get("waiter_name", "Alex"),
                waiter_personality=entry.get("waiter_personality", "friendly and attentive"),
                welcome_message=entry.get("welcome_message", ""),
                menu_items=[MenuItem.from_dict(item) for item in entry.get("menu", [])],
            )
            restaurants[restaurant.id] = restaurant

        with self._lock:
            self._restaurants = restaurants

        logger.info(f"菜单已加载: {len(restaurants)} 家餐厅 ({self.path.name})")
        return len(restaurants)

    def restaurants(self) -> List[Restaurant]:
        with self._lock:
            return list(self._restaurants.values())

    def get_restaurant(self, restaurant_id: str) -> Restaurant:
        with self._lock:
            restaurant = self._restaurants.get(restaurant_id)
        if restaurant is None:
            raise NotFoundError(f"Restaurant '{restaurant_id}' not found", resource=restaurant_id)
        return restaurant

    def get_available_items(self, restaurant_id: str) -> List[MenuItem]:
        return self.get_restaurant(restaurant_id).available_items()

    def find_item(self, restaurant_id: str, item_id: str) -> Optional[MenuItem]:
        return self.get_restaurant(restaurant_id).find_item(item_id)
