"""菜品解析

模型返回的菜品引用必须对照权威菜单重新解析：先按 ID，再按名称模糊匹配。
解析不到就返回 None，绝不猜测菜品或价格。
"""

import re
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import List, Optional, Sequence

from waiter_engine.models.menu import MenuItem


@dataclass
class ResolvedMenuItem:
    """解析结果"""
    item: MenuItem
    method: str  # id, exact, singular, contains, fuzzy
    score: float = 1.0


def normalize_name(name: str) -> str:
    text = re.sub(r"[^a-z0-9 ]+", " ", (name or "").lower())
    return re.sub(r"\s+", " ", text).strip()


def singularize(name: str) -> str:
    words = name.split(" ")
    last = words[-1]
    if last.endswith("ies") and len(last) > 4:
        last = last[:-3] + "y"
    elif last.endswith("es") and last[:-2].endswith(("ch", "sh", "x")):
        last = last[:-2]
    elif last.endswith("s") and not last.endswith("ss"):
        last = last[:-1]
    return " ".join(words[:-1] + [last])


class MenuItemResolver:
    """按 ID -> 精确名称 -> 单数化 -> 包含 -> 相似度 的顺序解析"""

    def __init__(self, menu_items: Sequence[MenuItem], fuzzy_threshold: float = 0.8):
        self.menu_items: List[MenuItem] = [item for item in menu_items if item.available]
        self.fuzzy_threshold = fuzzy_threshold
        self._by_id = {item.id: item for item in self.menu_items}
        self._by_name = {normalize_name(item.name): item for item in self.menu_items}

    def resolve(self, menu_item_id: Optional[str] = None, name: Optional[str] = None) -> Optional[ResolvedMenuItem]:
        if menu_item_id and menu_item_id in self._by_id:
            return ResolvedMenuItem(self._by_id[menu_item_id], "id")

        wanted = normalize_name(name or "")
        if not wanted:
            return None

        if wanted in self._by_name:
            return ResolvedMenuItem(self._by_name[wanted], "exact")

        singular = singularize(wanted)
        if singular in self._by_name:
            return ResolvedMenuItem(self._by_name[singular], "singular")

        # 包含匹配只接受唯一命中
        contains = [
            item for key, item in self._by_name.items()
            if singular in key or key in singular
        ]
        if len(contains) == 1:
            return ResolvedMenuItem(contains[0], "contains", 0.9)

        best, best_score = None, 0.0
        for key, item in self._by_name.items():
            score = SequenceMatcher(None, singular, key).ratio()
            if score > best_score:
                best, best_score = item, score
        if best is not None and best_score >= self.fuzzy_threshold:
            return ResolvedMenuItem(best, "fuzzy", round(best_score, 4))
        return None

    def candidates(self, name: str, limit: int = 3) -> List[MenuItem]:
        """解析失败时给澄清问题用的候选"""
        wanted = singularize(normalize_name(name))
        scored = sorted(
            self.menu_items,
            key=lambda item: SequenceMatcher(None, wanted, normalize_name(item.name)).ratio(),
            reverse=True
        )
        return scored[:limit]
