"""推荐引擎

根据当前订单和对话记忆生成加购建议。建议只用于丰富回复文案，永远不会自行修改订单。
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Dict, Any, Iterable, Sequence, NamedTuple

from waiter_engine.config import MemorySettings
from waiter_engine.core.types import PriceRange
from waiter_engine.services.conversation_memory import classify_price_range
from waiter_engine.models.memory import ConversationMemory
from waiter_engine.models.menu import MenuItem
from waiter_engine.models.order import OrderItem
from waiter_engine.models.action import LineItem

logger = logging.getLogger(__name__)

MAIN_KEYWORDS = ["pizza", "burger", "steak", "ribeye", "chicken", "pasta", "spaghetti", "penne", "fish", "sandwich"]
DRINK_KEYWORDS = ["drink", "soda", "juice", "water", "coffee", "tea", "beer", "wine", "lemonade"]
SIDE_KEYWORDS = ["fries", "bread", "rice", "vegetables", "side"]
DESSERT_KEYWORDS = ["cake", "ice cream", "dessert", "pie", "cookie", "chocolate", "tiramisu", "sorbet"]

DESSERT_ORDER_VALUE = Decimal("25")
MIN_CONFIDENCE = 0.2
MAX_SUGGESTIONS = 3

# 记忆对置信度的调整
FAVORITE_CATEGORY_BOOST = 0.3
PREFERRED_ITEM_BOOST = 0.4
DIETARY_MATCH_BOOST = 0.2
PRICE_MATCH_BOOST = 0.1


def _matches(item: Any, keywords: Iterable[str], category_words: Iterable[str]) -> bool:
    name = item.name.lower()
    category = (getattr(item, "category", "") or "").lower()
    return any(k in name for k in keywords) or any(c in category for c in category_words)


def is_main(item: Any) -> bool:
    return _matches(item, MAIN_KEYWORDS, ["pizza", "pasta", "main", "burger"])


def is_drink(item: Any) -> bool:
    return _matches(item, DRINK_KEYWORDS, ["drink", "beverage"])


def is_side(item: Any) -> bool:
    return _matches(item, SIDE_KEYWORDS, ["side"])


def is_dessert(item: Any) -> bool:
    return _matches(item, DESSERT_KEYWORDS, ["dessert"])


class OrderLine(NamedTuple):
    """推荐只关心的订单行字段"""
    menu_item_id: str
    name: str
    price: Decimal
    quantity: int
    category: str = ""


def lines_from_order_items(items: Iterable[OrderItem], menu: Sequence[MenuItem] = ()) -> List[OrderLine]:
    categories = {m.id: m.category for m in menu}
    return [
        OrderLine(i.menu_item_id, i.name, i.price_at_time, i.quantity, categories.get(i.menu_item_id, ""))
        for i in items
    ]


def lines_from_line_items(items: Iterable[LineItem], menu: Sequence[MenuItem] = ()) -> List[OrderLine]:
    categories = {m.id: m.category for m in menu}
    return [
        OrderLine(i.menu_item_id, i.name, i.price, i.quantity, categories.get(i.menu_item_id, ""))
        for i in items
    ]


@dataclass
class SuggestedItem:
    id: str
    name: str
    price: Decimal
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "price": str(self.price), "reason": self.reason}


@dataclass
class Suggestion:
    """一条推荐"""
    type: str
    priority: int
    message: str
    items: List[SuggestedItem]
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "priority": self.priority,
            "message": self.message,
            "items": [item.to_dict() for item in self.items],
            "confidence": round(self.confidence, 4),
        }


@dataclass
class RecommendationContext:
    """推荐输入"""
    menu_items: Sequence[MenuItem]
    current_order: Sequence[OrderLine] = field(default_factory=list)
    memory: Optional[ConversationMemory] = None


class RecommendationEngine:
    """推荐引擎

    规则产出候选，记忆调整置信度，最后按 (confidence, priority) 降序取前 3。
    """

    def __init__(
        self,
        memory_settings: Optional[MemorySettings] = None,
        min_confidence: float = MIN_CONFIDENCE,
        max_suggestions: int = MAX_SUGGESTIONS
    ):
        self.memory_settings = memory_settings or MemorySettings()
        self.min_confidence = min_confidence
        self.max_suggestions = max_suggestions

    def generate(self, context: RecommendationContext) -> List[Suggestion]:
        menu = [item for item in context.menu_items if item.available]
        ordered_ids = {line.menu_item_id for line in context.current_order}
        candidates = [item for item in menu if item.id not in ordered_ids]

        suggestions: List[Suggestion] = []
        suggestions.extend(self._complementary(context.current_order, candidates))
        suggestions.extend(self._dietary(context.memory, candidates))
        suggestions.extend(self._popular(candidates))
        suggestions.extend(self._upgrades(context.current_order, candidates))

        if context.memory is not None:
            suggestions = [self._adjust(s, context.memory, menu) for s in suggestions]

        kept = [s for s in suggestions if s.confidence > self.min_confidence and s.items]
        kept.sort(key=lambda s: (s.confidence, s.priority), reverse=True)
        return kept[:self.max_suggestions]

    def top(self, context: RecommendationContext) -> Optional[Suggestion]:
        suggestions = self.generate(context)
        return suggestions[0] if suggestions else None

    # ==================== 规则 ====================

    def _complementary(self, order: Sequence[OrderLine], candidates: List[MenuItem]) -> List[Suggestion]:
        if not order:
            return []

        has_main = any(is_main(line) for line in order)
        has_drink = any(is_drink(line) for line in order)
        has_side = any(is_side(line) for line in order)
        has_dessert = any(is_dessert(line) for line in order)
        value = sum((line.price * line.quantity for line in order), Decimal("0"))

        suggestions = []
        if has_main and not has_drink:
            drinks = [SuggestedItem(i.id, i.name, i.price, "Perfect to complement your meal")
                      for i in candidates if is_drink(i)][:3]
            if drinks:
                suggestions.append(Suggestion(
                    "drink", 8, "Would you like to add a refreshing drink to your order?", drinks, 0.9
                ))

        if has_main and not has_side:
            sides = [SuggestedItem(i.id, i.name, i.price, "Great addition to your main course")
                     for i in candidates if is_side(i)][:3]
            if sides:
                suggestions.append(Suggestion("side", 7, "How about adding a delicious side dish?", sides, 0.8))

        if value > DESSERT_ORDER_VALUE and not has_dessert:
            desserts = [SuggestedItem(i.id, i.name, i.price, "Perfect way to end your meal")
                        for i in candidates if is_dessert(i)][:2]
            if desserts:
                suggestions.append(Suggestion(
                    "dessert", 6, "Would you like to finish with a sweet treat?", desserts, 0.7
                ))
        return suggestions

    def _dietary(self, memory: Optional[ConversationMemory], candidates: List[MenuItem]) -> List[Suggestion]:
        if memory is None:
            return []
        suggestions = []
        for diet in sorted(memory.preferences.dietary_restrictions):
            items = [SuggestedItem(i.id, i.name, i.price, f"Suitable for {diet} diets")
                     for i in candidates if diet in i.dietary_tags][:3]
            if items:
                suggestions.append(Suggestion(
                    "dietary", 9, f"Since you mentioned {diet} preferences, you might enjoy these:", items, 0.9
                ))
        return suggestions

    def _popular(self, candidates: List[MenuItem]) -> List[Suggestion]:
        items = [SuggestedItem(i.id, i.name, i.price, "Customer favorite") for i in candidates if i.popular][:2]
        if not items:
            return []
        return [Suggestion("popular", 5, "Try one of our most popular dishes!", items, 0.6)]

    def _upgrades(self, order: Sequence[OrderLine], candidates: List[MenuItem]) -> List[Suggestion]:
        suggestions = []
        for line in order:
            if not line.category:
                continue
            upgrade = next(
                (i for i in sorted(candidates, key=lambda m: m.price)
                 if i.category == line.category and i.price > line.price),
                None
            )
            if upgrade:
                suggestions.append(Suggestion(
                    "upgrade", 4, f"Would you like to upgrade your {line.name}?",
                    [SuggestedItem(upgrade.id, upgrade.name, upgrade.price, f"Upgrade from {line.name}")],
                    0.5
                ))
        return suggestions

    # ==================== 记忆调整 ====================

    def _adjust(self, suggestion: Suggestion, memory: ConversationMemory, menu: List[MenuItem]) -> Suggestion:
        prefs = memory.preferences
        by_id = {item.id: item for item in menu}

        items = [s for s in suggestion.items if s.id not in prefs.disliked_items]
        if not items:
            suggestion.items = []
            suggestion.confidence = 0.0
            return suggestion

        menu_items = [by_id[s.id] for s in items if s.id in by_id]
        confidence = suggestion.confidence
        if any(m.category in prefs.favorite_categories for m in menu_items):
            confidence += FAVORITE_CATEGORY_BOOST
        if any(m.id in prefs.preferred_items for m in menu_items):
            confidence += PREFERRED_ITEM_BOOST
        if prefs.dietary_restrictions and any(
            prefs.dietary_restrictions & set(m.dietary_tags) for m in menu_items
        ):
            confidence += DIETARY_MATCH_BOOST
        if prefs.price_range and any(self._in_price_range(m.price, prefs.price_range) for m in menu_items):
            confidence += PRICE_MATCH_BOOST

        suggestion.items = items
        suggestion.confidence = min(confidence, 1.0)
        return suggestion

    def _in_price_range(self, price: Decimal, price_range: PriceRange) -> bool:
        return classify_price_range(price, self.memory_settings) == price_range
