"""对话记忆

按关键词启发式从每轮对话中提取饮食限制、情绪、话题等信号。
记忆只用于个性化（上下文构建和推荐），不参与任何安全或金额决策。
"""

import re
import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple

from waiter_engine.config import MemorySettings
from waiter_engine.core.interfaces import MemoryStore
from waiter_engine.core.types import Sentiment, PriceRange, OrderSize, CommunicationStyle
from waiter_engine.models.memory import ConversationMemory
from waiter_engine.models.menu import MenuItem

logger = logging.getLogger(__name__)

DIETARY_KEYWORDS = {
    "vegetarian": ["vegetarian", "veggie", "no meat"],
    "vegan": ["vegan", "no dairy", "plant-based", "plant based"],
    "gluten-free": ["gluten free", "gluten-free", "celiac", "coeliac"],
    "dairy-free": ["dairy free", "dairy-free", "lactose intolerant", "no cheese"],
}

TOPIC_KEYWORDS = [
    "pizza", "salad", "burger", "pasta", "appetizer", "dessert", "drink",
    "vegetarian", "spicy", "mild", "recommendation", "popular", "special",
]

POSITIVE_WORDS = ["great", "good", "excellent", "love", "like", "perfect", "amazing", "delicious"]
NEGATIVE_WORDS = ["bad", "terrible", "hate", "dislike", "awful", "horrible", "disgusting"]

ASSISTANCE_PHRASES = ["help", "recommend", "suggest", "not sure", "what do you", "what's good", "what is good"]
SPECIAL_REQUEST_PHRASES = ["without", "extra", "on the side", "allergic", "allergy", "no onion", "no ice", "well done"]

_DISLIKE_PATTERN = re.compile(r"\b(?:don't|do not|didn't|never) (?:like|want|enjoy)\b|\b(?:hate|dislike|allergic to)\b")
_PREFER_PATTERN = re.compile(r"\b(?:love|loved|really like|favou?rite)\b")

SUMMARY_ENTRY_LIMIT = 100


def _count_words(text: str, words: Iterable[str]) -> int:
    return sum(len(re.findall(rf"\b{re.escape(word)}\b", text)) for word in words)


def classify_sentiment(message: str) -> Sentiment:
    """正负关键词计数比较，相等为 neutral"""
    text = message.lower()
    positive = _count_words(text, POSITIVE_WORDS)
    negative = _count_words(text, NEGATIVE_WORDS)
    if positive > negative:
        return Sentiment.POSITIVE
    if negative > positive:
        return Sentiment.NEGATIVE
    return Sentiment.NEUTRAL


def detect_dietary_restrictions(message: str) -> List[str]:
    text = message.lower()
    return [diet for diet, keywords in DIETARY_KEYWORDS.items() if any(k in text for k in keywords)]


def detect_topics(message: str) -> List[str]:
    text = message.lower()
    return [topic for topic in TOPIC_KEYWORDS if re.search(rf"\b{topic}s?\b", text)]


def detect_communication_style(message: str) -> CommunicationStyle:
    text = message.lower()
    if "please" in text or "thank" in text:
        return CommunicationStyle.FRIENDLY
    if len(message.strip()) < 20:
        return CommunicationStyle.BRIEF
    return CommunicationStyle.DETAILED


def classify_price_range(average_price: Decimal, settings: MemorySettings) -> PriceRange:
    """budget ≤ budget_max_price < moderate ≤ moderate_max_price < premium"""
    if average_price <= Decimal(str(settings.budget_max_price)):
        return PriceRange.BUDGET
    if average_price <= Decimal(str(settings.moderate_max_price)):
        return PriceRange.MODERATE
    return PriceRange.PREMIUM


def classify_order_size(item_count: int, settings: MemorySettings) -> OrderSize:
    if item_count <= settings.small_order_max_items:
        return OrderSize.SMALL
    if item_count >= settings.large_order_min_items:
        return OrderSize.LARGE
    return OrderSize.MEDIUM


def _mentioned_items(text: str, menu_items: Sequence[MenuItem]) -> List[MenuItem]:
    return [item for item in menu_items if item.name.lower() in text]


def update(
    memory: ConversationMemory,
    user_message: str,
    ai_response: str,
    action_taken: Optional[str] = None,
    menu_items: Sequence[MenuItem] = (),
    summary_window: int = 3
) -> ConversationMemory:
    """用一轮对话更新记忆"""
    text = user_message.lower()
    prefs = memory.preferences

    memory.message_count += 1
    prefs.dietary_restrictions.update(detect_dietary_restrictions(user_message))
    prefs.communication_style = detect_communication_style(user_message)
    if any(phrase in text for phrase in ASSISTANCE_PHRASES):
        prefs.needs_assistance = True
    if any(phrase in text for phrase in SPECIAL_REQUEST_PHRASES):
        prefs.has_special_requests = True

    mentioned = _mentioned_items(text, menu_items)
    if mentioned and _DISLIKE_PATTERN.search(text):
        for item in mentioned:
            prefs.disliked_items.add(item.id)
            prefs.preferred_items.discard(item.id)
    elif mentioned and _PREFER_PATTERN.search(text):
        for item in mentioned:
            prefs.preferred_items.add(item.id)
            prefs.disliked_items.discard(item.id)

    memory.key_topics.update(detect_topics(user_message))
    memory.sentiment = classify_sentiment(user_message)

    entry = f"Customer: {user_message.strip()[:SUMMARY_ENTRY_LIMIT]}"
    if ai_response:
        entry += f" / Waiter: {ai_response.strip()[:SUMMARY_ENTRY_LIMIT]}"
    if action_taken:
        entry += f" [{action_taken}]"
    memory.conversation_summary.append(entry)
    memory.conversation_summary = memory.conversation_summary[-summary_window:]

    memory.last_updated = datetime.now().timestamp()
    return memory


def learn_from_order(
    memory: ConversationMemory,
    placed_items: Sequence[Tuple[MenuItem, int]],
    settings: MemorySettings
) -> ConversationMemory:
    """从已下的订单学习偏好

    价格档看每一份菜的平均单价（按数量加权），订单规模数的是总份数而不是行数：
    一份牛排加四瓶气泡水是 5 份、均价 8.80，归为 budget / large。

    Args:
        placed_items: (菜品, 数量) 列表
    """
    if not placed_items:
        return memory

    prefs = memory.preferences
    total_quantity = 0
    total_value = Decimal("0")
    for item, quantity in placed_items:
        prefs.favorite_categories.add(item.category)
        prefs.preferred_items.add(item.id)
        prefs.disliked_items.discard(item.id)
        total_quantity += quantity
        total_value += item.price * quantity

    if total_quantity > 0:
        prefs.price_range = classify_price_range(total_value / total_quantity, settings)
        prefs.order_size = classify_order_size(total_quantity, settings)

    memory.last_updated = datetime.now().timestamp()
    return memory


def render_digest(memory: Optional[ConversationMemory], menu_items: Sequence[MenuItem] = ()) -> str:
    """渲染给模型看的记忆摘要"""
    if memory is None or memory.message_count == 0:
        return ""

    prefs = memory.preferences
    names = {item.id: item.name for item in menu_items}
    lines = ["CONVERSATION MEMORY:"]
    if prefs.dietary_restrictions:
        lines.append(f"- Dietary restrictions: {', '.join(sorted(prefs.dietary_restrictions))}")
    if prefs.favorite_categories:
        lines.append(f"- Favorite categories: {', '.join(sorted(prefs.favorite_categories))}")
    if prefs.preferred_items:
        lines.append(f"- Liked items: {', '.join(sorted(names.get(i, i) for i in prefs.preferred_items))}")
    if prefs.disliked_items:
        lines.append(f"- Avoid suggesting: {', '.join(sorted(names.get(i, i) for i in prefs.disliked_items))}")
    if prefs.price_range:
        lines.append(f"- Price preference: {prefs.price_range.value}")
    if prefs.order_size:
        lines.append(f"- Typical order size: {prefs.order_size.value}")
    if prefs.communication_style:
        lines.append(f"- Communication style: {prefs.communication_style.value}")
    if prefs.needs_assistance:
        lines.append("- Customer has asked for guidance")
    if prefs.has_special_requests:
        lines.append("- Customer makes special requests; confirm modifications")
    if memory.key_topics:
        lines.append(f"- Topics discussed: {', '.join(sorted(memory.key_topics))}")
    lines.append(f"- Sentiment: {memory.sentiment.value}")
    if memory.conversation_summary:
        lines.append(f"- Recent exchanges: {' | '.join(memory.conversation_summary)}")
    return "\n".join(lines)


class ConversationMemoryService:
    """把记忆存储和更新规则组合起来，供引擎注入使用"""

    def __init__(self, store: MemoryStore, settings: MemorySettings):
        self.store = store
        self.settings = settings

    def get(self, session_id: str) -> Optional[ConversationMemory]:
        return self.store.get(session_id)

    def record_exchange(
        self,
        session_id: str,
        user_message: str,
        ai_response: str,
        action_taken: Optional[str] = None,
        menu_items: Sequence[MenuItem] = ()
    ) -> ConversationMemory:
        memory = self.store.get_or_create(session_id)
        update(
            memory, user_message, ai_response, action_taken,
            menu_items=menu_items,
            summary_window=self.settings.summary_window
        )
        self.store.save(memory)
        return memory

    def record_order(self, session_id: str, placed_items: Sequence[Tuple[MenuItem, int]]) -> ConversationMemory:
        memory = self.store.get_or_create(session_id)
        learn_from_order(memory, placed_items, self.settings)
        self.store.save(memory)
        return memory

    def evict(self, session_id: str) -> bool:
        return self.store.evict(session_id)
