"""
对话记忆测试
"""

from decimal import Decimal

import pytest

from waiter_engine.core.types import Sentiment, PriceRange, OrderSize, CommunicationStyle
from waiter_engine.models.memory import ConversationMemory
from waiter_engine.services import conversation_memory
from waiter_engine.services.conversation_memory import (
    classify_sentiment, classify_price_range, classify_order_size,
    detect_dietary_restrictions, detect_topics, render_digest,
)


class TestSignals:
    """关键词信号测试"""

    @pytest.mark.parametrize("message,expected", [
        ("This pizza is great, I love it", Sentiment.POSITIVE),
        ("That was awful, I hate cold fries", Sentiment.NEGATIVE),
        ("Can I see the menu", Sentiment.NEUTRAL),
        ("good but bad", Sentiment.NEUTRAL),
    ])
    def test_sentiment(self, message, expected):
        assert classify_sentiment(message) == expected

    def test_dietary_restrictions(self):
        found = detect_dietary_restrictions("I'm vegan and also need gluten free options")

        assert "vegan" in found
        assert "gluten-free" in found

    def test_topics(self):
        assert set(detect_topics("Any spicy pizzas or a dessert?")) >= {"spicy", "pizza", "dessert"}

    @pytest.mark.parametrize("price,expected", [
        (Decimal("8.00"), PriceRange.BUDGET),
        (Decimal("12.00"), PriceRange.BUDGET),
        (Decimal("15.00"), PriceRange.MODERATE),
        (Decimal("32.00"), PriceRange.PREMIUM),
    ])
    def test_price_range(self, memory_settings, price, expected):
        assert classify_price_range(price, memory_settings) == expected

    @pytest.mark.parametrize("count,expected", [
        (1, OrderSize.SMALL), (2, OrderSize.SMALL), (3, OrderSize.MEDIUM), (4, OrderSize.LARGE),
    ])
    def test_order_size(self, memory_settings, count, expected):
        assert classify_order_size(count, memory_settings) == expected


class TestUpdate:
    """逐轮更新测试"""

    def test_update_accumulates(self, menu_items):
        memory = ConversationMemory(session_id="s1")

        conversation_memory.update(memory, "I'm vegetarian, what do you recommend?", "Try the Margherita Pizza")
        conversation_memory.update(memory, "Thanks, that sounds great", "Enjoy!")

        assert memory.message_count == 2
        assert "vegetarian" in memory.preferences.dietary_restrictions
        assert memory.preferences.needs_assistance is True
        assert memory.sentiment == Sentiment.POSITIVE
        assert memory.preferences.communication_style == CommunicationStyle.FRIENDLY

    def test_summary_window(self):
        memory = ConversationMemory(session_id="s1")
        for i in range(5):
            conversation_memory.update(memory, f"message {i}", f"reply {i}", summary_window=3)

        assert len(memory.conversation_summary) == 3
        assert memory.conversation_summary[0].startswith("Customer: message 2")

    def test_dislike_overrides_preference(self, menu_items):
        memory = ConversationMemory(session_id="s1")

        conversation_memory.update(memory, "I love the caesar salad", "", menu_items=menu_items)
        assert "salad-caesar" in memory.preferences.preferred_items

        conversation_memory.update(memory, "Actually I don't like the caesar salad", "", menu_items=menu_items)
        assert "salad-caesar" in memory.preferences.disliked_items
        assert "salad-caesar" not in memory.preferences.preferred_items

    def test_special_requests(self):
        memory = ConversationMemory(session_id="s1")

        conversation_memory.update(memory, "Burger without onions please", "")

        assert memory.preferences.has_special_requests is True


class TestLearnFromOrder:
    """从订单学习偏好"""

    def test_learn_from_order(self, menu_items, memory_settings):
        by_id = {item.id: item for item in menu_items}
        memory = ConversationMemory(session_id="s1")

        conversation_memory.learn_from_order(
            memory, [(by_id["main-ribeye"], 1), (by_id["drink-house-red"], 2)], memory_settings
        )

        prefs = memory.preferences
        assert prefs.favorite_categories == {"main", "drink"}
        assert {"main-ribeye", "drink-house-red"} <= prefs.preferred_items
        # (32 + 18) / 3 = 16.67
        assert prefs.price_range == PriceRange.MODERATE
        assert prefs.order_size == OrderSize.MEDIUM

    def test_price_and_size_count_servings(self, menu_items, memory_settings):
        """价格档和订单规模都按份数算，不按行数"""
        by_id = {item.id: item for item in menu_items}
        memory = ConversationMemory(session_id="s1")

        conversation_memory.learn_from_order(
            memory, [(by_id["main-ribeye"], 1), (by_id["drink-sparkling-water"], 4)], memory_settings
        )

        # (32 + 4 * 3) / 5 = 8.80；按行平均会是 17.50
        assert memory.preferences.price_range == PriceRange.BUDGET
        # 5 份；按行数只有 2
        assert memory.preferences.order_size == OrderSize.LARGE

    def test_empty_order_is_noop(self, memory_settings):
        memory = ConversationMemory(session_id="s1")

        conversation_memory.learn_from_order(memory, [], memory_settings)

        assert memory.preferences.price_range is None


class TestDigest:
    """记忆摘要测试"""

    def test_empty_memory_renders_nothing(self):
        assert render_digest(None) == ""
        assert render_digest(ConversationMemory(session_id="s1")) == ""

    def test_digest_uses_item_names(self, menu_items):
        memory = ConversationMemory(session_id="s1")
        conversation_memory.update(memory, "I'm vegan. I don't like the caesar salad", "", menu_items=menu_items)

        digest = render_digest(memory, menu_items)

        assert "CONVERSATION MEMORY:" in digest
        assert "vegan" in digest
        assert "Avoid suggesting: Caesar Salad" in digest


class TestMemoryService:
    """记忆服务测试"""

    def test_record_exchange_and_evict(self, memory, memory_store):
        memory.record_exchange("s1", "hello", "hi there")

        assert memory.get("s1").message_count == 1
        assert memory_store.stats()["active_memories"] == 1

        assert memory.evict("s1") is True
        assert memory.get("s1") is None

    def test_memory_is_per_session(self, memory):
        memory.record_exchange("s1", "I'm vegan", "Noted")
        memory.record_exchange("s2", "hello", "hi")

        assert "vegan" in memory.get("s1").preferences.dietary_restrictions
        assert memory.get("s2").preferences.dietary_restrictions == set()
