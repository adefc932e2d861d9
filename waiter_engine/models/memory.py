"""对话记忆数据模型"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Set, Dict, Any

from waiter_engine.core.types import Sentiment, PriceRange, OrderSize, CommunicationStyle


@dataclass
class CustomerPreferences:
    """推断出的顾客偏好"""
    dietary_restrictions: Set[str] = field(default_factory=set)
    favorite_categories: Set[str] = field(default_factory=set)
    disliked_items: Set[str] = field(default_factory=set)
    preferred_items: Set[str] = field(default_factory=set)
    price_range: Optional[PriceRange] = None
    order_size: Optional[OrderSize] = None
    communication_style: Optional[CommunicationStyle] = None
    needs_assistance: bool = False
    has_special_requests: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dietary_restrictions": sorted(self.dietary_restrictions),
            "favorite_categories": sorted(self.favorite_categories),
            "disliked_items": sorted(self.disliked_items),
            "preferred_items": sorted(self.preferred_items),
            "price_range": self.price_range.value if self.price_range else None,
            "order_size": self.order_size.value if self.order_size else None,
            "communication_style": self.communication_style.value if self.communication_style else None,
            "needs_assistance": self.needs_assistance,
            "has_special_requests": self.has_special_requests,
        }


@dataclass
class ConversationMemory:
    """单个会话的对话记忆（非权威状态）"""
    session_id: str
    preferences: CustomerPreferences = field(default_factory=CustomerPreferences)
    key_topics: Set[str] = field(default_factory=set)
    sentiment: Sentiment = Sentiment.NEUTRAL
    conversation_summary: List[str] = field(default_factory=list)
    message_count: int = 0
    created_at: float = field(default_factory=lambda: datetime.now().timestamp())
    last_updated: float = field(default_factory=lambda: datetime.now().timestamp())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "preferences": self.preferences.to_dict(),
            "key_topics": sorted(self.key_topics),
            "sentiment": self.sentiment.value,
            "conversation_summary": " | ".join(self.conversation_summary),
            "message_count": self.message_count,
            "last_updated": self.last_updated,
        }
