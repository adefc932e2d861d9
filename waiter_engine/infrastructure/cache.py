"""
缓存模块

- PendingActionCache: 待确认动作的服务端快速路径（令牌本身才是权威）
- TTLMemoryStore: 按会话 ID 索引的对话记忆存储
"""

import hashlib
import logging
import threading
from typing import Dict, Optional

from cachetools import TTLCache

from waiter_engine.core.interfaces import MemoryStore
from waiter_engine.models.action import PendingAction
from waiter_engine.models.memory import ConversationMemory

logger = logging.getLogger(__name__)


def action_key(action_id: str) -> str:
    """令牌较长，用摘要作为存储键"""
    return hashlib.sha256(action_id.encode("utf-8")).hexdigest()


# ==================== 待确认动作缓存 ====================

class PendingActionCache:
    """待确认动作缓存

    服务重启或多实例时缓存会丢失，确认流程此时从令牌还原动作。
    """

    def __init__(self, maxsize: int = 5000, ttl: int = 900):
        self._cache = TTLCache(maxsize=maxsize, ttl=ttl)
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def put(self, action: PendingAction) -> None:
        with self._lock:
            self._cache[action_key(action.id)] = action

    def get(self, action_id: str) -> Optional[PendingAction]:
        with self._lock:
            action = self._cache.get(action_key(action_id))
            if action is not None:
                self._hits += 1
            else:
                self._misses += 1
            return action

    def discard(self, action_id: str) -> bool:
        with self._lock:
            return self._cache.pop(action_key(action_id), None) is not None

    def __contains__(self, action_id: str) -> bool:
        with self._lock:
            return action_key(action_id) in self._cache

    def clear(self) -> int:
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
            return count

    def stats(self) -> Dict:
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._cache),
                "maxsize": self._cache.maxsize,
                "ttl": self._cache.ttl,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(self._hits / total, 4) if total > 0 else 0
            }


# ==================== 对话记忆存储 ====================

class TTLMemoryStore(MemoryStore):
    """对话记忆存储

    首条消息时创建，会话结束时驱逐；长时间无活动的记忆由 TTL 自动清理。
    """

    def __init__(self, maxsize: int = 10000, ttl: int = 4 * 3600):
        self._cache = TTLCache(maxsize=maxsize, ttl=ttl)
        self._lock = threading.Lock()
        self._created = 0
        self._evicted = 0

    def get_or_create(self, session_id: str) -> ConversationMemory:
        with self._lock:
            memory = self._cache.get(session_id)
            if memory is None:
                memory = ConversationMemory(session_id=session_id)
                self._cache[session_id] = memory
                self._created += 1
                logger.debug(f"创建对话记忆: {session_id}")
            return memory

    def get(self, session_id: str) -> Optional[ConversationMemory]:
        with self._lock:
            return self._cache.get(session_id)

    def save(self, memory: ConversationMemory) -> None:
        # 重新写入以刷新 TTL
        with self._lock:
            self._cache[memory.session_id] = memory

    def evict(self, session_id: str) -> bool:
        with self._lock:
            removed = self._cache.pop(session_id, None) is not None
            if removed:
                self._evicted += 1
                logger.debug(f"驱逐对话记忆: {session_id}")
            return removed

    def stats(self) -> Dict:
        with self._lock:
            memories = list(self._cache.values())
            return {
                "active_memories": len(memories),
                "created": self._created,
                "evicted": self._evicted,
                "total_messages": sum(m.message_count for m in memories),
                "sentiments": {
                    s: sum(1 for m in memories if m.sentiment.value == s)
                    for s in ("positive", "neutral", "negative")
                },
                "maxsize": self._cache.maxsize,
                "ttl": self._cache.ttl,
            }
