"""
抽象接口定义

引擎依赖的外部协作方只在这里约定形状：菜单目录、补全服务、对话记忆存储。
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from waiter_engine.models.menu import MenuItem, Restaurant
    from waiter_engine.models.memory import ConversationMemory


@dataclass
class CompletionResult:
    """补全服务返回：要么是工具调用，要么是自由文本"""
    tool_name: Optional[str] = None
    arguments: Optional[str] = None
    text: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_tool_call(self) -> bool:
        return bool(self.tool_name)


class CompletionClient(ABC):
    """支持函数调用的补全服务接口"""

    @abstractmethod
    def complete(self, messages: List[Dict[str, str]], tools: List[Dict[str, Any]]) -> CompletionResult:
        """发起一次补全

        Args:
            messages: system / 历史 / 用户消息
            tools: 固定的工具 schema

        Returns:
            工具调用或文本

        Raises:
            APIError 子类: 传输层错误（已分类）
        """
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """检查补全服务是否已配置"""
        pass


class MenuCatalog(ABC):
    """菜单目录接口"""

    @abstractmethod
    def get_restaurant(self, restaurant_id: str) -> "Restaurant":
        pass

    @abstractmethod
    def get_available_items(self, restaurant_id: str) -> List["MenuItem"]:
        """只返回当前可点的菜品"""
        pass


class MemoryStore(ABC):
    """对话记忆存储接口，按会话 ID 索引"""

    @abstractmethod
    def get_or_create(self, session_id: str) -> "ConversationMemory":
        pass

    @abstractmethod
    def get(self, session_id: str) -> Optional["ConversationMemory"]:
        pass

    @abstractmethod
    def save(self, memory: "ConversationMemory") -> None:
        pass

    @abstractmethod
    def evict(self, session_id: str) -> bool:
        pass
