"""NLP 处理模块"""

from .tool_schema import TOOLS, TOOL_ACTIONS, get_tools
from .menu_resolver import MenuItemResolver
from .fallback import FallbackActionMatcher, FallbackMatch

__all__ = [
    "TOOLS",
    "TOOL_ACTIONS",
    "get_tools",
    "MenuItemResolver",
    "FallbackActionMatcher",
    "FallbackMatch",
]
