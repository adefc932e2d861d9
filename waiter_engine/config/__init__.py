"""配置模块"""

from .settings import (
    get_settings,
    reload_settings,
    get_openai_settings,
    get_engine_settings,
    get_memory_settings,
    get_action_token_secret,
    Settings,
    OpenAISettings,
    DatabaseSettings,
    CacheSettings,
    CircuitBreakerSettings,
    EngineSettings,
    MemorySettings,
    SessionSettings,
    ActionTokenSettings,
    MenuSettings,
)

__all__ = [
    "get_settings",
    "reload_settings",
    "get_openai_settings",
    "get_engine_settings",
    "get_memory_settings",
    "get_action_token_secret",
    "Settings",
    "OpenAISettings",
    "DatabaseSettings",
    "CacheSettings",
    "CircuitBreakerSettings",
    "EngineSettings",
    "MemorySettings",
    "SessionSettings",
    "ActionTokenSettings",
    "MenuSettings",
]
