"""
配置管理系统

使用 Pydantic Settings 管理引擎配置，支持环境变量和 .env 文件。
置信度阈值、价格区间等启发式常量都放在这里，而不是写死在业务代码中。
"""

import logging
import secrets
from typing import List, Optional
from pathlib import Path
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_MENU_PATH = Path(__file__).parent.parent / "data" / "menu.yaml"


class OpenAISettings(BaseSettings):
    """OpenAI 相关配置"""
    model_config = SettingsConfigDict(env_prefix="OPENAI_")

    api_key: Optional[str] = Field(default=None, description="OpenAI API Key")
    base_url: Optional[str] = Field(default=None, description="OpenAI API Base URL")
    model: str = Field(default="gpt-4o-mini", description="使用的模型")
    timeout: float = Field(default=10.0, ge=1.0, le=120.0, description="补全调用超时时间(秒)")
    max_retries: int = Field(default=2, ge=1, le=10, description="检测阶段最大尝试次数")
    temperature: float = Field(default=0.1, ge=0.0, le=2.0, description="生成温度")
    max_tokens: int = Field(default=1000, ge=100, le=4000, description="最大生成 token 数")


class DatabaseSettings(BaseSettings):
    """数据库相关配置"""
    model_config = SettingsConfigDict(env_prefix="DB_")

    path: Path = Field(
        default=Path("data/waiter_engine.db"),
        description="数据库文件路径"
    )
    timeout: float = Field(default=30.0, ge=1.0, le=120.0, description="连接超时时间")
    wal_mode: bool = Field(default=True, description="是否启用 WAL 模式")


class CacheSettings(BaseSettings):
    """缓存相关配置"""
    model_config = SettingsConfigDict(env_prefix="CACHE_")

    pending_action_maxsize: int = Field(default=5000, ge=10, le=100000, description="待确认动作缓存最大条目数")
    pending_action_ttl: int = Field(default=900, ge=10, le=7200, description="待确认动作缓存过期时间(秒)")
    memory_maxsize: int = Field(default=10000, ge=10, le=100000, description="对话记忆最大会话数")
    memory_ttl: int = Field(default=4 * 3600, ge=60, le=86400, description="对话记忆过期时间(秒)")


class CircuitBreakerSettings(BaseSettings):
    """熔断器相关配置"""
    model_config = SettingsConfigDict(env_prefix="CIRCUIT_BREAKER_")

    enabled: bool = Field(default=True, description="是否启用熔断器")
    failure_threshold: int = Field(default=5, ge=1, le=100, description="失败阈值")
    success_threshold: int = Field(default=3, ge=1, le=50, description="恢复阈值")
    timeout: float = Field(default=30.0, ge=1.0, le=300.0, description="熔断超时时间(秒)")


class EngineSettings(BaseSettings):
    """动作引擎配置

    阈值来自线上经验值，没有推导依据，按产品意见调整。
    """
    model_config = SettingsConfigDict(env_prefix="ENGINE_")

    confidence_threshold: float = Field(default=0.5, ge=0.0, le=1.0, description="低于该值走规则兜底")
    fallback_confidence: float = Field(default=0.6, ge=0.0, le=1.0, description="规则兜底命中时的置信度")
    history_window: int = Field(default=5, ge=0, le=50, description="送入模型的历史消息条数")
    total_tolerance: float = Field(default=0.01, ge=0.0, le=1.0, description="下单总价容差")
    upsell_confidence: float = Field(default=0.7, ge=0.0, le=1.0, description="追加推荐的最低置信度")
    accept_supplied_fallback: bool = Field(default=True, description="令牌无法解析时是否接受客户端回传的动作数据")


class MemorySettings(BaseSettings):
    """对话记忆配置"""
    model_config = SettingsConfigDict(env_prefix="MEMORY_")

    budget_max_price: float = Field(default=12.0, ge=0.0, description="budget 价格区间上限")
    moderate_max_price: float = Field(default=20.0, ge=0.0, description="moderate 价格区间上限")
    small_order_max_items: int = Field(default=2, ge=1, description="small 订单规模上限")
    large_order_min_items: int = Field(default=4, ge=1, description="large 订单规模下限")
    summary_window: int = Field(default=3, ge=1, le=20, description="滚动摘要保留的对话轮数")

    @field_validator('moderate_max_price')
    @classmethod
    def validate_price_breakpoints(cls, v: float, info) -> float:
        budget = info.data.get('budget_max_price')
        if budget is not None and v < budget:
            raise ValueError(f"moderate_max_price ({v}) 不能小于 budget_max_price ({budget})")
        return v


class SessionSettings(BaseSettings):
    """桌台会话配置"""
    model_config = SettingsConfigDict(env_prefix="SESSION_")

    timeout_minutes: int = Field(default=120, ge=1, le=24 * 60, description="会话无活动超时(分钟)")


class ActionTokenSettings(BaseSettings):
    """待确认动作令牌配置"""
    model_config = SettingsConfigDict(env_prefix="ACTION_TOKEN_")

    secret: Optional[str] = Field(default=None, description="HMAC 签名密钥，多实例部署必须一致")
    ttl_seconds: int = Field(default=900, ge=30, le=86400, description="令牌有效期(秒)")


class MenuSettings(BaseSettings):
    """菜单目录配置"""
    model_config = SettingsConfigDict(env_prefix="MENU_")

    path: Path = Field(default=DEFAULT_MENU_PATH, description="菜单 YAML 文件路径")


class ServerSettings(BaseSettings):
    """服务器相关配置"""
    model_config = SettingsConfigDict(env_prefix="SERVER_")

    host: str = Field(default="0.0.0.0", description="监听地址")
    port: int = Field(default=8000, ge=1, le=65535, description="监听端口")
    debug: bool = Field(default=False, description="调试模式")


class LoggingSettings(BaseSettings):
    """日志相关配置"""
    model_config = SettingsConfigDict(env_prefix="LOG_")

    level: str = Field(default="INFO", description="日志级别")
    format: str = Field(default="structured", description="日志格式 (structured/plain)")

    @field_validator('level')
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        v = v.upper()
        if v not in valid_levels:
            raise ValueError(f"无效的日志级别: {v}, 有效值: {valid_levels}")
        return v


class CORSSettings(BaseSettings):
    """CORS 相关配置"""
    model_config = SettingsConfigDict(env_prefix="CORS_")

    origins: List[str] = Field(default=["*"], description="允许的来源")
    allow_credentials: bool = Field(default=True, description="是否允许凭证")


class Settings(BaseSettings):
    """应用主配置"""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    app_name: str = Field(default="Conversational Waiter Engine", description="应用名称")
    app_version: str = Field(default="1.0.0", description="应用版本")
    environment: str = Field(default="development", description="运行环境")

    # 子配置
    openai: OpenAISettings = Field(default_factory=OpenAISettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    engine: EngineSettings = Field(default_factory=EngineSettings)
    memory: MemorySettings = Field(default_factory=MemorySettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    action_token: ActionTokenSettings = Field(default_factory=ActionTokenSettings)
    menu: MenuSettings = Field(default_factory=MenuSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    cors: CORSSettings = Field(default_factory=CORSSettings)

    @field_validator('environment')
    @classmethod
    def validate_environment(cls, v: str) -> str:
        valid_envs = ['development', 'staging', 'production', 'testing']
        v = v.lower()
        if v not in valid_envs:
            raise ValueError(f"无效的环境: {v}, 有效值: {valid_envs}")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def to_dict(self) -> dict:
        """转换为字典（隐藏敏感信息）"""
        return {
            "app_name": self.app_name,
            "app_version": self.app_version,
            "environment": self.environment,
            "openai": {
                "model": self.openai.model,
                "base_url": self.openai.base_url,
                "has_api_key": bool(self.openai.api_key),
                "timeout": self.openai.timeout,
                "max_retries": self.openai.max_retries
            },
            "database": {
                "path": str(self.database.path),
                "wal_mode": self.database.wal_mode
            },
            "engine": self.engine.model_dump(),
            "memory": self.memory.model_dump(),
            "session": self.session.model_dump(),
            "action_token": {
                "has_secret": bool(self.action_token.secret),
                "ttl_seconds": self.action_token.ttl_seconds
            },
            "logging": {
                "level": self.logging.level,
                "format": self.logging.format
            }
        }


# ==================== 全局实例 ====================

_generated_secret: Optional[str] = None


@lru_cache()
def get_settings() -> Settings:
    """获取配置实例（缓存）"""
    settings = Settings()
    logger.info(f"配置已加载: {settings.environment} 环境")
    return settings


def reload_settings() -> Settings:
    """重新加载配置"""
    get_settings.cache_clear()
    return get_settings()


def get_openai_settings() -> OpenAISettings:
    """获取 OpenAI 配置"""
    return get_settings().openai


def get_engine_settings() -> EngineSettings:
    """获取动作引擎配置"""
    return get_settings().engine


def get_memory_settings() -> MemorySettings:
    """获取对话记忆配置"""
    return get_settings().memory


def get_action_token_secret() -> str:
    """获取令牌签名密钥

    未配置时生成进程内随机密钥，重启或多实例时旧令牌将无法校验。
    """
    global _generated_secret
    secret = get_settings().action_token.secret
    if secret:
        return secret
    if _generated_secret is None:
        _generated_secret = secrets.token_hex(32)
        logger.warning("未配置 ACTION_TOKEN_SECRET，使用进程内随机密钥")
    return _generated_secret
