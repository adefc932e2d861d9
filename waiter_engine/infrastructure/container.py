"""
依赖注入容器

管理引擎的服务实例：进程内只装配一次，测试时可以用 register_instance 覆盖任意一项。
"""

import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from threading import RLock
from typing import Any, Callable, Dict, Optional, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


class Scope(str, Enum):
    """依赖作用域"""
    SINGLETON = "singleton"  # 单例，整个应用共享
    TRANSIENT = "transient"  # 瞬态，每次获取都创建新实例


@dataclass
class ServiceDescriptor:
    """服务描述符"""
    key: str
    factory: Callable[..., Any]
    scope: Scope = Scope.SINGLETON
    instance: Optional[Any] = None


class Container:
    """依赖注入容器

    Usage:
        container = Container()
        container.register_singleton('database', lambda: Database(path))
        container.register_singleton('orders', lambda c: OrderRepository(c.get('database')))
        orders = container.get('orders')
    """

    def __init__(self):
        self._services: Dict[str, ServiceDescriptor] = {}
        # 工厂函数会递归 get 其他服务，需要可重入锁
        self._lock = RLock()

    def register(
        self,
        key: str,
        factory: Callable[..., T],
        scope: Scope = Scope.SINGLETON
    ) -> 'Container':
        """注册服务

        Args:
            key: 服务标识符
            factory: 工厂函数，可以接收容器作为参数
            scope: 服务作用域
        """
        with self._lock:
            self._services[key] = ServiceDescriptor(key=key, factory=factory, scope=scope)
            logger.debug(f"注册服务: {key} (scope={scope.value})")
        return self

    def register_singleton(self, key: str, factory: Callable[..., T]) -> 'Container':
        return self.register(key, factory, Scope.SINGLETON)

    def register_transient(self, key: str, factory: Callable[..., T]) -> 'Container':
        return self.register(key, factory, Scope.TRANSIENT)

    def register_instance(self, key: str, instance: T) -> 'Container':
        """直接注册实例"""
        with self._lock:
            self._services[key] = ServiceDescriptor(
                key=key,
                factory=lambda: instance,
                scope=Scope.SINGLETON,
                instance=instance
            )
            logger.debug(f"注册实例: {key}")
        return self

    def get(self, key: str, expected_type: Optional[Type[T]] = None) -> T:
        """获取服务实例

        Raises:
            KeyError: 服务未注册
        """
        with self._lock:
            if key not in self._services:
                raise KeyError(f"服务未注册: {key}")

            descriptor = self._services[key]
            if descriptor.scope == Scope.TRANSIENT:
                return self._create_instance(descriptor)
            if descriptor.instance is None:
                descriptor.instance = self._create_instance(descriptor)
            return descriptor.instance

    def _create_instance(self, descriptor: ServiceDescriptor) -> Any:
        try:
            if inspect.signature(descriptor.factory).parameters:
                return descriptor.factory(self)
            return descriptor.factory()
        except Exception as e:
            logger.error(f"创建服务失败 [{descriptor.key}]: {e}")
            raise

    def has(self, key: str) -> bool:
        return key in self._services

    def reset(self, key: Optional[str] = None):
        """重置服务实例（不移除注册）

        Args:
            key: 指定服务，为 None 则重置所有
        """
        with self._lock:
            if key:
                if key in self._services:
                    self._services[key].instance = None
            else:
                for descriptor in self._services.values():
                    descriptor.instance = None
            logger.debug(f"重置服务: {key or 'all'}")

    def list_services(self) -> Dict[str, Dict[str, Any]]:
        return {
            key: {
                "scope": descriptor.scope.value,
                "has_instance": descriptor.instance is not None
            }
            for key, descriptor in self._services.items()
        }


# ==================== 全局容器 ====================

_container: Optional[Container] = None
_container_lock = RLock()


def get_container() -> Container:
    """获取全局容器实例（首次调用时装配默认服务）"""
    global _container
    with _container_lock:
        if _container is None:
            _container = setup_default_services(Container())
        return _container


def configure_container(container: Container):
    """替换全局容器"""
    global _container
    with _container_lock:
        _container = container


def reset_container():
    """重置全局容器（用于测试）"""
    global _container
    with _container_lock:
        _container = None


# ==================== 应用装配 ====================

def setup_default_services(container: Optional[Container] = None, settings=None) -> Container:
    """注册引擎所需的全部服务

    服务在首次 get 时才创建；测试可以在 get('engine') 之前用 register_instance 替换任意依赖。
    """
    from waiter_engine.config import get_settings, get_action_token_secret
    from waiter_engine.infrastructure.cache import PendingActionCache, TTLMemoryStore
    from waiter_engine.infrastructure.database import (
        Database, SessionRepository, OrderRepository, AppliedActionRepository,
    )
    from waiter_engine.infrastructure.menu_catalog import YamlMenuCatalog
    from waiter_engine.infrastructure.resilience import CircuitBreaker
    from waiter_engine.services.action_detector import ActionDetector
    from waiter_engine.services.action_token import ActionTokenCodec
    from waiter_engine.services.completion import OpenAICompletionClient
    from waiter_engine.services.confirmation import ConfirmationProtocol
    from waiter_engine.services.conversation_memory import ConversationMemoryService
    from waiter_engine.services.engine import ActionEngine
    from waiter_engine.services.order_executor import OrderMutationExecutor
    from waiter_engine.services.recommendation import RecommendationEngine
    from waiter_engine.services.session_lifecycle import SessionLifecycleManager

    c = container or Container()
    s = settings or get_settings()

    c.register_instance('settings', s)

    # 基础设施
    c.register_singleton('database', lambda: Database(
        s.database.path, timeout=s.database.timeout, wal_mode=s.database.wal_mode
    ))
    c.register_singleton('sessions', lambda c: SessionRepository(c.get('database')))
    c.register_singleton('orders', lambda c: OrderRepository(c.get('database')))
    c.register_singleton('applied_actions', lambda c: AppliedActionRepository(c.get('database')))
    c.register_singleton('menu_catalog', lambda: YamlMenuCatalog(s.menu.path))
    c.register_singleton('pending_actions', lambda: PendingActionCache(
        maxsize=s.cache.pending_action_maxsize, ttl=s.cache.pending_action_ttl
    ))
    c.register_singleton('memory_store', lambda: TTLMemoryStore(
        maxsize=s.cache.memory_maxsize, ttl=s.cache.memory_ttl
    ))
    c.register_singleton('completion_breaker', lambda: CircuitBreaker.from_settings(s.circuit_breaker))
    c.register_singleton('completion', lambda c: OpenAICompletionClient(
        s.openai, s.circuit_breaker, circuit_breaker=c.get('completion_breaker')
    ))
    c.register_singleton('token_codec', lambda: ActionTokenCodec(
        s.action_token.secret or get_action_token_secret(), ttl_seconds=s.action_token.ttl_seconds
    ))

    # 业务服务
    c.register_singleton('memory', lambda c: ConversationMemoryService(c.get('memory_store'), s.memory))
    c.register_singleton('recommender', lambda: RecommendationEngine(s.memory))
    c.register_singleton('lifecycle', lambda c: SessionLifecycleManager(
        c.get('sessions'), c.get('orders'), c.get('memory_store'), timeout_minutes=s.session.timeout_minutes
    ))
    c.register_singleton('executor', lambda c: OrderMutationExecutor(
        c.get('orders'), c.get('lifecycle'), total_tolerance=s.engine.total_tolerance
    ))
    c.register_singleton('detector', lambda c: ActionDetector(c.get('completion'), s.engine))
    c.register_singleton('protocol', lambda c: ConfirmationProtocol(
        codec=c.get('token_codec'),
        cache=c.get('pending_actions'),
        applied=c.get('applied_actions'),
        executor=c.get('executor'),
        menu_catalog=c.get('menu_catalog'),
        recommender=c.get('recommender'),
        memory=c.get('memory'),
        settings=s.engine,
    ))
    c.register_singleton('engine', lambda c: ActionEngine(
        catalog=c.get('menu_catalog'),
        lifecycle=c.get('lifecycle'),
        orders=c.get('orders'),
        memory=c.get('memory'),
        detector=c.get('detector'),
        protocol=c.get('protocol'),
        executor=c.get('executor'),
        recommender=c.get('recommender'),
        settings=s.engine,
    ))

    logger.info(f"已注册 {len(c.list_services())} 个服务")
    return c
