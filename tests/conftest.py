"""
测试公共夹具

所有测试都使用临时 SQLite 文件和仓库自带的演示菜单（bella-vista）。
"""

import json
from typing import Any, Dict, List, Optional

import pytest

from waiter_engine.config import (
    Settings, EngineSettings, MemorySettings, DatabaseSettings, OpenAISettings, ActionTokenSettings,
)
from waiter_engine.config.settings import DEFAULT_MENU_PATH
from waiter_engine.core.interfaces import CompletionClient, CompletionResult
from waiter_engine.infrastructure.cache import PendingActionCache, TTLMemoryStore
from waiter_engine.infrastructure.container import Container, setup_default_services
from waiter_engine.infrastructure.database import (
    Database, SessionRepository, OrderRepository, AppliedActionRepository,
)
from waiter_engine.infrastructure.menu_catalog import YamlMenuCatalog
from waiter_engine.nlp.context_builder import build_context
from waiter_engine.services.action_detector import ActionDetector
from waiter_engine.services.action_token import ActionTokenCodec
from waiter_engine.services.confirmation import ConfirmationProtocol
from waiter_engine.services.conversation_memory import ConversationMemoryService
from waiter_engine.services.engine import ActionEngine
from waiter_engine.services.order_executor import OrderMutationExecutor
from waiter_engine.services.recommendation import RecommendationEngine
from waiter_engine.services.session_lifecycle import SessionLifecycleManager

RESTAURANT_ID = "bella-vista"
TABLE = 7
TEST_SECRET = "test-secret-do-not-use"


class FakeCompletionClient(CompletionClient):
    """按脚本返回结果的补全客户端"""

    def __init__(self, result: Optional[CompletionResult] = None, error: Optional[Exception] = None,
                 available: bool = True):
        self.result = result
        self.error = error
        self.available = available
        self.calls: List[List[Dict[str, str]]] = []

    def complete(self, messages, tools) -> CompletionResult:
        self.calls.append(messages)
        if self.error is not None:
            raise self.error
        return self.result or CompletionResult(text="")

    def is_available(self) -> bool:
        return self.available


def tool_call(name: str, **arguments: Any) -> CompletionResult:
    """构造一个工具调用结果"""
    return CompletionResult(tool_name=name, arguments=json.dumps(arguments))


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "test.db")
    yield database
    database.close()


@pytest.fixture
def sessions(db):
    return SessionRepository(db)


@pytest.fixture
def orders(db):
    return OrderRepository(db)


@pytest.fixture
def applied(db):
    return AppliedActionRepository(db)


@pytest.fixture
def catalog():
    return YamlMenuCatalog(DEFAULT_MENU_PATH)


@pytest.fixture
def menu_items(catalog):
    return catalog.get_available_items(RESTAURANT_ID)


@pytest.fixture
def memory_store():
    return TTLMemoryStore()


@pytest.fixture
def memory_settings():
    return MemorySettings()


@pytest.fixture
def engine_settings():
    return EngineSettings()


@pytest.fixture
def memory(memory_store, memory_settings):
    return ConversationMemoryService(memory_store, memory_settings)


@pytest.fixture
def lifecycle(sessions, orders, memory_store):
    return SessionLifecycleManager(sessions, orders, memory_store, timeout_minutes=120)


@pytest.fixture
def executor(orders, lifecycle):
    return OrderMutationExecutor(orders, lifecycle)


@pytest.fixture
def codec():
    return ActionTokenCodec(TEST_SECRET, ttl_seconds=900)


@pytest.fixture
def pending_cache():
    return PendingActionCache(maxsize=100, ttl=900)


@pytest.fixture
def recommender(memory_settings):
    return RecommendationEngine(memory_settings)


@pytest.fixture
def protocol(codec, pending_cache, applied, executor, catalog, recommender, memory, engine_settings):
    return ConfirmationProtocol(
        codec=codec,
        cache=pending_cache,
        applied=applied,
        executor=executor,
        menu_catalog=catalog,
        recommender=recommender,
        memory=memory,
        settings=engine_settings,
    )


@pytest.fixture
def completion():
    """默认未配置，检测全部走规则兜底"""
    return FakeCompletionClient(available=False)


@pytest.fixture
def detector(completion, engine_settings):
    return ActionDetector(completion, engine_settings)


@pytest.fixture
def engine(catalog, lifecycle, orders, memory, detector, protocol, executor, recommender, engine_settings):
    return ActionEngine(
        catalog=catalog,
        lifecycle=lifecycle,
        orders=orders,
        memory=memory,
        detector=detector,
        protocol=protocol,
        executor=executor,
        recommender=recommender,
        settings=engine_settings,
    )


@pytest.fixture
def make_context(catalog, lifecycle, orders):
    """为指定桌台构建检测上下文（会话不存在时创建）"""
    def _make(table_number: int = TABLE, history=()):
        restaurant = catalog.get_restaurant(RESTAURANT_ID)
        session = lifecycle.get_or_create_active(RESTAURANT_ID, table_number)
        return build_context(
            restaurant,
            table_number,
            history=history,
            session=session,
            orders=orders.list_by_session(session.id),
        )
    return _make


@pytest.fixture
def app_settings(tmp_path):
    """指向临时数据库、未配置补全服务的应用配置"""
    return Settings(
        environment="testing",
        database=DatabaseSettings(path=tmp_path / "app.db"),
        openai=OpenAISettings(api_key=None),
        action_token=ActionTokenSettings(secret=TEST_SECRET),
    )


@pytest.fixture
def app_container(app_settings):
    c = setup_default_services(Container(), app_settings)
    yield c
    if c.list_services()['database']['has_instance']:
        c.get('database').close()
