"""基础设施模块"""

from .cache import PendingActionCache, TTLMemoryStore
from .database import Database, SessionRepository, OrderRepository, AppliedActionRepository
from .menu_catalog import YamlMenuCatalog
from .monitoring import (
    MonitoringMiddleware, get_metrics_collector, get_structured_logger, setup_logging
)
from .resilience import CircuitBreaker, CircuitState
from .retry_manager import RetryManager, ExponentialBackoffPolicy, create_completion_retry_manager

__all__ = [
    # cache
    "PendingActionCache",
    "TTLMemoryStore",
    # database
    "Database",
    "SessionRepository",
    "OrderRepository",
    "AppliedActionRepository",
    # menu
    "YamlMenuCatalog",
    # monitoring
    "MonitoringMiddleware",
    "get_metrics_collector",
    "get_structured_logger",
    "setup_logging",
    # resilience
    "CircuitBreaker",
    "CircuitState",
    "RetryManager",
    "ExponentialBackoffPolicy",
    "create_completion_retry_manager",
]
