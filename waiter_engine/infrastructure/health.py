"""
健康检查模块

检查数据库、菜单目录、补全服务和缓存状态。
补全服务不可用时引擎仍能靠规则兜底工作，因此只算 degraded。
"""

import time
import asyncio
import logging
from enum import Enum
from typing import Dict, Any, Callable, Optional, List
from dataclasses import dataclass, field
from datetime import datetime, timezone

from waiter_engine.infrastructure.container import Container

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    """健康状态"""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class DegradedError(Exception):
    """检查项可用但能力下降"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


@dataclass
class CheckResult:
    """单项检查结果"""
    name: str
    status: HealthStatus
    latency_ms: float
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class HealthReport:
    """健康检查报告"""
    status: HealthStatus
    checks: List[CheckResult]
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    version: str = "1.0.0"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "timestamp": self.timestamp,
            "version": self.version,
            "checks": {
                check.name: {
                    "status": check.status.value,
                    "latency_ms": round(check.latency_ms, 2),
                    "details": check.details,
                    **({"error": check.error} if check.error else {})
                }
                for check in self.checks
            }
        }


class HealthChecker:
    """健康检查器

    支持注册多个同步检查函数，在线程池中并发执行并汇总结果。
    """

    def __init__(self, timeout: float = 5.0, version: str = "1.0.0"):
        self._checks: Dict[str, Callable[[], Dict[str, Any]]] = {}
        self._timeout = timeout
        self.version = version

    def register(self, name: str, check_func: Callable[[], Dict[str, Any]]):
        self._checks[name] = check_func
        logger.debug(f"注册健康检查: {name}")

    def unregister(self, name: str):
        self._checks.pop(name, None)

    @property
    def names(self) -> List[str]:
        return list(self._checks)

    async def _run_check(self, name: str, check_func: Callable) -> CheckResult:
        start = time.time()
        try:
            loop = asyncio.get_running_loop()
            result = await asyncio.wait_for(loop.run_in_executor(None, check_func), timeout=self._timeout)
            return CheckResult(
                name=name,
                status=HealthStatus.HEALTHY,
                latency_ms=(time.time() - start) * 1000,
                details=result if isinstance(result, dict) else {}
            )
        except DegradedError as e:
            return CheckResult(
                name=name,
                status=HealthStatus.DEGRADED,
                latency_ms=(time.time() - start) * 1000,
                details=e.details,
                error=str(e)
            )
        except asyncio.TimeoutError:
            return CheckResult(
                name=name,
                status=HealthStatus.UNHEALTHY,
                latency_ms=(time.time() - start) * 1000,
                error=f"检查超时 ({self._timeout}s)"
            )
        except Exception as e:
            logger.warning(f"健康检查失败 [{name}]: {e}")
            return CheckResult(
                name=name,
                status=HealthStatus.UNHEALTHY,
                latency_ms=(time.time() - start) * 1000,
                error=str(e)
            )

    async def check_all(self) -> HealthReport:
        if not self._checks:
            return HealthReport(status=HealthStatus.HEALTHY, checks=[], version=self.version)

        results = await asyncio.gather(*[
            self._run_check(name, func) for name, func in self._checks.items()
        ])

        statuses = [r.status for r in results]
        if all(s == HealthStatus.HEALTHY for s in statuses):
            overall = HealthStatus.HEALTHY
        elif any(s == HealthStatus.UNHEALTHY for s in statuses):
            overall = HealthStatus.UNHEALTHY
        else:
            overall = HealthStatus.DEGRADED

        return HealthReport(status=overall, checks=list(results), version=self.version)

    async def check_one(self, name: str) -> Optional[CheckResult]:
        if name not in self._checks:
            return None
        return await self._run_check(name, self._checks[name])


# ==================== 内置检查 ====================

def check_database(container: Container) -> Dict[str, Any]:
    db = container.get('database')
    start = time.time()
    with db.get_cursor() as cursor:
        cursor.execute("SELECT COUNT(*) AS n FROM customer_sessions WHERE status = 'ACTIVE'")
        active_sessions = cursor.fetchone()["n"]
        cursor.execute("SELECT COUNT(*) AS n FROM orders")
        order_count = cursor.fetchone()["n"]
    return {
        "active_sessions": active_sessions,
        "orders": order_count,
        "applied_actions": container.get('applied_actions').count(),
        "query_latency_ms": round((time.time() - start) * 1000, 2),
    }


def check_menu_catalog(container: Container) -> Dict[str, Any]:
    catalog = container.get('menu_catalog')
    restaurants = catalog.restaurants()
    if not restaurants:
        raise RuntimeError("菜单目录中没有餐厅")
    return {
        "restaurants": len(restaurants),
        "available_items": sum(len(r.available_items()) for r in restaurants),
    }


def check_completion(container: Container) -> Dict[str, Any]:
    completion = container.get('completion')
    breaker = container.get('completion_breaker').stats()
    details = {"configured": completion.is_available(), "circuit_breaker": breaker}
    if not completion.is_available():
        raise DegradedError("补全服务未配置，检测只走规则兜底", details)
    if breaker["state"] == "open":
        raise DegradedError("补全服务熔断中，检测只走规则兜底", details)
    return details


def check_cache(container: Container) -> Dict[str, Any]:
    return {
        "pending_actions": container.get('pending_actions').stats(),
        "conversation_memory": container.get('memory_store').stats(),
    }


def build_health_checker(container: Container, version: str = "1.0.0") -> HealthChecker:
    """按容器中的服务注册内置检查"""
    checker = HealthChecker(version=version)
    checker.register("database", lambda: check_database(container))
    checker.register("menu_catalog", lambda: check_menu_catalog(container))
    checker.register("completion", lambda: check_completion(container))
    checker.register("cache", lambda: check_cache(container))
    logger.info(f"健康检查器已初始化，注册了 {len(checker.names)} 项检查")
    return checker
