"""
补全调用重试

只用于动作检测阶段（补全服务调用）。已确认并执行的动作永远不会自动重试。
只重试 RetryableError：致命错误、熔断拒绝以及其它检测失败都直接抛给检测器降级。
"""

import time
import random
import logging
from typing import Callable, TypeVar, Optional
from dataclasses import dataclass

from waiter_engine.infrastructure.exceptions import RetryableError, RateLimitError
from waiter_engine.infrastructure.monitoring import get_metrics_collector

logger = logging.getLogger(__name__)

T = TypeVar('T')


class ExponentialBackoffPolicy:
    """指数退避

    等待时间 = min(max_wait, min_wait * base^(attempt-1))，限流错误带 retry_after 时取两者较大值
    """

    def __init__(
        self,
        min_wait: float = 0.2,
        max_wait: float = 2.0,
        base: float = 2.0,
        jitter: bool = True
    ):
        self.min_wait = min_wait
        self.max_wait = max_wait
        self.base = base
        self.jitter = jitter

    def get_wait_time(self, attempt: int, error: Exception) -> float:
        wait = self.min_wait * (self.base ** (attempt - 1))
        if isinstance(error, RateLimitError) and error.retry_after:
            wait = max(wait, error.retry_after)
        wait = min(wait, self.max_wait)
        if self.jitter:
            wait *= (1 + random.random() * 0.25)
        return wait


@dataclass
class RetryStats:
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    total_retries: int = 0
    total_wait_time: float = 0.0

    @property
    def success_rate(self) -> float:
        if self.total_calls == 0:
            return 0.0
        return self.successful_calls / self.total_calls


class RetryManager:
    """补全调用重试管理器

    Usage:
        manager = RetryManager(max_attempts=2)
        response = manager.execute(make_request)
    """

    def __init__(
        self,
        policy: Optional[ExponentialBackoffPolicy] = None,
        max_attempts: int = 2,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.policy = policy or ExponentialBackoffPolicy()
        self.max_attempts = max_attempts
        self._sleep = sleep
        self.stats = RetryStats()

    def execute(self, func: Callable[..., T], *args, **kwargs) -> T:
        """执行 func，RetryableError 在次数内重试，其它异常原样抛出"""
        self.stats.total_calls += 1

        for attempt in range(1, self.max_attempts + 1):
            try:
                result = func(*args, **kwargs)
            except RetryableError as e:
                if attempt >= self.max_attempts:
                    logger.error(f"所有 {self.max_attempts} 次尝试都失败: {type(e).__name__}: {e}")
                    self.stats.failed_calls += 1
                    raise
                wait_time = self.policy.get_wait_time(attempt, e)
                self.stats.total_retries += 1
                self.stats.total_wait_time += wait_time
                get_metrics_collector().record("completion.retry", 1, {"error": type(e).__name__})
                logger.warning(
                    f"尝试 {attempt}/{self.max_attempts} 失败，"
                    f"{wait_time:.1f}秒后重试: {type(e).__name__}: {e}"
                )
                self._sleep(wait_time)
            except Exception as e:
                logger.error(f"不可重试的错误: {type(e).__name__}: {e}")
                self.stats.failed_calls += 1
                raise
            else:
                self.stats.successful_calls += 1
                return result

        # max_attempts < 1
        raise RetryableError("no attempts were made")

    def get_stats(self) -> dict:
        return {
            "total_calls": self.stats.total_calls,
            "successful_calls": self.stats.successful_calls,
            "failed_calls": self.stats.failed_calls,
            "total_retries": self.stats.total_retries,
            "success_rate": f"{self.stats.success_rate*100:.1f}%",
            "total_wait_time": f"{self.stats.total_wait_time:.1f}s"
        }


def create_completion_retry_manager(max_attempts: int = 2) -> RetryManager:
    """创建补全服务专用重试管理器

    检测阶段受对话延迟约束，等待时间比通用场景短：
    - 限流错误尊重 retry_after（上限 2 秒）
    - 认证错误不重试
    """
    return RetryManager(
        policy=ExponentialBackoffPolicy(min_wait=0.2, max_wait=2.0, base=2.0, jitter=True),
        max_attempts=max_attempts
    )
