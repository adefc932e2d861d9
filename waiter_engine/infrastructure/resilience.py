"""
补全服务熔断器

补全服务连续出故障时暂停调用，检测直接走规则兜底，避免每条消息都等到超时。
熔断开启和熔断期间被拒绝的请求都按 DetectionFailure 计入指标。

只有说明服务本身不健康的错误才计入失败：请求参数错误、资源不存在
是我们自己的问题，不会让熔断器跳闸。
"""

import time
import logging
import threading
from enum import Enum
from typing import Callable, Dict, Any

from waiter_engine.config import CircuitBreakerSettings
from waiter_engine.core.types import FailureKind
from waiter_engine.infrastructure.exceptions import BadRequestError, NotFoundError, CircuitOpenError
from waiter_engine.infrastructure.monitoring import get_metrics_collector, get_structured_logger

logger = logging.getLogger(__name__)
events = get_structured_logger(__name__)

# 不反映服务健康状况的错误
_NOT_COUNTED = (BadRequestError, NotFoundError)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"  # 放行试探请求


class CircuitBreaker:
    """补全服务熔断器

    CLOSED --连续 failure_threshold 次失败--> OPEN --timeout 秒后--> HALF_OPEN
    HALF_OPEN 连续 success_threshold 次成功回到 CLOSED，任何一次失败重新 OPEN。
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        success_threshold: int = 3,
        timeout: float = 30.0,
        name: str = "completion",
        clock: Callable[[], float] = time.monotonic
    ):
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.timeout = timeout
        self.name = name
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._opened_at = 0.0
        self._failures = 0
        self._successes = 0
        self._counts = {"calls": 0, "failures": 0, "rejected": 0, "opened": 0}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: CircuitBreakerSettings, name: str = "completion") -> "CircuitBreaker":
        return cls(
            failure_threshold=settings.failure_threshold,
            success_threshold=settings.success_threshold,
            timeout=settings.timeout,
            name=name,
        )

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def _maybe_half_open(self):
        if self._state == CircuitState.OPEN and self._clock() - self._opened_at >= self.timeout:
            self._move(CircuitState.HALF_OPEN)

    def _move(self, state: CircuitState):
        logger.info(f"熔断器 [{self.name}] {self._state.value} -> {state.value}")
        self._state = state
        self._successes = 0
        if state == CircuitState.OPEN:
            self._opened_at = self._clock()
            self._counts["opened"] += 1

    def guard(self) -> None:
        """发请求前调用

        Raises:
            CircuitOpenError: 熔断中，本次检测应直接走兜底
        """
        with self._lock:
            self._maybe_half_open()
            if self._state != CircuitState.OPEN:
                return
            self._counts["rejected"] += 1
            retry_in = max(self.timeout - (self._clock() - self._opened_at), 0.0)
        get_metrics_collector().record("completion.circuit.rejected", 1, {"breaker": self.name})
        raise CircuitOpenError(self.name, retry_in)

    def record_success(self):
        with self._lock:
            self._counts["calls"] += 1
            self._failures = 0
            if self._state == CircuitState.HALF_OPEN:
                self._successes += 1
                if self._successes >= self.success_threshold:
                    self._move(CircuitState.CLOSED)

    def record_failure(self, error: Exception):
        """记录一次失败的调用；返回后熔断器可能已开启"""
        if isinstance(error, _NOT_COUNTED):
            with self._lock:
                self._counts["calls"] += 1
            return

        opened = False
        with self._lock:
            self._counts["calls"] += 1
            self._counts["failures"] += 1
            self._failures += 1
            if self._state == CircuitState.HALF_OPEN or (
                self._state == CircuitState.CLOSED and self._failures >= self.failure_threshold
            ):
                self._move(CircuitState.OPEN)
                opened = True

        if opened:
            events.log_failure(
                FailureKind.DETECTION, "completion circuit opened",
                breaker=self.name, last_error=type(error).__name__
            )

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            self._maybe_half_open()
            calls = self._counts["calls"]
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_threshold": self.failure_threshold,
                "consecutive_failures": self._failures,
                **self._counts,
                "failure_rate": round(self._counts["failures"] / calls, 4) if calls else 0.0,
            }

    def reset(self):
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._successes = 0
            self._counts = {"calls": 0, "failures": 0, "rejected": 0, "opened": 0}
        logger.info(f"熔断器 [{self.name}] 已重置")
