"""
监控和结构化日志模块

提供结构化日志、指标收集、失败分类记录和请求追踪。
"""

import re
import sys
import time
import json
import uuid
import logging
import threading
from typing import Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
from collections import deque

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from waiter_engine.core.types import FailureKind

# ==================== 结构化日志 ====================


class StructuredFormatter(logging.Formatter):
    """结构化日志格式化器

    输出 JSON 格式的日志，便于日志聚合和分析。
    """

    def __init__(self, service_name: str = "waiter-engine"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
        }

        if hasattr(record, 'extra_data'):
            log_data["data"] = record.extra_data

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info)
            }

        request_id = getattr(record, 'request_id', None) or get_request_id()
        if request_id:
            log_data["request_id"] = request_id

        return json.dumps(log_data, ensure_ascii=False, default=str)


class SensitiveDataFilter(logging.Filter):
    """敏感数据过滤器

    自动屏蔽日志中的密钥和令牌。
    """

    SENSITIVE_PATTERNS = [
        'api_key', 'apikey', 'api-key',
        'token', 'secret', 'authorization', 'sk-'
    ]

    MASKS = [
        (r'(api[_-]?key\s*[=:]\s*)["\']?([^"\'\s,}]+)["\']?', r'\1****'),
        (r'(token\s*[=:]\s*)["\']?([^"\'\s,}]+)["\']?', r'\1****'),
        (r'(secret\s*[=:]\s*)["\']?([^"\'\s,}]+)["\']?', r'\1****'),
        (r'(sk-[a-zA-Z0-9]+)', '****'),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        if not isinstance(record.msg, str):
            return True
        msg = record.msg.lower()
        if any(pattern in msg for pattern in self.SENSITIVE_PATTERNS):
            record.msg = self._mask_sensitive(record.msg)
        return True

    def _mask_sensitive(self, text: str) -> str:
        result = text
        for pattern, replacement in self.MASKS:
            result = re.sub(pattern, replacement, result, flags=re.IGNORECASE)
        return result


class StructuredLogger:
    """结构化日志记录器

    event 风格：logger.info("action_confirmed", action_type=..., order_id=...)
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _log(self, level: int, message: str, **kwargs):
        self.logger.log(level, message, extra={'extra_data': kwargs})

    def debug(self, message: str, **kwargs):
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log(logging.ERROR, message, **kwargs)

    def log_failure(self, kind: FailureKind, reason: str, **kwargs):
        """按失败分类记录日志，并计入指标"""
        level = logging.ERROR if kind == FailureKind.EXECUTION else logging.WARNING
        self._log(level, "engine_failure", kind=kind.value, reason=reason, **kwargs)
        get_metrics_collector().record("engine.failure", 1, {"kind": kind.value})

    def log_detection(
        self,
        action_type: Optional[str],
        confidence: float,
        used_fallback: bool,
        duration_ms: float
    ):
        """记录一次动作检测结果"""
        self.info(
            "detection_completed",
            action_type=action_type,
            confidence=round(confidence, 4),
            used_fallback=used_fallback,
            duration_ms=round(duration_ms, 2)
        )


# ==================== 指标收集 ====================

@dataclass
class MetricPoint:
    """指标数据点"""
    name: str
    value: float
    timestamp: float = field(default_factory=time.time)
    labels: Dict[str, str] = field(default_factory=dict)


class MetricsCollector:
    """指标收集器

    收集和聚合应用程序指标。
    """

    def __init__(self, max_points: int = 10000):
        self._metrics: Dict[str, deque] = {}
        self._lock = threading.Lock()
        self._max_points = max_points

    def record(self, name: str, value: float, labels: Optional[Dict[str, str]] = None):
        """记录指标"""
        point = MetricPoint(name=name, value=value, labels=labels or {})

        with self._lock:
            if name not in self._metrics:
                self._metrics[name] = deque(maxlen=self._max_points)
            self._metrics[name].append(point)

    def record_duration(self, name: str, duration_seconds: float, labels: Optional[Dict[str, str]] = None):
        """记录持续时间（毫秒）"""
        self.record(name, duration_seconds * 1000, labels)

    def count(self, name: str, labels: Optional[Dict[str, str]] = None, window_seconds: int = 300) -> int:
        """统计窗口内满足标签条件的数据点数"""
        cutoff = time.time() - window_seconds
        with self._lock:
            points = list(self._metrics.get(name, ()))
        wanted = labels or {}
        return sum(
            1 for p in points
            if p.timestamp >= cutoff and all(p.labels.get(k) == v for k, v in wanted.items())
        )

    def get_stats(self, name: str, window_seconds: int = 300) -> Dict[str, Any]:
        """获取指标统计"""
        cutoff = time.time() - window_seconds

        with self._lock:
            if name not in self._metrics:
                return {}
            points = [p for p in self._metrics[name] if p.timestamp >= cutoff]

        if not points:
            return {}

        values = sorted(p.value for p in points)
        count = len(values)

        by_label: Dict[str, int] = {}
        for p in points:
            for key, value in p.labels.items():
                label = f"{key}={value}"
                by_label[label] = by_label.get(label, 0) + 1

        return {
            "name": name,
            "count": count,
            "sum": sum(values),
            "avg": sum(values) / count,
            "min": values[0],
            "max": values[-1],
            "p50": values[int(count * 0.5)],
            "p95": values[min(int(count * 0.95), count - 1)],
            "by_label": by_label,
        }

    def get_all_stats(self, window_seconds: int = 300) -> Dict[str, Dict[str, Any]]:
        """获取所有指标统计"""
        with self._lock:
            names = list(self._metrics.keys())
        return {name: self.get_stats(name, window_seconds) for name in names}

    def clear(self, name: Optional[str] = None):
        """清除指标"""
        with self._lock:
            if name:
                self._metrics.pop(name, None)
            else:
                self._metrics.clear()


# ==================== 请求追踪 ====================

_request_context = threading.local()


def get_request_id() -> Optional[str]:
    """获取当前请求 ID"""
    return getattr(_request_context, 'request_id', None)


def set_request_id(request_id: Optional[str]):
    """设置当前请求 ID"""
    _request_context.request_id = request_id


def generate_request_id() -> str:
    """生成请求 ID"""
    return str(uuid.uuid4())


class MonitoringMiddleware(BaseHTTPMiddleware):
    """监控中间件

    自动添加请求追踪和耗时指标。
    """

    def __init__(self, app, logger: Optional[StructuredLogger] = None):
        super().__init__(app)
        self.logger = logger or StructuredLogger("http")
        self.metrics = get_metrics_collector()

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or generate_request_id()
        set_request_id(request_id)

        start = time.time()
        try:
            response = await call_next(request)
        except Exception as e:
            self.logger.error(
                "request_failed",
                path=request.url.path,
                error_type=type(e).__name__,
                error_message=str(e)
            )
            self.metrics.record("http.request.error", 1, {"error": type(e).__name__})
            raise

        duration = time.time() - start
        self.logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 2)
        )
        self.metrics.record_duration("http.request.duration", duration, {
            "method": request.method,
            "path": request.url.path,
            "status": str(response.status_code)
        })
        response.headers["X-Request-ID"] = request_id
        return response


# ==================== 全局实例 ====================

_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """获取指标收集器实例"""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector


def get_structured_logger(name: str = "waiter_engine") -> StructuredLogger:
    """获取结构化日志记录器"""
    return StructuredLogger(name)


def setup_logging(
    level: int = logging.INFO,
    structured: bool = True,
    service_name: str = "waiter-engine"
):
    """配置日志系统

    Args:
        level: 日志级别
        structured: 是否使用结构化日志格式
        service_name: 服务名称
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)

    if structured:
        handler.setFormatter(StructuredFormatter(service_name))
    else:
        handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))

    handler.addFilter(SensitiveDataFilter())
    root_logger.addHandler(handler)

    logging.info(f"日志系统已配置: level={logging.getLevelName(level)}, structured={structured}")
