"""
统一异常定义模块

提供分层的异常体系：
- 传输层：区分可重试和不可重试的补全服务错误
- 引擎层：按失败分类（检测/校验/守卫/执行）区分，便于监控
- 业务层：会话、订单、令牌错误
"""

from typing import Optional, Dict, Any, List

from waiter_engine.core.types import FailureKind


class APIError(Exception):
    """API相关异常基类"""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典格式，用于API响应"""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "status_code": self.status_code,
            "details": self.details
        }


class RetryableError(APIError):
    """可重试的API错误基类

    这类错误通常是临时性的，重试可能成功。
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, status_code, details)
        self.retry_after = retry_after  # 建议的重试等待时间（秒）


class FatalError(APIError):
    """不可重试的API错误基类"""
    pass


# ============ 可重试错误 ============

class RateLimitError(RetryableError):
    """速率限制错误 (HTTP 429)"""

    def __init__(
        self,
        message: str = "Completion service rate limit exceeded",
        retry_after: Optional[float] = None
    ):
        super().__init__(
            message=message,
            status_code=429,
            retry_after=retry_after or 1.0
        )


class NetworkError(RetryableError):
    """网络错误"""

    def __init__(
        self,
        message: str = "Network connection failed",
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message=message,
            details={"original_error": str(original_error)} if original_error else {}
        )
        self.original_error = original_error


class ServiceError(RetryableError):
    """服务端错误 (HTTP 5xx)"""

    def __init__(
        self,
        message: str = "Completion service unavailable",
        status_code: int = 500
    ):
        super().__init__(message=message, status_code=status_code)


class TimeoutError(RetryableError):
    """请求超时错误"""

    def __init__(
        self,
        message: str = "Completion request timed out",
        timeout_seconds: Optional[float] = None
    ):
        super().__init__(
            message=message,
            details={"timeout_seconds": timeout_seconds} if timeout_seconds else {}
        )


# ============ 不可重试错误 ============

class AuthError(FatalError):
    """认证错误 (HTTP 401/403)"""

    def __init__(
        self,
        message: str = "Authentication failed, check the API key",
        status_code: int = 401
    ):
        super().__init__(message=message, status_code=status_code)


class BadRequestError(FatalError):
    """请求错误 (HTTP 400)"""

    def __init__(
        self,
        message: str = "Invalid request",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message=message, status_code=400, details=details)


class NotFoundError(FatalError):
    """资源不存在错误 (HTTP 404)"""

    def __init__(
        self,
        message: str = "Resource not found",
        resource: Optional[str] = None
    ):
        super().__init__(
            message=message,
            status_code=404,
            details={"resource": resource} if resource else {}
        )


# ============ 引擎失败分类 ============

class EngineFailure(APIError):
    """引擎失败基类

    每个子类带有 kind，日志和指标按 kind 区分兜底率与执行失败率。
    """
    kind: FailureKind = FailureKind.EXECUTION


class DetectionFailure(EngineFailure):
    """检测失败：补全服务报错、超时或返回了不合法的工具调用

    永远降级到规则兜底，不会作为错误暴露给用户。
    """
    kind = FailureKind.DETECTION

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(
            message=message,
            status_code=502,
            details={"cause": type(cause).__name__} if cause else {}
        )
        self.cause = cause


class CircuitOpenError(DetectionFailure):
    """补全服务熔断中：本次检测直接走规则兜底，不再发请求"""

    def __init__(self, breaker: str, retry_in: float = 0.0):
        super().__init__(f"completion circuit '{breaker}' is open")
        self.status_code = 503
        self.details = {"breaker": breaker, "retry_in": round(retry_in, 1)}
        self.breaker = breaker


class ValidationFailure(EngineFailure):
    """校验失败：菜品无法解析、必填字段缺失、总价不符

    以可纠正的提示返回给用户，动作被丢弃，不做任何修改。
    """
    kind = FailureKind.VALIDATION

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, status_code=422, details=details)


class GuardFailure(EngineFailure):
    """守卫失败：订单状态不允许该操作"""
    kind = FailureKind.GUARD

    def __init__(
        self,
        message: str,
        order_id: str,
        status: str,
        operation: str,
        alternatives: Optional[List[str]] = None
    ):
        super().__init__(
            message=message,
            status_code=409,
            details={
                "order_id": order_id,
                "current_status": status,
                "operation": operation,
                "alternatives": alternatives or []
            }
        )
        self.order_id = order_id
        self.status = status
        self.operation = operation
        self.alternatives = alternatives or []


class ExecutionFailure(EngineFailure):
    """执行失败：写库过程中出错，待确认动作保留以便重试"""
    kind = FailureKind.EXECUTION

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(
            message=message,
            status_code=500,
            details={"cause": str(cause)} if cause else {}
        )
        self.cause = cause


# ============ 动作令牌错误 ============

class ActionTokenError(APIError):
    """动作令牌错误"""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message=message, status_code=status_code)


class InvalidActionTokenError(ActionTokenError):
    """令牌格式错误或签名校验失败

    reason: malformed（无法解析）或 signature（签名不符，视为篡改）
    """

    def __init__(
        self,
        message: str = "Action token is malformed or has been tampered with",
        reason: str = "malformed"
    ):
        super().__init__(message=message, status_code=400)
        self.reason = reason
        self.details = {"reason": reason}

    @property
    def tampered(self) -> bool:
        return self.reason == "signature"


class ExpiredActionTokenError(ActionTokenError):
    """令牌已过期"""

    def __init__(self, age_seconds: float):
        super().__init__(
            message=f"Action token expired {age_seconds:.0f}s after it was issued",
            status_code=410
        )
        self.details = {"age_seconds": round(age_seconds, 1)}


# ============ 业务错误 ============

class SessionError(APIError):
    """会话相关错误"""
    pass


class SessionNotFoundError(SessionError):
    """会话不存在"""

    def __init__(self, session_id: str):
        super().__init__(
            message=f"Session '{session_id}' does not exist",
            status_code=404,
            details={"session_id": session_id}
        )


class SessionConflictError(SessionError):
    """同一桌台出现第二个 ACTIVE 会话"""

    def __init__(self, restaurant_id: str, table_number: int):
        super().__init__(
            message=f"Table {table_number} of restaurant '{restaurant_id}' already has an active session",
            status_code=409,
            details={"restaurant_id": restaurant_id, "table_number": table_number}
        )


class InvalidSessionStateError(SessionError):
    """会话状态不允许该操作"""

    def __init__(self, session_id: str, current_status: str):
        super().__init__(
            message=f"Session '{session_id}' is {current_status}; only ACTIVE sessions can be ended",
            status_code=409,
            details={"session_id": session_id, "current_status": current_status}
        )


class OrderError(APIError):
    """订单相关错误"""
    pass


class OrderNotFoundError(OrderError):
    """订单不存在"""

    def __init__(self, order_id: str):
        super().__init__(
            message=f"Order '{order_id}' does not exist",
            status_code=404,
            details={"order_id": order_id}
        )


class InvalidTransitionError(OrderError):
    """订单状态流转非法"""

    def __init__(self, order_id: str, current_status: str, target_status: str):
        super().__init__(
            message=f"Cannot transition order '{order_id}' from {current_status} to {target_status}",
            status_code=409,
            details={
                "order_id": order_id,
                "current_status": current_status,
                "target_status": target_status
            }
        )


class StaleOrderStateError(OrderError):
    """写入时订单状态已被他人改变（比较并设置失败）"""

    def __init__(self, order_id: str, expected_status: str):
        super().__init__(
            message=f"Order '{order_id}' is no longer {expected_status}",
            status_code=409,
            details={"order_id": order_id, "expected_status": expected_status}
        )


class ActionAlreadyAppliedError(APIError):
    """同一动作已经执行过"""

    def __init__(self, action_id: str):
        super().__init__(
            message="This action has already been applied",
            status_code=409,
            details={"action_id": action_id[:16]}
        )
        self.action_id = action_id


# ============ 数据库错误 ============

class DatabaseError(APIError):
    """数据库相关错误"""
    pass


class DatabaseConnectionError(DatabaseError):
    """数据库连接错误"""

    def __init__(self, message: str = "Database connection failed"):
        super().__init__(message=message, status_code=503)


class DatabaseQueryError(DatabaseError):
    """数据库查询错误"""

    def __init__(self, message: str = "Database query failed"):
        super().__init__(message=message, status_code=500)


class UniqueConstraintError(DatabaseError):
    """唯一约束冲突"""

    def __init__(self, message: str = "Unique constraint violated"):
        super().__init__(message=message, status_code=409)


def classify_openai_error(error: Exception) -> APIError:
    """将 OpenAI 库的异常转换为自定义异常

    Args:
        error: OpenAI 库抛出的异常

    Returns:
        对应的自定义异常
    """
    error_name = type(error).__name__
    error_message = str(error)

    # OpenAI 库的异常类型映射
    error_mapping = {
        "RateLimitError": RateLimitError,
        "APIConnectionError": NetworkError,
        "APITimeoutError": TimeoutError,
        "AuthenticationError": AuthError,
        "PermissionDeniedError": AuthError,
        "BadRequestError": BadRequestError,
        "NotFoundError": NotFoundError,
        "InternalServerError": ServiceError,
        "ServiceUnavailableError": ServiceError,
    }

    error_class = error_mapping.get(error_name)

    if error_class:
        if error_class == NetworkError:
            return NetworkError(message=error_message, original_error=error)
        return error_class(message=error_message)

    # 根据 HTTP 状态码判断
    status_code = getattr(error, "status_code", None)
    if status_code:
        if status_code == 429:
            return RateLimitError(message=error_message)
        elif status_code in (401, 403):
            return AuthError(message=error_message, status_code=status_code)
        elif status_code == 400:
            return BadRequestError(message=error_message)
        elif status_code == 404:
            return NotFoundError(message=error_message)
        elif 500 <= status_code < 600:
            return ServiceError(message=error_message, status_code=status_code)

    # 默认返回可重试错误
    return RetryableError(message=error_message)
