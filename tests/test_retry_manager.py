"""
重试管理器、熔断器与补全客户端测试
"""

from types import SimpleNamespace
from unittest.mock import Mock, patch

import pytest

from waiter_engine.config import OpenAISettings, CircuitBreakerSettings
from waiter_engine.core.types import FailureKind
from waiter_engine.infrastructure import monitoring
from waiter_engine.infrastructure.exceptions import (
    RetryableError, FatalError, RateLimitError, AuthError, ServiceError, BadRequestError, NotFoundError,
    DetectionFailure, CircuitOpenError, classify_openai_error,
)
from waiter_engine.infrastructure.monitoring import MetricsCollector
from waiter_engine.infrastructure.resilience import CircuitBreaker, CircuitState
from waiter_engine.infrastructure.retry_manager import (
    RetryManager, ExponentialBackoffPolicy, create_completion_retry_manager,
)
from waiter_engine.services.completion import OpenAICompletionClient


@pytest.fixture
def metrics():
    """每个测试用独立的指标收集器"""
    collector = MetricsCollector()
    with patch.object(monitoring, "_metrics_collector", collector):
        yield collector


class TestExponentialBackoffPolicy:
    """指数退避策略测试"""

    def test_wait_time_increases(self):
        """测试等待时间指数增长"""
        policy = ExponentialBackoffPolicy(min_wait=0.2, max_wait=10.0, base=2.0, jitter=False)

        assert policy.get_wait_time(1, Exception()) == pytest.approx(0.2)
        assert policy.get_wait_time(2, Exception()) == pytest.approx(0.4)
        assert policy.get_wait_time(3, Exception()) == pytest.approx(0.8)

    def test_max_wait_cap(self):
        """测试最大等待时间限制"""
        policy = ExponentialBackoffPolicy(min_wait=1.0, max_wait=2.0, jitter=False)

        assert policy.get_wait_time(10, Exception()) == 2.0

    def test_rate_limit_retry_after_is_capped(self):
        """限流的 retry_after 受对话延迟上限约束"""
        policy = ExponentialBackoffPolicy(min_wait=0.2, max_wait=2.0, jitter=False)

        assert policy.get_wait_time(1, RateLimitError(retry_after=1.5)) == pytest.approx(1.5)
        assert policy.get_wait_time(1, RateLimitError(retry_after=30.0)) == pytest.approx(2.0)

    def test_jitter_stays_bounded(self):
        policy = ExponentialBackoffPolicy(min_wait=1.0, max_wait=2.0, jitter=True)

        for _ in range(20):
            assert 1.0 <= policy.get_wait_time(1, Exception()) <= 1.25



class TestRetryManager:
    """重试管理器测试"""

    @pytest.fixture
    def manager(self):
        return RetryManager(
            policy=ExponentialBackoffPolicy(min_wait=0.01, jitter=False),
            max_attempts=3,
            sleep=Mock()
        )

    def test_success_first_try(self, manager):
        func = Mock(return_value="ok")

        assert manager.execute(func, 1, key="v") == "ok"
        func.assert_called_once_with(1, key="v")
        assert manager.stats.total_retries == 0

    def test_retry_then_success(self, manager, metrics):
        func = Mock(side_effect=[ServiceError(), ServiceError(), "ok"])

        assert manager.execute(func) == "ok"
        assert func.call_count == 3
        assert manager.stats.total_retries == 2
        assert manager._sleep.call_count == 2
        assert metrics.count("completion.retry", {"error": "ServiceError"}) == 2

    @pytest.mark.parametrize("error", [
        AuthError(),
        DetectionFailure("bad tool call"),
        CircuitOpenError("completion", 12.0),
        ValueError("not an api error"),
    ])
    def test_only_retryable_errors_are_retried(self, manager, error):
        """致命错误、检测失败和熔断拒绝都只尝试一次"""
        func = Mock(side_effect=error)

        with pytest.raises(type(error)):
            manager.execute(func)

        assert func.call_count == 1
        assert manager.stats.failed_calls == 1
        manager._sleep.assert_not_called()

    def test_gives_up_after_max_attempts(self, manager):
        func = Mock(side_effect=ServiceError())

        with pytest.raises(ServiceError):
            manager.execute(func)

        assert func.call_count == 3
        assert manager.stats.failed_calls == 1

    def test_stats(self, manager):
        manager.execute(Mock(return_value=1))

        stats = manager.get_stats()
        assert stats["total_calls"] == 1
        assert stats["success_rate"] == "100.0%"

    def test_completion_manager_defaults(self):
        manager = create_completion_retry_manager()

        assert manager.max_attempts == 2
        assert manager.policy.max_wait == 2.0


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestCircuitBreaker:
    """熔断器测试"""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def make_breaker(self, clock):
        def _make(**kwargs):
            kwargs.setdefault("timeout", 30.0)
            return CircuitBreaker(name="t", clock=clock, **kwargs)
        return _make

    def test_opens_after_threshold(self, make_breaker):
        breaker = make_breaker(failure_threshold=2)

        breaker.record_failure(ServiceError())
        breaker.guard()
        breaker.record_failure(ServiceError())

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            breaker.guard()

    def test_success_resets_consecutive_failures(self, make_breaker):
        breaker = make_breaker(failure_threshold=2)

        breaker.record_failure(ServiceError())
        breaker.record_success()
        breaker.record_failure(ServiceError())

        assert breaker.state == CircuitState.CLOSED

    def test_client_errors_do_not_trip(self, make_breaker):
        """请求参数错误不代表服务不健康"""
        breaker = make_breaker(failure_threshold=1)

        breaker.record_failure(BadRequestError("bad schema"))
        breaker.record_failure(NotFoundError("no such model"))

        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats()["calls"] == 2
        assert breaker.stats()["failures"] == 0

    def test_rejection_is_a_detection_failure(self, make_breaker, clock, metrics):
        breaker = make_breaker(failure_threshold=1, timeout=30.0)
        breaker.record_failure(ServiceError())
        clock.now += 10

        with pytest.raises(DetectionFailure) as exc_info:
            breaker.guard()

        error = exc_info.value
        assert isinstance(error, CircuitOpenError)
        assert error.kind == FailureKind.DETECTION
        assert error.status_code == 503
        assert error.details == {"breaker": "t", "retry_in": 20.0}
        assert breaker.stats()["rejected"] == 1
        assert metrics.count("completion.circuit.rejected", {"breaker": "t"}) == 1

    def test_opening_records_detection_failure(self, make_breaker, metrics):
        breaker = make_breaker(failure_threshold=2)

        breaker.record_failure(ServiceError())
        assert metrics.count("engine.failure") == 0

        breaker.record_failure(ServiceError())

        assert metrics.count("engine.failure", {"kind": FailureKind.DETECTION.value}) == 1
        assert breaker.stats()["opened"] == 1

    def test_half_open_after_timeout(self, make_breaker, clock):
        breaker = make_breaker(failure_threshold=1, success_threshold=1)
        breaker.record_failure(ServiceError())

        clock.now += 30

        assert breaker.state == CircuitState.HALF_OPEN
        breaker.guard()
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED

    def test_half_open_failure_reopens(self, make_breaker, clock, metrics):
        breaker = make_breaker(failure_threshold=3)
        for _ in range(3):
            breaker.record_failure(ServiceError())
        clock.now += 31
        assert breaker.state == CircuitState.HALF_OPEN

        breaker.record_failure(ServiceError())

        assert breaker.state == CircuitState.OPEN
        assert breaker.stats()["opened"] == 2
        assert metrics.count("engine.failure", {"kind": FailureKind.DETECTION.value}) == 2

    def test_from_settings(self):
        breaker = CircuitBreaker.from_settings(
            CircuitBreakerSettings(failure_threshold=7, success_threshold=2, timeout=12.0)
        )

        assert breaker.name == "completion"
        assert breaker.failure_threshold == 7
        assert breaker.success_threshold == 2
        assert breaker.timeout == 12.0

    def test_reset(self, make_breaker):
        breaker = make_breaker(failure_threshold=1)
        breaker.record_failure(ServiceError())

        breaker.reset()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats()["calls"] == 0
        breaker.guard()


class TestClassifyOpenAIError:
    """OpenAI 异常分类测试"""

    def test_by_name(self):
        class APIConnectionError(Exception):
            pass

        assert isinstance(classify_openai_error(APIConnectionError("down")), RetryableError)

    @pytest.mark.parametrize("status,expected", [
        (429, RateLimitError), (401, AuthError), (503, ServiceError),
    ])
    def test_by_status_code(self, status, expected):
        error = Exception("boom")
        error.status_code = status

        assert isinstance(classify_openai_error(error), expected)

    def test_unknown_is_retryable(self):
        assert isinstance(classify_openai_error(ValueError("?")), RetryableError)


def _tool_response(name, arguments):
    call = SimpleNamespace(function=SimpleNamespace(name=name, arguments=arguments))
    message = SimpleNamespace(content=None, tool_calls=[call])
    return SimpleNamespace(model="gpt-4o-mini", choices=[SimpleNamespace(message=message)])


class TestOpenAICompletionClient:
    """补全客户端测试（OpenAI 客户端用 Mock 替身）"""

    @pytest.fixture
    def make_client(self):
        def _make(create, failure_threshold=5):
            openai_client = Mock()
            openai_client.chat.completions.create = create
            return OpenAICompletionClient(
                settings=OpenAISettings(api_key="sk-test", max_retries=2),
                breaker_settings=CircuitBreakerSettings(failure_threshold=failure_threshold),
                client=openai_client,
                retry_manager=RetryManager(max_attempts=2, sleep=Mock()),
                circuit_breaker=CircuitBreaker(failure_threshold=failure_threshold, timeout=60.0, name="test"),
            )
        return _make

    def test_not_configured(self):
        client = OpenAICompletionClient(
            settings=OpenAISettings(api_key=None),
            breaker_settings=CircuitBreakerSettings(),
        )

        assert client.is_available() is False
        with pytest.raises(FatalError):
            client.complete([], [])

    def test_tool_call_result(self, make_client):
        create = Mock(return_value=_tool_response("check_orders", "{}"))
        client = make_client(create)

        result = client.complete([{"role": "user", "content": "hi"}], [{"type": "function"}])

        assert result.has_tool_call
        assert result.tool_name == "check_orders"
        assert create.call_args.kwargs["tool_choice"] == "auto"

    def test_text_result(self, make_client):
        message = SimpleNamespace(content="Hello!", tool_calls=None)
        client = make_client(Mock(return_value=SimpleNamespace(model="m", choices=[SimpleNamespace(message=message)])))

        result = client.complete([], [])

        assert result.has_tool_call is False
        assert result.text == "Hello!"

    def test_transport_errors_are_classified_and_retried(self, make_client):
        error = Exception("upstream")
        error.status_code = 502
        create = Mock(side_effect=[error, _tool_response("check_orders", "{}")])
        client = make_client(create)

        result = client.complete([], [])

        assert create.call_count == 2
        assert result.tool_name == "check_orders"

    def test_breaker_opens(self, make_client):
        error = Exception("upstream")
        error.status_code = 500
        client = make_client(Mock(side_effect=error), failure_threshold=2)

        with pytest.raises(ServiceError):
            client.complete([], [])
        with pytest.raises(CircuitOpenError):
            client.complete([], [])

    def test_breaker_opening_mid_retry_stops_retrying(self, make_client, metrics):
        """第一次失败就熔断时，重试那一次直接被拒绝，不再请求上游"""
        error = Exception("upstream")
        error.status_code = 503
        create = Mock(side_effect=error)
        client = make_client(create, failure_threshold=1)

        with pytest.raises(CircuitOpenError):
            client.complete([], [])

        assert create.call_count == 1
        assert metrics.count("engine.failure", {"kind": FailureKind.DETECTION.value}) == 1
        assert metrics.count("completion.circuit.rejected") == 1

    def test_bad_request_does_not_open_breaker(self, make_client):
        error = Exception("bad tools schema")
        error.status_code = 400
        create = Mock(side_effect=error)
        client = make_client(create, failure_threshold=1)

        for _ in range(3):
            with pytest.raises(BadRequestError):
                client.complete([], [])

        assert create.call_count == 3
