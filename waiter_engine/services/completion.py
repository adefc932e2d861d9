"""OpenAI 补全客户端

带超时、重试和熔断的 function calling 调用。任何传输层异常都被分类为 APIError 子类抛出，
由检测器统一降级到规则兜底。
"""

import logging
from typing import Dict, List, Any, Optional

from openai import OpenAI

from waiter_engine.config import OpenAISettings, CircuitBreakerSettings, get_settings
from waiter_engine.core.interfaces import CompletionClient, CompletionResult
from waiter_engine.infrastructure.exceptions import FatalError, classify_openai_error
from waiter_engine.infrastructure.retry_manager import RetryManager, create_completion_retry_manager
from waiter_engine.infrastructure.resilience import CircuitBreaker

logger = logging.getLogger(__name__)


class OpenAICompletionClient(CompletionClient):
    """基于 OpenAI Chat Completions 的补全客户端"""

    def __init__(
        self,
        settings: Optional[OpenAISettings] = None,
        breaker_settings: Optional[CircuitBreakerSettings] = None,
        client: Optional[OpenAI] = None,
        retry_manager: Optional[RetryManager] = None,
        circuit_breaker: Optional[CircuitBreaker] = None
    ):
        app_settings = get_settings() if settings is None or breaker_settings is None else None
        self.settings = settings or app_settings.openai
        breaker_settings = breaker_settings or app_settings.circuit_breaker

        self.client = client
        if self.client is None and self.settings.api_key:
            self.client = OpenAI(
                api_key=self.settings.api_key,
                base_url=self.settings.base_url or None,
                timeout=self.settings.timeout,
                max_retries=0
            )
            logger.info(f"OpenAI 客户端初始化成功，模型: {self.settings.model}")

        self._retry_manager = retry_manager or create_completion_retry_manager(
            max_attempts=self.settings.max_retries
        )
        self._breaker_enabled = breaker_settings.enabled
        self._circuit_breaker = circuit_breaker or CircuitBreaker.from_settings(breaker_settings)

    def is_available(self) -> bool:
        return self.client is not None

    def complete(self, messages: List[Dict[str, str]], tools: List[Dict[str, Any]]) -> CompletionResult:
        if not self.client:
            raise FatalError("OpenAI client is not configured")

        def _make_request():
            # 每次尝试前检查，重试途中熔断开启时 CircuitOpenError 不会被重试
            if self._breaker_enabled:
                self._circuit_breaker.guard()
            kwargs = {
                "model": self.settings.model,
                "messages": messages,
                "temperature": self.settings.temperature,
                "max_tokens": self.settings.max_tokens,
                "timeout": self.settings.timeout,
            }
            if tools:
                kwargs["tools"] = tools
                kwargs["tool_choice"] = "auto"

            try:
                response = self.client.chat.completions.create(**kwargs)
            except Exception as e:
                error = classify_openai_error(e)
                if self._breaker_enabled:
                    self._circuit_breaker.record_failure(error)
                raise error from e
            if self._breaker_enabled:
                self._circuit_breaker.record_success()
            return response

        response = self._retry_manager.execute(_make_request)
        return self._to_result(response)

    @staticmethod
    def _to_result(response: Any) -> CompletionResult:
        message = response.choices[0].message
        tool_calls = getattr(message, "tool_calls", None) or []
        if tool_calls:
            call = tool_calls[0]
            return CompletionResult(
                tool_name=call.function.name,
                arguments=call.function.arguments,
                text=message.content,
                raw={"model": getattr(response, "model", None), "tool_calls": len(tool_calls)}
            )
        return CompletionResult(text=message.content or "", raw={"model": getattr(response, "model", None)})
