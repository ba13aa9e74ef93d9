"""文本生成客户端 - OpenAI兼容接口，多账号调度 + 串行限流 + 自动重试"""

import asyncio
import logging
import time
from typing import Optional

import httpx
import openai
from openai import AsyncOpenAI
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from ..core.errors import ConfigurationError, ProviderConnectionError, ProviderError, RateLimitError
from ..core.models import GenerationRequest
from ..utils.config import Settings
from .account_balancer import AccountBalancer
from .rate_limiter import Clock, LimiterState, RequestSerializer, Sleep

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (RateLimitError, ProviderConnectionError)


class TextGenerationClient:
    """文本生成客户端

    一次 complete 调用的流程:
    1. 按任务类型选择模型，截断 max_tokens
    2. 请求进入串行队列，执行时由调度器选择账号
    3. 限流(429)时标记账号冷却并放大全局间隔，网络错误同样重试
    4. 重试间隔 retry_delay_step 递增，不超过 retry_delay_max
    """

    def __init__(
        self,
        settings: Settings,
        *,
        balancer: Optional[AccountBalancer] = None,
        serializer: Optional[RequestSerializer] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        self.settings = settings
        self._api_keys = dict(settings.get_text_api_keys())
        if not self._api_keys:
            raise ConfigurationError("未配置文本生成API密钥，请设置 TEXT_PRIMARY_API_KEY 或 TEXT_SECONDARY_API_KEY")

        self.balancer = balancer or AccountBalancer.from_settings(
            settings, LimiterState.from_settings(settings), clock=clock
        )
        self.serializer = serializer or RequestSerializer(
            self.balancer.limiter, name="text", clock=clock, sleep=sleep
        )
        self._http_client = http_client
        self._sleep = sleep
        self._clients: dict[str, AsyncOpenAI] = {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        for client in self._clients.values():
            await client.close()
        self._clients.clear()

    def _get_client(self, account_id: str) -> AsyncOpenAI:
        """延迟初始化账号对应的客户端，SDK自带的重试关闭，由本类统一重试"""
        if account_id not in self._clients:
            api_key = self._api_keys.get(account_id)
            if not api_key:
                raise ConfigurationError(f"账号 {account_id} 没有配置API密钥")
            self._clients[account_id] = AsyncOpenAI(
                api_key=api_key,
                base_url=self.settings.text_base_url,
                max_retries=0,
                timeout=self.settings.request_timeout,
                http_client=self._http_client,
            )
        return self._clients[account_id]

    def build_request_body(self, request: GenerationRequest) -> dict:
        """构建请求体，max_tokens 截断到模型与服务端上限之内"""
        model = self.settings.get_model_for_task(request.task_type)
        limit = self.settings.get_max_tokens_for_model(model)
        max_tokens = min(request.max_tokens or limit, limit)
        temperature = request.temperature if request.temperature is not None else self.settings.default_temperature
        return {
            "model": model,
            "messages": [{"role": m.role.value, "content": m.content} for m in request.messages],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

    async def complete(self, request: GenerationRequest) -> str:
        """生成文本

        Returns:
            模型返回的文本内容

        Raises:
            RateLimitError: 重试次数用尽后仍被限流
            ProviderConnectionError: 重试次数用尽后仍无法连接
            ProviderError: 其他接口错误，不重试
            ConfigurationError: 密钥无效
        """
        body = self.build_request_body(request)
        logger.info("文本生成: 任务=%s 模型=%s max_tokens=%d", request.task_type.value, body["model"], body["max_tokens"])

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.max_retries + 1),
            wait=wait_incrementing(
                start=self.settings.retry_delay_step,
                increment=self.settings.retry_delay_step,
                max=self.settings.retry_delay_max,
            ),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    text = await self.serializer.enqueue(
                        lambda: self._call_once(request, body),
                        timeout=self.settings.request_timeout,
                    )
        except RateLimitError as e:
            raise RateLimitError(
                f"经过{self.settings.max_retries}次重试仍失败: {e}",
                account_id=e.account_id,
                backoff_applied=True,
            ) from e
        return text

    async def _call_once(self, request: GenerationRequest, body: dict) -> str:
        """单次调用，在串行队列中执行

        账号选择与调用时间记录在同一个同步步骤内完成。
        """
        account = self.balancer.select_account(request.task_type)
        try:
            text = await self._send(account.id, body)
        except openai.RateLimitError as e:
            self.balancer.record_rate_limited(account.id)
            raise RateLimitError(f"账号 {account.id} 被限流", account_id=account.id, backoff_applied=True) from e
        except openai.APIConnectionError as e:
            raise ProviderConnectionError(f"无法连接文本生成服务: {e}") from e
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise ConfigurationError(f"账号 {account.id} 的API密钥无效或没有权限") from e
        except openai.APIStatusError as e:
            raise ProviderError(f"文本生成接口错误 ({e.status_code}): {e.message}", status_code=e.status_code) from e

        self.balancer.record_success(account.id)
        return text

    async def _send(self, account_id: str, body: dict) -> str:
        response = await self._get_client(account_id).chat.completions.create(**body)
        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise ProviderError("文本生成接口返回了空内容")
        return content
