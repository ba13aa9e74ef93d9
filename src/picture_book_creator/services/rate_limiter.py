"""请求串行器 - 保证同一服务的调用之间有最小间隔"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from ..core.errors import PictureBookError, RateLimitError, RequestTimeoutError
from ..utils.config import Settings

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


@dataclass
class LimiterState:
    """单个服务的限流状态

    由串行器和账号调度器共享，显式构造后注入，不使用模块级单例。
    时间单位均为秒，时间戳来自注入的单调时钟。
    """

    min_interval: float = 1.0
    floor: float = 1.0
    ceiling: float = 60.0
    backoff_factor: float = 2.0
    decay_factor: float = 0.5
    quiet_period: float = 120.0
    success_cooldown: float = 1.0
    last_call_time: Optional[float] = None
    last_throttle_time: Optional[float] = None
    cooldown_until: float = 0.0
    consecutive_errors: int = 0

    @classmethod
    def from_settings(cls, settings: Settings, *, min_interval: Optional[float] = None) -> "LimiterState":
        floor = settings.min_request_interval if min_interval is None else min_interval
        return cls(
            min_interval=floor,
            floor=floor,
            ceiling=max(settings.rate_limit_backoff_ceiling, floor),
            backoff_factor=settings.rate_limit_backoff_factor,
            decay_factor=settings.recovery_decay_factor,
            quiet_period=settings.recovery_quiet_period,
            success_cooldown=settings.success_cooldown,
        )

    def register_throttle(self, now: float) -> None:
        """服务端限流: 放大最小间隔（不超过上限）"""
        self.min_interval = min(self.ceiling, max(self.min_interval, self.floor) * self.backoff_factor)
        self.last_throttle_time = now
        self.consecutive_errors += 1
        logger.warning("检测到限流，请求间隔调整为 %.1f 秒", self.min_interval)

    def register_success(self, now: float) -> None:
        self.consecutive_errors = 0
        self.cooldown_until = now + self.success_cooldown
        self.maybe_recover(now)

    def maybe_recover(self, now: float) -> None:
        """连续无错误超过静默期后，间隔逐步回落到下限"""
        if self.min_interval <= self.floor or self.consecutive_errors:
            return
        if self.last_throttle_time is not None and now - self.last_throttle_time < self.quiet_period:
            return
        self.min_interval = max(self.floor, self.min_interval * self.decay_factor)
        # 下一次回落需要再经过一个静默期
        self.last_throttle_time = now
        logger.info("限流恢复，请求间隔回落为 %.1f 秒", self.min_interval)

    def wait_time(self, now: float) -> float:
        spacing = 0.0
        if self.last_call_time is not None:
            spacing = self.min_interval - (now - self.last_call_time)
        return max(0.0, spacing, self.cooldown_until - now)


def is_throttle_error(exc: BaseException) -> bool:
    """未经调度器处理过的限流错误才需要串行器放大间隔"""
    return isinstance(exc, RateLimitError) and not exc.backoff_applied


class RequestSerializer:
    """请求串行器

    所有请求进入先进先出队列，同一时间只有一个请求在执行：
    - 执行前等待到距上次调用开始满 min_interval
    - 成功完成后额外冷却 success_cooldown 再处理下一项
    - 限流失败时放大 min_interval
    - 单个请求失败不会阻塞后续请求
    """

    def __init__(
        self,
        state: LimiterState,
        *,
        name: str = "default",
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
        is_throttle: Callable[[BaseException], bool] = is_throttle_error,
    ):
        self.state = state
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._is_throttle = is_throttle
        self._queue: deque[tuple[Callable[[], Awaitable[Any]], asyncio.Future, Optional[float]]] = deque()
        self._worker: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return len(self._queue)

    async def enqueue(
        self,
        request_fn: Callable[[], Awaitable[Any]],
        *,
        timeout: Optional[float] = None,
    ) -> Any:
        """加入队列并等待执行结果

        Args:
            request_fn: 无参协程函数
            timeout: 单次执行的超时时间（秒），超时抛出 RequestTimeoutError

        Returns:
            request_fn 的返回值，失败时抛出其异常
        """
        future = asyncio.get_running_loop().create_future()
        self._queue.append((request_fn, future, timeout))
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._process_queue())
        return await future

    async def _process_queue(self) -> None:
        while self._queue:
            request_fn, future, timeout = self._queue.popleft()
            if future.cancelled():
                continue

            now = self._clock()
            self.state.maybe_recover(now)
            wait = self.state.wait_time(now)
            if wait > 0:
                logger.debug("[%s] 等待 %.2f 秒后发送请求", self.name, wait)
                await self._sleep(wait)

            self.state.last_call_time = self._clock()
            try:
                if timeout is not None:
                    result = await asyncio.wait_for(request_fn(), timeout)
                else:
                    result = await request_fn()
            except Exception as exc:
                if self._is_throttle(exc):
                    self.state.register_throttle(self._clock())
                else:
                    self.state.consecutive_errors += 1
                if timeout is not None and isinstance(exc, asyncio.TimeoutError) and not isinstance(exc, PictureBookError):
                    exc = RequestTimeoutError(f"[{self.name}] 请求超过 {timeout} 秒未完成")
                if not future.done():
                    future.set_exception(exc)
                continue

            self.state.register_success(self._clock())
            if not future.done():
                future.set_result(result)
