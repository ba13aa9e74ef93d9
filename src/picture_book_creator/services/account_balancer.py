"""多账号调度 - 在主账号与免费账号之间分配文本生成请求"""

from __future__ import annotations

import logging
import time
from typing import Optional

from ..core.errors import ConfigurationError
from ..core.models import AccountState, AccountTier
from ..utils.config import Settings, TaskType
from .rate_limiter import Clock, LimiterState

logger = logging.getLogger(__name__)

HOUR = 3600.0


class AccountBalancer:
    """账号调度器

    选择策略:
    1. 优先使用低优先级的免费账号（secondary），前提是它距上次调用已超过全局最小间隔且不在冷却中
    2. 否则在相同条件下使用主账号（primary）
    3. 两者都不可用时，选择最早恢复可用的账号；只要有账号未被限流，就不会返回被限流的账号

    判断与状态修改在同一次同步调用内完成，中间没有 await。
    """

    def __init__(
        self,
        accounts: list[AccountState],
        limiter: LimiterState,
        *,
        cooldowns: Optional[dict[AccountTier, float]] = None,
        max_calls_per_hour: int = 50,
        clock: Clock = time.monotonic,
    ):
        if not accounts:
            raise ConfigurationError("没有可用的文本生成账号，请配置 TEXT_PRIMARY_API_KEY 或 TEXT_SECONDARY_API_KEY")
        priority = {AccountTier.SECONDARY: 0, AccountTier.PRIMARY: 1}
        self.accounts = sorted(accounts, key=lambda a: priority[a.tier])
        self.limiter = limiter
        self.cooldowns = cooldowns or {AccountTier.PRIMARY: 60.0, AccountTier.SECONDARY: 180.0}
        self.max_calls_per_hour = max_calls_per_hour
        self._clock = clock
        for account in self.accounts:
            account.window_start = clock()

    @classmethod
    def from_settings(cls, settings: Settings, limiter: LimiterState, *, clock: Clock = time.monotonic) -> "AccountBalancer":
        accounts = [AccountState(id=account_id, tier=AccountTier(account_id)) for account_id, _ in settings.get_text_api_keys()]
        return cls(
            accounts,
            limiter,
            cooldowns={
                AccountTier.PRIMARY: settings.primary_cooldown,
                AccountTier.SECONDARY: settings.secondary_cooldown,
            },
            max_calls_per_hour=settings.max_calls_per_hour,
            clock=clock,
        )

    def get(self, account_id: str) -> AccountState:
        for account in self.accounts:
            if account.id == account_id:
                return account
        raise KeyError(account_id)

    def check_recovery(self, now: Optional[float] = None) -> None:
        """清除已过期的冷却，并按小时重置调用计数"""
        now = self._clock() if now is None else now
        for account in self.accounts:
            if account.is_rate_limited and now >= account.rate_limit_until:
                account.is_rate_limited = False
                logger.info("账号 %s 冷却结束，恢复可用", account.id)
            if now - account.window_start >= HOUR:
                account.call_count = 0
                account.window_start = now

    def _ready_at(self, account: AccountState) -> float:
        """账号最早可以再次调用的时间"""
        ready = 0.0
        if account.last_call_time is not None:
            ready = account.last_call_time + self.limiter.min_interval
        if account.is_rate_limited:
            ready = max(ready, account.rate_limit_until)
        if account.call_count >= self.max_calls_per_hour:
            ready = max(ready, account.window_start + HOUR)
        return ready

    def _is_available(self, account: AccountState, now: float) -> bool:
        return self._ready_at(account) <= now

    def select_account(self, task_type: TaskType = TaskType.FAST_PROCESSING) -> AccountState:
        """为任务选择账号，并立即记录本次调用时间"""
        now = self._clock()
        self.check_recovery(now)

        chosen = next((a for a in self.accounts if self._is_available(a, now)), None)
        if chosen is None:
            candidates = [a for a in self.accounts if not a.is_rate_limited] or self.accounts
            # min 在并列时保留先出现的账号，即免费账号优先
            chosen = min(candidates, key=self._ready_at)
            logger.debug("所有账号暂不可用，选择最早恢复的账号 %s", chosen.id)

        chosen.last_call_time = now
        logger.debug("任务 %s 使用账号 %s", task_type.value, chosen.id)
        return chosen

    def record_success(self, account_id: str) -> None:
        account = self.get(account_id)
        account.call_count += 1
        account.last_call_time = self._clock()

    def record_rate_limited(self, account_id: str, cooldown: Optional[float] = None) -> None:
        """标记账号被限流，并放大全局请求间隔"""
        now = self._clock()
        account = self.get(account_id)
        if cooldown is None:
            cooldown = self.cooldowns.get(account.tier, 60.0)
        account.is_rate_limited = True
        account.rate_limit_until = now + cooldown
        self.limiter.register_throttle(now)
        logger.warning("账号 %s 被限流，冷却 %.0f 秒", account.id, cooldown)

    def status(self) -> list[dict]:
        """各账号当前状态，供CLI展示"""
        now = self._clock()
        self.check_recovery(now)
        return [
            {
                "id": a.id,
                "calls_this_hour": a.call_count,
                "remaining_calls": max(0, self.max_calls_per_hour - a.call_count),
                "rate_limited": a.is_rate_limited,
                "cooldown_remaining": max(0.0, a.rate_limit_until - now) if a.is_rate_limited else 0.0,
            }
            for a in self.accounts
        ]
