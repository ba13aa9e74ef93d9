"""测试公共夹具"""

import asyncio

import pytest

from picture_book_creator.utils.config import Settings


class FakeClock:
    """可注入的时钟，sleep 直接推进时间"""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(0.0, seconds)
        await asyncio.sleep(0)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """避免本机环境变量影响配置"""
    for name in (
        "TEXT_PRIMARY_API_KEY",
        "TEXT_SECONDARY_API_KEY",
        "LIBLIB_ACCESS_KEY",
        "LIBLIB_SECRET_KEY",
        "OPENAI_API_KEY",
        "IMAGE_ENGINE",
        "MAX_RETRIES",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        text_primary_api_key="primary-key",
        text_secondary_api_key="secondary-key",
        liblib_access_key="access-key",
        liblib_secret_key="secret-key",
        openai_api_key="sk-test",
    )
