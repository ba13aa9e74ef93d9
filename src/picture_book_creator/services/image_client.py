"""图像生成客户端 - 提交任务、轮询结果，内容被拦截时加强提示词重试

支持的引擎:
- LiblibAI Kontext (文生图 / 图生图，异步任务 + 轮询)
- OpenAI DALL-E (同步返回)
"""

import asyncio
import base64
import hashlib
import hmac
import logging
import secrets
import string
import time
from typing import Any, Callable, Optional

import httpx
import openai
from openai import AsyncOpenAI
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, stop_after_attempt

from ..core.errors import (
    ConfigurationError,
    GenerationTimeoutError,
    ImageGenerationError,
    RateLimitError,
    SensitiveContentError,
)
from ..core.models import ImageJob, ImageOptions, ImageResult, ImageStatus
from ..utils.config import ImageEngine, Settings
from .prompt_safety import harden_prompt
from .rate_limiter import Clock, LimiterState, RequestSerializer, Sleep

logger = logging.getLogger(__name__)

Extractor = Callable[[dict], Any]

SENSITIVE_MARKERS = ("敏感内容", "sensitive content", "content_policy_violation")

LIBLIB_STATUS_SUCCESS = 5
LIBLIB_STATUS_FAILED = (6, 7)


def _path(*keys) -> Extractor:
    """按路径取值，任何一层缺失都返回 None"""

    def extract(payload: dict) -> Any:
        value: Any = payload
        for key in keys:
            if isinstance(key, int):
                if not isinstance(value, list) or len(value) <= key:
                    return None
                value = value[key]
            else:
                if not isinstance(value, dict):
                    return None
                value = value.get(key)
            if value is None:
                return None
        return value

    return extract


# 服务端响应结构没有正式文档，以下路径按观察到的格式依次尝试
TASK_ID_EXTRACTORS: list[Extractor] = [
    _path("task_id"),
    _path("id"),
    _path("taskId"),
    _path("data", "task_id"),
    _path("data", "id"),
    _path("data", "generateUuid"),
    _path("uuid"),
    _path("generateUuid"),
]

IMAGE_URL_EXTRACTORS: list[Extractor] = [
    _path("data", "images", 0, "imageUrl"),
    _path("data", "images", 0),
    _path("images", 0, "imageUrl"),
    _path("images", 0),
    _path("output", 0),
    _path("url"),
    _path("image_url"),
]


def first_match(extractors: list[Extractor], payload: dict, accept: tuple = (str,)) -> Optional[Any]:
    """返回第一个命中且类型符合的值"""
    for extract in extractors:
        value = extract(payload)
        if isinstance(value, accept) and not isinstance(value, bool) and value != "":
            return value
    return None


def is_sensitive_message(message: str) -> bool:
    message = (message or "").lower()
    return any(marker in message for marker in SENSITIVE_MARKERS)


def sign_request(
    uri: str,
    secret_key: str,
    *,
    timestamp_ms: Optional[int] = None,
    nonce: Optional[str] = None,
) -> dict[str, str]:
    """LiblibAI 请求签名

    签名原文: "{uri}&{毫秒时间戳}&{16位随机串}"，HMAC-SHA1 后做URL安全的Base64并去掉末尾的"="
    """
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    if nonce is None:
        alphabet = string.ascii_letters + string.digits
        nonce = "".join(secrets.choice(alphabet) for _ in range(16))
    content = f"{uri}&{timestamp_ms}&{nonce}"
    digest = hmac.new(secret_key.encode(), content.encode(), hashlib.sha1).digest()
    signature = base64.urlsafe_b64encode(digest).rstrip(b"=").decode()
    return {"Signature": signature, "Timestamp": str(timestamp_ms), "SignatureNonce": nonce}


class ImageClient:
    """图像生成客户端基类

    子类实现 _run(job)，基类负责内容拦截重试:
    第1次使用过滤后的提示词，每次被内容过滤拦截后换用更保守的措辞；
    提交被限流时沿用原措辞重新提交，总共最多 image_max_attempts 次。
    """

    engine: ImageEngine
    supports_reference_images = False

    def __init__(
        self,
        settings: Settings,
        *,
        serializer: Optional[RequestSerializer] = None,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        self.settings = settings
        self.serializer = serializer or RequestSerializer(
            LimiterState.from_settings(settings, min_interval=settings.image_min_interval),
            name=self.engine.value,
            clock=clock,
            sleep=sleep,
        )
        self._clock = clock
        self._sleep = sleep

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        pass

    async def _run(self, job: ImageJob) -> ImageResult:
        raise NotImplementedError

    async def generate(
        self,
        prompt: str,
        *,
        reference_image_url: Optional[str] = None,
        options: Optional[ImageOptions] = None,
    ) -> ImageResult:
        """生成一张图像

        Args:
            prompt: 英文插画描述
            reference_image_url: 参考图，提供时使用图生图
            options: 生成参数

        Returns:
            成功的 ImageResult，包含图像地址、尝试次数和最终提示词

        Raises:
            SensitiveContentError: 所有尝试都被内容过滤拦截
            ImageGenerationError: 服务端执行失败或没有返回图像
            GenerationTimeoutError: 等待超时
        """
        options = options or ImageOptions()
        final_prompt = prompt
        number = 0
        # 只有内容被拦截才加强措辞，限流重试沿用当前提示词
        level = 1

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.image_max_attempts),
            retry=retry_if_exception_type((SensitiveContentError, RateLimitError)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    number = attempt.retry_state.attempt_number
                    final_prompt = harden_prompt(prompt, level)
                    if level > 1:
                        logger.info("第 %d 次尝试生成图像（安全措辞等级 %d）", number, level)
                    job = ImageJob(prompt=final_prompt, reference_image_url=reference_image_url, options=options)
                    try:
                        result = await self._run(job)
                    except SensitiveContentError:
                        level += 1
                        raise
        except SensitiveContentError as e:
            raise SensitiveContentError(
                f"已尝试 {number} 次，内容仍被判定为不适合生成: {e}",
                prompt=final_prompt,
                attempts=number,
            ) from e

        result.attempts = number
        result.final_prompt = final_prompt
        return result

    async def wait_for_result(self, task_id: str) -> ImageResult:
        """轮询任务直到完成

        每 image_poll_interval 秒查询一次，超过 image_max_wait 抛出 GenerationTimeoutError。
        查询被限流时放大请求间隔，继续查询同一个任务，不重新提交。
        """
        interval = self.settings.image_poll_interval
        max_wait = self.settings.image_max_wait
        start = self._clock()
        polls = 0

        while True:
            delay = interval
            try:
                result = await self.poll(task_id)
            except RateLimitError:
                # 任务仍在服务端执行，退避后继续查询同一个任务
                state = self.serializer.state
                state.register_throttle(self._clock())
                delay = max(interval, state.min_interval)
                logger.warning("查询图像任务 %s 被限流，%.1f 秒后重试", task_id, delay)
            else:
                polls += 1
                if result.status == ImageStatus.SUCCESS:
                    logger.info("图像任务 %s 完成，共查询 %d 次", task_id, polls)
                    return result
                if result.status == ImageStatus.FAILED:
                    if is_sensitive_message(result.message):
                        raise SensitiveContentError(f"图像生成失败: {result.message}")
                    raise ImageGenerationError(f"图像生成失败: {result.message or '执行异常'}", raw=result.raw)

            elapsed = self._clock() - start
            if elapsed >= max_wait:
                raise GenerationTimeoutError(task_id=task_id, waited=elapsed)
            logger.debug("图像任务 %s 生成中，已等待 %.0f 秒", task_id, elapsed)
            await self._sleep(min(delay, max_wait - elapsed))

    async def poll(self, task_id: str) -> ImageResult:
        raise NotImplementedError


class LiblibImageClient(ImageClient):
    """LiblibAI Kontext 客户端

    提交任务经过串行队列，查询状态直接发送。
    """

    engine = ImageEngine.LIBLIB
    supports_reference_images = True

    TEXT2IMG_URI = "/api/generate/kontext/text2img"
    IMG2IMG_URI = "/api/generate/kontext/img2img"
    STATUS_URI = "/api/generate/status"

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        serializer: Optional[RequestSerializer] = None,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        if not settings.is_liblib_configured():
            raise ConfigurationError("LiblibAI 配置不完整，请设置 LIBLIB_ACCESS_KEY 和 LIBLIB_SECRET_KEY")
        super().__init__(settings, serializer=serializer, clock=clock, sleep=sleep)
        self.client = http_client or httpx.AsyncClient(timeout=60.0)

    async def close(self):
        await self.client.aclose()

    async def _post(self, uri: str, body: dict) -> dict:
        params = {
            "AccessKey": self.settings.liblib_access_key,
            **sign_request(uri, self.settings.liblib_secret_key),
        }
        try:
            response = await self.client.post(f"{self.settings.liblib_base_url}{uri}", params=params, json=body)
        except httpx.TransportError as e:
            raise ImageGenerationError(f"无法连接LiblibAI: {e}") from e

        if response.status_code == 429:
            raise RateLimitError("LiblibAI 请求过于频繁")
        if response.status_code in (401, 403):
            raise ConfigurationError("LiblibAI 密钥无效或签名错误")
        try:
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            raise ImageGenerationError(f"LiblibAI 接口错误 ({e.response.status_code})") from e
        except ValueError as e:
            raise ImageGenerationError("LiblibAI 返回的不是JSON") from e
        if not isinstance(payload, dict):
            raise ImageGenerationError("LiblibAI 返回格式错误", raw={"payload": payload})
        return payload

    def build_submit_body(self, job: ImageJob) -> tuple[str, dict]:
        """构建提交请求 (uri, body)，有参考图时使用图生图"""
        params = {
            "model": job.options.model,
            "prompt": job.prompt[:2000],
            "aspectRatio": job.options.aspect_ratio,
            "guidance_scale": job.options.guidance_scale,
            "imgCount": job.options.img_count,
        }
        if job.reference_image_url:
            params["image_list"] = [job.reference_image_url]
            return self.IMG2IMG_URI, {
                "templateUuid": self.settings.liblib_img2img_template_uuid,
                "generateParams": params,
            }
        return self.TEXT2IMG_URI, {
            "templateUuid": self.settings.liblib_text2img_template_uuid,
            "generateParams": params,
        }

    async def submit(self, job: ImageJob) -> str:
        """提交生成任务，返回任务ID"""
        uri, body = self.build_submit_body(job)
        payload = await self._post(uri, body)

        if payload.get("code", 0) != 0:
            message = str(payload.get("msg") or "未知错误")
            if is_sensitive_message(message):
                raise SensitiveContentError(f"提交被拒绝: {message}")
            raise ImageGenerationError(f"提交失败: {message}", raw=payload)

        task_id = first_match(TASK_ID_EXTRACTORS, payload, accept=(str, int))
        if task_id is None:
            raise ImageGenerationError("提交成功但响应中没有任务ID", raw=payload)
        logger.info("图像任务已提交: %s", task_id)
        return str(task_id)

    async def poll(self, task_id: str) -> ImageResult:
        payload = await self._post(self.STATUS_URI, {"generateUuid": task_id})
        return self.parse_status(task_id, payload)

    @staticmethod
    def parse_status(task_id: str, payload: dict) -> ImageResult:
        """把状态响应归一化为 ImageResult

        generateStatus: 5 成功，6/7 失败，其余视为进行中；
        成功但找不到图像地址按失败处理。
        """
        if payload.get("code", 0) != 0:
            return ImageResult(
                status=ImageStatus.FAILED,
                task_id=task_id,
                message=str(payload.get("msg") or "查询失败"),
                raw=payload,
            )

        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        status = data.get("generateStatus")
        message = str(data.get("generateMsg") or "")

        if status in LIBLIB_STATUS_FAILED:
            return ImageResult(status=ImageStatus.FAILED, task_id=task_id, message=message or "执行异常", raw=payload)
        if status == LIBLIB_STATUS_SUCCESS:
            image_url = first_match(IMAGE_URL_EXTRACTORS, payload)
            if image_url is None:
                return ImageResult(
                    status=ImageStatus.FAILED,
                    task_id=task_id,
                    message="生成完成但响应中没有图像地址",
                    raw=payload,
                )
            return ImageResult(status=ImageStatus.SUCCESS, task_id=task_id, image_url=image_url, raw=payload)
        return ImageResult(status=ImageStatus.PENDING, task_id=task_id, message=message, raw=payload)

    async def _run(self, job: ImageJob) -> ImageResult:
        task_id = await self.serializer.enqueue(lambda: self.submit(job), timeout=self.settings.request_timeout)
        return await self.wait_for_result(task_id)


class DalleImageClient(ImageClient):
    """OpenAI DALL-E 客户端，同步返回图像地址，不支持参考图"""

    engine = ImageEngine.DALLE

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        serializer: Optional[RequestSerializer] = None,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        if not settings.is_dalle_configured():
            raise ConfigurationError("未配置 OPENAI_API_KEY，无法使用 DALL-E")
        super().__init__(settings, serializer=serializer, clock=clock, sleep=sleep)
        self.client = AsyncOpenAI(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            max_retries=0,
            timeout=settings.request_timeout,
            http_client=http_client,
        )

    async def close(self):
        await self.client.close()

    async def _create(self, prompt: str):
        try:
            return await self.client.images.generate(
                model=self.settings.dalle_model,
                prompt=prompt[:4000],
                size=self.settings.dalle_size,
                quality=self.settings.dalle_quality,
                n=1,
            )
        except openai.RateLimitError as e:
            raise RateLimitError("DALL-E 请求过于频繁") from e
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise ConfigurationError("OpenAI API密钥无效或没有权限") from e
        except openai.BadRequestError as e:
            if e.code == "content_policy_violation" or is_sensitive_message(str(e)):
                raise SensitiveContentError(f"DALL-E 拒绝生成: {e.message}") from e
            raise ImageGenerationError(f"DALL-E 请求无效: {e.message}") from e
        except openai.APIConnectionError as e:
            raise ImageGenerationError(f"无法连接OpenAI: {e}") from e
        except openai.APIStatusError as e:
            raise ImageGenerationError(f"DALL-E 接口错误 ({e.status_code})") from e

    async def _run(self, job: ImageJob) -> ImageResult:
        if job.reference_image_url:
            logger.debug("DALL-E 不支持参考图，按文生图处理")
        response = await self.serializer.enqueue(lambda: self._create(job.prompt), timeout=self.settings.request_timeout)
        raw = response.model_dump()
        image_url = response.data[0].url if response.data else None
        if not image_url:
            raise ImageGenerationError("DALL-E 没有返回图像地址", raw=raw)
        return ImageResult(status=ImageStatus.SUCCESS, image_url=image_url, raw=raw)


def create_image_client(settings: Settings, engine: Optional[ImageEngine] = None, **kwargs) -> ImageClient:
    """按引擎创建图像客户端"""
    engine = engine or settings.image_engine
    if engine == ImageEngine.DALLE:
        return DalleImageClient(settings, **kwargs)
    return LiblibImageClient(settings, **kwargs)
