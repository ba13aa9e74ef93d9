"""错误类型定义

调用方（CLI/界面）需要根据错误类型给出不同提示，不能合并为一个通用错误。
"""

from typing import Optional


class PictureBookError(Exception):
    """所有绘本生成错误的基类"""

    kind = "error"
    user_message = "生成失败，请稍后重试"

    def __init__(self, message: str = "", *, user_message: Optional[str] = None):
        super().__init__(message or self.user_message)
        if user_message is not None:
            self.user_message = user_message


class ConfigurationError(PictureBookError):
    """缺少凭据或配置无效，启动或首次调用时立即失败"""

    kind = "configuration"
    user_message = "服务配置缺失，请检查 .env 中的 API 密钥"


class RateLimitError(PictureBookError):
    """服务端返回429，可通过退避与账号切换恢复"""

    kind = "rate_limit"
    user_message = "请求过于频繁，请等待几分钟后重试"

    def __init__(
        self,
        message: str = "",
        *,
        account_id: Optional[str] = None,
        backoff_applied: bool = False,
        user_message: Optional[str] = None,
    ):
        super().__init__(message, user_message=user_message)
        self.account_id = account_id
        # 账号调度器已调整过全局请求间隔
        self.backoff_applied = backoff_applied


class SensitiveContentError(PictureBookError):
    """提示词或输出被服务端内容过滤拦截"""

    kind = "sensitive_content"
    user_message = "内容被判定为不适合生成，请调整描述后重试"

    def __init__(self, message: str = "", *, prompt: str = "", attempts: int = 1):
        super().__init__(message)
        self.prompt = prompt
        self.attempts = attempts


class StoryParseError(PictureBookError):
    """所有JSON修复阶段都失败，模型返回了不可用的文本"""

    kind = "story_parse"
    user_message = "AI 返回的内容无法使用，请重新生成"

    def __init__(self, message: str = "", *, raw_text: str = "", stage: str = ""):
        super().__init__(message or f"无法解析故事内容 (阶段: {stage})")
        self.raw_text = raw_text
        self.stage = stage


class GenerationTimeoutError(PictureBookError, TimeoutError):
    """轮询超过最大等待时间"""

    kind = "timeout"
    user_message = "生成超时，请稍后重试"

    def __init__(self, message: str = "", *, task_id: str = "", waited: float = 0.0):
        super().__init__(message or f"任务 {task_id} 等待 {waited:.0f} 秒后仍未完成")
        self.task_id = task_id
        self.waited = waited


class RequestTimeoutError(PictureBookError, TimeoutError):
    """排队请求超过调用方指定的超时时间"""

    kind = "timeout"
    user_message = "请求超时，请稍后重试"


class ImageGenerationError(PictureBookError):
    """图像服务执行失败或返回结果中没有图像地址"""

    kind = "image_generation"
    user_message = "插画生成失败，请稍后重试"

    def __init__(self, message: str = "", *, raw: Optional[dict] = None):
        super().__init__(message)
        self.raw = raw


class ProviderError(PictureBookError):
    """文本服务返回的非限流错误"""

    kind = "provider"
    user_message = "AI 服务调用失败，请稍后重试"

    def __init__(self, message: str = "", *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderConnectionError(ProviderError):
    """网络连接失败，可重试"""

    kind = "network"
    user_message = "网络连接异常，请检查网络后重试"
