"""配置管理"""

from enum import Enum
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class TaskType(str, Enum):
    """文本生成任务类型，决定模型与调度策略"""

    STORY_GENERATION = "story_generation"
    CHARACTER_OPTIMIZATION = "character_optimization"
    TRANSLATION = "translation"
    FAST_PROCESSING = "fast_processing"
    HIGH_QUALITY = "high_quality"


class ImageEngine(str, Enum):
    """图像生成引擎"""

    LIBLIB = "liblib"
    DALLE = "dalle"


class Language(str, Enum):
    """故事文本语言"""

    CHINESE = "zh"
    ENGLISH = "en"


class Settings(BaseSettings):
    """应用配置

    从环境变量或.env文件加载配置，启动时读取一次
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # 文本生成 (OpenAI兼容接口，默认通义千问)
    text_base_url: str = "https://dashscope.aliyuncs.com/compatible-mode/v1"
    text_primary_api_key: str = ""
    text_secondary_api_key: str = ""
    task_models: dict[TaskType, str] = {
        TaskType.STORY_GENERATION: "qwen-plus",
        TaskType.CHARACTER_OPTIMIZATION: "qwen-turbo",
        TaskType.TRANSLATION: "qwen-turbo",
        TaskType.FAST_PROCESSING: "qwen-turbo",
        TaskType.HIGH_QUALITY: "qwen-max",
    }
    model_max_tokens: dict[str, int] = {
        "qwen-turbo": 8000,
        "qwen-plus": 16384,
        "qwen-max": 8000,
    }
    provider_max_tokens: int = 16384
    default_temperature: float = 0.7

    # 重试与限流 (单位: 秒)
    max_retries: int = 3
    retry_delay_step: float = 5.0
    retry_delay_max: float = 30.0
    min_request_interval: float = 1.0
    rate_limit_backoff_factor: float = 2.0
    rate_limit_backoff_ceiling: float = 60.0
    success_cooldown: float = 1.0
    recovery_quiet_period: float = 120.0
    recovery_decay_factor: float = 0.5
    primary_cooldown: float = 60.0
    secondary_cooldown: float = 180.0
    max_calls_per_hour: int = 50
    request_timeout: float = 120.0

    # LiblibAI Kontext
    liblib_base_url: str = "https://openapi.liblibai.cloud"
    liblib_access_key: str = ""
    liblib_secret_key: str = ""
    liblib_text2img_template_uuid: str = "fe9928fde1b4491c9b360dd24aa2b115"
    liblib_img2img_template_uuid: str = "1c0a9712b3d84e1b8a9f49514a46d88c"
    image_poll_interval: float = 5.0
    image_max_wait: float = 300.0
    image_max_attempts: int = 3
    image_min_interval: float = 2.0

    # OpenAI (DALL-E)
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    dalle_model: str = "dall-e-3"
    dalle_size: str = "1024x1024"
    dalle_quality: str = "standard"

    # 通用配置
    image_engine: ImageEngine = ImageEngine.LIBLIB
    output_dir: str = "./output"
    log_level: str = "INFO"

    def get_model_for_task(self, task_type: TaskType) -> str:
        """获取任务类型对应的模型名称"""
        return self.task_models.get(task_type, self.task_models[TaskType.FAST_PROCESSING])

    def get_max_tokens_for_model(self, model: str) -> int:
        """获取模型允许的最大token数（不超过服务端硬限制）"""
        return min(self.model_max_tokens.get(model, self.provider_max_tokens), self.provider_max_tokens)

    def get_text_api_keys(self) -> list[tuple[str, str]]:
        """获取已配置的文本生成账号 (账号ID, 密钥)，低优先级的免费账号在前"""
        keys = []
        if self.text_secondary_api_key:
            keys.append(("secondary", self.text_secondary_api_key))
        if self.text_primary_api_key:
            keys.append(("primary", self.text_primary_api_key))
        return keys

    def is_liblib_configured(self) -> bool:
        return bool(self.liblib_access_key and self.liblib_secret_key)

    def is_dalle_configured(self) -> bool:
        return bool(self.openai_api_key)


@lru_cache
def get_settings() -> Settings:
    """获取配置单例"""
    return Settings()
