"""服务模块 - 外部服务集成"""

from .account_balancer import AccountBalancer
from .character import CharacterService
from .image_client import DalleImageClient, ImageClient, LiblibImageClient, create_image_client
from .rate_limiter import LimiterState, RequestSerializer
from .story_adapter import StoryAdapter
from .text_client import TextGenerationClient

__all__ = [
    "AccountBalancer",
    "CharacterService",
    "DalleImageClient",
    "ImageClient",
    "LiblibImageClient",
    "create_image_client",
    "LimiterState",
    "RequestSerializer",
    "StoryAdapter",
    "TextGenerationClient",
]
