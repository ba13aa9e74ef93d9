"""核心模块 - 数据模型与错误类型

生成器依赖 services，需从 core.generator 直接导入。
"""

from .errors import PictureBookError
from .models import CharacterProfile, ContentSettings, PictureBook, StorySettings

__all__ = [
    "PictureBookError",
    "CharacterProfile",
    "ContentSettings",
    "PictureBook",
    "StorySettings",
]
