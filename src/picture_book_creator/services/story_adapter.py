"""故事适配服务 - 构建故事生成提示词，并把模型输出解析为结构化故事"""

import logging
from typing import Any, Optional

from ..core.errors import StoryParseError
from ..core.models import (
    CharacterProfile,
    ContentMode,
    ContentSettings,
    Message,
    Page,
    Role,
    StoryPayload,
    StorySettings,
    StoryType,
)
from ..prompts import render_prompt
from ..utils.config import Language
from .json_repair import parse_json_object
from .prompt_safety import contains_sensitive_content, sanitize_prompt

logger = logging.getLogger(__name__)

# 模型可能使用的字段别名，按顺序尝试
PAGE_NUMBER_KEYS = ("pageNumber", "page_number", "number", "page")
PAGE_TEXT_KEYS = ("text", "content")
PAGE_IMAGE_KEYS = ("imagePrompt", "image_prompt", "sceneDescription")

IMAGE_QUALITY_TERMS = [
    "high quality",
    "detailed illustration",
    "children book style",
    "warm colors",
    "friendly atmosphere",
]


def _first(data: dict, keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def _page_number(value: Any) -> Optional[int]:
    """页码只接受整数、整数值的浮点数和纯数字字符串，其他返回 None"""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _as_str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    return [str(value)]


class StoryAdapter:
    """故事适配器

    构建侧: 角色/故事/教学设定 -> system + user 消息
    解析侧: 模型文本 -> JSON修复 -> 页码校验 -> StoryPayload
    """

    STORY_TYPE_LABELS = {
        Language.CHINESE: {
            StoryType.ADVENTURE: "冒险故事",
            StoryType.GROWTH: "成长故事",
            StoryType.FRIENDSHIP: "友情故事",
            StoryType.LIFE_SKILLS: "生活技能",
        },
        Language.ENGLISH: {
            StoryType.ADVENTURE: "Adventure Story",
            StoryType.GROWTH: "Growth Story",
            StoryType.FRIENDSHIP: "Friendship Story",
            StoryType.LIFE_SKILLS: "Life Skills",
        },
    }

    LANGUAGE_NAMES = {
        Language.CHINESE: "简体中文 (Simplified Chinese)",
        Language.ENGLISH: "English",
    }

    CONTENT_MODE_NOTES = {
        ContentMode.CUSTOM: "本故事基于用户的自定义教学内容需求创作，请确保紧密围绕指定的教学主题展开，深入体现其教育价值。",
        ContentMode.SELECTED: "本故事基于用户选择的特定主题创作，请确保故事内容充分展现该主题的核心要素和教育意义。",
        ContentMode.RANDOM: "本故事采用智能随机生成模式，请确保内容丰富有趣，充满教育价值。",
    }

    DEFAULT_CHARACTER_NAME = "主角"
    DEFAULT_PERSONALITY = "活泼开朗、善良友好"

    @classmethod
    def story_type_label(cls, story_type: StoryType, language: Language = Language.CHINESE) -> str:
        labels = cls.STORY_TYPE_LABELS.get(language, cls.STORY_TYPE_LABELS[Language.CHINESE])
        return labels.get(story_type, labels[StoryType.GROWTH])

    def build_story_messages(
        self,
        character: CharacterProfile,
        story: StorySettings,
        content: ContentSettings,
        character_description: str,
    ) -> list[Message]:
        """构建故事生成消息

        Args:
            character: 主角设定
            story: 故事设定
            content: 教学内容设定
            character_description: 英文角色外貌描述，所有页面共用

        Returns:
            [system, user] 两条消息
        """
        topic = content.educational_topic or ContentSettings().educational_topic
        goals = content.educational_goals or f"通过故事帮助孩子理解「{topic}」，并能在日常生活中练习相应的行为"

        system_prompt = render_prompt(
            "story_system",
            target_audience=f"{character.age}岁左右的自闭症儿童，以及陪伴他们阅读的老师和家长",
        )
        user_prompt = render_prompt(
            "story_user",
            character_name=character.name or self.DEFAULT_CHARACTER_NAME,
            character_description=character_description,
            age=character.age,
            personality=character.personality or self.DEFAULT_PERSONALITY,
            story_type_label=self.story_type_label(story.story_type, story.language),
            educational_topic=topic,
            setting=story.setting or "日常生活场景",
            page_count=story.page_count,
            language_name=self.LANGUAGE_NAMES[story.language],
            educational_goals=goals,
            content_mode_note=f"\n\n**特别注意**：{self.CONTENT_MODE_NOTES[content.mode]}",
        )
        return [
            Message(role=Role.SYSTEM, content=system_prompt),
            Message(role=Role.USER, content=user_prompt),
        ]

    def parse_story(self, raw_text: str, *, expected_pages: Optional[int] = None) -> StoryPayload:
        """解析模型输出

        Raises:
            StoryParseError: JSON无法修复，或页面结构不可用
        """
        data, stage = parse_json_object(raw_text)
        logger.debug("故事JSON在阶段 %s 解析成功", stage)

        title = data.get("title")
        if not isinstance(title, str) or not title.strip():
            raise StoryParseError("故事缺少标题", raw_text=raw_text, stage="fields")

        pages = self._parse_pages(data.get("pages"), raw_text)
        if expected_pages is not None and len(pages) != expected_pages:
            logger.warning("要求 %d 页，模型返回了 %d 页", expected_pages, len(pages))

        return StoryPayload(
            title=title.strip(),
            pages=pages,
            educational_value=str(data.get("educationalValue") or ""),
            educational_theme=str(data.get("educationalTheme") or ""),
            target_age=str(data.get("targetAge") or ""),
            teaching_points=_as_str_list(data.get("teachingPoints")),
            discussion_questions=_as_str_list(data.get("discussionQuestions")),
        )

    def _parse_pages(self, raw_pages: Any, raw_text: str) -> list[Page]:
        """校验页面列表

        页码必须是从1开始的连续整数（顺序可以打乱）；
        全部缺失时按出现顺序编号；重复、跳号或部分缺失都视为解析失败，
        避免页码与插画错位。
        """
        if not isinstance(raw_pages, list) or not raw_pages:
            raise StoryParseError("故事没有页面", raw_text=raw_text, stage="pages")

        entries = []
        for index, item in enumerate(raw_pages):
            if not isinstance(item, dict):
                raise StoryParseError(f"第 {index + 1} 个页面不是对象", raw_text=raw_text, stage="pages")
            text = _first(item, PAGE_TEXT_KEYS)
            if not isinstance(text, str) or not text.strip():
                raise StoryParseError(f"第 {index + 1} 个页面没有文本", raw_text=raw_text, stage="pages")
            raw_number = _first(item, PAGE_NUMBER_KEYS)
            number = None
            if raw_number is not None:
                number = _page_number(raw_number)
                if number is None:
                    raise StoryParseError(f"无效的页码: {raw_number!r}", raw_text=raw_text, stage="pages")
            image_prompt = _first(item, PAGE_IMAGE_KEYS)
            entries.append((number, text.strip(), str(image_prompt or "").strip()))

        numbers = [number for number, _, _ in entries]
        if all(number is None for number in numbers):
            numbers = list(range(1, len(entries) + 1))
        elif any(number is None for number in numbers) or sorted(numbers) != list(range(1, len(entries) + 1)):
            raise StoryParseError(f"页码不连续: {numbers}", raw_text=raw_text, stage="pages")

        pages = [
            Page(number=number, text=text, image_prompt=image_prompt)
            for number, (_, text, image_prompt) in zip(numbers, entries)
        ]
        return sorted(pages, key=lambda page: page.number)

    def build_image_prompt(self, page: Page, character_description: str, character_name: str = "") -> str:
        """组合页面插画描述与角色外貌，返回已过滤的提示词"""
        scene = page.image_prompt or f"{character_name or 'the main character'} in a children's book scene"
        combined = f"{scene}, featuring {character_description}" if character_description else scene
        if contains_sensitive_content(combined):
            logger.warning("第 %d 页插画描述包含可能被内容过滤拦截的词", page.number)
        return sanitize_prompt(f"{combined}, {', '.join(IMAGE_QUALITY_TERMS)}")
