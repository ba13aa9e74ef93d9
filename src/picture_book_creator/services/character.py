"""角色形象服务 - 生成所有页面共用的英文角色描述"""

import logging

from ..core.errors import ConfigurationError, PictureBookError
from ..core.models import CharacterProfile, GenerationRequest, Message, Role
from ..prompts import render_prompt
from ..utils.config import TaskType
from .text_client import TextGenerationClient

logger = logging.getLogger(__name__)

HUMAN_TEMPLATES = {
    "boy": {
        5: "a small boy around 5 years old, with messy brown hair, big round eyes, wearing a purple shirt, teal backpack, blue jeans, and white sneakers",
        6: "a 6-year-old boy with short brown hair, bright eyes, wearing a blue t-shirt, dark jeans, and colorful sneakers",
        7: "a 7-year-old boy with neat hair, friendly smile, wearing a green hoodie, khaki pants, and comfortable shoes",
    },
    "girl": {
        5: "a small girl around 5 years old, with shoulder-length brown hair, big round eyes, wearing a pink dress, white cardigan, and small white shoes",
        6: "a 6-year-old girl with ponytail hair, gentle smile, wearing a yellow t-shirt, purple skirt, and pink sneakers",
        7: "a 7-year-old girl with braided hair, bright expression, wearing a light blue blouse, denim overalls, and comfortable sandals",
    },
    "child": {
        5: "a small child around 5 years old, with soft hair, kind eyes, wearing a colorful striped shirt, comfortable pants, and sneakers",
        6: "a 6-year-old child with friendly appearance, wearing a simple t-shirt, jeans, and comfortable shoes",
        7: "a 7-year-old child with cheerful expression, wearing casual clothes and a warm smile",
    },
}

ANIMAL_TEMPLATES = {
    "bear": "a small brown bear with soft fur, wearing a red T-shirt, big round eyes, and a gentle expression",
    "rabbit": "a cute white rabbit with long ears, wearing a pink dress, bright eyes, and a friendly smile",
    "cat": "a small orange cat with soft fur, wearing a green vest, big eyes, and a curious expression",
    "dog": "a friendly brown and white dog with floppy ears, wearing a yellow jacket, bright eyes, and a happy expression",
    "bird": "a small blue bird with colorful feathers, wearing a tiny scarf, bright eyes, and a cheerful expression",
}

# 中文名字里常见的动物字
ANIMAL_NAME_HINTS = {
    "bear": ("熊",),
    "rabbit": ("兔",),
    "cat": ("猫", "貓"),
    "dog": ("狗", "犬"),
    "bird": ("鸟", "鳥", "雀"),
}

GENDER_LABELS = {"boy": "男孩", "girl": "女孩"}


def describe_character(character: CharacterProfile) -> str:
    """按模板生成标准英文角色描述"""
    if character.identity == "human":
        gender = character.gender if character.gender in HUMAN_TEMPLATES else "child"
        return HUMAN_TEMPLATES[gender].get(character.age, HUMAN_TEMPLATES["child"][6])

    name = character.name.lower()
    for animal, hints in ANIMAL_NAME_HINTS.items():
        if animal in name or any(hint in character.name for hint in hints):
            return ANIMAL_TEMPLATES[animal]
    return ANIMAL_TEMPLATES["bear"]


def _clean_reply(text: str) -> str:
    return text.strip().strip("\"'\u201c\u201d").strip()


class CharacterService:
    """角色形象服务

    - describe: 模板描述，不调用模型
    - optimize_description: 补全用户描述中缺失的视觉特征
    - translate_to_english: 把中文描述翻译为图像生成用的英文

    模型调用失败时退回模板描述并记录警告，配置错误直接抛出。
    """

    def __init__(self, text_client: TextGenerationClient):
        self.text_client = text_client

    def describe(self, character: CharacterProfile) -> str:
        return describe_character(character)

    async def _ask(self, task_type: TaskType, prompt: str, *, temperature: float) -> str:
        request = GenerationRequest(
            task_type=task_type,
            messages=[Message(role=Role.USER, content=prompt)],
            temperature=temperature,
            max_tokens=200,
        )
        return _clean_reply(await self.text_client.complete(request))

    async def optimize_description(self, character: CharacterProfile) -> str:
        """优化角色描述，失败时返回模板描述"""
        if not character.description.strip():
            return self.describe(character)

        prompt = render_prompt(
            "optimize_character",
            age=character.age,
            identity_label="" if character.identity == "human" else "，动物角色",
            gender_label=GENDER_LABELS.get(character.gender, "不限"),
            description=character.description.strip(),
        )
        try:
            optimized = await self._ask(TaskType.CHARACTER_OPTIMIZATION, prompt, temperature=0.7)
        except ConfigurationError:
            raise
        except PictureBookError as e:
            logger.warning("角色描述优化失败，使用模板描述: %s", e)
            return self.describe(character)
        return optimized or self.describe(character)

    async def translate_to_english(self, character: CharacterProfile) -> str:
        """获取英文角色描述

        没有自定义描述时使用模板；描述本身是英文时原样返回。
        """
        description = character.description.strip()
        if not description:
            return self.describe(character)
        if description.isascii():
            return description

        prompt = render_prompt(
            "translate_character",
            age=character.age,
            gender=character.gender,
            identity=character.identity,
            description=description,
        )
        try:
            translated = await self._ask(TaskType.TRANSLATION, prompt, temperature=0.3)
        except ConfigurationError:
            raise
        except PictureBookError as e:
            logger.warning("角色描述翻译失败，使用模板描述: %s", e)
            return self.describe(character)
        return translated or self.describe(character)
