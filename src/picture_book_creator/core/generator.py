"""绘本生成器核心逻辑"""

import logging
from typing import Optional

from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn

from ..services.character import CharacterService
from ..services.image_client import ImageClient, create_image_client
from ..services.prompt_safety import sanitize_prompt
from ..services.story_adapter import StoryAdapter
from ..services.text_client import TextGenerationClient
from ..utils.config import ImageEngine, Settings, TaskType
from .errors import ConfigurationError, PictureBookError
from .models import (
    CharacterProfile,
    ContentSettings,
    GenerationRequest,
    IllustratedPage,
    Page,
    PictureBook,
    StoryPayload,
    StorySettings,
)

console = Console()
logger = logging.getLogger(__name__)


class PictureBookGenerator:
    """儿童教育绘本生成器

    工作流程:
    1. 生成所有页面共用的英文角色描述
    2. 调用文本模型创作故事，修复并校验返回的JSON
    3. 可选: 先生成角色主图，之后每页以主图为参考做图生图，保持角色一致
    4. 逐页生成插画，单页失败只记录错误，不影响其他页面
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        text_client: Optional[TextGenerationClient] = None,
        image_client: Optional[ImageClient] = None,
        engine: Optional[ImageEngine] = None,
    ):
        self.settings = settings or Settings()
        self.text_client = text_client or TextGenerationClient(self.settings)
        self.engine = engine or self.settings.image_engine
        self._image_client = image_client
        self.adapter = StoryAdapter()
        self.characters = CharacterService(self.text_client)

    @property
    def image_client(self) -> ImageClient:
        """图像客户端在第一次需要插画时创建"""
        if self._image_client is None:
            self._image_client = create_image_client(self.settings, self.engine)
        return self._image_client

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        await self.text_client.close()
        if self._image_client is not None:
            await self._image_client.close()

    async def generate(
        self,
        character: CharacterProfile,
        story: StorySettings,
        content: ContentSettings,
        *,
        illustrate: bool = True,
        consistency: bool = False,
        optimize_description: bool = False,
    ) -> PictureBook:
        """生成绘本

        Args:
            character: 主角设定
            story: 故事设定
            content: 教学内容设定
            illustrate: 是否生成插画
            consistency: 是否使用角色主图保持各页形象一致
            optimize_description: 是否先由模型补全用户填写的角色描述

        Returns:
            生成的绘本对象
        """
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            console=console,
        ) as progress:
            # 步骤1: 角色描述
            task = progress.add_task("正在准备角色形象...", total=None)
            if optimize_description and character.description.strip():
                optimized = await self.characters.optimize_description(character)
                character = character.model_copy(update={"description": optimized})
            description = await self.characters.translate_to_english(character)
            progress.update(task, completed=True)

            # 步骤2: 故事文本
            task = progress.add_task("正在创作故事...", total=None)
            payload = await self.create_story(character, story, content, description)
            progress.update(task, completed=True)

            book = PictureBook(
                title=payload.title,
                educational_value=payload.educational_value,
                educational_theme=payload.educational_theme or content.educational_topic,
                target_age=payload.target_age or f"{character.age}岁",
                teaching_points=payload.teaching_points,
                discussion_questions=payload.discussion_questions,
                language=story.language,
                story_model=self.settings.get_model_for_task(TaskType.STORY_GENERATION),
                image_engine=self.engine,
                character_description=description,
            )

            if not illustrate:
                book.pages = [IllustratedPage(**page.model_dump()) for page in payload.pages]
                return book

            # 步骤3: 角色主图
            if consistency:
                task = progress.add_task("正在生成角色主图...", total=None)
                book.master_image_url = await self.create_master_image(description)
                progress.update(task, completed=True)

            # 步骤4: 各页插画
            task = progress.add_task("正在生成插画...", total=len(payload.pages))
            book.pages = []
            for page in payload.pages:
                book.pages.append(
                    await self.illustrate_page(page, description, character.name, book.master_image_url)
                )
                progress.advance(task)

        failed = [page.number for page in book.pages if page.image_error]
        if failed:
            console.print(f"[yellow]以下页面插画生成失败: {failed}[/yellow]")
        console.print(f"\n[green]绘本《{book.title}》生成完成![/green]")
        return book

    async def create_story(
        self,
        character: CharacterProfile,
        story: StorySettings,
        content: ContentSettings,
        character_description: str,
    ) -> StoryPayload:
        """创作故事文本并解析

        Raises:
            StoryParseError: 模型返回的内容无法使用，不自动重试
        """
        model = self.settings.get_model_for_task(TaskType.STORY_GENERATION)
        request = GenerationRequest(
            task_type=TaskType.STORY_GENERATION,
            messages=self.adapter.build_story_messages(character, story, content, character_description),
            temperature=self.settings.default_temperature,
            max_tokens=self.settings.get_max_tokens_for_model(model),
        )
        raw_text = await self.text_client.complete(request)
        return self.adapter.parse_story(raw_text, expected_pages=story.page_count)

    async def create_master_image(self, character_description: str) -> Optional[str]:
        """生成角色主图，失败时返回 None，之后按普通文生图处理"""
        if not self.image_client.supports_reference_images:
            logger.warning("%s 不支持参考图，跳过角色一致性模式", self.engine.value)
            return None

        prompt = sanitize_prompt(
            f"Character reference, {character_description}, full body, front view, standing, "
            "gentle smile, simple plain background, children book style"
        )
        try:
            result = await self.image_client.generate(prompt)
        except ConfigurationError:
            raise
        except PictureBookError as e:
            logger.warning("角色主图生成失败，改用普通文生图: %s", e)
            return None
        logger.info("角色主图: %s", result.image_url)
        return result.image_url

    async def illustrate_page(
        self,
        page: Page,
        character_description: str,
        character_name: str = "",
        reference_image_url: Optional[str] = None,
    ) -> IllustratedPage:
        """生成单页插画，失败时记录错误类型和提示信息"""
        illustrated = IllustratedPage(**page.model_dump())
        prompt = self.adapter.build_image_prompt(page, character_description, character_name)
        try:
            result = await self.image_client.generate(prompt, reference_image_url=reference_image_url)
        except ConfigurationError:
            raise
        except PictureBookError as e:
            logger.warning("第 %d 页插画生成失败: %s", page.number, e)
            illustrated.final_prompt = prompt
            illustrated.image_error = e.user_message
            illustrated.image_error_kind = e.kind
            return illustrated

        illustrated.image_url = result.image_url
        illustrated.final_prompt = result.final_prompt
        return illustrated
