"""绘本生成器核心逻辑测试"""

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from picture_book_creator.core.errors import (
    ConfigurationError,
    ImageGenerationError,
    StoryParseError,
)
from picture_book_creator.core.generator import PictureBookGenerator
from picture_book_creator.core.models import (
    CharacterProfile,
    ContentSettings,
    ImageResult,
    ImageStatus,
    StorySettings,
    StoryType,
)
from picture_book_creator.services.image_client import LiblibImageClient
from picture_book_creator.services.text_client import TextGenerationClient
from picture_book_creator.utils.config import Language

STORY = {
    "title": "小明学排队",
    "pages": [
        {
            "pageNumber": i,
            "text": f"第{i}页，小明在超市里学习排队。",
            "imagePrompt": f"a boy waiting in line at the supermarket, scene {i}",
        }
        for i in range(1, 5)
    ],
    "educationalValue": "帮助孩子理解排队的规则",
    "teachingPoints": ["排队时站在前一个人后面", "耐心等待"],
    "discussionQuestions": ["为什么要排队？"],
}


def completion(content: str) -> dict:
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "qwen-plus",
        "choices": [{"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "stop"}],
    }


class FakeText:
    """按模型返回内容的文本接口"""

    def __init__(self, story_reply: str, translation_reply: str = "a boy with a red cap"):
        self.story_reply = story_reply
        self.translation_reply = translation_reply
        self.bodies = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.bodies.append(body)
        if body["model"] == "qwen-plus":
            return httpx.Response(200, json=completion(self.story_reply))
        return httpx.Response(200, json=completion(self.translation_reply))


class FakeLiblib:
    """任务 task-N 的图像地址为 https://img/task-N.png，failing 中的任务返回执行失败"""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.submissions = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if request.url.path == LiblibImageClient.STATUS_URI:
            task_id = body["generateUuid"]
            if task_id in self.failing:
                data = {"generateStatus": 6, "generateMsg": "执行异常"}
            else:
                data = {"generateStatus": 5, "images": [{"imageUrl": f"https://img/{task_id}.png"}]}
            return httpx.Response(200, json={"code": 0, "data": data})
        self.submissions.append({"path": request.url.path, "body": body})
        return httpx.Response(200, json={"code": 0, "data": {"generateUuid": f"task-{len(self.submissions)}"}})


def make_generator(settings, clock, text_handler, image_handler=None, image_client=None) -> PictureBookGenerator:
    text_client = TextGenerationClient(
        settings,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(text_handler)),
        clock=clock,
        sleep=clock.sleep,
    )
    if image_client is None and image_handler is not None:
        image_client = LiblibImageClient(
            settings,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(image_handler)),
            clock=clock,
            sleep=clock.sleep,
        )
    return PictureBookGenerator(settings, text_client=text_client, image_client=image_client)


@pytest.fixture
def character():
    return CharacterProfile(name="小明", age=5, gender="boy")


@pytest.fixture
def story():
    return StorySettings(story_type=StoryType.LIFE_SKILLS, setting="超市", page_count=4, language=Language.CHINESE)


@pytest.fixture
def content():
    return ContentSettings(educational_topic="学会排队")


def fenced_story() -> str:
    return "好的，下面是故事：\n```json\n" + json.dumps(STORY, ensure_ascii=False) + "\n```"


class TestPictureBookGenerator:
    @pytest.mark.asyncio
    async def test_generate_full_pipeline(self, settings, clock, character, story, content):
        """故事4页，每页插画第一次查询即完成"""
        text = FakeText(fenced_story())
        images = FakeLiblib()
        generator = make_generator(settings, clock, text, images)

        book = await generator.generate(character, story, content)

        assert book.title == "小明学排队"
        assert [page.number for page in book.pages] == [1, 2, 3, 4]
        assert all(page.image_url for page in book.pages)
        assert all(page.image_error is None for page in book.pages)
        assert book.pages[0].image_url == "https://img/task-1.png"
        assert book.educational_theme == "学会排队"
        assert book.target_age == "5岁"
        assert book.teaching_points == STORY["teachingPoints"]
        assert book.story_model == "qwen-plus"

        # 没有自定义描述时不调用翻译
        assert len(text.bodies) == 1
        assert text.bodies[0]["model"] == "qwen-plus"
        assert "正好 4 页" in text.bodies[0]["messages"][1]["content"]

        assert len(images.submissions) == 4
        assert all(s["path"] == LiblibImageClient.TEXT2IMG_URI for s in images.submissions)
        first_prompt = images.submissions[0]["body"]["generateParams"]["prompt"]
        assert "supermarket" in first_prompt
        assert book.character_description in first_prompt

        usage = {account["id"]: account for account in generator.text_client.balancer.status()}
        assert usage["secondary"]["calls_this_hour"] == 1
        assert usage["secondary"]["remaining_calls"] == settings.max_calls_per_hour - 1
        assert usage["primary"]["calls_this_hour"] == 0

    @pytest.mark.asyncio
    async def test_page_failure_is_isolated(self, settings, clock, character, story, content):
        generator = make_generator(settings, clock, FakeText(fenced_story()), FakeLiblib(failing={"task-2"}))

        book = await generator.generate(character, story, content)

        assert len(book.pages) == 4
        failed = book.pages[1]
        assert failed.image_url is None
        assert failed.image_error_kind == "image_generation"
        assert failed.image_error == ImageGenerationError.user_message
        assert failed.final_prompt
        assert all(page.image_url for page in book.pages if page.number != 2)
        assert "插图生成失败" in book.to_markdown()

    @pytest.mark.asyncio
    async def test_consistency_uses_master_image(self, settings, clock, character, story, content):
        images = FakeLiblib()
        generator = make_generator(settings, clock, FakeText(fenced_story()), images)

        book = await generator.generate(character, story, content, consistency=True)

        assert book.master_image_url == "https://img/task-1.png"
        assert len(images.submissions) == 5
        master = images.submissions[0]
        assert master["path"] == LiblibImageClient.TEXT2IMG_URI
        assert "Character reference" in master["body"]["generateParams"]["prompt"]
        for submission in images.submissions[1:]:
            assert submission["path"] == LiblibImageClient.IMG2IMG_URI
            assert submission["body"]["generateParams"]["image_list"] == [book.master_image_url]

    @pytest.mark.asyncio
    async def test_master_image_failure_falls_back(self, settings, clock, character, story, content):
        images = FakeLiblib(failing={"task-1"})
        generator = make_generator(settings, clock, FakeText(fenced_story()), images)

        book = await generator.generate(character, story, content, consistency=True)

        assert book.master_image_url is None
        assert all(s["path"] == LiblibImageClient.TEXT2IMG_URI for s in images.submissions[1:])
        assert all(page.image_url for page in book.pages)

    @pytest.mark.asyncio
    async def test_consistency_skipped_without_reference_support(self, settings, clock, character, story, content):
        image_client = AsyncMock()
        image_client.supports_reference_images = False
        image_client.generate.return_value = ImageResult(
            status=ImageStatus.SUCCESS, image_url="https://dalle/img.png", final_prompt="safe prompt"
        )
        generator = make_generator(settings, clock, FakeText(fenced_story()), image_client=image_client)

        book = await generator.generate(character, story, content, consistency=True)

        assert book.master_image_url is None
        assert image_client.generate.await_count == 4
        for call in image_client.generate.await_args_list:
            assert call.kwargs["reference_image_url"] is None
        assert book.pages[0].final_prompt == "safe prompt"

    @pytest.mark.asyncio
    async def test_configuration_error_propagates(self, settings, clock, character, story, content):
        image_client = AsyncMock()
        image_client.generate.side_effect = ConfigurationError("LiblibAI 密钥无效或签名错误")
        generator = make_generator(settings, clock, FakeText(fenced_story()), image_client=image_client)

        with pytest.raises(ConfigurationError):
            await generator.generate(character, story, content)
        assert image_client.generate.await_count == 1

    @pytest.mark.asyncio
    async def test_text_only(self, settings, clock, character, story, content):
        generator = make_generator(settings, clock, FakeText(fenced_story()))

        book = await generator.generate(character, story, content, illustrate=False)

        assert len(book.pages) == 4
        assert all(page.image_url is None and page.image_error is None for page in book.pages)
        assert generator._image_client is None

    @pytest.mark.asyncio
    async def test_story_parse_error_propagates(self, settings, clock, character, story, content):
        generator = make_generator(settings, clock, FakeText("抱歉，我无法完成这个请求。"), FakeLiblib())

        with pytest.raises(StoryParseError):
            await generator.generate(character, story, content)

    @pytest.mark.asyncio
    async def test_custom_description_is_translated(self, settings, clock, story, content):
        text = FakeText(fenced_story(), translation_reply='"a small boy wearing a red cap"')
        images = FakeLiblib()
        generator = make_generator(settings, clock, text, images)
        character = CharacterProfile(name="小明", age=5, gender="boy", description="戴红色帽子的小男孩")

        book = await generator.generate(character, story, content)

        assert [body["model"] for body in text.bodies] == ["qwen-turbo", "qwen-plus"]
        assert book.character_description == "a small boy wearing a red cap"
        assert "a small boy wearing a red cap" in text.bodies[1]["messages"][1]["content"]
        assert "a small boy wearing a red cap" in images.submissions[0]["body"]["generateParams"]["prompt"]

    @pytest.mark.asyncio
    async def test_optimized_description_is_translated(self, settings, clock, story, content):
        replies = iter(["戴红色帽子、穿蓝色背心的小男孩", "a small boy with a red cap and a blue vest", fenced_story()])
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json=completion(next(replies)))

        generator = make_generator(settings, clock, handler, FakeLiblib())
        character = CharacterProfile(name="小明", age=5, gender="boy", description="戴红色帽子的小男孩")

        book = await generator.generate(character, story, content, optimize_description=True)

        assert [body["model"] for body in bodies] == ["qwen-turbo", "qwen-turbo", "qwen-plus"]
        assert "戴红色帽子的小男孩" in bodies[0]["messages"][0]["content"]
        assert "穿蓝色背心" in bodies[1]["messages"][0]["content"]
        assert book.character_description == "a small boy with a red cap and a blue vest"

    @pytest.mark.asyncio
    async def test_close_releases_clients(self, settings, clock):
        image_client = AsyncMock()
        generator = make_generator(settings, clock, FakeText(fenced_story()), image_client=image_client)
        generator.text_client.close = AsyncMock()

        async with generator:
            pass

        generator.text_client.close.assert_awaited_once()
        image_client.close.assert_awaited_once()
