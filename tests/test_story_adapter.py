"""故事适配服务测试"""

import json
from unittest.mock import patch

import pytest

from picture_book_creator.core.errors import StoryParseError
from picture_book_creator.core.models import (
    CharacterProfile,
    ContentMode,
    ContentSettings,
    Page,
    Role,
    StorySettings,
    StoryType,
)
from picture_book_creator.prompts import render_prompt, template_fields
from picture_book_creator.services import story_adapter
from picture_book_creator.services.prompt_safety import SAFE_PREFIX, SAFE_SUFFIX
from picture_book_creator.services.story_adapter import StoryAdapter
from picture_book_creator.utils.config import Language


@pytest.fixture
def adapter():
    return StoryAdapter()


def story_json(pages, **extra) -> str:
    data = {
        "title": "小明学分享",
        "educationalTheme": "学会分享",
        "targetAge": "6岁",
        "pages": pages,
        "educationalValue": "学会和朋友分享玩具",
        "teachingPoints": ["分享让大家开心"],
        "discussionQuestions": ["你愿意分享什么？"],
    }
    data.update(extra)
    return json.dumps(data, ensure_ascii=False)


def make_pages(numbers):
    return [
        {"pageNumber": n, "text": f"第{n}页内容", "imagePrompt": f"scene {n}"} if n is not None else {"text": "内容"}
        for n in numbers
    ]


class TestBuildStoryMessages:
    def test_system_and_user_messages(self, adapter):
        messages = adapter.build_story_messages(
            CharacterProfile(name="小明", age=5, personality="害羞"),
            StorySettings(story_type=StoryType.FRIENDSHIP, page_count=4, setting="幼儿园"),
            ContentSettings(mode=ContentMode.CUSTOM, educational_topic="学会排队"),
            "a small boy around 5 years old",
        )

        assert [m.role for m in messages] == [Role.SYSTEM, Role.USER]
        system, user = messages[0].content, messages[1].content
        assert "自闭症" in system
        assert "英文" in system
        assert "小明" in user
        assert "a small boy around 5 years old" in user
        assert "友情故事" in user
        assert "学会排队" in user
        assert "正好 4 页" in user
        assert "幼儿园" in user
        assert "自定义教学内容" in user
        assert '"pageNumber": 1' in user
        assert "{{" not in user

    def test_defaults_for_missing_fields(self, adapter):
        messages = adapter.build_story_messages(
            CharacterProfile(),
            StorySettings(language=Language.ENGLISH),
            ContentSettings(educational_topic=""),
            "a child",
        )
        user = messages[1].content
        assert "主角" in user
        assert "学会分享与合作" in user
        assert "English" in user
        assert "智能随机生成" in user

    def test_story_type_labels(self):
        assert StoryAdapter.story_type_label(StoryType.LIFE_SKILLS) == "生活技能"
        assert StoryAdapter.story_type_label(StoryType.ADVENTURE, Language.ENGLISH) == "Adventure Story"

    def test_english_story_uses_english_label(self, adapter):
        messages = adapter.build_story_messages(
            CharacterProfile(name="Tom"),
            StorySettings(story_type=StoryType.FRIENDSHIP, language=Language.ENGLISH),
            ContentSettings(),
            "a child",
        )
        user = messages[1].content
        assert "Friendship Story" in user
        assert "友情故事" not in user


class TestPromptTemplates:
    def test_missing_variable_is_reported(self):
        with pytest.raises(KeyError, match="target_audience"):
            render_prompt("story_system")

    def test_story_user_fields(self):
        assert {"character_name", "page_count", "content_mode_note"} <= template_fields("story_user")


class TestParseStory:
    def test_well_formed_story(self, adapter):
        payload = adapter.parse_story(story_json(make_pages([1, 2, 3, 4])), expected_pages=4)

        assert payload.title == "小明学分享"
        assert [p.number for p in payload.pages] == [1, 2, 3, 4]
        assert payload.pages[0].image_prompt == "scene 1"
        assert payload.educational_value == "学会和朋友分享玩具"
        assert payload.teaching_points == ["分享让大家开心"]
        assert payload.discussion_questions == ["你愿意分享什么？"]

    def test_fenced_and_messy_output(self, adapter):
        raw = "```json\n" + story_json(make_pages([1, 2])).replace('"', "“", 2) + ",\n```"
        payload = adapter.parse_story(raw)
        assert len(payload.pages) == 2

    def test_shuffled_numbers_are_sorted(self, adapter):
        payload = adapter.parse_story(story_json(make_pages([2, 3, 1])))
        assert [p.number for p in payload.pages] == [1, 2, 3]
        assert payload.pages[0].text == "第1页内容"

    def test_missing_numbers_assigned_by_position(self, adapter):
        raw = story_json([{"content": "一"}, {"content": "二", "sceneDescription": "two"}])
        payload = adapter.parse_story(raw)
        assert [p.number for p in payload.pages] == [1, 2]
        assert payload.pages[1].image_prompt == "two"

    def test_string_page_numbers(self, adapter):
        raw = story_json([{"pageNumber": "1", "text": "a"}, {"pageNumber": "2", "text": "b"}])
        assert [p.number for p in adapter.parse_story(raw).pages] == [1, 2]

    @pytest.mark.parametrize(
        "numbers",
        [[1, 1, 2], [1, 3, 4], [0, 1, 2], [1, None, 3]],
    )
    def test_non_contiguous_numbers_rejected(self, adapter, numbers):
        with pytest.raises(StoryParseError) as exc_info:
            adapter.parse_story(story_json(make_pages(numbers)))
        assert exc_info.value.stage == "pages"

    @pytest.mark.parametrize("bad_number", [1.5, True, "1.0", "一", [1]])
    def test_malformed_page_number_rejected(self, adapter, bad_number):
        raw = story_json([{"pageNumber": bad_number, "text": "a"}])
        with pytest.raises(StoryParseError) as exc_info:
            adapter.parse_story(raw)
        assert exc_info.value.stage == "pages"

    def test_integral_float_page_numbers(self, adapter):
        raw = story_json([{"pageNumber": 2.0, "text": "b"}, {"pageNumber": 1.0, "text": "a"}])
        assert [p.number for p in adapter.parse_story(raw).pages] == [1, 2]

    def test_page_without_text_rejected(self, adapter):
        raw = story_json([{"pageNumber": 1, "text": "  "}])
        with pytest.raises(StoryParseError):
            adapter.parse_story(raw)

    def test_missing_pages_rejected(self, adapter):
        with pytest.raises(StoryParseError) as exc_info:
            adapter.parse_story(story_json([]))
        assert exc_info.value.stage == "pages"

    def test_missing_title_rejected(self, adapter):
        raw = json.dumps({"pages": make_pages([1])})
        with pytest.raises(StoryParseError) as exc_info:
            adapter.parse_story(raw)
        assert exc_info.value.stage == "fields"

    def test_prose_rejected(self, adapter):
        with pytest.raises(StoryParseError) as exc_info:
            adapter.parse_story("抱歉，我不能写这个故事。")
        assert exc_info.value.raw_text == "抱歉，我不能写这个故事。"

    def test_string_teaching_points(self, adapter):
        payload = adapter.parse_story(story_json(make_pages([1]), teachingPoints="耐心等待"))
        assert payload.teaching_points == ["耐心等待"]


class TestBuildImagePrompt:
    def test_combines_scene_and_character(self, adapter):
        page = Page(number=1, text="t", image_prompt="a boy sharing apples in the park")
        prompt = adapter.build_image_prompt(page, "a 6-year-old boy with short brown hair")

        assert prompt.startswith(SAFE_PREFIX)
        assert prompt.endswith(SAFE_SUFFIX)
        assert "a boy sharing apples in the park, featuring a 6-year-old boy with short brown hair" in prompt
        assert "children book style" in prompt

    def test_missing_scene_uses_character_name(self, adapter):
        prompt = adapter.build_image_prompt(Page(number=1, text="t"), "", "Tom")
        assert "Tom in a children's book scene" in prompt

    def test_sensitive_scene_is_logged(self, adapter):
        page = Page(number=3, text="t", image_prompt="a boy with a toy sword in the park")
        with patch.object(story_adapter.logger, "warning") as warning:
            adapter.build_image_prompt(page, "a child")
        warning.assert_called_once()
        assert warning.call_args.args[1] == 3

    def test_safe_scene_is_not_logged(self, adapter):
        page = Page(number=1, text="t", image_prompt="a boy sharing apples in the park")
        with patch.object(story_adapter.logger, "warning") as warning:
            adapter.build_image_prompt(page, "a child")
        warning.assert_not_called()
