"""JSON修复流程测试"""

import pytest

from picture_book_creator.core.errors import StoryParseError
from picture_book_creator.services.json_repair import (
    aggressive_repair,
    clean_json_text,
    extract_outer_object,
    parse_json_object,
    repair_json,
    scan_balanced_object,
    strip_code_fences,
    try_parse,
)

FENCED = '```json\n{"title": "小明的一天", "pages": [{"pageNumber": 1, "text": "早上好"}]}\n```'

SMART_QUOTES = "{“title”: “小明的一天”, “pages”: [{“pageNumber”: 1, “text”: “早上好”}]}"

TRAILING_COMMAS = '{"title": "t", "pages": [{"pageNumber": 1, "text": "a",},],}'

RAW_NEWLINES = '{"title": "t", "pages": [{"pageNumber": 1, "text": "第一行\n第二行\n\n第三行"}]}'

WITH_PROSE = '好的，下面是故事：\n{"title": "t", "pages": [{"pageNumber": 1, "text": "a"}]}\n希望你喜欢！'

UNQUOTED = "{title: 'Tom', pages: [{pageNumber: 1, text: 'Hi', done: True}]}"

STRAY_BRACE = 'Result: {"title": "t", "pages": [{"text": "a"}]} remember to close with }'


class TestPipelineFunctions:
    def test_try_parse(self):
        assert try_parse('{"a": 1}').value == {"a": 1}
        result = try_parse("{bad")
        assert not result.ok
        assert result.error
        assert not try_parse("").ok

    def test_strip_code_fences(self):
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert strip_code_fences('{"a": 1}') == '{"a": 1}'

    def test_extract_outer_object(self):
        assert extract_outer_object('xx {"a": {"b": 1}} yy') == '{"a": {"b": 1}}'
        assert extract_outer_object("no json here") == ""

    def test_clean_removes_trailing_commas(self):
        assert clean_json_text('{"a": [1, 2,], }') == '{"a": [1, 2] }'

    def test_clean_keeps_commas_inside_strings(self):
        assert clean_json_text('{"a": "x,}"}') == '{"a": "x,}"}'

    def test_clean_keeps_smart_quotes_inside_ascii_strings(self):
        text = '{"text": "他说“你好”"}'
        assert clean_json_text(text) == text

    def test_clean_normalizes_whitespace_and_escapes(self):
        text = '{"a": "it\\\'s\u200b ok\tnow"}'
        assert clean_json_text(text) == '{"a": "it\'s ok now"}'

    def test_aggressive_repair(self):
        assert aggressive_repair("{a: 1,, b: 2}") == '{"a": 1, "b": 2}'
        assert aggressive_repair("{'ok': True}") == '{"ok": true}'

    def test_scan_balanced_object(self):
        assert scan_balanced_object('noise } {"a": {"b": 1}} tail }') == '{"a": {"b": 1}}'
        assert scan_balanced_object('{"a": 1') == ""


class TestRepairJson:
    @pytest.mark.parametrize(
        "text, stage",
        [
            (FENCED, "direct"),
            (SMART_QUOTES, "extracted"),
            (TRAILING_COMMAS, "extracted"),
            (RAW_NEWLINES, "extracted"),
            (WITH_PROSE, "extracted"),
            (UNQUOTED, "aggressive"),
            (STRAY_BRACE, "balanced"),
        ],
    )
    def test_recovers_known_bad_outputs(self, text, stage):
        outcome = repair_json(text)
        assert outcome.ok
        assert outcome.stage == stage
        assert outcome.value["title"]
        assert isinstance(outcome.value["pages"], list)

    def test_newlines_inside_strings_become_spaces(self):
        value, _ = parse_json_object(RAW_NEWLINES)
        assert value["pages"][0]["text"] == "第一行 第二行 第三行"

    def test_smart_quote_values(self):
        value, _ = parse_json_object(SMART_QUOTES)
        assert value["title"] == "小明的一天"

    def test_records_errors_of_failed_stages(self):
        outcome = repair_json(UNQUOTED)
        assert set(outcome.errors) == {"direct", "extracted"}


class TestParseFailures:
    @pytest.mark.parametrize(
        "text",
        [
            "对不起，我无法完成这个请求。",
            "",
            "[1, 2, 3]",
            '{"title": "unterminated',
        ],
    )
    def test_irrecoverable_text_raises_story_parse_error(self, text):
        with pytest.raises(StoryParseError) as exc_info:
            parse_json_object(text)

        assert exc_info.value.raw_text == text
        assert exc_info.value.stage == "balanced_aggressive"
        assert exc_info.value.kind == "story_parse"

    @pytest.mark.parametrize(
        "text",
        [
            "[" * 100000,
            '{"title": "x", "pages": ' + "[" * 100000 + "]" * 100000 + "}",
        ],
    )
    def test_deeply_nested_text_raises_story_parse_error(self, text):
        with pytest.raises(StoryParseError) as exc_info:
            parse_json_object(text)

        assert exc_info.value.stage == "balanced_aggressive"
