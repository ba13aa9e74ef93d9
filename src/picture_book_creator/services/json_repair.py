"""JSON修复 - 把模型返回的"近似JSON"文本修复为可解析的JSON

修复流程由若干 str -> str 的纯函数组成，按阶段依次尝试:
1. direct      去掉Markdown代码块标记后直接解析
2. extracted   截取最外层花括号内容并清洗后解析
3. aggressive  补全未加引号的键、单引号改双引号、去掉重复逗号后解析
4. balanced    从第一个合理的 { 开始做括号配对扫描，取出闭合对象后清洗解析

阶段内部不用异常做流程控制，每次解析返回 ParseResult；
只有最外层的 parse_json_object 在全部失败时抛出 StoryParseError。
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from ..core.errors import StoryParseError

OPEN_DOUBLE_QUOTES = "\u201c\u201e\u201f\u2033\uff02"
CLOSE_DOUBLE_QUOTES = "\u201d\u2033\uff02"
SMART_DOUBLE_QUOTES = set(OPEN_DOUBLE_QUOTES + CLOSE_DOUBLE_QUOTES)
SMART_SINGLE_QUOTES = {"\u2018": "'", "\u2019": "'", "\u201a": "'", "\u201b": "'"}
UNICODE_SPACES = {"\u00a0", "\u1680", "\u202f", "\u205f", "\u3000"} | {chr(c) for c in range(0x2000, 0x200B)}
ZERO_WIDTH = {"\u200b", "\u200c", "\u200d", "\u2060", "\ufeff"}
VALID_ESCAPES = set('"\\/bfnrtu')

_FENCE_RE = re.compile(r"```[a-zA-Z]*\s*|```")
_UNQUOTED_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)(\s*:)")
_SINGLE_QUOTED_RE = re.compile(r"([{,:\[]\s*)'((?:[^'\\]|\\.)*)'")
_DOUBLE_COMMA_RE = re.compile(r",(\s*,)+")
_PY_LITERAL_RE = re.compile(r"(:\s*)(True|False|None)(\s*[,}\]])")
_PY_LITERALS = {"True": "true", "False": "false", "None": "null"}


@dataclass
class ParseResult:
    """单次解析结果"""

    ok: bool
    value: Any = None
    error: str = ""


@dataclass
class RepairOutcome:
    """整个修复流程的结果"""

    ok: bool
    value: Any = None
    stage: str = ""
    errors: dict[str, str] = field(default_factory=dict)


def try_parse(text: Optional[str]) -> ParseResult:
    if not text:
        return ParseResult(False, error="empty input")
    try:
        return ParseResult(True, json.loads(text))
    except json.JSONDecodeError as exc:
        return ParseResult(False, error=f"{exc.msg} (line {exc.lineno}, col {exc.colno})")
    except (RecursionError, ValueError) as exc:
        # 嵌套过深或数值超出范围
        return ParseResult(False, error=f"{type(exc).__name__}: {exc}")


def strip_code_fences(text: str) -> str:
    """去掉 ```json ... ``` 标记"""
    return _FENCE_RE.sub("", text).strip()


def extract_outer_object(text: str) -> str:
    """截取第一个 { 到最后一个 } 之间的内容（最大的花括号子串）"""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return ""
    return text[start : end + 1]


def clean_json_text(text: str) -> str:
    """逐字符清洗

    - 作为分隔符使用的中文引号改为ASCII双引号，字符串内部的中文引号保持不变
    - Unicode空白改为普通空格，零宽字符删除
    - 字符串内部的换行、制表符改为空格，其他控制字符删除
    - 去掉 } 或 ] 之前多余的逗号
    """
    out: list[str] = []
    in_string = False
    smart_delimited = False
    escaped = False
    i = 0
    n = len(text)

    while i < n:
        ch = text[i]

        if ch in ZERO_WIDTH:
            i += 1
            continue
        if ch in UNICODE_SPACES:
            ch = " "

        if in_string:
            if escaped:
                if ch in VALID_ESCAPES:
                    out.append(ch)
                else:
                    # 非法转义如 \' 去掉反斜杠
                    out[-1] = ch
                escaped = False
            elif ch == "\\":
                out.append(ch)
                escaped = True
            elif smart_delimited and ch in SMART_DOUBLE_QUOTES:
                out.append('"')
                in_string = False
            elif smart_delimited and ch == '"':
                out.append('\\"')
            elif not smart_delimited and ch == '"':
                out.append(ch)
                in_string = False
            elif ch in "\r\n\t":
                # 连续的换行只保留一个空格
                if not out or out[-1] != " ":
                    out.append(" ")
            elif ord(ch) < 0x20:
                pass
            else:
                out.append(ch)
            i += 1
            continue

        if ch == '"':
            in_string = True
            smart_delimited = False
            out.append(ch)
        elif ch in SMART_DOUBLE_QUOTES:
            in_string = True
            smart_delimited = True
            out.append('"')
        elif ch in SMART_SINGLE_QUOTES:
            out.append(SMART_SINGLE_QUOTES[ch])
        elif ch == ",":
            j = i + 1
            while j < n and (text[j].isspace() or text[j] in UNICODE_SPACES or text[j] in ZERO_WIDTH):
                j += 1
            if j < n and text[j] in "}]":
                i += 1
                continue
            out.append(ch)
        elif ord(ch) < 0x20 and ch not in "\r\n\t":
            pass
        else:
            out.append(ch)
        i += 1

    return "".join(out)


def aggressive_repair(text: str) -> str:
    """更激进的字符级修复，可能改动字符串内容，只在前面阶段失败后使用"""
    repaired = text
    for quote, ascii_quote in SMART_SINGLE_QUOTES.items():
        repaired = repaired.replace(quote, ascii_quote)
    repaired = _SINGLE_QUOTED_RE.sub(
        lambda m: m.group(1) + '"' + m.group(2).replace("\\'", "'").replace('"', '\\"') + '"',
        repaired,
    )
    repaired = _UNQUOTED_KEY_RE.sub(r'\1"\2"\3', repaired)
    repaired = _DOUBLE_COMMA_RE.sub(",", repaired)
    repaired = _PY_LITERAL_RE.sub(lambda m: m.group(1) + _PY_LITERALS[m.group(2)] + m.group(3), repaired)
    repaired = re.sub(r"\[\s*,", "[", repaired)
    repaired = re.sub(r"\{\s*,", "{", repaired)
    return repaired


def _looks_like_object_start(text: str, index: int) -> bool:
    j = index + 1
    while j < len(text) and text[j].isspace():
        j += 1
    return j < len(text) and (text[j] in "\"'}" or text[j] in SMART_DOUBLE_QUOTES or text[j].isalpha() or text[j] == "_")


def scan_balanced_object(text: str) -> str:
    """从每个看起来像对象开头的 { 做括号配对扫描，返回第一个闭合的对象"""
    start = text.find("{")
    while start != -1:
        if _looks_like_object_start(text, start):
            end = _find_matching_brace(text, start)
            if end != -1:
                return text[start : end + 1]
        start = text.find("{", start + 1)
    return ""


def _find_matching_brace(text: str, start: int) -> int:
    depth = 0
    in_string = False
    quote = ""
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote or (quote in SMART_DOUBLE_QUOTES and ch in SMART_DOUBLE_QUOTES):
                in_string = False
            continue
        if ch == '"' or ch in SMART_DOUBLE_QUOTES:
            in_string = True
            quote = ch
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return -1


def _chain(*steps: Callable[[str], str]) -> Callable[[str], str]:
    def run(text: str) -> str:
        for step in steps:
            if not text:
                return ""
            text = step(text)
        return text

    return run


PIPELINE: list[tuple[str, Callable[[str], str]]] = [
    ("direct", strip_code_fences),
    ("extracted", _chain(strip_code_fences, extract_outer_object, clean_json_text)),
    ("aggressive", _chain(strip_code_fences, extract_outer_object, aggressive_repair, clean_json_text)),
    ("balanced", _chain(strip_code_fences, scan_balanced_object, clean_json_text)),
    ("balanced_aggressive", _chain(strip_code_fences, scan_balanced_object, aggressive_repair, clean_json_text)),
]


def repair_json(text: str) -> RepairOutcome:
    """依次尝试各阶段，返回第一个解析为JSON对象的结果"""
    errors: dict[str, str] = {}
    for stage, transform in PIPELINE:
        result = try_parse(transform(text or ""))
        if result.ok and isinstance(result.value, dict):
            return RepairOutcome(True, result.value, stage, errors)
        errors[stage] = result.error if not result.ok else f"expected object, got {type(result.value).__name__}"
    return RepairOutcome(False, stage=PIPELINE[-1][0], errors=errors)


def parse_json_object(text: str) -> tuple[dict, str]:
    """解析模型输出为字典，返回 (对象, 成功的阶段)

    Raises:
        StoryParseError: 所有阶段都失败
    """
    outcome = repair_json(text)
    if not outcome.ok:
        detail = "; ".join(f"{stage}: {error}" for stage, error in outcome.errors.items())
        raise StoryParseError(f"无法从模型输出中解析JSON: {detail}", raw_text=text or "", stage=outcome.stage)
    return outcome.value, outcome.stage
