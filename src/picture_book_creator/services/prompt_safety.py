"""插画提示词安全过滤"""

import re
from typing import Optional

SAFE_PREFIX = "Safe, family-friendly, children's book style, "
SAFE_SUFFIX = ", appropriate for children, wholesome, innocent, educational"
DEFAULT_SUBJECT = "cute cartoon character for children"
MIN_SUBJECT_LENGTH = 10

# 首次提交时移除的词
BLOCKED_WORDS = [
    "sexy", "adult", "mature", "violence", "weapon", "blood", "death", "scary",
    "horror", "dark", "evil", "bad", "dangerous", "inappropriate",
]

# 被拦截后重试时额外处理的词
SENSITIVE_WORDS = [
    "violent", "fight", "fighting", "gun", "knife", "sword", "bleeding", "hurt",
    "pain", "injury", "wound", "attack", "kill", "dead", "die", "dying", "murder",
    "war", "battle", "explosion", "frightening", "terrifying", "nightmare", "ghost",
    "demon", "darkness", "shadow", "creepy", "spooky", "haunted", "zombie", "vampire",
    "witch", "devil", "sexual", "nude", "naked", "romance", "romantic", "kiss",
    "kissing", "dating", "poison", "toxic", "smoke", "accident", "crash",
]

WORD_REPLACEMENTS = {
    "scary": "friendly",
    "frightening": "cheerful",
    "dark": "bright",
    "evil": "kind",
    "monster": "friendly creature",
    "angry": "happy",
    "sad": "cheerful",
    "dangerous": "safe",
    "fight": "play",
    "weapon": "toy",
    "fire": "warm light",
}

# 每次重试使用更强的安全措辞
HARDENING_LEVELS = [
    ("", ""),
    ("Very safe and innocent ", ", completely appropriate for young children, no controversial content"),
    (
        "Extra safe, gentle and innocent ",
        ", absolutely no controversial or inappropriate content, designed specifically for very young children",
    ),
]


def _word_pattern(words) -> re.Pattern:
    return re.compile(r"\b(" + "|".join(re.escape(w) for w in words) + r")\b", re.IGNORECASE)


_BLOCKED_RE = _word_pattern(BLOCKED_WORDS)
_SENSITIVE_RE = _word_pattern(BLOCKED_WORDS + SENSITIVE_WORDS)
_REPLACE_RE = _word_pattern(WORD_REPLACEMENTS)


def _tidy(text: str) -> str:
    text = re.sub(r"\s+", " ", text)
    text = re.sub(r"\s*,(\s*,)*\s*", ", ", text)
    return text.strip(" ,")


def _unwrap(prompt: str) -> str:
    if prompt.startswith(SAFE_PREFIX) and prompt.endswith(SAFE_SUFFIX):
        return prompt[len(SAFE_PREFIX) : len(prompt) - len(SAFE_SUFFIX)]
    return prompt


def _subject(prompt: Optional[str], *, strict: bool = False) -> str:
    if not isinstance(prompt, str):
        prompt = ""
    subject = _unwrap(prompt)
    if strict:
        subject = _REPLACE_RE.sub(lambda m: WORD_REPLACEMENTS[m.group(1).lower()], subject)
        subject = _SENSITIVE_RE.sub("", subject)
    else:
        subject = _BLOCKED_RE.sub("", subject)
    subject = _tidy(subject)
    if len(subject) < MIN_SUBJECT_LENGTH:
        subject = DEFAULT_SUBJECT
    return subject


def sanitize_prompt(prompt: Optional[str]) -> str:
    """移除不安全词汇并加上安全前后缀

    对已经处理过的提示词再次调用结果不变。
    """
    return f"{SAFE_PREFIX}{_subject(prompt)}{SAFE_SUFFIX}"


def harden_prompt(prompt: Optional[str], attempt: int) -> str:
    """内容被拦截后的重试提示词

    attempt 从1开始，1等同于 sanitize_prompt，之后每次措辞更保守。
    """
    if attempt <= 1:
        return sanitize_prompt(prompt)
    prefix, suffix = HARDENING_LEVELS[min(attempt - 1, len(HARDENING_LEVELS) - 1)]
    return f"{prefix}{SAFE_PREFIX}{_subject(prompt, strict=True)}{SAFE_SUFFIX}{suffix}"


def contains_sensitive_content(prompt: str) -> bool:
    """检查提示词是否包含敏感词"""
    return bool(_SENSITIVE_RE.search(prompt or ""))
