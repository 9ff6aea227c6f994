"""Post-processing for raw chat responses: strip chatter, markdown and noise."""

from __future__ import annotations

import re
from typing import Optional, Tuple


_META_PATTERNS = [
    re.compile(p, re.I | re.M)
    for p in (
        r"^Here('s| is) the translation:?\s*",
        r"^Translation:?\s*",
        r"^번역:?\s*",
        r"^번역 결과:?\s*",
        r"^다음은.*번역.*입니다:?\s*",
        r"^아래는.*번역.*입니다:?\s*",
        r"\n*Is there anything else.*$",
        r"\n*다른.*도움.*드릴까요.*$",
        r"\n*더 필요한.*있으시면.*$",
        r"\n*추가로.*필요하시면.*$",
        r"\n*Let me know if.*$",
        r"\n*Feel free to.*$",
    )
]

_CODE_BLOCK_RE = re.compile(r"```[\s\S]*?```")
_INLINE_CODE_RE = re.compile(r"`([^`]+)`")
_BOLD_STAR_RE = re.compile(r"\*\*([^*]+)\*\*")
_BOLD_UNDERSCORE_RE = re.compile(r"__([^_]+)__")
_HEADER_RE = re.compile(r"^#{1,6}\s*", re.M)
_RULE_RE = re.compile(r"^[\-*_]{3,}\s*$", re.M)

# 199. "line" 200. "line" -> one numbered line each
_NUMBERED_DIALOGUE_RE = re.compile(r"(?<!\n)(\d{1,4})\.\s*([\"「『])")

_INLINE_SPACE_RE = re.compile(r"[^\S\n]+")
_MULTI_NEWLINE_RE = re.compile(r"\n{3,}")
_TRAILING_SPACE_RE = re.compile(r" +\n")
_LEADING_SPACE_RE = re.compile(r"\n +")

MIN_VALID_CHARS = 5


def _remove_meta_text(text: str) -> str:
    for pattern in _META_PATTERNS:
        text = pattern.sub("", text)
    return text


def _clean_markdown(text: str) -> str:
    text = _CODE_BLOCK_RE.sub("", text)
    text = _INLINE_CODE_RE.sub(r"\1", text)
    text = _BOLD_STAR_RE.sub(r"\1", text)
    text = _BOLD_UNDERSCORE_RE.sub(r"\1", text)
    text = _HEADER_RE.sub("", text)
    text = _RULE_RE.sub("", text)
    return text


def _format_numbered_dialogue(text: str) -> str:
    text = _NUMBERED_DIALOGUE_RE.sub(r"\n\1. \2", text)
    return text.lstrip("\r\n")


def _normalize_whitespace(text: str) -> str:
    text = _INLINE_SPACE_RE.sub(" ", text)
    text = _MULTI_NEWLINE_RE.sub("\n\n", text)
    text = _TRAILING_SPACE_RE.sub("\n", text)
    text = _LEADING_SPACE_RE.sub("\n", text)
    return text


def clean_translation(raw: Optional[str]) -> str:
    if not raw:
        return ""
    text = _remove_meta_text(raw)
    text = _clean_markdown(text)
    text = _format_numbered_dialogue(text)
    text = _normalize_whitespace(text)
    return text.strip()


def validate_translation(text: Optional[str]) -> Tuple[bool, Optional[str]]:
    """Return (ok, reason). Failing validation is advisory only."""
    if not text or not text.strip():
        return False, "empty translation"
    lowered = text.lower()
    if "시간 초과" in text or "timeout" in lowered:
        return False, "timeout text in response"
    if "응답 없음" in text:
        return False, "no-response text in response"
    if len(text) < MIN_VALID_CHARS:
        return False, "translation too short"
    return True, None
