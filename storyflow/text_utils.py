# storyflow/text_utils.py
from __future__ import annotations

import html
import math
import re

_TAG_RE = re.compile(r"<[^>]*>")
_WS_RE = re.compile(r"\s+")


def strip_html(markup: str) -> str:
    """Plain text of a rich-text fragment: tags dropped, entities unescaped."""
    if not markup:
        return ""
    return html.unescape(_TAG_RE.sub(" ", markup))


def count_words(text: str) -> int:
    """Words in a string or HTML content. Tags count as separators."""
    if not text:
        return 0
    plain = _WS_RE.sub(" ", strip_html(text)).strip()
    if not plain:
        return 0
    return len([w for w in plain.split(" ") if w])


def truncate_text(text: str, max_length: int) -> str:
    if not text:
        return ""
    if len(text) <= max_length:
        return text
    return text[:max_length] + "..."


def reading_time_minutes(text: str, words_per_minute: int = 200) -> int:
    return math.ceil(count_words(text) / words_per_minute)


def append_dictated_text(content: str, dictated: str) -> str:
    """Append one finished utterance, separated from the existing text by a space."""
    dictated = (dictated or "").strip()
    content = content or ""
    if not dictated:
        return content
    if not content or content[-1].isspace():
        return content + dictated
    return f"{content} {dictated}"
