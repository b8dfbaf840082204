"""Markdown helpers for mirrored text."""

import re

_CODE_SPAN = re.compile(r"(```.*?```|`[^`\n]*`)", re.DOTALL)
_SPECIAL_CHARS = re.compile(r"([_*\[\]()~`>#+\-=|{}.!\\])")


def escape_markdown_v2(text: str) -> str:
    """Escape special characters for Telegram MarkdownV2 format.

    Text inside inline code and fenced code blocks is left alone; everything
    else has `_ * [ ] ( ) ~ ` > # + - = | { } . !` escaped.

    Args:
        text: Input markdown text

    Returns:
        Text safe to send with parse_mode=MarkdownV2
    """
    parts = _CODE_SPAN.split(text)
    escaped: list[str] = []
    for index, part in enumerate(parts):
        # split() with one capture group alternates plain / code
        if index % 2 == 1:
            escaped.append(part)
        else:
            escaped.append(_SPECIAL_CHARS.sub(r"\\\1", part))
    return "".join(escaped)


def truncate_with_marker(text: str, limit: int, marker: str) -> str:
    """Cut text so that text + marker fits in `limit` characters.

    An unclosed code fence in the kept part is closed before the marker so
    the rendered message does not swallow the marker into a code block.
    """
    if len(text) <= limit:
        return text

    budget = max(0, limit - len(marker))
    kept = text[:budget]
    if kept.count("```") % 2 == 1:
        closing = "\n```"
        kept = text[: max(0, budget - len(closing))] + closing
    return kept + marker
