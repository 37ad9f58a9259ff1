"""Helpers for cleaning up model-produced text before it touches the repository."""

from __future__ import annotations

import re

_CODE_FENCE = re.compile(r"^```.*$", re.MULTILINE)


def strip_wrapping_markdown_code_fences(content: str) -> str:
    """Strip Markdown code fences that wrap the whole of ``content``.

    Models often wrap code in fences even when told not to. Fenced blocks
    embedded in real Markdown are left alone: only a fence on the first line,
    or a dangling fence on the last line, is removed.
    """
    trimmed = content.strip()
    fence_count = len(_CODE_FENCE.findall(trimmed))
    if fence_count == 0:
        return content

    lines = trimmed.split("\n")
    start = 0
    if _CODE_FENCE.match(lines[0]):
        start = len(lines[0]) + 1

    end = len(trimmed)
    # An odd fence count is invalid Markdown; a leading fence means the whole text is wrapped.
    if (fence_count % 2 == 1 or start != 0) and _CODE_FENCE.match(lines[-1]):
        end -= len(lines[-1])

    start = min(start, len(trimmed))
    end = max(end, start)
    if start == 0 and end == len(trimmed):
        return content
    return trimmed[start:end]
