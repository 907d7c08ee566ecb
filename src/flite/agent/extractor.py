"""Parse ``fff/execute`` tool requests out of free-form model text."""

from __future__ import annotations

import re

TOOL_PREFIX = "fff/execute:"

_INLINE_PATTERN = re.compile(r"`" + re.escape(TOOL_PREFIX) + r"([^`\n]+)`")
_BLOCK_PATTERN = re.compile(r"```" + re.escape(TOOL_PREFIX) + r"\n(.*?)```", re.DOTALL)


def extract_commands(text: str) -> list[str]:
    """Return the commands requested in ``text``, inline spans first, then blocks.

    A fenced block is always a single command, even when its body spans
    several lines. Inline spans inside a fenced block region are ignored so a
    block is never reported twice.
    """
    if TOOL_PREFIX not in text:
        return []

    block_spans: list[tuple[int, int]] = []
    block_commands: list[str] = []
    for match in _BLOCK_PATTERN.finditer(text):
        block_spans.append(match.span())
        body = match.group(1).strip()
        if body:
            block_commands.append(body)

    inline_commands: list[str] = []
    for match in _INLINE_PATTERN.finditer(text):
        if _overlaps(match.span(), block_spans):
            continue
        command = match.group(1).strip()
        if command:
            inline_commands.append(command)

    return inline_commands + block_commands


def _overlaps(span: tuple[int, int], regions: list[tuple[int, int]]) -> bool:
    start, end = span
    return any(start < region_end and region_start < end for region_start, region_end in regions)
