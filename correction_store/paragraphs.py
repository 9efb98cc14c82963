"""
Paragraph segmentation of markdown text.

A paragraph entry is one prose paragraph plus every non-prose block
(headings, lists, quotes, rules, code fences) directly in front of it. Only
a trailing run of non-prose blocks with no paragraph after it forms a group
on its own.
"""

from __future__ import annotations

import re
from typing import List


_FENCE = re.compile(r"^\s{0,3}(```|~~~)")
_NON_PROSE = re.compile(
    r"^\s{0,3}("
    r"#{1,6}(\s|$)"  # heading
    r"|>"  # block quote
    r"|([-*_]\s*){3,}$"  # thematic break
    r"|[-*+]\s"  # bullet list
    r"|\d{1,9}[.)]\s"  # ordered list
    r"|\|"  # table
    r"|<!--"  # html comment
    r"|\[[^\]]+\]:\s"  # link definition
    r")"
)


def format_markdown(text: str) -> str:
    """Normalize line endings and surrounding whitespace of one block of markdown."""
    lines = text.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    lines = [line.rstrip() for line in lines]
    while lines and not lines[0]:
        lines.pop(0)
    while lines and not lines[-1]:
        lines.pop()
    return "\n".join(lines)


def _split_blocks(text: str) -> List[str]:
    blocks: List[str] = []
    current: List[str] = []
    in_fence = False
    for line in text.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        if _FENCE.match(line):
            in_fence = not in_fence
            current.append(line)
            continue
        if not in_fence and not line.strip():
            if current:
                blocks.append("\n".join(current))
                current = []
            continue
        current.append(line)
    if current:
        blocks.append("\n".join(current))
    return [format_markdown(block) for block in blocks if block.strip()]


def is_prose_block(block: str) -> bool:
    first_line = block.split("\n", 1)[0]
    if _FENCE.match(first_line):
        return False
    return _NON_PROSE.match(first_line) is None


def split_paragraphs(text: str) -> List[str]:
    """Split `text` into paragraph entries; see the module docstring for grouping."""
    groups: List[List[str]] = []
    for block in reversed(_split_blocks(text)):
        if not groups or is_prose_block(block):
            groups.insert(0, [block])
        else:
            groups[0].insert(0, block)
    return ["\n\n".join(group) for group in groups]


def join_paragraphs(paragraphs: List[str]) -> str:
    return "\n\n".join(paragraphs)
