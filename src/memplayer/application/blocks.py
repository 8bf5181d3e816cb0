"""
Block splitter: cut a note into structural blocks for change detection.

Splitting is lossless (joining every block's raw_content gives back the input)
and deterministic, so unchanged regions keep identical hashes across edits.
Blank lines belong to the block before them; leading blank lines belong to
the first block.
"""

import hashlib
import re
from dataclasses import dataclass

from memplayer.application.utils.text import frontmatter_end, generate_slug
from memplayer.domain.models import Block, BlockType

_FENCE = re.compile(r"^ {0,3}(`{3,}|~{3,})")
_HEADING = re.compile(r"^ {0,3}(#{1,6})(?:[ \t]+(.*?))?(?:[ \t]+#+)?[ \t]*$")
_THEMATIC_BREAK = re.compile(r"^ {0,3}([-*_])(?:[ \t]*\1){2,}[ \t]*$")
_LIST_ITEM = re.compile(r"^ {0,3}(?:[-*+]|\d{1,9}[.)])(?:[ \t]|$)")
_BLOCKQUOTE = re.compile(r"^ {0,3}>")
_TABLE_DELIMITER = re.compile(r"^ *\|? *:?-+:? *(?:\| *:?-+:? *)*\|? *$")


@dataclass(frozen=True)
class BlockDiff:
    """Indices into the new block list, plus old blocks with no surviving hash."""

    reused: tuple[int, ...]
    changed: tuple[int, ...]
    removed: tuple[int, ...]


def content_hash(text: str) -> str:
    return hashlib.md5(text.encode("utf-8"), usedforsecurity=False).hexdigest()


def _is_blank(line: str) -> bool:
    return not line.strip()


def _is_math_fence(line: str) -> bool:
    return line.strip().startswith("$$")


def _is_table_start(lines: list[str], i: int) -> bool:
    return (
        "|" in lines[i]
        and i + 1 < len(lines)
        and "|" in lines[i + 1]
        and bool(_TABLE_DELIMITER.match(lines[i + 1].rstrip("\r\n")))
    )


def _interrupts_paragraph(lines: list[str], i: int) -> bool:
    line = lines[i].rstrip("\r\n")
    return bool(
        _FENCE.match(line)
        or _HEADING.match(line)
        or _THEMATIC_BREAK.match(line)
        or _BLOCKQUOTE.match(line)
        or _LIST_ITEM.match(line)
        or _is_math_fence(line)
        or _is_table_start(lines, i)
    )


def _scan_fence(lines: list[str], i: int, fence: str) -> int:
    """Index one past the closing fence; an unclosed fence runs to end of text."""
    char, size = fence[0], len(fence)
    for j in range(i + 1, len(lines)):
        stripped = lines[j].strip()
        if stripped and set(stripped) == {char} and len(stripped) >= size:
            return j + 1
    return len(lines)


def _scan_math(lines: list[str], i: int) -> int:
    first = lines[i].strip()
    if len(first) > 4 and first.endswith("$$"):
        return i + 1
    for j in range(i + 1, len(lines)):
        if lines[j].strip().endswith("$$"):
            return j + 1
    return len(lines)


def _scan_list(lines: list[str], i: int) -> int:
    j = i + 1
    while j < len(lines):
        line = lines[j].rstrip("\r\n")
        if _is_blank(line):
            k = j
            while k < len(lines) and _is_blank(lines[k]):
                k += 1
            if k < len(lines) and (
                _LIST_ITEM.match(lines[k]) or lines[k][:1] in (" ", "\t")
            ):
                j = k
                continue
            return j
        if line[:1] not in (" ", "\t") and (
            _FENCE.match(line) or _HEADING.match(line) or _THEMATIC_BREAK.match(line)
        ):
            return j
        j += 1
    return j


def _scan_while_nonblank(lines: list[str], i: int, predicate=None) -> int:
    j = i + 1
    while j < len(lines) and not _is_blank(lines[j]):
        if predicate is not None and not predicate(j):
            break
        j += 1
    return j


def _classify(lines: list[str], i: int) -> tuple[BlockType, int, int | None, str | None]:
    """Return (type, end line index, heading level, heading text) for the block at i."""
    line = lines[i].rstrip("\r\n")

    if fence := _FENCE.match(line):
        return BlockType.CODE, _scan_fence(lines, i, fence.group(1)), None, None
    if _is_math_fence(line):
        return BlockType.MATH, _scan_math(lines, i), None, None
    if heading := _HEADING.match(line):
        return BlockType.HEADING, i + 1, len(heading.group(1)), heading.group(2) or ""
    if _THEMATIC_BREAK.match(line):
        return BlockType.THEMATIC_BREAK, i + 1, None, None
    if _is_table_start(lines, i):
        end = _scan_while_nonblank(lines, i, lambda j: "|" in lines[j])
        return BlockType.TABLE, end, None, None
    if _BLOCKQUOTE.match(line):
        return BlockType.BLOCKQUOTE, _scan_while_nonblank(lines, i), None, None
    if _LIST_ITEM.match(line):
        return BlockType.LIST, _scan_list(lines, i), None, None

    end = _scan_while_nonblank(lines, i, lambda j: not _interrupts_paragraph(lines, j))
    return BlockType.PARAGRAPH, end, None, None


def split_blocks(raw: str) -> list[Block]:
    """Split raw note text into blocks whose raw_content concatenates back to raw."""
    if not raw:
        return []

    lines = raw.splitlines(keepends=True)
    # (type, first line, end line, heading level, heading text)
    spans: list[tuple[BlockType, int, int, int | None, str | None]] = []

    i = 0
    fm_end = frontmatter_end(raw)
    consumed = 0
    while consumed < fm_end:
        consumed += len(lines[i])
        i += 1

    while i < len(lines) and _is_blank(lines[i]):
        i += 1
    if fm_end:
        # Blank lines after the frontmatter stay with it
        spans.append((BlockType.FRONTMATTER, 0, i, None, None))

    while i < len(lines):
        block_type, end, level, title = _classify(lines, i)
        while end < len(lines) and _is_blank(lines[end]):
            end += 1
        spans.append((block_type, i, end, level, title))
        i = end

    if not spans:
        # Whitespace-only text
        spans.append((BlockType.PARAGRAPH, 0, len(lines), None, None))
    elif spans[0][1] > 0:
        # Leading blank lines join the first block
        first = spans[0]
        spans[0] = (first[0], 0, first[2], first[3], first[4])

    blocks: list[Block] = []
    slug_counts: dict[str, int] = {}
    offset = 0
    for index, (block_type, first, end, level, title) in enumerate(spans):
        text = "".join(lines[first:end])
        digest = content_hash(text)

        heading_id = None
        if block_type is BlockType.HEADING and title:
            base = generate_slug(title)
            if base:
                seen = slug_counts.get(base, 0)
                slug_counts[base] = seen + 1
                heading_id = base if seen == 0 else f"{base}-{seen}"

        blocks.append(
            Block(
                id=f"block-{index}-{digest[:6]}",
                type=block_type,
                hash=digest,
                raw_content=text,
                start=offset,
                end=offset + len(text),
                line_range=(first + 1, max(first + 1, end)),
                heading_level=level,
                heading_id=heading_id,
            )
        )
        offset += len(text)
    return blocks


def find_affected_blocks(blocks: list[Block], line_start: int, line_end: int) -> list[int]:
    """Indices of blocks whose line range overlaps the changed 1-based line range."""
    return [
        i
        for i, block in enumerate(blocks)
        if line_end >= block.line_range[0] and line_start <= block.line_range[1]
    ]


def diff_blocks(old: list[Block], new: list[Block]) -> BlockDiff:
    old_hashes = {b.hash for b in old}
    new_hashes = {b.hash for b in new}
    reused = tuple(i for i, b in enumerate(new) if b.hash in old_hashes)
    changed = tuple(i for i, b in enumerate(new) if b.hash not in old_hashes)
    removed = tuple(i for i, b in enumerate(old) if b.hash not in new_hashes)
    return BlockDiff(reused, changed, removed)
