from memplayer.application.blocks import (
    diff_blocks,
    find_affected_blocks,
    split_blocks,
)
from memplayer.domain.models import BlockType

DOC = "# Title\n\nPara one\nline two\n\n- a\n- b\n\n```py\ncode\n```\n"


def test_split_is_lossless_and_typed():
    blocks = split_blocks(DOC)
    assert "".join(b.raw_content for b in blocks) == DOC
    assert [b.type for b in blocks] == [
        BlockType.HEADING,
        BlockType.PARAGRAPH,
        BlockType.LIST,
        BlockType.CODE,
    ]


def test_offsets_and_line_ranges():
    blocks = split_blocks(DOC)
    for b in blocks:
        assert DOC[b.start : b.end] == b.raw_content
    assert [b.line_range for b in blocks] == [(1, 2), (3, 5), (6, 8), (9, 11)]


def test_block_ids_are_positional():
    blocks = split_blocks(DOC)
    assert blocks[0].id == f"block-0-{blocks[0].hash[:6]}"
    assert blocks[3].id.startswith("block-3-")


def test_empty_text_has_no_blocks():
    assert split_blocks("") == []


def test_leading_blank_lines_join_first_block():
    (block,) = split_blocks("\n\nText\n")
    assert block.type is BlockType.PARAGRAPH
    assert block.start == 0
    assert block.line_range == (1, 3)


def test_frontmatter_block_keeps_following_blanks():
    text = "---\na: 1\n---\n\n# H\n"
    blocks = split_blocks(text)
    assert blocks[0].type is BlockType.FRONTMATTER
    assert blocks[0].raw_content == "---\na: 1\n---\n\n"
    assert blocks[1].type is BlockType.HEADING


def test_unclosed_frontmatter_is_body():
    blocks = split_blocks("---\na: 1\n")
    assert BlockType.FRONTMATTER not in [b.type for b in blocks]


def test_table_and_math_blocks():
    text = "| a | b |\n|---|---|\n| 1 | 2 |\n\n$$\nx^2\n$$\n"
    blocks = split_blocks(text)
    assert [b.type for b in blocks] == [BlockType.TABLE, BlockType.MATH]


def test_unclosed_fence_runs_to_end():
    text = "```\ncode\n\nmore\n"
    (block,) = split_blocks(text)
    assert block.type is BlockType.CODE


def test_duplicate_headings_get_unique_ids():
    blocks = split_blocks("# Intro\n\n# Intro\n\n## Intro\n")
    assert [b.heading_id for b in blocks] == ["intro", "intro-1", "intro-2"]
    assert [b.heading_level for b in blocks] == [1, 1, 2]


def test_heading_interrupts_paragraph():
    blocks = split_blocks("text\n# Heading\n")
    assert [b.type for b in blocks] == [BlockType.PARAGRAPH, BlockType.HEADING]


def test_editing_one_block_keeps_other_hashes():
    old = split_blocks(DOC)
    new = split_blocks(DOC.replace("Para one", "Para 1"))
    diff = diff_blocks(old, new)
    assert diff.changed == (1,)
    assert diff.reused == (0, 2, 3)
    assert diff.removed == (1,)


def test_same_text_same_hashes():
    assert [b.hash for b in split_blocks(DOC)] == [b.hash for b in split_blocks(DOC)]


def test_find_affected_blocks():
    blocks = split_blocks(DOC)
    assert find_affected_blocks(blocks, 3, 3) == [1]
    assert find_affected_blocks(blocks, 5, 6) == [1, 2]
    assert find_affected_blocks(blocks, 100, 120) == []
