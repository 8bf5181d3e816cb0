import hashlib
import logging
import uuid
from pathlib import PurePath
from typing import Any

from memplayer.application.blocks import split_blocks
from memplayer.application.cloze import scan
from memplayer.application.utils.text import (
    clean_markdown,
    normalize_tags,
    parse_frontmatter,
    scrub_internal_keys,
)
from memplayer.consts import NOTE_ID_KEY
from memplayer.domain.models import Block, BlockType, Note

logger = logging.getLogger(__name__)


def note_hash(raw: str) -> str:
    """SHA-256 of the full note text, used to detect no-op syncs."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def derive_note_id(filepath: str) -> str:
    """Deterministic id for notes without an `mp-id` in their frontmatter."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, filepath))


def _resolve_title(meta: dict[str, Any], blocks: list[Block], filepath: str) -> str:
    title = meta.get("title")
    if isinstance(title, str) and title.strip():
        return title.strip()
    for block in blocks:
        if block.type is BlockType.HEADING and block.heading_level == 1:
            text = clean_markdown(block.raw_content)
            if text:
                return text
    return PurePath(filepath).stem if filepath else ""


def _resolve_hints(meta: dict[str, Any]) -> tuple[str, ...]:
    hints = meta.get("hints")
    if isinstance(hints, list):
        return tuple(str(h) for h in hints if h is not None and str(h).strip())
    hint = meta.get("hint")
    if isinstance(hint, str) and hint.strip():
        return (hint.strip(),)
    return ()


def parse_note(raw: str, filepath: str = "", note_id: str | None = None) -> Note:
    """
    Parse raw markdown into a Note.

    Pure: the same input always yields the same Note. Broken frontmatter and
    broken cloze spans are reported on the Note instead of raising.

    Args:
        raw: Full note text, frontmatter included.
        filepath: Vault-relative path, used for the fallback id and title.
        note_id: Explicit id; overrides the frontmatter `mp-id`.
    """
    meta, _ = parse_frontmatter(raw)
    frontmatter_error = meta.get("__yaml_error__")
    if frontmatter_error:
        logger.debug(f"Invalid frontmatter in {filepath or '<text>'}: {frontmatter_error}")
        meta = {}
    meta = scrub_internal_keys(meta)

    if note_id is None:
        stored = meta.get(NOTE_ID_KEY)
        note_id = str(stored) if stored else derive_note_id(filepath)

    blocks = split_blocks(raw)
    result = scan(raw)
    if result.unclosed or result.malformed:
        logger.debug(
            f"{filepath or note_id}: {len(result.unclosed)} unclosed, "
            f"{len(result.malformed)} malformed cloze span(s)"
        )

    return Note(
        id=note_id,
        filepath=filepath,
        raw=raw,
        content_hash=note_hash(raw),
        frontmatter=meta,
        title=_resolve_title(meta, blocks, filepath),
        tags=normalize_tags(meta.get("tags")),
        hints=_resolve_hints(meta),
        blocks=tuple(blocks),
        clozes=result.clozes,
        unclosed=result.unclosed,
        malformed=result.malformed,
        frontmatter_error=frontmatter_error,
    )
