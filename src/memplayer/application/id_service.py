"""Service for giving notes stable ids that survive renames and moves."""

import logging
from pathlib import Path

from ulid import ULID

from memplayer.application.utils.fs import iter_markdown_files
from memplayer.application.utils.text import (
    parse_frontmatter,
    rebuild_markdown_with_frontmatter,
)
from memplayer.consts import NOTE_ID_KEY

logger = logging.getLogger(__name__)


def generate_note_id() -> str:
    """Generate a stable note id using ULID."""
    return str(ULID())


def assign_note_ids(vault_root: Path, dry_run: bool = False) -> int:
    """
    Scans the vault and writes an `mp-id` into every note that lacks one.
    Notes without frontmatter get a new frontmatter block; notes with broken
    frontmatter are left alone.
    Returns the number of IDs assigned.
    """
    ids_assigned = 0

    for file_path in iter_markdown_files(vault_root):
        content = file_path.read_text(encoding="utf-8")
        meta, body = parse_frontmatter(content)

        if "__yaml_error__" in meta:
            logger.warning(f"Skipping {file_path}: invalid frontmatter")
            continue
        if meta.get(NOTE_ID_KEY):
            continue

        meta = {NOTE_ID_KEY: generate_note_id(), **meta}
        ids_assigned += 1

        if not dry_run:
            # rebuild_markdown_with_frontmatter scrubs __line__ etc. before dumping
            file_path.write_text(rebuild_markdown_with_frontmatter(meta, body), encoding="utf-8")
            logger.info(f"Assigned ID in {file_path}")
        else:
            logger.info(f"[DRY RUN] Would assign ID in {file_path}")

    return ids_assigned
