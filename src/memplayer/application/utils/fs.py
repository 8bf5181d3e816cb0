from collections.abc import Iterator
from pathlib import Path

IGNORED_DIRS = {".git", ".obsidian", ".trash", "node_modules", "__pycache__"}


def iter_markdown_files(root: Path) -> Iterator[Path]:
    """Yield markdown files under root (or root itself), skipping hidden/tool dirs."""
    if root.is_file():
        if root.suffix.lower() == ".md":
            yield root
        return

    for path in sorted(root.rglob("*.md")):
        rel_parts = path.relative_to(root).parts[:-1]
        if any(part in IGNORED_DIRS or part.startswith(".") for part in rel_parts):
            continue
        if path.is_file():
            yield path
