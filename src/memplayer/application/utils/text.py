import html
import re
from typing import Any

import yaml  # type: ignore
import yaml.constructor

from memplayer.application.cloze import strip_clozes

from .yaml import _LiteralDumper

# ---------- Frontmatter helpers ----------


def frontmatter_end(md_text: str) -> int:
    """Character offset just past the closing `---` line, or 0 without frontmatter.
    Uses line-by-line parsing instead of regex for reliability.
    """
    lines = md_text.splitlines(keepends=True)
    if not lines or lines[0].strip() != "---":
        return 0

    pos = len(lines[0])
    for line in lines[1:]:
        pos += len(line)
        if line.strip() == "---":
            return pos
    # Unclosed frontmatter is treated as body text
    return 0


def parse_frontmatter(md_text: str) -> tuple[dict[str, Any], str]:
    """Parse YAML frontmatter from markdown text.
    Uses line-by-line parsing instead of regex for reliability.
    """
    # Handle potential BOM (Byte Order Mark)
    md_text = md_text.lstrip("\ufeff")

    lines = md_text.split("\n")

    # Check for opening ---
    if not lines or lines[0].strip() != "---":
        return {}, md_text

    # Find closing ---
    yaml_end_line = None
    for i, line in enumerate(lines[1:], start=1):
        if line.strip() == "---":
            yaml_end_line = i
            break

    if yaml_end_line is None:
        # No closing ---, return empty
        return {}, md_text

    yaml_lines = lines[1:yaml_end_line]
    body_lines = lines[yaml_end_line + 1 :]

    raw = "\n".join(yaml_lines)
    body = "\n".join(body_lines)

    # Fix tabs (common user error)
    if "\t" in raw:
        raw = raw.replace("\t", "  ")

    try:
        meta = yaml.load(raw, Loader=UniqueKeyLoader) or {}
    except yaml.YAMLError as e:
        return {"__yaml_error__": str(e)}, md_text

    if not isinstance(meta, dict):
        return {"__yaml_error__": f"frontmatter is a {type(meta).__name__}, not a mapping"}, md_text

    return meta, body


class UniqueKeyLoader(yaml.SafeLoader):
    """Custom YAML loader that forbids duplicate keys."""

    def construct_mapping(self, node, deep=False):
        mapping = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if key in mapping:
                raise yaml.constructor.ConstructorError(
                    None, None, f"found duplicate key '{key}'", key_node.start_mark
                )
            mapping.add(key)

        result = super().construct_mapping(node, deep)
        if isinstance(result, dict):
            # Inject line number (1-based, relative to the YAML block)
            result["__line__"] = node.start_mark.line + 1
        return result


def scrub_internal_keys(d: Any) -> Any:
    """Recursively remove keys starting with __"""
    if isinstance(d, dict):
        return {
            k: scrub_internal_keys(v)
            for k, v in d.items()
            if not (isinstance(k, str) and k.startswith("__"))
        }
    elif isinstance(d, list):
        return [scrub_internal_keys(v) for v in d]
    return d


def rebuild_markdown_with_frontmatter(meta: dict[str, Any], body: str) -> str:
    clean_meta = scrub_internal_keys(meta)
    yaml_text = yaml.dump(
        clean_meta,
        Dumper=_LiteralDumper,
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
        width=10**9,
    )
    return f"---\n{yaml_text}---\n{body}"


def normalize_tags(value: Any) -> tuple[str, ...]:
    """Frontmatter tags may be a list or a space/comma separated string."""
    if value is None:
        return ()
    if isinstance(value, str):
        items = re.split(r"[,\s]+", value)
    elif isinstance(value, (list, tuple)):
        items = [str(v) for v in value if v is not None]
    else:
        items = [str(value)]
    seen: dict[str, None] = {}
    for item in items:
        tag = item.strip().lstrip("#")
        if tag:
            seen.setdefault(tag, None)
    return tuple(seen)


# ---------- Headings & slugs ----------

_HEADING_MARK = re.compile(r"^#+\s+")
_IMAGE = re.compile(r"!\[[^\]]*\]\([^)]+\)")
_LINK = re.compile(r"\[((?:[^\[\]]|\[[^\]]*\])*)\]\([^)]+\)")
_EMPHASIS = re.compile(r"[*_]{1,2}([^*_]+)[*_]{1,2}")
_INLINE_CODE = re.compile(r"`([^`]+)`")
_HIGHLIGHT = re.compile(r"==(.*?)==")
_HTML_TAG = re.compile(r"<[^>]+>")
# ASCII word characters and CJK ideographs survive; everything else becomes "-"
_SLUG_SEPARATORS = re.compile(r"[^\w一-龥]+", re.ASCII)


def clean_markdown(text: str) -> str:
    """Reduce inline markdown to its visible text."""
    if not text:
        return ""

    out = html.unescape(text)
    out = _HEADING_MARK.sub("", out)
    out = _IMAGE.sub("", out)
    out = _LINK.sub(r"\1", out)
    out = _EMPHASIS.sub(r"\1", out)
    out = _INLINE_CODE.sub(r"\1", out)
    out = strip_clozes(out)
    out = _HIGHLIGHT.sub(r"\1", out)
    out = _HTML_TAG.sub("", out)
    return out.strip()


def generate_slug(text: str) -> str:
    if not text:
        return ""
    cleaned = clean_markdown(text).lower()
    return _SLUG_SEPARATORS.sub("-", cleaned).strip("-")
