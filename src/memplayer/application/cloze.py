"""
Cloze lexer: find, validate, create, renumber and strip `{{cN::answer::hint}}` spans.

The grammar is scanned by hand instead of with one large regular expression so
that unclosed and malformed spans fall out of the state machine explicitly:

    SCANNING -> IN_ID -> IN_ANSWER -> IN_HINT -> CLOSED | UNCLOSED

A span body ends at the first `}}`. The answer runs up to the first `::` in
the body and the hint is the remainder. Nested braces are not supported.
A new `{{cN::` opening met before the closing `}}` marks the outer span as
unclosed and scanning restarts at the new opening.
"""

from collections import Counter, defaultdict
from dataclasses import dataclass, field
from enum import Enum, auto

from memplayer.domain.models import Cloze, MalformedSpan, UnclosedSpan

OPEN = "{{c"
SEP = "::"
CLOSE = "}}"


class _State(Enum):
    SCANNING = auto()
    IN_ID = auto()
    IN_ANSWER = auto()
    IN_HINT = auto()
    CLOSED = auto()
    UNCLOSED = auto()


@dataclass(frozen=True)
class ClozeScan:
    clozes: tuple[Cloze, ...] = ()
    unclosed: tuple[UnclosedSpan, ...] = ()
    malformed: tuple[MalformedSpan, ...] = ()

    @property
    def ids(self) -> list[int]:
        return sorted({c.id for c in self.clozes})


@dataclass(frozen=True)
class NormalizeResult:
    text: str
    changed: bool
    mapping: dict[int, int] = field(default_factory=dict)


@dataclass(frozen=True)
class CleanResult:
    text: str
    cleaned_count: int


@dataclass(frozen=True)
class UnclozeResult:
    """Text after unwrapping, plus the range now covered by the plain answer text."""

    text: str
    answer: str
    start: int
    end: int
    count: int = 1


def _is_digit(ch: str) -> bool:
    return "0" <= ch <= "9"


def _read_digits(text: str, pos: int) -> int:
    while pos < len(text) and _is_digit(text[pos]):
        pos += 1
    return pos


def _find_opener(text: str, pos: int) -> int:
    """Index of the next well-formed `{{c<digits>::` at or after pos, or -1."""
    while True:
        idx = text.find(OPEN, pos)
        if idx < 0:
            return -1
        digits_end = _read_digits(text, idx + len(OPEN))
        if digits_end > idx + len(OPEN) and text.startswith(SEP, digits_end):
            return idx
        pos = idx + 1


def scan(text: str) -> ClozeScan:
    """Scan text once and classify every cloze-like span."""
    clozes: list[Cloze] = []
    unclosed: list[UnclosedSpan] = []
    malformed: list[MalformedSpan] = []
    occurrences: defaultdict[int, int] = defaultdict(int)

    n = len(text)
    pos = 0
    state = _State.SCANNING
    start = digits_start = digits_end = body_start = 0

    while pos <= n:
        if state is _State.SCANNING:
            start = text.find(OPEN, pos)
            if start < 0:
                break
            digits_start = start + len(OPEN)
            state = _State.IN_ID

        elif state is _State.IN_ID:
            digits_end = _read_digits(text, digits_start)
            digits = text[digits_start:digits_end]

            if text.startswith(SEP, digits_end):
                body_start = digits_end + len(SEP)
                state = _State.IN_ANSWER
                continue

            # `{{c1}}` / `{{c1:answer}}`: an id without the `::` separator
            close = text.find(CLOSE, digits_end)
            line_end = text.find("\n", digits_end)
            next_open = text.find("{{", digits_end)
            if (
                digits
                and close >= 0
                and (line_end < 0 or close < line_end)
                and (next_open < 0 or close < next_open)
            ):
                inner = text[digits_end:close].lstrip(":")
                malformed.append(
                    MalformedSpan(start, close + len(CLOSE), inner, "missing_separator")
                )
                pos = close + len(CLOSE)
            else:
                pos = digits_start
            state = _State.SCANNING

        elif state in (_State.IN_ANSWER, _State.IN_HINT):
            close = text.find(CLOSE, body_start)
            conflict = _find_opener(text, body_start)
            if close < 0 or (0 <= conflict < close):
                state = _State.UNCLOSED
                pos = conflict if conflict >= 0 else n
                continue
            body = text[body_start:close]
            if state is _State.IN_ANSWER and SEP in body:
                state = _State.IN_HINT
            pos = close + len(CLOSE)
            digits = text[digits_start:digits_end]
            sep_at = body.find(SEP) if state is _State.IN_HINT else -1
            answer = body if sep_at < 0 else body[:sep_at]
            hint = None if sep_at < 0 else body[sep_at + len(SEP) :]

            if not digits:
                malformed.append(MalformedSpan(start, pos, answer, "missing_id"))
            elif int(digits) == 0:
                malformed.append(MalformedSpan(start, pos, answer, "zero_id"))
            else:
                cloze_id = int(digits)
                clozes.append(
                    Cloze(
                        id=cloze_id,
                        occurrence_index=occurrences[cloze_id],
                        answer=answer,
                        hint=hint,
                        start=start,
                        end=pos,
                    )
                )
                occurrences[cloze_id] += 1
            state = _State.CLOSED

        elif state is _State.UNCLOSED:
            digits = text[digits_start:digits_end]
            unclosed.append(UnclosedSpan(index=start, cloze_id=int(digits) if digits else None))
            state = _State.SCANNING

        elif state is _State.CLOSED:
            state = _State.SCANNING

    return ClozeScan(tuple(clozes), tuple(unclosed), tuple(malformed))


def find_max_id(text: str) -> int:
    """Highest cloze id present (valid or still unclosed); 0 if none."""
    result = scan(text)
    ids = [c.id for c in result.clozes]
    ids += [u.cloze_id for u in result.unclosed if u.cloze_id]
    return max(ids, default=0)


def find_preceding_id(text: str, cursor: int) -> int | None:
    """Id of the nearest valid cloze that ends at or before the cursor."""
    best: Cloze | None = None
    for cloze in scan(text).clozes:
        if cloze.end <= cursor and (best is None or cloze.end >= best.end):
            best = cloze
    return best.id if best else None


def next_cloze_id(text: str, cursor: int | None = None, continue_previous: bool = False) -> int:
    """Id for a new cloze: the preceding card's id when continuing, else max + 1."""
    if continue_previous and cursor is not None:
        previous = find_preceding_id(text, cursor)
        if previous is not None:
            return previous
    return find_max_id(text) + 1


def create_cloze(inner_text: str, cloze_id: int, hint: str | None = None) -> str:
    """Wrap text as `{{c<id>::text}}`. Ids below 1 are coerced to 1."""
    cloze_id = max(1, int(cloze_id))
    if hint:
        return f"{{{{c{cloze_id}::{inner_text}::{hint}}}}}"
    return f"{{{{c{cloze_id}::{inner_text}}}}}"


def find_unclosed_spans(text: str) -> list[UnclosedSpan]:
    return list(scan(text).unclosed)


def find_malformed_spans(text: str) -> list[MalformedSpan]:
    return list(scan(text).malformed)


def find_missing_ids(text: str) -> list[int]:
    """Ids in 1..max that have no valid occurrence."""
    present = set(scan(text).ids)
    return [i for i in range(1, find_max_id(text) + 1) if i not in present]


def find_overused_ids(text: str, threshold: int) -> dict[int, int]:
    """Ids whose occurrence count exceeds the threshold, with their counts."""
    counts = Counter(c.id for c in scan(text).clozes)
    return {cid: n for cid, n in sorted(counts.items()) if n > threshold}


def _replace_spans(text: str, replacements: list[tuple[int, int, str]]) -> str:
    out = []
    last = 0
    for start, end, new in sorted(replacements):
        out.append(text[last:start])
        out.append(new)
        last = end
    out.append(text[last:])
    return "".join(out)


def normalize_ids(text: str) -> NormalizeResult:
    """
    Renumber ids to a dense 1..K sequence in order of first appearance.

    Destructive for card identity: callers must only run this after explicit
    user confirmation.
    """
    mapping: dict[int, int] = {}
    replacements = []
    for cloze in scan(text).clozes:
        if cloze.id not in mapping:
            mapping[cloze.id] = len(mapping) + 1
        new_id = mapping[cloze.id]
        if new_id != cloze.id:
            hint = f"::{cloze.hint}" if cloze.hint is not None else ""
            replacements.append(
                (cloze.start, cloze.end, f"{{{{c{new_id}::{cloze.answer}{hint}}}}}")
            )
    new_text = _replace_spans(text, replacements)
    changed = new_text != text
    return NormalizeResult(new_text, changed, mapping if changed else {})


def clean_invalid(text: str) -> CleanResult:
    """Strip wrapper syntax from malformed spans, keeping their inner text."""
    malformed = scan(text).malformed
    new_text = _replace_spans(text, [(m.start, m.end, m.inner_text) for m in malformed])
    return CleanResult(new_text, len(malformed))


def strip_clozes(text: str) -> str:
    """Replace every valid cloze with its answer text (hints dropped)."""
    clozes = scan(text).clozes
    return _replace_spans(text, [(c.start, c.end, c.answer) for c in clozes])


def remove_in_range(text: str, start: int, end: int) -> UnclozeResult:
    """Unwrap every valid cloze overlapping [start, end)."""
    if end < start:
        start, end = end, start
    hits = [c for c in scan(text).clozes if c.start < end and c.end > start]
    if not hits:
        return UnclozeResult(text, "", start, end, count=0)

    new_text = _replace_spans(text, [(c.start, c.end, c.answer) for c in hits])
    # every hit overlaps the range, so all removed wrapper text lies before new_end
    removed = sum((c.end - c.start) - len(c.answer) for c in hits)
    new_start = min(start, hits[0].start)
    new_end = max(end, hits[-1].end) - removed
    return UnclozeResult(
        new_text,
        new_text[new_start:new_end],
        new_start,
        new_end,
        count=len(hits),
    )


def uncloze_at(text: str, cursor: int) -> UnclozeResult | None:
    """Unwrap the single valid cloze under the cursor; None if there is none."""
    for cloze in scan(text).clozes:
        if cloze.start <= cursor <= cloze.end:
            new_text = text[: cloze.start] + cloze.answer + text[cloze.end :]
            return UnclozeResult(
                new_text, cloze.answer, cloze.start, cloze.start + len(cloze.answer)
            )
    return None
