"""Split long text into bounded segments at sentence boundaries."""

import re

from tts_relay.constants import (
    CHUNK_MIN_CHARS,
    CHUNK_MAX_CHARS,
    TAIL_MERGE_FACTOR,
    SENTENCE_TERMINATORS,
)
from tts_relay.models import Segment

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Collapse every whitespace run (newlines included) into one space."""
    return _WHITESPACE_RE.sub(" ", text or "").strip()


def _parse_bound(value, default: int) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def normalize_bounds(min_chars, max_chars, changed: str = "max") -> tuple[int, int]:
    """Correct user-entered chunk bounds instead of rejecting them.

    Non-numeric input falls back to the defaults and min is raised to 1.
    When max <= min, the field the user did not edit is moved: editing
    "max" lowers min to max - 1, editing "min" raises max to min + 1.
    """
    lo = max(1, _parse_bound(min_chars, CHUNK_MIN_CHARS))
    hi = _parse_bound(max_chars, CHUNK_MAX_CHARS)
    if hi <= lo:
        if changed == "max":
            lo = max(1, hi - 1)
        else:
            hi = lo + 1
    if hi <= lo:
        hi = lo + 1
    return lo, hi


def _find_cut(text: str, min_chars: int, max_chars: int, terminators: str) -> int:
    """Return the length of the next chunk taken from the front of text."""
    # Prefer a sentence terminator, keeping the chunk length in [min, max]
    for length in range(min(max_chars, len(text)), min_chars - 1, -1):
        if text[length - 1] in terminators:
            return length

    # Fall back to the last space that still yields at least min chars
    last_space = text.rfind(" ", 0, max_chars + 1)
    if last_space >= min_chars:
        return last_space

    return max_chars


def split_text(
    text: str,
    min_chars: int = CHUNK_MIN_CHARS,
    max_chars: int = CHUNK_MAX_CHARS,
    tail_factor: float = TAIL_MERGE_FACTOR,
    terminators: str = SENTENCE_TERMINATORS,
) -> list[str]:
    """Split text into chunks of at most max_chars, preferring sentence ends.

    Greedy: each chunk is cut at the last terminator whose chunk length is
    between min_chars and max_chars, else at the last space at or after
    min_chars, else hard at max_chars. A final chunk shorter than min_chars
    is appended to the previous one when the result stays within
    max_chars * tail_factor.

    Invalid bounds (min <= 0 or min >= max) return the whole text as a
    single chunk. Empty or whitespace-only text returns [].
    """
    remaining = normalize_text(text)
    if not remaining:
        return []
    if min_chars <= 0 or min_chars >= max_chars:
        return [remaining]

    chunks = []
    while remaining:
        if len(remaining) <= max_chars:
            chunks.append(remaining)
            break
        cut = _find_cut(remaining, min_chars, max_chars, terminators)
        chunk = remaining[:cut].strip()
        if chunk:
            chunks.append(chunk)
        remaining = remaining[cut:].strip()

    # Fold a short orphaned tail into its predecessor
    if len(chunks) > 1 and len(chunks[-1]) < min_chars:
        merged = chunks[-2] + " " + chunks[-1]
        if len(merged) <= max_chars * tail_factor:
            chunks[-2:] = [merged]

    return chunks


def segment(
    text: str,
    min_chars: int = CHUNK_MIN_CHARS,
    max_chars: int = CHUNK_MAX_CHARS,
    tail_factor: float = TAIL_MERGE_FACTOR,
) -> list[Segment]:
    """Split text into Segments with contiguous ids starting at 1.

    Pure and deterministic, so identical inputs always give identical
    boundaries and cached audio stays addressable by segment id.
    """
    chunks = split_text(text, min_chars, max_chars, tail_factor=tail_factor)
    return [Segment(id=i, text=chunk) for i, chunk in enumerate(chunks, start=1)]
