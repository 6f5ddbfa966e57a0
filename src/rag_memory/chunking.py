"""
Text chunking and reassembly.

These utilities sit underneath the ingestion and recall pipelines:
  - Overlap-aware chunking of long texts along natural boundaries
  - Overlap-aware reassembly of an ordered subset of chunks
  - Tag parsing and preview helpers shared by the registry and the tools
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Iterable, Sequence

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Maximum number of characters per chunk (~400 tokens).
DEFAULT_CHUNK_SIZE: int = 1600

#: Characters shared between consecutive chunks (~50 tokens).
DEFAULT_CHUNK_OVERLAP: int = 200

#: Number of characters kept in a document preview.
PREVIEW_LENGTH: int = 200

#: Shortest suffix/prefix match accepted when stripping overlap.
MIN_OVERLAP_MATCH: int = 10

# Split *after* a blank line, after sentence punctuation followed by
# whitespace, or after a line break.  Separators stay on the left segment so
# that joining the segments reproduces the input.
_SEGMENT_RE = re.compile(r"(?<=\n\n)|(?<=[.!?]\s)|(?<=\n)")
_TAG_SEPARATOR_RE = re.compile(r"[\s,]+")


# ---------------------------------------------------------------------------
# Chunking
# ---------------------------------------------------------------------------


def chunk_text(
    text: str,
    size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> list[str]:
    """
    Split *text* into chunks of at most *size* characters.

    Strategy:
      1. Text that already fits is returned as a single, untouched chunk.
      2. Otherwise split on natural boundaries (paragraphs, sentences, lines)
         and accumulate segments until the next one would exceed *size*.
      3. Each new chunk is seeded with the trailing segments of the previous
         one whose combined length fits in *overlap*.
      4. Text without any natural boundary falls back to fixed-stride slices.

    The caller guarantees ``0 <= overlap < size``.  A single segment longer
    than *size* is kept whole.
    """
    if len(text) <= size:
        return [text]

    segments = _split_segments(text)
    if len(segments) <= 1:
        return _split_fixed(text, size, overlap)

    chunks: list[str] = []
    current: list[str] = []
    current_len = 0

    for seg in segments:
        if current_len + len(seg) > size and current:
            chunks.append("".join(current).strip())

            # Carry the tail of the emitted chunk over, whole segments only.
            keep = 0
            kept_len = 0
            for part in reversed(current):
                if kept_len + len(part) > overlap:
                    break
                kept_len += len(part)
                keep += 1
            current = current[-keep:] if keep else []
            current_len = kept_len

        current.append(seg)
        current_len += len(seg)

    if current:
        last = "".join(current).strip()
        if last:
            chunks.append(last)

    return chunks


def _split_segments(text: str) -> list[str]:
    return [s for s in _SEGMENT_RE.split(text) if s]


def _split_fixed(text: str, size: int, overlap: int) -> list[str]:
    """Fixed-stride fallback used when the text has no natural boundaries."""
    step = max(size - overlap, 1)
    chunks: list[str] = []
    pos = 0
    while True:
        chunks.append(text[pos : pos + size])
        if pos + size >= len(text):
            break
        pos += step
    return chunks


# ---------------------------------------------------------------------------
# Reassembly
# ---------------------------------------------------------------------------


def assemble_chunks(
    chunks: Sequence[str],
    overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> str:
    """
    Join an ordered run of chunks back into continuous text.

    Before appending each chunk, the longest suffix of the text assembled so
    far that is also a prefix of the chunk (between ``min(10, overlap)`` and
    ``2 * overlap`` characters) is detected and stripped from the chunk.

    This is best-effort string matching: text that repeats naturally at a
    chunk boundary can be over- or under-stripped.
    """
    if not chunks:
        return ""

    result = chunks[0]
    for nxt in chunks[1:]:
        shared = _shared_boundary(result, nxt, overlap)
        result += nxt[shared:]
    return result


def _shared_boundary(left: str, right: str, overlap: int) -> int:
    """Length of the longest suffix of *left* that prefixes *right* (0 if none)."""
    if overlap <= 0:
        return 0
    min_len = min(MIN_OVERLAP_MATCH, overlap)
    max_len = min(2 * overlap, len(left), len(right))
    for k in range(max_len, min_len - 1, -1):
        if left.endswith(right[:k]):
            return k
    return 0


# ---------------------------------------------------------------------------
# Tags & previews
# ---------------------------------------------------------------------------


def parse_tags(tags: str | Iterable[str] | None) -> list[str]:
    """
    Normalise *tags* into a sorted list of unique labels.

    A string is split on commas and whitespace (``"a,b c"``); an iterable is
    taken element-wise.  Empty labels are dropped.  Labels are case-sensitive.
    """
    if tags is None:
        return []
    if isinstance(tags, str):
        parts = _TAG_SEPARATOR_RE.split(tags)
    else:
        parts = [str(t).strip() for t in tags]
    return sorted({p for p in parts if p})


def make_preview(text: str, length: int = PREVIEW_LENGTH) -> str:
    """Return the first *length* characters of *text*, with ``...`` if cut."""
    if len(text) <= length:
        return text
    return text[:length] + "..."


# ---------------------------------------------------------------------------
# ID generation
# ---------------------------------------------------------------------------


def generate_id() -> str:
    """Return a new unique document or chunk ID."""
    return str(uuid.uuid4())
