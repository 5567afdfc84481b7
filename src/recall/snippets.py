"""Excerpts with highlight spans for search results.

All offsets are codepoint indices into Python strings, so a window can
never cut a UTF-8 sequence in half. The window is additionally kept off
combining marks, zero-width joiners and variation selectors so that an
accented letter or an emoji sequence is never split either.
"""

import unicodedata

from recall.models import Snippet

DEFAULT_MAX_CHARS = 200

ELLIPSIS = "…"

ZWJ = "\u200d"


def _is_joining(ch: str) -> bool:
    """True for codepoints that attach to the preceding character."""
    if ch == ZWJ or unicodedata.category(ch) in ("Mn", "Mc", "Me"):
        return True
    cp = ord(ch)
    return (
        0xFE00 <= cp <= 0xFE0F  # variation selectors
        or 0xE0100 <= cp <= 0xE01EF  # variation selectors supplement
        or 0x1F3FB <= cp <= 0x1F3FF  # emoji skin tone modifiers
    )


def _flatten(text: str) -> str:
    # One-for-one replacement keeps every offset valid
    return text.replace("\r", " ").replace("\n", " ").replace("\t", " ")


def _clean_spans(spans: list[tuple[int, int]], length: int) -> list[tuple[int, int]]:
    cleaned = []
    for start, end in spans:
        start, end = max(0, start), min(length, end)
        if start < end:
            cleaned.append((start, end))
    return sorted(cleaned)


def _snap_start(text: str, start: int) -> int:
    while start > 0 and (_is_joining(text[start]) or text[start - 1] == ZWJ):
        start -= 1
    return start


def _skip_joining(text: str, start: int) -> int:
    while 0 < start < len(text) and (_is_joining(text[start]) or text[start - 1] == ZWJ):
        start += 1
    return start


def _trim_end(text: str, start: int, end: int) -> int:
    while start < end < len(text) and (_is_joining(text[end]) or text[end - 1] == ZWJ):
        end -= 1
    return end


def _window(text: str, spans: list[tuple[int, int]], width: int) -> tuple[int, int]:
    """Choose [start, end) of at most width codepoints around the first span."""
    length = len(text)
    if spans:
        first_start, first_end = spans[0]
    else:
        first_start = first_end = 0

    center = (first_start + first_end) // 2
    start = max(0, center - width // 2)
    end = min(length, start + width)
    start = max(0, end - width)

    for s, e in spans:
        if s < start < e:
            start = s

    # Back up to the base character unless that pushes the match out;
    # a long run of marks is dropped from the front instead
    snapped = _snap_start(text, start)
    start = snapped if snapped + width >= first_end else _skip_joining(text, start)
    end = min(length, start + width)

    for s, e in spans:
        # A later span that would be cut is left out entirely
        if s < end < e and s >= first_end:
            end = s
            break

    return start, _trim_end(text, start, end)


def extract_snippet(
    text: str,
    spans: list[tuple[int, int]],
    max_chars: int = DEFAULT_MAX_CHARS,
) -> Snippet:
    """Cut a bounded excerpt of ``text`` centered on the first match.

    Args:
        text: Full message text.
        spans: Matched (start, end) codepoint ranges in ``text``.
        max_chars: Maximum excerpt length, ellipses included.

    Returns:
        The excerpt and the spans re-offset into it.
    """
    text = _flatten(text)
    spans = _clean_spans(spans, len(text))

    if len(text) <= max_chars:
        return Snippet(text=text, highlights=spans)

    start, end = _window(text, spans, max(1, max_chars - 2))
    lead = ELLIPSIS if start > 0 else ""
    tail = ELLIPSIS if end < len(text) else ""
    offset = len(lead) - start

    highlights = []
    for s, e in spans:
        s, e = max(s, start), min(e, end)
        if s < e:
            highlights.append((s + offset, e + offset))

    return Snippet(text=f"{lead}{text[start:end]}{tail}", highlights=highlights)
