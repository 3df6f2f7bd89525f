"""Inline diff markup used inside suggestion strings.

Suggestions mark removed text as ``~~old~~`` and added text as ``**new**``.
Markers do not nest. When parsing, an opening marker without a matching close is
treated, together with everything after it, as plain text.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List

from markupsafe import Markup, escape

PLAIN = 'plain'
DELETED = 'deleted'
INSERTED = 'inserted'

_MARKERS = {'~~': DELETED, '**': INSERTED}


@dataclass(frozen=True)
class DiffSegment:
    kind: str
    text: str

    def to_dict(self):
        return {'kind': self.kind, 'text': self.text}


def _next_marker(text: str, start: int):
    """Return (position, marker) of the earliest marker at or after start."""
    best_pos, best_marker = -1, None
    for marker in _MARKERS:
        pos = text.find(marker, start)
        if pos != -1 and (best_pos == -1 or pos < best_pos):
            best_pos, best_marker = pos, marker
    return best_pos, best_marker


def parse_segments(text: str) -> List[DiffSegment]:
    """Split a suggestion into plain, deleted and inserted segments, in order."""
    segments: List[DiffSegment] = []
    if not text:
        return segments

    cursor = 0
    while cursor < len(text):
        pos, marker = _next_marker(text, cursor)
        if marker is None:
            segments.append(DiffSegment(PLAIN, text[cursor:]))
            break
        close = text.find(marker, pos + len(marker))
        if close == -1:
            # Unterminated marker: keep the remainder verbatim.
            segments.append(DiffSegment(PLAIN, text[cursor:]))
            break
        if pos > cursor:
            segments.append(DiffSegment(PLAIN, text[cursor:pos]))
        inner = text[pos + len(marker):close]
        if inner:
            segments.append(DiffSegment(_MARKERS[marker], inner))
        cursor = close + len(marker)

    return _merge_plain(segments)


def _merge_plain(segments: List[DiffSegment]) -> List[DiffSegment]:
    merged: List[DiffSegment] = []
    for segment in segments:
        if merged and segment.kind == PLAIN and merged[-1].kind == PLAIN:
            merged[-1] = DiffSegment(PLAIN, merged[-1].text + segment.text)
        else:
            merged.append(segment)
    return merged


def join_text(segments: Iterable[DiffSegment]) -> str:
    return ''.join(segment.text for segment in segments)


def flatten(text: str) -> str:
    """Strip diff markers, keeping both deleted and inserted text.

    Marker pairs are stripped until none is left. Any lone ``~~`` or ``**``
    that remains is then removed as well, so flat output never shows markup.
    ``flatten(join_text(parse_segments(s))) == flatten(s)`` always holds.
    """
    current = text or ''
    while True:
        stripped = join_text(parse_segments(current))
        if stripped == current:
            stripped = current.replace('~~', '').replace('**', '')
            if stripped == current:
                return current
        current = stripped


def flatten_summary(text: str) -> str:
    """Flatten for the copy-summary view: a deletion directly followed by an
    insertion (whitespace allowed between them) becomes ``old => new``."""
    segments = parse_segments(text or '')
    parts: List[str] = []
    i = 0
    while i < len(segments):
        segment = segments[i]
        if segment.kind == DELETED:
            follower = i + 1
            if (
                follower < len(segments)
                and segments[follower].kind == PLAIN
                and not segments[follower].text.strip()
                and follower + 1 < len(segments)
                and segments[follower + 1].kind == INSERTED
            ):
                follower += 1
            if follower < len(segments) and segments[follower].kind == INSERTED:
                parts.append(f"{segment.text} => {segments[follower].text}")
                i = follower + 1
                continue
        parts.append(segment.text)
        i += 1
    return flatten(''.join(parts))


def render_html(text: str) -> Markup:
    """Render a suggestion as escaped HTML with <del>/<strong> for the diff."""
    html = Markup('')
    for segment in parse_segments(text or ''):
        if segment.kind == DELETED:
            html += Markup('<del>%s</del>') % segment.text
        elif segment.kind == INSERTED:
            html += Markup('<strong>%s</strong>') % segment.text
        else:
            html += escape(segment.text)
    return html
