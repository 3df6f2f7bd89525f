"""Locate annotation excerpts in an essay and lay out the highlight spans.

Every output medium (screen view, HTML, PDF, text and CSV exports) builds its
highlights from :func:`segment_essay`, so they always agree on what is marked.
"""
from __future__ import annotations

from bisect import bisect_left
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .annotation_store import Annotation


@dataclass(frozen=True)
class Match:
    start: int
    end: int
    annotation: Annotation


@dataclass(frozen=True)
class Segment:
    """A run of essay text, either untouched or owned by one annotation."""
    text: str
    start: int
    end: int
    annotation: Optional[Annotation] = None

    @property
    def is_highlight(self) -> bool:
        return self.annotation is not None


def find_matches(essay: str, annotations: Sequence[Annotation]) -> List[Match]:
    """Return accepted, non-overlapping matches ordered by start offset.

    Longer excerpts claim text first; among equal lengths the annotation that
    comes first in ``annotations`` wins. Excerpts that do not occur are skipped.
    """
    if not essay:
        return []

    candidates = [a for a in annotations if a.original_text]
    # sorted() is stable, which gives the first-registered tie-break.
    candidates = sorted(candidates, key=lambda a: len(a.original_text), reverse=True)

    starts: List[int] = []
    accepted: List[Match] = []
    for annotation in candidates:
        needle = annotation.original_text
        index = essay.find(needle)
        while index != -1:
            end = index + len(needle)
            pos = bisect_left(starts, index)
            clashes_before = pos > 0 and accepted[pos - 1].end > index
            clashes_after = pos < len(accepted) and accepted[pos].start < end
            if not (clashes_before or clashes_after):
                starts.insert(pos, index)
                accepted.insert(pos, Match(index, end, annotation))
            index = essay.find(needle, index + 1)

    return accepted


def segment_essay(essay: str, annotations: Sequence[Annotation]) -> List[Segment]:
    """Cover the whole essay with plain and highlighted segments, left to right."""
    segments: List[Segment] = []
    cursor = 0
    for match in find_matches(essay, annotations):
        if match.start > cursor:
            segments.append(Segment(essay[cursor:match.start], cursor, match.start))
        segments.append(Segment(essay[match.start:match.end], match.start, match.end, match.annotation))
        cursor = match.end
    if cursor < len(essay or ''):
        segments.append(Segment(essay[cursor:], cursor, len(essay)))
    return segments


def matched_ids(segments: Sequence[Segment]) -> set[int]:
    return {s.annotation.id for s in segments if s.annotation is not None}
