"""View model for the interactive marking screen."""
from __future__ import annotations

from typing import Any, Dict, Optional, Sequence

from .annotation_store import Annotation
from .diff_markup import parse_segments
from .span_matcher import matched_ids, segment_essay


def count_words(text: str) -> int:
    return len((text or '').split())


def build_screen_view(
    essay: str,
    annotations: Sequence[Annotation],
    selected_id: Optional[int] = None,
) -> Dict[str, Any]:
    """Essay segments with clickable highlights, plus the sidebar list.

    Annotations whose excerpt is not highlighted stay in the list with
    ``highlighted`` set to False so they can still be opened and edited.
    """
    segments = segment_essay(essay, annotations)
    highlighted = matched_ids(segments)

    return {
        'word_count': count_words(essay),
        'selected_id': selected_id,
        'segments': [
            {
                'text': segment.text,
                'start': segment.start,
                'end': segment.end,
                'annotation_id': segment.annotation.id if segment.annotation else None,
                'selected': segment.annotation is not None and segment.annotation.id == selected_id,
            }
            for segment in segments
        ],
        'annotations': [
            {
                **annotation.to_dict(),
                'initials': annotation.category.initials,
                'highlighted': annotation.id in highlighted,
                'suggestion_segments': [
                    [part.to_dict() for part in parse_segments(suggestion)]
                    for suggestion in annotation.suggestions
                ],
            }
            for annotation in annotations
        ],
    }
