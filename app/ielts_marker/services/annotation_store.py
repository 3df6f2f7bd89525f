"""In-memory annotation records and band bookkeeping for one marking session."""
from __future__ import annotations

import math
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Tuple

from .errors import BandValueError, UnknownCriterionError

MIN_BAND = 0.0
MAX_BAND = 9.0


class Category(str, Enum):
    TASK_RESPONSE = 'Task Response'
    COHERENCE_COHESION = 'Coherence and Cohesion'
    LEXICAL_RESOURCE = 'Lexical Resource'
    GRAMMAR = 'Grammatical Range and Accuracy'

    @property
    def initials(self) -> str:
        return _CATEGORY_INITIALS[self]


_CATEGORY_INITIALS = {
    Category.TASK_RESPONSE: 'TR',
    Category.COHERENCE_COHESION: 'CC',
    Category.LEXICAL_RESOURCE: 'LR',
    Category.GRAMMAR: 'GRA',
}


class Source(str, Enum):
    AI = 'AI'
    TEACHER = 'Teacher'


# Report key -> display title, in report order.
CRITERIA: Tuple[Tuple[str, str], ...] = (
    ('task_response', Category.TASK_RESPONSE.value),
    ('coherence_cohesion', Category.COHERENCE_COHESION.value),
    ('lexical_resource', Category.LEXICAL_RESOURCE.value),
    ('grammatical_range_accuracy', Category.GRAMMAR.value),
)
CRITERION_KEYS = tuple(key for key, _ in CRITERIA)


@dataclass(frozen=True)
class Annotation:
    id: int
    original_text: str
    category: Category
    issue: str
    description: str
    suggestions: Tuple[str, ...] = ()
    source: Source = Source.AI

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'original_text': self.original_text,
            'category': self.category.value,
            'issue': self.issue,
            'description': self.description,
            'suggestions': list(self.suggestions),
            'source': self.source.value,
        }


@dataclass(frozen=True)
class ScoredCriterion:
    band: float
    comment: str = ''
    details: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {'band': self.band, 'comment': self.comment, 'details': list(self.details)}


@dataclass(frozen=True)
class FeedbackReport:
    """Scores for the four criteria plus the annotation collection.

    ``overall_band`` is derived from the criteria and cannot be set directly.
    """
    task_response: ScoredCriterion
    coherence_cohesion: ScoredCriterion
    lexical_resource: ScoredCriterion
    grammatical_range_accuracy: ScoredCriterion
    annotations: Tuple[Annotation, ...] = field(default_factory=tuple)

    @property
    def overall_band(self) -> float:
        return overall_band([self.criterion(key).band for key in CRITERION_KEYS])

    def criterion(self, key: str) -> ScoredCriterion:
        if key not in CRITERION_KEYS:
            raise UnknownCriterionError(key)
        return getattr(self, key)

    def criteria(self) -> Tuple[Tuple[str, str, ScoredCriterion], ...]:
        return tuple((key, title, getattr(self, key)) for key, title in CRITERIA)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'overall_band': self.overall_band,
            'feedback': {key: getattr(self, key).to_dict() for key in CRITERION_KEYS},
            'improvements': [a.to_dict() for a in self.annotations],
        }


def round_to_half(value: float) -> float:
    """Round to the nearest 0.5, with exact quarters rounding up (6.25 -> 6.5)."""
    return math.floor(value * 2 + 0.5) / 2


def overall_band(bands: Sequence[float]) -> float:
    if not bands:
        return 0.0
    return round_to_half(sum(bands) / len(bands))


def normalize_band(value: Any) -> float:
    """Coerce a band to a float clamped to 0-9 on the 0.5 grid."""
    if isinstance(value, bool):
        raise BandValueError(f"Band must be a number, got {value!r}")
    try:
        band = float(value)
    except (TypeError, ValueError):
        raise BandValueError(f"Band must be a number, got {value!r}") from None
    if math.isnan(band) or math.isinf(band):
        raise BandValueError(f"Band must be a finite number, got {value!r}")
    return round_to_half(min(max(band, MIN_BAND), MAX_BAND))


class IdAllocator:
    """Hands out unique, increasing annotation ids seeded from the clock."""

    def __init__(self, clock=None):
        self._clock = clock or time.time
        self._last = 0

    def next_id(self) -> int:
        candidate = int(self._clock() * 1000)
        if candidate <= self._last:
            candidate = self._last + 1
        self._last = candidate
        return candidate

    def reserve(self, annotation_id: int) -> None:
        self._last = max(self._last, annotation_id)


class AnnotationStore:
    """Owns the authoritative report for a session.

    Every mutation swaps in a new frozen :class:`FeedbackReport`, so a report
    handed out earlier never changes underneath its reader.
    """

    def __init__(self, report: FeedbackReport, allocator: Optional[IdAllocator] = None):
        self._allocator = allocator or IdAllocator()
        for annotation in report.annotations:
            self._allocator.reserve(annotation.id)
        self._report = report

    @property
    def report(self) -> FeedbackReport:
        return self._report

    @property
    def annotations(self) -> Tuple[Annotation, ...]:
        return self._report.annotations

    def get(self, annotation_id: int) -> Optional[Annotation]:
        for annotation in self._report.annotations:
            if annotation.id == annotation_id:
                return annotation
        return None

    def add_teacher_annotation(
        self,
        excerpt: str,
        category: Category,
        issue: str,
        description: str,
        suggestion_text: str,
    ) -> Annotation:
        annotation = Annotation(
            id=self._allocator.next_id(),
            original_text=excerpt,
            category=Category(category),
            issue=issue,
            description=description,
            suggestions=(suggestion_text,),
            source=Source.TEACHER,
        )
        self._report = replace(self._report, annotations=self._report.annotations + (annotation,))
        return annotation

    def update_annotation(self, updated: Annotation) -> bool:
        """Replace the record with the same id in place. Unknown ids are ignored."""
        annotations = list(self._report.annotations)
        for index, existing in enumerate(annotations):
            if existing.id == updated.id:
                annotations[index] = updated
                self._report = replace(self._report, annotations=tuple(annotations))
                return True
        return False

    def set_criterion_band(self, criterion_key: str, new_band: Any) -> float:
        """Set one criterion's band and return the recomputed overall band."""
        criterion = self._report.criterion(criterion_key)
        band = normalize_band(new_band)
        self._report = replace(self._report, **{criterion_key: replace(criterion, band=band)})
        return self._report.overall_band
