"""
Validation of inference output at the ingestion boundary.
Turns the loosely typed JSON returned by Gemini into a FeedbackReport.
"""
from __future__ import annotations

import json
import math
import re
from typing import Any, Dict, List, Optional, Tuple

from flask import current_app

from .annotation_store import (
    Annotation,
    Category,
    FeedbackReport,
    IdAllocator,
    ScoredCriterion,
    Source,
    normalize_band,
)
from .errors import BandValueError, FeedbackFormatError

# Wire key (as requested in the response schema) -> report attribute.
CRITERION_WIRE_KEYS = {
    'taskResponse': 'task_response',
    'coherenceCohesion': 'coherence_cohesion',
    'lexicalResource': 'lexical_resource',
    'grammaticalRangeAccuracy': 'grammatical_range_accuracy',
}

_CATEGORY_ALIASES = {
    'task response': Category.TASK_RESPONSE,
    'task achievement': Category.TASK_RESPONSE,
    'đáp ứng yêu cầu đề bài': Category.TASK_RESPONSE,
    'coherence and cohesion': Category.COHERENCE_COHESION,
    'coherence & cohesion': Category.COHERENCE_COHESION,
    'coherence': Category.COHERENCE_COHESION,
    'cohesion': Category.COHERENCE_COHESION,
    'tính mạch lạc và liên kết': Category.COHERENCE_COHESION,
    'lexical resource': Category.LEXICAL_RESOURCE,
    'vocabulary': Category.LEXICAL_RESOURCE,
    'vốn từ vựng': Category.LEXICAL_RESOURCE,
    'grammatical range and accuracy': Category.GRAMMAR,
    'grammatical range & accuracy': Category.GRAMMAR,
    'grammatical range': Category.GRAMMAR,
    'grammar': Category.GRAMMAR,
    'độ đa dạng và chính xác của ngữ pháp': Category.GRAMMAR,
}


def parse_category(value: Any) -> Optional[Category]:
    """Map a category label (or common alias) onto the fixed enumeration."""
    if isinstance(value, Category):
        return value
    if not isinstance(value, str):
        return None
    key = re.sub(r'\s+', ' ', value).strip().lower()
    return _CATEGORY_ALIASES.get(key)


def parse_feedback(raw: Any, allocator: IdAllocator) -> FeedbackReport:
    """Validate a raw feedback payload and build the session's initial report.

    Report-level shape problems raise FeedbackFormatError. Individual
    improvement entries that cannot be used are dropped with a warning.
    """
    raw = _parse_json_like(raw)
    if not isinstance(raw, dict):
        raise FeedbackFormatError(f"Feedback payload must be an object, got {type(raw).__name__}")

    feedback = _parse_json_like(raw.get('feedback'))
    if not isinstance(feedback, dict):
        raise FeedbackFormatError("Feedback payload is missing the 'feedback' criteria object")

    criteria: Dict[str, ScoredCriterion] = {}
    for wire_key, attr in CRITERION_WIRE_KEYS.items():
        criteria[attr] = _parse_criterion(wire_key, _pick_field(feedback, (wire_key, attr)))

    improvements = _parse_json_like(raw.get('improvements'))
    if not isinstance(improvements, list):
        raise FeedbackFormatError("Feedback payload is missing the 'improvements' list")

    annotations = _parse_improvements(improvements, allocator)
    report = FeedbackReport(annotations=tuple(annotations), **criteria)

    claimed = raw.get('overallBand')
    if claimed is not None:
        try:
            if normalize_band(claimed) != report.overall_band:
                current_app.logger.warning(
                    "Model overallBand %s differs from derived band %s; using derived value",
                    claimed,
                    report.overall_band,
                )
        except BandValueError:
            current_app.logger.warning("Ignoring non-numeric overallBand from model: %r", claimed)
    return report


def _parse_criterion(wire_key: str, value: Any) -> ScoredCriterion:
    value = _parse_json_like(value)
    if not isinstance(value, dict):
        raise FeedbackFormatError(f"Criterion '{wire_key}' is missing or not an object")
    if value.get('band') is None:
        raise FeedbackFormatError(f"Criterion '{wire_key}' has no band")
    try:
        band = normalize_band(value.get('band'))
    except BandValueError as exc:
        raise FeedbackFormatError(f"Criterion '{wire_key}': {exc}") from exc
    return ScoredCriterion(
        band=band,
        comment=_normalize_text_field(value.get('comment')) or '',
        details=tuple(_normalize_list_field(value.get('details'))),
    )


def _parse_improvements(items: List[Any], allocator: IdAllocator) -> List[Annotation]:
    annotations: List[Annotation] = []
    seen_ids = set()
    for position, raw in enumerate(items):
        if not isinstance(raw, dict):
            current_app.logger.warning("Discarding improvement #%s: not an object", position + 1)
            continue

        original_text = _pick_field(raw, ('originalText', 'original_text', 'text'))
        if original_text is not None and not isinstance(original_text, str):
            original_text = _normalize_text_field(original_text)
        category = parse_category(raw.get('category'))
        if category is None:
            current_app.logger.warning(
                "Discarding improvement #%s: unknown category %r", position + 1, raw.get('category')
            )
            continue

        annotation_id = _safe_int(raw.get('id'))
        if annotation_id is None or annotation_id in seen_ids:
            annotation_id = allocator.next_id()
        else:
            allocator.reserve(annotation_id)
        seen_ids.add(annotation_id)

        annotations.append(Annotation(
            id=annotation_id,
            # Matching is literal, so the excerpt is kept exactly as quoted.
            original_text=original_text or '',
            category=category,
            issue=_normalize_text_field(raw.get('issue')) or '',
            description=_normalize_text_field(raw.get('description')) or '',
            suggestions=tuple(_normalize_list_field(raw.get('suggestions'), split_strings=False)),
            source=Source.AI,
        ))
    return annotations


def _pick_field(data: Dict[str, Any], candidate_keys: Tuple[str, ...]) -> Any:
    """Pick the first non-empty field from a list of candidate keys."""
    for key in candidate_keys:
        value = data.get(key)
        if value not in (None, '', [], {}):
            return value
    return None


def _safe_int(value: Any) -> Optional[int]:
    """Safely coerce a value to int, returning None on failure."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if not (math.isnan(value) or math.isinf(value)) and value.is_integer() else None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _parse_json_like(value: Any) -> Any:
    """Attempt to interpret stringified JSON structures."""
    if isinstance(value, str):
        candidate = value.strip()
        if not candidate:
            return None
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            return candidate
    return value


def _normalize_text_field(value: Any) -> Optional[str]:
    """Normalize free-text fields into concise strings."""
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        return text or None
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, list):
        joined = "; ".join(filter(None, (_normalize_text_field(item) for item in value)))
        return joined or None
    if isinstance(value, dict):
        for key in ('text', 'summary', 'value', 'message', 'content'):
            if key in value:
                candidate = _normalize_text_field(value[key])
                if candidate:
                    return candidate
        return None
    return str(value)


def _normalize_list_field(value: Any, split_strings: bool = True) -> List[str]:
    """Normalize list-like fields into a list of non-empty strings."""
    if isinstance(value, list):
        iterable = value
    elif isinstance(value, str):
        if split_strings:
            parsed = _parse_json_like(value)
            if isinstance(parsed, list):
                iterable = parsed
            else:
                iterable = [seg for seg in re.split(r'\n+', value) if seg.strip()]
        else:
            iterable = [value]
    elif value is None:
        iterable = []
    else:
        iterable = [value]

    items: List[str] = []
    for entry in iterable:
        text = _normalize_text_field(entry)
        if text:
            items.append(text)
    return items
