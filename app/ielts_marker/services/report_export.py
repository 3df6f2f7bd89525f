"""
Feedback report exports: plain text, CSV, LMS copy summary and HTML.
Highlights in every format come from the shared span matcher.
"""
from __future__ import annotations

import csv
import io
import re
from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Optional

from flask import render_template
from markupsafe import Markup, escape

from .annotation_store import Annotation, FeedbackReport, Source
from .diff_markup import flatten, flatten_summary, render_html
from .span_matcher import Segment, segment_essay


@dataclass(frozen=True)
class ExportContext:
    """Everything an export needs about one marked answer."""
    student_name: str
    class_name: str
    teacher_name: str
    center_name: str
    question: str
    essay: str
    report: FeedbackReport

    @classmethod
    def from_session(cls, marking, user) -> 'ExportContext':
        return cls(
            student_name=marking.student_name,
            class_name=marking.class_name,
            teacher_name=user.name or '',
            center_name=user.center_name or '',
            question=marking.question,
            essay=marking.essay,
            report=marking.store.report,
        )

    @property
    def annotations(self):
        return self.report.annotations

    def segments(self) -> List[Segment]:
        return segment_essay(self.essay, self.report.annotations)

    def numbering(self) -> Dict[int, int]:
        """Annotation id -> 1-based position in the improvement list."""
        return {annotation.id: index for index, annotation in enumerate(self.annotations, start=1)}


def safe_filename(student_name: str) -> str:
    return re.sub(r'[^a-z0-9]', '_', student_name or '', flags=re.IGNORECASE).lower() or 'student'


def export_filename(ctx: ExportContext, fmt: str) -> str:
    if fmt == 'csv':
        return f"ielts_feedback_data_{safe_filename(ctx.student_name)}.csv"
    return f"ielts_feedback_report_{safe_filename(ctx.student_name)}.{fmt}"


def score_class(band: float) -> str:
    if band >= 7.5:
        return 'high'
    if band >= 6.0:
        return 'medium-high'
    if band >= 4.5:
        return 'medium-low'
    return 'low'


def source_tag(annotation: Annotation) -> str:
    return ' (Teacher)' if annotation.source == Source.TEACHER else ''


def span_offsets(segments: List[Segment]) -> Dict[int, List[str]]:
    offsets: Dict[int, List[str]] = {}
    for segment in segments:
        if segment.annotation is not None:
            offsets.setdefault(segment.annotation.id, []).append(f"{segment.start}-{segment.end}")
    return offsets


def annotated_essay_text(ctx: ExportContext) -> str:
    """Essay with each highlighted span written as ``[text]{n}``."""
    numbering = ctx.numbering()
    parts = []
    for segment in ctx.segments():
        if segment.annotation is None:
            parts.append(segment.text)
        else:
            parts.append(f"[{segment.text}]{{{numbering[segment.annotation.id]}}}")
    return ''.join(parts)


def render_text_report(ctx: ExportContext) -> str:
    report = ctx.report
    lines = ["IELTS WRITING FEEDBACK REPORT", "=============================", ""]
    if ctx.teacher_name:
        lines.append(f"Teacher: {ctx.teacher_name}")
    if ctx.center_name:
        lines.append(f"Center: {ctx.center_name}")
        lines.append("")
    lines.append("--- STUDENT INFORMATION ---")
    if ctx.student_name:
        lines.append(f"Student Name: {ctx.student_name}")
    if ctx.class_name:
        lines.append(f"Class: {ctx.class_name}")
    lines += [
        "",
        "-----------------------------",
        "QUESTION",
        "-----------------------------",
        ctx.question,
        "",
        "-----------------------------",
        "STUDENT'S ANSWER",
        "-----------------------------",
        annotated_essay_text(ctx),
        "",
        "=============================",
        "AI FEEDBACK & ANALYSIS",
        "=============================",
        "",
        f"Overall Band Score: {report.overall_band:.1f}",
        "",
        "--- DETAILED CRITERIA ANALYSIS ---",
        "",
    ]
    for _, title, criterion in report.criteria():
        lines.append(f"{title}: {criterion.band:.1f}")
        lines.append(f"Comment: {criterion.comment}")
        lines.append("Details:")
        lines += [f"  - {detail}" for detail in criterion.details]
        lines.append("")

    lines += ["--- ANNOTATED IMPROVEMENT SUGGESTIONS ---", ""]
    if not ctx.annotations:
        lines.append("No specific text improvement suggestions were proposed.")
    for index, annotation in enumerate(ctx.annotations, start=1):
        lines.append(f'{index}. Original Text: "{annotation.original_text}"')
        lines.append(f"   Issue: {annotation.issue} ({annotation.category.value}){source_tag(annotation)}")
        lines.append(f"   Description: {annotation.description}")
        lines.append("   Suggestions:")
        lines += [f"     - {flatten(suggestion)}" for suggestion in annotation.suggestions]
        lines.append("")
    return "\n".join(lines) + "\n"


def render_csv_report(ctx: ExportContext) -> str:
    report = ctx.report
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator='\n')

    writer.writerow(["Category", "Field", "Value"])
    writer.writerow(["Report Info", "Student Name", ctx.student_name])
    writer.writerow(["Report Info", "Class Name", ctx.class_name])
    writer.writerow(["Report Info", "Teacher Name", ctx.teacher_name])
    writer.writerow(["Report Info", "Center Name", ctx.center_name])
    writer.writerow([])
    writer.writerow(["Overall Score", "Band", f"{report.overall_band:.1f}"])
    writer.writerow([])

    writer.writerow(["Criterion", "Band", "Comment", "Details"])
    for _, title, criterion in report.criteria():
        writer.writerow([title, f"{criterion.band:.1f}", criterion.comment, "; ".join(criterion.details)])
    writer.writerow([])

    offsets = span_offsets(ctx.segments())
    writer.writerow(["ID", "Original Text", "Category", "Issue", "Description", "Suggestions", "Source",
                     "Highlighted Spans"])
    for annotation in ctx.annotations:
        writer.writerow([
            annotation.id,
            annotation.original_text,
            annotation.category.value,
            annotation.issue,
            annotation.description,
            "; ".join(flatten(s) for s in annotation.suggestions),
            annotation.source.value,
            "; ".join(offsets.get(annotation.id, [])),
        ])
    return buffer.getvalue()


def render_lms_summary(ctx: ExportContext, today: Optional[date] = None) -> str:
    """Plain-text summary meant to be pasted into an LMS comment box."""
    report = ctx.report
    today = today or date.today()
    short_titles = {
        'task_response': 'Task Response',
        'coherence_cohesion': 'Coherence & Cohesion',
        'lexical_resource': 'Lexical Resource',
        'grammatical_range_accuracy': 'Grammatical Range',
    }
    lines = [
        "✨ IELTS WRITING FEEDBACK SUMMARY ✨",
        "----------------------------------------",
        f"👤 Student: {ctx.student_name}",
        f"📚 Class: {ctx.class_name}",
        f"📅 Date: {today.isoformat()}",
        "",
        f"🏆 OVERALL BAND: {report.overall_band:.1f}",
        "----------------------------------------",
        "📊 CRITERIA BREAKDOWN:",
    ]
    for key, _, criterion in report.criteria():
        lines.append(f"• {short_titles[key]}: {criterion.band:.1f}")
        lines.append(f"  {criterion.comment}")
        lines.append("")

    if ctx.annotations:
        lines.append("📝 TOP IMPROVEMENT SUGGESTIONS:")
        for index, annotation in enumerate(ctx.annotations, start=1):
            suggestions = " OR ".join(flatten_summary(s) for s in annotation.suggestions)
            lines.append(f'{index}. "{annotation.original_text}"')
            lines.append(f"   👉 Issue: {annotation.issue} ({annotation.category.value})")
            lines.append(f"   💡 Suggestion: {suggestions}")
            lines.append("")
    else:
        lines.append("📝 No specific text corrections were noted.")
        lines.append("")

    lines.append(f"👨‍🏫 Teacher: {ctx.teacher_name} | {ctx.center_name}")
    lines.append("----------------------------------------")
    return "\n".join(lines)


def highlighted_essay_html(ctx: ExportContext) -> Markup:
    html = Markup('')
    for segment in ctx.segments():
        if segment.annotation is None:
            html += escape(segment.text)
        else:
            html += Markup('<span class="highlight unified-theme" data-annotation="%s">%s</span>') % (
                segment.annotation.id,
                segment.text,
            )
    return Markup(str(html).replace('\n', '<br />'))


def render_html_report(ctx: ExportContext) -> str:
    return render_template(
        'export/report.html',
        ctx=ctx,
        report=ctx.report,
        overall_class=score_class(ctx.report.overall_band),
        essay_html=highlighted_essay_html(ctx),
        render_suggestion=render_html,
        source_tag=source_tag,
    )
