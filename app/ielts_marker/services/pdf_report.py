"""PDF export of a marked answer, built with reportlab."""
from __future__ import annotations

import html
import io
from typing import List

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from .diff_markup import flatten
from .report_export import ExportContext, source_tag

HIGHLIGHT_COLOR = '#e0e7ff'
ACCENT_COLOR = '#6366f1'


def _escape(text: str) -> str:
    """Escape text for reportlab's paragraph mini-markup."""
    return html.escape(text or '', quote=False).replace('\n', '<br/>')


def highlighted_essay_markup(ctx: ExportContext) -> str:
    """Essay as paragraph markup with every matched span on a tinted background."""
    parts = []
    for segment in ctx.segments():
        if segment.annotation is None:
            parts.append(_escape(segment.text))
        else:
            parts.append(f'<font backColor="{HIGHLIGHT_COLOR}">{_escape(segment.text)}</font>')
    return ''.join(parts)


def _styles():
    styles = getSampleStyleSheet()
    return {
        'title': ParagraphStyle(
            'ReportTitle',
            parent=styles['Heading1'],
            fontSize=22,
            spaceAfter=18,
            textColor=colors.HexColor('#1e293b'),
        ),
        'heading': ParagraphStyle(
            'ReportHeading',
            parent=styles['Heading2'],
            fontSize=14,
            spaceBefore=12,
            spaceAfter=10,
            textColor=colors.HexColor('#1e293b'),
        ),
        'subheading': ParagraphStyle(
            'ReportSubHeading',
            parent=styles['Heading3'],
            fontSize=12,
            spaceAfter=6,
            textColor=colors.HexColor(ACCENT_COLOR),
        ),
        'body': ParagraphStyle(
            'ReportBody',
            parent=styles['Normal'],
            fontSize=11,
            spaceAfter=8,
            leading=16,
        ),
        'essay': ParagraphStyle(
            'ReportEssay',
            parent=styles['Normal'],
            fontSize=11,
            leading=18,
            backColor=colors.HexColor('#f8fafc'),
            borderPadding=8,
            spaceAfter=12,
        ),
    }


def render_pdf_report(ctx: ExportContext) -> bytes:
    report = ctx.report
    styles = _styles()
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=A4, rightMargin=60, leftMargin=60, topMargin=60, bottomMargin=60)

    story: List = []
    story.append(Paragraph("IELTS Writing Feedback Report", styles['title']))

    info = [
        ["Student", ctx.student_name, "Teacher", ctx.teacher_name],
        ["Class", ctx.class_name, "Center", ctx.center_name],
    ]
    info_table = Table(info, colWidths=[0.9 * inch, 2.1 * inch, 0.9 * inch, 2.1 * inch])
    info_table.setStyle(TableStyle([
        ('FONTNAME', (0, 0), (0, -1), 'Helvetica-Bold'),
        ('FONTNAME', (2, 0), (2, -1), 'Helvetica-Bold'),
        ('FONTSIZE', (0, 0), (-1, -1), 10),
        ('BOTTOMPADDING', (0, 0), (-1, -1), 6),
    ]))
    story.append(info_table)
    story.append(Spacer(1, 16))

    story.append(Paragraph(f"<b>Overall Band: {report.overall_band:.1f}</b>", styles['heading']))

    story.append(Paragraph("Detailed Criteria Analysis", styles['heading']))
    scores = [["Criterion", "Band"]] + [[title, f"{criterion.band:.1f}"] for _, title, criterion in report.criteria()]
    scores_table = Table(scores, colWidths=[4.5 * inch, 1.2 * inch])
    scores_table.setStyle(TableStyle([
        ('BACKGROUND', (0, 0), (-1, 0), colors.HexColor(ACCENT_COLOR)),
        ('TEXTCOLOR', (0, 0), (-1, 0), colors.white),
        ('BACKGROUND', (0, 1), (-1, -1), colors.HexColor('#f8fafc')),
        ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
        ('FONTSIZE', (0, 0), (-1, -1), 11),
        ('BOTTOMPADDING', (0, 0), (-1, -1), 8),
        ('TOPPADDING', (0, 0), (-1, -1), 8),
        ('GRID', (0, 0), (-1, -1), 1, colors.HexColor('#e2e8f0')),
    ]))
    story.append(scores_table)
    story.append(Spacer(1, 12))

    for _, title, criterion in report.criteria():
        story.append(Paragraph(f"{_escape(title)}: {criterion.band:.1f}", styles['subheading']))
        if criterion.comment:
            story.append(Paragraph(f"<i>{_escape(criterion.comment)}</i>", styles['body']))
        for detail in criterion.details:
            story.append(Paragraph(f"• {_escape(detail)}", styles['body']))

    story.append(Paragraph("Question", styles['heading']))
    story.append(Paragraph(_escape(ctx.question), styles['body']))

    story.append(Paragraph("Student's Answer with Annotations", styles['heading']))
    story.append(Paragraph(highlighted_essay_markup(ctx), styles['essay']))

    story.append(Paragraph("Annotated Improvement Suggestions", styles['heading']))
    if not ctx.annotations:
        story.append(Paragraph("No specific improvement suggestions were generated.", styles['body']))
    for index, annotation in enumerate(ctx.annotations, start=1):
        story.append(Paragraph(
            f'{index}. <b>Original Text:</b> <i>"{_escape(annotation.original_text)}"</i>',
            styles['body'],
        ))
        story.append(Paragraph(
            f"<b>Issue:</b> {_escape(annotation.issue)} ({annotation.category.value}){source_tag(annotation)}",
            styles['body'],
        ))
        story.append(Paragraph(f"<b>Description:</b> {_escape(annotation.description)}", styles['body']))
        for suggestion in annotation.suggestions:
            story.append(Paragraph(f"• {_escape(flatten(suggestion))}", styles['body']))
        story.append(Spacer(1, 6))

    doc.build(story)
    buffer.seek(0)
    return buffer.getvalue()
