import csv
import io
from dataclasses import replace
from datetime import date

import pytest

from app.ielts_marker.app import app as flask_app
from app.ielts_marker.services.annotation_store import (
    Annotation,
    Category,
    FeedbackReport,
    ScoredCriterion,
    Source,
)
from app.ielts_marker.services.pdf_report import highlighted_essay_markup, render_pdf_report
from app.ielts_marker.services.report_export import (
    ExportContext,
    annotated_essay_text,
    export_filename,
    highlighted_essay_html,
    render_csv_report,
    render_html_report,
    render_lms_summary,
    render_text_report,
    safe_filename,
    score_class,
)

ESSAY = (
    "People says that technology is very important for kids. "
    "People says that it helps.\nA <new> line."
)


@pytest.fixture(autouse=True)
def app_context():
    with flask_app.app_context():
        yield


def _ctx(student_name="Anna Lee"):
    annotations = (
        Annotation(
            id=11,
            original_text="People says that",
            category=Category.GRAMMAR,
            issue="Subject-verb agreement",
            description="Plural subject.",
            suggestions=("~~People says that~~ **It is commonly argued that**",),
        ),
        Annotation(
            id=12,
            original_text="very important",
            category=Category.LEXICAL_RESOURCE,
            issue="Word choice",
            description="Too simple.",
            suggestions=("~~very important~~ **crucial**",),
            source=Source.TEACHER,
        ),
        Annotation(
            id=13,
            original_text="not in the essay",
            category=Category.TASK_RESPONSE,
            issue="Relevance",
            description="Off topic.",
            suggestions=("**Stay on topic**",),
        ),
        Annotation(
            id=14,
            original_text="<new>",
            category=Category.COHERENCE_COHESION,
            issue="Markup",
            description="Angle brackets.",
            suggestions=("**fresh**",),
        ),
    )
    report = FeedbackReport(
        task_response=ScoredCriterion(6.0, "Addresses the task.", ("Clear position",)),
        coherence_cohesion=ScoredCriterion(6.5, "Logical.", ()),
        lexical_resource=ScoredCriterion(6.0, "Adequate range.", ()),
        grammatical_range_accuracy=ScoredCriterion(6.5, "Some errors.", ()),
        annotations=annotations,
    )
    return ExportContext(
        student_name=student_name,
        class_name="IELTS 6.5",
        teacher_name="Ms Linh",
        center_name="GIGI NDC",
        question="Is technology good for children?",
        essay=ESSAY,
        report=report,
    )


def test_filenames():
    assert safe_filename("Anna-Marie O'Neil") == "anna_marie_o_neil"
    assert safe_filename("") == "student"
    ctx = _ctx("Anna-Marie O'Neil")
    assert export_filename(ctx, "csv") == "ielts_feedback_data_anna_marie_o_neil.csv"
    assert export_filename(ctx, "pdf") == "ielts_feedback_report_anna_marie_o_neil.pdf"


@pytest.mark.parametrize("band, expected", [
    (7.5, "high"),
    (7.0, "medium-high"),
    (6.0, "medium-high"),
    (4.5, "medium-low"),
    (4.0, "low"),
])
def test_score_class(band, expected):
    assert score_class(band) == expected


def test_text_report_numbers_highlighted_spans():
    ctx = _ctx()
    essay_text = annotated_essay_text(ctx)
    assert essay_text == (
        "[People says that]{1} technology is [very important]{2} for kids. "
        "[People says that]{1} it helps.\nA [<new>]{4} line."
    )

    report = render_text_report(ctx)
    assert "Overall Band Score: 6.5" in report
    assert "Issue: Word choice (Lexical Resource) (Teacher)" in report
    assert "     - People says that It is commonly argued that" in report
    assert "Teacher: Ms Linh" in report


def test_csv_lists_span_offsets():
    rows = list(csv.reader(io.StringIO(render_csv_report(_ctx()))))
    by_id = {row[0]: row for row in rows if row and row[0] in {"11", "12", "13", "14"}}

    first = ESSAY.index("People says that")
    second = ESSAY.index("People says that", first + 1)
    assert by_id["11"][7] == f"{first}-{first + 16}; {second}-{second + 16}"
    start = ESSAY.index("very important")
    assert by_id["12"][7] == f"{start}-{start + 14}"
    assert by_id["12"][6] == "Teacher"
    assert by_id["13"][7] == ""
    assert ["Overall Score", "Band", "6.5"] in rows


def test_flat_exports_drop_unmatched_markers():
    ctx = _ctx()
    stray = replace(ctx.report.annotations[1], suggestions=("she ~~go **goes**",))
    ctx = replace(ctx, report=replace(ctx.report, annotations=(stray,)))

    report = render_text_report(ctx)
    assert "     - she go goes" in report
    rows = list(csv.reader(io.StringIO(render_csv_report(ctx))))
    row = next(row for row in rows if row and row[0] == "12")
    assert row[5] == "she go goes"
    for output in (report, render_csv_report(ctx)):
        assert "~~" not in output
        assert "**" not in output


def test_html_report_escapes_and_highlights():
    ctx = _ctx("<Tom>")
    essay_html = str(highlighted_essay_html(ctx))
    assert essay_html.count('data-annotation="11"') == 2
    assert 'data-annotation="13"' not in essay_html
    assert '<span class="highlight unified-theme" data-annotation="14">&lt;new&gt;</span>' in essay_html
    assert "<br />" in essay_html

    html = render_html_report(ctx)
    assert "&lt;Tom&gt;" in html
    assert "<Tom>" not in html
    assert "<del>very important</del> <strong>crucial</strong>" in html
    assert "(Lexical Resource) (Teacher)" in html
    assert 'score-gauge medium-high' in html


def test_pdf_highlights_match_other_formats():
    ctx = _ctx()
    markup = highlighted_essay_markup(ctx)
    assert markup.count('<font backColor="#e0e7ff">') == 4
    assert '<font backColor="#e0e7ff">&lt;new&gt;</font>' in markup
    assert "<br/>" in markup

    pdf = render_pdf_report(ctx)
    assert pdf.startswith(b"%PDF")


def test_all_formats_agree_on_highlights():
    ctx = _ctx()
    highlighted = [s for s in ctx.segments() if s.is_highlight]

    text = annotated_essay_text(ctx)
    html = str(highlighted_essay_html(ctx))
    markup = highlighted_essay_markup(ctx)
    csv_text = render_csv_report(ctx)

    assert text.count("]{") == len(highlighted)
    assert html.count('class="highlight') == len(highlighted)
    assert markup.count("<font backColor") == len(highlighted)
    offsets = [f"{s.start}-{s.end}" for s in highlighted]
    for offset in offsets:
        assert offset in csv_text


def test_lms_summary():
    summary = render_lms_summary(_ctx(), today=date(2024, 5, 1))
    assert "📅 Date: 2024-05-01" in summary
    assert "🏆 OVERALL BAND: 6.5" in summary
    assert "• Grammatical Range: 6.5" in summary
    assert "💡 Suggestion: very important => crucial" in summary
    assert "💡 Suggestion: People says that => It is commonly argued that" in summary
    assert summary.rstrip().endswith("----------------------------------------")
    assert "Teacher: Ms Linh | GIGI NDC" in summary
