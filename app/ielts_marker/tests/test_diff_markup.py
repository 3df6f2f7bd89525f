from markupsafe import Markup

from app.ielts_marker.services.diff_markup import (
    DELETED,
    INSERTED,
    PLAIN,
    DiffSegment,
    flatten,
    flatten_summary,
    join_text,
    parse_segments,
    render_html,
)


def test_parse_replacement_keeps_order_and_whitespace():
    segments = parse_segments("There ~~is~~ **remains** a debate")
    assert segments == [
        DiffSegment(PLAIN, "There "),
        DiffSegment(DELETED, "is"),
        DiffSegment(PLAIN, " "),
        DiffSegment(INSERTED, "remains"),
        DiffSegment(PLAIN, " a debate"),
    ]


def test_parse_plain_text_is_single_segment():
    assert parse_segments("no markers here") == [DiffSegment(PLAIN, "no markers here")]
    assert parse_segments("") == []


def test_unterminated_marker_is_plain_text():
    assert parse_segments("a ~~b c") == [DiffSegment(PLAIN, "a ~~b c")]
    assert parse_segments("a **b** ~~c") == [
        DiffSegment(PLAIN, "a "),
        DiffSegment(INSERTED, "b"),
        DiffSegment(PLAIN, " ~~c"),
    ]


def test_markers_do_not_nest():
    segments = parse_segments("~~a **b~~ c**")
    assert [s.kind for s in segments] == [DELETED, PLAIN]
    assert segments[0].text == "a **b"
    assert segments[1].text == " c**"


def test_empty_marker_pair_is_dropped():
    assert parse_segments("a ~~~~ b") == [DiffSegment(PLAIN, "a  b")]


def test_flatten_keeps_deleted_and_inserted_text():
    assert flatten("she ~~go~~ **goes** to school") == "she go goes to school"
    assert flatten("students should **carefully** consider") == "students should carefully consider"
    assert flatten("") == ""


def test_flatten_repeats_until_no_pair_is_left():
    text = "~~**~~x**"
    assert flatten(text) == "x"
    assert flatten(join_text(parse_segments(text))) == flatten(text)


def test_flatten_drops_unmatched_markers():
    assert flatten("she ~~go **goes**") == "she go goes"
    assert flatten("a ~~b") == "a b"
    assert flatten("**a** ~~b~~ **") == "a b "
    assert flatten("a ~~~ b") == "a ~ b"


def test_flatten_round_trip_on_mixed_inputs():
    samples = [
        "~~People says that~~ **It is commonly argued that** x",
        "a ~~b",
        "**a** ~~b~~ **",
        "~~a **b~~ c**",
    ]
    for text in samples:
        assert flatten(join_text(parse_segments(text))) == flatten(text)


def test_flatten_summary_pairs_deletion_with_insertion():
    assert flatten_summary("There ~~is~~ **remains** a debate") == "There is => remains a debate"
    assert flatten_summary("she ~~go~~**goes**") == "she go => goes"


def test_flatten_summary_leaves_lone_markers_flat():
    assert flatten_summary("should **carefully** consider") == "should carefully consider"
    assert flatten_summary("~~very~~ big") == "very big"


def test_render_html_escapes_and_wraps_segments():
    html = render_html("<b> ~~x~~ **y & z**")
    assert isinstance(html, Markup)
    assert str(html) == "&lt;b&gt; <del>x</del> <strong>y &amp; z</strong>"
