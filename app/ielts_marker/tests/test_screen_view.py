from app.ielts_marker.services.annotation_store import Annotation, Category, Source
from app.ielts_marker.services.screen_view import build_screen_view, count_words


def test_screen_view_lists_unmatched_annotations():
    essay = "Many people thinks that cars is bad."
    matched = Annotation(1, "people thinks", Category.GRAMMAR, "Agreement", "", ("people ~~thinks~~ **think**",))
    unmatched = Annotation(2, "buses are", Category.LEXICAL_RESOURCE, "Word", "", (), Source.TEACHER)

    view = build_screen_view(essay, [matched, unmatched], selected_id=1)

    assert view["word_count"] == 7
    assert "".join(s["text"] for s in view["segments"]) == essay
    highlighted = [s for s in view["segments"] if s["annotation_id"] is not None]
    assert highlighted == [{"text": "people thinks", "start": 5, "end": 18, "annotation_id": 1, "selected": True}]

    first, second = view["annotations"]
    assert first["initials"] == "GRA"
    assert first["highlighted"] is True
    assert first["suggestion_segments"] == [[
        {"kind": "plain", "text": "people "},
        {"kind": "deleted", "text": "thinks"},
        {"kind": "plain", "text": " "},
        {"kind": "inserted", "text": "think"},
    ]]
    assert second["highlighted"] is False
    assert second["source"] == "Teacher"


def test_empty_excerpt_is_listed_without_highlight():
    essay = "Cars is bad."
    empty = Annotation(3, "", Category.TASK_RESPONSE, "Position", "Unclear.", ())

    view = build_screen_view(essay, [empty])

    assert view["segments"] == [{"text": essay, "start": 0, "end": len(essay), "annotation_id": None,
                                 "selected": False}]
    assert len(view["annotations"]) == 1
    assert view["annotations"][0]["id"] == 3
    assert view["annotations"][0]["highlighted"] is False


def test_count_words():
    assert count_words("  one two\nthree  ") == 3
    assert count_words("") == 0
