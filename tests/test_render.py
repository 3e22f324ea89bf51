from __future__ import annotations

import pytest

from versemark.models import Highlight, Owner
from versemark.offsets import Boundary, SelectionRange, SoupTextMeasurer, parse_rendered_verse, resolve_offsets
from versemark.render import (
    PLACEHOLDER_TEXT,
    build_render_plan,
    render_html,
    sort_highlights,
    visible_highlights,
)

JOHN_3_16 = (
    "For God so loved the world, that he gave his only begotten Son, "
    "that whosoever believeth in him should not perish, but have everlasting life."
)


def _hl(start: int, end: int, color: str = "#FFFF00", *, id: object = None, owner: Owner | None = None) -> Highlight:
    return Highlight(
        book="John",
        chapter=3,
        verse=16,
        start_offset=start,
        end_offset=end,
        color=color,
        owner=owner or Owner(),
        id=id,
    )


def test_no_highlights_yields_single_plain_segment() -> None:
    segments = build_render_plan(JOHN_3_16, []).segments()
    assert len(segments) == 1
    assert segments[0].text == JOHN_3_16
    assert segments[0].color is None
    assert (segments[0].start, segments[0].end) == (0, len(JOHN_3_16))


@pytest.mark.parametrize(
    "spans",
    [
        [(0, 3)],
        [(4, 7), (11, 16)],
        [(0, 3), (3, 7), (7, 10)],
        [(50, 63), (0, 3), (21, 27)],
        [(len(JOHN_3_16) - 5, len(JOHN_3_16))],
    ],
)
def test_plan_concatenation_reproduces_text(spans: list[tuple[int, int]]) -> None:
    highlights = [_hl(start, end, id=index) for index, (start, end) in enumerate(spans)]
    plan = build_render_plan(JOHN_3_16, highlights)
    assert "".join(segment.text for segment in plan) == JOHN_3_16
    colored = [(segment.start, segment.end) for segment in plan if segment.color]
    assert colored == sorted(spans)


def test_plan_sorts_unordered_highlights() -> None:
    plan = build_render_plan(JOHN_3_16, [_hl(11, 16, "#00FF00"), _hl(0, 3, "#FF0000")])
    segments = plan.segments()
    assert [segment.text for segment in segments[:4]] == ["For", " God so ", "loved", JOHN_3_16[16:]]
    assert [segment.color for segment in segments] == ["#FF0000", None, "#00FF00", None]


def test_overlapping_highlight_is_clipped_to_unclaimed_offsets() -> None:
    plan = build_render_plan(JOHN_3_16, [_hl(0, 7, "red", id=1), _hl(4, 10, "blue", id=2)])
    colored = [(segment.start, segment.end, segment.color) for segment in plan if segment.color]
    assert colored == [(0, 7, "red"), (7, 10, "blue")]
    assert plan.text() == JOHN_3_16


def test_highlight_covered_by_earlier_one_emits_nothing() -> None:
    plan = build_render_plan(JOHN_3_16, [_hl(0, 16, "red", id=1), _hl(4, 7, "blue", id=2)])
    colors = [segment.color for segment in plan if segment.color]
    assert colors == ["red"]
    assert plan.text() == JOHN_3_16


def test_ties_break_on_end_then_id() -> None:
    ordered = sort_highlights([_hl(4, 10, id=3), _hl(4, 7, id=9), _hl(4, 7, id=2)])
    assert [(item.end_offset, item.id) for item in ordered] == [(7, 2), (7, 9), (10, 3)]
    plan = build_render_plan(JOHN_3_16, ordered)
    ids = [segment.highlight_id for segment in plan if segment.color]
    # id 9 is fully covered by id 2; id 3 keeps only the unclaimed tail.
    assert ids == [2, 3]


def test_offsets_are_clamped_to_text_length() -> None:
    plan = build_render_plan("In the beginning", [_hl(7, 400, "gold")])
    segments = plan.segments()
    assert segments[-1].text == "beginning"
    assert segments[-1].end == len("In the beginning")


@pytest.mark.parametrize("bad_text", [None, "", 42, ["In", "the"]])
def test_malformed_text_degrades_to_placeholder(bad_text: object) -> None:
    segments = build_render_plan(bad_text, [_hl(0, 3)]).segments()
    assert len(segments) == 1
    assert segments[0].text == PLACEHOLDER_TEXT
    assert segments[0].color is None


def test_plan_is_restartable() -> None:
    plan = build_render_plan(JOHN_3_16, [_hl(0, 3), _hl(11, 16)])
    first = list(plan)
    second = list(plan)
    assert first == second
    assert len(first) == 4


def test_visible_highlights_hides_friends_when_requested() -> None:
    mine = _hl(0, 3, id=1)
    theirs = _hl(4, 7, id=2, owner=Owner(is_self=False, username="ruth"))
    assert visible_highlights([mine, theirs], include_friends=False) == [mine]
    assert visible_highlights([mine, theirs], include_friends=True) == [mine, theirs]


def test_render_html_round_trips_through_soup_measurer() -> None:
    plan = build_render_plan(JOHN_3_16, [_hl(0, 3, "#FFFF00", id=7), _hl(11, 16, "#00FFFF", id=8)])
    markup = render_html(plan)
    root = parse_rendered_verse(markup)
    marks = root.find_all("mark")
    assert [mark.get("data-highlight-id") for mark in marks] == ["7", "8"]
    assert root.get_text() == JOHN_3_16

    # Select "so loved" across the plain gap and the second mark.
    gap = marks[0].next_sibling
    selection = SelectionRange(
        start=Boundary(gap, len(" God ")),
        end=Boundary(marks[1].string, len("loved")),
    )
    offsets = resolve_offsets(JOHN_3_16, root, selection, SoupTextMeasurer())
    assert JOHN_3_16[offsets.start:offsets.end] == "so loved"


def test_render_html_escapes_markup_in_text() -> None:
    markup = render_html(build_render_plan("a < b & c", []))
    assert "&lt;" in markup
    assert parse_rendered_verse(markup).get_text() == "a < b & c"


def test_render_html_marks_friend_highlights() -> None:
    plan = build_render_plan(JOHN_3_16, [_hl(0, 3, owner=Owner(is_self=False, username="ruth"))])
    root = parse_rendered_verse(render_html(plan))
    mark = root.find("mark")
    assert mark is not None
    assert mark.get("class") == ["friend-highlight"]
    assert mark.get("title") == "ruth"
