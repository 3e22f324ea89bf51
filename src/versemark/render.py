from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator

from bs4 import BeautifulSoup

from .models import SELF, Highlight, Owner

__all__ = [
    "PLACEHOLDER_TEXT",
    "RenderSegment",
    "RenderPlan",
    "build_render_plan",
    "highlight_sort_key",
    "sort_highlights",
    "visible_highlights",
    "render_html",
]

PLACEHOLDER_TEXT = "[verse text unavailable]"


@dataclass(frozen=True, slots=True)
class RenderSegment:
    """
    One run of a verse's text, either plain (``color is None``) or highlighted.

    ``start``/``end`` are offsets into the verse's plain text; the placeholder
    segment emitted for malformed text spans ``0..0``.
    """

    text: str
    color: str | None = None
    start: int = 0
    end: int = 0
    highlight_id: object = None
    owner: Owner | None = None

    @property
    def is_highlight(self) -> bool:
        return self.color is not None


def _id_sort_key(value: object) -> tuple[int, object]:
    if isinstance(value, bool) or value is None:
        return (2, "")
    if isinstance(value, int):
        return (0, value)
    return (1, str(value))


def highlight_sort_key(highlight: Highlight) -> tuple[int, int, tuple[int, object]]:
    return (highlight.start_offset, highlight.end_offset, _id_sort_key(highlight.id))


def sort_highlights(highlights: Iterable[Highlight]) -> list[Highlight]:
    return sorted(highlights, key=highlight_sort_key)


def visible_highlights(highlights: Iterable[Highlight], *, include_friends: bool = True) -> list[Highlight]:
    if include_friends:
        return list(highlights)
    return [item for item in highlights if item.owner.is_self]


class RenderPlan:
    """
    Lazy, restartable render plan for a single verse.

    Iterating walks the sorted highlights from scratch every time. Overlaps
    are clipped against the furthest offset already emitted, so a later
    highlight never repaints characters claimed by an earlier one.
    """

    def __init__(self, plain_text: object, highlights: Iterable[Highlight] = ()) -> None:
        self.plain_text = plain_text
        self.highlights = sort_highlights(
            item for item in highlights if isinstance(item, Highlight)
        )

    @property
    def is_placeholder(self) -> bool:
        return not isinstance(self.plain_text, str) or not self.plain_text

    def __iter__(self) -> Iterator[RenderSegment]:
        if self.is_placeholder:
            yield RenderSegment(text=PLACEHOLDER_TEXT)
            return
        text: str = self.plain_text  # type: ignore[assignment]
        length = len(text)
        if not self.highlights:
            yield RenderSegment(text=text, start=0, end=length)
            return
        last_index = 0
        for highlight in self.highlights:
            start = min(max(highlight.start_offset, 0), length)
            end = min(max(highlight.end_offset, 0), length)
            if start < last_index:
                start = last_index
            if end <= start:
                continue
            if start > last_index:
                yield RenderSegment(text=text[last_index:start], start=last_index, end=start)
            yield RenderSegment(
                text=text[start:end],
                color=highlight.color,
                start=start,
                end=end,
                highlight_id=highlight.id,
                owner=highlight.owner,
            )
            last_index = end
        if last_index < length:
            yield RenderSegment(text=text[last_index:], start=last_index, end=length)

    def segments(self) -> list[RenderSegment]:
        return list(self)

    def text(self) -> str:
        return "".join(segment.text for segment in self)


def build_render_plan(plain_text: object, highlights: Iterable[Highlight] | None = None) -> RenderPlan:
    return RenderPlan(plain_text, highlights or ())


def render_html(plan: Iterable[RenderSegment], *, css_class: str = "verse-text") -> str:
    """
    Render a plan as ``<span class="verse-text">`` with a ``<mark>`` per
    highlighted run. Text is escaped by BeautifulSoup.
    """
    soup = BeautifulSoup("", "html.parser")
    container = soup.new_tag("span", attrs={"class": css_class})
    soup.append(container)
    for index, segment in enumerate(plan):
        if segment.color is None:
            container.append(soup.new_string(segment.text))
            continue
        attrs = {
            "data-segment": str(index),
            "data-start": str(segment.start),
            "style": f"background-color: {segment.color}",
        }
        if segment.highlight_id is not None:
            attrs["data-highlight-id"] = str(segment.highlight_id)
        owner = segment.owner or SELF
        if not owner.is_self:
            attrs["class"] = "friend-highlight"
            if owner.username:
                attrs["title"] = owner.username
        mark = soup.new_tag("mark", attrs=attrs)
        mark.string = segment.text
        container.append(mark)
    return str(soup)
