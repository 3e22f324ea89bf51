from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Sequence

from bs4 import BeautifulSoup, NavigableString, Tag

__all__ = [
    "Boundary",
    "SelectionRange",
    "TextOffsets",
    "TextMeasurer",
    "SoupTextMeasurer",
    "SegmentTextMeasurer",
    "OffsetResolutionError",
    "EmptySelection",
    "InvalidRange",
    "DetachedContainer",
    "resolve_offsets",
    "check_root_text",
    "parse_rendered_verse",
]


class OffsetResolutionError(ValueError):
    """Base class for selections that cannot be turned into verse offsets."""

    code = "offset_error"


class EmptySelection(OffsetResolutionError):
    """Raised when the selection is collapsed."""

    code = "empty_selection"


class InvalidRange(OffsetResolutionError):
    """Raised when the measured range is empty, reversed or past the verse end."""

    code = "invalid_range"


class DetachedContainer(OffsetResolutionError):
    """Raised when the measurement root is missing or a boundary lies outside it."""

    code = "detached_container"


@dataclass(frozen=True, slots=True)
class Boundary:
    """
    A selection endpoint with DOM range semantics.

    When ``node`` is a text node, ``offset`` counts characters inside it; when
    it is an element (or the root itself), ``offset`` counts child nodes.
    """

    node: object
    offset: int


@dataclass(frozen=True, slots=True)
class SelectionRange:
    start: Boundary
    end: Boundary

    @property
    def collapsed(self) -> bool:
        return self.start.node is self.end.node and self.start.offset == self.end.offset


@dataclass(frozen=True, slots=True)
class TextOffsets:
    start: int
    end: int


class TextMeasurer(Protocol):
    def contains(self, root: object, node: object) -> bool: ...

    def measure_text_length(self, root: object, boundary: Boundary) -> int: ...


def _is_text_node(node: object) -> bool:
    # Comments, CDATA and doctypes subclass NavigableString but never render.
    return type(node) is NavigableString


class SoupTextMeasurer:
    """Measures plain-text length inside a BeautifulSoup tree, ignoring markup."""

    def contains(self, root: object, node: object) -> bool:
        if not isinstance(root, Tag) or node is None:
            return False
        if node is root:
            return True
        return any(candidate is node for candidate in root.descendants)

    def text_length(self, root: object) -> int:
        if not isinstance(root, Tag):
            return 0
        return sum(len(node) for node in root.descendants if _is_text_node(node))

    def measure_text_length(self, root: object, boundary: Boundary) -> int:
        if not isinstance(root, Tag):
            raise DetachedContainer("Measurement root is not attached.")
        node = boundary.node
        if isinstance(node, NavigableString):
            before = self._length_before(root, node)
            if not _is_text_node(node):
                return before
            return before + min(max(boundary.offset, 0), len(node))
        if not isinstance(node, Tag):
            raise DetachedContainer("Selection boundary is not part of the verse.")
        children = list(node.contents)
        index = min(max(boundary.offset, 0), len(children))
        if node is root:
            before = 0
        else:
            before = self._length_before(root, node)
        for child in children[:index]:
            if _is_text_node(child):
                before += len(child)
            elif isinstance(child, Tag):
                before += self.text_length(child)
        return before

    def _length_before(self, root: Tag, target: object) -> int:
        total = 0
        for node in root.descendants:
            if node is target:
                return total
            if _is_text_node(node):
                total += len(node)
        raise DetachedContainer("Selection boundary is not part of the verse.")


class SegmentTextMeasurer:
    """
    Measures against a synthetic text-run model: ``root`` is a sequence of
    runs exposing ``.text`` (render-plan segments, for instance).
    """

    def contains(self, root: object, node: object) -> bool:
        if not isinstance(root, Sequence) or isinstance(root, str):
            return False
        if node is root:
            return True
        return any(run is node for run in root)

    def measure_text_length(self, root: object, boundary: Boundary) -> int:
        if not isinstance(root, Sequence) or isinstance(root, str):
            raise DetachedContainer("Measurement root is not attached.")
        runs = list(root)
        if boundary.node is root:
            index = min(max(boundary.offset, 0), len(runs))
            return sum(len(_run_text(run)) for run in runs[:index])
        total = 0
        for run in runs:
            text = _run_text(run)
            if run is boundary.node:
                return total + min(max(boundary.offset, 0), len(text))
            total += len(text)
        raise DetachedContainer("Selection boundary is not part of the verse.")


def _run_text(run: object) -> str:
    text = getattr(run, "text", "")
    return text if isinstance(text, str) else ""


def resolve_offsets(
    plain_text: str,
    rendered_root: object,
    selection: SelectionRange | None,
    measurer: TextMeasurer | None = None,
) -> TextOffsets:
    """
    Convert a selection inside rendered verse markup into offsets against the
    verse's plain text.

    The rendered root's visible text must equal ``plain_text``; highlight
    markup between the root and the boundaries does not count.
    """
    if measurer is None:
        measurer = SoupTextMeasurer()
    if rendered_root is None:
        raise DetachedContainer("No rendered verse to measure against.")
    if selection is None or selection.collapsed:
        raise EmptySelection("Selection is empty.")
    for boundary in (selection.start, selection.end):
        if not measurer.contains(rendered_root, boundary.node):
            raise DetachedContainer("Selection extends outside the verse.")
    start = measurer.measure_text_length(rendered_root, selection.start)
    end = measurer.measure_text_length(rendered_root, selection.end)
    if end <= start:
        raise InvalidRange(f"Selection end ({end}) does not follow its start ({start}).")
    text_length = len(plain_text) if isinstance(plain_text, str) else 0
    if end > text_length:
        raise InvalidRange(
            f"Selection end ({end}) exceeds verse length ({text_length})."
        )
    return TextOffsets(start=start, end=end)


def check_root_text(plain_text: str, rendered_root: object) -> bool:
    """Return True when the rendered markup shows exactly ``plain_text``."""
    if isinstance(rendered_root, Tag):
        shown = "".join(str(node) for node in rendered_root.descendants if _is_text_node(node))
    elif isinstance(rendered_root, Sequence) and not isinstance(rendered_root, str):
        shown = "".join(_run_text(run) for run in rendered_root)
    else:
        return False
    return shown == plain_text


def parse_rendered_verse(markup: str) -> Tag:
    """Parse rendered verse markup and return its outermost element."""
    soup = BeautifulSoup(markup, "html.parser")
    root = soup.find(True)
    if isinstance(root, Tag):
        return root
    return soup
