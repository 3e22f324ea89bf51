from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Iterable, Union

from .models import (
    NOTE_TYPES,
    SELF,
    Bookmark,
    Highlight,
    Note,
    is_blank,
)
from .render import sort_highlights

__all__ = [
    "Annotation",
    "AnnotationStore",
    "ChapterEntry",
    "StoreDisposedError",
]

Annotation = Union[Note, Highlight]

_KINDS = {"notes", "highlights"}


class StoreDisposedError(RuntimeError):
    """Raised when a disposed AnnotationStore is mutated."""


@dataclass
class ChapterEntry:
    verses: dict[int, list[Annotation]] = field(default_factory=dict)
    chapter_notes: list[Note] = field(default_factory=list)

    def copy(self) -> ChapterEntry:
        return ChapterEntry(
            verses={verse: list(items) for verse, items in self.verses.items()},
            chapter_notes=list(self.chapter_notes),
        )


def _order_verse_items(items: Iterable[Annotation]) -> list[Annotation]:
    items = list(items)
    notes = _dedupe_own(item for item in items if isinstance(item, Note))
    highlights = sort_highlights(item for item in items if isinstance(item, Highlight))
    return [*notes, *highlights]


def _validate_kind(kind: str | None) -> None:
    if kind is not None and kind not in _KINDS:
        raise ValueError(f"kind must be one of: notes, highlights (got {kind!r})")


class AnnotationStore:
    """
    In-memory annotations for one reading session, keyed by
    (book, chapter) -> verse.

    Every mutation builds the new chapter entry aside and swaps it in under a
    lock, so readers never observe a half-applied update. Reads return fresh
    lists and never fail: anything not loaded reads as empty.
    """

    def __init__(self) -> None:
        self._chapters: dict[tuple[str, int], ChapterEntry] = {}
        self._bookmarks: dict[tuple[str, int, int], Bookmark] = {}
        self._lock = threading.RLock()
        self._disposed = False

    @classmethod
    def create(cls) -> AnnotationStore:
        return cls()

    @property
    def disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        with self._lock:
            self._chapters = {}
            self._bookmarks = {}
            self._disposed = True

    def _ensure_open(self) -> None:
        if self._disposed:
            raise StoreDisposedError("Annotation store has been disposed.")

    # -- reads -------------------------------------------------------------

    def has_chapter(self, book: str, chapter: int) -> bool:
        return (book, chapter) in self._chapters

    def chapters(self) -> list[tuple[str, int]]:
        return list(self._chapters)

    def get(self, book: str, chapter: int, verse: int) -> list[Annotation]:
        entry = self._chapters.get((book, chapter))
        if entry is None:
            return []
        return list(entry.verses.get(verse, ()))

    def notes(self, book: str, chapter: int, verse: int, note_type: str | None = None) -> list[Note]:
        return [
            item
            for item in self.get(book, chapter, verse)
            if isinstance(item, Note) and (note_type is None or item.note_type == note_type)
        ]

    def highlights(self, book: str, chapter: int, verse: int) -> list[Highlight]:
        return [item for item in self.get(book, chapter, verse) if isinstance(item, Highlight)]

    def own_note(self, book: str, chapter: int, verse: int, note_type: str) -> Note | None:
        for note in self.notes(book, chapter, verse, note_type):
            if note.owner.is_self:
                return note
        return None

    def friend_notes(self, book: str, chapter: int, verse: int, note_type: str | None = None) -> list[Note]:
        return [note for note in self.notes(book, chapter, verse, note_type) if not note.owner.is_self]

    def chapter_notes(self, book: str, chapter: int) -> list[Note]:
        entry = self._chapters.get((book, chapter))
        if entry is None:
            return []
        return list(entry.chapter_notes)

    def own_chapter_note(self, book: str, chapter: int) -> Note | None:
        for note in self.chapter_notes(book, chapter):
            if note.owner.is_self:
                return note
        return None

    # -- chapter loads -----------------------------------------------------

    def load_chapter(
        self,
        book: str,
        chapter: int,
        annotations: Iterable[Annotation],
        *,
        kind: str | None = None,
    ) -> None:
        """
        Replace what is known about ``(book, chapter)``.

        ``kind=None`` replaces everything. ``kind="notes"`` or
        ``kind="highlights"`` replaces that kind only and keeps the other, so
        separately fetched notes and highlights do not erase each other.
        """
        _validate_kind(kind)
        grouped: dict[int, list[Annotation]] = {}
        chapter_notes: list[Note] = []
        for item in annotations:
            if isinstance(item, Note):
                if kind == "highlights":
                    continue
                if is_blank(item.content):
                    continue
                if item.is_chapter_note:
                    chapter_notes.append(item)
                    continue
                if item.verse is None:
                    continue
            elif isinstance(item, Highlight):
                if kind == "notes":
                    continue
            else:
                continue
            grouped.setdefault(item.verse, []).append(item)  # type: ignore[arg-type]

        with self._lock:
            self._ensure_open()
            previous = self._chapters.get((book, chapter))
            if kind is not None and previous is not None:
                keep = Highlight if kind == "notes" else Note
                for verse, items in previous.verses.items():
                    kept = [item for item in items if isinstance(item, keep)]
                    if kept:
                        grouped.setdefault(verse, []).extend(kept)
                if kind == "highlights":
                    chapter_notes = list(previous.chapter_notes)
            entry = ChapterEntry(
                verses={verse: _order_verse_items(items) for verse, items in grouped.items()},
                chapter_notes=_dedupe_own(chapter_notes),
            )
            self._chapters[(book, chapter)] = entry

    def forget_chapter(self, book: str, chapter: int) -> None:
        with self._lock:
            self._chapters.pop((book, chapter), None)

    # -- verse-level mutations ---------------------------------------------

    def upsert_own_note(
        self,
        book: str,
        chapter: int,
        verse: int | None,
        variant: str,
        content: str,
        server_id: object = None,
    ) -> Note | None:
        """
        Patch the signed-in user's note of ``variant``.

        Non-empty content replaces the existing note or appends a new one;
        empty or whitespace content removes it. Returns the stored note, or
        None when the note was removed.
        """
        if variant not in NOTE_TYPES:
            raise ValueError(f"Unknown note type: {variant!r}")
        if variant != "chapter" and verse is None:
            raise ValueError(f"{variant} notes require a verse.")
        delete = is_blank(content)
        with self._lock:
            self._ensure_open()
            previous = self._chapters.get((book, chapter))
            entry = previous.copy() if previous is not None else ChapterEntry()
            if variant == "chapter":
                existing = next((note for note in entry.chapter_notes if note.owner.is_self), None)
                others = [note for note in entry.chapter_notes if not note.owner.is_self]
                stored = None
                if not delete:
                    stored = _patched_note(existing, book, chapter, None, variant, content, server_id)
                    others.insert(0, stored)
                entry.chapter_notes = others
            else:
                items = entry.verses.get(verse, [])  # type: ignore[arg-type]
                existing = next(
                    (
                        item
                        for item in items
                        if isinstance(item, Note) and item.owner.is_self and item.note_type == variant
                    ),
                    None,
                )
                stored = None
                updated: list[Annotation] = []
                placed = False
                for item in items:
                    if item is existing:
                        if not delete:
                            stored = _patched_note(existing, book, chapter, verse, variant, content, server_id)
                            updated.append(stored)
                        placed = True
                        continue
                    updated.append(item)
                if not delete and not placed:
                    stored = _patched_note(None, book, chapter, verse, variant, content, server_id)
                    updated.append(stored)
                ordered = _order_verse_items(updated)
                if ordered:
                    entry.verses[verse] = ordered  # type: ignore[index]
                else:
                    entry.verses.pop(verse, None)  # type: ignore[arg-type]
            self._chapters[(book, chapter)] = entry
            return stored

    def replace_verse_notes(self, book: str, chapter: int, verse: int, notes: Iterable[Note]) -> None:
        incoming = [
            note
            for note in notes
            if isinstance(note, Note) and not note.is_chapter_note and not is_blank(note.content)
        ]
        with self._lock:
            self._ensure_open()
            previous = self._chapters.get((book, chapter))
            entry = previous.copy() if previous is not None else ChapterEntry()
            kept = [item for item in entry.verses.get(verse, ()) if isinstance(item, Highlight)]
            ordered = _order_verse_items([*_dedupe_own(incoming), *kept])
            if ordered:
                entry.verses[verse] = ordered
            else:
                entry.verses.pop(verse, None)
            self._chapters[(book, chapter)] = entry

    def replace_verse_highlights(
        self,
        book: str,
        chapter: int,
        verse: int,
        highlights: Iterable[Highlight],
    ) -> list[Highlight]:
        """
        Install the server's complete highlight set for a verse, dropping every
        previous highlight of that verse regardless of owner.
        """
        incoming = sort_highlights(item for item in highlights if isinstance(item, Highlight))
        with self._lock:
            self._ensure_open()
            previous = self._chapters.get((book, chapter))
            entry = previous.copy() if previous is not None else ChapterEntry()
            notes = [item for item in entry.verses.get(verse, ()) if isinstance(item, Note)]
            combined: list[Annotation] = [*notes, *incoming]
            if combined:
                entry.verses[verse] = combined
            else:
                entry.verses.pop(verse, None)
            self._chapters[(book, chapter)] = entry
        return list(incoming)

    # -- bookmarks ---------------------------------------------------------

    def load_bookmarks(self, bookmarks: Iterable[Bookmark]) -> None:
        loaded = {
            (item.book, item.chapter, item.verse): item
            for item in bookmarks
            if isinstance(item, Bookmark)
        }
        with self._lock:
            self._ensure_open()
            self._bookmarks = loaded

    def add_bookmark(self, bookmark: Bookmark) -> None:
        with self._lock:
            self._ensure_open()
            updated = dict(self._bookmarks)
            updated[(bookmark.book, bookmark.chapter, bookmark.verse)] = bookmark
            self._bookmarks = updated

    def remove_bookmark(self, book: str, chapter: int, verse: int) -> Bookmark | None:
        with self._lock:
            self._ensure_open()
            updated = dict(self._bookmarks)
            removed = updated.pop((book, chapter, verse), None)
            self._bookmarks = updated
            return removed

    def find_bookmark(self, book: str, chapter: int, verse: int) -> Bookmark | None:
        return self._bookmarks.get((book, chapter, verse))

    def is_bookmarked(self, book: str, chapter: int, verse: int) -> bool:
        return (book, chapter, verse) in self._bookmarks

    def bookmarks(self) -> list[Bookmark]:
        return sorted(
            self._bookmarks.values(),
            key=lambda item: (item.book.casefold(), item.chapter, item.verse),
        )


def _patched_note(
    existing: Note | None,
    book: str,
    chapter: int,
    verse: int | None,
    variant: str,
    content: str,
    server_id: object,
) -> Note:
    if existing is not None:
        return existing.with_content(content, id=server_id)
    return Note(
        book=book,
        chapter=chapter,
        verse=verse,
        note_type=variant,
        content=content,
        owner=SELF,
        id=server_id,
    )


def _dedupe_own(notes: Iterable[Note]) -> list[Note]:
    # The server should never send two own notes of one variant; keep the last.
    result: list[Note] = []
    own_index: dict[str, int] = {}
    for note in notes:
        if not note.owner.is_self:
            result.append(note)
            continue
        index = own_index.get(note.note_type)
        if index is None:
            own_index[note.note_type] = len(result)
            result.append(note)
        else:
            result[index] = note
    return result
