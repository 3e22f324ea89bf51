from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Iterable, Literal, Mapping

__all__ = [
    "NOTE_TYPES",
    "VERSE_NOTE_TYPES",
    "NoteType",
    "Owner",
    "SELF",
    "Verse",
    "Note",
    "Highlight",
    "Bookmark",
    "NoteSettings",
    "is_blank",
    "deserialize_owner",
    "deserialize_verses",
    "deserialize_note",
    "deserialize_notes",
    "deserialize_highlight",
    "deserialize_highlights",
    "deserialize_bookmark",
    "deserialize_bookmarks",
    "deserialize_note_settings",
    "serialize_note_settings",
    "serialize_note",
    "serialize_highlight",
    "serialize_notes",
]

NoteType = Literal["quick", "study", "chapter"]
NOTE_TYPES: tuple[str, ...] = ("quick", "study", "chapter")
VERSE_NOTE_TYPES: tuple[str, ...] = ("quick", "study")


@dataclass(frozen=True, slots=True)
class Owner:
    """Owner marker: the signed-in user (``is_self``) or a friend."""

    is_self: bool = True
    username: str | None = None


SELF = Owner()


@dataclass(frozen=True, slots=True)
class Verse:
    book: str
    chapter: int
    verse: int
    text: object = ""
    id: object = None


@dataclass(frozen=True, slots=True)
class Note:
    """
    A quick, study or chapter note.

    Chapter notes carry ``verse=None``. ``id`` stays ``None`` until the server
    has stored the note at least once.
    """

    book: str
    chapter: int
    verse: int | None
    note_type: str
    content: str
    owner: Owner = SELF
    id: object = None

    @property
    def is_chapter_note(self) -> bool:
        return self.note_type == "chapter"

    def with_content(self, content: str, *, id: object = None) -> Note:
        return replace(self, content=content, id=self.id if id is None else id)


@dataclass(frozen=True, slots=True)
class Highlight:
    book: str
    chapter: int
    verse: int
    start_offset: int
    end_offset: int
    color: str
    owner: Owner = SELF
    id: object = None

    @property
    def length(self) -> int:
        return self.end_offset - self.start_offset


@dataclass(frozen=True, slots=True)
class Bookmark:
    book: str
    chapter: int
    verse: int
    text_preview: str | None = None
    id: object = None


@dataclass(frozen=True, slots=True)
class NoteSettings:
    """The signed-in user's note-sharing preferences, as held by the server."""

    can_view_friend_notes: bool = True
    share_notes_with_friends: bool = True


def is_blank(content: object) -> bool:
    return not isinstance(content, str) or not content.strip()


def _coerce_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.isdigit():
            return int(stripped)
    return None


def _coerce_book(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def deserialize_owner(entry: object) -> Owner:
    # Notes without a user block are the caller's own.
    if not isinstance(entry, Mapping):
        return SELF
    is_self = entry.get("is_self")
    username = entry.get("username")
    if not isinstance(username, str) or not username:
        username = None
    if is_self is None:
        return Owner(is_self=True, username=username)
    return Owner(is_self=bool(is_self), username=username)


def deserialize_verses(data: object) -> list[Verse]:
    if not isinstance(data, list):
        return []
    verses: list[Verse] = []
    for entry in data:
        if not isinstance(entry, Mapping):
            continue
        book = _coerce_book(entry.get("book"))
        chapter = _coerce_int(entry.get("chapter"))
        verse = _coerce_int(entry.get("verse"))
        if book is None or chapter is None or verse is None:
            continue
        # Text is kept as-is; rendering degrades malformed values.
        verses.append(
            Verse(
                book=book,
                chapter=chapter,
                verse=verse,
                text=entry.get("text"),
                id=entry.get("id"),
            )
        )
    verses.sort(key=lambda item: item.verse)
    return verses


def deserialize_note(entry: object, *, default_type: str | None = None) -> Note | None:
    if not isinstance(entry, Mapping):
        return None
    book = _coerce_book(entry.get("book"))
    chapter = _coerce_int(entry.get("chapter"))
    if book is None or chapter is None:
        return None
    note_type = entry.get("note_type") or default_type
    if note_type not in NOTE_TYPES:
        return None
    verse: int | None = None
    if note_type != "chapter":
        verse = _coerce_int(entry.get("verse"))
        if verse is None:
            return None
    content = entry.get("content")
    if not isinstance(content, str):
        content = ""
    return Note(
        book=book,
        chapter=chapter,
        verse=verse,
        note_type=note_type,
        content=content,
        owner=deserialize_owner(entry.get("user")),
        id=entry.get("id"),
    )


def deserialize_notes(data: object, *, default_type: str | None = None) -> list[Note]:
    """Decode a note array, dropping malformed entries and empty notes."""
    if not isinstance(data, list):
        return []
    notes: list[Note] = []
    for entry in data:
        note = deserialize_note(entry, default_type=default_type)
        if note is None or is_blank(note.content):
            continue
        notes.append(note)
    return notes


def deserialize_highlight(
    entry: object,
    *,
    book: str | None = None,
    chapter: int | None = None,
    verse: int | None = None,
) -> Highlight | None:
    """
    Decode one highlight. ``book``/``chapter``/``verse`` fill in identity
    fields the entry omits (verse-scoped replies often do).
    """
    if not isinstance(entry, Mapping):
        return None
    book = _coerce_book(entry.get("book")) or book
    if entry.get("chapter") is not None:
        chapter = _coerce_int(entry.get("chapter"))
    if entry.get("verse") is not None:
        verse = _coerce_int(entry.get("verse"))
    start = _coerce_int(entry.get("start_offset"))
    end = _coerce_int(entry.get("end_offset"))
    if None in (chapter, verse, start, end) or book is None:
        return None
    if start < 0 or end <= start:
        return None
    color = entry.get("color")
    if not isinstance(color, str) or not color.strip():
        color = "#FFFF00"
    return Highlight(
        book=book,
        chapter=chapter,
        verse=verse,
        start_offset=start,
        end_offset=end,
        color=color.strip(),
        owner=deserialize_owner(entry.get("user")),
        id=entry.get("id"),
    )


def deserialize_highlights(
    data: object,
    *,
    book: str | None = None,
    chapter: int | None = None,
    verse: int | None = None,
) -> list[Highlight]:
    if not isinstance(data, list):
        return []
    highlights: list[Highlight] = []
    for entry in data:
        highlight = deserialize_highlight(entry, book=book, chapter=chapter, verse=verse)
        if highlight is not None:
            highlights.append(highlight)
    return highlights


def deserialize_bookmark(entry: object) -> Bookmark | None:
    if not isinstance(entry, Mapping):
        return None
    book = _coerce_book(entry.get("book"))
    chapter = _coerce_int(entry.get("chapter"))
    verse = _coerce_int(entry.get("verse"))
    if book is None or chapter is None or verse is None:
        return None
    preview = entry.get("text_preview")
    if not isinstance(preview, str):
        preview = None
    return Bookmark(book=book, chapter=chapter, verse=verse, text_preview=preview, id=entry.get("id"))


def deserialize_bookmarks(data: object) -> list[Bookmark]:
    if not isinstance(data, list):
        return []
    bookmarks: list[Bookmark] = []
    for entry in data:
        bookmark = deserialize_bookmark(entry)
        if bookmark is not None:
            bookmarks.append(bookmark)
    return bookmarks


def _serialize_owner(owner: Owner) -> dict[str, object]:
    return {"is_self": owner.is_self, "username": owner.username}


def serialize_note(note: Note) -> dict[str, object]:
    return {
        "id": note.id,
        "book": note.book,
        "chapter": note.chapter,
        "verse": note.verse,
        "note_type": note.note_type,
        "content": note.content,
        "user": _serialize_owner(note.owner),
    }


def serialize_highlight(highlight: Highlight) -> dict[str, object]:
    return {
        "id": highlight.id,
        "book": highlight.book,
        "chapter": highlight.chapter,
        "verse": highlight.verse,
        "start_offset": highlight.start_offset,
        "end_offset": highlight.end_offset,
        "color": highlight.color,
        "user": _serialize_owner(highlight.owner),
    }


def serialize_notes(notes: Iterable[Note]) -> list[dict[str, object]]:
    return [serialize_note(note) for note in notes]


def deserialize_note_settings(entry: object, *, default: NoteSettings | None = None) -> NoteSettings:
    """Read the sharing flags from a user payload; absent flags keep ``default``."""
    base = default if default is not None else NoteSettings()
    if not isinstance(entry, Mapping):
        return base
    view = entry.get("can_view_friend_notes")
    share = entry.get("share_notes_with_friends")
    return NoteSettings(
        can_view_friend_notes=view if isinstance(view, bool) else base.can_view_friend_notes,
        share_notes_with_friends=share if isinstance(share, bool) else base.share_notes_with_friends,
    )


def serialize_note_settings(settings: NoteSettings) -> dict[str, bool]:
    return {
        "can_view_friend_notes": settings.can_view_friend_notes,
        "share_notes_with_friends": settings.share_notes_with_friends,
    }
