from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from typing import Callable, Mapping
from urllib.parse import quote

import requests

from .config import ClientConfig
from .models import (
    Bookmark,
    Highlight,
    Note,
    NoteSettings,
    Verse,
    deserialize_bookmark,
    deserialize_bookmarks,
    deserialize_highlights,
    deserialize_note,
    deserialize_note_settings,
    deserialize_notes,
    deserialize_verses,
    is_blank,
    serialize_note_settings,
)
from .offsets import SelectionRange, TextMeasurer, resolve_offsets
from .store import AnnotationStore

__all__ = [
    "AnnotationSyncClient",
    "OperationState",
    "SyncError",
    "NetworkError",
    "AuthError",
    "ValidationError",
    "ServerError",
    "set_debug_logging",
]

_DEBUG_LOG = False

IDLE = "idle"
PENDING = "pending"
SUCCESS = "success"
FAILED = "failed"


def set_debug_logging(enabled: bool) -> None:
    global _DEBUG_LOG
    _DEBUG_LOG = enabled


def _debug_log(message: str) -> None:
    if _DEBUG_LOG:
        print(f"[versemark debug] {message}")


class SyncError(RuntimeError):
    """Base class for failed round trips to the note/highlight service."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class NetworkError(SyncError):
    """Raised when the service cannot be reached."""


class AuthError(SyncError):
    """Raised on 401: the session has expired or was never established."""


class ValidationError(SyncError):
    """Raised when the service rejects a request (4xx other than 401)."""


class ServerError(SyncError):
    """Raised on 5xx responses or unreadable success bodies."""


@dataclass(frozen=True, slots=True)
class OperationState:
    status: str = IDLE
    error: str | None = None

    @property
    def pending(self) -> bool:
        return self.status == PENDING


def _segment(value: object) -> str:
    return quote(str(value), safe="")


def _error_message(response: requests.Response, fallback: str) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, Mapping):
        for key in ("message", "error", "detail"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return fallback


class AnnotationSyncClient:
    """
    Round trips to the note/highlight service.

    Successful calls reconcile ``store``; failed calls raise a ``SyncError``
    subclass and leave ``store`` exactly as it was. Nothing is written to the
    store before the server confirms.
    """

    def __init__(
        self,
        config: ClientConfig,
        store: AnnotationStore | None = None,
        *,
        on_session_expired: Callable[[], None] | None = None,
    ) -> None:
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self.store = store if store is not None else AnnotationStore()
        self.on_session_expired = on_session_expired
        self._session = requests.Session()
        self.note_settings = NoteSettings(can_view_friend_notes=config.include_friends)
        self._states: dict[str, OperationState] = {}
        self._state_lock = threading.Lock()

    # -- plumbing ----------------------------------------------------------

    def operation_state(self, name: str) -> OperationState:
        with self._state_lock:
            return self._states.get(name, OperationState())

    def _set_state(self, name: str, status: str, error: str | None = None) -> None:
        with self._state_lock:
            self._states[name] = OperationState(status=status, error=error)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        return headers

    def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        payload: object = None,
        params: Mapping[str, object] | None = None,
        allow_missing: bool = False,
    ) -> object:
        url = f"{self.base_url}{path}"
        self._set_state(operation, PENDING)
        _debug_log(f"{operation}: {method} {url}")
        try:
            try:
                response = self._session.request(
                    method,
                    url,
                    headers=self._headers(),
                    json=payload,
                    params=params,
                    timeout=self.config.timeout,
                )
            except requests.RequestException as exc:
                raise NetworkError(f"Failed to contact annotation service at {self.base_url}") from exc
            status = response.status_code
            _debug_log(f"{operation}: status {status}")
            if allow_missing and status == 404:
                self._set_state(operation, SUCCESS)
                return None
            if status == 401:
                error = AuthError(
                    _error_message(response, "Session expired. Please log in again."),
                    status_code=status,
                )
                self._set_state(operation, FAILED, error.message)
                if self.on_session_expired is not None:
                    try:
                        self.on_session_expired()
                    except Exception as exc:
                        raise error from exc
                raise error
            if 400 <= status < 500:
                raise ValidationError(
                    _error_message(response, f"Request failed with status {status}"),
                    status_code=status,
                )
            if status >= 500:
                raise ServerError(
                    _error_message(response, f"Annotation service error ({status})"),
                    status_code=status,
                )
            if status == 204 or not response.content:
                body = None
            else:
                try:
                    body = response.json()
                except ValueError as exc:
                    raise ServerError(
                        f"Annotation service returned invalid JSON for {path}",
                        status_code=status,
                    ) from exc
        except SyncError as exc:
            self._set_state(operation, FAILED, exc.message)
            raise
        self._set_state(operation, SUCCESS)
        return body

    def close(self) -> None:
        self._session.close()

    def __enter__(self) -> AnnotationSyncClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # -- content provider --------------------------------------------------

    def fetch_verses(self, book: str, chapter: int) -> list[Verse]:
        body = self._request(
            "fetch_verses",
            "GET",
            f"/bible/verses/{_segment(book)}/{chapter}",
        )
        return deserialize_verses(body)

    # -- chapter fetches ---------------------------------------------------

    def _get_chapter_notes(self, book: str, chapter: int) -> list[Note]:
        body = self._request(
            "fetch_chapter_notes",
            "GET",
            f"/notes/chapter/{_segment(book)}/{chapter}/notes",
            allow_missing=True,
        )
        notes = deserialize_notes(body)
        if not any(note.is_chapter_note and note.owner.is_self for note in notes):
            chapter_body = self._request(
                "fetch_chapter_notes",
                "GET",
                f"/notes/chapter/{_segment(book)}/{chapter}",
                allow_missing=True,
            )
            chapter_note = deserialize_note(chapter_body, default_type="chapter")
            if chapter_note is not None and chapter_note.is_chapter_note and not is_blank(chapter_note.content):
                notes.append(chapter_note)
        return notes

    def _get_chapter_highlights(self, book: str, chapter: int) -> list[Highlight]:
        body = self._request(
            "fetch_chapter_highlights",
            "GET",
            f"/highlights/chapter/{_segment(book)}/{chapter}",
        )
        return deserialize_highlights(body)

    def fetch_chapter_notes(self, book: str, chapter: int) -> list[Note]:
        notes = self._get_chapter_notes(book, chapter)
        self.store.load_chapter(book, chapter, notes, kind="notes")
        return notes

    def fetch_chapter_highlights(self, book: str, chapter: int) -> list[Highlight]:
        highlights = self._get_chapter_highlights(book, chapter)
        self.store.load_chapter(book, chapter, highlights, kind="highlights")
        return highlights

    def fetch_chapter(self, book: str, chapter: int) -> None:
        """Reload notes and highlights together, replacing the whole chapter."""
        notes = self._get_chapter_notes(book, chapter)
        highlights = self._get_chapter_highlights(book, chapter)
        self.store.load_chapter(book, chapter, [*notes, *highlights])

    def fetch_verse_notes(self, book: str, chapter: int, verse: int) -> list[Note]:
        body = self._request(
            "fetch_verse_notes",
            "GET",
            f"/notes/verse/{_segment(book)}/{chapter}/{verse}",
        )
        notes = [note for note in deserialize_notes(body) if note.verse == verse]
        self.store.replace_verse_notes(book, chapter, verse, notes)
        return notes

    # -- note saves --------------------------------------------------------

    def _save_note(
        self,
        variant: str,
        book: str,
        chapter: int,
        verse: int | None,
        content: str,
    ) -> Note | None:
        trimmed = content.strip() if isinstance(content, str) else ""
        payload: dict[str, object] = {"book": book, "chapter": chapter, "content": trimmed}
        if variant != "chapter":
            payload["verse"] = verse
        body = self._request(f"save_{variant}_note", "POST", f"/notes/{variant}", payload=payload)
        echoed = body.get("note") if isinstance(body, Mapping) else None
        server_id = None
        stored_content = trimmed
        if isinstance(echoed, Mapping):
            server_id = echoed.get("id")
            echoed_content = echoed.get("content")
            if isinstance(echoed_content, str):
                stored_content = echoed_content
        else:
            _debug_log(f"save_{variant}_note: no note echoed, keeping sent content")
        return self.store.upsert_own_note(book, chapter, verse, variant, stored_content, server_id)

    def save_quick_note(self, book: str, chapter: int, verse: int, content: str) -> Note | None:
        return self._save_note("quick", book, chapter, verse, content)

    def save_study_note(self, book: str, chapter: int, verse: int, content: str) -> Note | None:
        return self._save_note("study", book, chapter, verse, content)

    def save_chapter_note(self, book: str, chapter: int, content: str) -> Note | None:
        return self._save_note("chapter", book, chapter, None, content)

    # -- highlights --------------------------------------------------------

    def save_highlight(
        self,
        book: str,
        chapter: int,
        verse: int,
        start_offset: int,
        end_offset: int,
        color: str,
    ) -> list[Highlight]:
        """
        Persist a highlight and install the verse's returned highlight set.

        The service answers with every highlight now on the verse; that set
        replaces the cached one wholesale.
        """
        if start_offset < 0 or end_offset <= start_offset:
            raise ValueError(
                f"Highlight offsets must satisfy 0 <= start < end (got {start_offset}, {end_offset})."
            )
        payload = {
            "book": book,
            "chapter": chapter,
            "verse": verse,
            "start_offset": start_offset,
            "end_offset": end_offset,
            "color": color,
        }
        body = self._request("save_highlight", "POST", "/highlights", payload=payload)
        if not isinstance(body, list):
            _debug_log("save_highlight: response was not a highlight list; cache left as-is")
            return self.store.highlights(book, chapter, verse)
        highlights: list[Highlight] = []
        for item in deserialize_highlights(body, book=book, chapter=chapter, verse=verse):
            if item.chapter != chapter or item.verse != verse or item.book.casefold() != book.casefold():
                _debug_log(f"save_highlight: skipping highlight for {item.book} {item.chapter}:{item.verse}")
                continue
            if item.book != book:
                item = replace(item, book=book)
            highlights.append(item)
        return self.store.replace_verse_highlights(book, chapter, verse, highlights)

    def highlight_selection(
        self,
        book: str,
        chapter: int,
        verse: int,
        plain_text: str,
        rendered_root: object,
        selection: SelectionRange | None,
        color: str,
        measurer: TextMeasurer | None = None,
    ) -> list[Highlight]:
        offsets = resolve_offsets(plain_text, rendered_root, selection, measurer)
        return self.save_highlight(book, chapter, verse, offsets.start, offsets.end, color)

    # -- note sharing settings ---------------------------------------------

    def _install_note_settings(self, settings: NoteSettings) -> None:
        self.note_settings = settings
        self.config.include_friends = settings.can_view_friend_notes

    def apply_user_profile(self, user: object) -> NoteSettings:
        """
        Seed the sharing settings from a user payload (the login response
        carries them). Friend visibility follows ``can_view_friend_notes``.
        """
        settings = deserialize_note_settings(user, default=self.note_settings)
        self._install_note_settings(settings)
        return settings

    def update_note_settings(
        self,
        *,
        can_view_friend_notes: bool | None = None,
        share_notes_with_friends: bool | None = None,
    ) -> NoteSettings:
        current = self.note_settings
        requested = NoteSettings(
            can_view_friend_notes=(
                current.can_view_friend_notes if can_view_friend_notes is None else can_view_friend_notes
            ),
            share_notes_with_friends=(
                current.share_notes_with_friends if share_notes_with_friends is None else share_notes_with_friends
            ),
        )
        body = self._request(
            "update_note_settings",
            "POST",
            "/auth/settings/notes",
            payload=serialize_note_settings(requested),
        )
        # The reply is the updated user; its flags win over what was sent.
        settings = deserialize_note_settings(body, default=requested)
        self._install_note_settings(settings)
        return settings

    # -- bookmarks ---------------------------------------------------------

    def fetch_bookmarks(self) -> list[Bookmark]:
        body = self._request("fetch_bookmarks", "GET", "/bookmarks/")
        bookmarks = deserialize_bookmarks(body)
        self.store.load_bookmarks(bookmarks)
        return bookmarks

    def add_bookmark(self, book: str, chapter: int, verse: int, text_preview: str | None = None) -> Bookmark:
        payload = {
            "book": book,
            "chapter": chapter,
            "verse": verse,
            "text_preview": text_preview,
        }
        body = self._request("add_bookmark", "POST", "/bookmarks/", payload=payload)
        bookmark = deserialize_bookmark(body)
        if bookmark is None:
            bookmark = Bookmark(book=book, chapter=chapter, verse=verse, text_preview=text_preview)
        self.store.add_bookmark(bookmark)
        return bookmark

    def remove_bookmark(self, book: str, chapter: int, verse: int) -> bool:
        existing = self.store.find_bookmark(book, chapter, verse)
        if existing is None or existing.id is None:
            _debug_log(f"remove_bookmark: no known bookmark for {book} {chapter}:{verse}")
            return False
        self._request("remove_bookmark", "DELETE", f"/bookmarks/{_segment(existing.id)}")
        self.store.remove_bookmark(book, chapter, verse)
        return True
