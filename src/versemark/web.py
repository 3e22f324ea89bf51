from __future__ import annotations

import threading
from dataclasses import dataclass, field

from fastapi import Body, FastAPI, HTTPException, Query
from fastapi.responses import HTMLResponse, JSONResponse

from .client import (
    AnnotationSyncClient,
    AuthError,
    NetworkError,
    ServerError,
    SyncError,
    ValidationError,
)
from .config import ClientConfig
from .models import NOTE_TYPES, Note, Verse, serialize_note
from .offsets import (
    Boundary,
    OffsetResolutionError,
    SegmentTextMeasurer,
    SelectionRange,
)
from .render import RenderSegment, build_render_plan, visible_highlights
from .store import AnnotationStore

_DEBUG_LOG = False


def set_debug_logging(enabled: bool) -> None:
    global _DEBUG_LOG
    _DEBUG_LOG = enabled


def _debug_log(message: str) -> None:
    if _DEBUG_LOG:
        print(f"[versemark web debug] {message}")


@dataclass(slots=True)
class WebConfig:
    client: ClientConfig = field(default_factory=ClientConfig)
    default_color: str = "#FFFF00"


INDEX_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>versemark reader</title>
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <style>
    body { margin: 0 auto; max-width: 46rem; padding: 1.5rem; font-family: Georgia, serif; }
    form { display: flex; gap: 0.5rem; margin-bottom: 1rem; }
    .verse { margin: 0.4rem 0; line-height: 1.6; }
    .verse sup { color: #888; margin-right: 0.3rem; }
    .notes { font-size: 0.85rem; color: #555; margin-left: 1.4rem; }
    #status { color: #b91c1c; min-height: 1.2rem; }
  </style>
</head>
<body>
  <form id="nav">
    <input id="book" value="John" size="12">
    <input id="chapter" value="3" size="4">
    <input id="color" type="color" value="#ffff00">
    <button type="submit">Open</button>
  </form>
  <div id="status"></div>
  <div id="verses"></div>
  <script>
    const versesEl = document.getElementById('verses');
    const statusEl = document.getElementById('status');
    let current = null;

    function verseOf(node) {
      const el = node.nodeType === Node.TEXT_NODE ? node.parentElement : node;
      return el ? el.closest('.verse') : null;
    }

    function segmentBoundary(verseEl, node, offset) {
      const verse = Number(verseEl.dataset.verse);
      if (node.nodeType === Node.TEXT_NODE) {
        const span = node.parentElement ? node.parentElement.closest('[data-segment]') : null;
        if (!span) return null;
        return { verse, segment: Number(span.dataset.segment), offset };
      }
      // Element endpoints count child nodes; convert to characters.
      const span = node.closest('[data-segment]');
      if (span) {
        const before = Array.from(node.childNodes).slice(0, offset);
        const chars = before.reduce((total, child) => total + child.textContent.length, 0);
        return { verse, segment: Number(span.dataset.segment), offset: chars };
      }
      const segments = Array.from(verseEl.querySelectorAll('[data-segment]'));
      if (!segments.length) return null;
      const limit = node.childNodes[offset];
      const preceding = segments.filter(
        (seg) => !limit || (limit.compareDocumentPosition(seg) & Node.DOCUMENT_POSITION_PRECEDING)
      );
      if (!preceding.length) return { verse, segment: Number(segments[0].dataset.segment), offset: 0 };
      const last = preceding[preceding.length - 1];
      return { verse, segment: Number(last.dataset.segment), offset: last.textContent.length };
    }

    async function load(refresh) {
      const book = document.getElementById('book').value.trim();
      const chapter = document.getElementById('chapter').value.trim();
      const url = `/api/chapters/${encodeURIComponent(book)}/${chapter}` + (refresh ? '?refresh=1' : '');
      const res = await fetch(url);
      const data = await res.json();
      if (!res.ok) { statusEl.textContent = data.detail?.message || 'Failed to load chapter'; return; }
      statusEl.textContent = '';
      current = data;
      versesEl.innerHTML = '';
      for (const verse of data.verses) {
        const p = document.createElement('p');
        p.className = 'verse';
        p.dataset.verse = verse.verse;
        const num = document.createElement('sup');
        num.textContent = verse.verse;
        p.appendChild(num);
        verse.segments.forEach((seg, idx) => {
          const span = document.createElement(seg.color ? 'mark' : 'span');
          span.dataset.segment = idx;
          if (seg.color) span.style.backgroundColor = seg.color;
          span.textContent = seg.text;
          p.appendChild(span);
        });
        for (const note of verse.notes) {
          const div = document.createElement('div');
          div.className = 'notes';
          div.textContent = `${note.note_type}: ${note.content}`;
          p.appendChild(div);
        }
        versesEl.appendChild(p);
      }
    }

    versesEl.addEventListener('mouseup', async () => {
      const sel = window.getSelection();
      if (!sel || sel.isCollapsed || !current) return;
      const range = sel.getRangeAt(0);
      const verseEl = verseOf(range.startContainer);
      if (!verseEl) return;
      if (verseOf(range.endContainer) !== verseEl) {
        sel.removeAllRanges();
        statusEl.textContent = 'Highlights must stay within one verse.';
        return;
      }
      const start = segmentBoundary(verseEl, range.startContainer, range.startOffset);
      const end = segmentBoundary(verseEl, range.endContainer, range.endOffset);
      sel.removeAllRanges();
      if (!start || !end) return;
      const url = `/api/chapters/${encodeURIComponent(current.book)}/${current.chapter}/verses/${verseEl.dataset.verse}/highlights`;
      const res = await fetch(url, {
        method: 'POST',
        headers: { 'Content-Type': 'application/json' },
        body: JSON.stringify({ start, end, color: document.getElementById('color').value }),
      });
      if (!res.ok) {
        const data = await res.json();
        statusEl.textContent = data.detail?.message || 'Failed to save highlight';
        return;
      }
      await load(false);
    });

    document.getElementById('nav').addEventListener('submit', (event) => {
      event.preventDefault();
      load(true);
    });
  </script>
</body>
</html>
"""


def _sync_error_status(exc: SyncError) -> int:
    if isinstance(exc, AuthError):
        return 401
    if isinstance(exc, ValidationError):
        return exc.status_code or 400
    if isinstance(exc, (NetworkError, ServerError)):
        return 502
    return 500


def _sync_http_error(exc: SyncError) -> HTTPException:
    return HTTPException(
        status_code=_sync_error_status(exc),
        detail={"code": type(exc).__name__, "message": exc.message},
    )


def _segment_payload(segment: RenderSegment) -> dict[str, object]:
    return {
        "text": segment.text,
        "color": segment.color,
        "start": segment.start,
        "end": segment.end,
        "highlight_id": segment.highlight_id,
        "owner": segment.owner.username if segment.owner and not segment.owner.is_self else None,
    }


def _parse_boundary(value: object, name: str, segments: list[RenderSegment], verse: int) -> Boundary:
    if not isinstance(value, dict):
        raise HTTPException(status_code=400, detail={"code": "invalid_payload", "message": f"{name} is required."})
    index = value.get("segment")
    offset = value.get("offset")
    if isinstance(index, bool) or not isinstance(index, int) or isinstance(offset, bool) or not isinstance(offset, int):
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_payload", "message": f"{name} needs integer segment and offset."},
        )
    boundary_verse = value.get("verse", verse)
    if boundary_verse != verse:
        # Endpoint lies in another verse; resolution reports it as detached.
        return Boundary(node=value, offset=offset)
    if index < 0 or index >= len(segments):
        # Stale page: the segment no longer exists in what was served.
        raise HTTPException(
            status_code=409,
            detail={"code": "detached_container", "message": "Verse changed; reload the chapter."},
        )
    return Boundary(node=segments[index], offset=offset)


def create_app(config: WebConfig, *, client: AnnotationSyncClient | None = None) -> FastAPI:
    if client is None:
        client = AnnotationSyncClient(config.client, AnnotationStore.create())
    store = client.store

    app = FastAPI(title="versemark reader")
    app.state.config = config
    app.state.client = client
    app.state.store = store

    verses_lock = threading.Lock()
    chapter_verses: dict[tuple[str, int], list[Verse]] = {}
    served_segments: dict[tuple[str, int, int], list[RenderSegment]] = {}
    measurer = SegmentTextMeasurer()

    def _shutdown() -> None:
        store.dispose()
        client.close()

    app.add_event_handler("shutdown", _shutdown)

    def _verses_for(book: str, chapter: int, refresh: bool) -> list[Verse]:
        with verses_lock:
            cached = chapter_verses.get((book, chapter))
        if cached is not None and not refresh:
            return cached
        try:
            verses = client.fetch_verses(book, chapter)
        except SyncError as exc:
            raise _sync_http_error(exc) from exc
        with verses_lock:
            chapter_verses[(book, chapter)] = verses
        return verses

    def _find_verse(book: str, chapter: int, verse: int) -> Verse:
        with verses_lock:
            verses = chapter_verses.get((book, chapter)) or []
        for item in verses:
            if item.verse == verse:
                return item
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Verse not loaded."})

    def _verse_segments(item: Verse) -> list[RenderSegment]:
        highlights = visible_highlights(
            store.highlights(item.book, item.chapter, item.verse),
            include_friends=config.client.include_friends,
        )
        segments = build_render_plan(item.text, highlights).segments()
        with verses_lock:
            served_segments[(item.book, item.chapter, item.verse)] = segments
        return segments

    def _verse_notes(item: Verse) -> list[Note]:
        notes = store.notes(item.book, item.chapter, item.verse)
        if not config.client.include_friends:
            notes = [note for note in notes if note.owner.is_self]
        return notes

    @app.get("/", response_class=HTMLResponse)
    def index() -> str:
        return INDEX_HTML

    @app.get("/api/chapters/{book}/{chapter}")
    def api_chapter(book: str, chapter: int, refresh: bool = Query(False)) -> JSONResponse:
        if chapter < 1:
            raise HTTPException(status_code=400, detail={"code": "invalid_chapter", "message": "chapter must be >= 1."})
        verses = _verses_for(book, chapter, refresh)
        if refresh or not store.has_chapter(book, chapter):
            try:
                client.fetch_chapter(book, chapter)
            except SyncError as exc:
                raise _sync_http_error(exc) from exc
        payload_verses = []
        for item in verses:
            payload_verses.append(
                {
                    "verse": item.verse,
                    "segments": [_segment_payload(segment) for segment in _verse_segments(item)],
                    "notes": [serialize_note(note) for note in _verse_notes(item)],
                    "bookmarked": store.is_bookmarked(book, chapter, item.verse),
                }
            )
        chapter_notes = store.chapter_notes(book, chapter)
        if not config.client.include_friends:
            chapter_notes = [note for note in chapter_notes if note.owner.is_self]
        return JSONResponse(
            {
                "book": book,
                "chapter": chapter,
                "verses": payload_verses,
                "chapter_notes": [serialize_note(note) for note in chapter_notes],
            }
        )

    @app.post("/api/chapters/{book}/{chapter}/verses/{verse}/highlights")
    def api_add_highlight(
        book: str,
        chapter: int,
        verse: int,
        payload: dict[str, object] = Body(...),
    ) -> JSONResponse:
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail={"code": "invalid_payload", "message": "Invalid payload."})
        item = _find_verse(book, chapter, verse)
        with verses_lock:
            segments = served_segments.get((book, chapter, verse))
        if segments is None:
            segments = _verse_segments(item)
        selection = SelectionRange(
            start=_parse_boundary(payload.get("start"), "start", segments, verse),
            end=_parse_boundary(payload.get("end"), "end", segments, verse),
        )
        color = payload.get("color")
        if not isinstance(color, str) or not color.strip():
            color = config.default_color
        text = item.text if isinstance(item.text, str) else ""
        try:
            highlights = client.highlight_selection(
                book,
                chapter,
                verse,
                text,
                segments,
                selection,
                color.strip(),
                measurer,
            )
        except OffsetResolutionError as exc:
            _debug_log(f"highlight rejected: {exc}")
            raise HTTPException(status_code=400, detail={"code": exc.code, "message": str(exc)}) from exc
        except SyncError as exc:
            raise _sync_http_error(exc) from exc
        segments = _verse_segments(item)
        return JSONResponse(
            {
                "verse": verse,
                "highlight_count": len(highlights),
                "segments": [_segment_payload(segment) for segment in segments],
            }
        )

    @app.post("/api/chapters/{book}/{chapter}/notes")
    def api_save_note(
        book: str,
        chapter: int,
        payload: dict[str, object] = Body(...),
    ) -> JSONResponse:
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail={"code": "invalid_payload", "message": "Invalid payload."})
        note_type = payload.get("note_type")
        if note_type not in NOTE_TYPES:
            raise HTTPException(
                status_code=400,
                detail={"code": "invalid_payload", "message": "note_type must be quick, study or chapter."},
            )
        content = payload.get("content")
        if content is None:
            content = ""
        if not isinstance(content, str):
            raise HTTPException(status_code=400, detail={"code": "invalid_payload", "message": "content must be text."})
        verse = payload.get("verse")
        if note_type != "chapter" and (isinstance(verse, bool) or not isinstance(verse, int) or verse < 1):
            raise HTTPException(status_code=400, detail={"code": "invalid_payload", "message": "verse is required."})
        try:
            if note_type == "quick":
                note = client.save_quick_note(book, chapter, verse, content)  # type: ignore[arg-type]
            elif note_type == "study":
                note = client.save_study_note(book, chapter, verse, content)  # type: ignore[arg-type]
            else:
                note = client.save_chapter_note(book, chapter, content)
        except SyncError as exc:
            raise _sync_http_error(exc) from exc
        return JSONResponse(
            {
                "deleted": note is None,
                "note": serialize_note(note) if note is not None else None,
            }
        )

    return app
