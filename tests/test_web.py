from __future__ import annotations

import json

import pytest
from fastapi import HTTPException

from versemark.client import AnnotationSyncClient
from versemark.config import ClientConfig
from versemark.web import WebConfig, create_app

BASE = "http://api.test"
VERSE_16 = "For God so loved the world"
VERSE_17 = "For God sent not his Son into the world to condemn the world"


class DummyResponse:
    def __init__(self, status_code: int = 200, payload: object = None) -> None:
        self.status_code = status_code
        self.content = b"" if payload is None else json.dumps(payload).encode("utf-8")

    def json(self) -> object:
        return json.loads(self.content)


class DummySession:
    def __init__(self, routes: dict[tuple[str, str], object]) -> None:
        self.routes = routes
        self.calls: list[tuple[str, str, object]] = []
        self.closed = False

    def request(self, method, url, headers=None, json=None, params=None, timeout=None):
        path = url[len(BASE):]
        self.calls.append((method, path, json))
        handler = self.routes.get((method, path))
        if handler is None:
            return DummyResponse(404, {"error": "Not found"})
        if callable(handler):
            return handler(json)
        return handler

    def close(self) -> None:
        self.closed = True


def _find_route(app, path: str, method: str):
    method = method.upper()
    for route in app.router.routes:
        if getattr(route, "path", None) == path and method in getattr(route, "methods", set()):
            return route.endpoint
    raise RuntimeError(f"Route {method} {path} not found")


def _chapter_routes() -> dict[tuple[str, str], object]:
    return {
        ("GET", "/bible/verses/John/3"): DummyResponse(
            200,
            [
                {"book": "John", "chapter": 3, "verse": 17, "text": VERSE_17},
                {"book": "John", "chapter": 3, "verse": 16, "text": VERSE_16},
            ],
        ),
        ("GET", "/notes/chapter/John/3/notes"): DummyResponse(
            200,
            [
                {"id": 1, "book": "John", "chapter": 3, "verse": 16, "note_type": "quick", "content": "Love"},
                {
                    "id": 2,
                    "book": "John",
                    "chapter": 3,
                    "verse": 17,
                    "note_type": "study",
                    "content": "Theirs",
                    "user": {"is_self": False, "username": "ruth"},
                },
            ],
        ),
        ("GET", "/highlights/chapter/John/3"): DummyResponse(
            200,
            [
                {
                    "id": 7,
                    "book": "John",
                    "chapter": 3,
                    "verse": 16,
                    "start_offset": 0,
                    "end_offset": 3,
                    "color": "#FFFF00",
                }
            ],
        ),
    }


def _app(monkeypatch, routes, *, include_friends: bool = True):
    session = DummySession(routes)
    monkeypatch.setattr("versemark.client.requests.Session", lambda: session)
    client_config = ClientConfig(base_url=BASE, include_friends=include_friends)
    client = AnnotationSyncClient(client_config)
    app = create_app(WebConfig(client=client_config), client=client)
    return app, session


def test_index_serves_reader_page(monkeypatch) -> None:
    app, _ = _app(monkeypatch, {})
    html = _find_route(app, "/", "GET")()
    assert "versemark reader" in html


def test_chapter_endpoint_renders_segments_and_notes(monkeypatch) -> None:
    app, _ = _app(monkeypatch, _chapter_routes())
    chapter_route = _find_route(app, "/api/chapters/{book}/{chapter}", "GET")
    response = chapter_route("John", 3, refresh=False)
    assert response.status_code == 200
    payload = json.loads(response.body)
    assert [verse["verse"] for verse in payload["verses"]] == [16, 17]
    verse_16 = payload["verses"][0]
    assert [segment["text"] for segment in verse_16["segments"]] == ["For", " God so loved the world"]
    assert verse_16["segments"][0]["color"] == "#FFFF00"
    assert verse_16["notes"][0]["content"] == "Love"
    assert payload["verses"][1]["notes"][0]["user"]["username"] == "ruth"


def test_chapter_endpoint_hides_friends_when_configured(monkeypatch) -> None:
    app, _ = _app(monkeypatch, _chapter_routes(), include_friends=False)
    payload = json.loads(_find_route(app, "/api/chapters/{book}/{chapter}", "GET")("John", 3, refresh=False).body)
    assert payload["verses"][1]["notes"] == []


def test_chapter_endpoint_uses_cache_until_refresh(monkeypatch) -> None:
    app, session = _app(monkeypatch, _chapter_routes())
    chapter_route = _find_route(app, "/api/chapters/{book}/{chapter}", "GET")
    chapter_route("John", 3, refresh=False)
    first = len(session.calls)
    chapter_route("John", 3, refresh=False)
    assert len(session.calls) == first
    chapter_route("John", 3, refresh=True)
    assert len(session.calls) > first


def test_chapter_endpoint_maps_service_failures(monkeypatch) -> None:
    routes = {("GET", "/bible/verses/John/3"): DummyResponse(503, {"message": "down"})}
    app, _ = _app(monkeypatch, routes)
    with pytest.raises(HTTPException) as excinfo:
        _find_route(app, "/api/chapters/{book}/{chapter}", "GET")("John", 3, refresh=False)
    assert excinfo.value.status_code == 502
    assert excinfo.value.detail == {"code": "ServerError", "message": "down"}


def test_highlight_endpoint_resolves_served_segments(monkeypatch) -> None:
    posted: list[object] = []

    def _save(payload):
        posted.append(payload)
        return DummyResponse(
            200,
            [
                {"id": 7, "book": "John", "chapter": 3, "verse": 16, "start_offset": 0, "end_offset": 3, "color": "#FFFF00"},
                {"id": 8, "book": "John", "chapter": 3, "verse": 16, "start_offset": 8, "end_offset": 16, "color": "#00FF00"},
            ],
        )

    routes = _chapter_routes()
    routes[("POST", "/highlights")] = _save
    app, _ = _app(monkeypatch, routes)
    _find_route(app, "/api/chapters/{book}/{chapter}", "GET")("John", 3, refresh=False)

    highlight_route = _find_route(app, "/api/chapters/{book}/{chapter}/verses/{verse}/highlights", "POST")
    # Segment 1 is " God so loved the world"; offsets 5..13 select "so loved".
    response = highlight_route(
        "John",
        3,
        16,
        payload={"start": {"segment": 1, "offset": 5}, "end": {"segment": 1, "offset": 13}, "color": "#00FF00"},
    )
    assert posted[0]["start_offset"] == 8
    assert posted[0]["end_offset"] == 16
    payload = json.loads(response.body)
    assert payload["highlight_count"] == 2
    assert [segment["text"] for segment in payload["segments"]] == ["For", " God ", "so loved", " the world"]


def test_highlight_endpoint_rejects_empty_selection(monkeypatch) -> None:
    app, session = _app(monkeypatch, _chapter_routes())
    _find_route(app, "/api/chapters/{book}/{chapter}", "GET")("John", 3, refresh=False)
    highlight_route = _find_route(app, "/api/chapters/{book}/{chapter}/verses/{verse}/highlights", "POST")
    with pytest.raises(HTTPException) as excinfo:
        highlight_route(
            "John", 3, 16, payload={"start": {"segment": 1, "offset": 2}, "end": {"segment": 1, "offset": 2}}
        )
    assert excinfo.value.status_code == 400
    assert excinfo.value.detail["code"] == "empty_selection"
    assert not any(method == "POST" for method, _, _ in session.calls)


def test_highlight_endpoint_reports_stale_segments(monkeypatch) -> None:
    app, _ = _app(monkeypatch, _chapter_routes())
    _find_route(app, "/api/chapters/{book}/{chapter}", "GET")("John", 3, refresh=False)
    highlight_route = _find_route(app, "/api/chapters/{book}/{chapter}/verses/{verse}/highlights", "POST")
    with pytest.raises(HTTPException) as excinfo:
        highlight_route(
            "John", 3, 16, payload={"start": {"segment": 0, "offset": 0}, "end": {"segment": 9, "offset": 1}}
        )
    assert excinfo.value.status_code == 409


def test_highlight_endpoint_requires_loaded_verse(monkeypatch) -> None:
    app, _ = _app(monkeypatch, {})
    highlight_route = _find_route(app, "/api/chapters/{book}/{chapter}/verses/{verse}/highlights", "POST")
    with pytest.raises(HTTPException) as excinfo:
        highlight_route("John", 3, 16, payload={"start": {"segment": 0, "offset": 0}, "end": {"segment": 0, "offset": 1}})
    assert excinfo.value.status_code == 404


def test_note_endpoint_saves_and_deletes(monkeypatch) -> None:
    replies = iter(
        [
            DummyResponse(200, {"note": {"id": 11, "content": "Love"}}),
            DummyResponse(200, {"note": {"id": 11, "content": ""}}),
        ]
    )
    routes = {("POST", "/notes/quick"): lambda payload: next(replies)}
    app, _ = _app(monkeypatch, routes)
    note_route = _find_route(app, "/api/chapters/{book}/{chapter}/notes", "POST")

    saved = json.loads(note_route("John", 3, payload={"note_type": "quick", "verse": 16, "content": "Love"}).body)
    assert saved["deleted"] is False
    assert saved["note"]["id"] == 11
    assert app.state.store.own_note("John", 3, 16, "quick").content == "Love"

    removed = json.loads(note_route("John", 3, payload={"note_type": "quick", "verse": 16, "content": "  "}).body)
    assert removed == {"deleted": True, "note": None}
    assert app.state.store.own_note("John", 3, 16, "quick") is None


def test_note_endpoint_validates_payload(monkeypatch) -> None:
    app, _ = _app(monkeypatch, {})
    note_route = _find_route(app, "/api/chapters/{book}/{chapter}/notes", "POST")
    with pytest.raises(HTTPException) as excinfo:
        note_route("John", 3, payload={"note_type": "margin", "content": "x"})
    assert excinfo.value.status_code == 400
    with pytest.raises(HTTPException) as excinfo:
        note_route("John", 3, payload={"note_type": "study", "content": "x"})
    assert excinfo.value.status_code == 400


def test_note_endpoint_maps_auth_errors(monkeypatch) -> None:
    app, _ = _app(monkeypatch, {("POST", "/notes/chapter"): DummyResponse(401, {})})
    note_route = _find_route(app, "/api/chapters/{book}/{chapter}/notes", "POST")
    with pytest.raises(HTTPException) as excinfo:
        note_route("John", 3, payload={"note_type": "chapter", "content": "Intro"})
    assert excinfo.value.status_code == 401
    assert excinfo.value.detail["code"] == "AuthError"


def test_highlight_endpoint_rejects_selection_spanning_verses(monkeypatch) -> None:
    app, session = _app(monkeypatch, _chapter_routes())
    _find_route(app, "/api/chapters/{book}/{chapter}", "GET")("John", 3, refresh=False)
    highlight_route = _find_route(app, "/api/chapters/{book}/{chapter}/verses/{verse}/highlights", "POST")
    with pytest.raises(HTTPException) as excinfo:
        highlight_route(
            "John",
            3,
            16,
            payload={
                "start": {"verse": 16, "segment": 0, "offset": 2},
                "end": {"verse": 17, "segment": 0, "offset": 20},
            },
        )
    assert excinfo.value.status_code == 400
    assert excinfo.value.detail["code"] == "detached_container"
    assert not any(method == "POST" for method, _, _ in session.calls)


def test_reader_page_keeps_selections_within_one_verse(monkeypatch) -> None:
    app, _ = _app(monkeypatch, {})
    html = _find_route(app, "/", "GET")()
    assert "verseOf(range.endContainer) !== verseEl" in html
    assert "Element endpoints count child nodes" in html


def test_debug_log_reports_rejected_highlights(monkeypatch, capsys) -> None:
    monkeypatch.setattr("versemark.web._DEBUG_LOG", True)
    app, _ = _app(monkeypatch, _chapter_routes())
    _find_route(app, "/api/chapters/{book}/{chapter}", "GET")("John", 3, refresh=False)
    highlight_route = _find_route(app, "/api/chapters/{book}/{chapter}/verses/{verse}/highlights", "POST")
    with pytest.raises(HTTPException):
        highlight_route(
            "John", 3, 16, payload={"start": {"segment": 1, "offset": 2}, "end": {"segment": 1, "offset": 2}}
        )
    assert "[versemark web debug] highlight rejected" in capsys.readouterr().out
