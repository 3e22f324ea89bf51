from __future__ import annotations

import argparse
import sys
from importlib import metadata
from pathlib import Path

import tomllib
import uvicorn
from rich.console import Console
from rich.errors import StyleSyntaxError
from rich.style import Style
from rich.text import Text

from .client import AnnotationSyncClient, AuthError, SyncError, set_debug_logging
from .config import ClientConfig, load_client_config
from .logging_utils import build_uvicorn_log_config
from .models import Note, Verse
from .render import build_render_plan, visible_highlights
from .store import AnnotationStore
from .web import WebConfig, create_app
from .web import set_debug_logging as set_web_debug_logging


def _read_local_version() -> str | None:
    try:
        pyproject_path = Path(__file__).resolve().parents[2] / "pyproject.toml"
    except IndexError:  # pragma: no cover
        return None
    try:
        with pyproject_path.open("rb") as fh:
            data = tomllib.load(fh)
    except (FileNotFoundError, tomllib.TOMLDecodeError):
        return None
    return data.get("project", {}).get("version")


try:
    __version__ = metadata.version("versemark")
except metadata.PackageNotFoundError:
    __version__ = _read_local_version() or "0.0.0+unknown"


def _add_common_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"versemark {__version__}",
    )
    parser.add_argument(
        "--backend-url",
        help="Base URL of the note/highlight service (default: http://localhost:5001).",
    )
    parser.add_argument("--token", help="Bearer token for the service.")
    parser.add_argument(
        "--config",
        help="Path to a JSON config file (default: ~/.config/versemark/config.json).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        help="Request timeout in seconds.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Print request-level debug messages.",
    )


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value!r}") from exc
    if number < 1:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value!r}")
    return number


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="versemark",
        description=(
            "Bible reading annotations: read a chapter with highlights and notes, "
            "save notes and highlights, or serve the local reader."
        ),
        epilog="Commands: read, note, highlight, bookmark, bookmarks, settings, web.",
    )
    _add_common_flags(ap)
    return ap


def build_read_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="versemark read",
        description="Print a chapter with its highlights and notes.",
    )
    _add_common_flags(ap)
    ap.add_argument("book")
    ap.add_argument("chapter", type=_positive_int)
    friends = ap.add_mutually_exclusive_group()
    friends.add_argument(
        "--friends",
        dest="include_friends",
        action="store_true",
        default=None,
        help="Show friends' notes and highlights.",
    )
    friends.add_argument(
        "--no-friends",
        dest="include_friends",
        action="store_false",
        help="Show only your own notes and highlights.",
    )
    return ap


def build_note_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="versemark note",
        description="Save a quick, study or chapter note. Empty content deletes the note.",
    )
    _add_common_flags(ap)
    ap.add_argument("note_type", choices=["quick", "study", "chapter"])
    ap.add_argument("book")
    ap.add_argument("chapter", type=_positive_int)
    ap.add_argument("content", help="Note text; pass \"\" to delete.")
    ap.add_argument("--verse", type=_positive_int, help="Verse number (quick and study notes).")
    return ap


def build_highlight_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="versemark highlight",
        description="Highlight part of a verse, by offsets or by matching text.",
    )
    _add_common_flags(ap)
    ap.add_argument("book")
    ap.add_argument("chapter", type=_positive_int)
    ap.add_argument("verse", type=_positive_int)
    ap.add_argument("--start", type=int, help="Start offset (inclusive).")
    ap.add_argument("--end", type=int, help="End offset (exclusive).")
    ap.add_argument("--match", help="Highlight the first occurrence of this text in the verse.")
    ap.add_argument("--color", default="#FFFF00", help="Highlight color (default: #FFFF00).")
    return ap


def build_bookmark_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="versemark bookmark",
        description="Bookmark a verse, or remove its bookmark.",
    )
    _add_common_flags(ap)
    ap.add_argument("book")
    ap.add_argument("chapter", type=_positive_int)
    ap.add_argument("verse", type=_positive_int)
    ap.add_argument("--remove", action="store_true", help="Remove the bookmark instead.")
    return ap


def build_bookmarks_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="versemark bookmarks", description="List bookmarks.")
    _add_common_flags(ap)
    return ap


def build_settings_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="versemark settings",
        description="Change whether you see friends' notes and share yours with them.",
    )
    _add_common_flags(ap)
    view = ap.add_mutually_exclusive_group()
    view.add_argument("--view-friends", dest="view_friends", action="store_true", default=None, help="Show friends' notes.")
    view.add_argument("--hide-friends", dest="view_friends", action="store_false", help="Hide friends' notes.")
    share = ap.add_mutually_exclusive_group()
    share.add_argument("--share", dest="share", action="store_true", default=None, help="Share your notes with friends.")
    share.add_argument("--no-share", dest="share", action="store_false", help="Stop sharing your notes.")
    return ap


def build_web_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="versemark web",
        description="Serve the local reader bridge.",
    )
    _add_common_flags(ap)
    ap.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1).")
    ap.add_argument("--port", type=int, default=8765, help="Bind port (default: 8765).")
    ap.add_argument(
        "--no-friends",
        dest="include_friends",
        action="store_false",
        default=None,
        help="Hide friends' notes and highlights.",
    )
    return ap


def _config_from_args(args: argparse.Namespace) -> ClientConfig:
    config_path = Path(args.config).expanduser() if args.config else None
    return load_client_config(
        config_path,
        overrides={
            "base_url": args.backend_url,
            "token": args.token,
            "timeout": args.timeout,
            "include_friends": getattr(args, "include_friends", None),
        },
    )


def _client_from_args(args: argparse.Namespace) -> AnnotationSyncClient:
    if args.debug:
        set_debug_logging(True)
    return AnnotationSyncClient(_config_from_args(args), AnnotationStore.create())


def _highlight_style(color: str) -> Style:
    try:
        return Style.parse(f"black on {color}")
    except StyleSyntaxError:
        return Style(reverse=True)


def _render_verse(
    console: Console,
    client: AnnotationSyncClient,
    verse: Verse,
    include_friends: bool,
) -> None:
    store = client.store
    highlights = visible_highlights(
        store.highlights(verse.book, verse.chapter, verse.verse),
        include_friends=include_friends,
    )
    line = Text()
    line.append(f"{verse.verse:>3} ", style="dim")
    for segment in build_render_plan(verse.text, highlights):
        if segment.color is None:
            line.append(segment.text)
        else:
            line.append(segment.text, style=_highlight_style(segment.color))
    if store.is_bookmarked(verse.book, verse.chapter, verse.verse):
        line.append(" *", style="bold yellow")
    console.print(line)
    for note in store.notes(verse.book, verse.chapter, verse.verse):
        if not include_friends and not note.owner.is_self:
            continue
        console.print(_note_line(note, indent=6))


def _note_line(note: Note, *, indent: int) -> Text:
    author = "you" if note.owner.is_self else (note.owner.username or "friend")
    line = Text(" " * indent)
    line.append(f"[{note.note_type}] ", style="cyan")
    line.append(f"{author}: ", style="bold" if note.owner.is_self else "magenta")
    line.append(note.content)
    return line


def _run_read(args: argparse.Namespace, console: Console) -> int:
    with _client_from_args(args) as client:
        include_friends = client.config.include_friends
        verses = client.fetch_verses(args.book, args.chapter)
        client.fetch_chapter(args.book, args.chapter)
        client.fetch_bookmarks()
        console.print(Text(f"{args.book} {args.chapter}", style="bold"))
        for note in client.store.chapter_notes(args.book, args.chapter):
            if not include_friends and not note.owner.is_self:
                continue
            console.print(_note_line(note, indent=0))
        if not verses:
            console.print("No verses returned.", style="yellow")
        for verse in verses:
            _render_verse(console, client, verse, include_friends)
    return 0


def _run_note(args: argparse.Namespace, console: Console) -> int:
    if args.note_type != "chapter" and args.verse is None:
        raise ValueError(f"--verse is required for {args.note_type} notes.")
    with _client_from_args(args) as client:
        if args.note_type == "quick":
            note = client.save_quick_note(args.book, args.chapter, args.verse, args.content)
        elif args.note_type == "study":
            note = client.save_study_note(args.book, args.chapter, args.verse, args.content)
        else:
            note = client.save_chapter_note(args.book, args.chapter, args.content)
    where = f"{args.book} {args.chapter}" + (f":{args.verse}" if args.note_type != "chapter" else "")
    if note is None:
        console.print(f"Deleted {args.note_type} note for {where}.")
    else:
        console.print(f"Saved {args.note_type} note for {where}.")
    return 0


def _locate_offsets(args: argparse.Namespace, client: AnnotationSyncClient) -> tuple[int, int]:
    if args.match is not None:
        if args.start is not None or args.end is not None:
            raise ValueError("Use either --match or --start/--end, not both.")
        verse = next(
            (item for item in client.fetch_verses(args.book, args.chapter) if item.verse == args.verse),
            None,
        )
        if verse is None or not isinstance(verse.text, str):
            raise ValueError(f"Verse not found: {args.book} {args.chapter}:{args.verse}")
        index = verse.text.find(args.match) if args.match else -1
        if index < 0:
            raise ValueError(f"Text not found in verse: {args.match!r}")
        return index, index + len(args.match)
    if args.start is None or args.end is None:
        raise ValueError("Provide --start and --end, or --match.")
    return args.start, args.end


def _run_highlight(args: argparse.Namespace, console: Console) -> int:
    with _client_from_args(args) as client:
        start, end = _locate_offsets(args, client)
        highlights = client.save_highlight(args.book, args.chapter, args.verse, start, end, args.color)
    console.print(
        f"Highlighted {args.book} {args.chapter}:{args.verse} [{start}, {end}); "
        f"{len(highlights)} highlight(s) on this verse."
    )
    return 0


def _run_bookmark(args: argparse.Namespace, console: Console) -> int:
    with _client_from_args(args) as client:
        client.fetch_bookmarks()
        where = f"{args.book} {args.chapter}:{args.verse}"
        if args.remove:
            if client.remove_bookmark(args.book, args.chapter, args.verse):
                console.print(f"Removed bookmark {where}.")
                return 0
            console.print(f"No bookmark at {where}.", style="yellow")
            return 1
        if client.store.is_bookmarked(args.book, args.chapter, args.verse):
            console.print(f"{where} is already bookmarked.")
            return 0
        text_preview = None
        for verse in client.fetch_verses(args.book, args.chapter):
            if verse.verse == args.verse and isinstance(verse.text, str):
                text_preview = verse.text
        client.add_bookmark(args.book, args.chapter, args.verse, text_preview)
    console.print(f"Bookmarked {where}.")
    return 0


def _run_bookmarks(args: argparse.Namespace, console: Console) -> int:
    with _client_from_args(args) as client:
        bookmarks = client.fetch_bookmarks()
    if not bookmarks:
        console.print("No bookmarks yet.")
        return 0
    for bookmark in client.store.bookmarks():
        line = Text()
        line.append(f"{bookmark.book} {bookmark.chapter}:{bookmark.verse}", style="bold")
        if bookmark.text_preview:
            preview = bookmark.text_preview
            if len(preview) > 60:
                preview = preview[:57] + "..."
            line.append(f"  {preview}")
        console.print(line)
    return 0


def _run_settings(args: argparse.Namespace, console: Console) -> int:
    if args.view_friends is None and args.share is None:
        raise ValueError("Pass --view-friends/--hide-friends and/or --share/--no-share.")
    with _client_from_args(args) as client:
        settings = client.update_note_settings(
            can_view_friend_notes=args.view_friends,
            share_notes_with_friends=args.share,
        )
    console.print(f"Friends' notes: {'shown' if settings.can_view_friend_notes else 'hidden'}")
    console.print(f"Sharing your notes: {'on' if settings.share_notes_with_friends else 'off'}")
    return 0


def _run_web(args: argparse.Namespace) -> None:
    if args.debug:
        set_debug_logging(True)
        set_web_debug_logging(True)
    config = WebConfig(client=_config_from_args(args))
    app = create_app(config)
    print(f"Serving versemark reader against {config.client.base_url}")
    print(f"Web URL: http://{args.host}:{args.port}/")
    print("Press Ctrl+C to stop.\n")
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_config=build_uvicorn_log_config(debug=args.debug),
    )


_COMMANDS = {
    "read": (build_read_parser, _run_read),
    "note": (build_note_parser, _run_note),
    "highlight": (build_highlight_parser, _run_highlight),
    "bookmark": (build_bookmark_parser, _run_bookmark),
    "bookmarks": (build_bookmarks_parser, _run_bookmarks),
    "settings": (build_settings_parser, _run_settings),
}


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    if argv and argv[0] == "web":
        web_args = build_web_parser().parse_args(argv[1:])
        _run_web(web_args)
        return 0

    if argv and argv[0] in _COMMANDS:
        build, run = _COMMANDS[argv[0]]
        args = build().parse_args(argv[1:])
        console = Console()
        err_console = Console(stderr=True)
        try:
            return run(args, console)
        except AuthError as exc:
            err_console.print(f"{exc.message} (set VERSEMARK_TOKEN or pass --token)", style="red")
            return 1
        except SyncError as exc:
            err_console.print(exc.message, style="red")
            return 1
        except ValueError as exc:
            err_console.print(str(exc), style="red")
            return 2

    parser = build_parser()
    if not argv:
        parser.print_help()
        return 0
    parser.parse_args(argv)
    parser.error(f"unknown command: {argv[0]}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
