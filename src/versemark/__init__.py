from .client import (
    AnnotationSyncClient,
    AuthError,
    NetworkError,
    ServerError,
    SyncError,
    ValidationError,
)
from .config import ClientConfig, load_client_config
from .models import Bookmark, Highlight, Note, Owner, Verse
from .offsets import (
    Boundary,
    DetachedContainer,
    EmptySelection,
    InvalidRange,
    OffsetResolutionError,
    SegmentTextMeasurer,
    SelectionRange,
    SoupTextMeasurer,
    resolve_offsets,
)
from .render import RenderPlan, RenderSegment, build_render_plan
from .store import AnnotationStore, StoreDisposedError

__all__ = [
    "AnnotationStore",
    "AnnotationSyncClient",
    "StoreDisposedError",
    "ClientConfig",
    "load_client_config",
    "Verse",
    "Note",
    "Highlight",
    "Owner",
    "Bookmark",
    "Boundary",
    "SelectionRange",
    "SoupTextMeasurer",
    "SegmentTextMeasurer",
    "resolve_offsets",
    "OffsetResolutionError",
    "EmptySelection",
    "InvalidRange",
    "DetachedContainer",
    "RenderPlan",
    "RenderSegment",
    "build_render_plan",
    "SyncError",
    "NetworkError",
    "AuthError",
    "ValidationError",
    "ServerError",
]
