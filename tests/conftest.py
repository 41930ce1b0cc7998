"""Shared fixtures and in-memory collaborators for the screenscope test suite.

The fakes record every call so tests can assert on batching, write counts
and prompt contents without any network access.
"""

import os

os.environ["LOG_FORMAT"] = "text"

from datetime import datetime, timezone
from typing import Optional, Sequence

import pytest

from screenscope.circuit_breaker import reset_all
from screenscope.collaborators import LLMRequest
from screenscope.config import Settings
from screenscope.document import markdown_to_nodes
from screenscope.file_cache import FileCache, reset_locks
from screenscope.models import (
    BoundingBox,
    Comment,
    DesignFileMetadata,
    DesignFrame,
    DesignFrameSet,
    Note,
    Screen,
    ScreenImage,
)

FILE_KEY = "abc123XYZ"
TOUCHED_AT = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

def make_frame(frame_id: str = "1:1", x: float = 0, y: float = 0, w: float = 100, h: float = 100, **overrides) -> DesignFrame:
    defaults = dict(
        id=frame_id,
        name=f"Screen {frame_id}",
        bounding_box=BoundingBox(x, y, w, h),
    )
    defaults.update(overrides)
    return DesignFrame(**defaults)


def make_note(note_id: str = "9:1", x: float = 0, y: float = 0, w: float = 20, h: float = 20, text: str = "note", **overrides) -> Note:
    defaults = dict(
        id=note_id,
        bounding_box=BoundingBox(x, y, w, h),
        text_blocks=(text,),
    )
    defaults.update(overrides)
    return Note(**defaults)


def make_comment(comment_id: str = "c1", message: str = "Looks good", created_at: datetime = TOUCHED_AT, **overrides) -> Comment:
    defaults = dict(id=comment_id, message=message, author="designer", created_at=created_at)
    defaults.update(overrides)
    return Comment(**defaults)


def make_screen(screen_id: str = "1:1", order: int = 1, total: int = 1, **overrides) -> Screen:
    defaults = dict(
        id=screen_id,
        name=f"Screen {screen_id}",
        bounding_box=BoundingBox(0, 0, 100, 100),
        order=order,
        total=total,
    )
    defaults.update(overrides)
    return Screen(**defaults)


def make_metadata(touched_at: datetime = TOUCHED_AT, **overrides) -> DesignFileMetadata:
    defaults = dict(file_key=FILE_KEY, last_touched_at=touched_at, version="42", last_touched_by="designer")
    defaults.update(overrides)
    return DesignFileMetadata(**defaults)


def scope_text(unanswered: int = 0, answered: int = 0) -> str:
    """Scope analysis body with the given number of question bullets."""
    lines = ["### Login Flow", "", "- ☐ Email/password login", "- ⏬ Remember me"]
    lines += [f"- ❓ Open question {i}?" for i in range(unanswered)]
    lines += [f"- 💬 Answered question {i}? Yes." for i in range(answered)]
    lines += ["", "### Remaining Questions", "", "- ❌ Social login"]
    return "\n".join(lines)


STORIES_TEXT = (
    "## Shell Stories\n\n"
    "- `st001` **Login** - Users can sign in\n"
    "  - SCREENS: [Login](https://www.figma.com/design/abc123XYZ?node-id=1-1)\n"
    "- `st002` **Remember me** - Users stay signed in\n"
)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeDesignSource:
    def __init__(
        self,
        frames: Optional[list[DesignFrame]] = None,
        notes: Optional[list[Note]] = None,
        metadata: Optional[DesignFileMetadata] = None,
        missing_images: Sequence[str] = (),
        batch_error: Optional[Exception] = None,
        comments: Optional[list[Comment]] = None,
        comments_error: Optional[Exception] = None,
    ) -> None:
        self.frames = frames if frames is not None else [make_frame("1:1"), make_frame("1:2", x=300)]
        self.notes = notes if notes is not None else [make_note("9:1", x=10, y=120, text="Shows errors inline")]
        self.metadata = metadata or make_metadata()
        self.missing_images = set(missing_images)
        self.batch_error = batch_error
        self.comments = comments or []
        self.comments_error = comments_error
        self.batch_calls: list[list[str]] = []
        self.frame_calls: list[tuple[str, Optional[list[str]]]] = []

    def fetch_design_frames(self, file_key, node_ids=None):
        self.frame_calls.append((file_key, list(node_ids) if node_ids else None))
        return DesignFrameSet(frames=list(self.frames), notes=list(self.notes))

    def fetch_file_metadata(self, file_key):
        return self.metadata

    def fetch_comments(self, file_key):
        if self.comments_error is not None:
            raise self.comments_error
        return list(self.comments)

    def fetch_batched_artifacts(self, file_key, frame_ids):
        self.batch_calls.append(list(frame_ids))
        if self.batch_error is not None:
            raise self.batch_error
        return {
            frame_id: None if frame_id in self.missing_images
            else ScreenImage(screen_id=frame_id, data=f"png-{frame_id}".encode())
            for frame_id in frame_ids
        }


class FakeTracker:
    def __init__(self, markdown: str = "", write_error: Optional[Exception] = None, comment_error: Optional[Exception] = None) -> None:
        self.documents: dict[str, list] = {}
        self.default_markdown = markdown
        self.writes: list[tuple[str, list]] = []
        self.comments: list[tuple[str, str]] = []
        self.write_error = write_error
        self.comment_error = comment_error

    def get_target_document(self, item_id):
        if item_id not in self.documents:
            self.documents[item_id] = markdown_to_nodes(self.default_markdown)
        return list(self.documents[item_id])

    def write_target_document(self, item_id, content):
        if self.write_error is not None:
            raise self.write_error
        self.writes.append((item_id, list(content)))
        self.documents[item_id] = list(content)

    def post_secondary_channel_message(self, item_id, text):
        if self.comment_error is not None:
            raise self.comment_error
        self.comments.append((item_id, text))


class ScriptedGenerator:
    """Answers by request kind: screen analysis (has image), scope analysis, stories."""

    def __init__(
        self,
        screen_analysis: str = "Login form with email and password fields.",
        scope_analyses: Optional[list[str]] = None,
        stories: str = STORIES_TEXT,
    ) -> None:
        self.screen_analysis = screen_analysis
        self.scope_analyses = list(scope_analyses) if scope_analyses is not None else [scope_text()]
        self.stories = stories
        self.requests: list[LLMRequest] = []

    def _kind(self, request: LLMRequest) -> str:
        if request.image is not None:
            return "screen"
        if "shell stories" in request.system_prompt.lower():
            return "stories"
        return "scope"

    def requests_of(self, kind: str) -> list[LLMRequest]:
        return [r for r in self.requests if self._kind(r) == kind]

    def generate_text(self, request: LLMRequest) -> str:
        self.requests.append(request)
        kind = self._kind(request)
        if kind == "screen":
            return self.screen_analysis
        if kind == "stories":
            return self.stories
        if len(self.scope_analyses) > 1:
            return self.scope_analyses.pop(0)
        return self.scope_analyses[0]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _clean_registries():
    """Reset global breaker and lock registries between tests."""
    reset_all()
    reset_locks()
    yield
    reset_all()
    reset_locks()


@pytest.fixture()
def cache(tmp_path) -> FileCache:
    return FileCache(tmp_path / "cache")


@pytest.fixture()
def test_settings(tmp_path) -> Settings:
    return Settings(cache_dir=str(tmp_path / "cache"), analysis_max_workers=2)


@pytest.fixture()
def design() -> FakeDesignSource:
    return FakeDesignSource()


@pytest.fixture()
def generator() -> ScriptedGenerator:
    return ScriptedGenerator()
