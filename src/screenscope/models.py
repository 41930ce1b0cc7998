"""Data model shared across the orchestration core.

Plain dataclasses: design inputs (frames, notes) are read-only, screens are
frozen once setup has associated notes with them, and result containers
are built up by the phase that owns them.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


@dataclass(frozen=True)
class BoundingBox:
    x: float
    y: float
    width: float
    height: float

    @property
    def left(self) -> float:
        return self.x

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def top(self) -> float:
        return self.y

    @property
    def bottom(self) -> float:
        return self.y + self.height

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["BoundingBox"]:
        """Build from a ``{x, y, width, height}`` mapping; None when incomplete."""
        if not data:
            return None
        try:
            return cls(
                x=float(data["x"]),
                y=float(data["y"]),
                width=float(data["width"]),
                height=float(data["height"]),
            )
        except (KeyError, TypeError, ValueError):
            return None


@dataclass(frozen=True)
class DesignFrame:
    """Raw frame metadata as delivered by the design source.

    ``node`` keeps the frame's raw subtree for the structural outline.
    """
    id: str
    name: str
    bounding_box: Optional[BoundingBox] = None
    section_name: Optional[str] = None
    node: Optional[dict] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class Note:
    """A positioned annotation in the design file."""
    id: str
    bounding_box: Optional[BoundingBox] = None
    text_blocks: tuple[str, ...] = ()
    name: str = "Note"

    @property
    def text(self) -> str:
        return "\n".join(block for block in self.text_blocks if block)


@dataclass(frozen=True)
class Comment:
    """A design-file comment.

    Pinned comments carry ``node_id`` (with an offset inside that node);
    canvas comments carry an absolute ``point``. Replies carry
    ``parent_id`` and no position of their own.
    """
    id: str
    message: str
    author: str = ""
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    parent_id: Optional[str] = None
    node_id: Optional[str] = None
    point: Optional[tuple[float, float]] = None


@dataclass(frozen=True)
class CommentThread:
    parent: Comment
    replies: tuple[Comment, ...] = ()

    @property
    def is_resolved(self) -> bool:
        return self.parent.resolved_at is not None

    @property
    def last_activity(self) -> Optional[datetime]:
        stamps = [c.created_at for c in (self.parent, *self.replies) if c.created_at]
        return max(stamps) if stamps else None


@dataclass(frozen=True)
class DesignFrameSet:
    frames: list[DesignFrame]
    notes: list[Note]


def node_id_to_filename(node_id: str) -> str:
    """Node ids use ``123:456``; filenames and URLs use ``123-456``."""
    return node_id.replace(":", "-")


@dataclass(frozen=True)
class Screen:
    """A design frame with its associated notes, in reading order.

    ``order`` is 1-based; ``total`` is the number of screens in the run.
    """
    id: str
    name: str
    bounding_box: Optional[BoundingBox] = None
    associated_note_ids: tuple[str, ...] = ()
    order: int = 0
    total: int = 0
    section_name: Optional[str] = None
    url: str = ""

    @property
    def position(self) -> str:
        return f"{self.order} of {self.total}"


@dataclass(frozen=True)
class Association:
    note_id: str
    screen_id: str
    distance: float


@dataclass
class AssociationResult:
    screens: list[Screen]
    unassociated_note_ids: list[str]
    associations: list[Association] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Cache-side records
# ---------------------------------------------------------------------------

class ArtifactType(str, Enum):
    """Per-screen artifacts; the value is the file suffix on disk."""
    IMAGE = "png"
    ANALYSIS = "analysis.md"
    NOTES = "notes.md"

    @property
    def is_binary(self) -> bool:
        return self is ArtifactType.IMAGE


@dataclass(frozen=True)
class DesignFileMetadata:
    """Producer-side metadata for one design file."""
    file_key: str
    last_touched_at: datetime
    version: str = ""
    last_touched_by: str = ""
    name: str = ""


@dataclass(frozen=True)
class CacheMetadata:
    file_key: str
    last_touched_at: datetime
    cached_at: datetime
    version: str = ""
    last_touched_by: str = ""


@dataclass(frozen=True)
class ScreenImage:
    screen_id: str
    data: bytes
    mime_type: str = "image/png"


# ---------------------------------------------------------------------------
# Analysis results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AnalyzedScreen:
    screen: Screen
    analysis: str


@dataclass
class ScreenAnalysisResult:
    """Outcome of one orchestrator pass, lists in screen order."""
    analyzed: list[AnalyzedScreen] = field(default_factory=list)
    cached: list[AnalyzedScreen] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def available(self) -> list[AnalyzedScreen]:
        """Analyzed and cached screens merged back into screen order."""
        merged = self.analyzed + self.cached
        return sorted(merged, key=lambda item: item.screen.order)
