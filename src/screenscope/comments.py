"""Design comment threads: grouping, placement on screens, and notes text.

A thread is a top-level comment plus its replies. Threads are placed on a
screen in this order of preference:

1. the comment is pinned to the frame itself;
2. the comment is pinned to a node inside the frame's subtree;
3. the comment sits on the canvas within ``proximity`` of the frame,
   measured edge to edge like notes.

Threads that match no screen are reported but otherwise ignored.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional, Sequence

from .models import BoundingBox, Comment, CommentThread, DesignFrame
from .spatial import rectangle_distance

logger = logging.getLogger(__name__)

DEFAULT_COMMENT_PROXIMITY = 50.0


@dataclass
class CommentPlacement:
    """Threads per frame id, newest first, plus the threads left over."""
    by_frame: dict[str, list[CommentThread]] = field(default_factory=dict)
    unmatched: list[CommentThread] = field(default_factory=list)

    @property
    def matched_count(self) -> int:
        return sum(len(threads) for threads in self.by_frame.values())


def _created(comment: Comment) -> float:
    return comment.created_at.timestamp() if comment.created_at else -math.inf


def group_comment_threads(comments: Iterable[Comment]) -> list[CommentThread]:
    """Group flat comments into threads.

    Replies are ordered oldest first; threads newest first by their
    top-level comment. Replies whose parent is missing are dropped.
    """
    comments = list(comments)
    replies: dict[str, list[Comment]] = {}
    for comment in comments:
        if comment.parent_id:
            replies.setdefault(comment.parent_id, []).append(comment)

    threads = [
        CommentThread(
            parent=comment,
            replies=tuple(sorted(replies.get(comment.id, []), key=_created)),
        )
        for comment in comments
        if not comment.parent_id
    ]
    threads.sort(key=lambda thread: _created(thread.parent), reverse=True)
    return threads


def _contains_node(node: Optional[dict[str, Any]], node_id: str) -> bool:
    if not node:
        return False
    if node.get("id") == node_id:
        return True
    return any(_contains_node(child, node_id) for child in node.get("children") or [])


def _frame_for_thread(
    thread: CommentThread,
    frames: Sequence[DesignFrame],
    proximity: float,
) -> Optional[DesignFrame]:
    comment = thread.parent
    if comment.node_id:
        for frame in frames:
            if frame.id == comment.node_id:
                return frame
        for frame in frames:
            if _contains_node(frame.node, comment.node_id):
                return frame
        return None

    if comment.point is None:
        return None
    point = BoundingBox(x=comment.point[0], y=comment.point[1], width=0, height=0)
    best: Optional[DesignFrame] = None
    best_distance = math.inf
    for frame in frames:
        if frame.bounding_box is None:
            continue
        distance = rectangle_distance(point, frame.bounding_box)
        if distance < best_distance:
            best, best_distance = frame, distance
    return best if best_distance <= proximity else None


def place_comment_threads(
    threads: Sequence[CommentThread],
    frames: Sequence[DesignFrame],
    proximity: float = DEFAULT_COMMENT_PROXIMITY,
) -> CommentPlacement:
    """Attach each thread to at most one frame."""
    placement = CommentPlacement()
    for thread in threads:
        frame = _frame_for_thread(thread, frames, proximity)
        if frame is None:
            placement.unmatched.append(thread)
        else:
            placement.by_frame.setdefault(frame.id, []).append(thread)

    logger.info(
        "Associated %d/%d comment threads with frames",
        placement.matched_count, len(threads),
    )
    return placement


def format_comment_threads(threads: Sequence[CommentThread]) -> str:
    """Markdown bullets: one per thread, replies nested beneath it."""
    lines = []
    for thread in threads:
        status = "✅ RESOLVED" if thread.is_resolved else "💬 OPEN"
        lines.append(f"- **@{thread.parent.author}** ({status}): {thread.parent.message}")
        for reply in thread.replies:
            lines.append(f"  - **@{reply.author}**: {reply.message}")
    return "\n".join(lines)


def frames_with_newer_comments(placement: CommentPlacement, cached_at: datetime) -> list[str]:
    """Frame ids holding a comment or reply created after *cached_at*."""
    stale = []
    for frame_id, threads in placement.by_frame.items():
        stamps = [t.last_activity for t in threads if t.last_activity]
        if stamps and max(stamps) > cached_at:
            stale.append(frame_id)
    return stale
