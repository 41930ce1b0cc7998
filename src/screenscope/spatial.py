"""Spatial association of design notes with screens.

Frames are put into reading order (rows top to bottom, left to right
within a row) and every note is attached to its nearest frame by
edge-to-edge rectangle distance, provided it is close enough.

Complexity is O(frames x notes); design files carry tens of each, so no
spatial index is used.
"""

import logging
import math
from typing import Any, Iterable, Optional, Sequence

from .models import (
    Association,
    AssociationResult,
    BoundingBox,
    DesignFrame,
    Note,
    Screen,
    node_id_to_filename,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_DISTANCE = 500.0
DEFAULT_ROW_TOLERANCE = 50.0


def rectangle_distance(a: BoundingBox, b: BoundingBox) -> float:
    """Edge-to-edge distance between two rectangles.

    Returns 0 when the rectangles overlap or touch, otherwise the Euclidean
    distance between their nearest edges.
    """
    overlaps = not (
        a.right < b.left
        or b.right < a.left
        or a.bottom < b.top
        or b.bottom < a.top
    )
    if overlaps:
        return 0.0

    horizontal_gap = max(0.0, b.left - a.right, a.left - b.right)
    vertical_gap = max(0.0, b.top - a.bottom, a.top - b.bottom)
    return math.sqrt(horizontal_gap ** 2 + vertical_gap ** 2)


def order_frames(
    frames: Iterable[DesignFrame],
    row_tolerance: float = DEFAULT_ROW_TOLERANCE,
) -> list[DesignFrame]:
    """Sort frames into reading order.

    Frames whose top edges lie within ``row_tolerance`` of a row's first
    frame share that row; rows run top to bottom and frames within a row
    left to right. Frames without a bounding box come last, by id.
    """
    frames = list(frames)
    positioned = [f for f in frames if f.bounding_box is not None]
    unpositioned = sorted((f for f in frames if f.bounding_box is None), key=lambda f: f.id)

    positioned.sort(key=lambda f: (f.bounding_box.top, f.bounding_box.left, f.id))

    rows: list[list[DesignFrame]] = []
    for frame in positioned:
        if rows and frame.bounding_box.top - rows[-1][0].bounding_box.top <= row_tolerance:
            rows[-1].append(frame)
        else:
            rows.append([frame])

    ordered: list[DesignFrame] = []
    for row in rows:
        ordered.extend(sorted(row, key=lambda f: (f.bounding_box.left, f.id)))
    ordered.extend(unpositioned)
    return ordered


def _nearest_frame(
    note: Note,
    frames: Sequence[DesignFrame],
) -> tuple[Optional[DesignFrame], float]:
    """Closest frame to *note*; the first frame wins on equal distance."""
    best: Optional[DesignFrame] = None
    best_distance = math.inf
    for frame in frames:
        if frame.bounding_box is None:
            continue
        distance = rectangle_distance(note.bounding_box, frame.bounding_box)
        if distance < best_distance:
            best = frame
            best_distance = distance
    return best, best_distance


def build_screen_url(file_key: str, node_id: str) -> str:
    return f"https://www.figma.com/design/{file_key}?node-id={node_id_to_filename(node_id)}"


def associate(
    frames: Sequence[DesignFrame],
    notes: Sequence[Note],
    max_distance: float = DEFAULT_MAX_DISTANCE,
    row_tolerance: float = DEFAULT_ROW_TOLERANCE,
    file_key: str = "",
) -> AssociationResult:
    """Attach each note to at most one screen.

    Args:
        frames: Raw frames from the design source, any order.
        notes: Notes to place. Notes without a bounding box are unassociated.
        max_distance: Notes farther than this from every frame stay unassociated.
        row_tolerance: Row band used for reading order.
        file_key: When given, screens carry a link back to the design file.

    Returns:
        Screens in reading order with their note ids sorted by ascending
        distance, plus the ids of notes that matched no screen.
    """
    ordered = order_frames(list(frames), row_tolerance)

    per_frame: dict[str, list[Association]] = {frame.id: [] for frame in ordered}
    associations: list[Association] = []
    unassociated: list[str] = []

    for note in notes:
        if note.bounding_box is None:
            unassociated.append(note.id)
            continue

        frame, distance = _nearest_frame(note, ordered)
        if frame is None or distance > max_distance:
            unassociated.append(note.id)
            continue

        association = Association(note_id=note.id, screen_id=frame.id, distance=distance)
        per_frame[frame.id].append(association)
        associations.append(association)

    total = len(ordered)
    screens = []
    for index, frame in enumerate(ordered, start=1):
        # sorted() is stable, so equal distances keep note input order.
        matched = sorted(per_frame[frame.id], key=lambda a: a.distance)
        screens.append(
            Screen(
                id=frame.id,
                name=frame.name,
                bounding_box=frame.bounding_box,
                associated_note_ids=tuple(a.note_id for a in matched),
                order=index,
                total=total,
                section_name=frame.section_name,
                url=build_screen_url(file_key, frame.id) if file_key else "",
            )
        )

    logger.info(
        "Associated %d/%d notes with %d screens",
        len(associations), len(notes), len(screens),
        extra={"unassociated": len(unassociated)},
    )
    return AssociationResult(
        screens=screens,
        unassociated_note_ids=unassociated,
        associations=associations,
    )


# ---------------------------------------------------------------------------
# Raw node helpers
# ---------------------------------------------------------------------------

def extract_note_text(node: dict[str, Any]) -> str:
    """Text of the first TEXT descendant (depth-first), else the node name."""
    found = _first_text(node)
    if found:
        return found
    return node.get("name") or ""


def _first_text(node: dict[str, Any]) -> Optional[str]:
    if node.get("type") == "TEXT" and node.get("characters"):
        return node["characters"]
    for child in node.get("children") or []:
        text = _first_text(child)
        if text:
            return text
    return None


def notes_text_for_screen(screen: Screen, notes_by_id: dict[str, Note]) -> str:
    """Markdown bullet list of a screen's notes, nearest first."""
    lines = []
    for note_id in screen.associated_note_ids:
        note = notes_by_id.get(note_id)
        if note and note.text:
            lines.append(f"- {note.text}")
    return "\n".join(lines)
