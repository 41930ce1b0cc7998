"""Design-tool REST adapter.

Implements ``DesignSource`` on top of the Figma REST API: frames and notes
from file nodes, file metadata for cache validation, comment threads, and
batched PNG rendering of screens.
"""

import logging
from typing import Any, Optional, Sequence

import requests

from .config import Settings
from .exceptions import TransientCollaboratorError
from .file_cache import parse_timestamp
from .http_client import RestClient
from .models import (
    BoundingBox,
    Comment,
    DesignFileMetadata,
    DesignFrame,
    DesignFrameSet,
    Note,
    ScreenImage,
)
from .spatial import extract_note_text

logger = logging.getLogger(__name__)

NOTE_COMPONENT_NAME = "Note"
_CONTAINER_TYPES = frozenset({"CANVAS", "SECTION", "DOCUMENT"})


def _is_note(node: dict[str, Any]) -> bool:
    return node.get("type") == "INSTANCE" and node.get("name") == NOTE_COMPONENT_NAME


def _frame_from_node(node: dict[str, Any], section_name: Optional[str]) -> DesignFrame:
    return DesignFrame(
        id=node["id"],
        name=node.get("name") or "Unnamed",
        bounding_box=BoundingBox.from_dict(node.get("absoluteBoundingBox")),
        section_name=section_name,
        node=node,
    )


def _note_from_node(node: dict[str, Any]) -> Note:
    return Note(
        id=node["id"],
        bounding_box=BoundingBox.from_dict(node.get("absoluteBoundingBox")),
        text_blocks=(extract_note_text(node),),
        name=node.get("name") or NOTE_COMPONENT_NAME,
    )


def _comment_from_json(data: dict[str, Any]) -> Comment:
    """Comment from the REST payload.

    ``client_meta`` is either a frame offset (``node_id`` plus
    ``node_offset``) or an absolute canvas vector (``x``, ``y``).
    """
    meta = data.get("client_meta") or {}
    node_id = meta.get("node_id") if isinstance(meta, dict) else None
    point = None
    if isinstance(meta, dict) and not node_id and "x" in meta and "y" in meta:
        point = (float(meta["x"]), float(meta["y"]))
    user = data.get("user") or {}
    created_at = data.get("created_at")
    resolved_at = data.get("resolved_at")
    return Comment(
        id=str(data["id"]),
        message=data.get("message") or "",
        author=user.get("handle", "") if isinstance(user, dict) else "",
        created_at=parse_timestamp(created_at) if created_at else None,
        resolved_at=parse_timestamp(resolved_at) if resolved_at else None,
        parent_id=data.get("parent_id") or None,
        node_id=node_id or None,
        point=point,
    )


def expand_nodes(nodes: Sequence[dict[str, Any]]) -> DesignFrameSet:
    """Flatten pages and sections into frames and notes, deduplicated by id.

    FRAME nodes become screens, ``Note`` component instances become notes,
    and CANVAS/SECTION containers are expanded into their children. Other
    node types are ignored.
    """
    frames: dict[str, DesignFrame] = {}
    notes: dict[str, Note] = {}

    def visit(node: dict[str, Any], section_name: Optional[str]) -> None:
        node_type = node.get("type")
        if node_type == "FRAME":
            frames.setdefault(node["id"], _frame_from_node(node, section_name))
        elif _is_note(node):
            notes.setdefault(node["id"], _note_from_node(node))
        elif node_type in _CONTAINER_TYPES:
            child_section = node.get("name") if node_type == "SECTION" else section_name
            for child in node.get("children") or []:
                visit(child, child_section)

    for node in nodes:
        visit(node, None)

    logger.info("Expanded design nodes: %d frames, %d notes", len(frames), len(notes))
    return DesignFrameSet(frames=list(frames.values()), notes=list(notes.values()))


class FigmaClient:
    """``DesignSource`` over the Figma REST API.

    Args:
        token: Personal access token.
        api_url: REST base URL.
        image_scale: Render scale for screen images.
    """

    def __init__(
        self,
        token: str,
        api_url: str = "https://api.figma.com",
        image_scale: float = 1.0,
        timeout: int = 60,
        max_retries: int = 3,
    ) -> None:
        self._rest = RestClient(
            "design",
            api_url,
            headers={"X-Figma-Token": token},
            timeout=timeout,
            max_retries=max_retries,
        )
        self._image_scale = image_scale
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "FigmaClient":
        return cls(
            token=settings.figma_token,
            api_url=settings.figma_api_url,
            image_scale=settings.figma_image_scale,
            timeout=settings.http_timeout,
            max_retries=settings.http_max_retries,
        )

    def fetch_design_frames(
        self, file_key: str, node_ids: Optional[Sequence[str]] = None
    ) -> DesignFrameSet:
        if node_ids:
            data = self._rest.get_json(
                f"/v1/files/{file_key}/nodes", params={"ids": ",".join(node_ids)}
            )
            nodes = [
                entry["document"]
                for entry in (data.get("nodes") or {}).values()
                if entry and entry.get("document")
            ]
        else:
            data = self._rest.get_json(f"/v1/files/{file_key}")
            nodes = [data.get("document") or {}]
        return expand_nodes(nodes)

    def fetch_file_metadata(self, file_key: str) -> DesignFileMetadata:
        data = self._rest.get_json(f"/v1/files/{file_key}/meta")
        meta = data.get("file") or data
        touched_by = meta.get("last_touched_by") or {}
        return DesignFileMetadata(
            file_key=file_key,
            last_touched_at=parse_timestamp(meta["last_touched_at"]),
            version=str(meta.get("version", "")),
            last_touched_by=touched_by.get("handle", "") if isinstance(touched_by, dict) else str(touched_by),
            name=meta.get("name", ""),
        )

    def fetch_comments(self, file_key: str) -> list[Comment]:
        """Every comment on the file, replies included, in API order."""
        data = self._rest.get_json(f"/v1/files/{file_key}/comments")
        comments = [_comment_from_json(item) for item in data.get("comments") or []]
        logger.info("Fetched %d comments from %s", len(comments), file_key)
        return comments

    def fetch_batched_artifacts(
        self, file_key: str, frame_ids: Sequence[str]
    ) -> dict[str, Optional[ScreenImage]]:
        """Render all frames in one API call, then download each image.

        A frame the API could not render, or whose download fails, maps to
        None. A failure of the render call itself raises.
        """
        if not frame_ids:
            return {}
        data = self._rest.get_json(
            f"/v1/images/{file_key}",
            params={"ids": ",".join(frame_ids), "format": "png", "scale": self._image_scale},
        )
        if data.get("err"):
            raise TransientCollaboratorError("design", f"image render failed: {data['err']}")

        urls: dict[str, Optional[str]] = data.get("images") or {}
        results: dict[str, Optional[ScreenImage]] = {}
        for frame_id in frame_ids:
            url = urls.get(frame_id)
            results[frame_id] = self._download(frame_id, url) if url else None
        missing = sum(1 for image in results.values() if image is None)
        logger.info("Downloaded %d/%d screen images", len(frame_ids) - missing, len(frame_ids))
        return results

    def _download(self, frame_id: str, url: str) -> Optional[ScreenImage]:
        try:
            response = requests.get(url, timeout=self._timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as exc:
            logger.warning("Image download failed for %s: %s", frame_id, exc)
            return None
        mime_type = response.headers.get("Content-Type", "image/png").split(";")[0]
        return ScreenImage(screen_id=frame_id, data=response.content, mime_type=mime_type)
