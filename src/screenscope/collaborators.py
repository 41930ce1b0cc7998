"""Capabilities the orchestration core consumes.

The core only talks to these protocols. ``design_client``,
``tracker_client`` and ``llm_client`` provide the default HTTP-backed
implementations; tests plug in in-memory fakes.
"""

from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence, runtime_checkable

from .models import Comment, DesignFileMetadata, DesignFrameSet, ScreenImage

# A structured content node, e.g. {"type": "paragraph", "content": [...]}
Node = dict[str, Any]


@dataclass(frozen=True)
class LLMRequest:
    prompt: str
    system_prompt: str = ""
    image: Optional[ScreenImage] = None
    max_tokens: int = 8000


@runtime_checkable
class DesignSource(Protocol):
    def fetch_design_frames(
        self, file_key: str, node_ids: Optional[Sequence[str]] = None
    ) -> DesignFrameSet: ...

    def fetch_file_metadata(self, file_key: str) -> DesignFileMetadata: ...

    def fetch_comments(self, file_key: str) -> list[Comment]: ...

    def fetch_batched_artifacts(
        self, file_key: str, frame_ids: Sequence[str]
    ) -> dict[str, Optional[ScreenImage]]: ...


@runtime_checkable
class TextGenerator(Protocol):
    def generate_text(self, request: LLMRequest) -> str: ...


@runtime_checkable
class IssueTracker(Protocol):
    def get_target_document(self, item_id: str) -> list[Node]: ...

    def write_target_document(self, item_id: str, content: list[Node]) -> None: ...

    def post_secondary_channel_message(self, item_id: str, text: str) -> None: ...
