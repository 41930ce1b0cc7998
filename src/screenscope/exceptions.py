"""Exception hierarchy for screenscope.

Every error raised by the orchestration core derives from
``ScreenScopeError`` so the pipeline, the REST layer and the MCP tools can
report a machine-readable code alongside the human-readable message.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Standardized error codes for pipeline results and API responses."""

    # Collaborator errors
    COLLABORATOR_UNAVAILABLE = "COLLABORATOR_UNAVAILABLE"
    RATE_LIMITED = "RATE_LIMITED"

    # Artifact / generation errors
    ARTIFACT_MISSING = "ARTIFACT_MISSING"
    GENERATION_EMPTY = "GENERATION_EMPTY"

    # Cache errors
    CACHE_CORRUPTED = "CACHE_CORRUPTED"

    # Document errors
    DESIGN_LINK_MISSING = "DESIGN_LINK_MISSING"
    DOCUMENT_WRITE_FAILED = "DOCUMENT_WRITE_FAILED"
    DOCUMENT_TOO_LARGE = "DOCUMENT_TOO_LARGE"

    # Generic errors
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ScreenScopeError(Exception):
    """
    Base exception for all screenscope errors.

    Carries:
    - Human-readable message
    - Machine-readable error code
    - HTTP status code used by the REST layer
    - Optional additional details
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for JSON responses."""
        return {
            "error": self.error_code.value,
            "message": self.message,
            "details": self.details,
        }


class TransientCollaboratorError(ScreenScopeError):
    """A design tool, tracker or LLM call failed (network, rate limit, outage).

    Aborts the current pipeline phase. Artifacts cached before the failure
    stay valid, so a retry of the whole run is cheap.
    """

    def __init__(self, collaborator: str, message: str, status: Optional[int] = None):
        code = ErrorCode.RATE_LIMITED if status == 429 else ErrorCode.COLLABORATOR_UNAVAILABLE
        super().__init__(
            message=f"{collaborator}: {message}",
            error_code=code,
            status_code=503,
            details={"collaborator": collaborator, "upstream_status": status},
        )
        self.collaborator = collaborator
        self.upstream_status = status


class MissingArtifactError(ScreenScopeError):
    """A single screen's item was absent from an otherwise successful batch."""

    def __init__(self, screen_id: str, artifact: str = "image"):
        super().__init__(
            message=f"No {artifact} returned for screen {screen_id}",
            error_code=ErrorCode.ARTIFACT_MISSING,
            status_code=404,
            details={"screen_id": screen_id, "artifact": artifact},
        )
        self.screen_id = screen_id


class GenerationEmptyError(ScreenScopeError):
    """The text-generation capability returned no usable output."""

    def __init__(
        self,
        what: str,
        screens_involved: int = 0,
        analyses_loaded: Optional[int] = None,
        screen_id: Optional[str] = None,
    ):
        parts = [f"Screens analyzed: {screens_involved}"]
        if analyses_loaded is not None:
            parts.append(f"Analysis files loaded: {analyses_loaded}")
        if screen_id:
            parts.append(f"Screen: {screen_id}")
        super().__init__(
            message=f"{what} generation returned no content ({', '.join(parts)})",
            error_code=ErrorCode.GENERATION_EMPTY,
            status_code=502,
            details={
                "what": what,
                "screens_involved": screens_involved,
                "analyses_loaded": analyses_loaded,
                "screen_id": screen_id,
            },
        )
        self.screens_involved = screens_involved


class CacheCorruptionError(ScreenScopeError):
    """Cache metadata is unreadable or belongs to a different design file."""

    def __init__(self, file_key: str, reason: str):
        super().__init__(
            message=f"Cache for {file_key} is unusable: {reason}",
            error_code=ErrorCode.CACHE_CORRUPTED,
            status_code=500,
            details={"file_key": file_key, "reason": reason},
        )
        self.file_key = file_key


class DesignLinkError(ScreenScopeError):
    """The target document links no design file to analyze."""

    def __init__(self, item_id: str):
        super().__init__(
            message=f"No design links found in {item_id}. Add design URLs to the description.",
            error_code=ErrorCode.DESIGN_LINK_MISSING,
            status_code=400,
            details={"item_id": item_id},
        )


class DocumentWriteError(ScreenScopeError):
    """The issue tracker rejected the composed document."""

    def __init__(self, item_id: str, message: str, status: Optional[int] = None):
        super().__init__(
            message=f"Failed to update {item_id}: {message}",
            error_code=ErrorCode.DOCUMENT_WRITE_FAILED,
            status_code=502,
            details={"item_id": item_id, "upstream_status": status},
        )


class SizeConstraintWarning(ScreenScopeError):
    """Composed document still exceeds the size ceiling after overflow.

    Never raised by the composer: it is attached to the composition result
    and the write proceeds.
    """

    def __init__(self, size: int, limit: int):
        super().__init__(
            message=f"Document size {size} exceeds limit {limit} after moving overflow section",
            error_code=ErrorCode.DOCUMENT_TOO_LARGE,
            status_code=413,
            details={"size": size, "limit": limit},
        )
        self.size = size
        self.limit = limit
