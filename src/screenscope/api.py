"""REST surface for the shell-story pipeline.

Same two operations as the MCP server, for callers that prefer HTTP
(automation rules, webhooks, CI jobs).
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import Settings, settings
from .exceptions import ErrorCode, ScreenScopeError
from .logging_config import setup_logging
from .pipeline import PipelineResult, ShellStoryPipeline

logger = logging.getLogger(__name__)

# Status returned when a run ends with ``success=False``.
_FAILURE_STATUS = {
    ErrorCode.DESIGN_LINK_MISSING.value: 400,
    ErrorCode.VALIDATION_ERROR.value: 400,
    ErrorCode.RATE_LIMITED.value: 503,
    ErrorCode.COLLABORATOR_UNAVAILABLE.value: 503,
}


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class PipelineRequest(BaseModel):
    item_id: str = Field(..., min_length=1, description="Issue key, e.g. PROJ-123")
    design_urls: Optional[List[str]] = Field(
        default=None,
        description="Design URLs to analyze; defaults to links in the issue description",
    )


class PipelineResponse(BaseModel):
    item_id: str
    success: bool
    phase: str
    action: Optional[str] = None
    failed_phase: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    file_key: str = ""
    screens_total: int = 0
    screens_analyzed: int = 0
    screens_cached: int = 0
    skipped_screens: List[str] = []
    failed_screens: Dict[str, str] = {}
    unassociated_note_ids: List[str] = []
    comment_threads: int = 0
    comment_threads_matched: int = 0
    comment_refreshed_screens: List[str] = []
    cache_invalidated: bool = False
    question_count: int = 0
    story_count: int = 0
    scope_analysis: str = ""
    shell_stories: str = ""
    overflowed: bool = False
    size_warning: Optional[str] = None


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_pipeline() -> ShellStoryPipeline:
    """Pipeline wired to the configured collaborators (overridden in tests)."""
    return ShellStoryPipeline.from_settings(settings)


def _respond(result: PipelineResult) -> JSONResponse:
    body: Dict[str, Any] = PipelineResponse(**result.to_dict()).model_dump()
    if result.success:
        return JSONResponse(status_code=200, content=body)
    status = _FAILURE_STATUS.get(result.error_code or "", 502)
    return JSONResponse(status_code=status, content=body)


router = APIRouter(prefix="/api", tags=["pipeline"])


@router.post("/write-shell-stories", response_model=PipelineResponse)
def write_shell_stories(
    request: PipelineRequest,
    pipeline: ShellStoryPipeline = Depends(get_pipeline),
):
    """Analyze linked screens and write shell stories into the issue.

    Returns 200 when the run completed, including runs that stopped to ask
    for clarification (``action`` tells which). Failed runs carry the phase
    they stopped in.
    """
    logger.info("Shell stories requested for %s", request.item_id)
    return _respond(pipeline.run(request.item_id, request.design_urls))


@router.post("/analyze-feature-scope", response_model=PipelineResponse)
def analyze_feature_scope(
    request: PipelineRequest,
    pipeline: ShellStoryPipeline = Depends(get_pipeline),
):
    """Regenerate the Scope Analysis section of the issue."""
    logger.info("Scope analysis requested for %s", request.item_id)
    return _respond(pipeline.run_scope_analysis(request.item_id, request.design_urls))


async def screenscope_exception_handler(request: Request, exc: ScreenScopeError) -> JSONResponse:
    """Structured JSON for errors raised outside a pipeline run."""
    logger.error(
        f"ScreenScopeError: {exc.error_code.value}",
        extra={
            "error_code": exc.error_code.value,
            "path": request.url.path,
            "method": request.method,
            "details": exc.details,
            "status_code": exc.status_code,
        },
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(app_settings: Optional[Settings] = None) -> FastAPI:
    app_settings = app_settings or settings
    app = FastAPI(
        title="screenscope",
        description="Design screens to scope analysis and shell stories",
        version="0.1.0",
    )
    app.add_exception_handler(ScreenScopeError, screenscope_exception_handler)
    app.include_router(router)

    @app.get("/health")
    def health() -> Dict[str, Any]:
        missing = app_settings.missing_collaborator_settings()
        return {
            "status": "healthy" if not missing else "degraded",
            "environment": app_settings.environment.value,
            "missing_config": missing,
        }

    return app


def serve(host: str = "0.0.0.0", port: int = 8000, factory: Callable[[], FastAPI] = create_app) -> None:
    """Run the REST API with uvicorn."""
    import uvicorn

    setup_logging(settings.log_level, settings.log_format)
    uvicorn.run(factory(), host=host, port=port)
