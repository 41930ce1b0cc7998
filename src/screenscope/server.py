"""screenscope MCP server: design screens to scope analysis and shell stories.

Exposes two tools over stdio for Claude Desktop, Cursor or any
MCP-compatible client. Both run the synchronous pipeline in a worker
thread and return a markdown summary.
"""

import asyncio
import logging
from typing import Callable, Optional

from dotenv import load_dotenv
from mcp.server.fastmcp import FastMCP

from .config import Settings
from .formatters import format_pipeline_result
from .logging_config import setup_logging
from .pipeline import PipelineResult, ShellStoryPipeline

logger = logging.getLogger(__name__)

mcp = FastMCP("screenscope")


def _build_pipeline(notify: Callable[[str], None]) -> ShellStoryPipeline:
    return ShellStoryPipeline.from_settings(Settings(), notify=notify)


def _with_progress(summary: str, progress: list[str]) -> str:
    if not progress:
        return summary
    steps = "\n".join(f"- {step}" for step in progress)
    return f"{summary}\n\n<details><summary>Progress</summary>\n\n{steps}\n</details>"


async def _run(
    operation: str,
    item_id: str,
    design_urls: Optional[list[str]],
) -> tuple[PipelineResult, list[str]]:
    progress: list[str] = []
    pipeline = _build_pipeline(progress.append)
    fn = pipeline.run if operation == "stories" else pipeline.run_scope_analysis
    result = await asyncio.to_thread(fn, item_id, design_urls)
    return result, progress


@mcp.tool()
async def write_shell_stories(item_id: str, design_urls: Optional[list[str]] = None) -> str:
    """Write shell stories into an issue's description from its linked design screens.

    Analyzes every linked screen (reusing cached analyses while the design
    file is unchanged), generates a scope analysis if the issue has none,
    and only writes stories when few enough questions remain open.
    Otherwise the scope analysis is written so the questions can be answered.

    Args:
        item_id: Issue key (e.g. "PROJ-123")
        design_urls: Optional design URLs; defaults to links found in the description
    """
    try:
        result, progress = await _run("stories", item_id, design_urls)
        return _with_progress(format_pipeline_result(result), progress)
    except Exception as e:
        logger.exception("write_shell_stories failed")
        return f"Error writing shell stories: {e}"


@mcp.tool()
async def analyze_feature_scope(item_id: str, design_urls: Optional[list[str]] = None) -> str:
    """Generate (or refresh) the Scope Analysis section of an issue.

    Answers already given under an existing Scope Analysis are carried
    into the new one. No stories are written.

    Args:
        item_id: Issue key (e.g. "PROJ-123")
        design_urls: Optional design URLs; defaults to links found in the description
    """
    try:
        result, progress = await _run("scope", item_id, design_urls)
        return _with_progress(
            format_pipeline_result(result, headline="Scope analysis written"), progress
        )
    except Exception as e:
        logger.exception("analyze_feature_scope failed")
        return f"Error analyzing feature scope: {e}"


def main() -> None:
    """Entry point: runs the MCP server over stdio."""
    load_dotenv()
    settings = Settings()
    setup_logging(settings.log_level, settings.log_format)
    missing = settings.missing_collaborator_settings()
    if missing:
        logger.warning("Missing configuration: %s", ", ".join(missing))
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
