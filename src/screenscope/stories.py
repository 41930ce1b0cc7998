"""Shell story generation."""

import logging
import re
from dataclasses import dataclass
from typing import Sequence

from .collaborators import LLMRequest, TextGenerator
from .exceptions import GenerationEmptyError
from .models import AnalyzedScreen
from .prompts import SHELL_STORIES_HEADING, SHELL_STORIES_PROMPT, SHELL_STORIES_SYSTEM_PROMPT
from .scope_analysis import format_analyses, format_screen_list

logger = logging.getLogger(__name__)

_STORY_RE = re.compile(r"^- `?st\d+", re.MULTILINE)
_LEADING_TITLE_RE = re.compile(r"^\s*#{1,2}\s+.*\n+")


@dataclass(frozen=True)
class ShellStories:
    markdown: str
    story_count: int


def count_stories(markdown: str) -> int:
    """Top-level bullets starting with a story id such as ``st001``."""
    return len(_STORY_RE.findall(markdown))


def prepare_stories_section(markdown: str) -> str:
    """Drop any title the model added and put the section heading on top."""
    body = _LEADING_TITLE_RE.sub("", markdown.strip(), count=1).strip()
    return f"## {SHELL_STORIES_HEADING}\n\n{body}"


def generate_shell_stories(
    generator: TextGenerator,
    scope_analysis: str,
    analyses: Sequence[AnalyzedScreen],
    context: str = "",
    max_tokens: int = 16000,
) -> ShellStories:
    """Ask the LLM for shell stories grounded in the scope analysis.

    Raises:
        GenerationEmptyError: the model returned nothing, or nothing that
            looks like a story list.
    """
    prompt = SHELL_STORIES_PROMPT.format(
        scope_analysis=scope_analysis.strip(),
        screen_list=format_screen_list([a.screen for a in analyses]),
        analyses=format_analyses(analyses),
        context=context.strip() or "_No additional context._",
    )
    logger.info("Generating shell stories (%d chars, %d screens)", len(prompt), len(analyses))
    text = generator.generate_text(
        LLMRequest(prompt=prompt, system_prompt=SHELL_STORIES_SYSTEM_PROMPT, max_tokens=max_tokens)
    ).strip()

    story_count = count_stories(text)
    if not text or story_count == 0:
        raise GenerationEmptyError(
            "Shell stories",
            screens_involved=len(analyses),
            analyses_loaded=len(analyses),
        )
    logger.info("Generated %d shell stories", story_count)
    return ShellStories(markdown=prepare_stories_section(text), story_count=story_count)
