"""Scope analysis: marker counting and the proceed/clarify/regenerate decision.

Counting is done by pure functions over the generated markdown. The
decision itself is a 2x2 table over two typed inputs (was there an analysis
already, how many questions remain unanswered), and ``ScopeDecisionEngine``
turns it into an explicit ``ScopeResolution``.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Sequence

from .collaborators import LLMRequest, TextGenerator
from .exceptions import GenerationEmptyError
from .models import AnalyzedScreen, Screen
from .prompts import (
    MARKER_ALREADY_DONE,
    MARKER_ANSWERED,
    MARKER_IN_SCOPE,
    MARKER_LOW_PRIORITY,
    MARKER_OUT_OF_SCOPE,
    MARKER_QUESTION,
    PREVIOUS_ANALYSIS_LABEL,
    REMAINING_QUESTIONS_HEADING,
    SCOPE_ANALYSIS_HEADING,
    SCOPE_ANALYSIS_PROMPT,
    SCOPE_ANALYSIS_SYSTEM_PROMPT,
)

logger = logging.getLogger(__name__)

QUESTION_THRESHOLD = 5

_SECTION_RE = re.compile(r"## Scope Analysis\s+([\s\S]*?)(?=\n## |$)", re.IGNORECASE)
_LEADING_HEADING_RE = re.compile(r"^\s*#{1,2}\s+Scope Analysis\s*\n", re.IGNORECASE)
_FEATURE_AREA_RE = re.compile(r"^### (.+)$", re.MULTILINE)


def _bullet_pattern(marker: str) -> re.Pattern:
    return re.compile(rf"^\s*-\s*{re.escape(marker)}", re.MULTILINE)


_UNANSWERED_RE = _bullet_pattern(MARKER_QUESTION)
_ANSWERED_RE = _bullet_pattern(MARKER_ANSWERED)
_IN_SCOPE_RE = _bullet_pattern(MARKER_IN_SCOPE)
_LOW_PRIORITY_RE = _bullet_pattern(MARKER_LOW_PRIORITY)
_ALREADY_DONE_RE = _bullet_pattern(MARKER_ALREADY_DONE)
_OUT_OF_SCOPE_RE = _bullet_pattern(MARKER_OUT_OF_SCOPE)


# ---------------------------------------------------------------------------
# Text parsing
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FeatureMarkerCounts:
    in_scope: int = 0
    low_priority: int = 0
    already_done: int = 0
    out_of_scope: int = 0
    unanswered: int = 0
    answered: int = 0


@dataclass(frozen=True)
class ParsedScopeAnalysis:
    scope_analysis: Optional[str]
    remaining_context: str


def count_unanswered_questions(markdown: str) -> int:
    """Bullets tagged as open questions. Answered questions do not count."""
    return len(_UNANSWERED_RE.findall(markdown))


def count_answered_questions(markdown: str) -> int:
    return len(_ANSWERED_RE.findall(markdown))


def count_feature_markers(markdown: str) -> FeatureMarkerCounts:
    return FeatureMarkerCounts(
        in_scope=len(_IN_SCOPE_RE.findall(markdown)),
        low_priority=len(_LOW_PRIORITY_RE.findall(markdown)),
        already_done=len(_ALREADY_DONE_RE.findall(markdown)),
        out_of_scope=len(_OUT_OF_SCOPE_RE.findall(markdown)),
        unanswered=count_unanswered_questions(markdown),
        answered=count_answered_questions(markdown),
    )


def count_feature_areas(markdown: str) -> int:
    """``###`` headings, not counting the catch-all questions area."""
    return sum(
        1 for title in _FEATURE_AREA_RE.findall(markdown)
        if REMAINING_QUESTIONS_HEADING.lower() not in title.lower()
    )


def extract_scope_analysis(markdown: str) -> ParsedScopeAnalysis:
    """Split a document's text into its scope-analysis body and everything else."""
    match = _SECTION_RE.search(markdown)
    body = match.group(1).strip() if match else ""
    if not body:
        return ParsedScopeAnalysis(scope_analysis=None, remaining_context=markdown)
    remaining = (markdown[:match.start()] + markdown[match.end():]).strip()
    return ParsedScopeAnalysis(scope_analysis=body, remaining_context=remaining)


def strip_scope_heading(markdown: str) -> str:
    return _LEADING_HEADING_RE.sub("", markdown, count=1).strip()


def scope_section_markdown(body: str) -> str:
    """Full section markdown, heading included, for persisting to the document."""
    return f"## {SCOPE_ANALYSIS_HEADING}\n\n{strip_scope_heading(body)}"


# ---------------------------------------------------------------------------
# Decision
# ---------------------------------------------------------------------------

class ScopeDecision(str, Enum):
    PROCEED_WITH_STORIES = "proceed"
    ASK_FOR_CLARIFICATION = "clarify"
    REGENERATE_ANALYSIS = "regenerate"


class ScopeAction(str, Enum):
    """Terminal outcome of one resolution."""
    PROCEED = "proceed"
    CLARIFY = "clarify"
    STILL_NEEDS_CLARIFICATION = "still_needs_clarification"


def decide_action(
    had_existing: bool,
    question_count: int,
    threshold: int = QUESTION_THRESHOLD,
) -> ScopeDecision:
    """Decision table; a count equal to the threshold still proceeds."""
    if question_count <= threshold:
        return ScopeDecision.PROCEED_WITH_STORIES
    if had_existing:
        return ScopeDecision.REGENERATE_ANALYSIS
    return ScopeDecision.ASK_FOR_CLARIFICATION


@dataclass
class ScopeResolution:
    action: ScopeAction
    decision: ScopeDecision
    scope_analysis: str
    question_count: int
    had_existing_analysis: bool
    generated: bool = False
    regenerated: bool = False
    markers: FeatureMarkerCounts = field(default_factory=FeatureMarkerCounts)

    @property
    def proceed(self) -> bool:
        return self.action is ScopeAction.PROCEED


# (previous analysis or None) -> new analysis markdown
GenerateFn = Callable[[Optional[str]], str]


class ScopeDecisionEngine:
    """Self-healing scope resolution with at most one regeneration.

    Args:
        generate: Produces a scope analysis, optionally informed by a previous one.
        threshold: Unanswered questions tolerated before stopping.
        screens_involved: Reported when generation comes back empty.
    """

    def __init__(
        self,
        generate: GenerateFn,
        threshold: int = QUESTION_THRESHOLD,
        screens_involved: int = 0,
    ) -> None:
        self._generate = generate
        self._threshold = threshold
        self._screens_involved = screens_involved

    def _generate_checked(self, previous: Optional[str]) -> str:
        text = self._generate(previous)
        if not text or not text.strip():
            raise GenerationEmptyError("Scope analysis", screens_involved=self._screens_involved)
        return strip_scope_heading(text)

    def resolve(self, existing: Optional[str]) -> ScopeResolution:
        had_existing = bool(existing and existing.strip())
        generated = not had_existing
        analysis = existing.strip() if had_existing else self._generate_checked(None)

        question_count = count_unanswered_questions(analysis)
        decision = decide_action(had_existing, question_count, self._threshold)
        logger.info(
            "Scope decision: %s (%d unanswered questions, existing analysis: %s)",
            decision.value, question_count, had_existing,
        )

        if decision is ScopeDecision.PROCEED_WITH_STORIES:
            action = ScopeAction.PROCEED
        elif decision is ScopeDecision.ASK_FOR_CLARIFICATION:
            action = ScopeAction.CLARIFY
        else:
            analysis = self._generate_checked(analysis)
            question_count = count_unanswered_questions(analysis)
            action = (
                ScopeAction.PROCEED if question_count <= self._threshold
                else ScopeAction.STILL_NEEDS_CLARIFICATION
            )
            logger.info("Regenerated scope analysis: %d unanswered questions", question_count)
            return ScopeResolution(
                action=action,
                decision=decision,
                scope_analysis=analysis,
                question_count=question_count,
                had_existing_analysis=had_existing,
                generated=True,
                regenerated=True,
                markers=count_feature_markers(analysis),
            )

        return ScopeResolution(
            action=action,
            decision=decision,
            scope_analysis=analysis,
            question_count=question_count,
            had_existing_analysis=had_existing,
            generated=generated,
            markers=count_feature_markers(analysis),
        )


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

def format_screen_list(screens: Sequence[Screen]) -> str:
    lines = []
    for screen in screens:
        label = f"[{screen.name}]({screen.url})" if screen.url else screen.name
        section = f" ({screen.section_name})" if screen.section_name else ""
        lines.append(f"{screen.order}. {label}{section}")
    return "\n".join(lines)


def format_analyses(analyses: Sequence[AnalyzedScreen]) -> str:
    return "\n\n".join(f"### {item.screen.name}\n\n{item.analysis.strip()}" for item in analyses)


class ScopeAnalysisGenerator:
    """Builds the scope-analysis prompt from screen analyses and calls the LLM."""

    def __init__(
        self,
        generator: TextGenerator,
        analyses: Sequence[AnalyzedScreen],
        context: str = "",
        max_tokens: int = 8000,
    ) -> None:
        self._generator = generator
        self._analyses = list(analyses)
        self._context = context
        self._max_tokens = max_tokens

    def build_prompt(self, previous: Optional[str] = None) -> str:
        previous_block = f"\n{PREVIOUS_ANALYSIS_LABEL}\n{previous}\n" if previous else ""
        return SCOPE_ANALYSIS_PROMPT.format(
            heading=SCOPE_ANALYSIS_HEADING,
            screen_list=format_screen_list([a.screen for a in self._analyses]),
            analyses=format_analyses(self._analyses),
            context=self._context.strip() or "_No additional context._",
            previous=previous_block,
        )

    def __call__(self, previous: Optional[str] = None) -> str:
        prompt = self.build_prompt(previous)
        logger.info(
            "Generating scope analysis (%d chars, %d screens)",
            len(prompt), len(self._analyses),
        )
        text = self._generator.generate_text(
            LLMRequest(
                prompt=prompt,
                system_prompt=SCOPE_ANALYSIS_SYSTEM_PROMPT,
                max_tokens=self._max_tokens,
            )
        )
        if not text or not text.strip():
            raise GenerationEmptyError(
                "Scope analysis",
                screens_involved=len(self._analyses),
                analyses_loaded=len(self._analyses),
            )
        return text.strip()
