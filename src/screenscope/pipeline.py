"""
End-to-end orchestration: design file in, tracker document out.

Phases run strictly in sequence::

    setup -> cache check -> analyze -> decide -> compose -> persist

Each phase awaits its collaborator calls before the next starts. Errors
from the screenscope taxonomy end the run with a ``PipelineResult`` naming
the failed phase; per-screen problems are aggregated into the result and
do not fail the run.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Sequence

from .collaborators import DesignSource, IssueTracker, Node, TextGenerator
from .comments import (
    CommentPlacement,
    format_comment_threads,
    frames_with_newer_comments,
    group_comment_threads,
    place_comment_threads,
)
from .composer import DocumentComposer, overflow_comment
from .config import ConfigurationError, Settings
from .design_links import find_document_design_links, parse_design_urls
from .document import markdown_to_nodes, nodes_to_text, remove_section
from .exceptions import (
    DesignLinkError,
    ErrorCode,
    GenerationEmptyError,
    ScreenScopeError,
)
from .file_cache import FileCache
from .logging_config import run_id_var
from .models import (
    AnalyzedScreen,
    ArtifactType,
    AssociationResult,
    DesignFileMetadata,
    DesignFrameSet,
)
from .prompts import SCOPE_ANALYSIS_HEADING, SHELL_STORIES_HEADING
from .scope_analysis import (
    ScopeAction,
    ScopeAnalysisGenerator,
    ScopeDecisionEngine,
    count_feature_areas,
    count_unanswered_questions,
    extract_scope_analysis,
    scope_section_markdown,
    strip_scope_heading,
)
from .screen_analysis import ScreenAnalysisOrchestrator, ScreenAnalyzer
from .semantic_outline import semantic_outline
from .spatial import associate, notes_text_for_screen
from .stories import generate_shell_stories

logger = logging.getLogger(__name__)


class PipelinePhase(str, Enum):
    SETUP = "setup"
    CACHE_CHECK = "cache_check"
    ANALYZE = "analyze"
    DECIDE = "decide"
    COMPOSE = "compose"
    PERSIST = "persist"


@dataclass
class PipelineResult:
    """What a run did, or where it stopped.

    ``success`` with a non-empty ``skipped_screens`` means the run finished
    without those screens; ``failed_phase`` is set only when it did not
    finish.
    """
    item_id: str
    success: bool = False
    phase: PipelinePhase = PipelinePhase.SETUP
    action: Optional[str] = None
    failed_phase: Optional[PipelinePhase] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    file_key: str = ""
    screens_total: int = 0
    screens_analyzed: int = 0
    screens_cached: int = 0
    skipped_screens: list[str] = field(default_factory=list)
    failed_screens: dict[str, str] = field(default_factory=dict)
    unassociated_note_ids: list[str] = field(default_factory=list)
    comment_threads: int = 0
    comment_threads_matched: int = 0
    comment_refreshed_screens: list[str] = field(default_factory=list)
    cache_invalidated: bool = False
    question_count: int = 0
    story_count: int = 0
    scope_analysis: str = ""
    shell_stories: str = ""
    overflowed: bool = False
    size_warning: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["phase"] = self.phase.value
        data["failed_phase"] = self.failed_phase.value if self.failed_phase else None
        return data


@dataclass
class _RunState:
    item_id: str
    document: list[Node]
    context: str
    existing_scope: Optional[str]
    file_key: str
    frames: DesignFrameSet
    association: AssociationResult
    comments: CommentPlacement = field(default_factory=CommentPlacement)
    metadata: Optional[DesignFileMetadata] = None
    analyses: list[AnalyzedScreen] = field(default_factory=list)


class ShellStoryPipeline:
    """Sequences the orchestration core against concrete collaborators.

    Args:
        design: Design-tool capability.
        tracker: Issue-tracker capability.
        generator: LLM capability.
        cache: Artifact cache shared across runs.
        settings: Thresholds and limits.
        notify: Receives human-readable progress messages.
    """

    def __init__(
        self,
        design: DesignSource,
        tracker: IssueTracker,
        generator: TextGenerator,
        cache: FileCache,
        settings: Optional[Settings] = None,
        composer: Optional[DocumentComposer] = None,
        notify: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._design = design
        self._tracker = tracker
        self._generator = generator
        self._cache = cache
        self._settings = settings or Settings()
        self._composer = composer or DocumentComposer(
            limit=self._settings.description_limit,
            safety_margin=self._settings.size_safety_margin,
        )
        self._notify_fn = notify

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        notify: Optional[Callable[[str], None]] = None,
    ) -> "ShellStoryPipeline":
        """Wire the default HTTP collaborators from configuration."""
        missing = settings.missing_collaborator_settings()
        if missing:
            raise ConfigurationError(missing)

        from .design_client import FigmaClient
        from .llm_client import build_text_generator
        from .tracker_client import JiraClient

        return cls(
            design=FigmaClient.from_settings(settings),
            tracker=JiraClient.from_settings(settings),
            generator=build_text_generator(settings),
            cache=FileCache(settings.cache_dir),
            settings=settings,
            notify=notify,
        )

    # ----- public operations -----------------------------------------------

    def run(self, item_id: str, design_urls: Optional[Sequence[str]] = None) -> PipelineResult:
        """Write shell stories into *item_id*, healing missing scope analysis first."""
        return self._execute(item_id, design_urls, self._write_shell_stories)

    def run_scope_analysis(
        self, item_id: str, design_urls: Optional[Sequence[str]] = None
    ) -> PipelineResult:
        """(Re)generate and persist only the scope analysis of *item_id*."""
        return self._execute(item_id, design_urls, self._write_scope_analysis)

    # ----- driver ----------------------------------------------------------

    def _notify(self, message: str) -> None:
        if self._notify_fn is not None:
            self._notify_fn(message)

    def _enter(self, result: PipelineResult, phase: PipelinePhase, message: str) -> None:
        result.phase = phase
        logger.info("Phase %s: %s", phase.value, message)
        self._notify(message)

    def _execute(
        self,
        item_id: str,
        design_urls: Optional[Sequence[str]],
        finish: Callable[[_RunState, PipelineResult], None],
    ) -> PipelineResult:
        result = PipelineResult(item_id=item_id)
        token = run_id_var.set(uuid.uuid4().hex[:12])
        try:
            state = self._setup(item_id, design_urls, result)
            self._check_cache(state, result)
            self._analyze(state, result)
            finish(state, result)
            result.success = True
        except ScreenScopeError as exc:
            result.failed_phase = result.phase
            result.error = exc.message
            result.error_code = exc.error_code.value
            logger.error(
                "Pipeline failed at %s: %s", result.phase.value, exc.message,
                extra={"item_id": item_id, "error_code": exc.error_code.value},
            )
        finally:
            run_id_var.reset(token)
        return result

    # ----- phases ----------------------------------------------------------

    def _setup(
        self, item_id: str, design_urls: Optional[Sequence[str]], result: PipelineResult
    ) -> _RunState:
        self._enter(result, PipelinePhase.SETUP, f"Reading {item_id} and design links")
        document = self._tracker.get_target_document(item_id)

        links = parse_design_urls(design_urls) if design_urls else find_document_design_links(document)
        if not links:
            raise DesignLinkError(item_id)

        file_key = links[0].file_key
        ignored = sorted({link.file_key for link in links} - {file_key})
        if ignored:
            logger.warning("Ignoring links to other design files: %s", ", ".join(ignored))
        node_ids = [link.node_id for link in links if link.file_key == file_key and link.node_id]

        frames = self._design.fetch_design_frames(file_key, node_ids or None)
        association = associate(
            frames.frames,
            frames.notes,
            max_distance=self._settings.max_note_distance,
            row_tolerance=self._settings.row_tolerance,
            file_key=file_key,
        )
        if not association.screens:
            raise ScreenScopeError(
                f"No screens found in design file {file_key}",
                error_code=ErrorCode.VALIDATION_ERROR,
                status_code=400,
                details={"file_key": file_key, "node_ids": node_ids},
            )

        parsed = extract_scope_analysis(nodes_to_text(remove_section(document, SHELL_STORIES_HEADING)))
        comments = self._place_comments(file_key, frames)

        result.file_key = file_key
        result.screens_total = len(association.screens)
        result.unassociated_note_ids = list(association.unassociated_note_ids)
        result.comment_threads = comments.matched_count + len(comments.unmatched)
        result.comment_threads_matched = comments.matched_count
        return _RunState(
            item_id=item_id,
            document=document,
            context=parsed.remaining_context,
            existing_scope=parsed.scope_analysis,
            file_key=file_key,
            frames=frames,
            association=association,
            comments=comments,
        )

    def _place_comments(self, file_key: str, frames: DesignFrameSet) -> CommentPlacement:
        # A failed comment fetch leaves the run without comments.
        try:
            comments = self._design.fetch_comments(file_key)
        except ScreenScopeError as exc:
            logger.warning("Continuing without design comments: %s", exc.message)
            return CommentPlacement()
        threads = group_comment_threads(comments)
        placement = place_comment_threads(
            threads, frames.frames, proximity=self._settings.comment_proximity
        )
        if threads:
            self._notify(
                f"Associated {placement.matched_count}/{len(threads)} comment threads with screens"
            )
        return placement

    def _check_cache(self, state: _RunState, result: PipelineResult) -> None:
        self._enter(result, PipelinePhase.CACHE_CHECK, f"Checking cache for design file {state.file_key}")
        state.metadata = self._design.fetch_file_metadata(state.file_key)
        validation = self._cache.validate(state.file_key, state.metadata.last_touched_at)
        result.cache_invalidated = validation.was_invalidated
        if not validation.was_invalidated:
            result.comment_refreshed_screens = self._refresh_commented_screens(state)

        notes_by_id = {note.id: note for note in state.frames.notes}
        for screen in state.association.screens:
            sections = [notes_text_for_screen(screen, notes_by_id)]
            threads = state.comments.by_frame.get(screen.id)
            if threads:
                sections.append("**Comments:**\n" + format_comment_threads(threads))
            notes_text = "\n\n".join(section for section in sections if section)
            if notes_text:
                self._cache.put(state.file_key, screen.id, notes_text, ArtifactType.NOTES)

    def _refresh_commented_screens(self, state: _RunState) -> list[str]:
        """Drop cached analyses of screens commented on since they were cached."""
        metadata = self._cache.load_metadata(state.file_key)
        if metadata is None:
            return []
        refreshed = [
            frame_id
            for frame_id in frames_with_newer_comments(state.comments, metadata.cached_at)
            if self._cache.discard(state.file_key, frame_id, ArtifactType.ANALYSIS)
        ]
        if refreshed:
            logger.info(
                "New comments on %d screens; re-analyzing them", len(refreshed),
                extra={"screens": refreshed},
            )
        return refreshed

    def _analyze(self, state: _RunState, result: PipelineResult) -> None:
        screens = state.association.screens
        self._enter(result, PipelinePhase.ANALYZE, f"Analyzing {len(screens)} screens")
        orchestrator = ScreenAnalysisOrchestrator(
            self._cache,
            self._design.fetch_batched_artifacts,
            max_workers=self._settings.analysis_max_workers,
        )
        analyzer = ScreenAnalyzer(
            self._generator,
            context=state.context,
            max_tokens=self._settings.screen_analysis_max_tokens,
            outlines={
                frame.id: semantic_outline(frame.node)
                for frame in state.frames.frames
                if frame.node
            },
        )
        outcome = orchestrator.analyze(screens, state.file_key, analyzer, state.metadata)

        result.screens_analyzed = len(outcome.analyzed)
        result.screens_cached = len(outcome.cached)
        result.skipped_screens = list(outcome.skipped)
        result.failed_screens = dict(outcome.failed)

        state.analyses = outcome.available
        if not state.analyses:
            raise GenerationEmptyError(
                "Screen analysis", screens_involved=len(screens), analyses_loaded=0
            )

    def _scope_generator(self, state: _RunState) -> ScopeAnalysisGenerator:
        return ScopeAnalysisGenerator(
            self._generator,
            state.analyses,
            context=state.context,
            max_tokens=self._settings.scope_analysis_max_tokens,
        )

    def _with_scope_section(self, document: list[Node], scope_analysis: str) -> list[Node]:
        section = markdown_to_nodes(scope_section_markdown(scope_analysis))
        return self._composer.upsert_section(document, SCOPE_ANALYSIS_HEADING, section)

    def _persist(self, result: PipelineResult, item_id: str, content: list[Node]) -> None:
        self._enter(result, PipelinePhase.PERSIST, f"Updating {item_id}")
        self._tracker.write_target_document(item_id, content)

    def _write_scope_only(self, state: _RunState, result: PipelineResult, scope_analysis: str) -> None:
        self._enter(result, PipelinePhase.COMPOSE, "Composing scope analysis section")
        composition = self._composer.compose(
            remove_section(state.document, SCOPE_ANALYSIS_HEADING),
            markdown_to_nodes(scope_section_markdown(scope_analysis)),
        )
        if composition.size_warning is not None:
            result.size_warning = composition.size_warning.message
        self._persist(result, state.item_id, composition.final_content)

    # ----- finishers -------------------------------------------------------

    def _write_shell_stories(self, state: _RunState, result: PipelineResult) -> None:
        self._enter(result, PipelinePhase.DECIDE, "Checking scope analysis")
        engine = ScopeDecisionEngine(
            self._scope_generator(state),
            threshold=self._settings.question_threshold,
            screens_involved=len(state.analyses),
        )
        resolution = engine.resolve(state.existing_scope)
        result.action = resolution.action.value
        result.question_count = resolution.question_count
        result.scope_analysis = resolution.scope_analysis

        if not resolution.proceed:
            logger.info(
                "Stopping before stories: %d unanswered questions (threshold %d)",
                resolution.question_count, self._settings.question_threshold,
            )
            self._write_scope_only(state, result, resolution.scope_analysis)
            self._report_clarification(resolution.scope_analysis, resolution.question_count)
            return

        document = state.document
        if resolution.generated:
            document = self._with_scope_section(document, resolution.scope_analysis)

        self._enter(result, PipelinePhase.COMPOSE, "Writing shell stories")
        stories = generate_shell_stories(
            self._generator,
            resolution.scope_analysis,
            state.analyses,
            context=state.context,
            max_tokens=self._settings.shell_stories_max_tokens,
        )
        result.story_count = stories.story_count
        result.shell_stories = stories.markdown

        composition = self._composer.compose(
            remove_section(document, SHELL_STORIES_HEADING),
            markdown_to_nodes(stories.markdown),
        )
        if composition.size_warning is not None:
            result.size_warning = composition.size_warning.message
        if composition.overflowed_section is not None:
            result.overflowed = True
            self._post_overflow(state.item_id, composition.overflowed_section)

        self._persist(result, state.item_id, composition.final_content)

    def _write_scope_analysis(self, state: _RunState, result: PipelineResult) -> None:
        self._enter(result, PipelinePhase.DECIDE, "Generating scope analysis")
        text = strip_scope_heading(self._scope_generator(state)(state.existing_scope))
        question_count = count_unanswered_questions(text)

        result.scope_analysis = text
        result.question_count = question_count
        result.action = (
            ScopeAction.PROCEED.value if question_count <= self._settings.question_threshold
            else ScopeAction.CLARIFY.value
        )
        self._write_scope_only(state, result, text)
        if result.action != ScopeAction.PROCEED.value:
            self._report_clarification(text, question_count)

    def _post_overflow(self, item_id: str, section_text: str) -> None:
        try:
            self._tracker.post_secondary_channel_message(item_id, overflow_comment(section_text))
        except Exception as exc:
            logger.warning("Could not post overflowed scope analysis to %s: %s", item_id, exc)

    def _report_clarification(self, scope_analysis: str, question_count: int) -> None:
        self._notify(
            f"Scope analysis complete: {question_count} question(s), "
            f"{count_feature_areas(scope_analysis)} feature area(s). "
            f"Please answer ❓ questions to bring unanswered questions under "
            f"{self._settings.question_threshold} and re-run."
        )
