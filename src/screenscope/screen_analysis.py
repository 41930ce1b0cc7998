"""
Cached, batched per-screen analysis.

Phase A partitions screens into cached and needs-analysis, then fetches
the images for the whole needs-analysis set in one batched call. Phase B
runs the analysis capability for each screen on a bounded thread pool and
stores each result as soon as it arrives. Results are keyed by screen id,
so completion order never affects the outcome.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Callable, Mapping, Optional, Sequence

from .collaborators import LLMRequest, TextGenerator
from .exceptions import GenerationEmptyError, MissingArtifactError, TransientCollaboratorError
from .file_cache import FileCache
from .models import (
    AnalyzedScreen,
    ArtifactType,
    DesignFileMetadata,
    Screen,
    ScreenAnalysisResult,
    ScreenImage,
)
from .prompts import SCREEN_ANALYSIS_PROMPT, SCREEN_ANALYSIS_SYSTEM_PROMPT

logger = logging.getLogger(__name__)

# (screen, image, notes markdown) -> analysis markdown
AnalyzeFn = Callable[[Screen, ScreenImage, str], str]
BatchFetchFn = Callable[[str, Sequence[str]], dict[str, Optional[ScreenImage]]]


class ScreenAnalyzer:
    """Default analysis capability: one multimodal LLM call per screen.

    Args:
        generator: Text generation capability.
        context: Feature description used as background for every screen.
        max_tokens: Output cap per screen.
        outlines: Structural outline per screen id, see ``semantic_outline``.
    """

    def __init__(
        self,
        generator: TextGenerator,
        context: str = "",
        max_tokens: int = 8000,
        outlines: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._generator = generator
        self._context = context
        self._max_tokens = max_tokens
        self._outlines = dict(outlines or {})

    def _structure(self, screen: Screen) -> str:
        outline = self._outlines.get(screen.id)
        if not outline:
            return "_No layer outline available._"
        return f"```xml\n{outline}\n```"

    def __call__(self, screen: Screen, image: ScreenImage, notes: str) -> str:
        section_line = f"**Section:** {screen.section_name}\n" if screen.section_name else ""
        prompt = SCREEN_ANALYSIS_PROMPT.format(
            name=screen.name,
            position=screen.position,
            section_line=section_line,
            notes=notes or "_No design notes._",
            structure=self._structure(screen),
            context=self._context or "_No feature context provided._",
        )
        text = self._generator.generate_text(
            LLMRequest(
                prompt=prompt,
                system_prompt=SCREEN_ANALYSIS_SYSTEM_PROMPT,
                image=image,
                max_tokens=self._max_tokens,
            )
        ).strip()
        if not text:
            return ""
        if screen.url:
            return f"**Design URL:** {screen.url}\n\n{text}"
        return text


class ScreenAnalysisOrchestrator:
    """Drives cached, batched analysis of a design file's screens.

    Args:
        cache: Artifact store shared across runs.
        fetch_batched_artifacts: ``(file_key, frame_ids) -> {id: image | None}``.
            Called at most once per ``analyze`` call.
        max_workers: Cap on concurrent analysis calls.
    """

    def __init__(
        self,
        cache: FileCache,
        fetch_batched_artifacts: BatchFetchFn,
        max_workers: int = 4,
    ) -> None:
        self._cache = cache
        self._fetch_batched_artifacts = fetch_batched_artifacts
        self._max_workers = max(1, max_workers)

    # ----- Phase A ---------------------------------------------------------

    def _partition(
        self, screens: Sequence[Screen], file_key: str
    ) -> tuple[list[AnalyzedScreen], list[Screen]]:
        cached: list[AnalyzedScreen] = []
        pending: list[Screen] = []
        for screen in screens:
            analysis = self._cache.get(file_key, screen.id, ArtifactType.ANALYSIS)
            if analysis:
                cached.append(AnalyzedScreen(screen=screen, analysis=analysis))
            else:
                pending.append(screen)
        return cached, pending

    def _collect_images(
        self, pending: Sequence[Screen], file_key: str
    ) -> dict[str, Optional[ScreenImage]]:
        """Images for every pending screen: cached ones first, the rest in one batch."""
        images: dict[str, Optional[ScreenImage]] = {}
        to_fetch: list[str] = []
        for screen in pending:
            data = self._cache.get(file_key, screen.id, ArtifactType.IMAGE)
            if data:
                images[screen.id] = ScreenImage(screen_id=screen.id, data=data)
            else:
                to_fetch.append(screen.id)

        if to_fetch:
            logger.info("Fetching %d screen images in one batch", len(to_fetch))
            fetched = self._fetch_batched_artifacts(file_key, to_fetch)
            for screen_id in to_fetch:
                image = fetched.get(screen_id)
                images[screen_id] = image
                if image is not None:
                    self._cache.put(file_key, screen_id, image.data, ArtifactType.IMAGE)
        return images

    # ----- Phase B ---------------------------------------------------------

    def _analyze_one(
        self,
        screen: Screen,
        image: ScreenImage,
        file_key: str,
        analyze_fn: AnalyzeFn,
    ) -> str:
        notes = self._cache.get(file_key, screen.id, ArtifactType.NOTES) or ""
        analysis = analyze_fn(screen, image, notes)
        if not analysis or not analysis.strip():
            raise GenerationEmptyError("Screen analysis", screens_involved=1, screen_id=screen.id)
        self._cache.put(file_key, screen.id, analysis, ArtifactType.ANALYSIS)
        return analysis

    def analyze(
        self,
        screens: Sequence[Screen],
        file_key: str,
        analyze_fn: AnalyzeFn,
        design_metadata: Optional[DesignFileMetadata] = None,
    ) -> ScreenAnalysisResult:
        """Analyze every screen not already in the cache.

        Args:
            screens: Screens in reading order.
            file_key: Design file the screens belong to.
            analyze_fn: Per-screen analysis capability.
            design_metadata: Current design-file metadata. When given, the
                cache baseline is refreshed once if anything was analyzed.

        Returns:
            Analyzed and cached screens in screen order, plus skipped ids
            (image missing from the batch) and per-screen failures.

        Raises:
            TransientCollaboratorError: the batched fetch failed, or a
                collaborator became unavailable mid-phase. Results stored
                before the failure remain cached.
        """
        cached, pending = self._partition(screens, file_key)
        logger.info(
            "Screen analysis: %d cached, %d to analyze",
            len(cached), len(pending), extra={"file_key": file_key},
        )

        result = ScreenAnalysisResult(cached=cached)
        if not pending:
            return result

        images = self._collect_images(pending, file_key)

        runnable: list[tuple[Screen, ScreenImage]] = []
        for screen in pending:
            image = images.get(screen.id)
            if image is None:
                err = MissingArtifactError(screen.id)
                logger.warning("Skipping screen %s: %s", screen.name, err.message)
                result.skipped.append(screen.id)
            else:
                runnable.append((screen, image))

        analyses: dict[str, str] = {}
        try:
            self._run_pool(runnable, file_key, analyze_fn, analyses, result)
        finally:
            if analyses and design_metadata is not None:
                self._cache.save_metadata(file_key, design_metadata)

        result.analyzed = [
            AnalyzedScreen(screen=screen, analysis=analyses[screen.id])
            for screen, _ in runnable
            if screen.id in analyses
        ]
        logger.info(
            "Screen analysis complete: %d analyzed, %d cached, %d skipped, %d failed",
            len(result.analyzed), len(result.cached), len(result.skipped), len(result.failed),
            extra={"file_key": file_key},
        )
        return result

    def _run_pool(
        self,
        runnable: list[tuple[Screen, ScreenImage]],
        file_key: str,
        analyze_fn: AnalyzeFn,
        analyses: dict[str, str],
        result: ScreenAnalysisResult,
    ) -> None:
        if not runnable:
            return

        executor = ThreadPoolExecutor(max_workers=min(self._max_workers, len(runnable)))
        try:
            futures: dict[Future, Screen] = {
                executor.submit(self._analyze_one, screen, image, file_key, analyze_fn): screen
                for screen, image in runnable
            }
            for future in as_completed(futures):
                screen = futures[future]
                try:
                    analyses[screen.id] = future.result()
                except TransientCollaboratorError:
                    logger.error("Collaborator unavailable while analyzing %s; aborting phase", screen.name)
                    executor.shutdown(wait=True, cancel_futures=True)
                    # Keep results of screens that finished while shutting down.
                    for other, other_screen in futures.items():
                        if other.done() and not other.cancelled() and other.exception() is None:
                            analyses[other_screen.id] = other.result()
                    raise
                except Exception as exc:
                    logger.error("Analysis failed for %s: %s", screen.name, exc)
                    result.failed[screen.id] = str(exc)
        finally:
            executor.shutdown(wait=True)
