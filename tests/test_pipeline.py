"""End-to-end pipeline tests against in-memory collaborators."""

from datetime import datetime, timedelta, timezone

import pytest

from screenscope.composer import DocumentComposer
from screenscope.document import (
    count_sections,
    document_size,
    iter_link_urls,
    markdown_to_nodes,
    nodes_to_text,
    paragraph,
)
from screenscope.exceptions import DocumentWriteError, TransientCollaboratorError
from screenscope.file_cache import FileCache
from screenscope.pipeline import PipelinePhase, ShellStoryPipeline
from screenscope.prompts import OVERFLOW_COMMENT_PREFIX

from conftest import (
    FILE_KEY,
    TOUCHED_AT,
    FakeDesignSource,
    FakeTracker,
    ScriptedGenerator,
    make_comment,
    make_frame,
    make_metadata,
    scope_text,
)

ITEM = "PROJ-1"
DESCRIPTION = f"Build the login flow.\n\nDesign: https://www.figma.com/design/{FILE_KEY}/App?node-id=1-1"


def _with_scope(scope: str, filler: str = "") -> str:
    body = f"{DESCRIPTION}\n\n## Scope Analysis\n\n{scope}"
    if filler:
        body += f"\n\n{filler}"
    return body


@pytest.fixture()
def tracker():
    return FakeTracker(DESCRIPTION)


def _pipeline(design, tracker, generator, test_settings, **kwargs):
    return ShellStoryPipeline(
        design=design,
        tracker=tracker,
        generator=generator,
        cache=FileCache(test_settings.cache_dir),
        settings=test_settings,
        **kwargs,
    )


def _written_text(tracker):
    return nodes_to_text(tracker.writes[-1][1])


# ---------------------------------------------------------------------------
# Happy paths
# ---------------------------------------------------------------------------


class TestProceed:
    def test_writes_scope_and_stories(self, design, tracker, generator, test_settings):
        result = _pipeline(design, tracker, generator, test_settings).run(ITEM)

        assert result.success is True
        assert result.action == "proceed"
        assert result.phase is PipelinePhase.PERSIST
        assert result.failed_phase is None
        assert result.file_key == FILE_KEY
        assert result.screens_total == 2
        assert result.screens_analyzed == 2
        assert result.story_count == 2

        assert len(tracker.writes) == 1
        written = tracker.writes[0][1]
        assert count_sections(written, "Scope Analysis") == 1
        assert count_sections(written, "Shell Stories") == 1
        assert "Build the login flow." in _written_text(tracker)

    def test_one_batched_image_fetch(self, design, tracker, generator, test_settings):
        _pipeline(design, tracker, generator, test_settings).run(ITEM)
        assert design.batch_calls == [["1:1", "1:2"]]
        assert len(generator.requests_of("screen")) == 2

    def test_notes_reach_screen_analysis(self, design, tracker, generator, test_settings):
        _pipeline(design, tracker, generator, test_settings).run(ITEM)
        prompts = [r.prompt for r in generator.requests_of("screen")]
        assert sum("- Shows errors inline" in p for p in prompts) == 1

    def test_existing_scope_within_threshold_is_not_regenerated(self, design, generator, test_settings):
        tracker = FakeTracker(_with_scope(scope_text(unanswered=2, answered=4)))
        result = _pipeline(design, tracker, generator, test_settings).run(ITEM)

        assert result.action == "proceed"
        assert result.question_count == 2
        assert generator.requests_of("scope") == []
        assert len(generator.requests_of("stories")) == 1

    def test_existing_scope_over_threshold_is_regenerated_once(self, design, test_settings):
        tracker = FakeTracker(_with_scope(scope_text(unanswered=8)))
        generator = ScriptedGenerator(scope_analyses=[scope_text(unanswered=1, answered=7)])

        result = _pipeline(design, tracker, generator, test_settings).run(ITEM)

        assert result.action == "proceed"
        assert len(generator.requests_of("scope")) == 1
        assert "Open question 7?" in generator.requests_of("scope")[0].prompt
        written = tracker.writes[0][1]
        assert count_sections(written, "Scope Analysis") == 1
        assert "Answered question 6?" in _written_text(tracker)

    def test_frame_outline_reaches_screen_analysis(self, tracker, generator, test_settings):
        login_node = {
            "id": "1:1",
            "type": "FRAME",
            "name": "Login",
            "children": [{"type": "TEXT", "name": "Title", "characters": "Welcome back"}],
        }
        design = FakeDesignSource(frames=[make_frame("1:1", name="Login", node=login_node), make_frame("1:2", x=300)])
        _pipeline(design, tracker, generator, test_settings).run(ITEM)

        prompts = {r.image.screen_id: r.prompt for r in generator.requests_of("screen")}
        assert "<Title>Welcome back</Title>" in prompts["1:1"]
        assert "_No layer outline available._" in prompts["1:2"]

    def test_explicit_urls_override_description(self, design, generator, test_settings):
        tracker = FakeTracker("No links in here")
        urls = [f"https://www.figma.com/design/{FILE_KEY}/App?node-id=1-2"]
        result = _pipeline(design, tracker, generator, test_settings).run(ITEM, urls)
        assert result.success is True
        assert design.frame_calls == [(FILE_KEY, ["1:2"])]

    def test_design_link_in_smart_link_card(self, design, generator, test_settings):
        tracker = FakeTracker()
        tracker.documents[ITEM] = [
            paragraph("Build the login flow."),
            {
                "type": "paragraph",
                "content": [{"type": "inlineCard", "attrs": {"url": f"https://www.figma.com/design/{FILE_KEY}/App?node-id=1-1"}}],
            },
        ]
        result = _pipeline(design, tracker, generator, test_settings).run(ITEM)

        assert result.success is True
        assert result.file_key == FILE_KEY
        assert design.frame_calls == [(FILE_KEY, ["1:1"])]

    def test_design_link_behind_link_label(self, design, generator, test_settings):
        tracker = FakeTracker()
        tracker.documents[ITEM] = [{
            "type": "paragraph",
            "content": [{
                "type": "text",
                "text": "Login design",
                "marks": [{"type": "link", "attrs": {"href": f"https://www.figma.com/design/{FILE_KEY}/App?node-id=1-2"}}],
            }],
        }]
        result = _pipeline(design, tracker, generator, test_settings).run(ITEM)

        assert result.success is True
        assert design.frame_calls == [(FILE_KEY, ["1:2"])]

    def test_story_links_are_written_as_link_marks(self, design, tracker, generator, test_settings):
        _pipeline(design, tracker, generator, test_settings).run(ITEM)
        hrefs = list(iter_link_urls(tracker.writes[0][1]))
        assert f"https://www.figma.com/design/{FILE_KEY}?node-id=1-1" in hrefs

    def test_progress_is_reported(self, design, tracker, generator, test_settings):
        messages = []
        _pipeline(design, tracker, generator, test_settings, notify=messages.append).run(ITEM)
        assert len(messages) == 6
        assert messages[-1] == f"Updating {ITEM}"


# ---------------------------------------------------------------------------
# Clarification paths
# ---------------------------------------------------------------------------


class TestClarify:
    def test_generated_scope_with_many_questions_stops(self, design, tracker, test_settings):
        generator = ScriptedGenerator(scope_analyses=[scope_text(unanswered=7)])
        result = _pipeline(design, tracker, generator, test_settings).run(ITEM)

        assert result.success is True
        assert result.action == "clarify"
        assert result.question_count == 7
        assert result.story_count == 0
        assert generator.requests_of("stories") == []

        written = tracker.writes[0][1]
        assert count_sections(written, "Scope Analysis") == 1
        assert count_sections(written, "Shell Stories") == 0

    def test_final_message_counts_questions_and_feature_areas(self, design, tracker, test_settings):
        generator = ScriptedGenerator(scope_analyses=[scope_text(unanswered=7)])
        messages = []
        _pipeline(design, tracker, generator, test_settings, notify=messages.append).run(ITEM)

        assert messages[-1].startswith("Scope analysis complete: 7 question(s), 1 feature area(s).")
        assert "under 5 and re-run" in messages[-1]

    def test_proceed_has_no_clarification_message(self, design, tracker, generator, test_settings):
        messages = []
        _pipeline(design, tracker, generator, test_settings, notify=messages.append).run(ITEM)
        assert not any(m.startswith("Scope analysis complete") for m in messages)

    def test_regeneration_still_over_threshold(self, design, test_settings):
        tracker = FakeTracker(_with_scope(scope_text(unanswered=9)))
        generator = ScriptedGenerator(scope_analyses=[scope_text(unanswered=6)])

        result = _pipeline(design, tracker, generator, test_settings).run(ITEM)

        assert result.action == "still_needs_clarification"
        assert result.question_count == 6
        assert len(generator.requests_of("scope")) == 1
        assert "Open question 8?" not in _written_text(tracker)
        assert count_sections(tracker.writes[0][1], "Scope Analysis") == 1


# ---------------------------------------------------------------------------
# Cache reuse
# ---------------------------------------------------------------------------


class TestCacheReuse:
    def test_second_run_uses_cached_analyses(self, design, tracker, generator, test_settings):
        pipeline = _pipeline(design, tracker, generator, test_settings)
        first = pipeline.run(ITEM)
        second = pipeline.run(ITEM)

        assert first.cache_invalidated is True
        assert second.cache_invalidated is False
        assert second.screens_cached == 2
        assert second.screens_analyzed == 0
        assert len(design.batch_calls) == 1
        assert len(generator.requests_of("screen")) == 2

        written = tracker.writes[-1][1]
        assert count_sections(written, "Scope Analysis") == 1
        assert count_sections(written, "Shell Stories") == 1

    def test_design_change_invalidates(self, design, tracker, generator, test_settings):
        pipeline = _pipeline(design, tracker, generator, test_settings)
        pipeline.run(ITEM)
        design.metadata = make_metadata(TOUCHED_AT + timedelta(hours=1))
        second = pipeline.run(ITEM)

        assert second.cache_invalidated is True
        assert second.screens_analyzed == 2
        assert len(design.batch_calls) == 2


# ---------------------------------------------------------------------------
# Design comments
# ---------------------------------------------------------------------------


class TestComments:
    def test_thread_on_frame_reaches_screen_analysis(self, tracker, generator, test_settings):
        design = FakeDesignSource(comments=[
            make_comment("c1", "Use a toggle here", node_id="1:1"),
            make_comment("c2", "Agreed", parent_id="c1", author="pm", created_at=TOUCHED_AT + timedelta(minutes=5)),
        ])
        result = _pipeline(design, tracker, generator, test_settings).run(ITEM)

        assert result.comment_threads == 1
        assert result.comment_threads_matched == 1
        prompts = [r.prompt for r in generator.requests_of("screen")]
        commented = [p for p in prompts if "Use a toggle here" in p]
        assert len(commented) == 1
        assert "- **@designer** (💬 OPEN): Use a toggle here\n  - **@pm**: Agreed" in commented[0]
        assert "- Shows errors inline" in commented[0]

    def test_canvas_comment_placed_by_edge_distance(self, tracker, generator, test_settings):
        design = FakeDesignSource(comments=[
            make_comment("c1", "Near the second screen", point=(350.0, 150.0)),
            make_comment("c2", "Far away", point=(2000.0, 2000.0)),
        ])
        result = _pipeline(design, tracker, generator, test_settings).run(ITEM)

        assert result.comment_threads == 2
        assert result.comment_threads_matched == 1
        prompts = [r.prompt for r in generator.requests_of("screen")]
        assert sum("Near the second screen" in p for p in prompts) == 1
        assert not any("Far away" in p for p in prompts)

    def test_new_comment_reanalyzes_only_its_screen(self, design, tracker, generator, test_settings):
        pipeline = _pipeline(design, tracker, generator, test_settings)
        pipeline.run(ITEM)
        design.comments = [
            make_comment("c1", "Rename this", node_id="1:2", created_at=datetime.now(timezone.utc) + timedelta(hours=1)),
        ]
        second = pipeline.run(ITEM)

        assert second.cache_invalidated is False
        assert second.comment_refreshed_screens == ["1:2"]
        assert second.screens_analyzed == 1
        assert second.screens_cached == 1
        assert "Rename this" in generator.requests_of("screen")[-1].prompt

    def test_comment_older_than_cache_keeps_analysis(self, design, tracker, generator, test_settings):
        pipeline = _pipeline(design, tracker, generator, test_settings)
        pipeline.run(ITEM)
        design.comments = [make_comment("c1", "Old remark", node_id="1:2")]
        second = pipeline.run(ITEM)

        assert second.comment_refreshed_screens == []
        assert second.screens_cached == 2

    def test_comment_fetch_failure_does_not_fail_run(self, tracker, generator, test_settings):
        design = FakeDesignSource(comments_error=TransientCollaboratorError("design", "forbidden", 403))
        result = _pipeline(design, tracker, generator, test_settings).run(ITEM)

        assert result.success is True
        assert result.comment_threads == 0


# ---------------------------------------------------------------------------
# Partial and failed runs
# ---------------------------------------------------------------------------


class TestFailures:
    def test_missing_design_link_fails_setup(self, design, generator, test_settings):
        tracker = FakeTracker("Nothing linked")
        result = _pipeline(design, tracker, generator, test_settings).run(ITEM)

        assert result.success is False
        assert result.failed_phase is PipelinePhase.SETUP
        assert result.error_code == "DESIGN_LINK_MISSING"
        assert tracker.writes == []

    def test_no_frames_fails_setup(self, tracker, generator, test_settings):
        design = FakeDesignSource(frames=[], notes=[])
        result = _pipeline(design, tracker, generator, test_settings).run(ITEM)
        assert result.failed_phase is PipelinePhase.SETUP
        assert result.error_code == "VALIDATION_ERROR"

    def test_batch_failure_names_analyze_phase(self, tracker, generator, test_settings):
        design = FakeDesignSource(batch_error=TransientCollaboratorError("design", "rate limited", 429))
        result = _pipeline(design, tracker, generator, test_settings).run(ITEM)

        assert result.success is False
        assert result.failed_phase is PipelinePhase.ANALYZE
        assert result.error_code == "RATE_LIMITED"
        assert tracker.writes == []

    def test_skipped_screens_are_reported(self, tracker, generator, test_settings):
        design = FakeDesignSource(missing_images=["1:2"])
        result = _pipeline(design, tracker, generator, test_settings).run(ITEM)

        assert result.success is True
        assert result.skipped_screens == ["1:2"]
        assert result.screens_analyzed == 1

    def test_all_analyses_empty_fails_analyze(self, design, tracker, test_settings):
        generator = ScriptedGenerator(screen_analysis="")
        result = _pipeline(design, tracker, generator, test_settings).run(ITEM)

        assert result.failed_phase is PipelinePhase.ANALYZE
        assert result.error_code == "GENERATION_EMPTY"
        assert set(result.failed_screens) == {"1:1", "1:2"}

    def test_write_failure_names_persist_phase(self, design, generator, test_settings):
        tracker = FakeTracker(DESCRIPTION, write_error=DocumentWriteError(ITEM, "400 Bad Request", 400))
        result = _pipeline(design, tracker, generator, test_settings).run(ITEM)

        assert result.failed_phase is PipelinePhase.PERSIST
        assert result.error_code == "DOCUMENT_WRITE_FAILED"

    def test_result_serializes(self, design, tracker, generator, test_settings):
        data = _pipeline(design, tracker, generator, test_settings).run(ITEM).to_dict()
        assert data["phase"] == "persist"
        assert data["failed_phase"] is None


# ---------------------------------------------------------------------------
# Size limits
# ---------------------------------------------------------------------------


class TestOverflow:
    def _setup(self, comment_error=None):
        markdown = _with_scope(scope_text(unanswered=1), filler="Filler " * 600)
        tracker = FakeTracker(markdown, comment_error=comment_error)
        limit = document_size(markdown_to_nodes(markdown)) + 20
        return tracker, DocumentComposer(limit=limit, safety_margin=0)

    def test_scope_section_moves_to_comment(self, design, generator, test_settings):
        tracker, composer = self._setup()
        result = _pipeline(design, tracker, generator, test_settings, composer=composer).run(ITEM)

        assert result.success is True
        assert result.overflowed is True
        written = tracker.writes[0][1]
        assert count_sections(written, "Scope Analysis") == 0
        assert count_sections(written, "Shell Stories") == 1

        assert len(tracker.comments) == 1
        item_id, comment = tracker.comments[0]
        assert item_id == ITEM
        assert comment.startswith(OVERFLOW_COMMENT_PREFIX)
        assert "## Scope Analysis" in comment

    def test_comment_failure_does_not_fail_run(self, design, generator, test_settings):
        tracker, composer = self._setup(comment_error=TransientCollaboratorError("tracker", "down"))
        result = _pipeline(design, tracker, generator, test_settings, composer=composer).run(ITEM)

        assert result.success is True
        assert result.overflowed is True
        assert len(tracker.writes) == 1


# ---------------------------------------------------------------------------
# Scope-only operation
# ---------------------------------------------------------------------------


class TestRunScopeAnalysis:
    def test_writes_scope_without_stories(self, design, tracker, generator, test_settings):
        result = _pipeline(design, tracker, generator, test_settings).run_scope_analysis(ITEM)

        assert result.success is True
        assert result.action == "proceed"
        assert generator.requests_of("stories") == []
        assert count_sections(tracker.writes[0][1], "Scope Analysis") == 1

    def test_existing_scope_passed_as_previous(self, design, test_settings):
        tracker = FakeTracker(_with_scope(scope_text(unanswered=1, answered=2)))
        generator = ScriptedGenerator(scope_analyses=[scope_text(unanswered=7)])

        result = _pipeline(design, tracker, generator, test_settings).run_scope_analysis(ITEM)

        assert result.action == "clarify"
        assert "Answered question 1?" in generator.requests_of("scope")[0].prompt
        assert count_sections(tracker.writes[0][1], "Scope Analysis") == 1
