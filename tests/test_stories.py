"""Tests for shell story generation."""

from unittest.mock import MagicMock

import pytest

from screenscope.exceptions import GenerationEmptyError
from screenscope.models import AnalyzedScreen
from screenscope.stories import count_stories, generate_shell_stories, prepare_stories_section

from conftest import STORIES_TEXT, make_screen


def _analyses():
    return [AnalyzedScreen(make_screen("1:1", name="Login"), "Login form")]


def _llm(text):
    llm = MagicMock()
    llm.generate_text.return_value = text
    return llm


class TestCountStories:
    def test_counts_top_level_story_bullets(self):
        assert count_stories(STORIES_TEXT) == 2

    def test_accepts_ids_without_backticks(self):
        assert count_stories("- st001 **A**\n- st002 **B**\n  - st003 nested") == 2

    def test_ignores_other_bullets(self):
        assert count_stories("- Just a bullet\n- story 1") == 0


class TestPrepareSection:
    def test_replaces_model_title(self):
        assert prepare_stories_section("# My Stories\n\n- `st001` A") == "## Shell Stories\n\n- `st001` A"

    def test_adds_heading_when_missing(self):
        assert prepare_stories_section("- `st001` A") == "## Shell Stories\n\n- `st001` A"

    def test_keeps_deeper_headings(self):
        section = prepare_stories_section("### Group\n- `st001` A")
        assert section.startswith("## Shell Stories\n\n### Group")


class TestGenerateShellStories:
    def test_returns_section_and_count(self):
        stories = generate_shell_stories(_llm(STORIES_TEXT), "- ☐ Login", _analyses())
        assert stories.story_count == 2
        assert stories.markdown.startswith("## Shell Stories\n\n- `st001`")
        assert stories.markdown.count("## Shell Stories") == 1

    def test_prompt_carries_scope_analysis(self):
        llm = _llm(STORIES_TEXT)
        generate_shell_stories(llm, "- ☐ Remember me", _analyses(), context="Epic", max_tokens=999)
        request = llm.generate_text.call_args[0][0]
        assert "- ☐ Remember me" in request.prompt
        assert "Login form" in request.prompt
        assert request.max_tokens == 999
        assert request.image is None

    @pytest.mark.parametrize("output", ["", "   ", "Sorry, I cannot help with that."])
    def test_unusable_output_raises(self, output):
        with pytest.raises(GenerationEmptyError) as exc_info:
            generate_shell_stories(_llm(output), "- ☐ Login", _analyses())
        assert "Analysis files loaded: 1" in exc_info.value.message
