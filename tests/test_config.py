"""Tests for settings loading and validation."""

import pytest
from pydantic import ValidationError

from screenscope.config import ConfigurationError, Settings


class TestSettings:
    def test_defaults(self, tmp_path):
        s = Settings(cache_dir=str(tmp_path))
        assert s.max_note_distance == 500
        assert s.row_tolerance == 50
        assert s.comment_proximity == 50
        assert s.question_threshold == 5
        assert s.description_limit == 43838
        assert s.effective_size_limit == 43838 - 2000

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("QUESTION_THRESHOLD", "8")
        monkeypatch.setenv("LLM_MODEL", "anthropic/claude-sonnet-4-20250514")
        s = Settings()
        assert s.question_threshold == 8
        assert s.llm_model == "anthropic/claude-sonnet-4-20250514"

    def test_log_level_normalized(self):
        assert Settings(log_level="debug").log_level == "DEBUG"

    def test_invalid_log_level(self):
        with pytest.raises(ValidationError):
            Settings(log_level="LOUD")

    def test_invalid_log_format(self):
        with pytest.raises(ValidationError):
            Settings(log_format="xml")

    def test_missing_collaborator_settings(self):
        s = Settings(figma_token="t", jira_base_url="", jira_api_token="x")
        assert s.missing_collaborator_settings() == ["JIRA_BASE_URL"]

    def test_configuration_error_lists_missing(self):
        err = ConfigurationError(["FIGMA_TOKEN", "JIRA_API_TOKEN"])
        assert err.message == "Missing configuration: FIGMA_TOKEN, JIRA_API_TOKEN"
        assert err.to_dict()["details"] == {"missing": ["FIGMA_TOKEN", "JIRA_API_TOKEN"]}
