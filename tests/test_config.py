"""Tests for pairloop.lib.config module."""

import pytest
from pathlib import Path

from pairloop.lib.config import (
    CONFIG_FILENAME,
    UNREVIEWED_POLICIES,
    PairConfig,
    load_pair_config,
)


class TestPairConfigDefaults:
    """Tests for PairConfig default values."""

    def test_defaults(self):
        """Defaults should match the documented pair-mode settings."""
        config = PairConfig()
        assert config.max_look_ahead == 3
        assert config.review_timeout_ms == 120000
        assert config.consensus_timeout_ms == 300000
        assert config.max_consensus_rounds == 2
        assert config.web_search_enabled is True
        assert config.show_cost_warnings is True
        assert config.unreviewed_policy == "proceed"
        assert config.autosave_debounce_ms == 500

    def test_providers(self):
        """Executor and reviewer should default to different providers."""
        config = PairConfig()
        assert config.executor_provider == "anthropic"
        assert config.reviewer_provider == "openai"


class TestLoadPairConfig:
    """Tests for load_pair_config."""

    def test_none_returns_defaults(self):
        assert load_pair_config(None) == PairConfig()

    def test_missing_file_returns_defaults(self, tmp_path):
        assert load_pair_config(tmp_path) == PairConfig()

    def test_empty_file_returns_defaults(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text("")
        assert load_pair_config(tmp_path) == PairConfig()

    def test_overrides_merge_with_defaults(self, tmp_path):
        """Keys present in the file override; the rest keep defaults."""
        (tmp_path / CONFIG_FILENAME).write_text(
            "max_look_ahead: 2\n"
            "review_timeout_ms: 60000\n"
            "unreviewed_policy: record_note\n"
        )
        config = load_pair_config(tmp_path)
        assert config.max_look_ahead == 2
        assert config.review_timeout_ms == 60000
        assert config.unreviewed_policy == "record_note"
        assert config.consensus_timeout_ms == 300000

    def test_unknown_key_ignored_with_warning(self, tmp_path, caplog):
        (tmp_path / CONFIG_FILENAME).write_text("max_look_ahead: 1\nlookahead: 9\n")
        config = load_pair_config(tmp_path)
        assert config.max_look_ahead == 1
        assert "Unknown key 'lookahead'" in caplog.text

    def test_invalid_yaml_returns_defaults(self, tmp_path, caplog):
        """Unparseable YAML should warn and fall back to defaults."""
        (tmp_path / CONFIG_FILENAME).write_text("max_look_ahead: [unclosed\n")
        config = load_pair_config(tmp_path)
        assert config == PairConfig()
        assert "Failed to parse" in caplog.text

    def test_non_mapping_returns_defaults(self, tmp_path, caplog):
        (tmp_path / CONFIG_FILENAME).write_text("- just\n- a list\n")
        config = load_pair_config(tmp_path)
        assert config == PairConfig()
        assert "expected a mapping" in caplog.text

    def test_invalid_policy_falls_back_to_proceed(self, tmp_path, caplog):
        (tmp_path / CONFIG_FILENAME).write_text("unreviewed_policy: halt\n")
        config = load_pair_config(tmp_path)
        assert config.unreviewed_policy == "proceed"
        assert "Unknown unreviewed_policy 'halt'" in caplog.text


class TestUnreviewedPolicies:
    """Test UNREVIEWED_POLICIES constant."""

    def test_contains_expected_policies(self):
        assert "proceed" in UNREVIEWED_POLICIES
        assert "record_note" in UNREVIEWED_POLICIES
        assert len(UNREVIEWED_POLICIES) == 2
