"""
Tests for configuration profiles

Tests config_loader.py: defaults, durations, profile loading and
inheritance, flattening, env var overrides, CLI overrides, the full merge
chain and validation.
"""

import os
import sys
from argparse import Namespace
from pathlib import Path
from unittest.mock import patch

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "scripts"))

import config_loader
from config_loader import (
    analyzer_timeout_for,
    build_unified_config,
    deep_merge,
    extract_cli_overrides,
    flatten_profile,
    get_default_config,
    list_available_profiles,
    load_env_overrides,
    load_profile,
    parse_duration,
    split_labels,
    validate_config,
)
from exceptions import ConfigError


def _env(**values):
    """Current environment minus synthesis settings, plus *values*."""
    env = {k: v for k, v in os.environ.items() if not k.startswith("SYNTHESIS_") and k != "LOG_LEVEL"}
    env.update(values)
    return env


# ============================================================================
# Test get_default_config
# ============================================================================


class TestGetDefaultConfig:
    def test_all_keys_present(self):
        config = get_default_config()
        for key in (
            "confidence_threshold",
            "analyzer_timeout",
            "analyzer_timeouts",
            "analyzer_workers",
            "precheck_commands",
            "tracker_backend",
            "tracker_max_attempts",
            "tracker_backoff_seconds",
            "tracker_backoff_max_seconds",
            "tracker_workers",
            "tracker_labels",
            "submission_store_path",
            "transcript_path",
            "log_level",
        ):
            assert key in config, f"Missing key: {key}"

    def test_sensible_defaults(self):
        config = get_default_config()
        assert config["confidence_threshold"] == 80
        assert parse_duration(config["analyzer_timeout"]) == 120.0
        assert config["tracker_backend"] == "beads"
        assert config["tracker_max_attempts"] == 3

    def test_defaults_are_valid(self):
        assert validate_config(get_default_config()) == []

    def test_fresh_copy_each_call(self):
        config = get_default_config()
        config["analyzer_timeouts"]["x"] = "1s"
        assert get_default_config()["analyzer_timeouts"] == {}


# ============================================================================
# Test parse_duration
# ============================================================================


class TestParseDuration:
    @pytest.mark.parametrize(
        "value, seconds",
        [(45, 45.0), (2.5, 2.5), ("45", 45.0), ("45s", 45.0), ("2m", 120.0),
         ("1h", 3600.0), ("500ms", 0.5), (" 90S ", 90.0)],
    )
    def test_valid(self, value, seconds):
        assert parse_duration(value) == seconds

    @pytest.mark.parametrize("value", ["fast", "10 minutes", "-5s", None, True, [1]])
    def test_invalid(self, value):
        with pytest.raises(ConfigError):
            parse_duration(value)


# ============================================================================
# Test flatten_profile
# ============================================================================


class TestFlattenProfile:
    def test_filter_section(self):
        assert flatten_profile({"filter": {"threshold": 85}}) == {"confidence_threshold": 85}

    def test_analyzers_section(self):
        flat = flatten_profile(
            {"analyzers": {"timeout": "60s", "timeouts": {"security": "5m"}, "workers": 2}}
        )
        assert flat == {
            "analyzer_timeout": "60s",
            "analyzer_timeouts": {"security": "5m"},
            "analyzer_workers": 2,
        }

    def test_tracker_section(self):
        flat = flatten_profile({"tracker": {"backend": "file", "max_attempts": 4}})
        assert flat == {"tracker_backend": "file", "tracker_max_attempts": 4}

    def test_label_list_joined(self):
        flat = flatten_profile({"tracker": {"labels": ["code-review", "bot"]}})
        assert flat["tracker_labels"] == "code-review,bot"

    def test_output_section(self):
        flat = flatten_profile({"output": {"log_level": "DEBUG"}})
        assert flat == {"log_level": "DEBUG"}

    def test_none_values_excluded(self):
        assert flatten_profile({"filter": {"threshold": None}}) == {}

    def test_unknown_keys_dropped(self):
        assert flatten_profile({"tracker": {"colour": "red"}, "mystery": 1}) == {}

    def test_top_level_scalars(self):
        flat = flatten_profile(
            {"name": "x", "description": "y", "confidence_threshold": 70, "log_level": "WARNING"}
        )
        assert flat == {"confidence_threshold": 70, "log_level": "WARNING"}


# ============================================================================
# Test load_profile
# ============================================================================


class TestLoadProfile:
    def test_load_default_profile(self):
        config = load_profile("default")
        assert config["confidence_threshold"] == 80
        assert config["tracker_labels"] == "code-review"

    def test_strict_inherits_default(self):
        config = load_profile("strict")
        assert config["confidence_threshold"] == 90
        assert config["tracker_max_attempts"] == 5
        assert config["tracker_backend"] == "beads"
        assert config["analyzer_timeout"] == "120s"

    def test_quick_profile(self):
        config = load_profile("quick")
        assert config["confidence_threshold"] == 70
        assert config["analyzer_timeout"] == "30s"
        assert config["tracker_backend"] == "file"

    def test_nonexistent_profile(self):
        with pytest.raises(FileNotFoundError):
            load_profile("nonexistent_profile_xyz")

    def test_all_profiles_loadable(self):
        profiles = list_available_profiles()
        assert {"default", "strict", "quick"} <= set(profiles)
        for name in profiles:
            assert validate_config(deep_merge(get_default_config(), load_profile(name))) == []

    def test_circular_inheritance(self, tmp_path):
        (tmp_path / "a.yml").write_text("_extends: b\n")
        (tmp_path / "b.yml").write_text("_extends: a\n")
        with patch.object(
            config_loader, "_profile_search_paths", lambda name: [tmp_path / f"{name}.yml"]
        ):
            with pytest.raises(ValueError, match="Circular"):
                load_profile("a")


# ============================================================================
# Test load_env_overrides / extract_cli_overrides
# ============================================================================


class TestLoadEnvOverrides:
    def test_empty_when_no_env(self):
        with patch.dict(os.environ, {}, clear=True):
            assert load_env_overrides() == {}

    def test_int_env_var(self):
        with patch.dict(os.environ, {"SYNTHESIS_CONFIDENCE_THRESHOLD": "90"}, clear=True):
            assert load_env_overrides() == {"confidence_threshold": 90}

    def test_float_env_var(self):
        with patch.dict(os.environ, {"SYNTHESIS_TRACKER_BACKOFF_SECONDS": "0.25"}, clear=True):
            assert load_env_overrides()["tracker_backoff_seconds"] == 0.25

    def test_first_match_wins(self):
        env = {"SYNTHESIS_LOG_LEVEL": "DEBUG", "LOG_LEVEL": "ERROR"}
        with patch.dict(os.environ, env, clear=True):
            assert load_env_overrides()["log_level"] == "DEBUG"

    def test_fallback_name(self):
        with patch.dict(os.environ, {"LOG_LEVEL": "ERROR"}, clear=True):
            assert load_env_overrides()["log_level"] == "ERROR"

    def test_bad_value_ignored(self, caplog):
        with patch.dict(os.environ, {"SYNTHESIS_TRACKER_WORKERS": "many"}, clear=True):
            assert load_env_overrides() == {}
        assert "SYNTHESIS_TRACKER_WORKERS" in caplog.text


class TestExtractCliOverrides:
    def test_none_args(self):
        assert extract_cli_overrides(None) == {}

    def test_only_set_values(self):
        args = Namespace(threshold=70, tracker=None, max_attempts=5, labels="a,b")
        assert extract_cli_overrides(args) == {
            "confidence_threshold": 70,
            "tracker_max_attempts": 5,
            "tracker_labels": "a,b",
        }

    def test_profile_kept_separate(self):
        assert extract_cli_overrides(Namespace(profile="strict")) == {"_profile": "strict"}


# ============================================================================
# Test deep_merge
# ============================================================================


class TestDeepMerge:
    def test_override_wins(self):
        assert deep_merge({"a": 1, "b": 2}, {"b": 3}) == {"a": 1, "b": 3}

    def test_none_does_not_override(self):
        assert deep_merge({"a": 1}, {"a": None}) == {"a": 1}

    def test_maps_merged_by_key(self):
        merged = deep_merge(
            {"analyzer_timeouts": {"a": "1s", "b": "2s"}},
            {"analyzer_timeouts": {"b": "5s"}},
        )
        assert merged["analyzer_timeouts"] == {"a": "1s", "b": "5s"}


# ============================================================================
# Test build_unified_config (full merge chain)
# ============================================================================


class TestBuildUnifiedConfig:
    def test_defaults_only(self, tmp_path):
        with patch.dict(os.environ, _env(), clear=True):
            config = build_unified_config(repo_path=str(tmp_path))
        assert config == get_default_config()

    def test_profile_layer(self, tmp_path):
        with patch.dict(os.environ, _env(), clear=True):
            config = build_unified_config(profile="strict", repo_path=str(tmp_path))
        assert config["confidence_threshold"] == 90

    def test_precedence_chain(self, tmp_path):
        (tmp_path / ".synthesis.yml").write_text(
            "filter:\n  threshold: 85\ntracker:\n  backend: file\n  max_attempts: 6\n"
        )
        env = _env(SYNTHESIS_CONFIDENCE_THRESHOLD="88", SYNTHESIS_TRACKER_MAX_ATTEMPTS="7")
        args = Namespace(threshold=70, profile=None)

        with patch.dict(os.environ, env, clear=True):
            config = build_unified_config(profile="strict", cli_args=args, repo_path=str(tmp_path))

        assert config["confidence_threshold"] == 70       # CLI
        assert config["tracker_max_attempts"] == 7        # env
        assert config["tracker_backend"] == "file"        # .synthesis.yml
        assert config["analyzer_timeout"] == "120s"       # profile / default

    def test_profile_named_in_project_file(self, tmp_path):
        (tmp_path / ".synthesis.yml").write_text("profile: strict\n")
        with patch.dict(os.environ, _env(), clear=True):
            config = build_unified_config(repo_path=str(tmp_path))
        assert config["confidence_threshold"] == 90

    def test_profile_from_cli_args(self, tmp_path):
        with patch.dict(os.environ, _env(), clear=True):
            config = build_unified_config(
                cli_args=Namespace(profile="quick"), repo_path=str(tmp_path)
            )
        assert config["tracker_backend"] == "file"

    def test_profile_from_env(self, tmp_path):
        with patch.dict(os.environ, _env(SYNTHESIS_PROFILE="quick"), clear=True):
            config = build_unified_config(repo_path=str(tmp_path))
        assert config["confidence_threshold"] == 70

    def test_missing_profile_is_skipped(self, tmp_path, caplog):
        with patch.dict(os.environ, _env(), clear=True):
            config = build_unified_config(profile="no_such_profile", repo_path=str(tmp_path))
        assert config == get_default_config()
        assert "no_such_profile" in caplog.text

    def test_project_file_must_be_mapping(self, tmp_path):
        (tmp_path / ".synthesis.yml").write_text("- just\n- a list\n")
        with patch.dict(os.environ, _env(), clear=True):
            with pytest.raises(ConfigError):
                build_unified_config(repo_path=str(tmp_path))


# ============================================================================
# Test accessors and validate_config
# ============================================================================


class TestAccessors:
    def test_split_labels(self):
        assert split_labels("code-review, bot ,") == ["code-review", "bot"]
        assert split_labels(["a", " b "]) == ["a", "b"]
        assert split_labels("") == []

    def test_analyzer_timeout_for(self):
        config = dict(get_default_config(), analyzer_timeouts={"security": "5m"})
        assert analyzer_timeout_for(config, "security") == 300.0
        assert analyzer_timeout_for(config, "design") == 120.0


class TestValidateConfig:
    def _issues(self, **overrides):
        return validate_config(dict(get_default_config(), **overrides))

    @pytest.mark.parametrize("threshold", [150, -1, "80", 80.5, True])
    def test_bad_threshold(self, threshold):
        issues = self._issues(confidence_threshold=threshold)
        assert any(i.startswith("ERROR") and "confidence_threshold" in i for i in issues)

    def test_bad_timeouts(self):
        issues = self._issues(analyzer_timeout="0s", analyzer_timeouts={"security": "soon"})
        assert len([i for i in issues if i.startswith("ERROR")]) == 2

    def test_bad_tracker_settings(self):
        issues = self._issues(tracker_backend="jira", tracker_max_attempts=0, tracker_workers="4")
        assert len([i for i in issues if i.startswith("ERROR")]) == 3

    def test_negative_backoff(self):
        assert self._issues(tracker_backoff_seconds=-1)

    def test_warnings(self):
        issues = self._issues(log_level="LOUD", tracker_labels="")
        assert len(issues) == 2
        assert all(i.startswith("WARNING") for i in issues)
