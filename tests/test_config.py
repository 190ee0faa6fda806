"""Tests for configuration models and YAML loading."""

import pytest
from pydantic import ValidationError

from introflow.core.config import Config, RateLimitConfig, check_unexpanded_vars, expand_env_vars, load_config


class TestCheckUnexpandedVars:
    """Tests for unresolved ${VAR} pattern detection."""

    def test_no_vars_passes(self):
        """Fully expanded config raises nothing."""
        data = {"db_path": "introflow.db", "nested": {"inner": "resolved"}}
        check_unexpanded_vars(data, source="test.yaml")

    def test_unresolved_var_raises(self):
        """Single unresolved ${VAR} raises ValueError."""
        with pytest.raises(ValueError, match="MISSING_DB"):
            check_unexpanded_vars({"db_path": "${MISSING_DB}"}, source="test.yaml")

    def test_source_label_in_error(self):
        """Error message includes the source label."""
        with pytest.raises(ValueError, match="config.yaml"):
            check_unexpanded_vars({"key": "${MISSING}"}, source="config.yaml")

    def test_nested_and_list_detection(self):
        """Unresolved vars in nested dicts and lists are all reported."""
        data = {"api": {"cors_origins": ["ok", "${MISSING_ORIGIN}"]}, "logging": {"level": "${LOG_LEVEL}"}}
        with pytest.raises(ValueError, match="LOG_LEVEL") as exc_info:
            check_unexpanded_vars(data, source="test.yaml")
        assert "MISSING_ORIGIN" in str(exc_info.value)

    def test_non_string_values_ignored(self):
        check_unexpanded_vars({"port": 8000, "enabled": True, "ratio": 0.5, "nothing": None}, source="test.yaml")


class TestExpandEnvVars:
    """Tests for ${VAR} expansion."""

    def test_expands_known_var(self, monkeypatch):
        monkeypatch.setenv("INTROFLOW_DB", "/data/flow.db")
        assert expand_env_vars("${INTROFLOW_DB}") == "/data/flow.db"

    def test_leaves_unknown_var(self, monkeypatch):
        monkeypatch.delenv("NOT_SET_ANYWHERE", raising=False)
        assert expand_env_vars("x-${NOT_SET_ANYWHERE}") == "x-${NOT_SET_ANYWHERE}"


class TestLoadConfig:
    """Tests for load_config."""

    def test_defaults_without_path(self):
        config = load_config(None)
        assert config.db_path == "introflow.db"
        assert config.events.max_retries == 5
        assert config.tasks.initial_backoff_seconds == 60
        assert config.rate_limits.daily_limit == 10
        assert config.rate_limits.hourly_limit == 2
        assert config.priorities.dormancy_threshold == 2
        assert config.sagas.opportunity_bounty == 50
        assert config.sagas.offer_bounty == 25

    def test_yaml_with_env_expansion(self, tmp_path, monkeypatch):
        monkeypatch.setenv("INTROFLOW_DB", str(tmp_path / "flow.db"))
        path = tmp_path / "config.yaml"
        path.write_text(
            "db_path: ${INTROFLOW_DB}\n"
            "rate_limits:\n"
            "  daily_limit: 4\n"
            "  quiet_hours: '23:00-07:00'\n"
            "sagas:\n"
            "  offer_bounty: 30\n"
        )

        config = load_config(path)

        assert config.db_path == str(tmp_path / "flow.db")
        assert config.rate_limits.daily_limit == 4
        assert config.rate_limits.quiet_hours == "23:00-07:00"
        assert config.sagas.offer_bounty == 30
        assert config.tasks.max_retries == 3

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")
        assert load_config(path) == Config()

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_unresolved_var_in_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv("UNSET_INTROFLOW_DB", raising=False)
        path = tmp_path / "config.yaml"
        path.write_text("db_path: ${UNSET_INTROFLOW_DB}\n")
        with pytest.raises(ValueError, match="UNSET_INTROFLOW_DB"):
            load_config(path)


class TestValidators:
    """Tests for field validators."""

    def test_invalid_timezone(self):
        with pytest.raises(ValidationError, match="Invalid timezone"):
            RateLimitConfig(default_timezone="Mars/Olympus_Mons")

    def test_invalid_quiet_hours(self):
        with pytest.raises(ValidationError, match="Invalid time window"):
            RateLimitConfig(quiet_hours="late")

    def test_quiet_hours_can_be_disabled(self):
        assert RateLimitConfig(quiet_hours=None).quiet_hours is None


class TestLoadConfigShape:
    """Tests for document-level checks."""

    def test_non_mapping_document_rejected(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- events\n- tasks\n")
        with pytest.raises(ValueError, match="mapping"):
            load_config(path)

    def test_unknown_section_warns(self, tmp_path, caplog):
        path = tmp_path / "config.yaml"
        path.write_text("rate_limit:\n  daily_limit: 3\n")

        with caplog.at_level("WARNING", logger="introflow.core.config.loader"):
            config = load_config(path)

        assert "rate_limit" in caplog.text
        assert config.rate_limits.daily_limit == 10
