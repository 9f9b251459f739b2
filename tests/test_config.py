"""Unit tests for configuration with pydantic-settings.

Covers defaults, environment overrides, validation, the repositories file
and GitHub token resolution order.
"""

from pathlib import Path

import pytest
from pydantic import SecretStr, ValidationError

from doc_updates.config import (
    DEFAULT_REPOSITORIES,
    TrackedRepository,
    UpdatesConfig,
    get_config,
    load_repositories,
    reset_config,
    resolve_github_token,
)


class TestUpdatesConfig:
    """Test UpdatesConfig with pydantic-settings BaseSettings."""

    def test_default_config_values(self, monkeypatch, tmp_path):
        """Defaults match the documented sync behaviour."""
        monkeypatch.chdir(tmp_path)  # no stray .env
        config = UpdatesConfig()

        assert config.github_token.get_secret_value() == ""
        assert config.github_api_url == "https://api.github.com"
        assert config.github_raw_url == "https://raw.githubusercontent.com"
        assert config.min_sync_interval_seconds == 3600
        assert config.stale_after_seconds == 3600
        assert config.max_files_per_run == 500
        assert config.fetch_concurrency == 5
        assert config.run_budget_seconds == 1800
        assert config.resolve_commit_dates is True
        assert config.request_delay_ms == 100
        assert config.log_level == "INFO"
        assert config.log_format == "json"
        assert config.metrics_enabled is False
        assert config.db_path == Path.home() / ".doc-updates" / "doc-updates.db"

    def test_environment_variable_override(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("MIN_SYNC_INTERVAL_SECONDS", "60")
        monkeypatch.setenv("FETCH_CONCURRENCY", "8")
        monkeypatch.setenv("RESOLVE_COMMIT_DATES", "false")
        monkeypatch.setenv("LOG_FORMAT", "TEXT")

        config = UpdatesConfig()

        assert config.min_sync_interval_seconds == 60
        assert config.fetch_concurrency == 8
        assert config.resolve_commit_dates is False
        assert config.log_format == "text"

    def test_env_file_loading(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        (tmp_path / ".env").write_text("MAX_FILES_PER_RUN=25\nLOG_LEVEL=debug\n")

        config = UpdatesConfig()

        assert config.max_files_per_run == 25
        assert config.log_level == "DEBUG"

    def test_config_is_frozen(self, config):
        with pytest.raises(ValidationError):
            config.max_files_per_run = 1

    def test_invalid_log_level_rejected(self):
        with pytest.raises(ValidationError, match="Invalid log level"):
            UpdatesConfig(_env_file=None, log_level="VERBOSE")

    def test_invalid_log_format_rejected(self):
        with pytest.raises(ValidationError, match="Invalid log format"):
            UpdatesConfig(_env_file=None, log_format="xml")

    @pytest.mark.parametrize(
        "field,value",
        [
            ("fetch_concurrency", 0),
            ("fetch_concurrency", 21),
            ("run_budget_seconds", 5),
            ("stale_after_seconds", 10),
            ("min_sync_interval_seconds", -1),
        ],
    )
    def test_out_of_range_values_rejected(self, field, value):
        with pytest.raises(ValidationError):
            UpdatesConfig(_env_file=None, **{field: value})

    def test_trailing_slash_stripped_from_urls(self):
        config = UpdatesConfig(_env_file=None, github_api_url="https://ghe.example.com/api/v3/")
        assert config.github_api_url == "https://ghe.example.com/api/v3"

    def test_db_path_expands_user(self):
        config = UpdatesConfig(_env_file=None, db_path="~/mirror/updates.db")
        assert config.db_path == Path.home() / "mirror" / "updates.db"

    def test_token_is_secret(self):
        config = UpdatesConfig(_env_file=None, github_token="ghp_secret")
        assert "ghp_secret" not in repr(config)
        assert config.github_token.get_secret_value() == "ghp_secret"


class TestGetConfig:
    def test_singleton_cached(self):
        assert get_config() is get_config()

    def test_reset_config_reloads(self, monkeypatch):
        first = get_config()
        reset_config()
        monkeypatch.setenv("MAX_FILES_PER_RUN", "42")
        second = get_config()
        assert second is not first
        assert second.max_files_per_run == 42


class TestRepositories:
    def test_repo_id(self):
        repo = TrackedRepository("MicrosoftDocs", "powerbi-docs")
        assert repo.repo_id == "MicrosoftDocs/powerbi-docs"
        assert repo.branch == "main"
        assert repo.base_path == ""
        assert repo.docs_base is None

    def test_defaults_without_file(self, config):
        assert config.repositories() == DEFAULT_REPOSITORIES
        assert load_repositories(None) == DEFAULT_REPOSITORIES

    def test_default_repo_ids_unique(self):
        ids = [r.repo_id for r in DEFAULT_REPOSITORIES]
        assert len(ids) == len(set(ids))

    def test_load_from_yaml(self, tmp_path):
        path = tmp_path / "repos.yaml"
        path.write_text(
            "repositories:\n"
            "  - owner: MicrosoftDocs\n"
            "    repo: powerbi-docs\n"
            "    base_path: /powerbi-docs/\n"
            "    docs_base: power-bi\n"
            "  - owner: contoso\n"
            "    repo: product-docs\n"
            "    branch: live\n"
        )

        repos = load_repositories(path)

        assert repos == (
            TrackedRepository("MicrosoftDocs", "powerbi-docs", "main", "powerbi-docs", "power-bi"),
            TrackedRepository("contoso", "product-docs", "live", "", None),
        )

    def test_malformed_entries_skipped(self, tmp_path):
        path = tmp_path / "repos.yaml"
        path.write_text(
            "repositories:\n"
            "  - owner: MicrosoftDocs\n"
            "  - owner: contoso\n"
            "    repo: product-docs\n"
        )
        assert load_repositories(path) == (TrackedRepository("contoso", "product-docs"),)

    def test_invalid_yaml_falls_back_to_defaults(self, tmp_path):
        path = tmp_path / "repos.yaml"
        path.write_text("repositories: [unclosed\n")
        assert load_repositories(path) == DEFAULT_REPOSITORIES

    def test_missing_file_falls_back_to_defaults(self, tmp_path):
        assert load_repositories(tmp_path / "absent.yaml") == DEFAULT_REPOSITORIES

    def test_config_uses_repositories_file(self, tmp_path):
        path = tmp_path / "repos.yaml"
        path.write_text("repositories:\n  - owner: contoso\n    repo: docs\n")
        config = UpdatesConfig(_env_file=None, repositories_file=path)
        assert [r.repo_id for r in config.repositories()] == ["contoso/docs"]


class TestResolveGitHubToken:
    """Precedence: explicit > config > DOC_UPDATES_GITHUB_TOKEN > GH_TOKEN."""

    def test_explicit_wins(self, config):
        env = {"DOC_UPDATES_GITHUB_TOKEN": "env-token"}
        configured = config.model_copy(update={"github_token": SecretStr("cfg-token")})
        assert resolve_github_token(" explicit ", configured, env) == "explicit"

    def test_config_before_environment(self, config):
        configured = config.model_copy(update={"github_token": SecretStr("cfg-token")})
        env = {"DOC_UPDATES_GITHUB_TOKEN": "env-token", "GH_TOKEN": "gh-token"}
        assert resolve_github_token(None, configured, env) == "cfg-token"

    def test_environment_order(self, config):
        env = {"DOC_UPDATES_GITHUB_TOKEN": "env-token", "GH_TOKEN": "gh-token"}
        assert resolve_github_token(None, config, env) == "env-token"
        assert resolve_github_token(None, config, {"GH_TOKEN": "gh-token"}) == "gh-token"

    def test_blank_values_skipped(self, config):
        env = {"DOC_UPDATES_GITHUB_TOKEN": "  ", "GH_TOKEN": "gh-token"}
        assert resolve_github_token("", config, env) == "gh-token"

    def test_none_when_no_source(self, config):
        assert resolve_github_token(None, config, {}) is None

    def test_reads_process_environment_by_default(self, config, monkeypatch):
        monkeypatch.setenv("GH_TOKEN", "from-env")
        assert resolve_github_token(None, config) == "from-env"
