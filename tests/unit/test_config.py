"""Tests for configuration loading and validation."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from clack.core.config import (
    ChangesWorkflowConfig,
    ClackConfig,
    GitHubAuthConfig,
    RepositoryConfig,
    clear_config_cache,
    find_repo_by_name,
    get_change_enabled_repos,
    is_changes_enabled_for_trigger,
    load_config,
)


@pytest.fixture(autouse=True)
def _fresh_cache():
    clear_config_cache()
    yield
    clear_config_cache()


CONFIG_YAML = """
data_dir: ${TEST_DATA_ROOT}
repositories:
  - name: api
    url: octo/api
    description: Backend API
    supports_changes: true
  - name: docs
    url: https://github.com/octo/docs.git
changes_workflow:
  enabled: true
  max_concurrent: 2
  additional_allowed_tools: [WebFetch]
mentions:
  changes_workflow:
    enabled: true
reactions:
  changes_workflow:
    enabled: true
    trigger: hammer
"""


class TestLoadConfig:

    def test_loads_yaml_with_env_expansion(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_DATA_ROOT", str(tmp_path / "data"))
        path = tmp_path / "clack.yaml"
        path.write_text(CONFIG_YAML)

        config = load_config(path)

        assert config.data_dir == tmp_path / "data"
        assert config.sessions_dir == tmp_path / "data" / "worktree-sessions"
        assert config.worktrees_dir == tmp_path / "data" / "worktrees"
        assert [r.name for r in config.repositories] == ["api", "docs"]
        assert config.changes_workflow.max_concurrent == 2
        assert config.changes_workflow.additional_allowed_tools == ["WebFetch"]
        assert config.reactions.changes_workflow.trigger == "hammer"

    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_config(tmp_path / "missing.yaml")

        assert config.repositories == []
        assert not config.changes_workflow.enabled
        assert config.changes_workflow.monitoring_interval_minutes == 15
        assert config.changes_workflow.session_expiry_hours == 24

    def test_cached_until_modified(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_DATA_ROOT", "data")
        path = tmp_path / "clack.yaml"
        path.write_text(CONFIG_YAML)

        first = load_config(path)
        assert load_config(path) is first

        clear_config_cache()
        assert load_config(path) is not first

    def test_empty_file(self, tmp_path):
        path = tmp_path / "clack.yaml"
        path.write_text("")
        assert load_config(path).repositories == []


class TestValidation:

    def test_task_cannot_be_allowed(self):
        with pytest.raises(ValidationError, match="Task"):
            ChangesWorkflowConfig(additional_allowed_tools=["Task"])

    def test_max_concurrent_positive(self):
        with pytest.raises(ValidationError):
            ChangesWorkflowConfig(max_concurrent=0)

    def test_negative_timeout(self):
        with pytest.raises(ValidationError):
            ChangesWorkflowConfig(timeout_minutes=-1)

    def test_duplicate_repository_names(self):
        with pytest.raises(ValidationError, match="Duplicate repository name"):
            ClackConfig(repositories=[
                RepositoryConfig(name="api", url="octo/api"),
                RepositoryConfig(name="API", url="octo/api2"),
            ])

    def test_repo_name_single_segment(self):
        with pytest.raises(ValidationError):
            RepositoryConfig(name="octo/api", url="octo/api")

    def test_merge_strategy(self):
        with pytest.raises(ValidationError):
            RepositoryConfig(name="api", url="octo/api", merge_strategy="fast-forward")

    def test_partial_app_credentials(self):
        with pytest.raises(ValidationError, match="app_id, installation_id and private_key_path"):
            GitHubAuthConfig(app_id="1")

    def test_complete_app_credentials(self, tmp_path):
        auth = GitHubAuthConfig(app_id="1", installation_id="2", private_key_path=tmp_path / "key.pem")
        assert auth.uses_app


class TestLookups:

    def _config(self, **workflow) -> ClackConfig:
        return ClackConfig(
            repositories=[
                RepositoryConfig(name="api", url="octo/api", supports_changes=True),
                RepositoryConfig(name="docs", url="octo/docs"),
            ],
            changes_workflow=ChangesWorkflowConfig(**workflow),
            mentions={"changes_workflow": {"enabled": True}},
        )

    def test_find_repo_case_insensitive(self):
        config = self._config()
        assert find_repo_by_name("API", config).name == "api"
        assert find_repo_by_name("web", config) is None

    def test_change_enabled_repos(self):
        assert [r.name for r in get_change_enabled_repos(self._config())] == ["api"]

    def test_trigger_needs_global_switch(self):
        assert not is_changes_enabled_for_trigger("mentions", self._config(enabled=False))

    def test_trigger_switches(self):
        config = self._config(enabled=True)
        assert is_changes_enabled_for_trigger("mentions", config)
        assert not is_changes_enabled_for_trigger("direct_messages", config)
        assert not is_changes_enabled_for_trigger("unknown", config)

    def test_data_layout(self):
        config = ClackConfig(data_dir=Path("/srv/clack"))
        assert config.repositories_dir == Path("/srv/clack/repositories")
        assert config.templates_dir == Path("/srv/clack/templates")
        assert config.logs_dir == Path("/srv/clack/logs")
