"""Configuration loading and validation."""

import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

TRIGGER_TYPES = ("direct_messages", "mentions", "reactions")


class RepositoryConfig(BaseModel):
    """Configuration for a repository the assistant can read and change."""
    name: str
    url: str  # owner/repo shorthand or https://github.com/owner/repo(.git)
    description: str = ""
    branch: Optional[str] = None  # Default branch; detected from origin/HEAD when unset
    supports_changes: bool = False
    pull_request_instructions: Optional[str] = None  # Repo-relative path to PR guidelines
    merge_strategy: Literal["squash", "merge", "rebase"] = "squash"

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v or "/" in v or v in (".", ".."):
            raise ValueError(f"repository name must be a single path segment, got '{v}'")
        return v


class ChangesWorkflowConfig(BaseModel):
    """Change-request workflow settings."""
    enabled: bool = False
    pr_instructions: str = ""
    timeout_minutes: float = 10
    max_concurrent: int = 3
    additional_allowed_tools: List[str] = Field(default_factory=list)
    session_expiry_hours: float = 24
    monitoring_interval_minutes: float = 15  # 0 disables the completion monitor
    progress_interval_seconds: float = 30

    @field_validator('max_concurrent')
    @classmethod
    def validate_max_concurrent(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {v}")
        return v

    @field_validator('additional_allowed_tools')
    @classmethod
    def validate_additional_tools(cls, v: List[str]) -> List[str]:
        if "Task" in v:
            raise ValueError("Task cannot be allowed for change execution (sub-agents are disabled)")
        return v

    @field_validator('timeout_minutes', 'session_expiry_hours', 'monitoring_interval_minutes')
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"value must be >= 0, got {v}")
        return v


class TriggerChangesConfig(BaseModel):
    """Per-trigger opt-in for the change workflow."""
    enabled: bool = False
    trigger: Optional[str] = None  # Reaction name for the reactions trigger


class TriggerConfig(BaseModel):
    """Settings for one chat trigger (direct messages, mentions, reactions)."""
    enabled: bool = True
    changes_workflow: TriggerChangesConfig = Field(default_factory=TriggerChangesConfig)


class AgentCLIConfig(BaseModel):
    """Claude CLI invocation settings."""
    executable: str = "claude"
    heartbeat_interval_seconds: float = 30


class GitHubAuthConfig(BaseModel):
    """GitHub credentials: a static token or GitHub App installation credentials."""
    token: Optional[str] = None
    app_id: Optional[str] = None
    installation_id: Optional[str] = None
    private_key_path: Optional[Path] = None
    refresh_buffer_minutes: float = 5

    @model_validator(mode='after')
    def validate_app_fields(self) -> 'GitHubAuthConfig':
        app_fields = [self.app_id, self.installation_id, self.private_key_path]
        if any(app_fields) and not all(app_fields):
            raise ValueError(
                "GitHub App auth requires app_id, installation_id and private_key_path together"
            )
        return self

    @property
    def uses_app(self) -> bool:
        return bool(self.app_id and self.installation_id and self.private_key_path)


class ClackConfig(BaseSettings):
    """Main clack configuration."""
    data_dir: Path = Field(default=Path("data"))

    repositories: List[RepositoryConfig] = Field(default_factory=list)
    changes_workflow: ChangesWorkflowConfig = Field(default_factory=ChangesWorkflowConfig)
    direct_messages: TriggerConfig = Field(default_factory=TriggerConfig)
    mentions: TriggerConfig = Field(default_factory=TriggerConfig)
    reactions: TriggerConfig = Field(default_factory=TriggerConfig)
    agent: AgentCLIConfig = Field(default_factory=AgentCLIConfig)
    github: GitHubAuthConfig = Field(default_factory=GitHubAuthConfig)

    class Config:
        env_prefix = "CLACK_"
        env_file = ".env"
        extra = "allow"

    @model_validator(mode='after')
    def validate_unique_repos(self) -> 'ClackConfig':
        seen = set()
        for repo in self.repositories:
            key = repo.name.lower()
            if key in seen:
                raise ValueError(f"Duplicate repository name: {repo.name}")
            seen.add(key)
        return self

    # Data directory layout
    @property
    def repositories_dir(self) -> Path:
        return self.data_dir / "repositories"

    @property
    def worktrees_dir(self) -> Path:
        return self.data_dir / "worktrees"

    @property
    def sessions_dir(self) -> Path:
        return self.data_dir / "worktree-sessions"

    @property
    def templates_dir(self) -> Path:
        return self.data_dir / "templates"

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / "logs"


# ---------------------------------------------------------------------------
# Repository lookups
# ---------------------------------------------------------------------------

def find_repo_by_name(name: str, config: ClackConfig) -> Optional[RepositoryConfig]:
    """Exact, case-insensitive repository lookup."""
    for repo in config.repositories:
        if repo.name.lower() == name.lower():
            return repo
    return None


def get_change_enabled_repos(config: ClackConfig) -> List[RepositoryConfig]:
    return [r for r in config.repositories if r.supports_changes]


def is_changes_enabled_for_trigger(trigger_type: str, config: ClackConfig) -> bool:
    """The global switch and the trigger's own switch must both be on."""
    if not config.changes_workflow.enabled:
        return False
    if trigger_type not in TRIGGER_TYPES:
        return False
    trigger: TriggerConfig = getattr(config, trigger_type)
    return trigger.changes_workflow.enabled


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")


def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand ${VAR} references in dict/list/str values."""
    if isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand_env_vars(item) for item in obj]
    if isinstance(obj, str):
        def replace_var(match):
            value = os.environ.get(match.group(1))
            if value is None:
                logger.warning(f"Config references undefined environment variable: {match.group(1)}")
                return match.group(0)
            return value
        return _ENV_VAR_PATTERN.sub(replace_var, obj)
    return obj


# Module-level mtime-based config cache: path -> (parsed_config, file_mtime)
_config_cache: Dict[str, tuple] = {}


def _get_cached_or_load(resolved_path: Path, loader):
    """Return cached config if file mtime unchanged, else reload."""
    key = str(resolved_path)
    try:
        current_mtime = resolved_path.stat().st_mtime
    except FileNotFoundError:
        _config_cache.pop(key, None)
        return None

    cached = _config_cache.get(key)
    if cached is not None:
        cached_result, cached_mtime = cached
        if cached_mtime == current_mtime:
            return cached_result

    result = loader(resolved_path)
    _config_cache[key] = (result, current_mtime)
    return result


def _load_config_from_file(config_path: Path) -> ClackConfig:
    """Internal loader (no caching)."""
    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    data = _expand_env_vars(data)
    return ClackConfig(**data)


def load_config(config_path: Path = Path("config/clack.yaml")) -> ClackConfig:
    """Load clack configuration from YAML file.

    Uses mtime-based caching: returns the cached config if the file hasn't changed.
    """
    if not config_path.exists():
        logger.warning(
            f"Config file not found: {config_path}. Using default configuration. "
            "To customize settings, create a config file at this path."
        )
        return ClackConfig()

    result = _get_cached_or_load(config_path.resolve(), _load_config_from_file)
    return result if result is not None else ClackConfig()


def clear_config_cache() -> None:
    """Clear the module-level config cache. Useful for tests."""
    _config_cache.clear()
