"""Core configuration for clack."""

from .config import (
    ClackConfig,
    ChangesWorkflowConfig,
    RepositoryConfig,
    clear_config_cache,
    find_repo_by_name,
    get_change_enabled_repos,
    is_changes_enabled_for_trigger,
    load_config,
)

__all__ = [
    "ClackConfig",
    "ChangesWorkflowConfig",
    "RepositoryConfig",
    "clear_config_cache",
    "find_repo_by_name",
    "get_change_enabled_repos",
    "is_changes_enabled_for_trigger",
    "load_config",
]
