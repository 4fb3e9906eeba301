"""Composition root: builds one set of collaborators sharing a session registry."""

import logging
from dataclasses import dataclass
from typing import Optional

from .changes.detection import FollowUpDetector
from .changes.execution import ChangeExecutor
from .changes.monitor import CompletionMonitor, Notifier
from .changes.persistence import SessionFolderStore
from .changes.pr import PRGateway
from .changes.session import SessionRegistry
from .changes.workflow import ChangeWorkflow
from .core.config import ClackConfig
from .integrations.github.client import GitHubClient
from .integrations.github.credentials import CredentialProvider, build_credential_provider
from .llm.agent_invoker import AgentInvoker
from .workspace.worktree_manager import WorktreeManager

logger = logging.getLogger(__name__)


@dataclass
class ClackApp:
    config: ClackConfig
    credentials: Optional[CredentialProvider]
    github: GitHubClient
    worktrees: WorktreeManager
    invoker: AgentInvoker
    store: SessionFolderStore
    registry: SessionRegistry
    executor: ChangeExecutor
    gateway: PRGateway
    workflow: ChangeWorkflow
    monitor: CompletionMonitor
    detector: FollowUpDetector


def build_app(config: ClackConfig, notifier: Optional[Notifier] = None) -> ClackApp:
    """Wire every component from config.

    Args:
        config: Loaded configuration
        notifier: Receives (session, message) when the monitor cleans up a session
    """
    credentials = build_credential_provider(config.github)
    github = GitHubClient(credentials)
    worktrees = WorktreeManager(config.repositories_dir, config.worktrees_dir, credentials)
    invoker = AgentInvoker(
        executable=config.agent.executable,
        default_timeout_minutes=config.changes_workflow.timeout_minutes,
        heartbeat_interval=config.agent.heartbeat_interval_seconds,
    )
    store = SessionFolderStore(config.sessions_dir)
    registry = SessionRegistry(store)
    executor = ChangeExecutor(invoker, config)
    gateway = PRGateway(github, worktrees, invoker, config.templates_dir)
    workflow = ChangeWorkflow(config, registry, worktrees, executor, gateway)
    monitor = CompletionMonitor(
        registry,
        gateway,
        worktrees,
        notifier=notifier,
        interval_minutes=config.changes_workflow.monitoring_interval_minutes,
        repositories=config.repositories,
        expiry_hours=config.changes_workflow.session_expiry_hours,
    )
    detector = FollowUpDetector(invoker, registry)

    logger.debug(
        f"Built clack app (repositories: {len(config.repositories)}, "
        f"data dir: {config.data_dir})"
    )
    return ClackApp(
        config=config,
        credentials=credentials,
        github=github,
        worktrees=worktrees,
        invoker=invoker,
        store=store,
        registry=registry,
        executor=executor,
        gateway=gateway,
        workflow=workflow,
        monitor=monitor,
        detector=detector,
    )
