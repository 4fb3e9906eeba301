"""Change-request workflow: sessions, execution, PRs and follow-ups."""

from .detection import FollowUpDetector, parse_follow_up_output
from .execution import ChangeExecutor, resolve_pr_instructions, resolve_pr_template
from .monitor import CompletionMonitor
from .persistence import SessionFolderStore
from .pr import PRGateway, PRResult, PRState, ReviewResult
from .session import SessionRegistry
from .types import (
    ChangePlan,
    ChangeRequest,
    ChangeResult,
    ChangeSession,
    ChangeStatus,
    FollowUpCommand,
    InvalidTransitionError,
    PersistedSessionState,
    TriggerType,
)
from .workflow import ChangeWorkflow

__all__ = [
    "ChangeExecutor",
    "ChangePlan",
    "ChangeRequest",
    "ChangeResult",
    "ChangeSession",
    "ChangeStatus",
    "ChangeWorkflow",
    "CompletionMonitor",
    "FollowUpCommand",
    "FollowUpDetector",
    "InvalidTransitionError",
    "PRGateway",
    "PRResult",
    "PRState",
    "PersistedSessionState",
    "ReviewResult",
    "SessionFolderStore",
    "SessionRegistry",
    "TriggerType",
    "parse_follow_up_output",
    "resolve_pr_instructions",
    "resolve_pr_template",
]
