"""Types for the change-request workflow.

``ChangeStatus`` is the closed set of session states. Every status carries a
phase label and membership in the terminal / in-progress / resumable groups,
and ``ALLOWED_TRANSITIONS`` lists the edges of the state machine; both tables
are checked for completeness at import time so a new status cannot be added
without deciding how it behaves.
"""

import secrets
import string
import time
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from ..workspace.worktree_manager import WorktreeInfo

LAST_MESSAGE_MAX_LENGTH = 500


class TriggerType(str, Enum):
    """Chat surface a change request originated from."""
    DIRECT_MESSAGES = "direct_messages"
    MENTIONS = "mentions"
    REACTIONS = "reactions"


class ChangeStatus(str, Enum):
    """Lifecycle state of a change session."""
    PLANNING = "planning"
    EXECUTING = "executing"
    PR_CREATED = "pr_created"
    REVIEWING = "reviewing"
    MERGING = "merging"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def phase(self) -> str:
        """Human-readable phase label shown to users and persisted in state.json."""
        return _PHASE_LABELS[self]

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_in_progress(self) -> bool:
        """An agent or remote operation may be running for this status."""
        return self in IN_PROGRESS_STATUSES

    @property
    def is_resumable(self) -> bool:
        return self in RESUMABLE_STATUSES

    def can_transition_to(self, target: "ChangeStatus") -> bool:
        return target in ALLOWED_TRANSITIONS[self]


_PHASE_LABELS: Dict[ChangeStatus, str] = {
    ChangeStatus.PLANNING: "Planning",
    ChangeStatus.EXECUTING: "Implementing",
    ChangeStatus.PR_CREATED: "PR Created",
    ChangeStatus.REVIEWING: "Reviewing PR",
    ChangeStatus.MERGING: "Merging",
    ChangeStatus.COMPLETED: "Completed",
    ChangeStatus.FAILED: "Failed",
}

TERMINAL_STATUSES: FrozenSet[ChangeStatus] = frozenset({
    ChangeStatus.COMPLETED,
    ChangeStatus.FAILED,
})

IN_PROGRESS_STATUSES: FrozenSet[ChangeStatus] = frozenset({
    ChangeStatus.PLANNING,
    ChangeStatus.EXECUTING,
    ChangeStatus.REVIEWING,
    ChangeStatus.MERGING,
})

# pr_created/reviewing/merging sessions are managed through their PR, not resumed
RESUMABLE_STATUSES: FrozenSet[ChangeStatus] = frozenset({
    ChangeStatus.PLANNING,
    ChangeStatus.EXECUTING,
    ChangeStatus.FAILED,
})

ALLOWED_TRANSITIONS: Dict[ChangeStatus, FrozenSet[ChangeStatus]] = {
    ChangeStatus.PLANNING: frozenset({ChangeStatus.EXECUTING, ChangeStatus.FAILED}),
    ChangeStatus.EXECUTING: frozenset({ChangeStatus.PR_CREATED, ChangeStatus.FAILED}),
    ChangeStatus.PR_CREATED: frozenset({
        ChangeStatus.REVIEWING,
        ChangeStatus.MERGING,
        ChangeStatus.EXECUTING,
        ChangeStatus.COMPLETED,
        ChangeStatus.FAILED,
    }),
    ChangeStatus.REVIEWING: frozenset({ChangeStatus.PR_CREATED, ChangeStatus.FAILED}),
    ChangeStatus.MERGING: frozenset({
        ChangeStatus.PR_CREATED,
        ChangeStatus.COMPLETED,
        ChangeStatus.FAILED,
    }),
    ChangeStatus.COMPLETED: frozenset(),
    ChangeStatus.FAILED: frozenset(),
}

for _status in ChangeStatus:
    if _status not in _PHASE_LABELS or _status not in ALLOWED_TRANSITIONS:
        raise RuntimeError(f"ChangeStatus.{_status.name} is missing a phase label or transition set")


class InvalidTransitionError(ValueError):
    """Raised when a status change is not an edge of the session state machine."""

    def __init__(self, session_id: str, current: ChangeStatus, target: ChangeStatus):
        self.session_id = session_id
        self.current = current
        self.target = target
        super().__init__(
            f"Session {session_id} cannot move from {current.value} to {target.value}"
        )


class FollowUpCommand(str, Enum):
    """Actions a user can request in an active change thread."""
    REVIEW = "review"
    MERGE = "merge"
    CLOSE = "close"
    UPDATE = "update"


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """ISO-8601 with millisecond precision and a ``Z`` suffix."""
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


_BASE36 = string.digits + string.ascii_lowercase


def generate_session_id() -> str:
    """``change-<epoch ms>-<6 random base36 chars>``."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"change-{int(time.time() * 1000)}-{suffix}"


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChangeRequest:
    """The user message that started a workflow."""
    user_id: str
    message: str
    trigger_type: TriggerType
    channel: str
    message_ts: str
    thread_ts: Optional[str] = None

    def with_message(self, message: str) -> "ChangeRequest":
        return replace(self, message=message)


@dataclass(frozen=True)
class ChangePlan:
    """Branch, description and target repository for one change."""
    branch_name: str
    description: str
    target_repo: str

    def with_description(self, description: str) -> "ChangePlan":
        return replace(self, description=description)


@dataclass
class ChangeSession:
    """One end-to-end change request, from plan to merged or closed PR."""
    id: str
    user_id: str
    request: ChangeRequest
    plan: ChangePlan
    worktree: WorktreeInfo
    channel: str
    thread_ts: str
    status: ChangeStatus = ChangeStatus.EXECUTING
    pr_url: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    last_activity_at: datetime = field(default_factory=utc_now)

    @property
    def thread_key(self) -> str:
        return thread_key(self.channel, self.thread_ts)


def thread_key(channel: str, thread_ts: str) -> str:
    return f"{channel}:{thread_ts}"


@dataclass
class PersistedSessionState:
    """Durable projection of a ChangeSession, stored as state.json."""
    session_id: str
    status: ChangeStatus
    phase: str
    branch: str
    repo: str
    user_id: str
    description: str
    pr_url: Optional[str]
    started_at: str
    last_activity_at: str
    last_message: str

    # snake_case attribute -> camelCase key in state.json
    _KEYS = {
        "session_id": "sessionId",
        "status": "status",
        "phase": "phase",
        "branch": "branch",
        "repo": "repo",
        "user_id": "userId",
        "description": "description",
        "pr_url": "prUrl",
        "started_at": "startedAt",
        "last_activity_at": "lastActivityAt",
        "last_message": "lastMessage",
    }

    @classmethod
    def from_session(
        cls,
        session: ChangeSession,
        last_message: str,
        status: Optional[ChangeStatus] = None,
        pr_url: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "PersistedSessionState":
        """Snapshot a session, optionally with a pending status / PR URL applied."""
        status = status or session.status
        return cls(
            session_id=session.id,
            status=status,
            phase=status.phase,
            branch=session.plan.branch_name,
            repo=session.plan.target_repo,
            user_id=session.user_id,
            description=session.plan.description,
            pr_url=pr_url if pr_url is not None else session.pr_url,
            started_at=to_iso(session.created_at),
            last_activity_at=to_iso(now or utc_now()),
            last_message=last_message[:LAST_MESSAGE_MAX_LENGTH],
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return {self._KEYS[k]: v for k, v in data.items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PersistedSessionState":
        """Build from state.json contents.

        Raises:
            KeyError: A required key is missing
            ValueError: The status is not a known ChangeStatus
        """
        values = {attr: data[key] for attr, key in cls._KEYS.items() if key != "prUrl"}
        values["pr_url"] = data.get("prUrl")
        values["status"] = ChangeStatus(values["status"])
        return cls(**values)


@dataclass
class ResumableSession:
    """Descriptor of a persisted session that can be restarted."""
    branch_name: str
    repo: str
    description: str
    phase: str
    last_message: str
    started_at: str


@dataclass
class ActiveWorker:
    """Display projection of a non-terminal session."""
    id: str
    user_id: str
    status: ChangeStatus
    description: str
    branch: str
    repo: str
    pr_url: Optional[str]
    channel: str
    thread_ts: str
    started_at: datetime


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class ChangeResult:
    """Outcome reported back to the chat layer."""
    success: bool
    pr_url: Optional[str] = None
    error: Optional[str] = None
    summary: Optional[str] = None


@dataclass
class ExecutionResult:
    success: bool
    commit_hash: Optional[str] = None
    summary: Optional[str] = None
    error: Optional[str] = None


@dataclass
class PlanGenerationResult:
    success: bool
    plan: Optional[ChangePlan] = None
    error: Optional[str] = None


@dataclass
class FollowUpDetection:
    """Classification of a thread reply."""
    is_command: bool
    command: Optional[FollowUpCommand] = None
    additional_instructions: Optional[str] = None
