"""Agent-driven change execution, plan generation and PR text resolution."""

import logging
import re
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from ..core.config import ClackConfig, RepositoryConfig
from ..llm.agent_invoker import AgentInvoker, AgentRequest, execution_tool_policy
from ..utils.validators import validate_branch_name
from ..workspace.worktree_manager import WorktreeInfo
from .types import ChangePlan, ChangeRequest, ExecutionResult, PlanGenerationResult

logger = logging.getLogger(__name__)

ALL_TOOLS: List[str] = ["Read", "Write", "Edit", "Bash", "Glob", "Grep", "Task"]
PLAN_TIMEOUT_MINUTES = 1

EXECUTION_SYSTEM_PROMPT = """You are an autonomous code change agent. Your job is to implement the requested changes.

Instructions:
1. Analyze the codebase to understand the context
2. Implement the requested changes
3. Run tests if available (pytest, npm test, etc.)
4. Commit your changes with a descriptive commit message
5. Output a summary of what you changed

Important:
- Make minimal, focused changes
- Follow existing code patterns and conventions
- Do not make changes outside the scope of the request
- If you encounter issues, explain them clearly

After completing your work, output a line starting with "COMMIT_HASH:" followed by the commit hash.
Then output a line starting with "SUMMARY:" followed by a brief summary of changes."""

PLAN_GENERATION_PROMPT = """You are analyzing a change request to create an implementation plan.

Given the request message, output a plan in this format:
<change-plan>
  <branch>clack/{type}/{short-description}</branch>
  <description>Clear description of what will be changed</description>
  <repo>{target-repository-name}</repo>
</change-plan>

Where:
- type: fix, feat, refactor, docs, or chore
- short-description: kebab-case, max 30 chars
- repo: exact repository name from available list

Be specific in the description about what changes will be made."""

PR_TEMPLATE_PATHS = [
    ".github/PULL_REQUEST_TEMPLATE.md",
    ".github/pull_request_template.md",
    "docs/PULL_REQUEST_TEMPLATE.md",
]

DEFAULT_PR_TEMPLATE = """## Summary

<!-- Brief description of changes -->

## Changes Made

<!-- List of changes -->

## Test Plan

<!-- How to test these changes -->
"""

_COMMIT_HASH_PATTERN = re.compile(r"COMMIT_HASH:\s*([a-f0-9]+)", re.IGNORECASE)
_SUMMARY_PATTERN = re.compile(r"SUMMARY:\s*(.+?)(?:\n|$)", re.IGNORECASE)
_PLAN_PATTERN = re.compile(r"<change-plan>(.*?)</change-plan>", re.DOTALL)


def parse_execution_output(text: str) -> ExecutionResult:
    """Pull the commit hash and one-line summary out of agent output."""
    commit_match = _COMMIT_HASH_PATTERN.search(text)
    summary_match = _SUMMARY_PATTERN.search(text)
    return ExecutionResult(
        success=True,
        commit_hash=commit_match.group(1) if commit_match else None,
        summary=summary_match.group(1).strip() if summary_match else "Changes implemented",
    )


def build_execution_prompt(
    plan: ChangePlan,
    request: ChangeRequest,
    resume_context: Optional[str] = None,
) -> str:
    prompt = (
        "Implement this change:\n\n"
        f"Description: {plan.description}\n\n"
        f'Original request: "{request.message}"\n\n'
        f"Work in this branch: {plan.branch_name}"
    )
    if resume_context:
        prompt += (
            "\n\nIMPORTANT - Resuming previous session:\n"
            f"{resume_context}\n"
            "Check git status and git log to understand what was already done. "
            "Continue from where the previous session left off."
        )
    prompt += (
        "\n\nRemember to:\n"
        "1. Make the changes\n"
        "2. Run tests if available\n"
        "3. Commit with a descriptive message\n"
        "4. Output COMMIT_HASH: and SUMMARY: at the end"
    )
    return prompt


def _tag(content: str, name: str) -> Optional[str]:
    match = re.search(rf"<{name}>(.*?)</{name}>", content, re.DOTALL)
    return match.group(1).strip() if match else None


def parse_change_plan(text: str) -> PlanGenerationResult:
    """Parse a ``<change-plan>`` block into a ChangePlan."""
    plan_match = _PLAN_PATTERN.search(text)
    if not plan_match:
        return PlanGenerationResult(success=False, error="Failed to parse plan response: no plan found")

    content = plan_match.group(1)
    branch = _tag(content, "branch")
    description = _tag(content, "description")
    repo = _tag(content, "repo")
    if not branch or not description or not repo:
        return PlanGenerationResult(success=False, error="Invalid plan: missing required fields")

    try:
        validate_branch_name(branch)
    except ValueError as e:
        return PlanGenerationResult(success=False, error=f"Invalid plan: {e}")

    return PlanGenerationResult(
        success=True,
        plan=ChangePlan(branch_name=branch, description=description, target_repo=repo),
    )


def resolve_pr_template(worktree_path: Path, templates_dir: Optional[Path] = None) -> str:
    """PR body template from the repository, the clack templates dir, or the default."""
    candidates = [Path(worktree_path) / p for p in PR_TEMPLATE_PATHS]
    if templates_dir is not None:
        candidates.append(Path(templates_dir) / "pr-template.md")

    for path in candidates:
        if not path.exists():
            continue
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning(f"Failed to read PR template at {path}: {e}")

    return DEFAULT_PR_TEMPLATE


def resolve_pr_instructions(
    worktree_path: Path,
    repo: RepositoryConfig,
    config: ClackConfig,
) -> str:
    """Repository PR instructions file, falling back to the global instructions."""
    if repo.pull_request_instructions:
        path = Path(worktree_path) / repo.pull_request_instructions
        if path.exists():
            try:
                return path.read_text(encoding="utf-8")
            except OSError as e:
                logger.warning(f"Failed to read PR instructions at {path}: {e}")

    return config.changes_workflow.pr_instructions or ""


class ChangeExecutor:
    """Runs the implementation and planning agent passes."""

    def __init__(self, invoker: AgentInvoker, config: ClackConfig):
        self.invoker = invoker
        self.config = config

    async def execute_change(
        self,
        plan: ChangePlan,
        worktree: WorktreeInfo,
        request: ChangeRequest,
        pr_instructions: str = "",
        on_progress: Optional[Callable[[str], object]] = None,
        resume_context: Optional[str] = None,
        log: Optional[Callable[[str], None]] = None,
    ) -> ExecutionResult:
        """
        Implement a change inside its worktree.

        Args:
            plan: Branch, description and target repository
            worktree: Working copy to run in
            request: Originating request (its message is quoted to the agent)
            pr_instructions: Appended to the system prompt as PR guidelines
            on_progress: Receives "Using <tool>" updates
            resume_context: Note about a previous interrupted attempt
            log: Execution-log sink

        Returns:
            ExecutionResult with the parsed commit hash and summary
        """
        allowed, disallowed = execution_tool_policy(
            self.config.changes_workflow.additional_allowed_tools
        )

        system_prompt = EXECUTION_SYSTEM_PROMPT
        if pr_instructions:
            system_prompt += f"\n\nPR Guidelines:\n{pr_instructions}"

        result = await self.invoker.run(
            AgentRequest(
                prompt=build_execution_prompt(plan, request, resume_context),
                cwd=worktree.worktree_path,
                system_prompt=system_prompt,
                allowed_tools=allowed,
                disallowed_tools=disallowed,
                timeout_minutes=self.config.changes_workflow.timeout_minutes,
            ),
            log=log,
            on_progress=on_progress,
        )

        if not result.success:
            return ExecutionResult(success=False, error=result.error or "Execution failed")
        return parse_execution_output(result.text)

    async def generate_change_plan(
        self,
        message: str,
        repos: Sequence[RepositoryConfig],
        cwd: Optional[Path] = None,
    ) -> PlanGenerationResult:
        """Ask the agent for a branch, description and target repository."""
        if not repos:
            return PlanGenerationResult(success=False, error="No repositories have changes enabled.")

        repo_list = "\n".join(f"- {r.name}: {r.description}" for r in repos)
        prompt = (
            "Analyze this change request and create a plan:\n\n"
            f'Request: "{message}"\n\n'
            f"Available repositories that support changes:\n{repo_list}"
        )

        if cwd is None:
            first_repo = self.config.repositories_dir / repos[0].name
            cwd = first_repo if first_repo.exists() else Path.cwd()

        result = await self.invoker.run(AgentRequest(
            prompt=prompt,
            cwd=cwd,
            system_prompt=PLAN_GENERATION_PROMPT,
            allowed_tools=[],
            disallowed_tools=list(ALL_TOOLS),
            timeout_minutes=PLAN_TIMEOUT_MINUTES,
        ))

        if not result.success:
            return PlanGenerationResult(success=False, error=result.error or "Failed to generate plan")
        if not result.text:
            return PlanGenerationResult(success=False, error="No response text from Claude")

        parsed = parse_change_plan(result.text)
        if not parsed.success:
            return parsed

        target = parsed.plan.target_repo.lower()
        if not any(r.name.lower() == target for r in repos):
            return PlanGenerationResult(
                success=False,
                error=f"Repository {parsed.plan.target_repo} not found in available repositories",
            )
        return parsed
