"""Follow-up intent detection for replies in an active change thread."""

import logging
import re
from pathlib import Path
from typing import Optional, Union

from ..llm.agent_invoker import AgentInvoker, AgentRequest
from .execution import ALL_TOOLS
from .session import SessionRegistry
from .types import FollowUpCommand, FollowUpDetection

logger = logging.getLogger(__name__)

DETECTION_TIMEOUT_MINUTES = 1

FOLLOW_UP_DETECTION_PROMPT = """You are analyzing a message in an active code change thread where a PR has been created.

The user's message may be:
1. A **command** to act on the PR (merge, review feedback, close, or request additional changes)
2. A **question** about the code or changes (not an action request)

## Determine the Intent

**MERGE** - User wants to merge the PR:
- "merge", "merge it", "ship it", "lgtm", "looks good", "approve and merge"

**REVIEW** - User wants you to address PR feedback/comments:
- "review", "check comments", "address feedback", "fix the review comments"

**CLOSE** - User wants to close/abandon the PR without merging:
- "close", "abandon", "cancel", "never mind", "close the PR"
- Note: if user says "close and delete branch", include that in additionalInstructions

**UPDATE** - User is requesting additional code changes:
- Describes new changes, fixes, or modifications to make
- "also fix the tests", "add error handling too", "can you also update the docs"

**QUESTION** - User is asking about the code or changes (not requesting action):
- "how does this work?", "why did you change this?", "what does this do?"

## Output Format

If this is a COMMAND (merge, review, close, or update), output:
<follow-up-command>
  <command>{merge|review|close|update}</command>
  <instructions>{any additional context or instructions, empty if none}</instructions>
</follow-up-command>

If this is a QUESTION, output:
<question>true</question>

When uncertain, default to treating it as a question."""

_COMMAND_BLOCK_PATTERN = re.compile(r"<follow-up-command>(.*?)</follow-up-command>", re.DOTALL)
_COMMAND_PATTERN = re.compile(r"<command>(.*?)</command>", re.DOTALL)
_INSTRUCTIONS_PATTERN = re.compile(r"<instructions>(.*?)</instructions>", re.DOTALL)

QUESTION = FollowUpDetection(is_command=False)


def parse_follow_up_output(text: str, message: str) -> FollowUpDetection:
    """Classify agent output; anything but a well-formed known command is a question."""
    block = _COMMAND_BLOCK_PATTERN.search(text or "")
    if not block:
        return QUESTION

    command_match = _COMMAND_PATTERN.search(block.group(1))
    if not command_match:
        return QUESTION
    try:
        command = FollowUpCommand(command_match.group(1).strip().lower())
    except ValueError:
        return QUESTION

    instructions_match = _INSTRUCTIONS_PATTERN.search(block.group(1))
    instructions = instructions_match.group(1).strip() if instructions_match else ""
    return FollowUpDetection(
        is_command=True,
        command=command,
        additional_instructions=instructions or message,
    )


class FollowUpDetector:
    """Classifies thread replies into follow-up commands or questions."""

    def __init__(self, invoker: AgentInvoker, registry: SessionRegistry):
        self.invoker = invoker
        self.registry = registry

    async def detect(self, message: str, worktree_path: Union[str, Path]) -> FollowUpDetection:
        result = await self.invoker.run(AgentRequest(
            prompt=f'Analyze this message in a change thread and determine the user\'s intent:\n\n"{message}"',
            cwd=worktree_path,
            system_prompt=FOLLOW_UP_DETECTION_PROMPT,
            allowed_tools=[],
            disallowed_tools=list(ALL_TOOLS),
            timeout_minutes=DETECTION_TIMEOUT_MINUTES,
        ))
        if not result.success:
            logger.debug(f"Follow-up detection failed, treating as question: {result.error}")
            return QUESTION
        return parse_follow_up_output(result.text, message)

    async def detect_for_thread(
        self,
        channel: str,
        thread_ts: str,
        message: str,
    ) -> Optional[FollowUpDetection]:
        """Classify a reply in a change thread; None when no session owns the thread."""
        session = self.registry.get_by_thread(channel, thread_ts)
        if session is None:
            return None
        return await self.detect(message, session.worktree.worktree_path)
