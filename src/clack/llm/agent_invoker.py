"""Claude CLI subprocess invoker with stream-json event parsing.

The CLI is run with ``--output-format stream-json``; stdout is consumed as a
pull-based sequence of ``StreamEvent`` objects (``iter_stream_events``) and
folded by a ``StreamAccumulator``. Success is decided by the terminal
``result`` event, never by the process exit code.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Callable, List, Optional, Sequence, Tuple, Union

from ..utils.error_handling import safe_call, safe_call_async

logger = logging.getLogger(__name__)

EXECUTION_TOOLS: Tuple[str, ...] = ("Read", "Glob", "Grep", "Write", "Edit", "Bash")
READ_ONLY_TOOLS: Tuple[str, ...] = ("Read", "Glob", "Grep")
# Sub-agent spawning is never available to autonomous change runs
FORBIDDEN_TOOLS: Tuple[str, ...] = ("Task",)

READ_CHUNK_SIZE = 4096
LOG_LINE_LIMIT = 500


@dataclass
class AgentRequest:
    """One agent invocation."""
    prompt: str
    cwd: Union[str, Path]
    system_prompt: Optional[str] = None
    allowed_tools: List[str] = field(default_factory=list)
    disallowed_tools: List[str] = field(default_factory=list)
    timeout_minutes: Optional[float] = None


@dataclass
class AgentResult:
    """Outcome of an agent invocation."""
    success: bool
    text: str = ""
    error: Optional[str] = None
    last_message: Optional[str] = None


def execution_tool_policy(extra_tools: Sequence[str] = ()) -> Tuple[List[str], List[str]]:
    """Allowed/disallowed tool lists for a change-execution run.

    ``Task`` is stripped from the allowed list and always disallowed,
    whatever the configured extras say.
    """
    allowed: List[str] = []
    for tool in list(EXECUTION_TOOLS) + list(extra_tools):
        if tool in FORBIDDEN_TOOLS or tool in allowed:
            continue
        allowed.append(tool)
    return allowed, list(FORBIDDEN_TOOLS)


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------

class StreamEventKind(str, Enum):
    INIT = "init"
    TEXT = "text"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    RESULT = "result"
    OTHER = "other"
    RAW = "raw"  # stdout line that is not JSON


@dataclass
class StreamEvent:
    kind: StreamEventKind
    text: str = ""
    tool_name: Optional[str] = None
    subtype: Optional[str] = None
    session_id: Optional[str] = None
    event_type: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_success_result(self) -> bool:
        return self.kind == StreamEventKind.RESULT and self.subtype == "success"


def parse_stream_line(line: str) -> List[StreamEvent]:
    """Map one stdout line to zero or more events.

    Assistant messages can carry several content blocks, so one line may
    yield several events.
    """
    line = line.strip()
    if not line:
        return []

    try:
        event = json.loads(line)
    except (json.JSONDecodeError, ValueError):
        return [StreamEvent(kind=StreamEventKind.RAW, text=line)]
    if not isinstance(event, dict):
        return [StreamEvent(kind=StreamEventKind.RAW, text=line)]

    event_type = event.get("type")
    subtype = event.get("subtype")

    if event_type == "assistant":
        events = []
        for block in _content_blocks(event):
            if block.get("type") == "tool_use":
                events.append(StreamEvent(
                    kind=StreamEventKind.TOOL_USE,
                    tool_name=block.get("name", "unknown"),
                ))
            elif block.get("type") == "text" and block.get("text"):
                events.append(StreamEvent(kind=StreamEventKind.TEXT, text=block["text"]))
        return events

    if event_type == "result":
        error = None
        if subtype and subtype != "success":
            error = event.get("error") or "Unknown error"
        return [StreamEvent(
            kind=StreamEventKind.RESULT,
            subtype=subtype,
            text=event.get("result") or "",
            error=error,
        )]

    if event_type == "system" and subtype == "init":
        return [StreamEvent(
            kind=StreamEventKind.INIT,
            subtype=subtype,
            session_id=event.get("session_id") or "",
            event_type=event_type,
        )]

    if event_type == "user":
        events = []
        for block in _content_blocks(event):
            if block.get("type") == "tool_result":
                content = block.get("content")
                events.append(StreamEvent(
                    kind=StreamEventKind.TOOL_RESULT,
                    text=content if isinstance(content, str) else "[complex result]",
                ))
        return events

    return [StreamEvent(kind=StreamEventKind.OTHER, event_type=event_type, subtype=subtype)]


def _content_blocks(event: dict) -> List[dict]:
    message = event.get("message") or {}
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


def describe_event(event: StreamEvent) -> str:
    """Execution-log line for an event."""
    if event.kind == StreamEventKind.TOOL_USE:
        return f"Event: tool_use ({event.tool_name})"
    if event.kind == StreamEventKind.TEXT:
        preview = event.text[:200].replace("\n", " ")
        return f"Event: assistant text: {preview}..."
    if event.kind == StreamEventKind.RESULT:
        return f"Event: result (subtype: {event.subtype})"
    if event.kind == StreamEventKind.INIT:
        return f"Event: init (session: {(event.session_id or '')[:8]}...)"
    if event.kind == StreamEventKind.TOOL_RESULT:
        return f"Event: tool_result: {event.text[:100]}..."
    if event.kind == StreamEventKind.RAW:
        return f"stdout: {event.text[:LOG_LINE_LIMIT]}"
    suffix = f":{event.subtype}" if event.subtype else ""
    return f"Event: {event.event_type}{suffix}"


class StreamAccumulator:
    """Folds stream events into the final text and outcome."""

    def __init__(self):
        self._text = ""
        self.last_message = ""
        self.result_success = False
        self.result_error: Optional[str] = None

    @property
    def text(self) -> str:
        return self._text.strip()

    def feed(self, event: StreamEvent) -> Optional[str]:
        """Apply an event; returns a progress message for tool use events."""
        if event.kind == StreamEventKind.TOOL_USE:
            self.last_message = f"Using {event.tool_name}"
            return self.last_message
        if event.kind == StreamEventKind.TEXT:
            self._text += event.text + "\n"
        elif event.kind == StreamEventKind.RESULT:
            if event.is_success_result:
                self.result_success = True
                # Final answer supersedes the running transcript
                if event.text:
                    self._text = event.text
            else:
                self.result_error = event.error
        return None


async def iter_stream_lines(
    reader: asyncio.StreamReader,
    on_chunk: Optional[Callable[[bytes], None]] = None,
) -> AsyncIterator[str]:
    """Yield non-empty lines from a stream, reading fixed-size chunks."""
    buffer = b""
    while True:
        chunk = await reader.read(READ_CHUNK_SIZE)
        if not chunk:
            break
        if on_chunk:
            on_chunk(chunk)
        buffer += chunk
        while b"\n" in buffer:
            line_bytes, buffer = buffer.split(b"\n", 1)
            line = line_bytes.decode(errors="replace").strip()
            if line:
                yield line
    tail = buffer.decode(errors="replace").strip()
    if tail:
        yield tail


async def iter_stream_events(
    reader: asyncio.StreamReader,
    on_chunk: Optional[Callable[[bytes], None]] = None,
) -> AsyncIterator[StreamEvent]:
    """Pull-based sequence of parsed stream-json events."""
    async for line in iter_stream_lines(reader, on_chunk):
        for event in parse_stream_line(line):
            yield event


# ---------------------------------------------------------------------------
# Invoker
# ---------------------------------------------------------------------------

@dataclass
class _OutputStats:
    spawned_at: float
    last_output_at: float
    output_received: bool = False
    stdout_bytes: int = 0
    stderr_chunks: List[bytes] = field(default_factory=list)

    @property
    def stderr_bytes(self) -> int:
        return sum(len(c) for c in self.stderr_chunks)

    @property
    def stderr_text(self) -> str:
        return b"".join(self.stderr_chunks).decode(errors="replace")

    def on_stdout(self, chunk: bytes) -> None:
        self.stdout_bytes += len(chunk)
        self.output_received = True
        self.last_output_at = time.monotonic()

    def on_stderr(self, chunk: bytes) -> None:
        self.stderr_chunks.append(chunk)
        self.last_output_at = time.monotonic()


ExecutionLog = Callable[[str], None]
ProgressCallback = Callable[[str], object]


class AgentInvoker:
    """Runs the Claude CLI as a subprocess and interprets its event stream."""

    def __init__(
        self,
        executable: str = "claude",
        default_timeout_minutes: float = 10,
        heartbeat_interval: float = 30,
    ):
        self.executable = executable
        self.default_timeout_minutes = default_timeout_minutes
        self.heartbeat_interval = heartbeat_interval

    def build_command(self, request: AgentRequest) -> List[str]:
        # Prompt goes through stdin; system prompts with newlines break positional args
        cmd = [
            self.executable,
            "--print",
            "--verbose",
            "--dangerously-skip-permissions",
            "--output-format", "stream-json",
        ]
        if request.system_prompt:
            cmd.extend(["--system-prompt", request.system_prompt])
        if request.allowed_tools:
            cmd.extend(["--allowedTools", ",".join(request.allowed_tools)])
        if request.disallowed_tools:
            cmd.extend(["--disallowedTools", ",".join(request.disallowed_tools)])
        return cmd

    async def run(
        self,
        request: AgentRequest,
        log: Optional[ExecutionLog] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> AgentResult:
        """
        Run one agent invocation to completion or timeout.

        Args:
            request: Prompt, working directory and tool policy
            log: Sink for execution-log lines (best-effort)
            on_progress: Called with "Using <tool>" on every tool use; may be async

        Returns:
            AgentResult; never raises for agent or process failures
        """
        def record(message: str) -> None:
            if log is not None:
                safe_call(log, message, error_message="Failed to write execution log")

        if not request.prompt or not request.prompt.strip():
            return AgentResult(success=False, error="Cannot run Claude with empty prompt")

        timeout_minutes = request.timeout_minutes
        if timeout_minutes is None:
            timeout_minutes = self.default_timeout_minutes
        timeout_label = f"{timeout_minutes:g}"

        cmd = self.build_command(request)
        logger.debug(f"Running Claude in {request.cwd}")
        logger.debug(f"Args: {' '.join(cmd[1:])} (prompt via stdin)")
        record(f"Command: {' '.join(cmd)} [prompt via stdin]")
        record(f"Working directory: {request.cwd}")
        record(f"Prompt length: {len(request.prompt)} chars")
        record(f"Timeout: {timeout_label} minutes")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(request.cwd),
            )
        except OSError as e:
            record(f"Spawn error: {e}")
            logger.error(f"Failed to start {self.executable}: {e}")
            return AgentResult(success=False, error=f"Failed to start claude process: {e}")

        record(f"Claude process spawned (PID: {process.pid})")

        try:
            process.stdin.write(request.prompt.encode())
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning(f"Could not write prompt to claude stdin: {e}")
        finally:
            process.stdin.close()
        record("Prompt written to stdin, waiting for output...")

        now = time.monotonic()
        stats = _OutputStats(spawned_at=now, last_output_at=now)
        accumulator = StreamAccumulator()

        async def consume_stdout():
            async for event in iter_stream_events(process.stdout, stats.on_stdout):
                record(describe_event(event))
                progress = accumulator.feed(event)
                if progress and on_progress is not None:
                    await safe_call_async(
                        on_progress, progress, error_message="Progress callback failed"
                    )

        async def consume_stderr():
            async for line in iter_stream_lines(process.stderr, stats.on_stderr):
                record(f"stderr: {line[:LOG_LINE_LIMIT]}")

        heartbeat = asyncio.create_task(self._heartbeat(stats, record))
        timed_out = False
        try:
            await asyncio.wait_for(
                asyncio.gather(consume_stdout(), consume_stderr(), process.wait()),
                timeout=timeout_minutes * 60,
            )
        except asyncio.TimeoutError:
            timed_out = True
        finally:
            heartbeat.cancel()

        if timed_out:
            await self._terminate(process)
            error = f"Execution timed out after {timeout_label} minutes"
            logger.warning(f"Claude CLI in {request.cwd}: {error}")
            record(f"Timeout: {error}")
            record(f"Final stdout length: {stats.stdout_bytes} bytes")
            record(f"Final stderr length: {stats.stderr_bytes} bytes")
            return AgentResult(
                success=False,
                text=accumulator.text,
                error=error,
                last_message=accumulator.last_message,
            )

        code = process.returncode
        stderr_text = stats.stderr_text
        record(f"Process exited with code {code}")
        record(f"Final stdout length: {stats.stdout_bytes} bytes")
        record(f"Final stderr length: {stats.stderr_bytes} bytes")
        record(f"Parsed final text ({len(accumulator.text)} chars)")
        if stderr_text and code != 0:
            record(f"Full stderr: {stderr_text[:2000]}")

        error = accumulator.result_error
        if error is None and code != 0:
            error = stderr_text.strip() or f"Process exited with code {code}"

        return AgentResult(
            success=accumulator.result_success,
            text=accumulator.text,
            error=error,
            last_message=accumulator.last_message,
        )

    async def _heartbeat(self, stats: _OutputStats, record: ExecutionLog) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            now = time.monotonic()
            if not stats.output_received:
                elapsed = round(now - stats.spawned_at)
                record(f"Still waiting for first output... ({elapsed}s since spawn)")
            else:
                elapsed = round(now - stats.last_output_at)
                record(
                    f"Process still running... ({elapsed}s since last output, "
                    f"stdout: {stats.stdout_bytes} bytes, stderr: {stats.stderr_bytes} bytes)"
                )

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process) -> None:
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning(f"Claude process {process.pid} ignored SIGTERM, killing")
            process.kill()
            await process.wait()
