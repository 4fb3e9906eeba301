"""Agent invocation through the Claude CLI."""

from .agent_invoker import (
    AgentInvoker,
    AgentRequest,
    AgentResult,
    StreamAccumulator,
    StreamEvent,
    StreamEventKind,
    execution_tool_policy,
    iter_stream_events,
    parse_stream_line,
)

__all__ = [
    "AgentInvoker",
    "AgentRequest",
    "AgentResult",
    "StreamAccumulator",
    "StreamEvent",
    "StreamEventKind",
    "execution_tool_policy",
    "iter_stream_events",
    "parse_stream_line",
]
