"""
Structural checks and sanitising for transcripts sent to a model.

Chat APIs that support tool calling require every assistant message carrying tool calls to be
followed immediately by one tool message per call.  A call made *without* tool definitions must
contain no tool-call markers at all.  This module enforces both contracts.
"""

from enum import Enum
from typing import (
    List,
    Sequence,
)

from parley.core.schema import (
    Message,
    Role,
    Transcript,
)


class StructuralViolation(RuntimeError):
    """Raised when a transcript breaks the tool-call pairing contract."""

    def __init__(self, problems: Sequence[str]) -> None:
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class TranscriptContext(str, Enum):
    """Kind of model call a transcript is prepared for."""

    TOOL_ENABLED = "tool_enabled"
    SYNTHESIS = "synthesis"


# ---------------------------------------------------------------------------
# Sanitising
# ---------------------------------------------------------------------------
def sanitize(transcript: Sequence[Message], context: TranscriptContext) -> Transcript:
    """
    Return a new transcript suitable for *context*.  The input is never mutated.

    ``TOOL_ENABLED``
        A shallow copy; tool messages must stay exactly where they are.
    ``SYNTHESIS``
        Tool messages are dropped and assistant messages lose their ``tool_calls``.  An assistant
        message left without content is dropped too.  User and system messages pass through and
        ordering is preserved.
    """
    if context is TranscriptContext.TOOL_ENABLED:
        return list(transcript)

    sanitized: Transcript = []
    for message in transcript:
        if message.role is Role.TOOL:
            continue
        if message.role is Role.ASSISTANT and message.tool_calls:
            if not message.content:
                continue
            message = message.model_copy(update={"tool_calls": []})
        sanitized.append(message)
    return sanitized


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def find_pairing_violations(transcript: Sequence[Message]) -> List[str]:
    """List every place where tool calls and tool results are not paired one-to-one."""
    problems: List[str] = []
    i = 0
    while i < len(transcript):
        message = transcript[i]
        if message.role is Role.TOOL:
            problems.append(
                f"message {i}: tool result '{message.tool_call_id}' does not follow a tool call"
            )
            i += 1
            continue
        if message.role is not Role.ASSISTANT or not message.tool_calls:
            i += 1
            continue

        expected = [call.id for call in message.tool_calls]
        if len(set(expected)) != len(expected):
            problems.append(f"message {i}: duplicate tool call ids {expected}")

        j = i + 1
        answered: List[str] = []
        while j < len(transcript) and transcript[j].role is Role.TOOL:
            answered.append(transcript[j].tool_call_id or "")
            j += 1

        missing = [call_id for call_id in expected if call_id not in answered]
        if missing:
            problems.append(f"message {i}: tool calls {missing} have no result")
        for call_id in set(answered):
            if call_id not in expected:
                problems.append(f"message {i}: unexpected tool result '{call_id}'")
            elif answered.count(call_id) > 1:
                problems.append(f"message {i}: tool call '{call_id}' answered more than once")
        i = j
    return problems


def ensure_tool_pairing(transcript: Sequence[Message]) -> None:
    """Raise :class:`StructuralViolation` unless the transcript may go to a tool-enabled call."""
    problems = find_pairing_violations(transcript)
    if problems:
        raise StructuralViolation(problems)


def ensure_synthesis_safe(transcript: Sequence[Message]) -> None:
    """Raise :class:`StructuralViolation` if any tool markers survive in *transcript*."""
    problems = [
        f"message {i}: {message.role.value} message carries tool data"
        for i, message in enumerate(transcript)
        if message.role is Role.TOOL or message.tool_calls
    ]
    if problems:
        raise StructuralViolation(problems)
