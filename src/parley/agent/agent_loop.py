"""Main orchestration loop for Parley: the bounded tool-enabled retry state machine."""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import (
    Callable,
    ClassVar,
    List,
    Optional,
    Sequence,
    Tuple,
)

from pydantic import (
    BaseModel,
    Field,
)
from pydantic_core import to_jsonable_python

from parley.agent.model_interface import (
    BaseModelClient,
    ProviderError,
    invoke_model,
)
from parley.agent.recorder import CallRecorder
from parley.agent.tool_executor import ToolInvoker
from parley.agent.transcript import (
    StructuralViolation,
    TranscriptContext,
    ensure_tool_pairing,
    sanitize,
)
from parley.core.schema import (
    CallStage,
    Message,
    Role,
    ToolCallRequest,
    ToolChoice,
    ToolErrorDetail,
    ToolErrorKind,
    ToolResult,
    Transcript,
    Usage,
)

logger = logging.getLogger(__name__)


class RequestAbandoned(RuntimeError):
    """Raised when the client went away; nothing more may be appended for the request."""


class OrchestratorState(str, Enum):
    """States of the retry loop.  DONE and EXHAUSTED are terminal."""

    INIT = "init"
    CALLING_MODEL = "calling_model"
    NO_TOOLS_REQUESTED = "no_tools_requested"
    TOOLS_REQUESTED = "tools_requested"
    EXECUTING_TOOLS = "executing_tools"
    DONE = "done"
    EXHAUSTED = "exhausted"


class AttemptOutcome(str, Enum):
    """What a single tool-enabled model call produced."""

    SUCCESS = "success"
    TOOL_REQUESTED = "tool_requested"
    ERROR = "error"


class RetryState(BaseModel):
    """Attempt accounting for one request."""

    attempt: int = 0
    max_attempts: int = Field(3, ge=1)
    outcomes: List[AttemptOutcome] = Field(default_factory=list)

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def begin(self) -> None:
        self.attempt += 1

    def finish(self, outcome: AttemptOutcome) -> None:
        self.outcomes.append(outcome)


class OrchestrationResult(BaseModel):
    """Everything the synthesis stage needs from the retry loop."""

    state: OrchestratorState
    transcript: List[Message]
    candidate_answer: Optional[str] = None
    tool_results: List[ToolResult] = Field(default_factory=list)
    retry_state: RetryState
    usage: Usage = Field(default_factory=Usage)
    states: List[OrchestratorState] = Field(default_factory=list)
    degraded: bool = False


def render_tool_result(result: ToolResult) -> str:
    """Serialise a ToolResult as the content of its tool-role message."""
    if result.success:
        body = {"success": True, "result": result.payload}
    else:
        error = result.error
        body = {
            "success": False,
            "error": {
                "kind": error.kind.value if error else "upstream",
                "message": error.message if error else "unknown error",
            },
        }
    return json.dumps(to_jsonable_python(body, fallback=repr), ensure_ascii=False)


def settle_tool_result(result: ToolResult) -> Tuple[ToolResult, str]:
    """
    Render *result* for the transcript.

    A payload that cannot be serialised turns the result into a failed one, so the model and
    the synthesis digest see a tool error instead of the request failing.
    """
    try:
        return result, render_tool_result(result)
    except (TypeError, ValueError) as exc:
        logger.warning(
            "Result of tool '%s' (call %s) could not be serialised: %s",
            result.tool_name,
            result.call_id,
            exc,
        )
        failed = result.model_copy(
            update={
                "success": False,
                "payload": None,
                "error": ToolErrorDetail(
                    kind=ToolErrorKind.UPSTREAM, message="result not serialisable"
                ),
            }
        )
        return failed, render_tool_result(failed)


def unique_call_ids(calls: Sequence[ToolCallRequest]) -> List[ToolCallRequest]:
    """Give every call in one model turn a distinct, non-empty id; repeats get an index suffix."""
    seen = set()
    unique: List[ToolCallRequest] = []
    for index, call in enumerate(calls):
        call_id = call.id
        if not call_id or call_id in seen:
            base = call_id or "call"
            call_id = f"{base}_{index}"
            while call_id in seen or any(c.id == call_id for c in calls[index + 1 :]):
                call_id = f"{call_id}_{index}"
            logger.warning("Renamed tool call id %r to %r", call.id, call_id)
            call = call.model_copy(update={"id": call_id})
        seen.add(call_id)
        unique.append(call)
    return unique


# ---------------------------------------------------------------------------
# Retry orchestrator
# ---------------------------------------------------------------------------
class RetryOrchestrator:
    """
    Drive tool-enabled model calls until the model stops asking for tools or the budget runs out.

    Parameters
    ----------
    client:
        Chat model that may request tool calls.
    invoker:
        Executes the requested calls; its catalogue is advertised to the model.
    recorder:
        Request ledger; every model call is recorded.
    max_attempts:
        Maximum number of tool-enabled model calls, including calls that failed.
    chain_tool_calls:
        When false, a turn whose tool calls all succeeded ends the loop; the model is only
        re-invoked to react to failed tool results.  When true, the model is always re-invoked
        after a tool turn so it can chain further calls.
    strict:
        Raise :class:`StructuralViolation` instead of degrading to synthesis.
    check_cancelled:
        Called before each model call and before appending tool results; raises
        :class:`RequestAbandoned` once the client has gone away.
    """

    TOOL_GUIDANCE: ClassVar[
        str
    ] = """\
TOOL USAGE GUIDANCE:
- Call a tool only when the user's request needs an action or external data.
- Use tool names exactly as they are defined.  Never invent a tool.
- If a tool result reports an error, decide whether a corrected call can succeed; otherwise
  explain the problem instead of calling the tool again.
"""

    def __init__(
        self,
        client: BaseModelClient,
        invoker: ToolInvoker,
        recorder: CallRecorder,
        max_attempts: int = 3,
        chain_tool_calls: bool = False,
        strict: bool = True,
        check_cancelled: Optional[Callable[[], None]] = None,
    ) -> None:
        self._client = client
        self._invoker = invoker
        self._recorder = recorder
        self._max_attempts = max_attempts
        self._chain = chain_tool_calls
        self._strict = strict
        self._check_cancelled = check_cancelled or (lambda: None)

    def outgoing(self, working: Sequence[Message]) -> Transcript:
        """Transcript actually sent to the model: the working view plus tool guidance."""
        outgoing = sanitize(working, TranscriptContext.TOOL_ENABLED)
        insert_at = 0
        while insert_at < len(outgoing) and outgoing[insert_at].role is Role.SYSTEM:
            insert_at += 1
        outgoing.insert(insert_at, Message.system(self.TOOL_GUIDANCE))
        return outgoing

    async def run(self, transcript: Sequence[Message]) -> OrchestrationResult:
        """Run the loop starting from *transcript*, which is copied and never mutated."""
        working: Transcript = list(transcript)
        retry = RetryState(max_attempts=self._max_attempts)
        tools = list(self._invoker.catalogue)
        tool_results: List[ToolResult] = []
        states: List[OrchestratorState] = [OrchestratorState.INIT]
        usage = Usage()
        candidate: Optional[str] = None
        degraded = False

        def enter(state: OrchestratorState) -> None:
            logger.debug(
                "Orchestrator %s -> %s (attempt %d/%d)",
                states[-1].value,
                state.value,
                retry.attempt,
                retry.max_attempts,
            )
            states.append(state)

        enter(OrchestratorState.CALLING_MODEL)
        while True:
            if retry.exhausted:
                logger.warning("Tool attempt budget of %d exhausted", retry.max_attempts)
                enter(OrchestratorState.EXHAUSTED)
                break
            self._check_cancelled()

            outgoing = self.outgoing(working)
            try:
                ensure_tool_pairing(outgoing)
            except StructuralViolation as exc:
                if self._strict:
                    raise
                logger.error("Transcript failed the tool pairing check, skipping tools: %s", exc)
                degraded = True
                enter(OrchestratorState.EXHAUSTED)
                break

            retry.begin()
            try:
                reply = await invoke_model(
                    self._client,
                    self._recorder,
                    CallStage.TOOL_ENABLED_CALL,
                    f"Tool-enabled call, attempt {retry.attempt} of {retry.max_attempts}",
                    outgoing,
                    tools=tools,
                    tool_choice=ToolChoice.AUTO,
                    temperature=0.7,
                    max_tokens=1200,
                )
            except ProviderError as exc:
                logger.warning("Tool-enabled call failed on attempt %d: %s", retry.attempt, exc)
                retry.finish(AttemptOutcome.ERROR)
                continue

            usage = usage + reply.usage
            if not reply.tool_calls:
                retry.finish(AttemptOutcome.SUCCESS)
                candidate = reply.text
                enter(OrchestratorState.NO_TOOLS_REQUESTED)
                enter(OrchestratorState.DONE)
                break

            retry.finish(AttemptOutcome.TOOL_REQUESTED)
            enter(OrchestratorState.TOOLS_REQUESTED)
            calls = unique_call_ids(reply.tool_calls)
            logger.info(
                "Model requested %d tool calls: %s", len(calls), [call.name for call in calls]
            )
            enter(OrchestratorState.EXECUTING_TOOLS)
            settled = [settle_tool_result(r) for r in await self._invoker.invoke_all(calls)]
            self._check_cancelled()

            # The assistant turn and its results are appended together, in request order.
            working.append(Message.assistant(reply.text, calls))
            working.extend(Message.tool(r.call_id, content) for r, content in settled)
            results = [r for r, _ in settled]
            tool_results.extend(results)

            if not self._chain and all(r.success for r in results):
                enter(OrchestratorState.DONE)
                break
            enter(OrchestratorState.CALLING_MODEL)

        return OrchestrationResult(
            state=states[-1],
            transcript=working,
            candidate_answer=candidate,
            tool_results=tool_results,
            retry_state=retry,
            usage=usage,
            states=states,
            degraded=degraded,
        )
