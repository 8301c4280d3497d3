"""
Request pipeline: interpretation -> intent gate -> tool retry loop -> synthesis.

One :class:`ChatPipeline` is shared by all requests; it holds only read-only collaborators.
Everything mutable about a request (the call ledger, the working transcript, the retry counter)
lives in a :class:`RequestContext` or in locals of :meth:`ChatPipeline.run`.
"""

import asyncio
import logging
from typing import (
    ClassVar,
    Mapping,
    Optional,
    Tuple,
)

from parley.agent.agent_loop import (
    AttemptOutcome,
    OrchestratorState,
    RequestAbandoned,
    RetryOrchestrator,
)
from parley.agent.intent_classifier import IntentClassifier
from parley.agent.interpreter import (
    ContextualInterpreter,
    Interpretation,
)
from parley.agent.model_interface import BaseModelClient
from parley.agent.recorder import CallRecorder
from parley.agent.synthesis import (
    SynthesisCaller,
    SynthesisResult,
)
from parley.agent.tool_executor import ToolInvoker
from parley.agent.transcript import (
    StructuralViolation,
    TranscriptContext,
    sanitize,
)
from parley.api.models import (
    ChatRequest,
    ChatResponse,
)
from parley.config import settings
from parley.core.schema import (
    AuthContext,
    Message,
    Transcript,
)
from parley.tools import ToolCatalogue
from parley.tools.services import ToolService

logger = logging.getLogger(__name__)

APOLOGY_REPLY = (
    "I'm sorry, something went wrong while I was working on your request. Please try again."
)


class RequestContext:
    """
    Per-request state threaded through every stage.

    Parameters
    ----------
    auth:
        Caller credentials, forwarded to the tool service unchanged.
    agent_id:
        Agent answering the request.
    catalogue:
        Tools that agent may call, loaded once for the request.
    recorder:
        Ledger for this request only.  A fresh one is created when omitted.
    cancelled:
        Set when the client has gone away.
    """

    def __init__(
        self,
        auth: AuthContext,
        agent_id: str,
        catalogue: ToolCatalogue,
        recorder: Optional[CallRecorder] = None,
        cancelled: Optional[asyncio.Event] = None,
    ) -> None:
        self.auth = auth
        self.agent_id = agent_id
        self.catalogue = catalogue
        self.recorder = recorder or CallRecorder()
        self.cancelled = cancelled or asyncio.Event()

    def is_cancelled(self) -> bool:
        return self.cancelled.is_set()

    def check_cancelled(self) -> None:
        if self.is_cancelled():
            raise RequestAbandoned("request was abandoned by the client")


class ChatPipeline:
    """Turns one inbound chat request into a reply plus its diagnostic ledger."""

    SYSTEM_PROMPT: ClassVar[
        str
    ] = """\
You are Parley, a helpful AI agent.  Answer clearly and concisely.  When tools are available and
the user asks for an action, use them; never claim to have done something you did not do."""

    def __init__(
        self,
        chat_client: BaseModelClient,
        tool_service: ToolService,
        utility_client: Optional[BaseModelClient] = None,
        max_attempts: int = 3,
        chain_tool_calls: bool = False,
        parallel_tool_calls: bool = True,
        reuse_direct_answer: bool = False,
        history_window: int = 10,
        tool_timeout: float = 30.0,
        strict: bool = True,
        corrections: Optional[Mapping[str, str]] = None,
    ) -> None:
        utility_client = utility_client or chat_client
        self._chat_client = chat_client
        self._tool_service = tool_service
        self._interpreter = ContextualInterpreter(utility_client, window=history_window)
        self._classifier = IntentClassifier(utility_client)
        self._synthesis = SynthesisCaller(chat_client)
        self._max_attempts = max_attempts
        self._chain_tool_calls = chain_tool_calls
        self._parallel_tool_calls = parallel_tool_calls
        self._reuse_direct_answer = reuse_direct_answer
        self._tool_timeout = tool_timeout
        self._strict = strict
        self._corrections = corrections

    @classmethod
    def from_settings(
        cls,
        chat_client: BaseModelClient,
        tool_service: ToolService,
        utility_client: Optional[BaseModelClient] = None,
    ) -> "ChatPipeline":
        """Build a pipeline configured from :data:`parley.config.settings`."""
        return cls(
            chat_client,
            tool_service,
            utility_client=utility_client,
            max_attempts=settings.MAX_TOOL_ATTEMPTS,
            chain_tool_calls=settings.CHAIN_TOOL_CALLS,
            parallel_tool_calls=settings.PARALLEL_TOOL_CALLS,
            reuse_direct_answer=settings.REUSE_DIRECT_ANSWER,
            history_window=settings.HISTORY_WINDOW,
            tool_timeout=settings.TOOL_TIMEOUT_SECONDS,
            strict=settings.strict_transcripts,
        )

    # ------------------------------------------------------------------
    # Transcript construction
    # ------------------------------------------------------------------
    def build_transcript(self, request: ChatRequest, interpretation: Interpretation) -> Transcript:
        """Working transcript: system prompt, interpretation note, history, user message."""
        transcript: Transcript = [Message.system(self.SYSTEM_PROMPT)]
        if (
            not interpretation.degraded
            and interpretation.interpreted_meaning
            and interpretation.interpreted_meaning != request.user_message
        ):
            note = f"CONTEXT: the user's latest message means: {interpretation.interpreted_meaning}"
            if interpretation.resolved_references:
                refs = ", ".join(
                    f'"{k}" = {v}' for k, v in interpretation.resolved_references.items()
                )
                note += f"\nResolved references: {refs}"
            transcript.append(Message.system(note))

        history = sanitize(request.recent_history, TranscriptContext.SYNTHESIS)
        transcript.extend(self._interpreter.window(history))
        transcript.append(Message.user(request.user_message))
        return transcript

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    async def _synthesize(
        self, working: Transcript, request: ChatRequest, recorder: CallRecorder
    ) -> SynthesisResult:
        try:
            return await self._synthesis.synthesize(working, recorder)
        except StructuralViolation as exc:
            if self._strict:
                raise
            logger.error("Synthesis transcript still carried tool data, dropping it: %s", exc)
            bare = [Message.system(self.SYSTEM_PROMPT), Message.user(request.user_message)]
            return await self._synthesis.synthesize(bare, recorder)

    async def _respond(self, request: ChatRequest, context: RequestContext) -> Tuple[str, bool]:
        recorder = context.recorder
        interpretation = await self._interpreter.interpret(
            request.user_message, request.recent_history, request.conversation_id, recorder
        )
        context.check_cancelled()

        classification = await self._classifier.classify(
            interpretation, request.user_message, context.catalogue, recorder
        )
        context.check_cancelled()
        degraded = interpretation.degraded or classification.degraded

        working = self.build_transcript(request, interpretation)
        if classification.requires_tools:
            invoker = ToolInvoker(
                self._tool_service,
                context.catalogue,
                context.auth,
                context.agent_id,
                corrections=self._corrections,
                timeout=self._tool_timeout,
                parallel=self._parallel_tool_calls,
            )
            orchestrator = RetryOrchestrator(
                self._chat_client,
                invoker,
                recorder,
                max_attempts=self._max_attempts,
                chain_tool_calls=self._chain_tool_calls,
                strict=self._strict,
                check_cancelled=context.check_cancelled,
            )
            outcome = await orchestrator.run(working)
            working = outcome.transcript
            degraded = (
                degraded
                or outcome.degraded
                or AttemptOutcome.ERROR in outcome.retry_state.outcomes
            )
            logger.info(
                "Tool loop finished in state %s after %d attempt(s), %d tool call(s)",
                outcome.state.value,
                outcome.retry_state.attempt,
                len(outcome.tool_results),
            )
            if (
                self._reuse_direct_answer
                and outcome.state is OrchestratorState.DONE
                and not outcome.tool_results
                and outcome.candidate_answer
            ):
                return outcome.candidate_answer, degraded

        context.check_cancelled()
        synthesis = await self._synthesize(working, request, recorder)
        return synthesis.text, degraded

    async def run(self, request: ChatRequest, context: RequestContext) -> ChatResponse:
        """
        Process *request* end to end.

        Failures are turned into an apologetic reply.  Only :class:`RequestAbandoned`, task
        cancellation and, under strict transcript checks, :class:`StructuralViolation` escape.
        """
        logger.info(
            "Chat request: conversation=%s agent=%s history=%d",
            request.conversation_id,
            request.agent_id,
            len(request.recent_history),
        )
        try:
            reply_text, degraded = await self._respond(request, context)
        except RequestAbandoned:
            logger.info("Request for conversation %s abandoned", request.conversation_id)
            raise
        except StructuralViolation:
            if self._strict:
                raise
            logger.exception("Structural violation while handling request")
            reply_text, degraded = APOLOGY_REPLY, True
        except Exception:  # pylint: disable=broad-except
            logger.exception("Chat pipeline failed for conversation %s", request.conversation_id)
            reply_text, degraded = APOLOGY_REPLY, True

        return ChatResponse(
            reply_text=reply_text,
            usage=context.recorder.usage(),
            debug_ledger=list(context.recorder.ledger()),
            conversation_id=request.conversation_id,
            degraded=degraded,
        )
