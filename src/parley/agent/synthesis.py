"""Final, tools-disabled model call that writes the user-facing answer."""

import json
import logging
from typing import (
    ClassVar,
    Dict,
    List,
    Sequence,
)

from pydantic import (
    BaseModel,
    Field,
)

from parley.agent.model_interface import (
    BaseModelClient,
    invoke_model,
)
from parley.agent.recorder import CallRecorder
from parley.agent.transcript import (
    TranscriptContext,
    ensure_synthesis_safe,
    sanitize,
)
from parley.common import preview
from parley.core.schema import (
    CallStage,
    Message,
    Role,
    Transcript,
    Usage,
)

logger = logging.getLogger(__name__)

FALLBACK_REPLY = "Sorry, I could not generate a response."


class SynthesisResult(BaseModel):
    """Text of the final answer and the tokens it cost."""

    text: str
    usage: Usage = Field(default_factory=Usage)


def tool_outcome_digest(transcript: Sequence[Message], max_chars: int = 1500) -> List[str]:
    """
    Summarise every tool call in *transcript* as one plain-text line.

    Tool results reach the synthesis call only through this digest, because the synthesis
    transcript carries no tool messages.
    """
    names: Dict[str, str] = {}
    lines: List[str] = []
    for message in transcript:
        if message.role is Role.ASSISTANT:
            for call in message.tool_calls:
                names[call.id] = call.name
        elif message.role is Role.TOOL:
            name = names.get(message.tool_call_id or "", "unknown_tool")
            content = message.content or ""
            try:
                body = json.loads(content)
            except ValueError:
                body = None
            if isinstance(body, dict) and body.get("success") is False:
                error = body.get("error") or {}
                status = f"FAILED ({error.get('kind', 'upstream')}): {error.get('message', '')}"
            elif isinstance(body, dict) and "result" in body:
                status = f"SUCCEEDED: {json.dumps(body['result'], ensure_ascii=False)}"
            else:
                status = f"RESULT: {content}"
            lines.append(f"- {name}: {preview(status, max_chars)}")
    return lines


class SynthesisCaller:
    """Produces the final answer from a sanitised transcript with tools disabled."""

    REFLECTION_PROMPT: ClassVar[
        str
    ] = """\
Write the final reply to the user's latest message.
You cannot call tools in this step.  Report what was actually done, including any failures, and
never claim an action succeeded unless a tool outcome below says so."""

    def __init__(self, client: BaseModelClient) -> None:
        self._client = client

    def build_transcript(self, working: Sequence[Message]) -> Transcript:
        """Sanitised synthesis view of *working* plus the reflection note."""
        transcript = sanitize(working, TranscriptContext.SYNTHESIS)
        note = self.REFLECTION_PROMPT
        digest = tool_outcome_digest(working)
        if digest:
            note += "\n\nTOOL OUTCOMES:\n" + "\n".join(digest)
        transcript.append(Message.system(note))
        return transcript

    async def synthesize(
        self, working: Sequence[Message], recorder: CallRecorder
    ) -> SynthesisResult:
        """
        Run the synthesis call.

        Raises :class:`~parley.agent.transcript.StructuralViolation` if tool data survived
        sanitising and :class:`~parley.agent.model_interface.ProviderError` if the call fails.
        """
        transcript = self.build_transcript(working)
        ensure_synthesis_safe(transcript)

        reply = await invoke_model(
            self._client,
            recorder,
            CallStage.SYNTHESIS_CALL,
            "Compose the final answer with tools disabled",
            transcript,
            tools=(),
            tool_choice=None,
            temperature=0.5,
            max_tokens=1200,
        )
        text = (reply.text or "").strip()
        if not text:
            logger.warning("Synthesis returned no text, using fallback reply")
            text = FALLBACK_REPLY
        return SynthesisResult(text=text, usage=reply.usage)
