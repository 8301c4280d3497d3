"""
Contextual interpretation of the latest user message.

Resolves pronouns and implicit references ("send it", "that contact") against the recent
conversation before intent classification runs.  The interpreter fails closed: any model or
parsing problem yields the raw message as its own interpretation, flagged ``degraded``.
"""

import logging
from typing import (
    Any,
    ClassVar,
    Dict,
    List,
    Mapping,
    Sequence,
)

from pydantic import (
    BaseModel,
    Field,
)

from parley.agent.model_interface import (
    BaseModelClient,
    ProviderError,
    invoke_model,
    parse_json_reply,
)
from parley.agent.recorder import CallRecorder
from parley.common import preview
from parley.core.schema import (
    CallStage,
    Message,
    Role,
    Usage,
)

logger = logging.getLogger(__name__)

CONFIDENCE_LABELS: Mapping[str, float] = {"high": 0.9, "medium": 0.6, "low": 0.3}


def coerce_confidence(value: Any, default: float = 0.5) -> float:
    """Turn a numeric or ``high|medium|low`` confidence into a float in [0, 1]."""
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return min(1.0, max(0.0, float(value)))
    if isinstance(value, str):
        label = value.strip().lower()
        if label in CONFIDENCE_LABELS:
            return CONFIDENCE_LABELS[label]
        try:
            return min(1.0, max(0.0, float(label)))
        except ValueError:
            return default
    return default


def _str_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [str(item) for item in value]
    return []


class Interpretation(BaseModel):
    """What the user means, in context."""

    original_message: str
    interpreted_meaning: str
    user_intent: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    resolved_references: Dict[str, str] = Field(default_factory=dict)
    contextual_factors: List[str] = Field(default_factory=list)
    suggested_clarifications: List[str] = Field(default_factory=list)
    degraded: bool = False
    usage: Usage = Field(default_factory=Usage)


class ContextualInterpreter:
    """Resolves ambiguous references in the latest user message."""

    SYSTEM_PROMPT: ClassVar[
        str
    ] = """\
You are a contextual awareness analyzer for an AI agent conversation system.
Interpret what the user is ACTUALLY asking for, considering the recent conversation.
- Resolve pronouns and vague references (it, that, them, he, she, "that one") to specific entities.
- If the user says "send it" after discussing an email, they mean "send the email we discussed".
- If the message is vague and no context resolves it, say so and suggest clarifications.

Respond with JSON only:
{"interpretedMeaning": "...", "userIntent": "...", "contextualFactors": ["..."],
 "confidence": 0.0-1.0, "resolvedReferences": {"it": "..."}, "suggestedClarifications": ["..."]}
"""

    PREVIEW_CHARS: ClassVar[int] = 200

    def __init__(self, client: BaseModelClient, window: int = 10) -> None:
        self._client = client
        self._window = window

    def _build_prompt(
        self, user_message: str, history: Sequence[Message], conversation_id: str | None
    ) -> str:
        parts: List[str] = [f"CONVERSATION: {conversation_id or 'new'}"]
        if history:
            parts.append(f"\nRECENT CONVERSATION (last {len(history)} messages):")
            for idx, msg in enumerate(history, start=1):
                speaker = "User" if msg.role is Role.USER else "Agent"
                parts.append(f"{idx}. {speaker}: {preview(msg.content, self.PREVIEW_CHARS)}")
        parts.append(f'\nCURRENT USER MESSAGE:\n"{user_message}"')
        parts.append("\nNow analyze what the user ACTUALLY means in this context.")
        return "\n".join(parts)

    def window(self, history: Sequence[Message]) -> List[Message]:
        """Return the bounded, oldest-to-newest slice of user/assistant turns."""
        turns = [m for m in history if m.role in (Role.USER, Role.ASSISTANT) and m.content]
        return turns[-self._window :] if self._window > 0 else []

    @staticmethod
    def fallback(user_message: str, reason: str) -> Interpretation:
        """Interpretation used when analysis is unavailable: the raw text, low confidence."""
        return Interpretation(
            original_message=user_message,
            interpreted_meaning=user_message,
            user_intent="context_analysis_failed",
            confidence=0.0,
            contextual_factors=[f"Analysis error: {reason}"],
            degraded=True,
        )

    async def interpret(
        self,
        user_message: str,
        history: Sequence[Message],
        conversation_id: str | None,
        recorder: CallRecorder,
    ) -> Interpretation:
        """Interpret *user_message*; never raises for model or parsing failures."""
        if not user_message.strip():
            return Interpretation(
                original_message=user_message,
                interpreted_meaning="",
                user_intent="empty_message",
                confidence=1.0,
            )

        recent = self.window(history)
        messages = [
            Message.system(self.SYSTEM_PROMPT),
            Message.user(self._build_prompt(user_message, recent, conversation_id)),
        ]
        try:
            reply = await invoke_model(
                self._client,
                recorder,
                CallStage.CONTEXTUAL_INTERPRETATION,
                "Resolve references in the user message against recent history",
                messages,
                temperature=0.3,
                max_tokens=500,
                json_mode=True,
            )
        except ProviderError as exc:
            logger.warning("Contextual analysis failed, using raw message: %s", exc)
            return self.fallback(user_message, str(exc))

        try:
            parsed = parse_json_reply(reply.text)
        except ValueError as exc:
            logger.warning("Contextual analysis returned malformed output: %s", exc)
            return self.fallback(user_message, f"malformed output: {exc}")

        references = parsed.get("resolvedReferences") or {}
        interpretation = Interpretation(
            original_message=user_message,
            interpreted_meaning=str(parsed.get("interpretedMeaning") or user_message),
            user_intent=str(parsed.get("userIntent") or "unknown"),
            confidence=coerce_confidence(parsed.get("confidence")),
            resolved_references=(
                {str(k): str(v) for k, v in references.items()}
                if isinstance(references, dict)
                else {}
            ),
            contextual_factors=_str_list(parsed.get("contextualFactors")),
            suggested_clarifications=_str_list(parsed.get("suggestedClarifications")),
            usage=reply.usage,
        )
        logger.info(
            "Interpretation complete: intent=%s confidence=%.2f resolved_refs=%d",
            interpretation.user_intent,
            interpretation.confidence,
            len(interpretation.resolved_references),
        )
        return interpretation
