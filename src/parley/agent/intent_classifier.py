"""
Intent gate: does this message need tools at all?

The classifier only decides whether to enter the tool-enabled retry loop.  It never chooses which
tool to run; any tool suggestions in the model output are ignored.
"""

import logging
from typing import ClassVar

from pydantic import (
    BaseModel,
    Field,
)

from parley.agent.interpreter import (
    Interpretation,
    coerce_confidence,
)
from parley.agent.model_interface import (
    BaseModelClient,
    ProviderError,
    invoke_model,
    parse_json_reply,
)
from parley.agent.recorder import CallRecorder
from parley.core.schema import (
    CallStage,
    Message,
    Usage,
)
from parley.tools import ToolCatalogue

logger = logging.getLogger(__name__)


class IntentClassification(BaseModel):
    """Result of the tool-use gate."""

    requires_tools: bool
    confidence: float = Field(..., ge=0.0, le=1.0)
    detected_intent: str
    reasoning: str = ""
    degraded: bool = False
    usage: Usage = Field(default_factory=Usage)


class IntentClassifier:
    """Decides whether a message requires tool execution."""

    SYSTEM_PROMPT: ClassVar[
        str
    ] = """\
You are an intent classifier for an AI agent chat system.
Your ONLY job is to determine if the user's message requires calling external tools.

REQUIRES TOOLS: sending or composing messages, searching external data, creating, modifying or
deleting data, scheduling, calculations the agent must perform, or any other action on an
external system.

DOES NOT REQUIRE TOOLS: greetings, small talk, thanks, explanations or advice from general
knowledge, clarification requests, and CAPABILITY QUESTIONS ("Can you send emails?", "What tools
do you have?").  A question about what you CAN do is not a request to DO it.

Respond in JSON only:
{"requiresTools": true|false, "confidence": 0.0-1.0, "intent": "short label",
 "reasoning": "brief explanation"}
"""

    MAX_MESSAGE_CHARS: ClassVar[int] = 500

    def __init__(self, client: BaseModelClient) -> None:
        self._client = client

    @staticmethod
    def _safe_fallback(intent: str, reasoning: str) -> IntentClassification:
        # Assume tools might be needed; the retry loop copes if they are not.
        return IntentClassification(
            requires_tools=True,
            confidence=0.3,
            detected_intent=intent,
            reasoning=reasoning,
            degraded=True,
        )

    def _context_note(self, interpretation: Interpretation, catalogue: ToolCatalogue) -> str:
        lines = [
            "CONTEXTUAL AWARENESS ANALYSIS:",
            f"Interpreted Meaning: {interpretation.interpreted_meaning}",
            f"User's Actual Intent: {interpretation.user_intent}",
        ]
        if interpretation.resolved_references:
            refs = ", ".join(f"{k} -> {v}" for k, v in interpretation.resolved_references.items())
            lines.append(f"Resolved References: {refs}")
        lines.append(f"Available tools: {', '.join(catalogue.names)}")
        return "\n".join(lines)

    async def classify(
        self,
        interpretation: Interpretation,
        user_message: str,
        catalogue: ToolCatalogue,
        recorder: CallRecorder,
    ) -> IntentClassification:
        """Classify *user_message*; never raises for model or parsing failures."""
        if not user_message.strip():
            return IntentClassification(
                requires_tools=False, confidence=1.0, detected_intent="empty_message"
            )
        if len(catalogue) == 0:
            logger.info("No tools available to this agent; skipping tool loop")
            return IntentClassification(
                requires_tools=False,
                confidence=1.0,
                detected_intent="no_tools_available",
                reasoning="The agent has no tools, so the tool loop cannot succeed.",
            )

        messages = [
            Message.system(self.SYSTEM_PROMPT),
            Message.system(self._context_note(interpretation, catalogue)),
            Message.user(f'Classify this message: "{user_message[: self.MAX_MESSAGE_CHARS]}"'),
        ]
        try:
            reply = await invoke_model(
                self._client,
                recorder,
                CallStage.INTENT_CLASSIFICATION,
                "Decide whether the message requires tool use",
                messages,
                temperature=0.3,
                max_tokens=150,
                json_mode=True,
            )
        except ProviderError as exc:
            logger.error("Classification failed: %s", exc)
            return self._safe_fallback("classification_error", f"Classification failed: {exc}")

        try:
            parsed = parse_json_reply(reply.text)
        except ValueError as exc:
            logger.warning("Classifier returned malformed output: %s", exc)
            return self._safe_fallback("parse_error", f"Malformed classifier output: {exc}")

        requires_tools = parsed.get("requiresTools")
        if not isinstance(requires_tools, bool):
            logger.warning("Invalid classifier response structure, defaulting to safe fallback")
            return self._safe_fallback("invalid_response", "requiresTools was not a boolean")

        reasoning = str(parsed.get("reasoning") or "")
        classification = IntentClassification(
            requires_tools=requires_tools,
            confidence=coerce_confidence(parsed.get("confidence")),
            detected_intent=str(parsed.get("intent") or reasoning or "unknown")[:120],
            reasoning=reasoning,
            usage=reply.usage,
        )
        logger.info(
            "Intent classified: requires_tools=%s confidence=%.2f intent=%s",
            classification.requires_tools,
            classification.confidence,
            classification.detected_intent,
        )
        return classification
