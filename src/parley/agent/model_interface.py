"""
Model interface for Parley.

This module is the only place that *directly* calls an LLM.  Everything else (interpreter,
classifier, orchestrator, synthesis) stays model-agnostic and talks to a :class:`BaseModelClient`
through :func:`invoke_model`, which also feeds the request's :class:`CallRecorder`.

We support three back-ends out of the box:

1. **OpenAI** chat completions (requires ``OPENAI_API_KEY``).
2. **Anthropic** messages API (requires ``ANTHROPIC_API_KEY``).
3. **Hugging Face Text-Generation-Inference (TGI)** through its OpenAI-compatible route.

Additional providers can be added by subclassing :class:`BaseModelClient` and registering via
:func:`register_model_client`.
"""

import asyncio
import json
import logging
import re
import time
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Type,
)

import httpx

from parley.agent.recorder import CallRecorder
from parley.config import settings
from parley.core.schema import (
    CallStage,
    Message,
    ModelReply,
    Role,
    ToolCallRequest,
    ToolChoice,
    Usage,
)
from parley.tools import ToolSpec

logger = logging.getLogger(__name__)


class ProviderError(RuntimeError):
    """Raised when the model API is unreachable or rejects a request."""


# ---------------------------------------------------------------------------
# Registry helpers
# ---------------------------------------------------------------------------
_CLIENT_REGISTRY: dict[str, Type["BaseModelClient"]] = {}


def register_model_client(name: str) -> Callable:
    """Decorator to register a model client class under *name*."""

    def wrapper(cls: Type["BaseModelClient"]) -> Type["BaseModelClient"]:
        _CLIENT_REGISTRY[name] = cls
        return cls

    return wrapper


def load_model_client(name: str | None = None, utility: bool = False) -> "BaseModelClient":
    """
    Factory that returns an instantiated model client.

    Fallback order:
    1. *name* arg
    2. ``settings.MODEL_PROVIDER`` env option
    3. default: ``"openai"``

    *utility* selects the provider's cheaper model, used for interpretation and classification.
    """

    target = name or getattr(settings, "MODEL_PROVIDER", "openai")
    cls = _CLIENT_REGISTRY.get(target.lower())
    if cls is None:
        raise ValueError(f"Model client '{target}' is not registered.")
    return cls(utility=utility)


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------
class BaseModelClient(ABC):
    """Abstract chat model that may request tool calls."""

    model: str = "unknown"

    def __init__(self, utility: bool = False) -> None:
        self.utility = utility

    @abstractmethod
    async def call(
        self,
        messages: Sequence[Message],
        tools: Sequence[ToolSpec] = (),
        tool_choice: ToolChoice | None = None,
        temperature: float = 0.7,
        max_tokens: int = 1200,
        json_mode: bool = False,
    ) -> ModelReply:
        """Send *messages* and return the normalised reply, or raise :class:`ProviderError`."""

    async def aclose(self) -> None:
        """Release any network resources."""


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------
def decode_arguments(raw: Any) -> Tuple[Dict[str, Any], Optional[str]]:
    """Decode a tool-call argument payload into a dict, returning an error string on failure."""
    if raw is None or raw == "":
        return {}, None
    if isinstance(raw, dict):
        return raw, None
    try:
        decoded = json.loads(raw)
    except (TypeError, ValueError) as exc:
        return {}, f"Arguments are not valid JSON: {exc}"
    if not isinstance(decoded, dict):
        return {}, "Arguments must be a JSON object"
    return decoded, None


def extract_json_object(content: str) -> str:
    """Clean up JSON strings returned by LLMs."""
    # Strip markdown code blocks if present
    if "```" in content:
        match = re.search(r"```(?:json)?\s*(.+?)```", content, re.DOTALL)
        if match:
            content = match.group(1).strip()

    # Remove control characters except whitespace
    content = "".join(ch for ch in content if ch >= " " or ch in "\n\r\t")

    # Find the outermost matching braces
    open_idx = content.find("{")
    if open_idx >= 0:
        brace_count = 0
        for i in range(open_idx, len(content)):
            if content[i] == "{":
                brace_count += 1
            elif content[i] == "}":
                brace_count -= 1
                if brace_count == 0:
                    return content[open_idx : i + 1]
    return content


def parse_json_reply(text: str | None) -> Dict[str, Any]:
    """Parse a JSON-object reply, raising ``ValueError`` when it is not one."""
    if not text:
        raise ValueError("empty model response")
    parsed = json.loads(extract_json_object(text))
    if not isinstance(parsed, dict):
        raise ValueError("model response is not a JSON object")
    return parsed


def to_openai_messages(messages: Sequence[Message]) -> List[Dict[str, Any]]:
    """Convert transcript messages to the chat-completions wire format."""
    out: List[Dict[str, Any]] = []
    for message in messages:
        entry: Dict[str, Any] = {"role": message.role.value, "content": message.content}
        if message.tool_calls:
            entry["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                }
                for call in message.tool_calls
            ]
        if message.tool_call_id is not None:
            entry["tool_call_id"] = message.tool_call_id
        out.append(entry)
    return out


def to_openai_tools(tools: Sequence[ToolSpec]) -> List[Dict[str, Any]]:
    """Convert tool specs to chat-completions function definitions."""
    return [
        {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters,
            },
        }
        for tool in tools
    ]


def reply_from_openai(data: Mapping[str, Any]) -> ModelReply:
    """Build a :class:`ModelReply` from a chat-completions response body."""
    choices = data.get("choices") or []
    if not choices:
        raise ProviderError("Model response contained no choices")
    message = choices[0].get("message") or {}

    calls: List[ToolCallRequest] = []
    for raw_call in message.get("tool_calls") or []:
        function = raw_call.get("function") or {}
        arguments, error = decode_arguments(function.get("arguments"))
        calls.append(
            ToolCallRequest(
                id=raw_call.get("id") or f"call_{len(calls)}",
                name=function.get("name") or "",
                arguments=arguments,
                arguments_error=error,
            )
        )

    usage = data.get("usage") or {}
    return ModelReply(
        text=message.get("content"),
        tool_calls=calls,
        usage=Usage(
            prompt_tokens=usage.get("prompt_tokens") or 0,
            completion_tokens=usage.get("completion_tokens") or 0,
            total_tokens=usage.get("total_tokens") or 0,
        ),
        model=data.get("model"),
    )


def _chat_payload(
    model: str,
    messages: Sequence[Message],
    tools: Sequence[ToolSpec],
    tool_choice: ToolChoice | None,
    temperature: float,
    max_tokens: int,
    json_mode: bool,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "model": model,
        "messages": to_openai_messages(messages),
        "temperature": temperature,
        "max_tokens": max_tokens,
    }
    if tools:
        payload["tools"] = to_openai_tools(tools)
        if tool_choice is not None:
            payload["tool_choice"] = tool_choice.value
    if json_mode:
        payload["response_format"] = {"type": "json_object"}
    return payload


# ---------------------------------------------------------------------------
# Concrete clients
# ---------------------------------------------------------------------------
@register_model_client("openai")
class OpenAIModelClient(BaseModelClient):
    """OpenAI chat-completions client."""

    def __init__(self, utility: bool = False) -> None:
        super().__init__(utility)
        import openai  # pylint: disable=import-outside-toplevel

        self.model = settings.OPENAI_UTILITY_MODEL if utility else settings.OPENAI_MODEL
        self._client = openai.AsyncOpenAI(api_key=settings.OPENAI_API_KEY)

    async def call(
        self,
        messages: Sequence[Message],
        tools: Sequence[ToolSpec] = (),
        tool_choice: ToolChoice | None = None,
        temperature: float = 0.7,
        max_tokens: int = 1200,
        json_mode: bool = False,
    ) -> ModelReply:
        import openai  # pylint: disable=import-outside-toplevel

        payload = _chat_payload(
            self.model, messages, tools, tool_choice, temperature, max_tokens, json_mode
        )
        try:
            resp = await self._client.chat.completions.create(**payload)
        except openai.OpenAIError as e:
            logger.error("OpenAI request error: %s", str(e))
            raise ProviderError(f"Error calling OpenAI: {e}") from e
        return reply_from_openai(resp.model_dump())

    async def aclose(self) -> None:
        await self._client.close()


@register_model_client("tgi")
class TGIModelClient(BaseModelClient):
    """TGI client using its OpenAI-compatible ``/v1/chat/completions`` route."""

    model = "tgi"

    def __init__(self, utility: bool = False) -> None:
        super().__init__(utility)
        endpoint = getattr(settings, "TGI_ENDPOINT", "http://tgi:8080")
        self._client = httpx.AsyncClient(base_url=endpoint, timeout=settings.MODEL_TIMEOUT_SECONDS)

    async def call(
        self,
        messages: Sequence[Message],
        tools: Sequence[ToolSpec] = (),
        tool_choice: ToolChoice | None = None,
        temperature: float = 0.7,
        max_tokens: int = 1200,
        json_mode: bool = False,
    ) -> ModelReply:
        payload = _chat_payload(
            self.model, messages, tools, tool_choice, temperature, max_tokens, json_mode=False
        )
        if json_mode:
            payload["response_format"] = {"type": "json", "value": {"type": "object"}}
        try:
            resp = await self._client.post("/v1/chat/completions", json=payload)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as e:
            logger.error("TGI request error: %s", str(e))
            raise ProviderError(f"Error calling TGI endpoint: {e}") from e
        except ValueError as e:
            raise ProviderError(f"Error processing TGI response: {e}") from e

        logger.debug("TGI response: %s", data)
        return reply_from_openai(data)

    async def aclose(self) -> None:
        await self._client.aclose()


@register_model_client("anthropic")
class AnthropicModelClient(BaseModelClient):
    """Anthropic Claude client; translates tool calls to ``tool_use`` / ``tool_result`` blocks."""

    _TOOL_CHOICES: Mapping[ToolChoice, Dict[str, str]] = {
        ToolChoice.AUTO: {"type": "auto"},
        ToolChoice.REQUIRED: {"type": "any"},
        ToolChoice.NONE: {"type": "none"},
    }

    def __init__(self, utility: bool = False) -> None:
        super().__init__(utility)
        import anthropic  # pylint: disable=import-outside-toplevel

        self.model = settings.ANTHROPIC_UTILITY_MODEL if utility else settings.ANTHROPIC_MODEL
        self._client = anthropic.AsyncAnthropic(api_key=settings.ANTHROPIC_API_KEY)

    @staticmethod
    def _convert(messages: Sequence[Message]) -> Tuple[str, List[Dict[str, Any]]]:
        system_parts: List[str] = []
        converted: List[Dict[str, Any]] = []

        for message in messages:
            if message.role is Role.SYSTEM:
                if message.content:
                    system_parts.append(message.content)
                continue

            blocks: List[Dict[str, Any]] = []
            if message.role is Role.TOOL:
                role = "user"
                blocks.append(
                    {
                        "type": "tool_result",
                        "tool_use_id": message.tool_call_id,
                        "content": message.content or "",
                    }
                )
            else:
                role = message.role.value
                if message.content:
                    blocks.append({"type": "text", "text": message.content})
                for call in message.tool_calls:
                    blocks.append(
                        {
                            "type": "tool_use",
                            "id": call.id,
                            "name": call.name,
                            "input": call.arguments,
                        }
                    )
            if not blocks:
                continue

            # The messages API requires alternating roles; merge neighbours.
            if converted and converted[-1]["role"] == role:
                converted[-1]["content"].extend(blocks)
            else:
                converted.append({"role": role, "content": blocks})

        return "\n\n".join(system_parts), converted

    async def call(
        self,
        messages: Sequence[Message],
        tools: Sequence[ToolSpec] = (),
        tool_choice: ToolChoice | None = None,
        temperature: float = 0.7,
        max_tokens: int = 1200,
        json_mode: bool = False,
    ) -> ModelReply:
        import anthropic  # pylint: disable=import-outside-toplevel

        system, converted = self._convert(messages)
        if json_mode:
            system += "\n\nRespond with a single JSON object only, no extra text."

        kwargs: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "messages": converted,
            "temperature": temperature,
        }
        if system:
            kwargs["system"] = system.strip()
        if tools:
            kwargs["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.parameters}
                for t in tools
            ]
            if tool_choice is not None:
                kwargs["tool_choice"] = self._TOOL_CHOICES[tool_choice]

        try:
            response = await self._client.messages.create(**kwargs)
        except anthropic.AnthropicError as e:
            logger.error("Anthropic request error: %s", str(e))
            raise ProviderError(f"Error calling Anthropic: {e}") from e

        texts: List[str] = []
        calls: List[ToolCallRequest] = []
        for block in response.content:
            if block.type == "text":
                texts.append(block.text)
            elif block.type == "tool_use":
                arguments, error = decode_arguments(block.input)
                calls.append(
                    ToolCallRequest(
                        id=block.id, name=block.name, arguments=arguments, arguments_error=error
                    )
                )

        prompt_tokens = response.usage.input_tokens
        completion_tokens = response.usage.output_tokens
        return ModelReply(
            text="".join(texts) or None,
            tool_calls=calls,
            usage=Usage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
            model=response.model,
        )

    async def aclose(self) -> None:
        await self._client.close()


# ---------------------------------------------------------------------------
# Recorded invocation
# ---------------------------------------------------------------------------
async def invoke_model(
    client: BaseModelClient,
    recorder: CallRecorder,
    stage: CallStage,
    description: str,
    messages: Sequence[Message],
    tools: Sequence[ToolSpec] = (),
    tool_choice: ToolChoice | None = None,
    temperature: float = 0.7,
    max_tokens: int = 1200,
    json_mode: bool = False,
    timeout: float | None = None,
) -> ModelReply:
    """
    Call *client* under a timeout and append an :class:`LLMCallRecord` to *recorder*.

    The record is written whether the call succeeds or fails.  Every failure, including a
    timeout, surfaces as :class:`ProviderError`.
    """
    if timeout is None:
        timeout = settings.MODEL_TIMEOUT_SECONDS
    request: Dict[str, Any] = {
        "model": client.model,
        "messages": [m.model_dump(mode="json", exclude_defaults=True) for m in messages],
        "tools": [tool.name for tool in tools],
        "tool_choice": tool_choice.value if tool_choice is not None else None,
        "temperature": temperature,
        "max_tokens": max_tokens,
        "json_mode": json_mode,
    }

    start = time.perf_counter()
    try:
        reply = await asyncio.wait_for(
            client.call(
                messages,
                tools=tools,
                tool_choice=tool_choice,
                temperature=temperature,
                max_tokens=max_tokens,
                json_mode=json_mode,
            ),
            timeout=timeout,
        )
    except asyncio.TimeoutError as exc:
        error: ProviderError = ProviderError(f"Model call timed out after {timeout}s")
        recorder.record(
            stage, description, request, {"error": str(error)}, (time.perf_counter() - start) * 1000
        )
        raise error from exc
    except ProviderError as exc:
        recorder.record(
            stage, description, request, {"error": str(exc)}, (time.perf_counter() - start) * 1000
        )
        raise
    except Exception as exc:  # pylint: disable=broad-except
        logger.exception("Unexpected model client failure during %s", stage.value)
        recorder.record(
            stage, description, request, {"error": str(exc)}, (time.perf_counter() - start) * 1000
        )
        raise ProviderError(f"Unexpected model client failure: {exc}") from exc

    recorder.record(
        stage,
        description,
        request,
        {
            "content": reply.text,
            "tool_calls": [call.model_dump() for call in reply.tool_calls],
            "usage": reply.usage.model_dump(),
            "model": reply.model,
        },
        (time.perf_counter() - start) * 1000,
    )
    return reply
