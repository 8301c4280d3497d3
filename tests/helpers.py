"""Shared test helpers and stub classes.

Import from here instead of duplicating these classes in individual test files:

    from tests.helpers import ScriptedModelClient, FakeToolService, text_reply
"""

from __future__ import annotations

import asyncio
import json
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
)

from parley.agent.model_interface import BaseModelClient
from parley.core.schema import (
    AuthContext,
    Message,
    ModelReply,
    ToolCallRequest,
    ToolChoice,
    Usage,
)
from parley.tools import (
    ToolCatalogue,
    ToolSpec,
)
from parley.tools.services import (
    ToolError,
    ToolService,
)


def usage(prompt: int = 10, completion: int = 5) -> Usage:
    return Usage(
        prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion
    )


def text_reply(text: Optional[str], tokens: Tuple[int, int] = (10, 5)) -> ModelReply:
    """A plain-text model reply."""
    return ModelReply(text=text, usage=usage(*tokens), model="scripted")


def json_reply(payload: Mapping[str, Any]) -> ModelReply:
    """A reply whose text is *payload* encoded as JSON."""
    return text_reply(json.dumps(payload))


def call(call_id: str, name: str, **arguments: Any) -> ToolCallRequest:
    return ToolCallRequest(id=call_id, name=name, arguments=arguments)


def tool_reply(*calls: ToolCallRequest, text: Optional[str] = None) -> ModelReply:
    """A reply requesting *calls*."""
    return ModelReply(text=text, tool_calls=list(calls), usage=usage(), model="scripted")


def catalogue(*names: str) -> ToolCatalogue:
    return ToolCatalogue(ToolSpec(name=name, description=f"{name} tool") for name in names)


class ScriptedModelClient(BaseModelClient):
    """Model client stub that replays scripted replies and remembers what it was sent.

    Each script entry is a :class:`ModelReply`, an exception instance to raise, or a coroutine
    function taking the messages and returning a reply.
    """

    model = "scripted"

    def __init__(self, replies: Iterable[Any] = ()) -> None:
        super().__init__()
        self._replies: List[Any] = list(replies)
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    def add(self, *replies: Any) -> None:
        self._replies.extend(replies)

    @property
    def remaining(self) -> int:
        return len(self._replies)

    async def call(
        self,
        messages: Sequence[Message],
        tools: Sequence[ToolSpec] = (),
        tool_choice: ToolChoice | None = None,
        temperature: float = 0.7,
        max_tokens: int = 1200,
        json_mode: bool = False,
    ) -> ModelReply:
        self.calls.append(
            {
                "messages": list(messages),
                "tools": [tool.name for tool in tools],
                "tool_choice": tool_choice,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "json_mode": json_mode,
            }
        )
        if not self._replies:
            raise AssertionError("unexpected model call: script exhausted")
        reply = self._replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            return await reply(messages)
        return reply

    async def aclose(self) -> None:
        self.closed = True


class FakeToolService(ToolService):
    """In-memory tool service.

    *tools* maps a tool name to either a callable (called with the arguments) or a fixed result.
    *delays* adds an ``asyncio.sleep`` before a tool answers; *failures* raises a ToolError.
    """

    def __init__(
        self,
        tools: Optional[Mapping[str, Any]] = None,
        delays: Optional[Mapping[str, float]] = None,
        failures: Optional[Mapping[str, ToolError]] = None,
        listing_error: Optional[ToolError] = None,
        on_invoke: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._tools = dict(tools or {})
        self._delays = dict(delays or {})
        self._failures = dict(failures or {})
        self._listing_error = listing_error
        self._on_invoke = on_invoke
        self.invocations: List[Tuple[str, Dict[str, Any], AuthContext, str]] = []
        self.listings: List[Tuple[str, AuthContext]] = []
        self.completed: List[str] = []

    async def list_tools(self, agent_id: str, auth: AuthContext) -> List[ToolSpec]:
        self.listings.append((agent_id, auth))
        if self._listing_error is not None:
            raise self._listing_error
        return [ToolSpec(name=name, description=f"{name} tool") for name in self._tools]

    async def invoke(
        self, tool_name: str, args: Mapping[str, Any], auth: AuthContext, agent_id: str
    ) -> Any:
        self.invocations.append((tool_name, dict(args), auth, agent_id))
        if self._on_invoke is not None:
            self._on_invoke(tool_name)
        delay = self._delays.get(tool_name)
        if delay:
            await asyncio.sleep(delay)
        if tool_name in self._failures:
            raise self._failures[tool_name]
        handler = self._tools[tool_name]
        result = handler(**args) if callable(handler) else handler
        self.completed.append(tool_name)
        return result

    @property
    def invoked_names(self) -> List[str]:
        return [name for name, _, _, _ in self.invocations]
