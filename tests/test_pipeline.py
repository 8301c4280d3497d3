"""End-to-end tests of the chat pipeline with scripted models and a fake tool service."""

import asyncio
import json

import pytest

from parley.agent.agent_loop import RequestAbandoned
from parley.agent.model_interface import ProviderError
from parley.agent.pipeline import (
    APOLOGY_REPLY,
    ChatPipeline,
    RequestContext,
)
from parley.agent.transcript import find_pairing_violations
from parley.api.models import ChatRequest
from parley.core.schema import (
    AuthContext,
    CallStage,
    Message,
    Role,
)
from parley.tools.services import LocalToolService
from tests.helpers import (
    FakeToolService,
    ScriptedModelClient,
    call,
    catalogue,
    json_reply,
    text_reply,
    tool_reply,
)

AUTH = AuthContext(authorization="Bearer user-token")


def _interpretation(meaning: str) -> dict:
    return {"interpretedMeaning": meaning, "userIntent": "task", "confidence": 0.9}


def _classification(requires_tools: bool) -> dict:
    return {"requiresTools": requires_tools, "confidence": 0.9, "intent": "task", "reasoning": "r"}


def _context(*tool_names: str) -> RequestContext:
    return RequestContext(auth=AUTH, agent_id="agent-1", catalogue=catalogue(*tool_names))


def _request(message: str, history=()) -> ChatRequest:
    return ChatRequest(
        conversation_id="conv-1",
        agent_id="agent-1",
        user_message=message,
        recent_history=list(history),
    )


@pytest.mark.asyncio
async def test_scenario_calculate_and_email() -> None:
    """Two successful tool calls, then synthesis: exactly four ledger records."""
    message = "what's 2+2 and email it to bob@x.com"
    utility = ScriptedModelClient(
        [json_reply(_interpretation(message)), json_reply(_classification(True))]
    )
    chat = ScriptedModelClient(
        [
            tool_reply(
                call("c1", "calculate", expression="2+2"),
                call("c2", "send_email", to="bob@x.com", body="4"),
            ),
            text_reply("2+2 is 4, and I've emailed it to bob@x.com."),
        ]
    )
    service = FakeToolService(
        {"calculate": lambda expression: 4, "send_email": {"status": "sent"}}
    )
    pipeline = ChatPipeline(chat, service, utility_client=utility)

    response = await pipeline.run(_request(message), _context("calculate", "send_email"))

    assert response.reply_text == "2+2 is 4, and I've emailed it to bob@x.com."
    assert [e.stage for e in response.debug_ledger] == [
        CallStage.CONTEXTUAL_INTERPRETATION,
        CallStage.INTENT_CLASSIFICATION,
        CallStage.TOOL_ENABLED_CALL,
        CallStage.SYNTHESIS_CALL,
    ]
    assert response.usage.total_tokens == 4 * 15
    assert response.degraded is False
    assert response.conversation_id == "conv-1"
    assert service.invoked_names == ["calculate", "send_email"]
    assert all(auth == AUTH for _, _, auth, _ in service.invocations)

    synthesis_messages = chat.calls[1]["messages"]
    assert all(m.role is not Role.TOOL and not m.tool_calls for m in synthesis_messages)
    assert "send_email: SUCCEEDED" in synthesis_messages[-1].content


@pytest.mark.asyncio
async def test_scenario_tool_timeout() -> None:
    """A timed-out tool is reported to the model, which answers without retrying it."""
    utility = ScriptedModelClient(
        [json_reply(_interpretation("email bob")), json_reply(_classification(True))]
    )
    chat = ScriptedModelClient(
        [
            tool_reply(call("c1", "send_email", to="bob")),
            text_reply("The email service timed out."),
            text_reply("Sorry, I couldn't send the email because the service timed out."),
        ]
    )
    service = FakeToolService({"send_email": "sent"}, delays={"send_email": 1.0})
    pipeline = ChatPipeline(chat, service, utility_client=utility, tool_timeout=0.05)

    response = await pipeline.run(_request("email bob"), _context("send_email"))

    assert "timed out" in response.reply_text
    retry_messages = chat.calls[1]["messages"]
    assert find_pairing_violations(retry_messages) == []
    failed = json.loads(retry_messages[-1].content)
    assert failed["success"] is False
    assert failed["error"]["kind"] == "timeout"
    assert [e.stage for e in response.debug_ledger][-1] is CallStage.SYNTHESIS_CALL
    assert len(response.debug_ledger) == 5


@pytest.mark.asyncio
async def test_scenario_tool_name_correction() -> None:
    utility = ScriptedModelClient(
        [json_reply(_interpretation("email bob")), json_reply(_classification(True))]
    )
    chat = ScriptedModelClient(
        [tool_reply(call("c1", "gmail_send_message", to="bob")), text_reply("Sent!")]
    )
    service = FakeToolService({"send_email": {"status": "sent"}})
    pipeline = ChatPipeline(chat, service, utility_client=utility)

    response = await pipeline.run(_request("email bob"), _context("send_email"))

    assert response.reply_text == "Sent!"
    assert service.invoked_names == ["send_email"]
    assert len(response.debug_ledger) == 4


@pytest.mark.asyncio
async def test_conversational_message_skips_tool_loop() -> None:
    utility = ScriptedModelClient(
        [json_reply(_interpretation("hello")), json_reply(_classification(False))]
    )
    chat = ScriptedModelClient([text_reply("Hi there!")])
    pipeline = ChatPipeline(chat, FakeToolService(), utility_client=utility)

    response = await pipeline.run(_request("hello"), _context("send_email"))

    assert response.reply_text == "Hi there!"
    assert [e.stage for e in response.debug_ledger] == [
        CallStage.CONTEXTUAL_INTERPRETATION,
        CallStage.INTENT_CLASSIFICATION,
        CallStage.SYNTHESIS_CALL,
    ]


@pytest.mark.asyncio
async def test_interpretation_and_history_reach_the_model() -> None:
    history = [
        Message.user("draft a note to Bob"),
        Message.assistant(None, [call("old", "echo")]),
        Message.tool("old", "{}"),
        Message.assistant("Draft: hi Bob"),
    ]
    utility = ScriptedModelClient(
        [
            json_reply(
                {
                    "interpretedMeaning": "send the drafted note to Bob",
                    "confidence": "high",
                    "resolvedReferences": {"it": "the drafted note"},
                }
            ),
            json_reply(_classification(False)),
        ]
    )
    chat = ScriptedModelClient([text_reply("Done.")])
    pipeline = ChatPipeline(chat, FakeToolService(), utility_client=utility)

    await pipeline.run(_request("send it", history), _context("echo"))

    sent = chat.calls[0]["messages"]
    assert "send the drafted note to Bob" in sent[1].content
    assert [m.content for m in sent if m.role in (Role.USER, Role.ASSISTANT)] == [
        "draft a note to Bob",
        "Draft: hi Bob",
        "send it",
    ]


@pytest.mark.asyncio
async def test_exhausted_budget_still_produces_reply() -> None:
    utility = ScriptedModelClient(
        [json_reply(_interpretation("x")), json_reply(_classification(True))]
    )
    chat = ScriptedModelClient(
        [tool_reply(call(f"c{i}", "forbidden")) for i in range(3)] + [text_reply("I couldn't.")]
    )
    pipeline = ChatPipeline(chat, FakeToolService(), utility_client=utility, max_attempts=3)

    response = await pipeline.run(_request("x"), _context("echo"))

    assert response.reply_text == "I couldn't."
    stages = [e.stage for e in response.debug_ledger]
    assert stages.count(CallStage.TOOL_ENABLED_CALL) == 3
    assert stages[-1] is CallStage.SYNTHESIS_CALL


@pytest.mark.asyncio
async def test_synthesis_failure_gives_apologetic_reply() -> None:
    utility = ScriptedModelClient([ProviderError("down")])
    chat = ScriptedModelClient([ProviderError("down")])
    pipeline = ChatPipeline(chat, FakeToolService(), utility_client=utility)

    response = await pipeline.run(_request("hello"), _context())

    assert response.reply_text == APOLOGY_REPLY
    assert response.degraded is True
    assert [e.stage for e in response.debug_ledger] == [
        CallStage.CONTEXTUAL_INTERPRETATION,
        CallStage.SYNTHESIS_CALL,
    ]
    assert all("error" in e.response for e in response.debug_ledger)


@pytest.mark.asyncio
async def test_direct_answer_reuse_skips_synthesis() -> None:
    utility = ScriptedModelClient(
        [json_reply(_interpretation("hi")), json_reply(_classification(True))]
    )
    chat = ScriptedModelClient([text_reply("Direct answer.")])
    pipeline = ChatPipeline(
        chat, FakeToolService(), utility_client=utility, reuse_direct_answer=True
    )

    response = await pipeline.run(_request("hi"), _context("echo"))

    assert response.reply_text == "Direct answer."
    assert CallStage.SYNTHESIS_CALL not in [e.stage for e in response.debug_ledger]


@pytest.mark.asyncio
async def test_direct_answer_is_resynthesised_by_default() -> None:
    utility = ScriptedModelClient(
        [json_reply(_interpretation("hi")), json_reply(_classification(True))]
    )
    chat = ScriptedModelClient([text_reply("Direct answer."), text_reply("Synthesised answer.")])
    pipeline = ChatPipeline(chat, FakeToolService(), utility_client=utility)

    response = await pipeline.run(_request("hi"), _context("echo"))

    assert response.reply_text == "Synthesised answer."
    assert "Direct answer." not in [m.content for m in chat.calls[1]["messages"]]


@pytest.mark.asyncio
async def test_abandoned_request_is_not_answered() -> None:
    utility = ScriptedModelClient(
        [json_reply(_interpretation("hi")), json_reply(_classification(False))]
    )
    chat = ScriptedModelClient([text_reply("unused")])
    context = _context("echo")
    context.cancelled.set()
    pipeline = ChatPipeline(chat, FakeToolService(), utility_client=utility)

    with pytest.raises(RequestAbandoned):
        await pipeline.run(_request("hi"), context)
    assert chat.calls == []


@pytest.mark.asyncio
async def test_concurrent_requests_keep_separate_ledgers() -> None:
    def build():
        utility = ScriptedModelClient(
            [json_reply(_interpretation("hi")), json_reply(_classification(False))]
        )
        chat = ScriptedModelClient([text_reply("hello")])
        return ChatPipeline(chat, FakeToolService(), utility_client=utility)

    first, second = await asyncio.gather(
        build().run(_request("hi"), _context("echo")),
        build().run(_request("hi"), _context("echo")),
    )
    assert len(first.debug_ledger) == 3
    assert len(second.debug_ledger) == 3


@pytest.mark.asyncio
async def test_oversized_calculation_is_a_tool_failure_not_a_request_failure() -> None:
    utility = ScriptedModelClient(
        [json_reply(_interpretation("big number")), json_reply(_classification(True))]
    )
    chat = ScriptedModelClient(
        [
            tool_reply(call("c1", "calculate", expression="(9**100)**100")),
            text_reply("That number is too large to compute."),
            text_reply("Sorry, that result is too large for me to compute."),
        ]
    )
    pipeline = ChatPipeline(chat, LocalToolService(), utility_client=utility)

    response = await pipeline.run(_request("what is (9**100)**100?"), _context("calculate"))

    assert response.reply_text == "Sorry, that result is too large for me to compute."
    assert response.reply_text != APOLOGY_REPLY
    assert [e.stage for e in response.debug_ledger] == [
        CallStage.CONTEXTUAL_INTERPRETATION,
        CallStage.INTENT_CLASSIFICATION,
        CallStage.TOOL_ENABLED_CALL,
        CallStage.TOOL_ENABLED_CALL,
        CallStage.SYNTHESIS_CALL,
    ]
    assert json.loads(chat.calls[1]["messages"][-1].content)["error"]["kind"] == "upstream"
