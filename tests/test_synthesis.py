"""Tests for the tools-disabled synthesis call."""

import pytest

from parley.agent.model_interface import ProviderError
from parley.agent.recorder import CallRecorder
from parley.agent.synthesis import (
    FALLBACK_REPLY,
    SynthesisCaller,
    tool_outcome_digest,
)
from parley.agent.transcript import ensure_synthesis_safe
from parley.core.schema import (
    CallStage,
    Message,
    Role,
)
from tests.helpers import (
    ScriptedModelClient,
    call,
    text_reply,
)

WORKING = [
    Message.system("be helpful"),
    Message.user("what's 2+2 and email it to bob@x.com"),
    Message.assistant(None, [call("c1", "calculate"), call("c2", "send_email")]),
    Message.tool("c1", '{"success": true, "result": 4}'),
    Message.tool("c2", '{"success": false, "error": {"kind": "timeout", "message": "slow smtp"}}'),
]


def test_digest_summarises_each_tool_outcome() -> None:
    assert tool_outcome_digest(WORKING) == [
        "- calculate: SUCCEEDED: 4",
        "- send_email: FAILED (timeout): slow smtp",
    ]
    assert tool_outcome_digest(WORKING[:2]) == []


@pytest.mark.asyncio
async def test_synthesis_uses_sanitised_transcript_without_tools() -> None:
    client = ScriptedModelClient([text_reply("  2+2 is 4, but the email failed.  ")])
    recorder = CallRecorder()
    result = await SynthesisCaller(client).synthesize(WORKING, recorder)

    assert result.text == "2+2 is 4, but the email failed."
    assert result.usage.total_tokens == 15

    sent = client.calls[0]
    ensure_synthesis_safe(sent["messages"])
    assert sent["tools"] == []
    assert sent["tool_choice"] is None
    assert sent["temperature"] == 0.5
    assert [m.role for m in sent["messages"]] == [Role.SYSTEM, Role.USER, Role.SYSTEM]
    assert "send_email: FAILED (timeout)" in sent["messages"][-1].content
    assert recorder.ledger()[0].stage is CallStage.SYNTHESIS_CALL
    # the working transcript is left alone
    assert WORKING[2].tool_calls


@pytest.mark.asyncio
async def test_empty_reply_uses_fallback_text() -> None:
    client = ScriptedModelClient([text_reply(None)])
    result = await SynthesisCaller(client).synthesize(WORKING, CallRecorder())
    assert result.text == FALLBACK_REPLY


@pytest.mark.asyncio
async def test_provider_error_propagates() -> None:
    client = ScriptedModelClient([ProviderError("down")])
    with pytest.raises(ProviderError):
        await SynthesisCaller(client).synthesize(WORKING, CallRecorder())
