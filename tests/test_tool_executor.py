"""
Tests for the tool invoker: catalogue checks, name corrections, timeouts and ordering.

Run with:
$ pytest -q
"""

import pytest

from parley.agent.tool_executor import ToolInvoker
from parley.core.schema import (
    AuthContext,
    ToolCallRequest,
    ToolErrorKind,
)
from parley.tools import TOOL_NAME_CORRECTIONS
from parley.tools.services import ToolError
from tests.helpers import (
    FakeToolService,
    call,
    catalogue,
)

AUTH = AuthContext(authorization="Bearer secret-token", user_id="user-1")


def _invoker(service: FakeToolService, *names: str, **kwargs) -> ToolInvoker:
    return ToolInvoker(service, catalogue(*names), AUTH, "agent-1", **kwargs)


@pytest.mark.asyncio
async def test_invoke_success_forwards_auth_unchanged() -> None:
    service = FakeToolService({"calculate": lambda expression: 4})
    result = await _invoker(service, "calculate").invoke(call("c1", "calculate", expression="2+2"))

    assert result.success is True
    assert result.payload == 4
    assert result.call_id == "c1"
    assert service.invocations == [("calculate", {"expression": "2+2"}, AUTH, "agent-1")]


@pytest.mark.asyncio
async def test_known_alias_is_corrected_before_dispatch() -> None:
    """gmail_send_message is dispatched as send_email without surfacing an error."""
    service = FakeToolService({"send_email": {"status": "sent"}})
    result = await _invoker(service, "send_email").invoke(
        call("c1", "gmail_send_message", to="bob@x.com")
    )

    assert result.success is True
    assert result.tool_name == "send_email"
    assert service.invoked_names == ["send_email"]


@pytest.mark.asyncio
async def test_tool_outside_catalogue_is_denied() -> None:
    service = FakeToolService({"delete_everything": True})
    result = await _invoker(service, "echo").invoke(call("c1", "delete_everything"))

    assert result.success is False
    assert result.error.kind is ToolErrorKind.PERMISSION_DENIED
    assert service.invocations == []


@pytest.mark.asyncio
async def test_alias_is_not_used_when_target_not_permitted() -> None:
    service = FakeToolService({"send_email": "sent"})
    result = await _invoker(service, "echo").invoke(call("c1", "gmail_send"))

    assert result.error.kind is ToolErrorKind.PERMISSION_DENIED
    assert service.invocations == []


@pytest.mark.asyncio
async def test_timeout_becomes_failed_result() -> None:
    service = FakeToolService({"slow": "late"}, delays={"slow": 1.0})
    result = await _invoker(service, "slow", timeout=0.05).invoke(call("c1", "slow"))

    assert result.success is False
    assert result.error.kind is ToolErrorKind.TIMEOUT


@pytest.mark.asyncio
async def test_tool_error_kind_is_preserved() -> None:
    service = FakeToolService(
        {"search_emails": None},
        failures={"search_emails": ToolError(ToolErrorKind.UPSTREAM, "mail server down")},
    )
    result = await _invoker(service, "search_emails").invoke(call("c1", "search_emails"))

    assert result.error.kind is ToolErrorKind.UPSTREAM
    assert "mail server down" in result.error.message


@pytest.mark.asyncio
async def test_unexpected_exception_becomes_upstream_error() -> None:
    def explode() -> None:
        raise KeyError("boom")

    service = FakeToolService({"explode": explode})
    result = await _invoker(service, "explode").invoke(call("c1", "explode"))

    assert result.error.kind is ToolErrorKind.UPSTREAM


@pytest.mark.asyncio
async def test_undecodable_arguments_are_rejected() -> None:
    service = FakeToolService({"echo": "x"})
    bad = ToolCallRequest(id="c1", name="echo", arguments_error="Arguments are not valid JSON")
    result = await _invoker(service, "echo").invoke(bad)

    assert result.error.kind is ToolErrorKind.INVALID_ARGUMENTS
    assert service.invocations == []


@pytest.mark.asyncio
async def test_results_follow_request_order_not_completion_order() -> None:
    service = FakeToolService({"slow": "A", "fast": "B"}, delays={"slow": 0.1})
    results = await _invoker(service, "slow", "fast").invoke_all(
        [call("a", "slow"), call("b", "fast")]
    )

    assert service.completed == ["fast", "slow"]
    assert [r.call_id for r in results] == ["a", "b"]
    assert [r.payload for r in results] == ["A", "B"]


@pytest.mark.asyncio
async def test_sequential_mode_runs_in_order() -> None:
    service = FakeToolService({"slow": "A", "fast": "B"}, delays={"slow": 0.05})
    results = await _invoker(service, "slow", "fast", parallel=False).invoke_all(
        [call("a", "slow"), call("b", "fast")]
    )

    assert service.completed == ["slow", "fast"]
    assert [r.call_id for r in results] == ["a", "b"]


def test_correction_table_entries() -> None:
    assert TOOL_NAME_CORRECTIONS["gmail_send_message"] == "send_email"
    assert TOOL_NAME_CORRECTIONS["gmail_search_messages"] == "search_emails"
    invoker = _invoker(FakeToolService(), "read_emails", corrections={"inbox": "read_emails"})
    assert invoker.resolve_name("inbox") == "read_emails"
    assert invoker.resolve_name("gmail_read_messages") == "gmail_read_messages"
