"""Tests for tool execution and the hop limit."""

import asyncio
import json

from fakes import FakeToolCatalog

from superkagi.chat.models import FunctionCall, ToolCall
from superkagi.chat.tool_executor import ToolExecutor


def call(call_id, name, arguments="{}"):
    return ToolCall(id=call_id, function=FunctionCall(name=name, arguments=arguments))


async def test_results_follow_call_order_and_carry_ids():
    catalog = FakeToolCatalog({"echo": lambda args: f"echo {args.get('q')}"})
    executor = ToolExecutor(catalog)

    messages = await executor.execute_tool_calls(
        [call("c1", "echo", '{"q": "one"}'), call("c2", "echo", '{"q": "two"}')]
    )

    assert [m.tool_call_id for m in messages] == ["c1", "c2"]
    assert [json.loads(m.content)[0]["text"] for m in messages] == ["echo one", "echo two"]
    assert all(m.role == "tool" for m in messages)


async def test_tool_failure_becomes_error_message():
    def boom(_args):
        raise RuntimeError("search backend down")

    executor = ToolExecutor(FakeToolCatalog({"search": boom}))
    [message] = await executor.execute_tool_calls([call("c1", "search")])
    assert message.content == "Error: search backend down"
    assert message.tool_call_id == "c1"


async def test_unknown_tool_reports_catalog_error():
    executor = ToolExecutor(FakeToolCatalog({}))
    [message] = await executor.execute_tool_calls([call("c1", "missing")])
    assert message.content == "Error: Tool 'missing' not found"


async def test_bad_arguments_fall_back_to_empty_object():
    catalog = FakeToolCatalog({"search": lambda args: "ok"})
    executor = ToolExecutor(catalog)
    await executor.execute_tool_calls([call("c1", "search", "{not json"), call("c2", "search", "[1, 2]")])
    assert catalog.calls == [("search", {}), ("search", {})]


async def test_parallel_execution_keeps_call_order():
    async def slow(args):
        await asyncio.sleep(0.05)
        return "slow"

    async def fast(args):
        return "fast"

    executor = ToolExecutor(FakeToolCatalog({"slow": slow, "fast": fast}), parallel=True)
    messages = await executor.execute_tool_calls([call("c1", "slow"), call("c2", "fast")])

    assert [m.tool_call_id for m in messages] == ["c1", "c2"]
    assert [json.loads(m.content)[0]["text"] for m in messages] == ["slow", "fast"]


def test_hop_limit():
    executor = ToolExecutor(FakeToolCatalog(), max_tool_hops=2)
    assert executor.check_tool_hop_limit(1) == (False, None)
    should_stop, warning = executor.check_tool_hop_limit(2)
    assert should_stop
    assert "maximum tool call limit (2)" in warning
