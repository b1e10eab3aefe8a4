"""
Tests for the tool call scheduler: lifecycle, batching, confirmation,
cancellation and progress reporting.
"""

import asyncio

import pytest

from agent.allowlist import SessionAllowList
from agent.cancellation import CancelToken
from agent.confirmation import Confirmer, Modifier
from agent.errors import SchedulerBusyError, ToolExecutionError, ToolValidationError
from agent.scheduler import ToolCallScheduler
from agent.types import ConfirmationOutcome, ErrorKind, ToolCallRequest, ToolCallState
from tools.base import FunctionTool, Tool, ToolResult
from tools.registry import ToolRegistry

READ_SCHEMA = {
    "type": "object",
    "properties": {"path": {"type": "string"}},
    "required": ["path"],
}
WRITE_SCHEMA = {
    "type": "object",
    "properties": {"path": {"type": "string"}, "content": {"type": "string"}},
    "required": ["path", "content"],
}


class ScriptedConfirmer(Confirmer):
    """Answers with queued outcomes (default proceed once), optionally after a gate opens."""

    def __init__(self, *outcomes, gate=None):
        self.outcomes = list(outcomes)
        self.asked = []
        self.gate = gate

    async def ask(self, request):
        self.asked.append(request)
        if self.gate is not None:
            await self.gate.wait()
        return self.outcomes.pop(0) if self.outcomes else ConfirmationOutcome.PROCEED_ONCE


class FixedModifier(Modifier):
    def __init__(self, new_args):
        self.new_args = new_args
        self.seen = []

    async def modify(self, tool_name, args):
        self.seen.append((tool_name, args))
        return dict(self.new_args)


def make_registry(log):
    files = {"a.txt": "hello"}
    registry = ToolRegistry()

    def read_file(path):
        log.append(("read_file", path))
        if path not in files:
            return ToolResult(success=False, error=f"No such file: {path}", exit_code=2)
        return files[path]

    def write_file(path, content):
        log.append(("write_file", path))
        files[path] = content
        return f"Wrote {len(content)} bytes to {path}"

    registry.register_function("read_file", read_file, input_schema=READ_SCHEMA)
    registry.register_function("write_file", write_file, input_schema=WRITE_SCHEMA, needs_confirmation=True)
    return registry


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


def req(call_id, name, **args):
    return ToolCallRequest(call_id=call_id, name=name, args=args)


@pytest.mark.asyncio
async def test_every_request_gets_one_terminal_call_in_order():
    log = []
    scheduler = ToolCallScheduler(make_registry(log), ScriptedConfirmer())
    requests = [
        req("c1", "read_file", path="a.txt"),
        req("c2", "read_file", path="missing.txt"),
        req("c3", "no_such_tool"),
    ]
    calls = await scheduler.schedule(requests)

    assert [c.call_id for c in calls] == ["c1", "c2", "c3"]
    assert [c.state for c in calls] == [ToolCallState.SUCCESS, ToolCallState.ERROR, ToolCallState.ERROR]
    assert all(c.is_terminal and c.result is not None for c in calls)
    assert all(c.result.call_id == c.call_id for c in calls)
    assert all(c.duration_ms is not None for c in calls)


@pytest.mark.asyncio
async def test_read_file_output_is_in_response_parts():
    scheduler = ToolCallScheduler(make_registry([]), ScriptedConfirmer())
    calls = await scheduler.schedule([req("c1", "read_file", path="a.txt")])

    assert calls[0].state == ToolCallState.SUCCESS
    assert calls[0].result.response_parts == [
        {"type": "tool_result", "tool_use_id": "c1", "content": "hello"}
    ]


@pytest.mark.asyncio
async def test_unknown_tool_errors_without_executing():
    log = []
    scheduler = ToolCallScheduler(make_registry(log), ScriptedConfirmer())
    calls = await scheduler.schedule([req("c1", "format_disk")])

    assert len(calls) == 1
    assert calls[0].state == ToolCallState.ERROR
    assert calls[0].result.error.kind == ErrorKind.NOT_FOUND
    assert "tool not found" in calls[0].result.error.message.lower()
    assert calls[0].result.response_parts[0]["is_error"] is True
    assert log == []


@pytest.mark.asyncio
async def test_validation_error_names_tool_and_parameter_then_corrected_call_succeeds():
    log = []
    scheduler = ToolCallScheduler(make_registry(log), ScriptedConfirmer())
    calls = await scheduler.schedule([req("c1", "read_file", path=42)])

    error = calls[0].result.error
    assert calls[0].state == ToolCallState.ERROR
    assert error.kind == ErrorKind.VALIDATION
    assert "read_file" in error.message
    assert "path" in error.message
    assert log == []

    calls = await scheduler.schedule([req("c2", "read_file", path="a.txt")])
    assert calls[0].state == ToolCallState.SUCCESS


@pytest.mark.asyncio
async def test_missing_required_parameter_is_reported():
    scheduler = ToolCallScheduler(make_registry([]), ScriptedConfirmer())
    calls = await scheduler.schedule([req("c1", "read_file")])
    assert "'path' is a required property" in calls[0].result.error.message


@pytest.mark.asyncio
async def test_cancel_outcome_never_executes():
    log = []
    confirmer = ScriptedConfirmer(ConfirmationOutcome.CANCEL)
    scheduler = ToolCallScheduler(make_registry(log), confirmer)
    calls = await scheduler.schedule([req("c1", "write_file", path="b.txt", content="x")])

    assert calls[0].state == ToolCallState.CANCELLED
    assert calls[0].outcome == ConfirmationOutcome.CANCEL
    assert calls[0].result.response_parts[0]["content"].startswith("[Operation Cancelled]")
    assert log == []


@pytest.mark.asyncio
async def test_proceed_always_skips_confirmation_in_later_batches():
    log = []
    allowlist = SessionAllowList()
    confirmer = ScriptedConfirmer(ConfirmationOutcome.PROCEED_ALWAYS)
    scheduler = ToolCallScheduler(make_registry(log), confirmer, allowlist=allowlist)

    await scheduler.schedule([req("c1", "write_file", path="b.txt", content="1")])
    calls = await scheduler.schedule([req("c2", "write_file", path="c.txt", content="2")])

    assert len(confirmer.asked) == 1
    assert allowlist.is_allowed("write_file")
    assert calls[0].state == ToolCallState.SUCCESS
    assert log == [("write_file", "b.txt"), ("write_file", "c.txt")]


@pytest.mark.asyncio
async def test_proceed_always_server_covers_other_tools_from_that_server():
    registry = ToolRegistry()
    for name in ("search_issues", "create_issue"):
        registry.register(FunctionTool(name, lambda **kw: "ok", needs_confirmation=True, server_name="tracker"))
    confirmer = ScriptedConfirmer(ConfirmationOutcome.PROCEED_ALWAYS_SERVER)
    scheduler = ToolCallScheduler(registry, confirmer)

    await scheduler.schedule([req("c1", "search_issues", q="bug")])
    calls = await scheduler.schedule([req("c2", "create_issue", title="x")])

    assert len(confirmer.asked) == 1
    assert confirmer.asked[0].kind == "mcp"
    assert confirmer.asked[0].server_name == "tracker"
    assert calls[0].state == ToolCallState.SUCCESS
    assert scheduler.allowlist.snapshot() == {"tools": [], "servers": ["tracker"]}


@pytest.mark.asyncio
async def test_no_call_executes_while_another_awaits_approval():
    log = []
    gate = asyncio.Event()
    updates = []
    confirmer = ScriptedConfirmer(gate=gate)
    scheduler = ToolCallScheduler(make_registry(log), confirmer, on_update=updates.append)

    task = asyncio.ensure_future(scheduler.schedule([
        req("c1", "read_file", path="a.txt"),
        req("c2", "write_file", path="b.txt", content="x"),
    ]))
    await wait_until(lambda: confirmer.asked)
    await asyncio.sleep(0.05)

    states = {c.call_id: c.state for c in scheduler.calls}
    assert states == {"c1": ToolCallState.SCHEDULED, "c2": ToolCallState.AWAITING_APPROVAL}
    assert log == []
    assert not any(u.state == ToolCallState.EXECUTING for u in updates)

    gate.set()
    calls = await asyncio.wait_for(task, 2)

    assert [c.state for c in calls] == [ToolCallState.SUCCESS, ToolCallState.SUCCESS]
    first_exec = next(i for i, u in enumerate(updates) if u.state == ToolCallState.EXECUTING)
    approved = next(i for i, u in enumerate(updates)
                    if u.call_id == "c2" and u.state == ToolCallState.SCHEDULED)
    assert approved < first_exec


@pytest.mark.asyncio
async def test_modify_then_proceed_revalidates_and_prompts_again():
    log = []
    updates = []
    confirmer = ScriptedConfirmer(ConfirmationOutcome.MODIFY_THEN_PROCEED, ConfirmationOutcome.PROCEED_ONCE)
    modifier = FixedModifier({"path": "edited.txt", "content": "new"})
    scheduler = ToolCallScheduler(make_registry(log), confirmer, modifier=modifier, on_update=updates.append)

    calls = await scheduler.schedule([req("c1", "write_file", path="b.txt", content="old")])

    assert calls[0].state == ToolCallState.SUCCESS
    assert calls[0].args == {"path": "edited.txt", "content": "new"}
    assert len(confirmer.asked) == 2
    assert confirmer.asked[1].args["path"] == "edited.txt"
    assert log == [("write_file", "edited.txt")]
    states = [u.state for u in updates]
    assert states[:4] == [
        ToolCallState.VALIDATING,
        ToolCallState.AWAITING_APPROVAL,
        ToolCallState.VALIDATING,
        ToolCallState.AWAITING_APPROVAL,
    ]


@pytest.mark.asyncio
async def test_modified_arguments_that_fail_validation_end_in_error():
    log = []
    confirmer = ScriptedConfirmer(ConfirmationOutcome.MODIFY_THEN_PROCEED)
    scheduler = ToolCallScheduler(make_registry(log), confirmer, modifier=FixedModifier({"path": "b.txt"}))

    calls = await scheduler.schedule([req("c1", "write_file", path="b.txt", content="x")])

    assert calls[0].state == ToolCallState.ERROR
    assert "content" in calls[0].result.error.message
    assert log == []


@pytest.mark.asyncio
async def test_cancellation_during_execution_terminates_every_call():
    token = CancelToken()
    registry = ToolRegistry()

    async def slow(seconds):
        await asyncio.sleep(seconds)
        return "finished"

    registry.register_function("slow", slow)

    def on_update(update):
        if update.state == ToolCallState.EXECUTING:
            token.cancel()

    scheduler = ToolCallScheduler(registry, ScriptedConfirmer(), on_update=on_update)
    calls = await asyncio.wait_for(
        scheduler.schedule([req("c1", "slow", seconds=30), req("c2", "slow", seconds=30)], token), 2
    )

    assert [c.state for c in calls] == [ToolCallState.CANCELLED, ToolCallState.CANCELLED]
    assert all(c.result.error.kind == ErrorKind.CANCELLED for c in calls)


@pytest.mark.asyncio
async def test_cancellation_while_awaiting_approval():
    log = []
    token = CancelToken()
    confirmer = ScriptedConfirmer(gate=asyncio.Event())
    scheduler = ToolCallScheduler(make_registry(log), confirmer)

    task = asyncio.ensure_future(scheduler.schedule([
        req("c1", "write_file", path="b.txt", content="x"),
        req("c2", "read_file", path="a.txt"),
    ], token))
    await wait_until(lambda: confirmer.asked)
    token.cancel()
    calls = await asyncio.wait_for(task, 2)

    assert [c.state for c in calls] == [ToolCallState.CANCELLED, ToolCallState.CANCELLED]
    assert log == []


@pytest.mark.asyncio
async def test_exception_in_tool_becomes_error():
    registry = ToolRegistry()

    def explode():
        raise RuntimeError("boom")

    registry.register_function("explode", explode)
    scheduler = ToolCallScheduler(registry, ScriptedConfirmer())
    calls = await scheduler.schedule([req("c1", "explode")])

    assert calls[0].state == ToolCallState.ERROR
    assert calls[0].result.error.kind == ErrorKind.EXECUTION
    assert "RuntimeError: boom" in calls[0].result.error.message


@pytest.mark.asyncio
async def test_tool_reported_failure_carries_exit_code():
    scheduler = ToolCallScheduler(make_registry([]), ScriptedConfirmer())
    calls = await scheduler.schedule([req("c1", "read_file", path="nope.txt")])

    content = calls[0].result.response_parts[0]["content"]
    assert calls[0].state == ToolCallState.ERROR
    assert "No such file: nope.txt" in content
    assert "Exit code: 2" in content


@pytest.mark.asyncio
async def test_incremental_output_is_forwarded_in_order():
    registry = ToolRegistry()

    def build(on_output):
        for step in ("compiling", "linking", "done"):
            on_output(step)
        return "built"

    registry.register_function("build", build)
    outputs = []

    def on_update(update):
        if update.output is not None:
            outputs.append(update.output)

    scheduler = ToolCallScheduler(registry, ScriptedConfirmer(), on_update=on_update)
    calls = await scheduler.schedule([req("c1", "build")])

    assert outputs == ["compiling", "linking", "done"]
    assert calls[0].live_output == "done"
    assert calls[0].state == ToolCallState.SUCCESS


@pytest.mark.asyncio
async def test_second_batch_is_rejected_while_first_is_running():
    gate = asyncio.Event()
    scheduler = ToolCallScheduler(make_registry([]), ScriptedConfirmer(gate=gate))
    task = asyncio.ensure_future(scheduler.schedule([req("c1", "write_file", path="b", content="x")]))
    await wait_until(lambda: scheduler.is_busy)

    with pytest.raises(SchedulerBusyError):
        await scheduler.schedule([req("c2", "read_file", path="a.txt")])

    gate.set()
    await asyncio.wait_for(task, 2)
    assert not scheduler.is_busy


@pytest.mark.asyncio
async def test_duplicate_call_ids_are_rejected():
    scheduler = ToolCallScheduler(make_registry([]), ScriptedConfirmer())
    with pytest.raises(ValueError):
        await scheduler.schedule([req("c1", "read_file", path="a.txt"), req("c1", "read_file", path="a.txt")])


@pytest.mark.asyncio
async def test_batch_complete_is_reported_once_with_calls_in_order():
    batches = []
    scheduler = ToolCallScheduler(make_registry([]), ScriptedConfirmer(), on_batch_complete=batches.append)
    await scheduler.schedule([req("c2", "read_file", path="a.txt"), req("c1", "read_file", path="a.txt")])

    assert len(batches) == 1
    assert [c.call_id for c in batches[0]] == ["c2", "c1"]
    assert all(c.is_terminal for c in batches[0])


@pytest.mark.asyncio
async def test_tool_timeout_is_reported_as_error():
    registry = ToolRegistry()

    async def hang():
        await asyncio.sleep(30)

    registry.register(FunctionTool("hang", hang, timeout_s=0.05))
    scheduler = ToolCallScheduler(registry, ScriptedConfirmer())
    calls = await asyncio.wait_for(scheduler.schedule([req("c1", "hang")]), 2)

    assert calls[0].state == ToolCallState.ERROR
    assert "timed out" in calls[0].result.error.message


@pytest.mark.asyncio
async def test_described_tool_failure_keeps_its_details():
    registry = ToolRegistry()

    def deploy(target):
        raise ToolExecutionError(f"Deploy to {target} failed", {"exit_code": 3, "output": "permission denied"})

    registry.register_function("deploy", deploy)
    scheduler = ToolCallScheduler(registry, ScriptedConfirmer())
    calls = await scheduler.schedule([req("c1", "deploy", target="prod")])

    content = calls[0].result.response_parts[0]["content"]
    assert calls[0].state == ToolCallState.ERROR
    assert content.startswith("Error: Deploy to prod failed")
    assert "Exit code: 3" in content
    assert "permission denied" in content


@pytest.mark.asyncio
async def test_validation_error_raised_by_tool_is_reported():
    class StrictTool(Tool):
        name = "strict"

        def validate_args(self, args):
            raise ToolValidationError("strict accepts no arguments")

        async def execute(self, args, cancel_token=None, on_output=None):
            return ToolResult(success=True)

    scheduler = ToolCallScheduler(ToolRegistry([StrictTool()]), ScriptedConfirmer())
    calls = await scheduler.schedule([req("c1", "strict", x=1)])

    assert calls[0].result.error.kind == ErrorKind.VALIDATION
    assert calls[0].result.error.message == "Invalid parameters for tool 'strict': strict accepts no arguments"


@pytest.mark.asyncio
async def test_confirmation_check_failure_errors_only_that_call():
    class GuardedTool(FunctionTool):
        def requires_confirmation(self, args, allowlist=None):
            raise RuntimeError("allow-list backend down")

    log = []
    registry = make_registry(log)
    registry.register(GuardedTool("deploy", lambda target: "deployed"))
    batches = []
    scheduler = ToolCallScheduler(registry, ScriptedConfirmer(), on_batch_complete=batches.append)

    calls = await asyncio.wait_for(scheduler.schedule([
        req("c1", "deploy", target="prod"),
        req("c2", "read_file", path="a.txt"),
    ]), 2)

    assert [c.state for c in calls] == [ToolCallState.ERROR, ToolCallState.SUCCESS]
    assert calls[0].result.error.kind == ErrorKind.INTERNAL
    assert "Confirmation check failed" in calls[0].result.error.message
    assert "allow-list backend down" in calls[0].result.error.message
    assert log == [("read_file", "a.txt")]
    assert len(batches) == 1
    assert not scheduler.is_busy


class TextModifier(Modifier):
    async def modify(self, tool_name, args):
        return "path=b.txt"


@pytest.mark.asyncio
async def test_modified_arguments_that_are_not_an_object_end_in_error():
    log = []
    confirmer = ScriptedConfirmer(ConfirmationOutcome.MODIFY_THEN_PROCEED)
    scheduler = ToolCallScheduler(make_registry(log), confirmer, modifier=TextModifier())

    calls = await scheduler.schedule([req("c1", "write_file", path="b.txt", content="x")])

    assert calls[0].state == ToolCallState.ERROR
    assert calls[0].result.error.kind == ErrorKind.VALIDATION
    assert "must be an object" in calls[0].result.error.message
    assert calls[0].args == {"path": "b.txt", "content": "x"}
    assert len(confirmer.asked) == 1
    assert log == []
