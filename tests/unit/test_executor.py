"""
Unit tests for the invocation executor and its state machine.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from toolgate.confirmation import (
    ArgumentConfirmationHandler,
    ConfirmationOutcome,
    ConfirmationResponse,
)
from toolgate.errors import ErrorKind, InternalError, NetworkError, ValidationError
from toolgate.executor import ExecutionRecord, InvocationState
from toolgate.rate_limiter import RateLimitConfig, RateLimiter
from toolgate.tools import Tool, ToolCall, ToolInvocation, ToolRegistry, ToolResult, builtin_tools

S = InvocationState


def denying_handler(message="User said no"):
    handler = AsyncMock()
    handler.request_confirmation.return_value = ConfirmationResponse(
        ConfirmationOutcome.DENIED, message
    )
    return handler


class FlakyInvocation(ToolInvocation):
    def get_description(self):
        return "Flaky network call"

    async def execute(self, context):
        self.definition_calls.append(1)
        if len(self.definition_calls) < 3:
            raise NetworkError("connection reset")
        return ToolResult("fetched", "fetched")


class FlakyTool(Tool):
    name = "flaky_fetch"
    description = "Fetches something unreliable"
    parameter_schema = {"type": "object", "properties": {}}

    def __init__(self):
        super().__init__()
        self.calls = []

    def bind(self, params):
        invocation = FlakyInvocation(self.definition, params)
        invocation.definition_calls = self.calls
        return invocation


class TestExecutionRecord:
    """Test the per-invocation state machine."""

    def test_legal_path(self):
        record = ExecutionRecord(call_id="1", tool_name="read_file")
        for state in (S.VALIDATED, S.SECURITY_CHECKED, S.RATE_ADMITTED,
                      S.AUTO_APPROVED, S.EXECUTING, S.COMPLETED):
            record.advance(state)
        assert record.is_terminal
        assert record.succeeded
        assert record.auto_approved
        assert record.history[0] == S.CREATED

    def test_illegal_transition(self):
        record = ExecutionRecord(call_id="1", tool_name="read_file")
        with pytest.raises(InternalError, match="created -> executing"):
            record.advance(S.EXECUTING)

    def test_terminal_states_have_no_exit(self):
        record = ExecutionRecord(call_id="1", tool_name="read_file")
        record.advance(S.FAILED)
        with pytest.raises(InternalError):
            record.advance(S.VALIDATED)

    def test_aborted_tool_result(self):
        record = ExecutionRecord(call_id="1", tool_name="write_file", state=S.ABORTED)
        assert record.to_tool_result().llm_content == (
            "Tool execution cancelled by user: No reason provided"
        )

    def test_failed_tool_result(self):
        record = ExecutionRecord(call_id="1", tool_name="read_file", state=S.FAILED)
        record.error = ValidationError("bad", "path").to_record()
        assert record.to_tool_result().llm_content == "Tool execution failed: Invalid path: bad"


class TestPipeline:
    """Test stage ordering and short-circuiting."""

    @pytest.mark.asyncio
    async def test_read_completes(self, make_executor):
        record = await make_executor().execute_call(
            ToolCall(id="c1", name="read_file", parameters={"path": "README.md"})
        )
        assert record.state == S.COMPLETED
        assert record.history == [
            S.CREATED, S.VALIDATED, S.SECURITY_CHECKED, S.RATE_ADMITTED,
            S.AUTO_APPROVED, S.EXECUTING, S.COMPLETED,
        ]
        assert record.result.llm_content == "# Project\n"
        assert record.confirmation is None

    @pytest.mark.asyncio
    async def test_accepts_raw_dict(self, make_executor):
        record = await make_executor().execute_call(
            {"id": "c1", "name": "read_file", "parameters": {"path": "README.md"}}
        )
        assert record.succeeded

    @pytest.mark.asyncio
    async def test_malformed_raw_call(self, make_executor):
        record = await make_executor().execute_call({"id": "c1"})
        assert record.state == S.FAILED
        assert record.error.kind == ErrorKind.VALIDATION

    @pytest.mark.asyncio
    async def test_validation_failure(self, make_executor):
        record = await make_executor().execute_call(
            ToolCall(id="c1", name="read_file", parameters={"path": 5})
        )
        assert record.state == S.FAILED
        assert record.history == [S.CREATED, S.FAILED]
        assert record.error.kind == ErrorKind.VALIDATION
        assert record.error.context["field"] == "path"

    @pytest.mark.asyncio
    async def test_unknown_tool(self, make_executor):
        record = await make_executor().execute_call(
            ToolCall(id="c1", name="delete_file", parameters={})
        )
        assert record.error.kind == ErrorKind.NOT_FOUND
        assert "read_file, write_file, list_directory" in record.to_tool_result().llm_content

    @pytest.mark.asyncio
    async def test_security_denial_stops_before_rate_limit(self, make_executor, rate_limiter):
        record = await make_executor().execute_call(
            ToolCall(id="c1", name="read_file", parameters={"path": "../../etc/passwd"})
        )
        assert record.state == S.FAILED
        assert record.error.kind == ErrorKind.SECURITY
        assert S.SECURITY_CHECKED not in record.history
        assert "outside allowed root" in record.to_tool_result().llm_content
        assert rate_limiter.get_stats()["total_requests"] == 0

    @pytest.mark.asyncio
    async def test_rate_limited(self, make_executor):
        limiter = RateLimiter(RateLimitConfig(requests_per_minute=1), auto_sweep=False)
        executor = make_executor(rate_limiter=limiter)
        call = ToolCall(id="c1", name="read_file", parameters={"path": "README.md"})

        assert (await executor.execute_call(call)).succeeded
        record = await executor.execute_call(call)

        assert record.state == S.FAILED
        assert record.error.kind == ErrorKind.RATE_LIMIT
        assert record.error.context["retry_after"] > 0
        assert record.error.context["key"] == "model:read_file"

    @pytest.mark.asyncio
    async def test_execution_failure_is_classified(self, make_executor):
        record = await make_executor().execute_call(
            ToolCall(id="c1", name="read_file", parameters={"path": "missing.txt"})
        )
        assert record.state == S.FAILED
        assert record.history[-2:] == [S.EXECUTING, S.FAILED]
        assert record.error.kind == ErrorKind.FILE_SYSTEM
        assert record.to_tool_result().llm_content == (
            "Tool execution failed: File not found: missing.txt"
        )

    @pytest.mark.asyncio
    async def test_retryable_tool_failure_is_retried(
        self, make_executor, security_validator, rate_limiter
    ):
        registry = ToolRegistry()
        tool = FlakyTool()
        registry.register(tool)
        executor = make_executor(registry=registry)

        record = await executor.execute_call(ToolCall(id="c1", name="flaky_fetch"))

        assert record.succeeded
        assert len(tool.calls) == 3

    @pytest.mark.asyncio
    async def test_run_with_prebuilt_invocation(self, make_executor, registry):
        invocation = registry.create_invocation(
            ToolCall(id="c1", name="list_directory", parameters={"path": "src"})
        )
        record = await make_executor().run(invocation, call_id="c1")
        assert record.succeeded
        assert "main.py" in record.result.llm_content


class TestConfirmationStage:
    """Test confirmation gating of destructive invocations."""

    @pytest.mark.asyncio
    async def test_new_file_auto_approved(self, make_executor, workspace):
        handler = denying_handler()
        record = await make_executor(handler=handler).execute_call(
            ToolCall(id="c1", name="write_file", parameters={"path": "new.txt", "content": "x"})
        )
        assert record.succeeded
        assert record.auto_approved
        handler.request_confirmation.assert_not_called()
        assert (workspace / "new.txt").read_text() == "x"

    @pytest.mark.asyncio
    async def test_denied_overwrite_leaves_file_untouched(self, make_executor, workspace):
        original = (workspace / "config.json").read_bytes()
        handler = denying_handler()

        record = await make_executor(handler=handler).execute_call(
            ToolCall(id="c1", name="write_file", parameters={"path": "config.json", "content": "{}"})
        )

        assert record.state == S.ABORTED
        assert record.confirmation == ConfirmationOutcome.DENIED
        assert S.EXECUTING not in record.history
        assert record.error is None
        assert record.to_tool_result().return_display == (
            "Tool execution cancelled by user: User said no"
        )
        assert (workspace / "config.json").read_bytes() == original

        request = handler.request_confirmation.call_args.args[0]
        assert request.tool_name == "write_file"
        assert request.destructive is True
        assert request.locations == ("config.json",)

    @pytest.mark.asyncio
    async def test_approved_overwrite(self, make_executor, workspace):
        record = await make_executor().execute_call(
            ToolCall(id="c1", name="write_file", parameters={"path": "config.json", "content": "{}"})
        )
        assert record.succeeded
        assert record.confirmation == ConfirmationOutcome.APPROVED
        assert S.PENDING_CONFIRMATION in record.history
        assert (workspace / "config.json").read_text() == "{}"

    @pytest.mark.asyncio
    async def test_pre_confirmed_call(self, make_executor, workspace):
        executor = make_executor(handler=ArgumentConfirmationHandler())
        params = {"path": "config.json", "content": "{}"}

        denied = await executor.execute_call(ToolCall(id="c1", name="write_file", parameters=params))
        assert denied.confirmation == ConfirmationOutcome.DENIED

        approved = await executor.execute_call(
            ToolCall(id="c2", name="write_file", parameters=params, confirmed=True)
        )
        assert approved.succeeded

    @pytest.mark.asyncio
    async def test_disabled_confirmations(self, make_executor):
        handler = denying_handler()
        record = await make_executor(handler=handler, enabled=False).execute_call(
            ToolCall(id="c1", name="write_file", parameters={"path": "config.json", "content": "{}"})
        )
        assert record.succeeded
        handler.request_confirmation.assert_not_called()

    @pytest.mark.asyncio
    async def test_handler_error_fails_invocation(self, make_executor):
        handler = AsyncMock()
        handler.request_confirmation.side_effect = RuntimeError("ui crashed")
        record = await make_executor(handler=handler).execute_call(
            ToolCall(id="c1", name="write_file", parameters={"path": "config.json", "content": "{}"})
        )
        assert record.state == S.FAILED
        assert record.error.kind == ErrorKind.INTERNAL


class TestCancellation:
    """Test cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, make_executor, workspace):
        cancel_event = asyncio.Event()
        cancel_event.set()
        record = await make_executor().execute_call(
            ToolCall(id="c1", name="write_file", parameters={"path": "x.txt", "content": "x"}),
            cancel_event,
        )
        assert record.state == S.ABORTED
        assert record.confirmation == ConfirmationOutcome.CANCELLED
        assert not (workspace / "x.txt").exists()

    @pytest.mark.asyncio
    async def test_cancelled_during_confirmation(self, make_executor, workspace):
        cancel_event = asyncio.Event()

        class WaitingHandler:
            async def request_confirmation(self, request):
                cancel_event.set()
                await asyncio.sleep(10)

        record = await make_executor(handler=WaitingHandler()).execute_call(
            ToolCall(id="c1", name="write_file", parameters={"path": "config.json", "content": "{}"}),
            cancel_event,
        )
        assert record.state == S.ABORTED
        assert record.confirmation == ConfirmationOutcome.CANCELLED
        assert (workspace / "config.json").read_text() == '{"debug": false}\n'


class TestSequentialExecution:
    @pytest.mark.asyncio
    async def test_calls_run_in_order(self, make_executor):
        records = await make_executor().execute_calls([
            ToolCall(id="1", name="write_file", parameters={"path": "seq.txt", "content": "first"}),
            ToolCall(id="2", name="read_file", parameters={"path": "seq.txt"}),
        ])
        assert [r.call_id for r in records] == ["1", "2"]
        assert records[1].result.llm_content == "first"


class TestAuditing:
    @pytest.mark.asyncio
    async def test_terminal_records_are_audited(self, make_executor, mock_audit_logger):
        executor = make_executor(audit_logger=mock_audit_logger, handler=denying_handler())
        await executor.execute_call(
            ToolCall(id="c1", name="read_file", parameters={"path": "README.md"})
        )
        await executor.execute_call(
            ToolCall(id="c2", name="write_file", parameters={"path": "config.json", "content": "{}"})
        )
        await executor.execute_call(ToolCall(id="c3", name="nope", parameters={}))

        calls = [c.kwargs for c in mock_audit_logger.log_invocation.call_args_list]
        assert [(c["call_id"], c["status"], c["confirmation"]) for c in calls] == [
            ("c1", "ok", "auto"),
            ("c2", "aborted", "denied"),
            ("c3", "fail", None),
        ]
        assert calls[1]["destructive"] is True
        assert calls[2]["error_kind"] == "not_found"
        assert calls[2]["correlation_id"].startswith("err_")

    def test_builtin_tool_names(self):
        assert [tool.definition.name for tool in builtin_tools()] == [
            "read_file", "write_file", "list_directory",
        ]
