"""
Invocation Executor

Drives each tool invocation through the pipeline in strict order:

    validation -> security -> rate limit -> confirmation -> execution

and records the per-invocation state machine:

    CREATED -> VALIDATED -> SECURITY_CHECKED -> RATE_ADMITTED
        -> AUTO_APPROVED -> EXECUTING
        -> PENDING_CONFIRMATION -> APPROVED -> EXECUTING
                                -> ABORTED (denied or cancelled)
    EXECUTING -> COMPLETED | FAILED

ABORTED, COMPLETED and FAILED are terminal. The first failing stage
short-circuits the run; only the execution stage may touch the filesystem
with side effects. Every run yields an ExecutionRecord, which is what the
orchestrator turns into a ToolResult for the model.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .audit import AuditLogger
from .confirmation import (
    ConfirmationManager,
    ConfirmationOutcome,
    ConfirmationRequest,
    log_confirmation_attempt,
)
from .errors import (
    CancelledError,
    ErrorKind,
    ErrorRecord,
    InternalError,
    ToolGateError,
    classify_error,
)
from .rate_limiter import RateLimiter
from .retry import RetryConfig, retry_async
from .security import SecurityValidator
from .tools.base import ExecutionContext, ToolCall, ToolInvocation, ToolResult
from .tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


class InvocationState(str, Enum):
    CREATED = "created"
    VALIDATED = "validated"
    SECURITY_CHECKED = "security_checked"
    RATE_ADMITTED = "rate_admitted"
    AUTO_APPROVED = "auto_approved"
    PENDING_CONFIRMATION = "pending_confirmation"
    APPROVED = "approved"
    EXECUTING = "executing"
    ABORTED = "aborted"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = frozenset(
    {InvocationState.ABORTED, InvocationState.COMPLETED, InvocationState.FAILED}
)

_S = InvocationState
_TRANSITIONS: dict[InvocationState, frozenset[InvocationState]] = {
    _S.CREATED: frozenset({_S.VALIDATED, _S.FAILED}),
    _S.VALIDATED: frozenset({_S.SECURITY_CHECKED, _S.FAILED, _S.ABORTED}),
    _S.SECURITY_CHECKED: frozenset({_S.RATE_ADMITTED, _S.FAILED, _S.ABORTED}),
    _S.RATE_ADMITTED: frozenset(
        {_S.AUTO_APPROVED, _S.PENDING_CONFIRMATION, _S.FAILED, _S.ABORTED}
    ),
    _S.AUTO_APPROVED: frozenset({_S.EXECUTING, _S.FAILED, _S.ABORTED}),
    _S.PENDING_CONFIRMATION: frozenset({_S.APPROVED, _S.ABORTED, _S.FAILED}),
    _S.APPROVED: frozenset({_S.EXECUTING, _S.FAILED, _S.ABORTED}),
    _S.EXECUTING: frozenset({_S.COMPLETED, _S.FAILED, _S.ABORTED}),
}


@dataclass
class ExecutionRecord:
    """
    Outcome of one tool call.

    Attributes:
        call_id: Identifier of the tool call
        tool_name: Requested tool name
        state: Final state (terminal)
        history: Every state the invocation passed through, in order
        result: Tool result when completed
        error: Error snapshot when failed
        confirmation: Confirmation outcome, None if none was requested
        confirmation_message: Reason supplied with a denial or cancellation
        description: Human-readable description of the invocation
        elapsed_ms: Wall time of the run
    """

    call_id: str
    tool_name: str
    state: InvocationState = InvocationState.CREATED
    history: list[InvocationState] = field(
        default_factory=lambda: [InvocationState.CREATED]
    )
    result: ToolResult | None = None
    error: ErrorRecord | None = None
    confirmation: ConfirmationOutcome | None = None
    confirmation_message: str | None = None
    description: str = ""
    destructive: bool = False
    elapsed_ms: int = 0

    def advance(self, new_state: InvocationState) -> None:
        """
        Move to a new state.

        Raises:
            InternalError: If the transition is not allowed
        """
        allowed = _TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise InternalError(
                f"Illegal invocation state transition {self.state.value} -> {new_state.value}",
                {"call_id": self.call_id, "tool": self.tool_name},
            )
        self.state = new_state
        self.history.append(new_state)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def succeeded(self) -> bool:
        return self.state == InvocationState.COMPLETED

    @property
    def aborted(self) -> bool:
        return self.state == InvocationState.ABORTED

    @property
    def auto_approved(self) -> bool:
        return InvocationState.AUTO_APPROVED in self.history

    def to_tool_result(self) -> ToolResult:
        """Render the record for the model and UI."""
        if self.state == InvocationState.COMPLETED and self.result is not None:
            return self.result
        if self.state == InvocationState.ABORTED:
            reason = self.confirmation_message or "No reason provided"
            message = f"Tool execution cancelled by user: {reason}"
            return ToolResult(llm_content=message, return_display=message)
        detail = self.error.message if self.error else "unknown error"
        message = f"Tool execution failed: {detail}"
        return ToolResult(llm_content=message, return_display=message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "call_id": self.call_id,
            "tool": self.tool_name,
            "state": self.state.value,
            "history": [state.value for state in self.history],
            "result": self.result.to_dict() if self.result else None,
            "error": self.error.to_dict() if self.error else None,
            "confirmation": self.confirmation.value if self.confirmation else None,
            "confirmation_message": self.confirmation_message,
            "elapsed_ms": self.elapsed_ms,
        }


class InvocationExecutor:
    """
    Runs tool calls through the security pipeline.

    Args:
        registry: Tool registry
        security_validator: Path authorization
        rate_limiter: Per caller and tool admission
        confirmation_manager: Approval gate for destructive invocations
        audit_logger: Optional audit trail for terminal records
        retry_config: Retry policy for the execution stage
        caller: Caller identity used in rate limit keys and audit records
    """

    def __init__(
        self,
        registry: ToolRegistry,
        security_validator: SecurityValidator,
        rate_limiter: RateLimiter,
        confirmation_manager: ConfirmationManager,
        audit_logger: AuditLogger | None = None,
        retry_config: RetryConfig | None = None,
        caller: str = "model",
    ):
        self.registry = registry
        self.security_validator = security_validator
        self.rate_limiter = rate_limiter
        self.confirmation_manager = confirmation_manager
        self.audit_logger = audit_logger
        self.retry_config = retry_config or RetryConfig()
        self.caller = caller

    def rate_limit_key(self, tool_name: str) -> str:
        return f"{self.caller}:{tool_name}"

    async def execute_call(
        self,
        call: ToolCall | dict[str, Any],
        cancel_event: asyncio.Event | None = None,
    ) -> ExecutionRecord:
        """
        Validate a raw call and run it.

        Args:
            call: ToolCall or the decoded {id, name, parameters} mapping
            cancel_event: Cancellation token for this call

        Returns:
            ExecutionRecord: Terminal record; never raises for pipeline failures
        """
        started = time.monotonic()

        if not isinstance(call, ToolCall):
            raw = call if isinstance(call, dict) else {}
            record = ExecutionRecord(
                call_id=str(raw.get("id", "")), tool_name=str(raw.get("name", ""))
            )
            try:
                call = ToolCall.from_dict(call)
            except ToolGateError as e:
                return self._finish_failed(record, e, started, args=None)

        record = ExecutionRecord(call_id=call.id, tool_name=call.name)
        try:
            invocation = self.registry.create_invocation(call)
        except ToolGateError as e:
            return self._finish_failed(record, e, started, args=call.parameters)

        return await self._run(
            invocation, record, started, cancel_event, pre_confirmed=call.confirmed
        )

    async def execute_calls(
        self,
        calls: list[ToolCall | dict[str, Any]],
        cancel_event: asyncio.Event | None = None,
    ) -> list[ExecutionRecord]:
        """
        Run a model turn's calls sequentially, in the order received.

        Later calls may depend on side effects of earlier ones, so calls
        are never run concurrently.
        """
        records = []
        for call in calls:
            records.append(await self.execute_call(call, cancel_event))
        return records

    async def run(
        self,
        invocation: ToolInvocation,
        call_id: str = "",
        cancel_event: asyncio.Event | None = None,
        pre_confirmed: bool = False,
    ) -> ExecutionRecord:
        """
        Run an already validated invocation through the remaining stages.

        Args:
            invocation: Invocation created by the registry
            call_id: Identifier of the originating tool call
            cancel_event: Cancellation token
            pre_confirmed: Caller supplied explicit confirmation

        Returns:
            ExecutionRecord: Terminal record
        """
        record = ExecutionRecord(call_id=call_id, tool_name=invocation.definition.name)
        return await self._run(
            invocation, record, time.monotonic(), cancel_event, pre_confirmed
        )

    async def _run(
        self,
        invocation: ToolInvocation,
        record: ExecutionRecord,
        started: float,
        cancel_event: asyncio.Event | None,
        pre_confirmed: bool,
    ) -> ExecutionRecord:
        definition = invocation.definition
        cancel_event = cancel_event or asyncio.Event()
        context = ExecutionContext(
            cancel_event=cancel_event, security=self.security_validator
        )
        record.destructive = definition.destructive
        args = invocation.params

        try:
            record.advance(InvocationState.VALIDATED)
            record.description = invocation.get_description()

            if cancel_event.is_set():
                return self._finish_aborted(
                    record, None, "Cancelled before execution", started, args
                )

            locations = invocation.get_locations()
            for location in locations:
                context.canonical_paths[location.path] = (
                    await self.security_validator.authorize(
                        location.path, location.operation, location.content
                    )
                )
            record.advance(InvocationState.SECURITY_CHECKED)

            self.rate_limiter.consume(self.rate_limit_key(definition.name))
            record.advance(InvocationState.RATE_ADMITTED)

            if cancel_event.is_set():
                return self._finish_aborted(
                    record, None, "Cancelled before confirmation", started, args
                )

            details = await invocation.should_confirm_execute(context)
            if self.confirmation_manager.requires_confirmation(
                definition.destructive, details
            ):
                record.advance(InvocationState.PENDING_CONFIRMATION)
                request = ConfirmationRequest(
                    tool_name=definition.name,
                    description=record.description,
                    destructive=details.destructive,
                    locations=tuple(location.path for location in locations),
                    message=details.message,
                    pre_confirmed=pre_confirmed,
                )
                response = await self.confirmation_manager.request_confirmation(
                    request, cancel_event
                )
                record.confirmation = response.outcome
                log_confirmation_attempt(definition.name, args, response.outcome)

                if response.outcome != ConfirmationOutcome.APPROVED:
                    return self._finish_aborted(
                        record, response.outcome, response.message, started, args
                    )
                record.advance(InvocationState.APPROVED)
            else:
                record.advance(InvocationState.AUTO_APPROVED)

            if cancel_event.is_set():
                return self._finish_aborted(
                    record, None, "Cancelled before execution", started, args
                )

            record.advance(InvocationState.EXECUTING)
            record.result = await retry_async(
                lambda: invocation.execute(context),
                self.retry_config,
                description=f"Tool {definition.name}",
                cancel_event=cancel_event,
            )
            record.advance(InvocationState.COMPLETED)

        except CancelledError as e:
            return self._finish_aborted(record, None, e.message, started, args)
        except Exception as e:
            return self._finish_failed(record, classify_error(e), started, args)

        record.elapsed_ms = _elapsed_ms(started)
        logger.info(
            f"Tool {definition.name} completed in {record.elapsed_ms}ms "
            f"(call_id={record.call_id})"
        )
        self._audit(record, args)
        return record

    def _finish_aborted(
        self,
        record: ExecutionRecord,
        outcome: ConfirmationOutcome | None,
        message: str | None,
        started: float,
        args: Any,
    ) -> ExecutionRecord:
        if outcome is None and record.confirmation is None:
            record.confirmation = ConfirmationOutcome.CANCELLED
        record.confirmation_message = message
        record.advance(InvocationState.ABORTED)
        record.elapsed_ms = _elapsed_ms(started)
        logger.info(
            f"Tool {record.tool_name} aborted "
            f"({record.confirmation.value if record.confirmation else 'cancelled'}): "
            f"{message or 'No reason provided'}"
        )
        self._audit(record, args)
        return record

    def _finish_failed(
        self,
        record: ExecutionRecord,
        error: ToolGateError,
        started: float,
        args: Any,
    ) -> ExecutionRecord:
        record.error = error.to_record()
        if record.state not in TERMINAL_STATES:
            record.state = InvocationState.FAILED
            record.history.append(InvocationState.FAILED)
        record.elapsed_ms = _elapsed_ms(started)

        if error.should_log():
            log = logger.error if error.kind == ErrorKind.INTERNAL else logger.warning
            log(
                f"Tool {record.tool_name or '<unknown>'} failed: {error.kind.value}: "
                f"{error.message} (correlation_id={error.correlation_id})",
                exc_info=error.kind == ErrorKind.INTERNAL,
            )
        else:
            logger.info(
                f"Tool {record.tool_name or '<unknown>'} rejected: {error.kind.value}: "
                f"{error.message}"
            )
        self._audit(record, args)
        return record

    def _audit(self, record: ExecutionRecord, args: Any) -> None:
        if self.audit_logger is None:
            return
        if record.succeeded:
            status = "ok"
        elif record.aborted:
            status = "aborted"
        else:
            status = "fail"

        if record.confirmation is not None:
            confirmation = record.confirmation.value
        elif record.auto_approved:
            confirmation = "auto"
        else:
            confirmation = None

        self.audit_logger.log_invocation(
            tool_name=record.tool_name,
            call_id=record.call_id,
            args=args,
            destructive=record.destructive,
            status=status,
            state=record.state.value,
            elapsed_ms=record.elapsed_ms,
            confirmation=confirmation,
            error_kind=record.error.kind.value if record.error else None,
            correlation_id=record.error.correlation_id if record.error else None,
            caller=self.caller,
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
