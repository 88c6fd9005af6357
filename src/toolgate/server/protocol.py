"""
Request Protocol

JSON-lines protocol spoken over stdin/stdout. Each request is one JSON
object per line:

    {"method": "list_tools"}
    {"method": "call_tool", "id": "c1", "name": "read_file", "args": {"path": "a.txt"}}

Destructive calls that need confirmation are refused with need_confirm
set until the caller resubmits with "_confirm": true in args. The flag is
stripped before parameter validation.

Responses use a single envelope:

    {"ok": bool, "summary": str, "data": {...}, "error": str,
     "need_confirm": bool, "metrics": {"elapsed_ms": int}}
"""

import asyncio
import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TextIO

from ..confirmation import CONFIRM_ARG, ConfirmationOutcome, is_confirmed
from ..errors import ErrorKind, ValidationError
from ..executor import ExecutionRecord, InvocationState
from ..orchestrator import ToolOrchestrator
from ..tools.base import ToolCall

logger = logging.getLogger(__name__)

MAX_REQUEST_LINE = 2 * 1024 * 1024


class ProtocolMethod(Enum):
    """Supported protocol methods."""

    LIST_TOOLS = "list_tools"
    CALL_TOOL = "call_tool"


@dataclass
class ProtocolRequest:
    """An incoming request."""

    method: str
    id: str | None = None
    name: str | None = None
    args: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, json_data: Any) -> "ProtocolRequest":
        """
        Parse a request from decoded JSON.

        Raises:
            ValidationError: If required fields are missing or invalid
        """
        if not isinstance(json_data, dict):
            raise ValidationError("Request must be a JSON object", "request", "type")

        method = json_data.get("method")
        if not method:
            raise ValidationError("Missing required field: method", "method", "required")

        if method not in [m.value for m in ProtocolMethod]:
            raise ValidationError(f"Unsupported method: {method}", "method", "enum")

        args = json_data.get("args", {})
        if args is None:
            args = {}
        if not isinstance(args, dict):
            raise ValidationError("Field 'args' must be an object", "args", "type")

        request_id = json_data.get("id")
        return cls(
            method=method,
            id=str(request_id) if request_id is not None else None,
            name=json_data.get("name"),
            args=args,
        )


@dataclass
class ProtocolResponse:
    """Response envelope sent back to the client."""

    ok: bool
    summary: str = ""
    data: dict[str, Any] | None = None
    error: str | None = None
    need_confirm: bool = False
    metrics: dict[str, Any] = field(default_factory=dict)
    id: str | None = None

    def __post_init__(self) -> None:
        self.metrics.setdefault("elapsed_ms", 0)
        if not self.summary:
            self.summary = "Operation completed" if self.ok else "Operation failed"

    def to_json(self) -> dict[str, Any]:
        result: dict[str, Any] = {"ok": self.ok, "summary": self.summary}
        if self.id is not None:
            result["id"] = self.id
        if self.need_confirm:
            result["need_confirm"] = True
        if not self.ok and self.error:
            result["error"] = self.error
        if self.data is not None:
            result["data"] = self.data
        result["metrics"] = self.metrics
        return result

    @classmethod
    def create_error(
        cls, error_msg: str, summary: str = "Operation failed", elapsed_ms: int = 0
    ) -> "ProtocolResponse":
        return cls(
            ok=False, summary=summary, error=error_msg, metrics={"elapsed_ms": elapsed_ms}
        )


def require_confirmation_response(
    record: ExecutionRecord, elapsed_ms: int
) -> ProtocolResponse:
    """Refusal telling the caller how to confirm a destructive call."""
    return ProtocolResponse(
        ok=False,
        need_confirm=True,
        summary=f"Confirmation required for {record.tool_name}",
        error=record.confirmation_message
        or f"This is a destructive operation and requires {CONFIRM_ARG}: true",
        data={
            "tool": record.tool_name,
            "operation": record.description,
            "required_arg": CONFIRM_ARG,
            "required_value": True,
            "suggestion": f"Add '{CONFIRM_ARG}': true to {record.tool_name} arguments to proceed",
        },
        metrics={"elapsed_ms": elapsed_ms},
    )


class ProtocolHandler:
    """
    Serves the JSON-lines protocol for one orchestrator.

    Args:
        orchestrator: Pipeline owner
    """

    def __init__(self, orchestrator: ToolOrchestrator):
        self.orchestrator = orchestrator

    def parse_request(self, line: str) -> ProtocolRequest | None:
        """
        Parse one input line.

        Returns:
            ProtocolRequest, or None for a blank line

        Raises:
            ValidationError: If the line is oversize, not JSON or malformed
        """
        line = line.strip()
        if not line:
            return None

        if len(line) > MAX_REQUEST_LINE:
            raise ValidationError("Request too large", "request", "maxLength")

        try:
            json_data = json.loads(line)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid JSON: {e.msg}", "request", "format", cause=e)

        return ProtocolRequest.from_json(json_data)

    async def handle_request(self, request: ProtocolRequest) -> ProtocolResponse:
        started = time.monotonic()
        logger.debug(f"Handling request: {request.method}")

        if request.method == ProtocolMethod.LIST_TOOLS.value:
            tools = self.orchestrator.tool_schemas()
            response = ProtocolResponse(
                ok=True,
                summary=f"Available tools: {len(tools)} tools found",
                data={"tools": tools},
            )
        else:
            response = await self._handle_call_tool(request)

        response.id = request.id
        response.metrics["elapsed_ms"] = int((time.monotonic() - started) * 1000)
        return response

    async def _handle_call_tool(self, request: ProtocolRequest) -> ProtocolResponse:
        if not request.name:
            return ProtocolResponse.create_error(
                "Tool name is required for call_tool", "Missing tool name"
            )

        args = dict(request.args)
        confirmed = is_confirmed(args.pop(CONFIRM_ARG, False))
        call = ToolCall(
            id=request.id or uuid.uuid4().hex[:12],
            name=request.name,
            parameters=args,
            confirmed=confirmed,
        )

        record = await self.orchestrator.executor.execute_call(call)
        return self.record_to_response(record, confirmed)

    @staticmethod
    def record_to_response(record: ExecutionRecord, confirmed: bool) -> ProtocolResponse:
        result = record.to_tool_result()

        if record.state == InvocationState.COMPLETED:
            return ProtocolResponse(
                ok=True,
                summary=f"{record.tool_name} completed",
                data=result.to_dict(),
                metrics={"elapsed_ms": record.elapsed_ms},
            )

        if record.state == InvocationState.ABORTED:
            if record.confirmation == ConfirmationOutcome.DENIED and not confirmed:
                return require_confirmation_response(record, record.elapsed_ms)
            return ProtocolResponse(
                ok=False,
                summary=f"{record.tool_name} cancelled",
                error=result.llm_content,
                data=result.to_dict(),
                metrics={"elapsed_ms": record.elapsed_ms},
            )

        data: dict[str, Any] = {}
        if record.error is not None:
            data = {
                "kind": record.error.kind.value,
                "correlation_id": record.error.correlation_id,
                "retryable": record.error.retryable,
            }
            if record.error.kind == ErrorKind.RATE_LIMIT:
                data["retry_after"] = record.error.context.get("retry_after")
            if record.error.kind == ErrorKind.NOT_FOUND:
                data["available_tools"] = list(
                    record.error.context.get("available_tools", [])
                )
        return ProtocolResponse(
            ok=False,
            summary=f"{record.tool_name or 'tool'} failed",
            error=result.llm_content,
            data=data,
            metrics={"elapsed_ms": record.elapsed_ms},
        )

    def write_response(self, response: ProtocolResponse, output: TextIO) -> None:
        """Write one response line, falling back to a minimal error envelope."""
        try:
            json_str = json.dumps(response.to_json(), separators=(",", ":"))
        except (TypeError, ValueError) as e:
            logger.error(f"Response serialization failed: {e}")
            json_str = json.dumps(
                ProtocolResponse.create_error(
                    "Unable to serialize response", "Internal server error"
                ).to_json(),
                separators=(",", ":"),
            )
        output.write(json_str + "\n")
        output.flush()

    @staticmethod
    def read_line(input_stream: TextIO) -> "asyncio.Future[str]":
        """
        Read one line on a daemon thread.

        A blocked read never keeps the process alive after the loop stops.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[str] = loop.create_future()

        def deliver(setter, value) -> None:
            if not future.done():
                setter(value)

        def reader() -> None:
            try:
                line = input_stream.readline()
            except Exception as e:
                callback, value = future.set_exception, e
            else:
                callback, value = future.set_result, line
            try:
                loop.call_soon_threadsafe(deliver, callback, value)
            except RuntimeError:
                # Event loop already closed
                pass

        threading.Thread(target=reader, name="toolgate-stdin", daemon=True).start()
        return future

    async def run_protocol_loop(
        self,
        input_stream: TextIO,
        output: TextIO,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """
        Serve requests until EOF or until stop_event is set.

        Each line is handled to completion before the next is read, so tool
        calls from one client are executed in the order received. A stop
        request lets the in-flight request finish first.
        """
        logger.info("Starting protocol loop")
        stop_event = stop_event or asyncio.Event()
        stop_wait = asyncio.ensure_future(stop_event.wait())
        try:
            while not stop_event.is_set():
                pending_line = self.read_line(input_stream)
                await asyncio.wait(
                    {pending_line, stop_wait}, return_when=asyncio.FIRST_COMPLETED
                )
                if not pending_line.done():
                    pending_line.cancel()
                    logger.info("Stop requested, shutting down protocol loop")
                    break

                line = pending_line.result()
                if not line:
                    logger.info("EOF received, shutting down protocol loop")
                    break

                try:
                    request = self.parse_request(line)
                    if request is None:
                        continue
                    response = await self.handle_request(request)
                except ValidationError as e:
                    logger.warning(f"Request parsing error: {e.message}")
                    response = ProtocolResponse.create_error(
                        e.user_message(), "Request parsing failed"
                    )
                except Exception as e:
                    logger.error(f"Unexpected error in protocol loop: {e}", exc_info=True)
                    response = ProtocolResponse.create_error(
                        "An internal error occurred", "Unexpected server error"
                    )

                self.write_response(response, output)
        finally:
            stop_wait.cancel()
            logger.info("Protocol loop terminated")
