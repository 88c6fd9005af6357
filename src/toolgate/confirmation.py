"""
Destructive Operation Confirmation

Gates destructive tool invocations behind an explicit approval. Whether a
tool is destructive is a flag on its ToolDefinition (set by the tool or
overridden by policy), never a hardcoded list of tool names.

Flow:
- Read-only tools are auto-approved
- Destructive tools whose invocation reports no confirmation details
  (for example writing a brand-new file) are auto-approved
- Otherwise a ConfirmationRequest goes to the injected handler, which
  answers approved, denied or cancelled

Denied and cancelled are outcomes, not exceptions: the executor matches on
them and aborts the invocation without side effects. Cancellation of the
invocation while waiting, and handler timeouts, both produce cancelled.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

CONFIRM_ARG = "_confirm"
SENSITIVE_ARG_NAMES = ("password", "token", "secret", "key", "content")


class ConfirmationOutcome(str, Enum):
    APPROVED = "approved"
    DENIED = "denied"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ConfirmationDetails:
    """What an invocation tells the user before it runs."""

    title: str
    message: str
    destructive: bool = True


@dataclass(frozen=True)
class ConfirmationRequest:
    """
    A request for approval sent to the confirmation handler.

    Attributes:
        tool_name: Tool being invoked
        description: Human-readable description of the invocation
        destructive: Whether the invocation may destroy existing state
        locations: Filesystem locations the invocation touches
        message: Detail text, e.g. which file will be overwritten
        pre_confirmed: Caller supplied an explicit confirmation flag
    """

    tool_name: str
    description: str
    destructive: bool
    locations: tuple = ()
    message: str = ""
    pre_confirmed: bool = False


@dataclass(frozen=True)
class ConfirmationResponse:
    outcome: ConfirmationOutcome
    message: str | None = None

    @property
    def approved(self) -> bool:
        return self.outcome == ConfirmationOutcome.APPROVED


@runtime_checkable
class ConfirmationHandler(Protocol):
    """UI collaborator that asks a human to approve an invocation."""

    async def request_confirmation(
        self, request: ConfirmationRequest
    ) -> ConfirmationResponse: ...


class AutoApproveHandler:
    """Approves everything; for trusted automation and tests."""

    async def request_confirmation(
        self, request: ConfirmationRequest
    ) -> ConfirmationResponse:
        logger.info(f"Auto-approving {request.tool_name}: {request.description}")
        return ConfirmationResponse(ConfirmationOutcome.APPROVED)


@dataclass
class ArgumentConfirmationHandler:
    """
    Approves only calls that carried an explicit _confirm flag.

    Used by the request protocol, where there is no interactive user to
    prompt: the caller must resubmit with "_confirm": true.
    """

    denial_message: str = field(
        default=f"This is a destructive operation and requires {CONFIRM_ARG}: true"
    )

    async def request_confirmation(
        self, request: ConfirmationRequest
    ) -> ConfirmationResponse:
        if request.pre_confirmed:
            return ConfirmationResponse(ConfirmationOutcome.APPROVED)
        return ConfirmationResponse(ConfirmationOutcome.DENIED, self.denial_message)


def is_confirmed(value: Any) -> bool:
    """
    Interpret a _confirm argument value.

    Accepts True, 1, and the strings "true", "1", "yes", "y" (any case).
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in ("true", "1", "yes", "y")
    if isinstance(value, int):
        return value == 1
    return False


def log_confirmation_attempt(
    tool_name: str, args: dict[str, Any], outcome: ConfirmationOutcome
) -> None:
    """
    Log a confirmation decision without leaking argument values.

    Args:
        tool_name: Name of the tool
        args: Tool arguments (only names are logged, sensitive ones redacted)
        outcome: Decision reached
    """
    arg_names = sorted(
        "[REDACTED]" if any(s in k.lower() for s in SENSITIVE_ARG_NAMES) else k
        for k in args
    )
    logger.info(
        f"Confirmation for {tool_name}: outcome={outcome.value}, "
        f"args={arg_names}, has_confirm_arg={CONFIRM_ARG in args}"
    )


class ConfirmationManager:
    """
    Decides whether an invocation needs approval and obtains it.

    Args:
        handler: Injected confirmation UI
        enabled: When False every invocation is auto-approved
        timeout: Seconds to wait for the handler before treating the
            request as cancelled; None waits indefinitely
    """

    def __init__(
        self,
        handler: ConfirmationHandler,
        enabled: bool = True,
        timeout: float | None = 30.0,
    ):
        self.handler = handler
        self.enabled = enabled
        self.timeout = timeout

    def requires_confirmation(
        self, destructive: bool, details: ConfirmationDetails | None
    ) -> bool:
        """
        Return True if a human must approve the invocation.

        Args:
            destructive: The tool definition's destructive flag
            details: What the invocation reported from should_confirm_execute
        """
        if not self.enabled or not destructive:
            return False
        return details is not None

    async def request_confirmation(
        self,
        request: ConfirmationRequest,
        cancel_event: asyncio.Event | None = None,
    ) -> ConfirmationResponse:
        """
        Ask the handler for a decision.

        Returns:
            ConfirmationResponse: The handler's answer, or cancelled if the
            invocation was cancelled or the handler timed out
        """
        if cancel_event is not None and cancel_event.is_set():
            return ConfirmationResponse(
                ConfirmationOutcome.CANCELLED, "Cancelled before confirmation"
            )

        logger.info(f"Requesting confirmation for {request.tool_name}: {request.description}")
        handler_task = asyncio.ensure_future(self.handler.request_confirmation(request))
        waiters = {handler_task}
        cancel_task = None
        if cancel_event is not None:
            cancel_task = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_task)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=self.timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in waiters:
                if not task.done():
                    task.cancel()

        if handler_task in done:
            response = handler_task.result()
            logger.info(f"Confirmation for {request.tool_name}: {response.outcome.value}")
            return response

        if cancel_task is not None and cancel_task in done:
            logger.info(f"Confirmation for {request.tool_name} cancelled while waiting")
            return ConfirmationResponse(
                ConfirmationOutcome.CANCELLED, "Cancelled while awaiting confirmation"
            )

        logger.warning(
            f"Confirmation for {request.tool_name} timed out after {self.timeout}s"
        )
        return ConfirmationResponse(
            ConfirmationOutcome.CANCELLED,
            f"Confirmation timed out after {self.timeout:g} seconds",
        )
