"""
Tool Orchestrator

The single owner of every pipeline component for one process: security
validator, rate limiter, confirmation manager, tool registry and
executor. Nothing is module-global; tests build a fresh orchestrator per
case.

The orchestrator also runs the model turn loop: send the conversation to
the model client, execute any tool calls it returns (sequentially, in
order), append one tool message per call, and repeat until the model
answers without tool calls.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from .audit import AuditLogger
from .config import Config
from .confirmation import ConfirmationHandler, ConfirmationManager
from .errors import InternalError
from .executor import ExecutionRecord, InvocationExecutor
from .policy.engine import Policy, PolicyLoader, SchemaValidator
from .rate_limiter import RateLimiter
from .retry import RetryConfig, retry_async
from .security import SecurityValidator
from .tools.base import Tool, ToolCall
from .tools.filesystem import builtin_tools
from .tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOOL_ITERATIONS = 10


@dataclass
class ModelMessage:
    """One conversation entry; role is user, assistant or tool."""

    role: str
    content: str
    tool_call_id: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)


@dataclass
class ModelResponse:
    message: ModelMessage
    tool_calls: list[ToolCall] = field(default_factory=list)


@runtime_checkable
class ModelClient(Protocol):
    """Model collaborator; request shaping for a given provider lives behind it."""

    async def send_message(
        self, history: list[ModelMessage], tool_schemas: list[dict[str, Any]]
    ) -> ModelResponse: ...


class ToolOrchestrator:
    """
    Owns the pipeline components and runs model turns.

    Args:
        registry: Tool registry
        executor: Invocation executor bound to the same components
        rate_limiter: Rate limiter, stopped on shutdown
        retry_config: Retry policy for model client calls
        max_tool_iterations: Model round trips allowed per user message
    """

    def __init__(
        self,
        registry: ToolRegistry,
        executor: InvocationExecutor,
        rate_limiter: RateLimiter,
        retry_config: RetryConfig | None = None,
        max_tool_iterations: int = DEFAULT_MAX_TOOL_ITERATIONS,
    ):
        self.registry = registry
        self.executor = executor
        self.rate_limiter = rate_limiter
        self.retry_config = retry_config or RetryConfig()
        self.max_tool_iterations = max_tool_iterations

    @classmethod
    def from_config(
        cls,
        config: Config,
        confirmation_handler: ConfirmationHandler,
        policy_loader: PolicyLoader | None = None,
        audit_logger: AuditLogger | None = None,
        tools: list[Tool] | None = None,
        auto_sweep: bool = True,
    ) -> "ToolOrchestrator":
        """
        Build every component from configuration.

        Args:
            config: Runtime configuration
            confirmation_handler: UI collaborator for approvals
            policy_loader: Optional YAML policy overrides
            audit_logger: Optional audit trail
            tools: Tools to register (defaults to the built-in tools)
            auto_sweep: Start the rate limiter sweeper thread

        Raises:
            ConfigurationError: If configuration or policy is invalid
        """
        policy = policy_loader.load_policy() if policy_loader is not None else Policy()

        security_validator = SecurityValidator(
            config.to_security_policy(policy), audit_logger=audit_logger
        )
        rate_config, algorithm = config.to_rate_limit_config(policy)
        rate_limiter = RateLimiter(rate_config, algorithm, auto_sweep=auto_sweep)
        enabled, timeout = config.confirmation_settings(policy)
        confirmation_manager = ConfirmationManager(
            confirmation_handler, enabled=enabled, timeout=timeout
        )
        retry_config = config.to_retry_config()

        registry = ToolRegistry(SchemaValidator())
        for tool in tools if tools is not None else builtin_tools():
            tool_policy = policy.tool_policy(tool.definition.name)
            if not tool_policy.enabled:
                logger.info(f"Tool {tool.definition.name} disabled by policy")
                continue
            registry.register(tool.with_overrides(destructive=tool_policy.destructive))

        executor = InvocationExecutor(
            registry,
            security_validator,
            rate_limiter,
            confirmation_manager,
            audit_logger=audit_logger,
            retry_config=retry_config,
        )
        logger.info(
            f"Orchestrator ready with tools: {', '.join(registry.get_tool_names()) or 'none'}"
        )
        return cls(
            registry,
            executor,
            rate_limiter,
            retry_config=retry_config,
            max_tool_iterations=config.max_tool_iterations,
        )

    def tool_schemas(self) -> list[dict[str, Any]]:
        """Schemas of the registered tools, as exposed to the model."""
        return self.registry.get_all_schemas()

    async def execute_tool_calls(
        self,
        tool_calls: list[ToolCall],
        history: list[ModelMessage],
        cancel_event: asyncio.Event | None = None,
    ) -> list[ExecutionRecord]:
        """Execute calls in order and append one tool message per call."""
        records = await self.executor.execute_calls(tool_calls, cancel_event)
        for call, record in zip(tool_calls, records):
            result = record.to_tool_result()
            history.append(
                ModelMessage(role="tool", content=result.llm_content, tool_call_id=call.id)
            )
        return records

    async def send_message(
        self,
        client: ModelClient,
        history: list[ModelMessage],
        text: str,
        cancel_event: asyncio.Event | None = None,
    ) -> str:
        """
        Run one user turn to completion.

        Args:
            client: Model client
            history: Conversation history, appended in place
            text: User message
            cancel_event: Cancellation token for the whole turn

        Returns:
            str: The model's final answer

        Raises:
            InternalError: If the model keeps requesting tools past the iteration limit
            ToolGateError: If the model client fails after retries
        """
        history.append(ModelMessage(role="user", content=text))
        schemas = self.tool_schemas()

        for iteration in range(1, self.max_tool_iterations + 1):
            response = await retry_async(
                lambda: client.send_message(history, schemas),
                self.retry_config,
                description="Model request",
                cancel_event=cancel_event,
            )
            history.append(response.message)

            if not response.tool_calls:
                return response.message.content

            logger.info(
                f"Model requested {len(response.tool_calls)} tool call(s) "
                f"(iteration {iteration}/{self.max_tool_iterations})"
            )
            await self.execute_tool_calls(response.tool_calls, history, cancel_event)

        raise InternalError(
            f"Too many tool call iterations (limit {self.max_tool_iterations})",
            {"max_tool_iterations": self.max_tool_iterations},
        )

    def shutdown(self) -> None:
        self.rate_limiter.shutdown()
