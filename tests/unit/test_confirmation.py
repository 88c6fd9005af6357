"""
Unit tests for the confirmation manager and handlers.
"""

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest

from toolgate.confirmation import (
    ArgumentConfirmationHandler,
    AutoApproveHandler,
    ConfirmationDetails,
    ConfirmationHandler,
    ConfirmationManager,
    ConfirmationOutcome,
    ConfirmationRequest,
    ConfirmationResponse,
    is_confirmed,
    log_confirmation_attempt,
)

DETAILS = ConfirmationDetails(title="Confirm overwrite", message="File a.txt will be overwritten.")


def make_request(**overrides):
    values = {
        "tool_name": "write_file",
        "description": "Write 1 lines (5 characters) to: a.txt",
        "destructive": True,
        "locations": ("a.txt",),
    }
    values.update(overrides)
    return ConfirmationRequest(**values)


class SlowHandler:
    def __init__(self, delay):
        self.delay = delay

    async def request_confirmation(self, request):
        await asyncio.sleep(self.delay)
        return ConfirmationResponse(ConfirmationOutcome.APPROVED)


class TestRequiresConfirmation:
    """Test the destructive flag gate."""

    def test_read_only_tools_never_need_confirmation(self):
        manager = ConfirmationManager(AutoApproveHandler())
        assert manager.requires_confirmation(False, DETAILS) is False

    def test_destructive_with_details_needs_confirmation(self):
        manager = ConfirmationManager(AutoApproveHandler())
        assert manager.requires_confirmation(True, DETAILS) is True

    def test_destructive_without_details_is_auto_approved(self):
        manager = ConfirmationManager(AutoApproveHandler())
        assert manager.requires_confirmation(True, None) is False

    def test_disabled_manager(self):
        manager = ConfirmationManager(AutoApproveHandler(), enabled=False)
        assert manager.requires_confirmation(True, DETAILS) is False


class TestRequestConfirmation:
    """Test outcomes returned by the manager."""

    @pytest.mark.asyncio
    async def test_handler_answer_is_returned(self):
        handler = AsyncMock()
        handler.request_confirmation.return_value = ConfirmationResponse(
            ConfirmationOutcome.DENIED, "not today"
        )
        manager = ConfirmationManager(handler)

        response = await manager.request_confirmation(make_request())

        assert response.outcome == ConfirmationOutcome.DENIED
        assert response.message == "not today"
        assert response.approved is False
        handler.request_confirmation.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_already_cancelled(self):
        handler = AsyncMock()
        cancel_event = asyncio.Event()
        cancel_event.set()
        manager = ConfirmationManager(handler)

        response = await manager.request_confirmation(make_request(), cancel_event)

        assert response.outcome == ConfirmationOutcome.CANCELLED
        handler.request_confirmation.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancelled_while_waiting(self):
        cancel_event = asyncio.Event()
        manager = ConfirmationManager(SlowHandler(10), timeout=None)

        async def cancel_soon():
            await asyncio.sleep(0.01)
            cancel_event.set()

        task = asyncio.create_task(cancel_soon())
        response = await manager.request_confirmation(make_request(), cancel_event)
        await task

        assert response.outcome == ConfirmationOutcome.CANCELLED
        assert "while awaiting" in response.message

    @pytest.mark.asyncio
    async def test_outer_cancellation_cancels_handler(self):
        started = asyncio.Event()
        handler_cancelled = asyncio.Event()

        class BlockingHandler:
            async def request_confirmation(self, request):
                started.set()
                try:
                    await asyncio.sleep(10)
                except asyncio.CancelledError:
                    handler_cancelled.set()
                    raise

        manager = ConfirmationManager(BlockingHandler(), timeout=None)
        task = asyncio.create_task(manager.request_confirmation(make_request()))
        await started.wait()

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.wait_for(handler_cancelled.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_timeout_is_cancelled(self):
        manager = ConfirmationManager(SlowHandler(10), timeout=0.01)
        response = await manager.request_confirmation(make_request())
        assert response.outcome == ConfirmationOutcome.CANCELLED
        assert response.message == "Confirmation timed out after 0.01 seconds"

    @pytest.mark.asyncio
    async def test_handler_exception_propagates(self):
        handler = AsyncMock()
        handler.request_confirmation.side_effect = RuntimeError("ui crashed")
        manager = ConfirmationManager(handler)
        with pytest.raises(RuntimeError):
            await manager.request_confirmation(make_request())


class TestHandlers:
    """Test the built-in handlers."""

    @pytest.mark.asyncio
    async def test_auto_approve(self):
        response = await AutoApproveHandler().request_confirmation(make_request())
        assert response.approved

    @pytest.mark.asyncio
    async def test_argument_handler_requires_flag(self):
        handler = ArgumentConfirmationHandler()
        denied = await handler.request_confirmation(make_request())
        assert denied.outcome == ConfirmationOutcome.DENIED
        assert "_confirm: true" in denied.message

        approved = await handler.request_confirmation(make_request(pre_confirmed=True))
        assert approved.approved

    def test_handlers_satisfy_protocol(self):
        assert isinstance(AutoApproveHandler(), ConfirmationHandler)
        assert isinstance(ArgumentConfirmationHandler(), ConfirmationHandler)


class TestConfirmationHelpers:
    @pytest.mark.parametrize(
        "value,expected",
        [
            (True, True),
            (False, False),
            ("true", True),
            ("YES", True),
            ("y", True),
            ("1", True),
            (1, True),
            (0, False),
            ("no", False),
            (None, False),
        ],
    )
    def test_is_confirmed(self, value, expected):
        assert is_confirmed(value) is expected

    def test_log_confirmation_attempt_redacts(self, caplog):
        with caplog.at_level(logging.INFO, logger="toolgate.confirmation"):
            log_confirmation_attempt(
                "write_file",
                {"path": "a.txt", "content": "top secret", "_confirm": True},
                ConfirmationOutcome.APPROVED,
            )
        assert "top secret" not in caplog.text
        assert "[REDACTED]" in caplog.text
        assert "has_confirm_arg=True" in caplog.text
