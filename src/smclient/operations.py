"""Asynchronous operation tracking.

A mutating management call returns at once with a tracking id in the
``x-ms-request-id`` response header; the work finishes later. The controller
polls the operation status endpoint until the status is Succeeded or Failed
(compared case-insensitively). With the default PollingPolicy it polls every
second with no cap, so only a terminal status or a communication fault ends
the loop. A cap or deadline can be configured and ends the loop with an
OperationTimeoutError outcome.

State flow::

    NoOperation (empty id) -> InProgress -> Succeeded | Failed
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from azure.core.exceptions import AzureError

from .config import PollingPolicy
from .errors import OperationFailedError, OperationTimeoutError
from .faults import format_communication_fault, invoke_call
from .models import Operation
from .reporting import ProgressRecord, Reporter

logger = logging.getLogger(__name__)


@dataclass
class OperationOutcome:
    """Result of tracking an operation.

    operation is the last status seen (None if the first poll failed). error
    is None on success, OperationFailedError when the server reported
    Failed, OperationTimeoutError when a polling limit was hit, or the
    AzureError that interrupted polling.
    """

    operation: Operation | None
    error: Exception | None = None
    status_calls: int = 0

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.operation is not None and self.operation.succeeded


class OperationLifecycleController:
    """Polls one subscription's operation status endpoint."""

    def __init__(
        self,
        channel,
        subscription_id: str,
        reporter: Reporter,
        polling: PollingPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.channel = channel
        self.subscription_id = subscription_id
        self.reporter = reporter
        self.polling = polling or PollingPolicy()
        self._sleep = sleep
        self._clock = clock

    def _get_status(self, operation_id: str) -> Operation:
        return invoke_call(
            lambda: self.channel.get_operation_status(self.subscription_id, operation_id),
            self.reporter,
        )

    def track(
        self,
        operation_id: str | None,
        on_progress: Callable[[Operation], None] | None = None,
    ) -> OperationOutcome:
        """Poll until the operation is terminal, a limit is hit or polling faults.

        Never raises for remote faults; they are returned in the outcome.

        Args:
            operation_id: Tracking id from the mutating response. Empty or None
                          means no operation was issued and nothing is polled.
            on_progress: Called with each non-terminal status before sleeping.
        """
        if not operation_id:
            return OperationOutcome(operation=Operation.no_operation())

        operation: Operation | None = None
        calls = 0
        started = self._clock()
        try:
            operation = self._get_status(operation_id)
            calls += 1
            while not operation.is_terminal:
                limit_error = self._check_limits(operation_id, calls, started)
                if limit_error is not None:
                    return OperationOutcome(operation=operation, error=limit_error, status_calls=calls)
                if on_progress is not None:
                    on_progress(operation)
                self._sleep(self.polling.delay_for(calls))
                operation = self._get_status(operation_id)
                calls += 1
        except AzureError as e:
            logger.debug(
                "Operation polling interrupted by a communication fault",
                extra={"operation_id": operation_id, "status_calls": calls, "error": str(e)},
            )
            return OperationOutcome(operation=operation, error=e, status_calls=calls)

        error = None
        if operation.failed:
            server_error = operation.error
            error = OperationFailedError(
                operation.status,
                server_error.message if server_error else None,
                server_error.code if server_error else None,
            )
        logger.debug(
            "Operation reached a terminal status",
            extra={"operation_id": operation_id, "status": operation.status, "status_calls": calls},
        )
        return OperationOutcome(operation=operation, error=error, status_calls=calls)

    def _check_limits(self, operation_id: str, calls: int, started: float) -> OperationTimeoutError | None:
        max_attempts = self.polling.max_attempts
        if max_attempts is not None and calls >= max_attempts:
            return OperationTimeoutError(
                f"Operation {operation_id} still in progress after {calls} status checks"
            )
        timeout = self.polling.timeout_seconds
        if timeout is not None and self._clock() - started >= timeout:
            return OperationTimeoutError(
                f"Operation {operation_id} still in progress after {timeout} seconds"
            )
        return None

    def wait_for_operation(
        self,
        description: str,
        silent: bool = False,
        operation_id: str | None = None,
    ) -> Operation | None:
        """Wait for an operation and report its progress and result.

        Args:
            description: Activity shown in progress records.
            silent: Suppress progress records; errors are still reported.
            operation_id: Tracking id; defaults to the channel's last response.

        Returns:
            The last observed operation, ``Operation(id="", status=Failed)``
            when there was nothing to track, or None if the first status
            poll faulted.
        """
        if operation_id is None:
            operation_id = getattr(self.channel, "last_operation_id", None)

        def progress(operation: Operation) -> None:
            if not silent:
                self.reporter.report_progress(ProgressRecord.for_operation(description, operation.status))

        outcome = self.track(operation_id, on_progress=progress)
        if not operation_id:
            return outcome.operation

        if isinstance(outcome.error, AzureError):
            self.reporter.report_error(format_communication_fault(outcome.error))
            return outcome.operation

        if outcome.error is not None:
            self.reporter.report_error(str(outcome.error))
            if isinstance(outcome.error, OperationTimeoutError):
                return outcome.operation

        if not silent and outcome.operation is not None:
            self.reporter.report_progress(
                ProgressRecord.for_operation(description, outcome.operation.status, completed=True)
            )
        return outcome.operation
