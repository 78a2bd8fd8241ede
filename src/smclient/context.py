"""Command context: the profile, channel provider and reporter a command runs with.

Commands get everything through a CommandContext instead of reaching for
globals, so tests can inject a profile over a temp directory, a fixed
channel and a recording reporter.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any, TypeVar

from azure.core.exceptions import AzureError

from .channel import ChannelProvider, ServiceManagementChannelFactory, invoke_in_scope
from .config import ClientConfig, ConfigurationError, PollingPolicy
from .faults import format_communication_fault, invoke_action, invoke_call
from .models import ManagementOperationContext, Operation, Subscription
from .operations import OperationLifecycleController
from .profile import Profile
from .reporting import Reporter

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CommandContext:
    """Per-invocation state shared by the commands of one process."""

    def __init__(
        self,
        profile: Profile,
        reporter: Reporter,
        provider: ChannelProvider | None = None,
        polling: PollingPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.profile = profile
        self.reporter = reporter
        self.provider = provider or ServiceManagementChannelFactory(profile)
        self.polling = polling or PollingPolicy()
        self._sleep = sleep
        self._channel: Any = None
        self._channel_subscription: Subscription | None = None

    @classmethod
    def from_config(cls, config: ClientConfig, reporter: Reporter) -> CommandContext:
        profile = Profile.load(config)
        return cls(
            profile=profile,
            reporter=reporter,
            provider=ServiceManagementChannelFactory(profile, binding=config.binding),
            polling=config.polling,
        )

    @property
    def current_subscription(self) -> Subscription:
        """The current subscription.

        Raises:
            ConfigurationError: If no subscription is selected or default.
        """
        subscription = self.profile.current_subscription
        if subscription is None:
            raise ConfigurationError(
                "The current subscription has not been set. Import a publish settings "
                "file or select a subscription first."
            )
        return subscription

    @property
    def channel(self) -> Any:
        """Channel for the current subscription, rebuilt when the subscription changes."""
        subscription = self.current_subscription
        if self._channel is None or subscription != self._channel_subscription:
            if self._channel is not None:
                logger.debug("Current subscription changed, recreating channel")
                self.close()
            self._channel = self.provider.create_channel(subscription)
            self._channel_subscription = subscription
        return self._channel

    def close(self) -> None:
        close = getattr(self._channel, "close", None)
        if callable(close):
            close()
        self._channel = None
        self._channel_subscription = None

    def operation_controller(self) -> OperationLifecycleController:
        return OperationLifecycleController(
            self.channel,
            self.current_subscription.subscription_id,
            self.reporter,
            polling=self.polling,
            sleep=self._sleep,
        )

    def wait_for_operation(
        self, description: str, silent: bool = False, operation_id: str | None = None
    ) -> Operation | None:
        return self.operation_controller().wait_for_operation(description, silent=silent, operation_id=operation_id)

    def _write_context(self, description: str, operation: Operation | None) -> ManagementOperationContext:
        context = ManagementOperationContext(
            operation_description=description,
            operation_id=operation.operation_id if operation else None,
            operation_status=operation.status if operation else None,
        )
        self.reporter.write_object(context)
        return context

    def execute_client_action(
        self,
        description: str,
        action: Callable[[Any], object],
        silent: bool = False,
    ) -> ManagementOperationContext:
        """Invoke a mutating call, wait for its operation and emit the result.

        A 403 security fault from the call is reported and the (empty)
        operation is still tracked; other faults propagate.
        """
        channel = self.channel
        invoke_action(lambda: action(channel), self.reporter)
        operation = self.wait_for_operation(description, silent=silent)
        return self._write_context(description, operation)

    def execute_client_action_in_scope(
        self,
        description: str,
        action: Callable[[Any], T],
        context_factory: Callable[[Operation | None, T], Any] | None = None,
    ) -> Any | None:
        """Invoke a call inside an operation scope, wait silently and emit a context.

        Communication faults from the call or from polling are reported, not
        raised.

        Args:
            description: Operation description for the emitted context.
            action: Remote call, given the channel.
            context_factory: Builds the emitted object from the operation and
                the call's result; defaults to a ManagementOperationContext.

        Returns:
            The emitted object, or None if the call faulted.
        """
        channel = self.channel

        def run() -> Any:
            result = invoke_call(lambda: action(channel), self.reporter)
            operation = self.wait_for_operation(description, silent=True)
            if context_factory is None:
                return self._write_context(description, operation)
            context = context_factory(operation, result)
            self.reporter.write_object(context)
            return context

        try:
            return invoke_in_scope(channel, run)
        except AzureError as e:
            self.reporter.report_error(format_communication_fault(e))
            return None
