"""Service Management client CLI (smc).

Usage:
    smc subscription import ./my.publishsettings   # Import subscriptions
    smc subscription list                          # List subscriptions
    smc subscription select NAME                   # Select the current subscription
    smc environment list                           # List cloud environments
    smc environment add NAME --service-endpoint URL
    smc operation status OPERATION_ID              # Wait for an operation
    smc call POST services/hostedservices --body create.xml
"""

from __future__ import annotations

import dataclasses
import functools
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click
from azure.core.exceptions import AzureError

from .certificates import CertificateError
from .config import ClientConfig, ConfigurationError
from .context import CommandContext
from .environments import Environment
from .errors import ProfileError
from .faults import format_communication_fault, invoke_call
from .main import setup_logging
from .publish_settings import PublishSettingsError
from .reporting import ClickReporter

# Exit code when a command ran but reported remote errors
REPORTED_ERROR_EXIT_CODE = 2

# Body files for raw calls are request documents, never large
MAX_BODY_FILE_SIZE_BYTES = 4 * 1024 * 1024

USER_ERRORS = (ProfileError, ConfigurationError, PublishSettingsError, CertificateError)


def command_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    """Turn user errors into click errors and reported remote errors into exit code 2."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        ctx = click.get_current_context()
        command_context: CommandContext = ctx.obj
        try:
            result = func(*args, **kwargs)
        except USER_ERRORS as e:
            raise click.ClickException(str(e)) from e
        except AzureError as e:
            command_context.reporter.report_error(format_communication_fault(e))
            result = None

        if getattr(command_context.reporter, "error_count", 0):
            ctx.exit(REPORTED_ERROR_EXIT_CODE)
        return result

    return wrapper


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.option(
    "--settings-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory holding the profile and user certificates (default: ~/.smclient)",
)
@click.option(
    "--config-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML settings file; SMC_* environment variables override it",
)
@click.option("--subscription", "subscription_name", help="Subscription to use for this command")
@click.option("--log-level", help="Log level (default: SMC_LOG_LEVEL or WARNING)")
@click.option("--log-format", type=click.Choice(["json", "text"]), default="json", show_default=True)
@click.pass_context
def cli(
    ctx: click.Context,
    settings_dir: Path | None,
    config_file: Path | None,
    subscription_name: str | None,
    log_level: str | None,
    log_format: str,
) -> None:
    """Manage cloud subscriptions and track management operations."""
    setup_logging(log_level, log_format)

    if ctx.obj is None:
        try:
            config = ClientConfig.from_file(config_file) if config_file else ClientConfig.from_env()
            if settings_dir is not None:
                config = dataclasses.replace(config, settings_dir=settings_dir)
        except ConfigurationError as e:
            raise click.ClickException(str(e)) from e
        ctx.obj = CommandContext.from_config(config, ClickReporter())
        ctx.call_on_close(ctx.obj.close)

    if subscription_name:
        try:
            ctx.obj.profile.set_current_subscription(subscription_name)
        except ProfileError as e:
            raise click.ClickException(str(e)) from e


# =============================================================================
# Subscription Commands
# =============================================================================


@cli.group()
def subscription() -> None:
    """Import, select and remove subscriptions."""


@subscription.command("import")
@click.argument("path", required=False, type=click.Path(exists=True, path_type=Path))
@click.pass_obj
@command_errors
def subscription_import(obj: CommandContext, path: Path | None) -> None:
    """Import subscriptions from a publish-settings file or directory."""
    imported = obj.profile.import_publish_settings(path)
    for sub in imported:
        marker = " (default)" if sub.is_default else ""
        click.echo(f"Imported subscription '{sub.name}' ({sub.subscription_id}){marker}")


@subscription.command("list")
@click.pass_obj
@command_errors
def subscription_list(obj: CommandContext) -> None:
    """List subscriptions; * marks the default, > the current one."""
    current = obj.profile.current_subscription
    subscriptions = obj.profile.subscriptions
    if not subscriptions:
        click.echo("No subscriptions. Import a publish settings file first.")
        return
    for sub in subscriptions:
        marker = (">" if current is not None and sub.name == current.name else " ") + (
            "*" if sub.is_default else " "
        )
        click.echo(f"{marker} {sub.name}  {sub.subscription_id}  {obj.profile.service_endpoint_for(sub)}")


@subscription.command("show")
@click.argument("name", required=False)
@click.pass_obj
@command_errors
def subscription_show(obj: CommandContext, name: str | None) -> None:
    """Show a subscription (default: the current one)."""
    sub = obj.profile.get_subscription(name) if name else obj.current_subscription
    data = sub.model_dump()
    data["service_endpoint"] = obj.profile.service_endpoint_for(sub)
    certificate = obj.profile.resolve_certificate(sub)
    data["certificate"] = dataclasses.asdict(certificate) if certificate else None
    echo_json(data)


@subscription.command("select")
@click.argument("name")
@click.pass_obj
@command_errors
def subscription_select(obj: CommandContext, name: str) -> None:
    """Select the current subscription for this invocation.

    Use set-default to make the choice stick across runs.
    """
    sub = obj.profile.set_current_subscription(name)
    click.echo(f"Current subscription: {sub.name}")


@subscription.command("set-default")
@click.argument("name")
@click.pass_obj
@command_errors
def subscription_set_default(obj: CommandContext, name: str) -> None:
    """Mark a subscription as the default."""
    sub = obj.profile.set_default_subscription(name)
    click.echo(f"Default subscription: {sub.name}")


@subscription.command("remove")
@click.argument("name")
@click.pass_obj
@command_errors
def subscription_remove(obj: CommandContext, name: str) -> None:
    """Remove a subscription."""
    sub = obj.profile.remove_subscription(name)
    click.echo(f"Removed subscription '{sub.name}'")


# =============================================================================
# Environment Commands
# =============================================================================

ENVIRONMENT_OPTIONS = (
    click.option("--publish-settings-url", "publish_settings_file_url"),
    click.option("--service-endpoint", "service_endpoint"),
    click.option("--portal-url", "management_portal_url"),
    click.option("--storage-suffix", "storage_endpoint_suffix"),
    click.option("--ad-tenant-url", "ad_tenant_url"),
    click.option("--common-tenant-id", "common_tenant_id"),
)


def environment_options(func: Callable[..., Any]) -> Callable[..., Any]:
    for option in reversed(ENVIRONMENT_OPTIONS):
        func = option(func)
    return func


@cli.group()
def environment() -> None:
    """Manage cloud environments."""


@environment.command("list")
@click.pass_obj
@command_errors
def environment_list(obj: CommandContext) -> None:
    """List built-in and custom environments; > marks the current one."""
    current = obj.profile.current_environment
    for env in obj.profile.list_environments():
        marker = ">" if env.name == current.name else " "
        kind = "built-in" if obj.profile.is_builtin_environment(env.name) else "custom"
        click.echo(f"{marker} {env.name}  ({kind})  {env.service_endpoint or ''}")


@environment.command("show")
@click.argument("name")
@click.pass_obj
@command_errors
def environment_show(obj: CommandContext, name: str) -> None:
    """Show an environment."""
    echo_json(obj.profile.get_environment(name).model_dump())


@environment.command("add")
@click.argument("name")
@environment_options
@click.pass_obj
@command_errors
def environment_add(obj: CommandContext, name: str, **fields: str | None) -> None:
    """Add a custom environment."""
    try:
        env = Environment(name=name, **fields)
    except ValueError as e:
        raise click.ClickException(f"Invalid environment: {e}") from e
    obj.profile.add_environment(env)
    click.echo(f"Added environment '{env.name}'")


@environment.command("set")
@click.argument("name")
@environment_options
@click.pass_obj
@command_errors
def environment_set(obj: CommandContext, name: str, **fields: str | None) -> None:
    """Change fields of a custom environment."""
    try:
        env = obj.profile.update_environment(name, **fields)
    except ValueError as e:
        raise click.ClickException(f"Invalid environment: {e}") from e
    click.echo(f"Updated environment '{env.name}'")


@environment.command("remove")
@click.argument("name")
@click.pass_obj
@command_errors
def environment_remove(obj: CommandContext, name: str) -> None:
    """Remove a custom environment."""
    env = obj.profile.remove_environment(name)
    click.echo(f"Removed environment '{env.name}'")


@environment.command("select")
@click.argument("name")
@click.pass_obj
@command_errors
def environment_select(obj: CommandContext, name: str) -> None:
    """Select the current environment."""
    env = obj.profile.select_environment(name)
    click.echo(f"Current environment: {env.name}")


# =============================================================================
# Operation Commands
# =============================================================================


@cli.group()
def operation() -> None:
    """Track asynchronous operations."""


@operation.command("status")
@click.argument("operation_id")
@click.option("--silent", is_flag=True, help="Do not print progress")
@click.pass_obj
@command_errors
def operation_status(obj: CommandContext, operation_id: str, silent: bool) -> None:
    """Wait for an operation to finish and print its final status."""
    result = obj.wait_for_operation(f"Operation {operation_id}", silent=silent, operation_id=operation_id)
    if result is not None:
        obj.reporter.write_object(result)


# =============================================================================
# Raw Calls
# =============================================================================


def read_body(path: Path | None) -> bytes | None:
    if path is None:
        return None
    if path.stat().st_size > MAX_BODY_FILE_SIZE_BYTES:
        raise click.ClickException(f"Body file exceeds maximum size of {MAX_BODY_FILE_SIZE_BYTES} bytes: {path}")
    return path.read_bytes()


@cli.command("call")
@click.argument("method", type=click.Choice(["GET", "POST", "PUT", "DELETE", "PATCH"], case_sensitive=False))
@click.argument("path")
@click.option("--body", "body_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--no-wait", is_flag=True, help="Print the response instead of waiting for the operation")
@click.option("--silent", is_flag=True, help="Do not print progress")
@click.pass_obj
@command_errors
def call(obj: CommandContext, method: str, path: str, body_file: Path | None, no_wait: bool, silent: bool) -> None:
    """Send a management request relative to the subscription and track its operation."""
    body = read_body(body_file)
    method = method.upper()

    if no_wait:
        channel = obj.channel
        response = invoke_call(lambda: channel.send(method, path, content=body), obj.reporter)
        echo_json(
            {
                "status_code": response.status_code,
                "operation_id": channel.last_operation_id,
                "body": response.text(),
            }
        )
        return

    obj.execute_client_action(f"{method} {path}", lambda channel: channel.send(method, path, content=body), silent)
