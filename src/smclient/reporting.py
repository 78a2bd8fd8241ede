"""Error, progress and result sinks for commands.

Core code never prints. It hands user-facing errors, progress records and
result objects to a Reporter; the CLI supplies a click-based one and
library callers can use the logging-based one.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, is_dataclass
from typing import Any, Protocol

import click
from pydantic import BaseModel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressRecord:
    """Progress of a tracked operation."""

    activity: str
    status_description: str
    completed: bool = False

    @classmethod
    def for_operation(cls, description: str, status: str | None, completed: bool = False) -> ProgressRecord:
        return cls(activity=description, status_description=f"Operation Status: {status}", completed=completed)


class Reporter(Protocol):
    def report_error(self, message: str) -> None: ...

    def report_progress(self, record: ProgressRecord) -> None: ...

    def write_object(self, obj: Any) -> None: ...


def to_jsonable(obj: Any) -> Any:
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json")
    if is_dataclass(obj) and not isinstance(obj, type):
        return asdict(obj)
    return obj


class LoggingReporter:
    """Reporter that routes everything to the module logger."""

    def __init__(self) -> None:
        self.error_count = 0

    def report_error(self, message: str) -> None:
        self.error_count += 1
        logger.error(message)

    def report_progress(self, record: ProgressRecord) -> None:
        logger.info(
            record.status_description,
            extra={"activity": record.activity, "completed": record.completed},
        )

    def write_object(self, obj: Any) -> None:
        logger.info("Result", extra={"result": to_jsonable(obj)})


class ClickReporter:
    """Reporter for the command line: errors and progress to stderr, results to stdout."""

    def __init__(self, quiet: bool = False) -> None:
        self.quiet = quiet
        self.error_count = 0

    def report_error(self, message: str) -> None:
        self.error_count += 1
        click.secho(f"Error: {message}", fg="red", err=True)

    def report_progress(self, record: ProgressRecord) -> None:
        if self.quiet:
            return
        marker = "done" if record.completed else "..."
        click.echo(f"{record.activity}: {record.status_description} {marker}", err=True)

    def write_object(self, obj: Any) -> None:
        click.echo(json.dumps(to_jsonable(obj), indent=2, default=str))
