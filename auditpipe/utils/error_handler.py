"""Error boundary for AuditPipe commands.

AuditPipeError subclasses (bad rule sets, invalid configuration, unknown
executions) are expected operator mistakes: they become a one-line click
error and nothing is written to disk. Anything else is a bug in a stage or
agent: the traceback is logged and an NDJSON crash record is appended to
<root>/.pf/error.log so it can be attached to a report.
"""

import json
import traceback
from collections.abc import Callable
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Any

import click

from auditpipe.errors import AuditPipeError
from auditpipe.utils.logging import logger

from .constants import ERROR_LOG_FILE


def error_log_path(root: Any = None) -> Path:
    """Error log of the project a command ran against (cwd when it has no --root)."""
    return Path(root or ".") / ERROR_LOG_FILE


def _append_crash_record(log_path: Path, command: str, params: dict[str, Any], exc: Exception) -> None:
    record = {
        "time": datetime.now(timezone.utc).isoformat(),
        "command": command,
        "params": {key: str(value) for key, value in params.items() if value is not None},
        "errorType": type(exc).__name__,
        "error": str(exc),
        "traceback": traceback.format_exception(type(exc), exc, exc.__traceback__),
    }
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with open(log_path, "a", encoding="utf-8") as f:
        f.write(json.dumps(record) + "\n")


def handle_exceptions(func: Callable[..., Any]) -> Callable[..., Any]:
    """Decorator mapping command failures onto click errors."""

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except (click.ClickException, click.exceptions.Exit, click.Abort):
            raise
        except AuditPipeError as e:
            logger.debug(f"Command '{func.__name__}' rejected: {type(e).__name__}: {e}")
            raise click.ClickException(f"{type(e).__name__}: {e}") from e
        except Exception as e:
            log_path = error_log_path(kwargs.get("root"))
            logger.opt(exception=True).error(
                "Command '{cmd}' crashed: {err}",
                cmd=func.__name__,
                err=str(e),
            )
            _append_crash_record(log_path, func.__name__, kwargs, e)
            raise click.ClickException(
                f"Unexpected {type(e).__name__}: {e}\n\nCrash record appended to: {log_path}"
            ) from e

    return wrapper
