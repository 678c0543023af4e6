"""External command execution scoped to a single repository checkout.

Every git, cargo, and gh invocation made by the patch automation flows
through :func:`run_command`. Commands run with an explicit working directory
taken from a :class:`RepositoryContext` rather than by changing the process
working directory, so operations against different repositories never
interfere with one another.

Failures are reported as :class:`StageError` instances tagged with the
pipeline :class:`Stage` that was running, allowing the batch runner to bucket
outcomes without inspecting error messages.
"""

from __future__ import annotations

import dataclasses as dc
import enum
import logging
import os
import shlex
import typing as typ
from pathlib import Path

from plumbum import local
from plumbum.commands import CommandNotFound
from plumbum.commands.processes import ProcessTimedOut

__all__ = [
    "DEFAULT_TIMEOUT_SECS",
    "CommandResult",
    "RepositoryContext",
    "Stage",
    "StageError",
    "check_result",
    "run_checked",
    "run_command",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECS: typ.Final[int] = 900

Command = typ.Sequence[str]


class Stage(enum.Enum):
    """Pipeline stage a repository operation can fail at."""

    BRANCH = "branch/checkout"
    PATCH = "manifest-patch"
    UPDATE = "dependency-update"
    POLICY = "policy-update"
    COMMIT = "commit"
    PUSH = "push"
    PULL_REQUEST = "pull-request"
    CHECK = "build-check"
    RESET = "reset"


class StageError(Exception):
    """Raised when a repository operation fails at a given stage."""

    def __init__(self, stage: Stage, message: str) -> None:
        super().__init__(message)
        self.stage = stage


@dc.dataclass(frozen=True)
class RepositoryContext:
    """Working-directory handle threaded through every repository operation."""

    directory: Path
    timeout_secs: int = DEFAULT_TIMEOUT_SECS

    @property
    def name(self) -> str:
        """Return the final path segment used when reporting on the repository."""
        return self.directory.name

    @property
    def manifest(self) -> Path:
        """Return the path of the repository's root ``Cargo.toml``."""
        return self.directory / "Cargo.toml"


@dc.dataclass(frozen=True)
class CommandResult:
    """Result of an external command execution."""

    command: list[str]
    return_code: int
    stdout: str
    stderr: str

    @property
    def succeeded(self) -> bool:
        """Return ``True`` when the command exited with status zero."""
        return self.return_code == 0

    def output(self) -> str:
        """Return stdout and stderr joined for marker matching."""
        return "\n".join(stream for stream in (self.stdout, self.stderr) if stream)


def run_command(
    context: RepositoryContext,
    command: Command,
    *,
    stage: Stage,
) -> CommandResult:
    """Run ``command`` inside ``context.directory`` and capture its output.

    Non-zero exit codes are returned to the caller untouched. A missing
    executable or an expired timeout cannot be represented as a result and is
    raised as :class:`StageError` for ``stage`` instead.

    Examples
    --------
    >>> context = RepositoryContext(Path("/srv/checkouts/iroh"))
    >>> run_command(context, ["git", "status"], stage=Stage.BRANCH).succeeded
    True
    """
    if not command:
        message = "run_command requires a non-empty command"
        raise ValueError(message)

    joined = shlex.join(command)
    LOGGER.debug("running in %s: %s", context.directory, joined)
    try:
        invocation = local[command[0]][list(command[1:])]
        return_code, stdout, stderr = invocation.run(
            retcode=None,
            timeout=context.timeout_secs,
            cwd=str(context.directory),
        )
    except CommandNotFound as error:
        message = f"{command[0]} not found on PATH; unable to run {joined}"
        raise StageError(stage, message) from error
    except ProcessTimedOut as error:
        LOGGER.exception(
            "command timed out in %s after %s seconds: %s",
            context.name,
            context.timeout_secs,
            joined,
        )
        message = f"{joined} timed out after {context.timeout_secs} seconds"
        raise StageError(stage, message) from error

    return CommandResult(
        command=list(command),
        return_code=return_code,
        stdout=stdout,
        stderr=stderr,
    )


def run_checked(
    context: RepositoryContext,
    command: Command,
    *,
    stage: Stage,
) -> CommandResult:
    """Run ``command`` and raise :class:`StageError` when it fails."""
    result = run_command(context, command, stage=stage)
    check_result(context, result, stage=stage)
    return result


def check_result(
    context: RepositoryContext,
    result: CommandResult,
    *,
    stage: Stage,
) -> None:
    """Raise :class:`StageError` for ``stage`` when ``result`` is a failure."""
    if not result.succeeded:
        _handle_command_failure(context, result, stage)


def _handle_command_failure(
    context: RepositoryContext,
    result: CommandResult,
    stage: Stage,
) -> typ.NoReturn:
    """Log diagnostics for a failed command and raise a stage error.

    Parameters
    ----------
    context
        Repository the command was run against.
    result
        The :class:`CommandResult` describing the invocation, including the
        command line and captured output streams.
    stage
        Stage that the failure is attributed to.
    """
    joined_command = shlex.join(result.command)
    LOGGER.error("command failed in %s: %s", context.name, joined_command)
    if result.stdout:
        LOGGER.error("stdout:%s%s", os.linesep, result.stdout)
    if result.stderr:
        LOGGER.error("stderr:%s%s", os.linesep, result.stderr)
    message = f"{joined_command} failed (exit code {result.return_code})"
    raise StageError(stage, message)
