#!/usr/bin/env -S uv run python
"""Patch a fleet of Rust repositories to track upstream development branches.

The tool reads a TOML configuration naming local repository checkouts and the
upstream crates they should follow, then runs one of four operations across
every repository:

``patch``
    Add ``[patch.crates-io]`` git overrides, refresh the lock file, allow-list
    the sources in ``deny.toml``, and commit on the automation branch. With
    ``--execute`` the branch is pushed and a pull request opened.
``update``
    Refresh the configured crates on the base branch and run ``cargo check``.
``reset``
    Hard-reset every repository.
``cleanup``
    Delete the automation branch locally and on the remote.

Examples
--------
Dry-run the patch step, committing locally only::

    python scripts/patch_main.py patch --config patch.toml --verbose

Push and open pull requests, with a shorter command timeout::

    PATCH_MAIN_TIMEOUT_SECS=300 python scripts/patch_main.py patch \
        --config patch.toml --execute
"""

# /// script
# requires-python = ">=3.13"
# dependencies = [
#     "cyclopts>=2.9",
#     "plumbum",
#     "tomlkit",
# ]
# ///
from __future__ import annotations

import logging
import typing as typ
from pathlib import Path

import cyclopts
from cyclopts import App, Parameter
from patch_main_commands import DEFAULT_TIMEOUT_SECS
from patch_main_config import load_config
from patch_main_workflow import cleanup_all, patch_all, reset_all, update_all

if typ.TYPE_CHECKING:
    from patch_main_config import Config
    from patch_main_workflow import BatchReport

LOG_FORMAT: typ.Final[str] = "%(levelname)s %(name)s: %(message)s"

app = App(
    name="patch-main",
    help="Patch Rust repositories to use the main branch of upstream crates.",
    config=cyclopts.config.Env("PATCH_MAIN_", command=False),
)

ConfigOption = typ.Annotated[Path, Parameter(env_var="PATCH_MAIN_CONFIG")]
VerboseOption = typ.Annotated[
    bool, Parameter(name=["--verbose", "-v"], env_var="PATCH_MAIN_VERBOSE")
]
TimeoutOption = typ.Annotated[int, Parameter(env_var="PATCH_MAIN_TIMEOUT_SECS")]
JobsOption = typ.Annotated[int, Parameter(env_var="PATCH_MAIN_JOBS")]


def _configure_logging(*, verbose: bool) -> None:
    """Send log records to stderr, showing progress only when ``verbose``."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format=LOG_FORMAT,
        force=True,
    )


def _prepare(
    config: Path, *, verbose: bool, timeout_secs: int, jobs: int
) -> Config:
    """Validate shared options and load the run configuration."""
    _configure_logging(verbose=verbose)
    if timeout_secs <= 0:
        message = "timeout-secs must be a positive integer"
        raise SystemExit(message)
    if jobs <= 0:
        message = "jobs must be a positive integer"
        raise SystemExit(message)
    return load_config(config)


def _exit_on_failures(report: BatchReport, operation: str) -> None:
    """Abort with a non-zero status once the summary names failed repositories."""
    failed = sum(len(directories) for directories in report.failures.values())
    if failed:
        total = len(report.outcomes)
        message = f"{operation} failed for {failed} of {total} repositories"
        raise SystemExit(message)


@app.command
def patch(
    *,
    config: ConfigOption,
    execute: bool = False,
    verbose: VerboseOption = False,
    timeout_secs: TimeoutOption = DEFAULT_TIMEOUT_SECS,
    jobs: JobsOption = 1,
) -> None:
    """Add git overrides for the configured crates and commit them.

    Parameters
    ----------
    config : Path
        Path to the TOML configuration file.
    execute : bool, optional
        Push the branch and open a pull request. Without it changes are only
        committed locally.
    verbose : bool, optional
        Log progress at ``INFO`` level.
    timeout_secs : int, optional
        Timeout in seconds for each external command.
    jobs : int, optional
        Number of repositories processed concurrently.
    """
    loaded = _prepare(config, verbose=verbose, timeout_secs=timeout_secs, jobs=jobs)
    report = patch_all(loaded, execute=execute, timeout_secs=timeout_secs, jobs=jobs)
    _exit_on_failures(report, "patch")


@app.command
def cleanup(
    *,
    config: ConfigOption,
    verbose: VerboseOption = False,
    timeout_secs: TimeoutOption = DEFAULT_TIMEOUT_SECS,
    jobs: JobsOption = 1,
) -> None:
    """Delete the automation branch locally and on the remote."""
    loaded = _prepare(config, verbose=verbose, timeout_secs=timeout_secs, jobs=jobs)
    report = cleanup_all(loaded, timeout_secs=timeout_secs, jobs=jobs)
    _exit_on_failures(report, "cleanup")


@app.command
def update(
    *,
    config: ConfigOption,
    verbose: VerboseOption = False,
    timeout_secs: TimeoutOption = DEFAULT_TIMEOUT_SECS,
    jobs: JobsOption = 1,
) -> None:
    """Update the configured crates on the base branch and run ``cargo check``."""
    loaded = _prepare(config, verbose=verbose, timeout_secs=timeout_secs, jobs=jobs)
    report = update_all(loaded, timeout_secs=timeout_secs, jobs=jobs)
    _exit_on_failures(report, "update")


@app.command
def reset(
    *,
    config: ConfigOption,
    verbose: VerboseOption = False,
    timeout_secs: TimeoutOption = DEFAULT_TIMEOUT_SECS,
    jobs: JobsOption = 1,
) -> None:
    """Discard local changes in every repository with ``git reset --hard``."""
    loaded = _prepare(config, verbose=verbose, timeout_secs=timeout_secs, jobs=jobs)
    report = reset_all(loaded, timeout_secs=timeout_secs, jobs=jobs)
    _exit_on_failures(report, "reset")


def main() -> None:
    """Run the command-line interface."""
    app()


if __name__ == "__main__":
    main()
