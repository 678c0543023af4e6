"""Per-repository orchestration and batch execution for the patch automation.

:func:`patch_repository` walks a single checkout through branch setup,
manifest patching, lock refresh, policy update, commit, and the optional push
and pull request. The batch helpers run an operation over every configured
repository, converting each :class:`~patch_main_commands.StageError` into a
:class:`RepositoryOutcome` so one broken repository never stops the others.

Examples
--------
Patch every repository and commit without pushing::

    >>> config = load_config(Path("patch.toml"))  # doctest: +SKIP
    >>> report = patch_all(config, execute=False)  # doctest: +SKIP
    >>> [path.name for path in report.successes]  # doctest: +SKIP
    ['iroh-gossip', 'iroh-blobs']
"""

from __future__ import annotations

import collections.abc as cabc
import dataclasses as dc
import functools
import logging
import typing as typ
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from patch_main_cargo import check_workspace, update_dependencies
from patch_main_commands import (
    DEFAULT_TIMEOUT_SECS,
    RepositoryContext,
    Stage,
    StageError,
)
from patch_main_git import (
    BranchDeletion,
    checkout_and_pull,
    checkout_branch,
    commit_paths,
    delete_local_branch,
    delete_remote_branch,
    hard_reset,
    open_pull_request,
    prepare_branch,
    push_branch,
)
from patch_main_manifest import (
    ManifestError,
    ensure_overrides,
    read_overridden_names,
    read_referenced_names,
)
from patch_main_policy import PolicyError, update_policy_allowlist

if typ.TYPE_CHECKING:
    from patch_main_config import Config, DependencyOverride

__all__ = [
    "BatchReport",
    "CleanupResult",
    "RepositoryOutcome",
    "cleanup_all",
    "cleanup_repository",
    "commit_message",
    "patch_all",
    "patch_repository",
    "reset_all",
    "reset_repository",
    "run_all",
    "run_repository",
    "update_all",
    "update_and_check",
]

LOGGER = logging.getLogger(__name__)

LOCK_FILE: typ.Final[str] = "Cargo.lock"

CHANGE_SUMMARY: typ.Final[str] = (
    "This PR updates the following dependencies to use their main branches:"
)

RepositoryOperation = typ.Callable[[RepositoryContext], object]


@dc.dataclass(frozen=True)
class RepositoryOutcome:
    """Terminal state of one repository within a batch."""

    directory: Path
    failed_stage: Stage | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        """Return ``True`` when the repository reached its final stage."""
        return self.failed_stage is None


@dc.dataclass(frozen=True)
class BatchReport:
    """Outcomes of a batch, in the order repositories were configured."""

    outcomes: tuple[RepositoryOutcome, ...]

    @property
    def successes(self) -> list[Path]:
        """Return the repositories that completed every stage."""
        return [outcome.directory for outcome in self.outcomes if outcome.succeeded]

    @property
    def failures(self) -> dict[Stage, list[Path]]:
        """Return failed repositories grouped by the stage they failed at."""
        grouped: dict[Stage, list[Path]] = {}
        for stage in Stage:
            failed = [
                outcome.directory
                for outcome in self.outcomes
                if outcome.failed_stage is stage
            ]
            if failed:
                grouped[stage] = failed
        return grouped

    def log_summary(self, operation: str) -> None:
        """Write the grouped end-of-run summary to the log."""
        if successes := self.successes:
            LOGGER.info("%s succeeded:", operation)
            for directory in successes:
                LOGGER.info("\t%s", directory.name)
        for stage, directories in self.failures.items():
            LOGGER.warning("%s failed at stage %s:", operation, stage.value)
            for directory in directories:
                LOGGER.warning("\t%s", directory.name)


@dc.dataclass(frozen=True)
class CleanupResult:
    """Best-effort branch deletion results for one repository."""

    local: BranchDeletion
    remote: BranchDeletion


def run_repository(
    directory: Path,
    operation: RepositoryOperation,
    *,
    timeout_secs: int = DEFAULT_TIMEOUT_SECS,
) -> RepositoryOutcome:
    """Run ``operation`` against ``directory`` and capture its outcome."""
    directory = Path(directory)
    context = RepositoryContext(directory, timeout_secs)
    try:
        if not directory.is_dir():
            message = f"repository directory {directory} does not exist"
            raise StageError(Stage.BRANCH, message)
        operation(context)
    except StageError as error:
        LOGGER.error(
            "%s failed at stage %s: %s", context.name, error.stage.value, error
        )
        return RepositoryOutcome(directory, error.stage, str(error))
    return RepositoryOutcome(directory)


def run_all(
    directories: cabc.Iterable[Path],
    operation: RepositoryOperation,
    *,
    timeout_secs: int = DEFAULT_TIMEOUT_SECS,
    jobs: int = 1,
) -> BatchReport:
    """Run ``operation`` for every repository and collect the outcomes.

    Repositories run one after another unless ``jobs`` is greater than one, in
    which case independent repositories share a thread pool. The stages of a
    single repository always run sequentially and the report keeps the input
    order either way.
    """
    if jobs < 1:
        message = "jobs must be a positive integer"
        raise ValueError(message)

    run_one = functools.partial(
        run_repository, operation=operation, timeout_secs=timeout_secs
    )
    targets = list(directories)
    if jobs == 1:
        return BatchReport(tuple(run_one(directory) for directory in targets))
    with ThreadPoolExecutor(max_workers=jobs) as executor:
        return BatchReport(tuple(executor.map(run_one, targets)))


def commit_message(subject: str, overrides: cabc.Iterable[DependencyOverride]) -> str:
    """Return the commit message describing ``overrides``.

    Examples
    --------
    >>> from patch_main_config import DependencyOverride
    >>> print(commit_message("chore: patch", [DependencyOverride("foo", "https://x")]))
    chore: patch
    <BLANKLINE>
    This PR updates the following dependencies to use their main branches:
    <BLANKLINE>
    - `foo` from `https://x`
    """
    body = _describe_sources((override.name, override.url) for override in overrides)
    return f"{subject}\n\n{body}"


def _describe_sources(sources: cabc.Iterable[tuple[str, str]]) -> str:
    lines = "\n".join(f"- `{name}` from `{url}`" for name, url in sources)
    return f"{CHANGE_SUMMARY}\n\n{lines}"


def patch_repository(
    context: RepositoryContext,
    config: Config,
    *,
    execute: bool = False,
) -> list[DependencyOverride]:
    """Patch one repository and return the overrides applied to it.

    Parameters
    ----------
    context : RepositoryContext
        Checkout to operate on.
    config : Config
        Run configuration naming the crates and branches involved.
    execute : bool, default False
        Push the branch and open (or refresh) a pull request after
        committing. Without it the run stops after the local commit.

    Returns
    -------
    list[DependencyOverride]
        Overrides added to the manifest, empty when nothing needed patching.

    Raises
    ------
    StageError
        Raised for the first stage that fails. A failed ``cargo update`` is
        raised only after the manifest change has been committed.
    """
    LOGGER.info("working with repository %s", context.name)
    prepare_branch(context, config.branch_name, config.base_branch)

    applied = _apply_overrides(context, config.candidate_overrides())
    if not applied:
        LOGGER.info("%s: no new overrides needed; nothing to commit", context.name)
        return []

    paths = [context.manifest]
    update_error: StageError | None = None
    try:
        update_dependencies(context, [override.name for override in applied])
    except StageError as error:
        LOGGER.warning(
            "%s: dependency update failed; committing the manifest without "
            "a refreshed lock file",
            context.name,
        )
        update_error = error
    else:
        lock_file = context.directory / LOCK_FILE
        if lock_file.exists():
            paths.append(lock_file)

    policy = context.directory / config.policy_file
    if _update_policy(policy, applied):
        paths.append(policy)

    commit_paths(context, paths, commit_message(config.commit_subject, applied))
    if update_error is not None:
        raise update_error

    if not execute:
        LOGGER.info(
            "dry run complete for %s; changes were committed but not pushed",
            context.name,
        )
        return applied

    push_branch(context, config.branch_name)
    overridden = _overridden_names(context)
    relevant = [crate for crate in config.crates if crate.name in overridden]
    open_pull_request(
        context,
        title=config.pr_title,
        body=_describe_sources((crate.name, crate.repo_url) for crate in relevant),
        base=config.base_branch,
        head=config.branch_name,
    )
    LOGGER.info("pull request ready for %s", context.name)
    return applied


def _apply_overrides(
    context: RepositoryContext,
    candidates: list[DependencyOverride],
) -> list[DependencyOverride]:
    try:
        applied = ensure_overrides(context.manifest, candidates)
    except ManifestError as error:
        raise StageError(Stage.PATCH, str(error)) from error
    for override in applied:
        LOGGER.info(
            "%s: patched %s to %s (%s)",
            context.name,
            override.name,
            override.url,
            override.branch,
        )
    return applied


def _update_policy(policy: Path, applied: list[DependencyOverride]) -> bool:
    try:
        return update_policy_allowlist(policy, applied)
    except PolicyError as error:
        raise StageError(Stage.POLICY, str(error)) from error


def _overridden_names(context: RepositoryContext) -> set[str]:
    try:
        return read_overridden_names(context.manifest)
    except ManifestError as error:
        raise StageError(Stage.PULL_REQUEST, str(error)) from error


def update_and_check(context: RepositoryContext, config: Config) -> None:
    """Refresh the configured crates on the base branch and build-check."""
    checkout_and_pull(context, config.base_branch)
    try:
        referenced = read_referenced_names(context.manifest)
    except ManifestError as error:
        raise StageError(Stage.UPDATE, str(error)) from error

    names = [crate.name for crate in config.crates if crate.name in referenced]
    if names:
        update_dependencies(context, names)
    else:
        LOGGER.info("%s references none of the configured crates", context.name)
    check_workspace(context)


def reset_repository(context: RepositoryContext) -> None:
    """Discard all local changes in the repository."""
    hard_reset(context)


def cleanup_repository(context: RepositoryContext, config: Config) -> CleanupResult:
    """Return to the base branch and delete the automation branch everywhere."""
    checkout_branch(context, config.base_branch)
    result = CleanupResult(
        local=delete_local_branch(context, config.branch_name),
        remote=delete_remote_branch(context, config.branch_name),
    )
    LOGGER.info(
        "%s: local branch %s, remote branch %s",
        context.name,
        result.local.value,
        result.remote.value,
    )
    return result


def patch_all(
    config: Config,
    *,
    execute: bool = False,
    timeout_secs: int = DEFAULT_TIMEOUT_SECS,
    jobs: int = 1,
) -> BatchReport:
    """Patch every configured repository and log the summary."""
    operation = functools.partial(patch_repository, config=config, execute=execute)
    report = run_all(
        config.directories, operation, timeout_secs=timeout_secs, jobs=jobs
    )
    report.log_summary("patch")
    return report


def update_all(
    config: Config,
    *,
    timeout_secs: int = DEFAULT_TIMEOUT_SECS,
    jobs: int = 1,
) -> BatchReport:
    """Run update-and-check for every configured repository."""
    operation = functools.partial(update_and_check, config=config)
    report = run_all(
        config.directories, operation, timeout_secs=timeout_secs, jobs=jobs
    )
    report.log_summary("update")
    return report


def reset_all(
    config: Config,
    *,
    timeout_secs: int = DEFAULT_TIMEOUT_SECS,
    jobs: int = 1,
) -> BatchReport:
    """Hard-reset every configured repository."""
    report = run_all(
        config.directories, reset_repository, timeout_secs=timeout_secs, jobs=jobs
    )
    report.log_summary("reset")
    return report


def cleanup_all(
    config: Config,
    *,
    timeout_secs: int = DEFAULT_TIMEOUT_SECS,
    jobs: int = 1,
) -> BatchReport:
    """Delete the automation branch from every configured repository."""
    LOGGER.info("cleaning up %r branches", config.branch_name)
    operation = functools.partial(cleanup_repository, config=config)
    report = run_all(
        config.directories, operation, timeout_secs=timeout_secs, jobs=jobs
    )
    report.log_summary("cleanup")
    return report
