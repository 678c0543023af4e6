"""Git and GitHub CLI operations used by the patch automation.

Each helper acts on the repository described by a
:class:`~patch_main_commands.RepositoryContext` and attributes failures to the
stage it belongs to.
"""

from __future__ import annotations

import enum
import logging
import typing as typ

from patch_main_commands import (
    Stage,
    StageError,
    check_result,
    run_checked,
    run_command,
)

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    from pathlib import Path

    from patch_main_commands import CommandResult, RepositoryContext

__all__ = [
    "BranchDeletion",
    "branch_exists",
    "checkout_and_pull",
    "checkout_branch",
    "commit_paths",
    "delete_local_branch",
    "delete_remote_branch",
    "hard_reset",
    "open_pull_request",
    "prepare_branch",
    "push_branch",
]

LOGGER = logging.getLogger(__name__)

REMOTE: typ.Final[str] = "origin"

MISSING_BRANCH_MARKERS: typ.Final[tuple[str, ...]] = (
    "not found",
    "remote ref does not exist",
)

EXISTING_PR_MARKERS: typ.Final[tuple[str, ...]] = ("already exists",)


class BranchDeletion(enum.Enum):
    """Result of a best-effort branch deletion."""

    DELETED = "deleted"
    NOT_FOUND = "not-found"
    FAILED = "failed"


def _contains_marker(result: CommandResult, markers: tuple[str, ...]) -> bool:
    text = result.output().casefold()
    return any(marker.casefold() in text for marker in markers)


def branch_exists(context: RepositoryContext, branch: str) -> bool:
    """Return ``True`` when ``branch`` exists locally."""
    result = run_command(
        context,
        ["git", "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"],
        stage=Stage.BRANCH,
    )
    return result.succeeded


def checkout_branch(context: RepositoryContext, branch: str) -> None:
    """Switch the working tree to ``branch``."""
    run_checked(context, ["git", "checkout", branch], stage=Stage.BRANCH)


def checkout_and_pull(context: RepositoryContext, branch: str) -> None:
    """Switch to ``branch`` and fast-forward it from the remote."""
    checkout_branch(context, branch)
    run_checked(context, ["git", "pull"], stage=Stage.BRANCH)


def prepare_branch(context: RepositoryContext, branch: str, base: str) -> bool:
    """Make ``branch`` the checked-out branch, creating it from ``base``.

    Returns ``True`` when the branch was created and ``False`` when an existing
    local branch was reused.
    """
    if branch_exists(context, branch):
        LOGGER.info(
            "branch %r already exists in %s; skipping branch creation",
            branch,
            context.name,
        )
        checkout_branch(context, branch)
        return False

    checkout_and_pull(context, base)
    run_checked(context, ["git", "checkout", "-b", branch], stage=Stage.BRANCH)
    return True


def commit_paths(
    context: RepositoryContext,
    paths: cabc.Sequence[Path],
    message: str,
) -> None:
    """Stage ``paths`` and commit them with ``message``."""
    relative = [str(path.relative_to(context.directory)) for path in paths]
    run_checked(context, ["git", "add", "--", *relative], stage=Stage.COMMIT)
    run_checked(context, ["git", "commit", "-m", message], stage=Stage.COMMIT)


def push_branch(context: RepositoryContext, branch: str) -> None:
    """Push ``branch`` to the remote and track it."""
    run_checked(
        context,
        ["git", "push", "--set-upstream", REMOTE, branch],
        stage=Stage.PUSH,
    )


def open_pull_request(
    context: RepositoryContext,
    *,
    title: str,
    body: str,
    base: str,
    head: str,
) -> bool:
    """Open a pull request for ``head``, refreshing it when one already exists.

    Returns ``True`` when a new pull request was created and ``False`` when an
    existing one was edited.
    """
    created = run_command(
        context,
        [
            "gh",
            "pr",
            "create",
            "--title",
            title,
            "--body",
            body,
            "--base",
            base,
            "--head",
            head,
        ],
        stage=Stage.PULL_REQUEST,
    )
    if created.succeeded:
        return True
    if not _contains_marker(created, EXISTING_PR_MARKERS):
        check_result(context, created, stage=Stage.PULL_REQUEST)

    LOGGER.info("pull request for %s already exists; updating it", head)
    run_checked(
        context,
        ["gh", "pr", "edit", head, "--title", title, "--body", body],
        stage=Stage.PULL_REQUEST,
    )
    return False


def hard_reset(context: RepositoryContext) -> None:
    """Discard all local changes to tracked files."""
    run_checked(context, ["git", "reset", "--hard"], stage=Stage.RESET)


def delete_local_branch(context: RepositoryContext, branch: str) -> BranchDeletion:
    """Force-delete ``branch`` locally without raising on failure."""
    return _delete_branch(context, ["git", "branch", "-D", branch])


def delete_remote_branch(context: RepositoryContext, branch: str) -> BranchDeletion:
    """Delete ``branch`` on the remote without raising on failure."""
    return _delete_branch(context, ["git", "push", REMOTE, "--delete", branch])


def _delete_branch(
    context: RepositoryContext, command: cabc.Sequence[str]
) -> BranchDeletion:
    try:
        result = run_command(context, command, stage=Stage.BRANCH)
    except StageError as error:
        LOGGER.warning("branch deletion failed in %s: %s", context.name, error)
        return BranchDeletion.FAILED
    if result.succeeded:
        return BranchDeletion.DELETED
    if _contains_marker(result, MISSING_BRANCH_MARKERS):
        return BranchDeletion.NOT_FOUND
    LOGGER.warning(
        "branch deletion failed in %s (exit code %s): %s",
        context.name,
        result.return_code,
        result.stderr.strip() or result.stdout.strip(),
    )
    return BranchDeletion.FAILED
