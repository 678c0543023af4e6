"""Cargo invocations for refreshing lock files and checking builds."""

from __future__ import annotations

import typing as typ

from patch_main_commands import Stage, run_checked

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from patch_main_commands import RepositoryContext

__all__ = ["check_workspace", "update_dependencies"]

CHECK_ARGS: typ.Final[tuple[str, ...]] = ("--workspace", "--all-targets")


class RepositoryAction(typ.Protocol):
    """Protocol describing cargo actions run against a repository."""

    def __call__(self, context: RepositoryContext) -> None:
        """Execute the action within ``context``."""
        ...


def update_dependencies(
    context: RepositoryContext, names: cabc.Iterable[str]
) -> None:
    """Run ``cargo update`` restricted to the ``names`` packages.

    Raises
    ------
    ValueError
        Raised when ``names`` is empty, since an unscoped ``cargo update``
        would refresh every dependency in the lock file.
    """
    packages = [arg for name in names for arg in ("-p", name)]
    if not packages:
        message = "update_dependencies requires at least one package name"
        raise ValueError(message)
    run_checked(context, ["cargo", "update", *packages], stage=Stage.UPDATE)


def _create_cargo_action(
    subcommand: str,
    args: cabc.Sequence[str],
    stage: Stage,
    docstring: str,
) -> RepositoryAction:
    command = ("cargo", subcommand, *args)

    def action(context: RepositoryContext) -> None:
        run_checked(context, command, stage=stage)

    action.__doc__ = docstring
    return typ.cast("RepositoryAction", action)


check_workspace = _create_cargo_action(
    "check",
    CHECK_ARGS,
    Stage.CHECK,
    "Run ``cargo check`` across every workspace member and target.",
)
