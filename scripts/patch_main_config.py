"""Configuration loading for the patch automation.

The configuration file is TOML::

    directories = ["/home/dev/src/iroh-gossip", "/home/dev/src/iroh-blobs"]
    branch_name = "patch-iroh-main"

    [[crates]]
    name = "iroh"
    repo_url = "https://github.com/n0-computer/iroh"

Any problem with the file is fatal and reported through ``SystemExit`` before a
single repository is touched.
"""

from __future__ import annotations

import dataclasses as dc
import typing as typ
from pathlib import Path

import tomllib

__all__ = [
    "DEFAULT_BASE_BRANCH",
    "DEFAULT_COMMIT_SUBJECT",
    "DEFAULT_POLICY_FILE",
    "DEFAULT_PR_TITLE",
    "Config",
    "CrateSource",
    "DependencyOverride",
    "load_config",
]

DEFAULT_BASE_BRANCH: typ.Final[str] = "main"
DEFAULT_POLICY_FILE: typ.Final[str] = "deny.toml"
DEFAULT_COMMIT_SUBJECT: typ.Final[str] = (
    "chore: patch dependencies to use their main branches"
)
DEFAULT_PR_TITLE: typ.Final[str] = "Patch crates to use the main branch of dependencies"


@dc.dataclass(frozen=True)
class DependencyOverride:
    """A single ``[patch.crates-io]`` entry redirecting a crate to git."""

    name: str
    url: str
    branch: str = "main"


@dc.dataclass(frozen=True)
class CrateSource:
    """Upstream crate whose development branch repositories should track."""

    name: str
    repo_url: str

    def as_override(self, branch: str) -> DependencyOverride:
        """Return the override entry that points this crate at ``branch``."""
        return DependencyOverride(self.name, self.repo_url, branch)


@dc.dataclass(frozen=True)
class Config:
    """Validated run configuration; immutable once loaded."""

    directories: tuple[Path, ...]
    crates: tuple[CrateSource, ...]
    branch_name: str
    base_branch: str = DEFAULT_BASE_BRANCH
    patch_branch: str = "main"
    policy_file: str = DEFAULT_POLICY_FILE
    commit_subject: str = DEFAULT_COMMIT_SUBJECT
    pr_title: str = DEFAULT_PR_TITLE

    def candidate_overrides(self) -> list[DependencyOverride]:
        """Return one override per configured crate, in configuration order."""
        return [crate.as_override(self.patch_branch) for crate in self.crates]


def load_config(path: Path) -> Config:
    """Read and validate the configuration file at ``path``.

    Raises
    ------
    SystemExit
        Raised when the file cannot be read or parsed, a required key is
        missing or mistyped, or a directory is not an absolute path.
    """
    path = Path(path)
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as error:
        message = f"failed to read config file at {path}: {error}"
        raise SystemExit(message) from error
    try:
        data = tomllib.loads(content)
    except tomllib.TOMLDecodeError as error:
        message = f"failed to parse config file {path}: {error}"
        raise SystemExit(message) from error

    return Config(
        directories=_parse_directories(data.get("directories"), path),
        crates=_parse_crates(data.get("crates"), path),
        branch_name=_require_string(data, "branch_name", path),
        **_optional_strings(data, path),
    )


def _parse_directories(value: object, path: Path) -> tuple[Path, ...]:
    if not isinstance(value, list) or not value:
        message = f"expected a non-empty 'directories' array in {path}"
        raise SystemExit(message)
    directories: list[Path] = []
    for entry in value:
        if not isinstance(entry, str):
            message = f"directory entries must be strings in {path}: {entry!r}"
            raise SystemExit(message)
        directory = Path(entry)
        if not directory.is_absolute():
            message = f"directory path {entry!r} is not absolute"
            raise SystemExit(message)
        directories.append(directory)
    return tuple(directories)


def _parse_crates(value: object, path: Path) -> tuple[CrateSource, ...]:
    if not isinstance(value, list) or not value:
        message = f"expected a non-empty 'crates' array of tables in {path}"
        raise SystemExit(message)
    crates: list[CrateSource] = []
    for entry in value:
        if not isinstance(entry, dict):
            message = f"crate entries must be tables in {path}: {entry!r}"
            raise SystemExit(message)
        crates.append(
            CrateSource(
                name=_require_string(entry, "name", path),
                repo_url=_require_string(entry, "repo_url", path),
            )
        )
    return tuple(crates)


def _require_string(table: dict[str, object], key: str, path: Path) -> str:
    value = table.get(key)
    if not isinstance(value, str) or not value.strip():
        message = f"expected a non-empty string for {key!r} in {path}"
        raise SystemExit(message)
    return value


def _optional_strings(data: dict[str, object], path: Path) -> dict[str, str]:
    """Collect the optional string settings present in ``data``."""
    keys = ("base_branch", "patch_branch", "policy_file", "commit_subject", "pr_title")
    settings = {key: _require_string(data, key, path) for key in keys if key in data}
    if "policy_file" in settings:
        _check_policy_file(settings["policy_file"])
    return settings


def _check_policy_file(value: str) -> None:
    """Reject policy paths that would resolve outside the repository root."""
    policy = Path(value)
    if policy.is_absolute() or ".." in policy.parts:
        message = f"policy_file {value!r} must be relative to the repository root"
        raise SystemExit(message)
