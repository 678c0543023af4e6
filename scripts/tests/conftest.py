"""Shared fixtures and helper fakes for the patch automation tests."""

from __future__ import annotations

import dataclasses as dc
import sys
import typing as typ
from pathlib import Path

import pytest

SCRIPTS_DIR = Path(__file__).resolve().parents[1]
if str(SCRIPTS_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPTS_DIR))

import patch_main_commands  # noqa: E402
from patch_main_config import Config, CrateSource  # noqa: E402

Response = tuple[int, str, str]


@dc.dataclass(frozen=True)
class Invocation:
    """A command recorded by :class:`FakeLocal`."""

    cwd: Path
    args: list[str]
    timeout: int | None


@dc.dataclass(frozen=True)
class Rule:
    """Canned response for commands starting with ``prefix``."""

    prefix: tuple[str, ...]
    response: Response
    cwd: Path | None = None

    def matches(self, cwd: Path, args: list[str]) -> bool:
        """Return ``True`` when the rule applies to the invocation."""
        if self.cwd is not None and self.cwd != cwd:
            return False
        return tuple(args[: len(self.prefix)]) == self.prefix


class FakeInvocation:
    """Record a bound command and answer it from the fake's rules."""

    def __init__(self, local: FakeLocal, args: list[str]) -> None:
        """Store the invocation context for later assertions."""
        self._local = local
        self._args = args

    def run(self, *, retcode: object | None, timeout: int | None, cwd: str) -> Response:
        """Record an invocation and return the first matching response."""
        self._local.invocations.append(Invocation(Path(cwd), self._args, timeout))
        return self._local.respond(Path(cwd), self._args)


class FakeProgram:
    """Proxy indexing calls into ``FakeInvocation`` instances."""

    def __init__(self, local: FakeLocal, name: str) -> None:
        """Remember which program is being bound."""
        self._local = local
        self._name = name

    def __getitem__(self, args: object) -> FakeInvocation:
        """Return an invocation wrapper for the provided command arguments."""
        extras = list(args) if isinstance(args, (list, tuple)) else [str(args)]
        return FakeInvocation(self._local, [self._name, *extras])


class FakeLocal:
    """Mimic ``plumbum.local`` for git, cargo, and gh orchestration tests.

    Every command succeeds with empty output unless a rule registered through
    :meth:`respond_with` or :meth:`fail` matches it. The first matching rule
    wins.
    """

    def __init__(self) -> None:
        """Start with no rules and no recorded invocations."""
        self.rules: list[Rule] = []
        self.invocations: list[Invocation] = []

    def __getitem__(self, name: str) -> FakeProgram:
        """Return a ``FakeProgram`` proxy for ``name``."""
        return FakeProgram(self, name)

    def respond_with(
        self,
        *prefix: str,
        response: Response,
        cwd: Path | None = None,
    ) -> None:
        """Answer commands starting with ``prefix`` with ``response``."""
        self.rules.append(Rule(tuple(prefix), response, cwd))

    def fail(
        self,
        *prefix: str,
        stderr: str = "",
        cwd: Path | None = None,
    ) -> None:
        """Make commands starting with ``prefix`` exit with status one."""
        self.respond_with(*prefix, response=(1, "", stderr), cwd=cwd)

    def respond(self, cwd: Path, args: list[str]) -> Response:
        """Return the response for an invocation."""
        for rule in self.rules:
            if rule.matches(cwd, args):
                return rule.response
        return 0, "", ""

    def commands(self, cwd: Path | None = None) -> list[list[str]]:
        """Return recorded command lines, optionally for one directory only."""
        return [
            invocation.args
            for invocation in self.invocations
            if cwd is None or invocation.cwd == cwd
        ]


@pytest.fixture
def fake_local(monkeypatch: pytest.MonkeyPatch) -> FakeLocal:
    """Install a ``FakeLocal`` in place of ``plumbum.local``."""
    fake = FakeLocal()
    monkeypatch.setattr(patch_main_commands, "local", fake)
    return fake


@pytest.fixture
def make_repository(tmp_path: Path) -> typ.Callable[..., Path]:
    """Return a factory creating repository directories with a manifest."""

    def _make(
        name: str,
        manifest: str,
        *,
        policy: str | None = None,
        lock: bool = True,
    ) -> Path:
        directory = tmp_path / name
        directory.mkdir()
        (directory / "Cargo.toml").write_text(manifest, encoding="utf-8")
        if policy is not None:
            (directory / "deny.toml").write_text(policy, encoding="utf-8")
        if lock:
            (directory / "Cargo.lock").write_text("# lock\n", encoding="utf-8")
        return directory

    return _make


@pytest.fixture
def make_config() -> typ.Callable[..., Config]:
    """Return a factory building configurations for the given directories."""

    def _make(*directories: Path, **overrides: str) -> Config:
        return Config(
            directories=tuple(directories),
            crates=(
                CrateSource("foo", "https://example/foo"),
                CrateSource("bar", "https://example/bar"),
            ),
            branch_name="patch-main",
            **overrides,
        )

    return _make
