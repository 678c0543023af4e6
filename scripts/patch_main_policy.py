"""Maintain the ``sources.allow-git`` list of a cargo-deny policy file.

Once a repository's manifest points crates at git, ``cargo deny`` rejects the
build unless those repositories are allow-listed. The helpers here merge the
newly patched URLs into the existing list.
"""

from __future__ import annotations

import collections.abc as cabc
import logging
import typing as typ
from pathlib import Path

from tomlkit import array, dumps, parse, table
from tomlkit.exceptions import TOMLKitError
from tomlkit.items import Array

if typ.TYPE_CHECKING:
    from patch_main_config import DependencyOverride
    from tomlkit.toml_document import TOMLDocument

__all__ = ["PolicyError", "allowed_git_sources", "update_policy_allowlist"]

LOGGER = logging.getLogger(__name__)


class PolicyError(Exception):
    """Raised when a policy file cannot be read, parsed, or rewritten."""


def update_policy_allowlist(
    policy: Path,
    applied: cabc.Iterable[DependencyOverride],
) -> bool:
    """Union the URLs of ``applied`` into ``[sources].allow-git``.

    Existing URLs keep their position and new URLs follow in the order they
    were applied; a URL is never listed twice. Nothing happens when
    ``policy`` does not exist.

    Returns
    -------
    bool
        ``True`` when the policy file was rewritten.

    Raises
    ------
    PolicyError
        Raised when the policy file cannot be parsed, serialised, or written.
    """
    policy = Path(policy)
    if not policy.exists():
        LOGGER.info("no policy file at %s; skipping allow-list update", policy)
        return False

    try:
        document = parse(policy.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, TOMLKitError) as error:
        message = f"failed to load policy file {policy}: {error}"
        raise PolicyError(message) from error

    allow_git = _ensure_allow_git(document, policy)
    known = set(allowed_git_sources(document))
    added = False
    for override in applied:
        if override.url in known:
            continue
        allow_git.append(override.url)
        known.add(override.url)
        added = True

    if not added:
        return False

    if len(allow_git) > 1:
        allow_git.multiline(multiline=True)
    _write_document(document, policy)
    return True


def allowed_git_sources(document: TOMLDocument) -> list[str]:
    """Return the ``sources.allow-git`` URLs declared in ``document``."""
    sources = document.get("sources")
    if not isinstance(sources, cabc.Mapping):
        return []
    allow_git = sources.get("allow-git")
    if not isinstance(allow_git, list):
        return []
    return [str(url) for url in allow_git]


def _ensure_allow_git(document: TOMLDocument, policy: Path) -> Array:
    """Return the ``allow-git`` array, creating missing tables on the way."""
    sources = document.get("sources")
    if sources is None:
        document["sources"] = table()
        sources = document["sources"]
    elif not isinstance(sources, cabc.MutableMapping):
        message = f"expected [sources] to be a table in {policy}"
        raise PolicyError(message)

    allow_git = sources.get("allow-git")
    if allow_git is None:
        allow_git = array()
        sources["allow-git"] = allow_git
        return typ.cast("Array", sources["allow-git"])
    if not isinstance(allow_git, Array):
        message = f"expected sources.allow-git to be an array in {policy}"
        raise PolicyError(message)
    return allow_git


def _write_document(document: TOMLDocument, policy: Path) -> None:
    """Serialise ``document`` to ``policy`` with a trailing newline."""
    try:
        rendered = dumps(document)
        if not rendered.endswith("\n"):
            rendered = f"{rendered}\n"
        policy.write_text(rendered, encoding="utf-8")
    except (OSError, TOMLKitError) as error:
        message = f"failed to write policy file {policy}: {error}"
        raise PolicyError(message) from error
