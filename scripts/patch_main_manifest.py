"""Append-only management of ``[patch.crates-io]`` entries in ``Cargo.toml``.

Manifests are parsed with ``tomlkit`` to discover which dependencies are
declared and which are already patched, but new entries are added by editing
the raw text. Existing lines are never rewritten or removed, so comments and
hand formatting elsewhere in the manifest survive untouched.
"""

from __future__ import annotations

import collections.abc as cabc
import re
import typing as typ
from pathlib import Path

from tomlkit import key, parse, string
from tomlkit.exceptions import TOMLKitError

if typ.TYPE_CHECKING:
    from patch_main_config import DependencyOverride
    from tomlkit.toml_document import TOMLDocument

__all__ = [
    "PATCH_HEADER",
    "ManifestError",
    "ensure_overrides",
    "existing_patches",
    "format_override",
    "read_overridden_names",
    "read_referenced_names",
    "referenced_names",
]

PATCH_HEADER: typ.Final[str] = "[patch.crates-io]"

DEPENDENCY_TABLES: typ.Final[tuple[tuple[str, ...], ...]] = (
    ("dependencies",),
    ("dev-dependencies",),
    ("build-dependencies",),
    ("workspace", "dependencies"),
)

_PATCH_HEADER_RE = re.compile(
    r"""^\s*\[\s*patch\s*\.\s*(?:crates-io|"crates-io"|'crates-io')\s*\]\s*(?:\#.*)?$"""
)
_TABLE_HEADER_RE = re.compile(r"^\s*\[")


class ManifestError(Exception):
    """Raised when a manifest cannot be read, parsed, or extended."""


def ensure_overrides(
    manifest: Path,
    candidates: cabc.Iterable[DependencyOverride],
) -> list[DependencyOverride]:
    """Add missing patch entries for referenced crates and return them.

    A candidate is applied when the manifest declares it as a dependency and
    ``[patch.crates-io]`` does not already contain it. Applied overrides are
    returned in input order. Running the function again with the same
    candidates applies nothing and leaves the file unchanged.

    Parameters
    ----------
    manifest : Path
        ``Cargo.toml`` to extend in place.
    candidates : Iterable[DependencyOverride]
        Overrides to consider, in priority order.

    Returns
    -------
    list[DependencyOverride]
        The overrides written to ``manifest``.

    Raises
    ------
    ManifestError
        Raised when the manifest cannot be read, parsed, or written, or when
        its patch table is declared in a form that cannot be extended by
        appending lines. The file is never written in these cases.

    Examples
    --------
    >>> from pathlib import Path
    >>> from patch_main_config import DependencyOverride
    >>> tmp = Path("Cargo.toml")
    >>> _ = tmp.write_text('[dependencies]\\nfoo = "1"\\n')
    >>> applied = ensure_overrides(tmp, [DependencyOverride("foo", "https://x/foo")])
    >>> [override.name for override in applied]
    ['foo']
    """
    manifest = Path(manifest)
    text = _read_manifest(manifest)
    document = _parse_manifest(text, manifest)

    referenced = referenced_names(document)
    patched = existing_patches(document)

    applied: list[DependencyOverride] = []
    for candidate in candidates:
        if candidate.name in referenced and candidate.name not in patched:
            applied.append(candidate)
            patched.add(candidate.name)

    if not applied:
        return []

    entries = [format_override(override) for override in applied]
    updated = _insert_patch_entries(text, entries, document, manifest)
    _verify_entries(updated, applied, manifest)
    try:
        manifest.write_text(updated, encoding="utf-8")
    except OSError as error:
        message = f"failed to write {manifest}: {error}"
        raise ManifestError(message) from error
    return applied


def referenced_names(document: cabc.Mapping[str, typ.Any]) -> set[str]:
    """Return the dependency names declared in ``document``."""
    names: set[str] = set()
    for path in DEPENDENCY_TABLES:
        table = _lookup_table(document, path)
        if table is not None:
            names.update(str(name) for name in table)
    return names


def existing_patches(document: cabc.Mapping[str, typ.Any]) -> set[str]:
    """Return the crate names already present in ``[patch.crates-io]``."""
    crates_io = _lookup_table(document, ("patch", "crates-io"))
    if crates_io is None:
        return set()
    return {str(name) for name in crates_io}


def read_referenced_names(manifest: Path) -> set[str]:
    """Re-read ``manifest`` and return its declared dependency names."""
    manifest = Path(manifest)
    return referenced_names(_parse_manifest(_read_manifest(manifest), manifest))


def read_overridden_names(manifest: Path) -> set[str]:
    """Re-read ``manifest`` and return the names in its override table."""
    manifest = Path(manifest)
    return existing_patches(_parse_manifest(_read_manifest(manifest), manifest))


def format_override(override: DependencyOverride) -> str:
    """Render ``override`` as a single ``[patch.crates-io]`` line.

    Examples
    --------
    >>> from patch_main_config import DependencyOverride
    >>> format_override(DependencyOverride("foo", "https://example/foo"))
    'foo = { git = "https://example/foo", branch = "main" }'
    """
    name = key(override.name).as_string()
    url = string(override.url).as_string()
    branch = string(override.branch).as_string()
    return f"{name} = {{ git = {url}, branch = {branch} }}"


def _lookup_table(
    document: cabc.Mapping[str, typ.Any], path: tuple[str, ...]
) -> cabc.Mapping[str, typ.Any] | None:
    """Follow ``path`` through nested tables, returning ``None`` when absent."""
    current: object = document
    for part in path:
        if not isinstance(current, cabc.Mapping):
            return None
        current = current.get(part)
    if not isinstance(current, cabc.Mapping):
        return None
    return typ.cast("cabc.Mapping[str, typ.Any]", current)


def _read_manifest(manifest: Path) -> str:
    try:
        return manifest.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as error:
        message = f"failed to read {manifest}: {error}"
        raise ManifestError(message) from error


def _parse_manifest(text: str, manifest: Path) -> TOMLDocument:
    try:
        return parse(text)
    except TOMLKitError as error:
        message = f"failed to parse {manifest}: {error}"
        raise ManifestError(message) from error


def _insert_patch_entries(
    text: str,
    entries: list[str],
    document: TOMLDocument,
    manifest: Path,
) -> str:
    """Return ``text`` with ``entries`` placed inside ``[patch.crates-io]``."""
    lines = text.splitlines(keepends=True)
    header_index = _find_patch_header(lines)
    new_lines = [f"{entry}\n" for entry in entries]

    if header_index is None:
        if _lookup_table(document, ("patch", "crates-io")) is not None:
            message = (
                f"{manifest} declares patch.crates-io without a "
                f"{PATCH_HEADER} header; add the entries manually"
            )
            raise ManifestError(message)
        prefix = _terminated(text)
        separator = "\n" if prefix else ""
        return f"{prefix}{separator}{PATCH_HEADER}\n{''.join(new_lines)}"

    insert_at = _section_end(lines, header_index)
    if insert_at > 0 and not lines[insert_at - 1].endswith("\n"):
        lines[insert_at - 1] = f"{lines[insert_at - 1]}\n"
    lines[insert_at:insert_at] = new_lines
    return "".join(lines)


def _find_patch_header(lines: list[str]) -> int | None:
    for index, line in enumerate(lines):
        if _PATCH_HEADER_RE.match(line.rstrip("\r\n")):
            return index
    return None


def _section_end(lines: list[str], header_index: int) -> int:
    """Return the index just after the last entry of the section at ``header_index``."""
    end = len(lines)
    for index in range(header_index + 1, len(lines)):
        if _TABLE_HEADER_RE.match(lines[index]):
            end = index
            break

    # Blank lines and comments before the next header belong to that header.
    while end > header_index + 1:
        stripped = lines[end - 1].strip()
        if stripped and not stripped.startswith("#"):
            break
        end -= 1
    return end


def _terminated(text: str) -> str:
    if text and not text.endswith("\n"):
        return f"{text}\n"
    return text


def _verify_entries(
    updated: str,
    applied: list[DependencyOverride],
    manifest: Path,
) -> None:
    """Ensure the edited text parses and contains every applied entry."""
    try:
        patched = existing_patches(parse(updated))
    except TOMLKitError as error:
        message = f"refusing to write {manifest}: edited manifest does not parse"
        raise ManifestError(message) from error
    missing = [override.name for override in applied if override.name not in patched]
    if missing:
        formatted = ", ".join(repr(name) for name in missing)
        message = f"refusing to write {manifest}: entries not placed for {formatted}"
        raise ManifestError(message)
