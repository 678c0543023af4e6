"""Unit tests for the append-only manifest editor."""

from __future__ import annotations

import typing as typ

import pytest
import tomllib
from patch_main_config import DependencyOverride
from patch_main_manifest import (
    ManifestError,
    ensure_overrides,
    existing_patches,
    format_override,
    read_overridden_names,
    read_referenced_names,
    referenced_names,
)
from tomlkit import parse

if typ.TYPE_CHECKING:
    from pathlib import Path

FOO = DependencyOverride("foo", "https://example/foo")
BAR = DependencyOverride("bar", "https://example/bar")
BAZ = DependencyOverride("baz", "https://example/baz")

FOO_LINE = 'foo = { git = "https://example/foo", branch = "main" }'
BAR_LINE = 'bar = { git = "https://example/bar", branch = "main" }'


def _write(tmp_path: Path, text: str) -> Path:
    manifest = tmp_path / "Cargo.toml"
    manifest.write_text(text, encoding="utf-8")
    return manifest


class TestEnsureOverrides:
    """Tests for :func:`patch_main_manifest.ensure_overrides`."""

    def test_appends_only_referenced_crates(self, tmp_path: Path) -> None:
        """Unreferenced candidates are skipped and a patch header is added."""
        original = '[package]\nname = "demo"\n\n[dependencies]\nfoo = "1"\n'
        manifest = _write(tmp_path, original)

        applied = ensure_overrides(manifest, [FOO, BAR])

        assert applied == [FOO]
        assert manifest.read_text(encoding="utf-8") == (
            f"{original}\n[patch.crates-io]\n{FOO_LINE}\n"
        )

    def test_skips_crates_already_patched(self, tmp_path: Path) -> None:
        """Existing overrides are left alone and the file is not rewritten."""
        original = "\n".join(
            (
                "[dependencies]",
                'foo = "1"',
                "",
                "[patch.crates-io]",
                'foo = { git = "https://elsewhere/foo", branch = "main" }',
                "",
            )
        )
        manifest = _write(tmp_path, original)

        assert ensure_overrides(manifest, [FOO]) == []
        assert manifest.read_text(encoding="utf-8") == original

    def test_second_run_is_a_no_op(self, tmp_path: Path) -> None:
        """Running twice yields the same manifest as running once."""
        manifest = _write(tmp_path, '[dependencies]\nfoo = "1"\nbar = "2"\n')

        first = ensure_overrides(manifest, [FOO, BAR])
        after_first = manifest.read_text(encoding="utf-8")
        second = ensure_overrides(manifest, [FOO, BAR])

        assert first == [FOO, BAR]
        assert second == []
        assert manifest.read_text(encoding="utf-8") == after_first

    def test_preserves_candidate_order(self, tmp_path: Path) -> None:
        """Applied overrides follow the candidate order, not manifest order."""
        manifest = _write(
            tmp_path,
            '[dependencies]\nfoo = "1"\n\n[dev-dependencies]\nbar = "2"\n',
        )

        applied = ensure_overrides(manifest, [BAR, BAZ, FOO])

        assert applied == [BAR, FOO]
        lines = manifest.read_text(encoding="utf-8").splitlines()
        assert lines[-2:] == [BAR_LINE, FOO_LINE]

    def test_ignores_duplicate_candidates(self, tmp_path: Path) -> None:
        """A name repeated in the candidate list is only written once."""
        manifest = _write(tmp_path, '[dependencies]\nfoo = "1"\n')

        applied = ensure_overrides(manifest, [FOO, FOO])

        assert applied == [FOO]
        assert manifest.read_text(encoding="utf-8").count(FOO_LINE) == 1

    def test_inserts_into_section_that_is_not_last(self, tmp_path: Path) -> None:
        """New entries stay inside ``[patch.crates-io]`` when tables follow it."""
        original_lines = [
            "[dependencies]",
            'foo = "1"',
            'bar = "2"',
            "",
            "[patch.crates-io] # track upstream",
            FOO_LINE,
            "",
            "# optional features",
            "[features]",
            "default = []",
        ]
        manifest = _write(tmp_path, "\n".join(original_lines) + "\n")

        applied = ensure_overrides(manifest, [FOO, BAR])

        assert applied == [BAR]
        lines = manifest.read_text(encoding="utf-8").splitlines()
        assert lines == [*original_lines[:6], BAR_LINE, *original_lines[6:]]
        data = tomllib.loads(manifest.read_text(encoding="utf-8"))
        assert set(data["patch"]["crates-io"]) == {"foo", "bar"}
        assert data["features"] == {"default": []}

    def test_handles_missing_trailing_newline(self, tmp_path: Path) -> None:
        """A manifest without a final newline still gains a valid section."""
        manifest = _write(tmp_path, '[dependencies]\nfoo = "1"')

        ensure_overrides(manifest, [FOO])

        data = tomllib.loads(manifest.read_text(encoding="utf-8"))
        assert data["dependencies"] == {"foo": "1"}
        assert data["patch"]["crates-io"]["foo"] == {
            "git": "https://example/foo",
            "branch": "main",
        }

    def test_reads_workspace_dependencies(self, tmp_path: Path) -> None:
        """Workspace-level dependency declarations count as references."""
        manifest = _write(
            tmp_path,
            '[workspace]\nmembers = ["a"]\n\n[workspace.dependencies]\nfoo = "1"\n',
        )

        assert ensure_overrides(manifest, [FOO, BAR]) == [FOO]

    def test_rejects_unparsable_manifest(self, tmp_path: Path) -> None:
        """Parse failures abort before anything is written."""
        original = '[dependencies]\nfoo = "1\n'
        manifest = _write(tmp_path, original)

        with pytest.raises(ManifestError, match="failed to parse"):
            ensure_overrides(manifest, [FOO])

        assert manifest.read_text(encoding="utf-8") == original

    def test_rejects_inline_patch_table(self, tmp_path: Path) -> None:
        """Inline ``crates-io`` tables cannot be extended by appending lines."""
        original = (
            '[dependencies]\nfoo = "1"\nbar = "2"\n\n'
            '[patch]\ncrates-io = { foo = { git = "https://example/foo" } }\n'
        )
        manifest = _write(tmp_path, original)

        with pytest.raises(ManifestError, match="without a"):
            ensure_overrides(manifest, [BAR])

        assert manifest.read_text(encoding="utf-8") == original

    def test_reports_missing_manifest(self, tmp_path: Path) -> None:
        """A missing manifest surfaces as a :class:`ManifestError`."""
        with pytest.raises(ManifestError, match="failed to read"):
            ensure_overrides(tmp_path / "Cargo.toml", [FOO])

    def test_reports_undecodable_manifest(self, tmp_path: Path) -> None:
        """A manifest that is not UTF-8 surfaces as a :class:`ManifestError`."""
        manifest = tmp_path / "Cargo.toml"
        manifest.write_bytes(b'[dependencies]\nfoo = "\xff\xfe"\n')

        with pytest.raises(ManifestError, match="failed to read"):
            ensure_overrides(manifest, [FOO])


def test_referenced_names_treats_missing_tables_as_empty() -> None:
    """Only declared dependency tables contribute names."""
    document = parse(
        "\n".join(
            (
                '[package]\nname = "demo"',
                '[dependencies]\nfoo = "1"',
                '[build-dependencies]\ncc = "1"',
            )
        )
    )

    assert referenced_names(document) == {"foo", "cc"}


def test_existing_patches_ignores_other_registries() -> None:
    """Only the ``crates-io`` override table is consulted."""
    document = parse(
        "\n".join(
            (
                "[patch.crates-io]",
                'foo = { git = "https://example/foo" }',
                "[patch.'https://github.com/example/bar']",
                'bar = { path = "../bar" }',
            )
        )
    )

    assert existing_patches(document) == {"foo"}


def test_read_helpers_reflect_current_file(tmp_path: Path) -> None:
    """The read helpers re-parse the file on every call."""
    manifest = _write(tmp_path, '[dependencies]\nfoo = "1"\n')
    assert read_overridden_names(manifest) == set()

    ensure_overrides(manifest, [FOO])

    assert read_overridden_names(manifest) == {"foo"}
    assert read_referenced_names(manifest) == {"foo"}


@pytest.mark.parametrize(
    ("override", "expected"),
    [
        (FOO, FOO_LINE),
        (
            DependencyOverride("foo", "https://example/foo", "develop"),
            'foo = { git = "https://example/foo", branch = "develop" }',
        ),
    ],
    ids=["default_branch", "custom_branch"],
)
def test_format_override(override: DependencyOverride, expected: str) -> None:
    """Override lines use the inline git table form."""
    assert format_override(override) == expected
