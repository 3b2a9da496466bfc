"""Tests for repository layout policy enforcement."""

from __future__ import annotations

from pathlib import Path

from tools.repo.check_layout import (
    ROOT_REQUIRED,
    check_layout,
    list_missing_root_entries,
    list_unexpected_root_entries,
    main,
)


def _compliant_root(tmp_path: Path) -> Path:
    for name in ROOT_REQUIRED:
        if "." in name:
            (tmp_path / name).write_text("x", encoding="utf-8")
        else:
            (tmp_path / name).mkdir()
    return tmp_path


def test_layout_policy_passes_for_current_repo() -> None:
    """The repository itself must satisfy its own layout policy."""
    repo_root = Path(__file__).resolve().parents[1]
    assert list_unexpected_root_entries(repo_root) == []
    assert list_missing_root_entries(repo_root) == []


def test_layout_policy_detects_unexpected_entry(tmp_path: Path) -> None:
    """Files outside the allow-list are reported."""
    root = _compliant_root(tmp_path)
    (root / "random_file.txt").write_text("x", encoding="utf-8")

    assert list_unexpected_root_entries(root) == ["random_file.txt"]


def test_layout_policy_ignores_tool_caches(tmp_path: Path) -> None:
    """Caches and build artefacts are not violations."""
    root = _compliant_root(tmp_path)
    (root / ".pytest_cache").mkdir()
    (root / "__pycache__").mkdir()
    (root / "remediation_engine.egg-info").mkdir()

    assert check_layout(root).ok


def test_layout_policy_reports_missing_required_entries(tmp_path: Path, capsys) -> None:
    """A root without migrations/ fails with a non-zero exit code."""
    root = _compliant_root(tmp_path)
    (root / "migrations").rmdir()

    assert list_missing_root_entries(root) == ["migrations"]
    assert main(["--repo-root", str(root)]) == 1
    assert "- migrations" in capsys.readouterr().out
