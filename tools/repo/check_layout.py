"""Validate root-level repository layout against policy.

Two checks: every root entry must be on the allow-list, and the owned
subtrees the engine cannot run without must be present.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import NamedTuple

ROOT_REQUIRED = frozenset(
    {
        "apps",
        "contracts",
        "infra",
        "migrations",
        "pyproject.toml",
        "services",
        "tests",
        "version.py",
    }
)

ROOT_ALLOWED = ROOT_REQUIRED | {
    ".git",
    ".github",
    ".gitignore",
    "DESIGN.md",
    "LICENSE",
    "Makefile",
    "README.md",
    "SPEC_FULL.md",
    "TEACHER.txt",
    "docs",
    "spec.md",
    "tools",
}

ROOT_IGNORED_PREFIXES = (
    ".hypothesis",
    ".mypy_cache",
    ".pytest_cache",
    ".ruff_cache",
    ".venv",
    "__pycache__",
    "build",
    "dist",
)


class LayoutReport(NamedTuple):
    unexpected: list[str]
    missing: list[str]

    @property
    def ok(self) -> bool:
        return not self.unexpected and not self.missing


def list_unexpected_root_entries(repo_root: Path) -> list[str]:
    """Return sorted root entries that violate the structure policy."""
    unexpected: list[str] = []
    for entry in repo_root.iterdir():
        name = entry.name
        if name.endswith(".egg-info") or any(name.startswith(prefix) for prefix in ROOT_IGNORED_PREFIXES):
            continue
        if name not in ROOT_ALLOWED:
            unexpected.append(name)
    return sorted(unexpected)


def list_missing_root_entries(repo_root: Path) -> list[str]:
    """Return sorted required root entries that do not exist."""
    return sorted(name for name in ROOT_REQUIRED if not (repo_root / name).exists())


def check_layout(repo_root: Path) -> LayoutReport:
    return LayoutReport(
        unexpected=list_unexpected_root_entries(repo_root),
        missing=list_missing_root_entries(repo_root),
    )


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint."""
    parser = argparse.ArgumentParser(description="Check root layout policy.")
    parser.add_argument(
        "--repo-root",
        default=str(Path(__file__).resolve().parents[2]),
        help="Repository root path (default: auto-detected).",
    )
    args = parser.parse_args(argv)

    report = check_layout(Path(args.repo_root).resolve())
    if report.ok:
        print("OK: repository root layout matches policy.")
        return 0

    if report.unexpected:
        print("ERROR: unexpected root-level entries found:")
        for name in report.unexpected:
            print(f"- {name}")
        print("Move these under apps/, services/, tools/, docs/, or another owned subtree.")
    if report.missing:
        print("ERROR: required root-level entries missing:")
        for name in report.missing:
            print(f"- {name}")
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
