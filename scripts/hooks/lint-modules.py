#!/usr/bin/env python3
"""Run a linter once per module touched by the changed files.

A repository holding several independent modules (for example several Go
modules, each with its own go.mod) cannot be linted from the repository
root. This hook maps every changed file to the nearest ancestor directory
containing the module marker file, deduplicates those directories in the
order they were first seen, and runs the linter inside each of them.

Usage:
    python scripts/hooks/lint-modules.py [files...]
    git diff --name-only main | python scripts/hooks/lint-modules.py --stdin
    python scripts/hooks/lint-modules.py --all
    python scripts/hooks/lint-modules.py --list service1/main.go

With no files and no --stdin, the staged files are read from git.

Settings come from .lint-modules.yaml (or the [tool.lint-modules] table in
pyproject.toml) and can be overridden on the command line:

    marker: go.mod
    command: [golangci-lint, run, ./...]
    exclude: [vendor/, "*_gen.go"]
    fail-fast: false

Exit codes:
    0  every module passed, or nothing needed linting
    N  exit code of the first module whose lint run failed
    2  setup problem: bad configuration, git or the linter unavailable

A linter that itself exits with 2 is indistinguishable from a setup problem
by exit code alone; the logged ERROR lines tell them apart.

Cross-platform: Works on Linux, macOS, and Windows.
"""
from __future__ import annotations

import argparse
import fnmatch
import logging
import os
import shlex
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Any, Iterable, NamedTuple, Sequence

import yaml

# Python 3.11+ has tomllib built-in
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

logger = logging.getLogger(__name__)

DEFAULT_MARKER = "go.mod"
DEFAULT_COMMAND = ("golangci-lint", "run", "./...")

CONFIG_FILENAMES = (".lint-modules.yaml", ".lint-modules.yml")
PYPROJECT_TABLE = "lint-modules"
CONFIG_KEYS = {"marker", "command", "exclude", "fail-fast"}

# Never descended into by --all (hidden directories are skipped as well)
WALK_SKIP_DIRS = {"vendor", "node_modules"}

EXIT_SETUP_ERROR = 2

INSTALL_HINTS = {
    "golangci-lint": [
        "Install from: https://golangci-lint.run/welcome/install/",
        "  - Linux/macOS: brew install golangci-lint",
        "  - Windows: scoop install golangci-lint",
        "  - Or: go install github.com/golangci/golangci-lint/v2/cmd/golangci-lint@latest",
    ],
}


class LintSetupError(Exception):
    """The environment prevents the hook from running at all."""


class LintConfig(NamedTuple):
    """Effective settings after defaults, config file and CLI are merged."""

    marker: str = DEFAULT_MARKER
    command: tuple[str, ...] = DEFAULT_COMMAND
    exclude: tuple[str, ...] = ()
    fail_fast: bool = False


class ModuleResult(NamedTuple):
    """Outcome of one linter run."""

    root: Path
    returncode: int


class LintSummary(NamedTuple):
    """Outcome of linting all resolved module roots."""

    results: list[ModuleResult]
    skipped: list[Path]

    @property
    def failures(self) -> list[ModuleResult]:
        return [r for r in self.results if r.returncode != 0]

    @property
    def returncode(self) -> int:
        """0 if every module passed, else the first failing module's code."""
        failures = self.failures
        if not failures:
            return 0
        # Negative codes mean the linter was killed by a signal
        return max(failures[0].returncode, 1)


def get_base_dir(base_dir: str | Path | None = None) -> Path:
    """Absolute form of base_dir, defaulting to the current directory."""
    if base_dir is None:
        return Path.cwd()
    return Path(os.path.abspath(base_dir))


def absolute_path(path: str | Path, base: Path) -> Path:
    """Join path onto base and collapse '..' without following symlinks."""
    return Path(os.path.normpath(base / path))


def display_path(directory: Path, base: Path) -> Path:
    """Report directory relative to base when it lies inside it."""
    try:
        return directory.relative_to(base)
    except ValueError:
        return directory


def find_module_root(
    file_path: str | Path,
    marker: str = DEFAULT_MARKER,
    base_dir: str | Path | None = None,
) -> Path | None:
    """Find the nearest directory above file_path that contains marker.

    The walk starts at the file's containing directory and stops at the
    filesystem root. The file itself does not need to exist, so deleted
    files still map to their module.

    Returns None when no ancestor contains the marker.
    """
    base = get_base_dir(base_dir)
    current = absolute_path(file_path, base).parent

    while True:
        if (current / marker).is_file():
            return display_path(current, base)
        parent = current.parent
        if parent == current:
            return None
        current = parent


def is_excluded(file_path: str | Path, patterns: Iterable[str]) -> bool:
    """Check file_path against exclude patterns.

    A pattern ending in '/' matches anything below a directory of that name.
    Other patterns are fnmatch globs against the POSIX form of the path.
    """
    posix = Path(file_path).as_posix()
    for pattern in patterns:
        if pattern.endswith("/"):
            if f"/{pattern}" in f"/{posix}":
                return True
        elif fnmatch.fnmatch(posix, pattern):
            return True
    return False


def find_module_roots(
    files: Iterable[str | Path],
    marker: str = DEFAULT_MARKER,
    base_dir: str | Path | None = None,
    exclude: Iterable[str] = (),
) -> list[Path]:
    """Map changed files to their unique module roots, in first-seen order.

    Files outside every module are skipped silently. OSErrors raised by
    the existence checks (other than "not found") propagate.
    """
    base = get_base_dir(base_dir)
    patterns = list(exclude)
    roots: list[Path] = []
    seen: set[Path] = set()

    for file_path in files:
        if is_excluded(file_path, patterns):
            logger.debug(f"  Excluded: {file_path}")
            continue

        root = find_module_root(file_path, marker, base)
        if root is None:
            logger.debug(f"  No {marker} above {file_path}, skipping")
            continue

        key = absolute_path(root, base)
        if key in seen:
            continue
        seen.add(key)
        roots.append(root)
        logger.debug(f"  {file_path} -> {root.as_posix()}")

    return roots


def _raise_walk_error(error: OSError) -> None:
    raise error


def discover_module_roots(
    marker: str = DEFAULT_MARKER,
    base_dir: str | Path | None = None,
    exclude: Iterable[str] = (),
) -> list[Path]:
    """Find every module root below base_dir.

    Parents come before their children and siblings are visited in sorted
    order. Hidden directories and WALK_SKIP_DIRS are not searched.
    """
    base = get_base_dir(base_dir)
    patterns = list(exclude)
    roots: list[Path] = []

    for dirpath, dirnames, filenames in os.walk(base, onerror=_raise_walk_error):
        dirnames[:] = sorted(
            d for d in dirnames if not d.startswith(".") and d not in WALK_SKIP_DIRS
        )
        if marker not in filenames:
            continue
        root = display_path(Path(dirpath), base)
        if is_excluded(root / marker, patterns):
            logger.debug(f"  Excluded: {root.as_posix()}")
            continue
        roots.append(root)

    return roots


def get_staged_files(base_dir: str | Path | None = None) -> list[str]:
    """Get staged file paths relative to base_dir, including deletions."""
    base = get_base_dir(base_dir)
    try:
        result = subprocess.run(
            [
                "git",
                # Unquoted, NUL-separated names survive non-ASCII and spaces
                "-c",
                "core.quotePath=false",
                "diff",
                "--cached",
                "--name-only",
                "-z",
                "--diff-filter=ACMRD",
                "--relative",
            ],
            cwd=base,
            capture_output=True,
            encoding="utf-8",
            errors="surrogateescape",
            check=True,
        )
    except FileNotFoundError as e:
        raise LintSetupError("git not found. Is Git installed?") from e
    except subprocess.CalledProcessError as e:
        detail = e.stderr.strip() if e.stderr else f"exit code {e.returncode}"
        raise LintSetupError(f"Could not list staged files: {detail}") from e

    return [name for name in result.stdout.split("\0") if name]


def parse_file_list(text: str) -> list[str]:
    """Split a newline- or whitespace-delimited list of paths."""
    return text.split()


def _check_marker(value: Any, source: str) -> str:
    if not isinstance(value, str) or not value:
        raise LintSetupError(f"{source}: 'marker' must be a non-empty string")
    if "/" in value or "\\" in value:
        raise LintSetupError(f"{source}: 'marker' must be a file name, got {value!r}")
    return value


def _check_command(value: Any, source: str) -> tuple[str, ...]:
    if isinstance(value, str):
        command = shlex.split(value)
    elif isinstance(value, list) and all(isinstance(v, str) for v in value):
        command = list(value)
    else:
        raise LintSetupError(
            f"{source}: 'command' must be a string or a list of strings"
        )
    if not command:
        raise LintSetupError(f"{source}: 'command' must not be empty")
    return tuple(command)


def _check_exclude(value: Any, source: str) -> tuple[str, ...]:
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return tuple(value)
    raise LintSetupError(f"{source}: 'exclude' must be a list of strings")


def config_from_mapping(data: Any, source: str) -> LintConfig:
    """Build a LintConfig from a parsed YAML or TOML mapping."""
    if data is None:
        return LintConfig()
    if not isinstance(data, dict):
        raise LintSetupError(f"{source}: expected a mapping of settings")

    unknown = sorted(str(key) for key in set(data) - CONFIG_KEYS)
    if unknown:
        raise LintSetupError(f"{source}: unknown setting(s): {', '.join(unknown)}")

    config = LintConfig()
    if "marker" in data:
        config = config._replace(marker=_check_marker(data["marker"], source))
    if "command" in data:
        config = config._replace(command=_check_command(data["command"], source))
    if "exclude" in data:
        config = config._replace(exclude=_check_exclude(data["exclude"], source))
    if "fail-fast" in data:
        if not isinstance(data["fail-fast"], bool):
            raise LintSetupError(f"{source}: 'fail-fast' must be true or false")
        config = config._replace(fail_fast=data["fail-fast"])
    return config


def _load_yaml_config(path: Path) -> LintConfig:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (yaml.YAMLError, UnicodeDecodeError) as e:
        raise LintSetupError(f"YAML error in {path}: {e}") from e
    except OSError as e:
        raise LintSetupError(f"Cannot read {path}: {e}") from e
    return config_from_mapping(data, str(path))


def _load_toml_table(path: Path) -> Any:
    """Return the [tool.lint-modules] table of a TOML file, or None."""
    try:
        data = tomllib.loads(path.read_bytes().decode("utf-8"))
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as e:
        raise LintSetupError(f"TOML error in {path}: {e}") from e
    except OSError as e:
        raise LintSetupError(f"Cannot read {path}: {e}") from e
    return data.get("tool", {}).get(PYPROJECT_TABLE)


def load_config(
    base_dir: str | Path | None = None, config_path: str | Path | None = None
) -> LintConfig:
    """Load settings from an explicit file or the first one found in base_dir.

    Lookup order without config_path: .lint-modules.yaml, .lint-modules.yml,
    then the [tool.lint-modules] table of pyproject.toml. Built-in defaults
    apply when none of them exists.
    """
    base = get_base_dir(base_dir)

    if config_path is not None:
        path = absolute_path(config_path, base)
        if not path.is_file():
            raise LintSetupError(f"Config file not found: {path}")
        if path.suffix == ".toml":
            source = f"{path} [tool.{PYPROJECT_TABLE}]"
            return config_from_mapping(_load_toml_table(path), source)
        return _load_yaml_config(path)

    for name in CONFIG_FILENAMES:
        path = base / name
        if path.is_file():
            logger.debug(f"Using config {path}")
            return _load_yaml_config(path)

    pyproject = base / "pyproject.toml"
    if pyproject.is_file():
        table = _load_toml_table(pyproject)
        if table is not None:
            logger.debug(f"Using [tool.{PYPROJECT_TABLE}] from {pyproject}")
            return config_from_mapping(table, f"{pyproject} [tool.{PYPROJECT_TABLE}]")

    return LintConfig()


def apply_cli_overrides(config: LintConfig, args: argparse.Namespace) -> LintConfig:
    """Layer command-line flags on top of the loaded config."""
    if args.marker is not None:
        config = config._replace(marker=_check_marker(args.marker, "--marker"))
    if args.command is not None:
        config = config._replace(command=_check_command(args.command, "--command"))
    if args.exclude:
        config = config._replace(exclude=config.exclude + tuple(args.exclude))
    if args.fail_fast is not None:
        config = config._replace(fail_fast=args.fail_fast)
    return config


def require_linter(command: Sequence[str], base_dir: str | Path | None = None) -> str:
    """Locate the linter executable, raising LintSetupError if missing.

    Executables given with a directory part are looked up relative to
    base_dir so they keep working once each run changes directory.
    """
    name = command[0]
    if os.path.dirname(name):
        executable = shutil.which(str(absolute_path(name, get_base_dir(base_dir))))
    else:
        executable = shutil.which(name)

    if executable is None:
        lines = [f"{name} not found."]
        lines.extend(INSTALL_HINTS.get(Path(name).stem, []))
        raise LintSetupError("\n".join(lines))
    return os.path.abspath(executable)


def run_linter(
    root: str | Path, command: Sequence[str], base_dir: str | Path | None = None
) -> int:
    """Run command inside the module root and return its exit code."""
    cwd = absolute_path(root, get_base_dir(base_dir))
    # Output flows directly to terminal (no capture needed for linters).
    result = subprocess.run(list(command), cwd=cwd, check=False)
    return result.returncode


def lint_modules(
    roots: Sequence[Path],
    command: Sequence[str],
    fail_fast: bool = False,
    base_dir: str | Path | None = None,
) -> LintSummary:
    """Run the linter in each module root, one at a time, in order.

    Every module is linted unless fail_fast is set, in which case the
    modules after the first failure are recorded as skipped.
    """
    name = Path(command[0]).name
    results: list[ModuleResult] = []
    skipped: list[Path] = []

    for index, root in enumerate(roots):
        logger.info(f"Linting {root.as_posix()} ...")
        try:
            returncode = run_linter(root, command, base_dir)
        except OSError as e:
            raise LintSetupError(f"Could not run {name} in {root.as_posix()}: {e}") from e

        results.append(ModuleResult(root, returncode))
        if returncode != 0:
            logger.error(f"{name} failed in {root.as_posix()} (exit code {returncode})")
            if fail_fast:
                skipped.extend(roots[index + 1 :])
                break

    return LintSummary(results, skipped)


def report_summary(summary: LintSummary, command: Sequence[str]) -> None:
    """Log which modules failed or were skipped."""
    name = Path(command[0]).name
    failures = summary.failures
    total = len(summary.results) + len(summary.skipped)

    if not failures:
        logger.info(f"{name} passed in {total} module(s)")
        return

    logger.error(f"{name} failed in {len(failures)} of {total} module(s):")
    for failure in failures:
        logger.error(f"  - {failure.root.as_posix()} (exit code {failure.returncode})")

    if summary.skipped:
        logger.warning(f"Skipped {len(summary.skipped)} module(s) after the first failure:")
        for root in summary.skipped:
            logger.warning(f"  - {root.as_posix()}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run a linter once in every module touched by the given files.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python scripts/hooks/lint-modules.py service1/main.go service2/main.go
    git diff --name-only main | python scripts/hooks/lint-modules.py --stdin
    python scripts/hooks/lint-modules.py --all --fail-fast
    python scripts/hooks/lint-modules.py --marker package.json --command "npx eslint ."
        """,
    )
    parser.add_argument(
        "files",
        nargs="*",
        help="Changed files (default: staged files from git)",
    )
    parser.add_argument(
        "--stdin",
        action="store_true",
        help="Also read a whitespace-separated file list from standard input",
    )
    parser.add_argument(
        "--all",
        action="store_true",
        dest="all_modules",
        help="Lint every module below the base directory",
    )
    parser.add_argument(
        "--list",
        action="store_true",
        dest="list_only",
        help="Print the resolved module roots and exit without linting",
    )
    parser.add_argument(
        "--base-dir",
        "-C",
        type=Path,
        default=None,
        help="Directory relative paths are resolved against (default: current directory)",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=None,
        help=f"Config file (default: {CONFIG_FILENAMES[0]} or pyproject.toml)",
    )
    parser.add_argument(
        "--marker",
        default=None,
        help=f"File name marking a module root (default: {DEFAULT_MARKER})",
    )
    parser.add_argument(
        "--command",
        default=None,
        help=f"Linter command line (default: {shlex.join(DEFAULT_COMMAND)})",
    )
    parser.add_argument(
        "--exclude",
        action="append",
        default=[],
        metavar="PATTERN",
        help="Skip files matching PATTERN (repeatable)",
    )
    parser.add_argument(
        "--fail-fast",
        action="store_true",
        dest="fail_fast",
        default=None,
        help="Stop at the first module that fails",
    )
    parser.add_argument(
        "--no-fail-fast",
        action="store_false",
        dest="fail_fast",
        help="Lint every module and report all failures (default)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--quiet",
        "-q",
        action="store_true",
        help="Only log warnings and errors",
    )
    return parser


def run(args: argparse.Namespace) -> int:
    """Resolve module roots for the requested files and lint them."""
    base = get_base_dir(args.base_dir)
    try:
        config = load_config(base, args.config)
    except OSError as e:
        raise LintSetupError(f"Could not look up configuration: {e}") from e
    config = apply_cli_overrides(config, args)

    try:
        if args.all_modules:
            roots = discover_module_roots(config.marker, base, config.exclude)
        else:
            files = list(args.files)
            if args.stdin:
                files.extend(parse_file_list(sys.stdin.read()))
            elif not files:
                files = get_staged_files(base)
            roots = find_module_roots(files, config.marker, base, config.exclude)
    except OSError as e:
        raise LintSetupError(f"Could not resolve module roots: {e}") from e

    if args.list_only:
        for root in roots:
            print(root.as_posix())
        return 0

    if not roots:
        logger.info(f"No {config.marker} modules affected, nothing to lint")
        return 0

    executable = require_linter(config.command, base)
    command = (executable, *config.command[1:])

    logger.info(f"Linting {len(roots)} module(s) with: {shlex.join(config.command)}")
    summary = lint_modules(roots, command, config.fail_fast, base)
    report_summary(summary, command)
    return summary.returncode


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    elif args.quiet:
        logging.getLogger().setLevel(logging.WARNING)

    try:
        return run(args)
    except LintSetupError as e:
        logger.error(str(e))
        return EXIT_SETUP_ERROR


if __name__ == "__main__":
    sys.exit(main())
