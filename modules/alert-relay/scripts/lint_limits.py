#!/usr/bin/env python3
from __future__ import annotations

import ast
import sys
from pathlib import Path

MAX_FUNCTION_LINES = 80
MAX_FILE_LINES = 400
# Only the CLI talks to stdout; everything else goes through RelayLogger.
PRINT_ALLOWED = {"cli.py", "lint_limits.py"}


def iter_python_files(root: Path) -> list[tuple[Path, bool]]:
    paths: list[tuple[Path, bool]] = []
    for folder, is_source in [(root / "src" / "alert_relay", True), (root / "tests", False)]:
        if not folder.exists():
            continue
        for path in sorted(folder.rglob("*.py")):
            if "__pycache__" in path.parts:
                continue
            paths.append((path, is_source))
    return paths


def check_file_length(path: Path, lines: list[str]) -> list[str]:
    if len(lines) > MAX_FILE_LINES:
        return [f"{path}: file too long ({len(lines)} > {MAX_FILE_LINES})"]
    return []


def check_functions(path: Path, tree: ast.AST) -> list[str]:
    errors: list[str] = []
    for node in ast.walk(tree):
        if not isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            continue
        if not node.end_lineno or not node.lineno:
            continue
        length = node.end_lineno - node.lineno + 1
        if length > MAX_FUNCTION_LINES:
            errors.append(
                f"{path}:{node.lineno} {node.name} too long ({length} > {MAX_FUNCTION_LINES})"
            )
    return errors


def check_source_rules(path: Path, tree: ast.AST) -> list[str]:
    errors: list[str] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.ExceptHandler) and node.type is None:
            errors.append(f"{path}:{node.lineno} bare except")
        if (
            path.name not in PRINT_ALLOWED
            and isinstance(node, ast.Call)
            and isinstance(node.func, ast.Name)
            and node.func.id == "print"
        ):
            errors.append(f"{path}:{node.lineno} print outside the CLI")
    return errors


def main() -> int:
    root = Path(__file__).resolve().parents[1]
    failures: list[str] = []
    for path, is_source in iter_python_files(root):
        text = path.read_text(encoding="utf-8")
        tree = ast.parse(text)
        failures.extend(check_file_length(path, text.splitlines()))
        failures.extend(check_functions(path, tree))
        if is_source:
            failures.extend(check_source_rules(path, tree))
    if failures:
        for failure in failures:
            print(failure)
        return 1
    print(f"lint ok files={len(iter_python_files(root))}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
