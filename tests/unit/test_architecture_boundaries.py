import ast
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]


def _imported_modules(py_file: Path):
    tree = ast.parse(py_file.read_text(encoding="utf-8"), filename=str(py_file))
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                yield node.lineno, alias.name
        elif isinstance(node, ast.ImportFrom):
            yield node.lineno, node.module or ""


def _violations(layer: str, forbidden: str):
    found = []
    for py_file in (REPO_ROOT / "vidsqueeze" / layer).rglob("*.py"):
        rel_path = py_file.relative_to(REPO_ROOT)
        for lineno, name in _imported_modules(py_file):
            if name == forbidden or name.startswith(forbidden + "."):
                found.append(f"{rel_path}:{lineno} imports {name}")
    return found


@pytest.mark.parametrize("layer,forbidden", [
    ("pipeline", "vidsqueeze.ui"),
    ("infrastructure", "vidsqueeze.ui"),
    ("infrastructure", "vidsqueeze.pipeline"),
    ("domain", "vidsqueeze.infrastructure"),
    ("domain", "vidsqueeze.pipeline"),
    ("domain", "vidsqueeze.ui"),
])
def test_layer_does_not_import_outer_layer(layer, forbidden):
    violations = _violations(layer, forbidden)
    assert not violations, f"{layer} layer must not import {forbidden}:\n" + "\n".join(violations)
