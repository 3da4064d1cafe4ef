"""
tests/test_layout.py -- Package layout and layer rules.

Reads the source with ast, so nothing here depends on import side effects.

Coverage:
  - every installed package has an __init__.py that states its layer rule
  - core/ and coordination/ import nothing from the other packages
  - auth/ never imports from api/
  - optional hints: `X | None` inside auth/, Optional[X] everywhere else
"""

from __future__ import annotations

import ast
import importlib
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
PACKAGES = ["api", "api.routes", "api.routes.v1", "auth", "coordination", "core"]
FIRST_PARTY = {"api", "auth", "coordination", "core", "main"}


def _modules(package_dir: str) -> list[Path]:
    return sorted((ROOT / package_dir).rglob("*.py"))


def _imported_roots(path: Path) -> set[str]:
    roots = set()
    for node in ast.walk(ast.parse(path.read_text())):
        if isinstance(node, ast.Import):
            roots.update(alias.name.split(".")[0] for alias in node.names)
        elif isinstance(node, ast.ImportFrom) and node.module and node.level == 0:
            roots.add(node.module.split(".")[0])
    return roots & FIRST_PARTY


def _optional_unions(path: Path) -> list[int]:
    """Line numbers of `X | None` / `None | X` annotations in path."""
    lines = []
    for node in ast.walk(ast.parse(path.read_text())):
        if isinstance(node, ast.BinOp) and isinstance(node.op, ast.BitOr):
            sides = (node.left, node.right)
            if any(isinstance(s, ast.Constant) and s.value is None for s in sides):
                lines.append(node.lineno)
    return lines


@pytest.mark.parametrize("package", PACKAGES)
def test_package_states_layer_rule(package):
    init = ROOT / package.replace(".", "/") / "__init__.py"
    assert init.is_file()
    doc = importlib.import_module(package).__doc__
    assert doc and "layer rule" in doc.lower()


@pytest.mark.parametrize(
    "package_dir, allowed",
    [
        ("core", set()),
        ("coordination", set()),
        ("auth", {"core", "coordination"}),
    ],
)
def test_layer_imports(package_dir, allowed):
    for path in _modules(package_dir):
        imported = _imported_roots(path) - {package_dir}
        assert imported <= allowed, f"{path.relative_to(ROOT)} imports {sorted(imported - allowed)}"


def test_optional_hint_style():
    auth_unions = [p for p in _modules("auth") if _optional_unions(p)]
    assert auth_unions, "auth/ spells optional hints as X | None"

    outside = [ROOT / "main.py"]
    for package_dir in ("api", "coordination", "core", "tests"):
        outside.extend(_modules(package_dir))
    outside = [p for p in outside if p != ROOT / "api" / "routes" / "v1" / "auth.py"]
    offenders = {}
    for path in outside:
        lines = _optional_unions(path)
        if lines:
            offenders[str(path.relative_to(ROOT))] = lines
    assert offenders == {}
