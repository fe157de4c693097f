"""
Import-boundary enforcement.

1. Engine purity       -- approval_engines/** may not import the DB, ORM,
                          models, services, selectors or config layers.
2. Domain purity       -- approval_kernel/domain/** may not import SQLAlchemy
                          or any outer kernel layer.
3. Kernel direction    -- approval_kernel/** may not import approval_services
                          or approval_config.
4. No wall clock       -- engines and kernel services never call
                          datetime.now / datetime.utcnow directly.

All scanning is done via AST; these tests are read-only.
"""

import ast
import glob
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]


def _python_files(package: str) -> list[str]:
    return sorted(glob.glob(f"{ROOT / package}/**/*.py", recursive=True))


def _extract_imports(filepath: str) -> list[tuple[int, str]]:
    """Return (line_number, module_string) for every import in *filepath*."""
    tree = ast.parse(Path(filepath).read_text(), filename=filepath)
    results: list[tuple[int, str]] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                results.append((node.lineno, alias.name))
        elif isinstance(node, ast.ImportFrom) and node.module:
            results.append((node.lineno, node.module))
    return results


def _matches_any(module: str, prefixes: tuple[str, ...]) -> bool:
    return any(module == p or module.startswith(f"{p}.") for p in prefixes)


def _violations(package: str, forbidden: tuple[str, ...]) -> list[str]:
    found = []
    for filepath in _python_files(package):
        for lineno, module in _extract_imports(filepath):
            if _matches_any(module, forbidden):
                found.append(f"{Path(filepath).relative_to(ROOT)}:{lineno} imports {module}")
    return found


class TestEnginePurity:

    FORBIDDEN = (
        "sqlalchemy",
        "approval_kernel.db",
        "approval_kernel.models",
        "approval_kernel.services",
        "approval_kernel.selectors",
        "approval_config",
        "approval_services",
    )

    def test_engines_have_files(self):
        assert _python_files("approval_engines")

    def test_engines_import_only_domain_types(self):
        assert _violations("approval_engines", self.FORBIDDEN) == []


class TestDomainPurity:

    def test_domain_has_no_persistence_imports(self):
        forbidden = (
            "sqlalchemy",
            "approval_kernel.db",
            "approval_kernel.models",
            "approval_kernel.services",
            "approval_kernel.selectors",
            "approval_engines",
        )
        assert _violations("approval_kernel/domain", forbidden) == []


class TestDependencyDirection:

    def test_kernel_does_not_import_outer_layers(self):
        assert _violations("approval_kernel", ("approval_services", "approval_config")) == []

    def test_config_does_not_import_services(self):
        assert _violations("approval_config", ("approval_services",)) == []


class TestNoWallClock:

    def _attribute_calls(self, filepath: str) -> list[tuple[int, str]]:
        tree = ast.parse(Path(filepath).read_text(), filename=filepath)
        return [
            (node.lineno, f"{node.value.id}.{node.attr}")
            for node in ast.walk(tree)
            if isinstance(node, ast.Attribute) and isinstance(node.value, ast.Name)
        ]

    def test_services_and_engines_use_the_injected_clock(self):
        banned = {"datetime.now", "datetime.utcnow"}
        offenders = []
        for package in ("approval_engines", "approval_kernel/services", "approval_kernel/selectors"):
            for filepath in _python_files(package):
                for lineno, ref in self._attribute_calls(filepath):
                    if ref in banned:
                        offenders.append(f"{Path(filepath).relative_to(ROOT)}:{lineno} {ref}")
        assert offenders == []
