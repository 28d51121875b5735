"""
Import-boundary enforcement for the four packages.

1. Engine purity      -- fulfillment_engines/** may not import DB drivers,
                         the ORM, kernel models/db, services, or config.
2. Engine no-impure   -- fulfillment_engines/** may not read the wall clock
                         or the environment.
3. Kernel isolation   -- fulfillment_kernel/** may not import engines,
                         services, or config.
4. Config position    -- fulfillment_config/** may not import services.

All scanning is done via AST; these tests are read-only.
"""

import ast
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]


def _python_files(package: str) -> list[Path]:
    return sorted((ROOT / package).rglob("*.py"))


def _parse(path: Path) -> ast.AST:
    return ast.parse(path.read_text(), filename=str(path))


def _extract_imports(path: Path) -> list[tuple[int, str]]:
    """Return (line_number, module_string) for every import in *path*."""
    results: list[tuple[int, str]] = []
    for node in ast.walk(_parse(path)):
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
    for path in _python_files(package):
        for lineno, module in _extract_imports(path):
            if _matches_any(module, forbidden):
                found.append(f"  {path.relative_to(ROOT)}:{lineno} imports '{module}'")
    return found


class TestEnginePurity:

    FORBIDDEN_PREFIXES = (
        "sqlalchemy",
        "psycopg2",
        "sqlite3",
        "fulfillment_kernel.models",
        "fulfillment_kernel.db",
        "fulfillment_kernel.services",
        "fulfillment_services",
        "fulfillment_config",
    )

    def test_engine_files_have_no_forbidden_imports(self):
        violations = _violations("fulfillment_engines", self.FORBIDDEN_PREFIXES)
        assert not violations, (
            "fulfillment_engines/** must stay pure:\n" + "\n".join(violations)
        )


class TestEngineNoImpureFunctions:
    """Allowed: time.monotonic (duration measurement only)."""

    FORBIDDEN_CALLS = frozenset({
        "datetime.now",
        "datetime.utcnow",
        "date.today",
        "time.time",
        "os.environ",
        "os.getenv",
    })

    def test_no_wall_clock_or_environment(self):
        violations = []
        for path in _python_files("fulfillment_engines"):
            for node in ast.walk(_parse(path)):
                if isinstance(node, ast.Attribute) and isinstance(node.value, ast.Name):
                    name = f"{node.value.id}.{node.attr}"
                    if name in self.FORBIDDEN_CALLS:
                        violations.append(f"  {path.relative_to(ROOT)}:{node.lineno} uses {name}")
        assert not violations, "\n".join(violations)


class TestKernelIsolation:

    def test_kernel_does_not_import_upper_layers(self):
        violations = _violations(
            "fulfillment_kernel",
            ("fulfillment_engines", "fulfillment_services", "fulfillment_config"),
        )
        assert not violations, (
            "fulfillment_kernel/** must not depend on upper layers:\n" + "\n".join(violations)
        )


class TestConfigPosition:

    def test_config_does_not_import_services(self):
        violations = _violations("fulfillment_config", ("fulfillment_services",))
        assert not violations, "\n".join(violations)
