"""Pytest configuration and fixtures for codewiki tests."""

import shutil
import tempfile
from pathlib import Path
from typing import Callable, Dict, Generator

import pytest

from codewiki.extractor import SymbolExtractor, SymbolTable
from codewiki.graph import CodeGraph, GraphBuilder
from codewiki.llm import MockProvider
from codewiki.models import SourceUnit
from codewiki.parser import AdapterRegistry, PythonAdapter, detect_language


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path_factory, monkeypatch):
    """Point the config file at an empty location so a user's
    ``~/.codewiki/config.toml`` never leaks into a test run."""
    home = tmp_path_factory.mktemp("codewiki_home")
    monkeypatch.setattr("codewiki.config.BASE_DIR", home)
    monkeypatch.setattr("codewiki.config.CONFIG_FILE", home / "config.toml")
    for var in ("OLLAMA_API_KEY", "OPENAI_API_KEY", "GROQ_API_KEY", "ANTHROPIC_API_KEY"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def sample_project_path() -> Path:
    """Get path to sample test project."""
    return Path(__file__).parent / "fixtures" / "sample_project"


@pytest.fixture
def mixed_project_path() -> Path:
    """Sample project with Python, JavaScript and Rust files."""
    return Path(__file__).parent / "fixtures" / "mixed_project"


@pytest.fixture
def make_project(temp_dir: Path) -> Callable[[Dict[str, str]], Path]:
    """Write ``{relative_path: source}`` into a fresh project directory."""

    def _make(files: Dict[str, str]) -> Path:
        root = temp_dir / "project"
        for rel_path, text in files.items():
            target = root / rel_path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(text, encoding="utf-8")
        root.mkdir(parents=True, exist_ok=True)
        return root

    return _make


@pytest.fixture
def python_registry() -> AdapterRegistry:
    return AdapterRegistry([PythonAdapter()])


@pytest.fixture
def build_table() -> Callable[..., SymbolTable]:
    """Parse in-memory ``{path: source}`` with the default adapters."""

    def _build(files: Dict[str, str], registry: AdapterRegistry = None) -> SymbolTable:
        registry = registry or AdapterRegistry.default()
        units = [
            SourceUnit(path, detect_language(path, text) or "", text, float(i))
            for i, (path, text) in enumerate(sorted(files.items()))
        ]
        return SymbolExtractor(registry, max_workers=2).extract(units)

    return _build


@pytest.fixture
def build_graph(build_table) -> Callable[..., CodeGraph]:
    def _build(files: Dict[str, str], registry: AdapterRegistry = None) -> CodeGraph:
        return GraphBuilder().build(build_table(files, registry))

    return _build


@pytest.fixture
def mock_provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def sample_python_code() -> str:
    """Sample Python code for testing parser."""
    return '''"""Sample module for testing."""

def hello(name: str) -> str:
    """Say hello."""
    return f"Hello, {name}!"

class Calculator:
    """Simple calculator."""

    def add(self, a: int, b: int) -> int:
        """Add two numbers."""
        return a + b

    def multiply(self, a: int, b: int) -> int:
        """Multiply two numbers."""
        result = self.add(a, 0)  # Call to add
        for _ in range(b - 1):
            result = self.add(result, a)
        return result
'''
