"""Configuration paths and run settings for codewiki."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Set

from .errors import FatalConfigurationError

BASE_DIR = Path(os.environ.get("CODEWIKI_HOME", str(Path.home() / ".codewiki"))).expanduser()
CONFIG_FILE = BASE_DIR / "config.toml"

SKIP_DIRS: Set[str] = {
    ".venv", "venv", "__pycache__", "node_modules", ".git",
    "site-packages", ".tox", ".pytest_cache", "build", "dist",
    ".mypy_cache", ".ruff_cache", "htmlcov", ".eggs", "target",
    "egg-info", ".codewiki", "wiki_site",
}

DEFAULT_SITE_TITLE = "Code Wiki"
DEFAULT_OUTPUT_DIR = Path("wiki_site")
DEFAULT_MAX_WORKERS = min(8, (os.cpu_count() or 2) + 2)
DEFAULT_PARSE_TIMEOUT = 10.0
DEFAULT_ENRICHMENT_TIMEOUT = 30.0
DEFAULT_CONTEXT_BUDGET = 4000
DEFAULT_MAX_FILE_BYTES = 1_000_000

DEFAULT_LLM_PROVIDER = "ollama"
DEFAULT_LLM_MODEL = "qwen2.5-coder:7b"
DEFAULT_LLM_ENDPOINT = "http://127.0.0.1:11434/api/generate"


@dataclass(frozen=True)
class WikiConfig:
    """Settings for a single generation run."""

    site_title: str = DEFAULT_SITE_TITLE
    output_dir: Path = DEFAULT_OUTPUT_DIR
    ai_enabled: bool = False
    ai_use_mock: bool = False
    ai_provider: str = DEFAULT_LLM_PROVIDER
    ai_model: str = DEFAULT_LLM_MODEL
    ai_api_key: str = field(default="", repr=False)
    ai_endpoint: str = DEFAULT_LLM_ENDPOINT
    security_enabled: bool = True
    refactoring_enabled: bool = True
    function_docs: bool = False
    max_workers: int = DEFAULT_MAX_WORKERS
    parse_timeout: float = DEFAULT_PARSE_TIMEOUT
    enrichment_timeout: float = DEFAULT_ENRICHMENT_TIMEOUT
    context_budget: int = DEFAULT_CONTEXT_BUDGET
    max_file_bytes: int = DEFAULT_MAX_FILE_BYTES

    def validate(self) -> "WikiConfig":
        """Raise FatalConfigurationError for settings no run can use."""
        if self.max_workers < 1:
            raise FatalConfigurationError(f"max_workers must be >= 1, got {self.max_workers}")
        if self.parse_timeout <= 0:
            raise FatalConfigurationError(f"parse_timeout must be > 0, got {self.parse_timeout}")
        if self.enrichment_timeout <= 0:
            raise FatalConfigurationError(
                f"enrichment_timeout must be > 0, got {self.enrichment_timeout}"
            )
        if self.context_budget < 64:
            raise FatalConfigurationError(
                f"context_budget must be at least 64 characters, got {self.context_budget}"
            )
        if self.max_file_bytes < 1:
            raise FatalConfigurationError("max_file_bytes must be positive")
        return self

    def with_overrides(self, overrides: Dict[str, Any]) -> "WikiConfig":
        """Return a copy with every non-None override applied."""
        known = {f.name for f in fields(self)}
        changes: Dict[str, Any] = {}
        for key, value in overrides.items():
            if value is None:
                continue
            if key not in known:
                raise FatalConfigurationError(f"Unknown configuration key: {key}")
            if key == "output_dir":
                value = Path(value)
            changes[key] = value
        return replace(self, **changes)


def env_api_key(provider: Optional[str]) -> str:
    """API key from the conventional environment variable for *provider*."""
    if not provider:
        return ""
    return os.environ.get(f"{provider.upper()}_API_KEY", "")
