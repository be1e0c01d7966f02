"""TOML-backed configuration for codewiki.

The file lives at ``~/.codewiki/config.toml`` (``CODEWIKI_HOME`` overrides the
directory) and has two optional sections::

    [llm]
    provider = "openai"
    model = "gpt-4o-mini"
    api_key = "..."

    [wiki]
    site_title = "My Project"
    max_workers = 4
    context_budget = 6000
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import toml

from . import config
from .config import WikiConfig
from .errors import FatalConfigurationError

logger = logging.getLogger(__name__)


# Default configurations for each provider
DEFAULT_CONFIGS: Dict[str, Dict[str, str]] = {
    "ollama": {
        "provider": "ollama",
        "model": "qwen2.5-coder:7b",
        "endpoint": "http://127.0.0.1:11434/api/generate",
    },
    "groq": {
        "provider": "groq",
        "model": "llama-3.3-70b-versatile",
        "endpoint": "https://api.groq.com/openai/v1/chat/completions",
    },
    "openai": {
        "provider": "openai",
        "model": "gpt-4o-mini",
        "endpoint": "https://api.openai.com/v1/chat/completions",
    },
    "anthropic": {
        "provider": "anthropic",
        "model": "claude-3-5-sonnet-20241022",
        "endpoint": "https://api.anthropic.com/v1/messages",
    },
    "gemini": {
        "provider": "gemini",
        "model": "gemini-2.0-flash",
        "endpoint": "https://generativelanguage.googleapis.com/v1beta/models",
    },
    "openrouter": {
        "provider": "openrouter",
        "model": "google/gemini-2.0-flash-exp:free",
        "endpoint": "https://openrouter.ai/api/v1/chat/completions",
    },
    "mock": {
        "provider": "mock",
        "model": "mock",
        "endpoint": "",
    },
}

_WIKI_KEYS = {
    "site_title": str,
    "output_dir": str,
    "security_enabled": bool,
    "refactoring_enabled": bool,
    "function_docs": bool,
    "max_workers": int,
    "parse_timeout": float,
    "enrichment_timeout": float,
    "context_budget": int,
    "max_file_bytes": int,
}


def load_full_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load the entire TOML config (all sections); empty when absent."""
    path = path or config.CONFIG_FILE
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            return toml.load(f)
    except toml.TomlDecodeError as exc:
        raise FatalConfigurationError(f"Invalid TOML in {path}: {exc}") from exc


def get_provider_config(provider: str) -> Dict[str, str]:
    """Get default configuration for a specific provider."""
    return DEFAULT_CONFIGS.get(provider, DEFAULT_CONFIGS["ollama"]).copy()


def load_llm_config(path: Optional[Path] = None) -> Dict[str, str]:
    """Return the ``[llm]`` section layered over the provider defaults."""
    section = load_full_config(path).get("llm", {})
    provider = str(section.get("provider", config.DEFAULT_LLM_PROVIDER)).lower()
    merged = get_provider_config(provider)
    merged.update({k: str(v) for k, v in section.items()})
    merged["provider"] = provider
    return merged


def load_wiki_config(
    overrides: Optional[Dict[str, Any]] = None,
    path: Optional[Path] = None,
) -> WikiConfig:
    """Build a validated WikiConfig from the config file plus CLI overrides.

    Args:
        overrides: Values from the command line; ``None`` entries are ignored.
        path: Alternate config file (defaults to ``~/.codewiki/config.toml``).

    Returns:
        A validated :class:`WikiConfig`.

    Raises:
        FatalConfigurationError: On malformed files or invalid values.
    """
    full = load_full_config(path)
    wiki_section = full.get("wiki", {})
    values: Dict[str, Any] = {}
    for key, value in wiki_section.items():
        caster = _WIKI_KEYS.get(key)
        if caster is None:
            logger.warning("Ignoring unknown [wiki] key '%s'", key)
            continue
        try:
            values[key] = caster(value)
        except (TypeError, ValueError) as exc:
            raise FatalConfigurationError(f"[wiki] {key}: {exc}") from exc

    llm = load_llm_config(path)
    values["ai_provider"] = llm.get("provider", config.DEFAULT_LLM_PROVIDER)
    values["ai_model"] = llm.get("model", config.DEFAULT_LLM_MODEL)
    values["ai_endpoint"] = llm.get("endpoint", "")
    values["ai_api_key"] = llm.get("api_key") or config.env_api_key(values["ai_provider"])

    cfg = WikiConfig().with_overrides(values)
    if overrides:
        provider_override = overrides.get("ai_provider")
        if provider_override and provider_override != cfg.ai_provider:
            defaults = get_provider_config(provider_override)
            cfg = cfg.with_overrides({
                "ai_model": defaults["model"],
                "ai_endpoint": defaults["endpoint"],
                "ai_api_key": config.env_api_key(provider_override),
            })
        cfg = cfg.with_overrides(overrides)
    return cfg.validate()
