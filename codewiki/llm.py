"""Multi-provider text generation for enrichment: Ollama, Groq, OpenAI, Anthropic, Gemini, OpenRouter."""

from __future__ import annotations

import hashlib
import logging
from typing import Any, Dict, Optional

import requests

from .config import DEFAULT_LLM_ENDPOINT, DEFAULT_LLM_MODEL
from .errors import ProviderError

logger = logging.getLogger(__name__)


def _post_json(url: str, payload: Dict[str, Any], headers: Dict[str, str], timeout: float) -> Dict[str, Any]:
    """POST *payload* and return the decoded JSON body, or raise ProviderError."""
    try:
        response = requests.post(
            url,
            json=payload,
            headers={"Content-Type": "application/json", **headers},
            timeout=timeout,
        )
    except requests.Timeout as exc:
        raise ProviderError(f"request timed out: {exc}") from exc
    except requests.RequestException as exc:
        raise ProviderError(f"transport error: {exc}") from exc

    if not 200 <= response.status_code < 300:
        raise ProviderError(f"HTTP {response.status_code}", status=response.status_code)
    try:
        body = response.json()
    except ValueError as exc:
        raise ProviderError("response was not JSON") from exc
    if not isinstance(body, dict):
        raise ProviderError("response JSON was not an object")
    return body


def _require_text(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ProviderError("empty or malformed completion")
    return value


class LLMProvider:
    """Base class for LLM providers."""

    name = "base"

    def generate(self, prompt: str, timeout: float) -> str:
        """Generate a completion for *prompt*; raise ProviderError on any failure."""
        raise NotImplementedError


class OllamaProvider(LLMProvider):
    """Ollama local LLM provider."""

    name = "ollama"

    def __init__(self, model: str, endpoint: str):
        self.model = model
        self.endpoint = endpoint

    def generate(self, prompt: str, timeout: float) -> str:
        parsed = _post_json(self.endpoint, {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": 0.1},
        }, {}, timeout)
        return _require_text(parsed.get("response"))


class OpenAIProvider(LLMProvider):
    """OpenAI API provider (also works with other OpenAI-compatible APIs)."""

    name = "openai"
    default_endpoint = "https://api.openai.com/v1/chat/completions"
    max_tokens = 1024

    def __init__(self, model: str, api_key: str, endpoint: Optional[str] = None):
        self.model = model
        self.api_key = api_key
        self.endpoint = endpoint or self.default_endpoint

    def generate(self, prompt: str, timeout: float) -> str:
        if not self.api_key:
            raise ProviderError(f"no API key configured for {self.name}")
        parsed = _post_json(self.endpoint, {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": 0.1,
            "max_tokens": self.max_tokens,
        }, {"Authorization": f"Bearer {self.api_key}"}, timeout)
        return _require_text(self._extract_response(parsed))

    @staticmethod
    def _extract_response(parsed: Dict[str, Any]) -> Optional[str]:
        try:
            return parsed["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            return None


class GroqProvider(OpenAIProvider):
    """Groq cloud API provider."""

    name = "groq"
    default_endpoint = "https://api.groq.com/openai/v1/chat/completions"


class OpenRouterProvider(OpenAIProvider):
    """OpenRouter API provider (OpenAI-compatible, multi-model gateway)."""

    name = "openrouter"
    default_endpoint = "https://openrouter.ai/api/v1/chat/completions"
    max_tokens = 4096

    @staticmethod
    def _extract_response(parsed: Dict[str, Any]) -> Optional[str]:
        """Extract response text, handling reasoning models that return empty content."""
        try:
            msg = parsed["choices"][0]["message"]
        except (KeyError, IndexError, TypeError):
            return None
        content = msg.get("content") or ""
        if content.strip():
            return content
        # Reasoning models put output in 'reasoning' field
        reasoning = msg.get("reasoning") or ""
        if reasoning.strip():
            return reasoning
        for detail in msg.get("reasoning_details") or []:
            if isinstance(detail, dict) and detail.get("text", "").strip():
                return detail["text"]
        return None


class AnthropicProvider(LLMProvider):
    """Anthropic Claude API provider."""

    name = "anthropic"

    def __init__(self, model: str, api_key: str, endpoint: Optional[str] = None):
        self.model = model
        self.api_key = api_key
        self.endpoint = endpoint or "https://api.anthropic.com/v1/messages"

    def generate(self, prompt: str, timeout: float) -> str:
        if not self.api_key:
            raise ProviderError("no API key configured for anthropic")
        parsed = _post_json(self.endpoint, {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": 1024,
            "temperature": 0.1,
        }, {"x-api-key": self.api_key, "anthropic-version": "2023-06-01"}, timeout)
        try:
            text = parsed["content"][0]["text"]
        except (KeyError, IndexError, TypeError):
            text = None
        return _require_text(text)


class GeminiProvider(LLMProvider):
    """Google Gemini API provider."""

    name = "gemini"

    def __init__(self, model: str, api_key: str):
        self.model = model
        self.api_key = api_key
        self.endpoint = f"https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

    def generate(self, prompt: str, timeout: float) -> str:
        if not self.api_key:
            raise ProviderError("no API key configured for gemini")
        parsed = _post_json(self.endpoint, {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": 0.1, "maxOutputTokens": 1024},
        }, {"x-goog-api-key": self.api_key}, timeout)
        try:
            text = parsed["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            text = None
        return _require_text(text)


class MockProvider(LLMProvider):
    """Offline provider: a deterministic summary derived from the prompt."""

    name = "mock"

    def __init__(self, model: str = "mock"):
        self.model = model

    def generate(self, prompt: str, timeout: float) -> str:
        subject = "this unit"
        for line in prompt.splitlines():
            if line.startswith("Unit: "):
                subject = line[len("Unit: "):].strip()
                break
        digest = hashlib.sha1(prompt.encode("utf-8")).hexdigest()[:8]
        return f"{subject} is documented by the offline generator (context {digest})."


# Default models when the configured one is the Ollama default
_DEFAULT_MODELS = {
    "groq": "llama-3.3-70b-versatile",
    "openai": "gpt-4",
    "anthropic": "claude-3-5-sonnet-20241022",
    "gemini": "gemini-2.0-flash",
    "openrouter": "google/gemini-2.0-flash-exp:free",
}

PROVIDERS = ("ollama", "groq", "openai", "anthropic", "gemini", "openrouter", "mock")


def create_provider(
    name: str,
    model: Optional[str] = None,
    api_key: str = "",
    endpoint: Optional[str] = None,
) -> LLMProvider:
    """Create the provider called *name*; raises ValueError for unknown names."""
    provider_name = (name or "ollama").lower()
    if provider_name not in PROVIDERS:
        raise ValueError(f"Unknown provider '{name}'. Choose from: {', '.join(PROVIDERS)}")
    if model is None or (model == DEFAULT_LLM_MODEL and provider_name in _DEFAULT_MODELS):
        model = _DEFAULT_MODELS.get(provider_name, DEFAULT_LLM_MODEL)
    # The Ollama endpoint only applies to Ollama
    if endpoint == DEFAULT_LLM_ENDPOINT and provider_name != "ollama":
        endpoint = None

    if provider_name == "mock":
        return MockProvider(model)
    if provider_name == "groq":
        return GroqProvider(model, api_key, endpoint)
    if provider_name == "openai":
        return OpenAIProvider(model, api_key, endpoint)
    if provider_name == "openrouter":
        return OpenRouterProvider(model, api_key, endpoint)
    if provider_name == "anthropic":
        return AnthropicProvider(model, api_key, endpoint)
    if provider_name == "gemini":
        return GeminiProvider(model, api_key)
    return OllamaProvider(model, endpoint or DEFAULT_LLM_ENDPOINT)
