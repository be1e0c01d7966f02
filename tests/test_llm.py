"""Tests for LLM providers with the HTTP layer patched out."""

import pytest
import requests

from codewiki.config import DEFAULT_LLM_ENDPOINT, DEFAULT_LLM_MODEL
from codewiki.errors import ProviderError
from codewiki.llm import (
    AnthropicProvider,
    GeminiProvider,
    GroqProvider,
    MockProvider,
    OllamaProvider,
    OpenAIProvider,
    OpenRouterProvider,
    create_provider,
)


class FakeResponse:
    def __init__(self, status_code=200, body=None, invalid_json=False):
        self.status_code = status_code
        self._body = body
        self._invalid_json = invalid_json

    def json(self):
        if self._invalid_json:
            raise ValueError("not json")
        return self._body


@pytest.fixture
def fake_post(monkeypatch):
    """Patch ``requests.post`` and record each call."""
    calls = []
    state = {"response": FakeResponse(body={})}

    def _post(url, json=None, headers=None, timeout=None):
        calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        response = state["response"]
        if isinstance(response, Exception):
            raise response
        return response

    monkeypatch.setattr(requests, "post", _post)

    def _respond(response):
        state["response"] = response
        return calls

    return _respond


class TestProviders:
    """Test request shapes and response parsing per provider."""

    def test_ollama(self, fake_post):
        """Test the Ollama generate API."""
        calls = fake_post(FakeResponse(body={"response": "summary"}))
        text = OllamaProvider("qwen", DEFAULT_LLM_ENDPOINT).generate("hi", 3.0)

        assert text == "summary"
        assert calls[0]["url"] == DEFAULT_LLM_ENDPOINT
        assert calls[0]["json"]["stream"] is False
        assert calls[0]["timeout"] == 3.0

    def test_openai(self, fake_post):
        """Test the chat completions API with a bearer token."""
        calls = fake_post(FakeResponse(body={"choices": [{"message": {"content": "done"}}]}))
        text = OpenAIProvider("gpt-4", "sk-123").generate("hi", 5.0)

        assert text == "done"
        assert calls[0]["headers"]["Authorization"] == "Bearer sk-123"
        assert calls[0]["url"] == OpenAIProvider.default_endpoint

    def test_groq_uses_its_endpoint(self, fake_post):
        """Test the OpenAI-compatible subclass endpoint."""
        calls = fake_post(FakeResponse(body={"choices": [{"message": {"content": "ok"}}]}))
        GroqProvider("llama", "key").generate("hi", 5.0)

        assert calls[0]["url"] == GroqProvider.default_endpoint

    def test_openrouter_reasoning_field(self, fake_post):
        """Test reasoning models that leave content empty."""
        fake_post(FakeResponse(body={"choices": [{"message": {"content": "", "reasoning": "thought"}}]}))

        assert OpenRouterProvider("m", "key").generate("hi", 5.0) == "thought"

    def test_anthropic(self, fake_post):
        """Test the messages API headers and parsing."""
        calls = fake_post(FakeResponse(body={"content": [{"text": "claude says"}]}))
        text = AnthropicProvider("claude", "key").generate("hi", 5.0)

        assert text == "claude says"
        assert calls[0]["headers"]["x-api-key"] == "key"
        assert "anthropic-version" in calls[0]["headers"]

    def test_gemini(self, fake_post):
        """Test the generateContent API."""
        calls = fake_post(FakeResponse(body={
            "candidates": [{"content": {"parts": [{"text": "gemini says"}]}}],
        }))
        text = GeminiProvider("gemini-2.0-flash", "key").generate("hi", 5.0)

        assert text == "gemini says"
        assert calls[0]["url"].endswith("gemini-2.0-flash:generateContent")


class TestProviderErrors:
    """Test that every failure is a ProviderError."""

    def test_non_2xx(self, fake_post):
        """Test HTTP errors carry the status."""
        fake_post(FakeResponse(status_code=503))
        with pytest.raises(ProviderError) as excinfo:
            OllamaProvider("m", DEFAULT_LLM_ENDPOINT).generate("hi", 1.0)

        assert excinfo.value.status == 503
        assert excinfo.value.reason == "HTTP 503"

    def test_invalid_json(self, fake_post):
        """Test that a non-JSON body is an error."""
        fake_post(FakeResponse(invalid_json=True))
        with pytest.raises(ProviderError, match="not JSON"):
            OllamaProvider("m", DEFAULT_LLM_ENDPOINT).generate("hi", 1.0)

    def test_missing_field(self, fake_post):
        """Test that an unexpected shape is an error."""
        fake_post(FakeResponse(body={"choices": []}))
        with pytest.raises(ProviderError, match="malformed"):
            OpenAIProvider("m", "key").generate("hi", 1.0)

    def test_transport_error(self, fake_post):
        """Test that connection failures are wrapped."""
        fake_post(requests.ConnectionError("refused"))
        with pytest.raises(ProviderError, match="transport error"):
            OllamaProvider("m", DEFAULT_LLM_ENDPOINT).generate("hi", 1.0)

    def test_timeout(self, fake_post):
        """Test that request timeouts are wrapped."""
        fake_post(requests.Timeout("slow"))
        with pytest.raises(ProviderError, match="timed out"):
            OllamaProvider("m", DEFAULT_LLM_ENDPOINT).generate("hi", 1.0)

    def test_missing_api_key(self, fake_post):
        """Test that hosted providers refuse to call without a key."""
        calls = fake_post(FakeResponse(body={}))
        for provider in (OpenAIProvider("m", ""), AnthropicProvider("m", ""), GeminiProvider("m", "")):
            with pytest.raises(ProviderError, match="no API key"):
                provider.generate("hi", 1.0)

        assert calls == []


class TestCreateProvider:
    """Test the provider factory."""

    def test_provider_mapping(self):
        """Test that each name maps to its class."""
        assert isinstance(create_provider("ollama"), OllamaProvider)
        assert isinstance(create_provider("groq", api_key="k"), GroqProvider)
        assert isinstance(create_provider("openai", api_key="k"), OpenAIProvider)
        assert isinstance(create_provider("openrouter", api_key="k"), OpenRouterProvider)
        assert isinstance(create_provider("anthropic", api_key="k"), AnthropicProvider)
        assert isinstance(create_provider("gemini", api_key="k"), GeminiProvider)
        assert isinstance(create_provider("MOCK"), MockProvider)

    def test_default_model_per_provider(self):
        """Test that the Ollama default model is swapped for a hosted default."""
        assert create_provider("ollama", DEFAULT_LLM_MODEL).model == DEFAULT_LLM_MODEL
        assert create_provider("groq", DEFAULT_LLM_MODEL, "k").model == "llama-3.3-70b-versatile"
        assert create_provider("openai", "gpt-4o", "k").model == "gpt-4o"

    def test_ollama_endpoint_not_reused(self):
        """Test that the local endpoint is not sent to hosted providers."""
        provider = create_provider("openai", api_key="k", endpoint=DEFAULT_LLM_ENDPOINT)

        assert provider.endpoint == OpenAIProvider.default_endpoint

    def test_unknown_provider(self):
        """Test that unknown names raise ValueError."""
        with pytest.raises(ValueError, match="Unknown provider"):
            create_provider("skynet")
