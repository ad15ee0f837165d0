"""Multi-provider LLM adapter supporting OpenAI-compatible servers, Ollama, Groq, and Anthropic."""

from __future__ import annotations

import http.client
import json
import logging
import urllib.request
from typing import Dict, List, Optional

from .config import LLM_API_KEY, LLM_ENDPOINT, LLM_MODEL, LLM_PROVIDER

logger = logging.getLogger(__name__)

Messages = List[Dict[str, str]]

_TRANSPORT_ERRORS = (
    # URLError, socket timeouts and connection resets are all OSError
    OSError,
    http.client.HTTPException,
    # malformed JSON and non-UTF-8 bodies
    ValueError,
    # replies of an unexpected shape
    KeyError,
    IndexError,
    TypeError,
    AttributeError,
)


class LLMProvider:
    """Base class for LLM providers.

    ``chat`` returns ``None`` on any transport or decoding failure; callers
    decide whether that is fatal.
    """

    timeout: float = 30

    def chat(self, messages: Messages, max_tokens: int = 1024, temperature: float = 0.1) -> Optional[str]:
        raise NotImplementedError


class OpenAIProvider(LLMProvider):
    """OpenAI API provider (also works with LM Studio and other OpenAI-compatible APIs)."""

    def __init__(self, model: str, api_key: str, endpoint: str = "https://api.openai.com/v1/chat/completions"):
        self.model = model
        self.api_key = api_key
        self.endpoint = endpoint

    def chat(self, messages: Messages, max_tokens: int = 1024, temperature: float = 0.1) -> Optional[str]:
        is_local = "api.openai.com" not in self.endpoint
        if not self.api_key and not is_local:
            return None

        payload = json.dumps({
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }).encode("utf-8")

        req = urllib.request.Request(
            self.endpoint,
            data=payload,
            headers={
                "Content-Type": "application/json",
                # LM Studio accepts any bearer token
                "Authorization": f"Bearer {self.api_key or 'lm-studio'}",
            },
            method="POST",
        )

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                body = resp.read().decode("utf-8")
                parsed = json.loads(body)
                return parsed["choices"][0]["message"]["content"]
        except _TRANSPORT_ERRORS as exc:
            logger.warning("OpenAI request failed: %s", exc)
            return None


class OllamaProvider(LLMProvider):
    """Ollama local LLM provider."""

    def __init__(self, model: str, endpoint: str):
        self.model = model
        self.endpoint = endpoint

    def chat(self, messages: Messages, max_tokens: int = 1024, temperature: float = 0.1) -> Optional[str]:
        # /api/generate has no chat format, flatten the conversation
        payload = json.dumps({
            "model": self.model,
            "prompt": _messages_to_prompt(messages),
            "stream": False,
            "options": {"temperature": temperature, "num_predict": max_tokens},
        }).encode("utf-8")

        req = urllib.request.Request(
            self.endpoint,
            data=payload,
            headers={"Content-Type": "application/json"},
            method="POST",
        )

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                body = resp.read().decode("utf-8")
                parsed = json.loads(body)
                return parsed.get("response")
        except _TRANSPORT_ERRORS as exc:
            logger.warning("Ollama request failed: %s", exc)
            return None


class GroqProvider(LLMProvider):
    """Groq cloud API provider."""

    def __init__(self, model: str, api_key: str):
        self.model = model
        self.api_key = api_key
        self.endpoint = "https://api.groq.com/openai/v1/chat/completions"

    def chat(self, messages: Messages, max_tokens: int = 1024, temperature: float = 0.1) -> Optional[str]:
        if not self.api_key:
            return None

        import requests

        try:
            response = requests.post(
                self.endpoint,
                headers={
                    "Content-Type": "application/json",
                    "Authorization": f"Bearer {self.api_key}",
                },
                json={
                    "model": self.model,
                    "messages": messages,
                    "temperature": temperature,
                    "max_tokens": max_tokens,
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()["choices"][0]["message"]["content"]
        except (requests.RequestException, ValueError, KeyError, IndexError, TypeError) as exc:
            logger.warning("Groq request failed: %s", exc)
            return None


class AnthropicProvider(LLMProvider):
    """Anthropic Claude API provider."""

    def __init__(self, model: str, api_key: str):
        self.model = model
        self.api_key = api_key
        self.endpoint = "https://api.anthropic.com/v1/messages"

    def chat(self, messages: Messages, max_tokens: int = 1024, temperature: float = 0.1) -> Optional[str]:
        if not self.api_key:
            return None

        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        body: dict = {
            "model": self.model,
            "messages": [m for m in messages if m["role"] != "system"],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if system:
            body["system"] = system

        req = urllib.request.Request(
            self.endpoint,
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "x-api-key": self.api_key,
                "anthropic-version": "2023-06-01",
            },
            method="POST",
        )

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                parsed = json.loads(resp.read().decode("utf-8"))
                return parsed["content"][0]["text"]
        except _TRANSPORT_ERRORS as exc:
            logger.warning("Anthropic request failed: %s", exc)
            return None


class LocalLLM:
    """Multi-provider LLM manager."""

    def __init__(
        self,
        model: Optional[str] = None,
        provider: Optional[str] = None,
        api_key: Optional[str] = None,
        endpoint: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        """Initialize LLM with provider selection.

        Args:
            model: Model name (defaults to config or "gpt-4o")
            provider: Provider name: "openai", "ollama", "groq", "anthropic" (defaults to config)
            api_key: API key for cloud providers (defaults to config / OPENAI_API_KEY)
            endpoint: Custom endpoint for Ollama or OpenAI-compatible servers
            timeout: Per-request timeout in seconds
        """
        self.provider_name = provider or LLM_PROVIDER
        self.model = model or LLM_MODEL
        self.api_key = api_key or LLM_API_KEY
        self.endpoint = endpoint or LLM_ENDPOINT

        self.provider = self._create_provider()
        if timeout is not None:
            self.provider.timeout = timeout

    @property
    def is_local(self) -> bool:
        """True when talking to a self-hosted server, which usually has a small context window."""
        if self.provider_name.lower() == "ollama":
            return True
        return bool(self.endpoint) and "api.openai.com" not in self.endpoint

    def _create_provider(self) -> LLMProvider:
        """Create the appropriate provider based on configuration."""
        provider_name = self.provider_name.lower()

        if provider_name == "ollama":
            endpoint = self.endpoint or "http://127.0.0.1:11434/api/generate"
            return OllamaProvider(self.model, endpoint)

        elif provider_name == "groq":
            return GroqProvider(self.model, self.api_key)

        elif provider_name == "anthropic":
            return AnthropicProvider(self.model, self.api_key)

        else:  # Default to OpenAI (or any OpenAI-compatible endpoint)
            endpoint = self.endpoint or "https://api.openai.com/v1/chat/completions"
            if not endpoint.rstrip("/").endswith("/chat/completions"):
                endpoint = endpoint.rstrip("/") + "/chat/completions"
            return OpenAIProvider(self.model, self.api_key, endpoint)

    def chat_completion(
        self,
        messages: Messages,
        max_tokens: int = 1024,
        temperature: float = 0.1,
    ) -> Optional[str]:
        """Generate a response for a multi-turn conversation.

        Returns:
            Assistant response or None if the provider failed
        """
        return self.provider.chat(messages, max_tokens=max_tokens, temperature=temperature)


def _messages_to_prompt(messages: Messages) -> str:
    """Convert chat messages to a single prompt for completion-style endpoints."""
    parts = []
    for msg in messages:
        role = msg["role"]
        content = msg["content"]
        if role == "system":
            parts.append(f"System: {content}")
        elif role == "user":
            parts.append(f"User: {content}")
        elif role == "assistant":
            parts.append(f"Assistant: {content}")
    return "\n\n".join(parts)
