"""Model providers behind one ``generate(contents, tools, model)`` contract.

Gemini calls tools natively. OpenAI and Claude run in JSON mode: the prompt asks
them for a ``{"tool", "args", "reply"}`` object and the orchestrator interprets
their raw text.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import anthropic
import openai
from openai import OpenAI

from .config import Settings
from .errors import ModelInvocationError, ModelNotFoundError

logger = logging.getLogger("dashboard.providers")

DEFAULT_PROVIDER = "gemini"
PROVIDER_NAMES = ("gemini", "openai", "claude")


@dataclass
class ToolCall:
    name: str
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ModelReply:
    """Provider output: free text plus any native tool calls."""
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)


def _message_text(entry: dict) -> str:
    parts = entry.get("parts", []) or []
    return "\n".join(str(part.get("text", "")) for part in parts if isinstance(part, dict))


def to_chat_messages(contents: List[dict]) -> List[Dict[str, str]]:
    """Map Gemini-style contents onto user/assistant chat messages, merging same-role runs."""
    messages: List[Dict[str, str]] = []
    for entry in contents:
        if not isinstance(entry, dict):
            continue
        role = "assistant" if entry.get("role") == "model" else "user"
        text = _message_text(entry)
        if not text:
            continue
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"] += "\n\n" + text
        else:
            messages.append({"role": role, "content": text})
    if messages and messages[0]["role"] != "user":
        messages.insert(0, {"role": "user", "content": "(conversation continues)"})
    return messages


class OpenAIProvider:
    """OpenAI chat-completions provider in JSON mode."""

    name = "openai"
    json_mode = True

    def __init__(self, settings: Settings) -> None:
        if not settings.openai_api_key:
            raise ValueError("OPENAI_API_KEY is required")
        self._settings = settings
        self._client = OpenAI(api_key=settings.openai_api_key, timeout=settings.model_timeout)

    def generate(self, contents: List[dict], tools: Optional[List[dict]] = None, model: Optional[str] = None) -> ModelReply:
        # Tools are described in the prompt; the reply text is parsed by the orchestrator.
        try:
            response = self._client.chat.completions.create(
                model=model or self._settings.openai_model,
                messages=to_chat_messages(contents),
                temperature=self._settings.model_temperature,
            )
        except openai.NotFoundError as exc:
            raise ModelNotFoundError(f"OpenAI model not found: {exc}") from exc
        except openai.OpenAIError as exc:
            raise ModelInvocationError(f"OpenAI request failed: {exc}") from exc
        text = ""
        if response.choices and response.choices[0].message:
            text = response.choices[0].message.content or ""
        return ModelReply(text=text.strip())

    def generate_text(self, prompt: str, model: Optional[str] = None) -> str:
        return self.generate([{"role": "user", "parts": [{"text": prompt}]}], model=model).text


class ClaudeProvider:
    """Anthropic messages-API provider in JSON mode."""

    name = "claude"
    json_mode = True
    max_tokens = 2048

    def __init__(self, settings: Settings) -> None:
        if not settings.anthropic_api_key:
            raise ValueError("ANTHROPIC_API_KEY is required")
        self._settings = settings
        self._client = anthropic.Anthropic(api_key=settings.anthropic_api_key, timeout=settings.model_timeout)

    def generate(self, contents: List[dict], tools: Optional[List[dict]] = None, model: Optional[str] = None) -> ModelReply:
        try:
            response = self._client.messages.create(
                model=model or self._settings.anthropic_model,
                max_tokens=self.max_tokens,
                temperature=self._settings.model_temperature,
                messages=to_chat_messages(contents),
            )
        except anthropic.NotFoundError as exc:
            raise ModelNotFoundError(f"Claude model not found: {exc}") from exc
        except anthropic.AnthropicError as exc:
            raise ModelInvocationError(f"Claude request failed: {exc}") from exc
        text = "".join(
            getattr(block, "text", "") for block in response.content if getattr(block, "type", "") == "text"
        )
        return ModelReply(text=text.strip())

    def generate_text(self, prompt: str, model: Optional[str] = None) -> str:
        return self.generate([{"role": "user", "parts": [{"text": prompt}]}], model=model).text


def _build_gemini(settings: Settings) -> Any:
    from .gemini_client import GeminiClient

    return GeminiClient(settings)


DEFAULT_FACTORIES: Dict[str, Callable[[Settings], Any]] = {
    "gemini": _build_gemini,
    "openai": OpenAIProvider,
    "claude": ClaudeProvider,
}


class ProviderRegistry:
    """Lazily builds and caches one client per provider name."""

    def __init__(
        self,
        settings: Settings,
        factories: Optional[Dict[str, Callable[[Settings], Any]]] = None,
    ) -> None:
        """Purpose: Keep provider factories without constructing any SDK client yet.
        Inputs/Outputs: Inputs are Settings and optional name -> factory overrides.
        Side Effects / State: None until the first ``get``.
        Dependencies: DEFAULT_FACTORIES.
        Failure Modes: None at init; missing keys surface at request time.
        If Removed: The app would need every API key at startup.
        Testing Notes: Inject fake factories and verify each is built once.
        """
        # Defer SDK construction so a missing key fails one request, not the service.
        self._settings = settings
        self._factories = dict(factories or DEFAULT_FACTORIES)
        self._clients: Dict[str, Any] = {}
        self._lock = threading.Lock()

    @property
    def fallback_model(self) -> str:
        return self._settings.gemini_fallback_model

    def get(self, name: Optional[str]) -> Any:
        """Purpose: Return the client for a provider name (default gemini).
        Inputs/Outputs: Input is the requested provider; output is a provider client.
        Side Effects / State: Builds and caches the client on first use.
        Dependencies: Provider factories.
        Failure Modes: Unknown names fall back to gemini; construction errors (missing API
            key, bad config) raise ModelInvocationError.
        If Removed: The orchestrator has no way to reach a model.
        Testing Notes: Request "openai" without a key and expect ModelInvocationError.
        """
        # Normalize the name, then build once under the lock.
        provider = name if name in self._factories else DEFAULT_PROVIDER
        with self._lock:
            client = self._clients.get(provider)
            if client is None:
                try:
                    client = self._factories[provider](self._settings)
                except ValueError as exc:
                    raise ModelInvocationError(f"{provider} provider is not configured: {exc}") from exc
                self._clients[provider] = client
                logger.info("provider=%s initialized", provider)
            return client
