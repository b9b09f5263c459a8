from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Dict, List, Optional

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from .config import Settings
from .errors import ModelInvocationError, ModelNotFoundError
from .providers import ModelReply, ToolCall


class GeminiClient:
    """Thin wrapper around the Gemini SDK with model caching and native tool calls."""

    name = "gemini"
    json_mode = False

    def __init__(self, settings: Settings) -> None:
        """Purpose: Configure the Gemini SDK and initialize the model cache.
        Inputs/Outputs: Input is Settings; no return value.
        Side Effects / State: Configures the SDK global API key and caches model instances.
        Dependencies: Uses google.generativeai and Settings from config.
        Failure Modes: Raises ValueError if the API key or model name is missing.
        If Removed: The default provider is unavailable and every request fails.
        Testing Notes: Validate missing key raises ValueError and models are cached.
        """
        # Configure API key and seed the default model cache.
        self._settings = settings
        if not settings.gemini_api_key:
            raise ValueError("GEMINI_API_KEY is required")
        genai.configure(api_key=settings.gemini_api_key)
        self._models: Dict[str, genai.GenerativeModel] = {}
        self._default_model = _normalize_model_name(settings.gemini_model)
        if not self._default_model:
            raise ValueError("Gemini model name is required")
        self._models[self._default_model] = genai.GenerativeModel(self._default_model)

    def _model(self, model: Optional[str]) -> genai.GenerativeModel:
        model_name = _normalize_model_name(model) if model else self._default_model
        if not model_name:
            raise ValueError("Gemini model name is required")
        if model_name not in self._models:
            self._models[model_name] = genai.GenerativeModel(model_name)
        return self._models[model_name]

    def generate(
        self,
        contents: List[dict],
        tools: Optional[List[dict]] = None,
        model: Optional[str] = None,
    ) -> ModelReply:
        """Purpose: Run one tool-enabled generation over chat contents.
        Inputs/Outputs: Inputs are role/parts contents, optional function declarations, and an
            optional model override; output is a ModelReply with text and tool calls.
        Side Effects / State: May add a model to the internal cache.
        Dependencies: Uses genai.GenerativeModel.generate_content.
        Failure Modes: 404 from the API raises ModelNotFoundError; any other SDK or transport
            failure (including timeouts) raises ModelInvocationError.
        If Removed: The orchestrator cannot reach the default provider.
        Testing Notes: Fake the SDK response with a function_call part and check ToolCall args.
        """
        # Pass declarations per call so one cached model serves every request.
        kwargs: Dict[str, Any] = {
            "generation_config": {"temperature": self._settings.model_temperature},
            "request_options": {"timeout": self._settings.model_timeout},
        }
        if tools:
            kwargs["tools"] = [{"function_declarations": tools}]
        try:
            response = self._model(model).generate_content(contents, **kwargs)
        except google_exceptions.NotFound as exc:
            raise ModelNotFoundError(f"Gemini model not found: {exc}") from exc
        except Exception as exc:
            raise ModelInvocationError(f"Gemini request failed: {exc}") from exc
        return reply_from_response(response)

    def generate_text(self, prompt: str, model: Optional[str] = None) -> str:
        """Single-turn, tool-free generation used for document questions."""
        reply = self.generate([{"role": "user", "parts": [{"text": prompt}]}], model=model)
        return reply.text

    @property
    def fallback_model(self) -> str:
        return _normalize_model_name(self._settings.gemini_fallback_model)


def reply_from_response(response: Any) -> ModelReply:
    """Purpose: Collect text parts and function calls from the first candidate.
    Inputs/Outputs: Input is a GenerateContentResponse (or a look-alike); output is ModelReply.
    Side Effects / State: None.
    Dependencies: Uses to_plain for proto map/list values.
    Failure Modes: Missing candidates give an empty reply rather than raising.
    If Removed: Tool calls would be read through ``response.text``, which raises on them.
    Testing Notes: Feed a fake with one text part and one function_call part.
    """
    # Walk parts directly; ``response.text`` raises when a part is a function call.
    texts: List[str] = []
    calls: List[ToolCall] = []
    candidates = getattr(response, "candidates", None) or []
    if candidates:
        content = getattr(candidates[0], "content", None)
        for part in getattr(content, "parts", None) or []:
            function_call = getattr(part, "function_call", None)
            if function_call is not None and getattr(function_call, "name", ""):
                args = to_plain(getattr(function_call, "args", None) or {})
                calls.append(ToolCall(name=function_call.name, args=args if isinstance(args, dict) else {}))
                continue
            text = getattr(part, "text", "")
            if text:
                texts.append(text)
    return ModelReply(text="\n".join(texts).strip(), tool_calls=calls)


def to_plain(value: Any) -> Any:
    """Convert proto MapComposite/RepeatedComposite values into dicts and lists."""
    if value is None or isinstance(value, (str, bytes, bool, int, float)):
        return value
    if isinstance(value, Mapping) or hasattr(value, "items"):
        return {str(key): to_plain(item) for key, item in value.items()}
    try:
        return [to_plain(item) for item in value]
    except TypeError:
        return value


def _normalize_model_name(name: Optional[str]) -> str:
    """Purpose: Normalize model names by stripping prefix and whitespace.
    Inputs/Outputs: Input is a model name string; output is normalized name.
    Side Effects / State: None.
    Dependencies: None; used by GeminiClient.
    Failure Modes: Returns empty string for falsy input.
    If Removed: Model caching and selection may use invalid names and fail.
    Testing Notes: Ensure "models/foo" becomes "foo" and whitespace is trimmed.
    """
    # Strip "models/" prefix and whitespace.
    if not name:
        return ""
    cleaned = name.strip()
    if cleaned.startswith("models/"):
        return cleaned.split("/", 1)[1]
    return cleaned
