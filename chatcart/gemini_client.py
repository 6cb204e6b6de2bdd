from __future__ import annotations

from typing import Any, Dict, List, Optional

import google.generativeai as genai

from .config import Settings

# Routing prompts quote customer complaints verbatim; only these filters are relaxed.
RELAXED_HARM_CATEGORIES = ("HARM_CATEGORY_HARASSMENT", "HARM_CATEGORY_HATE_SPEECH")
SAFETY_SETTINGS: List[Dict[str, Any]] = [
    {"category": category, "threshold": "BLOCK_NONE"} for category in RELAXED_HARM_CATEGORIES
]
JSON_GENERATION_DEFAULTS: Dict[str, Any] = {"response_mime_type": "application/json"}


class GeminiClient:
    """Thin wrapper around the Gemini SDK with model caching and a per-call timeout."""

    def __init__(self, settings: Settings) -> None:
        """Purpose: Configure the Gemini SDK and initialize the model cache.
        Inputs/Outputs: Input is Settings; no return value.
        Side Effects / State: Configures the SDK API key globally and caches models.
        Dependencies: Uses google.generativeai and Settings from config.
        Failure Modes: Raises ValueError if the API key or model name is missing.
        If Removed: The oracle cannot be built and routing stays keyword-only.
        Testing Notes: Validate a missing key raises ValueError.
        """
        if not settings.gemini_api_key:
            raise ValueError("GEMINI_API_KEY is required")
        genai.configure(api_key=settings.gemini_api_key)
        self._timeout = settings.oracle_timeout_sec
        self._models: Dict[str, genai.GenerativeModel] = {}
        self._default_model = _normalize_model_name(settings.gemini_model)
        if not self._default_model:
            raise ValueError("Gemini model name is required")
        self._models[self._default_model] = genai.GenerativeModel(self._default_model)

    def generate_json(
        self,
        prompt: str,
        model: Optional[str] = None,
        temperature: float = 0.0,
        max_output_tokens: int = 512,
        timeout: Optional[float] = None,
    ) -> str:
        """Purpose: Generate a JSON-formatted text response from a string prompt.
        Inputs/Outputs: Input is the prompt and optional model/config; returns raw text.
        Side Effects / State: May add a model to the internal cache.
        Dependencies: Uses genai.GenerativeModel.generate_content with request_options.
        Failure Modes: SDK and network errors, including deadline exceeded, propagate
            to the caller; the oracle converts them into an empty result.
        If Removed: Oracle hints, escalation verdicts and ticket subjects are lost.
        Testing Notes: Mock the model and assert the timeout reaches request_options.
        """
        model_name = _normalize_model_name(model) if model else self._default_model
        if model_name not in self._models:
            self._models[model_name] = genai.GenerativeModel(model_name)
        response = self._models[model_name].generate_content(
            prompt,
            generation_config={
                **JSON_GENERATION_DEFAULTS,
                "temperature": temperature,
                "max_output_tokens": max_output_tokens,
            },
            safety_settings=SAFETY_SETTINGS,
            request_options={"timeout": timeout if timeout is not None else self._timeout},
        )
        text: Optional[str] = getattr(response, "text", None)
        return (text or "").strip()


def _normalize_model_name(name: Optional[str]) -> str:
    """Strip a "models/" prefix and surrounding whitespace from a model name."""
    if not name:
        return ""
    cleaned = name.strip()
    if cleaned.startswith("models/"):
        return cleaned.split("/", 1)[1]
    return cleaned
