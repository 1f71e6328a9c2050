"""Gemini model factory for the review analysis agent."""

import copy

import google.generativeai as genai

from greia_platform.app.config import get_settings


# JSON Schema keywords Pydantic emits that Gemini's response_schema rejects
_UNSUPPORTED_KEYS = {
    "$defs", "definitions", "title", "default", "examples",
    "additionalProperties", "maximum", "minimum", "exclusiveMaximum",
    "exclusiveMinimum", "maxLength", "minLength", "pattern",
    "maxItems", "minItems", "uniqueItems",
}


def to_gemini_schema(schema: dict) -> dict:
    """Inline $ref definitions and drop keys Gemini does not accept."""
    schema = copy.deepcopy(schema)
    defs = schema.pop("$defs", None) or schema.pop("definitions", None) or {}

    def _clean(node):
        if isinstance(node, list):
            return [_clean(item) for item in node]
        if not isinstance(node, dict):
            return node
        ref = node.get("$ref")
        if ref:
            target = defs.get(ref.rsplit("/", 1)[-1])
            return _clean(copy.deepcopy(target)) if target else node
        return {
            key: _clean(value)
            for key, value in node.items()
            if key not in _UNSUPPORTED_KEYS
        }

    return _clean(schema)


def get_model(
    model_name: str | None = None,
    temperature: float = 0.0,
    response_schema: dict | None = None,
    system_instruction: str | None = None,
):
    """Return a Gemini GenerativeModel constrained to JSON output.

    Args:
        model_name: Gemini model identifier; defaults to ``moderation_model``.
        temperature: Generation temperature. Classification runs at 0.
        response_schema: Optional JSON Schema dict for structured output.
        system_instruction: Optional system-level instruction.
    """
    settings = get_settings()
    genai.configure(api_key=settings.gemini_api_key)

    generation_config = {
        "temperature": temperature,
        "response_mime_type": "application/json",
    }
    if response_schema:
        generation_config["response_schema"] = to_gemini_schema(response_schema)

    return genai.GenerativeModel(
        model_name=model_name or settings.moderation_model,
        generation_config=generation_config,
        system_instruction=system_instruction,
    )
