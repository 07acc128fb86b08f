"""Wire format conversion between the OpenAI and Anthropic conventions.

Used when an alias target's provider only speaks the other convention than
the caller. Streaming bodies are never converted; they are relayed as-is.
"""

from __future__ import annotations

from typing import Any

from .anthropic import AnthropicTransformer
from .openai import OpenAITransformer

_anthropic = AnthropicTransformer()
_openai = OpenAITransformer()


def convert_request(
    body: dict[str, Any],
    source: str,
    target: str,
    model: str,
) -> dict[str, Any]:
    """Rewrite a request body for the target convention and upstream model.

    Args:
        body: Inbound request body (left untouched)
        source: Convention the caller used ("openai" or "anthropic")
        target: Convention the provider will be called in
        model: Upstream model name

    Returns:
        New request body
    """
    if source == target:
        return {**body, "model": model}
    if target == "anthropic":
        return _anthropic.request_from_openai(body, model)
    return _openai.request_from_anthropic(body, model)


def convert_response(body: dict[str, Any], source: str, target: str) -> dict[str, Any]:
    """Rewrite a non-streaming response from the provider's convention
    (``source``) into the caller's (``target``)."""
    if source == target:
        return body
    if target == "anthropic":
        return _anthropic.response_from_openai(body)
    return _openai.response_from_anthropic(body)


__all__ = [
    "AnthropicTransformer",
    "OpenAITransformer",
    "convert_request",
    "convert_response",
]
