"""Anthropic Messages API transformer.

Produces Anthropic-format requests and responses from their OpenAI Chat
Completions counterparts.

Anthropic API Reference:
- Request: POST /v1/messages with {model, messages, max_tokens, system, stream, temperature}
- Response: {id, type, role, content, model, stop_reason, usage}
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

DEFAULT_MAX_TOKENS = 4096

# OpenAI finish_reason -> Anthropic stop_reason
STOP_REASON_MAP = {
    "stop": "end_turn",
    "length": "max_tokens",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "content_filter": "end_turn",
}


def _text_of(content: Any) -> str:
    """Flatten OpenAI message content (string or parts list) into text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part.get("text", "")
            for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        )
    return str(content)


@dataclass
class AnthropicTransformer:
    """Builds Anthropic-format payloads from OpenAI-format ones."""

    def request_from_openai(self, body: dict[str, Any], model: str) -> dict[str, Any]:
        """Convert an OpenAI Chat Completions request to a Messages request.

        System messages are lifted into the top-level ``system`` field;
        consecutive messages with the same role are kept as-is.

        Args:
            body: OpenAI request body
            model: Upstream model name to send

        Returns:
            Anthropic request body ready for /v1/messages
        """
        system_parts: list[str] = []
        messages: list[dict[str, Any]] = []

        for msg in body.get("messages") or []:
            role = msg.get("role")
            text = _text_of(msg.get("content"))
            if role in ("system", "developer"):
                if text:
                    system_parts.append(text)
            elif role in ("user", "assistant"):
                messages.append({"role": role, "content": text})
            elif role == "tool":
                # No tool_use id mapping here; keep the result visible as user text
                messages.append({"role": "user", "content": text})

        result: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": body.get("max_tokens")
            or body.get("max_completion_tokens")
            or DEFAULT_MAX_TOKENS,
        }
        if system_parts:
            result["system"] = "\n\n".join(system_parts)
        if "stream" in body:
            result["stream"] = bool(body["stream"])
        for key in ("temperature", "top_p"):
            if body.get(key) is not None:
                result[key] = body[key]
        stop = body.get("stop")
        if stop:
            result["stop_sequences"] = [stop] if isinstance(stop, str) else list(stop)
        return result

    def response_from_openai(self, response: dict[str, Any]) -> dict[str, Any]:
        """Convert an OpenAI chat completion into an Anthropic message."""
        choices = response.get("choices") or [{}]
        choice = choices[0]
        message = choice.get("message") or {}
        text = _text_of(message.get("content"))

        usage = response.get("usage") or {}
        return {
            "id": response.get("id") or f"msg_{int(time.time() * 1000)}",
            "type": "message",
            "role": "assistant",
            "model": response.get("model"),
            "content": [{"type": "text", "text": text}],
            "stop_reason": STOP_REASON_MAP.get(choice.get("finish_reason") or "stop", "end_turn"),
            "stop_sequence": None,
            "usage": {
                "input_tokens": usage.get("prompt_tokens", 0),
                "output_tokens": usage.get("completion_tokens", 0),
            },
        }
