"""OpenAI Chat Completions API transformer.

Produces OpenAI-format requests and responses from their Anthropic Messages
counterparts.

OpenAI API Reference:
- Request: POST /v1/chat/completions with {model, messages, stream, max_tokens, temperature}
- Messages: [{role, content}]
- Response: {id, object, created, model, choices: [{message, finish_reason}], usage}
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

# Anthropic stop_reason -> OpenAI finish_reason
FINISH_REASON_MAP = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
}


def _text_of(content: Any) -> str:
    """Flatten Anthropic content (string or block list) into text.

    Only text blocks contribute; tool and image blocks are dropped.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        )
    return str(content)


@dataclass
class OpenAITransformer:
    """Builds OpenAI-format payloads from Anthropic-format ones."""

    def request_from_anthropic(self, body: dict[str, Any], model: str) -> dict[str, Any]:
        """Convert an Anthropic Messages request to a Chat Completions request.

        Args:
            body: Anthropic request body
            model: Upstream model name to send

        Returns:
            OpenAI request body ready for /v1/chat/completions
        """
        messages: list[dict[str, Any]] = []

        # Handle system message - Anthropic sends it separately
        system = _text_of(body.get("system"))
        if system:
            messages.append({"role": "system", "content": system})

        for msg in body.get("messages") or []:
            messages.append({"role": msg.get("role", "user"), "content": _text_of(msg.get("content"))})

        result: dict[str, Any] = {"model": model, "messages": messages}
        if "stream" in body:
            result["stream"] = bool(body["stream"])
        for key in ("max_tokens", "temperature", "top_p"):
            if body.get(key) is not None:
                result[key] = body[key]
        if body.get("stop_sequences"):
            result["stop"] = list(body["stop_sequences"])
        return result

    def response_from_anthropic(self, response: dict[str, Any]) -> dict[str, Any]:
        """Convert an Anthropic message into an OpenAI chat completion."""
        usage = response.get("usage") or {}
        input_tokens = usage.get("input_tokens", 0)
        output_tokens = usage.get("output_tokens", 0)

        return {
            "id": response.get("id") or f"chatcmpl-{int(time.time() * 1000)}",
            "object": "chat.completion",
            "created": int(time.time()),
            "model": response.get("model"),
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": _text_of(response.get("content"))},
                    "finish_reason": FINISH_REASON_MAP.get(
                        response.get("stop_reason") or "end_turn", "stop"
                    ),
                }
            ],
            "usage": {
                "prompt_tokens": input_tokens,
                "completion_tokens": output_tokens,
                "total_tokens": input_tokens + output_tokens,
            },
        }
