"""Tests for OpenAI <-> Anthropic wire format conversion."""

from minipassy.transforms import (
    AnthropicTransformer,
    OpenAITransformer,
    convert_request,
    convert_response,
)


class TestConvertRequest:
    """Tests for the request dispatcher."""

    def test_same_format_only_rewrites_model(self):
        body = {"model": "fast", "messages": [{"role": "user", "content": "hi"}], "stream": True}
        result = convert_request(body, "openai", "openai", "llama-3")
        assert result == {**body, "model": "llama-3"}
        assert body["model"] == "fast"

    def test_openai_to_anthropic(self):
        result = convert_request(
            {"model": "smart", "messages": [{"role": "user", "content": "hi"}]},
            "openai",
            "anthropic",
            "claude-sonnet-4",
        )
        assert result["model"] == "claude-sonnet-4"
        assert result["max_tokens"] == 4096

    def test_anthropic_to_openai(self):
        result = convert_request(
            {"model": "smart", "max_tokens": 10, "messages": [{"role": "user", "content": "hi"}]},
            "anthropic",
            "openai",
            "gpt-4o",
        )
        assert result == {
            "model": "gpt-4o",
            "messages": [{"role": "user", "content": "hi"}],
            "max_tokens": 10,
        }


class TestAnthropicTransformer:
    """Tests for building Anthropic payloads from OpenAI ones."""

    def test_system_messages_lifted(self):
        result = AnthropicTransformer().request_from_openai(
            {
                "messages": [
                    {"role": "system", "content": "Be brief."},
                    {"role": "user", "content": "Hello"},
                    {"role": "system", "content": "No emoji."},
                ],
                "max_tokens": 50,
                "temperature": 0.2,
                "stop": "END",
                "stream": True,
            },
            "claude",
        )
        assert result["system"] == "Be brief.\n\nNo emoji."
        assert result["messages"] == [{"role": "user", "content": "Hello"}]
        assert result["max_tokens"] == 50
        assert result["temperature"] == 0.2
        assert result["stop_sequences"] == ["END"]
        assert result["stream"] is True

    def test_content_parts_flattened(self):
        result = AnthropicTransformer().request_from_openai(
            {
                "messages": [
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": "a"},
                            {"type": "image_url", "image_url": {"url": "x"}},
                            {"type": "text", "text": "b"},
                        ],
                    }
                ]
            },
            "claude",
        )
        assert result["messages"] == [{"role": "user", "content": "ab"}]

    def test_tool_result_kept_as_user_text(self):
        result = AnthropicTransformer().request_from_openai(
            {"messages": [{"role": "tool", "content": "42", "tool_call_id": "c1"}]}, "claude"
        )
        assert result["messages"] == [{"role": "user", "content": "42"}]

    def test_response_from_openai(self):
        result = AnthropicTransformer().response_from_openai(
            {
                "id": "chatcmpl-1",
                "model": "gpt-4o",
                "choices": [
                    {"message": {"role": "assistant", "content": "Hi!"}, "finish_reason": "length"}
                ],
                "usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5},
            }
        )
        assert result["type"] == "message"
        assert result["role"] == "assistant"
        assert result["content"] == [{"type": "text", "text": "Hi!"}]
        assert result["stop_reason"] == "max_tokens"
        assert result["usage"] == {"input_tokens": 3, "output_tokens": 2}

    def test_response_without_choices(self):
        result = AnthropicTransformer().response_from_openai({})
        assert result["content"] == [{"type": "text", "text": ""}]
        assert result["stop_reason"] == "end_turn"
        assert result["id"].startswith("msg_")


class TestOpenAITransformer:
    """Tests for building OpenAI payloads from Anthropic ones."""

    def test_system_becomes_first_message(self):
        result = OpenAITransformer().request_from_anthropic(
            {
                "system": [{"type": "text", "text": "Be brief."}],
                "messages": [
                    {"role": "user", "content": [{"type": "text", "text": "Hello"}]},
                ],
                "max_tokens": 100,
                "stop_sequences": ["END"],
                "stream": False,
            },
            "gpt-4o",
        )
        assert result["messages"] == [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hello"},
        ]
        assert result["stop"] == ["END"]
        assert result["stream"] is False
        assert result["max_tokens"] == 100

    def test_response_from_anthropic(self):
        result = OpenAITransformer().response_from_anthropic(
            {
                "id": "msg_1",
                "model": "claude",
                "content": [
                    {"type": "text", "text": "Hello"},
                    {"type": "tool_use", "id": "t1", "name": "x", "input": {}},
                ],
                "stop_reason": "end_turn",
                "usage": {"input_tokens": 7, "output_tokens": 3},
            }
        )
        assert result["object"] == "chat.completion"
        choice = result["choices"][0]
        assert choice["message"] == {"role": "assistant", "content": "Hello"}
        assert choice["finish_reason"] == "stop"
        assert result["usage"] == {"prompt_tokens": 7, "completion_tokens": 3, "total_tokens": 10}


class TestConvertResponse:
    """Tests for the response dispatcher."""

    def test_same_format_untouched(self):
        body = {"id": "x"}
        assert convert_response(body, "openai", "openai") is body

    def test_anthropic_to_openai(self):
        result = convert_response(
            {"content": [{"type": "text", "text": "ok"}], "stop_reason": "max_tokens"},
            "anthropic",
            "openai",
        )
        assert result["choices"][0]["finish_reason"] == "length"
