"""Tests for helm.transport: message conversion, routing and error mapping."""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from helm.config import Config
from helm.report import ContextOverflowError, RateLimitError, TransportError
from helm.transport import (
    LiteLLMTransport,
    contents_to_messages,
    estimate_tokens,
    normalize_finish_reason,
    translate_error,
)


def _config(**kwargs):
    kwargs.setdefault("model", "m")
    return Config(**kwargs)


# ---------------------------------------------------------------------------
# contents_to_messages
# ---------------------------------------------------------------------------


class TestContentsToMessages:
    def test_system_and_user_text(self):
        msgs = contents_to_messages(
            [{"role": "user", "parts": [{"text": "a"}, {"text": "b"}]}], "be nice"
        )
        assert msgs == [
            {"role": "system", "content": "be nice"},
            {"role": "user", "content": "a\nb"},
        ]

    def test_model_tool_calls(self):
        msgs = contents_to_messages(
            [
                {
                    "role": "model",
                    "parts": [
                        {"text": "looking"},
                        {"function_call": {"id": "c1", "name": "read_file", "args": {"file_path": "x"}}},
                    ],
                }
            ]
        )
        assert msgs[0]["role"] == "assistant"
        assert msgs[0]["content"] == "looking"
        call = msgs[0]["tool_calls"][0]
        assert call["id"] == "c1"
        assert call["function"]["name"] == "read_file"
        assert json.loads(call["function"]["arguments"]) == {"file_path": "x"}

    def test_function_responses_become_tool_messages(self):
        msgs = contents_to_messages(
            [
                {
                    "role": "user",
                    "parts": [
                        {"function_response": {"id": "c1", "name": "t", "response": {"output": "ok"}}}
                    ],
                }
            ]
        )
        assert msgs == [
            {"role": "tool", "tool_call_id": "c1", "content": json.dumps({"output": "ok"})}
        ]

    def test_inline_data_is_image_url(self):
        msgs = contents_to_messages(
            [
                {
                    "role": "user",
                    "parts": [
                        {"text": "what is this"},
                        {"inline_data": {"mime_type": "image/png", "data": "AAAA"}},
                    ],
                }
            ]
        )
        content = msgs[0]["content"]
        assert content[0] == {"type": "text", "text": "what is this"}
        assert content[1]["image_url"]["url"] == "data:image/png;base64,AAAA"

    def test_empty_model_message_has_null_content(self):
        msgs = contents_to_messages([{"role": "model", "parts": []}])
        assert msgs == [{"role": "assistant", "content": None}]


class TestHelpers:
    def test_normalize_finish_reason(self):
        assert normalize_finish_reason("stop") == "STOP"
        assert normalize_finish_reason("tool_calls") == "STOP"
        assert normalize_finish_reason("length") == "MAX_TOKENS"
        assert normalize_finish_reason("weird") == "WEIRD"
        assert normalize_finish_reason(None) is None

    def test_estimate_tokens_grows_with_text(self):
        short = estimate_tokens([{"role": "user", "parts": [{"text": "hi"}]}])
        long = estimate_tokens([{"role": "user", "parts": [{"text": "hi " * 200}]}])
        assert 0 < short < long


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


class TestTranslateError:
    def test_context_window(self):
        import litellm

        e = litellm.ContextWindowExceededError(
            message="context length exceeded", model="test", llm_provider="openai"
        )
        assert isinstance(translate_error(e), ContextOverflowError)

    def test_bad_request_with_context_keywords(self):
        import litellm

        e = litellm.BadRequestError(
            message="maximum context length exceeded", model="test", llm_provider="openai"
        )
        assert isinstance(translate_error(e), ContextOverflowError)

    def test_rate_limit(self):
        import litellm

        e = litellm.RateLimitError(message="slow down", model="test", llm_provider="openai")
        mapped = translate_error(e)
        assert isinstance(mapped, RateLimitError)
        assert mapped.status == 429

    def test_other_errors(self):
        mapped = translate_error(RuntimeError("boom"))
        assert type(mapped) is TransportError
        assert "boom" in str(mapped)

    def test_passthrough(self):
        e = RateLimitError("x")
        assert translate_error(e) is e


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


class TestRoute:
    def test_lmstudio(self):
        t = LiteLLMTransport(_config(provider="lmstudio"))
        model, kwargs = t._route("qwen")
        assert model == "openai/qwen"
        assert kwargs["api_base"] == "http://127.0.0.1:1234/v1"

    def test_huggingface(self):
        t = LiteLLMTransport(_config(provider="huggingface", api_key="hf_x"))
        model, kwargs = t._route("org/model")
        assert model == "huggingface/org/model"
        assert kwargs == {"api_key": "hf_x"}

    def test_openrouter_keeps_org_prefix(self):
        t = LiteLLMTransport(_config(provider="openrouter"))
        assert t._route("openrouter/free")[0] == "openrouter/openrouter/free"
        assert t._route("openrouter/openrouter/free")[0] == "openrouter/openrouter/free"

    def test_generic_with_base_url(self):
        t = LiteLLMTransport(_config(provider="generic", base_url="http://h/v1"))
        assert t._route("openai/x") == ("openai/x", {"api_base": "http://h/v1"})

    def test_unknown_provider(self):
        t = LiteLLMTransport(_config(provider="nope"))
        with pytest.raises(TransportError):
            t._route("x")

    def test_token_limit_override(self):
        t = LiteLLMTransport(_config(max_context_tokens=4096))
        assert t.token_limit("anything") == 4096


# ---------------------------------------------------------------------------
# Calls
# ---------------------------------------------------------------------------


def _stream_chunk(content=None, tool_calls=None, finish_reason=None, usage=None):
    return SimpleNamespace(
        choices=[
            SimpleNamespace(
                delta=SimpleNamespace(content=content, tool_calls=tool_calls),
                finish_reason=finish_reason,
            )
        ],
        usage=usage,
    )


def _tool_delta(index, id=None, name=None, arguments=None):
    return SimpleNamespace(
        index=index,
        id=id,
        function=SimpleNamespace(name=name, arguments=arguments),
    )


class TestGenerate:
    def test_request_shape_and_response(self):
        t = LiteLLMTransport(_config(provider="generic", temperature=0.2))
        response = SimpleNamespace(
            choices=[
                SimpleNamespace(
                    message=SimpleNamespace(content='{"a": 1}', tool_calls=None),
                    finish_reason="stop",
                )
            ],
            usage=SimpleNamespace(prompt_tokens=10, completion_tokens=3),
        )
        with patch("litellm.acompletion", new=AsyncMock(return_value=response)) as mock:
            result = asyncio.run(
                t.generate(
                    "openai/x",
                    [{"role": "user", "parts": [{"text": "q"}]}],
                    {"system_instruction": "sys", "json_mode": True},
                )
            )
        kwargs = mock.call_args.kwargs
        assert kwargs["model"] == "openai/x"
        assert kwargs["temperature"] == 0.2
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["messages"][0] == {"role": "system", "content": "sys"}
        assert "tools" not in kwargs
        assert result.text == '{"a": 1}'
        assert result.finish_reason == "STOP"
        assert result.usage == {"input_tokens": 10, "output_tokens": 3}

    def test_errors_are_translated(self):
        t = LiteLLMTransport(_config(provider="generic"))
        with patch("litellm.acompletion", new=AsyncMock(side_effect=RuntimeError("down"))):
            with pytest.raises(TransportError, match="down"):
                asyncio.run(t.generate("x", [], None))


class TestStream:
    def test_text_and_tool_call_assembly(self):
        t = LiteLLMTransport(_config(provider="generic"))

        async def fake_stream():
            yield _stream_chunk(content="Hel")
            yield _stream_chunk(content="lo", tool_calls=[_tool_delta(0, id="c1", name="grep", arguments='{"pat')])
            yield _stream_chunk(tool_calls=[_tool_delta(0, arguments='tern": "x"}')])
            yield _stream_chunk(finish_reason="tool_calls")

        async def go():
            with patch("litellm.acompletion", new=AsyncMock(return_value=fake_stream())):
                chunks = await t.stream("x", [{"role": "user", "parts": [{"text": "q"}]}], {"tools": [{"type": "function"}]})
                return [c async for c in chunks]

        chunks = asyncio.run(go())
        assert "".join(c.text for c in chunks) == "Hello"
        calls = [call for c in chunks for call in c.function_calls]
        assert calls == [{"id": "c1", "name": "grep", "args": {"pattern": "x"}}]
        assert chunks[-1].finish_reason == "STOP"

    def test_malformed_arguments_become_empty(self):
        t = LiteLLMTransport(_config(provider="generic"))

        async def fake_stream():
            yield _stream_chunk(tool_calls=[_tool_delta(0, id="c1", name="grep", arguments="{oops")])

        async def go():
            with patch("litellm.acompletion", new=AsyncMock(return_value=fake_stream())):
                chunks = await t.stream("x", [], None)
                return [c async for c in chunks]

        chunks = asyncio.run(go())
        assert chunks[-1].function_calls == [{"id": "c1", "name": "grep", "args": {}}]
