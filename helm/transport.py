"""Model transport over LiteLLM.

Converts conversation contents to OpenAI-style messages, streams completions
back as ``StreamChunk`` objects and maps provider failures onto the
``TransportError`` family.
"""

import json
import logging
import re
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

import tiktoken

from .config import Config
from .report import ContextOverflowError, RateLimitError, TransportError

logger = logging.getLogger(__name__)

_encoder = tiktoken.get_encoding("cl100k_base")

_CONTEXT_OVERFLOW_RE = re.compile(
    r"context.{0,10}(length|window|limit)"
    r"|maximum.{0,10}(context|token)"
    r"|token.{0,10}limit"
    r"|exceed.{0,10}(context|token|max)",
    re.IGNORECASE,
)

_FINISH_REASONS = {
    "stop": "STOP",
    "tool_calls": "STOP",
    "function_call": "STOP",
    "length": "MAX_TOKENS",
    "content_filter": "SAFETY",
}


@dataclass
class StreamChunk:
    text: str = ""
    function_calls: list[dict] = field(default_factory=list)
    finish_reason: str | None = None
    usage: dict | None = None


@dataclass
class ModelResponse:
    text: str = ""
    function_calls: list[dict] = field(default_factory=list)
    finish_reason: str | None = None
    usage: dict | None = None


def normalize_finish_reason(reason: str | None) -> str | None:
    if not reason:
        return None
    return _FINISH_REASONS.get(reason, reason.upper())


def estimate_tokens(contents: list[dict]) -> int:
    """Count tokens across contents using tiktoken."""
    total = 0
    for content in contents:
        for part in content.get("parts") or []:
            if "text" in part:
                total += len(_encoder.encode(part["text"] or ""))
            elif "inline_data" in part:
                # binary payloads are billed per item, not per base64 char
                total += 258
            else:
                total += len(_encoder.encode(json.dumps(part, default=str)))
        # Per-message overhead (role, separators), ~4 tokens each
        total += 4
    return total


def contents_to_messages(contents: list[dict], system_instruction: str | None = None) -> list[dict]:
    """Convert conversation contents to OpenAI chat messages."""
    messages: list[dict] = []
    if system_instruction:
        messages.append({"role": "system", "content": system_instruction})

    for content in contents:
        parts = content.get("parts") or []
        if content["role"] == "model":
            text = "".join(p["text"] or "" for p in parts if "text" in p)
            calls = [p["function_call"] for p in parts if "function_call" in p]
            message: dict = {"role": "assistant", "content": text or None}
            if calls:
                message["tool_calls"] = [
                    {
                        "id": call["id"],
                        "type": "function",
                        "function": {
                            "name": call["name"],
                            "arguments": json.dumps(call.get("args") or {}),
                        },
                    }
                    for call in calls
                ]
            messages.append(message)
            continue

        user_parts: list[dict] = []
        for part in parts:
            if "function_response" in part:
                response = part["function_response"]
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": response["id"],
                        "content": json.dumps(response.get("response"), default=str),
                    }
                )
            elif "text" in part:
                user_parts.append({"type": "text", "text": part["text"]})
            elif "inline_data" in part:
                blob = part["inline_data"]
                user_parts.append(
                    {
                        "type": "image_url",
                        "image_url": {"url": f"data:{blob['mime_type']};base64,{blob['data']}"},
                    }
                )
            elif "file_data" in part:
                user_parts.append(
                    {"type": "text", "text": f"[file: {part['file_data'].get('file_uri')}]"}
                )
        if not user_parts:
            continue
        if all(p["type"] == "text" for p in user_parts):
            messages.append(
                {"role": "user", "content": "\n".join(p["text"] for p in user_parts)}
            )
        else:
            messages.append({"role": "user", "content": user_parts})
    return messages


def translate_error(e: Exception) -> TransportError:
    """Map a LiteLLM exception onto the TransportError family."""
    import litellm

    if isinstance(e, TransportError):
        return e
    if isinstance(e, litellm.ContextWindowExceededError):
        return ContextOverflowError(f"context window exceeded: {e}", status=400)
    if isinstance(e, litellm.RateLimitError):
        return RateLimitError(f"rate limited: {e}")
    status = getattr(e, "status_code", None)
    if isinstance(e, litellm.BadRequestError) and _CONTEXT_OVERFLOW_RE.search(str(e)):
        return ContextOverflowError(f"context window exceeded (inferred): {e}", status=status)
    return TransportError(f"LLM call failed: {e}", status=status)


def _usage_dict(usage) -> dict | None:
    if usage is None:
        return None
    return {
        "input_tokens": getattr(usage, "prompt_tokens", None),
        "output_tokens": getattr(usage, "completion_tokens", None),
    }


def _parse_arguments(name: str, raw: str | None) -> dict:
    if not raw:
        return {}
    try:
        args = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("model sent malformed arguments for %s: %r", name, raw[:200])
        return {}
    return args if isinstance(args, dict) else {}


class LiteLLMTransport:
    def __init__(self, config: Config):
        self.config = config

    def _route(self, model_id: str) -> tuple[str, dict]:
        """Map (provider, model) to a LiteLLM model string plus call kwargs."""
        provider = self.config.provider
        base_url = self.config.base_url
        api_key = self.config.api_key
        if provider == "lmstudio":
            base = base_url or "http://127.0.0.1:1234"
            return f"openai/{model_id}", {"api_base": f"{base}/v1", "api_key": "lm-studio"}
        if provider == "huggingface":
            model_str = f"huggingface/{model_id.removeprefix('huggingface/')}"
        elif provider == "openrouter":
            # Only strip a doubled LiteLLM prefix; org names like
            # "openrouter/free" are legitimate model ids.
            bare = (
                model_id[len("openrouter/"):]
                if model_id.startswith("openrouter/openrouter/")
                else model_id
            )
            model_str = f"openrouter/{bare}"
        elif provider == "generic":
            model_str = model_id
        else:
            raise TransportError(f"unknown provider {provider!r}")
        kwargs = {"api_key": api_key} if api_key else {}
        if base_url:
            kwargs["api_base"] = base_url
        return model_str, kwargs

    def _request(self, model: str, contents: list[dict], config: dict | None) -> dict:
        config = dict(config or {})
        system_instruction = config.pop("system_instruction", None)
        tools = config.pop("tools", None)
        json_mode = config.pop("json_mode", False)
        model_str, kwargs = self._route(model)
        request = {
            "model": model_str,
            "messages": contents_to_messages(contents, system_instruction),
            **self.config.generation_config(),
            **config,
            **kwargs,
        }
        if tools:
            request["tools"] = tools
            request["tool_choice"] = "auto"
        if json_mode:
            request["response_format"] = {"type": "json_object"}
        return request

    async def stream(
        self, model: str, contents: list[dict], config: dict | None = None
    ) -> AsyncIterator[StreamChunk]:
        """Start a streaming completion and return an iterator of chunks."""
        import litellm

        litellm.suppress_debug_info = True
        request = self._request(model, contents, config)
        logger.debug("streaming %s with %d messages", request["model"], len(request["messages"]))
        try:
            response = await litellm.acompletion(
                **request, stream=True, stream_options={"include_usage": True}
            )
        except Exception as e:
            raise translate_error(e) from e
        return self._chunks(response)

    async def _chunks(self, response) -> AsyncIterator[StreamChunk]:
        pending: dict[int, dict] = {}

        def flush() -> list[dict]:
            calls = [
                {
                    "id": acc["id"],
                    "name": acc["name"],
                    "args": _parse_arguments(acc["name"], acc["arguments"]),
                }
                for _, acc in sorted(pending.items())
            ]
            pending.clear()
            return calls

        try:
            async for chunk in response:
                usage = _usage_dict(getattr(chunk, "usage", None))
                if not chunk.choices:
                    if usage:
                        yield StreamChunk(usage=usage)
                    continue
                choice = chunk.choices[0]
                delta = choice.delta
                for tc in getattr(delta, "tool_calls", None) or []:
                    acc = pending.setdefault(
                        tc.index or 0, {"id": None, "name": "", "arguments": ""}
                    )
                    if tc.id:
                        acc["id"] = tc.id
                    if tc.function is not None:
                        acc["name"] += tc.function.name or ""
                        acc["arguments"] += tc.function.arguments or ""
                reason = choice.finish_reason
                yield StreamChunk(
                    text=getattr(delta, "content", None) or "",
                    function_calls=flush() if reason and pending else [],
                    finish_reason=normalize_finish_reason(reason),
                    usage=usage,
                )
        except Exception as e:
            raise translate_error(e) from e
        if pending:
            yield StreamChunk(function_calls=flush())

    async def generate(
        self, model: str, contents: list[dict], config: dict | None = None
    ) -> ModelResponse:
        import litellm

        litellm.suppress_debug_info = True
        request = self._request(model, contents, config)
        try:
            response = await litellm.acompletion(**request)
        except Exception as e:
            raise translate_error(e) from e

        choice = response.choices[0]
        message = choice.message
        calls = [
            {
                "id": tc.id,
                "name": tc.function.name,
                "args": _parse_arguments(tc.function.name, tc.function.arguments),
            }
            for tc in getattr(message, "tool_calls", None) or []
        ]
        return ModelResponse(
            text=message.content or "",
            function_calls=calls,
            finish_reason=normalize_finish_reason(choice.finish_reason),
            usage=_usage_dict(getattr(response, "usage", None)),
        )

    def count_tokens(self, model: str, contents: list[dict]) -> int:
        return estimate_tokens(contents)

    def token_limit(self, model: str) -> int | None:
        """The model's input window, or None when it cannot be determined."""
        if self.config.max_context_tokens:
            return self.config.max_context_tokens
        import litellm

        model_str, _ = self._route(model)
        try:
            info = litellm.get_model_info(model_str)
        except Exception as e:
            logger.debug("no model info for %s: %s", model_str, e)
            return None
        return info.get("max_input_tokens") or info.get("max_tokens")
