"""The agent session: history, the continuation loop, and direct model calls."""

import asyncio
import json
import logging
import re
import time
from collections.abc import AsyncIterator

from .cancellation import CancellationToken
from .chat import ChatSession
from .compression import (
    COMPRESSION_PROMPT,
    COMPRESSION_REQUEST,
    build_compressed_history,
    find_compress_split_point,
)
from .config import Config
from .content import user_content
from .next_speaker import check_next_speaker
from .report import (
    EmptyResponseError,
    Telemetry,
    TransportError,
    UserCancelledError,
    report_error,
)
from .retry import retry_with_backoff
from .tools import ToolRegistry
from .transport import LiteLLMTransport, ModelResponse
from .turn import EventType, Turn, TurnEvent

logger = logging.getLogger(__name__)

MAX_TURNS = 100
CONTINUE_PROMPT = "Please continue."

_JSON_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


async def _race(coro, token: CancellationToken | None):
    """Await *coro*, raising UserCancelledError if *token* fires first."""
    if token is None:
        return await coro
    if token.cancelled:
        coro.close()
        raise UserCancelledError(token.reason)
    work = asyncio.ensure_future(coro)
    cancelled = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({work, cancelled}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        cancelled.cancel()
    if work.done():
        return work.result()
    work.cancel()
    await asyncio.gather(work, return_exceptions=True)
    raise UserCancelledError(token.reason)


class AgentClient:
    """Owns the chat and drives the multi-turn exchange with the model."""

    def __init__(
        self,
        config: Config,
        transport: LiteLLMTransport,
        registry: ToolRegistry,
        telemetry: Telemetry | None = None,
        *,
        system_instruction: str | None = None,
    ):
        self.config = config
        self.transport = transport
        self.registry = registry
        self.telemetry = telemetry or Telemetry()
        self.system_instruction = system_instruction
        self.chat = self._start_chat()
        self.session_turn_count = 0
        self.last_turn: Turn | None = None
        self._token_limit_warned = False

    def _start_chat(self, history: list[dict] | None = None) -> ChatSession:
        return ChatSession(
            self.transport,
            self.config,
            history=history,
            system_instruction=self.system_instruction,
            tools=self.registry.get_function_declarations(),
        )

    # -- History -------------------------------------------------------------

    def get_history(self, curated: bool = False) -> list[dict]:
        return self.chat.get_history(curated)

    def set_history(self, history: list[dict]) -> None:
        self.chat.set_history(history)

    def add_history(self, content: dict) -> None:
        self.chat.add_history(content)

    def reset_chat(self) -> None:
        self.chat = self._start_chat()

    # -- Streaming turns -----------------------------------------------------

    async def send_message_stream(
        self,
        request,
        token: CancellationToken,
        prompt_id: str = "",
        turns: int = MAX_TURNS,
    ) -> AsyncIterator[TurnEvent]:
        """Run turns for *request* until the model yields to the user.

        Continuations (the model speaking again without user input) are
        bounded by ``min(turns, MAX_TURNS)``; every model turn also counts
        against the session-wide ``max_session_turns``.
        """
        remaining = min(turns, MAX_TURNS)
        while remaining > 0:
            self.session_turn_count += 1
            limit = self.config.max_session_turns
            if limit > 0 and self.session_turn_count > limit:
                yield TurnEvent(EventType.MAX_SESSION_TURNS)
                return

            try:
                compressed = await self.try_compress_chat(prompt_id, token=token)
            except UserCancelledError:
                yield TurnEvent(EventType.USER_CANCELLED)
                return
            except TransportError as e:
                logger.warning("history compression failed, sending uncompressed: %s", e)
                compressed = None
            if compressed:
                yield TurnEvent(EventType.CHAT_COMPRESSED, compressed)

            turn = Turn(self.chat, prompt_id)
            self.last_turn = turn
            failed = False
            async for event in turn.run(request, token):
                if event.type in (EventType.ERROR, EventType.USER_CANCELLED):
                    failed = True
                yield event
            if failed or turn.pending_tool_calls or token.cancelled:
                return

            try:
                verdict = await check_next_speaker(self.chat, self, token)
            except UserCancelledError:
                yield TurnEvent(EventType.USER_CANCELLED)
                return
            if not verdict or verdict["next_speaker"] != "model":
                return
            logger.debug("model keeps the floor: %s", verdict.get("reasoning"))
            request = [{"text": CONTINUE_PROMPT}]
            remaining -= 1

    # -- Compression ---------------------------------------------------------

    async def try_compress_chat(
        self,
        prompt_id: str = "",
        force: bool = False,
        token: CancellationToken | None = None,
    ) -> dict | None:
        """Summarize the older part of the history when it grows too large.

        Returns ``{"original_token_count", "new_token_count"}``, or None when
        nothing was compressed.
        """
        history = self.chat.get_history(curated=True)
        if not history:
            return None

        model = self.config.get_model()
        original_count = self.transport.count_tokens(model, history)
        if not force:
            limit = self.transport.token_limit(model)
            if limit is None:
                if not self._token_limit_warned:
                    logger.warning(
                        "token limit for %s is unknown; history compression disabled", model
                    )
                    self._token_limit_warned = True
                return None
            if original_count < self.config.compression_threshold * limit:
                return None

        split = find_compress_split_point(history, self.config.compression_preserve)
        to_compress, kept = history[:split], history[split:]
        if not to_compress:
            return None

        response = await self.generate_content(
            to_compress + [user_content(COMPRESSION_REQUEST)],
            {"system_instruction": COMPRESSION_PROMPT},
            token,
            prompt_id=prompt_id,
        )
        summary = response.text.strip()
        if not summary:
            logger.warning("compression produced an empty summary; history left as is")
            return None

        new_history = build_compressed_history(summary, kept)
        self.chat = self._start_chat(new_history)
        new_count = self.transport.count_tokens(model, new_history)
        self.telemetry.record_compression(original_count, new_count)
        return {"original_token_count": original_count, "new_token_count": new_count}

    # -- Direct model calls --------------------------------------------------

    async def _handle_persistent_429(self, error: BaseException) -> str | None:
        current = self.config.get_model()
        fallback = self.config.fallback_model
        if not fallback or fallback == current:
            return None
        handler = self.config.fallback_handler
        if handler is not None and not await handler(current, fallback, error):
            return None
        self.config.set_model(fallback)
        return fallback

    async def _generate(
        self,
        contents: list[dict],
        config: dict,
        token: CancellationToken | None,
        *,
        model: str | None = None,
        prompt_id: str = "",
        error_type: str,
    ) -> ModelResponse:
        async def attempt() -> ModelResponse:
            current = model or self.config.get_model()
            self.telemetry.record_api_request(
                current, prompt_id, self.transport.count_tokens(current, contents)
            )
            start = time.monotonic()
            try:
                response = await _race(
                    self.transport.generate(current, contents, config), token
                )
            except TransportError as e:
                self.telemetry.record_api_error(
                    current, time.monotonic() - start, e, prompt_id=prompt_id, status=e.status
                )
                raise
            usage = response.usage or {}
            self.telemetry.record_api_response(
                current,
                time.monotonic() - start,
                prompt_id=prompt_id,
                input_tokens=usage.get("input_tokens"),
                output_tokens=usage.get("output_tokens"),
                finish_reason=response.finish_reason,
            )
            return response

        try:
            return await retry_with_backoff(
                attempt,
                max_attempts=self.config.retry_attempts,
                initial_delay=self.config.retry_initial_delay,
                max_delay=self.config.retry_max_delay,
                on_persistent_429=self._handle_persistent_429,
            )
        except TransportError as e:
            report_error(e, "Error generating content via API.", contents, error_type)
            raise

    async def generate_content(
        self,
        contents: list[dict],
        generation_config: dict | None = None,
        token: CancellationToken | None = None,
        *,
        prompt_id: str = "",
    ) -> ModelResponse:
        return await self._generate(
            contents,
            dict(generation_config or {}),
            token,
            prompt_id=prompt_id,
            error_type="generate_content-api",
        )

    async def generate_json(
        self,
        contents: list[dict],
        schema: dict,
        token: CancellationToken | None = None,
        model: str | None = None,
        config: dict | None = None,
    ) -> dict:
        """Ask the model for a JSON object matching *schema*.

        Raises EmptyResponseError when the reply is empty or not valid JSON.
        """
        request_config = {
            "system_instruction": (
                "Respond only with a JSON object matching this schema:\n"
                + json.dumps(schema)
            ),
            "json_mode": True,
            **(config or {}),
        }
        response = await self._generate(
            contents, request_config, token, model=model, error_type="generate_json-api"
        )
        text = response.text.strip()
        if not text:
            error = EmptyResponseError("API returned an empty response for generate_json.")
            report_error(
                error,
                "Error in generate_json: API returned an empty response.",
                contents,
                "generate_json-empty-response",
            )
            raise error

        fenced = _JSON_FENCE_RE.match(text)
        if fenced:
            text = fenced.group(1)
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            report_error(
                e,
                "Failed to parse JSON response from generate_json.",
                {"response_text_failed_to_parse": text, "original_request_contents": contents},
                "generate_json-parse",
            )
            raise EmptyResponseError(f"Failed to parse API response as JSON: {e}") from e


