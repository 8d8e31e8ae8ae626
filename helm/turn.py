"""One conversation turn: a streamed model reply turned into ordered events."""

import asyncio
import logging
import secrets
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .cancellation import CancellationToken
from .report import report_error
from .scheduler import ToolCallRequest

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    CONTENT = "content"
    TOOL_CALL_REQUEST = "tool_call_request"
    FINISHED = "finished"
    ERROR = "error"
    USER_CANCELLED = "user_cancelled"
    CHAT_COMPRESSED = "chat_compressed"
    MAX_SESSION_TURNS = "max_session_turns"


@dataclass
class TurnEvent:
    type: EventType
    value: Any = None


_END = object()
_CANCELLED = object()


def synthesize_call_id(name: str) -> str:
    return f"{name}-{int(time.time() * 1000)}-{secrets.token_hex(6)}"


async def _next_chunk(chunks: AsyncIterator, token: CancellationToken):
    """Await the next chunk, or return _CANCELLED as soon as the token fires."""

    async def _pull():
        return await anext(chunks, _END)

    pull = asyncio.ensure_future(_pull())
    cancelled = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({pull, cancelled}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        cancelled.cancel()
    if pull.done():
        return pull.result()
    pull.cancel()
    await asyncio.gather(pull, return_exceptions=True)
    return _CANCELLED


class Turn:
    def __init__(self, chat, prompt_id: str = ""):
        self.chat = chat
        self.prompt_id = prompt_id
        self.pending_tool_calls: list[ToolCallRequest] = []
        self.debug_responses: list = []
        self.finish_reason: str | None = None
        self._seen_ids: set[str] = set()

    async def run(self, request, token: CancellationToken) -> AsyncIterator[TurnEvent]:
        """Stream one model reply for *request*, yielding events in stream order."""
        chunks = None
        try:
            if token.cancelled:
                yield TurnEvent(EventType.USER_CANCELLED)
                return
            chunks = self.chat.send_message_stream(request, self.prompt_id)
            while True:
                chunk = await _next_chunk(chunks, token)
                if chunk is _END:
                    break
                if chunk is _CANCELLED or token.cancelled:
                    yield TurnEvent(EventType.USER_CANCELLED)
                    return
                self.debug_responses.append(chunk)

                if chunk.text:
                    yield TurnEvent(EventType.CONTENT, chunk.text)
                for call in chunk.function_calls:
                    yield TurnEvent(EventType.TOOL_CALL_REQUEST, self._to_request(call))
                if chunk.finish_reason and chunk.finish_reason != "UNSPECIFIED":
                    self.finish_reason = chunk.finish_reason
                    yield TurnEvent(EventType.FINISHED, chunk.finish_reason)
        except Exception as e:
            if token.cancelled:
                yield TurnEvent(EventType.USER_CANCELLED)
                return
            report_error(
                e,
                "Error when talking to the model.",
                {"history": self.chat.get_history(curated=True), "request": request},
                "turn.run-send_message_stream",
            )
            yield TurnEvent(
                EventType.ERROR,
                {"message": str(e), "status": getattr(e, "status", None)},
            )
        finally:
            if chunks is not None:
                await chunks.aclose()

    def _to_request(self, call: dict) -> ToolCallRequest:
        name = call.get("name") or "undefined_tool_name"
        call_id = call.get("id")
        if not call_id or call_id in self._seen_ids:
            call_id = synthesize_call_id(name)
        self._seen_ids.add(call_id)
        # The chat records this same dict, so history gets the final id and name.
        call["id"] = call_id
        call["name"] = name
        call["args"] = call.get("args") or {}
        request = ToolCallRequest(
            call_id=call_id,
            name=name,
            args=call["args"],
            is_client_initiated=False,
            prompt_id=self.prompt_id,
        )
        self.pending_tool_calls.append(request)
        return request
