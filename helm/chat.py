"""Chat session: the conversation history and the streaming send."""

import copy
import logging
from collections.abc import AsyncIterator

from .config import Config
from .content import is_empty_content, is_function_response, to_parts
from .transport import LiteLLMTransport, StreamChunk

logger = logging.getLogger(__name__)


def curate_history(history: list[dict]) -> list[dict]:
    """Drop empty model replies together with the user input that led to them."""
    curated: list[dict] = []
    i = 0
    while i < len(history):
        content = history[i]
        if content["role"] == "user":
            j = i + 1
            model_turn = []
            while j < len(history) and history[j]["role"] == "model":
                model_turn.append(history[j])
                j += 1
            if model_turn and any(is_empty_content(c) for c in model_turn):
                i = j
                continue
            curated.append(content)
            curated.extend(model_turn)
            i = j
        else:
            if not is_empty_content(content):
                curated.append(content)
            i += 1
    return curated


class ChatSession:
    """Holds the history and records each exchange once its stream completes."""

    def __init__(
        self,
        transport: LiteLLMTransport,
        config: Config,
        *,
        history: list[dict] | None = None,
        system_instruction: str | None = None,
        tools: list[dict] | None = None,
    ):
        self.transport = transport
        self.config = config
        self.system_instruction = system_instruction
        self.tools = tools or []
        self._history: list[dict] = list(history or [])

    def get_history(self, curated: bool = False) -> list[dict]:
        history = curate_history(self._history) if curated else self._history
        return copy.deepcopy(history)

    def add_history(self, content: dict) -> None:
        self._history.append(content)

    def set_history(self, history: list[dict]) -> None:
        self._history = list(history)

    def _request_config(self) -> dict:
        config: dict = {}
        if self.system_instruction:
            config["system_instruction"] = self.system_instruction
        if self.tools:
            config["tools"] = self.tools
        return config

    async def send_message_stream(self, message, prompt_id: str = "") -> AsyncIterator[StreamChunk]:
        """Send *message* with the curated history and stream the reply.

        The user entry and the model reply are appended to the history only
        when the stream runs to completion. Function-call dicts are recorded
        by reference, so ids filled in by the consumer during the stream end
        up in the history too. Function responses are kept even when the
        stream fails or is cancelled, so no recorded call goes unanswered.
        """
        user = {"role": "user", "parts": to_parts(message)}
        contents = self.get_history(curated=True) + [user]
        completed = False
        try:
            chunks = await self.transport.stream(
                self.config.get_model(), contents, self._request_config()
            )

            model_parts: list[dict] = []
            async for chunk in chunks:
                if chunk.text:
                    if model_parts and set(model_parts[-1]) == {"text"}:
                        model_parts[-1]["text"] += chunk.text
                    else:
                        model_parts.append({"text": chunk.text})
                for call in chunk.function_calls:
                    model_parts.append({"function_call": call})
                yield chunk
            completed = True
        finally:
            if not completed and is_function_response(user):
                logger.debug("[%s] reply not completed; keeping function responses", prompt_id)
                self._history.append(user)

        logger.debug("[%s] recorded model reply with %d part(s)", prompt_id, len(model_parts))
        self._history.append(user)
        self._history.append({"role": "model", "parts": model_parts})
