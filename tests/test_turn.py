"""Tests for helm.turn: stream chunks to ordered turn events."""

import asyncio

from helm.cancellation import CancellationToken
from helm.report import TransportError
from helm.scheduler import ToolCallRequest
from helm.transport import StreamChunk
from helm.turn import EventType, Turn


class FakeChat:
    def __init__(self, chunks=(), error=None, hang_after=False):
        self.chunks = list(chunks)
        self.error = error
        self.hang_after = hang_after
        self.sent = []

    def get_history(self, curated=False):
        return []

    async def send_message_stream(self, message, prompt_id=""):
        self.sent.append(message)
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error
        if self.hang_after:
            await asyncio.sleep(30)


async def _collect(turn, request, token, on_event=None):
    events = []
    async for event in turn.run(request, token):
        events.append(event)
        if on_event is not None:
            on_event(event)
    return events


def _run(chat, token=None, on_event=None, request="hi"):
    turn = Turn(chat, prompt_id="p1")
    events = asyncio.run(_collect(turn, request, token or CancellationToken(), on_event))
    return turn, events


# ===========================================================================
# Content and finish
# ===========================================================================


class TestContent:
    def test_text_then_safety_finish(self):
        chat = FakeChat([StreamChunk(text="partial"), StreamChunk(finish_reason="SAFETY")])
        turn, events = _run(chat)
        assert [(e.type, e.value) for e in events] == [
            (EventType.CONTENT, "partial"),
            (EventType.FINISHED, "SAFETY"),
        ]
        assert turn.finish_reason == "SAFETY"

    def test_no_finish_reason_no_finished_event(self):
        chat = FakeChat([StreamChunk(text="a"), StreamChunk(text="b")])
        _, events = _run(chat)
        assert [e.type for e in events] == [EventType.CONTENT, EventType.CONTENT]

    def test_unspecified_finish_reason_ignored(self):
        chat = FakeChat([StreamChunk(text="a", finish_reason="UNSPECIFIED")])
        _, events = _run(chat)
        assert [e.type for e in events] == [EventType.CONTENT]

    def test_debug_responses_kept(self):
        chunks = [StreamChunk(text="a"), StreamChunk(finish_reason="STOP")]
        turn, _ = _run(FakeChat(chunks))
        assert turn.debug_responses == chunks


# ===========================================================================
# Tool call requests
# ===========================================================================


class TestToolCallRequests:
    def test_request_built_from_function_call(self):
        call = {"id": "call_1", "name": "read_file", "args": {"file_path": "a.py"}}
        turn, events = _run(FakeChat([StreamChunk(function_calls=[call])]))
        assert events[0].type is EventType.TOOL_CALL_REQUEST
        request = events[0].value
        assert request == ToolCallRequest(
            call_id="call_1",
            name="read_file",
            args={"file_path": "a.py"},
            is_client_initiated=False,
            prompt_id="p1",
        )
        assert turn.pending_tool_calls == [request]

    def test_missing_id_is_synthesized(self):
        call = {"name": "grep", "args": {"pattern": "x"}}
        _, events = _run(FakeChat([StreamChunk(function_calls=[call])]))
        call_id = events[0].value.call_id
        assert call_id.startswith("grep-")
        # The chat's recorded call carries the same id.
        assert call["id"] == call_id

    def test_duplicate_ids_made_unique(self):
        calls = [
            {"id": "dup", "name": "grep", "args": {}},
            {"id": "dup", "name": "grep", "args": {}},
        ]
        turn, _ = _run(FakeChat([StreamChunk(function_calls=calls)]))
        ids = [r.call_id for r in turn.pending_tool_calls]
        assert ids[0] == "dup"
        assert ids[1] != "dup"
        assert len(set(ids)) == 2

    def test_missing_name_and_args(self):
        call = {"id": "x"}
        _, events = _run(FakeChat([StreamChunk(function_calls=[call])]))
        assert events[0].value.name == "undefined_tool_name"
        assert events[0].value.args == {}


# ===========================================================================
# Cancellation and errors
# ===========================================================================


class TestCancellationAndErrors:
    def test_pre_cancelled_token(self):
        chat = FakeChat([StreamChunk(text="never")])
        token = CancellationToken()
        token.cancel()
        _, events = _run(chat, token)
        assert [e.type for e in events] == [EventType.USER_CANCELLED]
        assert chat.sent == []

    def test_cancel_mid_stream_single_event(self):
        chat = FakeChat([StreamChunk(text="first")], hang_after=True)
        token = CancellationToken()

        def on_event(event):
            if event.type is EventType.CONTENT:
                token.cancel()

        _, events = _run(chat, token, on_event)
        assert [e.type for e in events] == [EventType.CONTENT, EventType.USER_CANCELLED]

    def test_stream_error_reported_once(self, monkeypatch):
        reports = []
        monkeypatch.setattr(
            "helm.turn.report_error",
            lambda error, message, context, error_type: reports.append((error, error_type)),
        )
        chat = FakeChat([StreamChunk(text="a")], error=TransportError("boom", status=500))
        _, events = _run(chat)
        assert [e.type for e in events] == [EventType.CONTENT, EventType.ERROR]
        assert events[1].value == {"message": "boom", "status": 500}
        assert len(reports) == 1
        assert reports[0][1] == "turn.run-send_message_stream"

    def test_error_after_cancel_is_cancellation(self, monkeypatch):
        monkeypatch.setattr("helm.turn.report_error", lambda *a, **k: None)
        token = CancellationToken()

        class CancellingChat(FakeChat):
            async def send_message_stream(self, message, prompt_id=""):
                token.cancel()
                raise TransportError("aborted")
                yield  # pragma: no cover

        _, events = _run(CancellingChat(), token)
        assert [e.type for e in events] == [EventType.USER_CANCELLED]
