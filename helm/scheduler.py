"""Tool call scheduling: validation, approval, execution and cancellation.

Every call of a batch lives in an indexed map ``call_id -> ToolCall`` where
``ToolCall`` is one of seven frozen variants, one per status. Calls only move
through ``_transition``, which checks the allowed predecessors, publishes the
update and then checks whether the batch is complete.
"""

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, ClassVar

from .cancellation import CancellationToken
from .config import ApprovalMode, Config
from .content import to_parts
from .tools import (
    BaseTool,
    ConfirmationDetails,
    ConfirmHandler,
    EditConfirmation,
    FileDiff,
    ModifiableTool,
    ToolConfirmationOutcome,
    ToolErrorType,
    ToolRegistry,
)

logger = logging.getLogger(__name__)


class ToolCallStatus(str, Enum):
    VALIDATING = "validating"
    SCHEDULED = "scheduled"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {ToolCallStatus.SUCCESS, ToolCallStatus.ERROR, ToolCallStatus.CANCELLED}
)

# status -> statuses it may be entered from
_ALLOWED_PREDECESSORS: dict[ToolCallStatus, frozenset] = {
    ToolCallStatus.VALIDATING: frozenset(),
    ToolCallStatus.AWAITING_APPROVAL: frozenset({ToolCallStatus.VALIDATING}),
    ToolCallStatus.SCHEDULED: frozenset(
        {ToolCallStatus.VALIDATING, ToolCallStatus.AWAITING_APPROVAL}
    ),
    ToolCallStatus.EXECUTING: frozenset({ToolCallStatus.SCHEDULED}),
    ToolCallStatus.SUCCESS: frozenset({ToolCallStatus.EXECUTING}),
    ToolCallStatus.ERROR: frozenset(
        {
            ToolCallStatus.VALIDATING,
            ToolCallStatus.AWAITING_APPROVAL,
            ToolCallStatus.SCHEDULED,
            ToolCallStatus.EXECUTING,
        }
    ),
    ToolCallStatus.CANCELLED: frozenset(
        {
            ToolCallStatus.VALIDATING,
            ToolCallStatus.AWAITING_APPROVAL,
            ToolCallStatus.SCHEDULED,
            ToolCallStatus.EXECUTING,
        }
    ),
}

SUCCESS_OUTPUT = "Tool execution succeeded."


@dataclass(frozen=True)
class ToolCallRequest:
    call_id: str
    name: str
    args: dict
    is_client_initiated: bool = False
    prompt_id: str = ""


@dataclass(frozen=True)
class ToolCallResponse:
    call_id: str
    response_parts: list
    result_display: str | FileDiff | None = None
    error: str | None = None
    error_type: ToolErrorType | None = None


class _CallAccessors:
    @property
    def call_id(self) -> str:
        return self.request.call_id

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class ValidatingToolCall(_CallAccessors):
    request: ToolCallRequest
    tool: BaseTool
    status: ClassVar[ToolCallStatus] = ToolCallStatus.VALIDATING


@dataclass(frozen=True)
class WaitingToolCall(_CallAccessors):
    request: ToolCallRequest
    tool: BaseTool
    confirmation_details: ConfirmationDetails
    status: ClassVar[ToolCallStatus] = ToolCallStatus.AWAITING_APPROVAL


@dataclass(frozen=True)
class ScheduledToolCall(_CallAccessors):
    request: ToolCallRequest
    tool: BaseTool
    outcome: ToolConfirmationOutcome | None = None
    status: ClassVar[ToolCallStatus] = ToolCallStatus.SCHEDULED


@dataclass(frozen=True)
class ExecutingToolCall(_CallAccessors):
    request: ToolCallRequest
    tool: BaseTool
    token: CancellationToken
    start_time: float
    outcome: ToolConfirmationOutcome | None = None
    status: ClassVar[ToolCallStatus] = ToolCallStatus.EXECUTING


@dataclass(frozen=True)
class SuccessfulToolCall(_CallAccessors):
    request: ToolCallRequest
    tool: BaseTool
    response: ToolCallResponse
    duration_ms: int | None = None
    outcome: ToolConfirmationOutcome | None = None
    status: ClassVar[ToolCallStatus] = ToolCallStatus.SUCCESS


@dataclass(frozen=True)
class ErroredToolCall(_CallAccessors):
    request: ToolCallRequest
    response: ToolCallResponse
    tool: BaseTool | None = None
    duration_ms: int | None = None
    outcome: ToolConfirmationOutcome | None = None
    status: ClassVar[ToolCallStatus] = ToolCallStatus.ERROR


@dataclass(frozen=True)
class CancelledToolCall(_CallAccessors):
    request: ToolCallRequest
    tool: BaseTool
    response: ToolCallResponse
    duration_ms: int | None = None
    outcome: ToolConfirmationOutcome | None = None
    status: ClassVar[ToolCallStatus] = ToolCallStatus.CANCELLED


ToolCall = (
    ValidatingToolCall
    | WaitingToolCall
    | ScheduledToolCall
    | ExecutingToolCall
    | SuccessfulToolCall
    | ErroredToolCall
    | CancelledToolCall
)
CompletedToolCall = SuccessfulToolCall | ErroredToolCall | CancelledToolCall


# -- Response shaping --------------------------------------------------------


def _function_response(call_id: str, name: str, response: dict) -> dict:
    return {"function_response": {"id": call_id, "name": name, "response": response}}


def convert_to_function_response(tool_name: str, call_id: str, content: Any) -> list[dict]:
    """Turn a tool's model-facing content into the parts sent back to the model.

    The first part is always a function response; binary and multi-part
    content is appended after it so the model can still see it.
    """
    if isinstance(content, str):
        return [_function_response(call_id, tool_name, {"output": content})]

    if isinstance(content, list):
        parts = to_parts(content)
        if len(parts) == 1:
            return convert_to_function_response(tool_name, call_id, parts[0])
        return [
            _function_response(call_id, tool_name, {"output": SUCCESS_OUTPUT}),
            *parts,
        ]

    if "function_response" in content:
        response = content["function_response"].get("response") or {}
        return [_function_response(call_id, tool_name, response)]

    for key in ("inline_data", "file_data"):
        if key in content:
            mime = content[key].get("mime_type", "unknown")
            return [
                _function_response(
                    call_id,
                    tool_name,
                    {"output": f"Binary content of type {mime} was processed."},
                ),
                content,
            ]

    if "text" in content:
        return [_function_response(call_id, tool_name, {"output": content["text"]})]

    return [_function_response(call_id, tool_name, {"output": SUCCESS_OUTPUT}), content]


def _error_response(
    request: ToolCallRequest,
    message: str,
    error_type: ToolErrorType,
    display: str | FileDiff | None = None,
) -> ToolCallResponse:
    return ToolCallResponse(
        call_id=request.call_id,
        response_parts=[
            _function_response(request.call_id, request.name, {"error": message})
        ],
        result_display=display if display else message,
        error=message,
        error_type=error_type,
    )


# -- Batches -----------------------------------------------------------------


class Batch:
    """The calls scheduled by one ``schedule()`` invocation."""

    def __init__(self, call_ids: list[str], loop: asyncio.AbstractEventLoop):
        self.call_ids = list(call_ids)
        self._future: asyncio.Future = loop.create_future()
        self.remove_token_callback: Callable[[], None] | None = None

    @property
    def done(self) -> bool:
        return self._future.done()

    async def wait(self) -> list[CompletedToolCall]:
        """Suspend until every call is terminal; returns them in request order."""
        return await asyncio.shield(self._future)

    def _resolve(self, calls: list) -> None:
        if not self._future.done():
            self._future.set_result(calls)


UpdateHandler = Callable[[list], None]


class CoreToolScheduler:
    def __init__(
        self,
        registry: ToolRegistry,
        config: Config,
        *,
        on_tool_calls_update: UpdateHandler | None = None,
        on_all_tool_calls_complete: UpdateHandler | None = None,
        telemetry=None,
    ):
        self.registry = registry
        self.config = config
        self.on_tool_calls_update = on_tool_calls_update
        self.on_all_tool_calls_complete = on_all_tool_calls_complete
        self.telemetry = telemetry
        self._calls: dict[str, ToolCall] = {}
        self._started: dict[str, float] = {}
        self._batch: Batch | None = None
        self._token: CancellationToken | None = None
        self._tasks: set[asyncio.Task] = set()

    # -- Queries -------------------------------------------------------------

    @property
    def tool_calls(self) -> list[ToolCall]:
        if self._batch is None:
            return []
        return [self._calls[call_id] for call_id in self._batch.call_ids]

    def get_call(self, call_id: str) -> ToolCall | None:
        return self._calls.get(call_id)

    def is_running(self) -> bool:
        return any(not call.is_terminal for call in self.tool_calls)

    # -- Scheduling ----------------------------------------------------------

    async def schedule(
        self,
        requests: ToolCallRequest | list[ToolCallRequest],
        token: CancellationToken,
    ) -> Batch:
        if isinstance(requests, ToolCallRequest):
            requests = [requests]
        if self.is_running():
            raise RuntimeError(
                "Cannot schedule new tool calls while other tool calls are "
                "actively running (executing or awaiting approval)."
            )
        call_ids = [r.call_id for r in requests]
        if len(set(call_ids)) != len(call_ids):
            raise ValueError("tool call ids must be unique within a batch")

        loop = asyncio.get_running_loop()
        batch = Batch(call_ids, loop)
        self._batch = batch
        self._token = token
        self._calls = {}
        self._started = {}

        for request in requests:
            self._started[request.call_id] = time.monotonic()
            tool = self.registry.get_tool(request.name)
            if tool is None:
                self._calls[request.call_id] = ErroredToolCall(
                    request=request,
                    response=_error_response(
                        request,
                        f'Tool "{request.name}" not found in registry.',
                        ToolErrorType.TOOL_NOT_FOUND,
                    ),
                    duration_ms=0,
                )
                self._record_terminal(self._calls[request.call_id])
            else:
                self._calls[request.call_id] = ValidatingToolCall(request, tool)
        self._notify_update()

        for request in requests:
            call = self._calls[request.call_id]
            if call.status is not ToolCallStatus.VALIDATING:
                continue
            await self._validate(call, token)

        if token.cancelled:
            self.cancel_all(token.reason or "Operation cancelled")
        elif not batch.done:
            # Fires immediately if the token went off since the check above.
            batch.remove_token_callback = token.add_callback(
                lambda reason: loop.call_soon_threadsafe(
                    self._cancel_batch, batch, reason
                )
            )
        self._check_completion()
        self._attempt_execution()
        return batch

    async def _validate(self, call: ValidatingToolCall, token: CancellationToken) -> None:
        request, tool = call.request, call.tool
        if token.cancelled:
            self._set_cancelled(request.call_id, token.reason or "Operation cancelled")
            return

        error = tool.validate(request.args)
        if error:
            self._set_error(request.call_id, error, ToolErrorType.INVALID_TOOL_PARAMS)
            return

        if self.config.approval_mode == ApprovalMode.YOLO:
            self._transition(ScheduledToolCall(request, tool))
            return

        try:
            details = await tool.should_confirm(request.args, token)
        except Exception as e:
            logger.debug("should_confirm failed for %s", request.name, exc_info=True)
            self._set_error(request.call_id, str(e), ToolErrorType.UNHANDLED_EXCEPTION)
            return

        if self._calls[request.call_id].is_terminal:
            return
        if token.cancelled:
            self._set_cancelled(request.call_id, token.reason or "Operation cancelled")
        elif details is None:
            self._transition(ScheduledToolCall(request, tool))
        else:
            wrapped = dataclasses.replace(
                details,
                on_confirm=self._wrap_on_confirm(request.call_id, details.on_confirm, token),
            )
            self._transition(WaitingToolCall(request, tool, wrapped))

    def _wrap_on_confirm(
        self, call_id: str, original: ConfirmHandler, token: CancellationToken
    ) -> ConfirmHandler:
        async def on_confirm(outcome: ToolConfirmationOutcome, payload: dict | None = None):
            await self.handle_confirmation_response(
                call_id, original, outcome, token, payload
            )

        return on_confirm

    async def handle_confirmation_response(
        self,
        call_id: str,
        original_on_confirm: ConfirmHandler,
        outcome: ToolConfirmationOutcome,
        token: CancellationToken,
        payload: dict | None = None,
    ) -> None:
        call = self._calls.get(call_id)
        if call is None or call.status is not ToolCallStatus.AWAITING_APPROVAL:
            logger.debug("ignoring confirmation for %s: not awaiting approval", call_id)
            return

        try:
            await original_on_confirm(outcome, payload)
        except Exception as e:
            logger.debug("on_confirm failed for %s", call.request.name, exc_info=True)
            self._set_error(call_id, str(e), ToolErrorType.UNHANDLED_EXCEPTION)
            return

        call = self._calls[call_id]
        if call.status is not ToolCallStatus.AWAITING_APPROVAL:
            return  # resolved elsewhere (e.g. cancelled) while the handler ran

        if outcome == ToolConfirmationOutcome.CANCEL or token.cancelled:
            self._set_cancelled(call_id, "User did not allow tool call", outcome=outcome)
            return

        request = call.request
        new_content = (payload or {}).get("new_content")
        if new_content is not None and isinstance(call.tool, ModifiableTool):
            try:
                args = call.tool.apply_modification(request.args, new_content)
            except (ValueError, OSError) as e:
                self._set_error(call_id, str(e), ToolErrorType.EXECUTION_FAILED)
                return
            request = dataclasses.replace(request, args=args)

        self._transition(ScheduledToolCall(request, call.tool, outcome=outcome))
        self._attempt_execution()

    # -- Execution -----------------------------------------------------------

    def _attempt_execution(self) -> None:
        calls = self.tool_calls
        pending = (ToolCallStatus.VALIDATING, ToolCallStatus.AWAITING_APPROVAL)
        if any(call.status in pending for call in calls):
            return
        for call in calls:
            if call.status is ToolCallStatus.SCHEDULED:
                executing = ExecutingToolCall(
                    request=call.request,
                    tool=call.tool,
                    token=self._token,
                    start_time=time.monotonic(),
                    outcome=call.outcome,
                )
                self._transition(executing)
                task = asyncio.ensure_future(self._execute(executing))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    async def _execute(self, call: ExecutingToolCall) -> None:
        request, token = call.request, call.token
        run = asyncio.ensure_future(call.tool.execute(request.args, token))
        cancelled = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({run, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()

        if token.cancelled:
            if not run.done():
                run.cancel()
            await asyncio.gather(run, return_exceptions=True)
            self._set_cancelled(request.call_id, "User cancelled tool execution.")
            return

        try:
            result = run.result()
        except Exception as e:
            logger.debug("tool %s raised", request.name, exc_info=True)
            self._set_error(request.call_id, str(e), ToolErrorType.EXECUTION_FAILED)
            return

        if result.error is not None:
            response = _error_response(
                request, result.error.message, result.error.type, display=result.display
            )
            self._transition(
                ErroredToolCall(
                    request=request,
                    response=response,
                    tool=call.tool,
                    duration_ms=self._duration_ms(request.call_id),
                    outcome=call.outcome,
                )
            )
            return

        response = ToolCallResponse(
            call_id=request.call_id,
            response_parts=convert_to_function_response(
                request.name, request.call_id, result.content
            ),
            result_display=result.display,
        )
        self._transition(
            SuccessfulToolCall(
                request=request,
                tool=call.tool,
                response=response,
                duration_ms=self._duration_ms(request.call_id),
                outcome=call.outcome,
            )
        )

    # -- Cancellation --------------------------------------------------------

    def cancel_all(self, reason: str = "Operation cancelled") -> None:
        """Move every non-terminal call of the current batch to cancelled."""
        for call in self.tool_calls:
            if not call.is_terminal:
                self._set_cancelled(call.call_id, reason)

    def _cancel_batch(self, batch: Batch, reason: str) -> None:
        if batch is self._batch and not batch.done:
            self.cancel_all(reason)

    # -- Transitions ---------------------------------------------------------

    def _duration_ms(self, call_id: str) -> int:
        return int((time.monotonic() - self._started.get(call_id, time.monotonic())) * 1000)

    def _set_error(self, call_id: str, message: str, error_type: ToolErrorType) -> None:
        call = self._calls[call_id]
        self._transition(
            ErroredToolCall(
                request=call.request,
                response=_error_response(call.request, message, error_type),
                tool=getattr(call, "tool", None),
                duration_ms=self._duration_ms(call_id),
                outcome=getattr(call, "outcome", None),
            )
        )

    def _set_cancelled(
        self,
        call_id: str,
        reason: str,
        outcome: ToolConfirmationOutcome | None = None,
    ) -> None:
        call = self._calls[call_id]
        if call.is_terminal:
            return
        display = None
        if isinstance(call, WaitingToolCall) and isinstance(
            call.confirmation_details, EditConfirmation
        ):
            display = call.confirmation_details.as_file_diff()
        message = f"[Operation Cancelled] Reason: {reason}"
        response = ToolCallResponse(
            call_id=call_id,
            response_parts=[
                _function_response(call_id, call.request.name, {"error": message})
            ],
            result_display=display,
        )
        self._transition(
            CancelledToolCall(
                request=call.request,
                tool=call.tool,
                response=response,
                duration_ms=self._duration_ms(call_id),
                outcome=outcome if outcome is not None else getattr(call, "outcome", None),
            )
        )

    def _transition(self, new_call: ToolCall) -> bool:
        call_id = new_call.call_id
        current = self._calls.get(call_id)
        if current is not None:
            if current.is_terminal:
                logger.debug(
                    "ignoring %s for %s: already %s",
                    new_call.status.value,
                    call_id,
                    current.status.value,
                )
                return False
            if current.status not in _ALLOWED_PREDECESSORS[new_call.status]:
                raise RuntimeError(
                    f"illegal tool call transition for {call_id}: "
                    f"{current.status.value} -> {new_call.status.value}"
                )
        self._calls[call_id] = new_call
        if new_call.is_terminal:
            self._record_terminal(new_call)
        self._notify_update()
        self._check_completion()
        return True

    def _record_terminal(self, call: CompletedToolCall) -> None:
        if self.telemetry is None:
            return
        self.telemetry.record_tool_call(
            call.request.name,
            call.call_id,
            call.request.args,
            call.status.value,
            (call.duration_ms or 0) / 1000,
            outcome=call.outcome.value if call.outcome else None,
            error=call.response.error,
        )

    def _notify_update(self) -> None:
        if self.on_tool_calls_update is not None:
            self.on_tool_calls_update(self.tool_calls)

    def _check_completion(self) -> None:
        batch = self._batch
        if batch is None or batch.done:
            return
        calls = self.tool_calls
        if not all(call.is_terminal for call in calls):
            return
        if batch.remove_token_callback is not None:
            batch.remove_token_callback()
        try:
            if self.on_all_tool_calls_complete is not None:
                self.on_all_tool_calls_complete(calls)
        finally:
            batch._resolve(calls)
