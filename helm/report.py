"""Error types, error-report files and the session telemetry handle."""

import json
import logging
import os
import tempfile
import traceback
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, bad value types, etc.)."""


class TransportError(AgentError):
    """Raised when the model API call fails."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class RateLimitError(TransportError):
    """The provider answered 429."""

    def __init__(self, message: str, status: int | None = 429):
        super().__init__(message, status)


class ContextOverflowError(TransportError):
    """Raised when the model call fails due to context window overflow."""


class EmptyResponseError(AgentError):
    """The model returned nothing usable (empty text or unparsable JSON)."""


class UserCancelledError(Exception):
    """The session's cancellation token fired while waiting on the model.

    Deliberately not an AgentError: cancellation is an outcome, not a failure.
    """


# -- Error report files ------------------------------------------------------

_error_report_dir: str | None = None


def set_error_report_dir(path: str | None) -> None:
    global _error_report_dir
    _error_report_dir = path


def report_error(
    error: BaseException | object,
    message: str,
    context: object = None,
    error_type: str = "general",
) -> str | None:
    """Write a JSON report for *error* and return the file path.

    Reports land in the configured error directory (the system temp dir by
    default). If the file cannot be written the report goes to the log
    instead and None is returned.
    """
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
    directory = _error_report_dir or tempfile.gettempdir()
    path = os.path.join(directory, f"helm-client-error-{error_type}-{stamp}.json")

    if isinstance(error, BaseException):
        payload: dict = {
            "error": {
                "type": type(error).__name__,
                "message": str(error),
                "stack": "".join(traceback.format_exception(error)),
            }
        }
    else:
        payload = {"error": {"message": str(error)}}
    if context is not None:
        payload["context"] = context

    try:
        os.makedirs(directory, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, default=str)
            f.write("\n")
    except OSError as e:
        logger.error("%s (could not write error report: %s)", message, e)
        logger.error("original error: %s", error)
        if context is not None:
            logger.error("error context: %s", json.dumps(context, default=str))
        return None

    logger.error("%s Full report available at: %s", message, path)
    return path


# -- Telemetry ---------------------------------------------------------------


class Telemetry:
    """Accumulates API, tool and compression events for one session.

    Created at session start and handed to the client and the scheduler;
    ``finalize`` + ``write`` drain it into a JSON report at session end.
    """

    def __init__(self):
        self.events: list[dict] = []
        self.api_requests = 0
        self.api_errors = 0
        self.total_api_time = 0.0
        self.input_tokens = 0
        self.output_tokens = 0
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.total_tool_time = 0.0
        self.compressions = 0
        self._last_report: dict | None = None

    def record_api_request(
        self, model: str, prompt_id: str = "", token_count: int | None = None
    ):
        self.api_requests += 1
        self.events.append(
            {
                "type": "api_request",
                "model": model,
                "prompt_id": prompt_id,
                "prompt_tokens_est": token_count,
            }
        )

    def record_api_response(
        self,
        model: str,
        duration: float,
        *,
        prompt_id: str = "",
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        finish_reason: str | None = None,
    ):
        self.total_api_time += duration
        self.input_tokens += input_tokens or 0
        self.output_tokens += output_tokens or 0
        self.events.append(
            {
                "type": "api_response",
                "model": model,
                "prompt_id": prompt_id,
                "duration_s": round(duration, 3),
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "finish_reason": finish_reason,
                "status": "OK",
            }
        )

    def record_api_error(
        self,
        model: str,
        duration: float,
        error: BaseException,
        *,
        prompt_id: str = "",
        status: int | str | None = None,
    ):
        self.api_errors += 1
        self.total_api_time += duration
        self.events.append(
            {
                "type": "api_error",
                "model": model,
                "prompt_id": prompt_id,
                "duration_s": round(duration, 3),
                "error": str(error),
                "error_type": type(error).__name__,
                "status": status,
            }
        )

    def record_tool_call(
        self,
        name: str,
        call_id: str,
        arguments: dict | None,
        status: str,
        duration: float,
        *,
        outcome: str | None = None,
        error: str | None = None,
    ):
        self.total_tool_time += duration
        stats = self.tool_stats.setdefault(
            name, {"succeeded": 0, "failed": 0, "cancelled": 0}
        )
        if status == "success":
            stats["succeeded"] += 1
        elif status == "cancelled":
            stats["cancelled"] += 1
        else:
            stats["failed"] += 1
        event: dict = {
            "type": "tool_call",
            "name": name,
            "call_id": call_id,
            "arguments": arguments,
            "status": status,
            "duration_s": round(duration, 3),
        }
        if outcome is not None:
            event["outcome"] = outcome
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def record_compression(self, tokens_before: int, tokens_after: int):
        self.compressions += 1
        self.events.append(
            {
                "type": "compression",
                "tokens_before": tokens_before,
                "tokens_after": tokens_after,
            }
        )

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        turns: int,
        error_message: str | None = None,
    ) -> dict:
        totals = {"succeeded": 0, "failed": 0, "cancelled": 0}
        for stats in self.tool_stats.values():
            for key in totals:
                totals[key] += stats[key]

        result: dict = {
            "outcome": outcome,
            "answer": answer,
            "exit_code": exit_code,
        }
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "turns": turns,
                "api_requests": self.api_requests,
                "api_errors": self.api_errors,
                "total_api_time_s": round(self.total_api_time, 3),
                "input_tokens": self.input_tokens,
                "output_tokens": self.output_tokens,
                "tool_calls_total": sum(totals.values()),
                "tool_calls_succeeded": totals["succeeded"],
                "tool_calls_failed": totals["failed"],
                "tool_calls_cancelled": totals["cancelled"],
                "tool_calls_by_name": dict(self.tool_stats),
                "total_tool_time_s": round(self.total_tool_time, 3),
                "compressions": self.compressions,
            },
            "timeline": self.events,
        }

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for ``write``."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report

    def write(self, path: str):
        if self._last_report is None:
            raise AgentError("telemetry report written before finalize()")
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2, default=str)
            f.write("\n")
