"""Public library API for helm: Session class and Result dataclass."""

import asyncio
from dataclasses import dataclass

from .cancellation import CancellationToken
from .config import ApprovalMode, Config
from .report import Telemetry, set_error_report_dir


@dataclass
class Result:
    """Result of a session run or ask call."""

    answer: str | None
    outcome: str
    history: list[dict]
    report: dict | None = None

    @property
    def exhausted(self) -> bool:
        return self.outcome == "max_turns"


class Session:
    """Programmatic interface to the helm agent loop.

    Stores configuration as plain attributes. Call .run() for single-shot
    questions or .ask() for multi-turn conversations. Tool calls that need
    approval go to the async *confirm* callback, which receives the waiting
    tool call and returns ``(outcome, payload)``; without one they are denied.
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        provider: str = "lmstudio",
        model: str | None = None,
        fallback_model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_session_turns: int = 100,
        max_output_tokens: int | None = 32768,
        max_context_tokens: int | None = None,
        temperature: float | None = None,
        top_p: float | None = None,
        seed: int | None = None,
        approval_mode: ApprovalMode | str = ApprovalMode.DEFAULT,
        yolo: bool = False,
        allowed_commands: list[str] | None = None,
        system_prompt: str | None = None,
        no_system_prompt: bool = False,
        compression_threshold: float = 0.7,
        compression_preserve: float = 0.3,
        retry_attempts: int = 5,
        retry_initial_delay: float = 5.0,
        retry_max_delay: float = 30.0,
        shell_timeout: int = 120,
        error_report_dir: str | None = None,
        verbose: bool = False,
        confirm=None,
        transport=None,
    ):
        self.base_dir = base_dir
        self.provider = provider
        self.model = model
        self.fallback_model = fallback_model
        self.api_key = api_key
        self.base_url = base_url
        self.max_session_turns = max_session_turns
        self.max_output_tokens = max_output_tokens
        self.max_context_tokens = max_context_tokens
        self.temperature = temperature
        self.top_p = top_p
        self.seed = seed
        self.approval_mode = ApprovalMode.YOLO if yolo else ApprovalMode(approval_mode)
        self.allowed_commands = allowed_commands or []
        self.system_prompt = "" if no_system_prompt else system_prompt
        self.compression_threshold = compression_threshold
        self.compression_preserve = compression_preserve
        self.retry_attempts = retry_attempts
        self.retry_initial_delay = retry_initial_delay
        self.retry_max_delay = retry_max_delay
        self.shell_timeout = shell_timeout
        self.error_report_dir = error_report_dir
        self.verbose = verbose
        self.confirm = confirm
        self.transport = transport

        # Conversation state for ask(); rebuilt lazily after reset()
        self._conv: tuple | None = None

    def _make_config(self) -> Config:
        return Config(
            model=self.model,
            provider=self.provider,
            fallback_model=self.fallback_model,
            api_key=self.api_key,
            base_url=self.base_url,
            max_output_tokens=self.max_output_tokens,
            max_context_tokens=self.max_context_tokens,
            temperature=self.temperature,
            top_p=self.top_p,
            seed=self.seed,
            max_session_turns=self.max_session_turns,
            approval_mode=self.approval_mode,
            allowed_commands=self.allowed_commands,
            system_prompt=self.system_prompt,
            compression_threshold=self.compression_threshold,
            compression_preserve=self.compression_preserve,
            retry_attempts=self.retry_attempts,
            retry_initial_delay=self.retry_initial_delay,
            retry_max_delay=self.retry_max_delay,
            shell_timeout=self.shell_timeout,
            base_dir=self.base_dir,
            error_report_dir=self.error_report_dir,
        )

    def _setup(self) -> tuple:
        """Build a fresh config, client and scheduler."""
        from .agent import build_agent, deny_all, resolve_provider

        if self.verbose:
            from . import fmt

            fmt.init()

        set_error_report_dir(self.error_report_dir)
        config = self._make_config()
        if self.transport is None:
            resolve_provider(config, self.verbose)
        telemetry = Telemetry()
        client, scheduler = build_agent(
            config,
            telemetry,
            confirm=self.confirm or deny_all,
            verbose=self.verbose,
            transport=self.transport,
        )
        return config, telemetry, client, scheduler

    async def _drive(self, state: tuple, question: str) -> tuple[str | None, str]:
        from .agent import run_agent_loop

        _, _, client, scheduler = state
        token = CancellationToken()
        return await run_agent_loop(
            client, scheduler, question, token, verbose=self.verbose
        )

    def run(self, question: str, *, report: bool = False) -> Result:
        """Single-shot: run a question with fresh state. Each call is independent."""
        state = self._setup()
        config, telemetry, client, _ = state
        answer, outcome = asyncio.run(self._drive(state, question))

        report_dict = None
        if report:
            report_dict = telemetry.build_report(
                task=question,
                model=config.get_model() or "unknown",
                provider=config.provider,
                settings={
                    "max_turns": config.max_session_turns,
                    "max_output_tokens": config.max_output_tokens,
                    "temperature": config.temperature,
                    "top_p": config.top_p,
                    "seed": config.seed,
                    "approval_mode": config.approval_mode.value,
                },
                outcome="success" if outcome == "ok" else outcome,
                answer=answer,
                exit_code={"ok": 0, "max_turns": 2, "cancelled": 130}[outcome],
                turns=client.session_turn_count,
            )

        return Result(
            answer=answer,
            outcome=outcome,
            history=client.get_history(),
            report=report_dict,
        )

    def ask(self, question: str) -> Result:
        """Conversational: share context across questions (like the REPL)."""
        if self._conv is None:
            self._conv = self._setup()
        client = self._conv[2]
        answer, outcome = asyncio.run(self._drive(self._conv, question))
        return Result(answer=answer, outcome=outcome, history=client.get_history())

    def reset(self) -> None:
        """Drop conversation state. Next ask() starts fresh."""
        self._conv = None
