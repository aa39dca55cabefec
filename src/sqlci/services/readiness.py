"""Bounded readiness polling for SQLCI."""

import time
from typing import Callable, Optional, Tuple

from rich.markup import escape

from sqlci.errors import OrchestratorError
from sqlci.models import ReadinessOutcome, ReadinessPollState, ReadinessResult

Probe = Callable[[], Tuple[bool, str]]


class ReadinessPoller:
    """Probes a service until it answers or the attempt budget runs out.

    The service inside the container never announces that it is ready, so the
    only option is to ask. A probe returns ``(ok, reason)``; a probe that raises
    counts as a failed attempt with the exception text as the reason.
    """

    def __init__(self, logger, console, on_attempt: Optional[Callable] = None):
        self.logger = logger
        self.console = console
        self.on_attempt = on_attempt

    def wait(self, probe: Probe, max_attempts: int, retry_delay: float, label: str = "service"):
        if max_attempts < 1:
            raise OrchestratorError("max_attempts must be at least 1.", phase="readiness")
        if retry_delay < 0:
            raise OrchestratorError("retry_delay cannot be negative.", phase="readiness")

        state = ReadinessPollState(max_attempts=max_attempts, retry_delay=retry_delay)
        self.console.print(f"[yellow]Waiting for {escape(label)} to accept commands...[/yellow]")

        while state.remaining > 0:
            state.attempts += 1
            try:
                ok, reason = probe()
            except Exception as exc:
                ok, reason = False, str(exc) or exc.__class__.__name__

            if self.on_attempt:
                self.on_attempt(state.attempts, ok, reason)

            if ok:
                self.console.print(f"[green]{escape(label)} is ready.[/green]")
                self.logger.info(
                    "%s ready after %s/%s attempt(s).", label, state.attempts, state.max_attempts
                )
                return ReadinessResult(ReadinessOutcome.READY, state.attempts)

            state.last_failure = reason
            self.logger.warning(
                "Attempt %s/%s: %s is not ready yet: %s",
                state.attempts,
                state.max_attempts,
                label,
                reason,
            )
            if state.remaining > 0:
                time.sleep(state.retry_delay)

        self.logger.error("%s did not become ready after %s attempt(s).", label, state.attempts)
        return ReadinessResult(ReadinessOutcome.EXHAUSTED, state.attempts, state.last_failure)
