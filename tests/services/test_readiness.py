import pytest

import sqlci.services.readiness as readiness_module
from sqlci.errors import OrchestratorError
from sqlci.models import ReadinessOutcome
from sqlci.services.readiness import ReadinessPoller


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None

    def error(self, *_args, **_kwargs):
        return None


class DummyConsole:
    def print(self, *_args, **_kwargs):
        return None


class RecordingConsole:
    def __init__(self):
        self.lines = []

    def print(self, message="", *_args, **_kwargs):
        self.lines.append(str(message))


@pytest.fixture
def sleeps(monkeypatch):
    recorded = []
    monkeypatch.setattr(readiness_module.time, "sleep", recorded.append)
    return recorded


def test_probe_exceptions_count_as_failed_attempts(sleeps):
    outcomes = iter([RuntimeError("connection refused"), (True, "")])

    def probe():
        outcome = next(outcomes)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    poller = ReadinessPoller(logger=DummyLogger(), console=DummyConsole())
    result = poller.wait(probe, max_attempts=3, retry_delay=1.5)

    assert result.outcome is ReadinessOutcome.READY
    assert result.attempts == 2
    assert sleeps == [1.5]


def test_exhausted_result_keeps_last_failure_and_skips_final_sleep(sleeps):
    reasons = iter(["starting", "recovering master", "upgrade mode"])
    poller = ReadinessPoller(logger=DummyLogger(), console=DummyConsole())

    result = poller.wait(lambda: (False, next(reasons)), max_attempts=3, retry_delay=15)

    assert result.outcome is ReadinessOutcome.EXHAUSTED
    assert result.attempts == 3
    assert result.last_failure == "upgrade mode"
    assert sleeps == [15, 15]


def test_on_attempt_callback_sees_every_attempt(sleeps):
    seen = []
    answers = iter([(False, "not yet"), (True, "")])
    poller = ReadinessPoller(
        logger=DummyLogger(),
        console=DummyConsole(),
        on_attempt=lambda attempt, ok, reason: seen.append((attempt, ok, reason)),
    )

    poller.wait(lambda: next(answers), max_attempts=5, retry_delay=0)

    assert seen == [(1, False, "not yet"), (2, True, "")]


@pytest.mark.parametrize("max_attempts,retry_delay", [(0, 1.0), (3, -1.0)])
def test_invalid_budget_is_rejected(max_attempts, retry_delay):
    poller = ReadinessPoller(logger=DummyLogger(), console=DummyConsole())

    with pytest.raises(OrchestratorError):
        poller.wait(lambda: (True, ""), max_attempts=max_attempts, retry_delay=retry_delay)


def test_label_is_printed_literally(sleeps):
    console = RecordingConsole()
    poller = ReadinessPoller(logger=DummyLogger(), console=console)

    poller.wait(lambda: (True, ""), max_attempts=1, retry_delay=0, label="[bold]sqlci_abc")

    assert console.lines == [
        "[yellow]Waiting for \\[bold]sqlci_abc to accept commands...[/yellow]",
        "[green]\\[bold]sqlci_abc is ready.[/green]",
    ]
