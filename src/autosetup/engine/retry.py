"""Retry policy engine: one external operation in, one task outcome out."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

from autosetup.engine.errors import (
    FatalExternalFailure,
    ProcessLaunchError,
    TransientExternalFailure,
)
from autosetup.engine.exit_codes import ExitCodeTable
from autosetup.engine.models import (
    ExitCodeClass,
    ProcessResult,
    RetryPolicy,
    TaskOutcome,
    TaskStatus,
    started_outcome,
)

logger = logging.getLogger(__name__)

Operation = Callable[[float], ProcessResult]
"""Runs the external tool once; receives the per-attempt timeout in seconds.

May raise ``ProcessLaunchError``, ``TransientExternalFailure`` or
``FatalExternalFailure`` instead of returning a result.
"""

CANCELLED_MESSAGE = "cancelled"


@dataclass(slots=True)
class OutcomeMessages:
    """Operator-facing wording for the final outcome of one operation."""

    success: str = "Completed successfully"
    reboot_required: str = "Completed successfully - RESTART REQUIRED"
    noop: str = "Nothing to do"


@dataclass(slots=True)
class _Attempt:
    classification: ExitCodeClass
    reason: str
    result: ProcessResult | None


def cancel_aware_wait(cancel: threading.Event, seconds: float) -> bool:
    """Sleep up to ``seconds``; return True when cancellation interrupted it."""

    if seconds <= 0:
        return cancel.is_set()
    return cancel.wait(timeout=seconds)


class RetryPolicyEngine:
    """Invoke, classify, back off and retry according to a ``RetryPolicy``."""

    def __init__(
        self,
        *,
        wait: Callable[[threading.Event, float], bool] = cancel_aware_wait,
    ) -> None:
        self._wait = wait

    def execute(  # noqa: PLR0913
        self,
        operation: Operation,
        table: ExitCodeTable,
        policy: RetryPolicy,
        cancel: threading.Event,
        *,
        task_id: str,
        task_name: str,
        messages: OutcomeMessages | None = None,
        on_attempt: Callable[[int, int], None] | None = None,
    ) -> TaskOutcome:
        texts = messages or OutcomeMessages()
        outcome = started_outcome(task_id, task_name)
        delay = min(policy.initial_delay_seconds, policy.max_delay_seconds)
        attempt = 1

        while True:
            if cancel.is_set():
                return self._cancelled(outcome, attempts=attempt - 1)
            if on_attempt is not None:
                on_attempt(attempt, policy.max_attempts)

            logger.info(
                "Running %s (attempt %d/%d)",
                table.tool,
                attempt,
                policy.max_attempts,
            )
            current = self._invoke(operation, table, policy)
            result = current.result
            changes: dict[str, object] = {
                "attempts": attempt,
                "exit_code": result.exit_code if result is not None else None,
                "detailed_output": result.combined_output if result is not None else "",
            }

            if current.classification == ExitCodeClass.SUCCESS:
                logger.info("%s succeeded on attempt %d", table.tool, attempt)
                return outcome.finished(status=TaskStatus.SUCCESS, message=texts.success, **changes)
            if current.classification == ExitCodeClass.SUCCESS_REBOOT_REQUIRED:
                logger.info("%s succeeded, restart required (%s)", table.tool, current.reason)
                return outcome.finished(
                    status=TaskStatus.SUCCESS,
                    message=texts.reboot_required,
                    requires_restart=True,
                    **changes,
                )
            if current.classification == ExitCodeClass.NOOP_SUCCESS:
                logger.info("%s had nothing to do (%s)", table.tool, current.reason)
                return outcome.finished(status=TaskStatus.SUCCESS, message=texts.noop, **changes)

            if cancel.is_set():
                return self._cancelled(outcome, **changes)

            if current.classification == ExitCodeClass.RETRYABLE:
                if attempt <= policy.max_retries:
                    logger.warning(
                        "%s attempt %d failed (%s); retrying in %.1fs",
                        table.tool,
                        attempt,
                        current.reason,
                        delay,
                    )
                    if self._wait(cancel, delay):
                        return self._cancelled(outcome, **changes)
                    delay = policy.next_delay(delay)
                    attempt += 1
                    continue
                logger.error(
                    "%s failed after %d attempts (%s)",
                    table.tool,
                    attempt,
                    current.reason,
                )
                return outcome.finished(
                    status=TaskStatus.ERROR,
                    message=f"{task_name} failed after {attempt} attempts ({current.reason})",
                    **changes,
                )

            logger.error("%s failed with non-retryable result (%s)", table.tool, current.reason)
            return outcome.finished(
                status=TaskStatus.ERROR,
                message=f"{task_name} failed: {current.reason}",
                **changes,
            )

    def _invoke(self, operation: Operation, table: ExitCodeTable, policy: RetryPolicy) -> _Attempt:
        try:
            result = operation(policy.timeout_seconds)
        except ProcessLaunchError as error:
            classification = ExitCodeClass.RETRYABLE if error.transient else ExitCodeClass.FATAL
            return _Attempt(classification=classification, reason=str(error), result=None)
        except TransientExternalFailure as error:
            return _Attempt(classification=ExitCodeClass.RETRYABLE, reason=str(error), result=None)
        except FatalExternalFailure as error:
            return _Attempt(classification=ExitCodeClass.FATAL, reason=str(error), result=None)

        if result.timed_out:
            return _Attempt(
                classification=ExitCodeClass.RETRYABLE,
                reason=f"timed out after {policy.timeout_seconds:.0f}s",
                result=result,
            )
        return _Attempt(
            classification=table.classify(result.exit_code),
            reason=f"exit code {result.exit_code}",
            result=result,
        )

    @staticmethod
    def _cancelled(outcome: TaskOutcome, **changes: object) -> TaskOutcome:
        logger.warning("%s cancelled", outcome.task_name)
        return outcome.finished(status=TaskStatus.ERROR, message=CANCELLED_MESSAGE, **changes)
