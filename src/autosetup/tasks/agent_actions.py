"""Management-agent actions: one schedule trigger per configured action."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from autosetup.config import AgentAction, AgentActionSettings
from autosetup.engine.clock import utc_now
from autosetup.engine.errors import ExternalOperationError
from autosetup.engine.models import (
    SubTaskOutcome,
    TaskId,
    TaskOutcome,
    TaskStatus,
    started_outcome,
)
from autosetup.engine.retry import CANCELLED_MESSAGE, cancel_aware_wait
from autosetup.tasks.base import TaskContext
from autosetup.tasks.providers import AgentActionTrigger

logger = logging.getLogger(__name__)


class AgentActionsTask:
    """Composite task with a fixed cool-down between actions."""

    task_id = TaskId.AGENT_ACTIONS
    task_name = "Configuration Manager Actions"

    def __init__(
        self,
        settings: AgentActionSettings,
        *,
        trigger: AgentActionTrigger,
        wait: Callable[[threading.Event, float], bool] = cancel_aware_wait,
    ) -> None:
        self.settings = settings
        self._trigger = trigger
        self._wait = wait

    def run(self, context: TaskContext) -> TaskOutcome:
        outcome = started_outcome(self.task_id.value, self.task_name)
        actions = self.settings.actions
        sub_tasks: list[SubTaskOutcome] = []
        cancelled = False

        for index, action in enumerate(actions):
            if not cancelled and index > 0 and self.settings.cooldown_seconds > 0:
                cancelled = self._wait(context.cancel, self.settings.cooldown_seconds)
            cancelled = cancelled or context.cancelled
            if cancelled:
                sub_tasks.append(
                    SubTaskOutcome(
                        name=action.name,
                        status=TaskStatus.SKIPPED,
                        message=CANCELLED_MESSAGE,
                        completed_at=utc_now(),
                    ),
                )
                continue

            context.status(f"Triggering {action.name} ({index + 1}/{len(actions)})...")
            sub_tasks.append(self._run_action(action, context))
            context.heartbeat()

        succeeded = sum(1 for sub in sub_tasks if sub.status == TaskStatus.SUCCESS)
        summary = f"{succeeded}/{len(actions)} actions completed successfully"
        if cancelled:
            return outcome.finished(
                status=TaskStatus.ERROR,
                message=f"{CANCELLED_MESSAGE} ({summary})",
                sub_tasks=tuple(sub_tasks),
                attempts=len(sub_tasks),
            )
        status = TaskStatus.SUCCESS if succeeded == len(actions) else TaskStatus.WARNING
        return outcome.finished(
            status=status,
            message=summary,
            sub_tasks=tuple(sub_tasks),
            attempts=len(sub_tasks),
        )

    def _run_action(self, action: AgentAction, context: TaskContext) -> SubTaskOutcome:
        try:
            return_code = self._trigger.trigger(
                action.action_id,
                self.settings.action_timeout_seconds,
                on_poll=context.heartbeat,
            )
        except ExternalOperationError as error:
            logger.error("Could not trigger %s: %s", action.name, error)
            return SubTaskOutcome(
                name=action.name,
                status=TaskStatus.ERROR,
                message=str(error),
                completed_at=utc_now(),
            )

        if return_code == 0:
            logger.info("%s triggered", action.name)
            return SubTaskOutcome(
                name=action.name,
                status=TaskStatus.SUCCESS,
                message="Triggered",
                completed_at=utc_now(),
                return_code=return_code,
            )
        logger.warning("%s failed with return code %s", action.name, return_code)
        return SubTaskOutcome(
            name=action.name,
            status=TaskStatus.ERROR,
            message=f"Return code {return_code}",
            completed_at=utc_now(),
            return_code=return_code,
        )
