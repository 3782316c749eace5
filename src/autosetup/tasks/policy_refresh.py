"""Policy refresh task: a quick idempotent ``gpupdate /force`` with a few retries."""

from __future__ import annotations

from autosetup.config import PolicyRefreshSettings
from autosetup.engine.exit_codes import policy_refresh_table
from autosetup.engine.models import ProcessResult, TaskId, TaskOutcome
from autosetup.engine.process import ProcessRunner, build_command
from autosetup.engine.retry import OutcomeMessages, RetryPolicyEngine
from autosetup.tasks.base import TaskContext


class PolicyRefreshTask:
    task_id = TaskId.POLICY_REFRESH
    task_name = "Group Policy Update"

    def __init__(
        self,
        settings: PolicyRefreshSettings,
        *,
        runner: ProcessRunner,
        engine: RetryPolicyEngine,
    ) -> None:
        self.settings = settings
        self._runner = runner
        self._engine = engine

    def run(self, context: TaskContext) -> TaskOutcome:
        command = build_command(self.settings.command, self.settings.args)

        def operation(timeout_seconds: float) -> ProcessResult:
            return self._runner.run(
                command,
                timeout_seconds=timeout_seconds,
                on_poll=context.heartbeat,
            )

        def on_attempt(attempt: int, max_attempts: int) -> None:
            if attempt == 1:
                context.status("Running Group Policy update...")
            else:
                context.status(f"Retrying Group Policy update (attempt {attempt}/{max_attempts})...")

        return self._engine.execute(
            operation,
            policy_refresh_table(retryable=self.settings.retryable_codes),
            self.settings.retry,
            context.cancel,
            task_id=self.task_id.value,
            task_name=self.task_name,
            messages=OutcomeMessages(
                success="Group Policy updated successfully",
                reboot_required="Group Policy updated - RESTART REQUIRED",
                noop="Group Policy already up to date",
            ),
            on_attempt=on_attempt,
        )
