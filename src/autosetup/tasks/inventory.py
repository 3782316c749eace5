"""Baseline inventory collection, run before anything is changed."""

from __future__ import annotations

import logging

from autosetup.engine.models import TaskId, TaskOutcome, TaskStatus, started_outcome
from autosetup.tasks.base import TaskContext
from autosetup.tasks.providers import InventoryProvider, InventorySnapshot, collect_inventory

logger = logging.getLogger(__name__)


class InventoryTask:
    task_id = TaskId.INVENTORY
    task_name = "Baseline Inventory"

    def __init__(self, provider: InventoryProvider) -> None:
        self._provider = provider
        self.snapshot: InventorySnapshot | None = None

    def run(self, context: TaskContext) -> TaskOutcome:
        outcome = started_outcome(self.task_id.value, self.task_name)
        context.status("Collecting baseline system information...")
        snapshot = collect_inventory(self._provider)
        self.snapshot = snapshot

        lines = snapshot.summary_lines()
        for line in lines:
            logger.info("%s", line)
        hardware = snapshot.hardware
        message = f"{hardware.manufacturer} {hardware.model} ({hardware.computer_name})".strip()
        if snapshot.details:
            failed = ", ".join(sorted(snapshot.details))
            return outcome.finished(
                status=TaskStatus.WARNING,
                message=f"{message}; unavailable: {failed}",
                detailed_output="\n".join(lines),
            )
        return outcome.finished(
            status=TaskStatus.SUCCESS,
            message=message,
            detailed_output="\n".join(lines),
        )
