"""Fixed pipeline task handlers and the collaborators they consume."""

from autosetup.tasks.agent_actions import AgentActionsTask
from autosetup.tasks.base import TaskContext, TaskHandler
from autosetup.tasks.compliance import ComplianceTask
from autosetup.tasks.driver_update import DriverUpdateTask
from autosetup.tasks.inventory import InventoryTask
from autosetup.tasks.policy_refresh import PolicyRefreshTask

__all__ = [
    "AgentActionsTask",
    "ComplianceTask",
    "DriverUpdateTask",
    "InventoryTask",
    "PolicyRefreshTask",
    "TaskContext",
    "TaskHandler",
]
