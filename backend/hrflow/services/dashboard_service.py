"""Dashboard Service - Summary counters for the home screen"""
from typing import Dict

from ..domain.models import ActorContext
from ..domain.enums import InstanceStatus
from ..repositories.instance_repo import InstanceRepository
from ..utils.time import utc_now, start_of_month


class DashboardService:
    """Tenant-scoped counters"""

    def __init__(self):
        self.instance_repo = InstanceRepository()

    def get_stats(self, actor: ActorContext) -> Dict[str, int]:
        now = utc_now()
        pending = 0
        if actor.employee_id:
            pending = self.instance_repo.count_open_steps_for_assignee(actor.tenant_id, actor.employee_id)

        return {
            "pending_steps": pending,
            "active_workflows": self.instance_repo.count_by_statuses(
                actor.tenant_id, (InstanceStatus.IN_PROGRESS, InstanceStatus.AWAITING_APPROVAL)
            ),
            "overdue_steps": self.instance_repo.count_overdue_steps(actor.tenant_id, now),
            "completed_this_month": self.instance_repo.count_completed_since(
                actor.tenant_id, start_of_month(now)
            ),
        }
