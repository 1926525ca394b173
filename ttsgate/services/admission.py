"""Concurrency admission: caps in-flight synthesis jobs per user.

This is a point-in-time count of ``processing`` jobs, not a reservation.
Two simultaneous checks can both see the last free slot; the ceiling is a
fairness guard, not a hard resource limit.
"""

import structlog
from pydantic import BaseModel

from ttsgate.models.subscription import Plan
from ttsgate.services.job_store import JobRepository

logger = structlog.get_logger(__name__)


class AdmissionDecision(BaseModel):
    allowed: bool
    active_requests: int
    max_allowed: int


class ConcurrencyAdmissionController:
    """Admits a request when the user has fewer processing jobs than the plan allows."""

    def __init__(self, jobs: JobRepository, default_limit: int = 5) -> None:
        self.jobs = jobs
        self.default_limit = default_limit

    def limit_for(self, plan: Plan) -> int:
        limit = plan.features.concurrency_limit
        return self.default_limit if limit is None else limit

    async def evaluate(
        self, user_id: str, plan: Plan, exclude_job_id: str | None = None
    ) -> AdmissionDecision:
        """
        Count the user's processing jobs against the plan ceiling.

        Args:
            user_id: Requesting user.
            plan: The user's plan (``features.concurrency_limit``).
            exclude_job_id: The caller's own job, already persisted in
                ``processing`` and not counted against the caller.
        """
        max_allowed = self.limit_for(plan)
        active = await self.jobs.count_processing(user_id, exclude_job_id=exclude_job_id)
        decision = AdmissionDecision(
            allowed=active < max_allowed,
            active_requests=active,
            max_allowed=max_allowed,
        )
        if not decision.allowed:
            logger.info(
                "admission_denied",
                user_id=user_id,
                active_requests=active,
                max_allowed=max_allowed,
            )
        return decision

    async def admit(self, user_id: str, plan: Plan, exclude_job_id: str | None = None) -> bool:
        decision = await self.evaluate(user_id, plan, exclude_job_id=exclude_job_id)
        return decision.allowed
