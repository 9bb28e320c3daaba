"""
Worker Selection Service
Bid intake for WORKER_EXECUTION jobs and single-worker selection.
"""

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import (
    ApplicationStatus, ExecutionMode, Job, JobStatus, UserRole, WorkerApplication,
)
from services.user_directory import Actor
from utils.atomic_transactions import lock_job
from utils.decimal_precision import FinancialValidation
from utils.exception_handler import (
    AuthorizationError, DuplicateApplication, NotFound, StateConflict, ValidationError,
)
from utils.job_state_validator import JobStateValidator

logger = logging.getLogger(__name__)


class WorkerSelectionService:
    """Applications and acceptance"""

    @classmethod
    def create_application(cls, session: Session, actor: Actor, job_id: int, bid_amount,
                           message: Optional[str] = None) -> WorkerApplication:
        if actor.role != UserRole.WORKER:
            raise AuthorizationError("Only workers can apply to jobs")

        bid = FinancialValidation.validate_positive_amount(bid_amount, "bidAmount")
        job = lock_job(session, job_id)

        if job.execution_mode != ExecutionMode.WORKER_EXECUTION.value:
            raise StateConflict("This job is executed by its leader and does not accept applications")
        if job.leader_id == actor.user_id:
            raise AuthorizationError("Job leaders cannot apply to their own job")
        if job.status != JobStatus.FUNDING_COMPLETE.value:
            raise StateConflict(f"Applications are only accepted once funding is complete (status {job.status})")
        if bid > job.wallet_balance:
            raise ValidationError(f"bidAmount cannot exceed the job's available funds {job.wallet_balance:.2f}")

        existing = session.execute(
            select(WorkerApplication.id).where(
                WorkerApplication.job_id == job.id,
                WorkerApplication.worker_id == actor.user_id,
            )
        ).first()
        if existing is not None:
            raise DuplicateApplication("You have already applied to this job")

        application = WorkerApplication(
            job_id=job.id,
            worker_id=actor.user_id,
            bid_amount=bid,
            message=message,
            status=ApplicationStatus.PENDING.value,
        )
        session.add(application)
        session.flush()

        logger.info(f"📝 APPLICATION_CREATED: job {job.id} worker {actor.user_id} bid {bid}")
        return application

    @classmethod
    def list_applications(cls, session: Session, job_id: int) -> List[WorkerApplication]:
        if session.get(Job, job_id) is None:
            raise NotFound(f"Job {job_id} not found")
        return list(session.execute(
            select(WorkerApplication)
            .where(WorkerApplication.job_id == job_id)
            .order_by(WorkerApplication.created_at, WorkerApplication.id)
        ).scalars())

    @classmethod
    def update_application_status(cls, session: Session, actor: Actor, application_id: int,
                                  status) -> WorkerApplication:
        try:
            target = status if isinstance(status, ApplicationStatus) else ApplicationStatus(str(status).upper())
        except ValueError:
            raise ValidationError(f"Unknown application status '{status}'")
        if target == ApplicationStatus.PENDING:
            raise ValidationError("Applications cannot be moved back to PENDING")

        application = session.get(WorkerApplication, application_id)
        if application is None:
            raise NotFound(f"Application {application_id} not found")

        job = lock_job(session, application.job_id)
        session.refresh(application)

        if not actor.is_admin and job.leader_id != actor.user_id:
            raise AuthorizationError("Only the job leader or an admin can review applications")

        if target == ApplicationStatus.REJECTED:
            if application.status != ApplicationStatus.PENDING.value:
                raise StateConflict(f"Application is already {application.status}")
            application.status = ApplicationStatus.REJECTED.value
            session.flush()
            logger.info(f"🚫 APPLICATION_REJECTED: {application.id} on job {job.id}")
            return application

        return cls._accept(session, actor, job, application)

    @classmethod
    def _accept(cls, session: Session, actor: Actor, job: Job, application: WorkerApplication) -> WorkerApplication:
        if application.worker_id == job.leader_id:
            raise AuthorizationError("Leaders cannot select themselves")
        if application.status == ApplicationStatus.ACCEPTED.value:
            return application
        if application.status != ApplicationStatus.PENDING.value and not actor.is_admin:
            raise StateConflict(f"Application is already {application.status}")

        current_accepted = list(session.execute(
            select(WorkerApplication).where(
                WorkerApplication.job_id == job.id,
                WorkerApplication.status == ApplicationStatus.ACCEPTED.value,
            )
        ).scalars())

        if current_accepted and not actor.is_admin:
            raise StateConflict("A worker has already been selected for this job")

        reassigning = bool(current_accepted)
        allowed_states = {JobStatus.FUNDING_COMPLETE.value}
        if reassigning:
            allowed_states.add(JobStatus.WORKER_SELECTED.value)
        if job.status not in allowed_states:
            raise StateConflict(f"Worker selection is not possible in status {job.status}")

        for previous in current_accepted:
            previous.status = ApplicationStatus.REJECTED.value
            logger.warning(f"🔁 WORKER_REASSIGNED: job {job.id} application {previous.id} overridden by admin {actor.user_id}")

        for other in session.execute(
            select(WorkerApplication).where(
                WorkerApplication.job_id == job.id,
                WorkerApplication.status == ApplicationStatus.PENDING.value,
                WorkerApplication.id != application.id,
            )
        ).scalars():
            other.status = ApplicationStatus.REJECTED.value

        application.status = ApplicationStatus.ACCEPTED.value
        job.selected_worker_id = application.worker_id
        JobStateValidator.validate_and_transition(job, JobStatus.WORKER_SELECTED)
        session.flush()

        logger.info(f"🤝 WORKER_SELECTED: job {job.id} worker {application.worker_id} bid {application.bid_amount}")
        return application
