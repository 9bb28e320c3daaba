"""
Job Lifecycle Service
=====================

Orchestrates a job from FUNDING_OPEN through review to COMPLETED or CANCELLED:
role-gated status changes, funding auto-advance, review start (with refund
staging for leader-executed jobs) and review-deadline finalization.

Finalization is a compare-and-swap on the job status. Only the caller whose
conditional UPDATE flips UNDER_REVIEW -> COMPLETED runs payout/refund side effects,
so concurrent sweeps and reads never settle a job twice.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, NamedTuple, Optional

from sqlalchemy import exists, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import Config
from database import managed_session
from models import (
    Contribution, Dispute, DisputeStatus, ExecutionMode, Job, JobProof, JobStatus,
)
from services.contribution_accounting import (
    ContributionAccounting, fee_percent_for_mode, proportional_shares,
)
from services.legacy_status_mapper import LegacyStatusMapper
from services.settlement_service import SettlementService
from services.user_directory import Actor
from utils.atomic_transactions import lock_job
from utils.datetime_helpers import get_naive_utc_now, isoformat_or_none
from utils.decimal_precision import FinancialValidation, MonetaryDecimal
from utils.exception_handler import (
    AuthorizationError, NotFound, ServiceError, StateConflict, ValidationError,
)
from utils.job_state_validator import JobStateValidator

logger = logging.getLogger(__name__)


class FinalizeResult(NamedTuple):
    """Outcome of one finalize attempt"""
    job_id: int
    outcome: str  # completed | disputed | not_eligible | error
    detail: str = ""

    @property
    def finalized(self) -> bool:
        return self.outcome == "completed"


def _parse_mode(value) -> ExecutionMode:
    if isinstance(value, ExecutionMode):
        return value
    try:
        return ExecutionMode(str(value).strip().upper())
    except ValueError:
        raise ValidationError(f"Unknown execution mode '{value}'")


def _parse_status(value) -> JobStatus:
    if isinstance(value, JobStatus):
        return value
    status = LegacyStatusMapper.normalize_job_status(value)
    if status is None:
        raise ValidationError(f"Unknown job status '{value}'")
    return status


def _validate_target(value) -> Decimal:
    return FinancialValidation.validate_positive_amount(value, "targetAmount", max_amount=Config.MAX_JOB_TARGET)


def _validate_title(value) -> str:
    title = (value or "").strip() if isinstance(value, str) else ""
    if not title:
        raise ValidationError("title is required")
    if len(title) > 200:
        raise ValidationError("title cannot exceed 200 characters")
    return title


class JobLifecycleService:
    """Job state machine and its money side effects"""

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------

    @classmethod
    def create_job(
        cls,
        session: Session,
        actor: Actor,
        title: str,
        target_amount,
        description: str = "",
        location: str = "",
        execution_mode=ExecutionMode.WORKER_EXECUTION,
        is_private_residential_property: bool = False,
    ) -> Job:
        mode = _parse_mode(execution_mode)
        job = Job(
            title=_validate_title(title),
            description=description or "",
            location=location or "",
            is_private_residential_property=bool(is_private_residential_property),
            target_amount=_validate_target(target_amount),
            collected_amount=MonetaryDecimal.ZERO,
            execution_mode=mode.value,
            status=JobStatus.FUNDING_OPEN.value,
            platform_fee_percent=fee_percent_for_mode(mode),
            platform_fee_amount=MonetaryDecimal.ZERO,
            wallet_balance=MonetaryDecimal.ZERO,
            funds_frozen=False,
            leader_id=actor.user_id,
            job_metadata={},
        )
        session.add(job)
        session.flush()

        logger.info(f"🆕 JOB_CREATED: job {job.id} '{job.title}' target {job.target_amount} {mode.value} by {actor.user_id}")
        return job

    @classmethod
    def _review_due(cls, job: Job, now: Optional[datetime] = None) -> bool:
        now = now or get_naive_utc_now()
        return (
            job.status == JobStatus.UNDER_REVIEW.value
            and job.review_deadline is not None
            and job.review_deadline <= now
        )

    @classmethod
    def get_job(cls, session: Session, job_id: int, check_deadline: bool = True) -> Job:
        """Load a job, first finalizing it if its review window has lapsed"""
        job = session.get(Job, job_id)
        if job is None:
            raise NotFound(f"Job {job_id} not found")
        if check_deadline and cls._review_due(job):
            cls.finalize_in_own_transaction(job.id)
            session.refresh(job)
        return job

    @classmethod
    def list_jobs(
        cls,
        session: Session,
        status: Optional[str] = None,
        leader_id: Optional[str] = None,
        contributor_id: Optional[str] = None,
        worker_id: Optional[str] = None,
    ) -> List[Job]:
        stmt = select(Job).order_by(Job.created_at.desc(), Job.id.desc())
        if status:
            stmt = stmt.where(Job.status == _parse_status(status).value)
        if leader_id:
            stmt = stmt.where(Job.leader_id == leader_id)
        if worker_id:
            stmt = stmt.where(Job.selected_worker_id == worker_id)
        if contributor_id:
            stmt = stmt.where(
                exists().where(Contribution.job_id == Job.id, Contribution.user_id == contributor_id)
            )
        jobs = list(session.execute(stmt).scalars())

        due = [job for job in jobs if cls._review_due(job)]
        for job in due:
            cls.finalize_in_own_transaction(job.id)
            session.refresh(job)
        if due and status:
            jobs = [job for job in jobs if job.status == _parse_status(status).value]
        return jobs

    @classmethod
    def has_proof(cls, session: Session, job_id: int) -> bool:
        return session.execute(select(JobProof.id).where(JobProof.job_id == job_id)).first() is not None

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    @classmethod
    def _require_leader_or_admin(cls, job: Job, actor: Actor, action: str) -> None:
        if not actor.is_admin and job.leader_id != actor.user_id:
            raise AuthorizationError(f"Only the job leader or an admin can {action}")

    @classmethod
    def update_job(
        cls,
        session: Session,
        actor: Actor,
        job_id: int,
        title: Optional[str] = None,
        description: Optional[str] = None,
        location: Optional[str] = None,
        target_amount=None,
        is_private_residential_property: Optional[bool] = None,
        execution_mode=None,
        status=None,
        worker_submission_message: Optional[str] = None,
    ) -> Job:
        """Apply field edits, an execution-mode change and/or a status change, in that order"""
        job = lock_job(session, job_id)

        edits = {
            "title": title,
            "description": description,
            "location": location,
            "target_amount": target_amount,
            "is_private_residential_property": is_private_residential_property,
        }
        edits = {field: value for field, value in edits.items() if value is not None}
        if edits:
            cls._apply_edits(session, job, actor, edits)

        if execution_mode is not None:
            cls._change_execution_mode(job, actor, _parse_mode(execution_mode))

        if status is not None:
            cls._change_status(session, job, actor, _parse_status(status), worker_submission_message)

        session.flush()
        return job

    @classmethod
    def _apply_edits(cls, session: Session, job: Job, actor: Actor, edits: dict) -> None:
        cls._require_leader_or_admin(job, actor, "edit this job")
        if job.selected_worker_id is not None or not JobStateValidator.is_editable_state(job.status):
            raise StateConflict(f"Job can no longer be edited (status {job.status})")

        if "title" in edits:
            job.title = _validate_title(edits["title"])
        if "description" in edits:
            job.description = edits["description"]
        if "location" in edits:
            job.location = edits["location"]
        if "is_private_residential_property" in edits:
            job.is_private_residential_property = bool(edits["is_private_residential_property"])
        if "target_amount" in edits:
            target = _validate_target(edits["target_amount"])
            if job.status != JobStatus.FUNDING_OPEN.value and target > job.collected_amount:
                raise StateConflict(
                    f"Funding has closed at {job.collected_amount:.2f}; the target cannot be raised above it"
                )
            job.target_amount = target

        logger.info(f"✏️ JOB_EDITED: job {job.id} fields {sorted(edits)} by {actor.user_id}")
        cls.advance_if_funded(session, job)

    @classmethod
    def _change_execution_mode(cls, job: Job, actor: Actor, mode: ExecutionMode) -> None:
        cls._require_leader_or_admin(job, actor, "change the execution mode")
        if job.execution_mode == mode.value:
            return
        if job.status != JobStatus.FUNDING_OPEN.value:
            raise StateConflict("Execution mode can only be changed while funding is open")

        job.execution_mode = mode.value
        job.platform_fee_percent = fee_percent_for_mode(mode)
        ContributionAccounting.recompute_job_totals(job)
        logger.info(
            f"🔀 EXECUTION_MODE_CHANGED: job {job.id} -> {mode.value} "
            f"(fee {job.platform_fee_percent}% = {job.platform_fee_amount}, pool {job.wallet_balance})"
        )

    @classmethod
    def _change_status(cls, session: Session, job: Job, actor: Actor, target: JobStatus,
                       submission_message: Optional[str]) -> None:
        if job.status == target.value and target != JobStatus.UNDER_REVIEW:
            return
        if JobStateValidator.is_terminal_state(job.status):
            raise StateConflict(f"Job is already {job.status}")

        mode = ExecutionMode(job.execution_mode)

        if target == JobStatus.FUNDING_COMPLETE:
            cls._require_leader_or_admin(job, actor, "close funding")
            if job.collected_amount < job.target_amount:
                raise StateConflict(
                    f"Target not reached: collected {job.collected_amount:.2f} of {job.target_amount:.2f}"
                )
            JobStateValidator.validate_and_transition(job, target)

        elif target == JobStatus.IN_PROGRESS:
            if mode == ExecutionMode.WORKER_EXECUTION:
                if actor.user_id != job.selected_worker_id:
                    raise AuthorizationError("Only the selected worker can start this job")
                JobStateValidator.validate_and_transition(job, target)
            else:
                cls._require_leader_or_admin(job, actor, "start this job")
                if job.collected_amount < job.target_amount:
                    raise StateConflict("Job cannot start before it is fully funded")
                JobStateValidator.validate_and_transition(job, target)
                cls._record_refund_estimate(session, job)

        elif target == JobStatus.AWAITING_VERIFICATION:
            cls._submit_for_verification(session, job, actor, mode, submission_message)

        elif target == JobStatus.UNDER_REVIEW:
            cls.start_review(session, job, actor)

        else:
            raise StateConflict(f"Status {target.value} is set by review finalization or dispute decisions")

    @classmethod
    def _submit_for_verification(cls, session: Session, job: Job, actor: Actor, mode: ExecutionMode,
                                 submission_message: Optional[str]) -> None:
        if mode == ExecutionMode.WORKER_EXECUTION:
            if actor.user_id != job.selected_worker_id:
                raise AuthorizationError("Only the selected worker can submit this job for verification")
        else:
            cls._require_leader_or_admin(job, actor, "submit this job for verification")

        if submission_message is not None and len(submission_message) > Config.MAX_SUBMISSION_NOTE_LENGTH:
            raise ValidationError(
                f"workerSubmissionMessage cannot exceed {Config.MAX_SUBMISSION_NOTE_LENGTH} characters"
            )

        proof = session.execute(select(JobProof).where(JobProof.job_id == job.id)).scalar_one_or_none()
        if proof is None and mode == ExecutionMode.WORKER_EXECUTION:
            raise StateConflict("Upload the completion proof before submitting for verification")

        JobStateValidator.validate_and_transition(job, JobStatus.AWAITING_VERIFICATION)

        if submission_message and proof is not None:
            proof.proof_metadata = {
                **(proof.proof_metadata or {}),
                "workerSubmission": {
                    "message": submission_message,
                    "submittedById": actor.user_id,
                    "submittedAt": isoformat_or_none(get_naive_utc_now()),
                },
            }

    @classmethod
    def advance_if_funded(cls, session: Session, job: Job) -> bool:
        """Move a fully funded FUNDING_OPEN job to its next state; True if it moved"""
        if job.status != JobStatus.FUNDING_OPEN.value or job.collected_amount < job.target_amount:
            return False

        if job.execution_mode == ExecutionMode.LEADER_EXECUTION.value:
            JobStateValidator.validate_and_transition(job, JobStatus.IN_PROGRESS)
            cls._record_refund_estimate(session, job)
        else:
            JobStateValidator.validate_and_transition(job, JobStatus.FUNDING_COMPLETE)

        logger.info(f"🎯 FUNDING_REACHED: job {job.id} collected {job.collected_amount} >= target {job.target_amount}")
        return True

    @classmethod
    def _record_refund_estimate(cls, session: Session, job: Job) -> None:
        """Snapshot the current refund ratio for a leader-executed job; no wallet movement"""
        total_expenses = ContributionAccounting.total_expenses(session, job.id)
        remaining = MonetaryDecimal.round2(job.wallet_balance - total_expenses)
        totals = ContributionAccounting.contributor_totals(session, job.id)
        estimates = proportional_shares(totals, remaining, job.collected_amount)
        job.job_metadata = {
            **(job.job_metadata or {}),
            "refundEstimate": {
                "ratio": str(MonetaryDecimal.divide_precise(max(remaining, Decimal("0")), job.collected_amount)),
                "remainingBalance": MonetaryDecimal.format_amount(max(remaining, Decimal("0"))),
                "estimates": {user_id: MonetaryDecimal.format_amount(v) for user_id, v in estimates.items()},
                "computedAt": isoformat_or_none(get_naive_utc_now()),
            },
        }

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    @classmethod
    def review_window(cls, execution_mode) -> timedelta:
        if _parse_mode(execution_mode) == ExecutionMode.LEADER_EXECUTION:
            return timedelta(days=Config.REVIEW_WINDOW_LEADER_DAYS)
        return timedelta(hours=Config.REVIEW_WINDOW_WORKER_HOURS)

    @classmethod
    def start_review(cls, session: Session, job: Job, actor: Actor, now: Optional[datetime] = None) -> Job:
        """Open the review window; leader-executed jobs stage contributor refunds here"""
        cls._require_leader_or_admin(job, actor, "start the review")

        if job.status == JobStatus.UNDER_REVIEW.value:
            # Already reviewing; restaging would double-credit frozen balances
            return job

        mode = ExecutionMode(job.execution_mode)
        startable = {JobStatus.AWAITING_VERIFICATION.value}
        if mode == ExecutionMode.LEADER_EXECUTION:
            startable.add(JobStatus.IN_PROGRESS.value)
        if job.status not in startable:
            # DISPUTED jobs return to review only through an admin dispute decision
            raise StateConflict(f"Review cannot start from status {job.status}")
        if mode == ExecutionMode.WORKER_EXECUTION and not cls.has_proof(session, job.id):
            raise StateConflict("Completion proof is required before review")

        JobStateValidator.validate_and_transition(job, JobStatus.UNDER_REVIEW)
        now = now or get_naive_utc_now()
        job.review_deadline = now + cls.review_window(mode)

        if mode == ExecutionMode.LEADER_EXECUTION:
            SettlementService.stage_leader_refunds(session, job)

        session.flush()
        logger.info(f"🔍 REVIEW_STARTED: job {job.id} deadline {job.review_deadline.isoformat()} ({mode.value})")
        return job

    @classmethod
    def finalize_review_if_eligible(cls, session: Session, job_id: int,
                                    now: Optional[datetime] = None) -> FinalizeResult:
        """
        Settle a job whose review window has lapsed without an open dispute.

        Safe to call repeatedly and concurrently. Exceptions propagate so the
        caller's transaction rolls back and the status stays UNDER_REVIEW.
        """
        now = now or get_naive_utc_now()
        job = session.execute(
            select(Job).where(Job.id == job_id).execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if job is None:
            raise NotFound(f"Job {job_id} not found")
        if not cls._review_due(job, now):
            return FinalizeResult(job_id, "not_eligible", f"status {job.status}")

        if job.execution_mode == ExecutionMode.WORKER_EXECUTION.value:
            # Fail before the status flips if settlement cannot run
            SettlementService.accepted_application(session, job)

        open_dispute = exists().where(
            Dispute.job_id == job_id,
            Dispute.status == DisputeStatus.OPEN.value,
        )

        completed = session.execute(
            update(Job)
            .where(
                Job.id == job_id,
                Job.status == JobStatus.UNDER_REVIEW.value,
                Job.review_deadline <= now,
                ~open_dispute,
            )
            .values(status=JobStatus.COMPLETED.value)
            .execution_options(synchronize_session=False)
        )

        if completed.rowcount != 1:
            disputed = session.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.UNDER_REVIEW.value, open_dispute)
                .values(
                    status=JobStatus.DISPUTED.value,
                    funds_frozen=job.execution_mode == ExecutionMode.LEADER_EXECUTION.value,
                )
                .execution_options(synchronize_session=False)
            )
            if disputed.rowcount == 1:
                session.refresh(job)
                logger.info(f"⚖️ FINALIZE_BLOCKED: job {job_id} has an open dispute -> DISPUTED")
                return FinalizeResult(job_id, "disputed", "open dispute")
            logger.debug(f"FINALIZE_SKIPPED: job {job_id} already settled by a concurrent caller")
            return FinalizeResult(job_id, "not_eligible", "already finalized")

        session.refresh(job)
        if job.execution_mode == ExecutionMode.WORKER_EXECUTION.value:
            payout = SettlementService.pay_worker(session, job)
            detail = f"worker {payout.worker_id} paid {payout.payout:.2f}"
        else:
            settled = SettlementService.settle_leader_job(session, job)
            detail = f"refunded {settled['totalRefunded']:.2f}, reimbursed {settled['totalSpent']:.2f}"

        session.flush()
        logger.info(f"✅ JOB_FINALIZED: job {job_id} -> COMPLETED ({detail})")
        return FinalizeResult(job_id, "completed", detail)

    @classmethod
    def finalize_in_own_transaction(cls, job_id: int, now: Optional[datetime] = None) -> FinalizeResult:
        """Run finalize in a dedicated transaction; failures are logged and leave the job untouched"""
        try:
            with managed_session() as session:
                return cls.finalize_review_if_eligible(session, job_id, now)
        except ServiceError as e:
            logger.error(f"❌ FINALIZE_ABORTED: job {job_id}: {e.message}")
            return FinalizeResult(job_id, "error", e.message)
        except SQLAlchemyError as e:
            logger.error(f"❌ FINALIZE_ABORTED: job {job_id}: database error {e}")
            return FinalizeResult(job_id, "error", str(e))
