"""
Dispute Resolution Service
Contributor disputes raised inside a job's review window, the parties' responses,
and the admin decision that resumes, pays out or cancels the job.

Dispute details live on the dispute row and are mirrored into the job proof's
metadata under disputeDetails[<dispute id>]. Reads merge the two, preferring the
dispute row field by field.
"""

import copy
import logging
from typing import List, NamedTuple, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from models import (
    Dispute, DisputeAction, DisputeStatus, ExecutionMode, Job, JobProof, JobStatus,
)
from services.contribution_accounting import ContributionAccounting
from services.settlement_service import SettlementService
from services.user_directory import Actor
from utils.atomic_transactions import lock_job
from utils.datetime_helpers import get_naive_utc_now, isoformat_or_none
from utils.exception_handler import (
    AuthorizationError, DuplicateDispute, NotFound, StateConflict, ValidationError,
)
from utils.job_state_validator import JobStateValidator

logger = logging.getLogger(__name__)


class ResolutionResult(NamedTuple):
    """Result of an admin decision"""

    dispute: Dispute
    job: Job
    action: DisputeAction
    closed_dispute_ids: List[int]


def empty_details(evidence_photo_url: Optional[str] = None) -> dict:
    return {
        "raisedEvidencePhotoUrl": evidence_photo_url,
        "workerResponses": [],
        "leaderClarifications": [],
        "adminDecision": None,
    }


def merge_dispute_details(primary: Optional[dict], mirror: Optional[dict]) -> dict:
    """Field-wise merge: the dedicated record wins wherever it has a value"""
    merged = empty_details()
    for source in (mirror or {}, primary or {}):
        for key, value in source.items():
            if value is None or value == [] or value == {}:
                merged.setdefault(key, value)
                continue
            merged[key] = value
    return merged


class DisputeResolutionService:
    """Raise, respond to and decide disputes"""

    @classmethod
    def _get_dispute(cls, session: Session, dispute_id: int) -> Dispute:
        dispute = session.get(Dispute, dispute_id)
        if dispute is None:
            raise NotFound(f"Dispute {dispute_id} not found")
        return dispute

    @classmethod
    def _proof_for(cls, session: Session, job_id: int) -> Optional[JobProof]:
        return session.execute(select(JobProof).where(JobProof.job_id == job_id)).scalar_one_or_none()

    @classmethod
    def _store_details(cls, session: Session, dispute: Dispute, details: dict) -> None:
        """Write details to the dispute row and mirror them into the proof metadata"""
        dispute.details = copy.deepcopy(details)

        proof = cls._proof_for(session, dispute.job_id)
        if proof is None:
            logger.debug(f"Dispute {dispute.id}: job {dispute.job_id} has no proof, mirror skipped")
            return
        metadata = dict(proof.proof_metadata or {})
        mirror = dict(metadata.get("disputeDetails") or {})
        mirror[str(dispute.id)] = copy.deepcopy(details)
        metadata["disputeDetails"] = mirror
        proof.proof_metadata = metadata

    @classmethod
    def get_details(cls, session: Session, dispute: Dispute) -> dict:
        proof = cls._proof_for(session, dispute.job_id)
        mirror = None
        if proof is not None:
            mirror = ((proof.proof_metadata or {}).get("disputeDetails") or {}).get(str(dispute.id))
        return merge_dispute_details(dispute.details, mirror)

    @classmethod
    def raise_dispute(cls, session: Session, actor: Actor, job_id: int, reason: str,
                      evidence_photo_url: Optional[str] = None,
                      now=None) -> Dispute:
        if not reason or not str(reason).strip():
            raise ValidationError("reason is required")

        job = lock_job(session, job_id)
        now = now or get_naive_utc_now()

        if job.status != JobStatus.UNDER_REVIEW.value or job.review_deadline is None or now >= job.review_deadline:
            raise StateConflict("Disputes can only be raised while the job is in its review window")
        if not ContributionAccounting.is_funded_contributor(session, job.id, actor.user_id):
            raise AuthorizationError("Only contributors to this job can raise a dispute")

        existing = session.execute(
            select(Dispute.id).where(Dispute.job_id == job.id, Dispute.raised_by_id == actor.user_id)
        ).first()
        if existing is not None:
            raise DuplicateDispute("You have already raised a dispute for this job")

        dispute = Dispute(
            job_id=job.id,
            raised_by_id=actor.user_id,
            reason=str(reason).strip(),
            status=DisputeStatus.OPEN.value,
        )
        session.add(dispute)
        session.flush()
        cls._store_details(session, dispute, empty_details(evidence_photo_url))

        JobStateValidator.validate_and_transition(job, JobStatus.DISPUTED)
        if job.execution_mode == ExecutionMode.LEADER_EXECUTION.value:
            job.funds_frozen = True
        session.flush()

        logger.info(f"⚖️ DISPUTE_RAISED: dispute {dispute.id} on job {job.id} by {actor.user_id}")
        return dispute

    @classmethod
    def _open_dispute_for_update(cls, session: Session, dispute_id: int):
        dispute = cls._get_dispute(session, dispute_id)
        job = lock_job(session, dispute.job_id)
        session.refresh(dispute)
        if dispute.status != DisputeStatus.OPEN.value:
            raise StateConflict(f"Dispute is not open (status {dispute.status})")
        return dispute, job

    @classmethod
    def add_worker_response(cls, session: Session, actor: Actor, dispute_id: int, message: str,
                            photo_url: Optional[str] = None) -> Dispute:
        if not message or not str(message).strip():
            raise ValidationError("message is required")
        dispute, job = cls._open_dispute_for_update(session, dispute_id)
        if job.selected_worker_id is None or actor.user_id != job.selected_worker_id:
            raise AuthorizationError("Only the selected worker can respond to this dispute")

        details = cls.get_details(session, dispute)
        details["workerResponses"] = list(details.get("workerResponses") or []) + [{
            "message": str(message).strip(),
            "photoUrl": photo_url,
            "submittedAt": isoformat_or_none(get_naive_utc_now()),
        }]
        cls._store_details(session, dispute, details)
        session.flush()

        logger.info(f"💬 DISPUTE_WORKER_RESPONSE: dispute {dispute.id} by {actor.user_id}")
        return dispute

    @classmethod
    def add_leader_clarification(cls, session: Session, actor: Actor, dispute_id: int, message: str) -> Dispute:
        if not message or not str(message).strip():
            raise ValidationError("message is required")
        dispute, job = cls._open_dispute_for_update(session, dispute_id)
        if actor.user_id != job.leader_id:
            raise AuthorizationError("Only the job leader can clarify this dispute")

        details = cls.get_details(session, dispute)
        details["leaderClarifications"] = list(details.get("leaderClarifications") or []) + [{
            "message": str(message).strip(),
            "submittedAt": isoformat_or_none(get_naive_utc_now()),
        }]
        cls._store_details(session, dispute, details)
        session.flush()

        logger.info(f"💬 DISPUTE_LEADER_CLARIFICATION: dispute {dispute.id} by {actor.user_id}")
        return dispute

    @classmethod
    def decide(cls, session: Session, actor: Actor, dispute_id: int, action,
               note: Optional[str] = None) -> ResolutionResult:
        """
        Admin decision, terminal for the dispute and for every other open dispute on the job.

        APPROVE_WORK: leader jobs resume review with funds unfrozen; worker jobs pay the worker.
        REJECT_WORK: contributions are refunded and the job is cancelled.
        """
        if not actor.is_admin:
            raise AuthorizationError("Only admins can decide disputes")
        try:
            action = action if isinstance(action, DisputeAction) else DisputeAction(str(action).upper())
        except ValueError:
            raise ValidationError(f"Unknown dispute action '{action}'")

        dispute, job = cls._open_dispute_for_update(session, dispute_id)
        if job.status not in (JobStatus.UNDER_REVIEW.value, JobStatus.DISPUTED.value):
            raise StateConflict(f"Job is not under review or disputed (status {job.status})")

        now = get_naive_utc_now()
        new_status = DisputeStatus.REJECTED if action == DisputeAction.APPROVE_WORK else DisputeStatus.RESOLVED
        decision = {
            "action": action.value,
            "decidedById": actor.user_id,
            "decidedAt": isoformat_or_none(now),
            "note": note,
        }

        siblings = list(session.execute(
            select(Dispute).where(
                Dispute.job_id == job.id,
                Dispute.status == DisputeStatus.OPEN.value,
            )
        ).scalars())
        closed = []
        for open_dispute in siblings:
            details = cls.get_details(session, open_dispute)
            details["adminDecision"] = dict(decision)
            open_dispute.status = new_status.value
            open_dispute.resolved_at = now
            cls._store_details(session, open_dispute, details)
            closed.append(open_dispute.id)

        mode = ExecutionMode(job.execution_mode)
        if action == DisputeAction.APPROVE_WORK:
            if mode == ExecutionMode.LEADER_EXECUTION:
                JobStateValidator.validate_and_transition(job, JobStatus.UNDER_REVIEW)
                job.funds_frozen = False
            else:
                JobStateValidator.validate_and_transition(job, JobStatus.COMPLETED)
                SettlementService.pay_worker(session, job)
        else:
            JobStateValidator.validate_and_transition(job, JobStatus.CANCELLED)
            SettlementService.refund_cancelled_job(session, job)
            if mode == ExecutionMode.LEADER_EXECUTION:
                job.funds_frozen = True

        session.flush()
        logger.info(
            f"🏛️ DISPUTE_DECIDED: dispute {dispute.id} {action.value} by admin {actor.user_id}; "
            f"job {job.id} -> {job.status}; closed {closed}"
        )
        return ResolutionResult(dispute, job, action, closed)

    @classmethod
    def list_disputes(cls, session: Session, actor: Actor, job_id: Optional[int] = None,
                      status: Optional[str] = None) -> List[Dispute]:
        stmt = select(Dispute).order_by(Dispute.created_at.desc(), Dispute.id.desc())
        if job_id is not None:
            stmt = stmt.where(Dispute.job_id == job_id)
        if status:
            try:
                stmt = stmt.where(Dispute.status == DisputeStatus(status.upper()).value)
            except ValueError:
                raise ValidationError(f"Unknown dispute status '{status}'")
        if not actor.is_admin:
            involved_jobs = select(Job.id).where(
                or_(Job.leader_id == actor.user_id, Job.selected_worker_id == actor.user_id)
            )
            stmt = stmt.where(or_(Dispute.raised_by_id == actor.user_id, Dispute.job_id.in_(involved_jobs)))
        return list(session.execute(stmt).scalars())
