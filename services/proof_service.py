"""
Proof Service
Completion evidence (one proof per job) and the pre-submission draft.
"""

import logging
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import ExecutionMode, Job, JobProof, JobProofDraft, JobStatus
from services.user_directory import Actor
from utils.atomic_transactions import lock_job
from utils.datetime_helpers import parse_client_datetime
from utils.exception_handler import AuthorizationError, NotFound, StateConflict

logger = logging.getLogger(__name__)

PHOTO_FIELDS = ("before_photo_url", "after_photo_url", "disposal_photo_url")


class ProofService:
    """Proof upload and draft handling"""

    @classmethod
    def _require_executor(cls, job: Job, actor: Actor) -> None:
        if job.execution_mode == ExecutionMode.WORKER_EXECUTION.value:
            allowed = actor.user_id == job.selected_worker_id
        else:
            allowed = actor.user_id == job.leader_id or actor.is_admin
        if not allowed:
            raise AuthorizationError("Only the person executing this job can submit proof")

    @classmethod
    def create_proof(
        cls,
        session: Session,
        actor: Actor,
        job_id: int,
        before_photo_url: Optional[str] = None,
        after_photo_url: Optional[str] = None,
        disposal_photo_url: Optional[str] = None,
        captured_at=None,
        metadata: Optional[dict] = None,
    ) -> JobProof:
        job = lock_job(session, job_id)
        cls._require_executor(job, actor)

        if job.status != JobStatus.IN_PROGRESS.value:
            raise StateConflict(f"Proof can only be uploaded while the job is IN_PROGRESS (status {job.status})")
        if cls.get_proof(session, job.id) is not None:
            raise StateConflict("Proof has already been submitted for this job")

        proof = JobProof(
            job_id=job.id,
            submitted_by_id=actor.user_id,
            before_photo_url=before_photo_url,
            after_photo_url=after_photo_url,
            disposal_photo_url=disposal_photo_url,
            captured_at=parse_client_datetime(captured_at),
            proof_metadata=dict(metadata or {}),
        )
        session.add(proof)
        try:
            session.flush()
        except IntegrityError:
            raise StateConflict("Proof has already been submitted for this job")

        session.execute(delete(JobProofDraft).where(JobProofDraft.job_id == job.id))
        logger.info(f"📸 PROOF_SUBMITTED: job {job.id} by {actor.user_id}")
        return proof

    @classmethod
    def get_proof(cls, session: Session, job_id: int) -> Optional[JobProof]:
        return session.execute(select(JobProof).where(JobProof.job_id == job_id)).scalar_one_or_none()

    @classmethod
    def save_draft(cls, session: Session, actor: Actor, job_id: int, **fields) -> JobProofDraft:
        """Upsert the job's draft; fields that are absent or None keep their previous value"""
        job = lock_job(session, job_id)
        cls._require_executor(job, actor)
        if cls.get_proof(session, job.id) is not None:
            raise StateConflict("Proof has already been submitted for this job")

        draft = session.execute(
            select(JobProofDraft).where(JobProofDraft.job_id == job.id)
        ).scalar_one_or_none()
        if draft is None:
            draft = JobProofDraft(job_id=job.id, author_id=actor.user_id, draft_metadata={})
            session.add(draft)

        for field in PHOTO_FIELDS:
            if fields.get(field) is not None:
                setattr(draft, field, fields[field])
        if fields.get("captured_at") is not None:
            draft.captured_at = parse_client_datetime(fields["captured_at"])
        if fields.get("metadata") is not None:
            draft.draft_metadata = {**(draft.draft_metadata or {}), **fields["metadata"]}
        draft.author_id = actor.user_id

        session.flush()
        logger.info(f"📝 PROOF_DRAFT_SAVED: job {job.id} by {actor.user_id}")
        return draft

    @classmethod
    def get_draft(cls, session: Session, actor: Actor, job_id: int) -> JobProofDraft:
        job = session.get(Job, job_id)
        if job is None:
            raise NotFound(f"Job {job_id} not found")
        cls._require_executor(job, actor)
        draft = session.execute(
            select(JobProofDraft).where(JobProofDraft.job_id == job_id)
        ).scalar_one_or_none()
        if draft is None:
            raise NotFound(f"No proof draft for job {job_id}")
        return draft
