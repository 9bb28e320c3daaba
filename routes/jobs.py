"""
Job Routes
Job CRUD, lifecycle status changes, leader expenses and the job ledger
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends

from database import managed_session
from routes.dependencies import RequestAuth, json_body, optional_bool, request_auth, required
from routes.serializers import expense_to_dict, job_to_dict, ledger_to_dict
from services.contribution_accounting import ContributionAccounting
from services.job_lifecycle import JobLifecycleService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


@router.get("")
def list_jobs(
    status: Optional[str] = None,
    leaderId: Optional[str] = None,
    contributorId: Optional[str] = None,
    workerId: Optional[str] = None,
):
    """List jobs, settling any whose review window has lapsed"""
    with managed_session() as session:
        jobs = JobLifecycleService.list_jobs(
            session,
            status=status,
            leader_id=leaderId,
            contributor_id=contributorId,
            worker_id=workerId,
        )
        return [job_to_dict(job) for job in jobs]


@router.post("", status_code=201)
def create_job(body: dict = Depends(json_body), auth: RequestAuth = Depends(request_auth)):
    with managed_session() as session:
        actor = auth.actor(session)
        job = JobLifecycleService.create_job(
            session,
            actor,
            title=required(body, "title"),
            target_amount=required(body, "targetAmount"),
            description=body.get("description") or "",
            location=body.get("location") or "",
            execution_mode=body.get("executionMode") or "WORKER_EXECUTION",
            is_private_residential_property=bool(optional_bool(body, "isPrivateResidentialProperty")),
        )
        return job_to_dict(job)


@router.get("/{job_id}")
def get_job(job_id: int):
    with managed_session() as session:
        job = JobLifecycleService.get_job(session, job_id)
        return job_to_dict(job, has_proof=JobLifecycleService.has_proof(session, job.id))


@router.patch("/{job_id}")
def update_job(job_id: int, body: dict = Depends(json_body), auth: RequestAuth = Depends(request_auth)):
    """Field edits, execution-mode change and/or status change"""
    with managed_session() as session:
        actor = auth.actor(session)
        job = JobLifecycleService.update_job(
            session,
            actor,
            job_id,
            title=body.get("title"),
            description=body.get("description"),
            location=body.get("location"),
            target_amount=body.get("targetAmount"),
            is_private_residential_property=optional_bool(body, "isPrivateResidentialProperty"),
            execution_mode=body.get("executionMode"),
            status=body.get("status"),
            worker_submission_message=body.get("workerSubmissionMessage"),
        )
        return job_to_dict(job, has_proof=JobLifecycleService.has_proof(session, job.id))


@router.post("/{job_id}/expenses", status_code=201)
def create_expense(job_id: int, body: dict = Depends(json_body), auth: RequestAuth = Depends(request_auth)):
    with managed_session() as session:
        actor = auth.actor(session)
        expense = ContributionAccounting.create_job_expense_transaction(
            session,
            job_id,
            actor.user_id,
            amount=required(body, "amount"),
            description=required(body, "description"),
            proof_url=body.get("proofUrl"),
        )
        return expense_to_dict(expense)


@router.get("/{job_id}/ledger")
def get_ledger(job_id: int):
    with managed_session() as session:
        return ledger_to_dict(ContributionAccounting.get_ledger(session, job_id))

