"""
Application Routes
Worker bids and their acceptance or rejection by the job leader
"""

import logging

from fastapi import APIRouter, Depends

from database import managed_session
from routes.dependencies import RequestAuth, int_field, json_body, request_auth, required
from routes.serializers import application_to_dict
from services.worker_selection import WorkerSelectionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["applications"])


@router.post("/applications", status_code=201)
def create_application(body: dict = Depends(json_body), auth: RequestAuth = Depends(request_auth)):
    with managed_session() as session:
        actor = auth.actor(session)
        application = WorkerSelectionService.create_application(
            session,
            actor,
            int_field(body, "jobId"),
            required(body, "bidAmount"),
            message=body.get("message"),
        )
        return application_to_dict(application)


@router.get("/applications")
def list_applications(jobId: int):
    with managed_session() as session:
        return [application_to_dict(a) for a in WorkerSelectionService.list_applications(session, jobId)]


@router.get("/jobs/{job_id}/applications")
def list_job_applications(job_id: int):
    with managed_session() as session:
        return [application_to_dict(a) for a in WorkerSelectionService.list_applications(session, job_id)]


@router.patch("/applications/{application_id}")
def update_application(application_id: int, body: dict = Depends(json_body),
                       auth: RequestAuth = Depends(request_auth)):
    with managed_session() as session:
        actor = auth.actor(session)
        application = WorkerSelectionService.update_application_status(
            session, actor, application_id, required(body, "status")
        )
        return application_to_dict(application)
