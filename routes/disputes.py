"""
Dispute Routes
Raising disputes, party responses and the admin decision
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends

from database import managed_session
from routes.dependencies import RequestAuth, int_field, json_body, request_auth, required
from routes.serializers import dispute_to_dict, job_to_dict
from services.dispute_resolution import DisputeResolutionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/disputes", tags=["disputes"])


def _render(session, dispute) -> dict:
    return dispute_to_dict(dispute, DisputeResolutionService.get_details(session, dispute))


@router.post("", status_code=201)
def raise_dispute(body: dict = Depends(json_body), auth: RequestAuth = Depends(request_auth)):
    with managed_session() as session:
        actor = auth.actor(session)
        dispute = DisputeResolutionService.raise_dispute(
            session,
            actor,
            int_field(body, "jobId"),
            required(body, "reason"),
            evidence_photo_url=body.get("evidencePhotoUrl"),
        )
        return _render(session, dispute)


@router.get("")
def list_disputes(
    jobId: Optional[int] = None,
    status: Optional[str] = None,
    auth: RequestAuth = Depends(request_auth),
):
    with managed_session() as session:
        actor = auth.actor(session)
        disputes = DisputeResolutionService.list_disputes(session, actor, job_id=jobId, status=status)
        return [_render(session, d) for d in disputes]


@router.post("/{dispute_id}/workerResponse")
def add_worker_response(dispute_id: int, body: dict = Depends(json_body),
                        auth: RequestAuth = Depends(request_auth)):
    with managed_session() as session:
        actor = auth.actor(session)
        dispute = DisputeResolutionService.add_worker_response(
            session, actor, dispute_id, required(body, "message"), photo_url=body.get("photoUrl")
        )
        return _render(session, dispute)


@router.post("/{dispute_id}/leaderClarification")
def add_leader_clarification(dispute_id: int, body: dict = Depends(json_body),
                             auth: RequestAuth = Depends(request_auth)):
    with managed_session() as session:
        actor = auth.actor(session)
        dispute = DisputeResolutionService.add_leader_clarification(
            session, actor, dispute_id, required(body, "message")
        )
        return _render(session, dispute)


@router.post("/{dispute_id}/adminDecision")
def decide_dispute(dispute_id: int, body: dict = Depends(json_body),
                   auth: RequestAuth = Depends(request_auth)):
    with managed_session() as session:
        actor = auth.actor(session)
        result = DisputeResolutionService.decide(
            session, actor, dispute_id, required(body, "action"), note=body.get("note")
        )
        return {
            "dispute": _render(session, result.dispute),
            "job": job_to_dict(result.job),
            "closedDisputeIds": result.closed_dispute_ids,
        }
