"""
Proof Routes
Completion proof upload and the per-job draft
"""

import logging

from fastapi import APIRouter, Depends

from database import managed_session
from routes.dependencies import RequestAuth, int_field, json_body, request_auth
from routes.serializers import draft_to_dict, proof_to_dict
from services.proof_service import ProofService
from utils.exception_handler import NotFound, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/proofs", tags=["proofs"])


def _metadata(body: dict):
    metadata = body.get("metadata")
    if metadata is not None and not isinstance(metadata, dict):
        raise ValidationError("metadata must be an object")
    return metadata


@router.post("", status_code=201)
def create_proof(body: dict = Depends(json_body), auth: RequestAuth = Depends(request_auth)):
    with managed_session() as session:
        actor = auth.actor(session)
        proof = ProofService.create_proof(
            session,
            actor,
            int_field(body, "jobId"),
            before_photo_url=body.get("beforePhotoUrl"),
            after_photo_url=body.get("afterPhotoUrl"),
            disposal_photo_url=body.get("disposalPhotoUrl"),
            captured_at=body.get("capturedAt"),
            metadata=_metadata(body),
        )
        return proof_to_dict(proof)


@router.get("")
def get_proof(jobId: int):
    with managed_session() as session:
        proof = ProofService.get_proof(session, jobId)
        if proof is None:
            raise NotFound(f"No proof submitted for job {jobId}")
        return proof_to_dict(proof)


@router.post("/draft")
def save_draft(body: dict = Depends(json_body), auth: RequestAuth = Depends(request_auth)):
    with managed_session() as session:
        actor = auth.actor(session)
        draft = ProofService.save_draft(
            session,
            actor,
            int_field(body, "jobId"),
            before_photo_url=body.get("beforePhotoUrl"),
            after_photo_url=body.get("afterPhotoUrl"),
            disposal_photo_url=body.get("disposalPhotoUrl"),
            captured_at=body.get("capturedAt"),
            metadata=_metadata(body),
        )
        return draft_to_dict(draft)


@router.get("/draft")
def get_draft(jobId: int, auth: RequestAuth = Depends(request_auth)):
    with managed_session() as session:
        actor = auth.actor(session)
        return draft_to_dict(ProofService.get_draft(session, actor, jobId))
