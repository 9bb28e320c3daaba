"""
Contribution Routes
Gateway-funded contributions (payment already captured upstream) and contribution history
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends

from database import managed_session
from models import FundingSource
from routes.dependencies import RequestAuth, int_field, json_body, request_auth, required
from routes.serializers import contribution_to_dict
from services.contribution_accounting import ContributionAccounting
from utils.exception_handler import AuthorizationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/contributions", tags=["contributions"])


@router.post("", status_code=201)
def create_contribution(body: dict = Depends(json_body), auth: RequestAuth = Depends(request_auth)):
    with managed_session() as session:
        actor = auth.actor(session)
        contribution = ContributionAccounting.create_contribution(
            session,
            int_field(body, "jobId"),
            actor.user_id,
            required(body, "amount"),
            FundingSource.GATEWAY,
        )
        return contribution_to_dict(contribution)


@router.get("")
def list_contributions(
    userId: Optional[str] = None,
    jobId: Optional[int] = None,
    auth: RequestAuth = Depends(request_auth),
):
    """The caller's contributions; admins may ask for any user's"""
    with managed_session() as session:
        actor = auth.actor(session)
        user_id = userId or actor.user_id
        if user_id != actor.user_id and not actor.is_admin:
            raise AuthorizationError("You can only view your own contributions")
        contributions = ContributionAccounting.get_contributions(session, user_id=user_id, job_id=jobId)
        return [contribution_to_dict(c) for c in contributions]
