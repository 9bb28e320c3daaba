"""
Wallet Routes
Balances, top-ups, wallet-funded contributions, history and withdrawals
"""

import logging

from fastapi import APIRouter, Depends

from config import Config
from database import managed_session
from routes.dependencies import RequestAuth, int_field, json_body, request_auth, required
from routes.serializers import (
    contribution_to_dict, transaction_to_dict, wallet_to_dict, withdrawal_to_dict,
)
from services.contribution_accounting import ContributionAccounting
from services.user_directory import UserDirectory
from services.wallet_ledger import WalletLedger
from services.withdrawal_service import WithdrawalService
from utils.decimal_precision import FinancialValidation
from utils.exception_handler import ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/wallet", tags=["wallet"])


@router.get("")
def get_wallet(auth: RequestAuth = Depends(request_auth)):
    with managed_session() as session:
        actor = auth.actor(session)
        wallet = WalletLedger.get_or_create_wallet(session, actor.user_id)
        return wallet_to_dict(wallet, UserDirectory.get_user(session, actor.user_id))


@router.post("/addMoney")
def add_money(body: dict = Depends(json_body), auth: RequestAuth = Depends(request_auth)):
    """Credit a payment the gateway has already captured; reference makes retries safe"""
    amount = FinancialValidation.validate_positive_amount(
        required(body, "amount"), "amount", min_amount=Config.MIN_WALLET_TOPUP
    )
    with managed_session() as session:
        actor = auth.actor(session)
        wallet, tx = WalletLedger.add_money(session, actor.user_id, amount, external_ref=body.get("reference"))
        return {"wallet": wallet_to_dict(wallet), "transaction": transaction_to_dict(tx)}


@router.post("/contribute", status_code=201)
def contribute(body: dict = Depends(json_body), auth: RequestAuth = Depends(request_auth)):
    with managed_session() as session:
        actor = auth.actor(session)
        contribution = ContributionAccounting.contribute_from_wallet(
            session, int_field(body, "jobId"), actor.user_id, required(body, "amount")
        )
        wallet = WalletLedger.get_or_create_wallet(session, actor.user_id)
        return {"contribution": contribution_to_dict(contribution), "wallet": wallet_to_dict(wallet)}


@router.get("/transactions")
def list_transactions(limit: int = 100, auth: RequestAuth = Depends(request_auth)):
    with managed_session() as session:
        actor = auth.actor(session)
        return [transaction_to_dict(tx) for tx in WalletLedger.get_transactions(session, actor.user_id, limit)]


@router.post("/withdraw", status_code=201)
def withdraw(body: dict = Depends(json_body), auth: RequestAuth = Depends(request_auth)):
    with managed_session() as session:
        actor = auth.actor(session)
        request = WithdrawalService.request_withdrawal(
            session, actor, required(body, "amount"), body.get("bankAccount")
        )
        return withdrawal_to_dict(request)


@router.get("/withdrawals")
def list_withdrawals(all: bool = False, auth: RequestAuth = Depends(request_auth)):
    with managed_session() as session:
        actor = auth.actor(session)
        return [withdrawal_to_dict(w) for w in WithdrawalService.list_withdrawals(session, actor, all_users=all)]


@router.patch("/withdrawals/{withdrawal_id}")
def update_withdrawal(withdrawal_id: int, body: dict = Depends(json_body),
                      auth: RequestAuth = Depends(request_auth)):
    """Admin transition of a withdrawal request"""
    note = body.get("adminNote")
    if note is not None and not isinstance(note, str):
        raise ValidationError("adminNote must be a string")
    with managed_session() as session:
        actor = auth.actor(session)
        request = WithdrawalService.update_withdrawal_status(
            session,
            actor,
            withdrawal_id,
            required(body, "status"),
            admin_note=note,
            payout_reference=body.get("payoutReference"),
        )
        return withdrawal_to_dict(request)
