"""
Withdrawal Service
Bank withdrawals from a user's available balance. The amount is debited when the
request is created and credited back if an admin rejects it or the payout fails.
"""

import logging
from typing import Dict, List, Optional, Set

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import WalletTransactionType, WithdrawalRequest, WithdrawalStatus
from services.user_directory import Actor
from services.wallet_ledger import WalletLedger
from utils.datetime_helpers import get_naive_utc_now
from utils.decimal_precision import FinancialValidation
from utils.exception_handler import AuthorizationError, NotFound, StateConflict, ValidationError

logger = logging.getLogger(__name__)

REQUIRED_BANK_FIELDS = ("accountNumber", "ifsc", "accountHolderName")


class WithdrawalService:
    """Withdrawal requests and their admin-driven lifecycle"""

    VALID_TRANSITIONS: Dict[WithdrawalStatus, Set[WithdrawalStatus]] = {
        WithdrawalStatus.PENDING: {WithdrawalStatus.APPROVED, WithdrawalStatus.REJECTED},
        WithdrawalStatus.APPROVED: {WithdrawalStatus.PROCESSING, WithdrawalStatus.FAILED},
        WithdrawalStatus.PROCESSING: {WithdrawalStatus.PAID, WithdrawalStatus.FAILED},
        WithdrawalStatus.PAID: set(),
        WithdrawalStatus.FAILED: set(),
        WithdrawalStatus.REJECTED: set(),
    }

    # Terminal states that hand the money back to the user
    REFUNDING_STATES = {WithdrawalStatus.FAILED, WithdrawalStatus.REJECTED}

    @classmethod
    def _validate_bank_account(cls, bank_account) -> dict:
        if not isinstance(bank_account, dict):
            raise ValidationError("bankAccount is required")
        missing = [field for field in REQUIRED_BANK_FIELDS if not str(bank_account.get(field) or "").strip()]
        if missing:
            raise ValidationError(f"bankAccount is missing {', '.join(missing)}")
        return {field: str(bank_account[field]).strip() for field in REQUIRED_BANK_FIELDS}

    @classmethod
    def request_withdrawal(cls, session: Session, actor: Actor, amount, bank_account) -> WithdrawalRequest:
        amount = FinancialValidation.validate_positive_amount(amount, "amount")
        account = cls._validate_bank_account(bank_account)

        request = WithdrawalRequest(
            user_id=actor.user_id,
            amount=amount,
            status=WithdrawalStatus.PENDING.value,
            bank_account=account,
        )
        session.add(request)
        session.flush()

        WalletLedger.deduct_from_wallet(
            session, actor.user_id, amount,
            tx_type=WalletTransactionType.WITHDRAWAL,
            reference_id=f"withdrawal-{request.id}",
            description=f"Withdrawal to account ending {account['accountNumber'][-4:]}",
        )

        logger.info(f"🏦 WITHDRAWAL_REQUESTED: {request.id} user {actor.user_id} amount {amount}")
        return request

    @classmethod
    def list_withdrawals(cls, session: Session, actor: Actor, all_users: bool = False) -> List[WithdrawalRequest]:
        stmt = select(WithdrawalRequest).order_by(WithdrawalRequest.created_at.desc(), WithdrawalRequest.id.desc())
        if not (all_users and actor.is_admin):
            stmt = stmt.where(WithdrawalRequest.user_id == actor.user_id)
        return list(session.execute(stmt).scalars())

    @classmethod
    def update_withdrawal_status(cls, session: Session, actor: Actor, withdrawal_id: int, status,
                                 admin_note: Optional[str] = None,
                                 payout_reference: Optional[str] = None) -> WithdrawalRequest:
        if not actor.is_admin:
            raise AuthorizationError("Only admins can update withdrawals")
        try:
            target = status if isinstance(status, WithdrawalStatus) else WithdrawalStatus(str(status).upper())
        except ValueError:
            raise ValidationError(f"Unknown withdrawal status '{status}'")

        request = session.execute(
            select(WithdrawalRequest).where(WithdrawalRequest.id == withdrawal_id).with_for_update()
        ).scalar_one_or_none()
        if request is None:
            raise NotFound(f"Withdrawal {withdrawal_id} not found")

        current = WithdrawalStatus(request.status)
        if target not in cls.VALID_TRANSITIONS[current]:
            raise StateConflict(f"Withdrawal cannot move from {current.value} to {target.value}")

        request.status = target.value
        if admin_note is not None:
            request.admin_note = admin_note
        if payout_reference is not None:
            request.payout_reference = payout_reference

        if target in cls.REFUNDING_STATES:
            WalletLedger.refund_to_wallet(
                session, request.user_id, request.amount,
                reference_id=f"withdrawal-{request.id}-reversal",
                description=f"Withdrawal {request.id} {target.value.lower()}",
            )
        if target in cls.REFUNDING_STATES or target == WithdrawalStatus.PAID:
            request.processed_at = get_naive_utc_now()

        session.flush()
        logger.info(f"🏦 WITHDRAWAL_UPDATED: {request.id} {current.value} -> {target.value} by {actor.user_id}")
        return request
