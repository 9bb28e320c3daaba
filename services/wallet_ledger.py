"""
Wallet Ledger Service
Per-user available/frozen balances with lifetime counters.

Every balance mutation locks the wallet row (SELECT ... FOR UPDATE) and appends a
WalletTransaction in the same transaction. Methods flush; the caller commits.

Two frozen-balance operations must stay distinct:
- freeze_wallet_funds moves money the user already holds from available to frozen
  (a contribution hold).
- add_to_frozen only increases frozen; it stages a refund the platform owes the user,
  money that was never re-debited from available.
"""

import logging
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import (
    User, Wallet, WalletTransaction, WalletTransactionType, WalletTransactionStatus,
)
from utils.atomic_transactions import lock_wallet
from utils.decimal_precision import MonetaryDecimal, FinancialValidation
from utils.exception_handler import InsufficientBalance, InternalConsistency, ValidationError

logger = logging.getLogger(__name__)


def _amount(value, field: str = "amount") -> Decimal:
    return FinancialValidation.validate_positive_amount(value, field)


class WalletLedger:
    """Wallet balance store and append-only transaction log"""

    @classmethod
    def get_or_create_wallet(cls, session: Session, user_id: str) -> Wallet:
        """Return the user's wallet, lazily initialized with zero balances"""
        return lock_wallet(session, user_id)

    @classmethod
    def _record(
        cls,
        session: Session,
        user_id: str,
        tx_type: WalletTransactionType,
        amount: Decimal,
        reference_id: Optional[str] = None,
        description: Optional[str] = None,
        job_id: Optional[int] = None,
        status: WalletTransactionStatus = WalletTransactionStatus.SUCCESS,
    ) -> WalletTransaction:
        tx = WalletTransaction(
            user_id=user_id,
            type=tx_type.value,
            amount=amount,
            status=status.value,
            reference_id=reference_id,
            description=description,
            job_id=job_id,
        )
        session.add(tx)
        return tx

    @classmethod
    def add_money(cls, session: Session, user_id: str, amount, external_ref: Optional[str] = None,
                  description: str = "Wallet top-up") -> Tuple[Wallet, WalletTransaction]:
        """
        Credit an externally verified payment to available balance.

        A repeated external_ref returns the original DEPOSIT without crediting again.
        """
        amount = _amount(amount)
        wallet = lock_wallet(session, user_id)

        if external_ref:
            existing = session.execute(
                select(WalletTransaction).where(
                    WalletTransaction.user_id == user_id,
                    WalletTransaction.type == WalletTransactionType.DEPOSIT.value,
                    WalletTransaction.reference_id == external_ref,
                )
            ).scalar_one_or_none()
            if existing is not None:
                logger.warning(f"🔁 DUPLICATE_DEPOSIT: {external_ref} already credited to user {user_id}")
                return wallet, existing

        wallet.available_balance = MonetaryDecimal.round2(wallet.available_balance + amount)
        wallet.total_deposited = MonetaryDecimal.round2(wallet.total_deposited + amount)
        tx = cls._record(session, user_id, WalletTransactionType.DEPOSIT, amount, external_ref, description)
        session.flush()

        logger.info(f"💰 WALLET_DEPOSIT: user {user_id} +{amount} (available {wallet.available_balance})")
        return wallet, tx

    @classmethod
    def freeze_wallet_funds(cls, session: Session, user_id: str, amount, job_id: int) -> WalletTransaction:
        """Move amount from available to frozen as a hold for a wallet-funded contribution"""
        amount = _amount(amount)
        wallet = lock_wallet(session, user_id)

        if wallet.available_balance < amount:
            raise InsufficientBalance(MonetaryDecimal.round2(wallet.available_balance), amount)

        wallet.available_balance = MonetaryDecimal.round2(wallet.available_balance - amount)
        wallet.frozen_balance = MonetaryDecimal.round2(wallet.frozen_balance + amount)
        tx = cls._record(
            session, user_id, WalletTransactionType.CONTRIBUTION, amount,
            reference_id=f"job-{job_id}-contribution",
            description=f"Contribution to job {job_id} (held)",
            job_id=job_id,
            status=WalletTransactionStatus.PENDING,
        )
        session.flush()

        logger.info(f"🧊 WALLET_FREEZE: user {user_id} {amount} held for job {job_id}")
        return tx

    @classmethod
    def add_to_frozen(cls, session: Session, user_id: str, amount, note: str,
                      tx_type: WalletTransactionType = WalletTransactionType.REFUND,
                      job_id: Optional[int] = None) -> WalletTransaction:
        """Stage an amount owed to the user in frozen balance; available is untouched"""
        amount = _amount(amount)
        wallet = lock_wallet(session, user_id)

        wallet.frozen_balance = MonetaryDecimal.round2(wallet.frozen_balance + amount)
        tx = cls._record(
            session, user_id, tx_type, amount,
            reference_id=f"job-{job_id}-refund-staged" if job_id else None,
            description=note,
            job_id=job_id,
            status=WalletTransactionStatus.PENDING,
        )
        session.flush()

        logger.info(f"📥 WALLET_STAGE: user {user_id} {amount} staged in frozen ({note})")
        return tx

    @classmethod
    def unfreeze_wallet_funds(cls, session: Session, user_id: str, amount,
                              job_id: Optional[int] = None,
                              description: Optional[str] = None) -> Optional[WalletTransaction]:
        """
        Release frozen funds to available and count them as refunded.

        Never raises on a short frozen balance: the release is clamped to what is
        frozen and logged, since this runs from background settlement.
        """
        amount = _amount(amount)
        wallet = lock_wallet(session, user_id)

        if wallet.frozen_balance < amount:
            logger.warning(
                f"⚠️ UNFREEZE_CLAMPED: user {user_id} frozen {wallet.frozen_balance} < requested {amount}"
                f"{f' for job {job_id}' if job_id else ''}"
            )
            amount = MonetaryDecimal.round2(wallet.frozen_balance)
        if amount <= 0:
            logger.warning(f"⚠️ UNFREEZE_SKIPPED: user {user_id} has no frozen balance to release")
            return None

        wallet.frozen_balance = MonetaryDecimal.round2(wallet.frozen_balance - amount)
        wallet.available_balance = MonetaryDecimal.round2(wallet.available_balance + amount)
        wallet.total_refunded = MonetaryDecimal.round2(wallet.total_refunded + amount)
        tx = cls._record(
            session, user_id, WalletTransactionType.REFUND, amount,
            reference_id=f"job-{job_id}-refund" if job_id else None,
            description=description or (f"Refund released for job {job_id}" if job_id else "Frozen funds released"),
            job_id=job_id,
        )
        session.flush()

        logger.info(f"🔓 WALLET_UNFREEZE: user {user_id} {amount} frozen -> available")
        return tx

    @classmethod
    def deduct_from_wallet(cls, session: Session, user_id: str, amount,
                           tx_type: WalletTransactionType, reference_id: Optional[str] = None,
                           description: Optional[str] = None,
                           job_id: Optional[int] = None) -> WalletTransaction:
        """Debit available balance; rejects the debit when available is short"""
        amount = _amount(amount)
        wallet = lock_wallet(session, user_id)

        if wallet.available_balance < amount:
            raise InsufficientBalance(MonetaryDecimal.round2(wallet.available_balance), amount)

        wallet.available_balance = MonetaryDecimal.round2(wallet.available_balance - amount)
        wallet.total_spent = MonetaryDecimal.round2(wallet.total_spent + amount)
        tx = cls._record(session, user_id, tx_type, amount, reference_id, description, job_id)
        session.flush()

        logger.info(f"💸 WALLET_DEDUCT: user {user_id} -{amount} ({tx_type.value})")
        return tx

    @classmethod
    def deduct_from_frozen(cls, session: Session, user_id: str, amount, job_id: int) -> Optional[WalletTransaction]:
        """Consume a contribution hold when the job settles; clamps to the frozen balance"""
        amount = _amount(amount)
        wallet = lock_wallet(session, user_id)

        if wallet.frozen_balance < amount:
            logger.warning(
                f"⚠️ HOLD_CONSUME_CLAMPED: user {user_id} frozen {wallet.frozen_balance} < hold {amount} for job {job_id}"
            )
            amount = MonetaryDecimal.round2(wallet.frozen_balance)
        if amount <= 0:
            return None

        wallet.frozen_balance = MonetaryDecimal.round2(wallet.frozen_balance - amount)
        wallet.total_spent = MonetaryDecimal.round2(wallet.total_spent + amount)
        tx = cls._record(
            session, user_id, WalletTransactionType.CONTRIBUTION, amount,
            reference_id=f"job-{job_id}-contribution-settled",
            description=f"Contribution hold settled for job {job_id}",
            job_id=job_id,
        )
        session.flush()

        logger.info(f"✅ HOLD_CONSUMED: user {user_id} {amount} for job {job_id}")
        return tx

    @classmethod
    def refund_to_wallet(cls, session: Session, user_id: str, amount,
                         job_id: Optional[int] = None, reference_id: Optional[str] = None,
                         description: Optional[str] = None) -> WalletTransaction:
        """Credit a refund straight to available balance"""
        amount = _amount(amount)
        wallet = lock_wallet(session, user_id)

        wallet.available_balance = MonetaryDecimal.round2(wallet.available_balance + amount)
        wallet.total_refunded = MonetaryDecimal.round2(wallet.total_refunded + amount)
        tx = cls._record(
            session, user_id, WalletTransactionType.REFUND, amount,
            reference_id=reference_id or (f"job-{job_id}-refund" if job_id else None),
            description=description or (f"Refund for job {job_id}" if job_id else "Refund"),
            job_id=job_id,
        )
        session.flush()

        logger.info(f"↩️ WALLET_REFUND: user {user_id} +{amount}")
        return tx

    @classmethod
    def credit_payout(cls, session: Session, user_id: str, amount, job_id: int,
                      description: str) -> WalletTransaction:
        """Credit job earnings to available balance and the user's lifetime earnings"""
        amount = _amount(amount)
        wallet = lock_wallet(session, user_id)

        user = session.get(User, user_id, with_for_update=True)
        if user is None:
            raise InternalConsistency(f"Payout recipient {user_id} does not exist")

        wallet.available_balance = MonetaryDecimal.round2(wallet.available_balance + amount)
        user.total_earnings = MonetaryDecimal.round2(user.total_earnings + amount)
        tx = cls._record(
            session, user_id, WalletTransactionType.PAYOUT, amount,
            reference_id=f"job-{job_id}-payout",
            description=description,
            job_id=job_id,
        )
        session.flush()

        logger.info(f"🏆 WALLET_PAYOUT: user {user_id} +{amount} for job {job_id}")
        return tx

    @classmethod
    def get_transactions(cls, session: Session, user_id: str, limit: int = 100) -> List[WalletTransaction]:
        if limit <= 0:
            raise ValidationError("limit must be positive")
        return list(session.execute(
            select(WalletTransaction)
            .where(WalletTransaction.user_id == user_id)
            .order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
            .limit(limit)
        ).scalars())
