"""
Contribution and Expense Accounting
Funding inflows per job, leader expense draw-downs, and the derived ledger view.
"""

import logging
from collections import OrderedDict
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from config import Config
from models import (
    Contribution, ExecutionMode, FundingSource, Job, JobExpenseTransaction,
    JobStatus, PaymentStatus,
)
from utils.atomic_transactions import lock_job
from utils.decimal_precision import MonetaryDecimal, FinancialValidation
from utils.exception_handler import AuthorizationError, NotFound, StateConflict, ValidationError

logger = logging.getLogger(__name__)


def compute_fee_and_wallet(collected, fee_percent) -> Tuple[Decimal, Decimal]:
    """fee = round2(collected * fee_percent / 100); wallet = collected - fee"""
    collected = MonetaryDecimal.round2(collected)
    fee = MonetaryDecimal.percentage_of(collected, fee_percent)
    return fee, MonetaryDecimal.round2(collected - fee)


def fee_percent_for_mode(execution_mode) -> Decimal:
    mode = execution_mode if isinstance(execution_mode, ExecutionMode) else ExecutionMode(execution_mode)
    if mode == ExecutionMode.LEADER_EXECUTION:
        return Config.LEADER_EXECUTION_FEE_PERCENT
    return Config.WORKER_EXECUTION_FEE_PERCENT


def proportional_shares(totals: Dict[str, Decimal], pool, collected) -> Dict[str, Decimal]:
    """
    Split pool across contributors in proportion to what each put in.

    share_i = round2(contribution_i * pool / collected). Empty when pool <= 0
    or nothing was collected.
    """
    pool = MonetaryDecimal.to_decimal(pool)
    collected = MonetaryDecimal.to_decimal(collected)
    if pool <= 0 or collected <= 0:
        return OrderedDict()

    shares = OrderedDict()
    for user_id, contributed in totals.items():
        share = MonetaryDecimal.round2(MonetaryDecimal.to_decimal(contributed) * pool / collected)
        if share > 0:
            shares[user_id] = share
    return shares


class ContributionAccounting:
    """Records funding and expenses against jobs and derives totals"""

    @classmethod
    def recompute_job_totals(cls, job: Job) -> None:
        """Refresh platform fee and escrow pool from collected amount and fee percent"""
        fee, wallet = compute_fee_and_wallet(job.collected_amount, job.platform_fee_percent)
        job.platform_fee_amount = fee
        job.wallet_balance = wallet

    @classmethod
    def create_contribution(
        cls,
        session: Session,
        job_id: int,
        user_id: str,
        amount,
        funding_source: FundingSource = FundingSource.GATEWAY,
    ) -> Contribution:
        """
        Append a successful contribution and bump the job's collected amount.

        The job row stays locked for the whole call, so the funding-threshold check
        that follows sees every concurrent contribution exactly once.
        """
        amount = FinancialValidation.validate_positive_amount(amount)
        job = lock_job(session, job_id)

        if job.status != JobStatus.FUNDING_OPEN.value:
            raise StateConflict(f"Funding is closed for this job (status {job.status})")

        contribution = Contribution(
            job_id=job.id,
            user_id=user_id,
            amount=amount,
            payment_status=PaymentStatus.SUCCESS.value,
            funding_source=funding_source.value,
            refunded=False,
        )
        session.add(contribution)

        job.collected_amount = MonetaryDecimal.round2(job.collected_amount + amount)
        cls.recompute_job_totals(job)
        session.flush()

        logger.info(
            f"💵 CONTRIBUTION_RECORDED: job {job.id} +{amount} from {user_id} via {funding_source.value} "
            f"(collected {job.collected_amount}/{job.target_amount})"
        )

        from services.job_lifecycle import JobLifecycleService
        JobLifecycleService.advance_if_funded(session, job)
        return contribution

    @classmethod
    def contribute_from_wallet(cls, session: Session, job_id: int, user_id: str, amount) -> Contribution:
        """Hold the amount in the contributor's wallet and record a WALLET contribution"""
        from services.wallet_ledger import WalletLedger

        amount = FinancialValidation.validate_positive_amount(amount)
        job = lock_job(session, job_id)
        if job.status != JobStatus.FUNDING_OPEN.value:
            raise StateConflict(f"Funding is closed for this job (status {job.status})")

        WalletLedger.freeze_wallet_funds(session, user_id, amount, job.id)
        return cls.create_contribution(session, job.id, user_id, amount, FundingSource.WALLET)

    @classmethod
    def get_contributions(cls, session: Session, user_id: Optional[str] = None,
                          job_id: Optional[int] = None) -> List[Contribution]:
        stmt = select(Contribution).order_by(Contribution.created_at.desc(), Contribution.id.desc())
        if user_id is not None:
            stmt = stmt.where(Contribution.user_id == user_id)
        if job_id is not None:
            stmt = stmt.where(Contribution.job_id == job_id)
        return list(session.execute(stmt).scalars())

    @classmethod
    def contributor_totals(cls, session: Session, job_id: int,
                           funding_source: Optional[FundingSource] = None) -> Dict[str, Decimal]:
        """Sum of successful contributions per user, in first-contribution order"""
        stmt = (
            select(Contribution.user_id, func.sum(Contribution.amount), func.min(Contribution.id))
            .where(
                Contribution.job_id == job_id,
                Contribution.payment_status == PaymentStatus.SUCCESS.value,
            )
            .group_by(Contribution.user_id)
            .order_by(func.min(Contribution.id))
        )
        if funding_source is not None:
            stmt = stmt.where(Contribution.funding_source == funding_source.value)

        totals = OrderedDict()
        for user_id, total, _first_id in session.execute(stmt):
            totals[user_id] = MonetaryDecimal.round2(total)
        return totals

    @classmethod
    def is_funded_contributor(cls, session: Session, job_id: int, user_id: str) -> bool:
        return session.execute(
            select(Contribution.id).where(
                Contribution.job_id == job_id,
                Contribution.user_id == user_id,
                Contribution.payment_status == PaymentStatus.SUCCESS.value,
            ).limit(1)
        ).first() is not None

    @classmethod
    def mark_contributions_refunded(cls, session: Session, job_id: int) -> int:
        result = session.execute(
            update(Contribution)
            .where(Contribution.job_id == job_id, Contribution.refunded.is_(False))
            .values(refunded=True)
            .execution_options(synchronize_session="fetch")
        )
        logger.info(f"↩️ CONTRIBUTIONS_REFUNDED: job {job_id} marked {result.rowcount} contributions refunded")
        return result.rowcount

    @classmethod
    def total_expenses(cls, session: Session, job_id: int) -> Decimal:
        total = session.execute(
            select(func.coalesce(func.sum(JobExpenseTransaction.amount), 0))
            .where(JobExpenseTransaction.job_id == job_id)
        ).scalar_one()
        return MonetaryDecimal.round2(total)

    @classmethod
    def create_job_expense_transaction(
        cls,
        session: Session,
        job_id: int,
        leader_id: str,
        amount,
        description: str,
        proof_url: Optional[str] = None,
    ) -> JobExpenseTransaction:
        """Record a leader reimbursement draw-down against the escrow pool"""
        amount = FinancialValidation.validate_positive_amount(amount)
        if not description or not str(description).strip():
            raise ValidationError("description is required")

        job = lock_job(session, job_id)

        if job.leader_id != leader_id:
            raise AuthorizationError("Only the job leader can record expenses")
        if job.execution_mode != ExecutionMode.LEADER_EXECUTION.value:
            raise StateConflict("Expenses can only be recorded on LEADER_EXECUTION jobs")
        if job.status != JobStatus.IN_PROGRESS.value:
            raise StateConflict(f"Expenses can only be recorded while the job is IN_PROGRESS (status {job.status})")
        if job.funds_frozen:
            raise StateConflict("Job funds are frozen")

        remaining = MonetaryDecimal.round2(job.wallet_balance - cls.total_expenses(session, job.id))
        if amount > remaining:
            raise ValidationError(
                f"Expense {amount:.2f} exceeds remaining balance {remaining:.2f}"
            )

        expense = JobExpenseTransaction(
            job_id=job.id,
            leader_id=leader_id,
            amount=amount,
            description=str(description).strip(),
            proof_url=proof_url,
        )
        session.add(expense)
        session.flush()

        logger.info(f"🧾 EXPENSE_RECORDED: job {job.id} -{amount} by leader {leader_id} (remaining {remaining - amount})")
        return expense

    @classmethod
    def get_ledger(cls, session: Session, job_id: int) -> dict:
        """Read-only view of raised, spent and remaining funds, recomputed from the expense rows"""
        job = session.get(Job, job_id)
        if job is None:
            raise NotFound(f"Job {job_id} not found")

        transactions = list(session.execute(
            select(JobExpenseTransaction)
            .where(JobExpenseTransaction.job_id == job_id)
            .order_by(JobExpenseTransaction.created_at, JobExpenseTransaction.id)
        ).scalars())
        total_spent = MonetaryDecimal.round2(sum((t.amount for t in transactions), Decimal("0")))
        fee, pool = compute_fee_and_wallet(job.collected_amount, job.platform_fee_percent)

        return {
            "totalRaised": MonetaryDecimal.round2(job.collected_amount),
            "totalSpent": total_spent,
            "remainingBalance": MonetaryDecimal.round2(pool - total_spent),
            "platformFeePercent": MonetaryDecimal.round2(job.platform_fee_percent),
            "platformFeeAmount": fee,
            "transactions": transactions,
        }
