"""
Settlement Service
Moves escrowed job money to its final owners: the worker's payout, the leader's
reimbursement, and proportional refunds to contributors.

Callers hold the job row (locked or won through a conditional status update) and
run these inside the same transaction as the status change. Per-contributor
refund failures that are raised before any mutation are logged and skipped so one
contributor's problem does not block the others.
"""

import logging
from decimal import Decimal
from typing import Dict, NamedTuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Config
from models import (
    ApplicationStatus, FundingSource, Job, WalletTransactionType, WorkerApplication,
)
from services.contribution_accounting import ContributionAccounting, proportional_shares
from services.wallet_ledger import WalletLedger
from utils.datetime_helpers import get_naive_utc_now, isoformat_or_none
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import InternalConsistency, ServiceError

logger = logging.getLogger(__name__)


class WorkerPayout(NamedTuple):
    worker_id: str
    bid_amount: Decimal
    fee: Decimal
    payout: Decimal


def compute_worker_payout(bid_amount) -> Dict[str, Decimal]:
    """payout = bid - round2(bid * payout fee %), never negative"""
    bid = MonetaryDecimal.round2(bid_amount)
    fee = MonetaryDecimal.percentage_of(bid, Config.WORKER_PAYOUT_FEE_PERCENT)
    payout = max(MonetaryDecimal.round2(bid - fee), MonetaryDecimal.ZERO)
    return {"bid": bid, "fee": fee, "payout": payout}


def _money_map(values: Dict[str, Decimal]) -> Dict[str, str]:
    return {user_id: MonetaryDecimal.format_amount(amount) for user_id, amount in values.items()}


class SettlementService:
    """Payout and refund side effects of job settlement"""

    @classmethod
    def accepted_application(cls, session: Session, job: Job) -> WorkerApplication:
        application = session.execute(
            select(WorkerApplication).where(
                WorkerApplication.job_id == job.id,
                WorkerApplication.status == ApplicationStatus.ACCEPTED.value,
            )
        ).scalars().first()
        if application is None or application.worker_id != job.selected_worker_id:
            raise InternalConsistency(f"Job {job.id} has no accepted application for its selected worker")
        return application

    @classmethod
    def consume_wallet_holds(cls, session: Session, job: Job) -> Decimal:
        """Settle the holds taken by wallet-funded contributions to this job"""
        consumed = Decimal("0")
        holds = ContributionAccounting.contributor_totals(session, job.id, FundingSource.WALLET)
        for user_id, amount in holds.items():
            tx = WalletLedger.deduct_from_frozen(session, user_id, amount, job.id)
            if tx is not None:
                consumed += tx.amount
        return MonetaryDecimal.round2(consumed)

    @classmethod
    def pay_worker(cls, session: Session, job: Job) -> WorkerPayout:
        """Pay the accepted bid minus the payout fee to the selected worker"""
        application = cls.accepted_application(session, job)
        amounts = compute_worker_payout(application.bid_amount)

        if amounts["payout"] > 0:
            WalletLedger.credit_payout(
                session, application.worker_id, amounts["payout"], job.id,
                description=f"Payout for job {job.id} (bid {amounts['bid']:.2f}, fee {amounts['fee']:.2f})",
            )
        cls.consume_wallet_holds(session, job)

        retained = MonetaryDecimal.round2(job.wallet_balance - amounts["payout"])
        job.job_metadata = {
            **(job.job_metadata or {}),
            "payoutDetails": {
                "workerId": application.worker_id,
                "bidAmount": MonetaryDecimal.format_amount(amounts["bid"]),
                "payoutFee": MonetaryDecimal.format_amount(amounts["fee"]),
                "payoutAmount": MonetaryDecimal.format_amount(amounts["payout"]),
                "platformRetained": MonetaryDecimal.format_amount(max(retained, MonetaryDecimal.ZERO)),
                "paidAt": isoformat_or_none(get_naive_utc_now()),
            },
        }
        job.wallet_balance = MonetaryDecimal.ZERO

        logger.info(
            f"🏆 WORKER_PAID: job {job.id} worker {application.worker_id} "
            f"bid {amounts['bid']} fee {amounts['fee']} payout {amounts['payout']}"
        )
        return WorkerPayout(application.worker_id, amounts["bid"], amounts["fee"], amounts["payout"])

    @classmethod
    def stage_leader_refunds(cls, session: Session, job: Job) -> Dict[str, Decimal]:
        """
        Stage each contributor's share of the unspent pool in their frozen balance.

        remaining = pool - expenses; refund_i = contribution_i * remaining / collected.
        Only successfully staged amounts are written to the snapshot, so the later
        release matches exactly what was staged. A job that already carries a
        staging snapshot is not staged again; the existing snapshot is returned.
        """
        if (job.job_metadata or {}).get("refundStaged"):
            logger.warning(f"⚠️ REFUNDS_ALREADY_STAGED: job {job.id}; keeping the existing snapshot")
            return cls.staged_refunds(job)

        total_expenses = ContributionAccounting.total_expenses(session, job.id)
        remaining = MonetaryDecimal.round2(job.wallet_balance - total_expenses)
        totals = ContributionAccounting.contributor_totals(session, job.id)
        shares = proportional_shares(totals, remaining, job.collected_amount)

        staged = {}
        for user_id, share in shares.items():
            try:
                WalletLedger.add_to_frozen(
                    session, user_id, share,
                    note=f"Refund staged for job {job.id}",
                    tx_type=WalletTransactionType.REFUND,
                    job_id=job.id,
                )
                staged[user_id] = share
            except ServiceError as e:
                logger.error(f"❌ REFUND_STAGE_FAILED: job {job.id} user {user_id}: {e.message}")

        job.job_metadata = {
            **(job.job_metadata or {}),
            "refundStaged": True,
            "refundDetails": {
                "totalExpenses": MonetaryDecimal.format_amount(total_expenses),
                "remainingBalance": MonetaryDecimal.format_amount(max(remaining, MonetaryDecimal.ZERO)),
                "collectedAmount": MonetaryDecimal.format_amount(job.collected_amount),
                "refunds": _money_map(staged),
                "stagedAt": isoformat_or_none(get_naive_utc_now()),
            },
        }
        logger.info(
            f"📥 REFUNDS_STAGED: job {job.id} remaining {remaining} across {len(staged)} contributors"
        )
        return staged

    @classmethod
    def staged_refunds(cls, job: Job) -> Dict[str, Decimal]:
        metadata = job.job_metadata or {}
        if not metadata.get("refundStaged"):
            return {}
        refunds = (metadata.get("refundDetails") or {}).get("refunds") or {}
        return {user_id: MonetaryDecimal.round2(amount) for user_id, amount in refunds.items()}

    @classmethod
    def _release_staged(cls, session: Session, job: Job, staged: Dict[str, Decimal]) -> Dict[str, Decimal]:
        released = {}
        for user_id, amount in staged.items():
            try:
                tx = WalletLedger.unfreeze_wallet_funds(session, user_id, amount, job_id=job.id)
                if tx is not None:
                    released[user_id] = tx.amount
            except ServiceError as e:
                logger.error(f"❌ REFUND_RELEASE_FAILED: job {job.id} user {user_id}: {e.message}")
        return released

    @classmethod
    def settle_leader_job(cls, session: Session, job: Job) -> dict:
        """Release staged refunds, settle holds and reimburse the leader's expenses"""
        total_spent = ContributionAccounting.total_expenses(session, job.id)
        remaining = MonetaryDecimal.round2(job.wallet_balance - total_spent)

        staged = cls.staged_refunds(job)
        if not staged and remaining > 0:
            # Review began without staging; stage now so release goes through frozen balance
            staged = cls.stage_leader_refunds(session, job)
        released = cls._release_staged(session, job, staged)

        cls.consume_wallet_holds(session, job)

        if total_spent > 0:
            WalletLedger.credit_payout(
                session, job.leader_id, total_spent, job.id,
                description=f"Expense reimbursement for job {job.id}",
            )

        total_refunded = MonetaryDecimal.round2(sum(released.values(), Decimal("0")))
        details = dict((job.job_metadata or {}).get("refundDetails") or {})
        details.update({
            "totalExpenses": MonetaryDecimal.format_amount(total_spent),
            "remainingBalance": MonetaryDecimal.format_amount(max(remaining, MonetaryDecimal.ZERO)),
            "refunds": _money_map(released),
        })
        job.job_metadata = {
            **(job.job_metadata or {}),
            "refundDetails": details,
            "totalSpent": MonetaryDecimal.format_amount(total_spent),
            "totalRefunded": MonetaryDecimal.format_amount(total_refunded),
            "leaderReimbursed": MonetaryDecimal.format_amount(total_spent),
            "refundProcessedAt": isoformat_or_none(get_naive_utc_now()),
        }
        job.wallet_balance = MonetaryDecimal.ZERO

        logger.info(
            f"✅ LEADER_JOB_SETTLED: job {job.id} spent {total_spent} refunded {total_refunded} "
            f"to {len(released)} contributors"
        )
        return {"totalSpent": total_spent, "totalRefunded": total_refunded, "refunds": released}

    @classmethod
    def refund_cancelled_job(cls, session: Session, job: Job) -> dict:
        """
        Return the whole escrow pool to contributors after rejected work.

        Staged refunds are released first; the rest of each contributor's share is
        credited directly. Leader expenses are not reimbursed.
        """
        totals = ContributionAccounting.contributor_totals(session, job.id)
        pool = MonetaryDecimal.round2(job.wallet_balance)
        shares = proportional_shares(totals, pool, job.collected_amount)

        released = cls._release_staged(session, job, cls.staged_refunds(job))

        refunded = {}
        for user_id, share in shares.items():
            already = released.get(user_id, Decimal("0"))
            topup = MonetaryDecimal.round2(share - already)
            try:
                if topup > 0:
                    WalletLedger.refund_to_wallet(
                        session, user_id, topup, job_id=job.id,
                        description=f"Refund for cancelled job {job.id}",
                    )
                refunded[user_id] = MonetaryDecimal.round2(already + max(topup, MonetaryDecimal.ZERO))
            except ServiceError as e:
                logger.error(f"❌ CANCEL_REFUND_FAILED: job {job.id} user {user_id}: {e.message}")

        cls.consume_wallet_holds(session, job)
        ContributionAccounting.mark_contributions_refunded(session, job.id)

        total_refunded = MonetaryDecimal.round2(sum(refunded.values(), Decimal("0")))
        job.job_metadata = {
            **(job.job_metadata or {}),
            "cancellationRefunds": _money_map(refunded),
            "totalRefunded": MonetaryDecimal.format_amount(total_refunded),
            "refundProcessedAt": isoformat_or_none(get_naive_utc_now()),
        }
        job.wallet_balance = MonetaryDecimal.ZERO

        logger.info(f"↩️ JOB_REFUNDED: job {job.id} refunded {total_refunded} to {len(refunded)} contributors")
        return {"totalRefunded": total_refunded, "refunds": refunded}
