"""
Civic Cleanup Escrow Platform - Database Schema
===============================================

Schema for community-funded cleanup jobs:
- Jobs funded by contributors, executed by a hired worker or by the leader
- Per-user wallets with available/frozen balances and an append-only transaction log
- Worker bids, completion proofs and review-window disputes
- Leader expense ledger and withdrawal requests

Statuses and types are stored as the string value of the enums below.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import (
    Integer, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, JSON
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column

from utils.datetime_helpers import get_naive_utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Money columns
Money = Numeric(12, 2)


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class UserRole(Enum):
    """Account role supplied by the auth layer"""
    MEMBER = "MEMBER"
    LEADER = "LEADER"
    CONTRIBUTOR = "CONTRIBUTOR"
    WORKER = "WORKER"
    ADMIN = "ADMIN"


class JobStatus(Enum):
    """Job lifecycle states"""
    FUNDING_OPEN = "FUNDING_OPEN"
    FUNDING_COMPLETE = "FUNDING_COMPLETE"
    WORKER_SELECTED = "WORKER_SELECTED"
    IN_PROGRESS = "IN_PROGRESS"
    AWAITING_VERIFICATION = "AWAITING_VERIFICATION"
    UNDER_REVIEW = "UNDER_REVIEW"
    COMPLETED = "COMPLETED"
    DISPUTED = "DISPUTED"
    CANCELLED = "CANCELLED"


class ExecutionMode(Enum):
    """Who performs the job and how the escrow pool settles"""
    WORKER_EXECUTION = "WORKER_EXECUTION"
    LEADER_EXECUTION = "LEADER_EXECUTION"


class PaymentStatus(Enum):
    """Contribution payment states"""
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class FundingSource(Enum):
    """Where a contribution's money came from"""
    WALLET = "WALLET"
    GATEWAY = "GATEWAY"


class ApplicationStatus(Enum):
    """Worker application states"""
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class DisputeStatus(Enum):
    """Dispute states"""
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"
    REJECTED = "REJECTED"


class DisputeAction(Enum):
    """Admin decisions on a dispute"""
    APPROVE_WORK = "APPROVE_WORK"
    REJECT_WORK = "REJECT_WORK"


class WalletTransactionType(Enum):
    """Wallet ledger entry types"""
    DEPOSIT = "DEPOSIT"
    CONTRIBUTION = "CONTRIBUTION"
    REFUND = "REFUND"
    WITHDRAWAL = "WITHDRAWAL"
    FEE = "FEE"
    BONUS = "BONUS"
    PAYOUT = "PAYOUT"


class WalletTransactionStatus(Enum):
    """Wallet ledger entry states"""
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class WithdrawalStatus(Enum):
    """Withdrawal request states"""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    PROCESSING = "PROCESSING"
    PAID = "PAID"
    FAILED = "FAILED"
    REJECTED = "REJECTED"


# ============================================================================
# CORE MODELS
# ============================================================================

class User(Base):
    """Platform account, identified by the id issued by the auth layer"""
    __tablename__ = 'users'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(20), default=UserRole.MEMBER.value, nullable=False)
    rating: Mapped[Decimal] = mapped_column(Numeric(3, 2), default=0, nullable=False)
    total_earnings: Mapped[Decimal] = mapped_column(Money, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)

    wallet: Mapped[Optional["Wallet"]] = relationship("Wallet", back_populates="user", uselist=False)

    __table_args__ = (
        CheckConstraint('total_earnings >= 0', name='ck_user_total_earnings_positive'),
    )

    def __repr__(self):
        return f"<User(id={self.id}, role={self.role})>"


class Job(Base):
    """Crowdfunded cleanup job and its escrow pool"""
    __tablename__ = 'jobs'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    location: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    is_private_residential_property: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Funding
    target_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    collected_amount: Mapped[Decimal] = mapped_column(Money, default=0, nullable=False)
    platform_fee_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=0, nullable=False)
    platform_fee_amount: Mapped[Decimal] = mapped_column(Money, default=0, nullable=False)
    wallet_balance: Mapped[Decimal] = mapped_column(Money, default=0, nullable=False)  # collected - platform fee
    funds_frozen: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    execution_mode: Mapped[str] = mapped_column(String(32), default=ExecutionMode.WORKER_EXECUTION.value, nullable=False)
    status: Mapped[str] = mapped_column(String(32), default=JobStatus.FUNDING_OPEN.value, nullable=False, index=True)

    leader_id: Mapped[str] = mapped_column(String(64), ForeignKey('users.id'), nullable=False, index=True)
    selected_worker_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey('users.id'), nullable=True)
    review_deadline: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Settlement snapshots (refundEstimate, refundDetails, totals)
    job_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    contributions: Mapped[list["Contribution"]] = relationship("Contribution", back_populates="job")

    __table_args__ = (
        CheckConstraint('target_amount > 0', name='ck_job_target_positive'),
        CheckConstraint('collected_amount >= 0', name='ck_job_collected_positive'),
        Index('ix_jobs_status_deadline', 'status', 'review_deadline'),
    )

    def __repr__(self):
        return f"<Job(id={self.id}, status={self.status}, mode={self.execution_mode}, collected={self.collected_amount})>"


class Contribution(Base):
    """Funding inflow to a job"""
    __tablename__ = 'contributions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(Integer, ForeignKey('jobs.id'), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey('users.id'), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    payment_status: Mapped[str] = mapped_column(String(16), default=PaymentStatus.SUCCESS.value, nullable=False)
    funding_source: Mapped[str] = mapped_column(String(16), default=FundingSource.GATEWAY.value, nullable=False)
    refunded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)

    job: Mapped["Job"] = relationship("Job", back_populates="contributions")

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_contribution_amount_positive'),
    )

    def __repr__(self):
        return f"<Contribution(id={self.id}, job_id={self.job_id}, user_id={self.user_id}, amount={self.amount})>"


class WorkerApplication(Base):
    """Worker bid on a WORKER_EXECUTION job"""
    __tablename__ = 'worker_applications'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(Integer, ForeignKey('jobs.id'), nullable=False, index=True)
    worker_id: Mapped[str] = mapped_column(String(64), ForeignKey('users.id'), nullable=False, index=True)
    bid_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default=ApplicationStatus.PENDING.value, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint('job_id', 'worker_id', name='uq_application_job_worker'),
        CheckConstraint('bid_amount > 0', name='ck_application_bid_positive'),
    )

    def __repr__(self):
        return f"<WorkerApplication(id={self.id}, job_id={self.job_id}, worker_id={self.worker_id}, status={self.status})>"


class JobProof(Base):
    """Submitted completion evidence, one per job"""
    __tablename__ = 'job_proofs'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(Integer, ForeignKey('jobs.id'), nullable=False, unique=True)
    submitted_by_id: Mapped[str] = mapped_column(String(64), ForeignKey('users.id'), nullable=False)
    before_photo_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    after_photo_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    disposal_photo_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    captured_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)

    # Submission notes and the disputeDetails mirror
    proof_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSONType, nullable=True)

    def __repr__(self):
        return f"<JobProof(id={self.id}, job_id={self.job_id})>"


class JobProofDraft(Base):
    """Pre-submission scratch copy of a proof"""
    __tablename__ = 'job_proof_drafts'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(Integer, ForeignKey('jobs.id'), nullable=False, unique=True)
    author_id: Mapped[str] = mapped_column(String(64), ForeignKey('users.id'), nullable=False)
    before_photo_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    after_photo_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    disposal_photo_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    captured_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    draft_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSONType, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    def __repr__(self):
        return f"<JobProofDraft(job_id={self.job_id}, author_id={self.author_id})>"


class Dispute(Base):
    """Contributor objection raised inside a job's review window"""
    __tablename__ = 'disputes'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(Integer, ForeignKey('jobs.id'), nullable=False, index=True)
    raised_by_id: Mapped[str] = mapped_column(String(64), ForeignKey('users.id'), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=DisputeStatus.OPEN.value, nullable=False)

    # raisedEvidencePhotoUrl, workerResponses, leaderClarifications, adminDecision
    details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint('job_id', 'raised_by_id', name='uq_dispute_job_raiser'),
        Index('ix_disputes_job_status', 'job_id', 'status'),
    )

    def __repr__(self):
        return f"<Dispute(id={self.id}, job_id={self.job_id}, status={self.status})>"


class JobExpenseTransaction(Base):
    """Leader reimbursement draw-down against a LEADER_EXECUTION job"""
    __tablename__ = 'job_expense_transactions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(Integer, ForeignKey('jobs.id'), nullable=False, index=True)
    leader_id: Mapped[str] = mapped_column(String(64), ForeignKey('users.id'), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    proof_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_expense_amount_positive'),
    )

    def __repr__(self):
        return f"<JobExpenseTransaction(id={self.id}, job_id={self.job_id}, amount={self.amount})>"


# ============================================================================
# WALLET MODELS
# ============================================================================

class Wallet(Base):
    """Per-user balance store"""
    __tablename__ = 'wallets'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey('users.id'), nullable=False, unique=True)

    available_balance: Mapped[Decimal] = mapped_column(Money, default=0, nullable=False)
    frozen_balance: Mapped[Decimal] = mapped_column(Money, default=0, nullable=False)  # Earmarked or staged funds

    # Lifetime counters
    total_deposited: Mapped[Decimal] = mapped_column(Money, default=0, nullable=False)
    total_spent: Mapped[Decimal] = mapped_column(Money, default=0, nullable=False)
    total_refunded: Mapped[Decimal] = mapped_column(Money, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="wallet")

    __table_args__ = (
        CheckConstraint('available_balance >= 0', name='ck_wallet_available_positive'),
        CheckConstraint('frozen_balance >= 0', name='ck_wallet_frozen_positive'),
        CheckConstraint('total_deposited >= 0', name='ck_wallet_deposited_positive'),
        CheckConstraint('total_spent >= 0', name='ck_wallet_spent_positive'),
        CheckConstraint('total_refunded >= 0', name='ck_wallet_refunded_positive'),
    )

    def __repr__(self):
        return f"<Wallet(user_id={self.user_id}, available={self.available_balance}, frozen={self.frozen_balance})>"


class WalletTransaction(Base):
    """Append-only audit trail; every wallet balance mutation writes one row"""
    __tablename__ = 'wallet_transactions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey('users.id'), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=WalletTransactionStatus.SUCCESS.value, nullable=False)
    reference_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    job_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('jobs.id'), nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        Index('ix_wallet_transactions_user_created', 'user_id', 'created_at'),
    )

    def __repr__(self):
        return f"<WalletTransaction(id={self.id}, user_id={self.user_id}, type={self.type}, amount={self.amount})>"


class WithdrawalRequest(Base):
    """User request to move available balance to a bank account"""
    __tablename__ = 'withdrawal_requests'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey('users.id'), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=WithdrawalStatus.PENDING.value, nullable=False)
    bank_account: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    admin_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payout_reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_withdrawal_amount_positive'),
    )

    def __repr__(self):
        return f"<WithdrawalRequest(id={self.id}, user_id={self.user_id}, amount={self.amount}, status={self.status})>"
