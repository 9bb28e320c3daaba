"""Response shapes for the API: camelCase keys, money as two-decimal strings, ISO-8601 UTC timestamps"""

from typing import Optional

from models import (
    Contribution, Dispute, Job, JobExpenseTransaction, JobProof, JobProofDraft,
    User, Wallet, WalletTransaction, WithdrawalRequest, WorkerApplication,
)
from utils.datetime_helpers import isoformat_or_none
from utils.decimal_precision import MonetaryDecimal

money = MonetaryDecimal.format_amount


def job_to_dict(job: Job, has_proof: Optional[bool] = None) -> dict:
    data = {
        "id": job.id,
        "title": job.title,
        "description": job.description,
        "location": job.location,
        "isPrivateResidentialProperty": job.is_private_residential_property,
        "targetAmount": money(job.target_amount),
        "collectedAmount": money(job.collected_amount),
        "platformFeePercent": money(job.platform_fee_percent),
        "platformFeeAmount": money(job.platform_fee_amount),
        "walletBalance": money(job.wallet_balance),
        "fundsFrozen": job.funds_frozen,
        "executionMode": job.execution_mode,
        "status": job.status,
        "leaderId": job.leader_id,
        "selectedWorkerId": job.selected_worker_id,
        "reviewDeadline": isoformat_or_none(job.review_deadline),
        "metadata": job.job_metadata or {},
        "createdAt": isoformat_or_none(job.created_at),
        "updatedAt": isoformat_or_none(job.updated_at),
    }
    if has_proof is not None:
        data["hasProof"] = has_proof
    return data


def contribution_to_dict(contribution: Contribution) -> dict:
    return {
        "id": contribution.id,
        "jobId": contribution.job_id,
        "userId": contribution.user_id,
        "amount": money(contribution.amount),
        "paymentStatus": contribution.payment_status,
        "fundingSource": contribution.funding_source,
        "refunded": contribution.refunded,
        "createdAt": isoformat_or_none(contribution.created_at),
    }


def application_to_dict(application: WorkerApplication) -> dict:
    return {
        "id": application.id,
        "jobId": application.job_id,
        "workerId": application.worker_id,
        "bidAmount": money(application.bid_amount),
        "message": application.message,
        "status": application.status,
        "createdAt": isoformat_or_none(application.created_at),
    }


def proof_to_dict(proof: JobProof) -> dict:
    return {
        "id": proof.id,
        "jobId": proof.job_id,
        "submittedById": proof.submitted_by_id,
        "beforePhotoUrl": proof.before_photo_url,
        "afterPhotoUrl": proof.after_photo_url,
        "disposalPhotoUrl": proof.disposal_photo_url,
        "capturedAt": isoformat_or_none(proof.captured_at),
        "uploadedAt": isoformat_or_none(proof.uploaded_at),
        "metadata": proof.proof_metadata or {},
    }


def draft_to_dict(draft: JobProofDraft) -> dict:
    return {
        "jobId": draft.job_id,
        "authorId": draft.author_id,
        "beforePhotoUrl": draft.before_photo_url,
        "afterPhotoUrl": draft.after_photo_url,
        "disposalPhotoUrl": draft.disposal_photo_url,
        "capturedAt": isoformat_or_none(draft.captured_at),
        "metadata": draft.draft_metadata or {},
        "updatedAt": isoformat_or_none(draft.updated_at),
    }


def dispute_to_dict(dispute: Dispute, details: dict) -> dict:
    return {
        "id": dispute.id,
        "jobId": dispute.job_id,
        "raisedById": dispute.raised_by_id,
        "reason": dispute.reason,
        "status": dispute.status,
        "details": details,
        "createdAt": isoformat_or_none(dispute.created_at),
        "resolvedAt": isoformat_or_none(dispute.resolved_at),
    }


def expense_to_dict(expense: JobExpenseTransaction) -> dict:
    return {
        "id": expense.id,
        "jobId": expense.job_id,
        "leaderId": expense.leader_id,
        "amount": money(expense.amount),
        "description": expense.description,
        "proofUrl": expense.proof_url,
        "createdAt": isoformat_or_none(expense.created_at),
    }


def ledger_to_dict(ledger: dict) -> dict:
    return {
        "totalRaised": money(ledger["totalRaised"]),
        "totalSpent": money(ledger["totalSpent"]),
        "remainingBalance": money(ledger["remainingBalance"]),
        "platformFeePercent": money(ledger["platformFeePercent"]),
        "platformFeeAmount": money(ledger["platformFeeAmount"]),
        "transactions": [expense_to_dict(t) for t in ledger["transactions"]],
    }


def wallet_to_dict(wallet: Wallet, user: Optional[User] = None) -> dict:
    data = {
        "userId": wallet.user_id,
        "availableBalance": money(wallet.available_balance),
        "frozenBalance": money(wallet.frozen_balance),
        "totalDeposited": money(wallet.total_deposited),
        "totalSpent": money(wallet.total_spent),
        "totalRefunded": money(wallet.total_refunded),
    }
    if user is not None:
        data["totalEarnings"] = money(user.total_earnings)
    return data


def transaction_to_dict(tx: WalletTransaction) -> dict:
    return {
        "id": tx.id,
        "userId": tx.user_id,
        "type": tx.type,
        "amount": money(tx.amount),
        "status": tx.status,
        "referenceId": tx.reference_id,
        "description": tx.description,
        "jobId": tx.job_id,
        "createdAt": isoformat_or_none(tx.created_at),
    }


def withdrawal_to_dict(request: WithdrawalRequest) -> dict:
    return {
        "id": request.id,
        "userId": request.user_id,
        "amount": money(request.amount),
        "status": request.status,
        "bankAccount": request.bank_account or {},
        "adminNote": request.admin_note,
        "payoutReference": request.payout_reference,
        "createdAt": isoformat_or_none(request.created_at),
        "processedAt": isoformat_or_none(request.processed_at),
    }
