"""
Dispute Resolution Tests
Raising disputes in the review window, party responses, the mirrored details record
and the admin decisions for both execution modes
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from models import Contribution, Dispute, DisputeStatus, Job, JobStatus, WalletTransactionType
from services.dispute_resolution import (
    DisputeResolutionService, empty_details, merge_dispute_details,
)
from services.job_lifecycle import JobLifecycleService
from services.proof_service import ProofService
from services.user_directory import UserDirectory
from utils.datetime_helpers import get_naive_utc_now
from utils.exception_handler import (
    AuthorizationError, DuplicateDispute, StateConflict, ValidationError,
)


class TestDetailsMerge:
    """merge_dispute_details"""

    def test_dedicated_record_wins(self):
        primary = {"raisedEvidencePhotoUrl": "https://img.example/new.jpg", "workerResponses": [{"message": "a"}]}
        mirror = {"raisedEvidencePhotoUrl": "https://img.example/old.jpg", "workerResponses": [{"message": "b"}]}
        merged = merge_dispute_details(primary, mirror)

        assert merged["raisedEvidencePhotoUrl"] == "https://img.example/new.jpg"
        assert merged["workerResponses"] == [{"message": "a"}]

    def test_mirror_fills_missing_fields(self):
        primary = {"raisedEvidencePhotoUrl": None, "workerResponses": []}
        mirror = {"raisedEvidencePhotoUrl": "https://img.example/e.jpg", "leaderClarifications": [{"message": "c"}]}
        merged = merge_dispute_details(primary, mirror)

        assert merged["raisedEvidencePhotoUrl"] == "https://img.example/e.jpg"
        assert merged["leaderClarifications"] == [{"message": "c"}]
        assert merged["adminDecision"] is None

    def test_both_missing_gives_empty_shape(self):
        assert merge_dispute_details(None, None) == empty_details()


class TestRaiseDispute:
    """raise_dispute"""

    def test_scenario_d_raise_moves_job_to_disputed(self, session, scenarios, cast):
        job = scenarios.worker_job_under_review()
        dispute = DisputeResolutionService.raise_dispute(
            session, cast.alice, job.id, "Bags were left by the bridge",
            evidence_photo_url="https://img.example/bags.jpg",
        )
        session.commit()

        assert dispute.status == DisputeStatus.OPEN.value
        job = session.get(Job, job.id)
        assert job.status == JobStatus.DISPUTED.value
        assert job.funds_frozen is False, "Worker jobs carry no freeze flag"
        details = DisputeResolutionService.get_details(session, dispute)
        assert details["raisedEvidencePhotoUrl"] == "https://img.example/bags.jpg"

    def test_leader_job_dispute_freezes_funds(self, session, scenarios, cast):
        job = scenarios.leader_job_under_review()
        DisputeResolutionService.raise_dispute(session, cast.bob, job.id, "Receipts look wrong")
        session.commit()

        job = session.get(Job, job.id)
        assert job.status == JobStatus.DISPUTED.value
        assert job.funds_frozen is True

    def test_leader_cannot_reopen_review_over_open_dispute(self, session, scenarios, cast, wallets):
        job = scenarios.leader_job_under_review()
        DisputeResolutionService.raise_dispute(session, cast.alice, job.id, "Receipts look wrong")
        session.commit()
        deadline = session.get(Job, job.id).review_deadline

        for actor in (cast.leader, cast.admin):
            with pytest.raises(StateConflict, match="DISPUTED"):
                JobLifecycleService.update_job(session, actor, job.id, status="UNDER_REVIEW")
            session.rollback()

        job = session.get(Job, job.id)
        assert job.status == JobStatus.DISPUTED.value
        assert job.funds_frozen is True
        assert job.review_deadline == deadline
        assert wallets.balances("alice")[1] == Decimal("360.00"), "Staged refund must not double"
        assert wallets.balances("bob")[1] == Decimal("240.00")

    def test_only_contributors_dispute(self, session, scenarios, cast):
        job = scenarios.worker_job_under_review()
        with pytest.raises(AuthorizationError):
            DisputeResolutionService.raise_dispute(session, cast.carol, job.id, "Not happy")

    def test_dispute_after_deadline_rejected(self, session, scenarios, cast):
        job = scenarios.worker_job_under_review()
        with pytest.raises(StateConflict):
            DisputeResolutionService.raise_dispute(
                session, cast.alice, job.id, "Too late", now=get_naive_utc_now() + timedelta(hours=25)
            )

    def test_dispute_outside_review_rejected(self, session, scenarios, cast):
        job = scenarios.selected_worker_job()
        with pytest.raises(StateConflict):
            DisputeResolutionService.raise_dispute(session, cast.alice, job.id, "Early")

    def test_reason_required(self, session, scenarios, cast):
        job = scenarios.worker_job_under_review()
        with pytest.raises(ValidationError):
            DisputeResolutionService.raise_dispute(session, cast.alice, job.id, "  ")

    def test_one_dispute_per_contributor(self, session, scenarios, cast):
        """After an approval resumes review, the same contributor cannot dispute again"""
        job = scenarios.leader_job_under_review()
        dispute = DisputeResolutionService.raise_dispute(session, cast.alice, job.id, "First")
        DisputeResolutionService.decide(session, cast.admin, dispute.id, "APPROVE_WORK")
        session.commit()

        with pytest.raises(DuplicateDispute):
            DisputeResolutionService.raise_dispute(session, cast.alice, job.id, "Second")


class TestPartyResponses:
    """Worker responses and leader clarifications"""

    def test_worker_response_appended_and_mirrored(self, session, scenarios, cast):
        job = scenarios.worker_job_under_review()
        dispute = DisputeResolutionService.raise_dispute(session, cast.alice, job.id, "Bags left behind")
        DisputeResolutionService.add_worker_response(
            session, cast.worker, dispute.id, "Collected next morning", photo_url="https://img.example/r.jpg"
        )
        DisputeResolutionService.add_worker_response(session, cast.worker, dispute.id, "See depot receipt")
        session.commit()

        details = DisputeResolutionService.get_details(session, dispute)
        assert [r["message"] for r in details["workerResponses"]] == ["Collected next morning", "See depot receipt"]
        assert details["workerResponses"][0]["photoUrl"] == "https://img.example/r.jpg"

        proof = ProofService.get_proof(session, job.id)
        mirrored = proof.proof_metadata["disputeDetails"][str(dispute.id)]
        assert len(mirrored["workerResponses"]) == 2

    def test_mirror_used_when_record_missing(self, session, scenarios, cast):
        job = scenarios.worker_job_under_review()
        dispute = DisputeResolutionService.raise_dispute(
            session, cast.alice, job.id, "Bags left behind", evidence_photo_url="https://img.example/e.jpg"
        )
        session.commit()
        dispute.details = None
        session.commit()

        details = DisputeResolutionService.get_details(session, dispute)
        assert details["raisedEvidencePhotoUrl"] == "https://img.example/e.jpg"

    def test_only_selected_worker_responds(self, session, scenarios, cast):
        job = scenarios.worker_job_under_review()
        dispute = DisputeResolutionService.raise_dispute(session, cast.alice, job.id, "Bags left behind")
        with pytest.raises(AuthorizationError):
            DisputeResolutionService.add_worker_response(session, cast.worker2, dispute.id, "Not me")

    def test_leader_clarification(self, session, scenarios, cast):
        job = scenarios.worker_job_under_review()
        dispute = DisputeResolutionService.raise_dispute(session, cast.alice, job.id, "Bags left behind")
        DisputeResolutionService.add_leader_clarification(session, cast.leader, dispute.id, "Council collects Mondays")
        session.commit()

        details = DisputeResolutionService.get_details(session, dispute)
        assert details["leaderClarifications"][0]["message"] == "Council collects Mondays"

        with pytest.raises(AuthorizationError):
            DisputeResolutionService.add_leader_clarification(session, cast.bob, dispute.id, "Me too")

    def test_responses_require_open_dispute(self, session, scenarios, cast):
        job = scenarios.worker_job_under_review()
        dispute = DisputeResolutionService.raise_dispute(session, cast.alice, job.id, "Bags left behind")
        DisputeResolutionService.decide(session, cast.admin, dispute.id, "REJECT_WORK")
        session.commit()

        with pytest.raises(StateConflict):
            DisputeResolutionService.add_worker_response(session, cast.worker, dispute.id, "Too late")


class TestAdminDecision:
    """decide"""

    def test_only_admin_decides(self, session, scenarios, cast):
        job = scenarios.worker_job_under_review()
        dispute = DisputeResolutionService.raise_dispute(session, cast.alice, job.id, "Bags left behind")
        with pytest.raises(AuthorizationError):
            DisputeResolutionService.decide(session, cast.leader, dispute.id, "APPROVE_WORK")

    def test_unknown_action(self, session, scenarios, cast):
        job = scenarios.worker_job_under_review()
        dispute = DisputeResolutionService.raise_dispute(session, cast.alice, job.id, "Bags left behind")
        with pytest.raises(ValidationError):
            DisputeResolutionService.decide(session, cast.admin, dispute.id, "SPLIT_THE_DIFFERENCE")

    def test_scenario_d_reject_work_refunds_contributors(self, session, scenarios, cast, wallets):
        job = scenarios.worker_job_under_review()
        dispute = DisputeResolutionService.raise_dispute(session, cast.alice, job.id, "Bags left behind")
        result = DisputeResolutionService.decide(session, cast.admin, dispute.id, "REJECT_WORK", note="Photos inconclusive")
        session.commit()

        assert result.job.status == JobStatus.CANCELLED.value
        assert result.closed_dispute_ids == [dispute.id]
        assert session.get(Dispute, dispute.id).status == DisputeStatus.RESOLVED.value
        refunded = session.query(Contribution).filter_by(job_id=job.id).all()
        assert refunded and all(c.refunded for c in refunded), "Every contribution marked refunded"
        assert wallets.balances("alice")[0] == Decimal("1200.00")
        assert wallets.balances("bob")[0] == Decimal("900.00")
        assert wallets.tx_count("worker-1", WalletTransactionType.PAYOUT.value) == 0

        decision = DisputeResolutionService.get_details(session, dispute)["adminDecision"]
        assert decision["action"] == "REJECT_WORK"
        assert decision["decidedById"] == "admin-1"
        assert decision["note"] == "Photos inconclusive"

    def test_approve_work_pays_worker(self, session, scenarios, cast, wallets):
        job = scenarios.worker_job_under_review()
        dispute = DisputeResolutionService.raise_dispute(session, cast.alice, job.id, "Bags left behind")
        result = DisputeResolutionService.decide(session, cast.admin, dispute.id, "APPROVE_WORK")
        session.commit()

        assert result.job.status == JobStatus.COMPLETED.value
        assert session.get(Dispute, dispute.id).status == DisputeStatus.REJECTED.value
        assert wallets.balances("worker-1")[0] == Decimal("1710.00")
        assert UserDirectory.get_user(session, "worker-1").total_earnings == Decimal("1710.00")

    def test_leader_approve_resumes_review(self, session, scenarios, cast, wallets):
        job = scenarios.leader_job_under_review()
        deadline = job.review_deadline
        dispute = DisputeResolutionService.raise_dispute(session, cast.alice, job.id, "Receipts look wrong")
        DisputeResolutionService.decide(session, cast.admin, dispute.id, "APPROVE_WORK")
        session.commit()

        job = session.get(Job, job.id)
        assert job.status == JobStatus.UNDER_REVIEW.value
        assert job.funds_frozen is False
        assert job.review_deadline == deadline, "Deadline is not restarted"

        result = JobLifecycleService.finalize_review_if_eligible(
            session, job.id, now=get_naive_utc_now() + timedelta(days=8)
        )
        session.commit()
        assert result.finalized
        assert wallets.balances("alice") == (Decimal("360.00"), Decimal("0.00"))
        assert wallets.balances("leader-1")[0] == Decimal("400.00")

    def test_leader_reject_returns_whole_pool(self, session, scenarios, cast, wallets):
        """Staged shares are released, the remainder topped up, and the leader is not reimbursed"""
        job = scenarios.leader_job_under_review(expense="400")
        dispute = DisputeResolutionService.raise_dispute(session, cast.alice, job.id, "Receipts look wrong")
        DisputeResolutionService.decide(session, cast.admin, dispute.id, "REJECT_WORK")
        session.commit()

        job = session.get(Job, job.id)
        assert job.status == JobStatus.CANCELLED.value
        assert job.funds_frozen is True
        assert job.wallet_balance == Decimal("0.00")
        assert wallets.balances("alice") == (Decimal("600.00"), Decimal("0.00"))
        assert wallets.balances("bob") == (Decimal("400.00"), Decimal("0.00"))
        assert wallets.tx_count("leader-1", WalletTransactionType.PAYOUT.value) == 0

    def test_decision_closes_sibling_disputes(self, session, scenarios, cast):
        job = scenarios.leader_job_under_review()
        first = DisputeResolutionService.raise_dispute(session, cast.alice, job.id, "Receipts look wrong")
        DisputeResolutionService.decide(session, cast.admin, first.id, "APPROVE_WORK")
        second = DisputeResolutionService.raise_dispute(session, cast.bob, job.id, "Still wrong")
        result = DisputeResolutionService.decide(session, cast.admin, second.id, "REJECT_WORK")
        session.commit()

        assert result.closed_dispute_ids == [second.id]
        assert session.get(Dispute, first.id).status == DisputeStatus.REJECTED.value
        assert session.get(Dispute, second.id).status == DisputeStatus.RESOLVED.value

    def test_deciding_closed_dispute_conflicts(self, session, scenarios, cast):
        job = scenarios.worker_job_under_review()
        dispute = DisputeResolutionService.raise_dispute(session, cast.alice, job.id, "Bags left behind")
        DisputeResolutionService.decide(session, cast.admin, dispute.id, "APPROVE_WORK")
        session.commit()

        with pytest.raises(StateConflict):
            DisputeResolutionService.decide(session, cast.admin, dispute.id, "REJECT_WORK")


class TestListing:
    """list_disputes visibility"""

    def test_visibility_by_involvement(self, session, scenarios, cast):
        job = scenarios.worker_job_under_review()
        dispute = DisputeResolutionService.raise_dispute(session, cast.alice, job.id, "Bags left behind")
        session.commit()

        assert [d.id for d in DisputeResolutionService.list_disputes(session, cast.alice)] == [dispute.id]
        assert [d.id for d in DisputeResolutionService.list_disputes(session, cast.worker)] == [dispute.id]
        assert [d.id for d in DisputeResolutionService.list_disputes(session, cast.leader)] == [dispute.id]
        assert [d.id for d in DisputeResolutionService.list_disputes(session, cast.admin)] == [dispute.id]
        assert DisputeResolutionService.list_disputes(session, cast.bob) == []

    def test_status_filter(self, session, scenarios, cast):
        job = scenarios.worker_job_under_review()
        DisputeResolutionService.raise_dispute(session, cast.alice, job.id, "Bags left behind")
        session.commit()

        assert DisputeResolutionService.list_disputes(session, cast.admin, status="resolved") == []
        assert len(DisputeResolutionService.list_disputes(session, cast.admin, job_id=job.id, status="OPEN")) == 1
        with pytest.raises(ValidationError):
            DisputeResolutionService.list_disputes(session, cast.admin, status="MAYBE")
