"""
Review Deadline Sweeper Tests
Batch finalization, idempotency under repeated and concurrent sweeps, and the scheduler wiring
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal

import pytest

from jobs.review_deadline_sweeper import ReviewDeadlineSweeper, run_review_deadline_sweep
from jobs.scheduler import ReviewScheduler, get_scheduler_instance
from models import Dispute, DisputeStatus, Job, JobStatus, WalletTransactionType
from services.job_lifecycle import JobLifecycleService
from services.settlement_service import SettlementService
from utils.datetime_helpers import get_naive_utc_now
from utils.exception_handler import InternalConsistency


def after_worker_window():
    return get_naive_utc_now() + timedelta(hours=25)


class TestReviewDeadlineSweep:
    """ReviewDeadlineSweeper.run_sweep"""

    def test_scenario_e_sweep_completes_lapsed_jobs(self, session, scenarios, wallets):
        """Worker job past its deadline is paid; a leader job still inside its window is left alone"""
        worker_job = scenarios.worker_job_under_review()
        leader_job = scenarios.leader_job_under_review()

        results = ReviewDeadlineSweeper().run_sweep(after_worker_window())

        assert results["scanned"] == 1
        assert results["completed"] == [worker_job.id]
        assert results["errors"] == []
        session.expire_all()
        assert session.get(Job, worker_job.id).status == JobStatus.COMPLETED.value
        assert session.get(Job, leader_job.id).status == JobStatus.UNDER_REVIEW.value
        assert wallets.balances("worker-1")[0] == Decimal("1710.00")

    def test_second_sweep_finds_nothing(self, session, scenarios, wallets):
        scenarios.worker_job_under_review()
        now = after_worker_window()

        first = ReviewDeadlineSweeper().run_sweep(now)
        second = ReviewDeadlineSweeper().run_sweep(now)

        assert len(first["completed"]) == 1
        assert second["scanned"] == 0
        assert wallets.tx_count("worker-1", WalletTransactionType.PAYOUT.value) == 1

    def test_open_dispute_blocks_settlement(self, session, scenarios, cast, wallets):
        """A stray OPEN dispute on an UNDER_REVIEW job sends it to DISPUTED instead of paying"""
        job = scenarios.worker_job_under_review()
        session.add(Dispute(job_id=job.id, raised_by_id="bob", reason="Imported from old system",
                            status=DisputeStatus.OPEN.value))
        session.commit()

        results = ReviewDeadlineSweeper().run_sweep(after_worker_window())

        assert results["disputed"] == [job.id]
        session.expire_all()
        assert session.get(Job, job.id).status == JobStatus.DISPUTED.value
        assert wallets.tx_count(tx_type=WalletTransactionType.PAYOUT.value) == 0

    def test_batch_size_limits_each_sweep(self, session, scenarios):
        for _ in range(3):
            job = scenarios.leader_job_under_review(expense=None)
        later = get_naive_utc_now() + timedelta(days=8)

        sweeper = ReviewDeadlineSweeper(batch_size=2)
        first = sweeper.run_sweep(later)
        second = sweeper.run_sweep(later)

        assert first["scanned"] == 2
        assert second["scanned"] == 1
        assert job.id in second["completed"]

    def test_failing_job_reported_and_others_continue(self, session, scenarios, monkeypatch):
        broken = scenarios.worker_job_under_review()
        healthy = scenarios.leader_job_under_review(expense=None)
        original = SettlementService.pay_worker

        def failing_pay_worker(session_, job):
            if job.id == broken.id:
                raise InternalConsistency("payout backend unavailable")
            return original(session_, job)

        monkeypatch.setattr(SettlementService, "pay_worker", failing_pay_worker)

        results = ReviewDeadlineSweeper().run_sweep(get_naive_utc_now() + timedelta(days=8))

        assert results["errors"] == [{"job_id": broken.id, "error": "payout backend unavailable"}]
        assert results["completed"] == [healthy.id]
        session.expire_all()
        assert session.get(Job, broken.id).status == JobStatus.UNDER_REVIEW.value, "Failed settlement rolls back"
        assert session.get(Job, healthy.id).status == JobStatus.COMPLETED.value

    def test_read_and_sweep_do_not_double_settle(self, session, scenarios, wallets):
        job = scenarios.worker_job_under_review()
        job.review_deadline = get_naive_utc_now() - timedelta(minutes=1)
        session.commit()

        JobLifecycleService.get_job(session, job.id)
        results = ReviewDeadlineSweeper().run_sweep()

        assert results["scanned"] == 0
        assert wallets.tx_count("worker-1", WalletTransactionType.PAYOUT.value) == 1


@pytest.mark.concurrent
class TestConcurrentFinalization:
    """Parallel finalize calls against one job on a real file database"""

    def test_parallel_finalize_pays_exactly_once(self, file_world):
        job = file_world.scenarios.worker_job_under_review()
        now = after_worker_window()
        barrier = threading.Barrier(4)

        def finalize():
            barrier.wait()
            return JobLifecycleService.finalize_in_own_transaction(job.id, now)

        with ThreadPoolExecutor(max_workers=4) as pool:
            outcomes = [f.result() for f in [pool.submit(finalize) for _ in range(4)]]

        # A thread that lost to a lock timeout reports an error; one more pass settles any leftover
        outcomes.append(JobLifecycleService.finalize_in_own_transaction(job.id, now))

        assert sum(1 for r in outcomes if r.outcome == "completed") == 1
        assert all(r.outcome in ("completed", "not_eligible", "error") for r in outcomes)
        file_world.session.expire_all()
        assert file_world.session.get(Job, job.id).status == JobStatus.COMPLETED.value
        assert file_world.wallets.tx_count("worker-1", WalletTransactionType.PAYOUT.value) == 1
        assert file_world.wallets.balances("worker-1")[0] == Decimal("1710.00")


class TestScheduledSweep:
    """Async entry point and APScheduler wiring"""

    @pytest.mark.asyncio
    async def test_async_entry_point_runs_sweep(self, session, scenarios, wallets):
        job = scenarios.worker_job_under_review()

        results = await run_review_deadline_sweep(after_worker_window())

        assert results["completed"] == [job.id]
        assert wallets.balances("worker-1")[0] == Decimal("1710.00")

    @pytest.mark.asyncio
    async def test_async_entry_point_reports_errors(self, monkeypatch):
        def explode(self, now=None):
            raise RuntimeError("database unreachable")

        monkeypatch.setattr(ReviewDeadlineSweeper, "run_sweep", explode)
        results = await run_review_deadline_sweep()

        assert results["scanned"] == 0
        assert results["errors"] == [{"error": "database unreachable"}]

    @pytest.mark.asyncio
    async def test_scheduler_registers_interval_job(self):
        scheduler = ReviewScheduler(interval_minutes=15)
        scheduler.start()
        try:
            job = scheduler.scheduler.get_job(ReviewScheduler.SWEEP_JOB_ID)
            assert job is not None
            assert job.trigger.interval == timedelta(minutes=15)
            assert job.func is run_review_deadline_sweep
        finally:
            scheduler.stop()
        assert not scheduler.scheduler.running

    def test_scheduler_instance_is_shared(self):
        assert get_scheduler_instance() is get_scheduler_instance()
