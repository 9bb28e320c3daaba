"""
Shared Test Fixtures for the Civic Cleanup Escrow Service

Key Components:
1. In-memory SQLite database rebound through database.configure_engine, fresh schema per test
2. Actor cast (leader, contributors, workers, admin) registered through the user directory
3. Scenario builders that walk jobs through the lifecycle via the real services
4. Wallet and transaction assertion helpers
"""

import os

# Must be set before config/database are imported anywhere
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["ENABLE_REVIEW_SWEEPER"] = "false"
os.environ["WORKER_PAYOUT_FEE_PERCENT"] = "5"
os.environ["WORKER_EXECUTION_FEE_PERCENT"] = "0"
os.environ["LEADER_EXECUTION_FEE_PERCENT"] = "0"

import logging
from decimal import Decimal
from types import SimpleNamespace
from typing import Dict, Optional

import pytest
from sqlalchemy import func, select

import database
from models import Base, ExecutionMode, Job, UserRole, Wallet, WalletTransaction
from services.contribution_accounting import ContributionAccounting
from services.job_lifecycle import JobLifecycleService
from services.proof_service import ProofService
from services.user_directory import UserDirectory
from services.worker_selection import WorkerSelectionService

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(autouse=True)
def db_engine():
    """Fresh in-memory schema for every test"""
    engine = database.configure_engine(TEST_DATABASE_URL)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session(db_engine):
    """Session on the test engine; tests commit explicitly before cross-session work"""
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.rollback()
        db.close()


def register_cast(session):
    """Register the standard actors and return them by nickname"""
    def actor(user_id: str, role: UserRole):
        return UserDirectory.actor_for(session, user_id, role.value)

    people = SimpleNamespace(
        leader=actor("leader-1", UserRole.LEADER),
        alice=actor("alice", UserRole.CONTRIBUTOR),
        bob=actor("bob", UserRole.CONTRIBUTOR),
        carol=actor("carol", UserRole.CONTRIBUTOR),
        worker=actor("worker-1", UserRole.WORKER),
        worker2=actor("worker-2", UserRole.WORKER),
        admin=actor("admin-1", UserRole.ADMIN),
    )
    session.commit()
    return people


@pytest.fixture
def cast(session):
    """Registered actors used across scenarios"""
    return register_cast(session)


class ScenarioBuilder:
    """Drives jobs through the lifecycle using the public service operations"""

    def __init__(self, session, cast):
        self.session = session
        self.cast = cast

    def create_job(self, target="2000", mode=ExecutionMode.WORKER_EXECUTION, title="Clean Riverside Park") -> Job:
        job = JobLifecycleService.create_job(
            self.session, self.cast.leader, title, target,
            description="Litter pickup along the river bank",
            location="Riverside Park",
            execution_mode=mode,
        )
        self.session.commit()
        return job

    def fund(self, job_id: int, contributions: Dict[str, str]) -> None:
        for user_id, amount in contributions.items():
            ContributionAccounting.create_contribution(self.session, job_id, user_id, amount)
        self.session.commit()

    def funded_worker_job(self) -> Job:
        """Target 2000 funded by alice 1200 + bob 900"""
        job = self.create_job("2000")
        self.fund(job.id, {"alice": "1200", "bob": "900"})
        return self.session.get(Job, job.id)

    def selected_worker_job(self, bid="1800") -> Job:
        job = self.funded_worker_job()
        application = WorkerSelectionService.create_application(self.session, self.cast.worker, job.id, bid)
        WorkerSelectionService.create_application(self.session, self.cast.worker2, job.id, "1500")
        WorkerSelectionService.update_application_status(self.session, self.cast.leader, application.id, "ACCEPTED")
        self.session.commit()
        return self.session.get(Job, job.id)

    def worker_job_under_review(self, bid="1800") -> Job:
        job = self.selected_worker_job(bid)
        JobLifecycleService.update_job(self.session, self.cast.worker, job.id, status="IN_PROGRESS")
        ProofService.create_proof(
            self.session, self.cast.worker, job.id,
            before_photo_url="https://img.example/before.jpg",
            after_photo_url="https://img.example/after.jpg",
            disposal_photo_url="https://img.example/disposal.jpg",
            captured_at="2024-05-01T10:00:00Z",
        )
        JobLifecycleService.update_job(
            self.session, self.cast.worker, job.id,
            status="AWAITING_VERIFICATION", worker_submission_message="All bags taken to the depot",
        )
        JobLifecycleService.update_job(self.session, self.cast.leader, job.id, status="UNDER_REVIEW")
        self.session.commit()
        return self.session.get(Job, job.id)

    def leader_job_in_progress(self, target="1000", contributions: Optional[Dict[str, str]] = None) -> Job:
        """Leader-executed job, auto-advanced to IN_PROGRESS by full funding"""
        job = self.create_job(target, mode=ExecutionMode.LEADER_EXECUTION, title="Clear Elm Street Lot")
        self.fund(job.id, contributions or {"alice": "600", "bob": "400"})
        return self.session.get(Job, job.id)

    def leader_job_under_review(self, expense="400") -> Job:
        job = self.leader_job_in_progress()
        if expense:
            ContributionAccounting.create_job_expense_transaction(
                self.session, job.id, self.cast.leader.user_id, expense, "Skip hire and gloves",
            )
        JobLifecycleService.update_job(self.session, self.cast.leader, job.id, status="UNDER_REVIEW")
        self.session.commit()
        return self.session.get(Job, job.id)


@pytest.fixture
def scenarios(session, cast):
    return ScenarioBuilder(session, cast)


@pytest.fixture
def file_world(db_engine, tmp_path):
    """
    File-backed SQLite database for tests that need real concurrent connections.

    Yields a namespace with its own session, cast, scenario builder and wallet helpers.
    """
    engine = database.configure_engine(f"sqlite:///{tmp_path}/concurrency.db")
    Base.metadata.create_all(engine)
    db = database.SessionLocal()
    try:
        people = register_cast(db)
        yield SimpleNamespace(
            session=db,
            cast=people,
            scenarios=ScenarioBuilder(db, people),
            wallets=WalletAssertions(db),
        )
    finally:
        db.rollback()
        db.close()
        engine.dispose()
        database.SessionLocal.configure(bind=db_engine)
        database.engine = db_engine


class WalletAssertions:
    """Balance and ledger assertion helpers"""

    def __init__(self, session):
        self.session = session

    def wallet(self, user_id: str) -> Optional[Wallet]:
        self.session.expire_all()
        return self.session.execute(select(Wallet).where(Wallet.user_id == user_id)).scalar_one_or_none()

    def balances(self, user_id: str):
        wallet = self.wallet(user_id)
        if wallet is None:
            return Decimal("0.00"), Decimal("0.00")
        return wallet.available_balance, wallet.frozen_balance

    def tx_count(self, user_id: Optional[str] = None, tx_type: Optional[str] = None,
                 job_id: Optional[int] = None) -> int:
        stmt = select(func.count(WalletTransaction.id))
        if user_id is not None:
            stmt = stmt.where(WalletTransaction.user_id == user_id)
        if tx_type is not None:
            stmt = stmt.where(WalletTransaction.type == tx_type)
        if job_id is not None:
            stmt = stmt.where(WalletTransaction.job_id == job_id)
        return self.session.execute(stmt).scalar_one()


@pytest.fixture
def wallets(session):
    return WalletAssertions(session)


def pytest_configure(config):
    """Configure pytest with custom marks"""
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "concurrent: Concurrent execution tests")
    config.addinivalue_line("markers", "api: API endpoint tests")
