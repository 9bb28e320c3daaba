"""Atomic transaction and row-locking utilities for job and wallet operations"""

import logging
from contextlib import contextmanager
from typing import Any, Generator

from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from database import SessionLocal
from utils.exception_handler import NotFound

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction() -> Generator[Session, None, None]:
    """Open a session, commit it on success, roll back on error and always close it."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
        logger.debug("Sync atomic transaction committed successfully")
    except Exception as e:
        session.rollback()
        logger.error(f"Sync transaction rolled back due to error: {e}")
        raise
    finally:
        session.close()


def _locked_fetch(label: str, fetch):
    """
    Run a locking fetch inside the caller's transaction.

    A deadlock or lock timeout aborts the whole transaction, so the error is
    re-raised untouched; the caller's unit of work rolls back and is retried
    from the start (next request or next sweep).
    """
    try:
        return fetch()
    except OperationalError as e:
        message = str(e).lower()
        if "deadlock detected" in message or "lock_timeout" in message:
            logger.warning(f"🔒 LOCK_CONFLICT: deadlock or lock timeout while locking {label}")
        else:
            logger.error(f"Database operational error while locking {label}: {e}")
        raise


def _sqlite_write_lock(session: Session, table: str, column: str, value) -> None:
    """SQLite has no row locks; a no-op write holds the database write lock until the transaction ends"""
    if session.get_bind().dialect.name == "sqlite":
        session.execute(text(f"UPDATE {table} SET {column} = {column} WHERE {column} = :value"), {"value": value})


def lock_job(session: Session, job_id: int) -> Any:
    """SELECT ... FOR UPDATE the job row; raises NotFound if it does not exist"""
    from models import Job

    _sqlite_write_lock(session, "jobs", "id", job_id)
    job = _locked_fetch(
        f"job {job_id}",
        lambda: session.execute(
            select(Job).where(Job.id == job_id).with_for_update()
        ).scalar_one_or_none(),
    )
    if job is None:
        raise NotFound(f"Job {job_id} not found")
    logger.debug(f"JOB_LOCKED: job {job_id}")
    return job


def lock_wallet(session: Session, user_id: str) -> Any:
    """
    SELECT ... FOR UPDATE the user's wallet row, creating it with zero balances first if needed.

    Concurrent creation uses INSERT ... ON CONFLICT DO NOTHING so the loser of the
    insert race simply locks the winner's row.
    """
    from models import Wallet

    def fetch():
        return session.execute(
            select(Wallet).where(Wallet.user_id == user_id).with_for_update()
        ).scalar_one_or_none()

    _sqlite_write_lock(session, "wallets", "user_id", user_id)
    wallet = _locked_fetch(f"wallet {user_id}", fetch)
    if wallet is not None:
        return wallet

    values = dict(
        user_id=user_id,
        available_balance=0,
        frozen_balance=0,
        total_deposited=0,
        total_spent=0,
        total_refunded=0,
    )
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as dialect_insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as dialect_insert
    else:
        dialect_insert = None

    if dialect_insert is not None:
        session.execute(
            dialect_insert(Wallet).values(**values).on_conflict_do_nothing(index_elements=["user_id"])
        )
    else:
        try:
            session.add(Wallet(**values))
            session.flush()
        except IntegrityError:
            logger.error(f"Wallet for user {user_id} created concurrently")
            raise
    logger.info(f"💼 WALLET_CREATED: user {user_id}")

    return _locked_fetch(f"wallet {user_id}", fetch)

