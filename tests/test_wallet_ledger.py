"""
Wallet Ledger Tests
Balance movements, lifetime counters and the transaction trail for every mutation
"""

import random
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from decimal import Decimal

from database import managed_session
from models import WalletTransactionStatus, WalletTransactionType
from services.user_directory import UserDirectory
from services.wallet_ledger import WalletLedger
from utils.exception_handler import InsufficientBalance, ValidationError


class TestWalletCreation:
    """Lazy wallet initialization"""

    def test_wallet_created_with_zero_balances(self, session, cast):
        wallet = WalletLedger.get_or_create_wallet(session, "alice")
        session.commit()

        assert wallet.user_id == "alice"
        assert wallet.available_balance == Decimal("0")
        assert wallet.frozen_balance == Decimal("0")
        assert wallet.total_deposited == Decimal("0")

    def test_get_or_create_is_idempotent(self, session, cast):
        first = WalletLedger.get_or_create_wallet(session, "bob")
        second = WalletLedger.get_or_create_wallet(session, "bob")
        assert first.id == second.id, "Second call must return the existing wallet"


class TestDepositsAndDebits:
    """add_money / deduct_from_wallet"""

    def test_add_money_credits_available_and_counter(self, session, cast, wallets):
        wallet, tx = WalletLedger.add_money(session, "alice", "500", external_ref="pay_001")
        session.commit()

        available, frozen = wallets.balances("alice")
        assert available == Decimal("500.00")
        assert frozen == Decimal("0.00")
        assert wallets.wallet("alice").total_deposited == Decimal("500.00")
        assert tx.type == WalletTransactionType.DEPOSIT.value
        assert tx.reference_id == "pay_001"

    def test_repeated_external_reference_credits_once(self, session, cast, wallets):
        """A gateway retry with the same reference must not double-credit"""
        _, first = WalletLedger.add_money(session, "alice", "250", external_ref="pay_dup")
        _, second = WalletLedger.add_money(session, "alice", "250", external_ref="pay_dup")
        session.commit()

        assert first.id == second.id
        assert wallets.balances("alice")[0] == Decimal("250.00")
        assert wallets.tx_count("alice", WalletTransactionType.DEPOSIT.value) == 1

    @pytest.mark.parametrize("amount", ["0", "-5", "abc", None, "NaN"])
    def test_invalid_amounts_rejected(self, session, cast, amount):
        with pytest.raises(ValidationError):
            WalletLedger.add_money(session, "alice", amount)

    def test_amounts_rounded_half_up(self, session, cast, wallets):
        WalletLedger.add_money(session, "alice", "10.005")
        session.commit()
        assert wallets.balances("alice")[0] == Decimal("10.01")

    def test_deduct_rejects_when_available_short(self, session, cast, wallets):
        WalletLedger.add_money(session, "alice", "100")
        session.commit()

        with pytest.raises(InsufficientBalance) as exc_info:
            WalletLedger.deduct_from_wallet(session, "alice", "150", WalletTransactionType.FEE)
        session.rollback()

        assert exc_info.value.available == Decimal("100.00")
        assert exc_info.value.required == Decimal("150.00")
        assert wallets.balances("alice")[0] == Decimal("100.00"), "Failed debit must not move money"

    def test_deduct_updates_total_spent(self, session, cast, wallets):
        WalletLedger.add_money(session, "alice", "300")
        WalletLedger.deduct_from_wallet(session, "alice", "120", WalletTransactionType.FEE, reference_id="fee-1")
        session.commit()

        wallet = wallets.wallet("alice")
        assert wallet.available_balance == Decimal("180.00")
        assert wallet.total_spent == Decimal("120.00")


class TestFrozenBalance:
    """Holds, staged refunds and releases"""

    def test_freeze_moves_available_to_frozen(self, session, cast, wallets):
        WalletLedger.add_money(session, "alice", "400")
        tx = WalletLedger.freeze_wallet_funds(session, "alice", "150", job_id=7)
        session.commit()

        assert wallets.balances("alice") == (Decimal("250.00"), Decimal("150.00"))
        assert tx.status == WalletTransactionStatus.PENDING.value
        assert tx.job_id == 7

    def test_freeze_requires_available_funds(self, session, cast):
        WalletLedger.add_money(session, "alice", "100")
        with pytest.raises(InsufficientBalance):
            WalletLedger.freeze_wallet_funds(session, "alice", "100.01", job_id=1)

    def test_add_to_frozen_leaves_available_untouched(self, session, cast, wallets):
        """Staging a refund increases frozen only"""
        WalletLedger.add_money(session, "bob", "100")
        WalletLedger.add_to_frozen(session, "bob", "40", note="Refund staged", job_id=3)
        session.commit()

        assert wallets.balances("bob") == (Decimal("100.00"), Decimal("40.00"))

    def test_unfreeze_releases_and_counts_refund(self, session, cast, wallets):
        WalletLedger.add_to_frozen(session, "bob", "240", note="Refund staged", job_id=3)
        WalletLedger.unfreeze_wallet_funds(session, "bob", "240", job_id=3)
        session.commit()

        wallet = wallets.wallet("bob")
        assert wallet.available_balance == Decimal("240.00")
        assert wallet.frozen_balance == Decimal("0.00")
        assert wallet.total_refunded == Decimal("240.00")

    def test_unfreeze_clamps_to_frozen_balance(self, session, cast, wallets):
        """Release never drives frozen negative and never raises"""
        WalletLedger.add_to_frozen(session, "bob", "50", note="Refund staged", job_id=4)
        tx = WalletLedger.unfreeze_wallet_funds(session, "bob", "80", job_id=4)
        session.commit()

        assert tx.amount == Decimal("50.00")
        assert wallets.balances("bob") == (Decimal("50.00"), Decimal("0.00"))

    def test_unfreeze_with_nothing_frozen_is_noop(self, session, cast, wallets):
        assert WalletLedger.unfreeze_wallet_funds(session, "carol", "10") is None
        session.commit()
        assert wallets.tx_count("carol") == 0

    def test_deduct_from_frozen_consumes_hold(self, session, cast, wallets):
        WalletLedger.add_money(session, "alice", "500")
        WalletLedger.freeze_wallet_funds(session, "alice", "200", job_id=9)
        WalletLedger.deduct_from_frozen(session, "alice", "200", job_id=9)
        session.commit()

        wallet = wallets.wallet("alice")
        assert wallet.available_balance == Decimal("300.00")
        assert wallet.frozen_balance == Decimal("0.00")
        assert wallet.total_spent == Decimal("200.00")


class TestPayoutsAndHistory:
    """Earnings credits and the transaction listing"""

    def test_credit_payout_updates_total_earnings(self, session, cast, wallets):
        WalletLedger.credit_payout(session, "worker-1", "1710", job_id=1, description="Payout")
        session.commit()

        assert wallets.balances("worker-1")[0] == Decimal("1710.00")
        assert UserDirectory.get_user(session, "worker-1").total_earnings == Decimal("1710.00")

    def test_refund_to_wallet_credits_available(self, session, cast, wallets):
        WalletLedger.refund_to_wallet(session, "alice", "75.50", job_id=2)
        session.commit()

        wallet = wallets.wallet("alice")
        assert wallet.available_balance == Decimal("75.50")
        assert wallet.total_refunded == Decimal("75.50")

    def test_every_mutation_writes_one_transaction(self, session, cast, wallets):
        WalletLedger.add_money(session, "alice", "500")
        WalletLedger.freeze_wallet_funds(session, "alice", "100", job_id=5)
        WalletLedger.deduct_from_frozen(session, "alice", "100", job_id=5)
        WalletLedger.deduct_from_wallet(session, "alice", "50", WalletTransactionType.WITHDRAWAL)
        WalletLedger.refund_to_wallet(session, "alice", "50")
        session.commit()

        assert wallets.tx_count("alice") == 5

    def test_transactions_newest_first_with_limit(self, session, cast):
        for i in range(5):
            WalletLedger.add_money(session, "alice", "100", external_ref=f"pay_{i}")
        session.commit()

        history = WalletLedger.get_transactions(session, "alice", limit=3)
        assert len(history) == 3
        assert [tx.reference_id for tx in history] == ["pay_4", "pay_3", "pay_2"]

    def test_non_positive_limit_rejected(self, session, cast):
        with pytest.raises(ValidationError):
            WalletLedger.get_transactions(session, "alice", limit=0)


@pytest.mark.concurrent
class TestConcurrentWalletMutations:
    """Parallel holds and debits against one wallet on a real file database"""

    def test_parallel_freezes_and_debits_never_overdraw(self, file_world):
        job = file_world.scenarios.create_job()
        with managed_session() as db:
            WalletLedger.add_money(db, "carol", "1000")

        rng = random.Random(20240501)
        # Every amount is at least 60, so 24 requests always ask for more than the 1000 deposited
        plans = [
            [(rng.choice(("freeze", "debit")), Decimal(rng.randint(6000, 15000)) / 100) for _ in range(3)]
            for _ in range(8)
        ]
        barrier = threading.Barrier(len(plans))

        def run(plan):
            barrier.wait()
            applied = []
            for op, amount in plan:
                try:
                    with managed_session() as db:
                        if op == "freeze":
                            WalletLedger.freeze_wallet_funds(db, "carol", amount, job.id)
                        else:
                            WalletLedger.deduct_from_wallet(
                                db, "carol", amount, WalletTransactionType.WITHDRAWAL, description="Cash out",
                            )
                    applied.append((op, amount))
                except InsufficientBalance:
                    applied.append((op, None))
            return applied

        with ThreadPoolExecutor(max_workers=len(plans)) as pool:
            results = [entry for applied in pool.map(run, plans) for entry in applied]

        frozen = sum((amount for op, amount in results if op == "freeze" and amount is not None), Decimal("0"))
        debited = sum((amount for op, amount in results if op == "debit" and amount is not None), Decimal("0"))
        rejected = sum(1 for _, amount in results if amount is None)

        wallet = file_world.wallets.wallet("carol")
        assert rejected >= 1
        assert wallet.available_balance >= Decimal("0")
        assert wallet.frozen_balance == frozen
        assert wallet.total_spent == debited
        assert wallet.available_balance == Decimal("1000.00") - frozen - debited
