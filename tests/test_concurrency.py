import threading

import pytest

from app import create_app
from blueprints.activation_helpers import ActivationProcessor
from blueprints.withdraw_helpers import WithdrawalProcessor
from config import TestConfig
from conftest import balance, stk_callback
from exceptions import DuplicatePendingActivation, InsufficientBalance, ServiceError
from extensions import db as _db
from ledger import LedgerStore
from models import MpesaTransaction, Referral, Withdrawal


@pytest.fixture
def app(tmp_path, gateway):
    """File-backed SQLite so each thread gets its own connection."""

    class FileBackedConfig(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'moneyqash.db'}"
        SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"check_same_thread": False, "timeout": 30}}

    app = create_app(FileBackedConfig)
    app.extensions["mpesa"] = gateway
    with app.app_context():
        _db.create_all()
        yield app
        _db.session.remove()
        _db.drop_all()


def _run_together(app, *calls):
    """Start every call at the same moment, each in its own thread and app context."""
    barrier = threading.Barrier(len(calls))
    outcomes = [None] * len(calls)

    def worker(index, call):
        with app.app_context():
            barrier.wait()
            try:
                outcomes[index] = call()
            except ServiceError as e:
                outcomes[index] = e
            finally:
                _db.session.remove()

    threads = [threading.Thread(target=worker, args=(i, call)) for i, call in enumerate(calls)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    assert not any(t.is_alive() for t in threads)
    return outcomes


class TestConcurrentActivation:

    def test_one_pending_attempt_per_user(self, app, make_user, gateway):
        user_id = make_user().id

        outcomes = _run_together(
            app,
            lambda: ActivationProcessor.initiate_activation(user_id, "0712345678"),
            lambda: ActivationProcessor.initiate_activation(user_id, "0712345678"),
        )

        accepted = [o for o in outcomes if isinstance(o, dict)]
        rejected = [o for o in outcomes if isinstance(o, DuplicatePendingActivation)]
        assert len(accepted) == 1
        assert len(rejected) == 1
        assert gateway.request_collection.call_count == 1
        assert MpesaTransaction.query.count() == 1
        assert len(LedgerStore.tracked_transactions(user_id)) == 1

    def test_referees_of_one_referrer(self, app, make_user):
        """Two referees activating together pay one first-referral reward and one later one."""
        referrer = make_user()
        referees = [make_user(referrer=referrer), make_user(referrer=referrer)]
        for referee in referees:
            LedgerStore.create_referral(referrer.id, referee, level=1)
        _db.session.commit()
        for referee in referees:
            ActivationProcessor.initiate_activation(referee.id, "0712345678")

        outcomes = _run_together(
            app,
            lambda: ActivationProcessor.handle_activation_callback(stk_callback("ws_CO_0001")),
            lambda: ActivationProcessor.handle_activation_callback(stk_callback("ws_CO_0002")),
        )

        assert [o["ResultCode"] for o in outcomes] == [0, 0]
        rewards = sorted(r.amount for r in Referral.query.filter_by(referrer_id=referrer.id))
        assert rewards == [270, 300]
        assert balance(referrer) == 570
        assert LedgerStore.sum_earnings(referrer.id, "referral") == 570


class TestConcurrentWithdrawals:

    def test_overdrawing_pair(self, app, make_user, gateway):
        """Two 600 withdrawals against 1000: one goes through and the balance stays >= 0."""
        user = make_user(account_balance=1000)
        user_id = user.id

        def withdraw():
            return WithdrawalProcessor.initiate_withdrawal(user_id, "referral", 600, "M-Pesa", "0712345678").id

        outcomes = _run_together(app, withdraw, withdraw)

        succeeded = [o for o in outcomes if isinstance(o, int)]
        rejected = [o for o in outcomes if isinstance(o, InsufficientBalance)]
        assert len(succeeded) == 1
        assert len(rejected) == 1
        assert rejected[0].available == 400
        assert gateway.request_disbursement.call_count == 1
        assert Withdrawal.query.count() == 1
        assert balance(user) == 400
