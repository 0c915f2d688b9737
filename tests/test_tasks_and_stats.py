import pytest

from blueprints.stats_helpers import get_user_stats
from blueprints.task_helpers import DEFAULT_AVAILABLE_TASKS, complete_task, seed_available_tasks, start_task
from blueprints.withdraw_helpers import WithdrawalProcessor
from conftest import b2c_result, balance
from exceptions import NotFound, ValidationError
from ledger import LedgerStore
from models import AvailableTask, BalanceSource, Earning


class TestTaskCatalogue:

    def test_seed_is_idempotent(self, app):
        assert seed_available_tasks() == 8
        assert seed_available_tasks() == 0
        assert AvailableTask.query.count() == len(DEFAULT_AVAILABLE_TASKS)

    def test_rewards_per_category(self, app):
        seed_available_tasks()
        rewards = {t.type: t.reward for t in LedgerStore.available_tasks()}
        assert rewards == {"ad": 10, "tiktok": 5, "youtube": 15, "instagram": 7}


class TestTasks:

    def _available(self, task_type):
        seed_available_tasks()
        return AvailableTask.query.filter_by(type=task_type).first()

    def test_complete_credits_category_balance(self, app, make_user):
        user = make_user()
        task = start_task(user.id, self._available("youtube").id)
        assert task.amount == 15
        assert not task.completed

        task = complete_task(user.id, task.id)

        assert task.completed
        assert task.completed_at is not None
        assert balance(user, BalanceSource.YOUTUBE) == 15
        assert balance(user) == 0
        earning = Earning.query.filter_by(user_id=user.id).one()
        assert (earning.source, earning.amount) == ("youtube", 15)
        assert earning.description == "Task completion: youtube"

    def test_second_completion_rejected(self, app, make_user):
        user = make_user()
        task = start_task(user.id, self._available("ad").id)
        complete_task(user.id, task.id)

        with pytest.raises(ValidationError):
            complete_task(user.id, task.id)
        assert balance(user, BalanceSource.AD) == 10

    def test_other_users_task(self, app, make_user):
        owner = make_user()
        other = make_user()
        task = start_task(owner.id, self._available("tiktok").id)
        with pytest.raises(NotFound):
            complete_task(other.id, task.id)

    def test_unknown_available_task(self, app, make_user):
        user = make_user()
        with pytest.raises(NotFound):
            start_task(user.id, 999)


class TestStats:

    def test_dashboard_numbers(self, app, make_user):
        seed_available_tasks()
        top = make_user()
        user = make_user(referrer=top, account_balance=1200)
        LedgerStore.create_referral(user.id, make_user(referrer=user), level=1)
        LedgerStore.create_referral(user.id, make_user(), level=2)

        for task_type in ("ad", "instagram"):
            available = AvailableTask.query.filter_by(type=task_type).first()
            complete_task(user.id, start_task(user.id, available.id).id)

        stats = get_user_stats(user.id)

        assert stats["accountBalance"] == 1200
        assert stats["directReferrals"] == 1
        assert stats["secondaryReferrals"] == 1
        assert stats["taskEarnings"] == {"ads": 10, "tiktok": 0, "youtube": 0, "instagram": 7}
        assert stats["taskBalances"]["ads"] == 10
        assert stats["totalProfit"] == 1217
        assert stats["referralLink"] == f"http://localhost:5000/register?ref={user.referral_code}"

    def test_withdrawals_do_not_reduce_task_earnings(self, app, make_user):
        user = make_user(ad_balance=1000)
        LedgerStore.create_earning(user.id, BalanceSource.AD, 1000, "Task completion: ad")
        WithdrawalProcessor.initiate_withdrawal(user.id, "ad", 600, "Cash", "0712345678")

        stats = get_user_stats(user.id)

        assert stats["taskEarnings"]["ads"] == 1000
        assert stats["taskBalances"]["ads"] == 400

    def test_failed_payout_refund_is_not_income(self, app, make_user):
        user = make_user(ad_balance=1000)
        LedgerStore.create_earning(user.id, BalanceSource.AD, 1000, "Task completion: ad")
        WithdrawalProcessor.initiate_withdrawal(user.id, "ad", 600, "M-Pesa", "0712345678")
        WithdrawalProcessor.handle_disbursement_result(b2c_result(result_code=1))

        stats = get_user_stats(user.id)

        assert stats["taskEarnings"]["ads"] == 1000
        assert stats["taskBalances"]["ads"] == 1000
        assert stats["totalProfit"] == 1000
        assert LedgerStore.sum_earnings(user.id, BalanceSource.AD) == 1000

    def test_unknown_user(self, app):
        with pytest.raises(NotFound):
            get_user_stats(42)
