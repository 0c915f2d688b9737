import pytest

from blueprints.signup_helpers import register_user
from bonus.bonus_payment import BonusPaymentHelper
from bonus.config import BonusConfigHelper
from bonus.referral_tree import ReferralTreeHelper
from conftest import balance
from exceptions import ValidationError
from ledger import LedgerStore
from models import BalanceSource, Earning, Referral, User


def _register(username, code=None):
    return register_user(username, "secret123", username.title(), "0712345678", referral_code=code)


def _activate(db, user):
    user.is_activated = True
    db.session.commit()
    return BonusPaymentHelper.process_referral_rewards(user.id)


class TestRegistration:

    def test_without_referral_code(self, app):
        """No referral code means no edges."""
        a = _register("alice")
        assert Referral.query.count() == 0
        assert a.referrer_id is None
        assert len(a.referral_code) == 6
        assert a.referral_code.isupper() or a.referral_code.isdigit()
        assert a.check_password("secret123")

    def test_level_one_edge(self, app):
        a = _register("alice")
        b = _register("bob", a.referral_code)

        edges = LedgerStore.referrals_by_referred(b.id)
        assert len(edges) == 1
        edge = edges[0]
        assert (edge.referrer_id, edge.level, edge.amount, edge.is_active) == (a.id, 1, 0, False)
        assert edge.referred_username == "bob"
        assert b.referrer_id == a.id

    def test_level_two_edge_when_referrer_was_referred(self, app):
        a = _register("alice")
        b = _register("bob", a.referral_code)
        c = _register("carol", b.referral_code)

        edges = {e.level: e for e in LedgerStore.referrals_by_referred(c.id)}
        assert set(edges) == {1, 2}
        assert edges[1].referrer_id == b.id
        assert edges[2].referrer_id == a.id
        assert not edges[2].is_active and edges[2].amount == 0

    def test_code_is_case_insensitive(self, app):
        a = _register("alice")
        b = _register("bob", a.referral_code.lower())
        assert b.referrer_id == a.id

    def test_unknown_referral_code(self, app):
        with pytest.raises(ValidationError):
            _register("bob", "NOPE42")
        assert User.query.count() == 0

    def test_duplicate_username(self, app):
        _register("alice")
        with pytest.raises(ValidationError):
            _register("alice")

    @pytest.mark.parametrize("password", ["", "short"])
    def test_weak_password(self, app, password):
        with pytest.raises(ValidationError):
            register_user("dave", password, "Dave", None)

    def test_self_referral_rejected(self, app, make_user):
        user = make_user()
        with pytest.raises(ValidationError):
            ReferralTreeHelper.add_new_user(user, user)


class TestRewardAmounts:

    def test_amount_law(self):
        assert BonusConfigHelper.get_reward_amount(1, 0) == 300
        assert BonusConfigHelper.get_reward_amount(1, 1) == 270
        assert BonusConfigHelper.get_reward_amount(1, 7) == 270
        assert BonusConfigHelper.get_reward_amount(2, 0) == 150
        assert BonusConfigHelper.get_reward_amount(2, 9) == 150
        assert BonusConfigHelper.get_reward_amount(3) == 0

    def test_summary(self):
        summary = BonusConfigHelper.get_reward_summary()
        assert summary["level_1"] == {"first": 300, "subsequent": 270}
        assert summary["level_2"] == 150


class TestRewardEngine:

    def test_activation_chain(self, app, db):
        """A refers B, B refers C; B then C activate."""
        a = _register("alice")
        b = _register("bob", a.referral_code)
        c = _register("carol", b.referral_code)

        payouts = _activate(db, b)
        assert [(p["referrer_id"], p["level"], p["amount"]) for p in payouts] == [(a.id, 1, 300)]
        assert balance(a) == 300

        payouts = _activate(db, c)
        assert sorted((p["referrer_id"], p["level"], p["amount"]) for p in payouts) == sorted(
            [(b.id, 1, 300), (a.id, 2, 150)]
        )
        assert balance(b) == 300
        assert balance(a) == 450

        earnings = Earning.query.filter_by(user_id=a.id).order_by(Earning.id).all()
        assert [(e.source, e.amount) for e in earnings] == [("referral", 300), ("referral", 150)]
        assert LedgerStore.sum_earnings(a.id, BalanceSource.REFERRAL) == balance(a)

    def test_subsequent_direct_referrals_pay_270(self, app, db):
        a = _register("alice")
        referred = [_register(f"user{i}", a.referral_code) for i in range(3)]

        amounts = [_activate(db, u)[0]["amount"] for u in referred]
        assert amounts == [300, 270, 270]
        assert balance(a) == 840
        assert LedgerStore.count_referrals(a.id, level=1, active=True) == 3

    def test_rewards_paid_once(self, app, db):
        """Running the engine again for the same user pays nothing."""
        a = _register("alice")
        b = _register("bob", a.referral_code)

        assert len(_activate(db, b)) == 1
        assert BonusPaymentHelper.process_referral_rewards(b.id) == []
        assert balance(a) == 300
        assert Earning.query.filter_by(user_id=a.id).count() == 1

    def test_user_without_referrer(self, app, db):
        a = _register("alice")
        assert _activate(db, a) == []
        assert Earning.query.count() == 0

    def test_inactive_referrer_still_rewarded(self, app, db):
        """Referrers do not need to be activated to earn."""
        a = _register("alice")
        b = _register("bob", a.referral_code)
        assert not a.is_activated
        _activate(db, b)
        assert balance(a) == 300
