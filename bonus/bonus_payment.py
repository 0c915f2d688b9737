import logging
from typing import Any, Dict, List

from sqlalchemy.exc import SQLAlchemyError

from bonus.config import BonusConfigHelper
from extensions import db
from ledger import LedgerStore
from models import BalanceSource, Referral, utcnow
from utils import balance_locks


logger = logging.getLogger(__name__)


class BonusPaymentHelper:
    """Pays referral rewards once a referred user has activated."""

    @staticmethod
    def process_referral_rewards(activated_user_id: int) -> List[Dict[str, Any]]:
        """
        Activate and pay every inactive referral edge pointing at
        ``activated_user_id``. Each edge is settled in its own transaction
        while holding its referrer's balance lock, so the "first active
        referral" count cannot be observed twice. Already active edges are
        skipped; running this again for the same user pays nothing.
        """
        logger.info(f"[REFERRAL_REWARDS] Processing rewards for activated user: {activated_user_id}")
        payouts = []

        edge_ids = [edge.id for edge in LedgerStore.referrals_by_referred(activated_user_id)]
        for edge_id in edge_ids:
            try:
                payout = BonusPaymentHelper._settle_edge(edge_id)
            except SQLAlchemyError:
                db.session.rollback()
                logger.exception(f"[REFERRAL_REWARDS] Failed to settle referral {edge_id} for user {activated_user_id}")
                raise
            if payout:
                payouts.append(payout)

        return payouts

    @staticmethod
    def _settle_edge(edge_id: int):
        edge = db.session.get(Referral, edge_id)
        if edge is None or edge.is_active:
            return None

        with balance_locks.hold(edge.referrer_id):
            edge = Referral.query.filter_by(id=edge_id).with_for_update().populate_existing().first()
            if edge.is_active:
                return None

            referrer = LedgerStore.get_user(edge.referrer_id, for_update=True)
            if referrer is None:
                logger.error(f"[REFERRAL_REWARDS] Referrer not found: {edge.referrer_id}")
                return None

            active_direct = 0
            if edge.level == 1:
                active_direct = LedgerStore.count_referrals(referrer.id, level=1, active=True)
            reward = BonusConfigHelper.get_reward_amount(edge.level, active_direct)
            if reward <= 0:
                return None

            edge.is_active = True
            edge.amount = reward
            edge.activated_at = utcnow()
            LedgerStore.create_earning(
                referrer.id,
                BalanceSource.REFERRAL,
                reward,
                f"Level {edge.level} referral reward for user activation",
            )
            LedgerStore.adjust_balance(referrer, BalanceSource.REFERRAL, reward)
            db.session.commit()

        logger.info(
            f"[REFERRAL_REWARDS] Level {edge.level} reward processed: {reward} for referrer: {referrer.username}"
        )
        return {
            "referral_id": edge.id,
            "referrer_id": referrer.id,
            "level": edge.level,
            "amount": reward,
        }
