import logging
from typing import List

from exceptions import ValidationError
from ledger import LedgerStore
from models import Referral, User


logger = logging.getLogger(__name__)


class ReferralTreeHelper:
    """
    Two-level referral graph. Edges are created inactive with amount 0 when a
    user registers and are paid out by ``BonusPaymentHelper`` on activation.
    """

    @staticmethod
    def add_new_user(new_user: User, referrer: User) -> List[Referral]:
        """
        Attach ``new_user`` below ``referrer``: one level-1 edge, plus a level-2
        edge to the referrer's own referrer when there is one.
        Must be called inside an existing transaction (no commit here).
        """
        if new_user.id == referrer.id:
            logger.warning(f"User {new_user.id} attempted self-referral.")
            raise ValidationError("Cannot use your own referral code")

        edges = [LedgerStore.create_referral(referrer.id, new_user, level=1)]
        logger.info(f"[REFERRAL] Created level 1 referral: Referrer({referrer.id}) -> NewUser({new_user.id})")

        grand_referrer_id = referrer.referrer_id
        if grand_referrer_id and grand_referrer_id != new_user.id:
            edges.append(LedgerStore.create_referral(grand_referrer_id, new_user, level=2))
            logger.info(
                f"[REFERRAL] Created level 2 referral: Level2Referrer({grand_referrer_id}) -> NewUser({new_user.id})"
            )
        return edges
