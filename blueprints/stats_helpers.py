from typing import Any, Dict

from flask import current_app

from exceptions import NotFound
from ledger import LedgerStore
from models import BalanceSource


def get_user_stats(user_id: int) -> Dict[str, Any]:
    """
    Dashboard numbers: referral counts, referral link, task income
    per category and total profit (account balance + task earnings).
    """
    user = LedgerStore.get_user(user_id)
    if user is None:
        raise NotFound("User not found")

    task_earnings = {
        "ads": LedgerStore.sum_earnings(user_id, BalanceSource.AD, income_only=True),
        "tiktok": LedgerStore.sum_earnings(user_id, BalanceSource.TIKTOK, income_only=True),
        "youtube": LedgerStore.sum_earnings(user_id, BalanceSource.YOUTUBE, income_only=True),
        "instagram": LedgerStore.sum_earnings(user_id, BalanceSource.INSTAGRAM, income_only=True),
    }
    account_balance = user.account_balance or 0

    return {
        "accountBalance": account_balance,
        "totalProfit": account_balance + sum(task_earnings.values()),
        "directReferrals": LedgerStore.count_referrals(user_id, level=1),
        "secondaryReferrals": LedgerStore.count_referrals(user_id, level=2),
        "referralLink": f"{current_app.config['APP_URL'].rstrip('/')}/register?ref={user.referral_code}",
        "taskEarnings": task_earnings,
        "taskBalances": {
            "ads": user.ad_balance,
            "tiktok": user.tiktok_balance,
            "youtube": user.youtube_balance,
            "instagram": user.instagram_balance,
        },
    }
