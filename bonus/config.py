# bonus/config.py
from typing import Any, Dict


class BonusConfigHelper:
    """
    Referral reward amounts by level.
    Level 1: 300 for the referrer's first activated direct referral, 270 after that.
    Level 2: flat 150.
    """

    FIRST_DIRECT_REWARD = 300
    DIRECT_REWARD = 270
    INDIRECT_REWARD = 150

    MAX_LEVEL = 2

    @staticmethod
    def get_reward_amount(level: int, active_direct_referrals: int = 0) -> int:
        """Reward for activating a referral at ``level``; 0 for unknown levels."""
        if level == 1:
            if active_direct_referrals == 0:
                return BonusConfigHelper.FIRST_DIRECT_REWARD
            return BonusConfigHelper.DIRECT_REWARD
        if level == 2:
            return BonusConfigHelper.INDIRECT_REWARD
        return 0

    @staticmethod
    def get_reward_summary() -> Dict[str, Any]:
        return {
            "level_1": {
                "first": BonusConfigHelper.FIRST_DIRECT_REWARD,
                "subsequent": BonusConfigHelper.DIRECT_REWARD,
            },
            "level_2": BonusConfigHelper.INDIRECT_REWARD,
            "max_level": BonusConfigHelper.MAX_LEVEL,
        }
