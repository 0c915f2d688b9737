import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError

from bonus.referral_tree import ReferralTreeHelper
from exceptions import ValidationError
from extensions import db
from ledger import LedgerStore
from models import User
from utils import generate_referral_code


logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6


def register_user(username: str, password: str, full_name: str, phone: Optional[str] = None,
                  referral_code: Optional[str] = None) -> User:
    """
    Create a user and hang them in the referral tree. With a referral code,
    a level-1 edge to its owner is created, plus a level-2 edge when that
    owner was referred too. Edges start inactive with amount 0.
    """
    username = (username or "").strip()
    full_name = (full_name or "").strip()
    referral_code = (referral_code or "").strip().upper()

    if not username or not password or not full_name:
        raise ValidationError("Username, password and full name are required")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if LedgerStore.get_user_by_username(username):
        raise ValidationError("Username already exists")

    referrer = None
    if referral_code:
        referrer = LedgerStore.get_user_by_referral_code(referral_code)
        if referrer is None:
            raise ValidationError("Invalid referral code")

    try:
        new_user = LedgerStore.create_user(
            username=username,
            password=password,
            full_name=full_name,
            phone=(phone or "").strip() or None,
            referral_code=generate_referral_code(lambda code: LedgerStore.get_user_by_referral_code(code) is not None),
            referrer_id=referrer.id if referrer else None,
        )
        if referrer:
            ReferralTreeHelper.add_new_user(new_user, referrer)
        db.session.commit()
    except ValidationError:
        db.session.rollback()
        raise
    except IntegrityError:
        db.session.rollback()
        logger.warning(f"[SIGNUP] Integrity error registering {username}")
        raise ValidationError("Username already exists")

    logger.info(f"[SIGNUP] Registered user {new_user.id} ({username}), referrer: {referrer.id if referrer else None}")
    return new_user
