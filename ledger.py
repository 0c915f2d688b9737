# ==========================================================
#                  LEDGER STORE
# ==========================================================
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func

from extensions import db
from models import (
    AvailableTask, BalanceSource, Earning, EarningKind, MpesaTransaction, PaymentStatus,
    Referral, Task, User, Withdrawal, WithdrawalStatus, balance_field,
)


class LedgerStore:
    """
    Query and mutation helpers over the ledger tables. Nothing in here
    commits; callers own the unit of work.
    """

    # ---------------- users ----------------
    @staticmethod
    def get_user(user_id: int, for_update: bool = False) -> Optional[User]:
        query = User.query.filter_by(id=user_id)
        if for_update:
            query = query.with_for_update().populate_existing()
        return query.first()

    @staticmethod
    def get_user_by_username(username: str) -> Optional[User]:
        return User.query.filter_by(username=username).first()

    @staticmethod
    def get_user_by_referral_code(code: str) -> Optional[User]:
        return User.query.filter_by(referral_code=code).first()

    @staticmethod
    def create_user(**fields) -> User:
        password = fields.pop("password", None)
        user = User(**fields)
        if password is not None:
            user.set_password(password)
        db.session.add(user)
        db.session.flush()
        return user

    @staticmethod
    def update_user(user: User, **fields) -> User:
        for key, value in fields.items():
            setattr(user, key, value)
        db.session.flush()
        return user

    @staticmethod
    def adjust_balance(user: User, source, delta: int) -> User:
        """Add ``delta`` to the balance backing ``source`` as a single SQL increment."""
        column = balance_field(source)
        db.session.flush()
        db.session.query(User).filter(User.id == user.id).update(
            {column: getattr(User, column) + delta}, synchronize_session=False
        )
        db.session.refresh(user)
        return user

    # ---------------- referrals ----------------
    @staticmethod
    def create_referral(referrer_id: int, referred: User, level: int) -> Referral:
        referral = Referral(
            referrer_id=referrer_id,
            referred_id=referred.id,
            referred_username=referred.username,
            level=level,
            amount=0,
            is_active=False,
        )
        db.session.add(referral)
        db.session.flush()
        return referral

    @staticmethod
    def referrals_by_referred(referred_id: int) -> List[Referral]:
        return Referral.query.filter_by(referred_id=referred_id).order_by(Referral.level).all()

    @staticmethod
    def referrals_by_referrer(referrer_id: int) -> List[Referral]:
        return Referral.query.filter_by(referrer_id=referrer_id).order_by(Referral.created_at.desc()).all()

    @staticmethod
    def activated_users_with_unpaid_referrals() -> List[int]:
        rows = (db.session.query(Referral.referred_id)
                .join(User, User.id == Referral.referred_id)
                .filter(User.is_activated.is_(True), Referral.is_active.is_(False))
                .distinct().order_by(Referral.referred_id).all())
        return [row[0] for row in rows]

    @staticmethod
    def count_referrals(referrer_id: int, level: int, active: Optional[bool] = None) -> int:
        query = Referral.query.filter_by(referrer_id=referrer_id, level=level)
        if active is not None:
            query = query.filter_by(is_active=active)
        return query.count()

    # ---------------- earnings ----------------
    @staticmethod
    def create_earning(user_id: int, source, amount: int, description: str,
                       kind: EarningKind = EarningKind.INCOME) -> Earning:
        earning = Earning(
            user_id=user_id,
            source=BalanceSource.parse(source).value,
            amount=amount,
            kind=kind.value,
            description=description,
        )
        db.session.add(earning)
        db.session.flush()
        return earning

    @staticmethod
    def earnings_by_user(user_id: int) -> List[Earning]:
        return Earning.query.filter_by(user_id=user_id).order_by(Earning.created_at.desc(), Earning.id.desc()).all()

    @staticmethod
    def sum_earnings(user_id: int, source, income_only: bool = False) -> int:
        """Net of every entry, or only income when ``income_only`` (withdrawals and reversals left out)."""
        query = db.session.query(func.coalesce(func.sum(Earning.amount), 0)).filter(
            Earning.user_id == user_id,
            Earning.source == BalanceSource.parse(source).value,
        )
        if income_only:
            query = query.filter(Earning.kind == EarningKind.INCOME.value)
        return int(query.scalar() or 0)

    # ---------------- withdrawals ----------------
    @staticmethod
    def create_withdrawal(**fields) -> Withdrawal:
        withdrawal = Withdrawal(status=WithdrawalStatus.PENDING.value, **fields)
        db.session.add(withdrawal)
        db.session.flush()
        return withdrawal

    @staticmethod
    def get_withdrawal_by_conversation(conversation_id: Optional[str],
                                       originator_conversation_id: Optional[str] = None,
                                       for_update: bool = False) -> Optional[Withdrawal]:
        withdrawal = None
        for column, value in ((Withdrawal.mpesa_conversation_id, conversation_id),
                              (Withdrawal.mpesa_originator_conversation_id, originator_conversation_id)):
            if not value:
                continue
            query = Withdrawal.query.filter(column == value)
            if for_update:
                query = query.with_for_update().populate_existing()
            withdrawal = query.first()
            if withdrawal:
                break
        return withdrawal

    @staticmethod
    def withdrawals_by_user(user_id: int, limit: int = 50) -> List[Withdrawal]:
        return (Withdrawal.query.filter_by(user_id=user_id)
                .order_by(Withdrawal.created_at.desc(), Withdrawal.id.desc())
                .limit(limit).all())

    @staticmethod
    def stuck_withdrawals(before: datetime) -> List[Withdrawal]:
        return Withdrawal.query.filter(
            Withdrawal.status == WithdrawalStatus.PROCESSING.value,
            Withdrawal.created_at < before,
        ).all()

    # ---------------- M-Pesa transactions ----------------
    @staticmethod
    def create_mpesa_transaction(user_id: int, amount: int, phone_number: str) -> MpesaTransaction:
        transaction = MpesaTransaction(
            user_id=user_id,
            amount=amount,
            phone_number=phone_number,
            status=PaymentStatus.PENDING.value,
        )
        db.session.add(transaction)
        db.session.flush()
        return transaction

    @staticmethod
    def get_transaction_by_checkout(checkout_request_id: str, for_update: bool = False) -> Optional[MpesaTransaction]:
        query = MpesaTransaction.query.filter_by(checkout_request_id=checkout_request_id)
        if for_update:
            query = query.with_for_update().populate_existing()
        return query.first()

    @staticmethod
    def latest_transaction(user_id: int) -> Optional[MpesaTransaction]:
        return (MpesaTransaction.query.filter_by(user_id=user_id)
                .order_by(MpesaTransaction.id.desc()).first())

    @staticmethod
    def tracked_transactions(user_id: int) -> List[MpesaTransaction]:
        return MpesaTransaction.query.filter_by(user_id=user_id, is_tracked=True).all()

    @staticmethod
    def stale_tracked_transactions(before: datetime) -> List[MpesaTransaction]:
        return MpesaTransaction.query.filter(
            MpesaTransaction.is_tracked.is_(True),
            MpesaTransaction.status == PaymentStatus.PENDING.value,
            MpesaTransaction.created_at < before,
        ).order_by(MpesaTransaction.id).all()

    # ---------------- tasks ----------------
    @staticmethod
    def available_tasks() -> List[AvailableTask]:
        return AvailableTask.query.order_by(AvailableTask.id).all()

    @staticmethod
    def tasks_by_user(user_id: int) -> List[Task]:
        return Task.query.filter_by(user_id=user_id).order_by(Task.created_at.desc(), Task.id.desc()).all()
