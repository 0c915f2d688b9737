# models.py - Flask-SQLAlchemy models for users, referrals, earnings, withdrawals and M-Pesa transactions
import enum
from datetime import datetime, timezone

from flask_login import UserMixin
from sqlalchemy import Index, UniqueConstraint
from werkzeug.security import check_password_hash, generate_password_hash

from extensions import db
from exceptions import ValidationError


def utcnow():
    return datetime.now(timezone.utc)


# ===========================================================
# ENUM DEFINITIONS
# ===========================================================

class BalanceSource(enum.Enum):
    """Balance counters a user can earn into and withdraw from."""
    REFERRAL = "referral"
    AD = "ad"
    TIKTOK = "tiktok"
    YOUTUBE = "youtube"
    INSTAGRAM = "instagram"

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError("Invalid withdrawal source")


TASK_SOURCES = (BalanceSource.AD, BalanceSource.TIKTOK, BalanceSource.YOUTUBE, BalanceSource.INSTAGRAM)

_BALANCE_FIELDS = {
    BalanceSource.REFERRAL: "account_balance",
    BalanceSource.AD: "ad_balance",
    BalanceSource.TIKTOK: "tiktok_balance",
    BalanceSource.YOUTUBE: "youtube_balance",
    BalanceSource.INSTAGRAM: "instagram_balance",
}


def balance_field(source: BalanceSource) -> str:
    """Name of the ``User`` column backing ``source``."""
    return _BALANCE_FIELDS[BalanceSource.parse(source)]


class PaymentStatus(enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WithdrawalStatus(enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self):
        return self in (WithdrawalStatus.COMPLETED, WithdrawalStatus.FAILED)


class EarningKind(enum.Enum):
    """Income counts towards stats; withdrawals and their reversals only move balances."""
    INCOME = "income"
    WITHDRAWAL = "withdrawal"
    REVERSAL = "reversal"


class ActivationState(enum.Enum):
    UNACTIVATED = "unactivated"
    AWAITING_CALLBACK = "awaiting-callback"
    ACTIVATED = "activated"


# ===========================================================
# BASE MIXIN FOR COMMON FIELDS
# ===========================================================

class BaseMixin:
    """Provides created_at and updated_at timestamps to inheriting models."""
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ===========================================================
# USER
# ===========================================================

class User(UserMixin, db.Model, BaseMixin):
    """Core user entity with one general balance and one balance per task category."""
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    full_name = db.Column(db.String(150), nullable=False)
    phone = db.Column(db.String(20), nullable=True)
    withdrawal_phone = db.Column(db.String(20), nullable=True)

    is_activated = db.Column(db.Boolean, default=False, nullable=False)
    account_balance = db.Column(db.Integer, default=0, nullable=False)
    ad_balance = db.Column(db.Integer, default=0, nullable=False)
    tiktok_balance = db.Column(db.Integer, default=0, nullable=False)
    youtube_balance = db.Column(db.Integer, default=0, nullable=False)
    instagram_balance = db.Column(db.Integer, default=0, nullable=False)

    referral_code = db.Column(db.String(20), unique=True, nullable=False)
    referrer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    referrer = db.relationship("User", remote_side=[id], backref="direct_referees")

    __table_args__ = (
        db.CheckConstraint("account_balance >= 0", name="chk_account_balance"),
        db.CheckConstraint("ad_balance >= 0", name="chk_ad_balance"),
        db.CheckConstraint("tiktok_balance >= 0", name="chk_tiktok_balance"),
        db.CheckConstraint("youtube_balance >= 0", name="chk_youtube_balance"),
        db.CheckConstraint("instagram_balance >= 0", name="chk_instagram_balance"),
    )

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def balance_for(self, source) -> int:
        return getattr(self, balance_field(source)) or 0

    def reset_balances(self):
        for source in BalanceSource:
            setattr(self, balance_field(source), 0)

    def to_dict(self):
        return {
            "id": self.id,
            "username": self.username,
            "fullName": self.full_name,
            "phone": self.phone,
            "withdrawalPhone": self.withdrawal_phone,
            "isActivated": self.is_activated,
            "accountBalance": self.account_balance,
            "adBalance": self.ad_balance,
            "tiktokBalance": self.tiktok_balance,
            "youtubeBalance": self.youtube_balance,
            "instagramBalance": self.instagram_balance,
            "referralCode": self.referral_code,
            "referrerId": self.referrer_id,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


# ===========================================================
# REFERRALS
# ===========================================================

class Referral(db.Model, BaseMixin):
    """One level-1 (direct) or level-2 (one hop removed) referral edge."""
    __tablename__ = "referrals"

    id = db.Column(db.Integer, primary_key=True)
    referrer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    referred_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    referred_username = db.Column(db.String(255), nullable=False)
    level = db.Column(db.Integer, nullable=False, default=1)
    amount = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=False)
    activated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    referrer = db.relationship("User", foreign_keys=[referrer_id], backref="referrals_made")
    referred = db.relationship("User", foreign_keys=[referred_id], backref="referrals_received")

    __table_args__ = (
        UniqueConstraint("referred_id", "level", name="uq_referral_referred_level"),
        db.CheckConstraint("level IN (1, 2)", name="chk_referral_level"),
        Index("idx_referral_referrer_level", "referrer_id", "level", "is_active"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "referrerId": self.referrer_id,
            "referredId": self.referred_id,
            "referredUsername": self.referred_username,
            "level": self.level,
            "amount": self.amount,
            "isActive": self.is_active,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


# ===========================================================
# EARNINGS (append-only ledger)
# ===========================================================

class Earning(db.Model):
    __tablename__ = "earnings"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    source = db.Column(db.String(20), nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    kind = db.Column(db.String(20), nullable=False, default=EarningKind.INCOME.value)
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_earning_user_source", "user_id", "source"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "source": self.source,
            "amount": self.amount,
            "kind": self.kind,
            "description": self.description,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


# ===========================================================
# WITHDRAWALS
# ===========================================================

class Withdrawal(db.Model, BaseMixin):
    __tablename__ = "withdrawals"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    source = db.Column(db.String(20), nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    fee = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), nullable=False, default=WithdrawalStatus.PENDING.value)
    payment_method = db.Column(db.String(50), nullable=False)
    phone_number = db.Column(db.String(20))
    mpesa_conversation_id = db.Column(db.String(100), index=True)
    mpesa_originator_conversation_id = db.Column(db.String(100), index=True)
    mpesa_receipt_number = db.Column(db.String(50))
    failure_reason = db.Column(db.Text)
    processed_at = db.Column(db.DateTime(timezone=True))
    completed_at = db.Column(db.DateTime(timezone=True))

    user = db.relationship("User", backref=db.backref("withdrawals", lazy=True))

    @property
    def net_amount(self):
        return self.amount - self.fee

    @property
    def status_enum(self):
        return WithdrawalStatus(self.status)

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "source": self.source,
            "amount": self.amount,
            "fee": self.fee,
            "netAmount": self.net_amount,
            "status": self.status,
            "paymentMethod": self.payment_method,
            "phoneNumber": self.phone_number,
            "mpesaConversationId": self.mpesa_conversation_id,
            "mpesaOriginatorConversationId": self.mpesa_originator_conversation_id,
            "mpesaReceiptNumber": self.mpesa_receipt_number,
            "failureReason": self.failure_reason,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "processedAt": self.processed_at.isoformat() if self.processed_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }


# ===========================================================
# M-PESA ACTIVATION TRANSACTIONS
# ===========================================================

class MpesaTransaction(db.Model, BaseMixin):
    """
    One STK push attempt to pay the activation fee. ``is_tracked`` marks the
    attempt the user is awaiting a callback for; it replaces an in-memory
    CheckoutRequestID -> user map so in-flight activations survive restarts.
    """
    __tablename__ = "mpesa_transactions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    checkout_request_id = db.Column(db.String(100), unique=True, nullable=True)
    merchant_request_id = db.Column(db.String(100), unique=True, nullable=True)
    status = db.Column(db.String(20), nullable=False, default=PaymentStatus.PENDING.value)
    amount = db.Column(db.Integer, nullable=False)
    phone_number = db.Column(db.String(20))
    mpesa_receipt_number = db.Column(db.String(50))
    result_code = db.Column(db.Integer)
    result_desc = db.Column(db.Text)
    is_tracked = db.Column(db.Boolean, nullable=False, default=False)

    user = db.relationship("User", backref=db.backref("mpesa_transactions", lazy=True))

    __table_args__ = (
        Index("idx_mpesa_user_tracked", "user_id", "is_tracked"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "checkoutRequestId": self.checkout_request_id,
            "merchantRequestId": self.merchant_request_id,
            "status": self.status,
            "amount": self.amount,
            "mpesaReceiptNumber": self.mpesa_receipt_number,
            "resultCode": self.result_code,
            "resultDesc": self.result_desc,
        }


# ===========================================================
# TASKS
# ===========================================================

class AvailableTask(db.Model):
    __tablename__ = "available_tasks"

    id = db.Column(db.Integer, primary_key=True)
    type = db.Column(db.String(20), nullable=False)
    description = db.Column(db.Text, nullable=False)
    duration = db.Column(db.String(50), nullable=False)
    reward = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.type,
            "description": self.description,
            "duration": self.duration,
            "reward": self.reward,
        }


class Task(db.Model):
    __tablename__ = "tasks"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    available_task_id = db.Column(db.Integer, db.ForeignKey("available_tasks.id"), nullable=True)
    type = db.Column(db.String(20), nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    description = db.Column(db.Text)
    duration = db.Column(db.String(50))
    completed = db.Column(db.Boolean, default=False, nullable=False)
    completed_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "availableTaskId": self.available_task_id,
            "type": self.type,
            "amount": self.amount,
            "description": self.description,
            "duration": self.duration,
            "completed": self.completed,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
