import logging
from typing import Any, Dict, Optional

from flask import current_app

from blueprints.payments_helpers import get_gateway
from exceptions import (
    GatewayError, InsufficientBalance, MalformedCallback, NotFound, ServiceError,
    UnknownTransaction, ValidationError,
)
from extensions import db
from ledger import LedgerStore
from logger import payments_logger
from models import BalanceSource, EarningKind, Withdrawal, WithdrawalStatus, utcnow
from utils import balance_locks, clean_phone, is_mpesa_method, normalize_msisdn


logger = logging.getLogger(__name__)


# ==========================================================
#                  CONFIGURATION
# ==========================================================
class WithdrawalConfig:

    @staticmethod
    def min_amount() -> int:
        return current_app.config["WITHDRAWAL_MIN_AMOUNT"]

    @staticmethod
    def fee() -> int:
        return current_app.config["WITHDRAWAL_FEE"]


# ==========================================================
#                  WITHDRAWAL VALIDATOR
# ==========================================================
class WithdrawalValidator:

    @staticmethod
    def parse_amount(amount) -> int:
        if isinstance(amount, bool):
            raise ValidationError("Invalid amount format")
        try:
            number = float(amount)
            value = int(number)
        except (TypeError, ValueError, OverflowError):
            raise ValidationError("Invalid amount format")
        if number != value:
            raise ValidationError("Amount must be a whole number")
        if value < WithdrawalConfig.min_amount():
            raise ValidationError(f"Minimum withdrawal amount is {WithdrawalConfig.min_amount()} Sh")
        return value

    @staticmethod
    def destination_phone(payment_method: str, phone_number: str) -> str:
        if not payment_method:
            raise ValidationError("Payment method is required")
        if is_mpesa_method(payment_method):
            return normalize_msisdn(phone_number)
        phone = clean_phone(phone_number)
        if not phone:
            raise ValidationError("Phone number is required")
        return phone


# ==========================================================
#                  WITHDRAWAL PROCESSOR
# ==========================================================
class WithdrawalProcessor:
    """
    Withdrawal settlement. A balance is only debited, always together with a
    negative Earning, once money is moving (M-Pesa accepted the B2C request)
    or has moved (manual payout).
    """

    @staticmethod
    def initiate_withdrawal(user_id: int, source, amount, payment_method: str, phone_number: str) -> Withdrawal:
        source = BalanceSource.parse(source)
        gross = WithdrawalValidator.parse_amount(amount)
        fee = WithdrawalConfig.fee()

        with balance_locks.hold(user_id):
            try:
                user = LedgerStore.get_user(user_id, for_update=True)
                if user is None:
                    raise NotFound("User not found")
                available = user.balance_for(source)
                if gross > available:
                    raise InsufficientBalance(available, gross)
                phone = WithdrawalValidator.destination_phone(payment_method, phone_number)

                withdrawal = LedgerStore.create_withdrawal(
                    user_id=user_id,
                    source=source.value,
                    amount=gross,
                    fee=fee,
                    payment_method=payment_method,
                    phone_number=phone,
                )
            except ServiceError:
                db.session.rollback()
                raise

            if is_mpesa_method(payment_method):
                return WithdrawalProcessor._disburse(user, withdrawal, source)

            withdrawal.status = WithdrawalStatus.COMPLETED.value
            withdrawal.processed_at = withdrawal.completed_at = utcnow()
            WithdrawalProcessor._debit(user, withdrawal, source)
            db.session.commit()

        logger.info(f"Manual withdrawal {withdrawal.id} of {gross} Sh from {source.value} completed for user {user_id}")
        return withdrawal

    @staticmethod
    def _disburse(user, withdrawal: Withdrawal, source: BalanceSource) -> Withdrawal:
        try:
            result = get_gateway().request_disbursement(
                withdrawal.phone_number,
                withdrawal.net_amount,
                remarks=f"Withdrawal from {source.value}",
            )
        except ServiceError as e:
            WithdrawalProcessor._mark_failed(withdrawal, e.message)
            raise

        if not result.accepted:
            reason = result.response_description or "M-Pesa rejected the payout request"
            WithdrawalProcessor._mark_failed(withdrawal, reason)
            raise GatewayError(reason)

        withdrawal.status = WithdrawalStatus.PROCESSING.value
        withdrawal.mpesa_conversation_id = result.conversation_id
        withdrawal.mpesa_originator_conversation_id = result.originator_conversation_id
        withdrawal.processed_at = utcnow()
        WithdrawalProcessor._debit(user, withdrawal, source)
        db.session.commit()

        payments_logger.info(
            f"B2C payout accepted for withdrawal {withdrawal.id}: ConversationID {result.conversation_id}, "
            f"net {withdrawal.net_amount} Sh"
        )
        return withdrawal

    @staticmethod
    def _debit(user, withdrawal: Withdrawal, source: BalanceSource):
        LedgerStore.adjust_balance(user, source, -withdrawal.amount)
        LedgerStore.create_earning(
            user.id,
            source,
            -withdrawal.amount,
            f"Withdrawal via {withdrawal.payment_method} (Fee: {withdrawal.fee} Sh)",
            kind=EarningKind.WITHDRAWAL,
        )

    @staticmethod
    def _mark_failed(withdrawal: Withdrawal, reason: str):
        withdrawal.status = WithdrawalStatus.FAILED.value
        withdrawal.failure_reason = reason
        db.session.commit()
        payments_logger.error(f"Withdrawal {withdrawal.id} failed: {reason}")

    # ------------------------------------------------------------------
    # B2C result / queue timeout callbacks
    # ------------------------------------------------------------------
    @staticmethod
    def handle_disbursement_result(payload, timeout: bool = False) -> Optional[Withdrawal]:
        """
        Settle a processing withdrawal from a B2C ``Result`` callback. Success
        completes it; failure, and every queue timeout, fails it and credits
        the gross amount back with a matching positive Earning. Terminal
        withdrawals are returned untouched.
        """
        result = payload.get("Result") if isinstance(payload, dict) else None
        if not isinstance(result, dict):
            raise MalformedCallback("Malformed B2C result data")

        conversation_id = result.get("ConversationID")
        originator_id = result.get("OriginatorConversationID")
        if not conversation_id and not originator_id:
            raise MalformedCallback("B2C result missing ConversationID")

        found = LedgerStore.get_withdrawal_by_conversation(conversation_id, originator_id)
        if found is None:
            payments_logger.error(f"No withdrawal found for ConversationID: {conversation_id}")
            raise UnknownTransaction(f"No withdrawal found for ConversationID: {conversation_id}")

        with balance_locks.hold(found.user_id):
            withdrawal = LedgerStore.get_withdrawal_by_conversation(conversation_id, originator_id, for_update=True)
            if withdrawal.status_enum.is_terminal:
                payments_logger.info(f"Withdrawal {withdrawal.id} already {withdrawal.status}; ignoring callback")
                return withdrawal

            try:
                result_code = int(result.get("ResultCode"))
            except (TypeError, ValueError):
                result_code = None
            result_desc = result.get("ResultDesc")

            if not timeout and result_code == 0:
                withdrawal.status = WithdrawalStatus.COMPLETED.value
                withdrawal.mpesa_receipt_number = result.get("TransactionID")
                withdrawal.completed_at = utcnow()
                db.session.commit()
                payments_logger.info(f"Withdrawal {withdrawal.id} completed, receipt {withdrawal.mpesa_receipt_number}")
                return withdrawal

            reason = "M-Pesa queue timeout" if timeout else (result_desc or f"B2C ResultCode {result_code}")
            source = BalanceSource.parse(withdrawal.source)
            user = LedgerStore.get_user(withdrawal.user_id, for_update=True)
            withdrawal.status = WithdrawalStatus.FAILED.value
            withdrawal.failure_reason = reason
            LedgerStore.adjust_balance(user, source, withdrawal.amount)
            LedgerStore.create_earning(
                user.id,
                source,
                withdrawal.amount,
                f"Withdrawal reversal: {reason}",
                kind=EarningKind.REVERSAL,
            )
            db.session.commit()

        payments_logger.warning(f"Withdrawal {withdrawal.id} failed ({reason}); {withdrawal.amount} Sh returned")
        return withdrawal

    @staticmethod
    def withdrawal_history(user_id: int) -> Dict[str, Any]:
        withdrawals = LedgerStore.withdrawals_by_user(user_id)
        return {"withdrawals": [w.to_dict() for w in withdrawals]}
