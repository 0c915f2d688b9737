import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from blueprints.payments_helpers import get_gateway
from bonus.bonus_payment import BonusPaymentHelper
from exceptions import (
    AlreadyActivated, AmountMismatch, DuplicatePendingActivation, MalformedCallback, NotFound, ServiceError, UnknownTransaction,
)
from extensions import db
from ledger import LedgerStore
from logger import payments_logger
from models import ActivationState, PaymentStatus, utcnow
from utils import activation_locks, normalize_msisdn


logger = logging.getLogger(__name__)


# ==========================================================
#                  CALLBACK PARSING
# ==========================================================
def parse_stk_callback(payload) -> Dict[str, Any]:
    """
    Pull the fields we use out of an STK push callback:
    {"Body": {"stkCallback": {"CheckoutRequestID", "ResultCode", "ResultDesc",
    "CallbackMetadata": {"Item": [{"Name": ..., "Value": ...}]}}}}
    """
    body = payload.get("Body") if isinstance(payload, dict) else None
    callback = body.get("stkCallback") if isinstance(body, dict) else None
    if not isinstance(callback, dict):
        raise MalformedCallback("Malformed callback data")

    checkout_request_id = callback.get("CheckoutRequestID")
    if not checkout_request_id:
        raise MalformedCallback("Callback missing CheckoutRequestID")
    try:
        result_code = int(callback.get("ResultCode"))
    except (TypeError, ValueError):
        raise MalformedCallback("Callback missing ResultCode")

    items = {}
    metadata = callback.get("CallbackMetadata")
    if isinstance(metadata, dict) and isinstance(metadata.get("Item"), list):
        for item in metadata["Item"]:
            if isinstance(item, dict) and "Name" in item:
                items[item["Name"]] = item.get("Value")

    return {
        "merchant_request_id": callback.get("MerchantRequestID"),
        "checkout_request_id": checkout_request_id,
        "result_code": result_code,
        "result_desc": callback.get("ResultDesc"),
        "amount": items.get("Amount"),
        "receipt": items.get("MpesaReceiptNumber"),
    }


def _amount_matches(paid, expected: int) -> bool:
    try:
        return float(paid) == float(expected)
    except (TypeError, ValueError):
        return False


# ==========================================================
#                  ACTIVATION PROCESSOR
# ==========================================================
class ActivationProcessor:
    """
    Account activation through an M-Pesa STK push:
    unactivated -> awaiting-callback -> activated, or back to unactivated
    when the payment fails.
    """

    @staticmethod
    def activation_state(user_id: int) -> ActivationState:
        user = LedgerStore.get_user(user_id)
        if user is None:
            raise NotFound("User not found")
        if user.is_activated:
            return ActivationState.ACTIVATED
        if LedgerStore.tracked_transactions(user_id):
            return ActivationState.AWAITING_CALLBACK
        return ActivationState.UNACTIVATED

    @staticmethod
    def initiate_activation(user_id: int, phone_number: str) -> Dict[str, Any]:
        """
        Start an activation payment. Returns the gateway's acknowledgment
        including the CheckoutRequestID the callback will carry.
        """
        phone = normalize_msisdn(phone_number)
        amount = current_app.config["MPESA_ACTIVATION_FEE"]

        with activation_locks.hold(user_id):
            try:
                user = LedgerStore.get_user(user_id, for_update=True)
                if user is None:
                    raise NotFound("User not found")
                if user.is_activated:
                    raise AlreadyActivated()

                tracked = LedgerStore.tracked_transactions(user_id)
                if tracked:
                    latest = LedgerStore.latest_transaction(user_id)
                    if latest is not None and latest.status != PaymentStatus.PENDING.value:
                        logger.info(f"Clearing {len(tracked)} stale pending activation(s) for user {user_id}")
                        for transaction in tracked:
                            transaction.is_tracked = False
                    else:
                        raise DuplicatePendingActivation()

                transaction = LedgerStore.create_mpesa_transaction(user_id, amount, phone)
            except ServiceError:
                db.session.rollback()
                raise

            try:
                result = get_gateway().request_collection(phone, amount)
            except ServiceError as e:
                transaction.status = PaymentStatus.FAILED.value
                transaction.result_desc = e.message
                db.session.commit()
                payments_logger.error(f"Activation payment initiation failed for user {user_id}: {e.message}")
                raise

            transaction.checkout_request_id = result.checkout_request_id
            transaction.merchant_request_id = result.merchant_request_id
            transaction.is_tracked = True
            db.session.commit()

        payments_logger.info(
            f"Pending activation stored for CheckoutRequestID: {result.checkout_request_id}, UserID: {user_id}"
        )
        return result.to_dict()

    @staticmethod
    def handle_activation_callback(payload) -> Dict[str, Any]:
        """
        Apply an STK push callback. Safe to call more than once for the same
        CheckoutRequestID: only the delivery that finds the transaction still
        tracked touches the user.
        """
        data = parse_stk_callback(payload)
        checkout_request_id = data["checkout_request_id"]
        payments_logger.info(
            f"Callback for CheckoutRequestID: {checkout_request_id}, "
            f"ResultCode: {data['result_code']}, ResultDesc: {data['result_desc']}"
        )

        transaction = LedgerStore.get_transaction_by_checkout(checkout_request_id)
        if transaction is None:
            payments_logger.error(f"No transaction found for CheckoutRequestID: {checkout_request_id}")
            raise UnknownTransaction(f"No transaction found for CheckoutRequestID: {checkout_request_id}")

        with activation_locks.hold(transaction.user_id):
            transaction = LedgerStore.get_transaction_by_checkout(checkout_request_id, for_update=True)
            succeeded = data["result_code"] == 0

            transaction.status = PaymentStatus.COMPLETED.value if succeeded else PaymentStatus.FAILED.value
            transaction.result_code = data["result_code"]
            transaction.result_desc = data["result_desc"]
            if data["receipt"]:
                transaction.mpesa_receipt_number = data["receipt"]

            if succeeded:
                return ActivationProcessor._apply_success(transaction, data)
            return ActivationProcessor._apply_failure(transaction, data)

    @staticmethod
    def _apply_success(transaction, data) -> Dict[str, Any]:
        if not _amount_matches(data["amount"], transaction.amount):
            payments_logger.error(
                f"Paid amount ({data['amount']}) does not match expected amount ({transaction.amount}) "
                f"for CheckoutRequestID: {transaction.checkout_request_id}"
            )
            transaction.status = PaymentStatus.FAILED.value
            transaction.result_desc = "Amount mismatch"
            transaction.is_tracked = False
            db.session.commit()
            raise AmountMismatch(transaction.amount, data["amount"])

        activated_user_id: Optional[int] = None
        if transaction.is_tracked:
            user = LedgerStore.get_user(transaction.user_id, for_update=True)
            transaction.is_tracked = False
            if user is not None and not user.is_activated:
                user.is_activated = True
                activated_user_id = user.id
        else:
            payments_logger.warning(
                f"No pending activation found for CheckoutRequestID: {transaction.checkout_request_id}. "
                f"User might have already been activated or ID not tracked."
            )
        db.session.commit()

        if activated_user_id is not None:
            payments_logger.info(f"User {activated_user_id} successfully activated.")
            try:
                BonusPaymentHelper.process_referral_rewards(activated_user_id)
            except SQLAlchemyError:
                payments_logger.error(
                    f"Referral rewards for user {activated_user_id} not paid; left for reconcile-activations"
                )

        return {
            "ResultCode": 0,
            "ResultDesc": "Callback received and processed successfully",
            "MpesaReceiptNumber": data["receipt"],
        }

    @staticmethod
    def _apply_failure(transaction, data) -> Dict[str, Any]:
        payments_logger.error(f"Payment failed. ResultCode: {data['result_code']}, ResultDesc: {data['result_desc']}")
        if transaction.is_tracked:
            transaction.is_tracked = False
            user = LedgerStore.get_user(transaction.user_id, for_update=True)
            if user is not None and user.is_activated:
                payments_logger.warning(f"Ignoring failed payment for already activated user {user.id}")
            elif user is not None:
                user.is_activated = False
                user.reset_balances()
                payments_logger.info(f"User {user.id} payment failed, status updated")
        db.session.commit()

        return {
            "ResultCode": data["result_code"],
            "ResultDesc": "Callback received; payment not successful.",
            "MpesaReceiptNumber": data["receipt"],
        }

    # ------------------------------------------------------------------
    # reconciliation
    # ------------------------------------------------------------------
    @staticmethod
    def reconcile_stale_activations(older_than: Optional[timedelta] = None) -> Dict[str, int]:
        """
        Ask M-Pesa about activations that have been awaiting a callback for
        longer than ``older_than`` and settle the ones with a final answer
        through the regular callback path.
        """
        if older_than is None:
            older_than = timedelta(minutes=current_app.config["RECONCILE_AFTER_MINUTES"])
        cutoff = utcnow() - older_than
        summary = {"checked": 0, "completed": 0, "failed": 0, "pending": 0, "errors": 0, "rewards_settled": 0}

        stale = [(t.checkout_request_id, t.amount) for t in LedgerStore.stale_tracked_transactions(cutoff)]
        gateway = get_gateway()
        for checkout_request_id, amount in stale:
            summary["checked"] += 1
            try:
                status = gateway.query_collection_status(checkout_request_id)
            except ServiceError as e:
                summary["errors"] += 1
                payments_logger.warning(f"Reconcile: STK query failed for {checkout_request_id}: {e.message}")
                continue

            if status.still_processing:
                summary["pending"] += 1
                continue

            payload = {"Body": {"stkCallback": {
                "CheckoutRequestID": checkout_request_id,
                "ResultCode": status.result_code,
                "ResultDesc": status.result_desc,
                # the query does not echo the amount; a successful STK push is for the requested amount
                "CallbackMetadata": {"Item": [{"Name": "Amount", "Value": amount}]},
            }}}
            try:
                ActivationProcessor.handle_activation_callback(payload)
            except ServiceError as e:
                summary["errors"] += 1
                payments_logger.error(f"Reconcile: could not settle {checkout_request_id}: {e.message}")
                continue
            summary["completed" if status.result_code == 0 else "failed"] += 1

        for user_id in LedgerStore.activated_users_with_unpaid_referrals():
            try:
                payouts = BonusPaymentHelper.process_referral_rewards(user_id)
            except SQLAlchemyError:
                summary["errors"] += 1
                continue
            if payouts:
                summary["rewards_settled"] += len(payouts)
                payments_logger.info(f"Reconcile: paid {len(payouts)} outstanding referral reward(s) for user {user_id}")

        stuck = LedgerStore.stuck_withdrawals(cutoff)
        for withdrawal in stuck:
            payments_logger.warning(
                f"Reconcile: withdrawal {withdrawal.id} still processing since {withdrawal.created_at} "
                f"(ConversationID {withdrawal.mpesa_conversation_id})"
            )
        summary["stuck_withdrawals"] = len(stuck)

        logger.info(f"Activation reconciliation finished: {summary}")
        return summary
