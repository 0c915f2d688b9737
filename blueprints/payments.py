#======================================================================================================
#
#   PAYMENT API BLUEPRINT FOR M-PESA (DARAJA) ACTIVATION AND WITHDRAWALS
#
#===========================================================================================================
from flask import Blueprint, current_app, jsonify, request, session

from blueprints.activation_helpers import ActivationProcessor
from blueprints.withdraw_helpers import WithdrawalProcessor
from exceptions import AmountMismatch, MalformedCallback, ServiceError, UnknownTransaction, ValidationError
from extensions import db
from logger import payments_logger
from models import WithdrawalStatus
from utils import is_mpesa_method


bp = Blueprint("payments", __name__)


@bp.app_errorhandler(ServiceError)
def handle_service_error(error):
    db.session.rollback()
    if error.status_code >= 500:
        current_app.logger.error(f"{error.__class__.__name__}: {error.message}")
    else:
        current_app.logger.info(f"{error.__class__.__name__}: {error.message}")
    return jsonify(error.to_dict()), error.status_code


#=============================================================================================
#      ACTIVATION ENDPOINTS
#============================================================================================
@bp.route("/api/user/activate", methods=["POST"])
def activate_account():
    user_id = session.get("user_id")
    if not user_id:
        return jsonify({"error": "Unauthorized"}), 401

    data = request.get_json(silent=True) or {}
    payment_method = data.get("paymentMethod")
    phone_number = data.get("phoneNumber")

    if not payment_method or not phone_number:
        raise ValidationError("Payment method and phone number are required")
    if not is_mpesa_method(payment_method):
        raise ValidationError("Only M-Pesa is supported for account activation")

    result = ActivationProcessor.initiate_activation(user_id, phone_number)
    return jsonify({
        "message": "STK push sent. Enter your M-Pesa PIN to complete activation.",
        **result,
    }), 200


@bp.route("/api/user/activation", methods=["GET"])
def activation_status():
    user_id = session.get("user_id")
    if not user_id:
        return jsonify({"error": "Unauthorized"}), 401

    state = ActivationProcessor.activation_state(user_id)
    return jsonify({"state": state.value}), 200


@bp.route("/api/mpesa/callback", methods=["POST"])
def mpesa_callback():
    """
    STK push result from Safaricom. Every structurally valid payload is
    acknowledged so the provider does not keep retrying.
    """
    data = request.get_json(silent=True)
    try:
        ack = ActivationProcessor.handle_activation_callback(data)
    except MalformedCallback as e:
        payments_logger.error(f"Malformed M-Pesa callback: {e.message}")
        return jsonify({"ResultCode": 1, "ResultDesc": e.message}), 400
    except (UnknownTransaction, AmountMismatch) as e:
        return jsonify({"ResultCode": 0, "ResultDesc": f"Callback received: {e.message}"}), 200
    except ServiceError as e:
        payments_logger.error(f"Error processing M-Pesa callback: {e.message}")
        return jsonify({"ResultCode": 0, "ResultDesc": "Callback received with errors"}), 200
    return jsonify(ack), 200


#=============================================================================================
#      WITHDRAWAL ENDPOINTS
#============================================================================================
@bp.route("/api/withdrawals", methods=["POST"])
def create_withdrawal():
    user_id = session.get("user_id")
    if not user_id:
        return jsonify({"error": "Unauthorized"}), 401

    data = request.get_json(silent=True) or {}
    withdrawal = WithdrawalProcessor.initiate_withdrawal(
        user_id,
        source=data.get("source"),
        amount=data.get("amount"),
        payment_method=data.get("paymentMethod"),
        phone_number=data.get("phoneNumber"),
    )

    if withdrawal.status == WithdrawalStatus.PROCESSING.value:
        message = "Withdrawal initiated. You will receive an M-Pesa confirmation shortly."
    else:
        message = "Withdrawal request submitted successfully"
    return jsonify({"message": message, "withdrawal": withdrawal.to_dict()}), 201


@bp.route("/api/user/withdrawals", methods=["GET"])
def withdrawal_history():
    user_id = session.get("user_id")
    if not user_id:
        return jsonify({"error": "Unauthorized"}), 401
    return jsonify(WithdrawalProcessor.withdrawal_history(user_id)), 200


def _disbursement_callback(timeout):
    data = request.get_json(silent=True)
    try:
        WithdrawalProcessor.handle_disbursement_result(data, timeout=timeout)
    except MalformedCallback as e:
        payments_logger.error(f"Malformed B2C callback: {e.message}")
        return jsonify({"ResultCode": 1, "ResultDesc": e.message}), 400
    except ServiceError as e:
        payments_logger.error(f"Error processing B2C callback: {e.message}")
    return jsonify({"ResultCode": 0, "ResultDesc": "Accepted"}), 200


@bp.route("/api/mpesa/b2c/result", methods=["POST"])
def b2c_result():
    return _disbursement_callback(timeout=False)


@bp.route("/api/mpesa/b2c/timeout", methods=["POST"])
def b2c_timeout():
    return _disbursement_callback(timeout=True)
