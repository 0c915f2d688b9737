from flask import Blueprint, jsonify, session

from blueprints.stats_helpers import get_user_stats
from ledger import LedgerStore


bp = Blueprint('profile', __name__, url_prefix="")


# ----------------------------------------------------------------------------------
# DASHBOARD DATA
# ----------------------------------------------------------------------------------
@bp.route("/api/user/stats", methods=["GET"])
def user_stats():
    user_id = session.get("user_id")
    if not user_id:
        return jsonify({"error": "Unauthorized"}), 401
    return jsonify(get_user_stats(user_id)), 200


@bp.route("/api/user/earnings", methods=["GET"])
def user_earnings():
    user_id = session.get("user_id")
    if not user_id:
        return jsonify({"error": "Unauthorized"}), 401

    earnings = LedgerStore.earnings_by_user(user_id)
    return jsonify([e.to_dict() for e in earnings]), 200


@bp.route("/api/user/referrals", methods=["GET"])
def user_referrals():
    """Referral edges where the current user is the referrer, newest first."""
    user_id = session.get("user_id")
    if not user_id:
        return jsonify({"error": "Unauthorized"}), 401

    referrals = LedgerStore.referrals_by_referrer(user_id)
    return jsonify([r.to_dict() for r in referrals]), 200
