from flask import Blueprint, current_app, jsonify, request, session
from flask_login import login_user, logout_user

from blueprints.signup_helpers import register_user
from ledger import LedgerStore


bp = Blueprint("auth", __name__, url_prefix="")


#===========================================================================
#      SIGN UP ROUTE.
#==============================================================================
@bp.route("/api/register", methods=["POST"])
def register():
    """
    Create a new user and integrate them into the referral tree.
    Expected JSON:
    {
        "username": "", "password": "", "fullName": "",
        "phone": "", "referralCode": ""
    }
    """
    data = request.get_json(silent=True)
    if not data:
        return jsonify({"error": "Invalid or missing JSON body"}), 400

    user = register_user(
        username=data.get("username", ""),
        password=data.get("password", ""),
        full_name=data.get("fullName", ""),
        phone=data.get("phone"),
        referral_code=data.get("referralCode"),
    )

    session["user_id"] = user.id
    login_user(user)
    current_app.logger.info(f"Registration successful for user {user.id}")
    return jsonify({
        "message": "Signup successful",
        "user": user.to_dict(),
    }), 201


# --------------------------------------------------
#      Login Route
# --------------------------------------------------
@bp.route("/api/login", methods=["POST"])
def login():
    data = request.get_json(silent=True) or {}
    username = (data.get("username") or "").strip()
    password = data.get("password") or ""

    if not username or not password:
        return jsonify({"error": "Username and password are required"}), 400

    user = LedgerStore.get_user_by_username(username)
    if not user or not user.check_password(password):
        return jsonify({"error": "Invalid credentials"}), 401

    session["user_id"] = user.id
    login_user(user)

    return jsonify({
        "message": "Login successful",
        "user": user.to_dict()
    }), 200


#-----------------------------------------------------------------------------------------------------
@bp.route("/api/logout", methods=["POST"])
def logout():
    """
    Destroy User session
    """
    logout_user()
    session.clear()
    return jsonify({"message": "Logged out successfully"}), 200


# --------------------------------------------------
# Current user (for frontend auto-login)
# --------------------------------------------------
@bp.route("/api/user", methods=["GET"])
def current_user_profile():
    user_id = session.get("user_id")
    if not user_id:
        return jsonify({"error": "Unauthorized"}), 401

    user = LedgerStore.get_user(user_id)
    if not user:
        session.clear()
        return jsonify({"error": "Unauthorized"}), 401

    return jsonify(user.to_dict()), 200
