from flask import Blueprint, jsonify, request, session

from blueprints.task_helpers import complete_task, start_task, user_tasks
from exceptions import ValidationError
from ledger import LedgerStore


bp = Blueprint("tasks", __name__, url_prefix="")


@bp.route("/api/available-tasks", methods=["GET"])
def available_tasks():
    return jsonify([t.to_dict() for t in LedgerStore.available_tasks()]), 200


@bp.route("/api/user/tasks", methods=["GET"])
def list_user_tasks():
    user_id = session.get("user_id")
    if not user_id:
        return jsonify({"error": "Unauthorized"}), 401
    return jsonify([t.to_dict() for t in user_tasks(user_id)]), 200


@bp.route("/api/tasks", methods=["POST"])
def create_task():
    user_id = session.get("user_id")
    if not user_id:
        return jsonify({"error": "Unauthorized"}), 401

    data = request.get_json(silent=True) or {}
    available_task_id = data.get("availableTaskId")
    if not isinstance(available_task_id, int) or isinstance(available_task_id, bool):
        raise ValidationError("availableTaskId is required")

    task = start_task(user_id, available_task_id)
    return jsonify(task.to_dict()), 201


@bp.route("/api/tasks/<int:task_id>/complete", methods=["POST"])
def finish_task(task_id):
    user_id = session.get("user_id")
    if not user_id:
        return jsonify({"error": "Unauthorized"}), 401

    task = complete_task(user_id, task_id)
    return jsonify(task.to_dict()), 200
