"""
api.errors - JSON error handlers for the API blueprint.
"""

from flask import jsonify
from api import api_bp
from import_engine.errors import JobNotFound, StateConflict, UploadRejected


@api_bp.errorhandler(JobNotFound)
def api_job_not_found(e):
    return jsonify({"error": str(e)}), 404


@api_bp.errorhandler(StateConflict)
def api_state_conflict(e):
    return jsonify({"error": str(e), "status": e.status, "action": e.action}), 409


@api_bp.errorhandler(UploadRejected)
def api_upload_rejected(e):
    return jsonify({"error": str(e)}), 400


@api_bp.errorhandler(404)
def api_not_found(_e):
    return jsonify({"error": "not found"}), 404


@api_bp.errorhandler(400)
def api_bad_request(_e):
    return jsonify({"error": "bad request"}), 400


@api_bp.errorhandler(500)
def api_server_error(_e):
    return jsonify({"error": "internal server error"}), 500
