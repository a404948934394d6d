"""
api.routes_import - /api/v1/imports endpoints.

Files are accepted via multipart upload (field 'csv_file') or as the raw
request body (Content-Type: text/csv, name passed as ?filename=).
"""

import io

from flask import Response, request, jsonify

from api import api_bp
from db import get_session
from import_engine.errors import UploadRejected
from import_engine.field_map import FALSE_VALUES, TRUE_VALUES
from services.import_service import ImportService
import config


def _int_arg(value, name):
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise UploadRejected(f"'{name}' must be an integer")


def _bool_arg(value, name):
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    raise UploadRejected(f"'{name}' must be true or false")


def _page_args():
    limit = _int_arg(request.args.get("limit"), "limit")
    if limit is None:
        limit = config.API_DEFAULT_LIMIT
    offset = _int_arg(request.args.get("offset"), "offset")
    if offset is None:
        offset = 0
    return max(0, min(limit, config.API_MAX_LIMIT)), max(offset, 0)


# ── Jobs ──────────────────────────────────────────────────────────────

@api_bp.route("/imports", methods=["POST"])
def create_import():
    """
    POST /api/v1/imports

    JSON body: {name, description?, catalogId?, userId?,
                processingStrategy?, maxRetries?, strictAttributes?}
    """
    data = request.get_json(silent=True) or {}
    session = get_session()
    try:
        job = ImportService.create_job(
            session,
            data.get("name", ""),
            description=data.get("description"),
            catalog_id=_int_arg(data.get("catalogId"), "catalogId"),
            user_id=_int_arg(data.get("userId"), "userId"),
            processing_strategy=data.get("processingStrategy") or "sequential",
            max_retries=_int_arg(data.get("maxRetries"), "maxRetries"),
            strict_attributes=_bool_arg(data.get("strictAttributes"), "strictAttributes"),
        )
        session.commit()
        return jsonify(job.to_dict()), 201
    except UploadRejected:
        session.rollback()
        raise
    finally:
        session.close()


@api_bp.route("/imports")
def list_imports():
    """GET /api/v1/imports?user_id=&status=&limit=&offset=   (newest first)"""
    user_id = _int_arg(request.args.get("user_id"), "user_id")
    status = request.args.get("status") or None
    limit, offset = _page_args()
    session = get_session()
    try:
        jobs = ImportService.list_jobs(session, user_id=user_id, status=status,
                                       limit=limit, offset=offset)
        return jsonify({
            "offset": offset,
            "limit": limit,
            "jobs": [j.to_dict() for j in jobs],
        })
    finally:
        session.close()


@api_bp.route("/imports/<int:job_id>")
def get_import(job_id: int):
    """GET /api/v1/imports/{id}"""
    session = get_session()
    try:
        return jsonify(ImportService.get_job(session, job_id).to_dict())
    finally:
        session.close()


@api_bp.route("/imports/<int:job_id>", methods=["DELETE"])
def delete_import(job_id: int):
    """DELETE /api/v1/imports/{id}  (rejected while processing)"""
    session = get_session()
    try:
        ImportService.delete(session, job_id)
        return jsonify({"deleted": job_id})
    finally:
        session.close()


# ── File submission ───────────────────────────────────────────────────

@api_bp.route("/imports/<int:job_id>/file", methods=["POST"])
def submit_import_file(job_id: int):
    """
    POST /api/v1/imports/{id}/file

    Multipart: field name 'csv_file'
    Or: raw CSV as request body with ?filename=products.csv
    """
    if request.content_type and "multipart" in request.content_type:
        f = request.files.get("csv_file")
        if not f or not f.filename:
            return jsonify({"error": "no csv_file in upload"}), 400
        filename, stream = f.filename, f.stream
    else:
        content = request.get_data()
        if not content:
            return jsonify({"error": "empty body"}), 400
        filename = request.args.get("filename", "upload.csv")
        stream = io.BytesIO(content)

    session = get_session()
    try:
        report = ImportService.submit_file(session, job_id, filename, stream)
        return jsonify(report.to_dict()), 202
    finally:
        session.close()


# ── Lifecycle ─────────────────────────────────────────────────────────

_ACTIONS = {
    "pause": ImportService.pause,
    "resume": ImportService.resume,
    "cancel": ImportService.cancel,
    "retry": ImportService.retry,
}


@api_bp.route("/imports/<int:job_id>/<action>", methods=["POST"])
def import_action(job_id: int, action: str):
    """POST /api/v1/imports/{id}/pause|resume|cancel|retry"""
    handler = _ACTIONS.get(action)
    if handler is None:
        return jsonify({"error": f"unknown action '{action}'"}), 404
    session = get_session()
    try:
        job = handler(session, job_id)
        return jsonify(job.to_dict())
    finally:
        session.close()


# ── Error log ─────────────────────────────────────────────────────────

@api_bp.route("/imports/<int:job_id>/errors")
def list_import_errors(job_id: int):
    """GET /api/v1/imports/{id}/errors?severity=error|warning&limit=&offset="""
    severity = request.args.get("severity") or None
    if severity not in (None, "error", "warning"):
        raise UploadRejected("severity must be 'error' or 'warning'")
    limit, offset = _page_args()
    session = get_session()
    try:
        errors = ImportService.list_errors(session, job_id, severity=severity,
                                           limit=limit, offset=offset)
        return jsonify({
            "jobId": job_id,
            "total": ImportService.count_errors(session, job_id, severity=severity),
            "offset": offset,
            "limit": limit,
            "errors": [e.to_dict() for e in errors],
        })
    finally:
        session.close()


# ── Template ──────────────────────────────────────────────────────────

@api_bp.route("/imports/template")
def download_template():
    """GET /api/v1/imports/template?catalog_id=  → CSV attachment"""
    catalog_id = _int_arg(request.args.get("catalog_id"), "catalog_id")
    tpl = ImportService.generate_template(catalog_id)
    return Response(
        tpl.content,
        mimetype="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{tpl.filename}"'},
    )
