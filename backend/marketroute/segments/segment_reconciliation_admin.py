from __future__ import annotations

from flask import Blueprint, jsonify, request

from marketroute.models import JobRun, ReconciliationReport
from marketroute.services.reconciliation_service import persist_report, reconcile_ledger
from marketroute.utils.actor import json_body, require_operator

recon_bp = Blueprint("recon_bp", __name__, url_prefix="/api/admin/reconcile")


@recon_bp.post("")
def run_recon():
    operator_id = require_operator()
    data = json_body()
    summary = reconcile_ledger()
    report_id = None
    if bool(data.get("persist", True)):
        report = persist_report(summary, created_by=operator_id)
        report_id = int(report.id)
    return jsonify({"ok": True, "report_id": report_id, "summary": summary}), 200


@recon_bp.get("/latest")
def latest_report():
    require_operator()
    row = ReconciliationReport.query.order_by(ReconciliationReport.created_at.desc()).first()
    if not row:
        return jsonify({"ok": True, "report": None}), 200
    return jsonify({"ok": True, "report": row.to_dict()}), 200


@recon_bp.get("/jobs")
def recent_jobs():
    require_operator()
    job_name = (request.args.get("job") or "").strip()
    q = JobRun.query
    if job_name:
        q = q.filter(JobRun.job_name == job_name)
    rows = q.order_by(JobRun.ran_at.desc()).limit(50).all()
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]}), 200
