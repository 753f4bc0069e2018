from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from app.portal.db import db_session
from app.portal.errors import json_error
from app.portal.modules.change_requests.models import ChangeRequest
from app.portal.modules.change_requests.service import update_change_request, validate_enums
from app.portal.modules.hours.warnings import send_warnings_best_effort
from app.portal.rbac import require_policy
from app.portal.utils import json_body

bp = Blueprint("change_requests_admin", __name__)


@bp.get("/change-requests")
@require_policy("admin.access")
def change_requests_list():
    s = db_session()
    q = s.query(ChangeRequest)
    status = (request.args.get("status") or "").strip()
    project_id = request.args.get("projectId", type=int)
    if status:
        q = q.filter(ChangeRequest.status == status)
    if project_id:
        q = q.filter(ChangeRequest.project_id == project_id)
    items = q.order_by(ChangeRequest.created_at.desc()).all()
    return jsonify({"changeRequests": [cr.to_dict() for cr in items]})


@bp.get("/change-requests/<int:cr_id>")
@require_policy("admin.access")
def change_request_detail(cr_id: int):
    s = db_session()
    cr = s.get(ChangeRequest, cr_id)
    if cr is None:
        return json_error("Change request not found", 404)
    return jsonify({"changeRequest": cr.to_dict()})


@bp.patch("/change-requests/<int:cr_id>")
@require_policy("admin.access")
def change_request_update(cr_id: int):
    s = db_session()
    payload = json_body()
    errors = validate_enums(payload)
    if errors:
        return json_error(errors[0], 400)
    cr = s.get(ChangeRequest, cr_id)
    if cr is None:
        return json_error("Change request not found", 404)

    deduction = update_change_request(s, cr, payload, g.current_user)
    if deduction is not None and not deduction["success"]:
        current_app.logger.warning(
            "Change request %s completed without deduction (request_id=%s): %s", cr.id, g.request_id, deduction["error"]
        )
    if cr.plan_id and deduction and deduction["success"]:
        send_warnings_best_effort(s, cr.plan_id)
    s.commit()
    return jsonify({"success": True, "changeRequest": cr.to_dict(), "deduction": deduction})
