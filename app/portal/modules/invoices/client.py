from __future__ import annotations

from flask import Blueprint, g, jsonify

from app.portal.db import db_session
from app.portal.modules.invoices.models import Invoice
from app.portal.modules.projects.service import user_organization_ids
from app.portal.rbac import require_login

bp = Blueprint("invoices_client", __name__)


@bp.get("/invoices")
@require_login
def my_invoices():
    s = db_session()
    org_ids = user_organization_ids(s, g.current_user)
    if not org_ids:
        return jsonify({"invoices": []})
    # Drafts stay internal.
    invoices = (
        s.query(Invoice)
        .filter(Invoice.organization_id.in_(org_ids), Invoice.status != "DRAFT")
        .order_by(Invoice.created_at.desc())
        .all()
    )
    return jsonify({"invoices": [i.to_dict() for i in invoices]})
