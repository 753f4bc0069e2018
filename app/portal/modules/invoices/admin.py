from __future__ import annotations

from datetime import datetime

from flask import Blueprint, g, jsonify, request

from app.portal.audit import record_event
from app.portal.db import db_session, get_or_404
from app.portal.errors import json_error
from app.portal.models import Organization
from app.portal.modules.invoices.models import Invoice
from app.portal.modules.projects.models import Project
from app.portal.modules.invoices.service import (
    VALID_STATUSES,
    create_invoice,
    mark_invoice_paid,
    send_invoice_email,
    send_receipt_email,
    validate_items,
)
from app.portal.rbac import require_policy
from app.portal.utils import clean_str, json_body, parse_date, parse_id

bp = Blueprint("invoices_admin", __name__)


@bp.get("/invoices")
@require_policy("admin.access")
def invoices_list():
    s = db_session()
    q = s.query(Invoice)
    status = (request.args.get("status") or "").strip().upper()
    if status:
        q = q.filter(Invoice.status == status)
    org_id = request.args.get("organizationId", type=int)
    if org_id:
        q = q.filter(Invoice.organization_id == org_id)
    invoices = q.order_by(Invoice.created_at.desc()).all()
    return jsonify({"invoices": [i.to_dict(include_items=False) for i in invoices]})


@bp.post("/invoices")
@require_policy("billing.manage")
def invoice_create():
    s = db_session()
    payload = json_body()
    if not payload.get("organizationId"):
        return json_error("organizationId is required", 400)
    items, errors = validate_items(payload.get("items"))
    if errors:
        return json_error(errors[0], 400, details=errors)
    tax_rate = payload.get("taxRate")
    if tax_rate not in (None, ""):
        try:
            if not 0 <= float(tax_rate) <= 100:
                return json_error("taxRate must be between 0 and 100", 400)
        except (TypeError, ValueError):
            return json_error("taxRate must be a number", 400)
    try:
        parse_date(payload.get("dueDate"))
    except ValueError:
        return json_error("dueDate must be YYYY-MM-DD", 400)
    org = s.get(Organization, parse_id(payload["organizationId"], "organizationId"))
    if org is None:
        return json_error("Organization not found", 404)
    project = None
    project_id = parse_id(payload.get("projectId"), "projectId")
    if project_id is not None:
        project = s.get(Project, project_id)
        if project is None or project.organization_id != org.id:
            return json_error("Project not found for this organization", 400)
    inv = create_invoice(s, org, payload, items, g.current_user, project=project)
    s.commit()
    return jsonify({"invoice": inv.to_dict()}), 201


@bp.get("/invoices/<int:invoice_id>")
@require_policy("admin.access")
def invoice_detail(invoice_id: int):
    s = db_session()
    inv = get_or_404(s, Invoice, invoice_id, "Invoice not found")
    return jsonify({"invoice": inv.to_dict()})


@bp.patch("/invoices/<int:invoice_id>")
@require_policy("billing.manage")
def invoice_update(invoice_id: int):
    s = db_session()
    inv = get_or_404(s, Invoice, invoice_id, "Invoice not found")
    payload = json_body()
    status = (clean_str(payload.get("status")) or "").upper()
    if status and status not in VALID_STATUSES:
        return json_error(f"Invalid status. Must be one of: {', '.join(VALID_STATUSES)}", 400)
    if status == "PAID":
        mark_invoice_paid(s, inv, actor=g.current_user)
    elif status:
        inv.status = status
    if "title" in payload and clean_str(payload.get("title")):
        inv.title = clean_str(payload.get("title"))
    if "dueDate" in payload:
        try:
            inv.due_date = parse_date(payload.get("dueDate"))
        except ValueError:
            return json_error("dueDate must be YYYY-MM-DD", 400)
    inv.updated_at = datetime.utcnow()
    record_event(s, actor=g.current_user, action="invoice.edit", entity_type="Invoice", entity_id=str(inv.id), metadata={"changes": payload})
    s.commit()
    return jsonify({"invoice": inv.to_dict()})


@bp.post("/invoices/<int:invoice_id>/send")
@require_policy("billing.manage")
def invoice_send(invoice_id: int):
    s = db_session()
    inv = get_or_404(s, Invoice, invoice_id, "Invoice not found")
    if inv.status in ("PAID", "CANCELLED"):
        return json_error(f"Cannot send a {inv.status.lower()} invoice", 400)
    result = send_invoice_email(inv)
    if not result.ok:
        return json_error(f"Failed to send invoice: {result.error}", 502)
    inv.status = "SENT"
    inv.sent_at = datetime.utcnow()
    inv.updated_at = inv.sent_at
    record_event(s, actor=g.current_user, action="invoice.send", entity_type="Invoice", entity_id=str(inv.id), metadata={"email_id": result.id})
    s.commit()
    return jsonify({"success": True, "invoice": inv.to_dict()})


@bp.post("/invoices/<int:invoice_id>/mark-paid")
@require_policy("billing.manage")
def invoice_mark_paid(invoice_id: int):
    s = db_session()
    inv = get_or_404(s, Invoice, invoice_id, "Invoice not found")
    if not mark_invoice_paid(s, inv, actor=g.current_user, reason=clean_str(json_body().get("reason"))):
        return jsonify({"success": True, "alreadyPaid": True, "invoice": inv.to_dict()})
    s.commit()
    send_receipt_email(inv)
    return jsonify({"success": True, "invoice": inv.to_dict()})
