from __future__ import annotations

import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import TYPE_CHECKING

from markupsafe import escape
from sqlalchemy import func

from app.portal.audit import record_event
from app.portal.mailer import EmailResult, send_email
from app.portal.utils import clean_str, parse_date

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.portal.models import Organization, User
    from app.portal.modules.invoices.models import Invoice
    from app.portal.modules.projects.models import Project

logger = logging.getLogger(__name__)

VALID_STATUSES = ("DRAFT", "SENT", "PAID", "OVERDUE", "CANCELLED")


def money(cents: int) -> str:
    return f"${cents / 100:,.2f}"


def next_invoice_number(s: "Session", now: datetime | None = None) -> str:
    """INV-YYYYMM-#### with the sequence restarting each month."""
    from app.portal.modules.invoices.models import Invoice

    now = now or datetime.utcnow()
    prefix = f"INV-{now:%Y%m}-"
    last = s.query(func.max(Invoice.number)).filter(Invoice.number.like(f"{prefix}%")).scalar()
    seq = int(last[len(prefix):]) + 1 if last else 1
    return f"{prefix}{seq:04d}"


def _cents(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def validate_items(raw_items) -> tuple[list[dict], list[str]]:
    """Normalize line items; amounts are computed here, never trusted from the client."""
    if not isinstance(raw_items, list) or not raw_items:
        return [], ["At least one line item is required"]
    items, errors = [], []
    for idx, raw in enumerate(raw_items, start=1):
        if not isinstance(raw, dict):
            errors.append(f"Item {idx}: invalid line item")
            continue
        description = clean_str(raw.get("description"))
        try:
            quantity = Decimal(str(raw.get("quantity", 1)))
            rate_cents = int(raw.get("rateCents", 0))
        except (InvalidOperation, OverflowError, TypeError, ValueError):
            errors.append(f"Item {idx}: quantity and rateCents must be numbers")
            continue
        if not quantity.is_finite():
            errors.append(f"Item {idx}: quantity and rateCents must be numbers")
            continue
        if not description:
            errors.append(f"Item {idx}: description is required")
        if quantity <= 0:
            errors.append(f"Item {idx}: quantity must be greater than 0")
        if rate_cents < 0:
            errors.append(f"Item {idx}: rateCents cannot be negative")
        items.append(
            {
                "description": description,
                "quantity": float(quantity),
                "rate_cents": rate_cents,
                "amount_cents": _cents(quantity * rate_cents),
            }
        )
    return items, errors


def create_invoice(
    s: "Session",
    org: "Organization",
    payload: dict,
    items: list[dict],
    user: "User",
    project: "Project | None" = None,
) -> "Invoice":
    from app.portal.modules.invoices.models import Invoice, InvoiceItem

    subtotal = sum(i["amount_cents"] for i in items)
    tax_rate = payload.get("taxRate")
    tax_rate = float(tax_rate) if tax_rate not in (None, "") else None
    tax = _cents(Decimal(subtotal) * Decimal(str(tax_rate)) / 100) if tax_rate else 0

    now = datetime.utcnow()
    inv = Invoice(
        number=next_invoice_number(s, now),
        organization_id=org.id,
        project_id=project.id if project is not None else None,
        title=clean_str(payload.get("title")) or "Invoice",
        description=clean_str(payload.get("description")),
        status="DRAFT",
        subtotal_cents=subtotal,
        tax_rate=tax_rate,
        tax_cents=tax,
        total_cents=subtotal + tax,
        due_date=parse_date(payload.get("dueDate")),
        created_by_user_id=user.id,
        created_at=now,
        updated_at=now,
    )
    inv.items = [InvoiceItem(**i) for i in items]
    s.add(inv)
    s.flush()
    record_event(
        s,
        actor=user,
        action="invoice.create",
        entity_type="Invoice",
        entity_id=str(inv.id),
        metadata={"number": inv.number, "total_cents": inv.total_cents},
    )
    return inv


def mark_invoice_paid(s: "Session", inv: "Invoice", *, actor: "User | None" = None, reason: str | None = None) -> bool:
    """Returns False when the invoice was already paid."""
    if inv.status == "PAID":
        return False
    now = datetime.utcnow()
    inv.status = "PAID"
    inv.paid_at = now
    inv.updated_at = now
    record_event(s, actor=actor, action="invoice.paid", entity_type="Invoice", entity_id=str(inv.id), reason=reason)
    return True


def _invoice_html(inv: "Invoice") -> str:
    rows = "".join(
        f"<tr><td>{escape(i.description)}</td><td>{i.quantity:g}</td><td>{money(i.rate_cents)}</td>"
        f"<td>{money(i.amount_cents)}</td></tr>"
        for i in inv.items
    )
    due = f"<p>Due {inv.due_date.isoformat()}</p>" if inv.due_date else ""
    return (
        f"<h2>Invoice {inv.number}</h2><p>{escape(inv.title)}</p>{due}"
        f"<table><tr><th>Item</th><th>Qty</th><th>Rate</th><th>Amount</th></tr>{rows}</table>"
        f"<p>Subtotal: {money(inv.subtotal_cents)}<br>Tax: {money(inv.tax_cents)}<br>"
        f"<strong>Total: {money(inv.total_cents)}</strong></p>"
    )


def invoice_recipient(inv: "Invoice") -> str | None:
    org = inv.organization
    if org is None:
        return None
    if org.email:
        return org.email
    for m in org.members:
        if m.user and m.user.email:
            return m.user.email
    return None


def send_invoice_email(inv: "Invoice") -> EmailResult:
    to = invoice_recipient(inv)
    if not to:
        return EmailResult(ok=False, error="Organization has no billing email")
    return send_email(to, f"Invoice {inv.number} - {money(inv.total_cents)}", _invoice_html(inv))


def send_receipt_email(inv: "Invoice") -> None:
    to = invoice_recipient(inv)
    if not to:
        return
    result = send_email(
        to,
        f"Payment received - {inv.number}",
        f"<p>Thank you! We received your payment of {money(inv.total_cents)} for invoice {inv.number}.</p>",
    )
    if not result.ok:
        logger.warning("Receipt email for invoice %s failed: %s", inv.number, result.error)
