from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING

from sqlalchemy import Date, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.portal.models import Base

if TYPE_CHECKING:
    from app.portal.models import Organization


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        Index("idx_invoices_org", "organization_id", "status"),
        Index("idx_invoices_project", "project_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    project_id: Mapped[int | None] = mapped_column(ForeignKey("projects.id", ondelete="SET NULL"), nullable=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="DRAFT")  # DRAFT, SENT, PAID, OVERDUE, CANCELLED

    subtotal_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tax_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    tax_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    stripe_invoice_id: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)

    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    organization: Mapped["Organization"] = relationship(lazy="selectin")
    items: Mapped[list["InvoiceItem"]] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="InvoiceItem.id",
    )

    def to_dict(self, *, include_items: bool = True) -> dict:
        d = {
            "id": self.id,
            "number": self.number,
            "organizationId": self.organization_id,
            "organizationName": self.organization.name if self.organization else None,
            "projectId": self.project_id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "subtotalCents": self.subtotal_cents,
            "taxRate": self.tax_rate,
            "taxCents": self.tax_cents,
            "totalCents": self.total_cents,
            "dueDate": self.due_date.isoformat() if self.due_date else None,
            "sentAt": self.sent_at.isoformat() if self.sent_at else None,
            "paidAt": self.paid_at.isoformat() if self.paid_at else None,
            "createdAt": self.created_at.isoformat(),
        }
        if include_items:
            d["items"] = [i.to_dict() for i in self.items]
        return d


class InvoiceItem(Base):
    __tablename__ = "invoice_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    rate_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    invoice: Mapped[Invoice] = relationship(back_populates="items")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "description": self.description,
            "quantity": self.quantity,
            "rateCents": self.rate_cents,
            "amountCents": self.amount_cents,
        }
