"""initial portal schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_initial'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    ]


def _user_fk(name: str) -> sa.Column:
    return sa.Column(name, sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)


def upgrade() -> None:
    """Create every portal table (identity, projects, hours, billing, nonprofit site)."""
    conn = op.get_bind()
    existing_tables = set(sa.inspect(conn).get_table_names())

    def create(name: str, *cols, indexes: tuple = ()) -> None:
        if name in existing_tables:
            return
        op.create_table(name, *cols)
        for idx_name, idx_cols in indexes:
            op.create_index(idx_name, name, idx_cols)

    # Identity
    create(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("password_hash", sa.String(255), nullable=True),
        sa.Column("role", sa.String(32), nullable=False, server_default="CLIENT"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("email_verified_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    create(
        "organizations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    create(
        "organization_members",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("organization_id", sa.Integer(), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role", sa.String(32), nullable=False, server_default="MEMBER"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("organization_id", "user_id", name="uq_org_member"),
    )
    create(
        "system_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("request_id", sa.String(64), nullable=True),
        _user_fk("actor_user_id"),
        sa.Column("actor_user_email", sa.String(320), nullable=True),
        sa.Column("action", sa.String(128), nullable=False),
        sa.Column("entity_type", sa.String(128), nullable=True),
        sa.Column("entity_id", sa.String(128), nullable=True),
        sa.Column("reason", sa.String(512), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("client_ip", sa.String(64), nullable=True),
        indexes=(
            ("idx_system_logs_entity", ["entity_type", "entity_id"]),
            ("idx_system_logs_created_at", ["created_at"]),
        ),
    )
    create(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("type", sa.String(64), nullable=False, server_default="INFO"),
        sa.Column("link", sa.String(512), nullable=True),
        sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        indexes=(("idx_notifications_user", ["user_id", "read"]),),
    )

    # Projects
    create(
        "projects",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("organization_id", sa.Integer(), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="LEAD"),
        sa.Column("budget_cents", sa.Integer(), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        _user_fk("assignee_user_id"),
        *_timestamps(),
        indexes=(("idx_projects_org", ["organization_id"]), ("idx_projects_status", ["status"])),
    )
    create(
        "project_files",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.Integer(), sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
        sa.Column("storage_key", sa.String(512), nullable=False),
        sa.Column("filename", sa.String(255), nullable=False),
        sa.Column("content_type", sa.String(128), nullable=True),
        sa.Column("size_bytes", sa.Integer(), nullable=False, server_default="0"),
        _user_fk("uploaded_by_user_id"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    # Maintenance plans & hours
    create(
        "maintenance_plans",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.Integer(), sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
        sa.Column("tier", sa.String(32), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="ACTIVE"),
        sa.Column("support_hours_used", sa.Float(), nullable=False, server_default="0"),
        sa.Column("change_requests_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rollover_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("rollover_cap", sa.Float(), nullable=False, server_default="0"),
        sa.Column("rollover_hours", sa.Float(), nullable=False, server_default="0"),
        sa.Column("on_demand_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("grace_period_used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("daily_request_limit", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("requests_today", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_request_date", sa.Date(), nullable=True),
        sa.Column("current_period_start", sa.DateTime(), nullable=True),
        sa.Column("current_period_end", sa.DateTime(), nullable=True),
        *_timestamps(),
        indexes=(("idx_maintenance_plans_project", ["project_id", "status"]),),
    )
    create(
        "hour_packs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("plan_id", sa.Integer(), sa.ForeignKey("maintenance_plans.id", ondelete="CASCADE"), nullable=False),
        sa.Column("pack_type", sa.String(32), nullable=False),
        sa.Column("hours", sa.Float(), nullable=False),
        sa.Column("hours_remaining", sa.Float(), nullable=False),
        sa.Column("cost_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("purchased_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("never_expires", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("used_at", sa.DateTime(), nullable=True),
        sa.Column("stripe_payment_id", sa.String(255), nullable=True, unique=True),
    )
    create(
        "rollover_hours",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("plan_id", sa.Integer(), sa.ForeignKey("maintenance_plans.id", ondelete="CASCADE"), nullable=False),
        sa.Column("hours", sa.Float(), nullable=False),
        sa.Column("hours_remaining", sa.Float(), nullable=False),
        sa.Column("source_month", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("is_expired", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("used_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    create(
        "maintenance_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("plan_id", sa.Integer(), sa.ForeignKey("maintenance_plans.id", ondelete="CASCADE"), nullable=False),
        sa.Column("hours_spent", sa.Float(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("performed_by", sa.String(320), nullable=True),
        sa.Column("billable", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("overage", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("performed_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        indexes=(("idx_maintenance_logs_plan", ["plan_id", "performed_at"]),),
    )
    create(
        "overage_notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("plan_id", sa.Integer(), sa.ForeignKey("maintenance_plans.id", ondelete="CASCADE"), nullable=False),
        sa.Column("warning_level", sa.String(32), nullable=False),
        sa.Column("period_start", sa.DateTime(), nullable=False),
        sa.Column("email_to", sa.String(320), nullable=False),
        sa.Column("hours_expiring", sa.Float(), nullable=True),
        sa.Column("sent_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        indexes=(("idx_overage_notifications_lookup", ["plan_id", "warning_level", "period_start"]),),
    )

    # Requests & tasks
    create(
        "change_requests",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.Integer(), sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
        sa.Column("plan_id", sa.Integer(), sa.ForeignKey("maintenance_plans.id", ondelete="SET NULL"), nullable=True),
        _user_fk("requested_by_user_id"),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("category", sa.String(32), nullable=False, server_default="OTHER"),
        sa.Column("priority", sa.String(32), nullable=False, server_default="NORMAL"),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("estimated_hours", sa.Float(), nullable=True),
        sa.Column("actual_hours", sa.Float(), nullable=True),
        sa.Column("hours_deducted", sa.Float(), nullable=True),
        sa.Column("hours_source", sa.String(32), nullable=True),
        sa.Column("urgency_fee_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_overage", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("overage_amount_cents", sa.Integer(), nullable=True),
        sa.Column("requires_client_approval", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("flagged_for_review", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("attachments", sa.JSON(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        indexes=(("idx_change_requests_project", ["project_id"]), ("idx_change_requests_status", ["status"])),
    )
    create(
        "project_requests",
        sa.Column("id", sa.Integer(), primary_key=True),
        _user_fk("user_id"),
        sa.Column("organization_id", sa.Integer(), sa.ForeignKey("organizations.id", ondelete="SET NULL"), nullable=True),
        sa.Column("project_id", sa.Integer(), sa.ForeignKey("projects.id", ondelete="SET NULL"), nullable=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("services", sa.JSON(), nullable=True),
        sa.Column("budget", sa.String(64), nullable=True),
        sa.Column("timeline", sa.String(128), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="SUBMITTED"),
        sa.Column("estimated_hours", sa.Float(), nullable=True),
        sa.Column("actual_hours", sa.Float(), nullable=True),
        sa.Column("hours_deducted", sa.Float(), nullable=True),
        sa.Column("hours_source", sa.String(32), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        indexes=(("idx_project_requests_user", ["user_id"]), ("idx_project_requests_status", ["status"])),
    )
    create(
        "client_tasks",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.Integer(), sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("type", sa.String(32), nullable=False, server_default="general"),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("requires_upload", sa.Boolean(), nullable=False, server_default=sa.false()),
        _user_fk("assigned_to_user_id"),
        _user_fk("created_by_user_id"),
        sa.Column("data", sa.JSON(), nullable=True),
        sa.Column("submission_storage_key", sa.String(512), nullable=True),
        sa.Column("submission_filename", sa.String(255), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        indexes=(("idx_client_tasks_project", ["project_id", "status"]),),
    )

    # Invoices
    create(
        "invoices",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("number", sa.String(32), nullable=False, unique=True),
        sa.Column("organization_id", sa.Integer(), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("project_id", sa.Integer(), sa.ForeignKey("projects.id", ondelete="SET NULL"), nullable=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="DRAFT"),
        sa.Column("subtotal_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tax_rate", sa.Float(), nullable=True),
        sa.Column("tax_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        sa.Column("stripe_invoice_id", sa.String(128), nullable=True, unique=True),
        _user_fk("created_by_user_id"),
        *_timestamps(),
        indexes=(("idx_invoices_org", ["organization_id", "status"]), ("idx_invoices_project", ["project_id"])),
    )
    create(
        "invoice_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("invoice_id", sa.Integer(), sa.ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False),
        sa.Column("description", sa.String(500), nullable=False),
        sa.Column("quantity", sa.Float(), nullable=False, server_default="1"),
        sa.Column("rate_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("amount_cents", sa.Integer(), nullable=False, server_default="0"),
    )

    # Nonprofit site
    create(
        "blog_posts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("slug", sa.String(320), nullable=False, unique=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("excerpt", sa.String(500), nullable=True),
        _user_fk("author_user_id"),
        sa.Column("status", sa.String(32), nullable=False, server_default="DRAFT"),
        sa.Column("category", sa.String(64), nullable=True),
        sa.Column("tags", sa.Text(), nullable=True),
        sa.Column("image_url", sa.String(1024), nullable=True),
        sa.Column("read_time_minutes", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("published_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        indexes=(("idx_blog_posts_status", ["status", "published_at"]),),
    )
    create(
        "newsletter_subscribers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        sa.Column("subscribed", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("subscribed_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("unsubscribed_at", sa.DateTime(), nullable=True),
    )
    create(
        "newsletters",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("slug", sa.String(600), nullable=False, unique=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("excerpt", sa.String(500), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="DRAFT"),
        _user_fk("author_user_id"),
        sa.Column("published_at", sa.DateTime(), nullable=True),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.Column("recipients_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    create(
        "meetings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("program", sa.String(128), nullable=True),
        sa.Column("start_time", sa.DateTime(), nullable=False),
        sa.Column("end_time", sa.DateTime(), nullable=False),
        sa.Column("format", sa.String(16), nullable=False, server_default="ONLINE"),
        sa.Column("location", sa.String(255), nullable=True),
        sa.Column("link", sa.String(1024), nullable=True),
        sa.Column("capacity", sa.Integer(), nullable=True),
        _user_fk("created_by_user_id"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        indexes=(("idx_meetings_start", ["start_time"]),),
    )
    create(
        "meeting_rsvps",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("meeting_id", sa.Integer(), sa.ForeignKey("meetings.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="GOING"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("meeting_id", "user_id", name="uq_meeting_rsvp"),
    )
    create(
        "donations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("frequency", sa.String(16), nullable=False, server_default="ONE_TIME"),
        sa.Column("status", sa.String(16), nullable=False, server_default="PENDING"),
        sa.Column("stripe_payment_intent_id", sa.String(255), nullable=True, unique=True),
        _user_fk("user_id"),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        indexes=(("idx_donations_status", ["status"]),),
    )
    create(
        "contact_inquiries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("phone", sa.String(64), nullable=True),
        sa.Column("department", sa.String(32), nullable=False, server_default="general"),
        sa.Column("subject", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    create(
        "recordings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.Integer(), sa.ForeignKey("projects.id", ondelete="SET NULL"), nullable=True),
        _user_fk("uploaded_by_user_id"),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("storage_key", sa.String(512), nullable=False),
        sa.Column("filename", sa.String(255), nullable=False),
        sa.Column("content_type", sa.String(128), nullable=True),
        sa.Column("size_bytes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(32), nullable=False, server_default="UPLOADED"),
        sa.Column("transcript", sa.Text(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("action_items", sa.JSON(), nullable=True),
        sa.Column("category", sa.String(64), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        indexes=(("idx_recordings_status", ["status"]),),
    )


def downgrade() -> None:
    for name in (
        "recordings",
        "contact_inquiries",
        "donations",
        "meeting_rsvps",
        "meetings",
        "newsletters",
        "newsletter_subscribers",
        "blog_posts",
        "invoice_items",
        "invoices",
        "client_tasks",
        "project_requests",
        "change_requests",
        "overage_notifications",
        "maintenance_logs",
        "rollover_hours",
        "hour_packs",
        "maintenance_plans",
        "project_files",
        "projects",
        "notifications",
        "system_logs",
        "organization_members",
        "organizations",
        "users",
    ):
        op.drop_table(name)
