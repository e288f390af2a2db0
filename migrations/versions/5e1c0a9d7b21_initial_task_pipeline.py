"""initial_task_pipeline

Creates the task pipeline schema:
  - users / user_roles               — identities and role grants
  - tasks / task_products            — tasks and their product lines
  - task_workflow_steps              — ordered operations steps
  - task_audit_log                   — append-only change history
  - notifications                    — in-app direct and broadcast messages
  - user_activity_streaks / user_achievements — KPI streaks and badges

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: 5e1c0a9d7b21
Revises:
Create Date: 2026-10-18 09:12:44.318207
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '5e1c0a9d7b21'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Users & roles ─────────────────────────────────────────────────────
    if "users" not in existing:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=False),
            sa.Column("full_name", sa.String(length=200), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("email"),
        )

    if "user_roles" not in existing:
        op.create_table(
            "user_roles",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("role", sa.String(length=30), nullable=False,
                      comment="estimation | designer | operations | …"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id", "role", name="uq_user_role"),
        )
        op.create_index("ix_user_roles_role", "user_roles", ["role"])

    # ── Tasks ─────────────────────────────────────────────────────────────
    if "tasks" not in existing:
        op.create_table(
            "tasks",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("client_name", sa.String(length=200), nullable=True),
            sa.Column("supplier_name", sa.String(length=200), nullable=True),
            sa.Column("priority", sa.String(length=10), nullable=True,
                      comment="low | medium | high | urgent"),
            sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="todo"),
            sa.Column("type", sa.String(length=20), nullable=False, server_default="general",
                      comment="quotation | production | general | invoice | design"),
            sa.Column("previous_status", sa.String(length=30), nullable=True),
            sa.Column("status_changed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("assigned_to", sa.Integer(), nullable=True),
            sa.Column("assigned_by", sa.Integer(), nullable=True),
            sa.Column("created_by", sa.Integer(), nullable=True),
            sa.Column("design_state", sa.String(length=20), nullable=False, server_default="none",
                      comment="none | awaiting_mockup | mockup_returned | designer_done"),
            sa.Column("admin_removed_from_production", sa.Boolean(), nullable=False,
                      server_default=sa.false()),
            sa.Column("completed_by_designer_id", sa.Integer(), nullable=True),
            sa.Column("admin_remarks", sa.Text(), nullable=True),
            sa.Column("delivery_address", sa.String(length=500), nullable=True),
            sa.Column("delivery_instructions", sa.Text(), nullable=True),
            sa.Column("sibling_task_id", sa.Integer(), nullable=True,
                      comment="Twin in another pipeline: set on the operations copy, points at the original"),
            sa.Column("cloned_from_task_id", sa.Integer(), nullable=True,
                      comment="Clone provenance: the task this one was cloned from"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["assigned_to"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["assigned_by"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["created_by"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["completed_by_designer_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["sibling_task_id"], ["tasks.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["cloned_from_task_id"], ["tasks.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_tasks_status", "tasks", ["status"])
        op.create_index("ix_tasks_assigned_to", "tasks", ["assigned_to"])
        op.create_index("ix_tasks_type_status", "tasks", ["type", "status"])
        op.create_index("ix_tasks_cloned_from_task_id", "tasks", ["cloned_from_task_id"])
        op.create_index("ix_tasks_deleted_at", "tasks", ["deleted_at"])
        op.create_index(
            "uq_tasks_sibling_active", "tasks", ["sibling_task_id"], unique=True,
            sqlite_where=sa.text("deleted_at IS NULL"),
            postgresql_where=sa.text("deleted_at IS NULL"),
        )

    # ── Workflow steps (before products: products reference steps) ────────
    if "task_workflow_steps" not in existing:
        op.create_table(
            "task_workflow_steps",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("task_id", sa.Integer(), nullable=False),
            sa.Column("step_order", sa.Integer(), nullable=False),
            sa.Column("step_type", sa.String(length=30), nullable=False,
                      comment="collect | deliver_to_supplier | deliver_to_client | supplier_to_supplier"),
            sa.Column("supplier_name", sa.String(length=200), nullable=True),
            sa.Column("location_address", sa.String(length=500), nullable=True),
            sa.Column("location_notes", sa.Text(), nullable=True),
            sa.Column("from_supplier_name", sa.String(length=200), nullable=True),
            sa.Column("from_location_address", sa.String(length=500), nullable=True),
            sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_by", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["task_id"], ["tasks.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["completed_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("task_id", "step_order", name="uq_step_order_per_task"),
        )
        op.create_index("ix_task_workflow_steps_task_id", "task_workflow_steps", ["task_id"])
        op.create_index("ix_steps_type_status", "task_workflow_steps", ["step_type", "status"])

    if "task_products" not in existing:
        op.create_table(
            "task_products",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("task_id", sa.Integer(), nullable=False),
            sa.Column("workflow_step_id", sa.Integer(), nullable=True),
            sa.Column("product_name", sa.String(length=300), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("quantity", sa.Float(), nullable=True),
            sa.Column("unit", sa.String(length=20), nullable=True),
            sa.Column("supplier_name", sa.String(length=200), nullable=True),
            sa.Column("estimated_price", sa.Numeric(12, 2), nullable=True),
            sa.Column("final_price", sa.Numeric(12, 2), nullable=True),
            sa.Column("approval_status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("designer_completed", sa.Boolean(), nullable=True),
            sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
            sa.ForeignKeyConstraint(["task_id"], ["tasks.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["workflow_step_id"], ["task_workflow_steps.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_task_products_task_id", "task_products", ["task_id"])
        op.create_index("ix_task_products_workflow_step_id", "task_products", ["workflow_step_id"])

    # ── Audit log (no FK: history outlives the task row) ──────────────────
    if "task_audit_log" not in existing:
        op.create_table(
            "task_audit_log",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("task_id", sa.Integer(), nullable=False),
            sa.Column("action", sa.String(length=30), nullable=False),
            sa.Column("old_values", sa.Text(), nullable=True, comment="JSON object"),
            sa.Column("new_values", sa.Text(), nullable=True, comment="JSON object"),
            sa.Column("changed_by", sa.Integer(), nullable=True),
            sa.Column("role", sa.String(length=30), nullable=False, server_default="unknown"),
            sa.Column("device_type", sa.String(length=20), nullable=True),
            sa.Column("user_agent", sa.String(length=500), nullable=True),
            sa.Column("browser_name", sa.String(length=50), nullable=True),
            sa.Column("os_name", sa.String(length=50), nullable=True),
            sa.Column("ip_address", sa.String(length=64), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_task_audit_task_ts", "task_audit_log", ["task_id", "created_at"])
        op.create_index("ix_task_audit_action", "task_audit_log", ["action"])
        op.create_index("ix_task_audit_changed_by", "task_audit_log", ["changed_by"])

    # ── Notifications ─────────────────────────────────────────────────────
    if "notifications" not in existing:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("sender_id", sa.Integer(), nullable=True),
            sa.Column("recipient_id", sa.Integer(), nullable=True),
            sa.Column("broadcast_role", sa.String(length=30), nullable=True),
            sa.Column("is_broadcast", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("priority", sa.String(length=10), nullable=False, server_default="normal"),
            sa.Column("task_id", sa.Integer(), nullable=True),
            sa.Column("is_acknowledged", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["sender_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["recipient_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["task_id"], ["tasks.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_recipient", "notifications", ["recipient_id", "is_acknowledged"])
        op.create_index("ix_notifications_broadcast_role", "notifications", ["broadcast_role"])
        op.create_index("ix_notifications_task_id", "notifications", ["task_id"])

    # ── Gamification ──────────────────────────────────────────────────────
    if "user_activity_streaks" not in existing:
        op.create_table(
            "user_activity_streaks",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("current_streak", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("longest_streak", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_activity_date", sa.Date(), nullable=True),
            sa.Column("total_tasks_completed", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("efficiency_score", sa.Float(), nullable=False, server_default="0"),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id"),
        )

    if "user_achievements" not in existing:
        op.create_table(
            "user_achievements",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("achievement_type", sa.String(length=40), nullable=False),
            sa.Column("earned_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id", "achievement_type", name="uq_user_achievement"),
        )
        op.create_index("ix_user_achievements_user_id", "user_achievements", ["user_id"])


def downgrade():
    bind = op.get_bind()
    existing = set(sa_inspect(bind).get_table_names())
    for table in (
        "user_achievements", "user_activity_streaks", "notifications", "task_audit_log",
        "task_products", "task_workflow_steps", "tasks", "user_roles", "users",
    ):
        if table in existing:
            op.drop_table(table)
