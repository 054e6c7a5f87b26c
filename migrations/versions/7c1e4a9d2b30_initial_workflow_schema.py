"""initial_workflow_schema

Directory (business units, roles, assignments, memberships), chain
configuration (chains, sections, initiators, steps), requests with their
append-only history, and in-app notifications.

Revision ID: 7c1e4a9d2b30
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "7c1e4a9d2b30"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    # ── Directory ────────────────────────────────────────────────────────
    if "business_units" not in existing_tables:
        op.create_table(
            "business_units",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("name"),
        )

    if "roles" not in existing_tables:
        op.create_table(
            "roles",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("scope", sa.String(length=20), nullable=False, comment="BU | ORGANIZATION"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("name"),
        )

    if "role_assignments" not in existing_tables:
        op.create_table(
            "role_assignments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("role_id", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id", "role_id", name="uq_role_assignment_user_role"),
        )
        op.create_index("ix_role_assignments_user_id", "role_assignments", ["user_id"])
        op.create_index("ix_role_assignments_role_id", "role_assignments", ["role_id"])

    if "business_unit_memberships" not in existing_tables:
        op.create_table(
            "business_unit_memberships",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("business_unit_id", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["business_unit_id"], ["business_units.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id", "business_unit_id", name="uq_bu_membership_user_bu"),
        )
        op.create_index("ix_business_unit_memberships_user_id", "business_unit_memberships", ["user_id"])
        op.create_index(
            "ix_business_unit_memberships_business_unit_id", "business_unit_memberships", ["business_unit_id"],
        )

    # ── Chain configuration ──────────────────────────────────────────────
    if "workflow_chains" not in existing_tables:
        op.create_table(
            "workflow_chains",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("business_unit_id", sa.Integer(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("parent_chain_id", sa.Integer(), nullable=True),
            sa.Column("is_latest", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
            sa.Column("created_by", sa.String(length=64), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["business_unit_id"], ["business_units.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["parent_chain_id"], ["workflow_chains.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_workflow_chains_business_unit_id", "workflow_chains", ["business_unit_id"])

    if "workflow_sections" not in existing_tables:
        op.create_table(
            "workflow_sections",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("chain_id", sa.Integer(), nullable=False),
            sa.Column("section_order", sa.Integer(), nullable=False, comment="0-based, contiguous within chain"),
            sa.Column("kind", sa.String(length=20), nullable=False, comment="FORM | APPROVAL"),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("form_template_id", sa.String(length=64), nullable=True),
            sa.Column("is_hard_fork", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.ForeignKeyConstraint(["chain_id"], ["workflow_chains.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("chain_id", "section_order", name="uq_workflow_section_chain_order"),
        )
        op.create_index("ix_workflow_sections_chain_id", "workflow_sections", ["chain_id"])

    if "workflow_section_initiators" not in existing_tables:
        op.create_table(
            "workflow_section_initiators",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("section_id", sa.Integer(), nullable=False),
            sa.Column("role_id", sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(["section_id"], ["workflow_sections.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("section_id", "role_id", name="uq_section_initiator_role"),
        )
        op.create_index(
            "ix_workflow_section_initiators_section_id", "workflow_section_initiators", ["section_id"],
        )

    if "workflow_steps" not in existing_tables:
        op.create_table(
            "workflow_steps",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("section_id", sa.Integer(), nullable=False),
            sa.Column("step_number", sa.Integer(), nullable=False, comment="1-based approval order"),
            sa.Column("approver_role_id", sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(["section_id"], ["workflow_sections.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["approver_role_id"], ["roles.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("section_id", "step_number", name="uq_workflow_step_section_number"),
        )
        op.create_index("ix_workflow_steps_section_id", "workflow_steps", ["section_id"])

    # ── Requests ─────────────────────────────────────────────────────────
    if "requests" not in existing_tables:
        op.create_table(
            "requests",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("chain_id", sa.Integer(), nullable=False),
            sa.Column("business_unit_id", sa.Integer(), nullable=False),
            sa.Column("initiator_id", sa.String(length=64), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="DRAFT"),
            sa.Column("current_section_order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("data", sa.JSON(), nullable=True),
            sa.Column("parent_request_id", sa.String(length=36), nullable=True),
            sa.Column("root_request_id", sa.String(length=36), nullable=False),
            sa.Column("fork_key", sa.String(length=120), nullable=True),
            sa.Column("is_handed_off", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("review_round", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["chain_id"], ["workflow_chains.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["business_unit_id"], ["business_units.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["parent_request_id"], ["requests.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("fork_key"),
        )
        op.create_index("ix_requests_status", "requests", ["status"])
        op.create_index("ix_requests_root", "requests", ["root_request_id"])
        op.create_index("ix_requests_chain_id", "requests", ["chain_id"])
        op.create_index("ix_requests_business_unit_id", "requests", ["business_unit_id"])
        op.create_index("ix_requests_initiator_id", "requests", ["initiator_id"])
        op.create_index("ix_requests_parent_request_id", "requests", ["parent_request_id"])

    if "request_history" not in existing_tables:
        op.create_table(
            "request_history",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("request_id", sa.String(length=36), nullable=False),
            sa.Column("actor_id", sa.String(length=64), nullable=False),
            sa.Column("action", sa.String(length=30), nullable=False),
            sa.Column("comment", sa.Text(), nullable=True),
            sa.Column("section_order", sa.Integer(), nullable=False),
            sa.Column("step_number", sa.Integer(), nullable=True),
            sa.Column("review_round", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["request_id"], ["requests.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_request_history_request_id", "request_history", ["request_id"])
        op.create_index("ix_request_history_actor_id", "request_history", ["actor_id"])
        op.create_index(
            "ix_history_ledger", "request_history", ["request_id", "section_order", "review_round", "action"],
        )

    # ── Notifications ────────────────────────────────────────────────────
    if "notifications" not in existing_tables:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("recipient", sa.String(length=64), nullable=False, comment="User id"),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("category", sa.String(length=30), nullable=True),
            sa.Column("severity", sa.String(length=20), nullable=True),
            sa.Column("request_id", sa.String(length=36), nullable=True),
            sa.Column("section_order", sa.Integer(), nullable=True),
            sa.Column("triggered_by", sa.String(length=64), nullable=True, comment="Actor id of the transition"),
            sa.Column("is_read", sa.Boolean(), nullable=False),
            sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_recipient_unread", "notifications", ["recipient", "is_read"])
        op.create_index("ix_notifications_request_id", "notifications", ["request_id"])


def downgrade():
    op.drop_table("notifications")
    op.drop_table("request_history")
    op.drop_table("requests")
    op.drop_table("workflow_steps")
    op.drop_table("workflow_section_initiators")
    op.drop_table("workflow_sections")
    op.drop_table("workflow_chains")
    op.drop_table("business_unit_memberships")
    op.drop_table("role_assignments")
    op.drop_table("roles")
    op.drop_table("business_units")
