"""initial schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19 09:00:00
"""
from typing import Sequence, Union

import sqlalchemy as sa
import sqlmodel
from alembic import op

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

STRING = sqlmodel.sql.sqltypes.AutoString


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", STRING(), nullable=False),
        sa.Column("name", STRING(), nullable=False),
        sa.Column("email", STRING(), nullable=False),
        sa.Column("role", STRING(), nullable=False),
        sa.Column("department_id", STRING(), nullable=True),
        sa.Column("manager_id", STRING(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_role", "users", ["role"])
    op.create_index("ix_users_department_id", "users", ["department_id"])

    op.create_table(
        "departments",
        sa.Column("id", STRING(), nullable=False),
        sa.Column("name", STRING(), nullable=False),
        sa.Column("code", STRING(), nullable=False),
        sa.Column("head_id", STRING(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_departments_code", "departments", ["code"], unique=True)

    op.create_table(
        "documents",
        sa.Column("id", STRING(), nullable=False),
        sa.Column("title", STRING(), nullable=False),
        sa.Column("file_type", STRING(), nullable=False),
        sa.Column("owner_id", STRING(), nullable=False),
        sa.Column("department_id", STRING(), nullable=True),
        sa.Column("meta", STRING(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_documents_file_type", "documents", ["file_type"])
    op.create_index("ix_documents_owner_id", "documents", ["owner_id"])
    op.create_index("ix_documents_department_id", "documents", ["department_id"])

    op.create_table(
        "workflow_templates",
        sa.Column("id", STRING(), nullable=False),
        sa.Column("name", STRING(), nullable=False),
        sa.Column("description", STRING(), nullable=False),
        sa.Column("department", STRING(), nullable=False),
        sa.Column("file_types", STRING(), nullable=False),
        sa.Column("steps", STRING(), nullable=False),
        sa.Column("sla", STRING(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("created_by", STRING(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_workflow_templates_department", "workflow_templates", ["department"])

    op.create_table(
        "workflow_instances",
        sa.Column("id", STRING(), nullable=False),
        sa.Column("template_id", STRING(), nullable=False),
        sa.Column("template_version", sa.Integer(), nullable=False),
        sa.Column("subject_ref", STRING(), nullable=False),
        sa.Column("initiator_id", STRING(), nullable=False),
        sa.Column("status", STRING(), nullable=False),
        sa.Column("current_step_index", sa.Integer(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("cancel_reason", STRING(), nullable=True),
        sa.Column("variables", STRING(), nullable=False),
        sa.Column("steps_snapshot", STRING(), nullable=False),
        sa.Column("sla_snapshot", STRING(), nullable=False),
        sa.Column("lock_version", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["template_id"], ["workflow_templates.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_workflow_instances_template_id", "workflow_instances", ["template_id"])
    op.create_index("ix_workflow_instances_subject_ref", "workflow_instances", ["subject_ref"])
    op.create_index("ix_workflow_instances_status", "workflow_instances", ["status"])

    op.create_table(
        "workflow_step_states",
        sa.Column("id", STRING(), nullable=False),
        sa.Column("instance_id", STRING(), nullable=False),
        sa.Column("step_key", STRING(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("name", STRING(), nullable=False),
        sa.Column("type", STRING(), nullable=False),
        sa.Column("status", STRING(), nullable=False),
        sa.Column("assignees", STRING(), nullable=False),
        sa.Column("deadline", sa.DateTime(), nullable=True),
        sa.Column("decisions", STRING(), nullable=False),
        sa.Column("form_data", STRING(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("last_notified_level", STRING(), nullable=True),
        sa.Column("last_notified_at", sa.DateTime(), nullable=True),
        sa.Column("escalated", sa.Boolean(), nullable=False),
        sa.Column("reassignments", STRING(), nullable=False),
        sa.ForeignKeyConstraint(["instance_id"], ["workflow_instances.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_workflow_step_states_instance_id", "workflow_step_states", ["instance_id"])
    op.create_index("ix_workflow_step_states_status", "workflow_step_states", ["status"])
    op.create_index("ix_workflow_step_states_deadline", "workflow_step_states", ["deadline"])

    op.create_table(
        "workflow_permissions",
        sa.Column("id", STRING(), nullable=False),
        sa.Column("template_id", STRING(), nullable=False),
        sa.Column("entity_type", STRING(), nullable=False),
        sa.Column("entity_id", STRING(), nullable=False),
        sa.Column("permissions", STRING(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("conditions", STRING(), nullable=True),
        sa.Column("created_by", STRING(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["template_id"], ["workflow_templates.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_workflow_permissions_template_id", "workflow_permissions", ["template_id"])
    op.create_index("ix_workflow_permissions_entity_type", "workflow_permissions", ["entity_type"])
    op.create_index("ix_workflow_permissions_entity_id", "workflow_permissions", ["entity_id"])

    op.create_table(
        "workflow_notifications",
        sa.Column("id", STRING(), nullable=False),
        sa.Column("recipient_id", STRING(), nullable=False),
        sa.Column("instance_id", STRING(), nullable=True),
        sa.Column("step_id", STRING(), nullable=True),
        sa.Column("type", STRING(), nullable=False),
        sa.Column("priority", STRING(), nullable=False),
        sa.Column("title", STRING(), nullable=False),
        sa.Column("message", STRING(), nullable=False),
        sa.Column("read", sa.Boolean(), nullable=False),
        sa.Column("read_at", sa.DateTime(), nullable=True),
        sa.Column("action_url", STRING(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_workflow_notifications_recipient_id", "workflow_notifications", ["recipient_id"])
    op.create_index("ix_workflow_notifications_instance_id", "workflow_notifications", ["instance_id"])
    op.create_index("ix_workflow_notifications_type", "workflow_notifications", ["type"])
    op.create_index("ix_workflow_notifications_read", "workflow_notifications", ["read"])

    op.create_table(
        "workflow_events",
        sa.Column("id", STRING(), nullable=False),
        sa.Column("instance_id", STRING(), nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("step_id", STRING(), nullable=True),
        sa.Column("event_type", STRING(), nullable=False),
        sa.Column("actor_id", STRING(), nullable=True),
        sa.Column("data", STRING(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_workflow_events_instance_id", "workflow_events", ["instance_id"])

    op.create_table(
        "scheduler_leases",
        sa.Column("name", STRING(), nullable=False),
        sa.Column("holder", STRING(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("name"),
    )


def downgrade() -> None:
    op.drop_table("scheduler_leases")
    op.drop_index("ix_workflow_events_instance_id", table_name="workflow_events")
    op.drop_table("workflow_events")
    for column in ("read", "type", "instance_id", "recipient_id"):
        op.drop_index(f"ix_workflow_notifications_{column}", table_name="workflow_notifications")
    op.drop_table("workflow_notifications")
    for column in ("entity_id", "entity_type", "template_id"):
        op.drop_index(f"ix_workflow_permissions_{column}", table_name="workflow_permissions")
    op.drop_table("workflow_permissions")
    for column in ("deadline", "status", "instance_id"):
        op.drop_index(f"ix_workflow_step_states_{column}", table_name="workflow_step_states")
    op.drop_table("workflow_step_states")
    for column in ("status", "subject_ref", "template_id"):
        op.drop_index(f"ix_workflow_instances_{column}", table_name="workflow_instances")
    op.drop_table("workflow_instances")
    op.drop_index("ix_workflow_templates_department", table_name="workflow_templates")
    op.drop_table("workflow_templates")
    for column in ("department_id", "owner_id", "file_type"):
        op.drop_index(f"ix_documents_{column}", table_name="documents")
    op.drop_table("documents")
    op.drop_index("ix_departments_code", table_name="departments")
    op.drop_table("departments")
    for column in ("department_id", "role", "email"):
        op.drop_index(f"ix_users_{column}", table_name="users")
    op.drop_table("users")
