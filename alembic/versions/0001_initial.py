"""Initial schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "0001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("username", sa.String(length=128), nullable=False),
        sa.Column("password_hash", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
        sa.UniqueConstraint("username"),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("status", sa.String(length=32), server_default=sa.text("'pending_confirmation'"), nullable=False),
        sa.Column("subscribed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "subscription_tokens",
        sa.Column("subscription_token", sa.String(length=64), nullable=False),
        sa.Column("subscriber_id", sa.Uuid(), nullable=False),
        sa.ForeignKeyConstraint(["subscriber_id"], ["subscriptions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("subscription_token"),
    )

    op.create_table(
        "idempotency",
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("idempotency_key", sa.String(length=50), nullable=False),
        sa.Column("response_status_code", sa.Integer(), nullable=True),
        sa.Column("response_headers", sa.JSON(), nullable=True),
        sa.Column("response_body", sa.LargeBinary(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.user_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("user_id", "idempotency_key"),
    )

    op.create_table(
        "newsletter_issues",
        sa.Column("newsletter_issue_id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("text_content", sa.Text(), nullable=False),
        sa.Column("html_content", sa.Text(), nullable=False),
        sa.Column("published_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("newsletter_issue_id"),
    )

    op.create_table(
        "issue_delivery_queue",
        sa.Column("newsletter_issue_id", sa.Uuid(), nullable=False),
        sa.Column("subscriber_email", sa.String(length=320), nullable=False),
        sa.Column("n_retries", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("execute_after", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("claimed_by", sa.String(length=128), nullable=True),
        sa.Column("claim_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(
            ["newsletter_issue_id"], ["newsletter_issues.newsletter_issue_id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("newsletter_issue_id", "subscriber_email"),
    )

    op.create_table(
        "issue_delivery_dead_letters",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("newsletter_issue_id", sa.Uuid(), nullable=False),
        sa.Column("subscriber_email", sa.String(length=320), nullable=False),
        sa.Column("n_retries", sa.Integer(), nullable=False),
        sa.Column("error_class", sa.String(length=32), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("dead_lettered_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(
            ["newsletter_issue_id"], ["newsletter_issues.newsletter_issue_id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "audit_events",
        sa.Column("audit_event_id", sa.Uuid(), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("actor", sa.String(length=128), server_default=sa.text("'system'"), nullable=False),
        sa.Column("subject_id", sa.String(length=128), nullable=True),
        sa.Column("detail", sa.JSON(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("audit_event_id"),
    )

    op.create_index("ix_issue_delivery_queue_execute_after", "issue_delivery_queue", ["execute_after"])
    op.create_index("ix_audit_events_subject_id", "audit_events", ["subject_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_subject_id", table_name="audit_events")
    op.drop_index("ix_issue_delivery_queue_execute_after", table_name="issue_delivery_queue")

    op.drop_table("audit_events")
    op.drop_table("issue_delivery_dead_letters")
    op.drop_table("issue_delivery_queue")
    op.drop_table("newsletter_issues")
    op.drop_table("idempotency")
    op.drop_table("subscription_tokens")
    op.drop_table("subscriptions")
    op.drop_table("users")
