"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-16 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from pgvector.sqlalchemy import Vector

from helpdesk.core.config import EMBED_DIM

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    op.create_table(
        "organizations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String()),
        sa.Column("free_trial_ends_at", sa.DateTime(timezone=True)),
        sa.Column("automated_replies_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_style_linter_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.String(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True)),
        _created_at(),
    )
    op.create_index("ix_subscriptions_organization_id", "subscriptions", ["organization_id"])

    op.create_table(
        "mailboxes",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("organization_id", sa.String(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("response_generator_prompt", postgresql.JSONB()),
        sa.Column("widget_host", sa.String()),
        sa.Column("auto_respond_email_to_chat", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("disable_auto_response_for_vips", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("escalation_email_body", sa.Text()),
        _created_at(),
    )
    op.create_index("ix_mailboxes_slug", "mailboxes", ["slug"], unique=True)
    op.create_index("ix_mailboxes_organization_id", "mailboxes", ["organization_id"])

    op.create_table(
        "conversations",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("mailbox_id", sa.BigInteger(), sa.ForeignKey("mailboxes.id"), nullable=False),
        sa.Column("subject", sa.Text()),
        sa.Column("email_from", sa.String()),
        sa.Column("email_from_name", sa.String()),
        sa.Column("status", sa.String(), nullable=False, server_default="open"),
        sa.Column("assigned_to_user_id", sa.String()),
        sa.Column("assigned_to_ai", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("closed_at", sa.DateTime(timezone=True)),
        sa.Column("last_user_email_created_at", sa.DateTime(timezone=True)),
        # Keep schema aligned with the embedding dimension used at runtime.
        sa.Column("embedding", Vector(EMBED_DIM)),
        sa.Column("embedding_text", sa.Text()),
        sa.Column("summary", postgresql.JSONB()),
        sa.Column("is_prompt", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("merged_into_id", sa.BigInteger()),
        sa.Column("source", sa.String(), nullable=False, server_default="email"),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_conversations_slug", "conversations", ["slug"], unique=True)
    op.create_index("ix_conversations_mailbox_id", "conversations", ["mailbox_id"])
    op.create_index("ix_conversations_email_from", "conversations", ["email_from"])
    op.create_index("ix_conversations_assigned_to_user_id", "conversations", ["assigned_to_user_id"])
    op.create_index("ix_conversations_mailbox_status", "conversations", ["mailbox_id", "status"])

    op.create_table(
        "messages",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("conversation_id", sa.BigInteger(), sa.ForeignKey("conversations.id"), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("status", sa.String()),
        sa.Column("body", sa.Text()),
        sa.Column("cleaned_up_text", sa.Text()),
        sa.Column("response_to_id", sa.BigInteger()),
        sa.Column("user_id", sa.String()),
        sa.Column("email_from", sa.String()),
        sa.Column("metadata", postgresql.JSONB()),
        sa.Column("prompt_info", postgresql.JSONB()),
        sa.Column("is_perfect", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_pinned", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_flagged_as_bad", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_messages_conversation_id", "messages", ["conversation_id"])
    op.create_index("ix_messages_response_to_id", "messages", ["response_to_id"])
    op.create_index("ix_messages_conversation_created", "messages", ["conversation_id", "created_at"])

    op.create_table(
        "conversation_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("conversation_id", sa.BigInteger(), sa.ForeignKey("conversations.id"), nullable=False),
        sa.Column("type", sa.String(), nullable=False, server_default="update"),
        sa.Column("changes", postgresql.JSONB(), nullable=False),
        sa.Column("by_user_id", sa.String()),
        sa.Column("reason", sa.Text()),
        _created_at(),
    )
    op.create_index("ix_conversation_events_conversation_id", "conversation_events", ["conversation_id"])

    op.create_table(
        "notes",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("conversation_id", sa.BigInteger(), sa.ForeignKey("conversations.id"), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("user_id", sa.String()),
        _created_at(),
    )
    op.create_index("ix_notes_conversation_id", "notes", ["conversation_id"])

    op.create_table(
        "files",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("message_id", sa.BigInteger(), sa.ForeignKey("messages.id")),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("url", sa.String(), nullable=False),
        sa.Column("mimetype", sa.String()),
        _created_at(),
    )
    op.create_index("ix_files_message_id", "files", ["message_id"])

    op.create_table(
        "escalations",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("conversation_id", sa.BigInteger(), sa.ForeignKey("conversations.id"), nullable=False),
        sa.Column("user_id", sa.String()),
        _created_at(),
        sa.Column("resolved_at", sa.DateTime(timezone=True)),
        sa.Column("resolved_via", sa.String()),
    )
    op.create_index("ix_escalations_conversation_id", "escalations", ["conversation_id"])

    op.create_table(
        "faqs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("mailbox_id", sa.BigInteger(), sa.ForeignKey("mailboxes.id"), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("embedding", Vector(EMBED_DIM)),
        _created_at(),
    )
    op.create_index("ix_faqs_mailbox_id", "faqs", ["mailbox_id"])

    op.create_table(
        "websites",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("mailbox_id", sa.BigInteger(), sa.ForeignKey("mailboxes.id"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("url", sa.String(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_websites_mailbox_id", "websites", ["mailbox_id"])

    op.create_table(
        "website_pages",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("website_id", sa.BigInteger(), sa.ForeignKey("websites.id"), nullable=False),
        sa.Column("url", sa.String(), nullable=False),
        sa.Column("page_title", sa.String(), nullable=False),
        sa.Column("markdown", sa.Text(), nullable=False),
        sa.Column("embedding", Vector(EMBED_DIM)),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_website_pages_website_id", "website_pages", ["website_id"])

    op.create_table(
        "workflows",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("mailbox_id", sa.BigInteger(), sa.ForeignKey("mailboxes.id"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("workflow_type", sa.String(), nullable=False, server_default="freeform"),
        sa.Column("run_on_replies", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("auto_reply_from_metadata", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_workflows_mailbox_id", "workflows", ["mailbox_id"])

    op.create_table(
        "workflow_actions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("workflow_id", sa.BigInteger(), sa.ForeignKey("workflows.id"), nullable=False),
        sa.Column("action_type", sa.String(), nullable=False),
        sa.Column("action_value", sa.Text(), nullable=False),
    )
    op.create_index("ix_workflow_actions_workflow_id", "workflow_actions", ["workflow_id"])

    op.create_table(
        "workflow_runs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("workflow_id", sa.BigInteger(), sa.ForeignKey("workflows.id"), nullable=False),
        sa.Column("message_id", sa.BigInteger(), sa.ForeignKey("messages.id"), nullable=False),
        sa.Column("conversation_id", sa.BigInteger(), sa.ForeignKey("conversations.id"), nullable=False),
        sa.Column("workflow_info", postgresql.JSONB(), nullable=False),
        _created_at(),
        sa.UniqueConstraint("workflow_id", "message_id", name="uq_workflow_runs_workflow_message"),
    )
    op.create_index("ix_workflow_runs_workflow_id", "workflow_runs", ["workflow_id"])
    op.create_index("ix_workflow_runs_message_id", "workflow_runs", ["message_id"])
    op.create_index("ix_workflow_runs_conversation_id", "workflow_runs", ["conversation_id"])

    op.create_table(
        "workflow_run_actions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("workflow_run_id", sa.BigInteger(), sa.ForeignKey("workflow_runs.id"), nullable=False),
        sa.Column("action_type", sa.String(), nullable=False),
        sa.Column("action_value", sa.Text(), nullable=False),
    )
    op.create_index("ix_workflow_run_actions_workflow_run_id", "workflow_run_actions", ["workflow_run_id"])

    op.create_table(
        "mailboxes_metadata_api",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("mailbox_id", sa.BigInteger(), sa.ForeignKey("mailboxes.id"), nullable=False),
        sa.Column("url", sa.String(), nullable=False),
        sa.Column("hmac_secret", sa.String(), nullable=False),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_mailboxes_metadata_api_mailbox_id", "mailboxes_metadata_api", ["mailbox_id"])

    op.create_table(
        "tools",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("mailbox_id", sa.BigInteger(), sa.ForeignKey("mailboxes.id"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("url", sa.String(), nullable=False),
        sa.Column("request_method", sa.String(), nullable=False, server_default="GET"),
        sa.Column("headers", postgresql.JSONB()),
        sa.Column("parameters", postgresql.JSONB()),
        sa.Column("authentication_method", sa.String(), nullable=False, server_default="none"),
        sa.Column("authentication_token", sa.String()),
        sa.Column("customer_email_parameter", sa.String()),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("available_in_chat", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.UniqueConstraint("mailbox_id", "slug", name="uq_tools_mailbox_slug"),
    )
    op.create_index("ix_tools_mailbox_id", "tools", ["mailbox_id"])

    op.create_table(
        "platform_customers",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("mailbox_id", sa.BigInteger(), sa.ForeignKey("mailboxes.id"), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String()),
        sa.Column("is_vip", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("metadata", postgresql.JSONB()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("mailbox_id", "email", name="uq_platform_customers_mailbox_email"),
    )
    op.create_index("ix_platform_customers_mailbox_id", "platform_customers", ["mailbox_id"])

    op.create_table(
        "style_linters",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.String(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("before", sa.Text(), nullable=False),
        sa.Column("after", sa.Text(), nullable=False),
    )
    op.create_index("ix_style_linters_organization_id", "style_linters", ["organization_id"])

    op.create_table(
        "ai_usage_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("mailbox_id", sa.BigInteger()),
        sa.Column("model_name", sa.String(), nullable=False),
        sa.Column("query_type", sa.String(), nullable=False),
        sa.Column("input_tokens", sa.Integer(), nullable=False),
        sa.Column("output_tokens", sa.Integer(), nullable=False),
        sa.Column("cached_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cost", sa.Numeric(12, 7), nullable=False),
        _created_at(),
    )
    op.create_index("ix_ai_usage_events_mailbox_id", "ai_usage_events", ["mailbox_id"])


def downgrade() -> None:
    for table in (
        "ai_usage_events",
        "style_linters",
        "platform_customers",
        "tools",
        "mailboxes_metadata_api",
        "workflow_run_actions",
        "workflow_runs",
        "workflow_actions",
        "workflows",
        "website_pages",
        "websites",
        "faqs",
        "escalations",
        "files",
        "notes",
        "conversation_events",
        "messages",
        "conversations",
        "mailboxes",
        "subscriptions",
        "organizations",
    ):
        op.drop_table(table)
