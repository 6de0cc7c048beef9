from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from pgvector.sqlalchemy import Vector

from helpdesk.core.config import EMBED_DIM


# JSONB on Postgres; plain JSON elsewhere so the schema also builds on SQLite.
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
BigId = BigInteger().with_variant(Integer(), "sqlite")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _random_slug() -> str:
    return uuid4().hex


class Base(DeclarativeBase):
    pass


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    free_trial_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Counts workflow/auto replies sent during the free trial.
    automated_replies_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_style_linter_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    status: Mapped[str] = mapped_column(String)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class Mailbox(Base):
    __tablename__ = "mailboxes"

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str] = mapped_column(String)
    organization_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    # Tenant-specific writing rules appended to the draft system prompt.
    response_generator_prompt: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    widget_host: Mapped[str | None] = mapped_column(String, nullable=True)
    auto_respond_email_to_chat: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    disable_auto_response_for_vips: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    escalation_email_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        Index("ix_conversations_mailbox_status", "mailbox_id", "status"),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    # Generated once at creation; never rewritten.
    slug: Mapped[str] = mapped_column(String, unique=True, index=True, default=_random_slug)
    mailbox_id: Mapped[int] = mapped_column(BigId, ForeignKey("mailboxes.id"), index=True)
    subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    email_from: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    email_from_name: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="open")
    assigned_to_user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    assigned_to_ai: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # "First closed at": set on the first transition into closed and kept on reopen.
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_user_email_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    embedding: Mapped[Any | None] = mapped_column(Vector(EMBED_DIM), nullable=True)
    embedding_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    summary: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    is_prompt: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    merged_into_id: Mapped[int | None] = mapped_column(BigId, nullable=True)
    source: Mapped[str] = mapped_column(String, default="email")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, onupdate=_utc_now)


class ConversationMessage(Base):
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    conversation_id: Mapped[int] = mapped_column(BigId, ForeignKey("conversations.id"), index=True)
    role: Mapped[str] = mapped_column(String)
    status: Mapped[str | None] = mapped_column(String, nullable=True)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Derived plain text, computed lazily and cached on first access.
    cleaned_up_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_to_id: Mapped[int | None] = mapped_column(BigId, nullable=True, index=True)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    email_from: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONType, nullable=True)
    prompt_info: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    is_perfect: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_pinned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_flagged_as_bad: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ConversationEvent(Base):
    __tablename__ = "conversation_events"

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    conversation_id: Mapped[int] = mapped_column(BigId, ForeignKey("conversations.id"), index=True)
    type: Mapped[str] = mapped_column(String, default="update")
    # Only status/assignee diffs are recorded here.
    changes: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    by_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class Note(Base):
    __tablename__ = "notes"

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    conversation_id: Mapped[int] = mapped_column(BigId, ForeignKey("conversations.id"), index=True)
    body: Mapped[str] = mapped_column(Text)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class File(Base):
    __tablename__ = "files"

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    message_id: Mapped[int | None] = mapped_column(BigId, ForeignKey("messages.id"), nullable=True, index=True)
    name: Mapped[str] = mapped_column(String)
    url: Mapped[str] = mapped_column(String)
    mimetype: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class Escalation(Base):
    __tablename__ = "escalations"

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    conversation_id: Mapped[int] = mapped_column(BigId, ForeignKey("conversations.id"), index=True)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    # Null means active; at most one active row per conversation (enforced by query).
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # How it was resolved: email, note or assignment.
    resolved_via: Mapped[str | None] = mapped_column(String, nullable=True)


class KnowledgeBankEntry(Base):
    __tablename__ = "faqs"

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    mailbox_id: Mapped[int] = mapped_column(BigId, ForeignKey("mailboxes.id"), index=True)
    content: Mapped[str] = mapped_column(Text)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    embedding: Mapped[Any | None] = mapped_column(Vector(EMBED_DIM), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class Website(Base):
    __tablename__ = "websites"

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    mailbox_id: Mapped[int] = mapped_column(BigId, ForeignKey("mailboxes.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    url: Mapped[str] = mapped_column(String)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class WebsitePage(Base):
    __tablename__ = "website_pages"

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    website_id: Mapped[int] = mapped_column(BigId, ForeignKey("websites.id"), index=True)
    url: Mapped[str] = mapped_column(String)
    page_title: Mapped[str] = mapped_column(String)
    markdown: Mapped[str] = mapped_column(Text)
    embedding: Mapped[Any | None] = mapped_column(Vector(EMBED_DIM), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Workflow(Base):
    __tablename__ = "workflows"

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    mailbox_id: Mapped[int] = mapped_column(BigId, ForeignKey("mailboxes.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Free-form natural-language condition evaluated by the LLM.
    prompt: Mapped[str] = mapped_column(Text)
    order: Mapped[int] = mapped_column(Integer, default=0)
    workflow_type: Mapped[str] = mapped_column(String, default="freeform")
    run_on_replies: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    auto_reply_from_metadata: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, onupdate=_utc_now)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class WorkflowAction(Base):
    __tablename__ = "workflow_actions"

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    workflow_id: Mapped[int] = mapped_column(BigId, ForeignKey("workflows.id"), index=True)
    action_type: Mapped[str] = mapped_column(String)
    action_value: Mapped[str] = mapped_column(Text)


class WorkflowRun(Base):
    __tablename__ = "workflow_runs"
    __table_args__ = (
        # One run per (workflow, message) so redelivered events stay idempotent.
        UniqueConstraint("workflow_id", "message_id", name="uq_workflow_runs_workflow_message"),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    workflow_id: Mapped[int] = mapped_column(BigId, ForeignKey("workflows.id"), index=True)
    message_id: Mapped[int] = mapped_column(BigId, ForeignKey("messages.id"), index=True)
    conversation_id: Mapped[int] = mapped_column(BigId, ForeignKey("conversations.id"), index=True)
    # Snapshot of the workflow definition at fire time.
    workflow_info: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class WorkflowRunAction(Base):
    __tablename__ = "workflow_run_actions"

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    workflow_run_id: Mapped[int] = mapped_column(BigId, ForeignKey("workflow_runs.id"), index=True)
    action_type: Mapped[str] = mapped_column(String)
    action_value: Mapped[str] = mapped_column(Text)


class MetadataApi(Base):
    __tablename__ = "mailboxes_metadata_api"

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    mailbox_id: Mapped[int] = mapped_column(BigId, ForeignKey("mailboxes.id"), index=True)
    url: Mapped[str] = mapped_column(String)
    hmac_secret: Mapped[str] = mapped_column(String)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Tool(Base):
    __tablename__ = "tools"
    __table_args__ = (
        UniqueConstraint("mailbox_id", "slug", name="uq_tools_mailbox_slug"),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    mailbox_id: Mapped[int] = mapped_column(BigId, ForeignKey("mailboxes.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    slug: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(Text, default="")
    url: Mapped[str] = mapped_column(String)
    request_method: Mapped[str] = mapped_column(String, default="GET")
    headers: Mapped[dict[str, str] | None] = mapped_column(JSONType, nullable=True)
    # [{"name", "type", "in": path|query|body, "required", "description"}]
    parameters: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)
    authentication_method: Mapped[str] = mapped_column(String, default="none")
    authentication_token: Mapped[str | None] = mapped_column(String, nullable=True)
    customer_email_parameter: Mapped[str | None] = mapped_column(String, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    available_in_chat: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class PlatformCustomer(Base):
    __tablename__ = "platform_customers"
    __table_args__ = (
        UniqueConstraint("mailbox_id", "email", name="uq_platform_customers_mailbox_email"),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    mailbox_id: Mapped[int] = mapped_column(BigId, ForeignKey("mailboxes.id"), index=True)
    email: Mapped[str] = mapped_column(String)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    is_vip: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONType, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, onupdate=_utc_now)


class StyleLinter(Base):
    __tablename__ = "style_linters"

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    before: Mapped[str] = mapped_column(Text)
    after: Mapped[str] = mapped_column(Text)


class AIUsageEvent(Base):
    __tablename__ = "ai_usage_events"

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    mailbox_id: Mapped[int | None] = mapped_column(BigId, nullable=True, index=True)
    model_name: Mapped[str] = mapped_column(String)
    query_type: Mapped[str] = mapped_column(String)
    input_tokens: Mapped[int] = mapped_column(Integer)
    output_tokens: Mapped[int] = mapped_column(Integer)
    cached_tokens: Mapped[int] = mapped_column(Integer, default=0)
    # Append-only ledger; cost kept at 7 decimal places.
    cost: Mapped[Any] = mapped_column(Numeric(12, 7))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
