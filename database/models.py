"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type for workflow graphs, variables, tags and topics; PG maps it to
    jsonb, MySQL to native JSON, SQLite to TEXT.
  - String primary keys (uuid hex), no database-specific sequences.
  - Exclusivity, locking and job claiming are plain conditional UPDATEs on
    these tables (see database/store.py); no advisory locks.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, String, Integer, DateTime, Text, ForeignKey,
    Index, JSON, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Instances & gateway configuration
# ──────────────────────────────────────────────────────────────

class InstanceRow(Base):
    __tablename__ = "instances"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    display_name: Mapped[str] = mapped_column(String(256), default="")
    status: Mapped[str] = mapped_column(String(32), default="disconnected")
    provider: Mapped[str] = mapped_column(String(32), default="evolution")

    api_token: Mapped[str] = mapped_column(String(256), default="")
    base_url: Mapped[str] = mapped_column(String(512), default="")
    api_key: Mapped[str] = mapped_column(String(256), default="")
    phone_number: Mapped[str] = mapped_column(String(32), default="")

    last_connected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    disconnected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    status_changed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_instances_name", "name"),
        Index("ix_instances_tenant", "tenant_id"),
        Index("ix_instances_token", "api_token"),
    )


class TenantGatewayConfigRow(Base):
    __tablename__ = "tenant_gateway_configs"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    evolution_base_url: Mapped[str] = mapped_column(String(512), default="")
    evolution_api_key: Mapped[str] = mapped_column(String(256), default="")
    uazapi_base_url: Mapped[str] = mapped_column(String(512), default="")


# ──────────────────────────────────────────────────────────────
#  Contacts & inbox messages
# ──────────────────────────────────────────────────────────────

class ContactRow(Base):
    __tablename__ = "contacts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    instance_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("instances.id"), nullable=True)
    phone: Mapped[str] = mapped_column(String(32), nullable=False)
    remote_jid: Mapped[str] = mapped_column(String(128), default="")
    name: Mapped[str] = mapped_column(String(256), default="")
    profile_pic_url: Mapped[str] = mapped_column(String(1024), default="")
    tags: Mapped[Any] = mapped_column(JSON, default=list)

    unread_count: Mapped[int] = mapped_column(Integer, default=0)
    flow_paused: Mapped[bool] = mapped_column(Boolean, default=False)
    last_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "instance_id", "phone", name="uq_contacts_lookup"),
    )


class MessageRow(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    contact_id: Mapped[str] = mapped_column(String(64), ForeignKey("contacts.id"), nullable=False)
    instance_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    message_type: Mapped[str] = mapped_column(String(16), default="text")
    content: Mapped[str] = mapped_column(Text, default="")
    media_url: Mapped[str] = mapped_column(String(1024), default="")

    # NULL when unknown so the unique constraint only covers real remote ids
    remote_message_id: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="sent")
    is_from_flow: Mapped[bool] = mapped_column(Boolean, default=False)
    flow_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("contact_id", "remote_message_id", name="uq_messages_contact_remote"),
        Index("ix_messages_remote_id", "remote_message_id"),
        Index("ix_messages_contact_created", "contact_id", "created_at"),
    )


# ──────────────────────────────────────────────────────────────
#  Workflows & flow sessions
# ──────────────────────────────────────────────────────────────

class WorkflowRow(Base):
    __tablename__ = "workflows"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(256), default="")
    nodes: Mapped[Any] = mapped_column(JSON, default=list)
    edges: Mapped[Any] = mapped_column(JSON, default=list)
    trigger_type: Mapped[str] = mapped_column(String(16), default="manual")
    trigger_tags: Mapped[Any] = mapped_column(JSON, default=list)
    pause_other_flows: Mapped[bool] = mapped_column(Boolean, default=False)
    assigned_instances: Mapped[Any] = mapped_column(JSON, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    __table_args__ = (
        Index("ix_workflows_tenant_trigger", "tenant_id", "trigger_type", "is_active"),
    )


class FlowSessionRow(Base):
    __tablename__ = "flow_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    workflow_id: Mapped[str] = mapped_column(String(64), nullable=False)
    contact_id: Mapped[str] = mapped_column(String(64), nullable=False)
    instance_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    current_node_id: Mapped[str] = mapped_column(String(128), nullable=False)
    variables: Mapped[Any] = mapped_column(JSON, default=dict)
    status: Mapped[str] = mapped_column(String(16), default="active")

    processing: Mapped[bool] = mapped_column(Boolean, default=False)
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # Fencing token of the lock holder; checkpoints and releases must present it
    lock_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    # "contact_id:workflow_id" while active, NULL otherwise
    active_key: Mapped[Optional[str]] = mapped_column(String(160), nullable=True)
    timeout_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    last_interaction_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_flow_sessions_contact_status", "contact_id", "status"),
        Index("ix_flow_sessions_workflow_contact", "workflow_id", "contact_id"),
        Index("ix_flow_sessions_processing", "processing", "processing_started_at"),
        UniqueConstraint("active_key", name="uq_flow_sessions_active"),
    )


class DelayJobRow(Base):
    __tablename__ = "delay_jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    session_id: Mapped[str] = mapped_column(String(64), ForeignKey("flow_sessions.id"), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), default="")
    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), default="delay")
    status: Mapped[str] = mapped_column(String(16), default="scheduled")
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str] = mapped_column(Text, default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_delay_jobs_due", "status", "run_at"),
        Index("ix_delay_jobs_session", "session_id", "status"),
    )


# ──────────────────────────────────────────────────────────────
#  Maturation loops
# ──────────────────────────────────────────────────────────────

class ConversationLoopRow(Base):
    __tablename__ = "conversation_loops"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(256), default="")
    chip_a_id: Mapped[str] = mapped_column(String(64), ForeignKey("instances.id"), nullable=False)
    chip_b_id: Mapped[str] = mapped_column(String(64), ForeignKey("instances.id"), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    min_delay_seconds: Mapped[int] = mapped_column(Integer, default=30)
    max_delay_seconds: Mapped[int] = mapped_column(Integer, default=120)
    messages_per_round: Mapped[int] = mapped_column(Integer, default=2)
    daily_limit: Mapped[int] = mapped_column(Integer, default=100)
    quiet_hours_start: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    quiet_hours_end: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    topics: Mapped[Any] = mapped_column(JSON, default=list)


class LoopMessageRow(Base):
    __tablename__ = "loop_messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    conversation_id: Mapped[str] = mapped_column(String(64), ForeignKey("conversation_loops.id"), nullable=False)
    from_instance_id: Mapped[str] = mapped_column(String(64), nullable=False)
    to_instance_id: Mapped[str] = mapped_column(String(64), nullable=False)
    body: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(16), default="sent")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_loop_messages_conv_created", "conversation_id", "created_at"),
    )
