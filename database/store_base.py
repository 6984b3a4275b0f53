"""
Abstract Flow Store — interface for all storage backends.

Implementations:
  - SqlFlowStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryFlowStore (dict-based, single-process, no persistence)

The store is the only shared mutable resource between workers. Every
operation that must be exclusive (session lock, job claim, message dedup,
one active session per contact and workflow, one contact per phone,
forward-only status) is a single conditional write or a unique key here,
never a read-then-write in the caller.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.schemas import (
    Contact, ConversationLoop, DelayJob, DelayJobStatus, DeliveryStatus, FlowSession,
    InboxMessage, Instance, LoopMessage, TenantGatewayConfig, TriggerType, Workflow,
)


class BaseFlowStore(ABC):
    """Interface that all flow store backends must implement."""

    # ── Instances ─────────────────────────────────────────────

    @abstractmethod
    async def get_instance(self, instance_id: str) -> Optional[Instance]:
        ...

    @abstractmethod
    async def get_instance_by_name(self, name: str) -> Optional[Instance]:
        """Look up by provider instance name, falling back to the UazAPI token."""
        ...

    @abstractmethod
    async def upsert_instance(self, instance: Instance) -> Instance:
        ...

    @abstractmethod
    async def update_instance(self, instance_id: str, **fields) -> Optional[Instance]:
        ...

    @abstractmethod
    async def get_tenant_gateway_config(self, tenant_id: str) -> Optional[TenantGatewayConfig]:
        ...

    @abstractmethod
    async def upsert_tenant_gateway_config(self, config: TenantGatewayConfig) -> TenantGatewayConfig:
        ...

    # ── Contacts ──────────────────────────────────────────────

    @abstractmethod
    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        ...

    @abstractmethod
    async def find_contact(self, tenant_id: str, instance_id: Optional[str],
                           phone: str) -> Optional[Contact]:
        ...

    @abstractmethod
    async def upsert_contact(self, contact: Contact) -> Contact:
        """
        Insert or update by id. A new contact whose (tenant, instance, phone)
        is already taken is not inserted; the existing contact is returned.
        """
        ...

    @abstractmethod
    async def update_contact(self, contact_id: str, **fields) -> Optional[Contact]:
        ...

    @abstractmethod
    async def record_contact_activity(self, contact_id: str, at: datetime,
                                      inbound: bool) -> None:
        """Set last_message_at; inbound messages also bump unread_count."""
        ...

    # ── Messages ──────────────────────────────────────────────

    @abstractmethod
    async def add_message(self, message: InboxMessage) -> Optional[InboxMessage]:
        """Insert; None when (contact_id, remote_message_id) already exists."""
        ...

    @abstractmethod
    async def list_messages(self, contact_id: str, limit: int = 50) -> list[InboxMessage]:
        ...

    @abstractmethod
    async def update_message_status(self, remote_message_id: str,
                                    status: DeliveryStatus) -> int:
        """Forward-only status update by remote id; returns rows changed."""
        ...

    @abstractmethod
    async def backfill_remote_id(self, contact_id: str, remote_message_id: str) -> bool:
        """Attach a remote id to the newest outbound message that lacks one."""
        ...

    @abstractmethod
    async def list_unread_inbound(self, contact_id: str, limit: int = 50) -> list[InboxMessage]:
        ...

    @abstractmethod
    async def mark_messages_read(self, message_ids: list[str], at: datetime) -> int:
        ...

    # ── Workflows ─────────────────────────────────────────────

    @abstractmethod
    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        ...

    @abstractmethod
    async def upsert_workflow(self, workflow: Workflow) -> Workflow:
        ...

    @abstractmethod
    async def list_active_workflows(self, tenant_id: str,
                                    trigger_type: TriggerType) -> list[Workflow]:
        ...

    # ── Flow sessions ─────────────────────────────────────────

    @abstractmethod
    async def get_flow_session(self, session_id: str) -> Optional[FlowSession]:
        ...

    @abstractmethod
    async def create_flow_session(self, session: FlowSession) -> FlowSession:
        ...

    @abstractmethod
    async def find_active_session(self, contact_id: str, workflow_id: str) -> Optional[FlowSession]:
        ...

    @abstractmethod
    async def list_active_sessions(self, contact_id: str) -> list[FlowSession]:
        ...

    @abstractmethod
    async def update_flow_session(self, session_id: str, **fields) -> Optional[FlowSession]:
        ...

    @abstractmethod
    async def create_flow_session_if_absent(self, session: FlowSession) -> Optional[FlowSession]:
        """
        Insert an active session unless the contact already has an active
        session of the same workflow. Returns None when it does.
        """
        ...

    @abstractmethod
    async def try_acquire_lock(self, session_id: str, now: datetime,
                               stale_before: datetime) -> Optional[str]:
        """
        Set processing=true iff the session is unlocked or its lock was taken
        before `stale_before`. Exactly one concurrent caller wins and gets a
        fresh lock token back; losers get None.
        """
        ...

    @abstractmethod
    async def checkpoint_flow_session(self, session_id: str, lock_token: str,
                                      **fields) -> bool:
        """
        Write `fields` only while the session is still active and still held
        under `lock_token`. False means the caller lost the session and must
        stop working on it.
        """
        ...

    @abstractmethod
    async def release_lock(self, session_id: str, lock_token: str) -> bool:
        """Unlock, unless the lock has since been taken over by another holder."""
        ...

    @abstractmethod
    async def pause_sessions(self, session_ids: list[str]) -> int:
        """Move the given sessions from active to paused; returns rows changed."""
        ...

    @abstractmethod
    async def unlock_stale_sessions(self, stale_before: datetime) -> list[str]:
        ...

    # ── Delay jobs ────────────────────────────────────────────

    @abstractmethod
    async def create_delay_job(self, job: DelayJob) -> DelayJob:
        ...

    @abstractmethod
    async def list_delay_jobs(self, session_id: str,
                              status: Optional[DelayJobStatus] = None) -> list[DelayJob]:
        ...

    @abstractmethod
    async def cancel_delay_jobs(self, session_id: str) -> int:
        """Mark every scheduled job of the session cancelled."""
        ...

    @abstractmethod
    async def claim_due_jobs(self, now: datetime, limit: int) -> list[DelayJob]:
        """
        Move due scheduled jobs to processing (attempts + 1). A job is
        returned to exactly one caller.
        """
        ...

    @abstractmethod
    async def reschedule_delay_job(self, job_id: str, run_at: datetime,
                                   error: str = "") -> None:
        ...

    @abstractmethod
    async def finish_delay_job(self, job_id: str, status: DelayJobStatus,
                               error: str = "") -> None:
        ...

    # ── Maturation loops ──────────────────────────────────────

    @abstractmethod
    async def get_conversation_loop(self, conversation_id: str) -> Optional[ConversationLoop]:
        ...

    @abstractmethod
    async def upsert_conversation_loop(self, loop: ConversationLoop) -> ConversationLoop:
        ...

    @abstractmethod
    async def list_conversation_loops(self, tenant_id: Optional[str] = None) -> list[ConversationLoop]:
        ...

    @abstractmethod
    async def add_loop_message(self, message: LoopMessage) -> LoopMessage:
        ...

    @abstractmethod
    async def count_loop_messages_since(self, conversation_id: str, since: datetime) -> int:
        ...

    # ── Diagnostics ───────────────────────────────────────────

    async def stats(self) -> dict[str, Any]:
        return {}
