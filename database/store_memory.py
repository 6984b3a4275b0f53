"""
InMemoryFlowStore — Dict-backed store for development and testing.

Features:
  - Zero infrastructure (no database, no Redis)
  - Full interface compatibility with SqlFlowStore
  - Exclusive operations serialized by one asyncio.Lock (single event loop)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import asyncio
import copy
import uuid

import structlog
from collections import defaultdict
from datetime import datetime
from typing import Any, Optional, TypeVar

from pydantic import BaseModel

from database.store_base import BaseFlowStore
from models.schemas import (
    DELIVERY_RANK, Contact, ConversationLoop, DelayJob, DelayJobStatus, DeliveryStatus,
    FlowSession, InboxMessage, Instance, LoopMessage, MessageDirection, SessionStatus,
    TenantGatewayConfig, TriggerType, Workflow, utcnow,
)

logger = structlog.get_logger()

M = TypeVar("M", bound=BaseModel)


def _copy(model: Optional[M]) -> Optional[M]:
    return model.model_copy(deep=True) if model is not None else None


def _apply(model: M, fields: dict[str, Any]) -> M:
    for key, value in fields.items():
        if key not in type(model).model_fields:
            raise ValueError(f"Unknown field {key!r} for {type(model).__name__}")
        setattr(model, key, copy.deepcopy(value))
    return model


class InMemoryFlowStore(BaseFlowStore):
    """Same semantics as SqlFlowStore; models are copied in and out."""

    def __init__(self):
        self._instances: dict[str, Instance] = {}
        self._tenant_configs: dict[str, TenantGatewayConfig] = {}
        self._contacts: dict[str, Contact] = {}
        self._messages: dict[str, list[InboxMessage]] = defaultdict(list)  # contact_id → messages
        self._workflows: dict[str, Workflow] = {}
        self._sessions: dict[str, FlowSession] = {}
        self._jobs: dict[str, DelayJob] = {}
        self._loops: dict[str, ConversationLoop] = {}
        self._loop_messages: dict[str, list[LoopMessage]] = defaultdict(list)

        # Indexes
        self._remote_index: dict[str, str] = {}   # "contact_id:remote_id" → message id
        self._lock = asyncio.Lock()
        logger.info("inmemory_store_initialized")

    # ── Instances ─────────────────────────────────────────

    async def get_instance(self, instance_id: str) -> Optional[Instance]:
        return _copy(self._instances.get(instance_id))

    async def get_instance_by_name(self, name: str) -> Optional[Instance]:
        if not name:
            return None
        match = next((i for i in self._instances.values() if i.name == name), None)
        if match is None:
            match = next((i for i in self._instances.values() if i.api_token and i.api_token == name), None)
        return _copy(match)

    async def upsert_instance(self, instance: Instance) -> Instance:
        self._instances[instance.id] = _copy(instance)
        return instance

    async def update_instance(self, instance_id: str, **fields) -> Optional[Instance]:
        instance = self._instances.get(instance_id)
        if instance is None:
            return None
        return _copy(_apply(instance, fields))

    async def get_tenant_gateway_config(self, tenant_id: str) -> Optional[TenantGatewayConfig]:
        return _copy(self._tenant_configs.get(tenant_id))

    async def upsert_tenant_gateway_config(self, config: TenantGatewayConfig) -> TenantGatewayConfig:
        self._tenant_configs[config.tenant_id] = _copy(config)
        return config

    # ── Contacts ──────────────────────────────────────────

    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        return _copy(self._contacts.get(contact_id))

    async def find_contact(self, tenant_id: str, instance_id: Optional[str],
                           phone: str) -> Optional[Contact]:
        for contact in self._contacts.values():
            if (contact.tenant_id == tenant_id and contact.instance_id == instance_id
                    and contact.phone == phone):
                return _copy(contact)
        return None

    async def upsert_contact(self, contact: Contact) -> Contact:
        async with self._lock:
            if contact.id not in self._contacts and contact.instance_id is not None:
                for existing in self._contacts.values():
                    if (existing.tenant_id, existing.instance_id, existing.phone) == (
                            contact.tenant_id, contact.instance_id, contact.phone):
                        logger.info("contact_already_exists", contact_id=existing.id, phone=contact.phone)
                        return _copy(existing)
            self._contacts[contact.id] = _copy(contact)
        return contact

    async def update_contact(self, contact_id: str, **fields) -> Optional[Contact]:
        contact = self._contacts.get(contact_id)
        if contact is None:
            return None
        return _copy(_apply(contact, fields))

    async def record_contact_activity(self, contact_id: str, at: datetime,
                                      inbound: bool) -> None:
        contact = self._contacts.get(contact_id)
        if contact is None:
            return
        contact.last_message_at = at
        if inbound:
            contact.unread_count += 1

    # ── Messages ──────────────────────────────────────────

    async def add_message(self, message: InboxMessage) -> Optional[InboxMessage]:
        async with self._lock:
            if message.remote_message_id:
                key = f"{message.contact_id}:{message.remote_message_id}"
                if key in self._remote_index:
                    return None
                self._remote_index[key] = message.id
            self._messages[message.contact_id].append(_copy(message))
        return message

    async def list_messages(self, contact_id: str, limit: int = 50) -> list[InboxMessage]:
        msgs = sorted(self._messages.get(contact_id, []), key=lambda m: m.created_at)
        return [_copy(m) for m in msgs[-limit:]]

    async def update_message_status(self, remote_message_id: str,
                                    status: DeliveryStatus) -> int:
        changed = 0
        for msgs in self._messages.values():
            for msg in msgs:
                if msg.remote_message_id != remote_message_id:
                    continue
                if DELIVERY_RANK[status] > DELIVERY_RANK[msg.status]:
                    msg.status = status
                    if status == DeliveryStatus.READ and msg.read_at is None:
                        msg.read_at = utcnow()
                    changed += 1
        return changed

    async def backfill_remote_id(self, contact_id: str, remote_message_id: str) -> bool:
        async with self._lock:
            key = f"{contact_id}:{remote_message_id}"
            if key in self._remote_index:
                return False
            candidates = [
                m for m in self._messages.get(contact_id, [])
                if m.direction == MessageDirection.OUTBOUND and not m.remote_message_id
            ]
            if not candidates:
                return False
            latest = max(candidates, key=lambda m: m.created_at)
            latest.remote_message_id = remote_message_id
            self._remote_index[key] = latest.id
        return True

    async def list_unread_inbound(self, contact_id: str, limit: int = 50) -> list[InboxMessage]:
        unread = [
            m for m in self._messages.get(contact_id, [])
            if m.direction == MessageDirection.INBOUND and m.read_at is None
        ]
        unread.sort(key=lambda m: m.created_at, reverse=True)
        return [_copy(m) for m in unread[:limit]]

    async def mark_messages_read(self, message_ids: list[str], at: datetime) -> int:
        wanted = set(message_ids)
        changed = 0
        for msgs in self._messages.values():
            for msg in msgs:
                if msg.id in wanted and msg.read_at is None:
                    msg.read_at = at
                    changed += 1
        return changed

    # ── Workflows ─────────────────────────────────────────

    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        return _copy(self._workflows.get(workflow_id))

    async def upsert_workflow(self, workflow: Workflow) -> Workflow:
        self._workflows[workflow.id] = _copy(workflow)
        return workflow

    async def list_active_workflows(self, tenant_id: str,
                                    trigger_type: TriggerType) -> list[Workflow]:
        return [
            _copy(w) for w in self._workflows.values()
            if w.tenant_id == tenant_id and w.is_active and w.trigger_type == trigger_type
        ]

    # ── Flow sessions ─────────────────────────────────────

    async def get_flow_session(self, session_id: str) -> Optional[FlowSession]:
        return _copy(self._sessions.get(session_id))

    async def create_flow_session(self, session: FlowSession) -> FlowSession:
        self._sessions[session.id] = _copy(session)
        return session

    async def create_flow_session_if_absent(self, session: FlowSession) -> Optional[FlowSession]:
        async with self._lock:
            if self._active_for(session.contact_id, session.workflow_id) is not None:
                return None
            self._sessions[session.id] = _copy(session)
        return session

    def _active_for(self, contact_id: str, workflow_id: str) -> Optional[FlowSession]:
        for s in self._sessions.values():
            if (s.contact_id == contact_id and s.workflow_id == workflow_id
                    and s.status == SessionStatus.ACTIVE):
                return s
        return None

    async def find_active_session(self, contact_id: str, workflow_id: str) -> Optional[FlowSession]:
        return _copy(self._active_for(contact_id, workflow_id))

    async def list_active_sessions(self, contact_id: str) -> list[FlowSession]:
        return [
            _copy(s) for s in self._sessions.values()
            if s.contact_id == contact_id and s.status == SessionStatus.ACTIVE
        ]

    async def update_flow_session(self, session_id: str, **fields) -> Optional[FlowSession]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        return _copy(_apply(session, fields))

    async def try_acquire_lock(self, session_id: str, now: datetime,
                               stale_before: datetime) -> Optional[str]:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            stale = session.processing_started_at is None or session.processing_started_at < stale_before
            if session.processing and not stale:
                return None
            session.processing = True
            session.processing_started_at = now
            session.lock_token = uuid.uuid4().hex
            return session.lock_token

    async def checkpoint_flow_session(self, session_id: str, lock_token: str,
                                      **fields) -> bool:
        async with self._lock:
            session = self._sessions.get(session_id)
            if (session is None or session.status != SessionStatus.ACTIVE
                    or session.lock_token != lock_token):
                return False
            _apply(session, fields)
            return True

    async def release_lock(self, session_id: str, lock_token: str) -> bool:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.lock_token != lock_token:
                return False
            session.processing = False
            session.processing_started_at = None
            session.lock_token = None
            return True

    async def pause_sessions(self, session_ids: list[str]) -> int:
        changed = 0
        async with self._lock:
            for sid in session_ids:
                session = self._sessions.get(sid)
                if session is not None and session.status == SessionStatus.ACTIVE:
                    session.status = SessionStatus.PAUSED
                    changed += 1
        return changed

    async def unlock_stale_sessions(self, stale_before: datetime) -> list[str]:
        unlocked = []
        async with self._lock:
            for session in self._sessions.values():
                if (session.processing and session.processing_started_at is not None
                        and session.processing_started_at < stale_before):
                    session.processing = False
                    session.processing_started_at = None
                    session.lock_token = None
                    unlocked.append(session.id)
        return unlocked

    # ── Delay jobs ────────────────────────────────────────

    async def create_delay_job(self, job: DelayJob) -> DelayJob:
        self._jobs[job.id] = _copy(job)
        return job

    async def list_delay_jobs(self, session_id: str,
                              status: Optional[DelayJobStatus] = None) -> list[DelayJob]:
        jobs = [
            j for j in self._jobs.values()
            if j.session_id == session_id and (status is None or j.status == status)
        ]
        return [_copy(j) for j in sorted(jobs, key=lambda j: j.run_at)]

    async def cancel_delay_jobs(self, session_id: str) -> int:
        changed = 0
        async with self._lock:
            for job in self._jobs.values():
                if job.session_id == session_id and job.status == DelayJobStatus.SCHEDULED:
                    job.status = DelayJobStatus.CANCELLED
                    job.updated_at = utcnow()
                    changed += 1
        return changed

    async def claim_due_jobs(self, now: datetime, limit: int) -> list[DelayJob]:
        async with self._lock:
            due = sorted(
                (j for j in self._jobs.values()
                 if j.status == DelayJobStatus.SCHEDULED and j.run_at <= now),
                key=lambda j: j.run_at,
            )[:limit]
            for job in due:
                job.status = DelayJobStatus.PROCESSING
                job.attempts += 1
                job.updated_at = now
            return [_copy(j) for j in due]

    async def reschedule_delay_job(self, job_id: str, run_at: datetime,
                                   error: str = "") -> None:
        job = self._jobs.get(job_id)
        if job is None:
            return
        job.status = DelayJobStatus.SCHEDULED
        job.run_at = run_at
        job.last_error = error
        job.updated_at = utcnow()

    async def finish_delay_job(self, job_id: str, status: DelayJobStatus,
                               error: str = "") -> None:
        job = self._jobs.get(job_id)
        if job is None:
            return
        job.status = status
        job.last_error = error
        job.updated_at = utcnow()

    # ── Maturation loops ──────────────────────────────────

    async def get_conversation_loop(self, conversation_id: str) -> Optional[ConversationLoop]:
        return _copy(self._loops.get(conversation_id))

    async def upsert_conversation_loop(self, loop: ConversationLoop) -> ConversationLoop:
        self._loops[loop.id] = _copy(loop)
        return loop

    async def list_conversation_loops(self, tenant_id: Optional[str] = None) -> list[ConversationLoop]:
        return [
            _copy(c) for c in self._loops.values()
            if tenant_id is None or c.tenant_id == tenant_id
        ]

    async def add_loop_message(self, message: LoopMessage) -> LoopMessage:
        self._loop_messages[message.conversation_id].append(_copy(message))
        return message

    async def count_loop_messages_since(self, conversation_id: str, since: datetime) -> int:
        return sum(1 for m in self._loop_messages.get(conversation_id, []) if m.created_at >= since)

    async def stats(self) -> dict[str, int]:
        return {
            "instances": len(self._instances),
            "contacts": len(self._contacts),
            "messages": sum(len(v) for v in self._messages.values()),
            "workflows": len(self._workflows),
            "active_sessions": sum(1 for s in self._sessions.values() if s.status == SessionStatus.ACTIVE),
            "scheduled_jobs": sum(1 for j in self._jobs.values() if j.status == DelayJobStatus.SCHEDULED),
            "conversation_loops": len(self._loops),
        }
