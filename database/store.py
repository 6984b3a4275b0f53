"""
SqlFlowStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Exclusive operations are single conditional UPDATE statements whose
`rowcount` tells the caller whether it won:
  - try_acquire_lock   UPDATE flow_sessions ... WHERE processing IS false OR stale
  - checkpoint         UPDATE flow_sessions ... WHERE status = 'active' AND lock_token = ?
  - release_lock       UPDATE flow_sessions ... WHERE lock_token = ?
  - claim_due_jobs     UPDATE delay_jobs ... WHERE id = ? AND status = 'scheduled'
  - pause_sessions     UPDATE flow_sessions ... WHERE status = 'active'
Unique constraints settle the insert races:
  - messages (contact_id, remote_message_id)      inbound dedup
  - contacts (tenant_id, instance_id, phone)      first message of a sender
  - flow_sessions active_key                      one active run per contact/workflow
"""
from __future__ import annotations

import uuid

import structlog
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError

from database.models import (
    ContactRow, ConversationLoopRow, DelayJobRow, FlowSessionRow, InstanceRow,
    LoopMessageRow, MessageRow, TenantGatewayConfigRow, WorkflowRow,
)
from database.session import get_session
from database.store_base import BaseFlowStore
from models.schemas import (
    DELIVERY_RANK, Contact, ConversationLoop, DelayJob, DelayJobKind, DelayJobStatus,
    DeliveryStatus, FlowEdge, FlowNode, FlowSession, GatewayProvider, InboxMessage,
    Instance, InstanceStatus, LoopMessage, MessageDirection, MessageType, SessionStatus,
    TenantGatewayConfig, TriggerType, Workflow, utcnow,
)

logger = structlog.get_logger()


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _column_values(fields: dict[str, Any]) -> dict[str, Any]:
    """Enums → their values so they fit string columns."""
    values = {}
    for key, value in fields.items():
        values[key] = value.value if isinstance(value, Enum) else value
    return values


def _active_key(contact_id: str, workflow_id: str, status: Any) -> Optional[str]:
    status = status.value if isinstance(status, Enum) else status
    if status != SessionStatus.ACTIVE.value:
        return None
    return f"{contact_id}:{workflow_id}"


class SqlFlowStore(BaseFlowStore):
    """
    Persistent flow store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Instances ──────────────────────────────────────────

    async def get_instance(self, instance_id: str) -> Optional[Instance]:
        async with get_session() as db:
            row = await db.get(InstanceRow, instance_id)
            return self._row_to_instance(row) if row else None

    async def get_instance_by_name(self, name: str) -> Optional[Instance]:
        if not name:
            return None
        async with get_session() as db:
            result = await db.execute(select(InstanceRow).where(InstanceRow.name == name).limit(1))
            row = result.scalar_one_or_none()
            if row is None:
                result = await db.execute(
                    select(InstanceRow).where(InstanceRow.api_token == name).limit(1))
                row = result.scalar_one_or_none()
            return self._row_to_instance(row) if row else None

    async def upsert_instance(self, instance: Instance) -> Instance:
        data = _column_values(instance.model_dump())
        async with get_session() as db:
            existing = await db.get(InstanceRow, instance.id)
            if existing:
                for key, value in data.items():
                    setattr(existing, key, value)
            else:
                db.add(InstanceRow(**data))
        return instance

    async def update_instance(self, instance_id: str, **fields) -> Optional[Instance]:
        async with get_session() as db:
            row = await db.get(InstanceRow, instance_id)
            if row is None:
                return None
            for key, value in _column_values(fields).items():
                setattr(row, key, value)
            await db.flush()
            return self._row_to_instance(row)

    async def get_tenant_gateway_config(self, tenant_id: str) -> Optional[TenantGatewayConfig]:
        async with get_session() as db:
            row = await db.get(TenantGatewayConfigRow, tenant_id)
            if row is None:
                return None
            return TenantGatewayConfig(
                tenant_id=row.tenant_id,
                evolution_base_url=row.evolution_base_url or "",
                evolution_api_key=row.evolution_api_key or "",
                uazapi_base_url=row.uazapi_base_url or "",
            )

    async def upsert_tenant_gateway_config(self, config: TenantGatewayConfig) -> TenantGatewayConfig:
        async with get_session() as db:
            await db.merge(TenantGatewayConfigRow(**config.model_dump()))
        return config

    # ── Contacts ───────────────────────────────────────────

    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        async with get_session() as db:
            row = await db.get(ContactRow, contact_id)
            return self._row_to_contact(row) if row else None

    async def find_contact(self, tenant_id: str, instance_id: Optional[str],
                           phone: str) -> Optional[Contact]:
        instance_clause = (ContactRow.instance_id.is_(None) if instance_id is None
                           else ContactRow.instance_id == instance_id)
        async with get_session() as db:
            stmt = (
                select(ContactRow)
                .where(and_(ContactRow.tenant_id == tenant_id, instance_clause,
                            ContactRow.phone == phone))
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_contact(row) if row else None

    async def upsert_contact(self, contact: Contact) -> Contact:
        data = contact.model_dump()
        try:
            async with get_session() as db:
                existing = await db.get(ContactRow, contact.id)
                if existing:
                    for key, value in data.items():
                        setattr(existing, key, value)
                else:
                    db.add(ContactRow(**data))
        except IntegrityError:
            # Phone already registered on this instance, usually by a concurrent delivery
            winner = await self.find_contact(contact.tenant_id, contact.instance_id, contact.phone)
            if winner is None:
                raise
            logger.info("contact_already_exists", contact_id=winner.id, phone=contact.phone)
            return winner
        return contact

    async def update_contact(self, contact_id: str, **fields) -> Optional[Contact]:
        async with get_session() as db:
            row = await db.get(ContactRow, contact_id)
            if row is None:
                return None
            for key, value in fields.items():
                setattr(row, key, list(value) if isinstance(value, list) else value)
            await db.flush()
            return self._row_to_contact(row)

    async def record_contact_activity(self, contact_id: str, at: datetime,
                                      inbound: bool) -> None:
        values: dict[str, Any] = {"last_message_at": at}
        if inbound:
            values["unread_count"] = ContactRow.unread_count + 1
        async with get_session() as db:
            await db.execute(update(ContactRow).where(ContactRow.id == contact_id).values(**values))

    # ── Messages ───────────────────────────────────────────

    async def add_message(self, message: InboxMessage) -> Optional[InboxMessage]:
        data = _column_values(message.model_dump())
        data["remote_message_id"] = message.remote_message_id or None
        try:
            async with get_session() as db:
                if message.remote_message_id:
                    stmt = select(MessageRow.id).where(and_(
                        MessageRow.contact_id == message.contact_id,
                        MessageRow.remote_message_id == message.remote_message_id,
                    ))
                    if (await db.execute(stmt)).first() is not None:
                        return None
                db.add(MessageRow(**data))
                await db.flush()
        except IntegrityError:
            # Lost the race against a concurrent delivery of the same event
            return None
        return message

    async def list_messages(self, contact_id: str, limit: int = 50) -> list[InboxMessage]:
        async with get_session() as db:
            stmt = (
                select(MessageRow)
                .where(MessageRow.contact_id == contact_id)
                .order_by(MessageRow.created_at.desc())
                .limit(limit)
            )
            rows = (await db.execute(stmt)).scalars().all()
            return [self._row_to_message(r) for r in reversed(rows)]

    async def update_message_status(self, remote_message_id: str,
                                    status: DeliveryStatus) -> int:
        # Only statuses ranked below the new one may be replaced
        lower = [s.value for s, rank in DELIVERY_RANK.items() if rank < DELIVERY_RANK[status]]
        if not lower:
            return 0
        values: dict[str, Any] = {"status": status.value}
        async with get_session() as db:
            result = await db.execute(
                update(MessageRow)
                .where(and_(MessageRow.remote_message_id == remote_message_id,
                            MessageRow.status.in_(lower)))
                .values(**values)
            )
            if status == DeliveryStatus.READ:
                await db.execute(
                    update(MessageRow)
                    .where(and_(MessageRow.remote_message_id == remote_message_id,
                                MessageRow.read_at.is_(None)))
                    .values(read_at=utcnow())
                )
            return result.rowcount

    async def backfill_remote_id(self, contact_id: str, remote_message_id: str) -> bool:
        try:
            async with get_session() as db:
                stmt = (
                    select(MessageRow.id)
                    .where(and_(
                        MessageRow.contact_id == contact_id,
                        MessageRow.direction == MessageDirection.OUTBOUND.value,
                        MessageRow.remote_message_id.is_(None),
                    ))
                    .order_by(MessageRow.created_at.desc())
                    .limit(1)
                )
                message_id = (await db.execute(stmt)).scalar_one_or_none()
                if message_id is None:
                    return False
                result = await db.execute(
                    update(MessageRow)
                    .where(and_(MessageRow.id == message_id, MessageRow.remote_message_id.is_(None)))
                    .values(remote_message_id=remote_message_id)
                )
                return result.rowcount == 1
        except IntegrityError:
            return False

    async def list_unread_inbound(self, contact_id: str, limit: int = 50) -> list[InboxMessage]:
        async with get_session() as db:
            stmt = (
                select(MessageRow)
                .where(and_(
                    MessageRow.contact_id == contact_id,
                    MessageRow.direction == MessageDirection.INBOUND.value,
                    MessageRow.read_at.is_(None),
                ))
                .order_by(MessageRow.created_at.desc())
                .limit(limit)
            )
            return [self._row_to_message(r) for r in (await db.execute(stmt)).scalars()]

    async def mark_messages_read(self, message_ids: list[str], at: datetime) -> int:
        if not message_ids:
            return 0
        async with get_session() as db:
            result = await db.execute(
                update(MessageRow)
                .where(and_(MessageRow.id.in_(message_ids), MessageRow.read_at.is_(None)))
                .values(read_at=at)
            )
            return result.rowcount

    # ── Workflows ──────────────────────────────────────────

    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        async with get_session() as db:
            row = await db.get(WorkflowRow, workflow_id)
            return self._row_to_workflow(row) if row else None

    async def upsert_workflow(self, workflow: Workflow) -> Workflow:
        data = _column_values(workflow.model_dump(mode="json"))
        async with get_session() as db:
            existing = await db.get(WorkflowRow, workflow.id)
            if existing:
                for key, value in data.items():
                    setattr(existing, key, value)
            else:
                db.add(WorkflowRow(**data))
        return workflow

    async def list_active_workflows(self, tenant_id: str,
                                    trigger_type: TriggerType) -> list[Workflow]:
        async with get_session() as db:
            stmt = select(WorkflowRow).where(and_(
                WorkflowRow.tenant_id == tenant_id,
                WorkflowRow.trigger_type == trigger_type.value,
                WorkflowRow.is_active.is_(True),
            ))
            return [self._row_to_workflow(r) for r in (await db.execute(stmt)).scalars()]

    # ── Flow sessions ──────────────────────────────────────

    async def get_flow_session(self, session_id: str) -> Optional[FlowSession]:
        async with get_session() as db:
            row = await db.get(FlowSessionRow, session_id)
            return self._row_to_session(row) if row else None

    async def create_flow_session(self, session: FlowSession) -> FlowSession:
        async with get_session() as db:
            db.add(self._session_to_row(session))
        return session

    async def create_flow_session_if_absent(self, session: FlowSession) -> Optional[FlowSession]:
        try:
            async with get_session() as db:
                db.add(self._session_to_row(session))
        except IntegrityError:
            return None
        return session

    async def find_active_session(self, contact_id: str, workflow_id: str) -> Optional[FlowSession]:
        async with get_session() as db:
            stmt = (
                select(FlowSessionRow)
                .where(and_(
                    FlowSessionRow.contact_id == contact_id,
                    FlowSessionRow.workflow_id == workflow_id,
                    FlowSessionRow.status == SessionStatus.ACTIVE.value,
                ))
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_session(row) if row else None

    async def list_active_sessions(self, contact_id: str) -> list[FlowSession]:
        async with get_session() as db:
            stmt = select(FlowSessionRow).where(and_(
                FlowSessionRow.contact_id == contact_id,
                FlowSessionRow.status == SessionStatus.ACTIVE.value,
            ))
            return [self._row_to_session(r) for r in (await db.execute(stmt)).scalars()]

    async def update_flow_session(self, session_id: str, **fields) -> Optional[FlowSession]:
        async with get_session() as db:
            row = await db.get(FlowSessionRow, session_id)
            if row is None:
                return None
            for key, value in _column_values(fields).items():
                setattr(row, key, dict(value) if isinstance(value, dict) else value)
            row.active_key = _active_key(row.contact_id, row.workflow_id, row.status)
            await db.flush()
            return self._row_to_session(row)

    async def try_acquire_lock(self, session_id: str, now: datetime,
                               stale_before: datetime) -> Optional[str]:
        token = uuid.uuid4().hex
        async with get_session() as db:
            result = await db.execute(
                update(FlowSessionRow)
                .where(and_(
                    FlowSessionRow.id == session_id,
                    or_(
                        FlowSessionRow.processing.is_(False),
                        FlowSessionRow.processing_started_at.is_(None),
                        FlowSessionRow.processing_started_at < stale_before,
                    ),
                ))
                .values(processing=True, processing_started_at=now, lock_token=token)
            )
            return token if result.rowcount == 1 else None

    async def checkpoint_flow_session(self, session_id: str, lock_token: str,
                                      **fields) -> bool:
        values = _column_values(fields)
        if values.get("status", SessionStatus.ACTIVE.value) != SessionStatus.ACTIVE.value:
            # Leaving active frees the (contact, workflow) slot
            values["active_key"] = None
        async with get_session() as db:
            result = await db.execute(
                update(FlowSessionRow)
                .where(and_(
                    FlowSessionRow.id == session_id,
                    FlowSessionRow.status == SessionStatus.ACTIVE.value,
                    FlowSessionRow.lock_token == lock_token,
                ))
                .values(**values)
            )
            return result.rowcount == 1

    async def release_lock(self, session_id: str, lock_token: str) -> bool:
        async with get_session() as db:
            result = await db.execute(
                update(FlowSessionRow)
                .where(and_(FlowSessionRow.id == session_id,
                            FlowSessionRow.lock_token == lock_token))
                .values(processing=False, processing_started_at=None, lock_token=None)
            )
            return result.rowcount == 1

    async def pause_sessions(self, session_ids: list[str]) -> int:
        if not session_ids:
            return 0
        async with get_session() as db:
            result = await db.execute(
                update(FlowSessionRow)
                .where(and_(FlowSessionRow.id.in_(session_ids),
                            FlowSessionRow.status == SessionStatus.ACTIVE.value))
                .values(status=SessionStatus.PAUSED.value, active_key=None)
            )
            return result.rowcount

    async def unlock_stale_sessions(self, stale_before: datetime) -> list[str]:
        async with get_session() as db:
            stmt = select(FlowSessionRow.id).where(and_(
                FlowSessionRow.processing.is_(True),
                FlowSessionRow.processing_started_at < stale_before,
            ))
            ids = list((await db.execute(stmt)).scalars())
            unlocked = []
            for sid in ids:
                result = await db.execute(
                    update(FlowSessionRow)
                    .where(and_(FlowSessionRow.id == sid,
                                FlowSessionRow.processing.is_(True),
                                FlowSessionRow.processing_started_at < stale_before))
                    .values(processing=False, processing_started_at=None, lock_token=None)
                )
                if result.rowcount == 1:
                    unlocked.append(sid)
            return unlocked

    # ── Delay jobs ─────────────────────────────────────────

    async def create_delay_job(self, job: DelayJob) -> DelayJob:
        async with get_session() as db:
            db.add(DelayJobRow(**_column_values(job.model_dump())))
        return job

    async def list_delay_jobs(self, session_id: str,
                              status: Optional[DelayJobStatus] = None) -> list[DelayJob]:
        async with get_session() as db:
            stmt = select(DelayJobRow).where(DelayJobRow.session_id == session_id)
            if status is not None:
                stmt = stmt.where(DelayJobRow.status == status.value)
            stmt = stmt.order_by(DelayJobRow.run_at)
            return [self._row_to_job(r) for r in (await db.execute(stmt)).scalars()]

    async def cancel_delay_jobs(self, session_id: str) -> int:
        async with get_session() as db:
            result = await db.execute(
                update(DelayJobRow)
                .where(and_(DelayJobRow.session_id == session_id,
                            DelayJobRow.status == DelayJobStatus.SCHEDULED.value))
                .values(status=DelayJobStatus.CANCELLED.value, updated_at=utcnow())
            )
            return result.rowcount

    async def claim_due_jobs(self, now: datetime, limit: int) -> list[DelayJob]:
        async with get_session() as db:
            stmt = (
                select(DelayJobRow.id)
                .where(and_(DelayJobRow.status == DelayJobStatus.SCHEDULED.value,
                            DelayJobRow.run_at <= now))
                .order_by(DelayJobRow.run_at)
                .limit(limit)
            )
            candidates = list((await db.execute(stmt)).scalars())

        claimed: list[DelayJob] = []
        for job_id in candidates:
            async with get_session() as db:
                result = await db.execute(
                    update(DelayJobRow)
                    .where(and_(DelayJobRow.id == job_id,
                                DelayJobRow.status == DelayJobStatus.SCHEDULED.value))
                    .values(status=DelayJobStatus.PROCESSING.value,
                            attempts=DelayJobRow.attempts + 1,
                            updated_at=now)
                )
                if result.rowcount != 1:
                    continue  # another worker claimed it
                row = await db.get(DelayJobRow, job_id, populate_existing=True)
                claimed.append(self._row_to_job(row))
        return claimed

    async def reschedule_delay_job(self, job_id: str, run_at: datetime,
                                   error: str = "") -> None:
        async with get_session() as db:
            await db.execute(
                update(DelayJobRow)
                .where(DelayJobRow.id == job_id)
                .values(status=DelayJobStatus.SCHEDULED.value, run_at=run_at,
                        last_error=error, updated_at=utcnow())
            )

    async def finish_delay_job(self, job_id: str, status: DelayJobStatus,
                               error: str = "") -> None:
        async with get_session() as db:
            await db.execute(
                update(DelayJobRow)
                .where(DelayJobRow.id == job_id)
                .values(status=status.value, last_error=error, updated_at=utcnow())
            )

    # ── Maturation loops ───────────────────────────────────

    async def get_conversation_loop(self, conversation_id: str) -> Optional[ConversationLoop]:
        async with get_session() as db:
            row = await db.get(ConversationLoopRow, conversation_id)
            return self._row_to_loop(row) if row else None

    async def upsert_conversation_loop(self, loop: ConversationLoop) -> ConversationLoop:
        async with get_session() as db:
            await db.merge(ConversationLoopRow(**loop.model_dump()))
        return loop

    async def list_conversation_loops(self, tenant_id: Optional[str] = None) -> list[ConversationLoop]:
        async with get_session() as db:
            stmt = select(ConversationLoopRow)
            if tenant_id is not None:
                stmt = stmt.where(ConversationLoopRow.tenant_id == tenant_id)
            return [self._row_to_loop(r) for r in (await db.execute(stmt)).scalars()]

    async def add_loop_message(self, message: LoopMessage) -> LoopMessage:
        async with get_session() as db:
            db.add(LoopMessageRow(**message.model_dump()))
        return message

    async def count_loop_messages_since(self, conversation_id: str, since: datetime) -> int:
        async with get_session() as db:
            stmt = select(func.count(LoopMessageRow.id)).where(and_(
                LoopMessageRow.conversation_id == conversation_id,
                LoopMessageRow.created_at >= since,
            ))
            return int((await db.execute(stmt)).scalar_one())

    async def stats(self) -> dict[str, int]:
        async with get_session() as db:
            async def count(stmt) -> int:
                return int((await db.execute(stmt)).scalar_one())

            return {
                "instances": await count(select(func.count(InstanceRow.id))),
                "contacts": await count(select(func.count(ContactRow.id))),
                "messages": await count(select(func.count(MessageRow.id))),
                "workflows": await count(select(func.count(WorkflowRow.id))),
                "active_sessions": await count(
                    select(func.count(FlowSessionRow.id))
                    .where(FlowSessionRow.status == SessionStatus.ACTIVE.value)),
                "scheduled_jobs": await count(
                    select(func.count(DelayJobRow.id))
                    .where(DelayJobRow.status == DelayJobStatus.SCHEDULED.value)),
                "conversation_loops": await count(select(func.count(ConversationLoopRow.id))),
            }

    # ── Row converters ─────────────────────────────────────

    @staticmethod
    def _row_to_instance(row: InstanceRow) -> Instance:
        return Instance(
            id=row.id,
            tenant_id=row.tenant_id,
            name=row.name,
            display_name=row.display_name or "",
            status=InstanceStatus(row.status),
            provider=GatewayProvider(row.provider),
            api_token=row.api_token or "",
            base_url=row.base_url or "",
            api_key=row.api_key or "",
            phone_number=row.phone_number or "",
            last_connected_at=_as_utc(row.last_connected_at),
            disconnected_at=_as_utc(row.disconnected_at),
            status_changed_at=_as_utc(row.status_changed_at),
        )

    @staticmethod
    def _row_to_contact(row: ContactRow) -> Contact:
        return Contact(
            id=row.id,
            tenant_id=row.tenant_id,
            instance_id=row.instance_id,
            phone=row.phone,
            remote_jid=row.remote_jid or "",
            name=row.name or "",
            profile_pic_url=row.profile_pic_url or "",
            tags=list(row.tags or []),
            unread_count=row.unread_count or 0,
            flow_paused=bool(row.flow_paused),
            last_message_at=_as_utc(row.last_message_at),
            created_at=_as_utc(row.created_at),
        )

    @staticmethod
    def _row_to_message(row: MessageRow) -> InboxMessage:
        return InboxMessage(
            id=row.id,
            tenant_id=row.tenant_id,
            contact_id=row.contact_id,
            instance_id=row.instance_id,
            direction=MessageDirection(row.direction),
            message_type=MessageType(row.message_type),
            content=row.content or "",
            media_url=row.media_url or "",
            remote_message_id=row.remote_message_id or "",
            status=DeliveryStatus(row.status),
            is_from_flow=bool(row.is_from_flow),
            flow_id=row.flow_id,
            created_at=_as_utc(row.created_at),
            read_at=_as_utc(row.read_at),
        )

    @staticmethod
    def _row_to_workflow(row: WorkflowRow) -> Workflow:
        return Workflow(
            id=row.id,
            tenant_id=row.tenant_id,
            name=row.name or "",
            nodes=[FlowNode(**n) for n in (row.nodes or [])],
            edges=[FlowEdge(**e) for e in (row.edges or [])],
            trigger_type=TriggerType(row.trigger_type),
            trigger_tags=list(row.trigger_tags or []),
            pause_other_flows=bool(row.pause_other_flows),
            assigned_instances=list(row.assigned_instances or []),
            is_active=bool(row.is_active),
        )

    @staticmethod
    def _session_to_row(session: FlowSession) -> FlowSessionRow:
        row = FlowSessionRow(**_column_values(session.model_dump()))
        row.active_key = _active_key(session.contact_id, session.workflow_id, session.status)
        return row

    @staticmethod
    def _row_to_session(row: FlowSessionRow) -> FlowSession:
        return FlowSession(
            id=row.id,
            tenant_id=row.tenant_id,
            workflow_id=row.workflow_id,
            contact_id=row.contact_id,
            instance_id=row.instance_id,
            current_node_id=row.current_node_id,
            variables=dict(row.variables or {}),
            status=SessionStatus(row.status),
            processing=bool(row.processing),
            processing_started_at=_as_utc(row.processing_started_at),
            lock_token=row.lock_token,
            timeout_at=_as_utc(row.timeout_at),
            started_at=_as_utc(row.started_at),
            last_interaction_at=_as_utc(row.last_interaction_at),
            completed_at=_as_utc(row.completed_at),
        )

    @staticmethod
    def _row_to_job(row: DelayJobRow) -> DelayJob:
        return DelayJob(
            id=row.id,
            session_id=row.session_id,
            tenant_id=row.tenant_id or "",
            run_at=_as_utc(row.run_at),
            kind=DelayJobKind(row.kind),
            status=DelayJobStatus(row.status),
            attempts=row.attempts or 0,
            last_error=row.last_error or "",
            created_at=_as_utc(row.created_at),
            updated_at=_as_utc(row.updated_at),
        )

    @staticmethod
    def _row_to_loop(row: ConversationLoopRow) -> ConversationLoop:
        return ConversationLoop(
            id=row.id,
            tenant_id=row.tenant_id,
            name=row.name or "",
            chip_a_id=row.chip_a_id,
            chip_b_id=row.chip_b_id,
            is_active=bool(row.is_active),
            min_delay_seconds=row.min_delay_seconds,
            max_delay_seconds=row.max_delay_seconds,
            messages_per_round=row.messages_per_round,
            daily_limit=row.daily_limit,
            quiet_hours_start=row.quiet_hours_start,
            quiet_hours_end=row.quiet_hours_end,
            topics=list(row.topics or []),
        )
