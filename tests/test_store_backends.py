"""
Store backend tests — every case runs against the in-memory store and the
SQL store (SQLite file via aiosqlite) to keep both backends in lockstep.
"""
import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from database.session import close_db, init_db
from database.store import SqlFlowStore
from database.store_factory import create_store, get_store, reset_store
from database.store_memory import InMemoryFlowStore
from models.schemas import (
    Contact, ConversationLoop, DelayJob, DelayJobStatus, DeliveryStatus, FlowSession,
    InboxMessage, Instance, LoopMessage, MessageDirection, SessionStatus, TriggerType,
    Workflow, utcnow,
)

TENANT = "tenant_001"


@pytest_asyncio.fixture(params=["memory", "sql"])
async def backend(request, tmp_path):
    if request.param == "memory":
        yield InMemoryFlowStore()
        return
    await init_db(f"sqlite:///{tmp_path}/flows.db")
    try:
        yield SqlFlowStore()
    finally:
        await close_db()


async def _contact(store, phone="5511988887777", instance_id="inst_1") -> Contact:
    return await store.upsert_contact(Contact(tenant_id=TENANT, instance_id=instance_id, phone=phone))


async def _session(store, contact_id="c1", workflow_id="wf1") -> FlowSession:
    return await store.create_flow_session(FlowSession(
        tenant_id=TENANT, workflow_id=workflow_id, contact_id=contact_id,
        current_node_id="start", variables={"nome": "Ana"},
    ))


def _outbound(contact: Contact, remote_id: str = "", **kw) -> InboxMessage:
    return InboxMessage(tenant_id=TENANT, contact_id=contact.id,
                        direction=MessageDirection.OUTBOUND, remote_message_id=remote_id, **kw)


# ══════════════════════════════════════════════════════════════
#  INSTANCES / CONTACTS
# ══════════════════════════════════════════════════════════════

class TestInstancesAndContacts:
    @pytest.mark.asyncio
    async def test_instance_lookup_by_name_then_token(self, backend):
        await backend.upsert_instance(Instance(id="i1", tenant_id=TENANT, name="loja", api_token="tok-9"))
        assert (await backend.get_instance_by_name("loja")).id == "i1"
        assert (await backend.get_instance_by_name("tok-9")).id == "i1"
        assert await backend.get_instance_by_name("nope") is None
        assert await backend.get_instance_by_name("") is None

    @pytest.mark.asyncio
    async def test_find_contact_is_scoped_to_instance(self, backend):
        contact = await _contact(backend, instance_id="inst_1")
        found = await backend.find_contact(TENANT, "inst_1", contact.phone)
        assert found.id == contact.id
        assert await backend.find_contact(TENANT, "inst_2", contact.phone) is None
        assert await backend.find_contact("other", "inst_1", contact.phone) is None

    @pytest.mark.asyncio
    async def test_second_contact_for_same_phone_returns_existing(self, backend):
        first = await _contact(backend)
        second = await _contact(backend)

        assert second.id == first.id
        assert (await backend.stats())["contacts"] == 1
        elsewhere = await _contact(backend, instance_id="inst_2")
        assert elsewhere.id != first.id

    @pytest.mark.asyncio
    async def test_concurrent_contact_creation_keeps_one(self, backend):
        created = await asyncio.gather(_contact(backend), _contact(backend))
        assert created[0].id == created[1].id
        assert (await backend.stats())["contacts"] == 1

    @pytest.mark.asyncio
    async def test_contact_activity_bumps_unread_for_inbound_only(self, backend):
        contact = await _contact(backend)
        at = utcnow()
        await backend.record_contact_activity(contact.id, at, inbound=True)
        await backend.record_contact_activity(contact.id, at, inbound=False)
        stored = await backend.get_contact(contact.id)
        assert stored.unread_count == 1
        assert stored.last_message_at is not None

    @pytest.mark.asyncio
    async def test_update_contact_tags(self, backend):
        contact = await _contact(backend)
        await backend.update_contact(contact.id, tags=["vip"])
        assert (await backend.get_contact(contact.id)).tags == ["vip"]


# ══════════════════════════════════════════════════════════════
#  MESSAGES
# ══════════════════════════════════════════════════════════════

class TestMessages:
    @pytest.mark.asyncio
    async def test_duplicate_remote_id_is_rejected(self, backend):
        contact = await _contact(backend)
        first = InboxMessage(tenant_id=TENANT, contact_id=contact.id,
                             direction=MessageDirection.INBOUND, remote_message_id="R1", content="oi")
        again = InboxMessage(tenant_id=TENANT, contact_id=contact.id,
                             direction=MessageDirection.INBOUND, remote_message_id="R1", content="oi")
        assert await backend.add_message(first) is not None
        assert await backend.add_message(again) is None
        assert len(await backend.list_messages(contact.id)) == 1

    @pytest.mark.asyncio
    async def test_messages_without_remote_id_are_not_deduplicated(self, backend):
        contact = await _contact(backend)
        await backend.add_message(_outbound(contact))
        await backend.add_message(_outbound(contact))
        assert len(await backend.list_messages(contact.id)) == 2

    @pytest.mark.asyncio
    async def test_status_only_moves_forward(self, backend):
        contact = await _contact(backend)
        await backend.add_message(_outbound(contact, "R2", status=DeliveryStatus.SENT))

        assert await backend.update_message_status("R2", DeliveryStatus.READ) == 1
        assert await backend.update_message_status("R2", DeliveryStatus.DELIVERED) == 0
        stored = (await backend.list_messages(contact.id))[0]
        assert stored.status == DeliveryStatus.READ
        assert stored.read_at is not None

    @pytest.mark.asyncio
    async def test_backfill_fills_newest_outbound_once(self, backend):
        contact = await _contact(backend)
        await backend.add_message(_outbound(contact, content="first",
                                            created_at=utcnow() - timedelta(seconds=5)))
        await backend.add_message(_outbound(contact, content="second"))

        assert await backend.backfill_remote_id(contact.id, "ACK1")
        messages = {m.content: m for m in await backend.list_messages(contact.id)}
        assert messages["second"].remote_message_id == "ACK1"
        assert not messages["first"].remote_message_id
        assert not await backend.backfill_remote_id(contact.id, "ACK1")

    @pytest.mark.asyncio
    async def test_unread_inbound_and_mark_read(self, backend):
        contact = await _contact(backend)
        inbound = InboxMessage(tenant_id=TENANT, contact_id=contact.id,
                               direction=MessageDirection.INBOUND, remote_message_id="IN1")
        await backend.add_message(inbound)
        await backend.add_message(_outbound(contact, "OUT1"))

        unread = await backend.list_unread_inbound(contact.id)
        assert [m.remote_message_id for m in unread] == ["IN1"]
        assert await backend.mark_messages_read([inbound.id], utcnow()) == 1
        assert await backend.list_unread_inbound(contact.id) == []


# ══════════════════════════════════════════════════════════════
#  WORKFLOWS / SESSIONS
# ══════════════════════════════════════════════════════════════

class TestSessions:
    @pytest.mark.asyncio
    async def test_active_workflows_filtered_by_trigger(self, backend):
        await backend.upsert_workflow(Workflow(id="w1", tenant_id=TENANT, trigger_type=TriggerType.TAG))
        await backend.upsert_workflow(Workflow(id="w2", tenant_id=TENANT, trigger_type=TriggerType.TAG,
                                               is_active=False))
        await backend.upsert_workflow(Workflow(id="w3", tenant_id=TENANT, trigger_type=TriggerType.SALE))
        tag_flows = await backend.list_active_workflows(TENANT, TriggerType.TAG)
        assert [w.id for w in tag_flows] == ["w1"]

    @pytest.mark.asyncio
    async def test_lock_is_exclusive_until_released(self, backend):
        session = await _session(backend)
        now = utcnow()
        stale_before = now - timedelta(seconds=60)

        token = await backend.try_acquire_lock(session.id, now, stale_before)
        assert token
        assert await backend.try_acquire_lock(session.id, now, stale_before) is None
        assert await backend.release_lock(session.id, token)
        assert await backend.try_acquire_lock(session.id, now, stale_before)

    @pytest.mark.asyncio
    async def test_release_by_previous_holder_is_fenced(self, backend):
        session = await _session(backend)
        old = utcnow() - timedelta(minutes=10)
        first = await backend.try_acquire_lock(session.id, old, old - timedelta(seconds=60))
        now = utcnow()
        second = await backend.try_acquire_lock(session.id, now, now - timedelta(seconds=60))
        assert first != second

        assert not await backend.release_lock(session.id, first)
        stored = await backend.get_flow_session(session.id)
        assert stored.processing
        assert stored.lock_token == second

        assert await backend.release_lock(session.id, second)
        stored = await backend.get_flow_session(session.id)
        assert not stored.processing
        assert stored.lock_token is None

    @pytest.mark.asyncio
    async def test_checkpoint_requires_active_status_and_current_token(self, backend):
        session = await _session(backend)
        now = utcnow()
        token = await backend.try_acquire_lock(session.id, now, now - timedelta(seconds=60))

        assert not await backend.checkpoint_flow_session(session.id, "someone-else", current_node_id="n2")
        assert await backend.checkpoint_flow_session(session.id, token, current_node_id="n2",
                                                     variables={"nome": "Ana", "x": "1"})

        await backend.pause_sessions([session.id])
        assert not await backend.checkpoint_flow_session(session.id, token, current_node_id="n3",
                                                         status=SessionStatus.COMPLETED)
        stored = await backend.get_flow_session(session.id)
        assert stored.status == SessionStatus.PAUSED
        assert stored.current_node_id == "n2"
        assert stored.variables["x"] == "1"
        assert stored.completed_at is None

    @pytest.mark.asyncio
    async def test_stale_lock_can_be_taken_over(self, backend):
        session = await _session(backend)
        old = utcnow() - timedelta(minutes=10)
        assert await backend.try_acquire_lock(session.id, old, old - timedelta(seconds=60))

        now = utcnow()
        assert await backend.try_acquire_lock(session.id, now, now - timedelta(seconds=60))

    @pytest.mark.asyncio
    async def test_unlock_stale_sessions(self, backend):
        stuck = await _session(backend, contact_id="c1")
        fresh = await _session(backend, contact_id="c2")
        old = utcnow() - timedelta(minutes=10)
        await backend.try_acquire_lock(stuck.id, old, old)
        await backend.try_acquire_lock(fresh.id, utcnow(), old)

        unlocked = await backend.unlock_stale_sessions(utcnow() - timedelta(minutes=5))
        assert unlocked == [stuck.id]
        assert not (await backend.get_flow_session(stuck.id)).processing
        assert (await backend.get_flow_session(fresh.id)).processing

    @pytest.mark.asyncio
    async def test_pause_sessions_only_touches_active(self, backend):
        session = await _session(backend)
        assert await backend.pause_sessions([session.id]) == 1
        assert await backend.pause_sessions([session.id]) == 0
        assert (await backend.get_flow_session(session.id)).status == SessionStatus.PAUSED
        assert await backend.list_active_sessions("c1") == []

    @pytest.mark.asyncio
    async def test_update_and_find_active(self, backend):
        session = await _session(backend)
        await backend.update_flow_session(session.id, current_node_id="n2",
                                          variables={"nome": "Ana", "resposta": "1"})
        found = await backend.find_active_session("c1", "wf1")
        assert found.current_node_id == "n2"
        assert found.variables["resposta"] == "1"
        assert await backend.find_active_session("c1", "other") is None

    @pytest.mark.asyncio
    async def test_completing_checkpoint_frees_the_workflow_slot(self, backend):
        session = await _session(backend)
        now = utcnow()
        token = await backend.try_acquire_lock(session.id, now, now - timedelta(seconds=60))
        assert await backend.checkpoint_flow_session(session.id, token,
                                                     status=SessionStatus.COMPLETED, completed_at=now)

        assert await backend.find_active_session("c1", "wf1") is None
        again = FlowSession(tenant_id=TENANT, workflow_id="wf1", contact_id="c1", current_node_id="start")
        assert await backend.create_flow_session_if_absent(again) is not None

    @pytest.mark.asyncio
    async def test_only_one_active_session_per_workflow(self, backend):
        def fresh():
            return FlowSession(tenant_id=TENANT, workflow_id="wf1", contact_id="c1", current_node_id="start")

        created = await asyncio.gather(
            backend.create_flow_session_if_absent(fresh()),
            backend.create_flow_session_if_absent(fresh()),
        )
        assert sum(s is not None for s in created) == 1
        assert len(await backend.list_active_sessions("c1")) == 1

        other = FlowSession(tenant_id=TENANT, workflow_id="wf2", contact_id="c1", current_node_id="start")
        assert await backend.create_flow_session_if_absent(other) is not None

    @pytest.mark.asyncio
    async def test_paused_session_frees_the_workflow_slot(self, backend):
        session = await _session(backend)
        await backend.pause_sessions([session.id])

        again = FlowSession(tenant_id=TENANT, workflow_id="wf1", contact_id="c1", current_node_id="start")
        assert await backend.create_flow_session_if_absent(again) is not None
        statuses = sorted(s.status.value for s in [await backend.get_flow_session(session.id),
                                                   await backend.get_flow_session(again.id)])
        assert statuses == ["active", "paused"]


# ══════════════════════════════════════════════════════════════
#  DELAY JOBS
# ══════════════════════════════════════════════════════════════

class TestDelayJobs:
    @pytest.mark.asyncio
    async def test_due_job_claimed_exactly_once(self, backend):
        now = utcnow()
        due = await backend.create_delay_job(DelayJob(session_id="s1", run_at=now - timedelta(seconds=1)))
        await backend.create_delay_job(DelayJob(session_id="s1", run_at=now + timedelta(hours=1)))

        claimed = await backend.claim_due_jobs(now, limit=10)
        assert [j.id for j in claimed] == [due.id]
        assert claimed[0].attempts == 1
        assert claimed[0].status == DelayJobStatus.PROCESSING
        assert await backend.claim_due_jobs(now, limit=10) == []

    @pytest.mark.asyncio
    async def test_reschedule_and_finish(self, backend):
        now = utcnow()
        job = await backend.create_delay_job(DelayJob(session_id="s1", run_at=now))
        await backend.claim_due_jobs(now, limit=1)
        await backend.reschedule_delay_job(job.id, now - timedelta(seconds=1), error="locked")

        again = await backend.claim_due_jobs(now, limit=1)
        assert again[0].attempts == 2
        await backend.finish_delay_job(job.id, DelayJobStatus.DONE)
        done = await backend.list_delay_jobs("s1", DelayJobStatus.DONE)
        assert [j.id for j in done] == [job.id]

    @pytest.mark.asyncio
    async def test_cancel_only_scheduled(self, backend):
        now = utcnow()
        await backend.create_delay_job(DelayJob(session_id="s1", run_at=now + timedelta(minutes=1)))
        await backend.create_delay_job(DelayJob(session_id="s1", run_at=now + timedelta(minutes=2)))
        finished = await backend.create_delay_job(DelayJob(session_id="s1", run_at=now))
        await backend.finish_delay_job(finished.id, DelayJobStatus.DONE)

        assert await backend.cancel_delay_jobs("s1") == 2
        assert len(await backend.list_delay_jobs("s1", DelayJobStatus.CANCELLED)) == 2
        assert await backend.list_delay_jobs("s1", DelayJobStatus.SCHEDULED) == []


# ══════════════════════════════════════════════════════════════
#  MATURATION
# ══════════════════════════════════════════════════════════════

class TestLoops:
    @pytest.mark.asyncio
    async def test_loop_roundtrip_and_daily_count(self, backend):
        loop = await backend.upsert_conversation_loop(ConversationLoop(
            tenant_id=TENANT, chip_a_id="a", chip_b_id="b", topics=["futebol"], quiet_hours_start=22,
            quiet_hours_end=7))
        stored = await backend.get_conversation_loop(loop.id)
        assert stored.topics == ["futebol"]
        assert stored.quiet_hours_start == 22

        now = utcnow()
        await backend.add_loop_message(LoopMessage(tenant_id=TENANT, conversation_id=loop.id,
                                                   from_instance_id="a", to_instance_id="b", body="oi",
                                                   created_at=now - timedelta(days=2)))
        await backend.add_loop_message(LoopMessage(tenant_id=TENANT, conversation_id=loop.id,
                                                   from_instance_id="b", to_instance_id="a", body="olá"))
        assert await backend.count_loop_messages_since(loop.id, now - timedelta(days=1)) == 1
        assert [c.id for c in await backend.list_conversation_loops(TENANT)] == [loop.id]


# ══════════════════════════════════════════════════════════════
#  FACTORY
# ══════════════════════════════════════════════════════════════

class TestStoreFactory:
    @pytest.fixture(autouse=True)
    def _reset(self):
        reset_store()
        yield
        reset_store()

    def test_memory_singleton(self):
        store = create_store({"store_backend": "memory"})
        assert isinstance(store, InMemoryFlowStore)
        assert get_store() is store
        assert create_store({"store_backend": "sql"}) is store

    def test_sql_backend(self):
        assert isinstance(create_store({"store_backend": "sql"}), SqlFlowStore)

    def test_reset_creates_fresh_store(self):
        first = get_store()
        reset_store()
        assert get_store() is not first
