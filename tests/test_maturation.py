"""Tests for maturation loops: the per-round messenger and the loop scheduler."""
import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from channels.base import DisconnectedError, PermanentGatewayError
from core.maturation import (
    GREETINGS, AlertSink, ConversationLoopScheduler, DailyLimitReached, LoopStartError,
    MaturationMessenger,
)
from models.schemas import ConversationLoop, Instance, InstanceStatus, LoopMessage

TENANT = "tenant_001"


def chip(id_, phone, status=InstanceStatus.CONNECTED) -> Instance:
    return Instance(id=id_, tenant_id=TENANT, name=id_, phone_number=phone, status=status)


@pytest_asyncio.fixture
async def chips(store):
    a = await store.upsert_instance(chip("chip_a", "5511900000001"))
    b = await store.upsert_instance(chip("chip_b", "5511900000002"))
    return a, b


@pytest.fixture
def loop_factory(store, chips):
    async def make(**fields) -> ConversationLoop:
        loop = ConversationLoop(tenant_id=TENANT, name="Aquecimento", chip_a_id="chip_a",
                                chip_b_id="chip_b", min_delay_seconds=60, max_delay_seconds=60,
                                **fields)
        return await store.upsert_conversation_loop(loop)
    return make


@pytest.fixture
def messenger(store, gateways) -> MaturationMessenger:
    return MaturationMessenger(store, gateways, "UTC")


# ══════════════════════════════════════════════════════════════
#  MESSENGER
# ══════════════════════════════════════════════════════════════

class TestMessenger:
    @pytest.mark.asyncio
    async def test_round_alternates_senders(self, messenger, store, fake_adapter, loop_factory):
        loop = await loop_factory(messages_per_round=3)
        assert await messenger.run_round(loop.id) == 3

        calls = [(c.args[0].id, c.args[1]) for c in fake_adapter.send.call_args_list]
        assert calls == [
            ("chip_a", "5511900000002"),
            ("chip_b", "5511900000001"),
            ("chip_a", "5511900000002"),
        ]
        since = datetime(2000, 1, 1, tzinfo=timezone.utc)
        assert await store.count_loop_messages_since(loop.id, since) == 3

    @pytest.mark.asyncio
    async def test_round_capped_by_remaining_daily_budget(self, messenger, store, loop_factory):
        loop = await loop_factory(messages_per_round=5, daily_limit=3)
        await store.add_loop_message(LoopMessage(tenant_id=TENANT, conversation_id=loop.id,
                                                 from_instance_id="chip_a", to_instance_id="chip_b",
                                                 body="oi"))
        assert await messenger.run_round(loop.id) == 2

    @pytest.mark.asyncio
    async def test_daily_limit_reached(self, messenger, store, fake_adapter, loop_factory):
        loop = await loop_factory(daily_limit=1)
        await store.add_loop_message(LoopMessage(tenant_id=TENANT, conversation_id=loop.id,
                                                 from_instance_id="chip_a", to_instance_id="chip_b",
                                                 body="oi"))
        with pytest.raises(DailyLimitReached) as exc:
            await messenger.run_round(loop.id)
        assert exc.value.limit == 1
        fake_adapter.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_quiet_hours_use_local_time(self, store, gateways, fake_adapter, loop_factory):
        loop = await loop_factory(quiet_hours_start=22, quiet_hours_end=7)
        messenger = MaturationMessenger(store, gateways, "America/Sao_Paulo")

        # 01:00 UTC is 22:00 in São Paulo
        late = datetime(2026, 3, 10, 1, 0, tzinfo=timezone.utc)
        assert await messenger.run_round(loop.id, now=late) == 0
        fake_adapter.send.assert_not_called()

        noon = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)
        assert await messenger.run_round(loop.id, now=noon) == 2

    @pytest.mark.asyncio
    async def test_disconnected_chip(self, messenger, store, loop_factory):
        loop = await loop_factory()
        await store.update_instance("chip_b", status=InstanceStatus.DISCONNECTED)
        with pytest.raises(DisconnectedError) as exc:
            await messenger.run_round(loop.id)
        assert exc.value.instance_id == "chip_b"

    @pytest.mark.asyncio
    async def test_receiver_without_phone(self, messenger, store, loop_factory):
        loop = await loop_factory()
        await store.update_instance("chip_b", phone_number="")
        with pytest.raises(PermanentGatewayError):
            await messenger.run_round(loop.id)

    @pytest.mark.asyncio
    async def test_inactive_loop(self, messenger, loop_factory):
        loop = await loop_factory(is_active=False)
        with pytest.raises(LoopStartError):
            await messenger.run_round(loop.id)

    def test_pick_message_uses_topics(self):
        loop = ConversationLoop(tenant_id=TENANT, chip_a_id="a", chip_b_id="b", topics=["Futebol"])
        picks = {MaturationMessenger.pick_message(loop) for _ in range(300)}
        assert picks <= set(GREETINGS) | {
            "O que você acha sobre futebol?", "Viu as novidades sobre futebol?", "Você gosta de futebol?"}
        assert any("futebol" in p for p in picks)


# ══════════════════════════════════════════════════════════════
#  SCHEDULER
# ══════════════════════════════════════════════════════════════

@pytest.fixture
def fake_messenger():
    messenger = MagicMock()
    messenger.run_round = AsyncMock(return_value=2)
    return messenger


@pytest.fixture
def alerts() -> AlertSink:
    return AlertSink()


@pytest_asyncio.fixture
async def scheduler(store, gateways, fake_messenger, alerts):
    scheduler = ConversationLoopScheduler(store, gateways, fake_messenger, alerts)
    yield scheduler
    await scheduler.stop_all()


async def first_iteration(scheduler, conversation_id):
    await scheduler._handles[conversation_id]


class TestLoopScheduler:
    @pytest.mark.asyncio
    async def test_start_errors(self, scheduler, loop_factory):
        with pytest.raises(LoopStartError):
            await scheduler.start("missing")
        inactive = await loop_factory(is_active=False)
        with pytest.raises(LoopStartError):
            await scheduler.start(inactive.id)
        assert scheduler.status() == []

    @pytest.mark.asyncio
    async def test_iteration_schedules_next(self, scheduler, fake_messenger, loop_factory):
        loop = await loop_factory()
        assert await scheduler.start(loop.id)
        assert not await scheduler.start(loop.id)

        await first_iteration(scheduler, loop.id)

        fake_messenger.run_round.assert_awaited_once_with(loop.id)
        assert scheduler.session_count(loop.id) == 2
        assert scheduler.status() == [{
            "conversation_id": loop.id,
            "name": "Aquecimento",
            "messages_sent": 2,
            "next_iteration_pending": True,
        }]

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_wait(self, scheduler, loop_factory):
        loop = await loop_factory()
        await scheduler.start(loop.id)
        await first_iteration(scheduler, loop.id)
        later = scheduler._handles[loop.id]
        await asyncio.sleep(0)   # let the continuation enter its sleep

        assert scheduler.stop(loop.id)
        await asyncio.gather(later, return_exceptions=True)
        assert later.cancelled()
        assert not scheduler.is_running(loop.id)
        assert not scheduler.stop(loop.id)

    @pytest.mark.asyncio
    async def test_stop_during_round_prevents_next(self, scheduler, fake_messenger, loop_factory):
        loop = await loop_factory()

        async def round_then_stopped(conversation_id):
            scheduler.stop(conversation_id)
            return 2

        fake_messenger.run_round.side_effect = round_then_stopped
        await scheduler.start(loop.id)
        handle = scheduler._handles[loop.id]
        await handle

        assert not handle.cancelled()
        assert loop.id not in scheduler._handles
        assert not scheduler.is_running(loop.id)

    @pytest.mark.asyncio
    async def test_restart_during_round_keeps_one_continuation(self, scheduler, fake_messenger, loop_factory):
        loop = await loop_factory()
        release = asyncio.Event()
        calls = []

        async def first_round_blocks(conversation_id):
            calls.append(conversation_id)
            if len(calls) == 1:
                await release.wait()
            return 2

        fake_messenger.run_round.side_effect = first_round_blocks
        await scheduler.start(loop.id)
        first = scheduler._handles[loop.id]
        while not calls:
            await asyncio.sleep(0)

        scheduler.stop(loop.id)
        assert await scheduler.start(loop.id)
        await scheduler._handles[loop.id]
        continuation = scheduler._handles[loop.id]

        release.set()
        await first

        assert scheduler._handles[loop.id] is continuation
        assert scheduler.session_count(loop.id) == 2
        waiting = [t for t in asyncio.all_tasks() if t.get_coro().__name__ == "_run_later"]
        assert waiting == [continuation]

    @pytest.mark.asyncio
    async def test_failure_of_stale_round_does_not_stop_new_run(self, scheduler, fake_messenger,
                                                                loop_factory):
        loop = await loop_factory()
        release = asyncio.Event()
        calls = []

        async def first_round_fails(conversation_id):
            calls.append(conversation_id)
            if len(calls) == 1:
                await release.wait()
                raise DailyLimitReached(conversation_id, 100)
            return 2

        fake_messenger.run_round.side_effect = first_round_fails
        await scheduler.start(loop.id)
        first = scheduler._handles[loop.id]
        while not calls:
            await asyncio.sleep(0)

        scheduler.stop(loop.id)
        await scheduler.start(loop.id)
        await scheduler._handles[loop.id]
        release.set()
        await first

        assert scheduler.is_running(loop.id)
        assert scheduler.status()[0]["next_iteration_pending"]

    @pytest.mark.asyncio
    async def test_disconnect_stops_and_alerts(self, scheduler, store, fake_messenger, fake_adapter,
                                               alerts, loop_factory):
        loop = await loop_factory()
        fake_messenger.run_round.side_effect = DisconnectedError(
            "Instance chip_b is not connected", instance_id="chip_b", instance_name="chip_b")
        fake_adapter.connection_state.side_effect = lambda instance: (
            InstanceStatus.CONNECTED if instance.id == "chip_a" else InstanceStatus.DISCONNECTED)

        await scheduler.start(loop.id)
        await first_iteration(scheduler, loop.id)

        assert not scheduler.is_running(loop.id)
        assert loop.id not in scheduler._handles
        messages = [a["message"] for a in alerts.recent()]
        assert messages == ["Number 5511900000002 was disconnected. Reconnect it to resume the loop."]
        refreshed = await store.get_instance("chip_b")
        assert refreshed.status == InstanceStatus.DISCONNECTED
        assert refreshed.disconnected_at is not None

    @pytest.mark.asyncio
    async def test_daily_limit_stops_with_warning(self, scheduler, fake_messenger, alerts, loop_factory):
        loop = await loop_factory()
        fake_messenger.run_round.side_effect = DailyLimitReached(loop.id, 100)
        await scheduler.start(loop.id)
        await first_iteration(scheduler, loop.id)

        assert not scheduler.is_running(loop.id)
        assert alerts.recent()[0]["level"] == "warning"

    @pytest.mark.asyncio
    async def test_unexpected_error_stops_with_alert(self, scheduler, fake_messenger, alerts, loop_factory):
        loop = await loop_factory()
        fake_messenger.run_round.side_effect = RuntimeError("boom")
        await scheduler.start(loop.id)
        await first_iteration(scheduler, loop.id)

        assert not scheduler.is_running(loop.id)
        alert = alerts.recent()[0]
        assert (alert["level"], alert["message"]) == ("error", "Aquecimento: boom")

    def test_alert_sink_is_bounded(self):
        sink = AlertSink(max_alerts=2)
        for i in range(3):
            sink.emit("warning", "c", f"m{i}")
        assert [a["message"] for a in sink.recent()] == ["m1", "m2"]
