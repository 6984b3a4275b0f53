"""
Conversation Loop Scheduler — "Maturation" loops between two instances.

A conversation loop makes two of a tenant's own numbers chat with each other
on a schedule, so fresh numbers build a natural message history. Each
iteration sends one round of scripted messages, then schedules the next
iteration after a random delay between the loop's min and max.

Runtime state (active set, pending continuation, per-run message count,
cached configuration) is process-local and does not survive a restart.
Loops are stopped automatically on a daily limit, a disconnected number or
any other failure, and the operator gets an alert.
"""
from __future__ import annotations

import asyncio
import itertools
import random
import structlog
from collections import deque
from datetime import datetime, time, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo

from channels.base import DisconnectedError, GatewayError, PermanentGatewayError
from channels.registry import GatewayRegistry
from config.settings import MaturationConfig
from database.store_base import BaseFlowStore
from models.schemas import (
    ConversationLoop, Instance, InstanceStatus, LoopMessage, MessageType,
    OutboundPayload, utcnow,
)

logger = structlog.get_logger()

GREETINGS = [
    "Oi, tudo bem?",
    "E aí, beleza?",
    "Opa, como você está?",
    "Fala aí!",
    "Bom dia! Como vai?",
    "Boa tarde! Tudo certo?",
    "E aí, firmeza?",
    "Opa! Sumido(a) hein",
    "Oi! Quanto tempo!",
    "Tudo bem por aí?",
]

TOPIC_TEMPLATES = [
    "O que você acha sobre {topic}?",
    "Viu as novidades sobre {topic}?",
    "Você gosta de {topic}?",
]


class LoopStartError(Exception):
    """The conversation cannot be started (missing or inactive)."""
    pass


class DailyLimitReached(Exception):
    def __init__(self, conversation_id: str, limit: int):
        self.conversation_id = conversation_id
        self.limit = limit
        super().__init__(f"Daily limit of {limit} messages reached")


# ──────────────────────────────────────────────────────────────
#  Alerts
# ──────────────────────────────────────────────────────────────

class AlertSink:
    """Operator alerts: logged, and kept in memory for the loops API."""

    def __init__(self, max_alerts: int = 100):
        self._alerts: deque[dict[str, Any]] = deque(maxlen=max_alerts)

    def emit(self, level: str, conversation_id: str, message: str):
        self._alerts.append({
            "level": level,
            "conversation_id": conversation_id,
            "message": message,
            "at": utcnow().isoformat(),
        })
        log = logger.error if level == "error" else logger.warning
        log("maturation_alert", conversation_id=conversation_id, message=message)

    def recent(self, limit: int = 20) -> list[dict[str, Any]]:
        return list(self._alerts)[-limit:]


# ──────────────────────────────────────────────────────────────
#  Messenger: one round of scripted messages
# ──────────────────────────────────────────────────────────────

class MaturationMessenger:

    def __init__(self, store: BaseFlowStore, gateways: GatewayRegistry, tz: str = "UTC"):
        self.store = store
        self.gateways = gateways
        self.tz = ZoneInfo(tz or "UTC")

    async def run_round(self, conversation_id: str, now: datetime = None) -> int:
        """Send one round. Returns the number of messages sent (0 in quiet hours)."""
        conversation = await self.store.get_conversation_loop(conversation_id)
        if conversation is None or not conversation.is_active:
            raise LoopStartError(f"Conversation {conversation_id} is not active")

        chip_a = await self._connected_instance(conversation.chip_a_id)
        chip_b = await self._connected_instance(conversation.chip_b_id)

        now = now or utcnow()
        local_now = now.astimezone(self.tz)
        day_start = datetime.combine(local_now.date(), time.min, tzinfo=self.tz).astimezone(timezone.utc)
        sent_today = await self.store.count_loop_messages_since(conversation.id, day_start)
        if sent_today >= conversation.daily_limit:
            raise DailyLimitReached(conversation.id, conversation.daily_limit)

        if conversation.in_quiet_hours(local_now.hour):
            logger.info("maturation_quiet_hours", conversation_id=conversation.id, hour=local_now.hour)
            return 0

        count = min(conversation.messages_per_round, conversation.daily_limit - sent_today)
        sent = 0
        for i in range(count):
            sender, receiver = (chip_a, chip_b) if i % 2 == 0 else (chip_b, chip_a)
            body = self.pick_message(conversation)
            await self._send(sender, receiver, body)
            await self.store.add_loop_message(LoopMessage(
                tenant_id=conversation.tenant_id,
                conversation_id=conversation.id,
                from_instance_id=sender.id,
                to_instance_id=receiver.id,
                body=body,
            ))
            sent += 1

        logger.info("maturation_round_sent", conversation_id=conversation.id, sent=sent)
        return sent

    async def _connected_instance(self, instance_id: str) -> Instance:
        instance = await self.store.get_instance(instance_id)
        if instance is None:
            raise DisconnectedError(f"Instance {instance_id} not found", instance_id=instance_id)
        if not instance.is_connected:
            raise DisconnectedError(f"Instance {instance.label} is not connected",
                                    instance_id=instance.id, instance_name=instance.name)
        return instance

    async def _send(self, sender: Instance, receiver: Instance, body: str):
        if not receiver.phone_number:
            raise PermanentGatewayError(f"Instance {receiver.label} has no phone number",
                                        instance_id=receiver.id)
        gateway = self.gateways.for_instance(sender)
        await gateway.send(sender, receiver.phone_number,
                           OutboundPayload(kind=MessageType.TEXT, text=body))

    @staticmethod
    def pick_message(conversation: ConversationLoop) -> str:
        pool = list(GREETINGS)
        for topic in conversation.topics:
            pool.extend(t.format(topic=topic.lower()) for t in TOPIC_TEMPLATES)
        return random.choice(pool)


# ══════════════════════════════════════════════════════════════
#  Loop Scheduler
# ══════════════════════════════════════════════════════════════

class ConversationLoopScheduler:
    """
    In-process registry of running loops.

    Usage:
        scheduler = ConversationLoopScheduler(store, gateways, messenger)
        await scheduler.start(conversation_id)
        scheduler.stop(conversation_id)
    """

    def __init__(self, store: BaseFlowStore, gateways: GatewayRegistry,
                 messenger: MaturationMessenger, alerts: AlertSink = None,
                 config: MaturationConfig = None):
        self.store = store
        self.gateways = gateways
        self.messenger = messenger
        self.config = config or MaturationConfig()
        self.alerts = alerts or AlertSink(self.config.max_alerts)
        self._active: set[str] = set()
        self._handles: dict[str, asyncio.Task] = {}
        self._session_counts: dict[str, int] = {}
        self._cache: dict[str, ConversationLoop] = {}
        # Each start() opens a new run; work left over from an earlier run never continues
        self._generations: dict[str, int] = {}
        self._next_generation = itertools.count(1)
        self._sleeping: dict[str, int] = {}   # conversation_id → generation waiting out its delay

    def is_running(self, conversation_id: str) -> bool:
        return conversation_id in self._active

    def session_count(self, conversation_id: str) -> int:
        return self._session_counts.get(conversation_id, 0)

    def status(self) -> list[dict[str, Any]]:
        return [
            {
                "conversation_id": cid,
                "name": self._cache[cid].name if cid in self._cache else "",
                "messages_sent": self._session_counts.get(cid, 0),
                "next_iteration_pending": cid in self._handles and not self._handles[cid].done(),
            }
            for cid in sorted(self._active)
        ]

    async def start(self, conversation_id: str) -> bool:
        """Start a loop. Returns False when it was already running."""
        if conversation_id in self._active:
            return False
        conversation = await self.store.get_conversation_loop(conversation_id)
        if conversation is None:
            raise LoopStartError(f"Conversation {conversation_id} not found")
        if not conversation.is_active:
            raise LoopStartError(f"Conversation {conversation.name or conversation_id} is not active")

        self._active.add(conversation_id)
        self._cache[conversation_id] = conversation
        self._session_counts[conversation_id] = 0
        generation = next(self._next_generation)
        self._generations[conversation_id] = generation
        self._handles[conversation_id] = asyncio.create_task(self.run_iteration(conversation_id, generation))
        logger.info("maturation_loop_started", conversation_id=conversation_id, name=conversation.name)
        return True

    def stop(self, conversation_id: str) -> bool:
        """Stop a loop. Safe to call for loops that are not running."""
        was_running = conversation_id in self._active
        self._active.discard(conversation_id)
        generation = self._generations.pop(conversation_id, None)

        handle = self._handles.pop(conversation_id, None)
        # An iteration already sending finishes its round; only the wait is cancelled
        sleeping = generation is not None and self._sleeping.get(conversation_id) == generation
        if handle is not None and sleeping and not handle.done():
            handle.cancel()

        conversation = self._cache.pop(conversation_id, None)
        sent = self._session_counts.pop(conversation_id, 0)
        if was_running:
            logger.info("maturation_loop_stopped",
                        conversation_id=conversation_id,
                        name=conversation.name if conversation else "",
                        messages_sent=sent)
        return was_running

    async def stop_all(self):
        handles = list(self._handles.values())
        for conversation_id in list(self._active):
            self.stop(conversation_id)
        for handle in handles:
            if not handle.done():
                handle.cancel()

    # ── Iteration ─────────────────────────────────────────────

    def _is_current(self, conversation_id: str, generation: Optional[int]) -> bool:
        return conversation_id in self._active and self._generations.get(conversation_id) == generation

    def _stop_if_current(self, conversation_id: str, generation: Optional[int]):
        if self._is_current(conversation_id, generation):
            self.stop(conversation_id)

    async def run_iteration(self, conversation_id: str, generation: Optional[int] = None):
        if generation is None:
            generation = self._generations.get(conversation_id)
        if not self._is_current(conversation_id, generation):
            return

        conversation = await self.store.get_conversation_loop(conversation_id)
        if conversation is None:
            self._stop_if_current(conversation_id, generation)
            return
        if not self._is_current(conversation_id, generation):
            return
        self._cache[conversation_id] = conversation

        try:
            sent = await self.messenger.run_round(conversation_id)
        except DailyLimitReached:
            self.alerts.emit("warning", conversation_id,
                             f"{conversation.name}: daily limit reached, loop stopped")
            self._stop_if_current(conversation_id, generation)
            return
        except DisconnectedError as e:
            await self._handle_disconnect(conversation, e)
            self._stop_if_current(conversation_id, generation)
            return
        except Exception as e:
            logger.error("maturation_iteration_failed",
                         conversation_id=conversation_id,
                         error=str(e),
                         exc_info=not isinstance(e, GatewayError))
            self.alerts.emit("error", conversation_id, f"{conversation.name}: {e}")
            self._stop_if_current(conversation_id, generation)
            return

        # Stopped, or stopped and restarted, while the round was sending
        if not self._is_current(conversation_id, generation):
            return

        self._session_counts[conversation_id] = self._session_counts.get(conversation_id, 0) + sent
        low = conversation.min_delay_seconds or self.config.default_min_delay_seconds
        high = conversation.max_delay_seconds or self.config.default_max_delay_seconds
        delay = random.randint(min(low, high), max(low, high))
        self._handles[conversation_id] = asyncio.create_task(
            self._run_later(conversation_id, generation, delay))
        logger.info("maturation_next_iteration", conversation_id=conversation_id, delay=delay)

    async def _run_later(self, conversation_id: str, generation: int, delay: float):
        self._sleeping[conversation_id] = generation
        try:
            await asyncio.sleep(delay)
        finally:
            if self._sleeping.get(conversation_id) == generation:
                del self._sleeping[conversation_id]
        await self.run_iteration(conversation_id, generation)

    async def _handle_disconnect(self, conversation: ConversationLoop, error: DisconnectedError):
        """Refresh both participants from the gateway and alert on the dead one(s)."""
        names = []
        for instance_id in (conversation.chip_a_id, conversation.chip_b_id):
            instance = await self.store.get_instance(instance_id)
            if instance is None:
                continue
            status = await self._refresh_status(instance)
            if status != InstanceStatus.CONNECTED:
                names.append(instance.phone_number or instance.label)

        if not names:
            names.append(error.instance_name or error.instance_id or "unknown")
        for name in names:
            self.alerts.emit("error", conversation.id,
                             f"Number {name} was disconnected. Reconnect it to resume the loop.")

    async def _refresh_status(self, instance: Instance) -> InstanceStatus:
        try:
            status = await self.gateways.for_instance(instance).connection_state(instance)
        except DisconnectedError:
            status = InstanceStatus.DISCONNECTED
        except GatewayError as e:
            logger.warning("maturation_status_refresh_failed", instance_id=instance.id, error=str(e))
            return instance.status

        if status != instance.status:
            now = utcnow()
            fields: dict[str, Any] = {"status": status, "status_changed_at": now}
            if status == InstanceStatus.DISCONNECTED:
                fields["disconnected_at"] = now
            elif status == InstanceStatus.CONNECTED:
                fields["last_connected_at"] = now
            await self.store.update_instance(instance.id, **fields)
            logger.info("instance_status_refreshed", instance_id=instance.id, status=status.value)
        return status
