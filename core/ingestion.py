"""
Webhook Ingestion — Turns provider webhooks into store updates.

Both gateways post to the same endpoint family. A payload can arrive
with the event name in the URL path (`/webhooks/evolution/messages-upsert`),
in `event` or `type`, nested under `webhook`, or as a batch list. Each
normalized event is handled in isolation, so one bad event never aborts
the rest of the batch.

  message      → contact upsert, dedup on (contact, remote id), unread bump,
                 media persisted, answer routed to a session waiting for input
  status       → delivery status moves forward only
  connection   → instance status; webhook re-registered on reconnect
  send ack     → remote id backfilled on the latest outbound message
"""
from __future__ import annotations

import asyncio
import httpx
import structlog
from dataclasses import dataclass, asdict
from datetime import timedelta
from typing import Any, Optional

from channels.base import GatewayError, InputSanitizer
from channels.media import MediaService
from channels.registry import GatewayRegistry
from database.store_base import BaseFlowStore
from job_queue.message_queue import JobKind, MessageQueue, QueueJob, Queues
from models.schemas import (
    Contact, DeliveryStatus, GatewayProvider, InboundEvent, InboundEventType,
    InboxMessage, Instance, InstanceStatus, MessageDirection, MessageType,
    INPUT_NODE_TYPES, utcnow,
)

logger = structlog.get_logger()

INSTANCE_KEYS = ("instance", "instanceName", "instance_name", "owner", "token")


@dataclass
class IngestResult:
    processed: int = 0
    duplicates: int = 0
    ignored: int = 0
    errors: int = 0
    inputs_routed: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class MarkReadResult:
    success: bool
    marked: int = 0
    gateway_ok: bool = True
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def detect_event(payload: dict[str, Any], path_event: Optional[str] = None) -> str:
    for candidate in (path_event, payload.get("event"), payload.get("type"), payload.get("EventType")):
        if isinstance(candidate, str) and candidate:
            return candidate
    return ""


def detect_instance_name(payload: dict[str, Any]) -> str:
    for key in INSTANCE_KEYS:
        value = payload.get(key)
        if isinstance(value, dict):
            value = value.get("instanceName") or value.get("name") or value.get("token")
        if value:
            return str(value)
    return ""


def detect_provider(payload: dict[str, Any]) -> Optional[GatewayProvider]:
    """`key` (WhatsApp Web message key) means Evolution, `chatid` means UazAPI."""
    data = payload.get("data")
    candidates = [payload, payload.get("message"), data[0] if isinstance(data, list) and data else data]
    for item in candidates:
        if isinstance(item, dict) and "chatid" in item:
            return GatewayProvider.UAZAPI
        if isinstance(item, dict) and "key" in item:
            return GatewayProvider.EVOLUTION
    if "EventType" in payload or "owner" in payload:
        return GatewayProvider.UAZAPI
    return None


class WebhookIngestor:

    def __init__(
        self,
        store: BaseFlowStore,
        gateways: GatewayRegistry,
        queue: MessageQueue,
        media: MediaService = None,
        webhook_url: str = "",
        webhook_events: list[str] = None,
        stale_lock_seconds: int = 60,
    ):
        self.store = store
        self.gateways = gateways
        self.queue = queue
        self.media = media
        self.webhook_url = webhook_url
        self.webhook_events = webhook_events or []
        self.stale_lock_seconds = stale_lock_seconds
        self._background: set[asyncio.Task] = set()
        self._sanitizer = InputSanitizer()

    # ── Entry point ───────────────────────────────────────────

    async def ingest(self, payload: Any, path_event: Optional[str] = None,
                     provider: Optional[str] = None) -> IngestResult:
        result = IngestResult()
        for body in payload if isinstance(payload, list) else [payload]:
            if not isinstance(body, dict):
                result.ignored += 1
                continue
            try:
                await self._ingest_one(body, path_event, provider, result)
            except Exception as e:
                result.errors += 1
                logger.error("webhook_payload_failed", error=str(e), exc_info=True)

        logger.info("webhook_ingested", webhook_event=path_event, **result.to_dict())
        return result

    async def _ingest_one(self, body: dict[str, Any], path_event: Optional[str],
                          provider: Optional[str], result: IngestResult):
        if isinstance(body.get("webhook"), dict):
            body = {**body, **body["webhook"]}

        event_name = detect_event(body, path_event)
        instance_name = detect_instance_name(body)
        instance = await self.store.get_instance_by_name(instance_name) if instance_name else None
        if instance is None:
            logger.warning("webhook_unknown_instance", instance=instance_name, webhook_event=event_name)
            result.ignored += 1
            return

        gateway_provider = self._resolve_provider(provider, instance, body)
        adapter = self.gateways.get(gateway_provider)
        if adapter is None:
            logger.warning("webhook_provider_unavailable", provider=gateway_provider.value)
            result.ignored += 1
            return

        for event in adapter.parse_webhook(event_name, body):
            try:
                await self._handle_event(instance, event, result)
            except Exception as e:
                result.errors += 1
                logger.error("webhook_event_failed",
                             instance=instance.name,
                             event=event.type.value,
                             remote_message_id=event.remote_message_id,
                             error=str(e),
                             exc_info=True)

    @staticmethod
    def _resolve_provider(explicit: Optional[str], instance: Instance,
                          body: dict[str, Any]) -> GatewayProvider:
        if explicit:
            try:
                return GatewayProvider(explicit.lower())
            except ValueError:
                pass
        return detect_provider(body) or instance.provider

    async def _handle_event(self, instance: Instance, event: InboundEvent, result: IngestResult):
        if event.type == InboundEventType.MESSAGE:
            await self._handle_message(instance, event, result)
        elif event.type == InboundEventType.STATUS:
            await self._handle_status(event, result)
        elif event.type == InboundEventType.CONNECTION:
            await self._handle_connection(instance, event)
            result.processed += 1
        elif event.type == InboundEventType.SEND_ACK:
            await self._handle_send_ack(instance, event)
            result.processed += 1
        else:
            logger.debug("webhook_event_ignored", instance=instance.name, reason=event.skip_reason)
            result.ignored += 1

    # ── Messages ──────────────────────────────────────────────

    async def _handle_message(self, instance: Instance, event: InboundEvent, result: IngestResult):
        if event.sent_by_api:
            result.ignored += 1
            return

        contact = await self._resolve_contact(instance, event)
        media_url = event.media_url
        if event.message_type != MessageType.TEXT and self.media is not None and event.remote_message_id:
            try:
                media_url = await self.media.persist_message_media(instance, event)
            except (GatewayError, httpx.HTTPError, OSError) as e:
                logger.warning("inbound_media_persist_failed",
                               instance=instance.name,
                               remote_message_id=event.remote_message_id,
                               error=str(e))

        created_at = event.timestamp or utcnow()
        stored = await self.store.add_message(InboxMessage(
            tenant_id=instance.tenant_id,
            contact_id=contact.id,
            instance_id=instance.id,
            direction=MessageDirection.OUTBOUND if event.from_me else MessageDirection.INBOUND,
            message_type=event.message_type,
            content=self._sanitizer.sanitize(event.text),
            media_url=media_url,
            remote_message_id=event.remote_message_id,
            status=DeliveryStatus.SENT if event.from_me else DeliveryStatus.DELIVERED,
            created_at=created_at,
        ))
        if stored is None:
            logger.info("inbound_message_duplicate",
                        contact_id=contact.id,
                        remote_message_id=event.remote_message_id)
            result.duplicates += 1
            return

        await self.store.record_contact_activity(contact.id, created_at, inbound=not event.from_me)
        result.processed += 1

        # Media without text never answers a prompt
        if not event.from_me and event.message_type == MessageType.TEXT and event.text.strip():
            if await self._route_input(contact, event.text):
                result.inputs_routed += 1

    async def _resolve_contact(self, instance: Instance, event: InboundEvent) -> Contact:
        contact = await self.store.find_contact(instance.tenant_id, instance.id, event.phone)
        if contact is None:
            candidate = Contact(
                tenant_id=instance.tenant_id,
                instance_id=instance.id,
                phone=event.phone,
                remote_jid=event.remote_jid,
                name="" if event.from_me else event.push_name,
            )
            # A concurrent delivery may have registered the phone first; the store hands that one back
            contact = await self.store.upsert_contact(candidate)
            if contact.id == candidate.id:
                logger.info("contact_created", contact_id=contact.id, instance=instance.name)
                return contact

        updates: dict[str, Any] = {}
        if not contact.name and event.push_name and not event.from_me:
            updates["name"] = event.push_name
        if not contact.remote_jid and event.remote_jid:
            updates["remote_jid"] = event.remote_jid
        if not contact.instance_id:
            updates["instance_id"] = instance.id
        if updates:
            contact = await self.store.update_contact(contact.id, **updates) or contact
        return contact

    async def _route_input(self, contact: Contact, text: str) -> bool:
        """Hand the text to the most recent session parked on waitInput/menu."""
        stale_before = utcnow() - timedelta(seconds=self.stale_lock_seconds)
        sessions = sorted(await self.store.list_active_sessions(contact.id),
                          key=lambda s: s.last_interaction_at, reverse=True)
        for session in sessions:
            if session.processing and session.processing_started_at and session.processing_started_at >= stale_before:
                continue
            workflow = await self.store.get_workflow(session.workflow_id)
            node = workflow.get_node(session.current_node_id) if workflow else None
            if node is None or node.kind not in INPUT_NODE_TYPES:
                continue
            await self.queue.publish(Queues.FLOW_STEPS, QueueJob(
                session_id=session.id,
                tenant_id=session.tenant_id,
                kind=JobKind.INPUT,
                user_input=text,
            ))
            logger.info("input_routed", session_id=session.id, node_id=node.id)
            return True
        return False

    # ── Status / connection / acks ────────────────────────────

    async def _handle_status(self, event: InboundEvent, result: IngestResult):
        if not event.remote_message_id or event.status is None:
            result.ignored += 1
            return
        changed = await self.store.update_message_status(event.remote_message_id, event.status)
        logger.debug("message_status_updated",
                     remote_message_id=event.remote_message_id,
                     status=event.status.value,
                     changed=changed)
        result.processed += 1

    async def _handle_connection(self, instance: Instance, event: InboundEvent):
        status = event.connection_state or InstanceStatus.DISCONNECTED
        now = utcnow()
        fields: dict[str, Any] = {"status": status, "status_changed_at": now}
        if status == InstanceStatus.CONNECTED:
            fields["last_connected_at"] = now
        elif status == InstanceStatus.DISCONNECTED:
            fields["disconnected_at"] = now
        await self.store.update_instance(instance.id, **fields)
        logger.info("instance_connection_update",
                    instance=instance.name,
                    previous=instance.status.value,
                    status=status.value)

        if status == InstanceStatus.CONNECTED and self.webhook_url:
            task = asyncio.create_task(self._reconfigure_webhook(instance))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _reconfigure_webhook(self, instance: Instance):
        try:
            await self.gateways.for_instance(instance).configure_webhook(
                instance, self.webhook_url, self.webhook_events)
            logger.info("webhook_reconfigured", instance=instance.name)
        except GatewayError as e:
            logger.warning("webhook_reconfigure_failed", instance=instance.name, error=str(e))

    async def _handle_send_ack(self, instance: Instance, event: InboundEvent):
        if not event.remote_message_id or not event.phone:
            return
        contact = await self.store.find_contact(instance.tenant_id, instance.id, event.phone)
        if contact is None:
            return
        await self.store.backfill_remote_id(contact.id, event.remote_message_id)

    # ── Operator actions ──────────────────────────────────────

    async def mark_read(self, contact_id: str) -> MarkReadResult:
        """
        Mark the contact's unread inbound messages as read, on the provider
        (best effort) and locally.
        """
        contact = await self.store.get_contact(contact_id)
        if contact is None:
            return MarkReadResult(success=False, error="contact_not_found")
        instance = await self.store.get_instance(contact.instance_id) if contact.instance_id else None
        if instance is None or not instance.is_connected:
            return MarkReadResult(success=True)

        unread = await self.store.list_unread_inbound(contact.id, limit=50)
        remote_ids = [m.remote_message_id for m in unread if m.remote_message_id]
        result = MarkReadResult(success=True)
        if remote_ids:
            try:
                await self.gateways.for_instance(instance).mark_read(instance, contact.jid, remote_ids)
            except GatewayError as e:
                logger.warning("mark_read_gateway_failed", contact_id=contact.id, error=str(e))
                result.gateway_ok = False
                result.error = str(e)

        result.marked = await self.store.mark_messages_read([m.id for m in unread], utcnow())
        await self.store.update_contact(contact.id, unread_count=0)
        return result

    async def refresh_profile(self, contact_id: str) -> Optional[Contact]:
        contact = await self.store.get_contact(contact_id)
        if contact is None:
            return None
        instance = await self.store.get_instance(contact.instance_id) if contact.instance_id else None
        if instance is None or self.media is None:
            return contact
        try:
            return await self.media.backfill_profile(instance, contact)
        except GatewayError as e:
            logger.warning("profile_refresh_failed", contact_id=contact.id, error=str(e))
            return contact

    async def shutdown(self):
        for task in list(self._background):
            task.cancel()
