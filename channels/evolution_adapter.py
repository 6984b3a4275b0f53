"""
Evolution API adapter.

Provides:
- Outbound text / media / voice-note delivery with payload-shape negotiation
  across Evolution v1 and v2 deployments
- Read receipts, media download (base64), profile picture lookup
- Connection state polling and webhook registration
- Webhook normalization for messages.upsert, messages.update,
  connection.update and send.message
"""
from __future__ import annotations

import base64
import structlog
from typing import Any, Optional

from models.schemas import (
    GatewayProvider, InboundEvent, InboundEventType, Instance, InstanceStatus,
    MediaBlob, MessageType, OutboundPayload, ProfileInfo,
)
from channels.base import (
    GatewayAdapter, PermanentGatewayError, is_valid_phone_jid, map_connection_state,
    map_delivery_status, parse_timestamp, phone_from_jid,
)

logger = structlog.get_logger()

MESSAGE_EVENTS = {"messages.upsert", "message", "messages_upsert", "messages"}
STATUS_EVENTS = {"messages.update", "messages_update"}
CONNECTION_EVENTS = {"connection.update", "connection_update"}
SEND_ACK_EVENTS = {"send.message", "send_message"}


def normalize_event_name(name: str) -> str:
    return (name or "").strip().lower().replace("-", ".")


def _decode_base64(raw: str) -> bytes:
    if "," in raw and raw.startswith("data:"):
        raw = raw.split(",", 1)[1]
    return base64.b64decode(raw)


class EvolutionAdapter(GatewayAdapter):
    """Evolution API (self-hosted WhatsApp Web gateway)."""

    provider = GatewayProvider.EVOLUTION

    @staticmethod
    def _headers(creds) -> dict[str, str]:
        return {
            "apikey": creds.token,
            "Authorization": f"Bearer {creds.token}",
            "Content-Type": "application/json",
        }

    # ── Outbound ──────────────────────────────────────────────

    async def _do_send(self, instance: Instance, creds, number: str,
                       payload: OutboundPayload) -> Any:
        headers = self._headers(creds)
        delay = payload.delay_ms

        if payload.kind == MessageType.TEXT:
            url = f"{creds.base_url}/message/sendText/{instance.name}"
            shapes = [
                {"number": number, "text": payload.text, **({"delay": delay} if delay else {})},
                {"number": number, "textMessage": {"text": payload.text}},
                {"number": number, "options": {"delay": delay}, "textMessage": {"text": payload.text}},
            ]
        elif payload.kind == MessageType.AUDIO:
            url = f"{creds.base_url}/message/sendWhatsAppAudio/{instance.name}"
            shapes = [
                {"number": number, "audio": payload.media_url},
                {"number": number, "audioMessage": {"audio": payload.media_url}},
                {"number": number, "options": {"delay": delay, "encoding": True},
                 "audioMessage": {"audio": payload.media_url}},
            ]
        elif payload.kind in (MessageType.IMAGE, MessageType.VIDEO, MessageType.DOCUMENT):
            url = f"{creds.base_url}/message/sendMedia/{instance.name}"
            media = {
                "mediatype": payload.kind.value,
                "media": payload.media_url,
                "caption": payload.text,
            }
            if payload.kind == MessageType.DOCUMENT:
                media["fileName"] = payload.file_name or "document"
            shapes = [
                {"number": number, **media},
                {"number": number, "mediaMessage": media},
                {"number": number, "options": {"delay": delay}, "mediaMessage": media},
            ]
        else:
            raise PermanentGatewayError(
                f"Unsupported media kind {payload.kind.value}", instance.id)

        return await self._request_shapes(instance, "POST", url, headers, shapes)

    async def _do_mark_read(self, instance: Instance, creds, remote_jid: str,
                            remote_ids: list[str]) -> Any:
        url = f"{creds.base_url}/chat/markMessageAsRead/{instance.name}"
        body = {"readMessages": [
            {"remoteJid": remote_jid, "fromMe": False, "id": rid.split(":")[-1]}
            for rid in remote_ids
        ]}
        headers = self._headers(creds)
        try:
            return await self._request(instance, "PUT", url, headers, json=body)
        except PermanentGatewayError as e:
            if e.status_code != 405:
                raise
            return await self._request(instance, "POST", url, headers, json=body)

    async def _do_fetch_media(self, instance: Instance, creds, remote_message_id: str,
                              remote_jid: str) -> MediaBlob:
        url = f"{creds.base_url}/chat/getBase64FromMediaMessage/{instance.name}"
        body = {
            "message": {"key": {"remoteJid": remote_jid, "id": remote_message_id}},
            "convertToMp4": False,
        }
        data = await self._request(instance, "POST", url, self._headers(creds), json=body)
        encoded = data.get("base64") if isinstance(data, dict) else None
        if not encoded:
            raise PermanentGatewayError(
                f"Media not available for message {remote_message_id}", instance.id)
        return MediaBlob(
            data=_decode_base64(encoded),
            mimetype=data.get("mimetype") or "application/octet-stream",
        )

    async def _do_fetch_profile(self, instance: Instance, creds, number: str) -> ProfileInfo:
        url = f"{creds.base_url}/chat/fetchProfilePictureUrl/{instance.name}"
        data = await self._request(instance, "POST", url, self._headers(creds),
                                   json={"number": number})
        if not isinstance(data, dict):
            return ProfileInfo()
        return ProfileInfo(
            name=data.get("name") or data.get("pushName") or None,
            avatar_url=data.get("profilePictureUrl") or data.get("picture") or None,
        )

    async def _do_connection_state(self, instance: Instance, creds) -> InstanceStatus:
        url = f"{creds.base_url}/instance/connectionState/{instance.name}"
        data = await self._request(instance, "GET", url, self._headers(creds))
        state = None
        if isinstance(data, dict):
            nested = data.get("instance")
            state = nested.get("state") if isinstance(nested, dict) else data.get("state")
        return map_connection_state(state)

    async def _do_configure_webhook(self, instance: Instance, creds, url: str,
                                    events: list[str]) -> Any:
        endpoint = f"{creds.base_url}/webhook/set/{instance.name}"
        settings = {
            "enabled": True,
            "url": url,
            "webhookByEvents": False,
            "webhookBase64": False,
            "events": events,
        }
        shapes = [
            {"webhook": settings},
            dict(settings),
            {"url": url, "enabled": True, "events": ["all"]},
        ]
        return await self._request_shapes(instance, "POST", endpoint, self._headers(creds), shapes)

    # ── Inbound ───────────────────────────────────────────────

    def parse_webhook(self, event_name: str, payload: dict[str, Any]) -> list[InboundEvent]:
        event = normalize_event_name(event_name)
        instance_name = _instance_name(payload)
        events: list[InboundEvent] = []
        for item in _iter_items(payload.get("data", payload)):
            if not isinstance(item, dict):
                continue
            if event in MESSAGE_EVENTS:
                events.append(self._parse_message(instance_name, item))
            elif event in STATUS_EVENTS:
                events.append(self._parse_status(instance_name, item))
            elif event in CONNECTION_EVENTS:
                events.append(InboundEvent(
                    type=InboundEventType.CONNECTION,
                    provider=self.provider,
                    instance_name=instance_name,
                    connection_state=map_connection_state(item.get("state") or item.get("status")),
                ))
            elif event in SEND_ACK_EVENTS:
                key = item.get("key") or {}
                events.append(InboundEvent(
                    type=InboundEventType.SEND_ACK,
                    provider=self.provider,
                    instance_name=instance_name,
                    remote_message_id=key.get("id", ""),
                    remote_jid=key.get("remoteJid", ""),
                    phone=phone_from_jid(key.get("remoteJid", "")),
                ))
            else:
                events.append(InboundEvent(
                    type=InboundEventType.IGNORED,
                    provider=self.provider,
                    instance_name=instance_name,
                    skip_reason=f"unhandled_event:{event_name}",
                ))
        return events

    def _parse_message(self, instance_name: str, item: dict[str, Any]) -> InboundEvent:
        key = item.get("key") or {}
        remote_jid = key.get("remoteJid") or ""
        remote_jid_alt = key.get("remoteJidAlt") or ""
        participant = key.get("participant") or ""
        participant_alt = key.get("participantAlt") or ""

        base = dict(
            provider=self.provider,
            instance_name=instance_name,
            remote_message_id=key.get("id", ""),
            from_me=bool(key.get("fromMe")),
            sent_by_api=bool(item.get("wasSentByApi")),
            push_name=item.get("pushName") or "",
            timestamp=parse_timestamp(item.get("messageTimestamp")),
        )

        is_group = "@g.us" in remote_jid or "@g.us" in remote_jid_alt
        if is_group and not is_valid_phone_jid(participant_alt):
            return InboundEvent(type=InboundEventType.IGNORED, skip_reason="group_message", **base)

        # Ad-originated messages carry the real phone in participantAlt
        jid = next(
            (j for j in (participant_alt, remote_jid, remote_jid_alt, participant)
             if is_valid_phone_jid(j)),
            "",
        )
        if not jid:
            return InboundEvent(type=InboundEventType.IGNORED, skip_reason="invalid_phone", **base)

        message_type, text, media_url = extract_message_content(item.get("message") or {})
        return InboundEvent(
            type=InboundEventType.MESSAGE,
            phone=phone_from_jid(jid),
            remote_jid=jid,
            message_type=message_type,
            text=text,
            media_url=media_url,
            **base,
        )

    def _parse_status(self, instance_name: str, item: dict[str, Any]) -> InboundEvent:
        key = item.get("key") or {}
        update = item.get("update") or {}
        raw_status = update.get("status", item.get("status"))
        return InboundEvent(
            type=InboundEventType.STATUS,
            provider=self.provider,
            instance_name=instance_name,
            remote_message_id=key.get("id") or item.get("keyId") or item.get("messageId") or "",
            remote_jid=key.get("remoteJid") or item.get("remoteJid") or "",
            status=map_delivery_status(raw_status),
        )


def _iter_items(data: Any) -> list[Any]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict) and isinstance(data.get("messages"), list):
        return data["messages"]
    return [data]


def _instance_name(payload: dict[str, Any]) -> str:
    instance = payload.get("instance") or payload.get("instanceName") or payload.get("instance_name")
    if isinstance(instance, dict):
        instance = instance.get("instanceName") or instance.get("name")
    return str(instance or "")


def extract_message_content(message: dict[str, Any]) -> tuple[MessageType, str, str]:
    """Pull (type, text, media_url) out of a WhatsApp Web message body."""
    if not message:
        return MessageType.TEXT, "", ""
    if message.get("conversation"):
        return MessageType.TEXT, message["conversation"], ""
    extended = message.get("extendedTextMessage") or {}
    if extended.get("text"):
        return MessageType.TEXT, extended["text"], ""

    buttons = message.get("buttonsResponseMessage") or {}
    if buttons.get("selectedDisplayText"):
        return MessageType.TEXT, buttons["selectedDisplayText"], ""
    list_reply = message.get("listResponseMessage") or {}
    if list_reply.get("title"):
        return MessageType.TEXT, list_reply["title"], ""

    media_keys = (
        ("imageMessage", MessageType.IMAGE),
        ("audioMessage", MessageType.AUDIO),
        ("videoMessage", MessageType.VIDEO),
        ("documentMessage", MessageType.DOCUMENT),
        ("documentWithCaptionMessage", MessageType.DOCUMENT),
        ("stickerMessage", MessageType.STICKER),
    )
    for field_name, kind in media_keys:
        media = message.get(field_name)
        if isinstance(media, dict):
            inner = (media.get("message") or {}).get("documentMessage") if field_name == "documentWithCaptionMessage" else media
            inner = inner or {}
            text = inner.get("caption") or ""
            if kind == MessageType.DOCUMENT and not text:
                text = inner.get("fileName") or ""
            return kind, text, inner.get("url") or ""

    detected = next((k for k in message if k != "messageContextInfo"), None)
    if detected is None:
        return MessageType.TEXT, "", ""
    return MessageType.TEXT, f"[Mensagem recebida - tipo: {detected}]", ""
