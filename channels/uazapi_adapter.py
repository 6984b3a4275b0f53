"""
UazAPI adapter — token-per-instance WhatsApp gateway.

Every call authenticates with the instance's own `token` header; the base
URL comes from credential resolution with the public cloud as last resort.
"""
from __future__ import annotations

import base64
import structlog
from typing import Any

from models.schemas import (
    GatewayProvider, InboundEvent, InboundEventType, Instance, InstanceStatus,
    MediaBlob, MessageType, OutboundPayload, ProfileInfo,
)
from channels.base import (
    GatewayAdapter, PermanentGatewayError, map_connection_state, map_delivery_status,
    parse_timestamp, phone_from_jid,
)
from channels.evolution_adapter import normalize_event_name

logger = structlog.get_logger()

DEFAULT_BASE_URL = "https://zapdata.uazapi.com"

# UazAPI media `type` per internal kind; audio goes out as a voice note
MEDIA_TYPES = {
    MessageType.IMAGE: "image",
    MessageType.AUDIO: "ptt",
    MessageType.VIDEO: "video",
    MessageType.DOCUMENT: "document",
}

PROFILE_URL_KEYS = ("profilePictureUrl", "profilePicUrl", "picture", "url", "imgUrl")


def _classify_type(raw: str) -> MessageType:
    lowered = (raw or "").lower()
    if "image" in lowered:
        return MessageType.IMAGE
    if "audio" in lowered or "ptt" in lowered:
        return MessageType.AUDIO
    if "video" in lowered:
        return MessageType.VIDEO
    if "document" in lowered:
        return MessageType.DOCUMENT
    if "sticker" in lowered:
        return MessageType.STICKER
    return MessageType.TEXT


def _instance_name(payload: dict[str, Any]) -> str:
    instance = payload.get("instanceName") or payload.get("instance")
    if isinstance(instance, dict):
        instance = instance.get("name") or instance.get("instanceName")
    if not instance:
        instance = (payload.get("owner") or "").split("@")[0] or payload.get("token")
    return str(instance or "")


class UazapiAdapter(GatewayAdapter):
    """UazAPI v2 gateway."""

    provider = GatewayProvider.UAZAPI

    @staticmethod
    def _headers(creds) -> dict[str, str]:
        return {"token": creds.token, "Content-Type": "application/json"}

    async def _do_send(self, instance: Instance, creds, number: str,
                       payload: OutboundPayload) -> Any:
        headers = self._headers(creds)
        delay = {"delay": payload.delay_ms} if payload.delay_ms else {}

        if payload.kind == MessageType.TEXT:
            url = f"{creds.base_url}/send/text"
            shapes = [{"number": number, "text": payload.text, **delay}]
        elif payload.kind in MEDIA_TYPES:
            url = f"{creds.base_url}/send/media"
            body: dict[str, Any] = {
                "number": number,
                "type": MEDIA_TYPES[payload.kind],
                "file": payload.media_url,
                **delay,
            }
            if payload.text and payload.kind != MessageType.AUDIO:
                body["text"] = payload.text
            if payload.kind == MessageType.DOCUMENT:
                body["docName"] = payload.file_name or "document"
            shapes = [body]
        else:
            raise PermanentGatewayError(
                f"Unsupported media kind {payload.kind.value}", instance.id)

        return await self._request_shapes(instance, "POST", url, headers, shapes)

    async def _do_mark_read(self, instance: Instance, creds, remote_jid: str,
                            remote_ids: list[str]) -> Any:
        return await self._request(
            instance, "POST", f"{creds.base_url}/chat/read", self._headers(creds),
            json={"number": remote_jid, "read": True},
        )

    async def _do_fetch_media(self, instance: Instance, creds, remote_message_id: str,
                              remote_jid: str) -> MediaBlob:
        data = await self._request(
            instance, "POST", f"{creds.base_url}/message/download", self._headers(creds),
            json={"id": remote_message_id, "return_base64": True, "return_link": False},
        )
        encoded = None
        if isinstance(data, dict):
            encoded = data.get("base64Data") or data.get("base64") or data.get("data")
        if not encoded or not isinstance(encoded, str):
            raise PermanentGatewayError(
                f"Media not available for message {remote_message_id}", instance.id)
        if encoded.startswith("data:") and "," in encoded:
            encoded = encoded.split(",", 1)[1]
        return MediaBlob(
            data=base64.b64decode(encoded),
            mimetype=data.get("mimetype") or data.get("mimeType") or "application/octet-stream",
        )

    async def _do_fetch_profile(self, instance: Instance, creds, number: str) -> ProfileInfo:
        url = f"{creds.base_url}/chat/getProfilePicture"
        headers = self._headers(creds)
        try:
            data = await self._request(instance, "GET", url, headers, params={"number": number})
        except PermanentGatewayError as e:
            if e.status_code != 405:
                raise
            data = await self._request(instance, "POST", url, headers, json={"number": number})

        if not isinstance(data, dict):
            return ProfileInfo()
        avatar_url = next((data[k] for k in PROFILE_URL_KEYS if data.get(k)), None)
        return ProfileInfo(name=data.get("name") or data.get("wa_name") or None,
                           avatar_url=avatar_url)

    async def _do_connection_state(self, instance: Instance, creds) -> InstanceStatus:
        data = await self._request(instance, "GET", f"{creds.base_url}/instance/status",
                                   self._headers(creds))
        if not isinstance(data, dict):
            return InstanceStatus.DISCONNECTED
        nested = data.get("instance") if isinstance(data.get("instance"), dict) else {}
        status = data.get("status")
        if isinstance(status, dict):
            if status.get("connected") is True:
                return InstanceStatus.CONNECTED
            status = status.get("state")
        return map_connection_state(nested.get("status") or status or data.get("state"))

    async def _do_configure_webhook(self, instance: Instance, creds, url: str,
                                    events: list[str]) -> Any:
        body = {
            "url": url,
            "enabled": True,
            "events": ["messages", "messages_update", "connection"],
            "excludeMessages": ["wasSentByApi"],
        }
        shapes = [body, {"url": url, "enabled": True, "events": ["messages", "connection"]}]
        return await self._request_shapes(instance, "POST", f"{creds.base_url}/webhook",
                                          self._headers(creds), shapes)

    # ── Inbound ───────────────────────────────────────────────

    def parse_webhook(self, event_name: str, payload: dict[str, Any]) -> list[InboundEvent]:
        event = normalize_event_name(event_name)
        instance_name = _instance_name(payload)

        if event in ("messages", "message", "messages.upsert", "messages_upsert"):
            message = payload.get("message") if isinstance(payload.get("message"), dict) else payload
            data = payload.get("data")
            if not message.get("chatid") and isinstance(data, dict):
                message = data.get("message") if isinstance(data.get("message"), dict) else data
            return [self._parse_message(instance_name, message)]

        if event in ("messages_update", "messages.update"):
            return self._parse_status(instance_name, payload)

        if event in ("connection", "connection.update", "connection_update"):
            nested = payload.get("instance") if isinstance(payload.get("instance"), dict) else {}
            state = nested.get("status") or payload.get("status") or payload.get("state")
            return [InboundEvent(
                type=InboundEventType.CONNECTION,
                provider=self.provider,
                instance_name=instance_name,
                connection_state=map_connection_state(state),
            )]

        return [InboundEvent(
            type=InboundEventType.IGNORED,
            provider=self.provider,
            instance_name=instance_name,
            skip_reason=f"unhandled_event:{event_name}",
        )]

    def _parse_message(self, instance_name: str, message: dict[str, Any]) -> InboundEvent:
        chatid = message.get("chatid") or ""
        from_me = message.get("fromMe") in (True, "true")
        base = dict(
            provider=self.provider,
            instance_name=instance_name,
            remote_message_id=str(message.get("messageid") or message.get("id") or ""),
            from_me=from_me,
            sent_by_api=message.get("wasSentByApi") is True,
            push_name=message.get("senderName") or message.get("pushName") or "",
            timestamp=parse_timestamp(message.get("messageTimestamp")),
        )

        if "@g.us" in chatid or message.get("isGroup") is True:
            return InboundEvent(type=InboundEventType.IGNORED, skip_reason="group_message", **base)

        phone = phone_from_jid(chatid)
        if not 10 <= len(phone) <= 15:
            return InboundEvent(type=InboundEventType.IGNORED, skip_reason="invalid_phone", **base)

        content = message.get("content") if isinstance(message.get("content"), dict) else {}
        media_url = content.get("URL") or content.get("url") or message.get("fileURL") or ""
        kind = _classify_type(message.get("messageType") or message.get("mediaType") or "")
        text = message.get("text") or ""
        if not text and isinstance(message.get("content"), str):
            text = message["content"]
        if kind != MessageType.TEXT and not text:
            text = content.get("caption") or ""

        return InboundEvent(
            type=InboundEventType.MESSAGE,
            phone=phone,
            remote_jid=chatid,
            message_type=kind,
            text=text,
            media_url=media_url,
            **base,
        )

    def _parse_status(self, instance_name: str, payload: dict[str, Any]) -> list[InboundEvent]:
        body = payload.get("event") if isinstance(payload.get("event"), dict) else payload
        if isinstance(body.get("message"), dict):
            body = body["message"]

        ids = body.get("MessageIDs") or body.get("messageIds")
        if not ids:
            single = body.get("messageid") or body.get("id") or ""
            ids = [single] if single else []
        status = map_delivery_status(body.get("Type") or body.get("status") or body.get("state"))
        remote_jid = body.get("Chat") or body.get("chatid") or ""

        return [
            InboundEvent(
                type=InboundEventType.STATUS,
                provider=self.provider,
                instance_name=instance_name,
                remote_message_id=str(rid),
                remote_jid=remote_jid,
                status=status,
            )
            for rid in ids
        ]
