"""
MediaService — persists provider media and avatars to durable blob storage.

Provider media URLs are short-lived; anything shown to an operator or reused
by a flow is downloaded once and served from our own storage.
"""
from __future__ import annotations

import structlog
from typing import Optional

import httpx

from models.schemas import Contact, InboundEvent, Instance, MediaBlob, MessageType, ProfileInfo
from channels.base import GatewayError
from channels.registry import GatewayRegistry
from database.blob_store import FileBlobStore, guess_extension

logger = structlog.get_logger()

_FALLBACK_EXT = {
    MessageType.IMAGE: "jpg",
    MessageType.AUDIO: "ogg",
    MessageType.VIDEO: "mp4",
    MessageType.STICKER: "webp",
}


class MediaService:
    def __init__(self, gateways: GatewayRegistry, store, blobs: FileBlobStore,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self._gateways = gateways
        self._store = store
        self._blobs = blobs
        self._transport = transport

    async def persist_message_media(self, instance: Instance, event: InboundEvent) -> str:
        """
        Stable URL for an inbound media message. Media already stored is
        returned without calling the provider.
        """
        if self._blobs.is_stored_url(event.media_url):
            return event.media_url

        parts = ("inbox-media", instance.tenant_id, instance.id,
                 event.message_type.value, event.remote_message_id)
        existing = self._blobs.find(*parts)
        if existing:
            return self._blobs.url_for(existing)

        adapter = self._gateways.for_instance(instance)
        blob = await adapter.fetch_media(instance, event.remote_message_id, event.remote_jid)
        ext = guess_extension(blob.mimetype, _FALLBACK_EXT.get(event.message_type, "bin"))
        url = self._blobs.put(self._blobs.make_key(*parts, ext=ext), blob.data)
        logger.info("media_persisted",
                    instance=instance.name,
                    remote_message_id=event.remote_message_id,
                    mimetype=blob.mimetype,
                    size=len(blob.data))
        return url

    async def persist_avatar(self, contact: Contact, profile: ProfileInfo) -> Optional[str]:
        if profile.avatar is not None:
            blob = profile.avatar
        elif profile.avatar_url:
            blob = await self._download(profile.avatar_url)
        else:
            return None

        ext = guess_extension(blob.mimetype, "jpg")
        key = self._blobs.make_key("avatars", contact.tenant_id, contact.id, ext=ext)
        return self._blobs.put(key, blob.data)

    async def backfill_profile(self, instance: Instance, contact: Contact) -> Contact:
        """
        Fetch the contact's profile, persist the avatar and fill an empty
        name. A stored name is never overwritten.
        """
        adapter = self._gateways.for_instance(instance)
        profile = await adapter.fetch_profile(instance, contact.phone)

        updates: dict = {}
        if profile.name and not contact.name:
            updates["name"] = profile.name

        try:
            avatar_url = await self.persist_avatar(contact, profile)
        except (GatewayError, httpx.HTTPError) as e:
            logger.warning("avatar_persist_failed", contact_id=contact.id, error=str(e))
            avatar_url = None
        if avatar_url:
            updates["profile_pic_url"] = avatar_url
        elif profile.avatar_url and not contact.profile_pic_url:
            updates["profile_pic_url"] = profile.avatar_url

        if not updates:
            return contact
        return await self._store.update_contact(contact.id, **updates)

    async def _download(self, url: str) -> MediaBlob:
        kwargs = {"timeout": 30.0, "follow_redirects": True}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        async with httpx.AsyncClient(**kwargs) as client:
            response = await client.get(url)
            response.raise_for_status()
            return MediaBlob(
                data=response.content,
                mimetype=response.headers.get("content-type", "image/jpeg"),
            )
