"""
Tests for the gateway adapters.

Coverage:
  Base:       failure classification, remote id extraction, circuit breaker, retry
  Resolver:   instance → tenant → platform credential precedence
  Evolution:  send + payload-shape negotiation, mark read, media, state, webhook parsing
  UazAPI:     send, profile fallback, webhook parsing
"""
import base64
import json

import httpx
import pytest
from unittest.mock import patch
from tenacity import wait_none

from channels.base import (
    CircuitBreaker, CircuitOpenError, DisconnectedError, GatewayAdapter,
    PermanentGatewayError, TransientGatewayError, classify_failure, extract_remote_id,
    map_connection_state, map_delivery_status, normalize_number, parse_timestamp,
)
from channels.evolution_adapter import EvolutionAdapter, extract_message_content
from channels.registry import CredentialResolver, build_gateway_registry
from channels.uazapi_adapter import DEFAULT_BASE_URL, UazapiAdapter
from config.settings import GatewayConfig
from models.schemas import (
    DeliveryStatus, GatewayProvider, InboundEventType, Instance, InstanceStatus,
    MessageType, OutboundPayload, TenantGatewayConfig,
)


@pytest.fixture(autouse=True)
def no_retry_wait():
    with patch.object(GatewayAdapter._request.retry, "wait", wait_none()):
        yield


class Recorder:
    """MockTransport handler that replays canned responses and keeps requests."""

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]

    def body(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content)


def make_evolution(store, recorder, **kwargs) -> EvolutionAdapter:
    config = GatewayConfig(evolution_base_url="http://evo.test/", evolution_api_key="platform-key")
    return EvolutionAdapter(CredentialResolver(store, config),
                            transport=httpx.MockTransport(recorder), **kwargs)


def make_uazapi(store, recorder) -> UazapiAdapter:
    config = GatewayConfig(uazapi_base_url="http://uaz.test")
    return UazapiAdapter(CredentialResolver(store, config), transport=httpx.MockTransport(recorder))


@pytest.fixture
def uaz_instance() -> Instance:
    return Instance(id="inst_uaz", tenant_id="tenant_001", name="uaz-1",
                    provider=GatewayProvider.UAZAPI, api_token="tok-1",
                    status=InstanceStatus.CONNECTED)


TARGET = "5511988887777@s.whatsapp.net"


# ══════════════════════════════════════════════════════════════
#  BASE: helpers
# ══════════════════════════════════════════════════════════════

class TestClassifyFailure:
    def test_401_is_disconnected(self):
        assert isinstance(classify_failure(401, "denied"), DisconnectedError)

    def test_marker_text_is_disconnected_regardless_of_status(self):
        err = classify_failure(500, '{"error": "WhatsApp not connected"}')
        assert isinstance(err, DisconnectedError)
        assert err.kind == "disconnected"
        assert isinstance(classify_failure(400, "Instância desconectado"), DisconnectedError)

    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503])
    def test_transient_codes(self, status):
        err = classify_failure(status, "busy")
        assert isinstance(err, TransientGatewayError)
        assert err.retryable

    def test_other_4xx_is_permanent(self):
        err = classify_failure(422, "invalid number")
        assert isinstance(err, PermanentGatewayError)
        assert not err.retryable

    def test_error_carries_instance(self, instance):
        err = classify_failure(401, "", instance)
        assert err.instance_id == instance.id
        assert err.instance_name == "Loja Centro"


class TestWireHelpers:
    def test_remote_id_precedence(self):
        assert extract_remote_id({"key": {"id": "K"}, "id": "I"}) == "K"
        assert extract_remote_id({"id": "I", "messageId": "M"}) == "I"
        assert extract_remote_id({"messageId": "M"}) == "M"
        assert extract_remote_id({"messageid": "m"}) == "m"
        assert extract_remote_id({"message": {"key": {"id": "N"}}}) == "N"
        assert extract_remote_id("nope") == ""

    def test_normalize_number(self):
        assert normalize_number("+55 (11) 98888-7777") == "5511988887777"
        assert normalize_number(TARGET) == "5511988887777"
        assert normalize_number("1203@g.us") == "1203@g.us"

    def test_delivery_status_mapping(self):
        assert map_delivery_status("DELIVERY_ACK") == DeliveryStatus.DELIVERED
        assert map_delivery_status(2) == DeliveryStatus.DELIVERED
        assert map_delivery_status("PLAYED") == DeliveryStatus.READ
        assert map_delivery_status("4") == DeliveryStatus.READ
        assert map_delivery_status("SERVER_ACK") == DeliveryStatus.SENT
        assert map_delivery_status("whatever") is None

    def test_connection_state_mapping(self):
        assert map_connection_state("open") == InstanceStatus.CONNECTED
        assert map_connection_state("connecting") == InstanceStatus.CONNECTING
        assert map_connection_state("close") == InstanceStatus.DISCONNECTED

    def test_parse_timestamp_seconds_and_millis(self):
        assert parse_timestamp(1700000000) == parse_timestamp(1700000000000)
        assert parse_timestamp("x") is None


class TestCircuitBreaker:
    def test_opens_after_threshold(self):
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=60)
        breaker.record_failure()
        assert breaker.state == "closed"
        breaker.record_failure()
        assert breaker.is_open

    def test_half_open_after_timeout_then_closes(self):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=0)
        breaker.record_failure()
        assert breaker.state == "half_open"
        breaker.record_success()
        assert breaker.state == "closed"


# ══════════════════════════════════════════════════════════════
#  CREDENTIALS
# ══════════════════════════════════════════════════════════════

class TestCredentialResolver:
    @pytest.mark.asyncio
    async def test_platform_fallback(self, store, instance):
        resolver = CredentialResolver(store, GatewayConfig(evolution_base_url="http://p/",
                                                           evolution_api_key="pk"))
        creds = await resolver.resolve(instance)
        assert (creds.base_url, creds.token) == ("http://p", "pk")

    @pytest.mark.asyncio
    async def test_tenant_overrides_platform(self, store, instance):
        await store.upsert_tenant_gateway_config(TenantGatewayConfig(
            tenant_id=instance.tenant_id, evolution_base_url="http://tenant", evolution_api_key="tk"))
        resolver = CredentialResolver(store, GatewayConfig(evolution_base_url="http://p",
                                                           evolution_api_key="pk"))
        creds = await resolver.resolve(instance)
        assert (creds.base_url, creds.token) == ("http://tenant", "tk")

    @pytest.mark.asyncio
    async def test_instance_overrides_tenant(self, store, instance):
        await store.upsert_tenant_gateway_config(TenantGatewayConfig(
            tenant_id=instance.tenant_id, evolution_base_url="http://tenant", evolution_api_key="tk"))
        own = instance.model_copy(update={"base_url": "http://own", "api_key": "ik"})
        creds = await CredentialResolver(store, GatewayConfig()).resolve(own)
        assert (creds.base_url, creds.token) == ("http://own", "ik")

    @pytest.mark.asyncio
    async def test_unresolved_placeholder_is_empty(self, store, instance):
        resolver = CredentialResolver(store, GatewayConfig(evolution_base_url="${EVOLUTION_BASE_URL}"))
        creds = await resolver.resolve(instance)
        assert creds.base_url == ""

    @pytest.mark.asyncio
    async def test_uazapi_defaults_to_public_cloud(self, store, uaz_instance):
        creds = await CredentialResolver(store, GatewayConfig()).resolve(uaz_instance)
        assert creds.base_url == DEFAULT_BASE_URL
        assert creds.token == "tok-1"

    def test_registry_selects_adapter_per_instance(self, store, instance, uaz_instance):
        registry = build_gateway_registry(store, GatewayConfig())
        assert isinstance(registry.for_instance(instance), EvolutionAdapter)
        assert isinstance(registry.for_instance(uaz_instance), UazapiAdapter)
        assert set(registry.get_available()) == {GatewayProvider.EVOLUTION, GatewayProvider.UAZAPI}


# ══════════════════════════════════════════════════════════════
#  EVOLUTION: outbound
# ══════════════════════════════════════════════════════════════

class TestEvolutionSend:
    @pytest.mark.asyncio
    async def test_send_text(self, store, instance):
        rec = Recorder(httpx.Response(201, json={"key": {"id": "3EB0ABC"}}))
        adapter = make_evolution(store, rec)
        result = await adapter.send(instance, TARGET, OutboundPayload(text="Oi Maria"))

        assert result.remote_message_id == "3EB0ABC"
        request = rec.requests[0]
        assert request.url.path == "/message/sendText/loja-centro"
        assert request.headers["apikey"] == "platform-key"
        assert request.headers["Authorization"] == "Bearer platform-key"
        assert rec.body() == {"number": "5511988887777", "text": "Oi Maria"}
        assert adapter.metrics.calls == 1

    @pytest.mark.asyncio
    async def test_structural_rejection_tries_alternative_shape(self, store, instance):
        rec = Recorder(httpx.Response(400, json={"message": "bad body"}),
                       httpx.Response(200, json={"id": "ALT1"}))
        adapter = make_evolution(store, rec)
        result = await adapter.send(instance, TARGET, OutboundPayload(text="Oi"))

        assert result.remote_message_id == "ALT1"
        assert len(rec.requests) == 2
        assert rec.body(1) == {"number": "5511988887777", "textMessage": {"text": "Oi"}}

    @pytest.mark.asyncio
    async def test_at_most_three_shapes(self, store, instance):
        rec = Recorder(httpx.Response(422, json={"message": "unprocessable"}))
        adapter = make_evolution(store, rec)
        with pytest.raises(PermanentGatewayError):
            await adapter.send(instance, TARGET, OutboundPayload(text="Oi"))
        assert len(rec.requests) == 3

    @pytest.mark.asyncio
    async def test_non_structural_4xx_is_not_renegotiated(self, store, instance):
        rec = Recorder(httpx.Response(403, text="forbidden"))
        adapter = make_evolution(store, rec)
        with pytest.raises(PermanentGatewayError):
            await adapter.send(instance, TARGET, OutboundPayload(text="Oi"))
        assert len(rec.requests) == 1

    @pytest.mark.asyncio
    async def test_disconnected_surfaces_immediately(self, store, instance):
        rec = Recorder(httpx.Response(500, json={"error": "Connection Closed: session closed"}))
        adapter = make_evolution(store, rec)
        with pytest.raises(DisconnectedError) as exc:
            await adapter.send(instance, TARGET, OutboundPayload(text="Oi"))
        assert exc.value.instance_id == instance.id
        assert len(rec.requests) == 1
        assert adapter.metrics.failures["disconnected"] == 1

    @pytest.mark.asyncio
    async def test_transient_retried_with_backoff(self, store, instance):
        rec = Recorder(httpx.Response(503, text="busy"), httpx.Response(503, text="busy"),
                       httpx.Response(200, json={"key": {"id": "OK"}}))
        adapter = make_evolution(store, rec)
        result = await adapter.send(instance, TARGET, OutboundPayload(text="Oi"))
        assert result.remote_message_id == "OK"
        assert len(rec.requests) == 3

    @pytest.mark.asyncio
    async def test_circuit_opens_after_repeated_transient_failures(self, store, instance):
        rec = Recorder(httpx.Response(503, text="busy"))
        adapter = make_evolution(store, rec, failure_threshold=2, recovery_timeout=60)
        for _ in range(2):
            with pytest.raises(TransientGatewayError):
                await adapter.send(instance, TARGET, OutboundPayload(text="Oi"))
        calls_before = len(rec.requests)

        with pytest.raises(CircuitOpenError):
            await adapter.send(instance, TARGET, OutboundPayload(text="Oi"))
        assert len(rec.requests) == calls_before
        assert instance.id in (await adapter.health_check())["open_circuits"]

    @pytest.mark.asyncio
    async def test_missing_configuration_is_permanent(self, store, instance):
        rec = Recorder(httpx.Response(200, json={}))
        adapter = EvolutionAdapter(CredentialResolver(store, GatewayConfig()),
                                   transport=httpx.MockTransport(rec))
        with pytest.raises(PermanentGatewayError):
            await adapter.send(instance, TARGET, OutboundPayload(text="Oi"))
        assert rec.requests == []

    @pytest.mark.asyncio
    async def test_send_document(self, store, instance):
        rec = Recorder(httpx.Response(200, json={"key": {"id": "D1"}}))
        adapter = make_evolution(store, rec)
        await adapter.send(instance, TARGET, OutboundPayload(
            kind=MessageType.DOCUMENT, media_url="https://cdn/x.pdf", file_name="boleto.pdf"))
        assert rec.requests[0].url.path == "/message/sendMedia/loja-centro"
        body = rec.body()
        assert body["mediatype"] == "document"
        assert body["fileName"] == "boleto.pdf"

    @pytest.mark.asyncio
    async def test_send_audio_uses_voice_note_endpoint(self, store, instance):
        rec = Recorder(httpx.Response(200, json={"key": {"id": "A1"}}))
        adapter = make_evolution(store, rec)
        await adapter.send(instance, TARGET, OutboundPayload(kind=MessageType.AUDIO,
                                                             media_url="https://cdn/a.ogg"))
        assert rec.requests[0].url.path == "/message/sendWhatsAppAudio/loja-centro"

    @pytest.mark.asyncio
    async def test_sticker_is_unsupported(self, store, instance):
        adapter = make_evolution(store, Recorder(httpx.Response(200, json={})))
        with pytest.raises(PermanentGatewayError):
            await adapter.send(instance, TARGET, OutboundPayload(kind=MessageType.STICKER,
                                                                 media_url="x"))


class TestEvolutionOtherCalls:
    @pytest.mark.asyncio
    async def test_mark_read_falls_back_to_post(self, store, instance):
        rec = Recorder(httpx.Response(405, text="method not allowed"), httpx.Response(200, json={}))
        adapter = make_evolution(store, rec)
        assert await adapter.mark_read(instance, TARGET, ["true_55119@s.whatsapp.net:ABC"])

        assert [r.method for r in rec.requests] == ["PUT", "POST"]
        assert rec.body() == {"readMessages": [
            {"remoteJid": TARGET, "fromMe": False, "id": "ABC"},
        ]}

    @pytest.mark.asyncio
    async def test_fetch_media_decodes_base64(self, store, instance):
        payload = base64.b64encode(b"\x89PNG").decode()
        rec = Recorder(httpx.Response(200, json={"base64": payload, "mimetype": "image/png"}))
        adapter = make_evolution(store, rec)
        blob = await adapter.fetch_media(instance, "MSG1", TARGET)
        assert blob.data == b"\x89PNG"
        assert blob.mimetype == "image/png"

    @pytest.mark.asyncio
    async def test_fetch_media_without_data_is_permanent(self, store, instance):
        adapter = make_evolution(store, Recorder(httpx.Response(200, json={})))
        with pytest.raises(PermanentGatewayError):
            await adapter.fetch_media(instance, "MSG1", TARGET)

    @pytest.mark.asyncio
    async def test_connection_state(self, store, instance):
        rec = Recorder(httpx.Response(200, json={"instance": {"instanceName": "loja-centro",
                                                              "state": "open"}}))
        adapter = make_evolution(store, rec)
        assert await adapter.connection_state(instance) == InstanceStatus.CONNECTED
        assert rec.requests[0].url.path == "/instance/connectionState/loja-centro"

    @pytest.mark.asyncio
    async def test_fetch_profile(self, store, instance):
        rec = Recorder(httpx.Response(200, json={"profilePictureUrl": "https://pps/x.jpg"}))
        adapter = make_evolution(store, rec)
        profile = await adapter.fetch_profile(instance, TARGET)
        assert profile.avatar_url == "https://pps/x.jpg"
        assert rec.body() == {"number": "5511988887777"}


# ══════════════════════════════════════════════════════════════
#  EVOLUTION: webhook parsing
# ══════════════════════════════════════════════════════════════

class TestEvolutionWebhook:
    @pytest.fixture
    def adapter(self, store):
        return make_evolution(store, Recorder(httpx.Response(200, json={})))

    def test_text_message(self, adapter):
        events = adapter.parse_webhook("messages.upsert", {
            "instance": "loja-centro",
            "data": {
                "key": {"remoteJid": TARGET, "fromMe": False, "id": "M1"},
                "pushName": "Maria",
                "message": {"conversation": "Oi"},
                "messageTimestamp": 1700000000,
            },
        })
        assert len(events) == 1
        event = events[0]
        assert event.type == InboundEventType.MESSAGE
        assert event.phone == "5511988887777"
        assert event.text == "Oi"
        assert event.push_name == "Maria"
        assert event.instance_name == "loja-centro"

    def test_ad_message_uses_participant_alt(self, adapter):
        events = adapter.parse_webhook("MESSAGES_UPSERT", {
            "instance": "loja-centro",
            "data": {
                "key": {"remoteJid": "188@lid", "participantAlt": "5521977776666@s.whatsapp.net",
                        "id": "M2"},
                "message": {"extendedTextMessage": {"text": "Vi o anúncio"}},
            },
        })
        assert events[0].type == InboundEventType.MESSAGE
        assert events[0].phone == "5521977776666"

    def test_group_without_phone_participant_is_ignored(self, adapter):
        events = adapter.parse_webhook("messages.upsert", {
            "instance": "loja-centro",
            "data": {"key": {"remoteJid": "1203630@g.us", "participant": "99@lid", "id": "G1"},
                     "message": {"conversation": "oi grupo"}},
        })
        assert events[0].type == InboundEventType.IGNORED
        assert events[0].skip_reason == "group_message"

    def test_status_update(self, adapter):
        events = adapter.parse_webhook("messages.update", {
            "instance": "loja-centro",
            "data": {"key": {"id": "M1", "remoteJid": TARGET}, "update": {"status": "READ"}},
        })
        assert events[0].type == InboundEventType.STATUS
        assert events[0].status == DeliveryStatus.READ
        assert events[0].remote_message_id == "M1"

    def test_connection_and_send_ack(self, adapter):
        conn = adapter.parse_webhook("connection.update", {"instance": "loja-centro",
                                                           "data": {"state": "open"}})
        assert conn[0].connection_state == InstanceStatus.CONNECTED
        ack = adapter.parse_webhook("send.message", {
            "instance": "loja-centro", "data": {"key": {"id": "S1", "remoteJid": TARGET}}})
        assert ack[0].type == InboundEventType.SEND_ACK
        assert ack[0].phone == "5511988887777"

    def test_unknown_event_ignored(self, adapter):
        events = adapter.parse_webhook("presence.update", {"instance": "loja-centro", "data": {}})
        assert events[0].type == InboundEventType.IGNORED

    def test_message_content_variants(self):
        assert extract_message_content({"imageMessage": {"caption": "foto", "url": "u"}}) == \
            (MessageType.IMAGE, "foto", "u")
        kind, text, _ = extract_message_content({"documentMessage": {"fileName": "nota.pdf"}})
        assert (kind, text) == (MessageType.DOCUMENT, "nota.pdf")
        kind, text, _ = extract_message_content({"buttonsResponseMessage": {"selectedDisplayText": "Sim"}})
        assert text == "Sim"
        kind, text, _ = extract_message_content({"pollCreationMessage": {}, "messageContextInfo": {}})
        assert "pollCreationMessage" in text


# ══════════════════════════════════════════════════════════════
#  UAZAPI
# ══════════════════════════════════════════════════════════════

class TestUazapi:
    @pytest.mark.asyncio
    async def test_send_text_uses_instance_token(self, store, uaz_instance):
        rec = Recorder(httpx.Response(200, json={"messageid": "u1"}))
        adapter = make_uazapi(store, rec)
        result = await adapter.send(uaz_instance, TARGET, OutboundPayload(text="Oi"))
        assert result.remote_message_id == "u1"
        assert str(rec.requests[0].url) == "http://uaz.test/send/text"
        assert rec.requests[0].headers["token"] == "tok-1"

    @pytest.mark.asyncio
    async def test_audio_goes_as_voice_note(self, store, uaz_instance):
        rec = Recorder(httpx.Response(200, json={"id": "u2"}))
        adapter = make_uazapi(store, rec)
        await adapter.send(uaz_instance, TARGET, OutboundPayload(
            kind=MessageType.AUDIO, media_url="https://cdn/a.ogg", text="ignored"))
        body = rec.body()
        assert body["type"] == "ptt"
        assert body["file"] == "https://cdn/a.ogg"
        assert "text" not in body

    @pytest.mark.asyncio
    async def test_profile_get_falls_back_to_post(self, store, uaz_instance):
        rec = Recorder(httpx.Response(405, text="no"),
                       httpx.Response(200, json={"imgUrl": "https://img", "wa_name": "Zé"}))
        adapter = make_uazapi(store, rec)
        profile = await adapter.fetch_profile(uaz_instance, TARGET)
        assert [r.method for r in rec.requests] == ["GET", "POST"]
        assert profile.avatar_url == "https://img"
        assert profile.name == "Zé"

    @pytest.mark.asyncio
    async def test_missing_token_is_permanent(self, store, uaz_instance):
        adapter = make_uazapi(store, Recorder(httpx.Response(200, json={})))
        with pytest.raises(PermanentGatewayError):
            await adapter.send(uaz_instance.model_copy(update={"api_token": ""}), TARGET,
                               OutboundPayload(text="Oi"))

    def test_parse_message(self, store):
        adapter = make_uazapi(store, Recorder(httpx.Response(200, json={})))
        events = adapter.parse_webhook("messages", {
            "instanceName": "uaz-1",
            "message": {"chatid": TARGET, "messageid": "X1", "text": "2",
                        "senderName": "João", "fromMe": False, "messageType": "Conversation"},
        })
        assert events[0].type == InboundEventType.MESSAGE
        assert events[0].text == "2"
        assert events[0].push_name == "João"

    def test_parse_group_ignored(self, store):
        adapter = make_uazapi(store, Recorder(httpx.Response(200, json={})))
        events = adapter.parse_webhook("messages", {
            "instanceName": "uaz-1", "message": {"chatid": "123@g.us", "messageid": "G"}})
        assert events[0].type == InboundEventType.IGNORED

    def test_parse_status_batch(self, store):
        adapter = make_uazapi(store, Recorder(httpx.Response(200, json={})))
        events = adapter.parse_webhook("messages_update", {
            "instanceName": "uaz-1",
            "event": {"MessageIDs": ["a", "b"], "Type": "read", "Chat": TARGET},
        })
        assert [e.remote_message_id for e in events] == ["a", "b"]
        assert all(e.status == DeliveryStatus.READ for e in events)
