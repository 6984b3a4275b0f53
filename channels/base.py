"""
Gateway Adapters — shared infrastructure for both upstream providers.

Provides:
- GatewayError: classified error hierarchy (transient / disconnected / permanent)
- classify_failure: maps HTTP status + body text onto that hierarchy
- CircuitBreaker: per-instance failure-counting breaker with half-open probe
- GatewayMetrics: per-provider send/fail tracking
- InputSanitizer: strips control characters from inbound text
- GatewayAdapter: abstract base wrapping every provider call with credential
  resolution, breaker, retry with backoff and payload-shape negotiation
"""
from __future__ import annotations

import abc
import re
import time
import structlog
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from models.schemas import (
    DeliveryStatus, GatewayProvider, InboundEvent, Instance, InstanceStatus,
    MediaBlob, OutboundPayload, ProfileInfo, SendResult,
)

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class GatewayError(Exception):
    """Base exception for all gateway operations."""

    def __init__(self, message: str, instance_id: str = "",
                 status_code: Optional[int] = None, retryable: bool = False):
        self.instance_id = instance_id
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message)

    @property
    def kind(self) -> str:
        return "error"


class TransientGatewayError(GatewayError):
    """Timeout, 5xx, rate limit. The caller may retry."""

    def __init__(self, message: str, instance_id: str = "", status_code: Optional[int] = None):
        super().__init__(message, instance_id, status_code, retryable=True)

    @property
    def kind(self) -> str:
        return "transient"


class CircuitOpenError(TransientGatewayError):
    def __init__(self, instance_id: str = ""):
        super().__init__(f"Circuit breaker open for instance {instance_id}", instance_id)


class DisconnectedError(GatewayError):
    """The instance is logged out or gone. Dependent automations must stop."""

    def __init__(self, message: str, instance_id: str = "",
                 status_code: Optional[int] = None, instance_name: str = ""):
        self.instance_name = instance_name
        super().__init__(message, instance_id, status_code, retryable=False)

    @property
    def kind(self) -> str:
        return "disconnected"


class PermanentGatewayError(GatewayError):
    """Bad request, unsupported media, missing configuration. Never retried."""

    @property
    def kind(self) -> str:
        return "permanent"


# ══════════════════════════════════════════════════════════════
#  FAILURE CLASSIFICATION
# ══════════════════════════════════════════════════════════════

DISCONNECTION_MARKERS = (
    "disconnected",
    "desconectado",
    "not connected",
    "session closed",
    "logout",
    "qr code",
    "qrcode",
    "socket closed",
    "connection lost",
    "whatsapp disconnected",
    "instance not found",
    "unauthorized",
)

# 4xx answers that usually mean "this deployment expects another body shape"
STRUCTURAL_MISMATCH_CODES = frozenset({400, 404, 405, 415, 422})

TRANSIENT_CODES = frozenset({408, 425, 429})


def is_disconnection_error(text: str) -> bool:
    lowered = (text or "").lower()
    return any(marker in lowered for marker in DISCONNECTION_MARKERS)


def classify_failure(status_code: Optional[int], text: str,
                     instance: Optional[Instance] = None) -> GatewayError:
    """Turn a failed provider response into the matching GatewayError subclass."""
    instance_id = instance.id if instance else ""
    instance_name = instance.label if instance else ""
    snippet = (text or "")[:300]
    message = f"HTTP {status_code}: {snippet}" if status_code else snippet

    if status_code == 401 or is_disconnection_error(text):
        return DisconnectedError(message, instance_id, status_code, instance_name=instance_name)
    if status_code is None or status_code >= 500 or status_code in TRANSIENT_CODES:
        return TransientGatewayError(message, instance_id, status_code)
    return PermanentGatewayError(message, instance_id, status_code)


def normalize_number(target: str) -> str:
    """Digits-only phone for direct chats; group JIDs are passed through."""
    if target.endswith("@g.us"):
        return target
    return re.sub(r"[^\d]", "", target.split("@")[0])


def extract_remote_id(body: Any) -> str:
    """Providers report the new message id under different keys."""
    if not isinstance(body, dict):
        return ""
    key = body.get("key")
    if isinstance(key, dict) and key.get("id"):
        return str(key["id"])
    for name in ("id", "messageId", "messageid"):
        if body.get(name):
            return str(body[name])
    message = body.get("message")
    if isinstance(message, dict):
        return extract_remote_id(message)
    return ""


# ══════════════════════════════════════════════════════════════
#  WEBHOOK NORMALIZATION HELPERS
# ══════════════════════════════════════════════════════════════

_STATUS_MAP = {
    "delivery_ack": DeliveryStatus.DELIVERED,
    "delivered": DeliveryStatus.DELIVERED,
    "2": DeliveryStatus.DELIVERED,
    "read": DeliveryStatus.READ,
    "played": DeliveryStatus.READ,
    "3": DeliveryStatus.READ,
    "4": DeliveryStatus.READ,
    "server_ack": DeliveryStatus.SENT,
    "sent": DeliveryStatus.SENT,
    "1": DeliveryStatus.SENT,
    "error": DeliveryStatus.FAILED,
    "failed": DeliveryStatus.FAILED,
    "0": DeliveryStatus.FAILED,
}


def map_delivery_status(raw: Any) -> Optional[DeliveryStatus]:
    if raw is None:
        return None
    return _STATUS_MAP.get(str(raw).strip().lower())


def map_connection_state(raw: Any) -> InstanceStatus:
    state = str(raw or "").strip().lower()
    if state in ("open", "connected"):
        return InstanceStatus.CONNECTED
    if state == "connecting":
        return InstanceStatus.CONNECTING
    return InstanceStatus.DISCONNECTED


def phone_from_jid(jid: str) -> str:
    return re.sub(r"[^\d]", "", (jid or "").split("@")[0])


def is_valid_phone_jid(jid: str) -> bool:
    """A direct-chat JID whose user part is a 10-15 digit phone number."""
    if not jid or "@s.whatsapp.net" not in jid:
        return False
    return 10 <= len(phone_from_jid(jid)) <= 15


def parse_timestamp(raw: Any) -> Optional[datetime]:
    """Provider timestamps arrive as epoch seconds or milliseconds."""
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if value <= 0:
        return None
    if value > 1e12:
        value /= 1000.0
    return datetime.fromtimestamp(value, tz=timezone.utc)


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    closed → open (after threshold failures) → half_open (after timeout) →
    closed (on success) or open (on failure).
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0

    @property
    def state(self) -> str:
        if self._state == "open":
            if time.monotonic() - self._opened_at >= self.recovery_timeout:
                return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._state = "open"
            self._opened_at = time.monotonic()
            logger.warning("circuit_opened", failures=self._failure_count)

    def record_success(self):
        self._state = "closed"
        self._failure_count = 0

    @property
    def stats(self) -> dict[str, Any]:
        return {"state": self.state, "failure_count": self._failure_count}


# ══════════════════════════════════════════════════════════════
#  METRICS
# ══════════════════════════════════════════════════════════════

class GatewayMetrics:
    """Tracks per-provider call outcomes by failure class."""

    def __init__(self, provider: GatewayProvider):
        self.provider = provider
        self.calls: int = 0
        self.failures: dict[str, int] = {"transient": 0, "disconnected": 0, "permanent": 0}
        self._errors: list[str] = []

    def record_success(self):
        self.calls += 1

    def record_failure(self, error: GatewayError):
        self.calls += 1
        self.failures[error.kind] = self.failures.get(error.kind, 0) + 1
        self._errors.append(str(error)[:200])
        del self._errors[:-10]

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider.value,
            "calls": self.calls,
            "failures": dict(self.failures),
            "recent_errors": list(self._errors),
        }


# ══════════════════════════════════════════════════════════════
#  INPUT SANITIZER
# ══════════════════════════════════════════════════════════════

class InputSanitizer:
    def __init__(self, max_length: int = 10000):
        self.max_length = max_length

    def sanitize(self, content: str) -> str:
        if not content:
            return ""
        content = "".join(
            c for c in content if c in ("\n", "\t", "\r") or (ord(c) >= 32)
        )
        if len(content) > self.max_length:
            content = content[: self.max_length] + "... [truncated]"
        return content.strip()


# ══════════════════════════════════════════════════════════════
#  GATEWAY ADAPTER: Abstract Base
# ══════════════════════════════════════════════════════════════

class GatewayAdapter(abc.ABC):
    """
    Base class for provider adapters.

    Subclasses implement the `_do_*` hooks against their wire protocol and
    `parse_webhook`. The base class resolves credentials per call, guards
    every call with a per-instance circuit breaker, retries transient HTTP
    failures with exponential backoff and classifies everything else.
    """

    provider: GatewayProvider

    def __init__(self, credentials, timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self._credentials = credentials      # channels.registry.CredentialResolver
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._breakers: dict[str, CircuitBreaker] = {}
        self._failure_threshold = failure_threshold
        self._recovery_timeout = recovery_timeout
        self.metrics = GatewayMetrics(self.provider)

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def _do_send(self, instance: Instance, creds, number: str,
                       payload: OutboundPayload) -> Any:
        ...

    @abc.abstractmethod
    async def _do_mark_read(self, instance: Instance, creds, remote_jid: str,
                            remote_ids: list[str]) -> Any:
        ...

    @abc.abstractmethod
    async def _do_fetch_media(self, instance: Instance, creds, remote_message_id: str,
                              remote_jid: str) -> MediaBlob:
        ...

    @abc.abstractmethod
    async def _do_fetch_profile(self, instance: Instance, creds, number: str) -> ProfileInfo:
        ...

    @abc.abstractmethod
    async def _do_connection_state(self, instance: Instance, creds) -> InstanceStatus:
        ...

    @abc.abstractmethod
    async def _do_configure_webhook(self, instance: Instance, creds, url: str,
                                    events: list[str]) -> Any:
        ...

    @abc.abstractmethod
    def parse_webhook(self, event_name: str, payload: dict[str, Any]) -> list[InboundEvent]:
        """Normalize one provider webhook body into internal events."""
        ...

    # ── Public contract ───────────────────────────────────────

    async def send(self, instance: Instance, target: str, payload: OutboundPayload) -> SendResult:
        number = normalize_number(target)
        if not number:
            raise PermanentGatewayError(f"Invalid target {target!r}", instance.id)
        body = await self._guarded(
            instance, "send",
            lambda creds: self._do_send(instance, creds, number, payload),
        )
        result = SendResult(remote_message_id=extract_remote_id(body),
                            raw=body if isinstance(body, dict) else {})
        logger.info("gateway_message_sent",
                    provider=self.provider.value,
                    instance=instance.name,
                    kind=payload.kind.value,
                    remote_message_id=result.remote_message_id)
        return result

    async def mark_read(self, instance: Instance, remote_jid: str, remote_ids: list[str]) -> bool:
        await self._guarded(
            instance, "mark_read",
            lambda creds: self._do_mark_read(instance, creds, remote_jid, remote_ids),
        )
        return True

    async def fetch_media(self, instance: Instance, remote_message_id: str,
                          remote_jid: str = "") -> MediaBlob:
        return await self._guarded(
            instance, "fetch_media",
            lambda creds: self._do_fetch_media(instance, creds, remote_message_id, remote_jid),
        )

    async def fetch_profile(self, instance: Instance, target: str) -> ProfileInfo:
        number = normalize_number(target)
        return await self._guarded(
            instance, "fetch_profile",
            lambda creds: self._do_fetch_profile(instance, creds, number),
        )

    async def connection_state(self, instance: Instance) -> InstanceStatus:
        return await self._guarded(
            instance, "connection_state",
            lambda creds: self._do_connection_state(instance, creds),
        )

    async def configure_webhook(self, instance: Instance, url: str, events: list[str]) -> bool:
        await self._guarded(
            instance, "configure_webhook",
            lambda creds: self._do_configure_webhook(instance, creds, url, events),
        )
        return True

    # ── Guard / HTTP plumbing ─────────────────────────────────

    def _breaker_for(self, instance: Instance) -> CircuitBreaker:
        breaker = self._breakers.get(instance.id)
        if breaker is None:
            breaker = CircuitBreaker(self._failure_threshold, self._recovery_timeout)
            self._breakers[instance.id] = breaker
        return breaker

    async def _guarded(self, instance: Instance, operation: str,
                       call: Callable[[Any], Awaitable[Any]]) -> Any:
        breaker = self._breaker_for(instance)
        if breaker.is_open:
            error = CircuitOpenError(instance.id)
            self.metrics.record_failure(error)
            raise error

        creds = await self._credentials.resolve(instance)
        if not creds.base_url or not creds.token:
            error = PermanentGatewayError(
                f"Gateway configuration incomplete for instance {instance.name}", instance.id)
            self.metrics.record_failure(error)
            raise error

        try:
            result = await call(creds)
        except GatewayError as e:
            if not e.instance_id:
                e.instance_id = instance.id
            if isinstance(e, DisconnectedError) and not e.instance_name:
                e.instance_name = instance.label
            if isinstance(e, TransientGatewayError):
                breaker.record_failure()
            self.metrics.record_failure(e)
            logger.warning("gateway_call_failed",
                           provider=self.provider.value,
                           operation=operation,
                           instance=instance.name,
                           kind=e.kind,
                           status_code=e.status_code,
                           error=str(e))
            raise

        breaker.record_success()
        self.metrics.record_success()
        return result

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            kwargs: dict[str, Any] = {"timeout": self._timeout}
            if self._transport is not None:
                kwargs["transport"] = self._transport
            self._client = httpx.AsyncClient(**kwargs)
        return self._client

    @retry(
        retry=retry_if_exception_type(TransientGatewayError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def _request(self, instance: Instance, method: str, url: str,
                       headers: dict[str, str], json: Any = None,
                       params: Optional[dict[str, Any]] = None) -> Any:
        client = self._get_client()
        try:
            response = await client.request(method, url, headers=headers, json=json, params=params)
        except httpx.TimeoutException as e:
            raise TransientGatewayError(f"Timeout calling {url}: {e}", instance.id)
        except httpx.TransportError as e:
            raise TransientGatewayError(f"Transport error calling {url}: {e}", instance.id)

        if response.status_code >= 400:
            raise classify_failure(response.status_code, response.text, instance)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text}

    async def _request_shapes(self, instance: Instance, method: str, url: str,
                              headers: dict[str, str], shapes: list[dict[str, Any]]) -> Any:
        """
        Try the documented body first, then up to two alternatives, moving on
        only when the provider rejects the body's structure.
        """
        last_error: Optional[GatewayError] = None
        for attempt, body in enumerate(shapes[:3], start=1):
            try:
                return await self._request(instance, method, url, headers, json=body)
            except PermanentGatewayError as e:
                if e.status_code not in STRUCTURAL_MISMATCH_CODES:
                    raise
                last_error = e
                logger.info("gateway_payload_shape_rejected",
                            provider=self.provider.value,
                            url=url,
                            attempt=attempt,
                            status_code=e.status_code)
        raise last_error

    async def shutdown(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def health_check(self) -> dict[str, Any]:
        return {
            "provider": self.provider.value,
            "metrics": self.metrics.to_dict(),
            "open_circuits": [iid for iid, b in self._breakers.items() if b.is_open],
        }
