"""
Core data models for the automation engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class GatewayProvider(str, Enum):
    EVOLUTION = "evolution"
    UAZAPI = "uazapi"


class InstanceStatus(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    DOCUMENT = "document"
    STICKER = "sticker"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


# Delivery statuses only move forward; a late "sent" ack never downgrades "read".
DELIVERY_RANK = {
    DeliveryStatus.FAILED: 0,
    DeliveryStatus.PENDING: 1,
    DeliveryStatus.SENT: 2,
    DeliveryStatus.DELIVERED: 3,
    DeliveryStatus.READ: 4,
}


class TriggerType(str, Enum):
    TAG = "tag"
    SALE = "sale"
    MANUAL = "manual"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class DelayJobStatus(str, Enum):
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


class DelayJobKind(str, Enum):
    DELAY = "delay"          # resume after a delay node
    TIMEOUT = "timeout"      # waitInput expired
    RETRY = "retry"          # re-attempt a failed send
    CONTINUE = "continue"    # step budget exhausted, keep going


class NodeType(str, Enum):
    START = "start"
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    DOCUMENT = "document"
    DELAY = "delay"
    WAIT_INPUT = "waitInput"
    CONDITION = "condition"
    MENU = "menu"
    SET_VARIABLE = "setVariable"
    TAG = "tag"
    TRANSFER = "transfer"
    END = "end"
    RANDOMIZER = "randomizer"


NODE_TYPE_ALIASES = {
    "startNode": NodeType.START,
    "send-message": NodeType.TEXT,
    "message": NodeType.TEXT,
    "wait": NodeType.DELAY,
    "branch": NodeType.CONDITION,
    "tag-apply": NodeType.TAG,
}

MEDIA_NODE_TYPES = {NodeType.IMAGE, NodeType.AUDIO, NodeType.VIDEO, NodeType.DOCUMENT}
INPUT_NODE_TYPES = {NodeType.WAIT_INPUT, NodeType.MENU}


def resolve_node_type(raw: str) -> Optional[NodeType]:
    """Map a stored node type (or one of its aliases) to NodeType; None if unknown."""
    if raw in NODE_TYPE_ALIASES:
        return NODE_TYPE_ALIASES[raw]
    try:
        return NodeType(raw)
    except ValueError:
        return None


# ──────────────────────────────────────────────────────────────
#  Instance: one channel connection owned by a tenant
# ──────────────────────────────────────────────────────────────

class Instance(BaseModel):
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    name: str                                   # instance name on the provider side
    display_name: str = ""
    status: InstanceStatus = InstanceStatus.DISCONNECTED
    provider: GatewayProvider = GatewayProvider.EVOLUTION
    api_token: str = ""                         # UazAPI per-instance token
    base_url: str = ""                          # instance-level override
    api_key: str = ""                           # instance-level override
    phone_number: str = ""
    last_connected_at: Optional[datetime] = None
    disconnected_at: Optional[datetime] = None
    status_changed_at: Optional[datetime] = None

    @property
    def label(self) -> str:
        return self.display_name or self.phone_number or self.name

    @property
    def is_connected(self) -> bool:
        return self.status == InstanceStatus.CONNECTED


# ──────────────────────────────────────────────────────────────
#  Contact: one remote chat peer, scoped to an instance
# ──────────────────────────────────────────────────────────────

class Contact(BaseModel):
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    instance_id: Optional[str] = None
    phone: str
    remote_jid: str = ""
    name: str = ""
    profile_pic_url: str = ""
    tags: list[str] = []
    unread_count: int = 0
    flow_paused: bool = False
    last_message_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def jid(self) -> str:
        return self.remote_jid or f"{self.phone}@s.whatsapp.net"

    @property
    def display_name(self) -> str:
        return self.name or self.phone

    def has_tag(self, tag: str) -> bool:
        wanted = tag.strip().lower()
        return any(t.strip().lower() == wanted for t in self.tags)


# ──────────────────────────────────────────────────────────────
#  Inbox message
# ──────────────────────────────────────────────────────────────

class InboxMessage(BaseModel):
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    contact_id: str
    instance_id: Optional[str] = None
    direction: MessageDirection
    message_type: MessageType = MessageType.TEXT
    content: str = ""
    media_url: str = ""
    remote_message_id: str = ""
    status: DeliveryStatus = DeliveryStatus.SENT
    is_from_flow: bool = False
    flow_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    read_at: Optional[datetime] = None


# ──────────────────────────────────────────────────────────────
#  Workflow definition: a directed graph of nodes and edges
# ──────────────────────────────────────────────────────────────

class FlowNode(BaseModel):
    id: str
    type: str
    data: dict[str, Any] = {}

    @property
    def kind(self) -> Optional[NodeType]:
        return resolve_node_type(self.type)


class FlowEdge(BaseModel):
    id: str = ""
    source: str
    target: str
    sourceHandle: Optional[str] = None


class Workflow(BaseModel):
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    name: str = ""
    nodes: list[FlowNode] = []
    edges: list[FlowEdge] = []
    trigger_type: TriggerType = TriggerType.MANUAL
    trigger_tags: list[str] = []
    pause_other_flows: bool = False
    assigned_instances: list[str] = []
    is_active: bool = True

    def get_node(self, node_id: str) -> Optional[FlowNode]:
        return next((n for n in self.nodes if n.id == node_id), None)

    @property
    def start_node(self) -> Optional[FlowNode]:
        return next((n for n in self.nodes if n.kind == NodeType.START), None)

    def outgoing(self, node_id: str) -> list[FlowEdge]:
        return [e for e in self.edges if e.source == node_id]

    def next_node_id(self, node_id: str, handle: Optional[str] = None) -> Optional[str]:
        """
        Target of the outgoing edge. With a handle, the edge carrying that
        sourceHandle wins; without a match, falls back to the first edge.
        """
        edges = self.outgoing(node_id)
        if not edges:
            return None
        if handle is not None:
            for edge in edges:
                if edge.sourceHandle == handle:
                    return edge.target
        return edges[0].target

    def matches_tag(self, tag: str) -> bool:
        wanted = tag.strip().lower()
        return any(t.strip().lower() == wanted for t in self.trigger_tags)

    def is_assigned_to(self, instance_id: Optional[str]) -> bool:
        if not self.assigned_instances:
            return True
        return bool(instance_id) and instance_id in self.assigned_instances


# ──────────────────────────────────────────────────────────────
#  Flow session: the execution cursor for (workflow, contact)
# ──────────────────────────────────────────────────────────────

class FlowSession(BaseModel):
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    workflow_id: str
    contact_id: str
    instance_id: Optional[str] = None
    current_node_id: str
    variables: dict[str, Any] = {}
    status: SessionStatus = SessionStatus.ACTIVE
    processing: bool = False
    processing_started_at: Optional[datetime] = None
    lock_token: Optional[str] = None
    timeout_at: Optional[datetime] = None
    started_at: datetime = Field(default_factory=utcnow)
    last_interaction_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def sent_node_ids(self) -> list[str]:
        return list(self.variables.get("_sent_node_ids") or [])

    @property
    def is_terminal(self) -> bool:
        return self.status == SessionStatus.COMPLETED


class DelayJob(BaseModel):
    id: str = Field(default_factory=_new_id)
    session_id: str
    tenant_id: str = ""
    run_at: datetime
    kind: DelayJobKind = DelayJobKind.DELAY
    status: DelayJobStatus = DelayJobStatus.SCHEDULED
    attempts: int = 0
    last_error: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Maturation: scripted conversation between two instances
# ──────────────────────────────────────────────────────────────

class ConversationLoop(BaseModel):
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    name: str = ""
    chip_a_id: str
    chip_b_id: str
    is_active: bool = True
    min_delay_seconds: int = 30
    max_delay_seconds: int = 120
    messages_per_round: int = 2
    daily_limit: int = 100
    quiet_hours_start: Optional[int] = None     # hour of day, 0-23
    quiet_hours_end: Optional[int] = None
    topics: list[str] = []

    def in_quiet_hours(self, hour: int) -> bool:
        start, end = self.quiet_hours_start, self.quiet_hours_end
        if start is None or end is None or start == end:
            return False
        if start < end:
            return start <= hour < end
        return hour >= start or hour < end      # window wraps midnight


class LoopMessage(BaseModel):
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    conversation_id: str
    from_instance_id: str
    to_instance_id: str
    body: str
    status: str = "sent"
    created_at: datetime = Field(default_factory=utcnow)


class TenantGatewayConfig(BaseModel):
    tenant_id: str
    evolution_base_url: str = ""
    evolution_api_key: str = ""
    uazapi_base_url: str = ""


# ──────────────────────────────────────────────────────────────
#  Gateway payloads: internal message/event model
# ──────────────────────────────────────────────────────────────

class OutboundPayload(BaseModel):
    """What the engine asks the gateway to deliver."""
    kind: MessageType = MessageType.TEXT
    text: str = ""
    media_url: str = ""
    file_name: str = ""
    delay_ms: int = 0

    @property
    def is_media(self) -> bool:
        return self.kind != MessageType.TEXT


class SendResult(BaseModel):
    remote_message_id: str = ""
    raw: dict[str, Any] = {}


class MediaBlob(BaseModel):
    data: bytes
    mimetype: str = "application/octet-stream"


class ProfileInfo(BaseModel):
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    avatar: Optional[MediaBlob] = None


class InboundEventType(str, Enum):
    MESSAGE = "message"
    STATUS = "status"
    CONNECTION = "connection"
    SEND_ACK = "send_ack"
    IGNORED = "ignored"


class InboundEvent(BaseModel):
    """A provider webhook event normalized to the internal model."""
    type: InboundEventType
    provider: GatewayProvider
    instance_name: str = ""
    remote_message_id: str = ""
    phone: str = ""
    remote_jid: str = ""
    push_name: str = ""
    from_me: bool = False
    sent_by_api: bool = False
    message_type: MessageType = MessageType.TEXT
    text: str = ""
    media_url: str = ""
    timestamp: Optional[datetime] = None
    status: Optional[DeliveryStatus] = None
    connection_state: Optional[InstanceStatus] = None
    skip_reason: str = ""


class TriggerEvent(BaseModel):
    contact_id: str
    kind: TriggerType
    tag_name: Optional[str] = None
    source_workflow_id: Optional[str] = None
    workflow_id: Optional[str] = None
