"""Shared test fixtures for ConverseFlows."""
import itertools
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from channels.registry import GatewayRegistry
from config.settings import FlowConfig
from core.engine import FlowSessionEngine
from database.store_memory import InMemoryFlowStore
from job_queue.delay_scheduler import DelayScheduler
from job_queue.message_queue import InMemoryMessageQueue
from models.schemas import (
    Contact, FlowEdge, FlowNode, FlowSession, GatewayProvider, Instance,
    InstanceStatus, SendResult, Workflow,
)
from rules.engine import TriggerDispatcher

TENANT_ID = "tenant_001"


def build_workflow(nodes: list[tuple], edges: list[tuple], **kwargs) -> Workflow:
    """
    Compact workflow builder.
    nodes: (id, type) or (id, type, data); edges: (source, target) or (source, target, handle)
    """
    return Workflow(
        tenant_id=kwargs.pop("tenant_id", TENANT_ID),
        nodes=[FlowNode(id=n[0], type=n[1], data=n[2] if len(n) > 2 else {}) for n in nodes],
        edges=[
            FlowEdge(id=f"e{i}", source=e[0], target=e[1], sourceHandle=e[2] if len(e) > 2 else None)
            for i, e in enumerate(edges)
        ],
        **kwargs,
    )


# ──────────────────────────────────────────────────────────────
#  Models
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def flow_config() -> FlowConfig:
    return FlowConfig()


@pytest.fixture
def instance() -> Instance:
    return Instance(
        id="inst_001",
        tenant_id=TENANT_ID,
        name="loja-centro",
        display_name="Loja Centro",
        status=InstanceStatus.CONNECTED,
        provider=GatewayProvider.EVOLUTION,
        phone_number="5511900000001",
    )


@pytest.fixture
def contact(instance) -> Contact:
    return Contact(
        id="c_001",
        tenant_id=TENANT_ID,
        instance_id=instance.id,
        phone="5511988887777",
        name="Maria Souza",
    )


@pytest.fixture
def workflow_factory():
    return build_workflow


# ──────────────────────────────────────────────────────────────
#  Store / queue
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def store() -> InMemoryFlowStore:
    return InMemoryFlowStore()


@pytest_asyncio.fixture
async def seeded_store(store, instance, contact) -> InMemoryFlowStore:
    await store.upsert_instance(instance)
    await store.upsert_contact(contact)
    return store


@pytest.fixture
def queue() -> InMemoryMessageQueue:
    return InMemoryMessageQueue(retry_backoff_base=1)


@pytest.fixture
def session_factory(seeded_store, contact, instance):
    """Persist a workflow and an active session sitting on `node_id`."""
    async def make(workflow: Workflow, node_id: Optional[str] = None,
                   variables: dict[str, Any] = None, **fields) -> FlowSession:
        await seeded_store.upsert_workflow(workflow)
        session = FlowSession(
            tenant_id=TENANT_ID,
            workflow_id=workflow.id,
            contact_id=contact.id,
            instance_id=instance.id,
            current_node_id=node_id or workflow.start_node.id,
            variables={"nome": contact.name, "_sent_node_ids": [], **(variables or {})},
            **fields,
        )
        return await seeded_store.create_flow_session(session)
    return make


# ──────────────────────────────────────────────────────────────
#  Gateway fakes
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def fake_adapter():
    """Evolution-shaped adapter double; every send gets a fresh remote id."""
    counter = itertools.count(1)
    adapter = MagicMock()
    adapter.provider = GatewayProvider.EVOLUTION
    adapter.send = AsyncMock(side_effect=lambda *a, **kw: SendResult(remote_message_id=f"wamid_{next(counter)}"))
    adapter.mark_read = AsyncMock(return_value=True)
    adapter.connection_state = AsyncMock(return_value=InstanceStatus.CONNECTED)
    adapter.configure_webhook = AsyncMock(return_value=True)
    adapter.health_check = AsyncMock(return_value={"provider": "evolution"})
    adapter.shutdown = AsyncMock()
    return adapter


@pytest.fixture
def gateways(fake_adapter) -> GatewayRegistry:
    registry = GatewayRegistry()
    registry.register(fake_adapter)
    return registry


# ──────────────────────────────────────────────────────────────
#  Wired engine
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def dispatcher(seeded_store, queue) -> TriggerDispatcher:
    return TriggerDispatcher(seeded_store, queue)


@pytest.fixture
def delays(seeded_store, flow_config) -> DelayScheduler:
    return DelayScheduler(seeded_store, flow_config)


@pytest.fixture
def engine(seeded_store, gateways, delays, dispatcher, flow_config) -> FlowSessionEngine:
    engine = FlowSessionEngine(seeded_store, gateways, delays, dispatcher, flow_config)
    delays.bind(engine.advance)
    return engine
