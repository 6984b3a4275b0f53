"""
Database layer — Multi-backend persistence for instances, contacts, messages,
workflows, flow sessions, delay jobs and maturation loops.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  session = await store.get_flow_session("s1")
"""
from database.models import (
    Base, InstanceRow, TenantGatewayConfigRow, ContactRow, MessageRow,
    WorkflowRow, FlowSessionRow, DelayJobRow, ConversationLoopRow, LoopMessageRow,
)
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import BaseFlowStore
from database.store import SqlFlowStore
from database.store_memory import InMemoryFlowStore
from database.store_factory import create_store, get_store, reset_store
from database.blob_store import FileBlobStore

__all__ = [
    # ORM models
    "Base", "InstanceRow", "TenantGatewayConfigRow", "ContactRow", "MessageRow",
    "WorkflowRow", "FlowSessionRow", "DelayJobRow", "ConversationLoopRow", "LoopMessageRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface and backends
    "BaseFlowStore", "SqlFlowStore", "InMemoryFlowStore",
    # Factory
    "create_store", "get_store", "reset_store",
    # Blob storage
    "FileBlobStore",
]
