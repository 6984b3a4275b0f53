"""
Trigger Dispatcher — Decides which workflows start a session for a contact.

A trigger is a tag being applied, a sale being detected or an operator's
manual start. Matching workflows get a fresh session at their start node and
the first step is handed to the flow-step queue; dispatch never waits for a
workflow to run.

Exclusivity: a workflow with `pause_other_flows` pauses every other active
session of the contact, and cancels their delay jobs, before its own session
is created.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, field
from typing import Any, Optional

from database.store_base import BaseFlowStore
from job_queue.message_queue import JobKind, MessageQueue, QueueJob, Queues
from models.schemas import Contact, FlowSession, TriggerEvent, TriggerType, Workflow
from utils.templating import contact_variables

logger = structlog.get_logger()


@dataclass
class DispatchResult:
    triggered: list[dict[str, str]] = field(default_factory=list)
    skipped_reason: str = ""
    errors: list[dict[str, str]] = field(default_factory=list)

    @property
    def session_ids(self) -> list[str]:
        return [t["session_id"] for t in self.triggered]

    def to_dict(self) -> dict[str, Any]:
        return {
            "triggered": self.triggered,
            "skipped_reason": self.skipped_reason,
            "errors": self.errors,
        }


# ──────────────────────────────────────────────────────────────
#  Trigger Dispatcher
# ──────────────────────────────────────────────────────────────

class TriggerDispatcher:
    """
    Matches trigger events to workflows and creates their sessions.

    Usage:
        dispatcher = TriggerDispatcher(store, queue)
        result = await dispatcher.dispatch(TriggerEvent(contact_id=c.id, kind="tag", tag_name="vip"))
    """

    def __init__(self, store: BaseFlowStore, queue: MessageQueue):
        self.store = store
        self.queue = queue

    async def dispatch(self, event: TriggerEvent) -> DispatchResult:
        result = DispatchResult()

        contact = await self.store.get_contact(event.contact_id)
        if not contact:
            result.skipped_reason = "contact_not_found"
            logger.warning("trigger_contact_not_found", contact_id=event.contact_id)
            return result
        if contact.flow_paused:
            result.skipped_reason = "flow_paused"
            logger.info("trigger_suppressed_flow_paused", contact_id=contact.id)
            return result

        workflows = await self._matching_workflows(contact, event)
        if not workflows:
            result.skipped_reason = "no_matching_workflow"
            logger.debug("trigger_no_match",
                         contact_id=contact.id,
                         kind=event.kind.value,
                         tag=event.tag_name)
            return result

        for workflow in workflows:
            try:
                session = await self._start_workflow(workflow, contact, event, result)
            except Exception as e:
                logger.error("trigger_workflow_failed",
                             workflow_id=workflow.id,
                             contact_id=contact.id,
                             error=str(e),
                             exc_info=True)
                result.errors.append({"workflow_id": workflow.id, "error": str(e)})
                continue
            if session:
                result.triggered.append({"workflow_id": workflow.id, "session_id": session.id})

        logger.info("trigger_dispatched",
                    contact_id=contact.id,
                    kind=event.kind.value,
                    tag=event.tag_name,
                    triggered=len(result.triggered),
                    errors=len(result.errors))
        return result

    async def trigger_workflow(self, contact_id: str,
                               workflow_id: Optional[str] = None) -> DispatchResult:
        """
        Operator start. A manual workflow starts directly; anything else goes
        through the sale path, restricted to `workflow_id` when given.
        """
        if workflow_id:
            workflow = await self.store.get_workflow(workflow_id)
            if workflow and workflow.trigger_type == TriggerType.MANUAL:
                return await self.dispatch(TriggerEvent(
                    contact_id=contact_id, kind=TriggerType.MANUAL, workflow_id=workflow_id,
                ))
        return await self.dispatch(TriggerEvent(
            contact_id=contact_id, kind=TriggerType.SALE, workflow_id=workflow_id,
        ))

    async def apply_tag(self, contact_id: str, tag: str) -> DispatchResult:
        """Add a tag to the contact (no duplicates) and fire tag workflows."""
        tag = tag.strip()
        contact = await self.store.get_contact(contact_id)
        if contact is None:
            return DispatchResult(skipped_reason="contact_not_found")
        if tag and not contact.has_tag(tag):
            await self.store.update_contact(contact.id, tags=[*contact.tags, tag])
            logger.info("contact_tag_added", contact_id=contact.id, tag=tag)
        return await self.dispatch(TriggerEvent(
            contact_id=contact.id, kind=TriggerType.TAG, tag_name=tag,
        ))

    # ── Matching ──────────────────────────────────────────────

    async def _matching_workflows(self, contact: Contact, event: TriggerEvent) -> list[Workflow]:
        workflows = await self.store.list_active_workflows(contact.tenant_id, event.kind)
        matched = []
        for wf in workflows:
            if event.kind == TriggerType.TAG and not (event.tag_name and wf.matches_tag(event.tag_name)):
                continue
            if event.source_workflow_id and wf.id == event.source_workflow_id:
                continue
            if event.workflow_id and wf.id != event.workflow_id:
                continue
            if not wf.is_assigned_to(contact.instance_id):
                logger.debug("trigger_instance_not_assigned",
                             workflow_id=wf.id,
                             instance_id=contact.instance_id)
                continue
            matched.append(wf)
        return matched

    # ── Session creation ──────────────────────────────────────

    async def _start_workflow(self, workflow: Workflow, contact: Contact,
                              event: TriggerEvent, result: DispatchResult) -> Optional[FlowSession]:
        start = workflow.start_node
        if not start:
            logger.error("workflow_missing_start_node", workflow_id=workflow.id)
            result.errors.append({"workflow_id": workflow.id, "error": "no start node"})
            return None

        # The store refuses a second active session for the same (contact, workflow)
        session = await self.store.create_flow_session_if_absent(FlowSession(
            tenant_id=contact.tenant_id,
            workflow_id=workflow.id,
            contact_id=contact.id,
            instance_id=contact.instance_id,
            current_node_id=start.id,
            variables=self._seed_variables(contact, event),
        ))
        if session is None:
            logger.info("trigger_session_already_active",
                        workflow_id=workflow.id,
                        contact_id=contact.id)
            return None
        logger.info("flow_session_created",
                    session_id=session.id,
                    workflow_id=workflow.id,
                    contact_id=contact.id,
                    triggered_by=event.kind.value)

        if workflow.pause_other_flows:
            await self._pause_other_sessions(contact.id, workflow.id)

        await self.queue.publish(Queues.FLOW_STEPS, QueueJob(
            session_id=session.id, tenant_id=session.tenant_id, kind=JobKind.ADVANCE,
        ))
        return session

    async def _pause_other_sessions(self, contact_id: str, workflow_id: str):
        others = [s for s in await self.store.list_active_sessions(contact_id)
                  if s.workflow_id != workflow_id]
        if not others:
            return
        # Jobs go first so nothing fires between the pause and the new session
        for s in others:
            await self.store.cancel_delay_jobs(s.id)
        paused = await self.store.pause_sessions([s.id for s in others])
        logger.info("other_flows_paused",
                    contact_id=contact_id,
                    exclusive_workflow_id=workflow_id,
                    paused=paused)

    @staticmethod
    def _seed_variables(contact: Contact, event: TriggerEvent) -> dict[str, Any]:
        extra: dict[str, Any] = {"_sent_node_ids": [], "_triggered_by": event.kind.value}
        if event.kind == TriggerType.TAG:
            extra["_trigger_tag"] = event.tag_name or ""
        elif event.kind == TriggerType.SALE:
            extra["lastMessage"] = ""
        return contact_variables(contact, extra)
