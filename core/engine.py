"""
Flow Session Engine — Advances a contact's workflow session node by node.

One call to `advance()` runs the session from its cursor until it has to
stop: waiting for input, suspended on a delay, completed, paused after a send
failure, or yielded after `max_steps_per_advance` steps.

Exclusivity comes from the session's processing lock (boolean + timestamp,
taken with a conditional update). A second concurrent `advance()` returns
`skipped/session_locked` without touching the session. Taking the lock hands
out a fencing token: every checkpoint and the final release only apply while
the session is still active and still held under that token, so a worker
whose session was paused, completed or taken over stops before its next node.

Reserved session variables:
  _sent_node_ids       nodes whose message already went out (replay guard)
  _pending_delay       {node_id, resume_at} while suspended on a delay node
  _pending_timeout     {node_id, timeout_at} while waiting with a timeout
  _waiting_for         node id of the waitInput/menu currently parked on
  _send_failures, _last_send_error, _last_failed_node_id, _last_failed_at
  _recovery_error, _completed_reason
"""
from __future__ import annotations

import asyncio
import random
import structlog
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from channels.base import GatewayError, TransientGatewayError
from channels.registry import GatewayRegistry
from config.settings import FlowConfig
from database.store_base import BaseFlowStore
from job_queue.delay_scheduler import DelayScheduler
from models.schemas import (
    Contact, DelayJobKind, DelayJobStatus, DeliveryStatus, FlowNode, FlowSession,
    InboxMessage, Instance, MessageDirection, MessageType, NodeType, OutboundPayload,
    SessionStatus, TriggerEvent, TriggerType, Workflow,
    INPUT_NODE_TYPES, MEDIA_NODE_TYPES, utcnow,
)
from utils.conditions import evaluate_conditions, normalize_comparable, normalize_var_key
from utils.templating import render

logger = structlog.get_logger()

DEFAULT_TRANSFER_MESSAGE = "Transferindo para atendimento humano..."

UNIT_SECONDS = {
    "seconds": 1,
    "minutes": 60,
    "hours": 3600,
    "days": 86400,
}


class AdvanceStatus:
    SKIPPED = "skipped"
    WAITING = "waiting"
    COMPLETED = "completed"
    PAUSED = "paused"
    YIELDED = "yielded"


@dataclass
class AdvanceResult:
    status: str
    reason: str = ""
    steps: int = 0
    session_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "reason": self.reason,
                "steps": self.steps, "session_id": self.session_id}


@dataclass
class _Run:
    """Working state of one advance() call."""
    session: FlowSession
    lock_token: str
    workflow: Workflow
    contact: Contact
    instance: Instance
    variables: dict[str, Any]
    node_id: str
    timeout_at: Optional[datetime] = None
    steps: int = 0

    @property
    def sent(self) -> list[str]:
        return self.variables.setdefault("_sent_node_ids", [])


@dataclass
class _Step:
    """Outcome of one node. `stop` set means the chain ends here."""
    next_node_id: Optional[str] = None
    stop: Optional[str] = None
    reason: str = ""


def _parse_time(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value))
        except ValueError:
            return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def duration_seconds(amount: Any, unit: str = "seconds") -> int:
    try:
        value = float(amount)
    except (TypeError, ValueError):
        value = 0
    return int(value * UNIT_SECONDS.get(unit or "seconds", 1))


# ══════════════════════════════════════════════════════════════
#  Flow Session Engine
# ══════════════════════════════════════════════════════════════

class FlowSessionEngine:
    """
    Usage:
        engine = FlowSessionEngine(store, gateways, delays, dispatcher, settings.flow)
        result = await engine.advance(session_id)
        result = await engine.advance(session_id, user_input="2")
    """

    def __init__(
        self,
        store: BaseFlowStore,
        gateways: GatewayRegistry,
        delays: DelayScheduler,
        dispatcher=None,  # rules.engine.TriggerDispatcher, for tag nodes
        config: FlowConfig = None,
    ):
        self.store = store
        self.gateways = gateways
        self.delays = delays
        self.dispatcher = dispatcher
        self.config = config or FlowConfig()

    # ── Entry point ───────────────────────────────────────────

    async def advance(self, session_id: str, *, user_input: Optional[str] = None,
                      job_kind: Optional[DelayJobKind] = None) -> AdvanceResult:
        session = await self.store.get_flow_session(session_id)
        if session is None:
            return AdvanceResult(AdvanceStatus.SKIPPED, "session_not_found", session_id=session_id)
        if session.status != SessionStatus.ACTIVE:
            return AdvanceResult(AdvanceStatus.SKIPPED, f"session_{session.status.value}",
                                 session_id=session_id)

        now = utcnow()
        stale_before = now - timedelta(seconds=self.config.stale_lock_seconds)
        lock_token = await self.store.try_acquire_lock(session_id, now, stale_before)
        if lock_token is None:
            logger.info("session_locked", session_id=session_id)
            return AdvanceResult(AdvanceStatus.SKIPPED, "session_locked", session_id=session_id)

        try:
            # Re-read under the lock; the first read may predate another worker's checkpoint
            session = await self.store.get_flow_session(session_id)
            if session is None or session.status != SessionStatus.ACTIVE:
                return AdvanceResult(AdvanceStatus.SKIPPED, "session_not_active",
                                     session_id=session_id)
            result = await self._advance_locked(session, lock_token, user_input, job_kind)
        finally:
            if not await self.store.release_lock(session_id, lock_token):
                logger.warning("session_lock_lost", session_id=session_id)

        logger.info("session_advanced",
                    session_id=session_id,
                    status=result.status,
                    reason=result.reason,
                    steps=result.steps)
        return result

    async def _advance_locked(self, session: FlowSession, lock_token: str,
                              user_input: Optional[str],
                              job_kind: Optional[DelayJobKind]) -> AdvanceResult:
        run = await self._load_run(session, lock_token)
        if isinstance(run, AdvanceResult):
            return run

        resumed = await self._resume(run, user_input, job_kind)
        if resumed is not None:
            return resumed

        return await self._step_loop(run)

    async def _load_run(self, session: FlowSession, lock_token: str):
        workflow = await self.store.get_workflow(session.workflow_id)
        if workflow is None or not workflow.is_active:
            return await self._force_complete(session, lock_token, "workflow_inactive")

        contact = await self.store.get_contact(session.contact_id)
        if contact is None:
            return await self._force_complete(session, lock_token, "contact_not_found")

        instance_id = session.instance_id or contact.instance_id
        instance = await self.store.get_instance(instance_id) if instance_id else None
        if instance is None:
            return await self._force_complete(session, lock_token, "instance_not_found")

        return _Run(
            session=session,
            lock_token=lock_token,
            workflow=workflow,
            contact=contact,
            instance=instance,
            variables=dict(session.variables),
            node_id=session.current_node_id,
            timeout_at=session.timeout_at,
        )

    # ── Resume handling ───────────────────────────────────────

    async def _resume(self, run: _Run, user_input: Optional[str],
                      job_kind: Optional[DelayJobKind]) -> Optional[AdvanceResult]:
        """
        Work out where the step loop starts. Returns a result when the session
        must not run any step now, None to continue into the loop.
        """
        now = utcnow()
        tolerance = timedelta(seconds=self.config.resume_tolerance_seconds)
        node = run.workflow.get_node(run.node_id)

        pending = run.variables.get("_pending_delay")
        if pending:
            resume_at = _parse_time(pending.get("resume_at")) or now
            # Only the claimed delay job itself may fire slightly early
            due = now >= resume_at or (job_kind == DelayJobKind.DELAY and resume_at - now <= tolerance)
            if not due:
                await self._ensure_delay_job(run, resume_at)
                return self._result(run, AdvanceStatus.WAITING, "delay_pending")
            run.variables.pop("_pending_delay", None)
            next_id = run.workflow.next_node_id(pending.get("node_id") or run.node_id)
            logger.info("delay_resumed", session_id=run.session.id, node_id=pending.get("node_id"))
            return await self._move_or_complete(run, next_id)

        if user_input is not None:
            if node is None or node.kind not in INPUT_NODE_TYPES:
                logger.info("input_ignored_not_waiting",
                            session_id=run.session.id,
                            node_id=run.node_id)
                return self._result(run, AdvanceStatus.SKIPPED, "not_waiting_for_input")
            await self.delays.cancel_all(run.session.id)
            self._clear_wait(run)
            self._store_input(run, node, user_input)
            handle = self._menu_handle(run.workflow, node, user_input) if node.kind == NodeType.MENU else None
            next_id = self._edge_target(run.workflow, node.id, handle)
            logger.info("input_received",
                        session_id=run.session.id,
                        node_id=node.id,
                        handle=handle)
            return await self._move_or_complete(run, next_id)

        if node is not None and node.kind == NodeType.WAIT_INPUT and job_kind == DelayJobKind.TIMEOUT:
            timeout_at = run.timeout_at or _parse_time(
                (run.variables.get("_pending_timeout") or {}).get("timeout_at"))
            if timeout_at is None or timeout_at > now + tolerance:
                return self._result(run, AdvanceStatus.WAITING, "awaiting_input")
            self._clear_wait(run)
            self._store_input(run, node, "")
            next_id = self._edge_target(run.workflow, node.id, "timeout")
            logger.info("input_timed_out", session_id=run.session.id, node_id=node.id)
            return await self._move_or_complete(run, next_id)

        if node is not None and node.kind in INPUT_NODE_TYPES and run.variables.get("_waiting_for") == node.id:
            return self._result(run, AdvanceStatus.WAITING, "awaiting_input")

        return None

    async def _move_or_complete(self, run: _Run, next_id: Optional[str]) -> Optional[AdvanceResult]:
        if next_id is None:
            return await self._complete(run, "no_outgoing_edge")
        run.node_id = next_id
        if not await self._checkpoint(run):
            return self._lost(run)
        return None

    def _clear_wait(self, run: _Run):
        run.variables.pop("_pending_timeout", None)
        run.variables.pop("_waiting_for", None)
        run.timeout_at = None

    @staticmethod
    def _store_input(run: _Run, node: FlowNode, value: str):
        var_name = normalize_var_key(node.data.get("variableName") or node.data.get("saveToVariable"))
        if var_name:
            run.variables[var_name] = value
        run.variables["lastMessage"] = value

    @staticmethod
    def _menu_handle(workflow: Workflow, node: FlowNode, user_input: str) -> Optional[str]:
        """
        Match the answer to a menu option by number ("2") or by text
        ("Sim"). Returns the handle of the chosen option's edge, or None
        for the default edge.
        """
        options = _menu_options(node.data.get("options"))
        answer = user_input.strip()
        index = None
        if answer.isdigit() and 1 <= int(answer) <= len(options):
            index = int(answer) - 1
        else:
            wanted = normalize_comparable(answer)
            for i, (_, label) in enumerate(options):
                if normalize_comparable(label) == wanted:
                    index = i
                    break
        if index is None:
            return None

        option_id = options[index][0]
        candidates = [h for h in (option_id, f"option-{index + 1}", f"option-{index}") if h]
        handles = {e.sourceHandle for e in workflow.outgoing(node.id)}
        return next((h for h in candidates if h in handles), None)

    @staticmethod
    def _edge_target(workflow: Workflow, node_id: str, handle: Optional[str]) -> Optional[str]:
        """Edge for `handle`; otherwise the default (unlabelled) edge, else the first."""
        edges = workflow.outgoing(node_id)
        if not edges:
            return None
        if handle is not None:
            for edge in edges:
                if edge.sourceHandle == handle:
                    return edge.target
        for edge in edges:
            if edge.sourceHandle in (None, "", "default"):
                return edge.target
        return edges[0].target

    # ── Step loop ─────────────────────────────────────────────

    async def _step_loop(self, run: _Run) -> AdvanceResult:
        while run.steps < self.config.max_steps_per_advance:
            node = run.workflow.get_node(run.node_id)
            if node is None:
                recovered = self._recover_missing(run.workflow, run.node_id)
                if recovered is None:
                    logger.error("flow_node_missing",
                                 session_id=run.session.id,
                                 node_id=run.node_id)
                    run.variables["_recovery_error"] = f"node {run.node_id} not found"
                    return await self._complete(run, "node_missing")
                logger.warning("flow_node_missing_recovered",
                               session_id=run.session.id,
                               missing=run.node_id,
                               recovered=recovered)
                run.node_id = recovered
                continue

            try:
                step = await self._execute(run, node)
            except GatewayError as e:
                return await self._handle_send_error(run, node, e)
            run.steps += 1

            if step.stop == AdvanceStatus.COMPLETED:
                return await self._complete(run, step.reason)
            if step.stop:
                if not await self._checkpoint(run):
                    return self._lost(run)
                return self._result(run, step.stop, step.reason)
            if step.next_node_id is None:
                return await self._complete(run, "no_outgoing_edge")

            run.node_id = step.next_node_id
            # Paused, completed or taken over while this step ran: no further node
            if not await self._checkpoint(run):
                return self._lost(run)

        await self.delays.schedule(run.session.id, utcnow(), DelayJobKind.CONTINUE,
                                   tenant_id=run.session.tenant_id)
        logger.info("session_yielded", session_id=run.session.id, steps=run.steps)
        return self._result(run, AdvanceStatus.YIELDED, "step_limit")

    @staticmethod
    def _recover_missing(workflow: Workflow, node_id: str) -> Optional[str]:
        """Follow edges out of a deleted node until an existing node is reached."""
        seen = {node_id}
        frontier = [e.target for e in workflow.outgoing(node_id)]
        while frontier:
            target = frontier.pop(0)
            if target in seen:
                continue
            seen.add(target)
            if workflow.get_node(target) is not None:
                return target
            frontier.extend(e.target for e in workflow.outgoing(target))
        return None

    async def _execute(self, run: _Run, node: FlowNode) -> _Step:
        kind = node.kind
        if kind == NodeType.START:
            return _Step(run.workflow.next_node_id(node.id))
        if kind == NodeType.TEXT or kind in MEDIA_NODE_TYPES:
            return await self._send_node(run, node)
        if kind == NodeType.DELAY:
            return await self._delay_node(run, node)
        if kind == NodeType.WAIT_INPUT:
            return await self._wait_input_node(run, node)
        if kind == NodeType.MENU:
            return await self._menu_node(run, node)
        if kind == NodeType.CONDITION:
            return self._condition_node(run, node)
        if kind == NodeType.SET_VARIABLE:
            return self._set_variable_node(run, node)
        if kind == NodeType.TAG:
            return await self._tag_node(run, node)
        if kind == NodeType.RANDOMIZER:
            return self._randomizer_node(run, node)
        if kind == NodeType.TRANSFER:
            return await self._transfer_node(run, node)
        if kind == NodeType.END:
            return _Step(stop=AdvanceStatus.COMPLETED, reason="end_node")

        # ai, webhook and anything unknown pass straight through
        logger.debug("flow_node_passthrough", node_id=node.id, type=node.type)
        return _Step(run.workflow.next_node_id(node.id))

    # ── Node handlers ─────────────────────────────────────────

    async def _send_node(self, run: _Run, node: FlowNode) -> _Step:
        next_id = run.workflow.next_node_id(node.id)
        if node.id in run.sent:
            return _Step(next_id)

        data = node.data
        if node.kind == NodeType.TEXT:
            text = render(data.get("message") or data.get("text") or "", run.variables)
            if not text:
                return _Step(next_id)
            payload = OutboundPayload(kind=MessageType.TEXT, text=text)
        else:
            media_url = data.get("mediaUrl") or data.get("url") or ""
            if not media_url:
                logger.warning("media_node_without_url", node_id=node.id)
                return _Step(next_id)
            file_name = data.get("fileName") or ""
            caption = render(data.get("caption") or "", run.variables)
            payload = OutboundPayload(
                kind=MessageType(node.kind.value),
                text=file_name if node.kind == NodeType.DOCUMENT else caption,
                media_url=media_url,
                file_name=file_name,
            )
        if data.get("showPresence"):
            payload.delay_ms = int(float(data.get("presenceDelay") or 3) * 1000)

        await self._send(run, node, payload)
        return _Step(next_id)

    async def _delay_node(self, run: _Run, node: FlowNode) -> _Step:
        data = node.data
        if (data.get("delayType") or "fixed") == "variable":
            low = int(data.get("minDelay") or 5)
            high = int(data.get("maxDelay") or 15)
            amount = random.randint(min(low, high), max(low, high))
        else:
            amount = data.get("delay") or 5
        seconds = duration_seconds(amount, data.get("unit") or "seconds")

        resume_at = utcnow() + timedelta(seconds=seconds)
        run.variables["_pending_delay"] = {"node_id": node.id, "resume_at": resume_at.isoformat()}
        await self.delays.schedule(run.session.id, resume_at, DelayJobKind.DELAY,
                                   tenant_id=run.session.tenant_id)
        return _Step(stop=AdvanceStatus.WAITING, reason="delay_scheduled")

    async def _wait_input_node(self, run: _Run, node: FlowNode) -> _Step:
        data = node.data
        run.variables["_waiting_for"] = node.id
        if data.get("timeoutEnabled"):
            seconds = duration_seconds(data.get("timeout") or 5, data.get("timeoutUnit") or "minutes")
            run.timeout_at = utcnow() + timedelta(seconds=seconds)
            run.variables["_pending_timeout"] = {"node_id": node.id,
                                                 "timeout_at": run.timeout_at.isoformat()}
            await self.delays.schedule(run.session.id, run.timeout_at, DelayJobKind.TIMEOUT,
                                       tenant_id=run.session.tenant_id)
        return _Step(stop=AdvanceStatus.WAITING, reason="awaiting_input")

    async def _menu_node(self, run: _Run, node: FlowNode) -> _Step:
        if node.id not in run.sent:
            message = render(node.data.get("message") or "", run.variables)
            options = node.data.get("options")
            if isinstance(options, list):
                options = "\n".join(f"{i + 1}. {label}" for i, (_, label) in enumerate(_menu_options(options)))
            text = f"{message}\n\n{options}" if options else message
            if text.strip():
                await self._send(run, node, OutboundPayload(kind=MessageType.TEXT, text=text.strip()))
        run.variables["_waiting_for"] = node.id
        return _Step(stop=AdvanceStatus.WAITING, reason="awaiting_input")

    def _condition_node(self, run: _Run, node: FlowNode) -> _Step:
        matched = evaluate_conditions(node.data, run.variables, run.contact.tags)
        handles = ("yes", "true") if matched else ("no", "false")
        for edge in run.workflow.outgoing(node.id):
            if edge.sourceHandle in handles:
                return _Step(edge.target)
        logger.info("condition_branch_missing", node_id=node.id, matched=matched)
        return _Step(stop=AdvanceStatus.COMPLETED, reason="condition_branch_missing")

    def _set_variable_node(self, run: _Run, node: FlowNode) -> _Step:
        name = normalize_var_key(node.data.get("variableName"))
        if name:
            run.variables[name] = render(str(node.data.get("value") or ""), run.variables)
        return _Step(run.workflow.next_node_id(node.id))

    async def _tag_node(self, run: _Run, node: FlowNode) -> _Step:
        tag = str(node.data.get("tagName") or "").strip()
        next_id = run.workflow.next_node_id(node.id)
        if not tag:
            return _Step(next_id)

        # Fresh tags: another flow or the operator may have changed them
        contact = await self.store.get_contact(run.contact.id) or run.contact
        adding = (node.data.get("action") or "add") == "add"
        if adding:
            tags = contact.tags if contact.has_tag(tag) else [*contact.tags, tag]
        else:
            tags = [t for t in contact.tags if t != tag]
        updated = await self.store.update_contact(contact.id, tags=tags)
        run.contact = updated or contact.model_copy(update={"tags": tags})
        logger.info("flow_tag_applied" if adding else "flow_tag_removed",
                    session_id=run.session.id,
                    contact_id=contact.id,
                    tag=tag)

        if adding and self.dispatcher is not None:
            result = await self.dispatcher.dispatch(TriggerEvent(
                contact_id=contact.id,
                kind=TriggerType.TAG,
                tag_name=tag,
                source_workflow_id=run.workflow.id,
            ))
            if result.errors:
                logger.warning("flow_tag_dispatch_errors",
                               session_id=run.session.id,
                               errors=result.errors)
        return _Step(next_id)

    def _randomizer_node(self, run: _Run, node: FlowNode) -> _Step:
        paths = node.data.get("paths") or []
        if not paths:
            return _Step(run.workflow.next_node_id(node.id))
        total = sum(float(p.get("percentage") or 0) for p in paths)
        pick = random.uniform(0, total)
        selected = paths[0].get("id")
        cumulative = 0.0
        for path in paths:
            cumulative += float(path.get("percentage") or 0)
            if pick <= cumulative:
                selected = path.get("id")
                break
        logger.debug("randomizer_path_selected", node_id=node.id, path=selected)
        return _Step(run.workflow.next_node_id(node.id, selected))

    async def _transfer_node(self, run: _Run, node: FlowNode) -> _Step:
        if node.id not in run.sent:
            text = render(node.data.get("message") or DEFAULT_TRANSFER_MESSAGE, run.variables)
            await self._send(run, node, OutboundPayload(kind=MessageType.TEXT, text=text))
        return _Step(stop=AdvanceStatus.COMPLETED, reason="transferred")

    # ── Sending ───────────────────────────────────────────────

    async def _send(self, run: _Run, node: FlowNode, payload: OutboundPayload):
        """Send through the instance's gateway and record the outbound message."""
        message = InboxMessage(
            tenant_id=run.session.tenant_id,
            contact_id=run.contact.id,
            instance_id=run.instance.id,
            direction=MessageDirection.OUTBOUND,
            message_type=payload.kind,
            content=payload.text,
            media_url=payload.media_url,
            is_from_flow=True,
            flow_id=run.workflow.id,
        )
        try:
            gateway = self.gateways.for_instance(run.instance)
            result = await gateway.send(run.instance, run.contact.jid, payload)
        except GatewayError:
            message.status = DeliveryStatus.FAILED
            await self.store.add_message(message)
            raise

        message.remote_message_id = result.remote_message_id
        message.status = DeliveryStatus.SENT
        await self.store.add_message(message)
        await self.store.record_contact_activity(run.contact.id, utcnow(), inbound=False)

        run.sent.append(node.id)
        run.variables["_send_failures"] = 0

    async def _handle_send_error(self, run: _Run, node: FlowNode, error: GatewayError) -> AdvanceResult:
        failures = int(run.variables.get("_send_failures") or 0) + 1
        run.node_id = node.id
        run.variables.update({
            "_send_failures": failures,
            "_last_send_error": str(error),
            "_last_failed_node_id": node.id,
            "_last_failed_at": utcnow().isoformat(),
        })

        if isinstance(error, TransientGatewayError) and failures < self.config.retry_ceiling:
            if not await self._checkpoint(run):
                return self._lost(run)
            retry_at = utcnow() + timedelta(seconds=self.config.retry_delay_seconds)
            await self.delays.schedule(run.session.id, retry_at, DelayJobKind.RETRY,
                                       tenant_id=run.session.tenant_id)
            logger.warning("flow_send_retry_scheduled",
                           session_id=run.session.id,
                           node_id=node.id,
                           failures=failures,
                           error=str(error))
            return self._result(run, AdvanceStatus.WAITING, "retry_scheduled")

        if not await self._checkpoint(run, status=SessionStatus.PAUSED):
            return self._lost(run)
        await self.delays.cancel_all(run.session.id)
        logger.error("flow_session_paused_on_error",
                     session_id=run.session.id,
                     node_id=node.id,
                     kind=error.kind,
                     failures=failures,
                     error=str(error))
        return self._result(run, AdvanceStatus.PAUSED, error.kind)

    # ── Persistence helpers ───────────────────────────────────

    async def _checkpoint(self, run: _Run, **extra) -> bool:
        """Persist the cursor and refresh the lock; False once the session is lost."""
        now = utcnow()
        saved = await self.store.checkpoint_flow_session(
            run.session.id,
            run.lock_token,
            current_node_id=run.node_id,
            variables=run.variables,
            timeout_at=run.timeout_at,
            last_interaction_at=now,
            processing_started_at=now,
            **extra,
        )
        if not saved:
            logger.warning("flow_session_checkpoint_rejected",
                           session_id=run.session.id,
                           node_id=run.node_id)
        return saved

    def _lost(self, run: _Run) -> AdvanceResult:
        return self._result(run, AdvanceStatus.SKIPPED, "session_not_active")

    async def _ensure_delay_job(self, run: _Run, resume_at: datetime):
        scheduled = await self.store.list_delay_jobs(run.session.id, DelayJobStatus.SCHEDULED)
        if not any(j.kind == DelayJobKind.DELAY for j in scheduled):
            await self.delays.schedule(run.session.id, resume_at, DelayJobKind.DELAY,
                                       tenant_id=run.session.tenant_id)

    async def _complete(self, run: _Run, reason: str) -> AdvanceResult:
        run.variables["_completed_reason"] = reason
        run.variables.pop("_waiting_for", None)
        run.timeout_at = None
        if not await self._checkpoint(run, status=SessionStatus.COMPLETED, completed_at=utcnow()):
            return self._lost(run)
        await self.delays.cancel_all(run.session.id)
        logger.info("flow_session_completed", session_id=run.session.id, reason=reason)
        return self._result(run, AdvanceStatus.COMPLETED, reason)

    async def _force_complete(self, session: FlowSession, lock_token: str,
                              reason: str) -> AdvanceResult:
        variables = {**session.variables, "_completed_reason": reason}
        completed = await self.store.checkpoint_flow_session(
            session.id,
            lock_token,
            status=SessionStatus.COMPLETED,
            completed_at=utcnow(),
            variables=variables,
        )
        if not completed:
            return AdvanceResult(AdvanceStatus.SKIPPED, "session_not_active", session_id=session.id)
        await self.delays.cancel_all(session.id)
        logger.warning("flow_session_force_completed", session_id=session.id, reason=reason)
        return AdvanceResult(AdvanceStatus.COMPLETED, reason, session_id=session.id)

    @staticmethod
    def _result(run: _Run, status: str, reason: str) -> AdvanceResult:
        return AdvanceResult(status, reason, run.steps, run.session.id)

    # ── Operator controls ─────────────────────────────────────

    async def pause_session(self, session_id: str) -> bool:
        session = await self.store.get_flow_session(session_id)
        if session is None or session.status != SessionStatus.ACTIVE:
            return False
        await self.delays.cancel_all(session_id)
        paused = await self.store.pause_sessions([session_id])
        logger.info("flow_session_paused", session_id=session_id)
        return paused > 0

    async def resume_session(self, session_id: str) -> bool:
        """Re-activate a paused session and hand its next step to the delay sweep."""
        session = await self.store.get_flow_session(session_id)
        if session is None or session.status != SessionStatus.PAUSED:
            return False
        if await self.store.find_active_session(session.contact_id, session.workflow_id):
            logger.info("flow_session_resume_refused",
                        session_id=session_id,
                        reason="workflow_already_active")
            return False
        variables = {**session.variables, "_send_failures": 0}
        await self.store.update_flow_session(
            session_id,
            status=SessionStatus.ACTIVE,
            processing=False,
            processing_started_at=None,
            lock_token=None,
            variables=variables,
        )
        await self.delays.schedule(session_id, utcnow(), DelayJobKind.CONTINUE,
                                   tenant_id=session.tenant_id)
        logger.info("flow_session_resumed", session_id=session_id)
        return True


def _menu_options(raw: Any) -> list[tuple[str, str]]:
    """
    Menu options as (id, label). Builder menus store either a newline
    separated string ("1 - Sim") or a list of {id, label|text} dicts.
    """
    options: list[tuple[str, str]] = []
    if isinstance(raw, str):
        for line in raw.splitlines():
            label = line.strip()
            if not label:
                continue
            # drop leading numbering: "1 - Sim", "1. Sim", "1) Sim"
            head, _, tail = label.partition(" ")
            if head.rstrip(".-)").isdigit() and tail:
                label = tail.lstrip("-.) ").strip()
            options.append(("", label))
    elif isinstance(raw, list):
        for item in raw:
            if isinstance(item, dict):
                options.append((str(item.get("id") or ""),
                                str(item.get("label") or item.get("text") or "")))
            else:
                options.append(("", str(item)))
    return options


# ──────────────────────────────────────────────────────────────
#  Stuck Session Reaper
# ──────────────────────────────────────────────────────────────

class StuckSessionReaper:
    """
    Releases processing locks left behind by workers that died mid-advance.
    The lock's own stale threshold already lets the next advance() take over;
    the reaper makes stuck sessions visible and unlocks idle ones.
    """

    def __init__(self, store: BaseFlowStore, config: FlowConfig = None,
                 interval_seconds: int = 60):
        self.store = store
        self.config = config or FlowConfig()
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> list[str]:
        stale_before = utcnow() - timedelta(minutes=self.config.stuck_session_minutes)
        unlocked = await self.store.unlock_stale_sessions(stale_before)
        if unlocked:
            logger.warning("stuck_sessions_unlocked", count=len(unlocked), session_ids=unlocked)
        return unlocked

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        logger.info("stuck_session_reaper_started", interval=self.interval)
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("stuck_session_reaper_error", error=str(e), exc_info=True)
            await asyncio.sleep(self.interval)
