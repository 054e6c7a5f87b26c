"""
Workflow event emission.

Every state transition produces a WorkflowEvent. Events are collected while
the engine builds its atomic unit and handed to the registered sinks only
after the unit committed. A sink that raises is logged and skipped: the
committed transition is the source of truth, delivery is best-effort.

Sinks live on ``app.extensions`` so tests and embedding applications can
add their own:

    from approvalflow.services.event_service import register_event_sink
    register_event_sink(MyAuditSink())
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from flask import current_app

from approvalflow.models import db
from approvalflow.models.request import Action, Request
from approvalflow.services import ledger, role_resolver
from approvalflow.services.notification import NotificationService

logger = logging.getLogger(__name__)

_EXTENSION_KEY = "approvalflow.event_sinks"

_QUESTION_ACTIONS = {Action.REQUEST_CLARIFICATION.value, Action.ASK_PREVIOUS_SECTION.value}


@dataclass(frozen=True)
class WorkflowEvent:
    """One transition of one request."""
    request_id: str
    from_status: str | None
    to_status: str
    action: str
    actor_id: str
    section_order: int
    comment: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "action": self.action,
            "actor_id": self.actor_id,
            "section_order": self.section_order,
            "comment": self.comment,
            "timestamp": self.timestamp.isoformat(),
        }


class EventSink:
    """Receiver of committed workflow events."""

    def emit(self, event: WorkflowEvent) -> None:
        raise NotImplementedError


class LoggingSink(EventSink):
    """Writes one INFO line per event."""

    def emit(self, event: WorkflowEvent) -> None:
        logger.info(
            "Request %s: %s → %s (%s by %s)",
            event.request_id, event.from_status, event.to_status, event.action, event.actor_id,
            extra={
                "request_id": event.request_id,
                "from_status": event.from_status,
                "to_status": event.to_status,
                "action": event.action,
                "actor_id": event.actor_id,
                "event_type": "workflow_transition",
            },
        )


class NotificationSink(EventSink):
    """Turns events into in-app notifications for whoever must act next."""

    def emit(self, event: WorkflowEvent) -> None:
        req = db.session.get(Request, event.request_id)
        if req is None:
            return
        recipients, title, category, severity = self._route(event, req)
        recipients = set(recipients) - {event.actor_id}
        if not recipients:
            return
        NotificationService.broadcast(
            recipients=recipients,
            title=title,
            message=self._message(event, req),
            category=category,
            severity=severity,
            request_id=req.id,
            section_order=event.section_order,
            triggered_by=event.actor_id,
        )

    @staticmethod
    def _current_approvers(req: Request) -> set[str]:
        section = req.current_section
        if section is None or not section.is_approval:
            return set()
        step = ledger.next_pending_step(req, section)
        if step is None:
            return set()
        return role_resolver.resolve_approvers(step.approver_role, req.business_unit_id)

    @staticmethod
    def _message(event: WorkflowEvent, req: Request) -> str:
        if event.action in _QUESTION_ACTIONS:
            return f"{event.actor_id} asks about request {req.id}: {event.comment}"
        message = f"Request {req.id} is now {event.to_status} (section {req.current_section_order})."
        if event.comment:
            message += f" {event.actor_id}: {event.comment}"
        return message

    def _route(self, event: WorkflowEvent, req: Request):
        initiator = {req.initiator_id} if req.initiator_id else set()
        match event.action:
            case Action.REQUEST_CLARIFICATION.value:
                section = req.current_section
                approvers = role_resolver.resolve_section_approvers(section, req.business_unit_id) if section else set()
                return approvers, "Clarification requested", "clarification_requested", "warning"
            case Action.ASK_PREVIOUS_SECTION.value:
                participants = ledger.previous_section_participants(req)
                return participants, "Question about an earlier section", "clarification_requested", "warning"
        match event.to_status:
            case "IN_REVIEW":
                return self._current_approvers(req), "Approval needed", "approval_needed", "info"
            case "NEEDS_REVISION":
                return initiator, "Revision requested", "revision_requested", "warning"
            case "REJECTED":
                return initiator, "Request rejected", "rejected", "error"
            case "CANCELLED":
                return self._current_approvers(req) | initiator, "Request cancelled", "cancelled", "warning"
            case "APPROVED":
                title = "Section approved and handed off" if req.is_handed_off else "Request approved"
                return initiator, title, "approved", "success"
            case "DRAFT" | "SUBMITTED" if req.initiator_id is None:
                section = req.current_section
                eligible = role_resolver.resolve_initiators(section, req.business_unit_id) if section else set()
                return eligible, "Request waiting to be claimed", "claim_available", "info"
            case "DRAFT" | "SUBMITTED":
                return initiator, "Your input is needed", "workflow", "info"
            case _:
                return set(), "", "workflow", "info"


def init_event_sinks(app) -> None:
    """Install the default sinks on an application."""
    app.extensions[_EXTENSION_KEY] = [LoggingSink(), NotificationSink()]


def get_event_sinks() -> list[EventSink]:
    return current_app.extensions.setdefault(_EXTENSION_KEY, [])


def register_event_sink(sink: EventSink) -> None:
    sinks = get_event_sinks()
    if sink not in sinks:
        sinks.append(sink)


def unregister_event_sink(sink: EventSink) -> None:
    sinks = get_event_sinks()
    if sink in sinks:
        sinks.remove(sink)


def emit_events(events: list[WorkflowEvent]) -> None:
    """Deliver committed events to every sink. Never raises."""
    for event in events:
        for sink in list(get_event_sinks()):
            try:
                sink.emit(event)
            except Exception:  # noqa: BLE001
                db.session.rollback()
                logger.exception(
                    "Event sink %s failed for request %s",
                    type(sink).__name__, event.request_id,
                    extra={"request_id": event.request_id, "event_type": "sink_failure"},
                )
