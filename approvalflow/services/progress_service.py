"""
Read-side projections over requests.

Nothing here writes. Progress, chain traversal and the inbox views are
computed on demand from the Request aggregate, its chain definition and
the history log.

    get_workflow_progress(request_id)  -> section/step completion + waiting_on
    get_request_chain(request_id)      -> every request of one logical chain
    get_request_history(request_id)    -> chronological history log
    get_pending_approvals(user_id)     -> approver inbox
    get_unclaimed_requests(user_id)    -> forked requests the user may claim
    get_stalled_requests()             -> requests nobody can move forward
"""

import logging

from flask import current_app
from sqlalchemy import select

from approvalflow.core.exceptions import NotFoundError
from approvalflow.models import db
from approvalflow.models.request import (
    STATUS_APPROVED,
    STATUS_DRAFT,
    STATUS_IN_REVIEW,
    STATUS_SUBMITTED,
    HistoryEntry,
    Request,
)
from approvalflow.services import ledger, role_resolver, workflow_config_service

logger = logging.getLogger(__name__)


def _load(request_id: str) -> Request:
    req = db.session.get(Request, request_id)
    if req is None:
        raise NotFoundError(resource="Request", resource_id=request_id)
    return req


# ── Progress ─────────────────────────────────────────────────────────────


def get_workflow_progress(request_id: str) -> dict:
    """
    Section-by-section completion for one request.

    ``waiting_on`` names the role of the step that must act next (None when
    no approval is pending). ``is_stalled`` is True when that role resolves
    to nobody in the request's business unit, or when an unassigned request
    has no eligible initiator to claim it.
    """
    req = _load(request_id)
    chain = req.chain
    workflow_config_service.assert_chain_consistent(chain)

    current = chain.section_at(req.current_section_order)
    pending_step = None
    done_steps: set[int] = set()
    if current is not None and current.is_approval:
        done_steps = ledger.approved_step_numbers(req)
        if req.status == STATUS_IN_REVIEW:
            pending_step = ledger.next_pending_step(req, current)

    # The current section is only complete once the request finished it
    current_done = req.status == STATUS_APPROVED

    sections = []
    for section in chain.sections:
        order = section.section_order
        if order < req.current_section_order:
            section_done = True
        elif order == req.current_section_order:
            section_done = current_done
        else:
            section_done = False
        steps = []
        for step in section.steps:
            if order == req.current_section_order and not section_done:
                step_done = step.step_number in done_steps
            else:
                step_done = section_done
            steps.append({
                "step_number": step.step_number,
                "approver_role_name": step.approver_role.name,
                "is_completed": step_done,
                "is_current": pending_step is not None and step.id == pending_step.id,
            })
        sections.append({
            "order": order,
            "name": section.name,
            "kind": section.kind,
            "is_completed": section_done,
            "is_current": order == req.current_section_order and not req.is_terminal,
            "steps": steps,
        })

    eligible_approvers: set[str] = set()
    waiting_on = None
    if pending_step is not None:
        waiting_on = pending_step.approver_role.name
        eligible_approvers = role_resolver.resolve_approvers(pending_step.approver_role, req.business_unit_id)

    awaiting_claim = req.initiator_id is None and req.status in (STATUS_DRAFT, STATUS_SUBMITTED)
    is_stalled = waiting_on is not None and not eligible_approvers
    if awaiting_claim and current is not None:
        is_stalled = is_stalled or not role_resolver.resolve_initiators(current, req.business_unit_id)

    return {
        "request_id": req.id,
        "status": req.status,
        "chain_id": chain.id,
        "chain_name": chain.name,
        "total_sections": chain.section_count,
        "current_section": req.current_section_order,
        "current_step": pending_step.step_number if pending_step is not None else None,
        "sections": sections,
        "waiting_on": waiting_on,
        "eligible_approvers": sorted(eligible_approvers),
        "awaiting_claim": awaiting_claim,
        "is_stalled": is_stalled,
    }


# ── Request chain ────────────────────────────────────────────────────────


def get_request_chain(request_id: str) -> list[dict]:
    """
    All requests of the logical chain the given request belongs to.

    Members are gathered by ``root_request_id`` and by walking
    ``parent_request_id`` upward. The walk keeps a visited set and stops at
    WORKFLOW_MAX_CHAIN_LENGTH hops. Cyclic or dangling parent links, and
    parents rooted in another chain, end the traversal instead of being
    followed.
    """
    req = _load(request_id)
    limit = current_app.config.get("WORKFLOW_MAX_CHAIN_LENGTH", 100)

    members: dict[str, Request] = {}
    roots = (
        Request.query.filter_by(root_request_id=req.root_request_id)
        .order_by(Request.current_section_order, Request.created_at, Request.id)
        .limit(limit)
    )
    for member in roots.all():
        members[member.id] = member
    members[req.id] = req

    visited = {req.id}
    cursor = req
    while cursor.parent_request_id and len(visited) < limit:
        if cursor.parent_request_id in visited:
            logger.warning(
                "Cycle in parent links of request %s at %s", req.id, cursor.parent_request_id,
                extra={"request_id": req.id, "event_type": "chain_cycle"},
            )
            break
        parent = db.session.get(Request, cursor.parent_request_id)
        if parent is None:
            logger.warning(
                "Request %s points at missing parent %s", cursor.id, cursor.parent_request_id,
                extra={"request_id": cursor.id, "event_type": "chain_dangling_parent"},
            )
            break
        if parent.root_request_id != req.root_request_id:
            logger.warning(
                "Request %s points at parent %s from another chain (root %s)",
                cursor.id, parent.id, parent.root_request_id,
                extra={"request_id": cursor.id, "event_type": "chain_foreign_parent"},
            )
            break
        visited.add(parent.id)
        members.setdefault(parent.id, parent)
        cursor = parent

    ordered = sorted(
        members.values(),
        key=lambda r: (r.current_section_order, r.created_at, r.id),
    )[:limit]

    result = []
    for member in ordered:
        section = member.chain.section_at(member.current_section_order) if member.chain else None
        result.append({
            "request_id": member.id,
            "section_order": member.current_section_order,
            "section_name": section.name if section is not None else None,
            "status": member.status,
            "initiator_id": member.initiator_id,
            "is_current": member.id == req.id,
        })
    return result


# ── History & inboxes ────────────────────────────────────────────────────


def get_request_history(request_id: str) -> list[dict]:
    """Every history entry of a request, oldest first."""
    req = _load(request_id)
    entries = db.session.execute(
        select(HistoryEntry)
        .where(HistoryEntry.request_id == req.id)
        .order_by(HistoryEntry.created_at, HistoryEntry.id)
    ).scalars().all()
    return [e.to_dict() for e in entries]


def get_pending_approvals(user_id: str) -> list[dict]:
    """IN_REVIEW requests whose current step ``user_id`` may approve."""
    items = []
    for req in Request.query.filter_by(status=STATUS_IN_REVIEW).order_by(Request.updated_at).all():
        section = req.current_section
        if section is None or not section.is_approval:
            continue
        step = ledger.next_pending_step(req, section)
        if step is None:
            continue
        if user_id not in role_resolver.resolve_approvers(step.approver_role, req.business_unit_id):
            continue
        items.append({
            "request_id": req.id,
            "chain_name": req.chain.name,
            "section_order": section.section_order,
            "section_name": section.name,
            "step_number": step.step_number,
            "approver_role_name": step.approver_role.name,
            "initiator_id": req.initiator_id,
        })
    return items


def _unassigned_requests():
    return Request.query.filter(
        Request.initiator_id.is_(None),
        Request.status.in_((STATUS_DRAFT, STATUS_SUBMITTED)),
    ).order_by(Request.created_at).all()


def get_unclaimed_requests(user_id: str) -> list[dict]:
    """Unassigned forked requests ``user_id`` is eligible to claim."""
    items = []
    for req in _unassigned_requests():
        section = req.current_section
        if section is None:
            continue
        if user_id not in role_resolver.resolve_initiators(section, req.business_unit_id):
            continue
        items.append({
            "request_id": req.id,
            "chain_name": req.chain.name,
            "section_order": section.section_order,
            "section_name": section.name,
            "parent_request_id": req.parent_request_id,
        })
    return items


def get_stalled_requests() -> list[dict]:
    """Requests waiting on a role nobody holds, or on an initiator nobody can be."""
    stalled = []
    for req in Request.query.filter_by(status=STATUS_IN_REVIEW).all():
        section = req.current_section
        if section is None or not section.is_approval:
            continue
        step = ledger.next_pending_step(req, section)
        if step is None:
            continue
        if not role_resolver.resolve_approvers(step.approver_role, req.business_unit_id):
            stalled.append({
                "request_id": req.id,
                "section_order": section.section_order,
                "step_number": step.step_number,
                "waiting_on": step.approver_role.name,
                "reason": "no_eligible_approver",
            })

    for req in _unassigned_requests():
        section = req.current_section
        if section is None:
            continue
        if not role_resolver.resolve_initiators(section, req.business_unit_id):
            stalled.append({
                "request_id": req.id,
                "section_order": section.section_order,
                "step_number": None,
                "waiting_on": ", ".join(r.name for r in section.initiator_roles) or None,
                "reason": "no_eligible_initiator",
            })
    return stalled
