"""
Approval Ledger.

The ledger is a query over ``request_history``: APPROVE entries recorded
against a request's current section in its current review round. Nothing
is ever deleted; resubmission bumps ``Request.review_round`` and advancing
changes ``current_section_order``, either of which empties the view.
"""

from __future__ import annotations

from sqlalchemy import select

from approvalflow.models import db
from approvalflow.models.request import HISTORY_SUBMIT, Action, HistoryEntry


def ledger_entries(request) -> list[HistoryEntry]:
    """APPROVE entries counting toward the request's current section."""
    return db.session.execute(
        select(HistoryEntry)
        .where(
            HistoryEntry.request_id == request.id,
            HistoryEntry.section_order == request.current_section_order,
            HistoryEntry.review_round == request.review_round,
            HistoryEntry.action == Action.APPROVE.value,
        )
        .order_by(HistoryEntry.id)
    ).scalars().all()


def approved_step_numbers(request) -> set[int]:
    return {e.step_number for e in ledger_entries(request) if e.step_number is not None}


def next_pending_step(request, section):
    """Lowest-numbered step of ``section`` not yet satisfied, or None."""
    done = approved_step_numbers(request)
    for step in section.steps:
        if step.step_number not in done:
            return step
    return None


def is_section_complete(request, section) -> bool:
    return len(approved_step_numbers(request)) >= len(section.steps)


def is_step_satisfied(request_id: str, section_order: int, step_number: int, review_round: int) -> bool:
    """True when an APPROVE exists at exactly this position."""
    return db.session.execute(
        select(HistoryEntry.id)
        .where(
            HistoryEntry.request_id == request_id,
            HistoryEntry.section_order == section_order,
            HistoryEntry.step_number == step_number,
            HistoryEntry.review_round == review_round,
            HistoryEntry.action == Action.APPROVE.value,
        )
        .limit(1)
    ).first() is not None


def previous_section_participants(request) -> set[str]:
    """
    Who worked the section before the request's current one.

    Covers submitters and approvers of that section on the request itself
    and, for a spawned child, on the parent that handed it off. The owning
    initiator is included so a question always reaches someone. Empty at
    section 0.
    """
    previous = request.current_section_order - 1
    if previous < 0:
        return set()
    owner = request
    sources = [request.id]
    parent = db.session.get(type(request), request.parent_request_id) if request.parent_request_id else None
    if parent is not None and parent.current_section_order == previous:
        owner = parent
        sources.append(parent.id)
    actors = db.session.execute(
        select(HistoryEntry.actor_id)
        .where(
            HistoryEntry.request_id.in_(sources),
            HistoryEntry.section_order == previous,
            HistoryEntry.action.in_([Action.APPROVE.value, HISTORY_SUBMIT]),
        )
        .distinct()
    ).scalars().all()
    users = set(actors)
    if owner.initiator_id:
        users.add(owner.initiator_id)
    return users
