"""
Advancement Engine.

The only writer of request workflow state. Every entry point runs as one
atomic unit under optimistic concurrency:

    1. load the Request (its ``version`` is remembered by SQLAlchemy)
    2. validate the action against status, ledger and resolved actors
    3. append history, mutate the Request, create a child if forking
    4. commit — the UPDATE is conditional on the version read in (1)

A concurrent writer makes step 4 fail with StaleDataError (or the child's
unique ``fork_key`` collide). The unit is rolled back and the whole
validate-then-write cycle reruns, up to WORKFLOW_MAX_ATTEMPTS, after which
ConcurrencyConflictError is raised. Events are emitted only after commit.

Entry points:
    create_request, save_draft, submit_request, act, claim_request, add_comment

Usage:
    from approvalflow.services import advancement_engine as engine

    req = engine.submit_request(request_id, actor_id="u-17")
    req = engine.act(req.id, "u-42", "APPROVE", comment="Looks good")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from flask import current_app
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from approvalflow.core.exceptions import (
    ConcurrencyConflictError,
    ConfigurationError,
    InvalidTransitionError,
    NotFoundError,
    OutOfOrderApprovalError,
    UnauthorizedActionError,
    ValidationError,
)
from approvalflow.models import db
from approvalflow.models.directory import BusinessUnit
from approvalflow.models.request import (
    HISTORY_ADVANCE_SECTION,
    HISTORY_CLAIM,
    HISTORY_COMMENT,
    HISTORY_SUBMIT,
    REQUEST_TRANSITIONS,
    STATUS_APPROVED,
    STATUS_CANCELLED,
    STATUS_DRAFT,
    STATUS_IN_REVIEW,
    STATUS_NEEDS_REVISION,
    STATUS_REJECTED,
    STATUS_SUBMITTED,
    Action,
    HistoryEntry,
    Request,
    _uuid,
    fork_key_for,
)
from approvalflow.models.workflow import CHAIN_STATUS_ACTIVE
from approvalflow.services import ledger, role_resolver, workflow_config_service
from approvalflow.services.event_service import WorkflowEvent, emit_events

logger = logging.getLogger(__name__)

_FORM_VALIDATOR_KEY = "approvalflow.form_validator"

FormValidator = Callable[[object, dict], list]


def _utcnow():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# Atomic unit
# ═════════════════════════════════════════════════════════════════════════════


@dataclass
class _Unit:
    """Result of one validate-then-write attempt."""
    request: Request
    events: list[WorkflowEvent] = field(default_factory=list)

    def transition(self, req: Request, from_status: str | None, action: str, actor_id: str,
                   comment: str | None = None) -> None:
        self.events.append(
            WorkflowEvent(
                request_id=req.id,
                from_status=from_status,
                to_status=req.status,
                action=action,
                actor_id=actor_id,
                section_order=req.current_section_order,
                comment=(comment or "").strip() or None,
            )
        )


def _is_fork_key_collision(exc: IntegrityError) -> bool:
    return "fork_key" in str(exc.orig)


def _run_atomic(request_id: str, operation: Callable[[], _Unit]) -> Request:
    """Run ``operation`` and commit, retrying on optimistic-concurrency conflicts."""
    attempts = current_app.config.get("WORKFLOW_MAX_ATTEMPTS", 3)
    for attempt in range(1, attempts + 1):
        try:
            unit = operation()
            db.session.commit()
        except StaleDataError:
            db.session.rollback()
            logger.warning(
                "Request %s changed underneath us (attempt %d/%d)", request_id, attempt, attempts,
                extra={"request_id": request_id, "attempt": attempt, "event_type": "version_conflict"},
            )
            continue
        except IntegrityError as exc:
            db.session.rollback()
            if not _is_fork_key_collision(exc):
                raise
            logger.warning(
                "Child request for %s already created concurrently (attempt %d/%d)",
                request_id, attempt, attempts,
                extra={"request_id": request_id, "attempt": attempt, "event_type": "fork_conflict"},
            )
            continue
        except Exception:
            db.session.rollback()
            raise
        emit_events(unit.events)
        return unit.request
    raise ConcurrencyConflictError(request_id, attempts)


# ═════════════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════════════


def _load(request_id: str) -> Request:
    req = db.session.get(Request, request_id)
    if req is None:
        raise NotFoundError(resource="Request", resource_id=request_id)
    return req


def _current_section(req: Request):
    workflow_config_service.assert_chain_consistent(req.chain)
    section = req.chain.section_at(req.current_section_order)
    if section is None:
        raise ConfigurationError(
            f"Request {req.id} points at section {req.current_section_order}, "
            f"which chain {req.chain_id} does not define",
            chain_id=req.chain_id,
        )
    return section


def _require_transition(req: Request, action: str, reason: str | None = None) -> None:
    rule = REQUEST_TRANSITIONS[action]
    if req.status not in rule["from"]:
        raise InvalidTransitionError(
            req.id, action, req.status,
            reason or f"allowed only from {', '.join(rule['from'])}",
        )


def _record(req: Request, actor_id: str, action: str, comment: str | None = None,
            step_number: int | None = None) -> HistoryEntry:
    entry = HistoryEntry(
        request_id=req.id,
        actor_id=actor_id,
        action=action,
        comment=(comment or "").strip() or None,
        section_order=req.current_section_order,
        step_number=step_number,
        review_round=req.review_round,
    )
    db.session.add(entry)
    return entry


def _touch(req: Request) -> None:
    # Forces an UPDATE so the version check covers ledger-only writes too
    req.updated_at = _utcnow()


def _system_actor() -> str:
    return current_app.config.get("WORKFLOW_SYSTEM_ACTOR", "system")


def _warn_if_stalled(req: Request, section) -> None:
    step = ledger.next_pending_step(req, section)
    if step is None:
        return
    if not role_resolver.resolve_approvers(step.approver_role, req.business_unit_id):
        logger.warning(
            "Request %s is stalled: nobody holds role '%s' for step %d",
            req.id, step.approver_role.name, step.step_number,
            extra={
                "request_id": req.id,
                "section_order": req.current_section_order,
                "step_number": step.step_number,
                "event_type": "stalled",
            },
        )


def register_form_validator(validator: FormValidator | None) -> None:
    """Install the external form validator: ``validator(section, data) -> [errors]``."""
    current_app.extensions[_FORM_VALIDATOR_KEY] = validator


def _validate_form(section, data: dict) -> None:
    validator = current_app.extensions.get(_FORM_VALIDATOR_KEY)
    if validator is None:
        return
    errors = validator(section, data) or []
    if errors:
        raise ValidationError(
            f"Submitted data does not satisfy section '{section.name}'",
            details={"errors": list(errors)},
        )


# ═════════════════════════════════════════════════════════════════════════════
# Section advancement
# ═════════════════════════════════════════════════════════════════════════════


def _enter_review(unit: _Unit, req: Request, section, cause: str, actor_id: str) -> None:
    """SUBMITTED → IN_REVIEW on entry into an APPROVAL section."""
    from_status = req.status
    req.status = STATUS_IN_REVIEW
    unit.transition(req, from_status, cause, actor_id)
    _warn_if_stalled(req, section)


def _requires_fork(req: Request, next_section) -> bool:
    if next_section.is_hard_fork:
        return True
    roles = next_section.initiator_roles
    if not roles:
        return False
    if req.initiator_id is None:
        return True
    return not role_resolver.holds_any(req.initiator_id, roles, req.business_unit_id)


def _complete_section(unit: _Unit, req: Request, section, cause: str, actor_id: str) -> None:
    """The current section is resolved: finish, advance in place, or hand off."""
    chain = req.chain
    if chain.is_last_section(section.section_order):
        from_status = req.status
        req.status = STATUS_APPROVED
        req.completed_at = _utcnow()
        unit.transition(req, from_status, cause, actor_id)
        logger.info(
            "Request %s approved at final section %d", req.id, section.section_order,
            extra={"request_id": req.id, "chain_id": req.chain_id, "event_type": "chain_completed"},
        )
        return

    next_section = chain.section_at(section.section_order + 1)
    if _requires_fork(req, next_section):
        _hand_off(unit, req, next_section, actor_id)
    else:
        _advance_in_place(unit, req, next_section, actor_id)


def _advance_in_place(unit: _Unit, req: Request, next_section, actor_id: str) -> None:
    from_status = req.status
    _record(req, actor_id, HISTORY_ADVANCE_SECTION,
            comment=f"Advanced to section {next_section.section_order} ({next_section.name})")
    req.current_section_order = next_section.section_order
    if next_section.is_approval:
        req.status = STATUS_IN_REVIEW
    else:
        # FORM section: the same initiator submits its data next
        req.status = STATUS_SUBMITTED
    unit.transition(req, from_status, HISTORY_ADVANCE_SECTION, actor_id)
    if next_section.is_approval:
        _warn_if_stalled(req, next_section)


def _spawn_child(parent: Request, next_section) -> tuple[Request, bool]:
    """Create (or find) the child request for ``next_section``.

    The child is keyed by ``fork_key`` so a replayed advancement finds the
    existing child instead of creating a second one.

    Returns:
        (child, created)
    """
    key = fork_key_for(parent.chain_id, parent.root_request_id, next_section.section_order)
    existing = Request.query.filter_by(fork_key=key).first()
    if existing is not None:
        return existing, False

    eligible = role_resolver.resolve_initiators(next_section, parent.business_unit_id)
    initiator_id = next(iter(eligible)) if len(eligible) == 1 else None
    if not eligible:
        logger.warning(
            "No eligible initiator for section %d of chain %s; child left unassigned",
            next_section.section_order, parent.chain_id,
            extra={"request_id": parent.id, "chain_id": parent.chain_id, "event_type": "stalled"},
        )
    elif initiator_id is None:
        logger.info(
            "%d eligible initiators for section %d; child left unassigned until claimed",
            len(eligible), next_section.section_order,
            extra={"request_id": parent.id, "chain_id": parent.chain_id, "event_type": "claim_pending"},
        )

    child = Request(
        id=_uuid(),
        chain_id=parent.chain_id,
        business_unit_id=parent.business_unit_id,
        initiator_id=initiator_id,
        status=STATUS_SUBMITTED if next_section.is_approval else STATUS_DRAFT,
        current_section_order=next_section.section_order,
        # Approval-only sections review the parent's document; forms start empty
        data=dict(parent.data or {}) if next_section.is_approval else {},
        parent_request_id=parent.id,
        root_request_id=parent.root_request_id,
        fork_key=key,
    )
    db.session.add(child)
    return child, True


def _hand_off(unit: _Unit, parent: Request, next_section, actor_id: str) -> None:
    child, created = _spawn_child(parent, next_section)

    from_status = parent.status
    _record(parent, actor_id, HISTORY_ADVANCE_SECTION,
            comment=f"Handed off to request {child.id} for section {next_section.section_order}")
    parent.status = STATUS_APPROVED
    parent.is_handed_off = True
    parent.completed_at = _utcnow()
    unit.transition(parent, from_status, HISTORY_ADVANCE_SECTION, actor_id)

    if not created:
        return

    system = _system_actor()
    _record(child, system, HISTORY_ADVANCE_SECTION,
            comment=f"Created from request {parent.id} completing section {parent.current_section_order}")
    unit.transition(child, None, HISTORY_ADVANCE_SECTION, system)
    if next_section.is_approval:
        _enter_review(unit, child, next_section, HISTORY_ADVANCE_SECTION, system)
    logger.info(
        "Request %s handed off to %s (section %d, initiator=%s)",
        parent.id, child.id, next_section.section_order, child.initiator_id or "unassigned",
        extra={"request_id": parent.id, "chain_id": parent.chain_id, "event_type": "fork"},
    )


# ═════════════════════════════════════════════════════════════════════════════
# Public API
# ═════════════════════════════════════════════════════════════════════════════


def create_request(chain_id: int, business_unit_id: int, initiator_id: str,
                   data: dict | None = None) -> Request:
    """Open a DRAFT request at section 0 of an active, latest chain."""
    chain = workflow_config_service.get_chain(chain_id)
    if chain.status != CHAIN_STATUS_ACTIVE:
        raise ValidationError(f"Chain {chain_id} is {chain.status}; requests need an active chain")
    if not chain.is_latest:
        latest = workflow_config_service.get_latest_chain(chain_id)
        raise ValidationError(
            f"Chain {chain_id} was superseded by version {latest.version} (chain {latest.id})"
        )
    workflow_config_service.assert_chain_consistent(chain)
    if db.session.get(BusinessUnit, business_unit_id) is None:
        raise NotFoundError(resource="BusinessUnit", resource_id=business_unit_id)

    first = chain.section_at(0)
    roles = first.initiator_roles
    if roles and not role_resolver.holds_any(initiator_id, roles, business_unit_id):
        raise UnauthorizedActionError(
            None, initiator_id, "initiate",
            f"section '{first.name}' requires one of: {', '.join(r.name for r in roles)}",
        )

    request_id = _uuid()
    req = Request(
        id=request_id,
        chain_id=chain.id,
        business_unit_id=business_unit_id,
        initiator_id=initiator_id,
        status=STATUS_DRAFT,
        current_section_order=0,
        data=data or {},
        root_request_id=request_id,
    )
    db.session.add(req)
    db.session.commit()
    logger.info(
        "Request %s created on chain %s", req.id, chain.id,
        extra={"request_id": req.id, "chain_id": chain.id, "actor_id": initiator_id},
    )
    return req


def save_draft(request_id: str, actor_id: str, data: dict) -> Request:
    """Replace the payload of a request its initiator is still editing."""
    def _apply() -> _Unit:
        req = _load(request_id)
        section = _current_section(req)
        editable = req.status in (STATUS_DRAFT, STATUS_NEEDS_REVISION) or (
            req.status == STATUS_SUBMITTED and not section.is_approval
        )
        if not editable:
            raise InvalidTransitionError(req.id, "edit", req.status, "request is not editable")
        if actor_id != req.initiator_id:
            raise UnauthorizedActionError(req.id, actor_id, "edit", "only the initiator may edit")
        req.data = dict(data or {})
        _touch(req)
        return _Unit(req)

    return _run_atomic(request_id, _apply)


def submit_request(request_id: str, actor_id: str, data: dict | None = None) -> Request:
    """Submit (or resubmit) a request.

    DRAFT / NEEDS_REVISION / SUBMITTED-at-a-FORM-section → SUBMITTED.
    An APPROVAL section then moves straight to IN_REVIEW; a FORM section is
    complete on submission and advances. Resubmission after revision opens
    a new review round, which empties the current section's ledger without
    touching history.
    """
    def _apply() -> _Unit:
        req = _load(request_id)
        section = _current_section(req)
        _require_transition(req, HISTORY_SUBMIT)
        if req.status == STATUS_SUBMITTED and section.is_approval:
            raise InvalidTransitionError(req.id, HISTORY_SUBMIT, req.status, "already submitted")
        if req.initiator_id is None:
            raise UnauthorizedActionError(req.id, actor_id, "submit", "request has not been claimed yet")
        if actor_id != req.initiator_id:
            raise UnauthorizedActionError(req.id, actor_id, "submit", "only the initiator may submit")

        if data is not None:
            req.data = dict(data)
        _validate_form(section, req.data or {})

        unit = _Unit(req)
        from_status = req.status
        resubmission = from_status == STATUS_NEEDS_REVISION
        if resubmission:
            req.review_round += 1
        req.status = STATUS_SUBMITTED
        req.submitted_at = _utcnow()
        _record(req, actor_id, HISTORY_SUBMIT,
                comment="Request resubmitted after revision" if resubmission else "Request submitted")
        unit.transition(req, from_status, HISTORY_SUBMIT, actor_id)

        if section.is_approval:
            _enter_review(unit, req, section, HISTORY_SUBMIT, actor_id)
        else:
            _complete_section(unit, req, section, HISTORY_SUBMIT, actor_id)
        return unit

    return _run_atomic(request_id, _apply)


def act(request_id: str, actor_id: str, action: "Action | str", comment: str | None = None, *,
        expected_section_order: int | None = None,
        expected_step_number: int | None = None) -> Request:
    """Apply an approver or initiator action to a request.

    APPROVE, REJECT, REQUEST_REVISION and CANCEL move the request.
    REQUEST_CLARIFICATION and ASK_PREVIOUS_SECTION record a question from
    the current step's approver and notify whoever must answer; the status
    stays IN_REVIEW. Every action except APPROVE needs a non-blank comment.

    ``expected_section_order`` + ``expected_step_number`` name the step the
    caller meant to approve. If that step is already satisfied (someone got
    there first, or this is a replay) the call is a no-op and returns the
    request as it stands. Retries inside the engine pin the position the
    same way, so a lost race never double-advances.

    Raises:
        NotFoundError, InvalidTransitionError, OutOfOrderApprovalError,
        UnauthorizedActionError, ValidationError, ConfigurationError,
        ConcurrencyConflictError
    """
    action = Action.parse(action)
    pin: dict = {}
    if expected_section_order is not None and expected_step_number is not None:
        pin = {"section_order": expected_section_order, "step_number": expected_step_number}

    def _apply() -> _Unit:
        req = _load(request_id)
        if action is Action.APPROVE and pin and _already_satisfied(req, pin):
            logger.info(
                "Approval of step %s.%s on %s already recorded; nothing to do",
                pin["section_order"], pin["step_number"], req.id,
                extra={"request_id": req.id, "actor_id": actor_id, "event_type": "duplicate_approval"},
            )
            return _Unit(req)

        match action:
            case Action.APPROVE:
                return _approve(req, actor_id, comment, pin)
            case Action.REJECT:
                return _reject(req, actor_id, comment)
            case Action.REQUEST_REVISION:
                return _request_revision(req, actor_id, comment)
            case Action.CANCEL:
                return _cancel(req, actor_id, comment)
            case Action.REQUEST_CLARIFICATION | Action.ASK_PREVIOUS_SECTION:
                return _ask(req, actor_id, comment, action)
            case _:
                raise ValidationError(f"Unsupported action: {action}")

    return _run_atomic(request_id, _apply)


def _already_satisfied(req: Request, pin: dict) -> bool:
    review_round = pin.get("review_round", req.review_round)
    return ledger.is_step_satisfied(req.id, pin["section_order"], pin["step_number"], review_round)


def _pending_step_for_review(req: Request, action: str):
    _require_transition(req, action)
    section = _current_section(req)
    if not section.is_approval:
        raise InvalidTransitionError(req.id, action, req.status, "current section is not an approval section")
    step = ledger.next_pending_step(req, section)
    if step is None:
        raise InvalidTransitionError(req.id, action, req.status, "current section has no pending step")
    return section, step


def _require_current_approver(req: Request, step, actor_id: str, action: str) -> None:
    if actor_id not in role_resolver.resolve_approvers(step.approver_role, req.business_unit_id):
        raise UnauthorizedActionError(
            req.id, actor_id, action,
            f"not an eligible approver for step {step.step_number} ({step.approver_role.name})",
        )


def _require_reason(req: Request, action: str, comment: str | None) -> None:
    if not (comment or "").strip():
        raise ValidationError(
            f"A reason is required for {action} on request {req.id}",
            details={"comment": "required"},
        )


def _approve(req: Request, actor_id: str, comment: str | None, pin: dict) -> _Unit:
    section, pending = _pending_step_for_review(req, Action.APPROVE.value)

    if actor_id not in role_resolver.resolve_approvers(pending.approver_role, req.business_unit_id):
        done = ledger.approved_step_numbers(req)
        for later in section.steps:
            if later.step_number <= pending.step_number or later.step_number in done:
                continue
            if actor_id in role_resolver.resolve_approvers(later.approver_role, req.business_unit_id):
                raise OutOfOrderApprovalError(req.id, later.step_number, pending.step_number)
        _require_current_approver(req, pending, actor_id, Action.APPROVE.value)

    pin.update(
        section_order=req.current_section_order,
        step_number=pending.step_number,
        review_round=req.review_round,
    )

    unit = _Unit(req)
    _record(req, actor_id, Action.APPROVE.value, comment, step_number=pending.step_number)
    _touch(req)
    if ledger.is_section_complete(req, section):
        _complete_section(unit, req, section, Action.APPROVE.value, actor_id)
    else:
        unit.transition(req, req.status, Action.APPROVE.value, actor_id)
        _warn_if_stalled(req, section)
    return unit


def _reject(req: Request, actor_id: str, comment: str | None) -> _Unit:
    _, step = _pending_step_for_review(req, Action.REJECT.value)
    _require_current_approver(req, step, actor_id, Action.REJECT.value)
    _require_reason(req, Action.REJECT.value, comment)

    unit = _Unit(req)
    from_status = req.status
    _record(req, actor_id, Action.REJECT.value, comment, step_number=step.step_number)
    req.status = STATUS_REJECTED
    req.completed_at = _utcnow()
    unit.transition(req, from_status, Action.REJECT.value, actor_id, comment)
    return unit


def _request_revision(req: Request, actor_id: str, comment: str | None) -> _Unit:
    _, step = _pending_step_for_review(req, Action.REQUEST_REVISION.value)
    _require_current_approver(req, step, actor_id, Action.REQUEST_REVISION.value)
    _require_reason(req, Action.REQUEST_REVISION.value, comment)

    unit = _Unit(req)
    from_status = req.status
    _record(req, actor_id, Action.REQUEST_REVISION.value, comment, step_number=step.step_number)
    req.status = STATUS_NEEDS_REVISION
    unit.transition(req, from_status, Action.REQUEST_REVISION.value, actor_id, comment)
    return unit


def _cancel(req: Request, actor_id: str, comment: str | None) -> _Unit:
    _require_transition(req, Action.CANCEL.value)
    if not _may_cancel(req, actor_id):
        raise UnauthorizedActionError(
            req.id, actor_id, Action.CANCEL.value,
            "only the initiator or an approver of the pending step may cancel",
        )
    _require_reason(req, Action.CANCEL.value, comment)

    unit = _Unit(req)
    from_status = req.status
    _record(req, actor_id, Action.CANCEL.value, comment)
    req.status = STATUS_CANCELLED
    req.completed_at = _utcnow()
    unit.transition(req, from_status, Action.CANCEL.value, actor_id, comment)
    return unit


def _may_cancel(req: Request, actor_id: str) -> bool:
    """
    Cancellers are the initiator and approvers of the pending step. An
    unassigned request may also be cancelled by anyone who could claim it
    and by the initiator of the request it was spawned from.
    """
    if actor_id == req.initiator_id:
        return True
    section = _current_section(req)
    if req.status == STATUS_IN_REVIEW and section.is_approval:
        step = ledger.next_pending_step(req, section)
        if step is not None and actor_id in role_resolver.resolve_approvers(step.approver_role, req.business_unit_id):
            return True
    if req.initiator_id is None:
        if actor_id in role_resolver.resolve_initiators(section, req.business_unit_id):
            return True
        parent = db.session.get(Request, req.parent_request_id) if req.parent_request_id else None
        if parent is not None and actor_id == parent.initiator_id:
            return True
    return False


def _ask(req: Request, actor_id: str, comment: str | None, action: Action) -> _Unit:
    """Record a question from the pending step's approver; the status does not move."""
    _, step = _pending_step_for_review(req, action.value)
    _require_current_approver(req, step, actor_id, action.value)
    if action is Action.ASK_PREVIOUS_SECTION and req.current_section_order == 0:
        raise InvalidTransitionError(req.id, action.value, req.status, "there is no earlier section")
    _require_reason(req, action.value, comment)

    unit = _Unit(req)
    _record(req, actor_id, action.value, comment, step_number=step.step_number)
    _touch(req)
    unit.transition(req, req.status, action.value, actor_id, comment)
    logger.info(
        "%s asked about request %s at step %d", actor_id, req.id, step.step_number,
        extra={
            "request_id": req.id,
            "actor_id": actor_id,
            "action": action.value,
            "section_order": req.current_section_order,
            "step_number": step.step_number,
        },
    )
    return unit


def claim_request(request_id: str, actor_id: str) -> Request:
    """Assign an unassigned forked request to an eligible initiator."""
    def _apply() -> _Unit:
        req = _load(request_id)
        _require_transition(req, HISTORY_CLAIM)
        if req.initiator_id is not None:
            raise InvalidTransitionError(
                req.id, HISTORY_CLAIM, req.status, f"already assigned to {req.initiator_id}",
            )
        section = _current_section(req)
        if actor_id not in role_resolver.resolve_initiators(section, req.business_unit_id):
            raise UnauthorizedActionError(
                req.id, actor_id, HISTORY_CLAIM, f"not an eligible initiator for '{section.name}'",
            )
        unit = _Unit(req)
        req.initiator_id = actor_id
        _record(req, actor_id, HISTORY_CLAIM)
        _touch(req)
        unit.transition(req, req.status, HISTORY_CLAIM, actor_id)
        return unit

    return _run_atomic(request_id, _apply)


def add_comment(request_id: str, actor_id: str, comment: str) -> HistoryEntry:
    """Append a COMMENT entry. Allowed in any state; changes nothing else."""
    if not (comment or "").strip():
        raise ValidationError("Comment text is required", details={"comment": "required"})
    req = _load(request_id)
    entry = _record(req, actor_id, HISTORY_COMMENT, comment)
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return entry
