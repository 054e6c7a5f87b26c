"""
Workflow Configuration Store.

Owns chain / section / step definitions. Definitions are plain dicts (the
same shape as the JSON files loaded by ``flask load-chain``):

    {
        "name": "Purchase Request",
        "business_unit": "Finance",            # optional, by name
        "sections": [
            {"order": 0, "kind": "FORM", "name": "Request",
             "form_template_id": "po-form", "initiator_roles": ["Requester"]},
            {"order": 1, "kind": "APPROVAL", "name": "Manager review",
             "steps": [{"step_number": 1, "approver_role": "Manager"}]},
        ],
    }

Structural rules (violations raise ConfigurationError; nothing is written):
    - sections contiguous and strictly increasing by order, starting at 0
    - APPROVAL sections: at least one step, step numbers contiguous from 1
    - FORM sections: no steps
    - every referenced role exists

A chain referenced by any request is never edited in place; update_chain
writes a new version instead.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from sqlalchemy import select

from approvalflow.core.exceptions import ConfigurationError, NotFoundError, ValidationError
from approvalflow.models import db
from approvalflow.models.directory import BusinessUnit, Role
from approvalflow.models.request import Request
from approvalflow.models.workflow import (
    CHAIN_STATUS_ACTIVE,
    CHAIN_STATUS_ARCHIVED,
    CHAIN_STATUS_DRAFT,
    CHAIN_STATUSES,
    SECTION_KIND_APPROVAL,
    SECTION_KIND_FORM,
    SECTION_KINDS,
    WorkflowChain,
    WorkflowSection,
    WorkflowSectionInitiator,
    WorkflowStep,
)

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Validation
# ═════════════════════════════════════════════════════════════════════════════


def _check_orders(orders: list, problems: list[str], label: str, start: int) -> None:
    if any(not isinstance(o, int) or isinstance(o, bool) for o in orders):
        problems.append(f"{label} values must be integers, got {orders}")
        return
    if len(set(orders)) != len(orders):
        problems.append(f"duplicate {label} values {sorted(orders)}")
    elif sorted(orders) != list(range(start, start + len(orders))):
        problems.append(
            f"{label} values must be contiguous from {start}, got {sorted(orders)}"
        )


def validate_chain_definition(definition: dict) -> list[str]:
    """Return every structural problem in a chain definition (empty = valid)."""
    problems: list[str] = []
    if not (definition.get("name") or "").strip():
        problems.append("chain name is required")
    status = definition.get("status")
    if status is not None and status not in CHAIN_STATUSES:
        problems.append(f"status must be one of {sorted(CHAIN_STATUSES)}, got {status!r}")

    sections = definition.get("sections") or []
    if not sections:
        problems.append("a chain needs at least one section")
        return problems

    _check_orders([s.get("order") for s in sections], problems, "section order", 0)

    known_roles = {r.name for r in Role.query.all()}
    for s in sections:
        where = f"section {s.get('order')}"
        kind = s.get("kind")
        if kind not in SECTION_KINDS:
            problems.append(f"{where}: kind must be one of {sorted(SECTION_KINDS)}, got {kind!r}")
        if not (s.get("name") or "").strip():
            problems.append(f"{where}: name is required")

        steps = s.get("steps") or []
        if kind == SECTION_KIND_APPROVAL:
            if not steps:
                problems.append(f"{where}: APPROVAL section needs at least one step")
            else:
                _check_orders([st.get("step_number") for st in steps], problems, f"{where} step_number", 1)
        elif kind == SECTION_KIND_FORM and steps:
            problems.append(f"{where}: FORM section cannot have approval steps")

        for st in steps:
            if st.get("approver_role") not in known_roles:
                problems.append(f"{where}: unknown approver role {st.get('approver_role')!r}")
        for role_name in s.get("initiator_roles") or []:
            if role_name not in known_roles:
                problems.append(f"{where}: unknown initiator role {role_name!r}")

    return problems


def assert_chain_consistent(chain: WorkflowChain) -> None:
    """Re-check a persisted chain. Raises ConfigurationError on any violation.

    The engine calls this before acting so corrupted configuration halts the
    chain instead of being guessed around.
    """
    problems: list[str] = []
    orders = [s.section_order for s in chain.sections]
    if not orders:
        problems.append("chain has no sections")
    else:
        _check_orders(orders, problems, "section order", 0)
    for s in chain.sections:
        if s.kind not in SECTION_KINDS:
            problems.append(f"section {s.section_order}: unknown kind {s.kind!r}")
        if s.kind == SECTION_KIND_APPROVAL:
            numbers = [st.step_number for st in s.steps]
            if not numbers:
                problems.append(f"section {s.section_order}: APPROVAL section has no steps")
            else:
                _check_orders(numbers, problems, f"section {s.section_order} step_number", 1)
        elif s.steps:
            problems.append(f"section {s.section_order}: FORM section has approval steps")
    if problems:
        logger.error(
            "Workflow chain %s failed consistency check",
            chain.id,
            extra={"chain_id": chain.id, "event_type": "configuration_error"},
        )
        raise ConfigurationError("Workflow chain is inconsistent", chain_id=chain.id, problems=problems)


# ═════════════════════════════════════════════════════════════════════════════
# Writes
# ═════════════════════════════════════════════════════════════════════════════


def _resolve_business_unit_id(definition: dict) -> int | None:
    if definition.get("business_unit_id") is not None:
        return definition["business_unit_id"]
    name = definition.get("business_unit")
    if not name:
        return None
    bu = BusinessUnit.query.filter_by(name=name).first()
    if bu is None:
        raise NotFoundError(resource="BusinessUnit", resource_id=name)
    return bu.id


def _build_sections(chain: WorkflowChain, definition: dict) -> None:
    roles = {r.name: r for r in Role.query.all()}
    for s in sorted(definition["sections"], key=lambda x: x["order"]):
        section = WorkflowSection(
            section_order=s["order"],
            kind=s["kind"],
            name=s["name"].strip(),
            description=s.get("description"),
            form_template_id=s.get("form_template_id"),
            is_hard_fork=bool(s.get("hard_fork", False)),
        )
        for st in sorted(s.get("steps") or [], key=lambda x: x["step_number"]):
            section.steps.append(
                WorkflowStep(step_number=st["step_number"], approver_role=roles[st["approver_role"]])
            )
        for role_name in s.get("initiator_roles") or []:
            section.initiators.append(WorkflowSectionInitiator(role=roles[role_name]))
        chain.sections.append(section)


def _validated(definition: dict, chain_id: int | None = None) -> None:
    problems = validate_chain_definition(definition)
    if problems:
        raise ConfigurationError("Invalid workflow chain definition", chain_id=chain_id, problems=problems)


def create_chain(definition: dict, created_by: str | None = None) -> WorkflowChain:
    """Validate and persist a new chain (version 1, status draft unless given)."""
    _validated(definition)
    chain = WorkflowChain(
        name=definition["name"].strip(),
        description=definition.get("description"),
        business_unit_id=_resolve_business_unit_id(definition),
        status=definition.get("status") or CHAIN_STATUS_DRAFT,
        created_by=created_by,
    )
    _build_sections(chain, definition)
    db.session.add(chain)
    db.session.commit()
    logger.info(
        "Workflow chain created: %s (%d sections)", chain.name, chain.section_count,
        extra={"chain_id": chain.id},
    )
    return chain


def is_chain_referenced(chain_id: int) -> bool:
    return db.session.execute(
        select(Request.id).where(Request.chain_id == chain_id).limit(1)
    ).first() is not None


def update_chain(chain_id: int, definition: dict, updated_by: str | None = None) -> WorkflowChain:
    """Apply an edited definition.

    Unreferenced chains are rewritten in place. A chain that any request
    points at is left untouched and a new version is created.

    Returns:
        The chain row now carrying the edited definition.
    """
    chain = get_chain(chain_id)
    if not chain.is_latest:
        raise ValidationError(
            f"Chain {chain_id} is not the latest version; edit the latest version instead"
        )
    _validated(definition, chain_id=chain_id)

    if not is_chain_referenced(chain_id):
        chain.name = definition["name"].strip()
        chain.description = definition.get("description")
        chain.business_unit_id = _resolve_business_unit_id(definition)
        chain.sections.clear()
        db.session.flush()
        _build_sections(chain, definition)
        db.session.commit()
        logger.info("Workflow chain updated in place", extra={"chain_id": chain.id})
        return chain

    new_chain = WorkflowChain(
        name=definition["name"].strip(),
        description=definition.get("description"),
        business_unit_id=_resolve_business_unit_id(definition),
        version=chain.version + 1,
        parent_chain_id=chain.id,
        status=chain.status,
        created_by=updated_by,
    )
    _build_sections(new_chain, definition)
    chain.is_latest = False
    db.session.add(new_chain)
    db.session.commit()
    logger.info(
        "Workflow chain %s is referenced; created version %d as chain %s",
        chain.id, new_chain.version, new_chain.id,
        extra={"chain_id": new_chain.id},
    )
    return new_chain


def activate_chain(chain_id: int) -> WorkflowChain:
    chain = get_chain(chain_id)
    assert_chain_consistent(chain)
    chain.status = CHAIN_STATUS_ACTIVE
    db.session.commit()
    return chain


def archive_chain(chain_id: int) -> WorkflowChain:
    """Stop new requests on a chain. In-flight requests keep running."""
    chain = get_chain(chain_id)
    chain.status = CHAIN_STATUS_ARCHIVED
    db.session.commit()
    return chain


def load_chain_file(path: str | Path, activate: bool = False, created_by: str | None = None) -> WorkflowChain:
    """Create a chain from a JSON definition file."""
    try:
        definition = json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Chain file {path} is not valid JSON", problems=[str(exc)]) from exc
    chain = create_chain(definition, created_by=created_by)
    if activate:
        chain = activate_chain(chain.id)
    return chain


# ═════════════════════════════════════════════════════════════════════════════
# Reads
# ═════════════════════════════════════════════════════════════════════════════


def get_chain(chain_id: int) -> WorkflowChain:
    chain = db.session.get(WorkflowChain, chain_id)
    if chain is None:
        raise NotFoundError(resource="WorkflowChain", resource_id=chain_id)
    return chain


def get_section(chain_id: int, order: int) -> WorkflowSection:
    """Return the section at ``order``; NotFound when out of range."""
    section = get_chain(chain_id).section_at(order)
    if section is None:
        raise NotFoundError(resource="WorkflowSection", resource_id=f"{chain_id}#{order}")
    return section


def get_step(chain_id: int, order: int, step_number: int) -> WorkflowStep:
    step = get_section(chain_id, order).step_at(step_number)
    if step is None:
        raise NotFoundError(resource="WorkflowStep", resource_id=f"{chain_id}#{order}.{step_number}")
    return step


def get_latest_chain(chain_id: int) -> WorkflowChain:
    """Follow the version lineage from ``chain_id`` to its latest version."""
    chain = get_chain(chain_id)
    seen = {chain.id}
    while not chain.is_latest:
        successor = WorkflowChain.query.filter_by(parent_chain_id=chain.id).first()
        if successor is None or successor.id in seen:
            break
        seen.add(successor.id)
        chain = successor
    return chain


def list_chains(include_archived: bool = False) -> list[WorkflowChain]:
    q = WorkflowChain.query.filter_by(is_latest=True)
    if not include_archived:
        q = q.filter(WorkflowChain.status != CHAIN_STATUS_ARCHIVED)
    return q.order_by(WorkflowChain.id).all()
