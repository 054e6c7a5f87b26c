"""
Role Resolver.

Turns a role reference plus a business-unit scope into the set of user ids
currently able to act:

    ORGANIZATION roles → every holder of the role
    BU roles           → holders of the role who are also members of the BU

An empty result is not an error. The engine treats it as a stalled but
valid position and surfaces it through workflow progress.

Usage:
    from approvalflow.services import role_resolver

    approvers = role_resolver.resolve_approvers(step.approver_role, request.business_unit_id)
"""

from __future__ import annotations

from sqlalchemy import select

from approvalflow.core.exceptions import ConflictError, NotFoundError
from approvalflow.models import db
from approvalflow.models.directory import (
    ROLE_SCOPES,
    BusinessUnit,
    BusinessUnitMembership,
    Role,
    RoleAssignment,
)


def resolve_approvers(role: Role, business_unit_id: int) -> set[str]:
    """Return user ids eligible for ``role`` within ``business_unit_id``."""
    stmt = select(RoleAssignment.user_id).where(RoleAssignment.role_id == role.id)
    if not role.is_org_wide:
        stmt = stmt.join(
            BusinessUnitMembership,
            BusinessUnitMembership.user_id == RoleAssignment.user_id,
        ).where(BusinessUnitMembership.business_unit_id == business_unit_id)
    return set(db.session.execute(stmt).scalars().all())


def resolve_initiators(section, business_unit_id: int) -> set[str]:
    """Union of eligible users over a section's initiator roles."""
    users: set[str] = set()
    for role in section.initiator_roles:
        users |= resolve_approvers(role, business_unit_id)
    return users


def resolve_section_approvers(section, business_unit_id: int) -> set[str]:
    """Everyone eligible for any step of an approval section."""
    users: set[str] = set()
    for step in section.steps:
        users |= resolve_approvers(step.approver_role, business_unit_id)
    return users


def holds_any(user_id: str, roles, business_unit_id: int) -> bool:
    return any(user_id in resolve_approvers(role, business_unit_id) for role in roles)


# ── Directory maintenance ────────────────────────────────────────────────────
# Thin writers used by seeding scripts and tests; the directory itself is
# owned by the identity provider in production.


def get_role_by_name(name: str) -> Role:
    role = Role.query.filter_by(name=name).first()
    if role is None:
        raise NotFoundError(resource="Role", resource_id=name)
    return role


def create_role(name: str, scope: str = "BU") -> Role:
    if scope not in ROLE_SCOPES:
        raise ValueError(f"Invalid role scope '{scope}'. Must be one of: {sorted(ROLE_SCOPES)}")
    if Role.query.filter_by(name=name).first():
        raise ConflictError(resource="Role", field="name", value=name)
    role = Role(name=name, scope=scope)
    db.session.add(role)
    db.session.flush()
    return role


def ensure_business_unit(name: str) -> BusinessUnit:
    bu = BusinessUnit.query.filter_by(name=name).first()
    if bu is None:
        bu = BusinessUnit(name=name)
        db.session.add(bu)
        db.session.flush()
    return bu


def assign_role(user_id: str, role: Role) -> None:
    if not RoleAssignment.query.filter_by(user_id=user_id, role_id=role.id).first():
        db.session.add(RoleAssignment(user_id=user_id, role_id=role.id))
        db.session.flush()


def add_member(user_id: str, business_unit_id: int) -> None:
    if not BusinessUnitMembership.query.filter_by(
        user_id=user_id, business_unit_id=business_unit_id,
    ).first():
        db.session.add(BusinessUnitMembership(user_id=user_id, business_unit_id=business_unit_id))
        db.session.flush()
