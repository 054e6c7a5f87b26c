"""
Approval Flow
Identity / role directory models.

Models:
    - BusinessUnit: organisational scope a request is filed under
    - Role: named role, either organisation-wide or business-unit scoped
    - RoleAssignment: user → role grant
    - BusinessUnitMembership: user → business unit membership

User identities are opaque strings owned by the external identity
provider; there is no users table.
"""

from datetime import datetime, timezone

from approvalflow.models import db

# ── Constants ────────────────────────────────────────────────────────────────

ROLE_SCOPE_BU = "BU"
ROLE_SCOPE_ORGANIZATION = "ORGANIZATION"
ROLE_SCOPES = {ROLE_SCOPE_BU, ROLE_SCOPE_ORGANIZATION}


def _utcnow():
    return datetime.now(timezone.utc)


class BusinessUnit(db.Model):
    __tablename__ = "business_units"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False, unique=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {"id": self.id, "name": self.name}

    def __repr__(self):
        return f"<BusinessUnit {self.id}: {self.name}>"


class Role(db.Model):
    """
    A role an approver or initiator must hold.

    ORGANIZATION roles resolve to every holder. BU roles resolve only to
    holders who are also members of the request's business unit.
    """

    __tablename__ = "roles"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False, unique=True)
    scope = db.Column(
        db.String(20), nullable=False, default=ROLE_SCOPE_BU,
        comment="BU | ORGANIZATION",
    )
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    assignments = db.relationship(
        "RoleAssignment", backref="role", lazy="dynamic", cascade="all, delete-orphan",
    )

    @property
    def is_org_wide(self) -> bool:
        return self.scope == ROLE_SCOPE_ORGANIZATION

    def to_dict(self):
        return {"id": self.id, "name": self.name, "scope": self.scope}

    def __repr__(self):
        return f"<Role {self.id}: {self.name} ({self.scope})>"


class RoleAssignment(db.Model):
    __tablename__ = "role_assignments"
    __table_args__ = (
        db.UniqueConstraint("user_id", "role_id", name="uq_role_assignment_user_role"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    role_id = db.Column(
        db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)


class BusinessUnitMembership(db.Model):
    __tablename__ = "business_unit_memberships"
    __table_args__ = (
        db.UniqueConstraint("user_id", "business_unit_id", name="uq_bu_membership_user_bu"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    business_unit_id = db.Column(
        db.Integer, db.ForeignKey("business_units.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
