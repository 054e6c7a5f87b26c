"""
Approval Flow
Workflow configuration models.

Models:
    - WorkflowChain: versioned, ordered list of sections
    - WorkflowSection: one stage of a chain (FORM or APPROVAL)
    - WorkflowSectionInitiator: role allowed to initiate a section
    - WorkflowStep: one required approval inside an APPROVAL section

Business rules:
    - section_order is contiguous from 0 within a chain.
    - step_number is contiguous from 1 within an APPROVAL section.
    - FORM sections carry no steps.
    - A chain referenced by any request is never edited in place; edits
      produce a new version (see workflow_config_service.update_chain).
"""

from datetime import datetime, timezone

from approvalflow.models import db

# ── Constants ────────────────────────────────────────────────────────────────

SECTION_KIND_FORM = "FORM"
SECTION_KIND_APPROVAL = "APPROVAL"
SECTION_KINDS = {SECTION_KIND_FORM, SECTION_KIND_APPROVAL}

CHAIN_STATUS_DRAFT = "draft"
CHAIN_STATUS_ACTIVE = "active"
CHAIN_STATUS_ARCHIVED = "archived"
CHAIN_STATUSES = {CHAIN_STATUS_DRAFT, CHAIN_STATUS_ACTIVE, CHAIN_STATUS_ARCHIVED}


def _utcnow():
    return datetime.now(timezone.utc)


class WorkflowChain(db.Model):
    """An ordered sequence of sections defining one complete approval path."""

    __tablename__ = "workflow_chains"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    business_unit_id = db.Column(
        db.Integer, db.ForeignKey("business_units.id", ondelete="SET NULL"), nullable=True, index=True,
    )

    # Versioning
    version = db.Column(db.Integer, nullable=False, default=1)
    parent_chain_id = db.Column(
        db.Integer, db.ForeignKey("workflow_chains.id", ondelete="SET NULL"), nullable=True,
        comment="Previous version of this chain",
    )
    is_latest = db.Column(db.Boolean, nullable=False, default=True)
    status = db.Column(db.String(20), nullable=False, default=CHAIN_STATUS_DRAFT)

    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    sections = db.relationship(
        "WorkflowSection",
        backref="chain",
        order_by="WorkflowSection.section_order",
        cascade="all, delete-orphan",
    )

    @property
    def section_count(self) -> int:
        return len(self.sections)

    def section_at(self, order: int):
        """Return the section with ``section_order == order`` or None."""
        for section in self.sections:
            if section.section_order == order:
                return section
        return None

    def is_last_section(self, order: int) -> bool:
        return order == len(self.sections) - 1

    def to_dict(self, include_sections=True):
        d = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "business_unit_id": self.business_unit_id,
            "version": self.version,
            "parent_chain_id": self.parent_chain_id,
            "is_latest": self.is_latest,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_sections:
            d["sections"] = [s.to_dict() for s in self.sections]
        return d

    def __repr__(self):
        return f"<WorkflowChain {self.id}: {self.name} v{self.version}>"


class WorkflowSection(db.Model):
    """One stage of a chain: data collection (FORM) or ordered approvals (APPROVAL)."""

    __tablename__ = "workflow_sections"
    __table_args__ = (
        db.UniqueConstraint("chain_id", "section_order", name="uq_workflow_section_chain_order"),
    )

    id = db.Column(db.Integer, primary_key=True)
    chain_id = db.Column(
        db.Integer, db.ForeignKey("workflow_chains.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    section_order = db.Column(db.Integer, nullable=False, comment="0-based, contiguous within chain")
    kind = db.Column(db.String(20), nullable=False, comment="FORM | APPROVAL")
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    form_template_id = db.Column(
        db.String(64), nullable=True,
        comment="Opaque reference to the data-collection template (FORM sections)",
    )
    is_hard_fork = db.Column(
        db.Boolean, nullable=False, default=False,
        comment="Always hand off to a new request when entering this section",
    )

    steps = db.relationship(
        "WorkflowStep",
        backref="section",
        order_by="WorkflowStep.step_number",
        cascade="all, delete-orphan",
    )
    initiators = db.relationship(
        "WorkflowSectionInitiator",
        backref="section",
        cascade="all, delete-orphan",
    )

    @property
    def is_approval(self) -> bool:
        return self.kind == SECTION_KIND_APPROVAL

    @property
    def initiator_roles(self) -> list:
        return [i.role for i in self.initiators]

    def step_at(self, step_number: int):
        for step in self.steps:
            if step.step_number == step_number:
                return step
        return None

    def to_dict(self):
        return {
            "id": self.id,
            "chain_id": self.chain_id,
            "order": self.section_order,
            "kind": self.kind,
            "name": self.name,
            "description": self.description,
            "form_template_id": self.form_template_id,
            "is_hard_fork": self.is_hard_fork,
            "initiator_roles": [r.name for r in self.initiator_roles],
            "steps": [s.to_dict() for s in self.steps],
        }

    def __repr__(self):
        return f"<WorkflowSection {self.chain_id}#{self.section_order} {self.kind}>"


class WorkflowSectionInitiator(db.Model):
    __tablename__ = "workflow_section_initiators"
    __table_args__ = (
        db.UniqueConstraint("section_id", "role_id", name="uq_section_initiator_role"),
    )

    id = db.Column(db.Integer, primary_key=True)
    section_id = db.Column(
        db.Integer, db.ForeignKey("workflow_sections.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    role_id = db.Column(
        db.Integer, db.ForeignKey("roles.id", ondelete="RESTRICT"), nullable=False,
    )

    role = db.relationship("Role", lazy="joined")


class WorkflowStep(db.Model):
    """A single required approval, bound to an approver role."""

    __tablename__ = "workflow_steps"
    __table_args__ = (
        db.UniqueConstraint("section_id", "step_number", name="uq_workflow_step_section_number"),
    )

    id = db.Column(db.Integer, primary_key=True)
    section_id = db.Column(
        db.Integer, db.ForeignKey("workflow_sections.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    step_number = db.Column(db.Integer, nullable=False, comment="1-based approval order")
    approver_role_id = db.Column(
        db.Integer, db.ForeignKey("roles.id", ondelete="RESTRICT"), nullable=False,
    )

    approver_role = db.relationship("Role", lazy="joined")

    def to_dict(self):
        return {
            "id": self.id,
            "step_number": self.step_number,
            "approver_role": self.approver_role.name if self.approver_role else None,
            "approver_role_scope": self.approver_role.scope if self.approver_role else None,
        }
