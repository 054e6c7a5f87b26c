"""
Approval Flow
Request domain model.

Models:
    - Request: one document moving through a WorkflowChain
    - HistoryEntry: immutable, append-only action log; also the Ledger
      source (APPROVE rows scoped to section_order + review_round)

The Request row is the single source of truth for workflow state. Its
``version`` column is the SQLAlchemy version counter: every UPDATE is
conditional on the version read, so concurrent writers collide with
StaleDataError instead of overwriting each other.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import event

from approvalflow.models import db

# ── Statuses ─────────────────────────────────────────────────────────────────

STATUS_DRAFT = "DRAFT"
STATUS_SUBMITTED = "SUBMITTED"
STATUS_IN_REVIEW = "IN_REVIEW"
STATUS_NEEDS_REVISION = "NEEDS_REVISION"
STATUS_APPROVED = "APPROVED"
STATUS_REJECTED = "REJECTED"
STATUS_CANCELLED = "CANCELLED"

REQUEST_STATUSES = {
    STATUS_DRAFT, STATUS_SUBMITTED, STATUS_IN_REVIEW, STATUS_NEEDS_REVISION,
    STATUS_APPROVED, STATUS_REJECTED, STATUS_CANCELLED,
}
TERMINAL_STATUSES = {STATUS_APPROVED, STATUS_REJECTED, STATUS_CANCELLED}


# ── Actions ──────────────────────────────────────────────────────────────────


class Action(str, Enum):
    """Actions an actor may apply through the engine's ``act`` entry point."""

    APPROVE = "APPROVE"
    REJECT = "REJECT"
    REQUEST_REVISION = "REQUEST_REVISION"
    CANCEL = "CANCEL"
    REQUEST_CLARIFICATION = "REQUEST_CLARIFICATION"
    ASK_PREVIOUS_SECTION = "ASK_PREVIOUS_SECTION"

    @classmethod
    def parse(cls, value: "str | Action") -> "Action":
        """Map a caller-supplied string onto the closed action set."""
        from approvalflow.core.exceptions import ValidationError

        if isinstance(value, cls):
            return value
        try:
            return cls((value or "").strip().upper())
        except ValueError:
            raise ValidationError(
                f"Unknown action: {value!r}",
                details={"action": f"must be one of {sorted(a.value for a in cls)}"},
            ) from None


HISTORY_SUBMIT = "SUBMIT"
HISTORY_ADVANCE_SECTION = "ADVANCE_SECTION"
HISTORY_COMMENT = "COMMENT"
HISTORY_CLAIM = "CLAIM"

HISTORY_ACTIONS = {a.value for a in Action} | {
    HISTORY_SUBMIT, HISTORY_ADVANCE_SECTION, HISTORY_COMMENT, HISTORY_CLAIM,
}

# action → {"from": allowed statuses, "to": resulting status (None = unchanged)}
REQUEST_TRANSITIONS = {
    HISTORY_SUBMIT: {
        "from": [STATUS_DRAFT, STATUS_NEEDS_REVISION, STATUS_SUBMITTED],
        "to": STATUS_SUBMITTED,
    },
    Action.APPROVE.value: {"from": [STATUS_IN_REVIEW], "to": None},
    Action.REJECT.value: {"from": [STATUS_IN_REVIEW], "to": STATUS_REJECTED},
    Action.REQUEST_REVISION.value: {"from": [STATUS_IN_REVIEW], "to": STATUS_NEEDS_REVISION},
    Action.CANCEL.value: {
        "from": [STATUS_DRAFT, STATUS_SUBMITTED, STATUS_IN_REVIEW, STATUS_NEEDS_REVISION],
        "to": STATUS_CANCELLED,
    },
    # Questions leave the status where it is
    Action.REQUEST_CLARIFICATION.value: {"from": [STATUS_IN_REVIEW], "to": None},
    Action.ASK_PREVIOUS_SECTION.value: {"from": [STATUS_IN_REVIEW], "to": None},
    HISTORY_CLAIM: {
        "from": [STATUS_DRAFT, STATUS_SUBMITTED, STATUS_IN_REVIEW, STATUS_NEEDS_REVISION],
        "to": None,
    },
}


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def fork_key_for(chain_id: int, root_request_id: str, section_order: int) -> str:
    """Deterministic key of the child request spawned for a section."""
    return f"{chain_id}:{root_request_id}:{section_order}"


class Request(db.Model):
    """
    One instance of a document moving through a chain.

    Lifecycle:
        DRAFT → SUBMITTED → IN_REVIEW → (NEEDS_REVISION ↺) → APPROVED | REJECTED
        any non-terminal → CANCELLED

    A request whose section completed but whose next section belongs to a
    different initiator ends APPROVED with ``is_handed_off=True``; the
    child it spawned continues the logical chain.
    """

    __tablename__ = "requests"
    __table_args__ = (
        db.Index("ix_requests_status", "status"),
        db.Index("ix_requests_root", "root_request_id"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    chain_id = db.Column(
        db.Integer, db.ForeignKey("workflow_chains.id", ondelete="RESTRICT"), nullable=False, index=True,
    )
    business_unit_id = db.Column(
        db.Integer, db.ForeignKey("business_units.id", ondelete="RESTRICT"), nullable=False, index=True,
    )
    initiator_id = db.Column(
        db.String(64), nullable=True, index=True,
        comment="NULL while a forked request waits to be claimed",
    )
    status = db.Column(db.String(20), nullable=False, default=STATUS_DRAFT)
    current_section_order = db.Column(db.Integer, nullable=False, default=0)
    data = db.Column(db.JSON, nullable=True)

    # Fork lineage
    parent_request_id = db.Column(
        db.String(36), db.ForeignKey("requests.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    root_request_id = db.Column(db.String(36), nullable=False)
    fork_key = db.Column(
        db.String(120), nullable=True, unique=True,
        comment="chain_id:root_request_id:section_order of a spawned child",
    )
    is_handed_off = db.Column(db.Boolean, nullable=False, default=False)

    # Ledger epoch for the current section; bumped on resubmission
    review_round = db.Column(db.Integer, nullable=False, default=1)

    version = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    chain = db.relationship("WorkflowChain", lazy="joined")
    history = db.relationship(
        "HistoryEntry",
        backref="request",
        order_by="HistoryEntry.id",
        lazy="dynamic",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def current_section(self):
        return self.chain.section_at(self.current_section_order) if self.chain else None

    def to_dict(self):
        return {
            "id": self.id,
            "chain_id": self.chain_id,
            "business_unit_id": self.business_unit_id,
            "initiator_id": self.initiator_id,
            "status": self.status,
            "current_section_order": self.current_section_order,
            "data": self.data or {},
            "parent_request_id": self.parent_request_id,
            "root_request_id": self.root_request_id,
            "is_handed_off": self.is_handed_off,
            "review_round": self.review_round,
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self):
        return f"<Request {self.id} {self.status} @section {self.current_section_order}>"


class HistoryEntry(db.Model):
    """
    Immutable action log entry.

    Never updated or deleted; the ORM guards below raise on either.
    ``section_order`` / ``step_number`` / ``review_round`` pin the entry to
    the position it was recorded at, which is what the Ledger counts.
    """

    __tablename__ = "request_history"
    __table_args__ = (
        db.Index("ix_history_ledger", "request_id", "section_order", "review_round", "action"),
    )

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.String(36), db.ForeignKey("requests.id", ondelete="RESTRICT"), nullable=False, index=True,
    )
    actor_id = db.Column(db.String(64), nullable=False, index=True)
    action = db.Column(db.String(30), nullable=False)
    comment = db.Column(db.Text, nullable=True)
    section_order = db.Column(db.Integer, nullable=False)
    step_number = db.Column(db.Integer, nullable=True)
    review_round = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "request_id": self.request_id,
            "actor_id": self.actor_id,
            "action": self.action,
            "comment": self.comment,
            "section_order": self.section_order,
            "step_number": self.step_number,
            "review_round": self.review_round,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<HistoryEntry #{self.id} {self.request_id} {self.action}>"


@event.listens_for(HistoryEntry, "before_update")
def _history_is_append_only(mapper, connection, target):
    raise RuntimeError(f"HistoryEntry #{target.id} is immutable")


@event.listens_for(HistoryEntry, "before_delete")
def _history_is_never_deleted(mapper, connection, target):
    raise RuntimeError(f"HistoryEntry #{target.id} cannot be deleted")
