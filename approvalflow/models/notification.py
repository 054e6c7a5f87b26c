"""
Approval Flow
Notification domain model.

Models:
    - Notification: in-app notice telling a user a request needs them (or
      that something happened to their request). Written by the default
      workflow event sink, one row per recipient per event.
"""

from datetime import datetime, timezone

from approvalflow.models import db

# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_CATEGORIES = {
    "approval_needed", "revision_requested", "rejected", "approved",
    "cancelled", "claim_available", "clarification_requested", "workflow",
}
NOTIFICATION_SEVERITIES = {"info", "warning", "error", "success"}


class Notification(db.Model):
    """In-app notification for one user about one request."""

    __tablename__ = "notifications"
    __table_args__ = (
        db.Index("ix_notifications_recipient_unread", "recipient", "is_read"),
    )

    id = db.Column(db.Integer, primary_key=True)
    recipient = db.Column(db.String(64), nullable=False, comment="User id")
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    category = db.Column(db.String(30), default="workflow")
    severity = db.Column(db.String(20), default="info")

    # Workflow position that produced the notice. Plain columns, no FK:
    # notices outlive request cleanup.
    request_id = db.Column(db.String(36), nullable=True, index=True)
    section_order = db.Column(db.Integer, nullable=True)
    triggered_by = db.Column(db.String(64), nullable=True, comment="Actor id of the transition")

    is_read = db.Column(db.Boolean, default=False, nullable=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def mark_read(self):
        if not self.is_read:
            self.is_read = True
            self.read_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "recipient": self.recipient,
            "title": self.title,
            "message": self.message,
            "category": self.category,
            "severity": self.severity,
            "request_id": self.request_id,
            "section_order": self.section_order,
            "triggered_by": self.triggered_by,
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id} → {self.recipient}: {self.category}>"
