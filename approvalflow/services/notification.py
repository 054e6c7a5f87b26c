"""
Approval Flow
Notification Service.

Creates and queries in-app notifications. The workflow NotificationSink is
the main writer; a presentation layer reads inboxes and marks them read.
"""

from datetime import datetime, timezone

from approvalflow.core.exceptions import NotFoundError
from approvalflow.models import db
from approvalflow.models.notification import NOTIFICATION_CATEGORIES, NOTIFICATION_SEVERITIES, Notification


def _build(recipient, title, message, category, severity, request_id, section_order, triggered_by):
    if category not in NOTIFICATION_CATEGORIES:
        raise ValueError(f"Unknown notification category: {category!r}")
    if severity not in NOTIFICATION_SEVERITIES:
        raise ValueError(f"Unknown notification severity: {severity!r}")
    return Notification(
        recipient=recipient,
        title=title,
        message=message,
        category=category,
        severity=severity,
        request_id=request_id,
        section_order=section_order,
        triggered_by=triggered_by,
    )


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, recipient, title, message="", category="workflow", severity="info",
               request_id=None, section_order=None, triggered_by=None):
        """Create and commit a single notification."""
        notif = _build(recipient, title, message, category, severity,
                       request_id, section_order, triggered_by)
        db.session.add(notif)
        db.session.commit()
        return notif

    @staticmethod
    def broadcast(*, recipients, title, message="", category="workflow", severity="info",
                  request_id=None, section_order=None, triggered_by=None):
        """
        Send the same notice to every recipient, one row each.

        Recipients are de-duplicated; nothing is committed when the set is
        empty.

        Returns:
            List of created Notification instances.
        """
        notifications = [
            _build(r, title, message, category, severity, request_id, section_order, triggered_by)
            for r in sorted(set(recipients))
        ]
        if notifications:
            db.session.add_all(notifications)
            db.session.commit()
        return notifications

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient, unread_only=False, limit=50, offset=0):
        """
        A user's inbox, newest first.

        Returns:
            (items, total) where total ignores limit/offset.
        """
        q = Notification.query.filter_by(recipient=recipient)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return items, total

    @staticmethod
    def list_for_request(request_id):
        """Every notice raised for one request, oldest first."""
        return (
            Notification.query.filter_by(request_id=request_id)
            .order_by(Notification.id).all()
        )

    @staticmethod
    def unread_count(recipient):
        return Notification.query.filter_by(recipient=recipient, is_read=False).count()

    # ── Read tracking ─────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id):
        notif = db.session.get(Notification, notification_id)
        if notif is None:
            raise NotFoundError(resource="Notification", resource_id=notification_id)
        notif.mark_read()
        db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(recipient):
        """Mark a user's unread notices read. Returns how many changed."""
        count = Notification.query.filter_by(recipient=recipient, is_read=False).update(
            {"is_read": True, "read_at": datetime.now(timezone.utc)}, synchronize_session="fetch",
        )
        db.session.commit()
        return count
