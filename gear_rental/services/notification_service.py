from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..models.rental_models import Notification, Reservation
from ..models.states import ReservationStatus
from .errors import AccessDeniedError, NotFoundError
from .identity_service import ActorIdentity


RECENT_LIMIT = 10

STATUS_NOTIFICATIONS = {
    ReservationStatus.APPROVED: ("reservation_approved", "Reservation approved"),
    ReservationStatus.REJECTED: ("reservation_rejected", "Reservation rejected"),
    ReservationStatus.RENTED: ("reservation_rented", "Equipment checked out"),
    ReservationStatus.RETURNED: ("reservation_returned", "Return completed"),
}


def queue_notification(
    db: Session,
    user_id: str,
    notification_type: str,
    title: str,
    message: str,
    related_id: int | None = None,
) -> Notification:
    notification = Notification(
        UserID=user_id,
        NotificationType=notification_type,
        Title=title,
        Message=message,
        RelatedID=related_id,
        IsRead=False,
        CreatedAt=datetime.now(),
    )
    db.add(notification)
    return notification


def notify_status_change(db: Session, reservation: Reservation, status: ReservationStatus) -> Notification | None:
    entry = STATUS_NOTIFICATIONS.get(status)
    if not entry:
        return None
    notification_type, title = entry
    return queue_notification(
        db,
        reservation.UserID,
        notification_type,
        title,
        f"Reservation {reservation.ReservationNumber} status changed to {status.value}.",
        related_id=reservation.ReservationID,
    )


def list_my_notifications(db: Session, actor: ActorIdentity, limit: int = RECENT_LIMIT) -> list[dict]:
    rows = db.execute(
        select(Notification)
        .where(Notification.UserID == actor.id)
        .order_by(Notification.NotificationID.desc())
        .limit(max(1, limit))
    ).scalars().all()
    return [serialize_notification(row) for row in rows]


def unread_count(db: Session, actor: ActorIdentity) -> int:
    return int(
        db.execute(
            select(func.count(Notification.NotificationID))
            .where(Notification.UserID == actor.id)
            .where(Notification.IsRead == False)  # noqa: E712
        ).scalar()
        or 0
    )


def mark_as_read(db: Session, actor: ActorIdentity, notification_id: int) -> None:
    notification = db.get(Notification, notification_id)
    if not notification:
        raise NotFoundError("Notification not found.")
    if notification.UserID != actor.id:
        raise AccessDeniedError("Notification belongs to another user.")
    if not notification.IsRead:
        notification.IsRead = True
        notification.ReadAt = datetime.now()
    db.commit()


def mark_all_as_read(db: Session, actor: ActorIdentity) -> int:
    rows = db.execute(
        select(Notification)
        .where(Notification.UserID == actor.id)
        .where(Notification.IsRead == False)  # noqa: E712
    ).scalars().all()
    now = datetime.now()
    for row in rows:
        row.IsRead = True
        row.ReadAt = now
    db.commit()
    return len(rows)


def serialize_notification(notification: Notification) -> dict:
    return {
        "notificationID": notification.NotificationID,
        "userID": notification.UserID,
        "type": notification.NotificationType,
        "title": notification.Title,
        "message": notification.Message,
        "relatedID": notification.RelatedID,
        "read": bool(notification.IsRead),
        "readAt": notification.ReadAt,
        "createdAt": notification.CreatedAt,
    }
