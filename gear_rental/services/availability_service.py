"""Per-day occupancy for one equipment type.

Pure read side: nothing here writes, so results can be recomputed on every call.
"""
from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from ..models.rental_models import Reservation, ReservationItem
from ..models.states import OCCUPYING_STATES, ReservationStatus
from .equipment_service import get_equipment
from .errors import ValidationError


MAX_QUERY_DAYS = 366
_TIME_FORMATS = ("%Y-%m-%d %H:%M", "%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M", "%Y-%m-%dT%H:%M:%S")


def parse_booking_time(raw: str | date | datetime) -> datetime:
    if isinstance(raw, datetime):
        return raw.replace(tzinfo=None, microsecond=0)
    if isinstance(raw, date):
        return datetime.combine(raw, time.min)
    value = str(raw or "").strip()
    if not value:
        raise ValidationError("Date value is required.")
    if len(value) == 10:
        try:
            return datetime.combine(date.fromisoformat(value), time.min)
        except ValueError as exc:
            raise ValidationError(f"Invalid date '{value}'.") from exc
    for fmt in _TIME_FORMATS:
        try:
            return datetime.strptime(value[:19], fmt)
        except ValueError:
            continue
    raise ValidationError(f"Invalid date/time '{value}'. Use YYYY-MM-DD or YYYY-MM-DD HH:MM.")


def format_booking_time(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.strftime("%Y-%m-%d %H:%M")


def iter_days(start_day: date, end_day: date) -> Iterable[date]:
    current = start_day
    while current <= end_day:
        yield current
        current += timedelta(days=1)


def _quantity_for(reservation: Reservation, equipment_id: int) -> int:
    return sum(int(item.Quantity or 0) for item in reservation.Items if item.EquipmentID == equipment_id)


def overlapping_reservations(
    db: Session,
    equipment_id: int,
    start_day: date,
    end_day: date,
    statuses: Iterable[ReservationStatus],
    exclude_reservation_id: int | None = None,
) -> list[Reservation]:
    # A reservation occupies every calendar day from its start day through its end day.
    stmt = (
        select(Reservation)
        .options(selectinload(Reservation.Items))
        .join(ReservationItem, ReservationItem.ReservationID == Reservation.ReservationID)
        .where(ReservationItem.EquipmentID == equipment_id)
        .where(Reservation.Status.in_([status.value for status in statuses]))
        .where(Reservation.StartDate < datetime.combine(end_day + timedelta(days=1), time.min))
        .where(Reservation.EndDate >= datetime.combine(start_day, time.min))
        .order_by(Reservation.StartDate, Reservation.ReservationID)
    )
    if exclude_reservation_id is not None:
        stmt = stmt.where(Reservation.ReservationID != exclude_reservation_id)
    return list(db.execute(stmt).scalars().unique().all())


def daily_reserved_counts(
    db: Session,
    equipment_id: int,
    start_day: date,
    end_day: date,
    statuses: Iterable[ReservationStatus],
    exclude_reservation_id: int | None = None,
) -> dict[date, int]:
    counts = {day: 0 for day in iter_days(start_day, end_day)}
    for reservation in overlapping_reservations(db, equipment_id, start_day, end_day, statuses, exclude_reservation_id):
        quantity = _quantity_for(reservation, equipment_id)
        first = max(start_day, reservation.StartDate.date())
        last = min(end_day, reservation.EndDate.date())
        for day in iter_days(first, last):
            counts[day] += quantity
    return counts


def _reservation_entry(reservation: Reservation, equipment_id: int) -> dict:
    return {
        "reservationID": reservation.ReservationID,
        "reservationNumber": reservation.ReservationNumber,
        "leaderName": reservation.LeaderName,
        "purposeDetail": reservation.PurposeDetail,
        "status": reservation.Status,
        "quantity": _quantity_for(reservation, equipment_id),
        "startDate": format_booking_time(reservation.StartDate),
        "endDate": format_booking_time(reservation.EndDate),
    }


def get_availability(
    db: Session,
    equipment_id: int,
    start_date: str | date,
    end_date: str | date,
    include_history: bool = False,
) -> dict:
    """Report reserved/remaining units per day.

    Pending, approved and rented reservations count toward ``reserved``.
    Returned reservations never do; with ``include_history`` they are listed
    per day under ``history`` instead.
    """
    equipment = get_equipment(db, equipment_id)
    start_day = parse_booking_time(start_date).date()
    end_day = parse_booking_time(end_date).date()
    if end_day < start_day:
        raise ValidationError("endDate must be on or after startDate.")
    if (end_day - start_day).days + 1 > MAX_QUERY_DAYS:
        raise ValidationError(f"Availability range is limited to {MAX_QUERY_DAYS} days.")

    total = int(equipment.TotalQuantity or 0)
    occupying = overlapping_reservations(db, equipment_id, start_day, end_day, OCCUPYING_STATES)
    returned = []
    if include_history:
        returned = overlapping_reservations(db, equipment_id, start_day, end_day, [ReservationStatus.RETURNED])

    per_day = []
    for day in iter_days(start_day, end_day):
        todays = [r for r in occupying if r.StartDate.date() <= day <= r.EndDate.date()]
        reserved = sum(_quantity_for(r, equipment_id) for r in todays)
        entry = {
            "date": day.isoformat(),
            "reserved": reserved,
            "remaining": max(0, total - reserved),
            "overbooked": reserved > total,
            "reservations": [_reservation_entry(r, equipment_id) for r in todays],
        }
        if include_history:
            entry["history"] = [
                _reservation_entry(r, equipment_id)
                for r in returned
                if r.StartDate.date() <= day <= r.EndDate.date()
            ]
        per_day.append(entry)

    return {
        "equipmentID": equipment.EquipmentID,
        "equipmentName": equipment.EquipmentName,
        "totalQuantity": total,
        "startDate": start_day.isoformat(),
        "endDate": end_day.isoformat(),
        "perDay": per_day,
    }
