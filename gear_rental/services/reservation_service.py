from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from ..db.transaction import allocation_transaction
from ..models.rental_models import Asset, Equipment, Reservation, ReservationItem
from ..models.states import (
    ITEM_EDITABLE_STATES,
    REVERT_TRANSITIONS,
    DamageType,
    ReservationStatus,
    can_transition,
)
from .allocation_service import (
    checkout_assets,
    get_reservation,
    release_assignments,
    reservation_status,
    return_remaining_assets,
    revert_checkout,
    validate_approval,
)
from .availability_service import format_booking_time, parse_booking_time
from .errors import AccessDeniedError, InvalidTransitionError, ValidationError
from .identity_service import ActorIdentity, require_admin
from .notification_service import notify_status_change
from .repair_service import open_repair_case


RESERVATION_LOGGER = logging.getLogger("gear_rental.reservations")

DEFAULT_SORT_ORDER = 999


@dataclass
class ItemRequest:
    equipment_id: int
    quantity: int = 1
    name: str | None = None


def generate_reservation_number(db: Session, created_on: date | None = None, prefix: str | None = None) -> str:
    current_date = created_on or date.today()
    token = (prefix if prefix is not None else os.environ.get("RESERVATION_NUMBER_PREFIX", "")).strip()
    stem = f"{token}{current_date.strftime('%Y%m%d')}-"

    rows = db.execute(
        select(Reservation.ReservationNumber).where(Reservation.ReservationNumber.like(f"{stem}%"))
    ).all()

    max_suffix = 0
    for row in rows:
        suffix = (row[0] or "")[len(stem):]
        if len(suffix) != 4 or not suffix.isdigit():
            continue
        max_suffix = max(max_suffix, int(suffix))

    return f"{stem}{max_suffix + 1:04d}"


def _ensure_can_view(actor: ActorIdentity, reservation: Reservation) -> None:
    if not actor.is_admin and reservation.UserID != actor.id:
        raise AccessDeniedError("Reservation belongs to another user.")


def _resolve_items(db: Session, actor: ActorIdentity, items: list[ItemRequest]) -> list[tuple[Equipment, ItemRequest]]:
    if not items:
        raise ValidationError("At least one item is required.")
    resolved = []
    seen = set()
    for request in items:
        equipment_id = int(request.equipment_id)
        if equipment_id in seen:
            raise ValidationError(f"Equipment {equipment_id} is listed more than once.")
        seen.add(equipment_id)
        if int(request.quantity or 0) < 1:
            raise ValidationError("Quantity must be at least 1.")
        equipment = db.get(Equipment, equipment_id)
        if not equipment:
            raise ValidationError(f"Equipment {equipment_id} does not exist.")
        if not equipment.IsVisible and not actor.is_admin:
            raise ValidationError(f"'{equipment.EquipmentName}' is not available for booking.")
        resolved.append((equipment, request))
    return resolved


def create_reservation(
    db: Session,
    actor: ActorIdentity,
    *,
    purpose: str,
    start_date: str | datetime,
    end_date: str | datetime,
    items: list[ItemRequest],
    purpose_detail: str = "",
    leader_name: str | None = None,
    leader_phone: str | None = None,
    leader_student_id: str | None = None,
    leader_email: str | None = None,
) -> Reservation:
    start = parse_booking_time(start_date)
    end = parse_booking_time(end_date)
    if end < start:
        raise ValidationError("endDate must be on or after startDate.")
    if not (purpose or "").strip():
        raise ValidationError("Purpose is required.")

    with allocation_transaction(db):
        resolved = _resolve_items(db, actor, items)
        now = datetime.now()
        reservation = Reservation(
            ReservationNumber=generate_reservation_number(db, now.date()),
            UserID=actor.id,
            Status=ReservationStatus.PENDING.value,
            Purpose=purpose.strip(),
            PurposeDetail=(purpose_detail or "").strip(),
            StartDate=start,
            EndDate=end,
            LeaderName=(leader_name or actor.name).strip(),
            LeaderPhone=(leader_phone or "").strip(),
            LeaderStudentID=(leader_student_id or "").strip(),
            LeaderEmail=(leader_email or actor.email or None),
            CreatedDate=now,
            UpdatedDate=now,
        )
        for position, (equipment, request) in enumerate(resolved):
            reservation.Items.append(
                ReservationItem(
                    Position=position,
                    EquipmentID=equipment.EquipmentID,
                    ItemName=(request.name or "").strip() or equipment.EquipmentName,
                    Quantity=int(request.quantity),
                    CheckedOut=False,
                    Returned=False,
                )
            )
        db.add(reservation)
        db.flush()
    RESERVATION_LOGGER.info(
        "reservation %s (%s) created by %s",
        reservation.ReservationID,
        reservation.ReservationNumber,
        actor.id,
    )
    return reservation


def update_reservation_items(
    db: Session,
    actor: ActorIdentity,
    reservation_id: int,
    items: list[ItemRequest],
) -> Reservation:
    """Replace the line list. Lines keep their assignments unless removed or shrunk below them."""
    with allocation_transaction(db):
        reservation = get_reservation(db, reservation_id)
        _ensure_can_view(actor, reservation)
        status = reservation_status(reservation)
        if status not in ITEM_EDITABLE_STATES:
            RESERVATION_LOGGER.warning("reservation %s: item edit rejected in %s", reservation_id, status.value)
            raise InvalidTransitionError(f"Items cannot be edited while the reservation is {status.value}.")

        resolved = _resolve_items(db, actor, items)
        existing = {item.EquipmentID: item for item in reservation.Items}
        lines = []
        for position, (equipment, request) in enumerate(resolved):
            item = existing.get(equipment.EquipmentID)
            quantity = int(request.quantity)
            if item is None:
                item = ReservationItem(
                    EquipmentID=equipment.EquipmentID,
                    ItemName=(request.name or "").strip() or equipment.EquipmentName,
                    CheckedOut=False,
                    Returned=False,
                )
            elif quantity < len(item.AssetLinks):
                raise ValidationError(
                    f"Line '{item.ItemName}' has {len(item.AssetLinks)} assigned assets; "
                    f"unassign some before lowering quantity to {quantity}."
                )
            item.Quantity = quantity
            item.Position = position
            lines.append(item)
        reservation.Items = lines
        reservation.UpdatedDate = datetime.now()
        db.flush()
        if status == ReservationStatus.APPROVED:
            validate_approval(db, reservation)
    RESERVATION_LOGGER.info("reservation %s items updated by %s", reservation_id, actor.id)
    return reservation


def _parse_status(raw: str | ReservationStatus) -> ReservationStatus:
    try:
        return ReservationStatus(str(getattr(raw, "value", raw)).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(status.value for status in ReservationStatus)
        raise ValidationError(f"Unknown reservation status '{raw}'. Allowed: {allowed}.") from exc


def change_reservation_status(
    db: Session,
    actor: ActorIdentity,
    reservation_id: int,
    new_status: str | ReservationStatus,
    repair_note: str | None = None,
) -> Reservation:
    require_admin(actor)
    target = _parse_status(new_status)
    with allocation_transaction(db):
        reservation = get_reservation(db, reservation_id)
        current = reservation_status(reservation)
        if not can_transition(current, target):
            RESERVATION_LOGGER.warning(
                "reservation %s: transition %s -> %s rejected",
                reservation_id,
                current.value,
                target.value,
            )
            raise InvalidTransitionError(f"Cannot move a reservation from {current.value} to {target.value}.")

        now = datetime.now()
        if target == ReservationStatus.APPROVED and current == ReservationStatus.PENDING:
            validate_approval(db, reservation)
            reservation.ApprovedBy = actor.id
            reservation.ApprovalDate = now
        elif target == ReservationStatus.APPROVED and current == ReservationStatus.RENTED:
            revert_checkout(db, actor, reservation)
        elif target == ReservationStatus.RENTED:
            checkout_assets(db, actor, reservation)
        elif target == ReservationStatus.REJECTED:
            release_assignments(reservation, include_checked_out=True)
        elif target == ReservationStatus.CANCELLED:
            outstanding = sorted(
                link.AssetID
                for item in reservation.Items
                if item.CheckedOut
                for link in item.AssetLinks
                if link.ReturnedAt is None
            )
            if outstanding:
                RESERVATION_LOGGER.warning(
                    "reservation %s: cancel refused, assets %s still checked out",
                    reservation_id,
                    outstanding,
                )
                raise InvalidTransitionError(
                    f"Return the checked-out assets {outstanding} before cancelling this reservation."
                )
            release_assignments(reservation)

        if target == ReservationStatus.RETURNED:
            # Notification is queued by the return itself.
            return_remaining_assets(db, actor, reservation)
            note = (repair_note or "").strip()
            if note:
                open_repair_case(
                    db,
                    damage_type=DamageType.DAMAGED,
                    description=note,
                    reservation=reservation,
                    equipment_name=", ".join(item.ItemName for item in reservation.Items) or None,
                )
        else:
            reservation.Status = target.value
            if (current, target) not in REVERT_TRANSITIONS:
                notify_status_change(db, reservation, target)
        reservation.UpdatedDate = now
        db.flush()
    RESERVATION_LOGGER.info(
        "reservation %s %s -> %s by %s",
        reservation_id,
        current.value,
        target.value,
        actor.id,
    )
    return reservation


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def _reservation_query():
    return (
        select(Reservation)
        .options(selectinload(Reservation.Items).selectinload(ReservationItem.AssetLinks))
        .order_by(Reservation.ReservationID.desc())
    )


def list_reservations(db: Session, actor: ActorIdentity, status: str | None = None) -> list[dict]:
    require_admin(actor)
    stmt = _reservation_query()
    if status:
        stmt = stmt.where(Reservation.Status == _parse_status(status).value)
    return [serialize_reservation(row) for row in db.execute(stmt).scalars().all()]


def list_my_reservations(db: Session, actor: ActorIdentity) -> list[dict]:
    stmt = _reservation_query().where(Reservation.UserID == actor.id)
    return [serialize_reservation(row) for row in db.execute(stmt).scalars().all()]


def get_reservation_detail(db: Session, actor: ActorIdentity, reservation_id: int) -> dict:
    reservation = get_reservation(db, reservation_id)
    _ensure_can_view(actor, reservation)

    equipment_ids = {item.EquipmentID for item in reservation.Items}
    asset_ids = {asset_id for item in reservation.Items for asset_id in item.AssignedAssetIDs}
    equipment = {}
    if equipment_ids:
        equipment = {
            row.EquipmentID: row
            for row in db.execute(select(Equipment).where(Equipment.EquipmentID.in_(equipment_ids))).scalars().all()
        }
    assets = {}
    if asset_ids:
        assets = {
            row.AssetID: row
            for row in db.execute(select(Asset).where(Asset.AssetID.in_(asset_ids))).scalars().all()
        }

    payload = serialize_reservation(reservation)
    for line in payload["items"]:
        source = equipment.get(line["equipmentID"])
        line["sortOrder"] = source.SortOrder if source and source.SortOrder is not None else DEFAULT_SORT_ORDER
        line["isGroupPrint"] = bool(source.IsGroupPrint) if source else False
        line["assetCodes"] = [
            (assets[asset_id].ManagementCode or assets[asset_id].SerialNumber or "")
            for asset_id in line["assignedAssets"]
            if asset_id in assets
        ]
    return payload


def serialize_reservation(reservation: Reservation) -> dict:
    items = []
    for item in reservation.Items:
        items.append(
            {
                "reservationItemID": item.ReservationItemID,
                "equipmentID": item.EquipmentID,
                "name": item.ItemName,
                "quantity": item.Quantity,
                "checkedOut": bool(item.CheckedOut),
                "returned": bool(item.Returned),
                "assignedAssets": item.AssignedAssetIDs,
                "returns": [
                    {
                        "assetID": link.AssetID,
                        "condition": link.ReturnCondition,
                        "notes": link.ReturnNotes,
                        "returnedAt": link.ReturnedAt,
                    }
                    for link in item.AssetLinks
                    if link.ReturnedAt is not None
                ],
            }
        )
    return {
        "reservationID": reservation.ReservationID,
        "reservationNumber": reservation.ReservationNumber,
        "userID": reservation.UserID,
        "status": reservation.Status,
        "purpose": reservation.Purpose,
        "purposeDetail": reservation.PurposeDetail,
        "startDate": format_booking_time(reservation.StartDate),
        "endDate": format_booking_time(reservation.EndDate),
        "leaderName": reservation.LeaderName,
        "leaderPhone": reservation.LeaderPhone,
        "leaderStudentID": reservation.LeaderStudentID,
        "leaderEmail": reservation.LeaderEmail,
        "approvedBy": reservation.ApprovedBy,
        "approvalDate": reservation.ApprovalDate,
        "createdDate": reservation.CreatedDate,
        "updatedDate": reservation.UpdatedDate,
        "items": items,
    }
