"""Binding of concrete assets to reservation lines.

Every public mutation here opens ``allocation_transaction`` so the occupancy
read and the assignment write happen under the same single writer. Lifecycle
transitions in ``reservation_service`` call the helpers below from inside
their own boundary.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from ..db.transaction import allocation_transaction
from ..models.rental_models import (
    Asset,
    AssetHistory,
    Equipment,
    Reservation,
    ReservationItem,
    ReservationItemAsset,
)
from ..models.states import (
    ACTIVE_STATES,
    ASSIGNABLE_STATES,
    DAMAGE_TYPE_BY_CONDITION,
    REASSIGNABLE_STATES,
    AssetStatus,
    ReservationStatus,
    ReturnCondition,
)
from .availability_service import daily_reserved_counts
from .errors import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from .identity_service import ActorIdentity, require_admin
from .notification_service import notify_status_change
from .repair_service import open_repair_case


ALLOCATION_LOGGER = logging.getLogger("gear_rental.allocation")


@dataclass
class AssetReturn:
    asset_id: int
    condition: str = ReturnCondition.NORMAL.value
    notes: str | None = None


def get_reservation(db: Session, reservation_id: int) -> Reservation:
    reservation = db.execute(
        select(Reservation)
        .options(selectinload(Reservation.Items).selectinload(ReservationItem.AssetLinks))
        .where(Reservation.ReservationID == reservation_id)
    ).scalars().first()
    if not reservation:
        raise NotFoundError(f"Reservation {reservation_id} not found.")
    return reservation


def reservation_status(reservation: Reservation) -> ReservationStatus:
    return ReservationStatus(reservation.Status)


def get_occupied_asset_ids(
    db: Session,
    equipment_id: int | None = None,
    exclude_reservation_id: int | None = None,
) -> dict[int, str]:
    """Map asset id -> reservation number for assets held by approved/rented reservations."""
    stmt = (
        select(ReservationItemAsset.AssetID, Reservation.ReservationNumber)
        .join(ReservationItem, ReservationItem.ReservationItemID == ReservationItemAsset.ReservationItemID)
        .join(Reservation, Reservation.ReservationID == ReservationItem.ReservationID)
        .where(Reservation.Status.in_([state.value for state in ACTIVE_STATES]))
    )
    if equipment_id is not None:
        stmt = stmt.where(ReservationItem.EquipmentID == equipment_id)
    if exclude_reservation_id is not None:
        stmt = stmt.where(Reservation.ReservationID != exclude_reservation_id)
    return {int(asset_id): number for asset_id, number in db.execute(stmt).all()}


def _item_for(reservation: Reservation, equipment_id: int) -> ReservationItem:
    for item in reservation.Items:
        if item.EquipmentID == equipment_id:
            return item
    raise ValidationError(
        f"Reservation {reservation.ReservationNumber} has no line for equipment {equipment_id}."
    )


def _load_assets(db: Session, item: ReservationItem, asset_ids: list[int]) -> dict[int, Asset]:
    if len(set(asset_ids)) != len(asset_ids):
        raise ValidationError("Asset ids must not repeat within one line.")
    assets = {}
    for asset_id in asset_ids:
        asset = db.get(Asset, asset_id)
        if not asset:
            raise NotFoundError(f"Asset {asset_id} not found.")
        if asset.EquipmentID != item.EquipmentID:
            raise ValidationError(
                f"Asset {asset_id} belongs to equipment {asset.EquipmentID}, not {item.EquipmentID}."
            )
        assets[asset_id] = asset
    if len(asset_ids) > int(item.Quantity or 0):
        raise ValidationError(
            f"Line '{item.ItemName}' requests {item.Quantity} unit(s); {len(asset_ids)} assets supplied."
        )
    return assets


def ensure_exclusive(db: Session, reservation: Reservation, asset_ids: Iterable[int]) -> None:
    wanted = set(asset_ids)
    if not wanted:
        return
    occupied = get_occupied_asset_ids(db, exclude_reservation_id=reservation.ReservationID)
    conflicts = sorted(asset_id for asset_id in wanted if asset_id in occupied)
    if conflicts:
        holders = sorted({occupied[asset_id] for asset_id in conflicts})
        ALLOCATION_LOGGER.warning(
            "reservation %s: assets %s already held by %s",
            reservation.ReservationID,
            conflicts,
            holders,
        )
        raise ConflictError(
            f"Assets already assigned to active reservation(s) {', '.join(holders)}.",
            conflicting_asset_ids=conflicts,
        )


def _ensure_available(assets: Iterable[Asset]) -> None:
    unavailable = [asset for asset in assets if asset.Status != AssetStatus.AVAILABLE.value]
    if unavailable:
        listing = ", ".join(f"{asset.AssetID} ({asset.Status})" for asset in unavailable)
        raise ValidationError(f"Assets are not available: {listing}.")


def _set_links(item: ReservationItem, asset_ids: list[int]) -> None:
    # Kept ids reuse their link row so the (item, asset) unique key never collides on flush.
    existing = {link.AssetID: link for link in item.AssetLinks}
    links = []
    for position, asset_id in enumerate(asset_ids):
        link = existing.get(asset_id) or ReservationItemAsset(AssetID=asset_id)
        link.Position = position
        links.append(link)
    item.AssetLinks = links


def _append_history(
    db: Session,
    asset: Asset,
    reservation: Reservation,
    action: str,
    user_id: str,
    user_name: str,
    condition: str | None = None,
    notes: str | None = None,
) -> AssetHistory:
    entry = AssetHistory(
        AssetID=asset.AssetID,
        ReservationID=reservation.ReservationID,
        UserID=user_id,
        UserName=user_name,
        EquipmentName=asset.Equipment.EquipmentName if asset.Equipment else None,
        SerialNumber=asset.ManagementCode or asset.SerialNumber,
        Action=action,
        ReturnCondition=condition,
        ReturnNotes=notes,
        Timestamp=datetime.now(),
    )
    db.add(entry)
    db.flush()
    return entry


def _set_asset_status(asset: Asset, status: AssetStatus) -> None:
    asset.Status = status.value
    asset.UpdatedDate = datetime.now()


# ---------------------------------------------------------------------------
# Assign / reassign
# ---------------------------------------------------------------------------


def assign_assets(
    db: Session,
    actor: ActorIdentity,
    reservation_id: int,
    assignments: Iterable[tuple[int, list[int]]],
) -> Reservation:
    """Replace the asset lists of one or more lines; nothing is written unless every line validates."""
    require_admin(actor)
    with allocation_transaction(db):
        reservation = get_reservation(db, reservation_id)
        status = reservation_status(reservation)
        if status not in ASSIGNABLE_STATES:
            raise InvalidTransitionError(f"Assets cannot be assigned while the reservation is {status.value}.")

        planned = []
        seen_equipment = set()
        for equipment_id, asset_ids in assignments:
            if equipment_id in seen_equipment:
                raise ValidationError(f"Equipment {equipment_id} appears twice in one assignment.")
            seen_equipment.add(equipment_id)
            item = _item_for(reservation, equipment_id)
            ids = [int(asset_id) for asset_id in asset_ids]
            assets = _load_assets(db, item, ids)
            planned.append((item, ids, assets))
        if not planned:
            raise ValidationError("No assignments supplied.")

        ensure_exclusive(db, reservation, [asset_id for _, ids, _ in planned for asset_id in ids])
        for item, ids, assets in planned:
            current = set(item.AssignedAssetIDs)
            _ensure_available(asset for asset_id, asset in assets.items() if asset_id not in current)

        for item, ids, _ in planned:
            _set_links(item, ids)
        reservation.UpdatedDate = datetime.now()
        db.flush()
    ALLOCATION_LOGGER.info(
        "reservation %s assigned %s by %s",
        reservation_id,
        {item.EquipmentID: ids for item, ids, _ in planned},
        actor.id,
    )
    return reservation


def update_assignment(
    db: Session,
    actor: ActorIdentity,
    reservation_id: int,
    equipment_id: int,
    old_asset_ids: list[int],
    new_asset_ids: list[int],
) -> Reservation:
    """Swap serials on one line of an approved or rented reservation.

    ``old_asset_ids`` must match what the caller last saw; a mismatch means the
    line changed underneath them and raises ConflictError.
    """
    require_admin(actor)
    with allocation_transaction(db):
        reservation = get_reservation(db, reservation_id)
        status = reservation_status(reservation)
        if status not in REASSIGNABLE_STATES:
            raise InvalidTransitionError(f"Assignments cannot be changed while the reservation is {status.value}.")
        item = _item_for(reservation, equipment_id)

        old_ids = [int(asset_id) for asset_id in old_asset_ids]
        new_ids = [int(asset_id) for asset_id in new_asset_ids]
        current = set(item.AssignedAssetIDs)
        if set(old_ids) != current:
            ALLOCATION_LOGGER.warning(
                "reservation %s line %s: stale assignment view %s (current %s)",
                reservation_id,
                equipment_id,
                sorted(set(old_ids)),
                sorted(current),
            )
            raise ConflictError(
                "Assignment changed since it was loaded; refresh and retry.",
                conflicting_asset_ids=current.symmetric_difference(old_ids),
            )

        assets = _load_assets(db, item, new_ids)
        added = [asset_id for asset_id in new_ids if asset_id not in current]
        released = [asset_id for asset_id in item.AssignedAssetIDs if asset_id not in set(new_ids)]
        links = {link.AssetID: link for link in item.AssetLinks}
        already_returned = sorted(asset_id for asset_id in released if links[asset_id].ReturnedAt is not None)
        if already_returned:
            raise ValidationError(f"Assets {already_returned} were already returned and stay on the reservation.")
        ensure_exclusive(db, reservation, added)
        _ensure_available(assets[asset_id] for asset_id in added)

        if status == ReservationStatus.RENTED:
            still_held = get_occupied_asset_ids(db, exclude_reservation_id=reservation.ReservationID)
            for asset_id in released:
                asset = db.get(Asset, asset_id)
                if asset_id not in still_held and asset.Status == AssetStatus.RENTED.value:
                    _set_asset_status(asset, AssetStatus.AVAILABLE)
                _append_history(db, asset, reservation, "unassigned", actor.id, actor.name)
            for asset_id in added:
                asset = assets[asset_id]
                _set_asset_status(asset, AssetStatus.RENTED)
                _append_history(db, asset, reservation, "rented", actor.id, reservation.LeaderName)

        _set_links(item, new_ids)
        reservation.UpdatedDate = datetime.now()
        db.flush()
    ALLOCATION_LOGGER.info(
        "reservation %s line %s reassigned: released=%s added=%s by %s",
        reservation_id,
        equipment_id,
        released,
        added,
        actor.id,
    )
    return reservation


# ---------------------------------------------------------------------------
# Lifecycle helpers; callers hold allocation_transaction
# ---------------------------------------------------------------------------


def validate_approval(db: Session, reservation: Reservation) -> None:
    ensure_exclusive(
        db,
        reservation,
        [asset_id for item in reservation.Items for asset_id in item.AssignedAssetIDs],
    )
    start_day = reservation.StartDate.date()
    end_day = reservation.EndDate.date()
    for item in reservation.Items:
        equipment = db.get(Equipment, item.EquipmentID)
        if not equipment:
            raise NotFoundError(f"Equipment {item.EquipmentID} for line '{item.ItemName}' no longer exists.")
        total = int(equipment.TotalQuantity or 0)
        counts = daily_reserved_counts(
            db,
            item.EquipmentID,
            start_day,
            end_day,
            ACTIVE_STATES,
            exclude_reservation_id=reservation.ReservationID,
        )
        for day, reserved in sorted(counts.items()):
            if reserved + int(item.Quantity or 0) > total:
                raise ValidationError(
                    f"Not enough '{equipment.EquipmentName}' on {day.isoformat()}: "
                    f"{reserved} of {total} already approved, {item.Quantity} requested."
                )


def checkout_assets(db: Session, actor: ActorIdentity, reservation: Reservation) -> list[int]:
    ids = [asset_id for item in reservation.Items for asset_id in item.AssignedAssetIDs]
    ensure_exclusive(db, reservation, ids)
    assets = [db.get(Asset, asset_id) for asset_id in ids]
    _ensure_available(assets)
    for asset in assets:
        _set_asset_status(asset, AssetStatus.RENTED)
        _append_history(db, asset, reservation, "rented", actor.id, reservation.LeaderName)
    for item in reservation.Items:
        item.CheckedOut = True
    return ids


def revert_checkout(db: Session, actor: ActorIdentity, reservation: Reservation) -> list[int]:
    links = [link for item in reservation.Items for link in item.AssetLinks]
    if any(link.ReturnedAt is not None for link in links):
        raise InvalidTransitionError("Checkout cannot be reverted after assets were returned.")
    reverted = []
    for link in links:
        asset = db.get(Asset, link.AssetID)
        if asset and asset.Status == AssetStatus.RENTED.value:
            _set_asset_status(asset, AssetStatus.AVAILABLE)
        if asset:
            _append_history(db, asset, reservation, "checkout_reverted", actor.id, actor.name)
            reverted.append(asset.AssetID)
    for item in reservation.Items:
        item.CheckedOut = False
    return reverted


def release_assignments(reservation: Reservation, include_checked_out: bool = False) -> list[int]:
    released = []
    for item in reservation.Items:
        if item.CheckedOut and not include_checked_out:
            continue
        released.extend(item.AssignedAssetIDs)
        item.AssetLinks = []
    return released


def _finish_return(db: Session, reservation: Reservation) -> None:
    reservation.Status = ReservationStatus.RETURNED.value
    reservation.UpdatedDate = datetime.now()
    for item in reservation.Items:
        item.Returned = True
    notify_status_change(db, reservation, ReservationStatus.RETURNED)


def _return_links(
    db: Session,
    actor: ActorIdentity,
    reservation: Reservation,
    returns: list[tuple[ReservationItemAsset, ReturnCondition, str | None]],
) -> list[int]:
    repair_ids = []
    now = datetime.now()
    for link, condition, notes in returns:
        asset = db.get(Asset, link.AssetID)
        if condition == ReturnCondition.NORMAL:
            _set_asset_status(asset, AssetStatus.AVAILABLE)
        else:
            _set_asset_status(asset, AssetStatus.MAINTENANCE)
        link.ReturnCondition = condition.value
        link.ReturnNotes = notes
        if notes:
            asset.Note = notes
        link.ReturnedAt = now
        _append_history(db, asset, reservation, "returned", actor.id, actor.name, condition.value, notes)
        if condition != ReturnCondition.NORMAL:
            repair = open_repair_case(
                db,
                damage_type=DAMAGE_TYPE_BY_CONDITION[condition],
                description=notes or "",
                reservation=reservation,
                asset=asset,
            )
            repair_ids.append(repair.RepairCaseID)
    for item in reservation.Items:
        if item.AssetLinks and all(link.ReturnedAt is not None for link in item.AssetLinks):
            item.Returned = True
    return repair_ids


def return_remaining_assets(db: Session, actor: ActorIdentity, reservation: Reservation) -> list[int]:
    """Return every still-outstanding asset as normal and mark the reservation returned."""
    pending = [
        (link, ReturnCondition.NORMAL, None)
        for item in reservation.Items
        for link in item.AssetLinks
        if link.ReturnedAt is None
    ]
    _return_links(db, actor, reservation, pending)
    _finish_return(db, reservation)
    return [link.AssetID for link, _, _ in pending]


def _parse_condition(raw: str | ReturnCondition | None) -> ReturnCondition:
    try:
        return ReturnCondition(str(raw or ReturnCondition.NORMAL.value).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(condition.value for condition in ReturnCondition)
        raise ValidationError(f"Unknown return condition '{raw}'. Allowed: {allowed}.") from exc


def return_assets(
    db: Session,
    actor: ActorIdentity,
    reservation_id: int,
    returns: Iterable[AssetReturn],
) -> dict:
    """Check assets back in; damaged or incomplete units go to maintenance with a repair case.

    A subset may be returned. Once every assigned asset is back the
    reservation itself becomes ``returned``.
    """
    require_admin(actor)
    with allocation_transaction(db):
        reservation = get_reservation(db, reservation_id)
        status = reservation_status(reservation)
        if status != ReservationStatus.RENTED:
            raise InvalidTransitionError(f"Assets can only be returned from a rented reservation, not {status.value}.")

        links = {link.AssetID: link for item in reservation.Items for link in item.AssetLinks}
        planned = []
        seen = set()
        for entry in returns:
            asset_id = int(entry.asset_id)
            if asset_id in seen:
                raise ValidationError(f"Asset {asset_id} listed twice.")
            seen.add(asset_id)
            link = links.get(asset_id)
            if link is None:
                raise ValidationError(f"Asset {asset_id} is not assigned to reservation {reservation.ReservationNumber}.")
            if link.ReturnedAt is not None:
                raise ValidationError(f"Asset {asset_id} was already returned.")
            notes = (entry.notes or "").strip() or None
            planned.append((link, _parse_condition(entry.condition), notes))
        if not planned:
            raise ValidationError("No returns supplied.")

        repair_ids = _return_links(db, actor, reservation, planned)
        completed = all(link.ReturnedAt is not None for link in links.values())
        if completed:
            _finish_return(db, reservation)
        reservation.UpdatedDate = datetime.now()
        db.flush()
    ALLOCATION_LOGGER.info(
        "reservation %s returned assets %s (repairs %s) by %s",
        reservation_id,
        sorted(seen),
        repair_ids,
        actor.id,
    )
    return {
        "reservationID": reservation.ReservationID,
        "status": reservation.Status,
        "returnedAssetIDs": sorted(seen),
        "repairCaseIDs": repair_ids,
        "completed": completed,
    }
