from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..db.transaction import allocation_transaction
from ..models.rental_models import (
    Asset,
    AssetHistory,
    Category,
    Equipment,
    Reservation,
    ReservationItem,
    ReservationItemAsset,
)
from ..models.states import ACTIVE_STATES, AssetStatus, ChangeAction, ChangeSource
from .change_history_service import (
    ASSET_FIELD_LABELS,
    EQUIPMENT_FIELD_LABELS,
    detect_changes,
    record_change,
    snapshot_fields,
)
from .errors import ConflictError, NotFoundError, ValidationError
from .identity_service import ActorIdentity, require_admin


REGISTRY_LOGGER = logging.getLogger("gear_rental.registry")

DEFAULT_SORT_ORDER = 999
_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


def _map_equipment_field(field: str) -> str:
    mapping = {
        "equipmentName": "EquipmentName",
        "name": "EquipmentName",
        "categoryID": "CategoryID",
        "description": "Description",
        "manufacturer": "Manufacturer",
        "imagePath": "ImagePath",
        "totalQuantity": "TotalQuantity",
        "isVisible": "IsVisible",
        "sortOrder": "SortOrder",
        "isGroupPrint": "IsGroupPrint",
    }
    return mapping.get(field, field)


def _map_asset_field(field: str) -> str:
    mapping = {
        "serialNumber": "SerialNumber",
        "managementCode": "ManagementCode",
        "status": "Status",
        "note": "Note",
    }
    return mapping.get(field, field)


def _clean_text(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def parse_serial_list(raw: str | Iterable[str]) -> list[str]:
    if isinstance(raw, str):
        parts = re.split(r"[\n,]", raw)
    else:
        parts = []
        for chunk in raw:
            parts.extend(re.split(r"[\n,]", str(chunk or "")))
    return [part.strip() for part in parts if part and part.strip()]


def serial_sort_key(asset: Asset) -> tuple:
    serial = (asset.SerialNumber or "").strip()
    match = _LEADING_INT.match(serial)
    if match:
        return (0, int(match.group(1)), serial, asset.AssetID or 0)
    return (1, 0, serial, asset.AssetID or 0)


def get_category(db: Session, category_id: int) -> Category:
    category = db.get(Category, category_id)
    if not category:
        raise NotFoundError(f"Category {category_id} not found.")
    return category


def get_equipment(db: Session, equipment_id: int) -> Equipment:
    equipment = db.get(Equipment, equipment_id)
    if not equipment:
        raise NotFoundError(f"Equipment {equipment_id} not found.")
    return equipment


def get_asset(db: Session, asset_id: int) -> Asset:
    asset = db.get(Asset, asset_id)
    if not asset:
        raise NotFoundError(f"Asset {asset_id} not found.")
    return asset


def _validate_equipment_values(db: Session, equipment: Equipment) -> None:
    if not _clean_text(equipment.EquipmentName):
        raise ValidationError("Equipment name is required.")
    equipment.EquipmentName = _clean_text(equipment.EquipmentName)
    if equipment.TotalQuantity is None:
        equipment.TotalQuantity = 0
    if int(equipment.TotalQuantity) < 0:
        raise ValidationError("totalQuantity must be zero or greater.")
    if equipment.SortOrder is None:
        equipment.SortOrder = DEFAULT_SORT_ORDER
    if equipment.IsVisible is None:
        equipment.IsVisible = True
    if equipment.IsGroupPrint is None:
        equipment.IsGroupPrint = False
    if equipment.CategoryID is not None:
        get_category(db, equipment.CategoryID)


def _validate_asset_status(raw: str | None) -> str:
    value = (raw or AssetStatus.AVAILABLE.value).strip().lower()
    try:
        return AssetStatus(value).value
    except ValueError as exc:
        allowed = ", ".join(status.value for status in AssetStatus)
        raise ValidationError(f"Unknown asset status '{raw}'. Allowed: {allowed}.") from exc


def _active_holders(db: Session, asset_ids: list[int]) -> dict[int, str]:
    if not asset_ids:
        return {}
    rows = db.execute(
        select(ReservationItemAsset.AssetID, Reservation.ReservationNumber)
        .join(ReservationItem, ReservationItem.ReservationItemID == ReservationItemAsset.ReservationItemID)
        .join(Reservation, Reservation.ReservationID == ReservationItem.ReservationID)
        .where(ReservationItemAsset.AssetID.in_(asset_ids))
        .where(Reservation.Status.in_([state.value for state in ACTIVE_STATES]))
    ).all()
    return {int(asset_id): number for asset_id, number in rows}


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------


def create_category(
    db: Session,
    actor: ActorIdentity,
    name: str,
    parent_id: int | None = None,
    sort_order: int | None = None,
) -> Category:
    require_admin(actor)
    clean_name = _clean_text(name)
    if not clean_name:
        raise ValidationError("Category name is required.")
    with allocation_transaction(db):
        if parent_id is not None:
            get_category(db, parent_id)
        category = Category(
            CategoryName=clean_name,
            ParentCategoryID=parent_id,
            SortOrder=sort_order,
            CreatedDate=datetime.now(),
        )
        db.add(category)
        db.flush()
    return category


def list_categories(db: Session) -> list[dict]:
    categories = db.execute(select(Category)).scalars().all()
    categories = sorted(
        categories,
        key=lambda c: (c.SortOrder if c.SortOrder is not None else DEFAULT_SORT_ORDER, c.CategoryName),
    )
    return [
        {
            "categoryID": c.CategoryID,
            "categoryName": c.CategoryName,
            "parentCategoryID": c.ParentCategoryID,
            "sortOrder": c.SortOrder,
        }
        for c in categories
    ]


# ---------------------------------------------------------------------------
# Equipment types
# ---------------------------------------------------------------------------


def _asset_counts(db: Session) -> dict[int, int]:
    return dict(
        db.execute(
            select(Asset.EquipmentID, func.count(Asset.AssetID)).group_by(Asset.EquipmentID)
        ).all()
    )


def list_equipment(db: Session, include_hidden: bool = True) -> list[dict]:
    stmt = select(Equipment)
    if not include_hidden:
        stmt = stmt.where(Equipment.IsVisible == True)  # noqa: E712
    rows = db.execute(stmt).scalars().all()
    rows = sorted(rows, key=lambda e: (e.SortOrder if e.SortOrder is not None else DEFAULT_SORT_ORDER, e.EquipmentName))
    counts = _asset_counts(db)
    return [serialize_equipment(e, counts.get(e.EquipmentID, 0)) for e in rows]


def create_equipment(
    db: Session,
    actor: ActorIdentity,
    fields: dict[str, Any],
    *,
    source: ChangeSource = ChangeSource.MANUAL,
    batch_id: str | None = None,
) -> Equipment:
    require_admin(actor)
    with allocation_transaction(db):
        equipment = Equipment()
        for field, value in fields.items():
            if field == "equipmentID":
                continue
            setattr(equipment, _map_equipment_field(field), value)
        _validate_equipment_values(db, equipment)
        equipment.CreatedDate = datetime.now()
        equipment.UpdatedDate = datetime.now()
        db.add(equipment)
        db.flush()
        record_change(
            db,
            actor,
            target_type="equipment",
            target_id=equipment.EquipmentID,
            target_name=equipment.EquipmentName,
            action=ChangeAction.CREATE,
            changes=detect_changes({}, snapshot_fields(equipment, EQUIPMENT_FIELD_LABELS), EQUIPMENT_FIELD_LABELS),
            source=source,
            batch_id=batch_id,
        )
    REGISTRY_LOGGER.info("equipment %s created by %s", equipment.EquipmentID, actor.id)
    return equipment


def update_equipment(
    db: Session,
    actor: ActorIdentity,
    equipment_id: int,
    fields: dict[str, Any],
    *,
    source: ChangeSource = ChangeSource.MANUAL,
    batch_id: str | None = None,
) -> Equipment:
    require_admin(actor)
    with allocation_transaction(db):
        equipment = get_equipment(db, equipment_id)
        before = snapshot_fields(equipment, EQUIPMENT_FIELD_LABELS)
        for field, value in fields.items():
            if field == "equipmentID":
                continue
            setattr(equipment, _map_equipment_field(field), value)
        _validate_equipment_values(db, equipment)
        changes = detect_changes(before, snapshot_fields(equipment, EQUIPMENT_FIELD_LABELS), EQUIPMENT_FIELD_LABELS)
        if changes:
            equipment.UpdatedDate = datetime.now()
        record_change(
            db,
            actor,
            target_type="equipment",
            target_id=equipment.EquipmentID,
            target_name=equipment.EquipmentName,
            action=ChangeAction.UPDATE,
            changes=changes,
            source=source,
            batch_id=batch_id,
        )
    return equipment


def move_equipment_to_category(db: Session, actor: ActorIdentity, equipment_id: int, category_id: int) -> Equipment:
    # Assets stay with their equipment; only the category reference moves.
    return update_equipment(db, actor, equipment_id, {"categoryID": category_id})


def delete_equipment(db: Session, actor: ActorIdentity, equipment_id: int) -> None:
    require_admin(actor)
    with allocation_transaction(db):
        equipment = get_equipment(db, equipment_id)
        held = _active_holders(db, [asset.AssetID for asset in equipment.Assets])
        if held:
            raise ConflictError(
                "Equipment has assets bound to active reservations.",
                conflicting_asset_ids=held.keys(),
            )
        before = snapshot_fields(equipment, EQUIPMENT_FIELD_LABELS)
        record_change(
            db,
            actor,
            target_type="equipment",
            target_id=equipment.EquipmentID,
            target_name=equipment.EquipmentName,
            action=ChangeAction.DELETE,
            changes=detect_changes(before, {}, EQUIPMENT_FIELD_LABELS),
        )
        db.delete(equipment)
    REGISTRY_LOGGER.info("equipment %s deleted by %s", equipment_id, actor.id)


# ---------------------------------------------------------------------------
# Assets
# ---------------------------------------------------------------------------


def insert_asset(
    db: Session,
    actor: ActorIdentity,
    equipment: Equipment,
    serial_number: str | None,
    management_code: str | None = None,
    status: str | None = None,
    note: str | None = None,
    *,
    source: ChangeSource = ChangeSource.MANUAL,
    batch_id: str | None = None,
) -> Asset:
    """Write one asset row and its create entry; the caller owns the transaction."""
    now = datetime.now()
    asset = Asset(
        EquipmentID=equipment.EquipmentID,
        SerialNumber=_clean_text(serial_number),
        ManagementCode=_clean_text(management_code),
        Status=_validate_asset_status(status),
        Note=_clean_text(note),
        CreatedDate=now,
        UpdatedDate=now,
    )
    db.add(asset)
    db.flush()
    record_change(
        db,
        actor,
        target_type="asset",
        target_id=asset.AssetID,
        target_name=_asset_display_name(equipment, asset),
        action=ChangeAction.CREATE,
        changes=detect_changes({}, snapshot_fields(asset, ASSET_FIELD_LABELS), ASSET_FIELD_LABELS),
        source=source,
        batch_id=batch_id,
    )
    return asset


def _asset_display_name(equipment: Equipment | None, asset: Asset) -> str:
    label = asset.ManagementCode or asset.SerialNumber or f"#{asset.AssetID}"
    if equipment is None:
        return label
    return f"{equipment.EquipmentName} [{label}]"


def create_asset(
    db: Session,
    actor: ActorIdentity,
    equipment_id: int,
    serial_number: str | None,
    management_code: str | None = None,
    status: str | None = None,
    note: str | None = None,
) -> Asset:
    require_admin(actor)
    with allocation_transaction(db):
        equipment = get_equipment(db, equipment_id)
        asset = insert_asset(db, actor, equipment, serial_number, management_code, status, note)
    REGISTRY_LOGGER.info("asset %s created for equipment %s by %s", asset.AssetID, equipment_id, actor.id)
    return asset


def create_asset_batch(
    db: Session,
    actor: ActorIdentity,
    equipment_id: int,
    serial_numbers: str | Iterable[str],
) -> list[Asset]:
    require_admin(actor)
    serials = parse_serial_list(serial_numbers)
    if not serials:
        raise ValidationError("No serial numbers supplied.")
    with allocation_transaction(db):
        equipment = get_equipment(db, equipment_id)
        created = [insert_asset(db, actor, equipment, serial) for serial in serials]
    REGISTRY_LOGGER.info("%d assets created for equipment %s by %s", len(created), equipment_id, actor.id)
    return created


def update_asset(
    db: Session,
    actor: ActorIdentity,
    asset_id: int,
    fields: dict[str, Any],
    *,
    source: ChangeSource = ChangeSource.MANUAL,
    batch_id: str | None = None,
) -> Asset:
    """Direct admin edit, including manual status flags outside any reservation flow."""
    require_admin(actor)
    with allocation_transaction(db):
        asset = get_asset(db, asset_id)
        before = snapshot_fields(asset, ASSET_FIELD_LABELS)
        for field, value in fields.items():
            column = _map_asset_field(field)
            if column not in ASSET_FIELD_LABELS:
                continue
            if column == "Status":
                value = _validate_asset_status(value)
            elif column == "Note":
                value = None if value is None else str(value).strip()
            else:
                value = _clean_text(value)
            setattr(asset, column, value)
        changes = detect_changes(before, snapshot_fields(asset, ASSET_FIELD_LABELS), ASSET_FIELD_LABELS)
        if changes:
            asset.UpdatedDate = datetime.now()
        status_only = bool(changes) and all(change["field"] == "Status" for change in changes)
        record_change(
            db,
            actor,
            target_type="asset",
            target_id=asset.AssetID,
            target_name=_asset_display_name(asset.Equipment, asset),
            action=ChangeAction.STATUS_CHANGE if status_only else ChangeAction.UPDATE,
            changes=changes,
            source=source,
            batch_id=batch_id,
        )
        if status_only and asset.AssetID in _active_holders(db, [asset.AssetID]):
            REGISTRY_LOGGER.warning(
                "asset %s manually set to %s while bound to an active reservation",
                asset.AssetID,
                asset.Status,
            )
    return asset


def delete_asset(db: Session, actor: ActorIdentity, asset_id: int) -> None:
    require_admin(actor)
    with allocation_transaction(db):
        asset = get_asset(db, asset_id)
        held = _active_holders(db, [asset.AssetID])
        if held:
            raise ConflictError(
                f"Asset is bound to active reservation {held[asset.AssetID]}.",
                conflicting_asset_ids=[asset.AssetID],
            )
        record_change(
            db,
            actor,
            target_type="asset",
            target_id=asset.AssetID,
            target_name=_asset_display_name(asset.Equipment, asset),
            action=ChangeAction.DELETE,
            changes=detect_changes(snapshot_fields(asset, ASSET_FIELD_LABELS), {}, ASSET_FIELD_LABELS),
        )
        db.delete(asset)
    REGISTRY_LOGGER.info("asset %s deleted by %s", asset_id, actor.id)


def list_assets(db: Session, equipment_id: int) -> list[Asset]:
    get_equipment(db, equipment_id)
    assets = db.execute(select(Asset).where(Asset.EquipmentID == equipment_id)).scalars().all()
    return sorted(assets, key=serial_sort_key)


def list_available_assets(db: Session, equipment_id: int) -> list[Asset]:
    return [asset for asset in list_assets(db, equipment_id) if asset.Status == AssetStatus.AVAILABLE.value]


def get_asset_history(db: Session, asset_id: int) -> list[dict]:
    get_asset(db, asset_id)
    rows = db.execute(
        select(AssetHistory, Reservation.ReservationNumber)
        .outerjoin(Reservation, Reservation.ReservationID == AssetHistory.ReservationID)
        .where(AssetHistory.AssetID == asset_id)
        .order_by(AssetHistory.Timestamp.desc(), AssetHistory.AssetHistoryID.desc())
    ).all()
    payloads = []
    for entry, reservation_number in rows:
        payload = serialize_asset_history(entry)
        payload["reservationNumber"] = reservation_number or "Unknown"
        payloads.append(payload)
    return payloads


def get_reservation_asset_history(db: Session, reservation_id: int) -> list[dict]:
    rows = db.execute(
        select(AssetHistory)
        .where(AssetHistory.ReservationID == reservation_id)
        .order_by(AssetHistory.AssetHistoryID)
    ).scalars().all()
    return [serialize_asset_history(row) for row in rows]


def serialize_equipment(equipment: Equipment, asset_count: int | None = None) -> dict:
    payload = {
        "equipmentID": equipment.EquipmentID,
        "equipmentName": equipment.EquipmentName,
        "categoryID": equipment.CategoryID,
        "description": equipment.Description,
        "manufacturer": equipment.Manufacturer,
        "imagePath": equipment.ImagePath,
        "totalQuantity": int(equipment.TotalQuantity or 0),
        "isVisible": bool(equipment.IsVisible),
        "sortOrder": equipment.SortOrder if equipment.SortOrder is not None else DEFAULT_SORT_ORDER,
        "isGroupPrint": bool(equipment.IsGroupPrint),
        "createdDate": equipment.CreatedDate,
        "updatedDate": equipment.UpdatedDate,
    }
    if asset_count is not None:
        payload["assetCount"] = asset_count
    return payload


def serialize_asset(asset: Asset) -> dict:
    return {
        "assetID": asset.AssetID,
        "equipmentID": asset.EquipmentID,
        "equipmentName": asset.Equipment.EquipmentName if asset.Equipment else "Unknown Equipment",
        "serialNumber": asset.SerialNumber,
        "managementCode": asset.ManagementCode,
        "status": asset.Status,
        "note": asset.Note,
        "createdDate": asset.CreatedDate,
        "updatedDate": asset.UpdatedDate,
    }


def serialize_asset_history(entry: AssetHistory) -> dict:
    return {
        "assetHistoryID": entry.AssetHistoryID,
        "assetID": entry.AssetID,
        "reservationID": entry.ReservationID,
        "userID": entry.UserID,
        "userName": entry.UserName or "Unknown",
        "equipmentName": entry.EquipmentName or "Unknown",
        "serialNumber": entry.SerialNumber,
        "action": entry.Action,
        "returnCondition": entry.ReturnCondition,
        "returnNotes": entry.ReturnNotes,
        "timestamp": entry.Timestamp,
    }
