from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db.transaction import allocation_transaction
from ..models.rental_models import Asset, Equipment, ImportLog
from ..models.states import ChangeSource
from .equipment_service import create_equipment, insert_asset, update_asset, update_equipment
from .errors import RentalError, ValidationError
from .identity_service import ActorIdentity, require_admin


IMPORT_LOGGER = logging.getLogger("gear_rental.import")

_EQUIPMENT_COLUMNS = {
    "name": "equipmentName",
    "equipmentName": "equipmentName",
    "categoryId": "categoryID",
    "categoryID": "categoryID",
    "description": "description",
    "manufacturer": "manufacturer",
    "totalQuantity": "totalQuantity",
    "sortOrder": "sortOrder",
    "isVisible": "isVisible",
    "isGroupPrint": "isGroupPrint",
}


def _equipment_fields(row: dict[str, Any]) -> dict[str, Any]:
    fields = {}
    for key, value in row.items():
        target = _EQUIPMENT_COLUMNS.get(key)
        if target is None or value is None:
            continue
        fields[target] = value.strip() if isinstance(value, str) else value
    return fields


def _serial_entries(row: dict[str, Any]) -> list[dict[str, Any]]:
    entries = []
    for raw in row.get("serials") or []:
        if isinstance(raw, dict):
            serial = str(raw.get("serialNumber") or "").strip()
            entry = {key: raw[key] for key in ("managementCode", "status", "note") if raw.get(key) is not None}
        else:
            serial = str(raw or "").strip()
            entry = {}
        if serial:
            entry["serialNumber"] = serial
            entries.append(entry)
    return entries


def _import_serials(
    db: Session,
    actor: ActorIdentity,
    equipment: Equipment,
    entries: list[dict[str, Any]],
    batch_id: str,
    counters: dict[str, int],
) -> None:
    existing = {
        (asset.SerialNumber or "").strip(): asset
        for asset in db.execute(select(Asset).where(Asset.EquipmentID == equipment.EquipmentID)).scalars().all()
    }
    for entry in entries:
        serial = entry["serialNumber"]
        try:
            with db.begin_nested():
                asset = existing.get(serial)
                if asset is None:
                    existing[serial] = insert_asset(
                        db,
                        actor,
                        equipment,
                        serial,
                        entry.get("managementCode"),
                        entry.get("status"),
                        entry.get("note"),
                        source=ChangeSource.EXCEL_IMPORT,
                        batch_id=batch_id,
                    )
                    counters["assetCreated"] += 1
                elif len(entry) > 1:
                    update_asset(
                        db,
                        actor,
                        asset.AssetID,
                        {key: value for key, value in entry.items() if key != "serialNumber"},
                        source=ChangeSource.EXCEL_IMPORT,
                        batch_id=batch_id,
                    )
                    counters["assetUpdated"] += 1
        except (RentalError, SQLAlchemyError) as exc:
            counters["assetErrors"] += 1
            IMPORT_LOGGER.warning("import %s: serial %r for %s failed: %s", batch_id, serial, equipment.EquipmentName, exc)


def bulk_import_equipment(
    db: Session,
    actor: ActorIdentity,
    rows: Iterable[dict[str, Any]],
    file_name: str = "upload.xlsx",
) -> dict:
    """Upsert already-parsed spreadsheet rows by equipment name.

    Each row runs in its own savepoint; a failing row bumps an error counter
    and the import moves on. All history entries share one batch id.
    """
    require_admin(actor)
    batch_id = uuid.uuid4().hex
    counters = {
        "equipmentCreated": 0,
        "equipmentUpdated": 0,
        "equipmentErrors": 0,
        "assetCreated": 0,
        "assetUpdated": 0,
        "assetErrors": 0,
    }

    with allocation_transaction(db):
        by_name = {
            (row.EquipmentName or "").strip().lower(): row
            for row in db.execute(select(Equipment)).scalars().all()
        }
        for index, row in enumerate(rows, start=1):
            fields = _equipment_fields(row)
            name = str(fields.get("equipmentName") or "").strip()
            serials = _serial_entries(row)
            try:
                with db.begin_nested():
                    if not name:
                        raise ValidationError("Equipment name is required.")
                    equipment = by_name.get(name.lower())
                    if equipment is None:
                        fields.setdefault("totalQuantity", len(serials))
                        equipment = create_equipment(
                            db,
                            actor,
                            fields,
                            source=ChangeSource.EXCEL_IMPORT,
                            batch_id=batch_id,
                        )
                        by_name[name.lower()] = equipment
                        counters["equipmentCreated"] += 1
                    else:
                        update_equipment(
                            db,
                            actor,
                            equipment.EquipmentID,
                            fields,
                            source=ChangeSource.EXCEL_IMPORT,
                            batch_id=batch_id,
                        )
                        counters["equipmentUpdated"] += 1
            except (RentalError, SQLAlchemyError, TypeError, ValueError) as exc:
                counters["equipmentErrors"] += 1
                IMPORT_LOGGER.warning("import %s: row %d (%r) failed: %s", batch_id, index, name, exc)
                continue
            _import_serials(db, actor, equipment, serials, batch_id, counters)

        log = ImportLog(
            UserID=actor.id,
            UserName=actor.name,
            UserEmail=actor.email or None,
            FileName=(file_name or "upload.xlsx").strip(),
            BatchID=batch_id,
            EquipmentCreated=counters["equipmentCreated"],
            EquipmentUpdated=counters["equipmentUpdated"],
            EquipmentErrors=counters["equipmentErrors"],
            AssetCreated=counters["assetCreated"],
            AssetUpdated=counters["assetUpdated"],
            AssetErrors=counters["assetErrors"],
            CreatedAt=datetime.now(),
        )
        db.add(log)
        db.flush()

    IMPORT_LOGGER.info("import %s (%s) by %s: %s", batch_id, log.FileName, actor.id, counters)
    return {"batchId": batch_id, "importLogID": log.ImportLogID, **counters}
