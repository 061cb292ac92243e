import json
import unittest
from datetime import date

from sqlalchemy import select

from ..db.transaction import allocation_transaction
from ..models.rental_models import Asset, ChangeHistory
from ..models.states import ChangeSource
from ..services.allocation_service import assign_assets
from ..services.change_history_service import (
    EQUIPMENT_FIELD_LABELS,
    detect_changes,
    format_version,
    get_changes_by_batch,
    get_changes_by_target,
    get_latest_version,
    list_changes,
)
from ..services.equipment_service import (
    create_asset,
    create_asset_batch,
    create_category,
    delete_asset,
    delete_equipment,
    get_asset_history,
    insert_asset,
    list_assets,
    list_available_assets,
    list_equipment,
    move_equipment_to_category,
    parse_serial_list,
    update_asset,
    update_equipment,
)
from ..services.errors import AccessDeniedError, ConflictError, ValidationError
from ..services.reservation_service import change_reservation_status
from .support import ADMIN, STUDENT, DatabaseTestCase


class DetectChangesTests(unittest.TestCase):
    def test_only_changed_fields_are_reported(self):
        changes = detect_changes(
            {"EquipmentName": "FX3", "TotalQuantity": 2, "IsVisible": True},
            {"EquipmentName": "FX3", "TotalQuantity": 3, "IsVisible": False},
            EQUIPMENT_FIELD_LABELS,
        )
        self.assertEqual(
            changes,
            [
                {"field": "TotalQuantity", "fieldLabel": "Total quantity", "oldValue": "2", "newValue": "3"},
                {"field": "IsVisible", "fieldLabel": "Visible in catalog", "oldValue": "true", "newValue": "false"},
            ],
        )

    def test_version_strings(self):
        self.assertEqual(format_version(3, 0), "v3")
        self.assertEqual(format_version(3, 2), "v3.2")

    def test_serial_list_parsing(self):
        self.assertEqual(parse_serial_list(" S1, S2\n\nS3 ,"), ["S1", "S2", "S3"])
        self.assertEqual(parse_serial_list(["A1\nA2", "A3"]), ["A1", "A2", "A3"])


class RegistryHistoryTests(DatabaseTestCase):
    def entries(self):
        return self.db.execute(select(ChangeHistory).order_by(ChangeHistory.ChangeHistoryID)).scalars().all()

    def test_manual_edits_bump_minor_versions(self):
        equipment, _ = self.make_equipment("FX3", total=2, serials=())
        update_equipment(self.db, ADMIN, equipment.EquipmentID, {"equipmentName": "FX3"})
        update_equipment(self.db, ADMIN, equipment.EquipmentID, {"equipmentName": "FX3 Body"})

        rows = self.entries()
        self.assertEqual([(row.VersionMajor, row.VersionMinor, row.Action) for row in rows], [(1, 0, "create"), (1, 1, "update")])
        self.assertEqual(json.loads(rows[1].Changes), [
            {"field": "EquipmentName", "fieldLabel": "Name", "oldValue": "FX3", "newValue": "FX3 Body"},
        ])

        latest = get_latest_version(self.db)
        self.assertEqual(latest["versionString"], "v1.1")
        self.assertEqual(latest["fullVersion"], f"{date.today().isoformat()}_Desk Admin_v1.1")

    def test_status_only_edit_is_a_status_change(self):
        _, assets = self.make_equipment("FX3", total=1, serials=("A1",))

        update_asset(self.db, ADMIN, assets[0].AssetID, {"status": "repair"})
        update_asset(self.db, ADMIN, assets[0].AssetID, {"note": "sticky button", "status": "repair"})

        actions = [row["action"] for row in get_changes_by_target(self.db, assets[0].AssetID, "asset")]
        self.assertEqual(actions, ["update", "status_change", "create"])
        with self.assertRaises(ValidationError):
            update_asset(self.db, ADMIN, assets[0].AssetID, {"status": "vaporised"})

    def test_listing_is_paginated(self):
        self.make_equipment("FX3", total=1, serials=("A1", "A2", "A3"))

        first = list_changes(self.db, limit=3)
        second = list_changes(self.db, limit=3, cursor=first["nextCursor"])

        self.assertTrue(first["hasMore"])
        self.assertEqual(len(first["logs"]), 3)
        self.assertFalse(second["hasMore"])
        self.assertEqual([log["targetType"] for log in second["logs"]], ["equipment"])
        self.assertEqual(len(list_changes(self.db, target_type="asset")["logs"]), 3)
        self.assertEqual(len(list_changes(self.db, user_id="nobody")["logs"]), 0)

    def test_students_cannot_edit_registry(self):
        equipment, _ = self.make_equipment("FX3", total=1, serials=())
        with self.assertRaises(AccessDeniedError):
            update_equipment(self.db, STUDENT, equipment.EquipmentID, {"totalQuantity": 5})
        with self.assertRaises(AccessDeniedError):
            create_asset(self.db, STUDENT, equipment.EquipmentID, "X1")


class AssetRegistryTests(DatabaseTestCase):
    def test_batch_create_and_natural_order(self):
        equipment, _ = self.make_equipment("Lights", total=4, serials=())

        created = create_asset_batch(self.db, ADMIN, equipment.EquipmentID, "10\n2, B\n1\n")

        self.assertEqual(len(created), 4)
        self.assertEqual([asset.SerialNumber for asset in list_assets(self.db, equipment.EquipmentID)], ["1", "2", "10", "B"])
        with self.assertRaises(ValidationError):
            create_asset_batch(self.db, ADMIN, equipment.EquipmentID, " \n, ")

    def test_available_list_skips_flagged_units(self):
        equipment, assets = self.make_equipment("FX3", total=2, serials=("A1", "A2"))
        update_asset(self.db, ADMIN, assets[1].AssetID, {"status": "broken"})

        self.assertEqual([asset.SerialNumber for asset in list_available_assets(self.db, equipment.EquipmentID)], ["A1"])

    def test_catalog_order_and_visibility(self):
        self.make_equipment("Zoom", total=1, serials=(), sortOrder=1)
        self.make_equipment("Alpha", total=1, serials=())
        self.make_equipment("Hidden", total=1, serials=(), isVisible=False)

        self.assertEqual([row["equipmentName"] for row in list_equipment(self.db)], ["Zoom", "Alpha", "Hidden"])
        self.assertEqual([row["equipmentName"] for row in list_equipment(self.db, include_hidden=False)], ["Zoom", "Alpha"])

    def test_move_to_category_keeps_assets(self):
        category = create_category(self.db, ADMIN, "Cameras")
        equipment, assets = self.make_equipment("FX3", total=2, serials=("A1", "A2"))

        moved = move_equipment_to_category(self.db, ADMIN, equipment.EquipmentID, category.CategoryID)

        self.assertEqual(moved.CategoryID, category.CategoryID)
        self.assertEqual({asset.EquipmentID for asset in list_assets(self.db, equipment.EquipmentID)}, {equipment.EquipmentID})

    def test_delete_blocked_while_held(self):
        equipment, assets = self.make_equipment("FX3", total=1, serials=("A1",))
        reservation = self.make_reservation([(equipment.EquipmentID, 1)])
        assign_assets(self.db, ADMIN, reservation.ReservationID, [(equipment.EquipmentID, [assets[0].AssetID])])
        change_reservation_status(self.db, ADMIN, reservation.ReservationID, "approved")

        with self.assertRaises(ConflictError) as ctx:
            delete_equipment(self.db, ADMIN, equipment.EquipmentID)
        self.assertEqual(ctx.exception.conflicting_asset_ids, [assets[0].AssetID])
        with self.assertRaises(ConflictError):
            delete_asset(self.db, ADMIN, assets[0].AssetID)

        change_reservation_status(self.db, ADMIN, reservation.ReservationID, "cancelled")
        delete_equipment(self.db, ADMIN, equipment.EquipmentID)
        self.assertEqual(self.db.execute(select(Asset)).scalars().all(), [])

    def test_insert_asset_tags_import_batch(self):
        equipment, _ = self.make_equipment("Lights", total=1, serials=())

        with allocation_transaction(self.db):
            asset = insert_asset(
                self.db, ADMIN, equipment, " L9 ", source=ChangeSource.EXCEL_IMPORT, batch_id="batch-1"
            )

        entries = get_changes_by_batch(self.db, "batch-1")
        self.assertEqual(asset.SerialNumber, "L9")
        self.assertEqual([(entry["targetID"], entry["source"]) for entry in entries], [(str(asset.AssetID), "excel_import")])

    def test_asset_history_newest_first(self):
        equipment, assets = self.make_equipment("FX3", total=1, serials=("A1",))
        asset_id = assets[0].AssetID
        reservation = self.make_reservation([(equipment.EquipmentID, 1)])
        assign_assets(self.db, ADMIN, reservation.ReservationID, [(equipment.EquipmentID, [asset_id])])
        for status in ("approved", "rented", "returned"):
            change_reservation_status(self.db, ADMIN, reservation.ReservationID, status)

        history = get_asset_history(self.db, asset_id)

        self.assertEqual([entry["action"] for entry in history], ["returned", "rented"])
        self.assertEqual(history[0]["reservationNumber"], reservation.ReservationNumber)
        self.assertEqual(history[1]["userName"], "Kim Student")


if __name__ == "__main__":
    unittest.main()
