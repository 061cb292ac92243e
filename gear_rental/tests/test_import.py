import unittest

from sqlalchemy import select

from ..models.rental_models import Asset, ChangeHistory, Equipment, ImportLog
from ..services.change_history_service import get_changes_by_batch
from ..services.errors import AccessDeniedError
from ..services.import_service import bulk_import_equipment
from .support import ADMIN, STUDENT, DatabaseTestCase


class BulkImportTests(DatabaseTestCase):
    def test_rows_are_upserted_by_name(self):
        self.make_equipment("FX3", total=1, serials=("A1",))

        result = bulk_import_equipment(
            self.db,
            ADMIN,
            [
                {"name": "FX3", "totalQuantity": 3, "serials": ["A1", "A2", {"serialNumber": "A3", "managementCode": "CAM-03"}]},
                {"name": "Aputure 300d", "sortOrder": 4, "serials": ["L1", "L2"]},
            ],
            file_name="inventory.xlsx",
        )

        self.assertEqual(result["equipmentCreated"], 1)
        self.assertEqual(result["equipmentUpdated"], 1)
        self.assertEqual(result["assetCreated"], 4)
        self.assertEqual(result["equipmentErrors"], 0)

        light = self.db.execute(select(Equipment).where(Equipment.EquipmentName == "Aputure 300d")).scalars().one()
        self.assertEqual(light.TotalQuantity, 2)
        self.assertEqual(light.SortOrder, 4)
        codes = self.db.execute(select(Asset.ManagementCode).where(Asset.SerialNumber == "A3")).scalars().all()
        self.assertEqual(codes, ["CAM-03"])

        log = self.db.get(ImportLog, result["importLogID"])
        self.assertEqual(log.FileName, "inventory.xlsx")
        self.assertEqual(log.AssetCreated, 4)

    def test_batch_shares_one_major_version(self):
        self.make_equipment("FX3", total=1, serials=())

        result = bulk_import_equipment(self.db, ADMIN, [{"name": "Slider", "serials": ["S1", "S2"]}])

        entries = get_changes_by_batch(self.db, result["batchId"])
        self.assertEqual(len(entries), 3)
        self.assertEqual([entry["version"] for entry in entries], ["v2", "v2.1", "v2.2"])
        self.assertTrue(all(entry["source"] == "excel_import" for entry in entries))

    def test_failing_row_does_not_abort_import(self):
        result = bulk_import_equipment(
            self.db,
            ADMIN,
            [
                {"name": "", "serials": ["X1"]},
                {"name": "Tripod", "totalQuantity": -5},
                {"name": "Monitor", "categoryId": 12345},
                {"name": "Gimbal", "serials": ["G1", {"serialNumber": "G2", "status": "teleported"}]},
            ],
        )

        self.assertEqual(result["equipmentErrors"], 3)
        self.assertEqual(result["equipmentCreated"], 1)
        self.assertEqual(result["assetCreated"], 1)
        self.assertEqual(result["assetErrors"], 1)
        names = self.db.execute(select(Equipment.EquipmentName)).scalars().all()
        self.assertEqual(names, ["Gimbal"])
        batch_rows = self.db.execute(
            select(ChangeHistory).where(ChangeHistory.BatchID == result["batchId"])
        ).scalars().all()
        self.assertEqual(len(batch_rows), 2)

    def test_import_is_admin_only(self):
        with self.assertRaises(AccessDeniedError):
            bulk_import_equipment(self.db, STUDENT, [{"name": "FX3"}])


if __name__ == "__main__":
    unittest.main()
