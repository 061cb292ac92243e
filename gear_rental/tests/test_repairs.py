import unittest

from ..services.errors import AccessDeniedError, InvalidTransitionError, NotFoundError, ValidationError
from ..services.repair_service import (
    advance_repair_stage,
    complete_repair,
    create_repair_case,
    delete_repair_case,
    get_repair_case,
    list_repairs,
    revert_repair_stage,
    set_repair_fixed,
    update_repair_memo,
)
from .support import ADMIN, STUDENT, DatabaseTestCase


class RepairWorkflowTests(DatabaseTestCase):
    def setUp(self):
        super().setUp()
        _, assets = self.make_equipment("FX3", total=1, serials=("A1",))
        self.asset = assets[0]
        self.repair = create_repair_case(
            self.db,
            ADMIN,
            damage_type="damaged",
            description="cracked LCD",
            asset_id=self.asset.AssetID,
            student_name="Kim Student",
        )
        self.rid = self.repair.RepairCaseID

    def walk_to_completed(self):
        advance_repair_stage(self.db, ADMIN, self.rid, charge_type="student_charge")
        advance_repair_stage(self.db, ADMIN, self.rid, estimate_memo="Vendor quote pending")
        advance_repair_stage(self.db, ADMIN, self.rid, final_amount=120000)
        return complete_repair(self.db, ADMIN, self.rid, "repaired", "Swapped panel")

    def test_manual_case_snapshots_asset(self):
        self.assertEqual(self.repair.Stage, "damage_confirmed")
        self.assertEqual(self.repair.EquipmentName, "FX3")
        self.assertEqual(self.repair.SerialNumber, "A1")
        self.assertIsNotNone(self.repair.DamageConfirmedAt)
        self.assertFalse(self.repair.IsFixed)

    def test_full_walk_stamps_each_stage(self):
        repair = self.walk_to_completed()

        self.assertEqual(repair.Stage, "completed")
        self.assertEqual(repair.ChargeType, "student_charge")
        self.assertEqual(repair.EstimateMemo, "Vendor quote pending")
        self.assertEqual(float(repair.FinalAmount), 120000.0)
        self.assertEqual(repair.RepairResult, "repaired")
        self.assertEqual(repair.AdminMemo, "Swapped panel")
        self.assertTrue(repair.IsFixed)
        for stamp in (
            repair.ChargeDecidedAt,
            repair.EstimateRequestedAt,
            repair.PaymentConfirmedAt,
            repair.CompletedAt,
        ):
            self.assertIsNotNone(stamp)

    def test_each_stage_requires_its_input(self):
        with self.assertRaises(InvalidTransitionError):
            advance_repair_stage(self.db, ADMIN, self.rid)
        with self.assertRaises(ValidationError):
            advance_repair_stage(self.db, ADMIN, self.rid, charge_type="free")
        advance_repair_stage(self.db, ADMIN, self.rid, charge_type="department_handle")
        with self.assertRaises(InvalidTransitionError):
            advance_repair_stage(self.db, ADMIN, self.rid, estimate_memo="   ")
        advance_repair_stage(self.db, ADMIN, self.rid, estimate_memo="quote")
        with self.assertRaises(ValidationError):
            advance_repair_stage(self.db, ADMIN, self.rid, final_amount=-1)
        advance_repair_stage(self.db, ADMIN, self.rid, final_amount=0)
        with self.assertRaises(InvalidTransitionError):
            advance_repair_stage(self.db, ADMIN, self.rid)
        self.assertEqual(get_repair_case(self.db, self.rid).Stage, "payment_confirmed")

    def test_never_skips_forward(self):
        with self.assertRaises(InvalidTransitionError):
            complete_repair(self.db, ADMIN, self.rid, "replaced")
        with self.assertRaises(InvalidTransitionError):
            advance_repair_stage(self.db, ADMIN, self.rid, expected_stage="estimate_requested", charge_type="student_charge")
        self.assertEqual(get_repair_case(self.db, self.rid).Stage, "damage_confirmed")

    def test_completed_case_cannot_advance(self):
        self.walk_to_completed()
        with self.assertRaises(InvalidTransitionError):
            advance_repair_stage(self.db, ADMIN, self.rid, repair_result="disposed")

    def test_revert_keeps_data_and_clears_fixed(self):
        self.walk_to_completed()

        repair = revert_repair_stage(self.db, ADMIN, self.rid, "charge_decided")

        self.assertEqual(repair.Stage, "charge_decided")
        self.assertFalse(repair.IsFixed)
        self.assertEqual(repair.EstimateMemo, "Vendor quote pending")
        self.assertEqual(repair.RepairResult, "repaired")

        advance_repair_stage(self.db, ADMIN, self.rid, estimate_memo="Second quote")
        self.assertEqual(get_repair_case(self.db, self.rid).Stage, "estimate_requested")

    def test_revert_must_go_backwards(self):
        advance_repair_stage(self.db, ADMIN, self.rid, charge_type="student_charge")
        with self.assertRaises(InvalidTransitionError):
            revert_repair_stage(self.db, ADMIN, self.rid, "charge_decided")
        with self.assertRaises(InvalidTransitionError):
            revert_repair_stage(self.db, ADMIN, self.rid, "completed")
        with self.assertRaises(ValidationError):
            revert_repair_stage(self.db, ADMIN, self.rid, "nowhere")

    def test_fixed_toggle_and_tabs(self):
        other = create_repair_case(self.db, ADMIN, damage_type="lost", description="left on set")

        self.assertEqual({row["repairCaseID"] for row in list_repairs(self.db, "in_progress")}, {self.rid, other.RepairCaseID})
        set_repair_fixed(self.db, ADMIN, other.RepairCaseID, True)

        self.assertEqual([row["repairCaseID"] for row in list_repairs(self.db, "completed")], [other.RepairCaseID])
        self.assertEqual([row["repairCaseID"] for row in list_repairs(self.db, "in_progress")], [self.rid])
        self.assertEqual(len(list_repairs(self.db)), 2)
        with self.assertRaises(ValidationError):
            list_repairs(self.db, "archived")

    def test_memo_and_delete(self):
        self.assertEqual(update_repair_memo(self.db, ADMIN, self.rid, "  call vendor ").AdminMemo, "call vendor")
        delete_repair_case(self.db, ADMIN, self.rid)
        with self.assertRaises(NotFoundError):
            get_repair_case(self.db, self.rid)

    def test_validation_on_create(self):
        with self.assertRaises(ValidationError):
            create_repair_case(self.db, ADMIN, damage_type="melted", description="x")
        with self.assertRaises(ValidationError):
            create_repair_case(self.db, ADMIN, damage_type="damaged", description=" ")
        with self.assertRaises(NotFoundError):
            create_repair_case(self.db, ADMIN, damage_type="damaged", description="x", reservation_id=777)
        with self.assertRaises(AccessDeniedError):
            create_repair_case(self.db, STUDENT, damage_type="damaged", description="x")


if __name__ == "__main__":
    unittest.main()
