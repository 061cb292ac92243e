from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from ..db.transaction import write_transaction
from ..models.rental_models import Asset, RepairCase, Reservation
from ..models.states import (
    REPAIR_STAGE_ORDER,
    ChargeType,
    DamageType,
    RepairResult,
    RepairStage,
    repair_stage_index,
)
from .errors import InvalidTransitionError, NotFoundError, ValidationError
from .identity_service import ActorIdentity, require_admin


REPAIR_LOGGER = logging.getLogger("gear_rental.repairs")

REPAIR_TABS = {"in_progress", "completed"}

# Timestamp column stamped when a case enters each stage.
_STAGE_TIMESTAMPS = {
    RepairStage.DAMAGE_CONFIRMED: "DamageConfirmedAt",
    RepairStage.CHARGE_DECIDED: "ChargeDecidedAt",
    RepairStage.ESTIMATE_REQUESTED: "EstimateRequestedAt",
    RepairStage.PAYMENT_CONFIRMED: "PaymentConfirmedAt",
    RepairStage.COMPLETED: "CompletedAt",
}


def _parse_enum(enum_cls, raw, label: str):
    try:
        return enum_cls(str(raw).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(item.value for item in enum_cls)
        raise ValidationError(f"Unknown {label} '{raw}'. Allowed: {allowed}.") from exc


def get_repair_case(db: Session, repair_id: int) -> RepairCase:
    repair = db.get(RepairCase, repair_id)
    if not repair:
        raise NotFoundError(f"Repair case {repair_id} not found.")
    return repair


def open_repair_case(
    db: Session,
    *,
    damage_type: DamageType,
    description: str,
    reservation: Reservation | None = None,
    asset: Asset | None = None,
    equipment_name: str | None = None,
    serial_number: str | None = None,
    student_name: str | None = None,
    student_phone: str | None = None,
) -> RepairCase:
    """Insert a case in ``damage_confirmed``; the caller owns the transaction."""
    now = datetime.now()
    repair = RepairCase(
        ReservationID=reservation.ReservationID if reservation else None,
        ReservationNumber=reservation.ReservationNumber if reservation else None,
        AssetID=asset.AssetID if asset else None,
        EquipmentID=asset.EquipmentID if asset else None,
        EquipmentName=equipment_name or (asset.Equipment.EquipmentName if asset and asset.Equipment else None),
        SerialNumber=serial_number or (asset.ManagementCode or asset.SerialNumber if asset else None),
        StudentName=student_name or (reservation.LeaderName if reservation else None),
        StudentPhone=student_phone or (reservation.LeaderPhone if reservation else None),
        Stage=RepairStage.DAMAGE_CONFIRMED.value,
        DamageType=damage_type.value,
        DamageDescription=(description or "").strip(),
        DamageConfirmedAt=now,
        AdminMemo="",
        IsFixed=False,
        CreatedDate=now,
        UpdatedDate=now,
    )
    db.add(repair)
    db.flush()
    REPAIR_LOGGER.info(
        "repair case %s opened (%s) reservation=%s asset=%s",
        repair.RepairCaseID,
        damage_type.value,
        repair.ReservationID,
        repair.AssetID,
    )
    return repair


def create_repair_case(
    db: Session,
    actor: ActorIdentity,
    *,
    damage_type: str,
    description: str,
    reservation_id: int | None = None,
    asset_id: int | None = None,
    equipment_name: str | None = None,
    serial_number: str | None = None,
    student_name: str | None = None,
    student_phone: str | None = None,
) -> RepairCase:
    require_admin(actor)
    parsed_type = _parse_enum(DamageType, damage_type, "damage type")
    if not (description or "").strip():
        raise ValidationError("Damage description is required.")
    with write_transaction(db):
        reservation = None
        if reservation_id is not None:
            reservation = db.get(Reservation, reservation_id)
            if not reservation:
                raise NotFoundError(f"Reservation {reservation_id} not found.")
        asset = None
        if asset_id is not None:
            asset = db.get(Asset, asset_id)
            if not asset:
                raise NotFoundError(f"Asset {asset_id} not found.")
        repair = open_repair_case(
            db,
            damage_type=parsed_type,
            description=description,
            reservation=reservation,
            asset=asset,
            equipment_name=equipment_name,
            serial_number=serial_number,
            student_name=student_name,
            student_phone=student_phone,
        )
    return repair


def advance_repair_stage(
    db: Session,
    actor: ActorIdentity,
    repair_id: int,
    *,
    expected_stage: str | None = None,
    charge_type: str | None = None,
    estimate_memo: str | None = None,
    final_amount: float | Decimal | None = None,
    repair_result: str | None = None,
    admin_memo: str | None = None,
) -> RepairCase:
    """Move a case to the stage right after its current one.

    Each stage needs its own input: a charge type, a non-empty estimate memo,
    a final amount, and a repair result, in that order.
    """
    require_admin(actor)
    with write_transaction(db):
        repair = get_repair_case(db, repair_id)
        current = RepairStage(repair.Stage)
        if current == RepairStage.COMPLETED:
            raise InvalidTransitionError("Repair case is already completed.")
        target = REPAIR_STAGE_ORDER[repair_stage_index(current) + 1]
        if expected_stage is not None and _parse_enum(RepairStage, expected_stage, "stage") != target:
            raise InvalidTransitionError(
                f"Repair case is in '{current.value}'; the next stage is '{target.value}', not '{expected_stage}'."
            )

        if target == RepairStage.CHARGE_DECIDED:
            if not charge_type:
                raise InvalidTransitionError("chargeType is required to decide the charge.")
            repair.ChargeType = _parse_enum(ChargeType, charge_type, "charge type").value
        elif target == RepairStage.ESTIMATE_REQUESTED:
            if not (estimate_memo or "").strip():
                raise InvalidTransitionError("estimateMemo is required to request an estimate.")
            repair.EstimateMemo = estimate_memo.strip()
        elif target == RepairStage.PAYMENT_CONFIRMED:
            if final_amount is None:
                raise InvalidTransitionError("finalAmount is required to confirm payment.")
            try:
                amount = Decimal(str(final_amount))
            except (InvalidOperation, ValueError) as exc:
                raise ValidationError("finalAmount must be a number.") from exc
            if amount < 0:
                raise ValidationError("finalAmount must be zero or greater.")
            repair.FinalAmount = amount
        elif target == RepairStage.COMPLETED:
            if not repair_result:
                raise InvalidTransitionError("repairResult is required to complete a repair.")
            repair.RepairResult = _parse_enum(RepairResult, repair_result, "repair result").value
            if admin_memo is not None:
                repair.AdminMemo = admin_memo.strip()
            repair.IsFixed = True

        now = datetime.now()
        repair.Stage = target.value
        setattr(repair, _STAGE_TIMESTAMPS[target], now)
        repair.UpdatedDate = now
    REPAIR_LOGGER.info("repair case %s advanced %s -> %s by %s", repair_id, current.value, target.value, actor.id)
    return repair


def complete_repair(
    db: Session,
    actor: ActorIdentity,
    repair_id: int,
    repair_result: str,
    memo: str | None = None,
) -> RepairCase:
    return advance_repair_stage(
        db,
        actor,
        repair_id,
        expected_stage=RepairStage.COMPLETED.value,
        repair_result=repair_result,
        admin_memo=memo,
    )


def revert_repair_stage(db: Session, actor: ActorIdentity, repair_id: int, target_stage: str) -> RepairCase:
    # Data entered for later stages is kept; only the current stage moves back.
    require_admin(actor)
    target = _parse_enum(RepairStage, target_stage, "stage")
    with write_transaction(db):
        repair = get_repair_case(db, repair_id)
        current = RepairStage(repair.Stage)
        if repair_stage_index(target) >= repair_stage_index(current):
            raise InvalidTransitionError(
                f"Can only revert to a stage before '{current.value}', not '{target.value}'."
            )
        repair.Stage = target.value
        if current == RepairStage.COMPLETED:
            repair.IsFixed = False
        repair.UpdatedDate = datetime.now()
    REPAIR_LOGGER.info("repair case %s reverted %s -> %s by %s", repair_id, current.value, target.value, actor.id)
    return repair


def set_repair_fixed(db: Session, actor: ActorIdentity, repair_id: int, is_fixed: bool) -> RepairCase:
    require_admin(actor)
    with write_transaction(db):
        repair = get_repair_case(db, repair_id)
        repair.IsFixed = bool(is_fixed)
        repair.UpdatedDate = datetime.now()
    return repair


def update_repair_memo(db: Session, actor: ActorIdentity, repair_id: int, memo: str) -> RepairCase:
    require_admin(actor)
    with write_transaction(db):
        repair = get_repair_case(db, repair_id)
        repair.AdminMemo = (memo or "").strip()
        repair.UpdatedDate = datetime.now()
    return repair


def delete_repair_case(db: Session, actor: ActorIdentity, repair_id: int) -> None:
    require_admin(actor)
    with write_transaction(db):
        db.delete(get_repair_case(db, repair_id))
    REPAIR_LOGGER.info("repair case %s deleted by %s", repair_id, actor.id)


def list_repairs(db: Session, status: str | None = None) -> list[dict]:
    stmt = select(RepairCase).order_by(RepairCase.RepairCaseID.desc())
    if status:
        if status not in REPAIR_TABS:
            raise ValidationError(f"Unknown repair tab '{status}'.")
        if status == "completed":
            stmt = stmt.where(or_(RepairCase.Stage == RepairStage.COMPLETED.value, RepairCase.IsFixed == True))  # noqa: E712
        else:
            stmt = stmt.where(RepairCase.Stage != RepairStage.COMPLETED.value).where(RepairCase.IsFixed == False)  # noqa: E712
    return [serialize_repair(row) for row in db.execute(stmt).scalars().all()]


def serialize_repair(repair: RepairCase) -> dict:
    return {
        "repairCaseID": repair.RepairCaseID,
        "reservationID": repair.ReservationID,
        "reservationNumber": repair.ReservationNumber or "-",
        "assetID": repair.AssetID,
        "equipmentID": repair.EquipmentID,
        "equipmentName": repair.EquipmentName,
        "serialNumber": repair.SerialNumber,
        "studentName": repair.StudentName,
        "studentPhone": repair.StudentPhone,
        "stage": repair.Stage,
        "damageType": repair.DamageType,
        "damageDescription": repair.DamageDescription,
        "damageConfirmedAt": repair.DamageConfirmedAt,
        "chargeType": repair.ChargeType,
        "chargeDecidedAt": repair.ChargeDecidedAt,
        "estimateMemo": repair.EstimateMemo,
        "estimateRequestedAt": repair.EstimateRequestedAt,
        "finalAmount": float(repair.FinalAmount) if repair.FinalAmount is not None else None,
        "paymentConfirmedAt": repair.PaymentConfirmedAt,
        "repairResult": repair.RepairResult,
        "completedAt": repair.CompletedAt,
        "adminMemo": repair.AdminMemo,
        "isFixed": bool(repair.IsFixed),
        "createdDate": repair.CreatedDate,
        "updatedDate": repair.UpdatedDate,
    }
