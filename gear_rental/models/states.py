from __future__ import annotations

import enum


class ReservationStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    RENTED = "rented"
    RETURNED = "returned"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class AssetStatus(str, enum.Enum):
    AVAILABLE = "available"
    RENTED = "rented"
    MAINTENANCE = "maintenance"
    REPAIR = "repair"
    BROKEN = "broken"
    LOST = "lost"
    RETIRED = "retired"


class ReturnCondition(str, enum.Enum):
    NORMAL = "normal"
    DAMAGED = "damaged"
    MISSING_PARTS = "missing_parts"


class RepairStage(str, enum.Enum):
    DAMAGE_CONFIRMED = "damage_confirmed"
    CHARGE_DECIDED = "charge_decided"
    ESTIMATE_REQUESTED = "estimate_requested"
    PAYMENT_CONFIRMED = "payment_confirmed"
    COMPLETED = "completed"


class DamageType(str, enum.Enum):
    DAMAGED = "damaged"
    LOST = "lost"
    MISSING_PARTS = "missing_parts"


class ChargeType(str, enum.Enum):
    STUDENT_CHARGE = "student_charge"
    DEPARTMENT_HANDLE = "department_handle"


class RepairResult(str, enum.Enum):
    REPAIRED = "repaired"
    REPLACED = "replaced"
    DISPOSED = "disposed"


class ChangeAction(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    STATUS_CHANGE = "status_change"


class ChangeSource(str, enum.Enum):
    MANUAL = "manual"
    EXCEL_IMPORT = "excel_import"


TERMINAL_STATES = {
    ReservationStatus.RETURNED,
    ReservationStatus.REJECTED,
    ReservationStatus.CANCELLED,
}
# Reservations that hold their assigned assets exclusively.
ACTIVE_STATES = {ReservationStatus.APPROVED, ReservationStatus.RENTED}
# Reservations that count against per-day stock in the availability view.
OCCUPYING_STATES = {
    ReservationStatus.PENDING,
    ReservationStatus.APPROVED,
    ReservationStatus.RENTED,
}
ITEM_EDITABLE_STATES = {ReservationStatus.PENDING, ReservationStatus.APPROVED}
ASSIGNABLE_STATES = {ReservationStatus.PENDING, ReservationStatus.APPROVED}
REASSIGNABLE_STATES = {ReservationStatus.APPROVED, ReservationStatus.RENTED}

STATE_TRANSITIONS = {
    ReservationStatus.PENDING: {
        ReservationStatus.APPROVED,
        ReservationStatus.REJECTED,
        ReservationStatus.CANCELLED,
    },
    ReservationStatus.APPROVED: {
        ReservationStatus.RENTED,
        ReservationStatus.PENDING,
        ReservationStatus.CANCELLED,
    },
    ReservationStatus.RENTED: {
        ReservationStatus.RETURNED,
        ReservationStatus.APPROVED,
        ReservationStatus.CANCELLED,
    },
    ReservationStatus.RETURNED: set(),
    ReservationStatus.REJECTED: set(),
    ReservationStatus.CANCELLED: set(),
}
REVERT_TRANSITIONS = {
    (ReservationStatus.APPROVED, ReservationStatus.PENDING),
    (ReservationStatus.RENTED, ReservationStatus.APPROVED),
}

REPAIR_STAGE_ORDER = [
    RepairStage.DAMAGE_CONFIRMED,
    RepairStage.CHARGE_DECIDED,
    RepairStage.ESTIMATE_REQUESTED,
    RepairStage.PAYMENT_CONFIRMED,
    RepairStage.COMPLETED,
]

DAMAGE_TYPE_BY_CONDITION = {
    ReturnCondition.DAMAGED: DamageType.DAMAGED,
    ReturnCondition.MISSING_PARTS: DamageType.MISSING_PARTS,
}


def can_transition(current: ReservationStatus, target: ReservationStatus) -> bool:
    return target in STATE_TRANSITIONS.get(current, set())


def repair_stage_index(stage: RepairStage) -> int:
    return REPAIR_STAGE_ORDER.index(stage)
