import logging
import os
from datetime import datetime

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

load_dotenv()

from .db.deps import get_rental_db
from .schemas.equipment import (
    AssetBatchRequest,
    AssetDto,
    CategoryDto,
    EquipmentDto,
    EquipmentUpdateDto,
    ImportRequest,
    MoveEquipmentRequest,
)
from .schemas.repairs import (
    AdvanceRepairRequest,
    CompleteRepairRequest,
    CreateRepairDto,
    RepairFixedRequest,
    RepairMemoRequest,
    RevertRepairRequest,
)
from .schemas.reservations import (
    AssignRequest,
    CreateReservationDto,
    ReturnAssetsRequest,
    StatusChangeRequest,
    UpdateAssignmentRequest,
    UpdateItemsRequest,
)
from .services.allocation_service import (
    AssetReturn,
    assign_assets,
    get_occupied_asset_ids,
    return_assets,
    update_assignment,
)
from .services.availability_service import get_availability, parse_booking_time
from .services.change_history_service import (
    get_changes_by_batch,
    get_changes_by_target,
    get_latest_version,
    list_changes,
)
from .services.equipment_service import (
    create_asset,
    create_asset_batch,
    create_category,
    create_equipment,
    delete_asset,
    delete_equipment,
    get_asset_history,
    get_equipment,
    get_reservation_asset_history,
    list_assets,
    list_available_assets,
    list_categories,
    list_equipment,
    move_equipment_to_category,
    serialize_asset,
    serialize_equipment,
    update_asset,
    update_equipment,
)
from .services.errors import ConflictError, RentalError
from .services.identity_service import ActorIdentity, build_actor, require_admin
from .services.import_service import bulk_import_equipment
from .services.notification_service import (
    list_my_notifications,
    mark_all_as_read,
    mark_as_read,
    unread_count,
)
from .services.repair_service import (
    advance_repair_stage,
    complete_repair,
    create_repair_case,
    delete_repair_case,
    list_repairs,
    revert_repair_stage,
    serialize_repair,
    set_repair_fixed,
    update_repair_memo,
)
from .services.reservation_service import (
    ItemRequest,
    change_reservation_status,
    create_reservation,
    get_reservation_detail,
    list_my_reservations,
    list_reservations,
    serialize_reservation,
    update_reservation_items,
)

app = FastAPI(title="Gear Rental")

API_LOGGER = logging.getLogger("gear_rental.api")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5173,http://localhost:5173",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"]
)


@app.exception_handler(RentalError)
async def handle_rental_error(request: Request, exc: RentalError):
    body = {"detail": exc.detail}
    if isinstance(exc, ConflictError):
        body["conflictingAssetIDs"] = exc.conflicting_asset_ids
    if exc.status_code in {403, 409}:
        API_LOGGER.warning("%s %s -> %s: %s", request.method, request.url.path, exc.status_code, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=body)


def get_actor(
    x_actor_id: str | None = Header(None, alias="X-Actor-Id"),
    x_actor_name: str | None = Header(None, alias="X-Actor-Name"),
    x_actor_email: str | None = Header(None, alias="X-Actor-Email"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
) -> ActorIdentity:
    if not (x_actor_id or "").strip():
        raise HTTPException(status_code=401, detail="Missing actor identity.")
    return build_actor(x_actor_id, x_actor_name, x_actor_email, x_actor_role)


def get_admin(actor: ActorIdentity = Depends(get_actor)) -> ActorIdentity:
    require_admin(actor)
    return actor


def _optional_time(raw: str | None) -> datetime | None:
    if not raw:
        return None
    return parse_booking_time(raw)


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_rental_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


# ---------------------------------------------------------------------------
# Catalog and asset registry
# ---------------------------------------------------------------------------


@app.get("/api/categories")
def get_categories(db: Session = Depends(get_rental_db), actor: ActorIdentity = Depends(get_actor)):
    return list_categories(db)


@app.post("/api/categories")
def post_category(payload: CategoryDto, db: Session = Depends(get_rental_db), actor: ActorIdentity = Depends(get_actor)):
    category = create_category(db, actor, payload.categoryName, payload.parentCategoryID, payload.sortOrder)
    return {"categoryID": category.CategoryID, "categoryName": category.CategoryName}


@app.get("/api/equipment")
def get_equipment_list(db: Session = Depends(get_rental_db), actor: ActorIdentity = Depends(get_actor)):
    return list_equipment(db, include_hidden=actor.is_admin)


@app.post("/api/equipment")
def post_equipment(payload: EquipmentDto, db: Session = Depends(get_rental_db), actor: ActorIdentity = Depends(get_actor)):
    equipment = create_equipment(db, actor, payload.model_dump())
    return serialize_equipment(equipment, 0)


@app.post("/api/equipment/import")
def import_equipment(payload: ImportRequest, db: Session = Depends(get_rental_db), actor: ActorIdentity = Depends(get_actor)):
    rows = [row.model_dump(exclude_none=True) for row in payload.rows]
    return bulk_import_equipment(db, actor, rows, payload.fileName)


@app.get("/api/equipment/{equipment_id}")
def get_equipment_item(equipment_id: int, db: Session = Depends(get_rental_db), actor: ActorIdentity = Depends(get_actor)):
    equipment = get_equipment(db, equipment_id)
    if not equipment.IsVisible and not actor.is_admin:
        raise HTTPException(status_code=404, detail="Equipment not found")
    return serialize_equipment(equipment, len(equipment.Assets))


@app.put("/api/equipment/{equipment_id}")
def put_equipment(
    equipment_id: int,
    payload: EquipmentUpdateDto,
    db: Session = Depends(get_rental_db),
    actor: ActorIdentity = Depends(get_actor),
):
    equipment = update_equipment(db, actor, equipment_id, payload.model_dump(exclude_unset=True))
    return serialize_equipment(equipment, len(equipment.Assets))


@app.delete("/api/equipment/{equipment_id}")
def remove_equipment(equipment_id: int, db: Session = Depends(get_rental_db), actor: ActorIdentity = Depends(get_actor)):
    delete_equipment(db, actor, equipment_id)
    return {"message": "Deleted"}


@app.post("/api/equipment/{equipment_id}/move")
def move_equipment(
    equipment_id: int,
    payload: MoveEquipmentRequest,
    db: Session = Depends(get_rental_db),
    actor: ActorIdentity = Depends(get_actor),
):
    equipment = move_equipment_to_category(db, actor, equipment_id, payload.categoryID)
    return serialize_equipment(equipment, len(equipment.Assets))


@app.get("/api/equipment/{equipment_id}/availability")
def equipment_availability(
    equipment_id: int,
    start_date: str = Query(..., alias="startDate"),
    end_date: str = Query(..., alias="endDate"),
    include_history: bool = Query(False, alias="includeHistory"),
    db: Session = Depends(get_rental_db),
    actor: ActorIdentity = Depends(get_actor),
):
    return get_availability(db, equipment_id, start_date, end_date, include_history=include_history)


@app.get("/api/equipment/{equipment_id}/assets")
def get_assets(equipment_id: int, db: Session = Depends(get_rental_db), actor: ActorIdentity = Depends(get_admin)):
    return [serialize_asset(asset) for asset in list_assets(db, equipment_id)]


@app.post("/api/equipment/{equipment_id}/assets")
def post_asset(
    equipment_id: int,
    payload: AssetDto,
    db: Session = Depends(get_rental_db),
    actor: ActorIdentity = Depends(get_actor),
):
    asset = create_asset(db, actor, equipment_id, payload.serialNumber, payload.managementCode, payload.status, payload.note)
    return serialize_asset(asset)


@app.post("/api/equipment/{equipment_id}/assets/batch")
def post_asset_batch(
    equipment_id: int,
    payload: AssetBatchRequest,
    db: Session = Depends(get_rental_db),
    actor: ActorIdentity = Depends(get_actor),
):
    assets = create_asset_batch(db, actor, equipment_id, payload.serialNumbers)
    return {"created": len(assets), "assets": [serialize_asset(asset) for asset in assets]}


@app.get("/api/equipment/{equipment_id}/assets/available")
def get_available_assets(equipment_id: int, db: Session = Depends(get_rental_db), actor: ActorIdentity = Depends(get_admin)):
    return [serialize_asset(asset) for asset in list_available_assets(db, equipment_id)]


@app.get("/api/equipment/{equipment_id}/assets/occupied")
def get_occupied_assets(
    equipment_id: int,
    exclude_reservation_id: int | None = Query(None, alias="excludeReservationId"),
    db: Session = Depends(get_rental_db),
    actor: ActorIdentity = Depends(get_admin),
):
    get_equipment(db, equipment_id)
    occupied = get_occupied_asset_ids(db, equipment_id, exclude_reservation_id)
    return [
        {"assetID": asset_id, "reservationNumber": number}
        for asset_id, number in sorted(occupied.items())
    ]


@app.put("/api/assets/{asset_id}")
def put_asset(asset_id: int, payload: AssetDto, db: Session = Depends(get_rental_db), actor: ActorIdentity = Depends(get_actor)):
    asset = update_asset(db, actor, asset_id, payload.model_dump(exclude_unset=True))
    return serialize_asset(asset)


@app.delete("/api/assets/{asset_id}")
def remove_asset(asset_id: int, db: Session = Depends(get_rental_db), actor: ActorIdentity = Depends(get_actor)):
    delete_asset(db, actor, asset_id)
    return {"message": "Deleted"}


@app.get("/api/assets/{asset_id}/history")
def asset_history(asset_id: int, db: Session = Depends(get_rental_db), actor: ActorIdentity = Depends(get_admin)):
    return get_asset_history(db, asset_id)


# ---------------------------------------------------------------------------
# Reservations
# ---------------------------------------------------------------------------


def _item_requests(items) -> list[ItemRequest]:
    return [ItemRequest(equipment_id=item.equipmentID, quantity=item.quantity, name=item.name) for item in items]


@app.get("/api/reservations")
def get_reservations(
    status: str | None = Query(None),
    db: Session = Depends(get_rental_db),
    actor: ActorIdentity = Depends(get_actor),
):
    return list_reservations(db, actor, status)


@app.post("/api/reservations")
def post_reservation(
    payload: CreateReservationDto,
    db: Session = Depends(get_rental_db),
    actor: ActorIdentity = Depends(get_actor),
):
    reservation = create_reservation(
        db,
        actor,
        purpose=payload.purpose,
        purpose_detail=payload.purposeDetail,
        start_date=payload.startDate,
        end_date=payload.endDate,
        items=_item_requests(payload.items),
        leader_name=payload.leaderName,
        leader_phone=payload.leaderPhone,
        leader_student_id=payload.leaderStudentID,
        leader_email=payload.leaderEmail,
    )
    return serialize_reservation(reservation)


@app.get("/api/reservations/mine")
def get_my_reservations(db: Session = Depends(get_rental_db), actor: ActorIdentity = Depends(get_actor)):
    return list_my_reservations(db, actor)


@app.get("/api/reservations/{reservation_id}")
def get_reservation_item(reservation_id: int, db: Session = Depends(get_rental_db), actor: ActorIdentity = Depends(get_actor)):
    return get_reservation_detail(db, actor, reservation_id)


@app.put("/api/reservations/{reservation_id}/items")
def put_reservation_items(
    reservation_id: int,
    payload: UpdateItemsRequest,
    db: Session = Depends(get_rental_db),
    actor: ActorIdentity = Depends(get_actor),
):
    reservation = update_reservation_items(db, actor, reservation_id, _item_requests(payload.items))
    return serialize_reservation(reservation)


@app.post("/api/reservations/{reservation_id}/status")
def post_reservation_status(
    reservation_id: int,
    payload: StatusChangeRequest,
    db: Session = Depends(get_rental_db),
    actor: ActorIdentity = Depends(get_actor),
):
    reservation = change_reservation_status(db, actor, reservation_id, payload.status, payload.repairNote)
    return serialize_reservation(reservation)


@app.post("/api/reservations/{reservation_id}/assign")
def post_assign_assets(
    reservation_id: int,
    payload: AssignRequest,
    db: Session = Depends(get_rental_db),
    actor: ActorIdentity = Depends(get_actor),
):
    reservation = assign_assets(
        db,
        actor,
        reservation_id,
        [(entry.equipmentID, entry.assetIDs) for entry in payload.assignments],
    )
    return serialize_reservation(reservation)


@app.post("/api/reservations/{reservation_id}/assignment")
def post_update_assignment(
    reservation_id: int,
    payload: UpdateAssignmentRequest,
    db: Session = Depends(get_rental_db),
    actor: ActorIdentity = Depends(get_actor),
):
    reservation = update_assignment(
        db,
        actor,
        reservation_id,
        payload.equipmentID,
        payload.oldAssetIDs,
        payload.newAssetIDs,
    )
    return serialize_reservation(reservation)


@app.post("/api/reservations/{reservation_id}/return")
def post_return_assets(
    reservation_id: int,
    payload: ReturnAssetsRequest,
    db: Session = Depends(get_rental_db),
    actor: ActorIdentity = Depends(get_actor),
):
    returns = [AssetReturn(asset_id=entry.assetID, condition=entry.condition, notes=entry.notes) for entry in payload.returns]
    return return_assets(db, actor, reservation_id, returns)


@app.get("/api/reservations/{reservation_id}/asset-history")
def reservation_asset_history(reservation_id: int, db: Session = Depends(get_rental_db), actor: ActorIdentity = Depends(get_admin)):
    return get_reservation_asset_history(db, reservation_id)


# ---------------------------------------------------------------------------
# Repairs
# ---------------------------------------------------------------------------


@app.get("/api/repairs")
def get_repairs(
    tab: str | None = Query(None),
    db: Session = Depends(get_rental_db),
    actor: ActorIdentity = Depends(get_admin),
):
    return list_repairs(db, tab)


@app.post("/api/repairs")
def post_repair(payload: CreateRepairDto, db: Session = Depends(get_rental_db), actor: ActorIdentity = Depends(get_actor)):
    repair = create_repair_case(
        db,
        actor,
        damage_type=payload.damageType,
        description=payload.damageDescription,
        reservation_id=payload.reservationID,
        asset_id=payload.assetID,
        equipment_name=payload.equipmentName,
        serial_number=payload.serialNumber,
        student_name=payload.studentName,
        student_phone=payload.studentPhone,
    )
    return serialize_repair(repair)


@app.post("/api/repairs/{repair_id}/advance")
def post_repair_advance(
    repair_id: int,
    payload: AdvanceRepairRequest,
    db: Session = Depends(get_rental_db),
    actor: ActorIdentity = Depends(get_actor),
):
    repair = advance_repair_stage(
        db,
        actor,
        repair_id,
        expected_stage=payload.stage,
        charge_type=payload.chargeType,
        estimate_memo=payload.estimateMemo,
        final_amount=payload.finalAmount,
        repair_result=payload.repairResult,
        admin_memo=payload.adminMemo,
    )
    return serialize_repair(repair)


@app.post("/api/repairs/{repair_id}/revert")
def post_repair_revert(
    repair_id: int,
    payload: RevertRepairRequest,
    db: Session = Depends(get_rental_db),
    actor: ActorIdentity = Depends(get_actor),
):
    return serialize_repair(revert_repair_stage(db, actor, repair_id, payload.targetStage))


@app.post("/api/repairs/{repair_id}/complete")
def post_repair_complete(
    repair_id: int,
    payload: CompleteRepairRequest,
    db: Session = Depends(get_rental_db),
    actor: ActorIdentity = Depends(get_actor),
):
    return serialize_repair(complete_repair(db, actor, repair_id, payload.repairResult, payload.adminMemo))


@app.post("/api/repairs/{repair_id}/fixed")
def post_repair_fixed(
    repair_id: int,
    payload: RepairFixedRequest,
    db: Session = Depends(get_rental_db),
    actor: ActorIdentity = Depends(get_actor),
):
    return serialize_repair(set_repair_fixed(db, actor, repair_id, payload.isFixed))


@app.post("/api/repairs/{repair_id}/memo")
def post_repair_memo(
    repair_id: int,
    payload: RepairMemoRequest,
    db: Session = Depends(get_rental_db),
    actor: ActorIdentity = Depends(get_actor),
):
    return serialize_repair(update_repair_memo(db, actor, repair_id, payload.adminMemo))


@app.delete("/api/repairs/{repair_id}")
def remove_repair(repair_id: int, db: Session = Depends(get_rental_db), actor: ActorIdentity = Depends(get_actor)):
    delete_repair_case(db, actor, repair_id)
    return {"message": "Deleted"}


# ---------------------------------------------------------------------------
# Change history
# ---------------------------------------------------------------------------


@app.get("/api/change-history")
def get_change_history(
    limit: int = Query(50, ge=1, le=500),
    cursor: str | None = Query(None),
    target_type: str | None = Query(None, alias="targetType"),
    source: str | None = Query(None),
    user_id: str | None = Query(None, alias="userId"),
    start: str | None = Query(None),
    end: str | None = Query(None),
    db: Session = Depends(get_rental_db),
    actor: ActorIdentity = Depends(get_admin),
):
    return list_changes(
        db,
        limit=limit,
        cursor=cursor,
        target_type=target_type,
        source=source,
        user_id=user_id,
        start=_optional_time(start),
        end=_optional_time(end),
    )


@app.get("/api/change-history/latest")
def get_change_history_latest(db: Session = Depends(get_rental_db), actor: ActorIdentity = Depends(get_admin)):
    return get_latest_version(db)


@app.get("/api/change-history/target/{target_id}")
def get_change_history_target(
    target_id: str,
    target_type: str | None = Query(None, alias="targetType"),
    db: Session = Depends(get_rental_db),
    actor: ActorIdentity = Depends(get_admin),
):
    return get_changes_by_target(db, target_id, target_type)


@app.get("/api/change-history/batch/{batch_id}")
def get_change_history_batch(batch_id: str, db: Session = Depends(get_rental_db), actor: ActorIdentity = Depends(get_admin)):
    return get_changes_by_batch(db, batch_id)


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


@app.get("/api/notifications")
def get_notifications(db: Session = Depends(get_rental_db), actor: ActorIdentity = Depends(get_actor)):
    return list_my_notifications(db, actor)


@app.get("/api/notifications/unread-count")
def get_unread_count(db: Session = Depends(get_rental_db), actor: ActorIdentity = Depends(get_actor)):
    return {"count": unread_count(db, actor)}


@app.post("/api/notifications/read-all")
def post_read_all(db: Session = Depends(get_rental_db), actor: ActorIdentity = Depends(get_actor)):
    return {"updated": mark_all_as_read(db, actor)}


@app.post("/api/notifications/{notification_id}/read")
def post_read(notification_id: int, db: Session = Depends(get_rental_db), actor: ActorIdentity = Depends(get_actor)):
    mark_as_read(db, actor, notification_id)
    return {"ok": True}
