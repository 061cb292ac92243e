from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models.rental_models import ChangeHistory
from ..models.states import ChangeAction, ChangeSource
from .identity_service import ActorIdentity


HISTORY_LOGGER = logging.getLogger("gear_rental.history")

EQUIPMENT_FIELD_LABELS = {
    "EquipmentName": "Name",
    "CategoryID": "Category",
    "Description": "Description",
    "Manufacturer": "Manufacturer",
    "TotalQuantity": "Total quantity",
    "IsVisible": "Visible in catalog",
    "SortOrder": "Sort order",
    "IsGroupPrint": "Group print",
}

ASSET_FIELD_LABELS = {
    "SerialNumber": "Serial number",
    "ManagementCode": "Management code",
    "Status": "Status",
    "Note": "Note",
}

DEFAULT_PAGE_SIZE = 50


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def snapshot_fields(record: Any, field_labels: dict[str, str]) -> dict[str, Any]:
    return {field: getattr(record, field, None) for field in field_labels}


def detect_changes(
    old_data: dict[str, Any],
    new_data: dict[str, Any],
    field_labels: dict[str, str],
) -> list[dict[str, str | None]]:
    changes = []
    for field, label in field_labels.items():
        old_value = _as_text(old_data.get(field))
        new_value = _as_text(new_data.get(field))
        if old_value == new_value:
            continue
        changes.append(
            {
                "field": field,
                "fieldLabel": label,
                "oldValue": old_value,
                "newValue": new_value,
            }
        )
    return changes


def _next_version(db: Session, source: ChangeSource, batch_id: str | None) -> tuple[int, int]:
    latest = db.execute(
        select(ChangeHistory).order_by(ChangeHistory.ChangeHistoryID.desc()).limit(1)
    ).scalars().first()
    if latest is None:
        return 1, 0
    if source == ChangeSource.EXCEL_IMPORT:
        if batch_id and latest.BatchID == batch_id:
            return latest.VersionMajor, latest.VersionMinor + 1
        return latest.VersionMajor + 1, 0
    return latest.VersionMajor, latest.VersionMinor + 1


def record_change(
    db: Session,
    actor: ActorIdentity,
    *,
    target_type: str,
    target_id: int | str,
    target_name: str,
    action: ChangeAction,
    changes: list[dict[str, str | None]],
    source: ChangeSource = ChangeSource.MANUAL,
    source_detail: str | None = None,
    batch_id: str | None = None,
) -> ChangeHistory | None:
    """Append one audit entry; returns None for edits that changed nothing.

    Must run inside the caller's write transaction so entries keep commit order.
    """
    if not changes:
        return None

    major, minor = _next_version(db, source, batch_id)
    entry = ChangeHistory(
        VersionMajor=major,
        VersionMinor=minor,
        UserID=actor.id,
        UserName=actor.name,
        UserEmail=actor.email or "",
        TargetType=target_type,
        TargetID=str(target_id),
        TargetName=target_name or "",
        Action=action.value,
        Changes=json.dumps(changes, ensure_ascii=True),
        Source=source.value,
        SourceDetail=source_detail,
        BatchID=batch_id,
        Timestamp=datetime.now(),
    )
    db.add(entry)
    db.flush()
    HISTORY_LOGGER.info(
        "change v%s.%s %s %s:%s by %s (%d fields)",
        major,
        minor,
        action.value,
        target_type,
        target_id,
        actor.id,
        len(changes),
    )
    return entry


def format_version(major: int, minor: int) -> str:
    if minor == 0:
        return f"v{major}"
    return f"v{major}.{minor}"


def serialize_change(entry: ChangeHistory) -> dict:
    try:
        changes = json.loads(entry.Changes or "[]")
    except (TypeError, ValueError):
        changes = []
    return {
        "changeHistoryID": entry.ChangeHistoryID,
        "versionMajor": entry.VersionMajor,
        "versionMinor": entry.VersionMinor,
        "version": format_version(entry.VersionMajor, entry.VersionMinor),
        "userID": entry.UserID,
        "userName": entry.UserName,
        "userEmail": entry.UserEmail,
        "targetType": entry.TargetType,
        "targetID": entry.TargetID,
        "targetName": entry.TargetName,
        "action": entry.Action,
        "changes": changes if isinstance(changes, list) else [],
        "source": entry.Source,
        "sourceDetail": entry.SourceDetail,
        "batchID": entry.BatchID,
        "timestamp": entry.Timestamp,
    }


def list_changes(
    db: Session,
    *,
    limit: int | None = None,
    cursor: str | None = None,
    target_type: str | None = None,
    source: str | None = None,
    user_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> dict:
    page_size = max(1, int(limit or DEFAULT_PAGE_SIZE))
    try:
        offset = max(0, int(cursor)) if cursor else 0
    except ValueError:
        offset = 0

    stmt = select(ChangeHistory)
    if target_type:
        stmt = stmt.where(ChangeHistory.TargetType == target_type)
    if source:
        stmt = stmt.where(ChangeHistory.Source == source)
    if user_id:
        stmt = stmt.where(ChangeHistory.UserID == user_id)
    if start:
        stmt = stmt.where(ChangeHistory.Timestamp >= start)
    if end:
        stmt = stmt.where(ChangeHistory.Timestamp <= end)
    stmt = stmt.order_by(ChangeHistory.ChangeHistoryID.desc()).offset(offset).limit(page_size + 1)

    rows = db.execute(stmt).scalars().all()
    has_more = len(rows) > page_size
    return {
        "logs": [serialize_change(row) for row in rows[:page_size]],
        "nextCursor": str(offset + page_size) if has_more else None,
        "hasMore": has_more,
    }


def get_changes_by_target(db: Session, target_id: int | str, target_type: str | None = None) -> list[dict]:
    stmt = select(ChangeHistory).where(ChangeHistory.TargetID == str(target_id))
    if target_type:
        stmt = stmt.where(ChangeHistory.TargetType == target_type)
    rows = db.execute(stmt.order_by(ChangeHistory.ChangeHistoryID.desc())).scalars().all()
    return [serialize_change(row) for row in rows]


def get_changes_by_batch(db: Session, batch_id: str) -> list[dict]:
    rows = db.execute(
        select(ChangeHistory)
        .where(ChangeHistory.BatchID == batch_id)
        .order_by(ChangeHistory.ChangeHistoryID)
    ).scalars().all()
    return [serialize_change(row) for row in rows]


def get_latest_version(db: Session) -> dict | None:
    latest = db.execute(
        select(ChangeHistory).order_by(ChangeHistory.ChangeHistoryID.desc()).limit(1)
    ).scalars().first()
    if latest is None:
        return None
    version = format_version(latest.VersionMajor, latest.VersionMinor)
    stamp = latest.Timestamp.date().isoformat() if latest.Timestamp else ""
    return {
        "versionMajor": latest.VersionMajor,
        "versionMinor": latest.VersionMinor,
        "versionString": version,
        "fullVersion": f"{stamp}_{latest.UserName}_{version}",
        "timestamp": latest.Timestamp,
        "userName": latest.UserName,
        "userEmail": latest.UserEmail,
        "source": latest.Source,
        "sourceDetail": latest.SourceDetail,
    }
