#!/usr/bin/env python3
"""Database overview and integrity checks for the gear rental store.

Run as ``python -m gear_rental.scripts.db_overview``.
"""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine

from ..db.base import Base
from ..models import rental_models  # noqa: F401  registers tables on Base.metadata


EXPECTED_TABLES = [
    "Categories",
    "Equipment",
    "Assets",
    "AssetHistory",
    "Reservations",
    "ReservationItems",
    "ReservationItemAssets",
    "RepairCases",
    "ChangeHistory",
    "Notifications",
    "ImportLogs",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "Assets": ["AssetID", "EquipmentID", "SerialNumber", "ManagementCode", "Status", "Note"],
    "Reservations": ["ReservationID", "ReservationNumber", "UserID", "Status", "StartDate", "EndDate"],
    "ReservationItems": ["ReservationItemID", "ReservationID", "EquipmentID", "Quantity", "CheckedOut", "Returned"],
    "ReservationItemAssets": ["ReservationItemAssetID", "ReservationItemID", "AssetID", "ReturnedAt"],
    "RepairCases": ["RepairCaseID", "Stage", "DamageType", "IsFixed"],
    "ChangeHistory": ["ChangeHistoryID", "VersionMajor", "VersionMinor", "TargetType", "TargetID", "BatchID"],
}

_ACTIVE = "('approved', 'rented')"


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _rows(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).all()


def _table_exists(engine: Engine, table_name: str) -> bool:
    return inspect(engine).has_table(table_name)


def _column_names(engine: Engine, table_name: str) -> set[str]:
    return {str(column["name"]) for column in inspect(engine).get_columns(table_name)}


def run_existence_checks(engine: Engine) -> list[CheckResult]:
    results: list[CheckResult] = []
    for table in EXPECTED_TABLES:
        exists = _table_exists(engine, table)
        results.append(CheckResult(f"table:{table}", exists, "present" if exists else "missing"))
    return results


def run_column_checks(engine: Engine) -> list[CheckResult]:
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if not _table_exists(engine, table):
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = _column_names(engine, table)
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def _count_check(engine: Engine, name: str, sql: str) -> CheckResult:
    count = int(_scalar(engine, sql) or 0)
    return CheckResult(name, count == 0, f"count={count}")


def run_integrity_checks(engine: Engine) -> list[CheckResult]:
    if not all(_table_exists(engine, table) for table in ("Assets", "Reservations", "ReservationItems", "ReservationItemAssets")):
        return [CheckResult("integrity", False, "allocation tables missing")]

    return [
        _count_check(
            engine,
            "assignments:asset_in_two_active_reservations",
            f"""
            SELECT COUNT(*)
            FROM (
                SELECT ria.AssetID
                FROM ReservationItemAssets ria
                JOIN ReservationItems ri ON ri.ReservationItemID = ria.ReservationItemID
                JOIN Reservations r ON r.ReservationID = ri.ReservationID
                WHERE r.Status IN {_ACTIVE}
                GROUP BY ria.AssetID
                HAVING COUNT(DISTINCT r.ReservationID) > 1
            ) d
            """,
        ),
        _count_check(
            engine,
            "assignments:more_assets_than_quantity",
            """
            SELECT COUNT(*)
            FROM (
                SELECT ri.ReservationItemID
                FROM ReservationItems ri
                JOIN ReservationItemAssets ria ON ria.ReservationItemID = ri.ReservationItemID
                GROUP BY ri.ReservationItemID, ri.Quantity
                HAVING COUNT(*) > ri.Quantity
            ) d
            """,
        ),
        _count_check(
            engine,
            "assignments:equipment_mismatch",
            """
            SELECT COUNT(*)
            FROM ReservationItemAssets ria
            JOIN ReservationItems ri ON ri.ReservationItemID = ria.ReservationItemID
            JOIN Assets a ON a.AssetID = ria.AssetID
            WHERE a.EquipmentID <> ri.EquipmentID
            """,
        ),
        _count_check(
            engine,
            "assets:orphan_equipmentid",
            """
            SELECT COUNT(*)
            FROM Assets a
            LEFT JOIN Equipment e ON e.EquipmentID = a.EquipmentID
            WHERE e.EquipmentID IS NULL
            """,
        ),
        # Tolerated, but worth surfacing: rented units nobody holds.
        _count_check(
            engine,
            "assets:rented_without_active_reservation",
            f"""
            SELECT COUNT(*)
            FROM Assets a
            WHERE a.Status = 'rented'
              AND NOT EXISTS (
                SELECT 1
                FROM ReservationItemAssets ria
                JOIN ReservationItems ri ON ri.ReservationItemID = ria.ReservationItemID
                JOIN Reservations r ON r.ReservationID = ri.ReservationID
                WHERE ria.AssetID = a.AssetID AND r.Status IN {_ACTIVE}
              )
            """,
        ),
    ]


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    for table in EXPECTED_TABLES:
        if not _table_exists(engine, table):
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f'SELECT COUNT(*) FROM "{table}"')
        print(f"{table}: {int(count or 0)}")


def _print_samples(engine: Engine, sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)

    if _table_exists(engine, "Reservations"):
        rows = _rows(
            engine,
            """
            SELECT ReservationID, ReservationNumber, Status, StartDate, EndDate
            FROM Reservations
            ORDER BY ReservationID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("Reservations (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")

    if _table_exists(engine, "RepairCases"):
        rows = _rows(
            engine,
            """
            SELECT RepairCaseID, ReservationNumber, Stage, DamageType, IsFixed
            FROM RepairCases
            ORDER BY RepairCaseID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("RepairCases (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Gear rental DB overview")
    parser.add_argument("--db-url", default=os.environ.get("GEAR_RENTAL_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    parser.add_argument("--create", action="store_true", help="create missing tables before checking")
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("GEAR_RENTAL_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    if args.create:
        Base.metadata.create_all(bind=engine)
        print("Missing tables created.")

    integrity = run_integrity_checks(engine)
    _print_results("Table Existence", run_existence_checks(engine))
    _print_results("Column Checks", run_column_checks(engine))
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine)
    _print_samples(engine, args.samples)
    return 0 if all(row.ok for row in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
