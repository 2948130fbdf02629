#!/usr/bin/env python3
"""Database overview and integrity checks for the equipment lending store."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError


EXPECTED_TABLES = [
    "Equipment",
    "Users",
    "Transactions",
    "AuditLogs",
    "Notifications",
    "Classrooms",
    "SystemConfig",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "Equipment": [
        "EquipmentID",
        "SerialNumber",
        "Name",
        "Category",
        "Status",
        "Condition",
        "TrackingTag",
        "TrackingStatus",
        "LastSeenAt",
        "BatteryLevel",
        "IsRetired",
    ],
    "Users": ["UserID", "Username", "StudentNumber", "Role", "ResponsibilityScore", "IsActive"],
    "Transactions": [
        "TransactionID",
        "UserID",
        "EquipmentID",
        "Status",
        "StartTime",
        "ExpectedReturnTime",
        "CheckoutTime",
        "ReturnTime",
        "OverduePenalizedAt",
        "CreatedDate",
    ],
    "AuditLogs": ["AuditID", "EntityType", "EntityID", "Action", "Details", "UserID", "CreatedAt"],
}

# In-flight saga records older than this are treated as abandoned.
PROVISIONAL_GRACE = timedelta(minutes=10)


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


def _table_names(engine: Engine) -> set[str]:
    return set(inspect(engine).get_table_names())


def _count_check(engine: Engine, name: str, sql: str, params: dict | None = None) -> CheckResult:
    count = int(_scalar(engine, sql, params) or 0)
    return CheckResult(name, count == 0, f"count={count}")


def run_existence_checks(engine: Engine) -> list[CheckResult]:
    present = _table_names(engine)
    return [CheckResult(f"table:{table}", table in present, "present" if table in present else "missing") for table in EXPECTED_TABLES]


def run_column_checks(engine: Engine) -> list[CheckResult]:
    results: list[CheckResult] = []
    present = _table_names(engine)
    inspector = inspect(engine)
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in present:
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = {column["name"] for column in inspector.get_columns(table)}
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def run_integrity_checks(engine: Engine, now: datetime | None = None) -> list[CheckResult]:
    now = now or datetime.now()
    present = _table_names(engine)
    checks: list[CheckResult] = []

    if "Transactions" in present:
        checks.append(
            _count_check(
                engine,
                "transactions:returned_iff_return_time",
                """
                SELECT COUNT(*) FROM Transactions
                WHERE (Status = 'Returned' AND ReturnTime IS NULL)
                   OR (Status <> 'Returned' AND ReturnTime IS NOT NULL)
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "transactions:window_order",
                "SELECT COUNT(*) FROM Transactions WHERE ExpectedReturnTime < StartTime",
            )
        )
        checks.append(
            _count_check(
                engine,
                "transactions:stale_provisional",
                "SELECT COUNT(*) FROM Transactions WHERE Status = 'Provisional' AND CreatedDate < :cutoff",
                {"cutoff": now - PROVISIONAL_GRACE},
            )
        )

    if "Transactions" in present and "Equipment" in present:
        checks.append(
            _count_check(
                engine,
                "transactions:loan_against_free_unit",
                """
                SELECT COUNT(*) FROM Transactions t
                JOIN Equipment e ON e.EquipmentID = t.EquipmentID
                WHERE t.Status IN ('CheckedOut', 'PendingReturn', 'Overdue')
                  AND e.Status <> 'CheckedOut'
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "equipment:checked_out_without_loan",
                """
                SELECT COUNT(*) FROM Equipment e
                WHERE e.Status = 'CheckedOut'
                  AND NOT EXISTS (
                      SELECT 1 FROM Transactions t
                      WHERE t.EquipmentID = e.EquipmentID
                        AND t.Status IN ('CheckedOut', 'PendingReturn', 'Overdue')
                  )
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "equipment:double_claimed",
                """
                SELECT COUNT(*) FROM (
                    SELECT EquipmentID FROM Transactions
                    WHERE Status IN ('CheckedOut', 'PendingReturn', 'Overdue')
                    GROUP BY EquipmentID
                    HAVING COUNT(*) > 1
                ) d
                """,
            )
        )

    if "Users" in present:
        checks.append(
            _count_check(
                engine,
                "users:score_bounds",
                "SELECT COUNT(*) FROM Users WHERE ResponsibilityScore < 0 OR ResponsibilityScore > 100",
            )
        )

    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    present = _table_names(engine)
    for table in EXPECTED_TABLES:
        if table not in present:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_status_breakdown(engine: Engine) -> None:
    _print_section("Transaction Status Breakdown")
    if "Transactions" not in _table_names(engine):
        print("Transactions: missing")
        return
    for status, count in _rows(engine, "SELECT Status, COUNT(*) FROM Transactions GROUP BY Status ORDER BY Status"):
        print(f"  - {status}: {int(count)}")


def _print_samples(engine: Engine, sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)
    if "AuditLogs" in _table_names(engine):
        rows = _rows(
            engine,
            """
            SELECT AuditID, EntityType, Action, UserID, CreatedAt
            FROM AuditLogs
            ORDER BY AuditID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("AuditLogs (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Equipment lending DB overview")
    parser.add_argument("--db-url", default=os.environ.get("LENDING_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("LENDING_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
    except SQLAlchemyError as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    integrity = run_integrity_checks(engine)
    _print_results("Table Existence", run_existence_checks(engine))
    _print_results("Column Checks", run_column_checks(engine))
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine)
    _print_status_breakdown(engine)
    _print_samples(engine, args.samples)
    return 0 if all(row.ok for row in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
