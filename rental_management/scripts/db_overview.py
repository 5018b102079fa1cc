#!/usr/bin/env python3
"""Database overview and integrity checks for RentalManagement."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_TABLES = [
    "Customers",
    "Products",
    "Tents",
    "Rentals",
    "RentalProductItems",
    "RentalTentItems",
    "RentalChecklist",
    "Payments",
    "Contracts",
    "AuditLogs",
    "NotificationQueue",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "Rentals": [
        "RentalID",
        "RentalNumber",
        "CustomerID",
        "Status",
        "StartDate",
        "EndDate",
        "ActualReturnDate",
        "PricingPolicy",
        "DailyRate",
        "Discount",
        "DeliveryFee",
        "TotalValue",
        "Version",
    ],
    "Products": ["ProductID", "Name", "DailyRentalPrice", "TotalStock"],
    "RentalChecklist": [
        "ChecklistItemID",
        "RentalID",
        "ProductID",
        "QuantityExpected",
        "QuantityCollected",
        "Collected",
        "CollectedAt",
        "CollectedBy",
        "Version",
    ],
    "Payments": ["PaymentID", "RentalID", "DueDate", "PaidDate", "Amount", "Method", "Status"],
    "Contracts": ["ContractID", "ContractNumber", "RentalID", "CustomerID", "TotalValue", "ItemsJson"],
    "AuditLogs": ["AuditID", "EntityType", "EntityID", "Action", "Details", "Actor", "CreatedAt"],
}


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
    checks: list[CheckResult] = []

    if _table_exists(engine, "Products"):
        checks.append(
            _count_check(
                engine,
                "products:negative_stock",
                "SELECT COUNT(*) FROM Products WHERE TotalStock < 0",
            )
        )

    if _table_exists(engine, "RentalChecklist"):
        checks.append(
            _count_check(
                engine,
                "checklist:over_collected",
                "SELECT COUNT(*) FROM RentalChecklist WHERE QuantityCollected > QuantityExpected",
            )
        )
        checks.append(
            _count_check(
                engine,
                "checklist:collected_without_collector",
                """
                SELECT COUNT(*)
                FROM RentalChecklist
                WHERE Collected = TRUE AND (CollectedBy IS NULL OR CollectedAt IS NULL)
                """,
            )
        )

    if _table_exists(engine, "RentalChecklist") and _table_exists(engine, "Rentals"):
        checks.append(
            _count_check(
                engine,
                "rentals:finished_with_open_checklist",
                """
                SELECT COUNT(DISTINCT r.RentalID)
                FROM Rentals r
                JOIN RentalChecklist c ON c.RentalID = r.RentalID
                WHERE r.Status = 'finished' AND c.Collected = FALSE
                """,
            )
        )

    if _table_exists(engine, "Rentals") and _table_exists(engine, "Payments"):
        checks.append(
            _count_check(
                engine,
                "rentals:confirmed_without_payment",
                """
                SELECT COUNT(*)
                FROM Rentals r
                WHERE r.Status IN ('confirmed', 'ongoing', 'collecting', 'finished')
                  AND NOT EXISTS (
                      SELECT 1 FROM Payments p
                      WHERE p.RentalID = r.RentalID AND p.Status = 'PAGO'
                  )
                """,
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
    for table in EXPECTED_TABLES:
        if not _table_exists(engine, table):
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_index_summary(engine: Engine) -> None:
    _print_section("Index Summary (key tables)")
    inspector = inspect(engine)
    for table in ["Rentals", "RentalChecklist", "Payments"]:
        if not inspector.has_table(table):
            print(f"{table}: missing")
            continue
        print(f"{table}:")
        for index in inspector.get_indexes(table):
            print(f"  - {index['name']} unique={bool(index.get('unique'))} cols={','.join(index['column_names'])}")
        for constraint in inspector.get_unique_constraints(table):
            print(f"  - {constraint['name']} unique=True cols={','.join(constraint['column_names'])}")


def _print_samples(engine: Engine, sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)

    if _table_exists(engine, "Rentals"):
        rows = _rows(
            engine,
            """
            SELECT RentalID, RentalNumber, Status, StartDate, EndDate, TotalValue
            FROM Rentals
            ORDER BY RentalID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("Rentals (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")

    if _table_exists(engine, "AuditLogs"):
        rows = _rows(
            engine,
            """
            SELECT AuditID, EntityType, Action, Actor, CreatedAt
            FROM AuditLogs
            ORDER BY AuditID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("AuditLogs (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="RentalManagement DB overview")
    parser.add_argument("--db-url", default=os.environ.get("RENTAL_MANAGEMENT_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("RENTAL_MANAGEMENT_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        # Force a quick connectivity check first.
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    existence = run_existence_checks(engine)
    columns = run_column_checks(engine)
    integrity = run_integrity_checks(engine)
    _print_results("Table Existence", existence)
    _print_results("Column Checks", columns)
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine)
    _print_index_summary(engine)
    _print_samples(engine, args.samples)
    return 0 if all(row.ok for row in existence + columns + integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
