#!/usr/bin/env python3
"""Inventory overview and counter consistency checks for Equipment Lending."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from dotenv import load_dotenv
from sqlalchemy import create_engine, func, inspect, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

load_dotenv()

from models.lending_models import AuditLog, BorrowRequest, Equipment
from services.inventory_service import find_inconsistent_equipment


EXPECTED_TABLES = ["Equipment", "Requests", "AuditLogs"]


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _run_existence_checks(engine) -> list[CheckResult]:
    present = set(inspect(engine).get_table_names())
    return [
        CheckResult(f"table:{table}", table in present, "present" if table in present else "missing")
        for table in EXPECTED_TABLES
    ]


def _run_integrity_checks(session) -> list[CheckResult]:
    problems = find_inconsistent_equipment(session)
    checks = [
        CheckResult(
            "equipment:counter_matches_ledger",
            not problems,
            f"count={len(problems)}",
        )
    ]
    for problem in problems:
        checks.append(
            CheckResult(
                f"equipment:{problem['equipmentID']}",
                False,
                (
                    f"name={problem['name']} total={problem['totalQuantity']} "
                    f"available={problem['availableQuantity']} reserved={problem['reservedQuantity']} "
                    f"inBounds={problem['inBounds']}"
                ),
            )
        )

    orphan_requests = session.execute(
        select(func.count(BorrowRequest.Id))
        .outerjoin(Equipment, Equipment.Id == BorrowRequest.EquipmentId)
        .where(Equipment.Id.is_(None))
    ).scalar()
    checks.append(
        CheckResult(
            "requests:orphan_equipmentid",
            int(orphan_requests or 0) == 0,
            f"count={int(orphan_requests or 0)}",
        )
    )
    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(session) -> None:
    _print_section("Row Counts")
    for label, model in (("Equipment", Equipment), ("Requests", BorrowRequest), ("AuditLogs", AuditLog)):
        count = session.execute(select(func.count()).select_from(model)).scalar()
        print(f"{label}: {int(count or 0)}")
    _print_section("Requests by Status")
    for status, count in session.execute(
        select(BorrowRequest.Status, func.count(BorrowRequest.Id)).group_by(BorrowRequest.Status).order_by(BorrowRequest.Status)
    ).all():
        print(f"{status}: {count}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Equipment Lending inventory overview")
    parser.add_argument("--db-url", default=os.environ.get("LENDING_DB_URL", ""))
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("LENDING_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = create_engine(db_url, future=True)
        existence = _run_existence_checks(engine)
    except SQLAlchemyError as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    _print_results("Table Existence", existence)
    if not all(row.ok for row in existence):
        return 1

    with sessionmaker(bind=engine, future=True)() as session:
        integrity = _run_integrity_checks(session)
        _print_results("Integrity Checks", integrity)
        _print_row_counts(session)
    return 0 if all(row.ok for row in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
