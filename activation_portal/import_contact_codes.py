from __future__ import annotations

import argparse
import csv
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from activation_portal.config import configure_logging
from activation_portal.db import SessionLocal
from activation_portal.errors import PortalError
from activation_portal.services.contact_code_service import upsert_contact_code

logger = logging.getLogger(__name__)

COLUMNS = ('code', 'dealer_name', 'carrier', 'real_sales_pos', 'manager_code')
REQUIRED_COLUMNS = ('code', 'dealer_name', 'carrier')


@dataclass
class ImportResult:
    created: int = 0
    updated: int = 0
    errors: list[tuple[int, str]] = field(default_factory=list)


def import_rows(db: Session, rows: Iterable[dict]) -> ImportResult:
    """Upsert contact codes from CSV rows; bad rows are reported, not fatal.

    Line numbers count the header as line 1.
    """
    result = ImportResult()
    for line_number, row in enumerate(rows, start=2):
        values = {column: (row.get(column) or '').strip() for column in COLUMNS}
        missing = [column for column in REQUIRED_COLUMNS if not values[column]]
        if missing:
            result.errors.append((line_number, f'missing {", ".join(missing)}'))
            continue
        try:
            _, created = upsert_contact_code(
                db,
                code=values['code'],
                dealer_name=values['dealer_name'],
                carrier=values['carrier'],
                real_sales_pos=values['real_sales_pos'] or None,
                manager_code=values['manager_code'] or None,
            )
        except PortalError as exc:
            result.errors.append((line_number, exc.message))
            continue
        if created:
            result.created += 1
        else:
            result.updated += 1
    return result


def import_file(path: str, *, dry_run: bool = False) -> ImportResult:
    with open(path, newline='', encoding='utf-8-sig') as handle:
        reader = csv.DictReader(handle)
        absent = [column for column in REQUIRED_COLUMNS if column not in (reader.fieldnames or [])]
        if absent:
            raise SystemExit(f'{path}: missing columns {", ".join(absent)}')
        with SessionLocal() as db:
            result = import_rows(db, reader)
            if dry_run:
                db.rollback()
            else:
                db.commit()
    return result


def main() -> None:
    parser = argparse.ArgumentParser(description='Import dealer contact codes from a CSV file.')
    parser.add_argument('path', help='CSV with columns: ' + ','.join(COLUMNS))
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Validate and report without writing anything.',
    )
    args = parser.parse_args()
    configure_logging()

    result = import_file(args.path, dry_run=args.dry_run)
    for line_number, message in result.errors:
        logger.warning('line %s skipped: %s', line_number, message)
    mode = ' (dry run)' if args.dry_run else ''
    print(f'Contact code import complete{mode}: created={result.created}, updated={result.updated}, skipped={len(result.errors)}')


if __name__ == '__main__':
    main()
